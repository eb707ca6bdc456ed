"""叙事线索（Thread）数据模型。

一条线索 = 一个对读者的叙事承诺（仇恨、谜团、约定、关系……）。
线索跨章节存在，由审计结果驱动其物理量（债务、熵、速度）与生命周期。
"""

from __future__ import annotations

import time
import uuid
from enum import Enum

from pydantic import BaseModel, Field


class ThreadCategory(str, Enum):
    """线索重要度分级，创建时确定，只能升级不能降级。"""
    SOVEREIGN = "SOVEREIGN"  # 主线级：贯穿全书
    MAJOR = "MAJOR"  # 重要支线
    MINOR = "MINOR"  # 次要支线
    SEED = "SEED"  # 伏笔/种子


class ThreadStatus(str, Enum):
    """线索生命周期状态。"""
    SEED = "SEED"  # 仅被提及，尚无义务，防止过早回收
    OPEN = "OPEN"  # 义务成立，持续跟踪
    BLOOMING = "BLOOMING"  # 回收窗口开启，推动收束
    STALLED = "STALLED"  # 长期未推进，需要关注
    CLOSED = "CLOSED"  # 已在正文中回收（终态）
    ABANDONED = "ABANDONED"  # 人工放弃（终态）


class ProgressType(str, Enum):
    """一次触及的推进程度。"""
    NONE = "NONE"
    INFO = "INFO"  # 只是提到/讨论，没有实质推进
    ESCALATION = "ESCALATION"  # 赌注抬高，局面实质变化
    RESOLUTION = "RESOLUTION"  # 承诺兑现


# 类别 → 基础因果权重
CATEGORY_KARMA: dict[ThreadCategory, int] = {
    ThreadCategory.SOVEREIGN: 90,
    ThreadCategory.MAJOR: 70,
    ThreadCategory.MINOR: 40,
    ThreadCategory.SEED: 20,
}

# 类别等级，用于判断升级
CATEGORY_RANK: dict[ThreadCategory, int] = {
    ThreadCategory.SEED: 0,
    ThreadCategory.MINOR: 1,
    ThreadCategory.MAJOR: 2,
    ThreadCategory.SOVEREIGN: 3,
}

TERMINAL_STATUSES = frozenset({ThreadStatus.CLOSED, ThreadStatus.ABANDONED})

REAL_PROGRESS = frozenset({ProgressType.ESCALATION, ProgressType.RESOLUTION})


class SummaryEntry(BaseModel):
    """线索摘要日志的一条记录（每个触及它的章节一条）。"""

    chapter: int = Field(description="章节号")
    text: str = Field(default="", description="本章发生的实质变化")


class Thread(BaseModel):
    """单条叙事线索。

    urgency_score 只是最近一次计算结果的缓存，真正的紧迫度永远由
    physics.urgency() 根据当前章节与配置重新计算。
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="存储层标识")
    novel_id: str = Field(description="所属小说")
    signature: str = Field(description="语义签名，如 REVENGE_SUN_FAMILY，用于跨章匹配")
    title: str = Field(default="", description="可读标题")

    category: ThreadCategory = Field(default=ThreadCategory.MINOR, description="重要度分级")
    status: ThreadStatus = Field(default=ThreadStatus.OPEN, description="生命周期状态")

    # ── 线索物理量 ──
    karma_weight: int = Field(default=40, ge=1, le=100, description="因果权重（质量）")
    payoff_debt: float = Field(default=0.0, ge=0.0, description="未兑现的读者期待")
    entropy: float = Field(default=0.0, ge=0.0, description="陈旧度")
    velocity: int = Field(default=0, ge=-10, le=10, description="近期实质推进速率")
    urgency_score: float = Field(default=0.0, ge=0.0, description="最近一次计算的紧迫度（派生值）")

    # ── 章节追踪 ──
    first_chapter: int = Field(description="开线章节")
    last_mentioned_chapter: int = Field(description="最近一次被触及的章节")
    blooming_chapter: int | None = Field(default=None, description="进入 BLOOMING 的章节，回收窗口锚点")
    stalled_chapter: int | None = Field(default=None, description="进入 STALLED 的章节")

    mention_count: int = Field(default=1, ge=0)
    progress_count: int = Field(default=0, ge=0)
    last_progress_type: ProgressType = Field(default=ProgressType.NONE)

    resolution_criteria: str = Field(default="", description="回收前必须满足的条件")
    participants: list[str] = Field(default_factory=list, description="涉及角色（有序去重）")
    summary: list[SummaryEntry] = Field(default_factory=list, description="只追加的摘要日志")

    # ── 人工覆盖 ──
    director_attention_forced: bool = Field(default=False, description="导演钉选，绕过正常排序")
    intentional_abandonment: bool = Field(default=False)
    abandonment_reason: str = Field(default="")

    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def chapters_since_mention(self, current_chapter: int) -> int:
        return max(0, current_chapter - self.last_mentioned_chapter)

    def summary_text(self, limit: int | None = None) -> str:
        """拼接摘要日志，limit 指定只取最近 N 条。"""
        entries = self.summary[-limit:] if limit else self.summary
        return "\n".join(f"[Ch{e.chapter}] {e.text}" for e in entries if e.text)


def title_from_signature(signature: str) -> str:
    return signature.replace("_", " ").strip().lower()
