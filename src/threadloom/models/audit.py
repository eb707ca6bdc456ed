"""审计（Clerk）相关数据模型。

外部分类器的原始输出是不可信的 JSON，在 audit_applier.normalize_event()
这唯一的入口被规整为下面的封闭枚举类型，下游不再出现字符串分支。
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from threadloom.models.thread import ProgressType, ThreadCategory, ThreadStatus
from threadloom.state.thread_store import ThreadStore


class ThreadAction(str, Enum):
    """分类器对一条线索给出的动作。"""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    RESOLVE = "RESOLVE"
    STALL = "STALL"


class ClassifierEvent(BaseModel):
    """规整后的单条分类事件（每条被触及的线索一条）。"""

    signature: str = Field(description="线索签名（已规整为大写下划线形式）")
    action: ThreadAction = Field(default=ThreadAction.UPDATE)
    category: ThreadCategory | None = Field(
        default=None,
        description="类别；缺省时新线索按 MINOR 创建，已有线索不改变类别",
    )
    progress_type: ProgressType = Field(default=ProgressType.INFO)
    summary_delta: str = Field(default="", description="本章实质变化")
    participants: list[str] = Field(default_factory=list)
    urgency_hint: int = Field(default=5, ge=1, le=10, description="分类器给出的紧迫度提示 1-10")
    justification: str = Field(default="", description="分类器的判断理由")
    resolution_criteria: str = Field(default="", description="新线索的回收条件（仅 CREATE 使用）")
    criteria_met: bool | None = Field(
        default=None,
        description="分类器是否明确认证回收条件已满足（仅 RESOLVE 使用）",
    )


class ClassifierOutput(BaseModel):
    """一次章节审计调用的完整输出。"""

    events: list[ClassifierEvent] = Field(default_factory=list)
    consistency_warnings: list[str] = Field(default_factory=list)
    normalization_warnings: list[str] = Field(
        default_factory=list, description="规整过程中丢弃/修正的条目说明"
    )
    fallback: bool = Field(default=False, description="是否为外部调用失败后的降级结果")


class AppliedEvent(BaseModel):
    """一条事件实际产生的效果，供仪表盘与调试使用。"""

    signature: str
    requested_action: ThreadAction
    applied_action: ThreadAction
    thread_id: str = ""
    status_before: ThreadStatus | None = None
    status_after: ThreadStatus | None = None
    status_path: list[ThreadStatus] = Field(
        default_factory=list, description="本条事件依次经过的状态（含起点）"
    )
    note: str = ""


class AuditResult(BaseModel):
    """审计应用结果：新的快照 + 统计 + 警告。

    所有非致命问题（预算超限、回收条件未满足、未知线索）都在 warnings 中体现，
    不抛异常。
    """

    novel_id: str
    chapter_number: int
    store: ThreadStore
    applied: list[AppliedEvent] = Field(default_factory=list)
    new_threads_created: int = 0
    threads_progressed: int = 0
    threads_resolved: int = 0
    threads_stalled: int = 0
    rejected_creates: list[str] = Field(default_factory=list, description="因预算被丢弃的新线索签名")
    warnings: list[str] = Field(default_factory=list)
    consistency_warnings: list[str] = Field(default_factory=list)
    fallback: bool = False
