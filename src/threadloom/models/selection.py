"""选择器与健康度相关数据模型。"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from threadloom.models.thread import Thread


class HorizonState(str, Enum):
    """回收窗口判定。"""
    TOO_EARLY = "too_early"
    PERFECT_WINDOW = "perfect_window"
    OVERDUE = "overdue"  # 允许回收，但越来越急


class PulseColor(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    ORANGE = "orange"
    RED = "red"
    GOLD = "gold"  # BLOOMING 专用


class SelectionResult(BaseModel):
    """一章的线索选择结果。"""

    chapter_number: int
    primary: list[Thread] = Field(default_factory=list, description="本章必须触及的线索（钉选在前）")
    secondary: list[Thread] = Field(default_factory=list, description="可选触及的后备线索")
    forbidden_resolutions: list[Thread] = Field(
        default_factory=list, description="本章禁止回收的线索"
    )
    stale_warnings: list[Thread] = Field(default_factory=list, description="停滞但未入选的线索")
    reasoning: list[str] = Field(default_factory=list, description="每个选择/排除决定一条说明")
    health: float = Field(default=100.0, ge=0.0, le=100.0, description="整体叙事健康度")

    @property
    def forbidden_signatures(self) -> set[str]:
        return {t.signature for t in self.forbidden_resolutions}


class ThreadHealthMetrics(BaseModel):
    """单条线索的仪表盘指标。"""

    thread_id: str
    signature: str
    health_score: float = Field(ge=0.0, le=100.0)
    urgency: float
    pulse_color: PulseColor
    crack_effect: bool = Field(default=False, description="高熵裂纹")
    glow_effect: bool = Field(default=False, description="BLOOMING 金光")
    horizon: HorizonState | None = None
    chapters_since_mention: int = 0
    chapters_until_critical: int | None = Field(
        default=None, description="距离判定停滞还剩的章节数（已停滞或终态为 None）"
    )
