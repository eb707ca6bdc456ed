"""导演指令（Directive）数据模型。

Directive 是引擎影响正文生成的唯一通道：只给约束，从不直接改写文本。
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class RequiredAction(str, Enum):
    """对一条锚点线索的要求。"""
    PROGRESS = "PROGRESS"
    ESCALATE = "ESCALATE"
    RESOLVE = "RESOLVE"
    FORESHADOW = "FORESHADOW"
    TOUCH = "TOUCH"


class Intensity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CLIMACTIC = "climactic"


class TensionCurve(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    PLATEAU = "plateau"
    SPIKE = "spike"


class ThreadAnchor(BaseModel):
    """本章必须处理的一条线索。"""

    signature: str
    thread_id: str = ""
    required_action: RequiredAction = RequiredAction.PROGRESS
    mandatory_detail: str = Field(default="", description="必须写到的具体细节")
    current_urgency: float = 0.0
    karma_weight: int = 0


class Pacing(BaseModel):
    intensity: Intensity = Intensity.MEDIUM
    word_count_target: int = Field(default=3000, ge=100)
    tension_curve: TensionCurve = TensionCurve.RISING


class ClimaxProtection(BaseModel):
    """高潮保护：禁止提前揭示/提前收束的内容。"""

    forbidden_reveals: list[str] = Field(default_factory=list)
    protected_threads: list[str] = Field(default_factory=list, description="被保护的线索签名")
    reason: str = ""


class Directive(BaseModel):
    """下一章的导演指令。"""

    chapter_number: int
    primary_goal: str = ""
    thread_anchors: list[ThreadAnchor] = Field(default_factory=list)
    forbidden_outcomes: list[str] = Field(default_factory=list)
    pacing: Pacing = Field(default_factory=Pacing)
    required_tone: str = ""
    climax_protection: ClimaxProtection | None = None
    warnings: list[str] = Field(default_factory=list)
    reasoning: list[str] = Field(default_factory=list)
    fallback: bool = Field(default=False, description="导演调用失败时的纯物理指令")


class ProposedAnchor(BaseModel):
    """导演 Agent 提议的锚点（签名/动作已规整）。"""

    signature: str
    required_action: RequiredAction = RequiredAction.PROGRESS
    mandatory_detail: str = ""


class DirectorProposal(BaseModel):
    """导演 Agent 的规整后输出，由 assemble_directive 与物理选择合并。"""

    primary_goal: str = ""
    anchors: list[ProposedAnchor] = Field(default_factory=list)
    forbidden_outcomes: list[str] = Field(default_factory=list)
    intensity: Intensity | None = None
    word_count_target: int | None = None
    tension_curve: TensionCurve | None = None
    required_tone: str = ""
    climax_protection: ClimaxProtection | None = None
    reasoning: str = ""


class ConstraintType(str, Enum):
    MUST_PROGRESS = "MUST_PROGRESS"
    MUST_ESCALATE = "MUST_ESCALATE"
    MUST_RESOLVE = "MUST_RESOLVE"
    FORESHADOW = "FORESHADOW"
    TOUCH = "TOUCH"
    FORBIDDEN_RESOLUTION = "FORBIDDEN_RESOLUTION"
    FORBIDDEN_OUTCOME = "FORBIDDEN_OUTCOME"


class DirectorConstraint(BaseModel):
    """给写作端的一条扁平约束。"""

    constraint_type: ConstraintType
    signature: str = ""
    description: str
    priority: int = Field(default=5, ge=1, le=10)
