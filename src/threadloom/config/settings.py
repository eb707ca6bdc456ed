"""全局配置。

LoomConfig 是引擎的全部可调参数，每部小说可单独覆盖；
非法配置（如窗口 min > max）在构造时由 pydantic 直接报错，这是唯一允许抛出的错误。
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from threadloom.models.thread import ThreadCategory

ResolutionPolicy = Literal["advisory", "strict"]


class ModelConfig(BaseModel):
    """LLM 模型配置。"""

    provider: str = Field(
        default="google",
        description="模型提供商: 'google', 'openai', 'anthropic' 等",
    )
    model_name: str = Field(default="gemini-3-flash-preview", description="模型名称")
    temperature: float = Field(default=0.3, description="生成温度")
    max_tokens: int = Field(default=4096, description="最大 token 数")
    api_key: str = Field(
        default="",
        description="模型 API key（可选，优先使用环境变量）",
    )


class AgentConfig(BaseModel):
    """外部调用（审计/导演）的边界配置。"""

    enabled: bool = Field(default=True, description="关闭后直接走纯物理降级路径")
    timeout_seconds: float = Field(default=90.0, gt=0, description="单次调用超时")
    max_retries: int = Field(default=2, ge=0, description="网络类错误的重试次数")
    max_chapter_chars: int = Field(default=8000, ge=500, description="送审的章节正文截断长度")


class PayoffWindow(BaseModel):
    """回收窗口：[blooming_chapter + min_delay, blooming_chapter + max_delay]。"""

    min_delay: int = Field(ge=0, description="进入 BLOOMING 后至少等待的章节数")
    max_delay: int = Field(ge=0, description="超过后视为逾期")

    @model_validator(mode="after")
    def _check_order(self) -> PayoffWindow:
        if self.max_delay < self.min_delay:
            raise ValueError(
                f"回收窗口非法: max_delay({self.max_delay}) < min_delay({self.min_delay})"
            )
        return self


def _default_payoff_windows() -> dict[ThreadCategory, PayoffWindow]:
    # 主线/重要支线窗口更宽
    return {
        ThreadCategory.SOVEREIGN: PayoffWindow(min_delay=3, max_delay=10),
        ThreadCategory.MAJOR: PayoffWindow(min_delay=2, max_delay=8),
        ThreadCategory.MINOR: PayoffWindow(min_delay=1, max_delay=5),
        ThreadCategory.SEED: PayoffWindow(min_delay=1, max_delay=4),
    }


class LoomConfig(BaseModel):
    """线索调度引擎配置（每部小说可覆盖）。"""

    # ── 预算 ──
    max_new_threads_per_chapter: int = Field(
        default=3, ge=0, description="每章最多接受的新线索数，超出的直接丢弃"
    )
    director_constraints_per_chapter: int = Field(
        default=3, ge=1, description="每章必须触及的线索数（钉选线索可突破）"
    )

    # ── 生命周期阈值 ──
    stall_threshold_chapters: int = Field(
        default=5, ge=1, description="连续多少章未触及即判定停滞"
    )
    bloom_threshold_karma: int = Field(
        default=70, ge=1, le=100, description="开花阈值基准（乘以 bloom_urgency_factor 得到紧迫度门槛）"
    )
    bloom_urgency_factor: float = Field(
        default=1.0, gt=0, description="开花紧迫度门槛 = bloom_threshold_karma × 该系数"
    )
    bloom_min_progress: int = Field(
        default=1, ge=0, description="开花前至少需要的实质推进次数"
    )
    seed_promotion_chapters: int = Field(
        default=10, ge=1, description="种子线索存活多少章后自动转为 OPEN"
    )
    payoff_windows: dict[ThreadCategory, PayoffWindow] = Field(
        default_factory=_default_payoff_windows,
        description="各类别的回收窗口",
    )

    # ── 物理参数 ──
    payoff_debt_multiplier: float = Field(default=1.0, ge=0, description="债务累积系数")
    entropy_growth_per_chapter: float = Field(
        default=2.0, ge=0, description="无实质推进时每章距离带来的熵增"
    )
    entropy_retention_on_progress: float = Field(
        default=0.2, ge=0, le=1, description="ESCALATION 后保留的熵比例（RESOLUTION 清零）"
    )
    max_entropy: float = Field(default=100.0, gt=0, description="熵上限")
    urgency_cap: float = Field(default=1000.0, gt=0, description="紧迫度上限，保证排序稳定")
    category_urgency_multipliers: dict[ThreadCategory, float] = Field(
        default_factory=lambda: {
            ThreadCategory.SOVEREIGN: 2.0,
            ThreadCategory.MAJOR: 1.5,
            ThreadCategory.MINOR: 1.0,
            ThreadCategory.SEED: 0.5,
        },
        description="类别紧迫度系数",
    )

    # ── 护栏 ──
    high_entropy_threshold: float = Field(default=60.0, ge=0, description="高熵（裂纹）阈值")
    escalate_urgency_threshold: float = Field(
        default=300.0, ge=0, description="无窗口数据时，紧迫度超过此值要求 ESCALATE"
    )
    protect_seed_threads: bool = Field(default=True, description="种子线索禁止回收")
    resolution_policy: ResolutionPolicy = Field(
        default="advisory",
        description="回收条件未认证时：advisory=照常关闭并警告；strict=拒绝关闭，按 UPDATE 处理",
    )
    min_create_justification_chars: int = Field(
        default=0, ge=0, description="新线索理由的最少字符数（0 = 不检查）"
    )
    default_word_count_target: int = Field(default=3000, ge=100, description="默认字数目标")

    def payoff_window(self, category: ThreadCategory) -> PayoffWindow:
        return self.payoff_windows.get(category) or _default_payoff_windows()[category]

    def category_multiplier(self, category: ThreadCategory) -> float:
        return self.category_urgency_multipliers.get(category, 1.0)

    @property
    def bloom_urgency_trigger(self) -> float:
        return self.bloom_threshold_karma * self.bloom_urgency_factor


class EngineSettings(BaseModel):
    """引擎运行全局配置（CLI / 章节图使用）。"""

    loom: LoomConfig = Field(default_factory=LoomConfig, description="线索调度参数")
    clerk_model: ModelConfig = Field(default_factory=ModelConfig, description="审计 Agent 模型")
    director_model: ModelConfig = Field(
        default_factory=lambda: ModelConfig(temperature=0.4),
        description="导演 Agent 模型",
    )
    clerk: AgentConfig = Field(default_factory=AgentConfig, description="审计调用边界")
    director: AgentConfig = Field(default_factory=AgentConfig, description="导演调用边界")
    output_dir: str = Field(default="output", description="输出目录")
    language: str = Field(default="zh", description="输出语言")


def load_settings_from_yaml(path: str | Path | None = None) -> EngineSettings:
    """从 YAML 加载配置，未提供路径时返回默认配置。

    环境变量 THREADLOOM_PROVIDER / THREADLOOM_MODEL / THREADLOOM_TEMPERATURE
    覆盖两个 Agent 的模型设置。
    """
    data: dict[str, Any] = {}
    if path:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    settings = EngineSettings.model_validate(data)

    provider = os.environ.get("THREADLOOM_PROVIDER")
    model_name = os.environ.get("THREADLOOM_MODEL")
    temperature = os.environ.get("THREADLOOM_TEMPERATURE")
    for cfg in (settings.clerk_model, settings.director_model):
        if provider:
            cfg.provider = provider
        if model_name:
            cfg.model_name = model_name
        if temperature:
            cfg.temperature = float(temperature)
    return settings


def merge_novel_overrides(base: LoomConfig, overrides: dict[str, Any] | None) -> LoomConfig:
    """应用单部小说的配置覆盖（重新校验）。"""
    if not overrides:
        return base
    return LoomConfig.model_validate(base.model_dump() | overrides)


def load_loom_config(path: str | Path | None = None, novel_id: str | None = None) -> LoomConfig:
    """读取 YAML 中的 loom 段落，并叠加 novels.<novel_id> 下的单书覆盖。"""
    if not path:
        return LoomConfig()
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    base = LoomConfig.model_validate(data.get("loom") or {})
    if novel_id:
        overrides = (data.get("novels") or {}).get(novel_id) or {}
        return merge_novel_overrides(base, overrides)
    return base
