"""导演 Agent：在物理选择的硬约束之内，为下一章写出导演指令。

导演只能"润色"：补充目标、细节、节奏与高潮保护；锚点、禁止回收
始终以物理选择为准，由 assemble_directive() 合并并校验。
调用失败时退回纯物理指令（Directive.fallback=True）。
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from threadloom.agents.utils import extract_json, extract_response_text, invoke_with_retry
from threadloom.config.settings import AgentConfig, LoomConfig
from threadloom.engine import physics
from threadloom.engine.audit_applier import normalize_signature
from threadloom.engine.directive_assembler import assemble_directive
from threadloom.models.directive import (
    ClimaxProtection,
    Directive,
    DirectorProposal,
    Intensity,
    ProposedAnchor,
    RequiredAction,
    TensionCurve,
)
from threadloom.models.selection import SelectionResult
from threadloom.models.thread import Thread
from threadloom.prompts import load_prompt
from threadloom.state.loom_state import LoomState

logger = logging.getLogger(__name__)

DIRECTOR_SYSTEM_PROMPT = load_prompt("director_system")
DIRECTOR_SCHEMA = load_prompt("director_schema")


def _enum_or_none(enum_cls, value: Any):
    if not isinstance(value, str):
        return None
    key = value.strip()
    for member in enum_cls:
        if member.value.lower() == key.lower():
            return member
    return None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def parse_director_response(data: Any) -> DirectorProposal:
    """把模型 JSON 规整为 DirectorProposal，未知取值一律丢弃而不是报错。"""
    if not isinstance(data, dict):
        return DirectorProposal()

    anchors: list[ProposedAnchor] = []
    raw_anchors = data.get("threadAnchors", data.get("thread_anchors"))
    for raw in raw_anchors if isinstance(raw_anchors, list) else []:
        if not isinstance(raw, dict):
            continue
        signature = normalize_signature(raw.get("signature"))
        if not signature:
            continue
        action = _enum_or_none(
            RequiredAction, raw.get("requiredAction", raw.get("required_action"))
        )
        anchors.append(
            ProposedAnchor(
                signature=signature,
                required_action=action or RequiredAction.PROGRESS,
                mandatory_detail=str(
                    raw.get("mandatoryDetail", raw.get("mandatory_detail")) or ""
                ).strip(),
            )
        )

    pacing = data.get("pacing") if isinstance(data.get("pacing"), dict) else {}
    word_count = pacing.get("wordCountTarget", pacing.get("word_count_target"))
    try:
        word_count = int(word_count) if word_count is not None else None
    except (TypeError, ValueError):
        word_count = None
    if word_count is not None and word_count < 100:
        word_count = None

    climax = None
    raw_climax = data.get("climaxProtection", data.get("climax_protection"))
    if isinstance(raw_climax, dict):
        climax = ClimaxProtection(
            forbidden_reveals=_str_list(
                raw_climax.get("forbiddenReveals", raw_climax.get("forbidden_reveals"))
            ),
            protected_threads=[
                normalize_signature(s)
                for s in _str_list(
                    raw_climax.get("protectedThreads", raw_climax.get("protected_threads"))
                )
            ],
            reason=str(raw_climax.get("reason") or ""),
        )

    return DirectorProposal(
        primary_goal=str(data.get("primaryGoal", data.get("primary_goal")) or "").strip(),
        anchors=anchors,
        forbidden_outcomes=_str_list(data.get("forbiddenOutcomes", data.get("forbidden_outcomes"))),
        intensity=_enum_or_none(Intensity, pacing.get("intensity")),
        word_count_target=word_count,
        tension_curve=_enum_or_none(
            TensionCurve, pacing.get("tensionCurve", pacing.get("tension_curve"))
        ),
        required_tone=str(data.get("requiredTone", data.get("required_tone")) or "").strip(),
        climax_protection=climax,
        reasoning=str(data.get("reasoning") or "").strip(),
    )


def build_director_prompt(
    selection: SelectionResult,
    threads: Iterable[Thread],
    chapter_number: int,
    config: LoomConfig,
) -> str:
    parts = [f"# 第{chapter_number}章：引擎选出的必须处理线索"]
    for t in selection.primary:
        horizon = physics.payoff_horizon(t, chapter_number, config)
        parts.append(
            f"- {t.signature}（{t.title}）[{t.category.value}/{t.status.value}] "
            f"紧迫度={t.urgency_score} 回收窗口={horizon.value if horizon else '无'}"
            f"{' 【导演钉选】' if t.director_attention_forced else ''}"
        )
        recent = t.summary_text(limit=2)
        if recent:
            parts.append("  " + recent.replace("\n", "\n  "))

    parts.append("\n# 禁止回收")
    parts += [f"- {t.signature}" for t in selection.forbidden_resolutions] or ["（无）"]

    if selection.stale_warnings:
        parts.append("\n# 停滞线索（本章未入选，可酌情带过）")
        parts += [f"- {t.signature}" for t in selection.stale_warnings]

    parts.append("\n# 其他活跃线索（额外锚点只能从这里选）")
    selected = {t.signature for t in selection.primary}
    others = [t for t in threads if not t.is_terminal and t.signature not in selected]
    parts += [f"- {t.signature}（{t.title}）[{t.status.value}]" for t in others] or ["（无）"]

    parts.append(f"\n整体叙事健康度：{selection.health:.0f}/100")
    parts.append(f"\n---\n请给出第{chapter_number}章的导演指令。\n\n{DIRECTOR_SCHEMA}")
    return "\n".join(parts)


def direct_chapter(
    model: BaseChatModel,
    selection: SelectionResult,
    threads: list[Thread],
    chapter_number: int,
    config: LoomConfig | None = None,
    agent_config: AgentConfig | None = None,
) -> Directive:
    """生成下一章指令。模型失败时返回纯物理指令。"""
    config = config or LoomConfig()
    agent_config = agent_config or AgentConfig()
    if not agent_config.enabled:
        return assemble_directive(selection, threads, chapter_number, config)

    prompt = build_director_prompt(selection, threads, chapter_number, config)
    try:
        response = invoke_with_retry(
            model,
            [SystemMessage(content=DIRECTOR_SYSTEM_PROMPT), HumanMessage(content=prompt)],
            max_retries=agent_config.max_retries,
            operation_name=f"director_ch{chapter_number}",
            timeout=agent_config.timeout_seconds,
        )
        proposal = parse_director_response(extract_json(extract_response_text(response)))
    except Exception as e:
        logger.error("第%d章导演调用失败，使用纯物理指令: %s", chapter_number, e)
        directive = assemble_directive(selection, threads, chapter_number, config)
        directive.warnings.append(f"导演调用失败: {type(e).__name__}")
        return directive

    return assemble_directive(selection, threads, chapter_number, config, proposal=proposal)


def create_direct_node(
    model: BaseChatModel,
    config: LoomConfig | None = None,
    agent_config: AgentConfig | None = None,
) -> Callable[[LoomState], dict[str, Any]]:
    """创建导演节点：为 chapter_number + 1 生成指令。"""

    def direct_node(state: LoomState) -> dict[str, Any]:
        selection = state.get("selection")
        store = state["store"]
        next_chapter = state["chapter_number"] + 1
        if selection is None:
            logger.warning("缺少选择结果，跳过导演节点")
            return {"directive": None, "next_action": "persist"}
        directive = direct_chapter(
            model, selection, store.threads, next_chapter, config, agent_config
        )
        return {
            "directive": directive,
            "warnings": list(directive.warnings),
            "next_action": "persist",
        }

    return direct_node
