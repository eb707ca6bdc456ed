"""指令组装：把选择结果（以及可选的导演提议）变成下一章的 Directive。"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from threadloom.config.settings import LoomConfig
from threadloom.engine import physics
from threadloom.models.directive import (
    ClimaxProtection,
    ConstraintType,
    Directive,
    DirectorConstraint,
    DirectorProposal,
    Intensity,
    Pacing,
    RequiredAction,
    TensionCurve,
    ThreadAnchor,
)
from threadloom.models.selection import HorizonState, SelectionResult
from threadloom.models.thread import Thread, ThreadStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

_ACTION_TO_CONSTRAINT = {
    RequiredAction.PROGRESS: ConstraintType.MUST_PROGRESS,
    RequiredAction.ESCALATE: ConstraintType.MUST_ESCALATE,
    RequiredAction.RESOLVE: ConstraintType.MUST_RESOLVE,
    RequiredAction.FORESHADOW: ConstraintType.FORESHADOW,
    RequiredAction.TOUCH: ConstraintType.TOUCH,
}

_ACTION_LABELS = {
    RequiredAction.PROGRESS: "推进",
    RequiredAction.ESCALATE: "升级",
    RequiredAction.RESOLVE: "回收",
    RequiredAction.FORESHADOW: "埋伏笔",
    RequiredAction.TOUCH: "提及",
}


def required_action(
    status: ThreadStatus,
    horizon: HorizonState | None,
    urgency: float,
    config: LoomConfig | None = None,
) -> RequiredAction:
    """(状态, 回收窗口, 紧迫度) → 唯一动作，对所有组合都有定义。"""
    config = config or LoomConfig()
    match status, horizon:
        case ThreadStatus.BLOOMING, HorizonState.PERFECT_WINDOW | HorizonState.OVERDUE:
            return RequiredAction.RESOLVE
        case ThreadStatus.BLOOMING, _:
            return RequiredAction.ESCALATE
        case ThreadStatus.STALLED, _:
            return RequiredAction.PROGRESS
        case ThreadStatus.SEED, _:
            return RequiredAction.FORESHADOW
        case ThreadStatus.OPEN, None if urgency >= config.escalate_urgency_threshold:
            return RequiredAction.ESCALATE
        case ThreadStatus.OPEN, _:
            return RequiredAction.PROGRESS
        case _:
            return RequiredAction.TOUCH


def _anchor_for(thread: Thread, chapter: int, config: LoomConfig, detail: str = "") -> ThreadAnchor:
    horizon = physics.payoff_horizon(thread, chapter, config)
    action = required_action(thread.status, horizon, thread.urgency_score, config)
    if not detail:
        detail = _default_detail(thread, action)
    return ThreadAnchor(
        signature=thread.signature,
        thread_id=thread.id,
        required_action=action,
        mandatory_detail=detail,
        current_urgency=thread.urgency_score,
        karma_weight=thread.karma_weight,
    )


def _default_detail(thread: Thread, action: RequiredAction) -> str:
    latest = thread.summary[-1].text if thread.summary else thread.title or thread.signature
    if action == RequiredAction.RESOLVE and thread.resolution_criteria:
        return f"{_ACTION_LABELS[action]}「{thread.title or thread.signature}」，满足条件：{thread.resolution_criteria}"
    return f"{_ACTION_LABELS[action]}「{thread.title or thread.signature}」（最近：{latest}）"


def _fallback_pacing(anchors: list[ThreadAnchor], health: float, config: LoomConfig) -> Pacing:
    if any(a.required_action == RequiredAction.RESOLVE for a in anchors):
        return Pacing(
            intensity=Intensity.CLIMACTIC,
            word_count_target=config.default_word_count_target,
            tension_curve=TensionCurve.SPIKE,
        )
    if health < 50:
        return Pacing(
            intensity=Intensity.HIGH,
            word_count_target=config.default_word_count_target,
            tension_curve=TensionCurve.RISING,
        )
    return Pacing(
        intensity=Intensity.MEDIUM,
        word_count_target=config.default_word_count_target,
        tension_curve=TensionCurve.RISING,
    )


def _forbidden_outcome(thread: Thread) -> str:
    return f"不得回收或终结线索 {thread.signature}（{thread.title or thread.signature}）：尚未到回收时机"


def _default_goal(anchors: list[ThreadAnchor]) -> str:
    if not anchors:
        return "巩固当前局面，为后续线索蓄势"
    top = anchors[0]
    return f"{_ACTION_LABELS[top.required_action]}核心线索 {top.signature}"


def assemble_directive(
    selection: SelectionResult,
    threads: Iterable[Thread],
    chapter_number: int,
    config: LoomConfig | None = None,
    proposal: DirectorProposal | None = None,
) -> Directive:
    """合并物理选择与导演提议，输出下一章指令。

    物理选出的主线程在前，提议中已知的非终态线索在后；
    按签名去重，总数不超过 max(预算, 钉选数)。
    """
    config = config or LoomConfig()
    known = {t.signature: t for t in threads if t.status != ThreadStatus.ABANDONED}
    forbidden = selection.forbidden_signatures
    pinned = sum(1 for t in selection.primary if t.director_attention_forced)
    cap = max(config.director_constraints_per_chapter, pinned)

    warnings: list[str] = []
    reasoning = list(selection.reasoning)
    anchors: list[ThreadAnchor] = []
    seen: set[str] = set()

    proposed = {a.signature: a for a in proposal.anchors} if proposal else {}

    for thread in selection.primary:
        if len(anchors) >= cap:
            break
        anchor = _anchor_for(thread, chapter_number, config)
        hint = proposed.get(thread.signature)
        if hint and hint.mandatory_detail:
            anchor = anchor.model_copy(update={"mandatory_detail": hint.mandatory_detail})
        anchors.append(anchor)
        seen.add(thread.signature)

    for hint in proposal.anchors if proposal else []:
        if hint.signature in seen:
            continue
        if len(anchors) >= cap:
            warnings.append(f"{hint.signature}: 超出本章锚点预算 {cap}，提议被忽略")
            continue
        thread = known.get(hint.signature)
        if thread is None or thread.status in TERMINAL_STATUSES:
            warnings.append(f"{hint.signature}: 提议的锚点不是活跃线索，已忽略")
            continue
        thread = physics.with_urgency(thread, chapter_number, config)
        action = hint.required_action
        if action == RequiredAction.RESOLVE and hint.signature in forbidden:
            action = required_action(
                thread.status, physics.payoff_horizon(thread, chapter_number, config),
                thread.urgency_score, config,
            )
            if action == RequiredAction.RESOLVE:
                action = RequiredAction.ESCALATE
            warnings.append(f"{hint.signature}: 禁止本章回收，提议的 RESOLVE 改为 {action.value}")
        anchors.append(
            ThreadAnchor(
                signature=thread.signature,
                thread_id=thread.id,
                required_action=action,
                mandatory_detail=hint.mandatory_detail or _default_detail(thread, action),
                current_urgency=thread.urgency_score,
                karma_weight=thread.karma_weight,
            )
        )
        seen.add(thread.signature)
        reasoning.append(f"{thread.signature}: 采纳导演提议，要求 {action.value}")

    # 物理选出的 RESOLVE 也不能落在禁止回收的线索上
    for i, anchor in enumerate(anchors):
        if anchor.required_action == RequiredAction.RESOLVE and anchor.signature in forbidden:
            anchors[i] = anchor.model_copy(update={"required_action": RequiredAction.ESCALATE})
            warnings.append(f"{anchor.signature}: 禁止本章回收，RESOLVE 改为 ESCALATE")

    forbidden_outcomes = [_forbidden_outcome(t) for t in selection.forbidden_resolutions]
    for outcome in proposal.forbidden_outcomes if proposal else []:
        if outcome and outcome not in forbidden_outcomes:
            forbidden_outcomes.append(outcome)

    for t in selection.stale_warnings:
        warnings.append(f"{t.signature}: 已停滞 {t.chapters_since_mention(chapter_number)} 章")

    pacing = _fallback_pacing(anchors, selection.health, config)
    if proposal:
        pacing = Pacing(
            intensity=proposal.intensity or pacing.intensity,
            word_count_target=proposal.word_count_target or pacing.word_count_target,
            tension_curve=proposal.tension_curve or pacing.tension_curve,
        )
        if proposal.reasoning:
            reasoning.append(proposal.reasoning)

    climax = proposal.climax_protection if proposal else None
    protected = [t.signature for t in selection.forbidden_resolutions]
    if climax is None and protected:
        climax = ClimaxProtection(
            protected_threads=protected,
            reason="这些线索尚在蓄势阶段，提前收束会削弱高潮",
        )
    elif climax is not None:
        # 禁止回收的线索始终受保护，导演的提议只能追加
        merged = list(climax.protected_threads)
        merged.extend(sig for sig in protected if sig not in merged)
        climax = climax.model_copy(update={"protected_threads": merged})

    directive = Directive(
        chapter_number=chapter_number,
        primary_goal=(proposal.primary_goal if proposal and proposal.primary_goal else _default_goal(anchors)),
        thread_anchors=anchors,
        forbidden_outcomes=forbidden_outcomes,
        pacing=pacing,
        required_tone=proposal.required_tone if proposal else "",
        climax_protection=climax,
        warnings=warnings,
        reasoning=reasoning,
        fallback=proposal is None,
    )
    logger.info(
        "第%d章指令: %d 个锚点，%d 条禁止结果，节奏 %s/%s",
        chapter_number,
        len(anchors),
        len(forbidden_outcomes),
        pacing.intensity.value,
        pacing.tension_curve.value,
    )
    return directive


# ────────────────────────────────────────────
# 下游格式
# ────────────────────────────────────────────


def directive_to_constraints(directive: Directive, selection: SelectionResult | None = None) -> list[DirectorConstraint]:
    """把指令展开为扁平约束列表（写作端/校验端使用）。"""
    constraints: list[DirectorConstraint] = []
    for anchor in directive.thread_anchors:
        priority = 9 if anchor.required_action == RequiredAction.RESOLVE else 7
        constraints.append(
            DirectorConstraint(
                constraint_type=_ACTION_TO_CONSTRAINT[anchor.required_action],
                signature=anchor.signature,
                description=anchor.mandatory_detail or anchor.signature,
                priority=priority,
            )
        )
    if selection is not None:
        for t in selection.forbidden_resolutions:
            constraints.append(
                DirectorConstraint(
                    constraint_type=ConstraintType.FORBIDDEN_RESOLUTION,
                    signature=t.signature,
                    description=f"本章不得回收 {t.signature}",
                    priority=10,
                )
            )
        covered = {_forbidden_outcome(t) for t in selection.forbidden_resolutions}
    else:
        covered = set()
    for outcome in directive.forbidden_outcomes:
        # 只跳过由禁止回收线索生成的那一条，导演自己写的结果即使提到签名也保留
        if outcome in covered:
            continue
        constraints.append(
            DirectorConstraint(
                constraint_type=ConstraintType.FORBIDDEN_OUTCOME,
                description=outcome,
                priority=8,
            )
        )
    return constraints


def format_directive_for_prompt(directive: Directive) -> str:
    """渲染为写作 Agent 可直接使用的 Markdown 片段。"""
    lines = [
        f"## 第{directive.chapter_number}章导演指令",
        "",
        f"**本章目标**：{directive.primary_goal}",
        "",
        "### 必须处理的线索",
    ]
    if directive.thread_anchors:
        for anchor in directive.thread_anchors:
            lines.append(
                f"- [{_ACTION_LABELS[anchor.required_action]}] {anchor.signature}：{anchor.mandatory_detail}"
            )
    else:
        lines.append("- （无）")

    if directive.forbidden_outcomes:
        lines += ["", "### 禁止出现"]
        lines += [f"- {o}" for o in directive.forbidden_outcomes]

    pacing = directive.pacing
    lines += [
        "",
        "### 节奏",
        f"- 强度：{pacing.intensity.value}",
        f"- 张力曲线：{pacing.tension_curve.value}",
        f"- 目标字数：{pacing.word_count_target}",
    ]
    if directive.required_tone:
        lines.append(f"- 基调：{directive.required_tone}")

    if directive.climax_protection and (
        directive.climax_protection.protected_threads or directive.climax_protection.forbidden_reveals
    ):
        cp = directive.climax_protection
        lines += ["", "### 高潮保护"]
        if cp.protected_threads:
            lines.append(f"- 保护线索：{'、'.join(cp.protected_threads)}")
        lines += [f"- 禁止揭示：{r}" for r in cp.forbidden_reveals]
        if cp.reason:
            lines.append(f"- 原因：{cp.reason}")
    return "\n".join(lines) + "\n"
