"""选择器：决定下一章必须触及哪些线索、禁止回收哪些线索。"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from threadloom.config.settings import LoomConfig
from threadloom.engine import physics
from threadloom.models.selection import HorizonState, SelectionResult
from threadloom.models.thread import Thread, ThreadStatus

logger = logging.getLogger(__name__)

SECONDARY_LIMIT = 5


def effective_thread(thread: Thread, current_chapter: int, config: LoomConfig) -> Thread:
    """按当前章节评估自动状态并刷新紧迫度，不依赖调用方是否已执行 recompute。"""
    if thread.is_terminal:
        return thread
    status = physics.next_status(thread, current_chapter, config)
    if status != thread.status:
        thread = physics.transition(thread, status, current_chapter)
    return physics.with_urgency(thread, current_chapter, config)


def rank_key(thread: Thread, current_chapter: int):
    """排序键：紧迫度降序 → karma 降序 → 距离降序 → 签名升序（保证确定性）。"""
    return (
        -thread.urgency_score,
        -thread.karma_weight,
        -thread.chapters_since_mention(current_chapter),
        thread.signature,
    )


def select(
    threads: Iterable[Thread],
    current_chapter: int,
    config: LoomConfig | None = None,
) -> SelectionResult:
    config = config or LoomConfig()
    active = [
        effective_thread(t, current_chapter, config) for t in threads if not t.is_terminal
    ]
    ranked = sorted(active, key=lambda t: rank_key(t, current_chapter))
    reasoning: list[str] = []

    # 钉选线索优先，预算是下限而不是硬上限
    pinned = [t for t in ranked if t.director_attention_forced]
    budget = max(config.director_constraints_per_chapter, len(pinned))
    primary: list[Thread] = list(pinned)
    for t in pinned:
        reasoning.append(f"{t.signature}: 导演钉选，强制入选（紧迫度 {t.urgency_score}）")

    rest = [t for t in ranked if not t.director_attention_forced]
    for t in rest:
        if len(primary) >= budget:
            break
        primary.append(t)
        reasoning.append(
            f"{t.signature}: 紧迫度 {t.urgency_score} 排名靠前，入选主线程"
            f"（{t.status.value}，{t.chapters_since_mention(current_chapter)} 章未触及）"
        )

    primary_ids = {t.id for t in primary}
    leftover = [t for t in rest if t.id not in primary_ids]
    secondary = leftover[:SECONDARY_LIMIT]
    for t in leftover:
        reasoning.append(f"{t.signature}: 超出本章预算 {budget}，未入选（紧迫度 {t.urgency_score}）")

    forbidden: list[Thread] = []
    for t in ranked:
        horizon = physics.payoff_horizon(t, current_chapter, config)
        if horizon == HorizonState.TOO_EARLY:
            forbidden.append(t)
            reasoning.append(f"{t.signature}: 尚未进入回收窗口，本章禁止回收")
        elif config.protect_seed_threads and t.status == ThreadStatus.SEED:
            forbidden.append(t)
            reasoning.append(f"{t.signature}: 种子线索受保护，本章禁止回收")

    stale = [t for t in ranked if t.status == ThreadStatus.STALLED and t.id not in primary_ids]
    for t in stale:
        reasoning.append(
            f"{t.signature}: 已停滞 {t.chapters_since_mention(current_chapter)} 章但未入选，请留意"
        )

    score = health(active, current_chapter, config)
    logger.info(
        "第%d章选择: 主 %d / 备 %d / 禁止回收 %d / 停滞 %d，健康度 %.1f",
        current_chapter,
        len(primary),
        len(secondary),
        len(forbidden),
        len(stale),
        score,
    )
    return SelectionResult(
        chapter_number=current_chapter,
        primary=primary,
        secondary=secondary,
        forbidden_resolutions=forbidden,
        stale_warnings=stale,
        reasoning=reasoning,
        health=score,
    )


def health(
    threads: Iterable[Thread],
    current_chapter: int,
    config: LoomConfig | None = None,
) -> float:
    """按 karma 加权的健康线索占比（0-100）：既未停滞、熵也未过高。"""
    config = config or LoomConfig()
    total = 0
    healthy = 0
    for thread in threads:
        if thread.is_terminal:
            continue
        status = physics.next_status(thread, current_chapter, config)
        total += thread.karma_weight
        if status != ThreadStatus.STALLED and thread.entropy < config.high_entropy_threshold:
            healthy += thread.karma_weight
    if total == 0:
        return 100.0
    return round(healthy / total * 100, 1)
