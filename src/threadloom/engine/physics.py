"""线索物理引擎：紧迫度、债务、熵、生命周期与回收窗口。

全部是纯函数，无 I/O、无时钟/随机依赖（updated_at 除外）。
输入线索永远不被修改，返回的是 model_copy 出来的新对象。

紧迫度公式：
    urgency = 类别系数 × (距离 × karma / 10 + 债务 × 债务系数 + 熵)
    截断到 [0, urgency_cap]，保留一位小数。
"""

from __future__ import annotations

import logging
import time

from threadloom.config.settings import LoomConfig
from threadloom.models.selection import HorizonState, PulseColor, ThreadHealthMetrics
from threadloom.models.thread import (
    REAL_PROGRESS,
    ProgressType,
    Thread,
    ThreadStatus,
)
from threadloom.state.thread_store import ThreadStore

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = LoomConfig()

# 状态图：SEED→OPEN→BLOOMING→CLOSED；任意非终态→STALLED→OPEN；任意非终态→ABANDONED
# 只有 BLOOMING 能直接进入 CLOSED
ALLOWED_TRANSITIONS: dict[ThreadStatus, frozenset[ThreadStatus]] = {
    ThreadStatus.SEED: frozenset({
        ThreadStatus.OPEN, ThreadStatus.STALLED, ThreadStatus.ABANDONED,
    }),
    ThreadStatus.OPEN: frozenset({
        ThreadStatus.BLOOMING, ThreadStatus.STALLED, ThreadStatus.ABANDONED,
    }),
    ThreadStatus.BLOOMING: frozenset({
        ThreadStatus.STALLED, ThreadStatus.CLOSED, ThreadStatus.ABANDONED,
    }),
    ThreadStatus.STALLED: frozenset({
        ThreadStatus.OPEN, ThreadStatus.ABANDONED,
    }),
    ThreadStatus.CLOSED: frozenset(),
    ThreadStatus.ABANDONED: frozenset(),
}

# RESOLVE 沿状态图走到 CLOSED 的路径；SEED 不在表中，不能回收
_RESOLUTION_ROUTE: dict[ThreadStatus, tuple[ThreadStatus, ...]] = {
    ThreadStatus.OPEN: (ThreadStatus.BLOOMING, ThreadStatus.CLOSED),
    ThreadStatus.BLOOMING: (ThreadStatus.CLOSED,),
    ThreadStatus.STALLED: (ThreadStatus.OPEN, ThreadStatus.BLOOMING, ThreadStatus.CLOSED),
}

# 叙事引力的状态加成
_GRAVITY_STATUS_FACTOR = {
    ThreadStatus.BLOOMING: 2.0,
    ThreadStatus.STALLED: 1.5,
}


def is_allowed(source: ThreadStatus, target: ThreadStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[source]


# ────────────────────────────────────────────
# 紧迫度
# ────────────────────────────────────────────


def urgency(thread: Thread, current_chapter: int, config: LoomConfig | None = None) -> float:
    """计算线索当前紧迫度。钉选不影响分值，终态线索恒为 0。"""
    config = config or _DEFAULT_CONFIG
    if thread.is_terminal:
        return 0.0
    distance = thread.chapters_since_mention(current_chapter)
    raw = config.category_multiplier(thread.category) * (
        distance * thread.karma_weight / 10
        + thread.payoff_debt * config.payoff_debt_multiplier
        + thread.entropy
    )
    return round(min(config.urgency_cap, max(0.0, raw)), 1)


def with_urgency(thread: Thread, current_chapter: int, config: LoomConfig | None = None) -> Thread:
    """刷新 urgency_score 缓存。终态线索原样返回。"""
    if thread.is_terminal:
        return thread
    return thread.model_copy(update={"urgency_score": urgency(thread, current_chapter, config)})


# ────────────────────────────────────────────
# 债务与熵
# ────────────────────────────────────────────


def increment_debt(
    thread: Thread, progress_type: ProgressType, config: LoomConfig | None = None
) -> Thread:
    """按本次触及的推进程度调整债务与速度。

    只提及（NONE/INFO）：债务按 karma 比例增长，速度 -1；
    ESCALATION：债务衰减（不低于 0），速度 +1；RESOLUTION：债务清零。
    """
    config = config or _DEFAULT_CONFIG
    debt = thread.payoff_debt
    if progress_type == ProgressType.RESOLUTION:
        debt = 0.0
    elif progress_type == ProgressType.ESCALATION:
        debt = max(0.0, debt - round(thread.karma_weight / 5))
    else:
        debt = debt + round(thread.karma_weight / 10 * config.payoff_debt_multiplier)

    step = 1 if progress_type in REAL_PROGRESS else -1
    velocity = max(-10, min(10, thread.velocity + step))
    return thread.model_copy(update={"payoff_debt": float(debt), "velocity": velocity})


def update_entropy(
    thread: Thread,
    current_chapter: int,
    had_real_progress: bool,
    config: LoomConfig | None = None,
    *,
    progress_type: ProgressType | None = None,
    chapters: int | None = None,
) -> Thread:
    """更新熵。必须在 last_mentioned_chapter 被刷新之前调用。

    无实质推进：熵 += 每章熵增 × 章节数（默认取距上次触及的章节数），单调且有上限；
    有实质推进：熵 × 保留比例，RESOLUTION 直接清零。
    chapters 用于章末重算按"本轮经过的章节数"计增，避免与审计阶段重复累积。
    """
    config = config or _DEFAULT_CONFIG
    if had_real_progress:
        if progress_type == ProgressType.RESOLUTION:
            entropy = 0.0
        else:
            entropy = thread.entropy * config.entropy_retention_on_progress
    else:
        elapsed = thread.chapters_since_mention(current_chapter) if chapters is None else chapters
        entropy = min(
            config.max_entropy,
            thread.entropy + config.entropy_growth_per_chapter * max(0, elapsed),
        )
    return thread.model_copy(update={"entropy": round(entropy, 2)})


# ────────────────────────────────────────────
# 生命周期
# ────────────────────────────────────────────


def next_status(
    thread: Thread, current_chapter: int, config: LoomConfig | None = None
) -> ThreadStatus:
    """自动状态规则（显式动作之前评估）。永远不会产生 CLOSED/ABANDONED。"""
    config = config or _DEFAULT_CONFIG
    status = thread.status
    if thread.is_terminal:
        return status

    distance = thread.chapters_since_mention(current_chapter)

    if status == ThreadStatus.SEED:
        progressed = (
            thread.progress_count > 0 or thread.last_progress_type in REAL_PROGRESS
        )
        aged = current_chapter - thread.first_chapter >= config.seed_promotion_chapters
        return ThreadStatus.OPEN if progressed or aged else ThreadStatus.SEED

    if status in (ThreadStatus.OPEN, ThreadStatus.BLOOMING):
        if distance >= config.stall_threshold_chapters and not thread.director_attention_forced:
            return ThreadStatus.STALLED
        if (
            status == ThreadStatus.OPEN
            and thread.progress_count >= config.bloom_min_progress
            and urgency(thread, current_chapter, config) >= config.bloom_urgency_trigger
        ):
            return ThreadStatus.BLOOMING
        return status

    # STALLED：任何一次新的触及即可恢复
    if thread.stalled_chapter is not None:
        fresh = thread.last_mentioned_chapter > thread.stalled_chapter
    else:
        fresh = distance < config.stall_threshold_chapters
    return ThreadStatus.OPEN if fresh else ThreadStatus.STALLED


def transition(
    thread: Thread,
    target: ThreadStatus,
    current_chapter: int,
    reason: str = "",
) -> Thread:
    """执行一次状态迁移。非法边被拒绝：记录警告并原样返回线索。"""
    if thread.status == target:
        return thread
    if not is_allowed(thread.status, target):
        logger.warning(
            "拒绝非法状态迁移 %s: %s → %s",
            thread.signature,
            thread.status.value,
            target.value,
        )
        return thread

    update: dict = {"status": target, "updated_at": time.time()}
    if target == ThreadStatus.BLOOMING:
        update["blooming_chapter"] = current_chapter
    elif target == ThreadStatus.STALLED:
        update["stalled_chapter"] = current_chapter
    elif target == ThreadStatus.ABANDONED:
        update["intentional_abandonment"] = True
        update["abandonment_reason"] = reason
    if target in (ThreadStatus.CLOSED, ThreadStatus.ABANDONED):
        update["urgency_score"] = 0.0
    logger.debug("线索 %s: %s → %s (第%d章)", thread.signature, thread.status.value, target.value, current_chapter)
    return thread.model_copy(update=update)


def resolution_route(status: ThreadStatus) -> tuple[ThreadStatus, ...]:
    """从 status 回收到 CLOSED 需经过的状态序列，不可回收时为空。"""
    return _RESOLUTION_ROUTE.get(status, ())


def resolve(thread: Thread, current_chapter: int) -> Thread:
    """显式回收：沿状态图逐边走到 CLOSED，途经 BLOOMING 时记下 blooming_chapter。

    SEED 与终态线索原样返回。
    """
    for target in resolution_route(thread.status):
        thread = transition(thread, target, current_chapter)
    return thread


def payoff_horizon(
    thread: Thread, current_chapter: int, config: LoomConfig | None = None
) -> HorizonState | None:
    """回收窗口判定，没有 blooming_chapter 时返回 None。"""
    if thread.blooming_chapter is None:
        return None
    config = config or _DEFAULT_CONFIG
    window = config.payoff_window(thread.category)
    opens = thread.blooming_chapter + window.min_delay
    closes = thread.blooming_chapter + window.max_delay
    if current_chapter < opens:
        return HorizonState.TOO_EARLY
    if current_chapter > closes:
        return HorizonState.OVERDUE
    return HorizonState.PERFECT_WINDOW


# ────────────────────────────────────────────
# 章末重算
# ────────────────────────────────────────────


def recompute(store: ThreadStore, current_chapter: int, config: LoomConfig | None = None) -> ThreadStore:
    """章末重算：为本章未触及的线索累积熵，应用自动状态规则，刷新紧迫度缓存。

    同一章重复调用不会重复累积熵（以 last_recomputed_chapter 为准）。
    从未重算过的快照按完整的未触及距离补齐熵。
    """
    config = config or _DEFAULT_CONFIG
    previous = store.last_recomputed_chapter
    elapsed = None if previous is None else max(0, current_chapter - previous)

    threads: list[Thread] = []
    for thread in store.threads:
        if thread.is_terminal:
            threads.append(thread)
            continue
        if elapsed != 0 and thread.last_mentioned_chapter < current_chapter:
            distance = thread.chapters_since_mention(current_chapter)
            thread = update_entropy(
                thread,
                current_chapter,
                False,
                config,
                chapters=distance if elapsed is None else min(elapsed, distance),
            )
        status = next_status(thread, current_chapter, config)
        if status != thread.status:
            thread = transition(thread, status, current_chapter)
        threads.append(with_urgency(thread, current_chapter, config))

    return store.with_threads(threads).model_copy(
        update={"last_recomputed_chapter": max(current_chapter, previous or current_chapter)}
    )


# ────────────────────────────────────────────
# 仪表盘辅助
# ────────────────────────────────────────────


def narrative_gravity(thread: Thread, current_chapter: int) -> float:
    """叙事引力 = karma × 距离 / max(1, |速度|)，BLOOMING ×2，STALLED ×1.5。"""
    distance = thread.chapters_since_mention(current_chapter)
    gravity = thread.karma_weight * distance / max(1, abs(thread.velocity))
    gravity *= _GRAVITY_STATUS_FACTOR.get(thread.status, 1.0)
    return round(gravity, 1)


def pulse_color(thread: Thread, score: float) -> PulseColor:
    if thread.status == ThreadStatus.BLOOMING:
        return PulseColor.GOLD
    if thread.status == ThreadStatus.STALLED or score > 500:
        return PulseColor.RED
    if score > 300:
        return PulseColor.ORANGE
    if score > 100:
        return PulseColor.YELLOW
    return PulseColor.GREEN


def thread_health_metrics(
    thread: Thread, current_chapter: int, config: LoomConfig | None = None
) -> ThreadHealthMetrics:
    config = config or _DEFAULT_CONFIG
    score = urgency(thread, current_chapter, config)
    distance = thread.chapters_since_mention(current_chapter)
    until_critical = None
    if not thread.is_terminal and thread.status != ThreadStatus.STALLED:
        until_critical = max(0, config.stall_threshold_chapters - distance)
    return ThreadHealthMetrics(
        thread_id=thread.id,
        signature=thread.signature,
        health_score=max(0.0, 100.0 - round(score / 10)),
        urgency=score,
        pulse_color=pulse_color(thread, score),
        crack_effect=thread.entropy > config.high_entropy_threshold,
        glow_effect=thread.status == ThreadStatus.BLOOMING,
        horizon=payoff_horizon(thread, current_chapter, config),
        chapters_since_mention=distance,
        chapters_until_critical=until_critical,
    )
