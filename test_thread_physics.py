"""测试线索物理引擎：紧迫度、债务、熵、生命周期、回收窗口。"""

import itertools

from threadloom.config.settings import LoomConfig
from threadloom.engine import physics
from threadloom.engine.audit_applier import apply_audit
from threadloom.models.selection import HorizonState, PulseColor
from threadloom.models.thread import (
    ProgressType,
    Thread,
    ThreadCategory,
    ThreadStatus,
)
from threadloom.state.thread_store import ThreadStore


def make_thread(**overrides) -> Thread:
    fields = dict(
        novel_id="n1",
        signature="REVENGE_SUN_FAMILY",
        category=ThreadCategory.MAJOR,
        karma_weight=70,
        first_chapter=1,
        last_mentioned_chapter=1,
    )
    fields.update(overrides)
    return Thread(**fields)


# ────────────────────────────────────────────
# 紧迫度
# ────────────────────────────────────────────


def test_urgency_formula():
    """1.5 × (3 章 × 7 + 债务 10 + 熵 5) = 54。"""
    t = make_thread(last_mentioned_chapter=5, payoff_debt=10, entropy=5)
    assert physics.urgency(t, 8) == 54.0


def test_urgency_terminal_is_zero_and_pin_is_neutral():
    t = make_thread(last_mentioned_chapter=2, payoff_debt=30)
    pinned = t.model_copy(update={"director_attention_forced": True})
    closed = t.model_copy(update={"status": ThreadStatus.CLOSED})
    assert physics.urgency(pinned, 9) == physics.urgency(t, 9)
    assert physics.urgency(closed, 9) == 0.0


def test_urgency_is_capped():
    t = make_thread(payoff_debt=10_000)
    assert physics.urgency(t, 50) == 1000.0
    assert physics.urgency(t, 50, LoomConfig(urgency_cap=500)) == 500.0


def test_urgency_monotonicity():
    """其他不变时，紧迫度对债务、熵、距离单调不减。"""
    base = make_thread(last_mentioned_chapter=3)
    by_debt = [physics.urgency(base.model_copy(update={"payoff_debt": d}), 6) for d in (0, 10, 50, 200, 900)]
    by_entropy = [physics.urgency(base.model_copy(update={"entropy": e}), 6) for e in (0, 5, 30, 100)]
    by_distance = [physics.urgency(base, ch) for ch in (3, 4, 8, 20, 200)]
    for series in (by_debt, by_entropy, by_distance):
        assert series == sorted(series)


def test_determinism():
    t = make_thread(
        status=ThreadStatus.BLOOMING, blooming_chapter=4, last_mentioned_chapter=6,
        payoff_debt=12, entropy=3, progress_count=2,
    )
    for _ in range(3):
        assert physics.urgency(t, 9) == physics.urgency(t, 9)
        assert physics.next_status(t, 9) == physics.next_status(t, 9)
        assert physics.payoff_horizon(t, 9) == physics.payoff_horizon(t, 9)


# ────────────────────────────────────────────
# 债务与熵
# ────────────────────────────────────────────


def test_increment_debt_by_progress_type():
    t = make_thread(payoff_debt=20, velocity=0)

    info = physics.increment_debt(t, ProgressType.INFO)
    assert info.payoff_debt == 27
    assert info.velocity == -1

    escalated = physics.increment_debt(t, ProgressType.ESCALATION)
    assert escalated.payoff_debt == 6
    assert escalated.velocity == 1

    assert physics.increment_debt(make_thread(payoff_debt=5), ProgressType.ESCALATION).payoff_debt == 0
    assert physics.increment_debt(t, ProgressType.RESOLUTION).payoff_debt == 0
    # 原对象不变
    assert t.payoff_debt == 20


def test_velocity_is_clamped():
    t = make_thread(velocity=10)
    assert physics.increment_debt(t, ProgressType.ESCALATION).velocity == 10
    t = make_thread(velocity=-10)
    assert physics.increment_debt(t, ProgressType.NONE).velocity == -10


def test_update_entropy():
    t = make_thread(last_mentioned_chapter=1)
    assert physics.update_entropy(t, 4, False).entropy == 6.0
    assert physics.update_entropy(t.model_copy(update={"entropy": 99}), 4, False).entropy == 100.0

    stale = make_thread(entropy=50)
    assert physics.update_entropy(stale, 4, True, progress_type=ProgressType.ESCALATION).entropy == 10.0
    assert physics.update_entropy(stale, 4, True, progress_type=ProgressType.RESOLUTION).entropy == 0.0
    assert stale.entropy == 50


# ────────────────────────────────────────────
# 生命周期
# ────────────────────────────────────────────


def test_scenario_open_thread_stalls_after_threshold():
    """第5章开线，直到第20章未再提及，停滞阈值10 → STALLED。"""
    config = LoomConfig(stall_threshold_chapters=10)
    t = make_thread(first_chapter=5, last_mentioned_chapter=5)
    assert physics.next_status(t, 14, config) == ThreadStatus.OPEN
    assert physics.next_status(t, 20, config) == ThreadStatus.STALLED

    pinned = t.model_copy(update={"director_attention_forced": True})
    assert physics.next_status(pinned, 20, config) == ThreadStatus.OPEN


def test_seed_promotion():
    seed = make_thread(
        category=ThreadCategory.SEED, status=ThreadStatus.SEED, karma_weight=20,
    )
    assert physics.next_status(seed, 5) == ThreadStatus.SEED
    assert physics.next_status(seed, 11) == ThreadStatus.OPEN
    escalated = seed.model_copy(
        update={"progress_count": 1, "last_progress_type": ProgressType.ESCALATION}
    )
    assert physics.next_status(escalated, 2) == ThreadStatus.OPEN


def test_open_blooms_when_urgent_and_progressed():
    t = make_thread(last_mentioned_chapter=10, payoff_debt=50, progress_count=1)
    assert physics.next_status(t, 10) == ThreadStatus.BLOOMING
    # 没有实质推进不开花
    assert physics.next_status(t.model_copy(update={"progress_count": 0}), 10) == ThreadStatus.OPEN


def test_stalled_recovers_on_fresh_mention():
    t = make_thread(status=ThreadStatus.STALLED, stalled_chapter=8, last_mentioned_chapter=9)
    assert physics.next_status(t, 9) == ThreadStatus.OPEN
    still = make_thread(status=ThreadStatus.STALLED, stalled_chapter=8, last_mentioned_chapter=3)
    assert physics.next_status(still, 9) == ThreadStatus.STALLED


def test_next_status_never_terminal():
    for status in ThreadStatus:
        t = make_thread(status=status, last_mentioned_chapter=1, payoff_debt=500, progress_count=3)
        result = physics.next_status(t, 40)
        if status in (ThreadStatus.CLOSED, ThreadStatus.ABANDONED):
            assert result == status
        else:
            assert result not in (ThreadStatus.CLOSED, ThreadStatus.ABANDONED)


def test_transition_invariant():
    """任意迁移结果要么是原状态，要么沿合法边到达。"""
    for source, target in itertools.product(ThreadStatus, ThreadStatus):
        t = make_thread(status=source)
        result = physics.transition(t, target, 7, reason="测试")
        if result.status != source:
            assert result.status in physics.ALLOWED_TRANSITIONS[source]
        if target not in physics.ALLOWED_TRANSITIONS[source] and target != source:
            assert result is t


def test_transition_stamps_fields():
    t = make_thread()
    bloomed = physics.transition(t, ThreadStatus.BLOOMING, 12)
    assert bloomed.blooming_chapter == 12

    stalled = physics.transition(t, ThreadStatus.STALLED, 9)
    assert stalled.stalled_chapter == 9

    abandoned = physics.transition(t, ThreadStatus.ABANDONED, 9, reason="作者改纲")
    assert abandoned.intentional_abandonment is True
    assert abandoned.abandonment_reason == "作者改纲"
    assert abandoned.urgency_score == 0.0

    closed = t.model_copy(update={"status": ThreadStatus.CLOSED})
    assert physics.transition(closed, ThreadStatus.OPEN, 10) is closed


# ────────────────────────────────────────────
# 状态图
# ────────────────────────────────────────────

# SEED→OPEN→BLOOMING→CLOSED；任意非终态→STALLED→OPEN；任意非终态→ABANDONED
STATE_GRAPH = {
    (ThreadStatus.SEED, ThreadStatus.OPEN),
    (ThreadStatus.OPEN, ThreadStatus.BLOOMING),
    (ThreadStatus.BLOOMING, ThreadStatus.CLOSED),
    (ThreadStatus.SEED, ThreadStatus.STALLED),
    (ThreadStatus.OPEN, ThreadStatus.STALLED),
    (ThreadStatus.BLOOMING, ThreadStatus.STALLED),
    (ThreadStatus.STALLED, ThreadStatus.OPEN),
    (ThreadStatus.SEED, ThreadStatus.ABANDONED),
    (ThreadStatus.OPEN, ThreadStatus.ABANDONED),
    (ThreadStatus.BLOOMING, ThreadStatus.ABANDONED),
    (ThreadStatus.STALLED, ThreadStatus.ABANDONED),
}


def test_allowed_transitions_match_state_graph():
    edges = {
        (source, target)
        for source, targets in physics.ALLOWED_TRANSITIONS.items()
        for target in targets
    }
    assert edges == STATE_GRAPH
    # 只有 BLOOMING 能直接关闭
    assert physics.transition(make_thread(status=ThreadStatus.SEED), ThreadStatus.CLOSED, 5).status == ThreadStatus.SEED
    assert physics.transition(make_thread(), ThreadStatus.CLOSED, 5).status == ThreadStatus.OPEN


def test_resolve_walks_the_state_graph():
    opened = physics.resolve(make_thread(), 9)
    assert opened.status == ThreadStatus.CLOSED
    assert opened.blooming_chapter == 9
    assert opened.urgency_score == 0.0

    stalled = physics.resolve(make_thread(status=ThreadStatus.STALLED, stalled_chapter=4), 9)
    assert stalled.status == ThreadStatus.CLOSED
    assert physics.resolution_route(ThreadStatus.STALLED) == (
        ThreadStatus.OPEN, ThreadStatus.BLOOMING, ThreadStatus.CLOSED,
    )

    blooming = make_thread(status=ThreadStatus.BLOOMING, blooming_chapter=3)
    assert physics.resolve(blooming, 9).blooming_chapter == 3

    seed = make_thread(status=ThreadStatus.SEED)
    assert physics.resolve(seed, 9) is seed
    assert physics.resolution_route(ThreadStatus.CLOSED) == ()


def _assert_graph_steps(before: ThreadStore, after: ThreadStore) -> None:
    previous = {t.id: t.status for t in before.threads}
    for t in after.threads:
        source = previous.get(t.id)
        if source is not None and source != t.status:
            assert (source, t.status) in STATE_GRAPH, f"{t.signature}: {source} → {t.status}"


def test_mixed_chapters_only_take_state_graph_edges():
    """混合 CREATE/UPDATE/RESOLVE/STALL 与章末重算，每一步状态变化都是状态图上的一条边。"""
    script = {
        1: [
            {"signature": "A", "action": "CREATE", "category": "MAJOR", "progressType": "ESCALATION"},
            {"signature": "B", "action": "CREATE", "category": "SEED"},
            {"signature": "C", "action": "CREATE", "category": "MINOR"},
            {"signature": "D", "action": "CREATE", "category": "SOVEREIGN"},
            {"signature": "E", "action": "CREATE", "category": "MINOR"},
        ],
        2: [
            {"signature": "A", "progressType": "ESCALATION"},
            {"signature": "B", "action": "RESOLVE"},
            {"signature": "C", "action": "STALL"},
            {"signature": "D"},
        ],
        3: [
            {"signature": "C", "action": "RESOLVE"},
            {"signature": "D", "action": "STALL"},
            {"signature": "B", "progressType": "ESCALATION"},
        ],
        4: [
            {"signature": "A", "action": "RESOLVE"},
            {"signature": "D"},
            {"signature": "B", "action": "STALL"},
        ],
        5: [
            {"signature": "D", "action": "RESOLVE"},
            {"signature": "B", "action": "RESOLVE"},
        ],
        13: [{"signature": "E"}],
        14: [{"signature": "E", "action": "RESOLVE"}],
    }
    config = LoomConfig(max_new_threads_per_chapter=5)
    store = ThreadStore(novel_id="n1")
    for chapter in range(1, 15):
        result = apply_audit(store, script.get(chapter, []), chapter, config)
        for applied in result.applied:
            for source, target in zip(applied.status_path, applied.status_path[1:]):
                assert (source, target) in STATE_GRAPH, f"{applied.signature}: {source} → {target}"
        _assert_graph_steps(store, result.store)
        store = physics.recompute(result.store, chapter, config)
        _assert_graph_steps(result.store, store)
        if chapter == 2:
            assert store.find_by_signature("B").status != ThreadStatus.CLOSED

    assert {t.signature: t.status for t in store.threads} == {
        sig: ThreadStatus.CLOSED for sig in "ABCDE"
    }


# ────────────────────────────────────────────
# 回收窗口
# ────────────────────────────────────────────


def test_scenario_payoff_horizon():
    """第12章开花的主线，窗口 [3, 10]。"""
    t = make_thread(
        category=ThreadCategory.SOVEREIGN, karma_weight=90,
        status=ThreadStatus.BLOOMING, blooming_chapter=12,
    )
    assert physics.payoff_horizon(t, 14) == HorizonState.TOO_EARLY
    assert physics.payoff_horizon(t, 15) == HorizonState.PERFECT_WINDOW
    assert physics.payoff_horizon(t, 18) == HorizonState.PERFECT_WINDOW
    assert physics.payoff_horizon(t, 22) == HorizonState.PERFECT_WINDOW
    assert physics.payoff_horizon(t, 25) == HorizonState.OVERDUE
    assert physics.payoff_horizon(make_thread(), 25) is None


# ────────────────────────────────────────────
# 章末重算
# ────────────────────────────────────────────


def _store() -> ThreadStore:
    return ThreadStore(
        novel_id="n1",
        threads=[
            make_thread(signature="A", category=ThreadCategory.MINOR, karma_weight=40, last_mentioned_chapter=5),
            make_thread(signature="B", category=ThreadCategory.MINOR, karma_weight=40, last_mentioned_chapter=3),
        ],
    )


def test_recompute_ages_untouched_threads_once_per_chapter():
    store = _store()
    after = physics.recompute(store, 5)
    a, b = after.find_by_signature("A"), after.find_by_signature("B")
    assert a.entropy == 0.0
    # 首次重算按完整的未触及距离（2 章）补齐
    assert b.entropy == 4.0
    assert b.urgency_score == 12.0
    assert after.version == store.version + 1
    assert after.last_recomputed_chapter == 5

    again = physics.recompute(after, 5)
    assert again.find_by_signature("B").entropy == 4.0

    later = physics.recompute(again, 6)
    assert later.find_by_signature("A").entropy == 2.0
    assert later.find_by_signature("B").entropy == 6.0
    # 输入快照不变
    assert store.find_by_signature("B").entropy == 0.0


def test_first_recompute_ages_full_distance():
    """从未重算过的快照：第3章之后再未触及，第20章的熵与逐章重算一致。"""
    store = ThreadStore(novel_id="n1", threads=[make_thread(signature="C", last_mentioned_chapter=3)])
    once = physics.recompute(store, 20).find_by_signature("C")
    assert once.entropy == 34.0

    stepwise = store
    for chapter in range(4, 21):
        stepwise = physics.recompute(stepwise, chapter)
    assert stepwise.find_by_signature("C").entropy == once.entropy


def test_recompute_applies_automatic_transitions():
    after = physics.recompute(_store(), 8)
    b = after.find_by_signature("B")
    assert b.status == ThreadStatus.STALLED
    assert b.stalled_chapter == 8
    assert after.find_by_signature("A").status == ThreadStatus.OPEN


# ────────────────────────────────────────────
# 仪表盘辅助
# ────────────────────────────────────────────


def test_narrative_gravity():
    t = make_thread(last_mentioned_chapter=1)
    assert physics.narrative_gravity(t, 5) == 280.0
    assert physics.narrative_gravity(t.model_copy(update={"status": ThreadStatus.BLOOMING}), 5) == 560.0
    assert physics.narrative_gravity(t.model_copy(update={"velocity": -2}), 5) == 140.0


def test_thread_health_metrics():
    t = make_thread(category=ThreadCategory.MINOR, karma_weight=40, entropy=70)
    m = physics.thread_health_metrics(t, 1)
    assert m.urgency == 70.0
    assert m.health_score == 93.0
    assert m.pulse_color == PulseColor.GREEN
    assert m.crack_effect is True
    assert m.chapters_until_critical == 5

    bloom = physics.thread_health_metrics(
        make_thread(status=ThreadStatus.BLOOMING, blooming_chapter=1), 2
    )
    assert bloom.pulse_color == PulseColor.GOLD
    assert bloom.glow_effect is True
    assert bloom.horizon == HorizonState.TOO_EARLY

    stalled = physics.thread_health_metrics(
        make_thread(status=ThreadStatus.STALLED, stalled_chapter=6), 7
    )
    assert stalled.pulse_color == PulseColor.RED
    assert stalled.chapters_until_critical is None
