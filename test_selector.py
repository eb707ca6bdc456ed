"""测试线索选择器与整体健康度。"""

from threadloom.config.settings import LoomConfig
from threadloom.engine import physics
from threadloom.engine.selector import health, select
from threadloom.models.selection import HorizonState
from threadloom.models.thread import Thread, ThreadCategory, ThreadStatus


def make_thread(signature: str, **overrides) -> Thread:
    fields = dict(
        novel_id="n1",
        signature=signature,
        category=ThreadCategory.MINOR,
        karma_weight=40,
        first_chapter=1,
        last_mentioned_chapter=1,
    )
    fields.update(overrides)
    return Thread(**fields)


def test_scenario_stalled_thread_surfaces_in_stale_warnings():
    """第5章开线后一直未提及；钉选线索占满预算时，它出现在停滞警告里。"""
    config = LoomConfig(director_constraints_per_chapter=1, stall_threshold_chapters=10)
    forgotten = make_thread(
        "BLOOD_OATH", category=ThreadCategory.MAJOR, karma_weight=70,
        first_chapter=5, last_mentioned_chapter=5,
    )
    pinned = make_thread(
        "TOURNAMENT", first_chapter=15, last_mentioned_chapter=15, director_attention_forced=True,
    )
    for chapter in (16, 20):
        result = select([forgotten, pinned], chapter, config)
        assert [t.signature for t in result.primary] == ["TOURNAMENT"]
        assert [t.signature for t in result.stale_warnings] == ["BLOOD_OATH"]
        assert result.stale_warnings[0].status == ThreadStatus.STALLED
    # 输入线索不被修改
    assert forgotten.status == ThreadStatus.OPEN


def test_budget_and_pins():
    threads = [make_thread(f"T{i}", last_mentioned_chapter=i) for i in range(1, 7)]
    result = select(threads, 8, LoomConfig(director_constraints_per_chapter=3))
    assert len(result.primary) == 3

    pinned = [t.model_copy(update={"director_attention_forced": True}) for t in threads[:4]]
    result = select(pinned + threads[4:], 8, LoomConfig(director_constraints_per_chapter=3))
    assert len(result.primary) == 4
    assert {t.signature for t in result.primary} == {"T1", "T2", "T3", "T4"}


def test_ranking_and_tie_break():
    major = make_thread("MAJOR_ONE", category=ThreadCategory.MAJOR, karma_weight=70, last_mentioned_chapter=5)
    minor = make_thread("MINOR_ONE", last_mentioned_chapter=5)
    result = select([minor, major], 6, LoomConfig(director_constraints_per_chapter=1))
    assert result.primary[0].signature == "MAJOR_ONE"

    b = make_thread("B_THREAD", last_mentioned_chapter=5)
    a = make_thread("A_THREAD", last_mentioned_chapter=5)
    first = select([b, a], 6, LoomConfig(director_constraints_per_chapter=1))
    second = select([a, b], 6, LoomConfig(director_constraints_per_chapter=1))
    assert first.primary[0].signature == "A_THREAD"
    assert [t.signature for t in first.secondary] == [t.signature for t in second.secondary]


def test_secondary_and_reasoning():
    threads = [make_thread(f"T{i:02d}", last_mentioned_chapter=i) for i in range(1, 11)]
    result = select(threads, 11, LoomConfig(director_constraints_per_chapter=3, stall_threshold_chapters=50))
    assert len(result.primary) == 3
    assert len(result.secondary) == 5
    for t in threads:
        assert any(t.signature in line for line in result.reasoning)


def test_forbidden_resolutions():
    sovereign = make_thread(
        "HEAVEN_DEFIANCE", category=ThreadCategory.SOVEREIGN, karma_weight=90,
        status=ThreadStatus.BLOOMING, blooming_chapter=12, last_mentioned_chapter=13, progress_count=2,
    )
    result = select([sovereign], 14)
    assert [t.signature for t in result.forbidden_resolutions] == ["HEAVEN_DEFIANCE"]

    later = sovereign.model_copy(update={"last_mentioned_chapter": 17})
    assert select([later], 18).forbidden_resolutions == []


def test_seed_protection():
    seed = make_thread(
        "JADE_PENDANT", category=ThreadCategory.SEED, karma_weight=20,
        status=ThreadStatus.SEED, first_chapter=10, last_mentioned_chapter=10,
    )
    assert [t.signature for t in select([seed], 11).forbidden_resolutions] == ["JADE_PENDANT"]
    assert select([seed], 11, LoomConfig(protect_seed_threads=False)).forbidden_resolutions == []


def test_forbidden_never_in_window():
    """禁止回收的线索，其回收窗口永远不是 perfect_window / overdue。"""
    threads = [
        make_thread(
            f"B{i}", category=ThreadCategory.MAJOR, karma_weight=70,
            status=ThreadStatus.BLOOMING, blooming_chapter=i, last_mentioned_chapter=19,
        )
        for i in range(5, 20)
    ]
    threads.append(make_thread("SEEDLING", status=ThreadStatus.SEED, last_mentioned_chapter=19))
    result = select(threads, 20)
    assert result.forbidden_resolutions
    for t in result.forbidden_resolutions:
        assert physics.payoff_horizon(t, 20) not in (HorizonState.PERFECT_WINDOW, HorizonState.OVERDUE)


def test_terminal_threads_ignored():
    closed = make_thread("DONE", status=ThreadStatus.CLOSED)
    result = select([closed], 5)
    assert result.primary == []
    assert result.forbidden_resolutions == []


def test_health():
    assert health([], 5) == 100.0

    stalled = make_thread(
        "STUCK", category=ThreadCategory.MAJOR, karma_weight=70,
        status=ThreadStatus.STALLED, stalled_chapter=8, last_mentioned_chapter=3,
    )
    fine = make_thread("FINE", last_mentioned_chapter=10)
    assert health([stalled, fine], 10) == 36.4

    noisy = make_thread("NOISY", last_mentioned_chapter=10, entropy=80)
    assert health([noisy, fine], 10) == 50.0
    assert health([make_thread("X", status=ThreadStatus.CLOSED)], 10) == 100.0
