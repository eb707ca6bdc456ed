"""测试指令组装：动作映射、导演提议合并、节奏降级、约束展开与渲染。"""

import itertools

from threadloom.config.settings import LoomConfig
from threadloom.engine.directive_assembler import (
    assemble_directive,
    directive_to_constraints,
    format_directive_for_prompt,
    required_action,
)
from threadloom.models.directive import (
    ClimaxProtection,
    ConstraintType,
    DirectorProposal,
    Intensity,
    ProposedAnchor,
    RequiredAction,
    TensionCurve,
)
from threadloom.models.selection import HorizonState, SelectionResult
from threadloom.models.thread import SummaryEntry, Thread, ThreadCategory, ThreadStatus


def make_thread(signature: str, **overrides) -> Thread:
    fields = dict(
        novel_id="n1",
        signature=signature,
        category=ThreadCategory.MAJOR,
        karma_weight=70,
        first_chapter=1,
        last_mentioned_chapter=5,
    )
    fields.update(overrides)
    return Thread(**fields)


def _ripe() -> Thread:
    """第2章开花的主要线索，第6章处于回收窗口内。"""
    return make_thread("SECT_WAR", status=ThreadStatus.BLOOMING, blooming_chapter=2, resolution_criteria="两宗决战")


def _seed() -> Thread:
    return make_thread(
        "JADE_PENDANT", category=ThreadCategory.SEED, karma_weight=20, status=ThreadStatus.SEED,
    )


# ────────────────────────────────────────────
# 动作映射
# ────────────────────────────────────────────


def test_required_action_mapping():
    assert required_action(ThreadStatus.BLOOMING, HorizonState.PERFECT_WINDOW, 0) == RequiredAction.RESOLVE
    assert required_action(ThreadStatus.BLOOMING, HorizonState.OVERDUE, 0) == RequiredAction.RESOLVE
    assert required_action(ThreadStatus.BLOOMING, HorizonState.TOO_EARLY, 0) == RequiredAction.ESCALATE
    assert required_action(ThreadStatus.BLOOMING, None, 0) == RequiredAction.ESCALATE
    assert required_action(ThreadStatus.STALLED, None, 0) == RequiredAction.PROGRESS
    assert required_action(ThreadStatus.SEED, None, 999) == RequiredAction.FORESHADOW
    assert required_action(ThreadStatus.OPEN, None, 10) == RequiredAction.PROGRESS
    assert required_action(ThreadStatus.OPEN, None, 400) == RequiredAction.ESCALATE
    assert required_action(ThreadStatus.OPEN, None, 400, LoomConfig(escalate_urgency_threshold=500)) == (
        RequiredAction.PROGRESS
    )
    assert required_action(ThreadStatus.CLOSED, None, 0) == RequiredAction.TOUCH


def test_required_action_is_total():
    horizons = [None, *HorizonState]
    for status, horizon, urgency in itertools.product(ThreadStatus, horizons, (0.0, 1000.0)):
        assert isinstance(required_action(status, horizon, urgency), RequiredAction)


# ────────────────────────────────────────────
# 纯物理指令
# ────────────────────────────────────────────


def test_physics_only_directive():
    ripe = _ripe()
    open_thread = make_thread("BLOOD_OATH", summary=[SummaryEntry(chapter=5, text="立下血誓")])
    selection = SelectionResult(chapter_number=6, primary=[ripe, open_thread], health=80.0)
    directive = assemble_directive(selection, [ripe, open_thread], 6)

    assert directive.fallback is True
    assert [a.signature for a in directive.thread_anchors] == ["SECT_WAR", "BLOOD_OATH"]
    assert directive.thread_anchors[0].required_action == RequiredAction.RESOLVE
    assert "两宗决战" in directive.thread_anchors[0].mandatory_detail
    assert directive.thread_anchors[1].required_action == RequiredAction.PROGRESS
    assert "立下血誓" in directive.thread_anchors[1].mandatory_detail
    assert directive.pacing.intensity == Intensity.CLIMACTIC
    assert directive.pacing.tension_curve == TensionCurve.SPIKE
    assert directive.pacing.word_count_target == 3000
    assert "SECT_WAR" in directive.primary_goal


def test_fallback_pacing_by_health():
    t = make_thread("BLOOD_OATH")
    low = assemble_directive(SelectionResult(chapter_number=6, primary=[t], health=30.0), [t], 6)
    assert low.pacing.intensity == Intensity.HIGH
    fine = assemble_directive(SelectionResult(chapter_number=6, primary=[t], health=90.0), [t], 6)
    assert fine.pacing.intensity == Intensity.MEDIUM
    assert fine.pacing.tension_curve == TensionCurve.RISING

    empty = assemble_directive(SelectionResult(chapter_number=6), [], 6)
    assert empty.thread_anchors == []
    assert empty.primary_goal


def test_physics_resolve_on_forbidden_thread_is_escalated():
    ripe = _ripe()
    selection = SelectionResult(chapter_number=6, primary=[ripe], forbidden_resolutions=[ripe])
    directive = assemble_directive(selection, [ripe], 6)
    assert directive.thread_anchors[0].required_action == RequiredAction.ESCALATE
    assert any("禁止本章回收" in w for w in directive.warnings)


def test_forbidden_outcomes_and_climax_protection():
    seed = _seed()
    stale = make_thread("LOST_SWORD", status=ThreadStatus.STALLED, stalled_chapter=9, last_mentioned_chapter=2)
    selection = SelectionResult(
        chapter_number=12, forbidden_resolutions=[seed], stale_warnings=[stale],
    )
    directive = assemble_directive(selection, [seed, stale], 12)
    assert len(directive.forbidden_outcomes) == 1
    assert "JADE_PENDANT" in directive.forbidden_outcomes[0]
    assert directive.climax_protection.protected_threads == ["JADE_PENDANT"]
    assert any("LOST_SWORD" in w and "10" in w for w in directive.warnings)


# ────────────────────────────────────────────
# 导演提议合并
# ────────────────────────────────────────────


def test_scenario_proposal_resolve_on_seed_is_overridden():
    """导演要求回收受保护的伏笔 → 改为 FORESHADOW 并给出警告。"""
    seed = _seed()
    selection = SelectionResult(chapter_number=6, forbidden_resolutions=[seed])
    proposal = DirectorProposal(
        anchors=[ProposedAnchor(signature="JADE_PENDANT", required_action=RequiredAction.RESOLVE)],
    )
    directive = assemble_directive(selection, [seed], 6, proposal=proposal)
    anchor = directive.thread_anchors[0]
    assert anchor.signature == "JADE_PENDANT"
    assert anchor.required_action == RequiredAction.FORESHADOW
    assert any("禁止本章回收" in w for w in directive.warnings)
    assert directive.fallback is False


def test_proposal_cap_and_unknown_threads():
    a, b, c = make_thread("A"), make_thread("B"), make_thread("C")
    closed = make_thread("DONE", status=ThreadStatus.CLOSED)
    selection = SelectionResult(chapter_number=6, primary=[a, b])
    proposal = DirectorProposal(
        anchors=[
            ProposedAnchor(signature="A", mandatory_detail="A 必须露面"),
            ProposedAnchor(signature="GHOST"),
            ProposedAnchor(signature="DONE"),
            ProposedAnchor(signature="C", required_action=RequiredAction.ESCALATE),
        ],
    )
    directive = assemble_directive(
        selection, [a, b, c, closed], 6, LoomConfig(director_constraints_per_chapter=2), proposal,
    )
    assert [x.signature for x in directive.thread_anchors] == ["A", "B"]
    assert directive.thread_anchors[0].mandatory_detail == "A 必须露面"
    assert len([w for w in directive.warnings if "超出" in w]) == 3

    roomy = assemble_directive(
        selection, [a, b, c, closed], 6, LoomConfig(director_constraints_per_chapter=5), proposal,
    )
    assert [x.signature for x in roomy.thread_anchors] == ["A", "B", "C"]
    assert roomy.thread_anchors[2].required_action == RequiredAction.ESCALATE
    assert len([w for w in roomy.warnings if "不是活跃线索" in w]) == 2


def test_proposal_pacing_and_outcomes_merge():
    seed = _seed()
    t = make_thread("BLOOD_OATH")
    selection = SelectionResult(chapter_number=6, primary=[t], forbidden_resolutions=[seed])
    proposal = DirectorProposal(
        primary_goal="让血誓第一次付出代价",
        intensity=Intensity.LOW,
        required_tone="压抑",
        forbidden_outcomes=["主角不得突破境界"],
        climax_protection=ClimaxProtection(forbidden_reveals=["玉佩来历"]),
        reasoning="上一章节奏过快",
    )
    directive = assemble_directive(selection, [t, seed], 6, proposal=proposal)
    assert directive.primary_goal == "让血誓第一次付出代价"
    assert directive.pacing.intensity == Intensity.LOW
    assert directive.pacing.tension_curve == TensionCurve.RISING
    assert directive.pacing.word_count_target == 3000
    assert directive.required_tone == "压抑"
    assert directive.forbidden_outcomes[-1] == "主角不得突破境界"
    assert len(directive.forbidden_outcomes) == 2
    assert directive.climax_protection.forbidden_reveals == ["玉佩来历"]
    # 导演给了高潮保护，禁止回收的线索仍然在保护名单里
    assert directive.climax_protection.protected_threads == ["JADE_PENDANT"]
    assert "上一章节奏过快" in directive.reasoning


def test_proposal_protected_threads_are_unioned():
    seed = _seed()
    t = make_thread("BLOOD_OATH")
    selection = SelectionResult(chapter_number=6, primary=[t], forbidden_resolutions=[seed])
    proposal = DirectorProposal(
        climax_protection=ClimaxProtection(
            protected_threads=["BLOOD_OATH", "JADE_PENDANT"], reason="留到卷末",
        ),
    )
    directive = assemble_directive(selection, [t, seed], 6, proposal=proposal)
    assert directive.climax_protection.protected_threads == ["BLOOD_OATH", "JADE_PENDANT"]
    assert directive.climax_protection.reason == "留到卷末"

    no_protection = DirectorProposal(climax_protection=ClimaxProtection(forbidden_reveals=["身世"]))
    bare = assemble_directive(SelectionResult(chapter_number=6, primary=[t]), [t], 6, proposal=no_protection)
    assert bare.climax_protection.protected_threads == []


# ────────────────────────────────────────────
# 约束展开与渲染
# ────────────────────────────────────────────


def test_directive_to_constraints():
    seed = _seed()
    t = make_thread("BLOOD_OATH")
    selection = SelectionResult(chapter_number=6, primary=[t], forbidden_resolutions=[seed])
    proposal = DirectorProposal(forbidden_outcomes=["主角不得突破境界"])
    directive = assemble_directive(selection, [t, seed], 6, proposal=proposal)

    constraints = directive_to_constraints(directive, selection)
    types = [c.constraint_type for c in constraints]
    assert types == [
        ConstraintType.MUST_PROGRESS,
        ConstraintType.FORBIDDEN_RESOLUTION,
        ConstraintType.FORBIDDEN_OUTCOME,
    ]
    assert constraints[1].signature == "JADE_PENDANT"
    assert constraints[1].priority == 10

    # 没有选择结果时，所有禁止结果都以 FORBIDDEN_OUTCOME 出现
    loose = directive_to_constraints(directive)
    assert [c.constraint_type for c in loose].count(ConstraintType.FORBIDDEN_OUTCOME) == 2


def test_director_outcome_mentioning_prefixed_signature_is_kept():
    """禁止回收 FEUD 时，导演关于 FEUD_SECOND 的禁止结果不能被吞掉。"""
    feud = make_thread("FEUD")
    t = make_thread("BLOOD_OATH")
    selection = SelectionResult(chapter_number=6, primary=[t], forbidden_resolutions=[feud])
    proposal = DirectorProposal(forbidden_outcomes=["不得让 FEUD_SECOND 的幕后主使现身"])
    directive = assemble_directive(selection, [t, feud], 6, proposal=proposal)

    constraints = directive_to_constraints(directive, selection)
    outcomes = [c.description for c in constraints if c.constraint_type == ConstraintType.FORBIDDEN_OUTCOME]
    assert outcomes == ["不得让 FEUD_SECOND 的幕后主使现身"]
    assert [c.signature for c in constraints if c.constraint_type == ConstraintType.FORBIDDEN_RESOLUTION] == ["FEUD"]


def test_format_directive_for_prompt():
    seed = _seed()
    ripe = _ripe()
    selection = SelectionResult(chapter_number=6, primary=[ripe], forbidden_resolutions=[seed])
    text = format_directive_for_prompt(assemble_directive(selection, [ripe, seed], 6))
    assert text.startswith("## 第6章导演指令")
    for header in ("### 必须处理的线索", "### 禁止出现", "### 节奏", "### 高潮保护"):
        assert header in text
    assert "[回收] SECT_WAR" in text
    assert "JADE_PENDANT" in text

    bare = format_directive_for_prompt(assemble_directive(SelectionResult(chapter_number=3), [], 3))
    assert "（无）" in bare
    assert "### 禁止出现" not in bare
