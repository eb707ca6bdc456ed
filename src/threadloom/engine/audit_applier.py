"""审计应用器：把分类器对上一章的判定合并进线索快照。

normalize_event() 是分类器输出进入引擎的唯一入口：任何畸形输入都被规整
为封闭枚举，绝不抛异常。apply_audit() 只对调用方契约违规（章节号不递增）
抛 ValueError，其余问题一律写入 AuditResult.warnings。
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterable
from typing import Any

from threadloom.config.settings import LoomConfig
from threadloom.engine import physics
from threadloom.models.audit import (
    AppliedEvent,
    AuditResult,
    ClassifierEvent,
    ThreadAction,
)
from threadloom.models.selection import HorizonState
from threadloom.models.thread import (
    CATEGORY_KARMA,
    CATEGORY_RANK,
    REAL_PROGRESS,
    ProgressType,
    SummaryEntry,
    Thread,
    ThreadCategory,
    ThreadStatus,
    title_from_signature,
)
from threadloom.state.thread_store import ThreadStore

logger = logging.getLogger(__name__)

# 分类器可能使用的驼峰键 → 内部字段
_KEY_ALIASES = {
    "progressType": "progress_type",
    "summaryDelta": "summary_delta",
    "urgencyHint": "urgency_hint",
    "resolutionCriteria": "resolution_criteria",
    "criteriaMet": "criteria_met",
}

_SIGNATURE_SEP = re.compile(r"[^\w]+")


# ────────────────────────────────────────────
# 规整
# ────────────────────────────────────────────


def normalize_signature(value: Any) -> str:
    """签名规整为大写下划线形式，如 "revenge sun-family" → REVENGE_SUN_FAMILY。"""
    if not isinstance(value, str):
        return ""
    return _SIGNATURE_SEP.sub("_", value.strip()).strip("_").upper()


def _coerce_enum(enum_cls, value: Any, default):
    if isinstance(value, enum_cls):
        return value, True
    if isinstance(value, str):
        key = value.strip().upper()
        for member in enum_cls:
            if member.value == key:
                return member, True
    return default, False


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else str(value).strip()


def normalize_event(raw: Any) -> tuple[ClassifierEvent | None, list[str]]:
    """规整一条原始分类事件。

    Returns:
        (事件, 警告列表)。无法识别为事件（非 dict、签名为空）时事件为 None。
    """
    if isinstance(raw, ClassifierEvent):
        return raw, []
    if not isinstance(raw, dict):
        return None, [f"丢弃非对象分类事件: {type(raw).__name__}"]

    data = {_KEY_ALIASES.get(k, k): v for k, v in raw.items()}
    warnings: list[str] = []

    signature = normalize_signature(data.get("signature"))
    if not signature:
        return None, ["丢弃缺少签名的分类事件"]

    action, ok = _coerce_enum(ThreadAction, data.get("action"), ThreadAction.UPDATE)
    if not ok:
        warnings.append(f"{signature}: 未知动作 {data.get('action')!r}，按 UPDATE 处理")
    category, ok = _coerce_enum(ThreadCategory, data.get("category"), None)
    if not ok and data.get("category") is not None:
        fallback = "按 MINOR 处理" if action == ThreadAction.CREATE else "保持原类别"
        warnings.append(f"{signature}: 未知类别 {data.get('category')!r}，{fallback}")
    progress_type, ok = _coerce_enum(ProgressType, data.get("progress_type"), ProgressType.INFO)
    if not ok and data.get("progress_type") is not None:
        warnings.append(f"{signature}: 未知推进类型 {data.get('progress_type')!r}，按 INFO 处理")

    participants_raw = data.get("participants")
    participants: list[str] = []
    if isinstance(participants_raw, list):
        for p in participants_raw:
            name = _coerce_text(p)
            if name and name not in participants:
                participants.append(name)

    try:
        hint = int(data.get("urgency_hint", 5))
    except (TypeError, ValueError):
        hint = 5
    criteria_met = data.get("criteria_met")

    event = ClassifierEvent(
        signature=signature,
        action=action,
        category=category,
        progress_type=progress_type,
        summary_delta=_coerce_text(data.get("summary_delta")),
        participants=participants,
        urgency_hint=max(1, min(10, hint)),
        justification=_coerce_text(data.get("justification")),
        resolution_criteria=_coerce_text(data.get("resolution_criteria")),
        criteria_met=criteria_met if isinstance(criteria_met, bool) else None,
    )
    return event, warnings


def normalize_events(raw_events: Any) -> tuple[list[ClassifierEvent], list[str]]:
    if not isinstance(raw_events, list):
        if raw_events is None:
            return [], []
        return [], [f"分类事件应为列表，收到 {type(raw_events).__name__}，已忽略"]
    events: list[ClassifierEvent] = []
    warnings: list[str] = []
    for raw in raw_events:
        event, notes = normalize_event(raw)
        warnings.extend(notes)
        if event is not None:
            events.append(event)
    return events, warnings


# ────────────────────────────────────────────
# 合并
# ────────────────────────────────────────────


def criteria_certified(thread: Thread, event: ClassifierEvent) -> bool:
    """回收条件是否被本次事件明确认证。"""
    criteria = thread.resolution_criteria.strip()
    if not criteria:
        return True
    if event.criteria_met is not None:
        return event.criteria_met
    justification = event.justification.lower()
    return "criteria" in justification or criteria.lower() in justification


def _create_thread(novel_id: str, event: ClassifierEvent, chapter: int, config: LoomConfig) -> Thread:
    real = event.progress_type in REAL_PROGRESS
    category = event.category or ThreadCategory.MINOR
    thread = Thread(
        novel_id=novel_id,
        signature=event.signature,
        title=title_from_signature(event.signature),
        category=category,
        status=ThreadStatus.SEED if category == ThreadCategory.SEED else ThreadStatus.OPEN,
        karma_weight=CATEGORY_KARMA[category],
        first_chapter=chapter,
        last_mentioned_chapter=chapter,
        mention_count=1,
        progress_count=1 if real else 0,
        last_progress_type=event.progress_type,
        resolution_criteria=event.resolution_criteria,
        participants=list(event.participants),
        summary=[SummaryEntry(chapter=chapter, text=event.summary_delta)] if event.summary_delta else [],
    )
    return physics.with_urgency(thread, chapter, config)


def _merge(
    thread: Thread,
    event: ClassifierEvent,
    chapter: int,
    config: LoomConfig,
    elapsed: int | None,
) -> Thread:
    """UPDATE 合并：摘要、参与者、计数、债务、熵、最近触及。"""
    real = event.progress_type in REAL_PROGRESS
    update: dict[str, Any] = {
        "mention_count": thread.mention_count + 1,
        "progress_count": thread.progress_count + (1 if real else 0),
    }
    if event.summary_delta:
        update["summary"] = [*thread.summary, SummaryEntry(chapter=chapter, text=event.summary_delta)]
    merged = list(thread.participants)
    for name in event.participants:
        if name not in merged:
            merged.append(name)
    update["participants"] = merged
    if event.category is not None and CATEGORY_RANK[event.category] > CATEGORY_RANK[thread.category]:
        update["category"] = event.category
        update["karma_weight"] = max(thread.karma_weight, CATEGORY_KARMA[event.category])
    if event.resolution_criteria and not thread.resolution_criteria:
        update["resolution_criteria"] = event.resolution_criteria

    thread = thread.model_copy(update=update)
    thread = physics.increment_debt(thread, event.progress_type, config)
    # 熵必须在刷新 last_mentioned_chapter 之前更新
    chapters = None
    if elapsed is not None:
        chapters = min(elapsed, thread.chapters_since_mention(chapter))
    thread = physics.update_entropy(
        thread, chapter, real, config, progress_type=event.progress_type, chapters=chapters
    )
    return thread.model_copy(
        update={
            "last_mentioned_chapter": chapter,
            "last_progress_type": event.progress_type,
            "updated_at": time.time(),
        }
    )


def apply_audit(
    store: ThreadStore,
    events: Iterable[Any],
    chapter_number: int,
    config: LoomConfig | None = None,
    consistency_warnings: Iterable[str] = (),
) -> AuditResult:
    """把一章的分类事件应用到快照，返回新快照与统计。

    调用方契约：每章恰好一次，章节号严格递增。
    """
    config = config or LoomConfig()
    last = store.last_audited_chapter
    if last is not None and chapter_number <= last:
        raise ValueError(f"审计章节号必须递增: 第{chapter_number}章 <= 已审计的第{last}章")

    warnings: list[str] = []
    if last is not None and chapter_number > last + 1:
        warnings.append(f"章节号跳跃: 上次审计第{last}章，本次第{chapter_number}章")

    elapsed = None
    if store.last_recomputed_chapter is not None:
        elapsed = max(0, chapter_number - store.last_recomputed_chapter)

    threads: dict[str, Thread] = {t.id: t for t in store.threads}
    order = [t.id for t in store.threads]
    by_signature = {
        t.signature: t.id for t in store.threads if t.status != ThreadStatus.ABANDONED
    }

    applied: list[AppliedEvent] = []
    rejected: list[str] = []
    created = progressed = resolved = stalled = 0

    for raw in events:
        event, notes = normalize_event(raw)
        warnings.extend(notes)
        if event is None:
            continue

        requested = event.action
        existing_id = by_signature.get(event.signature)

        if requested == ThreadAction.CREATE and existing_id is None:
            if created >= config.max_new_threads_per_chapter:
                rejected.append(event.signature)
                warnings.append(
                    f"{event.signature}: 本章新线索已达上限 {config.max_new_threads_per_chapter}，丢弃"
                )
                continue
            min_chars = config.min_create_justification_chars
            if min_chars and len(event.justification) < min_chars:
                warnings.append(f"{event.signature}: 开线理由不足 {min_chars} 字，跳过")
                continue
            thread = _create_thread(store.novel_id, event, chapter_number, config)
            threads[thread.id] = thread
            order.append(thread.id)
            by_signature[thread.signature] = thread.id
            created += 1
            applied.append(
                AppliedEvent(
                    signature=event.signature,
                    requested_action=requested,
                    applied_action=ThreadAction.CREATE,
                    thread_id=thread.id,
                    status_after=thread.status,
                    status_path=[thread.status],
                )
            )
            continue

        if existing_id is None:
            warnings.append(f"{event.signature}: 未知线索，忽略 {requested.value} 事件")
            continue

        thread = threads[existing_id]
        if thread.is_terminal:
            warnings.append(
                f"{event.signature}: 线索已是终态 {thread.status.value}，忽略 {requested.value} 事件"
            )
            continue

        action = ThreadAction.UPDATE if requested == ThreadAction.CREATE else requested
        note = "签名已存在，按 UPDATE 处理" if requested == ThreadAction.CREATE else ""
        status_before = thread.status
        horizon = physics.payoff_horizon(thread, chapter_number, config)
        thread = _merge(thread, event, chapter_number, config, elapsed)
        if event.progress_type in REAL_PROGRESS:
            progressed += 1

        if action == ThreadAction.RESOLVE and status_before == ThreadStatus.SEED:
            warnings.append(f"{event.signature}: 种子线索尚未展开，不能直接回收，按 UPDATE 处理")
            action = ThreadAction.UPDATE
            note = "种子线索不能直接回收，降级为 UPDATE"

        if action == ThreadAction.RESOLVE:
            if not criteria_certified(thread, event):
                if config.resolution_policy == "strict":
                    warnings.append(f"{event.signature}: 回收条件未被认证，拒绝关闭（strict）")
                    action = ThreadAction.UPDATE
                    note = "回收条件未认证，降级为 UPDATE"
                else:
                    warnings.append(
                        f"{event.signature}: 回收条件「{thread.resolution_criteria}」未被明确认证，仍按回收处理"
                    )
            if action == ThreadAction.RESOLVE:
                if status_before != ThreadStatus.BLOOMING:
                    warnings.append(
                        f"{event.signature}: 在 {status_before.value} 状态下回收，可能过早"
                    )
                elif horizon == HorizonState.TOO_EARLY:
                    warnings.append(f"{event.signature}: 回收早于回收窗口")

        path = [status_before]
        if action == ThreadAction.RESOLVE:
            path.extend(physics.resolution_route(thread.status))
            thread = physics.resolve(thread, chapter_number)
            resolved += 1
        elif action == ThreadAction.STALL:
            thread = physics.transition(thread, ThreadStatus.STALLED, chapter_number)
            # 显式停滞以本章为起点，本章的触及不算重新提及
            thread = thread.model_copy(update={"stalled_chapter": chapter_number})
        else:
            target = physics.next_status(thread, chapter_number, config)
            thread = physics.transition(thread, target, chapter_number)
        if thread.status != path[-1]:
            path.append(thread.status)
        if thread.status == ThreadStatus.STALLED and status_before != ThreadStatus.STALLED:
            stalled += 1

        thread = physics.with_urgency(thread, chapter_number, config)
        threads[thread.id] = thread
        applied.append(
            AppliedEvent(
                signature=event.signature,
                requested_action=requested,
                applied_action=action,
                thread_id=thread.id,
                status_before=status_before,
                status_after=thread.status,
                status_path=path,
                note=note,
            )
        )

    new_store = store.with_threads(
        [threads[i] for i in order], last_audited_chapter=chapter_number
    )
    logger.info(
        "第%d章审计: 新建 %d，推进 %d，回收 %d，停滞 %d，警告 %d",
        chapter_number,
        created,
        progressed,
        resolved,
        stalled,
        len(warnings),
    )
    for w in warnings:
        logger.debug("审计警告: %s", w)

    return AuditResult(
        novel_id=store.novel_id,
        chapter_number=chapter_number,
        store=new_store,
        applied=applied,
        new_threads_created=created,
        threads_progressed=progressed,
        threads_resolved=resolved,
        threads_stalled=stalled,
        rejected_creates=rejected,
        warnings=warnings,
        consistency_warnings=list(consistency_warnings),
    )
