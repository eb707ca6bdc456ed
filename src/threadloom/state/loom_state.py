"""单章处理流水线的 LangGraph 状态定义。"""

from __future__ import annotations

from operator import add
from typing import Annotated

from typing_extensions import TypedDict

from threadloom.models.audit import AuditResult, ClassifierOutput
from threadloom.models.directive import Directive
from threadloom.models.selection import SelectionResult
from threadloom.state.thread_store import ThreadStore


class LoomState(TypedDict, total=False):
    """章节图状态。

    使用 total=False 使所有字段可选，便于在节点中做部分更新。
    流程：audit → apply_audit → recompute → select → direct → persist。
    """

    # ── 输入 ──
    novel_id: str
    chapter_number: int  # 刚写完、待审计的章节
    chapter_text: str
    store: ThreadStore

    # ── 中间结果 ──
    classifier_output: ClassifierOutput | None
    audit_result: AuditResult | None
    selection: SelectionResult | None

    # ── 输出 ──
    directive: Directive | None
    saved_paths: list[str]

    # ── 流程控制 ──
    warnings: Annotated[list[str], add]
    next_action: str
