"""书记官 Agent：审计刚完成的章节，给出线索分类事件。

这是引擎的第一个外部调用点。调用失败（超时、网络、JSON 无法解析）时
返回 fallback=True 的空结果：不新建线索，选择器照常基于现有快照运行。
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from threadloom.agents.utils import extract_json, extract_response_text, invoke_with_retry
from threadloom.config.settings import AgentConfig
from threadloom.engine.audit_applier import normalize_events
from threadloom.models.audit import ClassifierOutput
from threadloom.models.thread import Thread
from threadloom.prompts import load_prompt
from threadloom.state.loom_state import LoomState

logger = logging.getLogger(__name__)

CLERK_SYSTEM_PROMPT = load_prompt("clerk_system")
CLERK_SCHEMA = load_prompt("clerk_schema")


def build_thread_context(threads: Iterable[Thread]) -> str:
    """活跃线索摘要：签名、标题、类别/状态、karma、债务、回收条件。"""
    lines: list[str] = []
    for t in threads:
        if t.is_terminal:
            continue
        line = (
            f"- {t.signature}（{t.title}）[{t.category.value}/{t.status.value}] "
            f"karma={t.karma_weight} 债务={t.payoff_debt:.0f}"
        )
        if t.resolution_criteria:
            line += f"\n  回收条件：{t.resolution_criteria}"
        recent = t.summary_text(limit=2)
        if recent:
            line += "\n  " + recent.replace("\n", "\n  ")
        lines.append(line)
    return "\n".join(lines) if lines else "（暂无活跃线索）"


def build_clerk_prompt(
    chapter_text: str,
    threads: Iterable[Thread],
    chapter_number: int,
    max_chars: int = 8000,
) -> str:
    text = chapter_text[:max_chars]
    truncated = "\n...（已截断）" if len(chapter_text) > max_chars else ""
    return f"""# 当前活跃线索
{build_thread_context(threads)}

# 第{chapter_number}章正文
{text}{truncated}

---
请审计本章触及的所有线索。

{CLERK_SCHEMA}"""


def parse_classifier_response(data: Any) -> ClassifierOutput:
    """把模型返回的 JSON 规整为 ClassifierOutput（不抛异常）。"""
    if isinstance(data, list):
        data = {"events": data}
    if not isinstance(data, dict):
        return ClassifierOutput(
            normalization_warnings=[f"分类器输出不是对象: {type(data).__name__}"]
        )
    events, notes = normalize_events(data.get("events"))
    raw_warnings = data.get("consistencyWarnings", data.get("consistency_warnings"))
    consistency = (
        [str(w) for w in raw_warnings if w] if isinstance(raw_warnings, list) else []
    )
    return ClassifierOutput(
        events=events,
        consistency_warnings=consistency,
        normalization_warnings=notes,
    )


def audit_chapter(
    model: BaseChatModel,
    chapter_text: str,
    threads: Iterable[Thread],
    chapter_number: int,
    agent_config: AgentConfig | None = None,
) -> ClassifierOutput:
    """调用模型审计一章。任何失败都降级为空结果。"""
    agent_config = agent_config or AgentConfig()
    if not agent_config.enabled:
        logger.info("书记官已关闭，第%d章走纯物理路径", chapter_number)
        return ClassifierOutput(fallback=True)

    prompt = build_clerk_prompt(
        chapter_text, list(threads), chapter_number, agent_config.max_chapter_chars
    )
    try:
        response = invoke_with_retry(
            model,
            [SystemMessage(content=CLERK_SYSTEM_PROMPT), HumanMessage(content=prompt)],
            max_retries=agent_config.max_retries,
            operation_name=f"clerk_audit_ch{chapter_number}",
            timeout=agent_config.timeout_seconds,
        )
        data = extract_json(extract_response_text(response))
    except Exception as e:
        logger.error("第%d章线索审计失败，降级为纯物理结果: %s", chapter_number, e)
        return ClassifierOutput(
            fallback=True,
            normalization_warnings=[f"审计调用失败: {type(e).__name__}: {e}"],
        )

    output = parse_classifier_response(data)
    logger.info(
        "第%d章审计返回 %d 条事件，%d 条一致性警告",
        chapter_number,
        len(output.events),
        len(output.consistency_warnings),
    )
    return output


def create_audit_node(
    model: BaseChatModel,
    agent_config: AgentConfig | None = None,
) -> Callable[[LoomState], dict[str, Any]]:
    """创建章节审计节点。

    输入: chapter_text + store
    输出: classifier_output
    """

    def audit_node(state: LoomState) -> dict[str, Any]:
        store = state["store"]
        output = audit_chapter(
            model,
            state.get("chapter_text", ""),
            store.active_threads(),
            state["chapter_number"],
            agent_config,
        )
        return {
            "classifier_output": output,
            "warnings": list(output.normalization_warnings),
            "next_action": "apply_audit",
        }

    return audit_node
