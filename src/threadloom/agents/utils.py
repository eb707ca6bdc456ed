"""Agent 通用工具：带超时与重试的模型调用、响应文本与 JSON 提取。"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage

logger = logging.getLogger(__name__)

# 可重试的异常：网络/限流/临时故障
RETRYABLE_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    OSError,
)


def _invoke_bounded(model: BaseChatModel, messages: list[BaseMessage], timeout: float | None) -> Any:
    """单次调用；timeout 不为空时在守护线程中执行并限时等待。

    超时后挂起的调用无法被中断，只是被丢弃：守护线程不会阻止进程退出。
    真正释放连接要靠模型客户端自身的请求超时（见 main._init_model）。
    """
    if timeout is None:
        return model.invoke(messages)
    outcome: dict[str, Any] = {}

    def _run() -> None:
        try:
            outcome["value"] = model.invoke(messages)
        except Exception as e:  # 交给调用线程重新抛出
            outcome["error"] = e

    worker = threading.Thread(target=_run, name="threadloom-llm", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise TimeoutError(f"模型调用超过 {timeout} 秒未返回")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def invoke_with_retry(
    model: BaseChatModel,
    messages: list[BaseMessage],
    max_retries: int = 2,
    base_delay: float = 2.0,
    operation_name: str = "invoke",
    timeout: float | None = None,
) -> Any:
    """带超时与重试的 LLM 调用。

    - 每次尝试都受 timeout 限制（秒），超时按 TimeoutError 处理。
    - 仅对可重试异常（连接、超时、OS 等）重试，其他异常直接抛出。
    - 重试间隔指数退避：base_delay, base_delay*2, ...
    """
    for attempt in range(max_retries + 1):
        try:
            return _invoke_bounded(model, messages, timeout)
        except RETRYABLE_EXCEPTIONS as e:
            if attempt >= max_retries:
                logger.error("%s 重试 %d 次后仍失败: %s", operation_name, max_retries, e)
                raise
            delay = base_delay * (2**attempt)
            logger.warning(
                "%s 第 %d 次失败 (%s)，%s 秒后重试",
                operation_name,
                attempt + 1,
                type(e).__name__,
                delay,
            )
            time.sleep(delay)
    raise RuntimeError("invoke_with_retry unexpected state")


def extract_text(content: str | list | Any) -> str:
    """从 LLM 响应内容中提取纯文本。

    OpenAI 直接返回 str；Gemini 返回 list[dict]，每个 dict 含 'type' 和 'text'。
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return str(content)


def extract_response_text(response: BaseMessage) -> str:
    return extract_text(response.content)


def extract_json(text: str) -> Any:
    """从 LLM 输出中提取 JSON，支持 markdown 代码块与夹杂说明文字的情况。

    Raises:
        json.JSONDecodeError: 找不到可解析的 JSON 时。
    """
    try:
        if "```json" in text:
            start = text.index("```json") + len("```json")
            end = text.index("```", start)
            text = text[start:end].strip()
        elif "```" in text:
            start = text.index("```") + 3
            # 跳过语言标记行
            if "\n" in text[start : start + 20]:
                start = text.index("\n", start) + 1
            end = text.index("```", start)
            text = text[start:end].strip()
    except ValueError:
        # 代码块不完整，交给下面的括号定位
        pass

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        first_brace = text.find("{")
        last_brace = text.rfind("}")
        if first_brace != -1 and last_brace > first_brace:
            return json.loads(text[first_brace : last_brace + 1])
        first_bracket = text.find("[")
        last_bracket = text.rfind("]")
        if first_bracket != -1 and last_bracket > first_bracket:
            return json.loads(text[first_bracket : last_bracket + 1])
        raise
