"""单章流水线：audit → apply_audit → recompute → select → direct → persist。

同一部小说严格按章节顺序串行执行；不同小说之间没有共享状态。
两个外部调用（审计、导演）失败时都会降级，流水线总能走完。
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from langchain_core.language_models import BaseChatModel
from langgraph.checkpoint.memory import InMemorySaver
from langgraph.graph import START, StateGraph

from threadloom.agents.clerk import create_audit_node
from threadloom.agents.director import create_direct_node
from threadloom.config.settings import AgentConfig, LoomConfig
from threadloom.engine.audit_applier import apply_audit
from threadloom.engine.directive_assembler import assemble_directive
from threadloom.engine.physics import recompute
from threadloom.engine.selector import select
from threadloom.graph.routing import route_by_next_action
from threadloom.models.audit import ClassifierOutput
from threadloom.output.manager import OutputManager
from threadloom.state.loom_state import LoomState
from threadloom.state.thread_store import ThreadStore

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────
# 内部节点
# ────────────────────────────────────────────


def _physics_only_audit_node(state: LoomState) -> dict[str, Any]:
    """没有审计模型时的占位节点：不产生任何事件。"""
    logger.info("未配置审计模型，第%d章走纯物理路径", state["chapter_number"])
    return {"classifier_output": ClassifierOutput(fallback=True), "next_action": "apply_audit"}


def _create_apply_audit_node(config: LoomConfig):
    def apply_audit_node(state: LoomState) -> dict[str, Any]:
        output = state.get("classifier_output") or ClassifierOutput(fallback=True)
        result = apply_audit(
            state["store"],
            output.events,
            state["chapter_number"],
            config,
            consistency_warnings=output.consistency_warnings,
        )
        if output.fallback:
            result = result.model_copy(update={"fallback": True})
        return {
            "audit_result": result,
            "store": result.store,
            "warnings": list(result.warnings),
            "next_action": "recompute",
        }

    return apply_audit_node


def _create_recompute_node(config: LoomConfig):
    def recompute_node(state: LoomState) -> dict[str, Any]:
        store = recompute(state["store"], state["chapter_number"], config)
        return {"store": store, "next_action": "select"}

    return recompute_node


def _create_select_node(config: LoomConfig):
    def select_node(state: LoomState) -> dict[str, Any]:
        selection = select(state["store"].threads, state["chapter_number"] + 1, config)
        return {"selection": selection, "next_action": "direct"}

    return select_node


def _create_physics_only_direct_node(config: LoomConfig):
    def direct_node(state: LoomState) -> dict[str, Any]:
        directive = assemble_directive(
            state["selection"],
            state["store"].threads,
            state["chapter_number"] + 1,
            config,
        )
        return {"directive": directive, "next_action": "persist"}

    return direct_node


def _create_persist_node(output_manager: OutputManager | None):
    """快照、审计结果、指令立即写入磁盘。"""

    def persist_node(state: LoomState) -> dict[str, Any]:
        if output_manager is None:
            return {"saved_paths": [], "next_action": "end"}

        chapter = state["chapter_number"]
        paths = [str(output_manager.save_snapshot(state["store"], chapter))]
        audit_result = state.get("audit_result")
        if audit_result is not None:
            paths.append(str(output_manager.save_audit_result(audit_result)))
        directive = state.get("directive")
        if directive is not None:
            paths.extend(str(p) for p in output_manager.save_directive(directive))
        logger.info("持久化完成: 第%d章快照与第%d章指令已写入磁盘", chapter, chapter + 1)
        return {"saved_paths": paths, "next_action": "end"}

    return persist_node


# ────────────────────────────────────────────
# 图构建
# ────────────────────────────────────────────


def build_chapter_graph(
    clerk_model: BaseChatModel | None = None,
    director_model: BaseChatModel | None = None,
    config: LoomConfig | None = None,
    clerk_config: AgentConfig | None = None,
    director_config: AgentConfig | None = None,
    output_manager: OutputManager | None = None,
) -> StateGraph:
    """构建单章流水线。模型为 None 时对应节点走纯物理路径。"""
    if config is None:
        config = LoomConfig()

    audit = create_audit_node(clerk_model, clerk_config) if clerk_model else _physics_only_audit_node
    direct = (
        create_direct_node(director_model, config, director_config)
        if director_model
        else _create_physics_only_direct_node(config)
    )

    workflow = StateGraph(LoomState)
    workflow.add_node("audit", audit)
    workflow.add_node("apply_audit", _create_apply_audit_node(config))
    workflow.add_node("recompute", _create_recompute_node(config))
    workflow.add_node("select", _create_select_node(config))
    workflow.add_node("direct", direct)
    workflow.add_node("persist", _create_persist_node(output_manager))

    workflow.add_edge(START, "audit")
    for node in ("audit", "apply_audit", "recompute", "select", "direct", "persist"):
        workflow.add_conditional_edges(node, route_by_next_action)
    return workflow


def compile_chapter_graph(
    clerk_model: BaseChatModel | None = None,
    director_model: BaseChatModel | None = None,
    config: LoomConfig | None = None,
    clerk_config: AgentConfig | None = None,
    director_config: AgentConfig | None = None,
    output_manager: OutputManager | None = None,
):
    """构建并编译单章流水线，带 Checkpointer。"""
    workflow = build_chapter_graph(
        clerk_model=clerk_model,
        director_model=director_model,
        config=config,
        clerk_config=clerk_config,
        director_config=director_config,
        output_manager=output_manager,
    )
    return workflow.compile(checkpointer=InMemorySaver())


def create_initial_state(store: ThreadStore, chapter_number: int, chapter_text: str = "") -> LoomState:
    return LoomState(
        novel_id=store.novel_id,
        chapter_number=chapter_number,
        chapter_text=chapter_text,
        store=store,
        classifier_output=None,
        audit_result=None,
        selection=None,
        directive=None,
        saved_paths=[],
        warnings=[],
        next_action="audit",
    )


def run_chapter(
    store: ThreadStore,
    chapter_number: int,
    chapter_text: str = "",
    *,
    clerk_model: BaseChatModel | None = None,
    director_model: BaseChatModel | None = None,
    config: LoomConfig | None = None,
    clerk_config: AgentConfig | None = None,
    director_config: AgentConfig | None = None,
    output_manager: OutputManager | None = None,
) -> LoomState:
    """跑完一章的完整流水线，返回最终状态。"""
    app = compile_chapter_graph(
        clerk_model=clerk_model,
        director_model=director_model,
        config=config,
        clerk_config=clerk_config,
        director_config=director_config,
        output_manager=output_manager,
    )
    run_config = {"configurable": {"thread_id": f"{store.novel_id}-{chapter_number}-{uuid.uuid4().hex[:8]}"}}
    return app.invoke(create_initial_state(store, chapter_number, chapter_text), run_config)
