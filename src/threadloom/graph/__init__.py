"""单章处理流水线（LangGraph）。"""

from threadloom.graph.chapter_graph import (
    build_chapter_graph,
    compile_chapter_graph,
    create_initial_state,
    run_chapter,
)

__all__ = [
    "build_chapter_graph",
    "compile_chapter_graph",
    "create_initial_state",
    "run_chapter",
]
