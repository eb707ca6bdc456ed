"""条件路由逻辑。"""

from __future__ import annotations

from langgraph.graph import END

from threadloom.state.loom_state import LoomState

# 所有合法的节点名称
VALID_ACTIONS = {
    "audit",
    "apply_audit",
    "recompute",
    "select",
    "direct",
    "persist",
    "end",
}


def route_by_next_action(state: LoomState) -> str:
    """通用路由：根据 state['next_action'] 决定下一个节点。"""
    action = state.get("next_action", "end")
    if action == "end" or action not in VALID_ACTIONS:
        return END
    return action
