"""外部模型调用：书记官（审计）与导演（指令）。"""

from threadloom.agents.clerk import audit_chapter, create_audit_node
from threadloom.agents.director import create_direct_node, direct_chapter

__all__ = [
    "audit_chapter",
    "create_audit_node",
    "create_direct_node",
    "direct_chapter",
]
