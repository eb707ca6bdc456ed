"""线索调度核心：物理、选择、审计应用、指令组装。"""

from threadloom.engine.audit_applier import apply_audit, normalize_event
from threadloom.engine.directive_assembler import (
    assemble_directive,
    directive_to_constraints,
    format_directive_for_prompt,
    required_action,
)
from threadloom.engine.physics import (
    increment_debt,
    next_status,
    payoff_horizon,
    recompute,
    resolve,
    transition,
    update_entropy,
    urgency,
)
from threadloom.engine.selector import health, select

__all__ = [
    "apply_audit",
    "assemble_directive",
    "directive_to_constraints",
    "format_directive_for_prompt",
    "health",
    "increment_debt",
    "next_status",
    "normalize_event",
    "payoff_horizon",
    "recompute",
    "required_action",
    "resolve",
    "select",
    "transition",
    "update_entropy",
    "urgency",
]
