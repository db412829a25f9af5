from .engine import TransitionError, apply_transition, ensure_transition
from .registry import WORKFLOWS

__all__ = ["TransitionError", "WORKFLOWS", "apply_transition", "ensure_transition"]
