from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.orm import Session

GuardResult = List[Dict[str, str]]


def _get_value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def guard_installation_work_codes(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    order_type = _get_value(after_obj, "order_type")
    order_type = getattr(order_type, "value", order_type)
    if order_type != "INSTALLATION":
        return []
    if not _get_value(after_obj, "work_codes"):
        return [{"field": "work_codes", "reason": "completed installation requires at least one work code"}]
    return []


def guard_amendment_window(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    from fieldops.apps.orders import policy

    completed_at = _get_value(before_obj, "completed_at")
    if completed_at is None:
        return [{"field": "completed_at", "reason": "order has no completion time"}]
    if not policy.is_within_amend_window(completed_at):
        return [
            {
                "field": "completed_at",
                "reason": f"amendment window of {policy.ORDER_AMEND_WINDOW_MINUTES} minutes has expired",
            }
        ]
    return []
