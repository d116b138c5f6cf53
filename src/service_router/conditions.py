"""Status condition helpers with Kubernetes ``metav1.Condition`` semantics."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def find_status_condition(
    conditions: List[Dict[str, Any]], condition_type: str
) -> Optional[Dict[str, Any]]:
    for condition in conditions:
        if condition.get("type") == condition_type:
            return condition
    return None


def set_status_condition(
    conditions: List[Dict[str, Any]],
    condition_type: str,
    status: bool,
    reason: str,
    message: str,
    observed_generation: int = 0,
) -> None:
    """Insert or update a condition in place.

    ``lastTransitionTime`` only moves when the status value flips, so
    re-applying the same condition leaves the list unchanged.
    """
    status_value = CONDITION_TRUE if status else CONDITION_FALSE
    existing = find_status_condition(conditions, condition_type)
    if existing is None:
        conditions.append(
            {
                "type": condition_type,
                "status": status_value,
                "reason": reason,
                "message": message,
                "observedGeneration": observed_generation,
                "lastTransitionTime": _now(),
            }
        )
        return

    if existing.get("status") != status_value:
        existing["status"] = status_value
        existing["lastTransitionTime"] = _now()
    existing["reason"] = reason
    existing["message"] = message
    existing["observedGeneration"] = observed_generation


def is_condition_true(conditions: List[Dict[str, Any]], condition_type: str) -> bool:
    condition = find_status_condition(conditions, condition_type)
    return condition is not None and condition.get("status") == CONDITION_TRUE
