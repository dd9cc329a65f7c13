"""
Subscription lifecycle state machine.

Valid transitions:
    TRIAL      -> ACTIVE (payment), PAST_DUE (trial expired), CANCELED
    ACTIVE     -> PAST_DUE (payment failed), CANCELED, SUSPENDED (admin)
    PAST_DUE   -> ACTIVE (payment recovered), CANCELED, SUSPENDED
    SUSPENDED  -> ACTIVE (admin reinstates)
    CANCELED   -> ACTIVE (re-subscribe), TRIAL (admin grants new trial)
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from core.store import Store, utcnow
from core.usage_limits import clear_usage_counters

logger = logging.getLogger(__name__)


SUBSCRIPTION_STATUSES = ("TRIAL", "ACTIVE", "PAST_DUE", "SUSPENDED", "CANCELED")

VALID_TRANSITIONS: Dict[str, List[str]] = {
    "TRIAL": ["ACTIVE", "PAST_DUE", "CANCELED"],
    "ACTIVE": ["PAST_DUE", "CANCELED", "SUSPENDED"],
    "PAST_DUE": ["ACTIVE", "CANCELED", "SUSPENDED"],
    "SUSPENDED": ["ACTIVE"],
    "CANCELED": ["ACTIVE", "TRIAL"],
}


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def transition_subscription(
    store: Store,
    redis_client,
    tenant_id: int,
    new_status: str,
    new_plan_code: Optional[str] = None,
    trial_days: Optional[int] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Move a tenant to a new subscription status.

    Validates the transition, optionally switches plan and (for TRIAL)
    sets a new trial end. On plan change the tenant's current usage
    counters are cleared so the new limits apply immediately.

    Args:
        store: Store instance.
        redis_client: Redis client or None.
        tenant_id: Tenant to transition.
        new_status: Target subscription status.
        new_plan_code: Optional plan code to switch to.
        trial_days: Length of a newly granted trial (TRIAL only).
        reason: Free-text reason, logged.

    Returns:
        {"ok": True, "tenant", "from", "to"} on success, otherwise
        {"ok": False, "error", ["valid_targets"]}.
    """
    tenant = store.get_tenant(tenant_id)
    if tenant is None:
        return {"ok": False, "error": "Tenant not found"}

    from_status = tenant["subscription_status"]
    if not is_valid_transition(from_status, new_status):
        return {
            "ok": False,
            "error": f"Invalid transition: {from_status} → {new_status}",
            "valid_targets": VALID_TRANSITIONS.get(from_status, []),
        }

    updates: Dict[str, Any] = {"subscription_status": new_status}

    if new_plan_code:
        plan = store.get_plan_by_code(new_plan_code)
        if plan is None:
            return {"ok": False, "error": f"Plan '{new_plan_code}' not found"}
        updates["plan_id"] = plan["id"]

    if new_status == "TRIAL" and trial_days:
        updates["trial_ends_at"] = utcnow() + timedelta(days=trial_days)

    updated = store.update_tenant(tenant_id, **updates)

    if new_plan_code:
        clear_usage_counters(redis_client, tenant_id)

    logger.info(
        f"Tenant {tenant_id}: {from_status} -> {new_status}"
        + (f" (plan {new_plan_code})" if new_plan_code else "")
        + (f" reason={reason}" if reason else "")
    )
    return {"ok": True, "tenant": updated, "from": from_status, "to": new_status}
