"""
Default subscription plans and the idempotent seeding routine.

Limits of 0 mean "unlimited". Image and video sizes are in megabytes.
"""

import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


# Plan boolean column -> human-readable feature name used in error messages
FEATURE_COLUMNS: Dict[str, str] = {
    "allow_face_search_one_to_one": "1:1 Face Verification",
    "allow_face_search_one_to_n": "1:N Face Search",
    "allow_face_search_n_to_n": "N:N Batch Comparison",
    "allow_video_processing": "Video Processing",
}

DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "code": "FREE",
        "name": "Free",
        "trial_days": 14,
        "daily_request_limit": 15,
        "soft_daily_limit": False,
        "monthly_request_limit": 200,
        "monthly_video_limit": 3,
        "max_image_size": 2,
        "max_video_size": 50,
        "price_monthly": 0,
        "price_yearly": 0,
        "allow_face_search_one_to_one": True,
        "allow_face_search_one_to_n": True,
        "allow_face_search_n_to_n": True,
        "allow_video_processing": True,
    },
    {
        "code": "PRO",
        "name": "Pro",
        "trial_days": 14,
        "daily_request_limit": 200,
        "soft_daily_limit": True,  # warn, don't block
        "monthly_request_limit": 500,
        "monthly_video_limit": 0,
        "max_image_size": 10,
        "max_video_size": 500,
        "price_monthly": 49.99,
        "price_yearly": 479.88,
        "allow_face_search_one_to_one": True,
        "allow_face_search_one_to_n": True,
        "allow_face_search_n_to_n": True,
        "allow_video_processing": True,
    },
    {
        "code": "ENTERPRISE",
        "name": "Enterprise",
        "trial_days": 30,
        "daily_request_limit": 0,
        "soft_daily_limit": False,
        "monthly_request_limit": 5000,
        "monthly_video_limit": 0,
        "max_image_size": 20,
        "max_video_size": 2048,
        "price_monthly": 199.99,
        "price_yearly": 1919.88,
        "allow_face_search_one_to_one": True,
        "allow_face_search_one_to_n": True,
        "allow_face_search_n_to_n": True,
        "allow_video_processing": True,
    },
    {
        "code": "UNLIMITED",
        "name": "Unlimited (Super Admin)",
        "trial_days": 0,
        "daily_request_limit": 0,
        "soft_daily_limit": False,
        "monthly_request_limit": 0,
        "monthly_video_limit": 0,
        "max_image_size": 100,
        "max_video_size": 10240,
        "price_monthly": 0,
        "price_yearly": 0,
        "allow_face_search_one_to_one": True,
        "allow_face_search_one_to_n": True,
        "allow_face_search_n_to_n": True,
        "allow_video_processing": True,
    },
]


def seed_plans(store) -> List[Dict[str, Any]]:
    """
    Upsert the default plans.

    Safe to call on every startup; existing rows are updated in place.

    Args:
        store: Store instance.

    Returns:
        The stored plans.
    """
    seeded = []
    for plan in DEFAULT_PLANS:
        seeded.append(store.upsert_plan(dict(plan)))
        logger.info(f"Plan {plan['code']} upserted")
    return seeded


def plan_features(plan: Dict[str, Any]) -> Dict[str, bool]:
    """Map a plan row to the feature flags exposed by /api/payments/status."""
    return {column: bool(plan.get(column)) for column in FEATURE_COLUMNS}
