"""
Payment Routes

This module provides:
- POST /api/payments/webhook/razorpay: Razorpay events (signature-verified, no auth)
- GET /api/payments/status: subscription, limits, usage and features
- POST /api/payments/subscribe: start a plan upgrade (checkout scaffold)
- POST /api/payments/cancel: cancel the current subscription

Subscription changes all go through the subscription state machine.
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_store_dependency, rate_limited
from api.schemas import CancelRequest, SubscribeRequest
from core.config import get_payments_config
from core.errors import GatewayError
from core.plans import plan_features
from core.redis_client import get_redis
from core.store import Store
from core.subscription import transition_subscription
from core.tenant_context import SaasContext
from core.usage_limits import get_usage_snapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

# Webhook event -> (target status, whether the event may carry a plan change)
WEBHOOK_TRANSITIONS = {
    "payment.captured": ("ACTIVE", True),
    "payment.failed": ("PAST_DUE", False),
    "subscription.cancelled": ("CANCELED", False),
    "subscription.activated": ("ACTIVE", True),
}


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    """Check an x-razorpay-signature header (hex HMAC-SHA256 of the raw body)."""
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


def _event_entity(event: Dict[str, Any]) -> Dict[str, Any]:
    payload = event.get("payload") or {}
    container = payload.get("payment") or payload.get("subscription") or {}
    return container.get("entity") or {}


def _tenant_id(entity: Dict[str, Any]) -> Optional[int]:
    try:
        return int((entity.get("notes") or {}).get("tenant_id"))
    except (TypeError, ValueError):
        return None


def _transition_reason(event_type: str, entity: Dict[str, Any]) -> str:
    if event_type == "payment.captured":
        return f"Razorpay payment {entity.get('id')}"
    if event_type == "payment.failed":
        return f"Payment failed: {entity.get('error_description') or 'unknown'}"
    if event_type == "subscription.cancelled":
        return "Razorpay subscription cancelled"
    return "Razorpay subscription activated"


@router.post("/webhook/razorpay")
async def razorpay_webhook(request: Request, store: Store = Depends(get_store_dependency)):
    """
    Handle a Razorpay webhook.

    Processing errors are logged and still acknowledged so that Razorpay
    does not retry on our failures.
    """
    secret = get_payments_config().get("razorpay_webhook_secret")
    if not secret:
        logger.error("Razorpay webhook secret not configured")
        raise GatewayError(500, "WEBHOOK_NOT_CONFIGURED", "Webhook not configured")

    signature = request.headers.get("x-razorpay-signature")
    if not signature:
        raise GatewayError(400, "MISSING_SIGNATURE", "Missing signature")

    body = await request.body()
    if not verify_webhook_signature(body, signature, secret):
        logger.warning("Invalid Razorpay webhook signature")
        raise GatewayError(400, "INVALID_SIGNATURE", "Invalid signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise GatewayError(400, "INVALID_JSON", "Invalid JSON")

    event_type = event.get("event")
    logger.info(f"Razorpay webhook event: {event_type}")

    if event_type not in WEBHOOK_TRANSITIONS:
        logger.info(f"Unhandled webhook event: {event_type}")
        return {"ok": True}

    entity = _event_entity(event)
    tenant_id = _tenant_id(entity)
    if tenant_id is None:
        logger.warning(f"{event_type} missing tenant_id in notes")
        return {"ok": True}

    new_status, may_change_plan = WEBHOOK_TRANSITIONS[event_type]
    plan_code = (entity.get("notes") or {}).get("plan_code") if may_change_plan else None

    result = transition_subscription(
        store,
        get_redis(),
        tenant_id,
        new_status,
        new_plan_code=plan_code or None,
        reason=_transition_reason(event_type, entity),
    )
    if not result["ok"]:
        logger.warning(f"Transition failed for tenant {tenant_id}: {result['error']}")

    return {"ok": True}


@router.get("/status")
async def payment_status(ctx: SaasContext = Depends(rate_limited(60))):
    """Current subscription, plan limits, usage counters and feature flags."""
    tenant, plan = ctx.tenant, ctx.plan
    return {
        "subscription": {
            "status": tenant["subscription_status"],
            "trial_ends_at": tenant.get("trial_ends_at"),
            "plan": {
                "code": plan["code"],
                "name": plan["name"],
                "price_monthly": plan.get("price_monthly"),
                "price_yearly": plan.get("price_yearly"),
            },
        },
        "limits": {
            "daily_request_limit": plan.get("daily_request_limit"),
            "monthly_request_limit": plan.get("monthly_request_limit"),
            "monthly_video_limit": plan.get("monthly_video_limit"),
            "max_image_size": plan.get("max_image_size"),
            "max_video_size": plan.get("max_video_size"),
            "soft_daily_limit": plan.get("soft_daily_limit"),
        },
        "usage": get_usage_snapshot(get_redis(), tenant["id"]),
        "features": plan_features(plan),
    }


@router.post("/subscribe")
async def subscribe(
    body: SubscribeRequest,
    ctx: SaasContext = Depends(rate_limited(10)),
    store: Store = Depends(get_store_dependency),
):
    """
    Start a plan upgrade.

    Returns the target plan and the notes a Razorpay order must carry so the
    payment webhook can activate the tenant. No order is created yet.
    """
    if not body.plan_code:
        raise GatewayError(400, "VALIDATION_ERROR", "plan_code is required")

    target_plan = store.get_plan_by_code(body.plan_code)
    if target_plan is None:
        raise GatewayError(400, "VALIDATION_ERROR", f"Plan '{body.plan_code}' not found")
    if target_plan["code"] == ctx.plan["code"]:
        raise GatewayError(400, "VALIDATION_ERROR", "Already on this plan")

    billing = body.billing or "monthly"
    price = target_plan["price_yearly"] if billing == "yearly" else target_plan["price_monthly"]

    return {
        "message": "Checkout session created (scaffold)",
        "plan": {
            "code": target_plan["code"],
            "name": target_plan["name"],
            "price": price,
            "billing": billing,
        },
        "tenant": {
            "id": ctx.tenant["id"],
            "current_plan": ctx.plan["code"],
            "subscription_status": ctx.tenant["subscription_status"],
        },
        "razorpay": {
            "order_id": None,
            "key_id": get_payments_config().get("razorpay_key_id") or None,
            "notes": {"tenant_id": ctx.tenant["id"], "plan_code": target_plan["code"]},
        },
    }


@router.post("/cancel")
async def cancel(
    body: Optional[CancelRequest] = None,
    ctx: SaasContext = Depends(rate_limited(10)),
    store: Store = Depends(get_store_dependency),
):
    result = transition_subscription(
        store,
        get_redis(),
        ctx.tenant["id"],
        "CANCELED",
        reason=(body.reason if body else None) or "User requested cancellation",
    )
    if not result["ok"]:
        raise GatewayError(400, "INVALID_TRANSITION", result["error"])

    return {
        "message": "Subscription canceled",
        "subscription": {"status": result["tenant"]["subscription_status"], "from": result["from"]},
    }
