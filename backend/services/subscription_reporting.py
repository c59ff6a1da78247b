"""Subscription reporting: per-user usage, global counts and per-plan revenue."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging
import math

from database import database
from models import SubscriptionStatus, UNLIMITED
from services.entitlement_engine import COUNTERS, apply_time_effects, compute_remaining, has_subscription, resolve_limit
from services.plan_catalog import plan_catalog
from services.subscription_service import subscription_service
from utils.dates import ensure_utc, utc_now

logger = logging.getLogger(__name__)

EXPIRING_SOON_DAYS = 7

# Response key per counter
USAGE_KEYS = {
    "browse": "browse_count",
    "listings": "listing_count",
    "job_posts": "job_posts_count",
}


def _usage(used: int, limit: int) -> Dict[str, Any]:
    used = max(0, used)
    return {
        "used": used,
        "allowed": limit,
        "remaining": compute_remaining(limit, used),
        "percentage": round(used / limit * 100, 2) if limit > 0 else 0,
        "unlimited": limit == UNLIMITED,
    }


def build_usage_stats(record: Optional[Dict[str, Any]], plan: Optional[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    if not has_subscription(record):
        empty = _usage(0, 0)
        return {
            "plan_name": "None",
            "status": "none",
            "payment_status": "none",
            "days_remaining": 0,
            **{key: dict(empty) for key in USAGE_KEYS.values()},
            "start_date": None,
            "end_date": None,
            "last_browse_reset": None,
            "is_expired": True,
            "is_expiring_soon": False,
        }

    end_date = ensure_utc(record.get("end_date")) or now
    days_remaining = max(0, math.ceil((end_date - now).total_seconds() / 86400))

    stats: Dict[str, Any] = {
        "plan_name": (plan or {}).get("display_name") or (plan or {}).get("name") or "Unknown",
        "status": record.get("status"),
        "payment_status": record.get("payment_status"),
        "days_remaining": days_remaining,
    }
    for name, key in USAGE_KEYS.items():
        spec = COUNTERS[name]
        stats[key] = _usage(int(record.get(spec.used_field) or 0), resolve_limit(record, plan, spec))

    stats.update(
        start_date=record.get("start_date"),
        end_date=record.get("end_date"),
        last_browse_reset=record.get("last_browse_reset"),
        is_expired=now > end_date,
        is_expiring_soon=0 < days_remaining <= EXPIRING_SOON_DAYS,
    )
    return stats


class SubscriptionReportingService:

    async def get_usage_stats(self, user_id: str) -> Dict[str, Any]:
        """Usage for one user. Time effects are applied; no free plan is granted here."""
        now = utc_now()
        user = await subscription_service.get_user(user_id)
        effects = apply_time_effects(user.get("subscription"), now)
        await subscription_service.persist_time_effects(user_id, effects)
        record = effects.record
        plan = await plan_catalog.get_plan(record.get("plan_id")) if has_subscription(record) else None
        return build_usage_stats(record, plan, now)

    async def _subscribed_users(self) -> List[Dict[str, Any]]:
        db = database.get_db()
        return await db.users.find(
            {"subscription.plan_id": {"$nin": [None, ""]}},
            {"_id": 0, "user_id": 1, "subscription.plan_id": 1, "subscription.status": 1, "subscription.end_date": 1},
        ).to_list(None)

    async def get_global_stats(self) -> Dict[str, Any]:
        now = utc_now()
        users = await self._subscribed_users()
        plans = await plan_catalog.list_plans()
        prices = {p["plan_id"]: p.get("price") or 0 for p in plans}

        statuses = [u["subscription"].get("status") for u in users]
        horizon = now + timedelta(days=EXPIRING_SOON_DAYS)
        expiring_soon = 0
        for user in users:
            end_date = ensure_utc(user["subscription"].get("end_date"))
            if end_date and now < end_date <= horizon:
                expiring_soon += 1

        return {
            "subscriptions": {
                "total": len(users),
                "active": statuses.count(SubscriptionStatus.ACTIVE.value),
                "expired": statuses.count(SubscriptionStatus.EXPIRED.value),
                "suspended": statuses.count(SubscriptionStatus.SUSPENDED.value),
                "expiring_soon": expiring_soon,
            },
            "plans": {
                "total": len(plans),
                "active": sum(1 for p in plans if p.get("is_active")),
            },
            "revenue": {
                "total": sum(prices.get(u["subscription"]["plan_id"], 0) for u in users),
                "currency": "INR",
            },
        }

    async def get_plan_stats(self) -> List[Dict[str, Any]]:
        """Per plan: subscriber counts and nominal revenue (subscribers x price)."""
        users = await self._subscribed_users()
        plans = await plan_catalog.list_plans()

        totals: Dict[str, int] = {}
        actives: Dict[str, int] = {}
        for user in users:
            plan_id = user["subscription"]["plan_id"]
            totals[plan_id] = totals.get(plan_id, 0) + 1
            if user["subscription"].get("status") == SubscriptionStatus.ACTIVE.value:
                actives[plan_id] = actives.get(plan_id, 0) + 1

        return [
            {
                "plan_id": plan["plan_id"],
                "plan_name": plan["name"],
                "display_name": plan.get("display_name"),
                "plan_type": plan.get("plan_type"),
                "price": plan.get("price") or 0,
                "active_subscriptions": actives.get(plan["plan_id"], 0),
                "total_subscriptions": totals.get(plan["plan_id"], 0),
                "revenue": totals.get(plan["plan_id"], 0) * (plan.get("price") or 0),
                "is_active": plan.get("is_active", True),
            }
            for plan in plans
        ]


# Singleton instance
subscription_reporting = SubscriptionReportingService()
