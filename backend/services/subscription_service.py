"""Subscription Service - lifecycle of the subscription record embedded in users.subscription.

States: none -> active -> {suspended, expired} -> active; cancel clears the record.

Every write snapshots plan limits onto the record (listings_limit,
job_posts_limit, browse_count_limit) so later plan edits never change an
in-progress billing period. Admin mutations are audit logged.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging
import re

from database import database
from models import AuditAction, PaymentStatus, SubscriptionRecord, SubscriptionStatus, UserRole
from services.entitlement_engine import (
    TimeEffects,
    has_subscription,
    persona_for_role,
    snapshot_limits,
)
from services.plan_catalog import plan_catalog
from services.subscription_errors import ExpiredError, NotFoundError, ValidationError, storage_guard
from services.usage_ledger import usage_ledger
from utils.audit import create_audit_log, get_audit_trail
from utils.dates import ensure_utc, utc_now

logger = logging.getLogger(__name__)

AUTO_ASSIGN_NOTE = "Free plan assigned automatically"

SORTABLE_FIELDS = {
    "start_date": "subscription.start_date",
    "end_date": "subscription.end_date",
    "status": "subscription.status",
    "name": "name",
    "email": "email",
}
MAX_PAGE_SIZE = 100


# ============================================================================
# RECORD CONSTRUCTION
# ============================================================================
def payment_status_for(plan: Dict[str, Any]) -> str:
    """Paid plans start pending until billing confirms; free plans are complete."""
    return PaymentStatus.PENDING.value if (plan.get("price") or 0) > 0 else PaymentStatus.COMPLETED.value


def build_subscription_record(
    plan: Dict[str, Any],
    now: datetime,
    duration: Optional[int] = None,
    custom_listings_limit: Optional[int] = None,
    custom_browse_limit: Optional[int] = None,
    notes: Optional[str] = None,
    payment_status: Optional[str] = None,
) -> Dict[str, Any]:
    """Fresh record on `plan` with zeroed counters and a limit snapshot."""
    days = duration or plan.get("duration") or 0
    limits = snapshot_limits(plan)
    if custom_listings_limit is not None:
        limits["listings_limit"] = custom_listings_limit
    if custom_browse_limit is not None:
        limits["browse_count_limit"] = custom_browse_limit

    return SubscriptionRecord(
        plan_id=plan["plan_id"],
        status=SubscriptionStatus.ACTIVE,
        payment_status=payment_status or payment_status_for(plan),
        start_date=now,
        end_date=now + timedelta(days=days),
        last_browse_reset=now,
        notes=notes or "",
        **limits,
    ).model_dump()


def subscription_view(record: Optional[Dict[str, Any]], plan: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Record plus resolved plan name, as returned to API callers."""
    if not has_subscription(record):
        return None
    view = dict(record)
    view["plan_name"] = (plan or {}).get("display_name") or (plan or {}).get("name") or "Unknown Plan"
    view["plan_type"] = (plan or {}).get("plan_type")
    return view


def _audit_actor(actor: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not actor:
        return {"actor_role": None, "actor_id": None}
    role = actor.get("role")
    try:
        role = UserRole(role) if role else None
    except ValueError:
        role = None
    return {"actor_role": role, "actor_id": actor.get("user_id")}


# ============================================================================
# SUBSCRIPTION SERVICE
# ============================================================================
class SubscriptionService:

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        db = database.get_db()
        user = await db.users.find_one({"user_id": user_id}, {"_id": 0, "password_hash": 0})
        if not user:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return user

    async def _get_subscribed_user(self, user_id: str) -> Dict[str, Any]:
        user = await self.get_user(user_id)
        if not has_subscription(user.get("subscription")):
            raise NotFoundError("User subscription not found", details={"user_id": user_id})
        return user

    async def ensure_subscription(self, user: Dict[str, Any], now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """
        Return the user's subscription record, lazily granting the persona's free
        plan when there is none. Idempotent.

        Returns None for admins and when no free plan is configured (anonymous tier).
        """
        record = user.get("subscription")
        if has_subscription(record):
            return record

        persona = persona_for_role(user.get("role"))
        if persona is None:
            return None

        plan = await plan_catalog.find_free_plan(persona)
        if not plan:
            logger.warning(f"No free {persona.value} plan configured; {user['user_id']} stays on anonymous tier")
            return None

        now = now or utc_now()
        record = build_subscription_record(plan, now, notes=AUTO_ASSIGN_NOTE)

        db = database.get_db()
        async with storage_guard("assign free subscription"):
            result = await db.users.update_one(
                {"user_id": user["user_id"], "subscription.plan_id": {"$in": [None, ""]}},
                {"$set": {"subscription": record}},
            )

        if result.modified_count == 0:
            # Another request assigned first; use the stored record.
            current = await db.users.find_one({"user_id": user["user_id"]}, {"_id": 0, "subscription": 1})
            return (current or {}).get("subscription")

        user["subscription"] = record
        logger.info(f"Free plan {plan['name']} assigned to {user['user_id']}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_AUTO_ASSIGNED,
            user_id=user["user_id"],
            resource_type="subscription",
            resource_id=user["user_id"],
            after_state={"plan_id": plan["plan_id"], "plan_name": plan["name"]},
        )
        return record

    async def persist_time_effects(self, user_id: str, effects: TimeEffects) -> None:
        """Write back expiry / rollover changes found by apply_time_effects()."""
        if not effects.changed:
            return
        updates = {f"subscription.{k}": v for k, v in effects.changes.items()}
        db = database.get_db()
        async with storage_guard("update subscription state"):
            await db.users.update_one({"user_id": user_id}, {"$set": updates})

        if effects.expired:
            logger.info(f"Subscription expired for {user_id}")
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_EXPIRED,
                user_id=user_id,
                resource_type="subscription",
                resource_id=user_id,
                metadata={"end_date": str(effects.record.get("end_date"))},
            )
        if effects.browse_reset:
            logger.info(f"Billing period rolled over for {user_id}: browse count reset")

    async def _save(self, user_id: str, updates: Dict[str, Any], operation: str) -> None:
        db = database.get_db()
        async with storage_guard(operation):
            await db.users.update_one({"user_id": user_id}, {"$set": updates})

    async def _view(self, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        plan = await plan_catalog.get_plan(record.get("plan_id"))
        return subscription_view(record, plan)

    # -------------------------------------------------------------------------
    # Admin lifecycle
    # -------------------------------------------------------------------------

    async def assign_subscription(
        self,
        user_id: str,
        plan_id: str,
        duration: Optional[int] = None,
        custom_listings_limit: Optional[int] = None,
        custom_browse_limit: Optional[int] = None,
        notes: Optional[str] = None,
        actor: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Put the user on `plan_id` with fresh counters, replacing any existing record."""
        user = await self.get_user(user_id)
        plan = await plan_catalog.find_plan_by_id(plan_id)
        for key, value in (("custom_listings_limit", custom_listings_limit), ("custom_browse_limit", custom_browse_limit)):
            if value is not None and value < 0 and value != -1:
                raise ValidationError("Invalid limit override", details={key: value})

        before = user.get("subscription")
        record = build_subscription_record(
            plan,
            utc_now(),
            duration=duration,
            custom_listings_limit=custom_listings_limit,
            custom_browse_limit=custom_browse_limit,
            notes=notes,
        )
        await self._save(user_id, {"subscription": record}, "assign subscription")

        logger.info(f"Subscription assigned: {user_id} -> {plan['name']}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_ASSIGNED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"plan_id": before.get("plan_id"), "status": before.get("status")} if before else None,
            after_state={"plan_id": plan["plan_id"], "status": record["status"]},
            **_audit_actor(actor),
        )
        return subscription_view(record, plan)

    async def extend_subscription(
        self,
        user_id: str,
        new_end_date: Optional[datetime] = None,
        payment_status: Optional[str] = None,
        notes: Optional[str] = None,
        actor: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Move end_date and force active. Counters are untouched."""
        user = await self._get_subscribed_user(user_id)
        record = dict(user["subscription"])
        updates: Dict[str, Any] = {"subscription.status": SubscriptionStatus.ACTIVE.value}
        if new_end_date is not None:
            updates["subscription.end_date"] = ensure_utc(new_end_date)
        if payment_status:
            updates["subscription.payment_status"] = getattr(payment_status, "value", payment_status)
        if notes:
            updates["subscription.notes"] = notes

        await self._save(user_id, updates, "extend subscription")
        for key, value in updates.items():
            record[key.split(".", 1)[1]] = value

        logger.info(f"Subscription extended for {user_id} until {record.get('end_date')}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_EXTENDED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"status": user["subscription"].get("status"), "end_date": str(user["subscription"].get("end_date"))},
            after_state={"status": record["status"], "end_date": str(record.get("end_date"))},
            **_audit_actor(actor),
        )
        return await self._view(record)

    async def change_plan(
        self,
        user_id: str,
        plan_id: str,
        notes: Optional[str] = None,
        actor: Optional[Dict[str, Any]] = None,
        audit_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Move the user to another plan: re-snapshot limits, reset counters, re-stamp dates."""
        user = await self._get_subscribed_user(user_id)
        plan = await plan_catalog.find_plan_by_id(plan_id)
        before = user["subscription"]

        record = build_subscription_record(
            plan,
            utc_now(),
            notes=notes or f"Plan changed by admin to {plan.get('display_name') or plan['name']}",
        )
        record["transaction_id"] = before.get("transaction_id")
        await self._save(user_id, {"subscription": record}, "change subscription plan")

        logger.info(f"Plan changed for {user_id}: {before.get('plan_id')} -> {plan['plan_id']}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_PLAN_CHANGED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"plan_id": before.get("plan_id"), "status": before.get("status")},
            after_state={"plan_id": plan["plan_id"], "status": record["status"]},
            metadata=audit_metadata,
            **_audit_actor(actor),
        )
        return subscription_view(record, plan)

    async def suspend_subscription(
        self,
        user_id: str,
        reason: Optional[str] = None,
        actor: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        user = await self._get_subscribed_user(user_id)
        record = dict(user["subscription"])
        record["status"] = SubscriptionStatus.SUSPENDED.value
        if reason:
            record["notes"] = reason

        await self._save(
            user_id,
            {"subscription.status": record["status"], "subscription.notes": record.get("notes")},
            "suspend subscription",
        )
        logger.info(f"Subscription suspended for {user_id}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_SUSPENDED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"status": user["subscription"].get("status")},
            after_state={"status": record["status"]},
            reason_code=reason,
            **_audit_actor(actor),
        )
        return await self._view(record)

    async def reactivate_subscription(self, user_id: str, actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Back to active. Refused once end_date has passed: extend first."""
        user = await self._get_subscribed_user(user_id)
        record = dict(user["subscription"])
        end_date = ensure_utc(record.get("end_date"))
        if end_date is not None and utc_now() > end_date:
            raise ExpiredError(
                "Cannot reactivate expired subscription. Please extend the subscription first.",
                details={"end_date": end_date.isoformat()},
            )

        record["status"] = SubscriptionStatus.ACTIVE.value
        await self._save(user_id, {"subscription.status": record["status"]}, "reactivate subscription")
        logger.info(f"Subscription reactivated for {user_id}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_REACTIVATED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"status": user["subscription"].get("status")},
            after_state={"status": record["status"]},
            **_audit_actor(actor),
        )
        return await self._view(record)

    async def cancel_subscription(self, user_id: str, actor: Optional[Dict[str, Any]] = None) -> None:
        """Clear the record. The next gated action lazily assigns the free plan again."""
        user = await self._get_subscribed_user(user_id)
        db = database.get_db()
        async with storage_guard("cancel subscription"):
            await db.users.update_one({"user_id": user_id}, {"$unset": {"subscription": ""}})

        logger.info(f"Subscription cancelled for {user_id}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELLED,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"plan_id": user["subscription"].get("plan_id"), "status": user["subscription"].get("status")},
            **_audit_actor(actor),
        )

    async def reset_browse_count(self, user_id: str, actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        user = await self._get_subscribed_user(user_id)
        now = utc_now()
        result = await usage_ledger.reset(user_id, "browse", now=now)
        if not result.success:
            raise NotFoundError("User subscription not found", details={"user_id": user_id, "reason": result.message})

        record = dict(user["subscription"])
        record.update(browse_count=0, last_browse_reset=now)
        await create_audit_log(
            action=AuditAction.BROWSE_COUNT_RESET,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"browse_count": user["subscription"].get("browse_count", 0)},
            after_state={"browse_count": 0},
            **_audit_actor(actor),
        )
        return await self._view(record)

    # -------------------------------------------------------------------------
    # Self-service
    # -------------------------------------------------------------------------

    async def continue_own_subscription(
        self,
        user_id: str,
        new_end_date: datetime,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Owner renews their own record with a new end date."""
        user = await self._get_subscribed_user(user_id)
        end_date = ensure_utc(new_end_date)
        if end_date is None or end_date <= utc_now():
            raise ValidationError("New end date must be in the future")

        record = dict(user["subscription"])
        record.update(end_date=end_date, status=SubscriptionStatus.ACTIVE.value)
        updates = {"subscription.end_date": end_date, "subscription.status": record["status"]}
        if notes:
            record["notes"] = notes
            updates["subscription.notes"] = notes

        await self._save(user_id, updates, "continue subscription")
        logger.info(f"Subscription continued by {user_id} until {end_date.isoformat()}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CONTINUED,
            actor_role=UserRole(user["role"]) if user.get("role") in {r.value for r in UserRole} else None,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=user_id,
            before_state={"status": user["subscription"].get("status"), "end_date": str(user["subscription"].get("end_date"))},
            after_state={"status": record["status"], "end_date": str(end_date)},
        )
        return await self._view(record)

    # -------------------------------------------------------------------------
    # Listings
    # -------------------------------------------------------------------------

    async def list_subscriptions(self) -> List[Dict[str, Any]]:
        """Every user holding a plan, most recent start first."""
        db = database.get_db()
        users = await db.users.find(
            {"subscription.plan_id": {"$nin": [None, ""]}},
            {"_id": 0, "user_id": 1, "name": 1, "email": 1, "role": 1, "subscription": 1},
        ).sort("subscription.start_date", -1).to_list(None)
        plans = await plan_catalog.get_plans_by_ids([u["subscription"]["plan_id"] for u in users])
        return [self._summary(u, plans.get(u["subscription"]["plan_id"])) for u in users]

    async def get_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Audit trail of one user's subscription and change requests, newest first."""
        await self.get_user(user_id)
        async with storage_guard("read subscription history"):
            return await get_audit_trail(user_id=user_id, limit=limit)

    async def filter_subscriptions(
        self,
        status: Optional[str] = None,
        plan_id: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "start_date",
        sort_order: str = "desc",
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        """Paginated subscription listing for the admin dashboard."""
        query: Dict[str, Any] = {"subscription.plan_id": {"$nin": [None, ""]}}
        if status:
            query["subscription.status"] = status
        if plan_id:
            query["subscription.plan_id"] = plan_id
        if search:
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"email": pattern}]

        sort_field = SORTABLE_FIELDS.get(sort_by, SORTABLE_FIELDS["start_date"])
        direction = 1 if sort_order == "asc" else -1
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))

        db = database.get_db()
        total = await db.users.count_documents(query)
        users = await db.users.find(
            query,
            {"_id": 0, "user_id": 1, "name": 1, "email": 1, "role": 1, "subscription": 1},
        ).sort(sort_field, direction).skip((page - 1) * page_size).limit(page_size).to_list(page_size)

        plans = await plan_catalog.get_plans_by_ids([u["subscription"]["plan_id"] for u in users])
        return {
            "subscriptions": [self._summary(u, plans.get(u["subscription"]["plan_id"])) for u in users],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": (total + page_size - 1) // page_size,
        }

    @staticmethod
    def _summary(user: Dict[str, Any], plan: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        record = user.get("subscription") or {}
        return {
            "user_id": user["user_id"],
            "user_name": user.get("name"),
            "user_email": user.get("email"),
            "user_role": user.get("role"),
            "plan_id": record.get("plan_id"),
            "plan_name": (plan or {}).get("display_name") or "Unknown Plan",
            "status": record.get("status"),
            "payment_status": record.get("payment_status"),
            "start_date": record.get("start_date"),
            "end_date": record.get("end_date"),
            "listings_used": record.get("listings_used", 0),
            "listings_limit": record.get("listings_limit", 0),
            "job_posts_used": record.get("job_posts_used", 0),
            "job_posts_limit": record.get("job_posts_limit", 0),
            "browse_count": record.get("browse_count", 0),
            "browse_count_limit": record.get("browse_count_limit", 0),
            "notes": record.get("notes"),
        }


# Singleton instance
subscription_service = SubscriptionService()
