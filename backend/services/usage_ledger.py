"""Usage Ledger - metered counter mutations on the embedded subscription record.

Counters: browse, listings, job_posts (see entitlement_engine.COUNTERS).

RULES:
1. Counters never go below zero
2. Mutations apply only to an active subscription; anything else is reported as
   a failed LedgerResult, never raised
3. Every mutation is a single atomic document update ($inc / conditional $set),
   so concurrent callers cannot lose updates
4. Increments are conditional on the counter being below its snapshot limit;
   a counter never exceeds its limit, whoever calls the ledger
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

from pymongo import ReturnDocument

from database import database
from models import SubscriptionStatus, UNLIMITED
from services.entitlement_engine import BILLING_PERIOD_DAYS, COUNTERS, CounterSpec, has_subscription, resolve_limit
from services.plan_catalog import plan_catalog
from services.subscription_errors import NotFoundError, ValidationError, storage_guard
from utils.dates import utc_now

logger = logging.getLogger(__name__)

MAX_INCREMENT_ATTEMPTS = 3


@dataclass(frozen=True)
class LedgerResult:
    success: bool
    value: int
    message: Optional[str] = None

    def to_dict(self, value_key: str = "value") -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, value_key: self.value}
        if self.message:
            body["message"] = self.message
        return body


def get_counter(name: str) -> CounterSpec:
    spec = COUNTERS.get(name)
    if spec is None:
        raise ValidationError(f"Unknown usage counter: {name}", details={"counters": sorted(COUNTERS)})
    return spec


def _path(field: str) -> str:
    return f"subscription.{field}"


def _is_active(record: Optional[Dict[str, Any]]) -> bool:
    return has_subscription(record) and record.get("status") == SubscriptionStatus.ACTIVE.value


def _label(spec: CounterSpec) -> str:
    return spec.name.replace("_", " ").capitalize()


class UsageLedger:
    """Atomic increment / decrement / reset of subscription usage counters."""

    async def increment(self, user_id: str, counter: str, now: Optional[datetime] = None) -> LedgerResult:
        """
        Increment a counter without ever pushing it past its limit.

        The limit comes from the record's snapshot (plan feature when no
        snapshot exists). The write is conditional on the counter still being
        below that limit and on the snapshot being unchanged, so concurrent
        callers cannot overrun the quota between check and increment.
        """
        spec = get_counter(counter)
        now = now or utc_now()
        db = database.get_db()

        if spec.reset_field:
            await self._rollover(user_id, spec, now)

        for _ in range(MAX_INCREMENT_ATTEMPTS):
            record = await self._load_record(user_id)
            if not _is_active(record):
                return self._not_active(record, spec)

            limit = await self._limit(record, spec)
            used = int(record.get(spec.used_field) or 0)
            if limit != UNLIMITED and used >= limit:
                return self._limit_reached(spec, used)

            query: Dict[str, Any] = {"user_id": user_id, _path("status"): SubscriptionStatus.ACTIVE.value}
            if record.get(spec.limit_field) is not None:
                query[_path(spec.limit_field)] = limit
            if limit != UNLIMITED:
                query[_path(spec.used_field)] = {"$lt": limit}

            async with storage_guard(f"increment {spec.name} count"):
                doc = await db.users.find_one_and_update(
                    query,
                    {"$inc": {_path(spec.used_field): 1}},
                    projection={"_id": 0, "subscription": 1},
                    return_document=ReturnDocument.AFTER,
                )

            if doc is not None:
                value = int(doc["subscription"].get(spec.used_field) or 0)
                logger.debug(f"{spec.name} count for {user_id} -> {value}")
                return LedgerResult(success=True, value=value)

        # Lost every race: report whatever the record says now.
        record = await self._load_record(user_id)
        if not _is_active(record):
            return self._not_active(record, spec)
        used = int(record.get(spec.used_field) or 0)
        logger.warning(f"{spec.name} increment for {user_id} gave up after {MAX_INCREMENT_ATTEMPTS} conflicting writes")
        return LedgerResult(success=False, value=used, message=f"{_label(spec)} count changed concurrently, try again")

    async def decrement(self, user_id: str, counter: str) -> LedgerResult:
        """Decrement, floored at zero. Decrementing an empty counter is a no-op success."""
        spec = get_counter(counter)
        db = database.get_db()

        async with storage_guard(f"decrement {spec.name} count"):
            doc = await db.users.find_one_and_update(
                {
                    "user_id": user_id,
                    _path("status"): SubscriptionStatus.ACTIVE.value,
                    _path(spec.used_field): {"$gt": 0},
                },
                {"$inc": {_path(spec.used_field): -1}},
                projection={"_id": 0, "subscription": 1},
                return_document=ReturnDocument.AFTER,
            )

        if doc is not None:
            value = max(0, int(doc["subscription"].get(spec.used_field) or 0))
            logger.debug(f"{spec.name} count for {user_id} -> {value}")
            return LedgerResult(success=True, value=value)

        record = await self._load_record(user_id)
        if _is_active(record):
            return LedgerResult(success=True, value=0, message=f"{spec.name} count already at zero")
        return self._not_active(record, spec)

    async def reset(self, user_id: str, counter: str, now: Optional[datetime] = None) -> LedgerResult:
        """Zero a counter regardless of status. Used by admins and billing rollover."""
        spec = get_counter(counter)
        now = now or utc_now()
        updates: Dict[str, Any] = {_path(spec.used_field): 0}
        if spec.reset_field:
            updates[_path(spec.reset_field)] = now

        db = database.get_db()
        async with storage_guard(f"reset {spec.name} count"):
            result = await db.users.update_one(
                {"user_id": user_id, _path("plan_id"): {"$nin": [None, ""]}},
                {"$set": updates},
            )

        if result.matched_count == 0:
            record = await self._load_record(user_id)
            return self._not_active(record, spec)

        logger.info(f"{spec.name} count reset for {user_id}")
        return LedgerResult(success=True, value=0)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _rollover(self, user_id: str, spec: CounterSpec, now: datetime) -> None:
        """Reset the counter if its billing period has elapsed. No-op otherwise."""
        db = database.get_db()
        cutoff = now - timedelta(days=BILLING_PERIOD_DAYS)
        async with storage_guard(f"roll over {spec.name} count"):
            result = await db.users.update_one(
                {"user_id": user_id, _path(spec.reset_field): {"$lte": cutoff}},
                {"$set": {_path(spec.used_field): 0, _path(spec.reset_field): now}},
            )
        if result.modified_count:
            logger.info(f"Billing period rolled over: {spec.name} count reset for {user_id}")

    async def _load_record(self, user_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        user = await db.users.find_one({"user_id": user_id}, {"_id": 0, "subscription": 1})
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return user.get("subscription")

    async def _limit(self, record: Dict[str, Any], spec: CounterSpec) -> int:
        plan = None
        if record.get(spec.limit_field) is None:
            plan = await plan_catalog.get_plan(record.get("plan_id"))
        return resolve_limit(record, plan, spec)

    @staticmethod
    def _limit_reached(spec: CounterSpec, used: int) -> LedgerResult:
        return LedgerResult(success=False, value=used, message=f"{_label(spec)} limit reached")

    @staticmethod
    def _not_active(record: Optional[Dict[str, Any]], spec: CounterSpec) -> LedgerResult:
        if not has_subscription(record):
            return LedgerResult(success=False, value=0, message="No active subscription")
        value = int(record.get(spec.used_field) or 0)
        return LedgerResult(success=False, value=value, message=f"Subscription is {record.get('status')}")


# Singleton instance
usage_ledger = UsageLedger()
