"""Plan Catalog - subscription plan definitions and their feature limits.

This is the AUTHORITATIVE source for:
- Plan identity and persona (teacher / institute / vendor)
- Pricing and duration
- Feature limits (listings, job posts, monthly browses, visibility delays)

RULES:
1. Limits are non-negative integers or -1 (unlimited)
2. Plans are soft-deactivated via is_active, never hard-deleted
3. Editing a plan never rewrites limits already snapshotted into a
   subscription record; re-sync happens only through change_plan
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from pydantic import ValidationError as PydanticValidationError

from database import database
from models import Persona, PlanFeatures, SubscriptionPlan
from services.subscription_errors import NotFoundError, ValidationError, storage_guard

logger = logging.getLogger(__name__)


# ============================================================================
# DEFAULT CATALOGUE - seeded once, editable by admins afterwards
# ============================================================================
def _features(
    max_listings: int,
    max_job_posts: int,
    max_browses_per_month: int,
    data_delay_days: int,
    teacher_data_delay_days: int,
    support_level: str = "basic",
    **flags: bool,
) -> Dict[str, Any]:
    return PlanFeatures(
        max_listings=max_listings,
        max_job_posts=max_job_posts,
        max_browses_per_month=max_browses_per_month,
        data_delay_days=data_delay_days,
        teacher_data_delay_days=teacher_data_delay_days,
        support_level=support_level,
        **flags,
    ).model_dump()


DEFAULT_PLANS: List[Dict[str, Any]] = [
    # INSTITUTE PLANS
    {
        "name": "institute-free",
        "display_name": "Institute Basic (Free)",
        "plan_type": "institute",
        "description": "Basic access for institutes to explore the platform with limited features.",
        "price": 0,
        "duration": 365,
        "features": _features(0, 1, 10, 10, 15),
    },
    {
        "name": "institute-silver",
        "display_name": "Institute Professional",
        "plan_type": "institute",
        "description": "Ideal for growing institutes with regular vehicle and hiring needs.",
        "price": 999,
        "duration": 30,
        "features": _features(5, 5, 50, 5, 7, "priority", can_advertise_vehicles=True, analytics=True),
    },
    {
        "name": "institute-gold",
        "display_name": "Institute Business",
        "plan_type": "institute",
        "description": "Best for large institutes with high volume requirements.",
        "price": 2499,
        "duration": 30,
        "features": _features(
            20, 20, 150, 2, 3, "premium",
            can_advertise_vehicles=True, instant_vehicle_alerts=True, instant_job_alerts=True,
            priority_listings=True, analytics=True,
        ),
    },
    {
        "name": "institute-elite",
        "display_name": "Institute Elite",
        "plan_type": "institute",
        "description": "Ultimate access for large educational groups with zero limitations.",
        "price": 4999,
        "duration": 30,
        "features": _features(
            100, 100, 1000, 0, 0, "premium",
            can_advertise_vehicles=True, instant_vehicle_alerts=True, instant_job_alerts=True,
            priority_listings=True, analytics=True,
        ),
    },
    # TEACHER PLANS
    {
        "name": "teacher-free",
        "display_name": "Teacher Basic (Free)",
        "plan_type": "teacher",
        "description": "Basic profile for teachers to apply to jobs.",
        "price": 0,
        "duration": 365,
        "features": _features(0, 0, 20, 5, 0),
    },
    {
        "name": "teacher-pro",
        "display_name": "Teacher Professional",
        "plan_type": "teacher",
        "description": "Get hired faster with early access to jobs and featured profile.",
        "price": 299,
        "duration": 30,
        "features": _features(
            0, 0, 100, 0, 0, "priority",
            instant_job_alerts=True, priority_listings=True, analytics=True,
        ),
    },
    # VENDOR PLANS
    {
        "name": "vendor-free",
        "display_name": "Vendor Basic (Free)",
        "plan_type": "vendor",
        "description": "List your products/services with limited visibility.",
        "price": 0,
        "duration": 365,
        "features": _features(2, 0, 5, 0, 0),
    },
    {
        "name": "vendor-premium",
        "display_name": "Vendor Premium",
        "plan_type": "vendor",
        "description": "Showcase your brand with full details and verified badge.",
        "price": 1499,
        "duration": 30,
        "features": _features(50, 0, 50, 0, 0, "premium", priority_listings=True, analytics=True),
    },
]


# ============================================================================
# VALIDATION
# ============================================================================
def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _field_errors(exc: PydanticValidationError) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "features"
        errors[field] = "required" if error["type"] == "missing" else error["msg"]
    return errors


def validate_features(features: Any) -> Dict[str, Any]:
    """
    Validate a features mapping against PlanFeatures and return it with defaults filled in.

    Raises ValidationError listing every problem found.
    """
    if isinstance(features, PlanFeatures):
        return features.model_dump()
    if not isinstance(features, dict):
        raise ValidationError("Plan features must be an object")
    try:
        return PlanFeatures.model_validate(features).model_dump()
    except PydanticValidationError as e:
        raise ValidationError("Invalid plan features", details={"fields": _field_errors(e)})


def validate_plan_fields(data: Dict[str, Any]) -> None:
    """Validate top-level plan fields present in `data` (create or patch)."""
    errors: Dict[str, str] = {}
    if "name" in data and not (data["name"] or "").strip():
        errors["name"] = "required"
    if "display_name" in data and not (data["display_name"] or "").strip():
        errors["display_name"] = "required"
    if "plan_type" in data and data["plan_type"] not in {p.value for p in Persona}:
        errors["plan_type"] = "must be one of teacher, institute, vendor"
    if "price" in data and (not isinstance(data["price"], (int, float)) or isinstance(data["price"], bool) or data["price"] < 0):
        errors["price"] = "must be a number >= 0"
    if "duration" in data and (not _is_int(data["duration"]) or data["duration"] < 1):
        errors["duration"] = "must be an integer >= 1"
    if errors:
        raise ValidationError("Invalid plan", details={"fields": errors})


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


# ============================================================================
# PLAN CATALOG SERVICE
# ============================================================================
class PlanCatalogService:
    """Service to query and administer subscription plans."""

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def find_active_plans(self, persona: Optional[str] = None) -> List[Dict[str, Any]]:
        """Active plans, cheapest first. Unknown persona filters are ignored."""
        db = database.get_db()
        query: Dict[str, Any] = {"is_active": True}
        persona = _enum_value(persona)
        if persona in {p.value for p in Persona}:
            query["plan_type"] = persona
        return await db.subscription_plans.find(query, {"_id": 0}).sort("price", 1).to_list(None)

    async def list_plans(self) -> List[Dict[str, Any]]:
        """All plans including inactive ones, newest first."""
        db = database.get_db()
        return await db.subscription_plans.find({}, {"_id": 0}).sort("created_at", -1).to_list(None)

    async def find_plan_by_id(self, plan_id: str) -> Dict[str, Any]:
        plan = await self.get_plan(plan_id)
        if not plan:
            raise NotFoundError("Subscription plan not found", details={"plan_id": plan_id})
        return plan

    async def get_plan(self, plan_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Plan by id, or None. Used where a missing plan means 'no subscription'."""
        if not plan_id:
            return None
        db = database.get_db()
        return await db.subscription_plans.find_one({"plan_id": plan_id}, {"_id": 0})

    async def get_plans_by_ids(self, plan_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        ids = [pid for pid in set(plan_ids) if pid]
        if not ids:
            return {}
        db = database.get_db()
        plans = await db.subscription_plans.find({"plan_id": {"$in": ids}}, {"_id": 0}).to_list(None)
        return {plan["plan_id"]: plan for plan in plans}

    async def find_free_plan(self, persona: Persona) -> Optional[Dict[str, Any]]:
        """Zero-price active plan for a persona - the lazy-assignment baseline."""
        db = database.get_db()
        return await db.subscription_plans.find_one(
            {"plan_type": _enum_value(persona), "price": 0, "is_active": True},
            {"_id": 0},
        )

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    async def create_plan(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a plan after validating every feature field."""
        data = {k: _enum_value(v) for k, v in data.items()}
        for key in ("name", "display_name", "price", "duration"):
            if data.get(key) is None:
                raise ValidationError("Invalid plan", details={"fields": {key: "required"}})
        validate_plan_fields(data)
        features = validate_features(data.get("features"))

        db = database.get_db()
        name = data["name"].strip()
        if await db.subscription_plans.find_one({"name": name}, {"_id": 0, "plan_id": 1}):
            raise ValidationError("A plan with this name already exists", details={"name": name})

        plan = SubscriptionPlan(
            name=name,
            display_name=data["display_name"].strip(),
            description=data.get("description") or "",
            plan_type=data.get("plan_type") or Persona.INSTITUTE,
            price=data["price"],
            currency=data.get("currency") or "INR",
            duration=data["duration"],
            features=features,
            is_active=data.get("is_active", True),
        ).model_dump()
        async with storage_guard("create subscription plan"):
            await db.subscription_plans.insert_one(dict(plan))

        logger.info(f"Plan created: {plan['name']} ({plan['plan_id']})")
        return plan

    async def update_plan(self, plan_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Partial update. Feature patches are merged into the existing features."""
        existing = await self.find_plan_by_id(plan_id)
        patch = {k: _enum_value(v) for k, v in patch.items() if v is not None}
        patch.pop("plan_id", None)
        patch.pop("created_at", None)
        validate_plan_fields(patch)

        update: Dict[str, Any] = {k: v for k, v in patch.items() if k != "features"}
        if "features" in patch:
            merged = dict(existing.get("features") or {})
            merged.update(patch["features"] or {})
            update["features"] = validate_features(merged)

        db = database.get_db()
        if "name" in update:
            update["name"] = update["name"].strip()
            if update["name"] != existing["name"]:
                clash = await db.subscription_plans.find_one(
                    {"name": update["name"], "plan_id": {"$ne": plan_id}}, {"_id": 0, "plan_id": 1}
                )
                if clash:
                    raise ValidationError("A plan with this name already exists", details={"name": update["name"]})

        update["updated_at"] = datetime.now(timezone.utc)
        async with storage_guard("update subscription plan"):
            await db.subscription_plans.update_one({"plan_id": plan_id}, {"$set": update})

        updated = dict(existing)
        updated.update(update)
        logger.info(f"Plan updated: {plan_id} fields={sorted(k for k in update if k != 'updated_at')}")
        return updated

    async def toggle_active(self, plan_id: str) -> Dict[str, Any]:
        """Flip is_active. Deactivated plans stay referenced by existing subscriptions."""
        plan = await self.find_plan_by_id(plan_id)
        is_active = not plan.get("is_active", True)
        now = datetime.now(timezone.utc)

        db = database.get_db()
        async with storage_guard("toggle subscription plan"):
            await db.subscription_plans.update_one(
                {"plan_id": plan_id},
                {"$set": {"is_active": is_active, "updated_at": now}},
            )

        plan.update(is_active=is_active, updated_at=now)
        logger.info(f"Plan {plan_id} is_active={is_active}")
        return plan

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    async def seed_default_plans(self) -> Dict[str, int]:
        """Insert catalogue plans that do not exist yet. Existing plans are left untouched."""
        db = database.get_db()
        created = 0
        skipped = 0
        for definition in DEFAULT_PLANS:
            doc = SubscriptionPlan(**definition).model_dump()
            async with storage_guard("seed subscription plans"):
                result = await db.subscription_plans.update_one(
                    {"name": definition["name"]},
                    {"$setOnInsert": doc},
                    upsert=True,
                )
            if result.upserted_id is not None:
                created += 1
            else:
                skipped += 1

        logger.info(f"Plan catalogue seeded: {created} created, {skipped} skipped")
        return {"created": created, "skipped": skipped}


# Singleton instance
plan_catalog = PlanCatalogService()
