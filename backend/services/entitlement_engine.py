"""Entitlement Engine - pure decision logic for marketplace actions.

Given a subscription record, its plan and a requested action, decide whether the
action is allowed and how much quota remains. No I/O happens here; callers load
the record, run apply_time_effects(), persist the resulting changes and only
then call decide().

RULES:
1. Admins are never plan-gated.
2. Persona gating wins over quota: a teacher can never create a listing,
   however generous the plan.
3. No subscription -> anonymous tier (browsing fails open, creation fails closed).
4. Any non-active status denies.
5. Limits are read from the record's snapshot, not the live plan, so plan edits
   never disrupt an in-progress billing period.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from models import Persona, SubscriptionStatus, UserRole, UNLIMITED
from utils.dates import ensure_utc

BILLING_PERIOD_DAYS = 30
ROLE_NOT_PERMITTED = "role not permitted"
SUBSCRIPTION_EXPIRED = "Subscription has expired"


# ============================================================================
# ACTIONS & COUNTERS
# ============================================================================
class Action(str, Enum):
    BROWSE = "browse"
    CREATE_LISTING = "create_listing"
    POST_JOB = "post_job"
    APPLY_JOB = "apply_job"


@dataclass(frozen=True)
class CounterSpec:
    """Where a metered resource lives on the subscription record."""
    name: str
    used_field: str
    limit_field: str
    plan_feature: str
    reset_field: Optional[str] = None


COUNTERS: Dict[str, CounterSpec] = {
    "browse": CounterSpec(
        name="browse",
        used_field="browse_count",
        limit_field="browse_count_limit",
        plan_feature="max_browses_per_month",
        reset_field="last_browse_reset",
    ),
    "listings": CounterSpec(
        name="listings",
        used_field="listings_used",
        limit_field="listings_limit",
        plan_feature="max_listings",
    ),
    "job_posts": CounterSpec(
        name="job_posts",
        used_field="job_posts_used",
        limit_field="job_posts_limit",
        plan_feature="max_job_posts",
    ),
}


@dataclass(frozen=True)
class ActionRule:
    counter: Optional[str]  # None = unmetered, only needs an active subscription
    label: str
    suggested_action: str


# ============================================================================
# RULE TABLE - (persona, action) -> rule. Missing key = role not permitted.
# ============================================================================
ACTION_RULES: Dict[Tuple[Persona, Action], ActionRule] = {
    (Persona.INSTITUTE, Action.BROWSE): ActionRule(
        "browse", "Browse", "Upgrade your plan for more monthly browses"),
    (Persona.TEACHER, Action.BROWSE): ActionRule(
        "browse", "Browse", "Upgrade your plan for more monthly browses"),
    (Persona.VENDOR, Action.BROWSE): ActionRule(
        "browse", "Browse", "Upgrade your plan for more monthly browses"),
    (Persona.INSTITUTE, Action.CREATE_LISTING): ActionRule(
        "listings", "Vehicle listing", "Upgrade your plan to create more vehicle listings"),
    (Persona.VENDOR, Action.CREATE_LISTING): ActionRule(
        "listings", "Product listing", "Upgrade your plan to create more product listings"),
    (Persona.INSTITUTE, Action.POST_JOB): ActionRule(
        "job_posts", "Job post", "Upgrade your plan to post more jobs"),
    (Persona.TEACHER, Action.APPLY_JOB): ActionRule(
        None, "Job application", "Subscribe to a plan to apply for jobs"),
}

# Roles that map onto a persona. Anything else falls back to institute, the
# marketplace default account type.
PERSONA_BY_ROLE = {
    UserRole.INSTITUTE.value: Persona.INSTITUTE,
    UserRole.TEACHER.value: Persona.TEACHER,
    UserRole.VENDOR.value: Persona.VENDOR,
    "supplier": Persona.VENDOR,
}


# ============================================================================
# ANONYMOUS TIER - used whenever there is no subscription record or plan
# ============================================================================
ANONYMOUS_PLAN: Dict[str, Any] = {
    "plan_id": None,
    "name": "anonymous",
    "display_name": "No Subscription",
    "plan_type": None,
    "price": 0,
    "duration": 0,
    "features": {
        "max_listings": 0,
        "max_job_posts": 0,
        "max_browses_per_month": 10,
        # Most restrictive catalogue tier (institute-free)
        "data_delay_days": 10,
        "teacher_data_delay_days": 15,
        "can_advertise_vehicles": False,
        "instant_vehicle_alerts": False,
        "instant_job_alerts": False,
        "priority_listings": False,
        "analytics": False,
        "support_level": "basic",
    },
    "is_active": True,
}


# ============================================================================
# RESULT TYPES
# ============================================================================
@dataclass(frozen=True)
class DecisionContext:
    now: datetime
    persona: Optional[Persona] = None
    is_admin: bool = False


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    remaining: int
    reason: Optional[str] = None
    requires_upgrade: bool = False
    limit_reached: bool = False
    suggested_action: Optional[str] = None
    limit: Optional[int] = None
    used: Optional[int] = None

    @property
    def unlimited(self) -> bool:
        return self.remaining == UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit_reached": self.limit_reached,
            "reason": self.reason,
            "requires_upgrade": self.requires_upgrade,
            "suggested_action": self.suggested_action,
        }


@dataclass
class TimeEffects:
    record: Optional[Dict[str, Any]]
    changes: Dict[str, Any] = field(default_factory=dict)
    expired: bool = False
    browse_reset: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)


@dataclass(frozen=True)
class VisibilityResult:
    visible: bool
    delay_hours: int
    available_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "visible": self.visible,
            "delay_hours": self.delay_hours,
            "available_at": self.available_at.isoformat(),
        }


# ============================================================================
# HELPERS
# ============================================================================
def persona_for_role(role: Optional[str]) -> Optional[Persona]:
    """Map a user role to its marketplace persona. Admins have none."""
    if role == UserRole.ADMIN.value:
        return None
    return PERSONA_BY_ROLE.get(role or "", Persona.INSTITUTE)


def has_subscription(record: Optional[Dict[str, Any]]) -> bool:
    """A record without a plan reference counts as no subscription."""
    return bool(record) and bool(record.get("plan_id"))


def is_active(record: Optional[Dict[str, Any]], now: datetime) -> bool:
    if not has_subscription(record):
        return False
    if record.get("status") != SubscriptionStatus.ACTIVE.value:
        return False
    end_date = ensure_utc(record.get("end_date"))
    return end_date is None or now <= end_date


def resolve_limit(record: Dict[str, Any], plan: Optional[Dict[str, Any]], counter: CounterSpec) -> int:
    """Snapshot limit from the record; plan feature only when no snapshot exists."""
    snapshot = record.get(counter.limit_field)
    if snapshot is not None:
        return int(snapshot)
    features = (plan or {}).get("features") or {}
    value = features.get(counter.plan_feature)
    return int(value) if value is not None else 0


def compute_remaining(limit: int, used: int) -> int:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - max(0, used))


def snapshot_limits(plan: Dict[str, Any]) -> Dict[str, int]:
    """Independent copy of the plan's limits for a subscription record."""
    features = plan.get("features") or {}
    return {
        spec.limit_field: int(features.get(spec.plan_feature) or 0)
        for spec in COUNTERS.values()
    }


# ============================================================================
# TIME EFFECTS - expiry and billing-period rollover, evaluated on read
# ============================================================================
def apply_time_effects(record: Optional[Dict[str, Any]], now: datetime) -> TimeEffects:
    """
    Return the record as it should look at `now`.

    - active and now > end_date -> status becomes expired (never reverts here)
    - now - last_browse_reset >= 30 days -> browse_count 0, last_browse_reset now
    """
    if not has_subscription(record):
        return TimeEffects(record=record)

    changes: Dict[str, Any] = {}
    expired = False
    browse_reset = False

    end_date = ensure_utc(record.get("end_date"))
    if record.get("status") == SubscriptionStatus.ACTIVE.value and end_date and now > end_date:
        changes["status"] = SubscriptionStatus.EXPIRED.value
        expired = True

    last_reset = ensure_utc(record.get("last_browse_reset"))
    if last_reset and now - last_reset >= timedelta(days=BILLING_PERIOD_DAYS):
        changes["browse_count"] = 0
        changes["last_browse_reset"] = now
        browse_reset = True

    if not changes:
        return TimeEffects(record=record)

    updated = dict(record)
    updated.update(changes)
    return TimeEffects(record=updated, changes=changes, expired=expired, browse_reset=browse_reset)


# ============================================================================
# DECISION
# ============================================================================
def decide(
    record: Optional[Dict[str, Any]],
    plan: Optional[Dict[str, Any]],
    action: Action,
    context: DecisionContext,
) -> EntitlementDecision:
    """Decide whether `action` is allowed for the given subscription state."""
    if context.is_admin:
        return EntitlementDecision(allowed=True, remaining=UNLIMITED)

    rule = ACTION_RULES.get((context.persona, action))
    if rule is None:
        return EntitlementDecision(
            allowed=False,
            remaining=0,
            reason=ROLE_NOT_PERMITTED,
            suggested_action="Switch to an account type that supports this action",
        )

    if not has_subscription(record) or plan is None:
        return _decide_anonymous(rule)

    status = record.get("status")
    if status != SubscriptionStatus.ACTIVE.value:
        reason = SUBSCRIPTION_EXPIRED if status == SubscriptionStatus.EXPIRED.value else f"Subscription is {status}"
        return EntitlementDecision(
            allowed=False,
            remaining=0,
            reason=reason,
            requires_upgrade=True,
            limit_reached=True,
            suggested_action="Renew or upgrade your subscription to continue",
        )

    end_date = ensure_utc(record.get("end_date"))
    if end_date and context.now > end_date:
        return EntitlementDecision(
            allowed=False,
            remaining=0,
            reason=SUBSCRIPTION_EXPIRED,
            requires_upgrade=True,
            limit_reached=True,
            suggested_action="Renew or upgrade your subscription to continue",
        )

    if rule.counter is None:
        return EntitlementDecision(allowed=True, remaining=UNLIMITED)

    counter = COUNTERS[rule.counter]
    limit = resolve_limit(record, plan, counter)
    used = max(0, int(record.get(counter.used_field) or 0))
    remaining = compute_remaining(limit, used)

    if remaining == UNLIMITED or remaining > 0:
        return EntitlementDecision(allowed=True, remaining=remaining, limit=limit, used=used)

    return EntitlementDecision(
        allowed=False,
        remaining=0,
        reason=f"{rule.label} limit reached ({limit})",
        requires_upgrade=True,
        limit_reached=True,
        suggested_action=rule.suggested_action,
        limit=limit,
        used=used,
    )


def _decide_anonymous(rule: ActionRule) -> EntitlementDecision:
    if rule.counter is None:
        allowance = 0
    else:
        feature = COUNTERS[rule.counter].plan_feature
        allowance = int(ANONYMOUS_PLAN["features"].get(feature) or 0)

    if allowance > 0:
        return EntitlementDecision(
            allowed=True,
            remaining=allowance,
            reason="Using free plan limits",
            limit=allowance,
            used=0,
        )
    return EntitlementDecision(
        allowed=False,
        remaining=0,
        reason="No active subscription",
        requires_upgrade=True,
        limit_reached=True,
        suggested_action=rule.suggested_action if rule.counter is None else "Subscribe to a plan to unlock this action",
        limit=0,
        used=0,
    )


# ============================================================================
# VISIBILITY DELAY & NOTIFICATIONS
# ============================================================================
def compute_visibility(
    created_at: datetime,
    record: Optional[Dict[str, Any]],
    plan: Optional[Dict[str, Any]],
    now: datetime,
    *,
    viewer_is_admin: bool = False,
    viewer_is_owner: bool = False,
    teacher_search: bool = False,
) -> VisibilityResult:
    """
    How long a freshly created listing/job stays hidden from this viewer.

    Admins and the owner see it immediately. Without an active subscription the
    anonymous (most restrictive) delay applies.
    """
    created_at = ensure_utc(created_at)
    if viewer_is_admin or viewer_is_owner:
        return VisibilityResult(visible=True, delay_hours=0, available_at=created_at)

    effective_plan = plan if (plan is not None and is_active(record, now)) else ANONYMOUS_PLAN
    features = effective_plan.get("features") or {}
    delay_key = "teacher_data_delay_days" if teacher_search else "data_delay_days"
    delay_hours = int(features.get(delay_key) or 0) * 24

    available_at = created_at + timedelta(hours=delay_hours)
    return VisibilityResult(visible=now >= available_at, delay_hours=delay_hours, available_at=available_at)


def notifications_allowed(record: Optional[Dict[str, Any]], plan: Optional[Dict[str, Any]], now: datetime) -> bool:
    """Instant alerts need an active subscription whose plan includes either alert flag."""
    if plan is None or not is_active(record, now):
        return False
    features = plan.get("features") or {}
    return bool(features.get("instant_vehicle_alerts") or features.get("instant_job_alerts"))
