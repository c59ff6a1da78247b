"""Entitlement Service - the operations collaborators call to gate marketplace actions.

Every call follows the same pass:
    load user -> ensure_subscription (lazy free plan) -> apply_time_effects
    (expiry, browse rollover) and persist -> resolve plan -> decide()

Denials are normal return values carrying reason / limit_reached /
requires_upgrade / suggested_action so clients can render an upgrade prompt.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from models import UserRole
from services.entitlement_engine import (
    ACTION_RULES,
    Action,
    DecisionContext,
    EntitlementDecision,
    apply_time_effects,
    compute_visibility,
    decide,
    has_subscription,
    notifications_allowed,
    persona_for_role,
)
from services.plan_catalog import plan_catalog
from services.subscription_errors import NotFoundError
from services.subscription_service import subscription_service, subscription_view
from services.usage_ledger import LedgerResult, usage_ledger
from utils.dates import utc_now

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionState:
    """A user's subscription as of `now`, time effects already persisted."""
    user: Dict[str, Any]
    record: Optional[Dict[str, Any]]
    plan: Optional[Dict[str, Any]]
    now: datetime

    @property
    def is_admin(self) -> bool:
        return self.user.get("role") == UserRole.ADMIN.value

    @property
    def context(self) -> DecisionContext:
        return DecisionContext(
            now=self.now,
            persona=persona_for_role(self.user.get("role")),
            is_admin=self.is_admin,
        )

    @property
    def view(self) -> Optional[Dict[str, Any]]:
        return subscription_view(self.record, self.plan)


class EntitlementService:

    async def load_state(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionState:
        now = now or utc_now()
        user = await subscription_service.get_user(user_id)
        record = await subscription_service.ensure_subscription(user, now)

        effects = apply_time_effects(record, now)
        await subscription_service.persist_time_effects(user_id, effects)
        record = effects.record

        plan = await plan_catalog.get_plan(record.get("plan_id")) if has_subscription(record) else None
        return SubscriptionState(user=user, record=record, plan=plan, now=now)

    async def resolve_subscription(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Current subscription with lazy assignment applied, or None (anonymous tier)."""
        state = await self.load_state(user_id)
        return state.view

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    async def check(self, user_id: str, action: Action) -> Dict[str, Any]:
        state = await self.load_state(user_id)
        decision = decide(state.record, state.plan, action, state.context)
        if not decision.allowed:
            logger.info(f"Entitlement denied: user={user_id} action={action.value} reason={decision.reason}")
        return self._result(decision, state)

    async def check_browse_limit(self, user_id: str) -> Dict[str, Any]:
        return await self.check(user_id, Action.BROWSE)

    async def check_listing_limit(self, user_id: str) -> Dict[str, Any]:
        return await self.check(user_id, Action.CREATE_LISTING)

    async def check_job_post_limit(self, user_id: str) -> Dict[str, Any]:
        return await self.check(user_id, Action.POST_JOB)

    async def check_job_application_access(self, user_id: str) -> Dict[str, Any]:
        return await self.check(user_id, Action.APPLY_JOB)

    @staticmethod
    def _result(decision: EntitlementDecision, state: SubscriptionState) -> Dict[str, Any]:
        result = decision.to_dict()
        result["subscription"] = state.view
        return result

    # -------------------------------------------------------------------------
    # Usage
    # -------------------------------------------------------------------------

    async def _mutate(self, user_id: str, counter: str, delta: int) -> LedgerResult:
        state = await self.load_state(user_id)
        if delta > 0:
            return await usage_ledger.increment(user_id, counter, now=state.now)
        return await usage_ledger.decrement(user_id, counter)

    async def increment_browse_count(self, user_id: str) -> Dict[str, Any]:
        result = await self._mutate(user_id, "browse", 1)
        return result.to_dict("browse_count")

    async def increment_listing_count(self, user_id: str) -> Dict[str, Any]:
        result = await self._mutate(user_id, "listings", 1)
        return result.to_dict("listings_used")

    async def decrement_listing_count(self, user_id: str) -> Dict[str, Any]:
        result = await self._mutate(user_id, "listings", -1)
        return result.to_dict("listings_used")

    async def increment_job_post_count(self, user_id: str) -> Dict[str, Any]:
        result = await self._mutate(user_id, "job_posts", 1)
        return result.to_dict("job_posts_used")

    # -------------------------------------------------------------------------
    # Visibility & notifications
    # -------------------------------------------------------------------------

    async def check_listing_visibility(
        self,
        listing_created_at: datetime,
        user_id: Optional[str],
        owner_id: Optional[str] = None,
        teacher_search: bool = False,
    ) -> Dict[str, Any]:
        """Whether `user_id` can already see a listing created at `listing_created_at`.

        Unknown viewers are treated as anonymous.
        """
        now = utc_now()
        state: Optional[SubscriptionState] = None
        if user_id:
            try:
                state = await self.load_state(user_id, now)
            except NotFoundError:
                logger.debug(f"Visibility check for unknown viewer {user_id}; using anonymous delay")

        result = compute_visibility(
            listing_created_at,
            state.record if state else None,
            state.plan if state else None,
            now,
            viewer_is_admin=bool(state and state.is_admin),
            viewer_is_owner=bool(user_id and owner_id and user_id == owner_id),
            teacher_search=teacher_search,
        )
        return result.to_dict()

    async def check_notification_permission(self, user_id: str) -> Dict[str, Any]:
        state = await self.load_state(user_id)
        return {"allowed": state.is_admin or notifications_allowed(state.record, state.plan, state.now)}

    # -------------------------------------------------------------------------
    # Overview
    # -------------------------------------------------------------------------

    async def get_access_overview(self, user_id: str) -> Dict[str, Any]:
        """Everything the user's persona can do, evaluated in one pass."""
        state = await self.load_state(user_id)
        context = state.context
        actions = [action for action in Action if (context.persona, action) in ACTION_RULES]
        if context.is_admin:
            actions = list(Action)

        permissions = {
            action.value: decide(state.record, state.plan, action, context).to_dict()
            for action in actions
        }
        record = state.record if has_subscription(state.record) else None
        return {
            "user_id": user_id,
            "role": state.user.get("role"),
            "persona": context.persona.value if context.persona else None,
            "subscription": {
                "status": record.get("status"),
                "plan_name": (state.plan or {}).get("display_name") or "Unknown",
                "end_date": record.get("end_date"),
            } if record else None,
            "permissions": permissions,
            "notifications_allowed": state.is_admin or notifications_allowed(state.record, state.plan, state.now),
        }


# Singleton instance
entitlement_service = EntitlementService()
