"""
Entitlement engine tests: pure decision logic, time effects, visibility delay
and notification permission. No database involved; `now` is injected.
"""
import pytest
from datetime import datetime, timedelta, timezone

from conftest import make_plan, make_record
from models import Persona, UNLIMITED
from services.entitlement_engine import (
    ANONYMOUS_PLAN,
    ROLE_NOT_PERMITTED,
    SUBSCRIPTION_EXPIRED,
    Action,
    DecisionContext,
    apply_time_effects,
    compute_remaining,
    compute_visibility,
    decide,
    notifications_allowed,
    persona_for_role,
    snapshot_limits,
)

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


def ctx(persona=Persona.INSTITUTE, is_admin=False):
    return DecisionContext(now=NOW, persona=persona, is_admin=is_admin)


class TestPersonaForRole:

    def test_known_roles(self):
        assert persona_for_role("teacher") == Persona.TEACHER
        assert persona_for_role("institute") == Persona.INSTITUTE
        assert persona_for_role("vendor") == Persona.VENDOR

    def test_supplier_is_vendor(self):
        assert persona_for_role("supplier") == Persona.VENDOR

    def test_unknown_and_guest_default_to_institute(self):
        assert persona_for_role("guest") == Persona.INSTITUTE
        assert persona_for_role(None) == Persona.INSTITUTE

    def test_admin_has_no_persona(self):
        assert persona_for_role("admin") is None


class TestQuota:

    def test_remaining_is_limit_minus_used(self):
        assert compute_remaining(5, 2) == 3

    def test_remaining_floors_at_zero(self):
        assert compute_remaining(5, 9) == 0

    def test_unlimited_passes_through(self):
        assert compute_remaining(UNLIMITED, 1000) == UNLIMITED

    @pytest.mark.parametrize("used,allowed", [(0, True), (4, True), (5, False), (7, False)])
    def test_allowed_iff_remaining_positive(self, used, allowed):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, listings_used=used)
        decision = decide(record, plan, Action.CREATE_LISTING, ctx())
        assert decision.allowed is allowed
        assert decision.remaining == max(0, 5 - used)
        assert decision.limit_reached is (not allowed)

    def test_unlimited_limit_always_allows(self):
        plan = make_plan("institute-elite")
        record = make_record(plan, NOW, listings_limit=UNLIMITED, listings_used=5000)
        decision = decide(record, plan, Action.CREATE_LISTING, ctx())
        assert decision.allowed is True
        assert decision.unlimited is True
        assert decision.to_dict()["remaining"] == -1

    def test_denial_carries_upgrade_prompt(self):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, job_posts_used=5)
        decision = decide(record, plan, Action.POST_JOB, ctx())
        assert decision.allowed is False
        assert decision.requires_upgrade is True
        assert decision.reason == "Job post limit reached (5)"
        assert decision.suggested_action

    def test_snapshot_wins_over_live_plan(self):
        """Plan edited after assignment: the record's frozen limit still applies."""
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, listings_used=5)
        edited = make_plan("institute-silver")
        edited["features"]["max_listings"] = 50
        assert decide(record, edited, Action.CREATE_LISTING, ctx()).allowed is False

    def test_plan_feature_used_when_snapshot_missing(self):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, listings_used=1)
        del record["listings_limit"]
        decision = decide(record, plan, Action.CREATE_LISTING, ctx())
        assert decision.remaining == 4


class TestPersonaGating:

    def test_teacher_cannot_create_listing_on_any_plan(self):
        plan = make_plan("institute-elite")
        record = make_record(plan, NOW)
        decision = decide(record, plan, Action.CREATE_LISTING, ctx(Persona.TEACHER))
        assert decision.allowed is False
        assert decision.reason == ROLE_NOT_PERMITTED

    def test_vendor_cannot_post_jobs(self):
        plan = make_plan("vendor-premium")
        decision = decide(make_record(plan, NOW), plan, Action.POST_JOB, ctx(Persona.VENDOR))
        assert decision.reason == ROLE_NOT_PERMITTED

    def test_institute_cannot_apply_to_jobs(self):
        plan = make_plan("institute-gold")
        decision = decide(make_record(plan, NOW), plan, Action.APPLY_JOB, ctx())
        assert decision.reason == ROLE_NOT_PERMITTED

    def test_persona_gating_beats_missing_subscription(self):
        decision = decide(None, None, Action.POST_JOB, ctx(Persona.TEACHER))
        assert decision.reason == ROLE_NOT_PERMITTED

    def test_vendor_can_create_product_listing(self):
        plan = make_plan("vendor-free")
        decision = decide(make_record(plan, NOW), plan, Action.CREATE_LISTING, ctx(Persona.VENDOR))
        assert decision.allowed is True
        assert decision.remaining == 2

    def test_teacher_job_application_is_unmetered(self):
        plan = make_plan("teacher-free")
        decision = decide(make_record(plan, NOW), plan, Action.APPLY_JOB, ctx(Persona.TEACHER))
        assert decision.allowed is True
        assert decision.remaining == UNLIMITED

    def test_admin_bypasses_everything(self):
        decision = decide(None, None, Action.POST_JOB, DecisionContext(now=NOW, is_admin=True))
        assert decision.allowed is True
        assert decision.remaining == UNLIMITED


class TestAnonymousTier:

    def test_browse_fails_open(self):
        decision = decide(None, None, Action.BROWSE, ctx())
        assert decision.allowed is True
        assert decision.remaining == 10

    def test_creation_fails_closed(self):
        decision = decide(None, None, Action.CREATE_LISTING, ctx())
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.requires_upgrade is True
        assert decision.limit_reached is True

    def test_record_without_plan_reference_is_anonymous(self):
        decision = decide({"status": "active", "plan_id": None}, None, Action.BROWSE, ctx())
        assert decision.remaining == 10

    def test_teacher_job_application_needs_subscription(self):
        decision = decide(None, None, Action.APPLY_JOB, ctx(Persona.TEACHER))
        assert decision.allowed is False


class TestStatus:

    @pytest.mark.parametrize("status", ["suspended", "inactive"])
    def test_non_active_status_denies_with_quota_left(self, status):
        plan = make_plan("institute-gold")
        record = make_record(plan, NOW, status=status)
        decision = decide(record, plan, Action.BROWSE, ctx())
        assert decision.allowed is False
        assert decision.reason == f"Subscription is {status}"
        assert decision.requires_upgrade is True

    def test_expired_status_reason(self):
        plan = make_plan("institute-gold")
        record = make_record(plan, NOW, status="expired")
        assert decide(record, plan, Action.BROWSE, ctx()).reason == SUBSCRIPTION_EXPIRED

    def test_past_end_date_denies_even_if_still_marked_active(self):
        plan = make_plan("institute-gold")
        record = make_record(plan, NOW, end_date=NOW - timedelta(seconds=1))
        decision = decide(record, plan, Action.BROWSE, ctx())
        assert decision.allowed is False
        assert decision.reason == SUBSCRIPTION_EXPIRED


class TestTimeEffects:

    def test_active_past_end_date_becomes_expired(self):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, end_date=NOW - timedelta(days=1))
        effects = apply_time_effects(record, NOW)
        assert effects.expired is True
        assert effects.record["status"] == "expired"
        assert effects.changes == {"status": "expired"}
        # Input is not mutated
        assert record["status"] == "active"

    def test_expired_stays_expired(self):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, status="expired", end_date=NOW - timedelta(days=3))
        effects = apply_time_effects(record, NOW)
        assert effects.changed is False
        assert effects.record["status"] == "expired"

    def test_suspended_past_end_date_is_left_alone(self):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, status="suspended", end_date=NOW - timedelta(days=3))
        assert "status" not in apply_time_effects(record, NOW).changes

    def test_browse_rollover_after_thirty_days(self):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, browse_count=50, last_browse_reset=NOW - timedelta(days=30))
        effects = apply_time_effects(record, NOW)
        assert effects.browse_reset is True
        assert effects.record["browse_count"] == 0
        assert effects.record["last_browse_reset"] == NOW

    def test_no_rollover_before_thirty_days(self):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, browse_count=50, last_browse_reset=NOW - timedelta(days=29, hours=23))
        assert apply_time_effects(record, NOW).changed is False

    def test_rollover_runs_before_quota_check(self):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, browse_count=50, last_browse_reset=NOW - timedelta(days=31))
        assert decide(record, plan, Action.BROWSE, ctx()).allowed is False
        rolled = apply_time_effects(record, NOW).record
        decision = decide(rolled, plan, Action.BROWSE, ctx())
        assert decision.allowed is True
        assert decision.remaining == 50

    def test_iso_string_dates_are_accepted(self):
        plan = make_plan("institute-silver")
        record = make_record(plan, NOW, end_date=(NOW - timedelta(days=1)).isoformat().replace("+00:00", "Z"))
        assert apply_time_effects(record, NOW).expired is True

    def test_no_subscription_is_untouched(self):
        assert apply_time_effects(None, NOW).record is None


class TestVisibility:

    def test_delay_follows_plan_days(self):
        plan = make_plan("institute-silver")  # data_delay_days=5
        created = NOW - timedelta(days=4)
        result = compute_visibility(created, make_record(plan, NOW), plan, NOW)
        assert result.delay_hours == 120
        assert result.visible is False
        assert result.available_at == created + timedelta(hours=120)

    def test_visible_once_delay_elapsed(self):
        plan = make_plan("institute-silver")
        result = compute_visibility(NOW - timedelta(days=5), make_record(plan, NOW), plan, NOW)
        assert result.visible is True

    def test_teacher_search_uses_teacher_delay(self):
        plan = make_plan("institute-silver")  # teacher_data_delay_days=7
        result = compute_visibility(NOW, make_record(plan, NOW), plan, NOW, teacher_search=True)
        assert result.delay_hours == 168

    def test_no_subscription_gets_most_restrictive_delay(self):
        result = compute_visibility(NOW, None, None, NOW)
        assert result.delay_hours == ANONYMOUS_PLAN["features"]["data_delay_days"] * 24
        assert compute_visibility(NOW, None, None, NOW, teacher_search=True).delay_hours == 15 * 24

    def test_suspended_subscription_gets_anonymous_delay(self):
        plan = make_plan("institute-elite")
        record = make_record(plan, NOW, status="suspended")
        assert compute_visibility(NOW, record, plan, NOW).delay_hours == 240

    @pytest.mark.parametrize("flag", ["viewer_is_admin", "viewer_is_owner"])
    def test_admin_and_owner_bypass(self, flag):
        result = compute_visibility(NOW, None, None, NOW, **{flag: True})
        assert result.visible is True
        assert result.delay_hours == 0

    def test_result_serializes_iso_date(self):
        data = compute_visibility(NOW, None, None, NOW).to_dict()
        assert data["available_at"] == (NOW + timedelta(days=10)).isoformat()


class TestNotifications:

    def test_plan_with_alerts(self):
        plan = make_plan("institute-gold")
        assert notifications_allowed(make_record(plan, NOW), plan, NOW) is True

    def test_teacher_pro_job_alerts(self):
        plan = make_plan("teacher-pro")
        assert notifications_allowed(make_record(plan, NOW), plan, NOW) is True

    def test_plan_without_alerts(self):
        plan = make_plan("institute-silver")
        assert notifications_allowed(make_record(plan, NOW), plan, NOW) is False

    def test_inactive_subscription(self):
        plan = make_plan("institute-gold")
        assert notifications_allowed(make_record(plan, NOW, status="suspended"), plan, NOW) is False

    def test_no_subscription(self):
        assert notifications_allowed(None, None, NOW) is False


def test_snapshot_limits_copies_plan_limits():
    plan = make_plan("institute-gold")
    limits = snapshot_limits(plan)
    assert limits == {"browse_count_limit": 150, "listings_limit": 20, "job_posts_limit": 20}
    plan["features"]["max_listings"] = 99
    assert limits["listings_limit"] == 20
