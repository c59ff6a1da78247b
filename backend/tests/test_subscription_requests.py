"""
Change-request workflow tests: one pending request per user, review state
machine, and approval applying the plan change.
"""
from unittest.mock import AsyncMock, patch

import pytest
from pymongo.errors import DuplicateKeyError

from conftest import UserStore, attach_plans, make_cursor, make_plan, make_record, make_user
from models import AuditAction, RequestStatus, RequestType
from services.subscription_errors import (
    DuplicateRequestError,
    NotFoundError,
    RequestAlreadyProcessedError,
    StorageError,
    ValidationError,
)
from services.subscription_request_service import approval_notes, subscription_request_service
from services.subscription_service import subscription_service

ADMIN = {"user_id": "admin-001", "role": "admin"}


def pending_request(**overrides):
    request = {
        "request_id": "req-1",
        "user_id": "user-1",
        "current_plan_id": "plan-teacher-free",
        "requested_plan_id": "plan-teacher-pro",
        "request_type": "upgrade",
        "status": "pending",
        "user_notes": None,
        "admin_notes": None,
        "reviewed_by": None,
    }
    request.update(overrides)
    return request


def claim(mock_db, request, status, admin_notes=None):
    """Pending lookup followed by a successful conditional claim."""
    mock_db.subscription_requests.find_one.return_value = request
    mock_db.subscription_requests.find_one_and_update.return_value = {
        **request, "status": status, "admin_notes": admin_notes, "reviewed_by": "admin-001",
    }


class TestApprovalNotes:

    def test_with_admin_notes(self):
        assert approval_notes("upgrade", "Welcome aboard") == "Plan changed via request: upgrade. Welcome aboard"

    def test_without_admin_notes(self):
        assert approval_notes("renewal", None) == "Plan changed via request: renewal."


class TestCreateRequest:

    @pytest.mark.asyncio
    async def test_create_records_current_plan(self, mock_db):
        free = make_plan("teacher-free")
        pro = make_plan("teacher-pro")
        UserStore(make_user(role="teacher", subscription=make_record(free))).attach(mock_db)
        attach_plans(mock_db, free, pro)

        doc = await subscription_request_service.create_request(
            "user-1", "plan-teacher-pro", RequestType.UPGRADE, user_notes="Need job applications"
        )

        assert doc["status"] == "pending"
        assert doc["current_plan_id"] == "plan-teacher-free"
        assert doc["request_type"] == "upgrade"
        stored = mock_db.subscription_requests.insert_one.call_args.args[0]
        assert stored["user_id"] == "user-1"
        assert mock_db.audit_logs.insert_one.call_args.args[0]["action"] == AuditAction.CHANGE_REQUEST_CREATED

    @pytest.mark.asyncio
    async def test_user_without_plan_uses_requested_as_current(self, mock_db):
        UserStore(make_user(role="teacher")).attach(mock_db)
        attach_plans(mock_db, make_plan("teacher-pro"))

        doc = await subscription_request_service.create_request("user-1", "plan-teacher-pro", RequestType.UPGRADE)

        assert doc["current_plan_id"] == "plan-teacher-pro"

    @pytest.mark.asyncio
    async def test_second_pending_request_rejected(self, mock_db):
        UserStore(make_user(role="teacher")).attach(mock_db)
        attach_plans(mock_db, make_plan("teacher-pro"))
        mock_db.subscription_requests.find_one.return_value = {"request_id": "req-1"}

        with pytest.raises(DuplicateRequestError) as exc:
            await subscription_request_service.create_request("user-1", "plan-teacher-pro", RequestType.UPGRADE)

        assert exc.value.message == "You already have a pending subscription request"
        mock_db.subscription_requests.insert_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_insert_hits_unique_index(self, mock_db):
        UserStore(make_user(role="teacher")).attach(mock_db)
        attach_plans(mock_db, make_plan("teacher-pro"))
        mock_db.subscription_requests.insert_one.side_effect = DuplicateKeyError("one_pending_request_per_user")

        with pytest.raises(DuplicateRequestError):
            await subscription_request_service.create_request("user-1", "plan-teacher-pro", RequestType.UPGRADE)

    @pytest.mark.asyncio
    async def test_unknown_plan(self, mock_db):
        UserStore(make_user(role="teacher")).attach(mock_db)
        attach_plans(mock_db)
        with pytest.raises(NotFoundError):
            await subscription_request_service.create_request("user-1", "missing", RequestType.UPGRADE)

    @pytest.mark.asyncio
    async def test_unknown_user(self, mock_db):
        with pytest.raises(NotFoundError):
            await subscription_request_service.create_request("ghost", "plan-teacher-pro", RequestType.UPGRADE)


class TestReviewRequest:

    @pytest.mark.asyncio
    async def test_approve_upgrade_changes_plan_and_resets_counters(self, mock_db):
        free = make_plan("teacher-free")
        pro = make_plan("teacher-pro")
        record = make_record(free, job_posts_used=1, browse_count=12)
        store = UserStore(make_user(role="teacher", subscription=record)).attach(mock_db)
        attach_plans(mock_db, free, pro)
        claim(mock_db, pending_request(), "approved", "Welcome aboard")

        updated = await subscription_request_service.review_request(
            "req-1", RequestStatus.APPROVED, admin_notes="Welcome aboard", reviewer=ADMIN
        )

        assert updated["status"] == "approved"
        subscription = store.subscription
        assert subscription["plan_id"] == "plan-teacher-pro"
        assert subscription["status"] == "active"
        assert subscription["job_posts_used"] == 0
        assert subscription["browse_count"] == 0
        assert subscription["browse_count_limit"] == 100
        assert subscription["notes"] == "Plan changed via request: upgrade. Welcome aboard"

        claim_query = mock_db.subscription_requests.find_one_and_update.call_args.args[0]
        assert claim_query == {"request_id": "req-1", "status": "pending"}
        actions = [c.args[0]["action"] for c in mock_db.audit_logs.insert_one.call_args_list]
        assert AuditAction.CHANGE_REQUEST_APPROVED in actions

    @pytest.mark.asyncio
    async def test_approve_for_user_without_subscription_assigns(self, mock_db):
        pro = make_plan("teacher-pro")
        store = UserStore(make_user(role="teacher")).attach(mock_db)
        attach_plans(mock_db, pro)
        claim(mock_db, pending_request(current_plan_id="plan-teacher-pro"), "approved")

        await subscription_request_service.review_request("req-1", RequestStatus.APPROVED, reviewer=ADMIN)

        assert store.subscription["plan_id"] == "plan-teacher-pro"
        assert store.subscription["notes"] == "Plan changed via request: upgrade."

    @pytest.mark.asyncio
    async def test_reject_leaves_subscription_alone(self, mock_db):
        free = make_plan("teacher-free")
        record = make_record(free, browse_count=12)
        store = UserStore(make_user(role="teacher", subscription=record)).attach(mock_db)
        attach_plans(mock_db, free, make_plan("teacher-pro"))
        claim(mock_db, pending_request(), "rejected", "Not eligible")

        updated = await subscription_request_service.review_request(
            "req-1", RequestStatus.REJECTED, admin_notes="Not eligible", reviewer=ADMIN
        )

        assert updated["status"] == "rejected"
        assert store.subscription["plan_id"] == "plan-teacher-free"
        assert store.subscription["browse_count"] == 12
        assert mock_db.audit_logs.insert_one.call_args.args[0]["action"] == AuditAction.CHANGE_REQUEST_REJECTED

    @pytest.mark.asyncio
    async def test_already_processed(self, mock_db):
        mock_db.subscription_requests.find_one.return_value = pending_request(status="approved")

        with pytest.raises(RequestAlreadyProcessedError) as exc:
            await subscription_request_service.review_request("req-1", RequestStatus.REJECTED, reviewer=ADMIN)

        assert exc.value.message == "Request has already been processed"
        mock_db.subscription_requests.find_one_and_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_lost_claim_race(self, mock_db):
        """Another reviewer processed the request between lookup and claim."""
        UserStore(make_user(role="teacher", subscription=make_record(make_plan("teacher-free")))).attach(mock_db)
        attach_plans(mock_db, make_plan("teacher-free"), make_plan("teacher-pro"))
        mock_db.subscription_requests.find_one.return_value = pending_request()
        mock_db.subscription_requests.find_one_and_update.return_value = None

        with pytest.raises(RequestAlreadyProcessedError):
            await subscription_request_service.review_request("req-1", RequestStatus.APPROVED, reviewer=ADMIN)
        mock_db.users.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_pending_is_not_a_review_outcome(self, mock_db):
        with pytest.raises(ValidationError):
            await subscription_request_service.review_request("req-1", RequestStatus.PENDING, reviewer=ADMIN)

    @pytest.mark.asyncio
    async def test_unknown_request(self, mock_db):
        with pytest.raises(NotFoundError):
            await subscription_request_service.review_request("missing", RequestStatus.APPROVED, reviewer=ADMIN)


class TestListings:

    @pytest.mark.asyncio
    async def test_admin_listing_resolves_names(self, mock_db):
        mock_db.subscription_requests.find.return_value = make_cursor([pending_request()])
        mock_db.users.find.return_value = make_cursor([
            {"user_id": "user-1", "name": "Asha", "email": "asha@example.com", "role": "teacher"},
        ])
        mock_db.subscription_plans.find.return_value = make_cursor([
            make_plan("teacher-free"), make_plan("teacher-pro"),
        ])

        requests = await subscription_request_service.list_requests(status="pending")

        assert mock_db.subscription_requests.find.call_args.args[0] == {"status": "pending"}
        assert requests[0]["current_plan_name"] == "Teacher Basic (Free)"
        assert requests[0]["requested_plan_name"] == "Teacher Professional"
        assert requests[0]["user"] == {"name": "Asha", "email": "asha@example.com", "role": "teacher"}

    @pytest.mark.asyncio
    async def test_empty_listing(self, mock_db):
        assert await subscription_request_service.list_requests() == []
        mock_db.users.find.assert_not_called()

    @pytest.mark.asyncio
    async def test_own_listing(self, mock_db):
        mock_db.subscription_requests.find.return_value = make_cursor([pending_request()])
        mock_db.subscription_plans.find.return_value = make_cursor([make_plan("teacher-pro")])

        requests = await subscription_request_service.list_own_requests("user-1")

        assert mock_db.subscription_requests.find.call_args.args[0] == {"user_id": "user-1"}
        assert requests[0]["requested_plan_name"] == "Teacher Professional"
        assert requests[0]["current_plan_name"] is None
        assert "user" not in requests[0]


class TestApprovalFailures:

    @pytest.mark.asyncio
    async def test_deleted_plan_leaves_request_pending(self, mock_db):
        UserStore(make_user(role="teacher", subscription=make_record(make_plan("teacher-free")))).attach(mock_db)
        attach_plans(mock_db, make_plan("teacher-free"))
        mock_db.subscription_requests.find_one.return_value = pending_request()

        with pytest.raises(NotFoundError):
            await subscription_request_service.review_request("req-1", RequestStatus.APPROVED, reviewer=ADMIN)

        mock_db.subscription_requests.find_one_and_update.assert_not_called()
        mock_db.subscription_requests.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_deleted_user_leaves_request_pending(self, mock_db):
        attach_plans(mock_db, make_plan("teacher-pro"))
        mock_db.subscription_requests.find_one.return_value = pending_request()

        with pytest.raises(NotFoundError):
            await subscription_request_service.review_request("req-1", RequestStatus.APPROVED, reviewer=ADMIN)

        mock_db.subscription_requests.find_one_and_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_plan_change_returns_request_to_pending(self, mock_db):
        free = make_plan("teacher-free")
        store = UserStore(make_user(role="teacher", subscription=make_record(free))).attach(mock_db)
        attach_plans(mock_db, free, make_plan("teacher-pro"))
        claim(mock_db, pending_request(), "approved", "Welcome aboard")
        failure = AsyncMock(side_effect=StorageError("Storage failure during change plan"))

        with patch.object(subscription_service, "change_plan", failure):
            with pytest.raises(StorageError):
                await subscription_request_service.review_request(
                    "req-1", RequestStatus.APPROVED, admin_notes="Welcome aboard", reviewer=ADMIN
                )

        query, update = mock_db.subscription_requests.update_one.call_args.args
        assert query == {"request_id": "req-1", "status": "approved"}
        assert update["$set"]["status"] == "pending"
        assert update["$set"]["reviewed_by"] is None
        assert update["$set"]["admin_notes"] is None
        assert store.subscription["plan_id"] == "plan-teacher-free"
        mock_db.audit_logs.insert_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_released_request_can_be_approved_again(self, mock_db):
        free = make_plan("teacher-free")
        store = UserStore(make_user(role="teacher", subscription=make_record(free))).attach(mock_db)
        attach_plans(mock_db, free, make_plan("teacher-pro"))
        claim(mock_db, pending_request(), "approved")
        failure = AsyncMock(side_effect=StorageError("Storage failure during change plan"))

        with patch.object(subscription_service, "change_plan", failure):
            with pytest.raises(StorageError):
                await subscription_request_service.review_request("req-1", RequestStatus.APPROVED, reviewer=ADMIN)

        await subscription_request_service.review_request("req-1", RequestStatus.APPROVED, reviewer=ADMIN)

        assert store.subscription["plan_id"] == "plan-teacher-pro"
