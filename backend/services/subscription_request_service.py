"""Subscription change requests: user-initiated upgrade / downgrade / renewal.

State machine: pending -> approved | rejected (both terminal).
At most one pending request per user; enforced by the query below and by the
partial unique index on subscription_requests.user_id.
Approving re-runs the plan-change transition, including the counter reset.
If that transition fails the request goes back to pending.
"""
from typing import Any, Dict, List, Optional
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, RequestStatus, RequestType, SubscriptionChangeRequest, UserRole
from services.entitlement_engine import has_subscription
from services.plan_catalog import plan_catalog
from services.subscription_errors import (
    DuplicateRequestError,
    NotFoundError,
    RequestAlreadyProcessedError,
    SubscriptionError,
    ValidationError,
    storage_guard,
)
from services.subscription_service import subscription_service
from utils.audit import create_audit_log
from utils.dates import utc_now

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "You already have a pending subscription request"


def approval_notes(request_type: str, admin_notes: Optional[str]) -> str:
    return f"Plan changed via request: {request_type}. {admin_notes or ''}".strip()


class SubscriptionRequestService:

    async def create_request(
        self,
        user_id: str,
        requested_plan_id: str,
        request_type: RequestType,
        user_notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        user = await subscription_service.get_user(user_id)
        requested_plan = await plan_catalog.get_plan(requested_plan_id)
        if not requested_plan:
            raise NotFoundError("Requested subscription plan not found", details={"plan_id": requested_plan_id})

        db = database.get_db()
        existing = await db.subscription_requests.find_one(
            {"user_id": user_id, "status": RequestStatus.PENDING.value},
            {"_id": 0, "request_id": 1},
        )
        if existing:
            raise DuplicateRequestError(DUPLICATE_MESSAGE, details={"request_id": existing["request_id"]})

        record = user.get("subscription")
        # Users without a plan yet record the requested plan as current
        current_plan_id = record["plan_id"] if has_subscription(record) else requested_plan_id

        request = SubscriptionChangeRequest(
            user_id=user_id,
            current_plan_id=current_plan_id,
            requested_plan_id=requested_plan_id,
            request_type=request_type,
            user_notes=user_notes,
        )
        doc = request.model_dump(mode="json")
        doc["created_at"] = request.created_at
        doc["updated_at"] = request.updated_at
        async with storage_guard("create subscription request"):
            try:
                await db.subscription_requests.insert_one(dict(doc))
            except DuplicateKeyError:
                raise DuplicateRequestError(DUPLICATE_MESSAGE)

        logger.info(f"Change request {request.request_id} created by {user_id}: {doc['request_type']} -> {requested_plan_id}")
        await create_audit_log(
            action=AuditAction.CHANGE_REQUEST_CREATED,
            actor_role=UserRole(user["role"]) if user.get("role") in {r.value for r in UserRole} else None,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription_request",
            resource_id=request.request_id,
            metadata={"request_type": doc["request_type"], "requested_plan_id": requested_plan_id},
        )
        return doc

    async def review_request(
        self,
        request_id: str,
        status: RequestStatus,
        admin_notes: Optional[str] = None,
        reviewer: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Approve or reject a pending request. Terminal requests cannot be reviewed again."""
        status = RequestStatus(status)
        if status == RequestStatus.PENDING:
            raise ValidationError("Review status must be approved or rejected")

        db = database.get_db()
        request = await db.subscription_requests.find_one({"request_id": request_id}, {"_id": 0})
        if not request:
            raise NotFoundError("Subscription request not found", details={"request_id": request_id})
        if request["status"] != RequestStatus.PENDING.value:
            raise RequestAlreadyProcessedError("Request has already been processed", details={"status": request["status"]})

        if status == RequestStatus.APPROVED:
            # Fail before the claim when the approval cannot be applied
            await plan_catalog.find_plan_by_id(request["requested_plan_id"])
            await subscription_service.get_user(request["user_id"])

        # Claim the transition first so two reviewers cannot both apply it
        async with storage_guard("review subscription request"):
            updated = await db.subscription_requests.find_one_and_update(
                {"request_id": request_id, "status": RequestStatus.PENDING.value},
                {"$set": {
                    "status": status.value,
                    "admin_notes": admin_notes,
                    "reviewed_by": (reviewer or {}).get("user_id"),
                    "updated_at": utc_now(),
                }},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        if updated is None:
            raise RequestAlreadyProcessedError("Request has already been processed")

        if status == RequestStatus.APPROVED:
            try:
                await self._apply(updated, admin_notes, reviewer)
            except SubscriptionError as e:
                logger.error(f"Applying change request {request_id} failed, returning it to pending: {e}")
                await self._release_claim(request)
                raise

        logger.info(f"Change request {request_id} {status.value} by {(reviewer or {}).get('user_id')}")
        await create_audit_log(
            action=AuditAction.CHANGE_REQUEST_APPROVED if status == RequestStatus.APPROVED else AuditAction.CHANGE_REQUEST_REJECTED,
            actor_role=UserRole.ADMIN,
            actor_id=(reviewer or {}).get("user_id"),
            user_id=updated["user_id"],
            resource_type="subscription_request",
            resource_id=request_id,
            before_state={"status": RequestStatus.PENDING.value},
            after_state={"status": status.value},
            metadata={"admin_notes": admin_notes} if admin_notes else None,
        )
        return updated

    async def _release_claim(self, request: Dict[str, Any]) -> None:
        """Put an approved-but-unapplied request back to pending so it can be reviewed again."""
        db = database.get_db()
        async with storage_guard("release subscription request"):
            await db.subscription_requests.update_one(
                {"request_id": request["request_id"], "status": RequestStatus.APPROVED.value},
                {"$set": {
                    "status": RequestStatus.PENDING.value,
                    "admin_notes": request.get("admin_notes"),
                    "reviewed_by": None,
                    "updated_at": utc_now(),
                }},
            )

    async def _apply(self, request: Dict[str, Any], admin_notes: Optional[str], reviewer: Optional[Dict[str, Any]]) -> None:
        notes = approval_notes(request["request_type"], admin_notes)
        metadata = {"request_id": request["request_id"], "request_type": request["request_type"]}
        user = await subscription_service.get_user(request["user_id"])
        if has_subscription(user.get("subscription")):
            await subscription_service.change_plan(
                request["user_id"],
                request["requested_plan_id"],
                notes=notes,
                actor=reviewer,
                audit_metadata=metadata,
            )
        else:
            await subscription_service.assign_subscription(
                request["user_id"],
                request["requested_plan_id"],
                notes=notes,
                actor=reviewer,
            )

    # -------------------------------------------------------------------------
    # Listings
    # -------------------------------------------------------------------------

    async def list_requests(self, status: Optional[str] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Admin listing, newest first, with user and plan names resolved."""
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if user_id:
            query["user_id"] = user_id

        db = database.get_db()
        requests = await db.subscription_requests.find(query, {"_id": 0}).sort("created_at", -1).to_list(None)
        if not requests:
            return []

        user_ids = list({r["user_id"] for r in requests})
        users = await db.users.find(
            {"user_id": {"$in": user_ids}},
            {"_id": 0, "user_id": 1, "name": 1, "email": 1, "role": 1},
        ).to_list(None)
        users_by_id = {u["user_id"]: u for u in users}
        return await self._with_plan_names(requests, users_by_id)

    async def list_own_requests(self, user_id: str) -> List[Dict[str, Any]]:
        db = database.get_db()
        requests = await db.subscription_requests.find({"user_id": user_id}, {"_id": 0}).sort("created_at", -1).to_list(None)
        return await self._with_plan_names(requests)

    async def _with_plan_names(
        self,
        requests: List[Dict[str, Any]],
        users_by_id: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        plan_ids = [r["current_plan_id"] for r in requests] + [r["requested_plan_id"] for r in requests]
        plans = await plan_catalog.get_plans_by_ids(plan_ids)
        for request in requests:
            current = plans.get(request["current_plan_id"]) or {}
            requested = plans.get(request["requested_plan_id"]) or {}
            request["current_plan_name"] = current.get("display_name") or current.get("name")
            request["requested_plan_name"] = requested.get("display_name") or requested.get("name")
            if users_by_id is not None:
                user = users_by_id.get(request["user_id"]) or {}
                request["user"] = {k: user.get(k) for k in ("name", "email", "role")}
        return requests


# Singleton instance
subscription_request_service = SubscriptionRequestService()
