"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

# Skip heavy server startup (MongoDB, seeding) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from auth import create_access_token
from database import database
from services.plan_catalog import DEFAULT_PLANS


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


# ============================================================================
# Builders
# ============================================================================

def make_plan(name: str, **overrides) -> dict:
    """A stored plan document built from the default catalogue entry `name`."""
    definition = next(p for p in DEFAULT_PLANS if p["name"] == name)
    plan = deepcopy(definition)
    plan.update(
        plan_id=f"plan-{name}",
        currency="INR",
        is_active=True,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    plan.update(overrides)
    return plan


def make_record(plan: dict, now: datetime = None, **overrides) -> dict:
    """An active subscription record on `plan`, started a day ago."""
    now = now or datetime.now(timezone.utc)
    features = plan["features"]
    record = {
        "plan_id": plan["plan_id"],
        "status": "active",
        "payment_status": "completed",
        "transaction_id": None,
        "start_date": now - timedelta(days=1),
        "end_date": now + timedelta(days=plan["duration"] - 1),
        "listings_used": 0,
        "listings_limit": features["max_listings"],
        "job_posts_used": 0,
        "job_posts_limit": features["max_job_posts"],
        "browse_count": 0,
        "browse_count_limit": features["max_browses_per_month"],
        "last_browse_reset": now - timedelta(days=1),
        "notes": "",
    }
    record.update(overrides)
    return record


def make_user(role: str = "institute", subscription: dict = None, user_id: str = "user-1") -> dict:
    user = {
        "user_id": user_id,
        "name": "Test User",
        "email": f"{user_id}@example.com",
        "role": role,
        "is_active": True,
    }
    if subscription is not None:
        user["subscription"] = subscription
    return user


def make_cursor(items):
    """Motor-style cursor: chainable sort/skip/limit and an awaitable to_list."""
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=list(items))
    return cursor


def update_result(matched: int = 1, modified: int = 1, upserted_id=None):
    result = MagicMock()
    result.matched_count = matched
    result.modified_count = modified
    result.upserted_id = upserted_id
    return result


def auth_headers(user_id: str = "user-1", role: str = "institute") -> dict:
    token = create_access_token({"user_id": user_id, "role": role, "email": f"{user_id}@example.com"})
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# Database mock
# ============================================================================

@pytest.fixture
def mock_db():
    """
    MagicMock database with AsyncMock collection methods, patched in as database.get_db().
    Tests set return values per collection, e.g. mock_db.users.find_one.return_value = {...}.
    """
    db = MagicMock()
    for name in ("users", "subscription_plans", "subscription_requests", "audit_logs"):
        collection = getattr(db, name)
        collection.find_one = AsyncMock(return_value=None)
        collection.find_one_and_update = AsyncMock(return_value=None)
        collection.insert_one = AsyncMock()
        collection.update_one = AsyncMock(return_value=update_result())
        collection.count_documents = AsyncMock(return_value=0)
        collection.find = MagicMock(return_value=make_cursor([]))
    with patch.object(database, "get_db", return_value=db):
        yield db


# ============================================================================
# Stateful side effects for multi-step scenarios
# ============================================================================

def _get(doc: dict, path: str):
    for part in path.split("."):
        if not isinstance(doc, dict):
            return None
        doc = doc.get(part)
    return doc


def _matches(doc: dict, query: dict) -> bool:
    for path, expected in query.items():
        value = _get(doc, path)
        if isinstance(expected, dict):
            if "$gt" in expected and not (value is not None and value > expected["$gt"]):
                return False
            if "$lt" in expected and not (value is not None and value < expected["$lt"]):
                return False
            if "$lte" in expected and not (value is not None and value <= expected["$lte"]):
                return False
            if "$nin" in expected and value in expected["$nin"]:
                return False
            if "$in" in expected and value not in expected["$in"]:
                return False
        elif value != expected:
            return False
    return True


class UserStore:
    """
    One user document behind users.find_one / update_one / find_one_and_update.
    Understands the operators the services use: $set, $unset, $inc and the
    $gt, $lt, $lte, $in and $nin filters.
    """

    def __init__(self, user: dict):
        self.user = deepcopy(user)

    @property
    def subscription(self) -> dict:
        return self.user.get("subscription")

    def attach(self, db):
        db.users.find_one.side_effect = self.find_one
        db.users.update_one.side_effect = self.update_one
        db.users.find_one_and_update.side_effect = self.find_one_and_update
        return self

    def find_one(self, query, projection=None, **kwargs):
        return deepcopy(self.user) if _matches(self.user, query) else None

    def update_one(self, query, update, **kwargs):
        if not _matches(self.user, query):
            return update_result(matched=0, modified=0)
        self._apply(update)
        return update_result()

    def find_one_and_update(self, query, update, **kwargs):
        if not _matches(self.user, query):
            return None
        self._apply(update)
        return deepcopy(self.user)

    def _apply(self, update: dict):
        for path, value in update.get("$set", {}).items():
            self._assign(path, deepcopy(value))
        for path in update.get("$unset", {}):
            self.user.pop(path, None)
        for path, delta in update.get("$inc", {}).items():
            self._assign(path, (_get(self.user, path) or 0) + delta)

    def _assign(self, path: str, value):
        parts = path.split(".")
        target = self.user
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value


def attach_plans(db, *plans):
    """subscription_plans.find_one resolving by plan_id or by the free-plan query."""
    def find_one(query, projection=None, **kwargs):
        for plan in plans:
            if all(plan.get(k) == v for k, v in query.items()):
                return deepcopy(plan)
        return None
    db.subscription_plans.find_one.side_effect = find_one
