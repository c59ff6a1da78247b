"""Audit trail for plan and subscription changes.

Writes go to db.audit_logs. A failed audit write is logged and swallowed so
the subscription change it describes still succeeds.
"""
from database import database
from models import AuditLog, AuditAction, UserRole
from pymongo.errors import PyMongoError
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

MAX_TRAIL_ENTRIES = 200

_MISSING = object()


def diff_states(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Field-level changes between two snapshots: {field: {"from": old, "to": new}}.

    A field present on one side only is reported with None on the other.
    """
    before = before or {}
    after = after or {}
    changes = {}
    for key in sorted(set(before) | set(after)):
        old = before.get(key, _MISSING)
        new = after.get(key, _MISSING)
        if old != new:
            changes[key] = {
                "from": None if old is _MISSING else old,
                "to": None if new is _MISSING else new,
            }
    return changes


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
    auto_diff: bool = True
) -> str:
    """Record one audit entry and return its audit_id ("" when the write failed).

    With auto_diff and both snapshots given, the changed field names are
    added to metadata["changed_fields"] and the diff to metadata["diff"].
    """
    entry_metadata = dict(metadata or {})
    if auto_diff and before_state and after_state:
        changes = diff_states(before_state, after_state)
        if changes:
            entry_metadata["changed_fields"] = list(changes)
            entry_metadata["diff"] = changes

    audit_log = AuditLog(
        action=action,
        actor_role=actor_role,
        actor_id=actor_id,
        user_id=user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        before_state=before_state,
        after_state=after_state,
        metadata=entry_metadata or None,
        reason_code=reason_code,
    )

    try:
        db = database.get_db()
        await db.audit_logs.insert_one(audit_log.model_dump())
    except PyMongoError as e:
        logger.error(f"Failed to write audit entry {action.value} for {resource_type}/{resource_id}: {e}")
        return ""

    logger.info(f"Audit: {action.value} {resource_type}/{resource_id} by {actor_id or 'system'}")
    return audit_log.audit_id


async def get_audit_trail(
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    actions: Optional[List[AuditAction]] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """Audit entries matching the given filters, newest first."""
    query: Dict[str, Any] = {}
    if user_id:
        query["user_id"] = user_id
    if resource_type:
        query["resource_type"] = resource_type
    if resource_id:
        query["resource_id"] = resource_id
    if actions:
        query["action"] = {"$in": [a.value for a in actions]}

    limit = max(1, min(limit, MAX_TRAIL_ENTRIES))
    db = database.get_db()
    return await db.audit_logs.find(query, {"_id": 0}).sort("timestamp", -1).limit(limit).to_list(limit)
