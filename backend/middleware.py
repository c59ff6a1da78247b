from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from models import AuditAction, UserRole
from services.entitlement_engine import Action
from services.entitlement_service import entitlement_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload or not payload.get("user_id"):
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    request.state.user = user
    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    user = await require_auth(request)
    if user.get("role") != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    return await require_admin(request)

def require_entitlement(action: Action):
    """
    Dependency enforcing a plan entitlement before a side-effecting handler runs.
    Reads the subscription fresh from the DB by the token's user_id; admins bypass.

    Usage:
        @router.post("/listings")
        async def create_listing(user: dict = Depends(require_entitlement(Action.CREATE_LISTING))):
            ...

    The check result is left on request.state.entitlement.
    """
    async def dependency(request: Request) -> dict:
        user = await require_auth(request)
        result = await entitlement_service.check(user["user_id"], action)
        request.state.entitlement = result

        if not result["allowed"]:
            await create_audit_log(
                action=AuditAction.ENTITLEMENT_DENIED,
                actor_role=UserRole(user["role"]) if user.get("role") in {r.value for r in UserRole} else None,
                actor_id=user["user_id"],
                user_id=user["user_id"],
                resource_type="subscription",
                resource_id=user["user_id"],
                metadata={
                    "action": action.value,
                    "reason": result.get("reason"),
                    "endpoint": str(request.url.path),
                    "method": request.method,
                },
            )
            logger.warning(
                "Entitlement denied: user_id=%s action=%s reason=%s endpoint=%s",
                user["user_id"], action.value, result.get("reason"), request.url.path
            )
            detail = {k: v for k, v in result.items() if k != "subscription"}
            detail["error_code"] = "ENTITLEMENT_DENIED"
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

        return user

    return dependency
