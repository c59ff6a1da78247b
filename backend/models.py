from pydantic import BaseModel, EmailStr, Field, ConfigDict, StrictBool, StrictInt, field_validator
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    GUEST = "guest"
    INSTITUTE = "institute"
    TEACHER = "teacher"
    VENDOR = "vendor"
    ADMIN = "admin"

class Persona(str, Enum):
    """Marketplace persona a plan is sold to."""
    TEACHER = "teacher"
    INSTITUTE = "institute"
    VENDOR = "vendor"

class SupportLevel(str, Enum):
    BASIC = "basic"
    PRIORITY = "priority"
    PREMIUM = "premium"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    EXPIRED = "expired"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class RequestType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    RENEWAL = "renewal"

class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class AuditAction(str, Enum):
    # Plan catalog
    PLAN_CREATED = "PLAN_CREATED"
    PLAN_UPDATED = "PLAN_UPDATED"
    PLAN_STATUS_TOGGLED = "PLAN_STATUS_TOGGLED"

    # Subscription lifecycle
    SUBSCRIPTION_AUTO_ASSIGNED = "SUBSCRIPTION_AUTO_ASSIGNED"
    SUBSCRIPTION_ASSIGNED = "SUBSCRIPTION_ASSIGNED"
    SUBSCRIPTION_EXTENDED = "SUBSCRIPTION_EXTENDED"
    SUBSCRIPTION_PLAN_CHANGED = "SUBSCRIPTION_PLAN_CHANGED"
    SUBSCRIPTION_SUSPENDED = "SUBSCRIPTION_SUSPENDED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_CONTINUED = "SUBSCRIPTION_CONTINUED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    BROWSE_COUNT_RESET = "BROWSE_COUNT_RESET"

    # Change requests
    CHANGE_REQUEST_CREATED = "CHANGE_REQUEST_CREATED"
    CHANGE_REQUEST_APPROVED = "CHANGE_REQUEST_APPROVED"
    CHANGE_REQUEST_REJECTED = "CHANGE_REQUEST_REJECTED"

    # Gating
    ENTITLEMENT_DENIED = "ENTITLEMENT_DENIED"


# Sentinel stored in plan limits meaning "no cap"
UNLIMITED = -1

# ============================================================================
# PLAN CATALOG
# ============================================================================

class PlanFeatures(BaseModel):
    """Plan limits and flags. Limits are >= 0 or UNLIMITED (-1); delays are whole days."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    max_listings: StrictInt
    max_job_posts: StrictInt
    max_browses_per_month: StrictInt
    data_delay_days: StrictInt = Field(ge=0)
    teacher_data_delay_days: StrictInt = Field(ge=0)
    can_advertise_vehicles: StrictBool = False
    instant_vehicle_alerts: StrictBool = False
    instant_job_alerts: StrictBool = False
    priority_listings: StrictBool = False
    analytics: StrictBool = False
    support_level: SupportLevel = SupportLevel.BASIC

    @field_validator("max_listings", "max_job_posts", "max_browses_per_month")
    @classmethod
    def limit_or_unlimited(cls, value: int) -> int:
        if value < 0 and value != UNLIMITED:
            raise ValueError("must be >= 0 or -1 for unlimited")
        return value

class SubscriptionPlan(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    plan_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    display_name: str
    description: str = ""
    plan_type: Persona = Persona.INSTITUTE
    price: float = Field(ge=0)
    currency: str = "INR"
    duration: int = Field(ge=1)  # days
    features: PlanFeatures
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class PlanCreate(BaseModel):
    """Admin payload for a new plan."""
    name: str
    display_name: str
    description: str = ""
    plan_type: Persona = Persona.INSTITUTE
    price: float
    currency: str = "INR"
    duration: int
    features: PlanFeatures
    is_active: bool = True

class PlanUpdate(BaseModel):
    name: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    plan_type: Optional[Persona] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    duration: Optional[int] = None
    features: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None

# ============================================================================
# SUBSCRIPTION RECORD (embedded in users.subscription)
# ============================================================================

class SubscriptionRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    plan_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    payment_status: PaymentStatus = PaymentStatus.COMPLETED
    transaction_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    listings_used: int = Field(default=0, ge=0)
    listings_limit: int = 0
    job_posts_used: int = Field(default=0, ge=0)
    job_posts_limit: int = 0
    browse_count: int = Field(default=0, ge=0)
    browse_count_limit: int = 0
    last_browse_reset: Optional[datetime] = None
    notes: Optional[str] = None

class AssignSubscriptionRequest(BaseModel):
    user_id: str
    plan_id: str
    duration: Optional[int] = Field(default=None, ge=1)
    custom_listings_limit: Optional[int] = None
    custom_browse_limit: Optional[int] = None
    notes: Optional[str] = None

class ExtendSubscriptionRequest(BaseModel):
    new_end_date: Optional[datetime] = None
    payment_status: Optional[PaymentStatus] = None
    notes: Optional[str] = None

class ChangePlanRequest(BaseModel):
    plan_id: str
    notes: Optional[str] = None

class SuspendSubscriptionRequest(BaseModel):
    reason: Optional[str] = None

class ContinueSubscriptionRequest(BaseModel):
    new_end_date: datetime
    notes: Optional[str] = None

# ============================================================================
# CHANGE REQUESTS
# ============================================================================

class SubscriptionChangeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    current_plan_id: str
    requested_plan_id: str
    request_type: RequestType
    status: RequestStatus = RequestStatus.PENDING
    user_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class CreateChangeRequest(BaseModel):
    requested_plan_id: str
    request_type: RequestType
    user_notes: Optional[str] = None

class ReviewChangeRequest(BaseModel):
    status: RequestStatus
    admin_notes: Optional[str] = None

# ============================================================================
# ENFORCEMENT PAYLOADS
# ============================================================================

class ListingVisibilityRequest(BaseModel):
    listing_created_at: datetime
    user_id: str
    owner_id: Optional[str] = None
    teacher_search: bool = False

# ============================================================================
# USERS & AUDIT
# ============================================================================

class UserAccount(BaseModel):
    """Subset of the user document this backend reads. Profile fields are owned elsewhere."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    email: EmailStr
    role: UserRole = UserRole.INSTITUTE
    is_active: bool = True
    subscription: Optional[SubscriptionRecord] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
