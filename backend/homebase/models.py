from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UserRole = Literal["admin", "provider", "homeowner"]
DeliveryChannel = Literal["push", "email"]
OutboxStatus = Literal["pending", "sent", "failed"]


class WireModel(BaseModel):
    """Accepts snake_case and camelCase keys; serialises snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowState(BaseModel):
    id: str
    service_request_id: Optional[str] = None
    service_call_id: Optional[str] = None
    quote_id: Optional[str] = None
    booking_id: Optional[str] = None
    invoice_id: Optional[str] = None
    payment_id: Optional[str] = None
    homeowner_id: str
    provider_org_id: Optional[str] = None
    workflow_stage: str
    stage_started_at: str
    stage_completed_at: Optional[str] = None
    homeowner_notified_at: Optional[str] = None
    provider_notified_at: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    created_at: str
    updated_at: str


class WorkflowAdvanceRequest(WireModel):
    action: str
    quote_id: Optional[str] = None
    booking_id: Optional[str] = None
    invoice_id: Optional[str] = None
    homeowner_id: Optional[str] = None
    provider_org_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowAdvanceResult(BaseModel):
    success: bool = True
    workflow_id: str
    stage: str
    created: bool = False


class StageProgress(BaseModel):
    current: int
    total: int
    percentage: int


class StageInfo(BaseModel):
    index: int
    stage: str
    label: str


class WorkflowView(BaseModel):
    workflow: WorkflowState
    stage_label: str
    progress: StageProgress


class FollowUpAction(BaseModel):
    id: str
    homeowner_id: Optional[str] = None
    provider_org_id: Optional[str] = None
    booking_id: Optional[str] = None
    action_type: str
    scheduled_for: str
    status: Literal["pending", "done", "cancelled"] = "pending"
    created_at: str


class Invoice(BaseModel):
    id: str
    booking_id: str
    status: str = "draft"
    created_at: str


class QuoteReferenceCreate(WireModel):
    id: str
    service_request_id: str
    homeowner_id: Optional[str] = None
    provider_org_id: Optional[str] = None


class BookingReferenceCreate(WireModel):
    id: str
    service_request_id: str
    quote_id: Optional[str] = None
    homeowner_id: Optional[str] = None
    provider_org_id: Optional[str] = None


class OrganizationReferenceCreate(WireModel):
    id: str
    owner_user_id: str
    owner_profile_id: Optional[str] = None


class OrganizationOwner(BaseModel):
    org_id: str
    user_id: str
    profile_id: Optional[str] = None


class ChannelOverrides(BaseModel):
    inapp: Optional[bool] = None
    push: Optional[bool] = None
    email: Optional[bool] = None


class ChannelDecision(BaseModel):
    inapp: bool
    push: bool
    email: bool


class NotificationEvent(WireModel):
    type: str
    user_id: str
    profile_id: Optional[str] = None
    role: UserRole = "homeowner"
    title: str
    body: str = ""
    action_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    force_channels: Optional[ChannelOverrides] = None


class DispatchResult(BaseModel):
    success: bool = True
    notification_id: str
    category: str
    channels: ChannelDecision
    quiet_hours: bool = False
    suppressed: List[DeliveryChannel] = Field(default_factory=list)
    outbox_entries: int = 0


class NotificationPreferences(BaseModel):
    user_id: str
    role: UserRole
    announce_inapp: bool = True
    announce_push: bool = False
    announce_email: bool = False
    message_inapp: bool = True
    message_push: bool = False
    message_email: bool = False
    payment_inapp: bool = True
    payment_push: bool = False
    payment_email: bool = False
    job_inapp: bool = True
    job_push: bool = False
    job_email: bool = False
    quote_inapp: bool = True
    quote_push: bool = False
    quote_email: bool = False
    review_inapp: bool = True
    review_push: bool = False
    review_email: bool = False
    booking_inapp: bool = True
    booking_push: bool = False
    booking_email: bool = False
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: Optional[str] = None
    contact_email: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def channel_setting(self, category: str, channel: str) -> Optional[bool]:
        value = getattr(self, f"{category}_{channel}", None)
        return value if isinstance(value, bool) else None


class NotificationPreferencesUpdate(WireModel):
    user_id: str
    role: UserRole = "homeowner"
    announce_inapp: Optional[bool] = None
    announce_push: Optional[bool] = None
    announce_email: Optional[bool] = None
    message_inapp: Optional[bool] = None
    message_push: Optional[bool] = None
    message_email: Optional[bool] = None
    payment_inapp: Optional[bool] = None
    payment_push: Optional[bool] = None
    payment_email: Optional[bool] = None
    job_inapp: Optional[bool] = None
    job_push: Optional[bool] = None
    job_email: Optional[bool] = None
    quote_inapp: Optional[bool] = None
    quote_push: Optional[bool] = None
    quote_email: Optional[bool] = None
    review_inapp: Optional[bool] = None
    review_push: Optional[bool] = None
    review_email: Optional[bool] = None
    booking_inapp: Optional[bool] = None
    booking_push: Optional[bool] = None
    booking_email: Optional[bool] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: Optional[str] = None
    contact_email: Optional[str] = None


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    profile_id: Optional[str] = None
    role: UserRole
    type: str
    title: str
    body: str
    action_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    channel_inapp: bool = True
    channel_push: bool = False
    channel_email: bool = False
    delivered_inapp: bool = False
    delivered_push: bool = False
    delivered_email: bool = False
    read_at: Optional[str] = None
    created_at: str


class OutboxEntry(BaseModel):
    id: str
    notification_id: str
    channel: DeliveryChannel
    status: OutboxStatus = "pending"
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[str] = None
    next_retry_at: Optional[str] = None
    created_at: str


class OutboxDrainRequest(WireModel):
    immediate: bool = False
    notification_id: Optional[str] = None


class OutboxDrainSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


class DeviceTokenRegisterRequest(WireModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "web"


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = ""
    role: UserRole = "homeowner"


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    role: UserRole
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: UserRole
    unread_notifications: int = 0
