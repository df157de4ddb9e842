# vaultbox/schemas.py
from datetime import datetime
from typing import Annotated, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, WithJsonSchema, field_validator

from vaultbox import durations
from vaultbox.durations import Duration

Period = Annotated[Duration, WithJsonSchema({"type": "string", "examples": ["24 hours", "30 days"]})]

class TrustedContactIn(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(min_length=1)
    email: str = Field(min_length=3, max_length=320)
    phone: Optional[str] = None
    access_level: Literal["emergency_only", "full_access", "limited_access", "temporary_access"] = "emergency_only"
    waiting_period: Period = Duration(24)
    inactivity_period: Period = Duration.days(30)

    # wire format is the free-text "<N> hours" / "<N> days"; clients send the
    # inactivity period as a bare number of days
    @field_validator("waiting_period", mode="before")
    @classmethod
    def parse_waiting_period(cls, value):
        return durations.waiting_period(value)

    @field_validator("inactivity_period", mode="before")
    @classmethod
    def parse_inactivity_period(cls, value):
        return durations.inactivity_period(value)

class TrustedContactOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    phone: Optional[str] = None
    status: str
    access_level: str
    waiting_period: str
    inactivity_period: str
    last_inactivity_reset_date: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    has_public_key: bool = False
    has_wrapped_key: bool = False

    @classmethod
    def from_contact(cls, contact):
        out = cls.model_validate(contact)
        out.has_public_key = bool(contact.public_key)
        out.has_wrapped_key = bool(contact.wrapped_key)
        return out

class ContactConfirmIn(BaseModel):
    code: str
    public_key: Optional[str] = None

class ContactDeclineIn(BaseModel):
    code: str

class WrappedKeyIn(BaseModel):
    wrapped_key: str = Field(min_length=1)

class EmergencyRequestIn(BaseModel):
    owner_email: str = Field(min_length=3, max_length=320)
    contact_email: str = Field(min_length=3, max_length=320)
    reason: str = Field(min_length=1, max_length=2000)
    urgency_level: Literal["low", "medium", "high", "critical"] = "medium"

class ContactRequestView(BaseModel):
    """What a contact may see about their own request: coarse state and countdown."""
    request_id: str
    status: Literal["pending", "approved", "denied", "expired"]
    requested_at: datetime
    auto_approve_at: Optional[datetime] = None
    seconds_until_auto_approve: Optional[int] = None
    expires_at: Optional[datetime] = None

class AccessRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    contact_id: str
    reason: str
    urgency_level: Optional[str] = None
    origin: str
    status: str
    requested_at: datetime
    auto_approve_at: datetime
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response_message: Optional[str] = None
    resolved_by: Optional[str] = None

class RespondIn(BaseModel):
    decision: Literal["approve", "deny"]
    note: Optional[str] = Field(default=None, max_length=2000)

class VerifyIn(BaseModel):
    token: str = Field(min_length=1)

class VerifyOut(BaseModel):
    valid: bool
    owner_id: Optional[str] = None
    contact_id: Optional[str] = None
    expires_at: Optional[datetime] = None

class VaultEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    category: str
    content: str  # still ciphertext
    status: Optional[str] = None
    updated_at: Optional[datetime] = None

class EmergencyScopeOut(BaseModel):
    owner_id: str
    expires_at: datetime
    wrapped_key: Optional[str] = None
    entries: List[VaultEntryView]

class SweepOut(BaseModel):
    created: List[str]
    auto_approved: List[str]
    expired: List[str]

class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    title: str
    message: str
    priority: str
    is_read: bool
    created_at: datetime

class AuditOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    actor: Optional[str] = None
    action: str
    target: Optional[str] = None
    ts: datetime
    meta: Optional[dict] = None
