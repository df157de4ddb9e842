# vaultbox/models.py
from sqlalchemy import Column, String, DateTime, Boolean, Integer, JSON, ForeignKey, Text, Index, text
from sqlalchemy.orm import relationship
import uuid
from vaultbox import envelope
from vaultbox.db import Base
from vaultbox.durations import Duration
from vaultbox.utils import utcnow

def gen_uuid():
    return str(uuid.uuid4())

def gen_kdf_salt():
    return envelope.b64encode(envelope.generate_salt())

USER_STATUSES = ("active", "locked", "suspended", "unverified")
ENTRY_STATUSES = ("active", "locked", "shared", "expiring")
CONTACT_STATUSES = ("pending", "active", "declined", "revoked")
LIVE_CONTACT_STATUSES = ("pending", "active")
ACCESS_LEVELS = ("emergency_only", "full_access", "limited_access", "temporary_access")
REQUEST_STATUSES = ("pending", "approved", "denied", "expired")
OUTBOX_STATUSES = ("queued", "sent", "failed")

class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=gen_uuid)
    username = Column(String, unique=True, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=False)
    status = Column(String, default="active")
    kdf_salt = Column(String, nullable=True, default=gen_kdf_salt)  # base64, per-user PBKDF2 salt
    last_activity_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    entries = relationship("VaultEntry", back_populates="owner")
    contacts = relationship("TrustedContact", back_populates="owner")

class VaultEntry(Base):
    __tablename__ = "vault_entries"
    id = Column(String, primary_key=True, default=gen_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    category = Column(String, default="other")
    content = Column(Text, nullable=False)  # base64 AES-GCM blob, never plaintext
    status = Column(String, default="active")
    allow_emergency_access = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="entries")

class TrustedContact(Base):
    __tablename__ = "trusted_contacts"
    id = Column(String, primary_key=True, default=gen_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    status = Column(String, default="pending")
    access_level = Column(String, default="emergency_only")
    waiting_period = Column(String, default="24 hours")
    inactivity_period = Column(String, default="30 days")
    verification_code_hash = Column(String, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    public_key = Column(Text, nullable=True)  # contact's RSA key, base64 DER SPKI
    wrapped_key = Column(Text, nullable=True)  # owner's content key wrapped for this contact
    last_inactivity_reset_date = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="contacts")
    requests = relationship("AccessRequest", back_populates="contact")

    # one live contact per owner, enforced by the database as well
    __table_args__ = (
        Index(
            "uq_trusted_contacts_live_owner", "user_id", unique=True,
            sqlite_where=text("status IN ('pending', 'active')"),
            postgresql_where=text("status IN ('pending', 'active')"),
        ),
    )

    @property
    def waiting_duration(self) -> Duration:
        return Duration.parse(self.waiting_period)

    @property
    def inactivity_duration(self) -> Duration:
        return Duration.parse(self.inactivity_period)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_CONTACT_STATUSES

class AccessRequest(Base):
    __tablename__ = "access_requests"
    id = Column(String, primary_key=True, default=gen_uuid)
    contact_id = Column(String, ForeignKey("trusted_contacts.id"), nullable=False)
    reason = Column(Text, nullable=False)
    urgency_level = Column(String, default="medium")
    origin = Column(String, default="contact")  # contact | inactivity
    status = Column(String, default="pending", nullable=False)
    requested_at = Column(DateTime, nullable=False)
    auto_approve_at = Column(DateTime, nullable=False)
    lapses_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    responded_at = Column(DateTime, nullable=True)
    response_message = Column(Text, nullable=True)
    resolved_by = Column(String, nullable=True)  # owner | system
    access_token_hash = Column(String, nullable=True, unique=True)
    ip_address = Column(String, nullable=True)
    device_info = Column(String, nullable=True)

    contact = relationship("TrustedContact", back_populates="requests")

    # raw token, only set on the instance that just issued it
    access_token = None

    __table_args__ = (
        Index("ix_access_requests_contact_status", "contact_id", "status"),
        Index("ix_access_requests_status_auto_approve", "status", "auto_approve_at"),
        Index(
            "uq_access_requests_pending_contact", "contact_id", unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    @property
    def owner_id(self):
        return self.contact.user_id if self.contact else None

class Audit(Base):
    __tablename__ = "audit"
    event_id = Column(String, primary_key=True, default=gen_uuid)
    owner_id = Column(String, index=True, nullable=True)
    actor = Column(String)
    action = Column(String)
    target = Column(String)
    ts = Column(DateTime, default=utcnow)
    meta = Column(JSON, default=dict)

class Notification(Base):
    __tablename__ = "notifications"
    id = Column(String, primary_key=True, default=gen_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String, default="medium")
    is_read = Column(Boolean, default=False)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)

class OutboundEmail(Base):
    """Contact-facing mail waiting for the mailer; the body is scrubbed once it is handed off."""
    __tablename__ = "outbound_emails"
    id = Column(String, primary_key=True, default=gen_uuid)
    recipient = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    status = Column(String, default="queued", nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    sent_at = Column(DateTime, nullable=True)

def audit(db, action, target=None, owner_id=None, actor="system", **meta):
    db.add(Audit(owner_id=owner_id, actor=actor, action=action, target=target, meta=meta))
