# vaultbox/notifications.py
"""
Notification events and sinks.

Events are a closed set of pydantic models keyed on `type`. Owner-facing events
carry `owner_id` and become in-app notifications; contact-facing events carry
`contact_email` and are queued as outbound mail.

Delivery is fire-and-forget: state transitions commit first and then hand the
event to `dispatch`, which logs and drops any sink failure.
"""
import logging
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Protocol, Union

from fastapi import BackgroundTasks
from pydantic import BaseModel, Field, TypeAdapter

from vaultbox import models

logger = logging.getLogger(__name__)


class _Event(BaseModel):
    version: int = 1
    audience: Literal["owner", "contact"]


class ContactInvited(_Event):
    type: Literal["contact_invited"] = "contact_invited"
    audience: Literal["contact"] = "contact"
    contact_id: str
    contact_email: str
    owner_name: str
    verification_code: str


class RequestCreated(_Event):
    type: Literal["access_request_created"] = "access_request_created"
    audience: Literal["owner"] = "owner"
    owner_id: str
    request_id: str
    contact_name: str
    reason: str
    auto_approve_at: datetime
    automated: bool = False


class RequestApproved(_Event):
    type: Literal["access_request_approved"] = "access_request_approved"
    audience: Literal["contact"] = "contact"
    contact_email: str
    request_id: str
    expires_at: datetime
    access_token: str = Field(repr=False)
    automatic: bool = False


class AccessAutoApproved(_Event):
    type: Literal["access_auto_approved"] = "access_auto_approved"
    audience: Literal["owner"] = "owner"
    owner_id: str
    request_id: str
    contact_name: str
    expires_at: datetime


class RequestDenied(_Event):
    type: Literal["access_request_denied"] = "access_request_denied"
    audience: Literal["contact"] = "contact"
    contact_email: str
    request_id: str
    note: Optional[str] = None


class RequestExpired(_Event):
    type: Literal["access_request_expired"] = "access_request_expired"
    audience: Literal["contact"] = "contact"
    contact_email: str
    request_id: str


class ContactRevoked(_Event):
    type: Literal["trusted_contact_revoked"] = "trusted_contact_revoked"
    audience: Literal["contact"] = "contact"
    contact_email: str
    contact_id: str


NotificationEvent = Annotated[
    Union[
        ContactInvited,
        RequestCreated,
        RequestApproved,
        AccessAutoApproved,
        RequestDenied,
        RequestExpired,
        ContactRevoked,
    ],
    Field(discriminator="type"),
]

event_adapter = TypeAdapter(NotificationEvent)


class NotificationSink(Protocol):
    def notify(self, event: NotificationEvent) -> None:
        ...


def dispatch(sink: Optional[NotificationSink], event: NotificationEvent) -> None:
    if sink is None:
        return
    try:
        sink.notify(event)
    except Exception:
        logger.exception("Notification %s for %s failed", event.type, event.audience)


def render(event: NotificationEvent):
    """Title, message and priority for an owner-facing event."""
    if isinstance(event, RequestCreated):
        if event.automated:
            return (
                "Inactivity check triggered",
                f"No activity was seen for a while, so an emergency access request was opened "
                f"for {event.contact_name}. It approves automatically at "
                f"{event.auto_approve_at:%Y-%m-%d %H:%M} UTC unless you respond.",
                "critical",
            )
        return (
            "Emergency access requested",
            f"{event.contact_name} requested emergency access: {event.reason}. "
            f"It approves automatically at {event.auto_approve_at:%Y-%m-%d %H:%M} UTC unless you respond.",
            "critical",
        )
    if isinstance(event, AccessAutoApproved):
        return (
            "Emergency access granted",
            f"The request from {event.contact_name} was approved automatically after the "
            f"waiting period. Access ends {event.expires_at:%Y-%m-%d %H:%M} UTC.",
            "high",
        )
    raise ValueError(f"no owner rendering for {event.type}")


def render_email(event: NotificationEvent):
    """Subject and plain-text body for a contact-facing event."""
    if isinstance(event, ContactInvited):
        return (
            f"{event.owner_name} named you as their trusted contact",
            f"{event.owner_name} has chosen you as their trusted contact on VaultBox.\n\n"
            f"Invitation: {event.contact_id}\n"
            f"Verification code: {event.verification_code}\n\n"
            f"Use the code to accept or decline the invitation.",
        )
    if isinstance(event, RequestApproved):
        how = "automatically after the waiting period" if event.automatic else "by the vault owner"
        return (
            "Your emergency access request was approved",
            f"Your request {event.request_id} was approved {how}.\n\n"
            f"Access token: {event.access_token}\n"
            f"Access ends: {event.expires_at:%Y-%m-%d %H:%M} UTC\n\n"
            f"Keep this token private. It opens the entries shared for emergencies until then.",
        )
    if isinstance(event, RequestDenied):
        note = f"\n\nNote: {event.note}" if event.note else ""
        return (
            "Your emergency access request was denied",
            f"Your request {event.request_id} was denied.{note}",
        )
    if isinstance(event, RequestExpired):
        return (
            "Your emergency access request expired",
            f"Your request {event.request_id} lapsed without a response. You may submit a new one.",
        )
    if isinstance(event, ContactRevoked):
        return (
            "You are no longer a trusted contact",
            "The vault owner has removed you as their trusted contact. Any access you held has ended.",
        )
    raise ValueError(f"no email rendering for {event.type}")


class DatabaseNotificationSink:
    """
    Stores owner events as in-app notifications and contact events as
    outbound mail for mailer.drain_outbox to deliver.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def notify(self, event):
        db = self.session_factory()
        try:
            if event.audience == "contact":
                subject, body = render_email(event)
                db.add(models.OutboundEmail(
                    recipient=event.contact_email,
                    type=event.type,
                    subject=subject,
                    body=body,
                ))
                logger.info("Queued %s email to contact %s", event.type, event.contact_email)
            else:
                title, message, priority = render(event)
                db.add(models.Notification(
                    user_id=event.owner_id,
                    type=event.type,
                    title=title,
                    message=message,
                    priority=priority,
                    meta=event.model_dump(mode="json", exclude={"audience", "type"}),
                ))
            db.commit()
        finally:
            db.close()


class BackgroundSink:
    """Defers delivery until after the HTTP response has been sent."""

    def __init__(self, background_tasks: BackgroundTasks, inner: NotificationSink):
        self.background_tasks = background_tasks
        self.inner = inner

    def notify(self, event):
        self.background_tasks.add_task(dispatch, self.inner, event)


class RecordingSink:
    """Keeps every event in memory; used by tests and dry runs."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def notify(self, event):
        self.events.append(event)

    def of_type(self, kind):
        return [e for e in self.events if e.type == kind]
