# vaultbox/access_requests.py
"""
Access request state machine.

    pending --respond(approve)------------> approved
    pending --respond(deny) / revoke------> denied
    pending --resolve_auto_approvals------> approved   (auto_approve_at reached)
    pending --resolve_expired-------------> expired    (lapses_at reached, deadline still ahead)

A request that has reached its auto-approval deadline is always approved by
the next sweep. Waiting periods are capped at the lapse period when contacts
are designated, so only rows written before that cap can lapse first.

Every transition is one conditional UPDATE on `status = 'pending'`. Whichever
actor commits first wins; the others see rowcount 0 and change nothing, so an
owner clicking "approve" and the scheduled sweep can race safely and at most
one access token is ever issued per request.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vaultbox import models, notifications, policy
from vaultbox.config import ACCESS_WINDOW_HOURS, REQUEST_LAPSE_DAYS
from vaultbox.errors import (
    AlreadyResolved, DuplicatePendingRequest, Forbidden, NotATrustedContact, NotFound, VaultError,
)
from vaultbox.schemas import ContactRequestView
from vaultbox.utils import hash_value, new_access_token, utcnow

logger = logging.getLogger(__name__)

AUTO_APPROVAL_NOTE = "System auto-approved due to no response"
LAPSED_NOTE = "Request lapsed without a response"
INACTIVITY_REASON = "automated: owner inactivity"

DECISIONS = ("approve", "deny")


@dataclass
class TokenCheck:
    valid: bool
    reason: str
    request_id: Optional[str] = None
    contact_id: Optional[str] = None
    owner_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class AccessRequestStateMachine:

    def __init__(self, db: Session, sink: Optional[notifications.NotificationSink] = None,
                 access_window: Optional[timedelta] = None, lapse_after: Optional[timedelta] = None):
        self.db = db
        self.sink = sink
        self.access_window = access_window or timedelta(hours=ACCESS_WINDOW_HOURS)
        self.lapse_after = lapse_after or timedelta(days=REQUEST_LAPSE_DAYS)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> models.AccessRequest:
        request = self.db.get(models.AccessRequest, request_id)
        if request is None:
            raise NotFound("access request not found")
        return request

    def pending_for_owner(self, owner_id: str) -> List[models.AccessRequest]:
        return (
            self.db.query(models.AccessRequest)
            .join(models.TrustedContact, models.AccessRequest.contact_id == models.TrustedContact.id)
            .filter(
                models.TrustedContact.user_id == owner_id,
                models.AccessRequest.status == "pending",
            )
            .order_by(models.AccessRequest.auto_approve_at.asc())
            .all()
        )

    def contact_view(self, request_id: str, contact_email: str, now=None) -> ContactRequestView:
        now = now or utcnow()
        request = self.db.get(models.AccessRequest, request_id)
        if request is None or request.contact.email.lower() != (contact_email or "").strip().lower():
            raise NotFound("access request not found")
        seconds = None
        if request.status == "pending":
            seconds = max(0, int((request.auto_approve_at - now).total_seconds()))
        return ContactRequestView(
            request_id=request.id,
            status=request.status,
            requested_at=request.requested_at,
            auto_approve_at=request.auto_approve_at if request.status == "pending" else None,
            seconds_until_auto_approve=seconds,
            expires_at=request.expires_at if request.status == "approved" else None,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, contact_id: str, reason: str, now=None, origin: str = "contact",
               urgency_level: str = "medium", ip_address=None, device_info=None) -> models.AccessRequest:
        """
        Open a request for an active contact. The auto-approve deadline is
        fixed here from the contact's waiting period and never recomputed.
        """
        now = now or utcnow()
        contact = self.db.get(models.TrustedContact, contact_id)
        if contact is None or contact.status != "active":
            raise NotATrustedContact()
        outstanding = (
            self.db.query(models.AccessRequest.id)
            .filter(
                models.AccessRequest.contact_id == contact.id,
                models.AccessRequest.status == "pending",
            )
            .first()
        )
        if outstanding is not None:
            raise DuplicatePendingRequest()

        request = models.AccessRequest(
            contact_id=contact.id,
            reason=reason,
            urgency_level=urgency_level,
            origin=origin,
            status="pending",
            requested_at=now,
            auto_approve_at=now + contact.waiting_duration.to_timedelta(),
            lapses_at=now + self.lapse_after,
            ip_address=ip_address,
            device_info=device_info,
        )
        self.db.add(request)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise DuplicatePendingRequest()
        models.audit(self.db, "request_created", target=request.id, owner_id=contact.user_id,
                     actor="system" if origin == "inactivity" else contact.email, origin=origin)
        self.db.commit()
        self.db.refresh(request)
        logger.info("Access request %s opened for contact %s (%s), auto-approves at %s",
                    request.id, contact.id, origin, request.auto_approve_at.isoformat())

        notifications.dispatch(self.sink, notifications.RequestCreated(
            owner_id=contact.user_id,
            request_id=request.id,
            contact_name=contact.name,
            reason=reason,
            auto_approve_at=request.auto_approve_at,
            automated=origin == "inactivity",
        ))
        return request

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, request_id: str, values: dict, *conditions) -> bool:
        """Compare-and-swap out of `pending`; False when another actor got there first."""
        updated = (
            self.db.query(models.AccessRequest)
            .filter(
                models.AccessRequest.id == request_id,
                models.AccessRequest.status == "pending",
                *conditions,
            )
            .update(values, synchronize_session=False)
        )
        if not updated:
            self.db.rollback()
            return False
        return True

    def _approve(self, request_id: str, now, resolved_by: str, message: Optional[str], *conditions):
        token = new_access_token()
        expires_at = now + self.access_window
        won = self._transition(request_id, {
            models.AccessRequest.status: "approved",
            models.AccessRequest.responded_at: now,
            models.AccessRequest.expires_at: expires_at,
            models.AccessRequest.response_message: message,
            models.AccessRequest.resolved_by: resolved_by,
            models.AccessRequest.access_token_hash: hash_value(token),
        }, *conditions)
        if not won:
            return None
        request = self.get(request_id)
        action = "request_auto_approved" if resolved_by == "system" else "request_approved"
        models.audit(self.db, action, target=request.id, owner_id=request.contact.user_id,
                     actor=request.contact.user_id if resolved_by == "owner" else "system")
        self.db.commit()
        self.db.refresh(request)
        request.access_token = token
        logger.info("Access request %s approved by %s, window ends %s",
                    request.id, resolved_by, expires_at.isoformat())

        contact = request.contact
        notifications.dispatch(self.sink, notifications.RequestApproved(
            contact_email=contact.email,
            request_id=request.id,
            expires_at=expires_at,
            access_token=token,
            automatic=resolved_by == "system",
        ))
        if resolved_by == "system":
            notifications.dispatch(self.sink, notifications.AccessAutoApproved(
                owner_id=contact.user_id,
                request_id=request.id,
                contact_name=contact.name,
                expires_at=expires_at,
            ))
        return request

    def respond(self, request_id: str, acting_owner_id: str, decision: str, note: Optional[str] = None,
                now=None) -> models.AccessRequest:
        now = now or utcnow()
        if decision not in DECISIONS:
            raise VaultError(f"decision must be one of {', '.join(DECISIONS)}")
        request = self.get(request_id)
        if request.contact.user_id != acting_owner_id:
            raise Forbidden()
        if request.status != "pending":
            raise AlreadyResolved()

        if decision == "approve":
            resolved = self._approve(request.id, now, "owner", note)
            if resolved is None:
                raise AlreadyResolved()
            return resolved

        won = self._transition(request.id, {
            models.AccessRequest.status: "denied",
            models.AccessRequest.responded_at: now,
            models.AccessRequest.response_message: note,
            models.AccessRequest.resolved_by: "owner",
        })
        if not won:
            raise AlreadyResolved()
        request = self.get(request_id)
        models.audit(self.db, "request_denied", target=request.id, owner_id=acting_owner_id,
                     actor=acting_owner_id)
        self.db.commit()
        self.db.refresh(request)
        logger.info("Access request %s denied by owner", request.id)
        notifications.dispatch(self.sink, notifications.RequestDenied(
            contact_email=request.contact.email, request_id=request.id, note=note,
        ))
        return request

    def resolve_auto_approvals(self, now=None) -> List[models.AccessRequest]:
        """
        Approve every pending request whose deadline has passed. Safe to call
        any number of times: already-resolved requests are skipped untouched.
        """
        now = now or utcnow()
        due = [
            row.id for row in self.db.query(models.AccessRequest.id)
            .filter(
                models.AccessRequest.status == "pending",
                models.AccessRequest.auto_approve_at <= now,
            )
            .order_by(models.AccessRequest.auto_approve_at.asc())
        ]
        approved = []
        for request_id in due:
            request = self._approve(request_id, now, "system", AUTO_APPROVAL_NOTE,
                                    models.AccessRequest.auto_approve_at <= now)
            if request is not None:
                approved.append(request)
        if approved:
            logger.info("Auto-approved %d access request(s)", len(approved))
        return approved

    def resolve_expired(self, now=None) -> List[models.AccessRequest]:
        """Expire pending requests past their lapse time that are not yet due for auto-approval."""
        now = now or utcnow()
        due = [
            row.id for row in self.db.query(models.AccessRequest.id)
            .filter(
                models.AccessRequest.status == "pending",
                models.AccessRequest.lapses_at <= now,
                models.AccessRequest.auto_approve_at > now,
            )
        ]
        expired = []
        for request_id in due:
            won = self._transition(request_id, {
                models.AccessRequest.status: "expired",
                models.AccessRequest.responded_at: now,
                models.AccessRequest.response_message: LAPSED_NOTE,
                models.AccessRequest.resolved_by: "system",
            }, models.AccessRequest.auto_approve_at > now)
            if not won:
                continue
            request = self.get(request_id)
            models.audit(self.db, "request_expired", target=request.id, owner_id=request.contact.user_id)
            self.db.commit()
            self.db.refresh(request)
            expired.append(request)
            notifications.dispatch(self.sink, notifications.RequestExpired(
                contact_email=request.contact.email, request_id=request.id,
            ))
        if expired:
            logger.info("Expired %d access request(s)", len(expired))
        return expired

    # ------------------------------------------------------------------
    # Token checks
    # ------------------------------------------------------------------

    def verify_token(self, access_token: str, now=None) -> TokenCheck:
        """
        Resolve an access token to the owner it unlocks. Fails closed; reads
        never consume the token, but every check lands in the audit log.
        """
        now = now or utcnow()
        request = None
        if access_token:
            request = (
                self.db.query(models.AccessRequest)
                .filter(models.AccessRequest.access_token_hash == hash_value(access_token))
                .first()
            )
        contact = request.contact if request is not None else None
        ok, reason = policy.evaluate_policy(request, contact, now)

        models.audit(
            self.db, "verify_token",
            target=request.id if request is not None else None,
            owner_id=contact.user_id if contact is not None else None,
            actor=contact.email if contact is not None else "anonymous",
            valid=ok, reason=reason,
        )
        self.db.commit()
        logger.info("Token check for request %s: %s", request.id if request is not None else "-", reason)

        if not ok:
            return TokenCheck(valid=False, reason=reason)
        return TokenCheck(
            valid=True,
            reason=reason,
            request_id=request.id,
            contact_id=contact.id,
            owner_id=contact.user_id,
            expires_at=request.expires_at,
        )
