# vaultbox/contacts.py
"""
Trusted contact registry: the single person an owner designates for emergency
access, their invitation lifecycle and the inactivity clock they are bound to.
"""
import binascii
import hmac
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vaultbox import durations, envelope, models, notifications
from vaultbox.durations import Duration
from vaultbox.errors import (
    AlreadyHasContact, Forbidden, InvalidContactState, InvalidPeriod, NotFound, VaultError,
)
from vaultbox.utils import hash_value, new_verification_code, utcnow

logger = logging.getLogger(__name__)

REVOKED_NOTE = "Trusted contact revoked by owner"


def _period(value, default: Duration, check) -> str:
    if value is None:
        return str(default)
    try:
        return str(check(value))
    except ValueError as exc:
        raise InvalidPeriod(str(exc)) from exc


class TrustedContactRegistry:

    def __init__(self, db: Session, sink: Optional[notifications.NotificationSink] = None):
        self.db = db
        self.sink = sink

    def get(self, contact_id: str) -> models.TrustedContact:
        contact = self.db.get(models.TrustedContact, contact_id)
        if contact is None:
            raise NotFound("trusted contact not found")
        return contact

    def get_owned(self, contact_id: str, owner_id: str) -> models.TrustedContact:
        contact = self.get(contact_id)
        if contact.user_id != owner_id:
            raise Forbidden()
        return contact

    def get_for_owner(self, owner_id: str) -> Optional[models.TrustedContact]:
        """The owner's live (pending or active) contact, if any."""
        return (
            self.db.query(models.TrustedContact)
            .filter(
                models.TrustedContact.user_id == owner_id,
                models.TrustedContact.status.in_(models.LIVE_CONTACT_STATUSES),
            )
            .first()
        )

    def list_for_owner(self, owner_id: str) -> List[models.TrustedContact]:
        return (
            self.db.query(models.TrustedContact)
            .filter(models.TrustedContact.user_id == owner_id)
            .order_by(models.TrustedContact.created_at.desc())
            .all()
        )

    def add(self, owner_id: str, contact_data: dict, now=None) -> models.TrustedContact:
        """
        Designate the owner's trusted contact. Starts `pending` until the contact
        confirms with the emailed verification code.
        """
        now = now or utcnow()
        owner = self.db.get(models.User, owner_id)
        if owner is None:
            raise NotFound("owner not found")
        if self.get_for_owner(owner_id) is not None:
            raise AlreadyHasContact()

        code = new_verification_code()
        contact = models.TrustedContact(
            user_id=owner_id,
            name=contact_data["name"],
            email=contact_data["email"].strip().lower(),
            phone=contact_data.get("phone"),
            access_level=contact_data.get("access_level") or "emergency_only",
            waiting_period=_period(contact_data.get("waiting_period"), Duration(24), durations.waiting_period),
            inactivity_period=_period(contact_data.get("inactivity_period"), Duration.days(30),
                                      durations.inactivity_period),
            status="pending",
            verification_code_hash=hash_value(code),
            last_inactivity_reset_date=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(contact)
        try:
            self.db.flush()
        except IntegrityError:
            # a concurrent add won the one-contact slot
            self.db.rollback()
            raise AlreadyHasContact()
        models.audit(self.db, "contact_added", target=contact.id, owner_id=owner_id, actor=owner_id,
                     name=contact.name)
        self.db.commit()
        self.db.refresh(contact)
        logger.info("Owner %s designated trusted contact %s", owner_id, contact.id)

        notifications.dispatch(self.sink, notifications.ContactInvited(
            contact_id=contact.id,
            contact_email=contact.email,
            owner_name=owner.full_name,
            verification_code=code,
        ))
        return contact

    def _check_code(self, contact, code: str):
        if contact.status != "pending":
            raise InvalidContactState("invitation is no longer open")
        expected = contact.verification_code_hash or ""
        if not code or not hmac.compare_digest(expected, hash_value(code.strip().upper())):
            raise Forbidden("invalid verification code")

    def confirm(self, contact_id: str, code: str, public_key: Optional[str] = None, now=None):
        now = now or utcnow()
        contact = self.get(contact_id)
        self._check_code(contact, code)
        if public_key:
            try:
                envelope.load_public_key(public_key)
            except ValueError as exc:
                raise VaultError(str(exc))
            contact.public_key = public_key
        contact.status = "active"
        contact.verified_at = now
        contact.verification_code_hash = None
        # the inactivity clock starts once the relationship is in force
        contact.last_inactivity_reset_date = max(contact.last_inactivity_reset_date or now, now)
        models.audit(self.db, "contact_confirmed", target=contact.id, owner_id=contact.user_id,
                     actor=contact.email)
        self.db.commit()
        self.db.refresh(contact)
        logger.info("Trusted contact %s confirmed", contact.id)
        return contact

    def decline(self, contact_id: str, code: str, now=None):
        contact = self.get(contact_id)
        self._check_code(contact, code)
        contact.status = "declined"
        contact.verification_code_hash = None
        models.audit(self.db, "contact_declined", target=contact.id, owner_id=contact.user_id,
                     actor=contact.email)
        self.db.commit()
        self.db.refresh(contact)
        logger.info("Trusted contact %s declined", contact.id)
        return contact

    def reset_inactivity(self, contact_id: str, owner_id: Optional[str] = None, now=None,
                         explicit: bool = True):
        """
        Restart the contact's inactivity clock. Login resets never move it
        backwards; an explicit reset from the owner sets it to `now` as given.
        """
        now = now or utcnow()
        contact = self.get_owned(contact_id, owner_id) if owner_id else self.get(contact_id)
        if not contact.is_live:
            raise InvalidContactState("contact is not live")
        current = contact.last_inactivity_reset_date
        if explicit or current is None or now > current:
            contact.last_inactivity_reset_date = now
        models.audit(self.db, "inactivity_reset", target=contact.id, owner_id=contact.user_id,
                     actor=owner_id or "login", explicit=explicit)
        self.db.commit()
        self.db.refresh(contact)
        return contact

    def store_wrapped_key(self, contact_id: str, owner_id: str, wrapped_key: str):
        contact = self.get_owned(contact_id, owner_id)
        if contact.status != "active" or not contact.public_key:
            raise InvalidContactState("contact has not confirmed with a public key")
        try:
            envelope.b64decode(wrapped_key)
        except (binascii.Error, ValueError) as exc:
            raise VaultError("wrapped key must be base64") from exc
        contact.wrapped_key = wrapped_key
        models.audit(self.db, "wrapped_key_stored", target=contact.id, owner_id=owner_id, actor=owner_id)
        self.db.commit()
        self.db.refresh(contact)
        return contact

    def revoke(self, contact_id: str, owner_id: str, now=None):
        """
        Revoke the contact. Pending requests are denied in the same transaction
        and the wrapped key is dropped, so no access path survives.
        """
        now = now or utcnow()
        contact = self.get_owned(contact_id, owner_id)
        if contact.status == "revoked":
            return contact

        pending_ids = [
            row.id for row in self.db.query(models.AccessRequest.id).filter(
                models.AccessRequest.contact_id == contact.id,
                models.AccessRequest.status == "pending",
            )
        ]
        denied = 0
        if pending_ids:
            denied = (
                self.db.query(models.AccessRequest)
                .filter(
                    models.AccessRequest.id.in_(pending_ids),
                    models.AccessRequest.status == "pending",
                )
                .update({
                    models.AccessRequest.status: "denied",
                    models.AccessRequest.responded_at: now,
                    models.AccessRequest.response_message: REVOKED_NOTE,
                    models.AccessRequest.resolved_by: "owner",
                }, synchronize_session=False)
            )
        contact.status = "revoked"
        contact.wrapped_key = None
        contact.verification_code_hash = None
        models.audit(self.db, "contact_revoked", target=contact.id, owner_id=owner_id, actor=owner_id,
                     denied_requests=denied)
        self.db.commit()
        self.db.refresh(contact)
        logger.info("Owner %s revoked contact %s (%d pending request(s) denied)", owner_id, contact.id, denied)

        for request_id in pending_ids:
            notifications.dispatch(self.sink, notifications.RequestDenied(
                contact_email=contact.email, request_id=request_id, note=REVOKED_NOTE,
            ))
        notifications.dispatch(self.sink, notifications.ContactRevoked(
            contact_email=contact.email, contact_id=contact.id,
        ))
        return contact
