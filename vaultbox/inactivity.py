# vaultbox/inactivity.py
"""
Inactivity monitor.

An owner who has not logged in for longer than their contact's inactivity
period gets an access request opened on the contact's behalf, once per period:
a request of inactivity origin that is pending or approved and newer than the
last reset suppresses another. Owner logins move the reset date forward
(see auth.record_owner_login), which is what keeps this quiet for active owners.
"""
import logging
from typing import List

from vaultbox import models
from vaultbox.access_requests import INACTIVITY_REASON, AccessRequestStateMachine
from vaultbox.errors import DuplicatePendingRequest
from vaultbox.utils import utcnow

logger = logging.getLogger(__name__)


class InactivityMonitor:

    def __init__(self, machine: AccessRequestStateMachine):
        self.machine = machine
        self.db = machine.db

    def _already_triggered(self, contact) -> bool:
        return (
            self.db.query(models.AccessRequest.id)
            .filter(
                models.AccessRequest.contact_id == contact.id,
                models.AccessRequest.origin == "inactivity",
                models.AccessRequest.status.in_(("pending", "approved")),
                models.AccessRequest.requested_at >= contact.last_inactivity_reset_date,
            )
            .first()
            is not None
        )

    def is_overdue(self, contact, now) -> bool:
        if contact.last_inactivity_reset_date is None:
            return False
        elapsed = now - contact.last_inactivity_reset_date
        return elapsed > contact.inactivity_duration.to_timedelta()

    def sweep_once(self, now=None) -> List[models.AccessRequest]:
        """
        Check every active contact once and open requests for overdue owners.
        A failure on one contact is logged and does not stop the sweep.
        """
        now = now or utcnow()
        contact_ids = [
            row.id for row in self.db.query(models.TrustedContact.id)
            .filter(models.TrustedContact.status == "active")
        ]
        created = []
        for contact_id in contact_ids:
            try:
                contact = self.db.get(models.TrustedContact, contact_id)
                if contact is None or contact.status != "active":
                    continue
                if not self.is_overdue(contact, now):
                    continue
                if self._already_triggered(contact):
                    continue
                request = self.machine.create(contact.id, INACTIVITY_REASON, now=now, origin="inactivity")
            except DuplicatePendingRequest:
                # the contact already has a request of their own in flight
                continue
            except Exception:
                self.db.rollback()
                logger.exception("Inactivity check failed for contact %s", contact_id)
                continue
            created.append(request)
        logger.info("Inactivity sweep checked %d contact(s), opened %d request(s)",
                    len(contact_ids), len(created))
        return created
