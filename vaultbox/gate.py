# vaultbox/gate.py
"""
Emergency access gate: what an approved contact's token lets them read.

Only entries the owner flagged `allow_emergency_access` are ever returned, and
their content stays ciphertext. The contact's client unwraps the content key
with their private key (envelope.unwrap_key) and decrypts locally.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from vaultbox import models
from vaultbox.access_requests import AccessRequestStateMachine
from vaultbox.errors import AccessDenied
from vaultbox.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class EmergencyScope:
    owner_id: str
    contact_id: str
    expires_at: datetime
    wrapped_key: Optional[str]
    entries: List[models.VaultEntry]


class EmergencyAccessGate:

    def __init__(self, machine: AccessRequestStateMachine):
        self.machine = machine
        self.db = machine.db

    def _entries_for(self, owner_id: str) -> List[models.VaultEntry]:
        return (
            self.db.query(models.VaultEntry)
            .filter(
                models.VaultEntry.user_id == owner_id,
                models.VaultEntry.allow_emergency_access.is_(True),
            )
            .order_by(models.VaultEntry.title.asc())
            .all()
        )

    def open_scope(self, access_token: str, now=None) -> EmergencyScope:
        now = now or utcnow()
        check = self.machine.verify_token(access_token, now=now)
        if not check.valid:
            raise AccessDenied()
        contact = self.db.get(models.TrustedContact, check.contact_id)
        entries = self._entries_for(check.owner_id)
        logger.info("Emergency scope opened for owner %s: %d entries", check.owner_id, len(entries))
        return EmergencyScope(
            owner_id=check.owner_id,
            contact_id=check.contact_id,
            expires_at=check.expires_at,
            wrapped_key=contact.wrapped_key if contact is not None else None,
            entries=entries,
        )

    def list_accessible_entries(self, access_token: str, now=None) -> List[models.VaultEntry]:
        return self.open_scope(access_token, now=now).entries
