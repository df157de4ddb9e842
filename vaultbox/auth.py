# vaultbox/auth.py
"""
Owner sessions, the system key and the login hook.

Password and two-factor checks happen in the login service; by the time a
request reaches these routes it carries a signed session JWT whose `sub` is the
owner id. That same login service calls record_owner_login on every success.
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from vaultbox import config, models
from vaultbox.contacts import TrustedContactRegistry
from vaultbox.db import get_db
from vaultbox.errors import Unauthorized
from vaultbox.utils import utcnow, verify_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    if credentials is None:
        raise Unauthorized()
    claims = verify_token(credentials.credentials)
    user_id = claims.get("sub")
    if not user_id:
        raise Unauthorized("invalid session")
    user = db.get(models.User, user_id)
    if user is None or user.status not in ("active", "unverified"):
        raise Unauthorized("invalid session")
    return user


def require_system_key(x_system_key: Optional[str] = Header(default=None)):
    expected = config.SYSTEM_KEY
    if not expected or not x_system_key or not hmac.compare_digest(expected, x_system_key):
        logger.warning("Rejected system call with missing or invalid key")
        raise Unauthorized("invalid system key")
    return True


def record_owner_login(db: Session, owner_id: str, now=None) -> Optional[models.User]:
    """Mark the owner active and push their contact's inactivity clock forward."""
    now = now or utcnow()
    user = db.get(models.User, owner_id)
    if user is None:
        return None
    user.last_activity_at = now
    db.commit()
    registry = TrustedContactRegistry(db)
    contact = registry.get_for_owner(owner_id)
    if contact is not None:
        registry.reset_inactivity(contact.id, now=now, explicit=False)
    return user
