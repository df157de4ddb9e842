# vaultbox/mailer.py
"""
Outbound mail for trusted contacts.

DatabaseNotificationSink queues contact events in `outbound_emails`;
drain_outbox hands them to the mail provider oldest first. A delivered or abandoned row keeps
its subject and recipient for the record, but its body (which may carry an
access token or verification code) is scrubbed.
"""
import logging

import resend

from vaultbox import config, models
from vaultbox.utils import utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
SCRUBBED = "[removed]"


def send_email(to_email: str, subject: str, body: str):
    """Send a plain-text email through Resend."""
    resend.api_key = config.RESEND_API_KEY
    resend.Emails.send({
        "from": config.EMAIL_FROM,
        "to": to_email,
        "subject": subject,
        "text": body,
    })


def drain_outbox(db, send=send_email, limit: int = 50, now=None) -> int:
    """Deliver queued mail; returns how many were sent. Failures stay queued until MAX_ATTEMPTS."""
    now = now or utcnow()
    queued = (
        db.query(models.OutboundEmail)
        .filter(models.OutboundEmail.status == "queued")
        .order_by(models.OutboundEmail.created_at.asc())
        .limit(limit)
        .all()
    )
    sent = 0
    for mail in queued:
        try:
            send(mail.recipient, mail.subject, mail.body)
        except Exception as exc:
            mail.attempts += 1
            mail.last_error = str(exc)[:500]
            if mail.attempts >= MAX_ATTEMPTS:
                mail.status = "failed"
                mail.body = SCRUBBED
            logger.warning("Email %s to %s failed (attempt %d): %s",
                           mail.type, mail.recipient, mail.attempts, exc)
        else:
            mail.status = "sent"
            mail.sent_at = now
            mail.body = SCRUBBED
            sent += 1
            logger.info("Email %s sent to %s", mail.type, mail.recipient)
        db.commit()
    return sent
