# vaultbox/main.py
import logging
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from vaultbox import config, mailer, models, notifications, schemas
from vaultbox.access_requests import AccessRequestStateMachine
from vaultbox.auth import get_current_user, require_system_key
from vaultbox.contacts import TrustedContactRegistry
from vaultbox.db import SessionLocal, get_db, init_db
from vaultbox.errors import AccessDenied, InvalidToken, NotATrustedContact, NotFound, VaultError
from vaultbox.gate import EmergencyAccessGate
from vaultbox.scheduler import SweepScheduler, run_cycle

logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=config.LOG_LEVEL,
)
logger = logging.getLogger(__name__)

app = FastAPI(title="VaultBox Emergency Access")

default_sink = notifications.DatabaseNotificationSink(SessionLocal)

def get_notification_sink():
    return default_sink

def get_sink(background_tasks: BackgroundTasks, inner=Depends(get_notification_sink)):
    # delivery runs after the response; a transition never waits on it
    return notifications.BackgroundSink(background_tasks, inner)

@app.exception_handler(VaultError)
async def vault_error_handler(request: Request, exc: VaultError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

@app.on_event("startup")
async def startup_event():
    init_db()
    if config.SCHEDULER_ENABLED:
        send = mailer.send_email if config.RESEND_API_KEY else None
        app.state.scheduler = SweepScheduler(SessionLocal, default_sink, config.SWEEP_INTERVAL_SECONDS, send)
        app.state.scheduler.start()
    else:
        logger.info("Sweep scheduler disabled; sweeps run only via the system-key trigger")

@app.on_event("shutdown")
async def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.stop()

# --- Contact-facing: request emergency access (no session)
@app.post("/api/emergency-access-request", response_model=schemas.ContactRequestView,
          status_code=status.HTTP_201_CREATED)
def request_emergency_access(payload: schemas.EmergencyRequestIn, request: Request,
                             db: Session = Depends(get_db), sink=Depends(get_sink)):
    owner = db.query(models.User).filter(models.User.email == payload.owner_email.strip().lower()).first()
    if not owner:
        raise NotFound("owner not found")
    contact = TrustedContactRegistry(db).get_for_owner(owner.id)
    if (contact is None or contact.status != "active"
            or contact.email != payload.contact_email.strip().lower()):
        raise NotATrustedContact()
    machine = AccessRequestStateMachine(db, sink)
    access_request = machine.create(
        contact.id, payload.reason,
        urgency_level=payload.urgency_level,
        ip_address=request.client.host if request.client else None,
        device_info=request.headers.get("user-agent"),
    )
    return machine.contact_view(access_request.id, contact.email)

@app.get("/api/emergency-access-request/{request_id}", response_model=schemas.ContactRequestView)
def emergency_request_status(request_id: str, contact_email: str = Query(...), db: Session = Depends(get_db)):
    return AccessRequestStateMachine(db).contact_view(request_id, contact_email)

# --- Contact-facing: token verification and the gated entries
@app.post("/api/emergency-access/verify", response_model=schemas.VerifyOut)
def verify_emergency_token(payload: schemas.VerifyIn, db: Session = Depends(get_db)):
    check = AccessRequestStateMachine(db).verify_token(payload.token)
    if not check.valid:
        # unknown tokens are unauthenticated; known but not granted is forbidden
        if check.reason == "unknown_token":
            raise InvalidToken()
        raise AccessDenied("invalid or expired access token")
    return {"valid": True, "owner_id": check.owner_id, "contact_id": check.contact_id,
            "expires_at": check.expires_at}

@app.get("/api/emergency-access/{owner_id}/entries", response_model=schemas.EmergencyScopeOut)
def emergency_entries(owner_id: str, x_emergency_token: Optional[str] = Header(default=None),
                      db: Session = Depends(get_db)):
    gate = EmergencyAccessGate(AccessRequestStateMachine(db))
    scope = gate.open_scope(x_emergency_token)
    if scope.owner_id != owner_id:
        raise AccessDenied()
    return {
        "owner_id": scope.owner_id,
        "expires_at": scope.expires_at,
        "wrapped_key": scope.wrapped_key,
        "entries": [schemas.VaultEntryView.model_validate(e) for e in scope.entries],
    }

# --- Owner: access requests
@app.get("/api/access-requests/pending", response_model=List[schemas.AccessRequestOut])
def pending_access_requests(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return AccessRequestStateMachine(db).pending_for_owner(user.id)

@app.post("/api/access-requests/{request_id}/respond", response_model=schemas.AccessRequestOut)
def respond_to_access_request(request_id: str, payload: schemas.RespondIn,
                              user: models.User = Depends(get_current_user),
                              db: Session = Depends(get_db), sink=Depends(get_sink)):
    machine = AccessRequestStateMachine(db, sink)
    return machine.respond(request_id, user.id, payload.decision, payload.note)

# --- Owner: trusted contact
@app.get("/api/trusted-contacts", response_model=List[schemas.TrustedContactOut])
def list_trusted_contacts(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return [schemas.TrustedContactOut.from_contact(c) for c in TrustedContactRegistry(db).list_for_owner(user.id)]

@app.post("/api/trusted-contacts", response_model=schemas.TrustedContactOut, status_code=status.HTTP_201_CREATED)
def add_trusted_contact(payload: schemas.TrustedContactIn, user: models.User = Depends(get_current_user),
                        db: Session = Depends(get_db), sink=Depends(get_sink)):
    contact = TrustedContactRegistry(db, sink).add(user.id, payload.model_dump())
    return schemas.TrustedContactOut.from_contact(contact)

@app.get("/api/trusted-contacts/check-inactivity", response_model=schemas.SweepOut)
def check_inactivity(_: bool = Depends(require_system_key), db: Session = Depends(get_db),
                     sink=Depends(get_sink)):
    result = run_cycle(db, sink)
    return {"created": result.created, "auto_approved": result.auto_approved, "expired": result.expired}

@app.post("/api/trusted-contacts/{contact_id}/confirm", response_model=schemas.TrustedContactOut)
def confirm_trusted_contact(contact_id: str, payload: schemas.ContactConfirmIn, db: Session = Depends(get_db)):
    contact = TrustedContactRegistry(db).confirm(contact_id, payload.code, payload.public_key)
    return schemas.TrustedContactOut.from_contact(contact)

@app.post("/api/trusted-contacts/{contact_id}/decline", response_model=schemas.TrustedContactOut)
def decline_trusted_contact(contact_id: str, payload: schemas.ContactDeclineIn, db: Session = Depends(get_db)):
    contact = TrustedContactRegistry(db).decline(contact_id, payload.code)
    return schemas.TrustedContactOut.from_contact(contact)

@app.put("/api/trusted-contacts/{contact_id}/wrapped-key", response_model=schemas.TrustedContactOut)
def store_wrapped_key(contact_id: str, payload: schemas.WrappedKeyIn,
                      user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    contact = TrustedContactRegistry(db).store_wrapped_key(contact_id, user.id, payload.wrapped_key)
    return schemas.TrustedContactOut.from_contact(contact)

@app.post("/api/trusted-contacts/{contact_id}/reset-inactivity", response_model=schemas.TrustedContactOut)
def reset_inactivity(contact_id: str, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    contact = TrustedContactRegistry(db).reset_inactivity(contact_id, owner_id=user.id)
    return schemas.TrustedContactOut.from_contact(contact)

@app.delete("/api/trusted-contacts/{contact_id}", response_model=schemas.TrustedContactOut)
def revoke_trusted_contact(contact_id: str, user: models.User = Depends(get_current_user),
                           db: Session = Depends(get_db), sink=Depends(get_sink)):
    contact = TrustedContactRegistry(db, sink).revoke(contact_id, user.id)
    return schemas.TrustedContactOut.from_contact(contact)

# --- Owner: notifications and activity
@app.get("/api/notifications", response_model=List[schemas.NotificationOut])
def list_notifications(limit: int = Query(20, ge=1, le=200), user: models.User = Depends(get_current_user),
                       db: Session = Depends(get_db)):
    return (db.query(models.Notification)
            .filter(models.Notification.user_id == user.id)
            .order_by(models.Notification.created_at.desc())
            .limit(limit).all())

@app.post("/api/notifications/{notification_id}/mark-read", response_model=schemas.NotificationOut)
def mark_notification_read(notification_id: str, user: models.User = Depends(get_current_user),
                           db: Session = Depends(get_db)):
    notification = db.get(models.Notification, notification_id)
    if not notification or notification.user_id != user.id:
        raise NotFound("notification not found")
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification

@app.get("/api/activity-logs", response_model=List[schemas.AuditOut])
def activity_logs(limit: int = Query(10, ge=1, le=200), user: models.User = Depends(get_current_user),
                  db: Session = Depends(get_db)):
    return (db.query(models.Audit)
            .filter(models.Audit.owner_id == user.id)
            .order_by(models.Audit.ts.desc())
            .limit(limit).all())

@app.get("/api/health/db")
def health_db(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "message": "Database connection is working properly"}
