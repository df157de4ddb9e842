# vaultbox/config.py
import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./vaultbox.db")

# JWT signing key for owner sessions; replace in every real deployment
SESSION_SIGN_KEY = os.environ.get("VAULT_SESSION_KEY", "dev-secret-key")
SESSION_ALG = "HS256"

# shared secret for scheduler / cron callers of the inactivity check
SYSTEM_KEY = os.environ.get("VAULT_SYSTEM_KEY")

ACCESS_WINDOW_HOURS = int(os.environ.get("ACCESS_WINDOW_HOURS", "72"))
REQUEST_LAPSE_DAYS = int(os.environ.get("REQUEST_LAPSE_DAYS", "7"))

SWEEP_INTERVAL_SECONDS = int(os.environ.get("SWEEP_INTERVAL_SECONDS", "300"))
SCHEDULER_ENABLED = os.environ.get("VAULT_SCHEDULER_ENABLED", "0").lower() in ("1", "true", "yes")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# outbound mail for trusted contacts; without RESEND_API_KEY mail stays in the outbox
RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
EMAIL_FROM = os.environ.get("EMAIL_FROM", "no-reply@vaultbox.local")
