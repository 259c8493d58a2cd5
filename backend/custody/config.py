"""
Evidence Custody - Configuration
Environment-driven settings shared by the services and routers.
"""
import os

# Signed credentials
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "evidence-custody-secret-key-change-in-production")
ALGORITHM = "HS256"

# Sessions
SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "480"))
MAX_ACTIVE_SESSIONS = int(os.getenv("MAX_ACTIVE_SESSIONS", "5"))
PENDING_LOGIN_TTL_MINUTES = int(os.getenv("PENDING_LOGIN_TTL_MINUTES", "15"))

# One-time codes
OTP_LENGTH = 6
OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", "5"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))
OTP_RESEND_COOLDOWN_SECONDS = int(os.getenv("OTP_RESEND_COOLDOWN_SECONDS", "60"))

# Lockout and rate limiting
MAX_FAILED_LOGINS = int(os.getenv("MAX_FAILED_LOGINS", "5"))
LOCKOUT_MINUTES = int(os.getenv("LOCKOUT_MINUTES", "30"))
LOGIN_RATE_LIMIT = int(os.getenv("LOGIN_RATE_LIMIT", "10"))
LOGIN_RATE_WINDOW_MINUTES = int(os.getenv("LOGIN_RATE_WINDOW_MINUTES", "15"))

MIN_PASSWORD_LENGTH = 8

# External collaborators
COLLABORATOR_TIMEOUT_SECONDS = float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "5"))
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")
PINNING_API_URL = os.getenv("PINNING_API_URL")
PINNING_JWT = os.getenv("PINNING_JWT")
ANCHOR_API_URL = os.getenv("ANCHOR_API_URL")

# Application
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
