import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookings.db")

# Frontend base URL for CORS
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Business calendar settings (UK hire business)
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "Europe/London")
DEFAULT_EVENT_START_HOUR = int(os.getenv("DEFAULT_EVENT_START_HOUR", "9"))
DEFAULT_EVENT_END_HOUR = int(os.getenv("DEFAULT_EVENT_END_HOUR", "17"))

# Google Calendar OAuth Configuration
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
GOOGLE_CALENDAR_TIMEOUT_SECONDS = float(os.getenv("GOOGLE_CALENDAR_TIMEOUT_SECONDS", "15"))
# Fernet key for calendar tokens at rest
# Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
CALENDAR_TOKEN_ENCRYPTION_KEY = os.getenv("CALENDAR_TOKEN_ENCRYPTION_KEY")

# Calendar API resilience
CALENDAR_RETRY_MAX_ATTEMPTS = int(os.getenv("CALENDAR_RETRY_MAX_ATTEMPTS", "3"))
CALENDAR_RETRY_BASE_DELAY = float(os.getenv("CALENDAR_RETRY_BASE_DELAY", "1.0"))
CALENDAR_RETRY_MAX_DELAY = float(os.getenv("CALENDAR_RETRY_MAX_DELAY", "30.0"))
CALENDAR_RETRY_MULTIPLIER = float(os.getenv("CALENDAR_RETRY_MULTIPLIER", "2.0"))
CALENDAR_BREAKER_FAILURE_THRESHOLD = int(os.getenv("CALENDAR_BREAKER_FAILURE_THRESHOLD", "5"))
CALENDAR_BREAKER_RECOVERY_TIMEOUT = float(os.getenv("CALENDAR_BREAKER_RECOVERY_TIMEOUT", "60"))
CALENDAR_BREAKER_WINDOW_SECONDS = float(os.getenv("CALENDAR_BREAKER_WINDOW_SECONDS", "60"))
# Google quota: 100 requests per 100 seconds
CALENDAR_RATE_LIMIT_REQUESTS = int(os.getenv("CALENDAR_RATE_LIMIT_REQUESTS", "100"))
CALENDAR_RATE_LIMIT_WINDOW_SECONDS = float(os.getenv("CALENDAR_RATE_LIMIT_WINDOW_SECONDS", "100"))

# Completion sweep
COMPLETION_SWEEP_CONCURRENCY = int(os.getenv("COMPLETION_SWEEP_CONCURRENCY", "4"))

# Payment provider webhook signing secret (Stripe-style "whsec_...")
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")

# Comma separated admin usernames allowed to run lifecycle actions
ADMIN_ACCOUNTS = [a.strip() for a in os.getenv("ACCOUNTS", "").split(",") if a.strip()]
