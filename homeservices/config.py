import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Local development falls back to SQLite; production runs on Postgres
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./homeservices.db")

REDIS_URL = os.getenv("REDIS_URL")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

# Admin endpoints (bulk capacity management) are guarded by a shared key
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

# Twilio SMS relay
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")
TWILIO_TIMEOUT_SECONDS = float(os.getenv("TWILIO_TIMEOUT_SECONDS", "10"))
# Public URL Twilio posts to, used when validating X-Twilio-Signature
TWILIO_WEBHOOK_URL = os.getenv("TWILIO_WEBHOOK_URL")

# Stripe payment processor
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "15"))
PAYMENT_MAX_ATTEMPTS = int(os.getenv("PAYMENT_MAX_ATTEMPTS", "3"))
PAYMENT_RETRY_BASE_SECONDS = int(os.getenv("PAYMENT_RETRY_BASE_SECONDS", "60"))
# Fixed-price orders are charged this many hours before the visit
CAPTURE_LEAD_HOURS = int(os.getenv("CAPTURE_LEAD_HOURS", "24"))

# LLM intent classifier (fallback tier for partner SMS)
LLM_API_KEY = os.getenv("ANTHROPIC_API_KEY")
LLM_MODEL = os.getenv("LLM_MODEL", "claude-3-haiku-20240307")
LLM_API_URL = os.getenv("LLM_API_URL", "https://api.anthropic.com/v1/messages")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "5"))

# Pricing
TAX_RATE = os.getenv("TAX_RATE", "0.08875")  # NYC combined sales tax
MAX_QUOTE_QUANTITY = int(os.getenv("MAX_QUOTE_QUANTITY", "100"))
PRICING_CACHE_TTL = int(os.getenv("PRICING_CACHE_TTL", "300"))

# Capacity
SLOT_MIN_LEAD_HOURS = int(os.getenv("SLOT_MIN_LEAD_HOURS", "6"))
MAX_BULK_RANGE_DAYS = int(os.getenv("MAX_BULK_RANGE_DAYS", "90"))

# Partner conversations
CONVERSATION_REMINDER_MINUTES = int(os.getenv("CONVERSATION_REMINDER_MINUTES", "60"))
CONVERSATION_RESET_MINUTES = int(os.getenv("CONVERSATION_RESET_MINUTES", "240"))

# Notification outbox
NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "5"))
NOTIFICATION_RETRY_BASE_SECONDS = int(os.getenv("NOTIFICATION_RETRY_BASE_SECONDS", "30"))
NOTIFICATION_BATCH_SIZE = int(os.getenv("NOTIFICATION_BATCH_SIZE", "50"))
