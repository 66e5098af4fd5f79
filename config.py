import os
from dotenv import load_dotenv
from typing import List

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "donor_campaigns")

# LLM Provider (OpenAI or Groq)
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai").lower()  # "openai" or "groq"

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")

GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")

# Mail transport
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_START_TLS = os.getenv("SMTP_START_TLS", "true").lower() == "true"

# Sender identity
FROM_EMAIL = os.getenv("FROM_EMAIL", SMTP_USERNAME)
FROM_NAME = os.getenv("FROM_NAME", "")
REPLY_TO = os.getenv("REPLY_TO", FROM_EMAIL)

# Generation fan-out
GENERATION_CONCURRENCY = int(os.getenv("GENERATION_CONCURRENCY", "5"))
GENERATION_TIMEOUT_SECONDS = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "120"))
STALE_GENERATION_MINUTES = int(os.getenv("STALE_GENERATION_MINUTES", "60"))
STALE_FLOW_TURN_SECONDS = int(os.getenv("STALE_FLOW_TURN_SECONDS", "600"))

# Send job executor
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", "60"))
SEND_MAX_ATTEMPTS = int(os.getenv("SEND_MAX_ATTEMPTS", "3"))
SEND_RETRY_DELAY_MINUTES = int(os.getenv("SEND_RETRY_DELAY_MINUTES", "5"))
EXECUTOR_TICK_SECONDS = int(os.getenv("EXECUTOR_TICK_SECONDS", "60"))
EXECUTOR_BATCH_SIZE = int(os.getenv("EXECUTOR_BATCH_SIZE", "100"))
STALE_CLAIM_MINUTES = int(os.getenv("STALE_CLAIM_MINUTES", "30"))


# Schedule policy defaults (per-organization rows override these)
def parse_allowed_days(raw: str) -> List[int]:
    """Parse a comma separated day list, 0=Sunday ... 6=Saturday"""
    return [int(d.strip()) for d in raw.split(",") if d.strip()]


DEFAULT_DAILY_LIMIT = int(os.getenv("DEFAULT_DAILY_LIMIT", "150"))
MAX_DAILY_LIMIT = int(os.getenv("MAX_DAILY_LIMIT", "500"))
DEFAULT_MIN_GAP_MINUTES = int(os.getenv("DEFAULT_MIN_GAP_MINUTES", "1"))
DEFAULT_MAX_GAP_MINUTES = int(os.getenv("DEFAULT_MAX_GAP_MINUTES", "3"))
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/New_York")
DEFAULT_ALLOWED_DAYS = parse_allowed_days(os.getenv("DEFAULT_ALLOWED_DAYS", "1,2,3,4,5"))
DEFAULT_START_TIME = os.getenv("DEFAULT_START_TIME", "09:00")
DEFAULT_END_TIME = os.getenv("DEFAULT_END_TIME", "17:00")
SCHEDULING_HORIZON_DAYS = int(os.getenv("SCHEDULING_HORIZON_DAYS", "365"))

# Alerts (Slack / Discord webhook)
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "slack").lower()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text").lower()  # "text" or "json"
