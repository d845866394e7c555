import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./marketplace.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# CORS
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000"
).split(",")

# Recurring schedule engine
# Timezone applied to recurrence rules created without an explicit one
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/New_York")
# Occurrences materialized per generation cycle
SCHEDULE_BATCH_SIZE = int(os.getenv("SCHEDULE_BATCH_SIZE", "4"))
# Expansion window when neither an end nor a count is given
SCHEDULE_WINDOW_DAYS = int(os.getenv("SCHEDULE_WINDOW_DAYS", "90"))
# Occurrences returned by the upcoming-occurrence preview
SCHEDULE_PREVIEW_COUNT = int(os.getenv("SCHEDULE_PREVIEW_COUNT", "10"))
# Due processor picks patterns whose next run falls inside this lookahead
SCHEDULE_DUE_LOOKAHEAD_HOURS = int(os.getenv("SCHEDULE_DUE_LOOKAHEAD_HOURS", "24"))
SCHEDULE_DUE_BATCH_LIMIT = int(os.getenv("SCHEDULE_DUE_BATCH_LIMIT", "50"))
# Consecutive failures before an alert is raised for a pattern
SCHEDULE_MAX_RETRY_ATTEMPTS = int(os.getenv("SCHEDULE_MAX_RETRY_ATTEMPTS", "3"))
