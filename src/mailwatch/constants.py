"""Centralized constants for Mailwatch."""

# Gmail watch lifecycle
RENEWAL_BUFFER_HOURS = 48.0
CONTINUE_AS_NEW_DAYS = 30.0
TOKEN_REFRESH_MARGIN_SECONDS = 300
RENEWAL_RETRY_MINUTES = 15.0
DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS = 3600

# Ingestion policy
DEFAULT_CONFIDENCE_THRESHOLD = 0.78
DEFAULT_PROCESSED_LABEL = "mailwatch/processed"
RULE_SUCCESS_RATE_ALPHA = 0.2

# Delta fetching
HISTORY_PAGE_SIZE = 100
CURSOR_RESYNC_QUERY = "in:inbox newer_than:2d"
CURSOR_RESYNC_MAX_RESULTS = 100

# Scheduled backfills
DEFAULT_SCHEDULE_CRON = "* * * * *"
DEFAULT_SCHEDULE_MAX_RESULTS = 50
SCHEDULER_POLL_SECONDS = 60.0

# Extraction
TRANSACTION_CATEGORIES = (
    "Food",
    "Transport",
    "Shopping",
    "Bills",
    "Entertainment",
    "Healthcare",
    "Travel",
    "Education",
    "Personal",
    "Other",
)
EXTRACTION_TEMPERATURE = 0.1
EXTRACTION_MAX_TOKENS = 500
MAX_EXTRACTION_BODY_LENGTH = 8000

# Processing errors recorded against source messages
ERROR_NO_MATCHING_RULE = "no matching rule"
ERROR_LOW_CONFIDENCE = "low confidence"

LIFECYCLE_ID_PREFIX = "gmail-subscription-"
