"""Engine-wide defaults."""

DEFAULT_MAX_STEPS_PER_ADVANCE = 50
DEFAULT_MAX_RETRIES = 3
DEFAULT_WEBHOOK_TIMEOUT = 10.0

DEFAULT_SCHEDULER_INTERVAL = 60.0
DEFAULT_SCHEDULER_BATCH_SIZE = 50

DEFAULT_TIMELINE_DAYS = 30

# weekday delays wake at this hour (UTC)
DEFAULT_WEEKDAY_WAKE_HOUR = 9

DUE_ENROLLMENTS_TOPIC = "enrollments.due"
