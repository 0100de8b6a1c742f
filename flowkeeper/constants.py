"""Default values shared across flowkeeper."""

DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_MAX_EXECUTIONS_PER_HOUR = 100
DEFAULT_WORKFLOW_MAX_RETRIES = 3

DEFAULT_STEP_RETRY_DELAY_SECONDS = 60
DEFAULT_DELAY_SECONDS = 5 * 60

DEFAULT_LOOP_MAX_ITERATIONS = 100
DEFAULT_MAX_CONSECUTIVE_SCHEDULE_FAILURES = 5

DEFAULT_EVENTS_TOPIC = "platform.events"
RECENT_EXECUTIONS_LIMIT = 5

REDACTED = "********"
