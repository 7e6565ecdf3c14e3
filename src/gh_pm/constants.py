STATE_DIR_NAME = ".gh_pm"
CONFIG_FILE = "config.yaml"
TASKS_FILE = "tasks.yaml"
TASKS_LOCK_FILE = "tasks.lock"
ANNOTATIONS_FILE = "annotations.jsonl"

LOCK_TIMEOUT = 30  # seconds

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_INITIAL_DELAY = 1.0  # seconds, doubled after each attempt
DEFAULT_RETRY_MAX_DELAY = 30.0

MIN_TASK_ID = 1
MAX_TASK_ID = 999999

MAX_MESSAGE_LENGTH = 500
MAX_FEEDBACK_LENGTH = 1000

DEFAULT_COMPLETION_MESSAGE = "Task completed via automation"
DEFAULT_REVIEW_MESSAGE = "Implementation complete, ready for human review"
DEFAULT_APPROVAL_MESSAGE = "Reviewed and approved"
DEFAULT_OVERRIDE_REASON = "Manual unblock"

DRY_RUN_ENV = "GH_PM_DRY_RUN"
LOG_LEVEL_ENV = "GH_PM_LOG_LEVEL"

# Exit codes shared with the original shell tooling.
EXIT_OK = 0
EXIT_GENERAL = 1
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_API = 4
EXIT_INVALID_INPUT = 5
EXIT_NOT_FOUND = 6
EXIT_CONFLICT = 7
EXIT_DEPENDENCY = 8
