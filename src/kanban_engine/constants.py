STATE_DIR_NAME = ".kanban"
CONFIG_FILE = "config.yaml"
BOARD_FILE = "board.yaml"
BOARD_LOCK_FILE = "board.lock"
EVENTS_FILE = "events.jsonl"
SNAPSHOT_VERSION = 1

DEFAULT_TASK_MAX_ITERATIONS = 3
DEFAULT_SPRINT_MAX_ITERATIONS = 5

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000
FEEDBACK_MAX_LENGTH = 2000

DEFAULT_STALE_THRESHOLD_HOURS = 24
DEFAULT_LOW_BACKLOG_THRESHOLD = 3
DEFAULT_OVERLOAD_THRESHOLD = 5
DEFAULT_OVERLOAD_HIGH_THRESHOLD = 8
DEFAULT_PENDING_QA_THRESHOLD = 3

RECENT_FEEDBACK_LIMIT = 10
EXAMPLE_TASK_LIMIT = 5
PROMOTION_TRIGGER_OCCURRENCES = 1
PROMOTION_MIN_AGENTS = 2
PROMOTION_MIN_OCCURRENCES = 2
LESSON_MIN_LENGTH = 10
LESSON_MAX_LENGTH = 200
INITIAL_LESSON_CONFIDENCE = 0.5
LESSON_CONFIDENCE_STEP = 0.1
TOP_LESSONS_LIMIT = 10
CONTEXT_PATTERNS_LIMIT = 5
CONTEXT_FEEDBACK_LIMIT = 5

DEFAULT_AGENT_MAX_CONCURRENT_TASKS = 3

REJECTED_PREFIX = "REJECTED:"

ACTIVITY_LOG_LIMIT = 200
SESSION_RECENT_ACTIVITY = 10
SESSION_MISTAKES_TO_AVOID = 3
SESSION_CONVENTIONS = 5
FIX_FIRST_THRESHOLD = 2
