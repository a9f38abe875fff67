STATE_DIR_NAME = ".sdlc"
CONFIG_FILE = "config.yaml"
WORKFLOW_FILE = "workflow.yaml"
STORIES_DIR = "stories"
STORY_FILE = "story.yaml"
TASK_PROGRESS_FILE = "task_progress.yaml"
EVENTS_FILE = "events.jsonl"
RUNS_DIR = "runs"
LOCK_FILE = ".lock"
WINDOWS_LOCK_BYTES = 4096


# Review retry ceiling (circuit breaker)
DEFAULT_MAX_REVIEW_RETRIES = 3
DEFAULT_MAX_RETRIES_UPPER_BOUND = 10
RETRY_VALUE_CEILING = 999
MAX_RETRIES_ENV_VAR = "SDLC_MAX_RETRIES"
PROVIDER_ENV_VAR = "SDLC_PROVIDER"

# Task executor defaults
DEFAULT_MAX_RETRIES_PER_TASK = 2
DEFAULT_STOP_ON_FIRST_FAILURE = True
DEFAULT_COMMIT_AFTER_EACH_TASK = True
DEFAULT_VERIFY_TIMEOUT_SECONDS = 600

# Consensus
DEFAULT_MAX_CONSENSUS_ITERATIONS = 3

# Error fingerprinting
DEFAULT_IDENTICAL_ERROR_THRESHOLD = 3
MAX_ERROR_HISTORY = 10
ERROR_PREVIEW_MAX_CHARS = 100

# Reason strings
BLOCKED_REASON_MAX_CHARS = 200
FEEDBACK_EXCERPT_MAX_CHARS = 100
PROJECT_PATTERNS_MAX_CHARS = 2000
TRUNCATION_MARKER = "\n\n[...truncated]"
GENERIC_CRITERIA_FALLBACK = 3

# Agent runs
DEFAULT_PROVIDER = "command"
DEFAULT_AGENT_COMMAND = "claude -p -"
DEFAULT_AGENT_TIMEOUT_SECONDS = 900

# Scheduler priority bands (lower = sooner)
ACTION_BASE_PRIORITY = {
    "create_pr": 0,
    "review": 100,
    "implement": 200,
    "plan": 300,
    "research": 400,
    "refine": 500,
}
ESCALATION_PRIORITY_OFFSET = -10000

COMPLETION_SCORE_POINTS = {
    "research_complete": 10,
    "plan_complete": 20,
    "implementation_complete": 30,
    "reviews_complete": 40,
}
