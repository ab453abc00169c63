STATE_DIR_NAME = ".syntropy"
CONFIG_FILE = "config.yaml"
DATA_DIR_NAME = "data"
LOGS_DIR_NAME = "logs"

LEDGER_FILE = "task-ledger.json"
LOCK_FILE = "worker-lock.json"
WORKER_EVENTS_FILE = "worker-events.json"
SCHEDULE_FILE = "syntropy-schedule.json"
AUDIT_FILE = "audit.jsonl"
CONTINUITY_FILE = "CONTINUITY.md"
LIVE_LOG_FILE = "opencode_live.log"

OUTPUT_PREFIX = "worker-output-"
OUTPUT_SUFFIX = ".txt"

LEDGER_VERSION = 1

WORKER_UNIT_PREFIX = "syntropy-worker-"
REBUILD_UNIT_PREFIX = "syntropy-worker-rebuild-"
UNIT_ID_CHARS = 8

ENV_TASK_ID = "TASK_ID"
ENV_TASK_TYPE = "TASK_TYPE"
ENV_HOST_ROOT = "SYNTROPY_HOST_ROOT"
ENV_ROOT = "SYNTROPY_ROOT"

DEFAULT_SPAWN_COOLDOWN_SECONDS = 60
DEFAULT_SPAWN_GRACE_SECONDS = 120
DEFAULT_STATUS_TIMEOUT_SECONDS = 15
DEFAULT_WORKER_TIMEOUT_SECONDS = 2700
DEFAULT_RETENTION_DAYS = 7
DEFAULT_HEALING_THRESHOLD_SECONDS = 20 * 60
DEFAULT_OUTPUT_TAIL_CHARS = 2000
DEFAULT_MAX_AUDIT_ENTRIES = 500

DEFAULT_MIN_INTERVAL_SECONDS = 10 * 60
DEFAULT_MAX_INTERVAL_SECONDS = 6 * 60 * 60
DEFAULT_INTERVAL_SECONDS = 2 * 60 * 60
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_CIRCUIT_BREAKER_DELAY_SECONDS = 60 * 60

SCHEDULE_MIN_DELAY_MINUTES = 10
SCHEDULE_MAX_DELAY_MINUTES = 360

DEFAULT_NORMAL_MAX_ATTEMPTS = 3
DEFAULT_REBUILD_MAX_ATTEMPTS = 1

DEFAULT_SELF_SERVICE = "syntropy"
DEFAULT_HEALTH_URL = "http://syntropy:3000/health"
DEFAULT_HEALTH_ATTEMPTS = 30
DEFAULT_HEALTH_INTERVAL_SECONDS = 10

DEFAULT_AGENT_COMMAND = "opencode run {prompt}"

EXIT_TIMEOUT = 124
EXIT_GUARDRAIL = 126
EXIT_TASK_MISSING = 1

SUMMARY_HEADER_PATTERN = r"^[\t ]*##\s+summary.*$"
