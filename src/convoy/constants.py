"""Constants for convoy CLI."""

# Directory (relative to the project root locally and the login dir remotely)
CONVOY_DIR = ".convoy"
CONFIG_FILE = "config.toml"
LOCK_FILE = "deploy.lock"
AUDIT_FILE = "audit.txt"
LOCK_FORMAT_VERSION = "1.0"

# Concurrency
DEFAULT_MAX_CONCURRENT = 30

# Timeouts (seconds)
GIT_TIMEOUT = 30
SSH_CONNECT_TIMEOUT = 10
SSH_COMMAND_TIMEOUT = 300  # 5 minutes for pulls and builds on remote hosts
LOCK_ACQUIRE_TIMEOUT = 300
PORT_FORWARD_SETTLE_SECONDS = 1.0
GRACEFUL_SHUTDOWN_TIMEOUT = 5.0

# Container rollout
CONTAINER_START_MAX_ATTEMPTS = 10
CONTAINER_START_RETRY_DELAY = 1.0
CONTAINER_LOG_TAIL_LINES = 20
PROXY_READY_MAX_ATTEMPTS = 30
DEFAULT_RETAIN_IMAGES = 3
NETWORK_NAME = "convoy"
PROXY_CONTAINER_NAME = "convoy-proxy"
REGISTRY_CONTAINER_NAME = "convoy-registry"

# Audit trail
AUDIT_FOLLOW_INTERVAL = 2.0
AUDIT_DEFAULT_LINES = 20

# Service and proxy logs
LOGS_DEFAULT_LINES = 100

# Exit code reported for a remote command killed after its timeout
TIMEOUT_EXIT_CODE = 124
