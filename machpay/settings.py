"""
This module contains the configuration settings for the machpay CLI.
It defines paths, registry coordinates, gateway runtime defaults and the
timeouts used by the installer and the process supervisor.
Values that make sense to change per machine can be overridden through
`MACHPAY_*` environment variables or a `.env` file.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Core Paths ---
MACHPAY_HOME = pathlib.Path(os.getenv("MACHPAY_HOME", pathlib.Path.home() / ".machpay")).expanduser()
BIN_DIR = MACHPAY_HOME / "bin"
PID_FILE_NAME = "gateway.pid"     # relative to MACHPAY_HOME
GATEWAY_LOG_NAME = "gateway.log"  # relative to MACHPAY_HOME
CLI_LOG_PATH = MACHPAY_HOME / "cli.log"
CONFIG_YAML_PATH = MACHPAY_HOME / "config.yaml"
CREDENTIALS_PATH = MACHPAY_HOME / "credentials.json"

#* --- Release Registry ---
GITHUB_API = os.getenv("MACHPAY_GITHUB_API", "https://api.github.com")
GATEWAY_REPO = os.getenv("MACHPAY_GATEWAY_REPO", "machpay/machpay-gateway")
GATEWAY_BINARY = "machpay-gateway"
CHECKSUM_ASSET_NAME = "checksums.txt"
USER_AGENT = "machpay-cli"
GITHUB_ACCEPT = "application/vnd.github.v3+json"

#* --- Network Timeouts ---
HTTP_TIMEOUT = 30          # seconds, registry metadata and checksum manifest
DOWNLOAD_TIMEOUT = 10 * 60  # seconds, release archive download

#* --- Gateway Runtime Defaults ---
GATEWAY_PORT = int(os.getenv("MACHPAY_GATEWAY_PORT", "8402"))
UPSTREAM_URL = os.getenv("MACHPAY_UPSTREAM_URL", "")
GATEWAY_DEBUG = _env_flag("MACHPAY_DEBUG")

#* --- Supervisor Settings ---
GRACEFUL_SHUTDOWN_TIMEOUT = 10  # seconds before force-killing
HEALTH_CHECK_TIMEOUT = 5        # seconds per /healthz request
HEALTH_POLL_INTERVAL = 0.5      # seconds between checks in wait_for_healthy
DEFAULT_HEALTHY_WAIT = 30       # seconds the console waits after a detached start
LOG_FOLLOW_INTERVAL = 0.1       # seconds to sleep on EOF while following logs
HEALTH_ENDPOINT = "/healthz"

#* --- CLI Log File ---
CLI_LOG_MAX_BYTES = 1024 * 1024
CLI_LOG_BACKUP_COUNT = 3

#* --- MODIFIABLE SETTINGS (persisted to config.yaml via 'config set') ---
MODIFIABLE_SETTINGS = {"role", "network", "upstream_url", "port", "debug"}
