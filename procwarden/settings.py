"""
This module contains the default configuration settings for procwarden.
It defines state paths, supervisor timing, control API settings and the
defaults applied to every app in an ecosystem file.
"""

import os
import sys
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
BASE_DIR = pathlib.Path(os.getenv("PROCWARDEN_HOME", pathlib.Path.home() / ".procwarden")).expanduser()
LOGS_DIR = BASE_DIR / "logs"
RUN_DIR = BASE_DIR / "run"

#* --- State File Paths ---
PID_FILE_PATH = RUN_DIR / "procwarden.pid"
OVERRIDES_JSON_PATH = BASE_DIR / "overrides.json"
SHUTDOWN_SIGNAL_PATH = RUN_DIR / "shutdown.signal"
SUPERVISOR_LOG_PATH = LOGS_DIR / "procwarden.log"

#* --- Ecosystem ---
ECOSYSTEM_FILE = os.getenv("PROCWARDEN_ECOSYSTEM", "ecosystem.yaml")
PYTHON_EXECUTABLE = sys.executable

#* --- Process Titles ---
SUPERVISOR_PROC_TITLE = "procwarden: supervisor"

#* --- Control API ---
CONFIG_API_HOST = os.getenv("PROCWARDEN_API_HOST", "127.0.0.1")
CONFIG_API_PORT = int(os.getenv("PROCWARDEN_API_PORT", "9615"))
CONFIG_API_STARTUP_TIMEOUT = 10  # seconds

#* --- Manager/Supervisor Settings ---
SUPERVISOR_SLEEP_INTERVAL = 0.5
GRACEFUL_SHUTDOWN_TIMEOUT = 15  # seconds before force-killing the daemon
MEMORY_CHECK_INTERVAL = 5       # seconds
HEALTH_CHECK_INTERVAL = 10      # seconds
HEALTH_CHECK_HOST = "127.0.0.1"
WATCH_DEBOUNCE_SECONDS = 1.0
MAX_BACKOFF_DELAY = 15.0        # seconds, cap for exponential backoff
BACKOFF_MULTIPLIER = 1.5

#* --- App Defaults ---
DEFAULT_INSTANCE_VAR = "APP_INSTANCE"
DEFAULT_MAX_RESTARTS = 16
DEFAULT_MIN_UPTIME = 1.0          # seconds
DEFAULT_KILL_TIMEOUT = 1.6        # seconds
DEFAULT_LISTEN_TIMEOUT = 3.0      # seconds
DEFAULT_KILL_SIGNAL = "SIGTERM"
DEFAULT_LOG_RETAIN = 3

#* --- Application variables ---
VERBOSE_LOGGING = False
LOG_HISTORY_COUNT = 20

#* --- MODIFIABLE SETTINGS (Changeable at runtime via 'config' command) ---
MODIFIABLE_SETTINGS = {
    # Supervisor
    "SUPERVISOR_SLEEP_INTERVAL", "GRACEFUL_SHUTDOWN_TIMEOUT",
    # Monitoring
    "MEMORY_CHECK_INTERVAL", "HEALTH_CHECK_INTERVAL", "WATCH_DEBOUNCE_SECONDS",
    # Console
    "LOG_HISTORY_COUNT",
}
