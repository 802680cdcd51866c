import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)


def read_pid_file(config: Dict[str, Any]) -> Optional[Dict[str, int]]:
    """
    Reads the PID file from disk and returns its contents.
    A malformed file is deleted.

    :param config: Settings holding PID_FILE_PATH.
    :return: A dictionary of PIDs if the file exists and is valid, else None.
    """
    pid_path = Path(config["PID_FILE_PATH"])
    if not pid_path.exists():
        return None
    try:
        with pid_path.open("r") as f:
            pids = json.load(f)
        if not isinstance(pids, dict) or not all(isinstance(v, int) for v in pids.values()):
            log.error(f"PID file '{pid_path}' is malformed. Deleting.")
            pid_path.unlink(missing_ok=True)
            return None
        return pids
    except (json.JSONDecodeError, IOError):
        log.warning("Could not read PID file, assuming stale.")
        pid_path.unlink(missing_ok=True)
        return None

def get_pid_info(manager: "ProcessManager") -> Optional[Dict[str, int]]:
    """Reads the PID file and caches its contents on the manager."""
    pids = read_pid_file(manager.config)
    manager.pids_on_disk = pids or {}
    return pids

def write_pid_file(config: Dict[str, Any], pid_dict: Dict[str, int]) -> None:
    """
    Atomically writes a name-to-PID mapping to the PID file.

    :param config: Settings holding PID_FILE_PATH.
    :param pid_dict: The mapping to persist.
    """
    pid_path = Path(config["PID_FILE_PATH"])
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    temp_pid_path = pid_path.with_suffix(".tmp")
    try:
        with temp_pid_path.open("w") as f:
            json.dump(pid_dict, f, indent=4)
        temp_pid_path.replace(pid_path)
    except (IOError, OSError) as e:
        log.error(f"Failed to write PID file: {e}", exc_info=True)
    finally:
        temp_pid_path.unlink(missing_ok=True)

def check_for_shutdown_signal(config: Dict[str, Any]) -> bool:
    """Checks if the shutdown signal file exists."""
    if Path(config["SHUTDOWN_SIGNAL_PATH"]).exists():
        log.info("Shutdown signal file detected. Exiting supervisor loop.")
        return True
    return False

def touch_shutdown_signal(config: Dict[str, Any]) -> None:
    """Creates the shutdown signal file the supervisor daemon polls for."""
    signal_path = Path(config["SHUTDOWN_SIGNAL_PATH"])
    signal_path.parent.mkdir(parents=True, exist_ok=True)
    signal_path.touch()
