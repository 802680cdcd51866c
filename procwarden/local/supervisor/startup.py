import os
import logging
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Optional
from procwarden.log.setup import setup_logging
from procwarden.local.supervisor import persistence, process_utils
from procwarden.local.supervisor.health import wait_for_listen

if TYPE_CHECKING:
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)


def check_if_already_running(manager: "ProcessManager") -> bool:
    """
    Checks if a supervisor is already running based on the PID file.

    :param manager: The ProcessManager instance.
    :return: True if already running, False otherwise.
    """
    pid_info = persistence.get_pid_info(manager)
    if pid_info and any(process_utils.pid_exists(p) for p in pid_info.values()):
        log.error("procwarden appears to be running. Use 'stop' or 'restart'.")
        return True
    return False


def _daemon_environment(manager: "ProcessManager") -> dict:
    """Hands the console's state locations to the daemon."""
    env = dict(os.environ)
    env["PROCWARDEN_HOME"] = str(manager.config["BASE_DIR"])
    env["PROCWARDEN_API_HOST"] = str(manager.config["CONFIG_API_HOST"])
    env["PROCWARDEN_API_PORT"] = str(manager.config["CONFIG_API_PORT"])
    return env


def spawn_supervisor_daemon(manager: "ProcessManager", ecosystem_path: Path,
                            env_name: Optional[str] = None, verbose: bool = False) -> subprocess.Popen:
    """
    Launches the supervisor daemon as a detached background process.

    :param manager: The console-side ProcessManager.
    :param ecosystem_path: The ecosystem file the daemon should run.
    :param env_name: Optional deployment environment.
    :param verbose: If True, the daemon logs at DEBUG level.
    :return: The Popen handle of the daemon.
    """
    args = [
        manager.config["PYTHON_EXECUTABLE"], "-m", "procwarden.local.script_entry.supervisor",
        str(ecosystem_path),
    ]
    if env_name:
        args += ["--env", env_name]
    if verbose:
        args.append("--verbose")

    log.debug(f"Spawning supervisor daemon: {' '.join(args)}")
    return subprocess.Popen(
        args,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        stdin=subprocess.DEVNULL,
        cwd=str(Path(ecosystem_path).parent),
        env=_daemon_environment(manager),
        **process_utils.get_popen_kwargs()
    )


def wait_for_control_api(manager: "ProcessManager", daemon: subprocess.Popen) -> bool:
    """
    Waits for the daemon's control API to accept connections.

    :return: True if the API is up, False if the daemon died or it timed out.
    """
    host, port = manager.config["CONFIG_API_HOST"], manager.config["CONFIG_API_PORT"]
    timeout = manager.config["CONFIG_API_STARTUP_TIMEOUT"]

    log.info(f"Waiting for supervisor control API at {host}:{port}...")
    if wait_for_listen(host, port, timeout, should_abort=lambda: daemon.poll() is not None):
        log.info("Supervisor control API is up.")
        return True
    if daemon.poll() is not None:
        log.critical(f"Supervisor daemon exited early with code {daemon.returncode}.")
    else:
        log.critical(f"Supervisor control API did not become available after {timeout} seconds.")
    return False


def initialize_supervision(manager: "ProcessManager", verbose: bool = False) -> None:
    """
    Initialize logging and state for the supervision loop.

    :param manager: The ProcessManager instance.
    :param verbose: If True, console output is at DEBUG level.
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO, Path(manager.config["SUPERVISOR_LOG_PATH"]))
    log.info("Supervisor started.")
    manager.shutdown_signal_received.clear()
    # A stale signal file would stop the new supervisor immediately.
    Path(manager.config["SHUTDOWN_SIGNAL_PATH"]).unlink(missing_ok=True)
    Path(manager.config["LOGS_DIR"]).mkdir(parents=True, exist_ok=True)
