import os
import sys
import time
import shutil
import psutil
import logging
import subprocess
from pathlib import Path
from procwarden.local import app_globals
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple
from .instance import ERRORED, LAUNCHING
from .log_router import log_process_output

if TYPE_CHECKING:
    from procwarden.local.ecosystem import AppSpec
    from .instance import AppInstance
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)


#* --- Process Status ---
def pid_exists(pid: int) -> bool:
    """A wrapper for psutil.pid_exists for easy testing/mocking if needed."""
    return psutil.pid_exists(pid)

def get_process_from_pid(pid: int) -> psutil.Process:
    """A wrapper for psutil.Process for easy testing/mocking if needed."""
    return psutil.Process(pid)

def get_proc_status_string(proc: psutil.Process) -> str:
    """Gets a string representation of a process status."""
    try:
        if proc.status() == psutil.STATUS_ZOMBIE:
            return "zombie"
        return "running"
    except psutil.NoSuchProcess:
        return "stopped"
    except psutil.Error:
        return "unknown"

#* --- Command Construction ---
def resolve_command(spec: "AppSpec", path_env: Optional[str] = None) -> List[str]:
    """
    Returns the argv for an app.

    An explicit interpreter runs the script; '.py' scripts run under the
    supervisor's Python. Otherwise the script is looked up relative to the
    app's cwd and then on PATH.

    :param spec: The app to build the command for.
    :param path_env: PATH used for lookups, defaults to the supervisor's PATH.
    :return: The full argument list.
    :raises FileNotFoundError: If the script cannot be resolved.
    """
    script_path = (spec.cwd / Path(spec.script).expanduser())
    script_arg = str(script_path) if script_path.exists() else spec.script

    if spec.interpreter:
        interpreter = shutil.which(spec.interpreter, path=path_env) or spec.interpreter
        return [interpreter, script_arg, *spec.args]

    if spec.script.endswith(".py"):
        return [app_globals.PYTHON_EXECUTABLE, script_arg, *spec.args]

    if script_path.is_file():
        return [str(script_path), *spec.args]

    found = shutil.which(spec.script, path=path_env)
    if found:
        return [found, *spec.args]
    raise FileNotFoundError(f"Script '{spec.script}' not found in '{spec.cwd}' or on PATH")

def get_popen_kwargs() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}

#* --- Process Creation ---
def launch_instance(manager: "ProcessManager", instance: "AppInstance") -> None:
    """
    Launches one instance and wires its output into the log router.

    :param manager: The ProcessManager owning the instance.
    :param instance: The instance to start; its status becomes 'launching'.
    :raises OSError: If the command cannot be resolved or spawned. The instance
        is marked errored before the exception propagates.
    """
    spec = instance.spec
    log.info(f"Starting {instance.key}...")
    env = instance.environment(os.environ)
    try:
        args = resolve_command(spec, env.get("PATH"))
        if not spec.cwd.is_dir():
            raise FileNotFoundError(f"Working directory '{spec.cwd}' does not exist")
        if instance.logs is None:
            instance.logs = manager.log_router.attach(spec, instance.instance_id)
        p = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            cwd=str(spec.cwd),
            env=env,
            **get_popen_kwargs()
        )
    except OSError as e:
        instance.status = ERRORED
        instance.error = str(e)
        log.critical(f"Failed to start '{instance.key}': {e}")
        raise

    log_process_output(p, instance.logs)

    instance.popen = p
    try:
        instance.process = get_process_from_pid(p.pid)
        instance.process.cpu_percent(interval=None)  # prime the CPU counter
    except psutil.Error:
        instance.process = None
    instance.status = LAUNCHING
    instance.started_at = time.monotonic()
    instance.stop_requested = False
    instance.next_restart_at = None
    instance.last_exit_code = None
    instance.health_failures = 0
    instance.error = None
    log.info(f"{instance.key} started with PID: {p.pid} ({' '.join(args)})")

#* --- Monitoring ---
def collect_exits(instances: List["AppInstance"]) -> List[Tuple["AppInstance", Optional[int]]]:
    """
    Polls every running instance and returns the ones that exited, with their
    exit codes. Zombie children are reaped by the poll.
    """
    exited = []
    for instance in instances:
        if instance.popen is None:
            continue
        code = instance.popen.poll()
        if code is not None:
            exited.append((instance, code))
    return exited
