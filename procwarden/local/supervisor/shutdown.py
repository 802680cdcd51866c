import time
import signal
import psutil
import logging
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from .instance import STOPPING

if TYPE_CHECKING:
    from .instance import AppInstance

log = logging.getLogger(__name__)


def _signal_number(name: str) -> int:
    return getattr(signal, name, signal.SIGTERM)


def collect_process_tree(proc: psutil.Process) -> List[psutil.Process]:
    """Returns the descendants of a process, deepest last."""
    try:
        return proc.children(recursive=True)
    except psutil.NoSuchProcess:
        return []


def _send_signal(processes: List[psutil.Process], sig: int) -> None:
    """Sends a signal to every process, skipping the ones already gone."""
    for proc in processes:
        try:
            log.debug(f"Sending signal {sig} to PID {proc.pid}")
            proc.send_signal(sig)
        except psutil.NoSuchProcess:
            log.debug(f"Process {proc.pid} no longer exists, skipping signal.")
            continue
        except psutil.AccessDenied:
            log.warning(f"Access denied when signalling PID {proc.pid}.")


def _forceful_kill(processes: List[psutil.Process]) -> None:
    """Forcefully kills processes that didn't terminate gracefully."""
    if not processes:
        return

    log.warning(f"{len(processes)} processes did not terminate gracefully. Forcing shutdown...")
    for proc in processes:
        try:
            log.warning(f"Killing stubborn process PID {proc.pid}.")
            proc.kill()
        except psutil.NoSuchProcess:
            log.debug(f"Process {proc.pid} no longer exists, skipping forceful kill.")
            continue


def graceful_shutdown_sequence(processes: Set[psutil.Process], timeout: float, sig_name: str = "SIGTERM") -> None:
    """
    Signals every process, waits up to `timeout` seconds and kills the rest.

    :param processes: A set of psutil.Process objects to shut down.
    :param timeout: Seconds to wait between the stop signal and SIGKILL.
    :param sig_name: Name of the stop signal.
    """
    procs_list = list(processes)
    _send_signal(procs_list, _signal_number(sig_name))
    try:
        _, alive = psutil.wait_procs(procs_list, timeout=timeout)
    except psutil.TimeoutExpired:
        alive = procs_list
    except psutil.NoSuchProcess:
        alive = []

    # If any processes are still alive after the timeout, forcefully kill them.
    _forceful_kill(alive)
    if alive:
        psutil.wait_procs(alive, timeout=2)


def stop_instance(instance: "AppInstance") -> Optional[int]:
    """
    Stops an instance and its whole process tree.

    The app's kill_signal goes to every process in the tree. After
    kill_timeout the survivors are killed. The instance's Popen is reaped so
    its exit code stays accurate.

    :param instance: The instance to stop.
    :return: The exit code of the instance's main process, or None if it was not running.
    """
    popen = instance.popen
    if popen is None:
        return None
    if popen.poll() is not None:
        return popen.returncode

    spec = instance.spec
    instance.status = STOPPING
    log.info(f"Stopping {instance.key} (PID {popen.pid}) with {spec.kill_signal}, timeout {spec.kill_timeout}s.")

    children = collect_process_tree(instance.process) if instance.process else []
    sig = _signal_number(spec.kill_signal)
    try:
        popen.send_signal(sig)
    except ProcessLookupError:
        pass
    _send_signal(children, sig)

    deadline = time.monotonic() + spec.kill_timeout
    try:
        popen.wait(timeout=spec.kill_timeout)
    except subprocess.TimeoutExpired:
        log.warning(f"{instance.key} did not exit within {spec.kill_timeout}s. Killing it.")
        popen.kill()
        popen.wait()

    if children:
        remaining = max(deadline - time.monotonic(), 0.1)
        _, alive = psutil.wait_procs(children, timeout=remaining)
        _forceful_kill(alive)
    return popen.returncode


def identify_processes_to_stop(pid_info: Dict[str, int]) -> Set[psutil.Process]:
    """
    Identifies all processes named in a PID file plus their descendants.

    :param pid_info: The PID file contents.
    :return: A set of psutil.Process objects to be stopped.
    """
    parent_procs: Set[psutil.Process] = set()
    for pid in pid_info.values():
        try:
            parent_procs.add(psutil.Process(pid))
        except psutil.NoSuchProcess:
            continue

    all_procs_to_stop: Set[psutil.Process] = set(parent_procs)
    for proc in parent_procs:
        all_procs_to_stop.update(collect_process_tree(proc))
    return all_procs_to_stop


def cleanup_shutdown_files(config: Dict[str, Any]) -> None:
    """Removes the PID file and the shutdown signal file."""
    Path(config["PID_FILE_PATH"]).unlink(missing_ok=True)
    Path(config["SHUTDOWN_SIGNAL_PATH"]).unlink(missing_ok=True)
    log.debug("Cleaned up PID and signal files.")
