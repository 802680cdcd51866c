import time
import socket
import logging
import threading
from typing import TYPE_CHECKING, Callable, List, Optional

from .instance import LAUNCHING, ONLINE

if TYPE_CHECKING:
    from .instance import AppInstance
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)


def port_is_listening(host: str, port: int, timeout: float = 1.0) -> bool:
    """Returns True if a TCP connection to host:port succeeds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_for_listen(host: str, port: int, timeout: float,
                    should_abort: Optional[Callable[[], bool]] = None) -> bool:
    """
    Waits for something to accept connections on host:port.

    :param timeout: Maximum seconds to wait.
    :param should_abort: Polled between attempts; returning True gives up early.
    :return: True if the port is listening, False on timeout or abort.
    """
    start_time = time.monotonic()
    while time.monotonic() - start_time < timeout:
        if should_abort and should_abort():
            return False
        if port_is_listening(host, port, timeout=min(1.0, timeout)):
            return True
        time.sleep(0.2)
    return False


def start_listen_wait(manager: "ProcessManager", instance: "AppInstance") -> None:
    """
    Moves a freshly launched instance to 'online'.

    Without a port this happens immediately. With a port, a background thread
    waits up to listen_timeout for it to accept connections; a timeout is
    logged and the instance still goes online.
    """
    spec = instance.spec
    if not spec.port:
        instance.status = ONLINE
        return

    popen = instance.popen
    host = manager.config.get("HEALTH_CHECK_HOST", "127.0.0.1")

    def _still_current() -> bool:
        return instance.popen is popen and instance.status == LAUNCHING

    def _wait() -> None:
        listening = wait_for_listen(
            host, spec.port, spec.listen_timeout,
            should_abort=lambda: not _still_current() or manager.shutdown_signal_received.is_set(),
        )
        with manager.lock:
            if not _still_current():
                return
            if listening:
                log.info(f"{instance.key} is listening on port {spec.port}.")
            else:
                log.warning(
                    f"{instance.key} did not listen on port {spec.port} within "
                    f"{spec.listen_timeout}s. Marking it online anyway."
                )
            instance.status = ONLINE

    threading.Thread(target=_wait, daemon=True, name=f"ListenWait-{instance.key}").start()


class HealthChecker:
    """
    Periodic TCP health checks for instances that declare a port.
    A failure restarts the instance when health_check_fatal_exceptions is set,
    otherwise it is only logged.
    """

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._last_run: Optional[float] = None

    def is_due(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return self._last_run is None or now - self._last_run >= self.interval

    def check(self, manager: "ProcessManager") -> List[str]:
        """
        Runs one round of checks.

        :return: The keys of the instances that failed their check.
        """
        self._last_run = time.monotonic()
        host = manager.config.get("HEALTH_CHECK_HOST", "127.0.0.1")
        with manager.lock:
            candidates = [
                inst for inst in manager.instances
                if inst.spec.port and inst.status == ONLINE and inst.is_alive and not inst.in_grace_period()
            ]

        failed = []
        for instance in candidates:
            if port_is_listening(host, instance.spec.port):
                instance.health_failures = 0
                continue
            failed.append(instance.key)
            with manager.lock:
                if instance.status != ONLINE:
                    continue
                instance.health_failures += 1
                if instance.spec.health_check_fatal_exceptions:
                    log.error(f"Health check failed for {instance.key} on port {instance.spec.port}. Restarting.")
                    manager.restart_instance(instance, reason="health check")
                else:
                    log.warning(
                        f"Health check failed for {instance.key} on port {instance.spec.port} "
                        f"({instance.health_failures} consecutive)."
                    )
        return failed

    def maybe_check(self, manager: "ProcessManager") -> List[str]:
        """Runs `check` when the interval has elapsed since the last run."""
        if not self.is_due():
            return []
        return self.check(manager)
