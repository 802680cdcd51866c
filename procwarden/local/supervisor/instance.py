import time
import subprocess
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import psutil

if TYPE_CHECKING:
    from procwarden.local.ecosystem import AppSpec
    from .log_router import InstanceLogs

#* --- Instance Statuses ---
LAUNCHING = "launching"
ONLINE = "online"
STOPPING = "stopping"
STOPPED = "stopped"
ERRORED = "errored"
WAITING_RESTART = "waiting restart"


class AppInstance:
    """
    Runtime state of one instance of an app.

    The supervisor owns these objects; every mutation happens while holding
    the ProcessManager lock.
    """

    def __init__(self, spec: "AppSpec", instance_id: int) -> None:
        self.spec = spec
        self.instance_id = instance_id
        self.popen: Optional[subprocess.Popen] = None
        self.process: Optional[psutil.Process] = None
        self.logs: Optional["InstanceLogs"] = None
        self.status = STOPPED
        self.started_at: Optional[float] = None
        self.restarts = 0
        self.unstable_restarts = 0
        self.backoff_delay = 0.0
        self.next_restart_at: Optional[float] = None
        self.last_exit_code: Optional[int] = None
        self.stop_requested = False
        self.health_failures = 0
        self.error: Optional[str] = None

    @property
    def key(self) -> str:
        """The name used in the PID file and the status table."""
        return f"{self.spec.name}-{self.instance_id}"

    @property
    def pid(self) -> Optional[int]:
        return self.popen.pid if self.popen else None

    @property
    def uptime(self) -> float:
        if self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at

    @property
    def is_alive(self) -> bool:
        return self.popen is not None and self.popen.poll() is None

    def in_grace_period(self) -> bool:
        """True while health and memory checks should leave the instance alone."""
        return self.uptime < self.spec.health_check_grace_period

    def environment(self, base_env: Dict[str, str]) -> Dict[str, str]:
        """Builds the child environment: base, then the app env, then the instance id."""
        env = dict(base_env)
        env.update(self.spec.env)
        env[self.spec.instance_var] = str(self.instance_id)
        return env

    def reset_counters(self) -> None:
        self.restarts = 0
        self.unstable_restarts = 0
        self.backoff_delay = 0.0
        self.health_failures = 0
        self.error = None

    def memory_usage(self) -> Optional[int]:
        """RSS in bytes of the instance and all of its descendants."""
        if self.process is None:
            return None
        try:
            total = self.process.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None
        try:
            children = self.process.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        for child in children:
            try:
                total += child.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return total

    def to_dict(self) -> Dict[str, Any]:
        """A JSON-friendly snapshot for the status table."""
        cpu = None
        if self.process is not None and self.is_alive:
            try:
                cpu = self.process.cpu_percent(interval=None)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                cpu = None
        return {
            "name": self.spec.name,
            "instance": self.instance_id,
            "key": self.key,
            "pid": self.pid if self.is_alive else None,
            "status": self.status,
            "restarts": self.restarts,
            "unstable_restarts": self.unstable_restarts,
            "uptime": round(self.uptime, 1) if self.is_alive else 0.0,
            "memory": self.memory_usage() if self.is_alive else None,
            "cpu": cpu,
            "last_exit_code": self.last_exit_code,
            "error": self.error,
        }


def status_rows(instances: List[AppInstance]) -> List[Dict[str, Any]]:
    return [inst.to_dict() for inst in sorted(instances, key=lambda i: (i.spec.name, i.instance_id))]
