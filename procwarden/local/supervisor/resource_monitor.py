import time
import logging
from typing import TYPE_CHECKING, List, Optional

from .instance import LAUNCHING, ONLINE

if TYPE_CHECKING:
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)


def _format_bytes(amount: int) -> str:
    return f"{amount / 1024 / 1024:.1f} MB"


class ResourceMonitor:
    """
    Samples the memory of running instances and restarts the ones that
    exceed their app's max_memory_restart.
    """

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._last_run: Optional[float] = None

    def is_due(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return self._last_run is None or now - self._last_run >= self.interval

    def check(self, manager: "ProcessManager") -> List[str]:
        """
        Checks every eligible instance once.

        Instances that are not running, have no limit or are still inside
        their health check grace period are skipped.

        :param manager: The ProcessManager owning the instances.
        :return: The keys of the instances that were restarted.
        """
        self._last_run = time.monotonic()
        restarted = []
        with manager.lock:
            for instance in list(manager.instances):
                limit = instance.spec.max_memory_restart
                if not limit or instance.status not in (LAUNCHING, ONLINE) or not instance.is_alive:
                    continue
                if instance.in_grace_period():
                    continue
                usage = instance.memory_usage()
                if usage is None or usage <= limit:
                    continue
                log.warning(
                    f"{instance.key} uses {_format_bytes(usage)}, above its limit of "
                    f"{_format_bytes(limit)}. Restarting."
                )
                manager.restart_instance(instance, reason="max_memory_restart")
                restarted.append(instance.key)
        return restarted

    def maybe_check(self, manager: "ProcessManager") -> List[str]:
        """Runs `check` when the interval has elapsed since the last run."""
        if not self.is_due():
            return []
        return self.check(manager)
