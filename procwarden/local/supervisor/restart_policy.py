import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from procwarden.local import app_globals
from .instance import ERRORED, STOPPED, WAITING_RESTART

if TYPE_CHECKING:
    from .instance import AppInstance

log = logging.getLogger(__name__)


@dataclass
class RestartDecision:
    """What the supervisor should do after an instance exited."""
    restart: bool
    status: str
    reason: str
    delay: float = 0.0


class RestartPolicy:
    """
    Decides whether and when an instance is restarted after it exits.

    An exit before `min_uptime` is unstable. More than `max_restarts`
    consecutive unstable exits mark the instance errored. A stable run resets
    both the unstable counter and the exponential backoff.
    """

    def __init__(self, max_backoff: Optional[float] = None, multiplier: Optional[float] = None) -> None:
        self.max_backoff = max_backoff if max_backoff is not None else app_globals.MAX_BACKOFF_DELAY
        self.multiplier = multiplier if multiplier is not None else app_globals.BACKOFF_MULTIPLIER

    def _next_delay(self, instance: "AppInstance") -> float:
        spec = instance.spec
        if spec.exp_backoff_restart_delay <= 0:
            return spec.restart_delay
        if instance.backoff_delay <= 0:
            delay = spec.exp_backoff_restart_delay
        else:
            delay = instance.backoff_delay * self.multiplier
        delay = min(delay, max(self.max_backoff, spec.exp_backoff_restart_delay))
        instance.backoff_delay = delay
        return delay

    def evaluate(self, instance: "AppInstance", exit_code: Optional[int], uptime: float) -> RestartDecision:
        """
        Applies the policy to an exit and updates the instance's counters.

        :param instance: The instance that exited.
        :param exit_code: Its exit code (negative for a signal on POSIX).
        :param uptime: Seconds the instance ran before exiting.
        :return: The decision for the supervisor to carry out.
        """
        spec = instance.spec

        if instance.stop_requested:
            return RestartDecision(False, STOPPED, "stopped on request")
        if not spec.autorestart:
            return RestartDecision(False, STOPPED, "autorestart is disabled")
        if exit_code is not None and exit_code in spec.stop_exit_codes:
            return RestartDecision(False, STOPPED, f"exit code {exit_code} is a stop exit code")

        if uptime < spec.min_uptime:
            instance.unstable_restarts += 1
            if instance.unstable_restarts > spec.max_restarts:
                return RestartDecision(
                    False, ERRORED,
                    f"too many unstable restarts ({instance.unstable_restarts - 1}, limit {spec.max_restarts})",
                )
            reason = f"unstable exit after {uptime:.2f}s (< min_uptime {spec.min_uptime}s)"
        else:
            instance.unstable_restarts = 0
            instance.backoff_delay = 0.0
            reason = f"exited after {uptime:.2f}s"

        return RestartDecision(True, WAITING_RESTART, reason, delay=self._next_delay(instance))
