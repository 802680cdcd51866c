import os
import logging
import threading
import subprocess
from pathlib import Path
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import IO, TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from procwarden.local.ecosystem import AppSpec

log = logging.getLogger(__name__)


class AppLineFormatter(logging.Formatter):
    """Writes app output verbatim, optionally prefixed with a timestamp."""

    def __init__(self, date_format: Optional[str] = None):
        if date_format:
            super().__init__(fmt="%(asctime)s: %(message)s", datefmt=date_format)
        else:
            super().__init__(fmt="%(message)s")


@dataclass
class InstanceLogs:
    """The pair of loggers an instance writes its stdout and stderr to."""
    out: logging.Logger
    err: logging.Logger
    files: List[Path] = field(default_factory=list)


class LogRouter:
    """
    Multiplexes child stdout/stderr into per-app out, error and combined files.

    Handlers are shared by file path, so instances of an app with merge_logs
    enabled (or several streams writing the combined file) hold a single
    open handle per file.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Path, RotatingFileHandler] = {}
        self._users: Dict[Path, int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def instance_path(path: Path, spec: "AppSpec", instance_id: int) -> Path:
        """Returns the file an instance writes to, suffixed with its id unless logs are merged."""
        if spec.logs.merge_logs or spec.instances == 1:
            return path
        return path.with_name(f"{path.stem}-{instance_id}{path.suffix}")

    def _acquire_handler(self, path: Path, spec: "AppSpec") -> RotatingFileHandler:
        path = Path(os.path.abspath(path))
        with self._lock:
            handler = self._handlers.get(path)
            if handler is None:
                path.parent.mkdir(parents=True, exist_ok=True)
                handler = RotatingFileHandler(
                    path,
                    maxBytes=spec.logs.max_size,
                    backupCount=spec.logs.retain,
                    encoding="utf-8",
                )
                handler.setFormatter(AppLineFormatter(spec.logs.date_format))
                self._handlers[path] = handler
                self._users[path] = 0
            self._users[path] += 1
            return handler

    def _release_handler(self, path: Path) -> None:
        with self._lock:
            if path not in self._users:
                return
            self._users[path] -= 1
            if self._users[path] <= 0:
                self._handlers.pop(path).close()
                del self._users[path]

    def attach(self, spec: "AppSpec", instance_id: int) -> InstanceLogs:
        """
        Creates the loggers for one instance and wires them to its files.

        :param spec: The app the instance belongs to.
        :param instance_id: The instance number, used for per-instance file names.
        :return: The instance's loggers and the files they write to.
        """
        out_path = self.instance_path(spec.logs.out_file, spec, instance_id)
        err_path = self.instance_path(spec.logs.error_file, spec, instance_id)
        combined_path = self.instance_path(spec.logs.log_file, spec, instance_id) if spec.logs.log_file else None

        loggers = {}
        acquired: List[Path] = []
        try:
            for stream, path in (("out", out_path), ("err", err_path)):
                logger = logging.getLogger(f"proc.{spec.name}.{instance_id}.{stream}")
                logger.propagate = False
                logger.setLevel(logging.DEBUG)
                for old in list(logger.handlers):
                    logger.removeHandler(old)
                for target in (path, combined_path):
                    if target is None:
                        continue
                    handler = self._acquire_handler(target, spec)
                    acquired.append(Path(handler.baseFilename))
                    logger.addHandler(handler)
                loggers[stream] = logger
        except OSError:
            for logger_name in (f"proc.{spec.name}.{instance_id}.out", f"proc.{spec.name}.{instance_id}.err"):
                logger = logging.getLogger(logger_name)
                for handler in list(logger.handlers):
                    logger.removeHandler(handler)
            for acquired_path in acquired:
                self._release_handler(acquired_path)
            raise

        files = [out_path, err_path] + ([combined_path] if combined_path else [])
        return InstanceLogs(out=loggers["out"], err=loggers["err"], files=files)

    def detach(self, instance_logs: InstanceLogs) -> None:
        """Unhooks an instance's loggers and closes files no other instance uses."""
        for logger in (instance_logs.out, instance_logs.err):
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                if isinstance(handler, RotatingFileHandler):
                    self._release_handler(Path(handler.baseFilename))

    def reopen(self) -> int:
        """
        Closes every open log file so the next line reopens it by name.
        Used after log files were moved away by an external tool.

        :return: The number of files reopened.
        """
        with self._lock:
            handlers = list(self._handlers.values())
        for handler in handlers:
            handler.acquire()
            try:
                if handler.stream:
                    handler.stream.flush()
                    handler.stream.close()
                    handler.stream = None
            finally:
                handler.release()
        log.info(f"Reopened {len(handlers)} log file(s).")
        return len(handlers)

    def close_all(self) -> None:
        """Closes every handler regardless of users."""
        with self._lock:
            for handler in self._handlers.values():
                handler.close()
            self._handlers.clear()
            self._users.clear()

    @property
    def open_files(self) -> List[Path]:
        with self._lock:
            return list(self._handlers)


def _read_pipe(pipe: IO[bytes], logger: logging.Logger, level: int) -> None:
    """Target function for reader threads. Reads and routes lines from a subprocess pipe."""
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            logger.log(level, line)
    except (OSError, ValueError) as e:
        log.debug(f"Pipe reader for {logger.name} exited: {e}")
    finally:
        pipe.close()


def log_process_output(process: subprocess.Popen, instance_logs: InstanceLogs) -> List[threading.Thread]:
    """
    Starts background threads that consume a process's stdout/stderr.

    This keeps the pipes from filling up and blocking the child, and routes
    every line to the instance's loggers.

    :return: The reader threads, already started.
    """
    threads = []
    for pipe, logger, level in ((process.stdout, instance_logs.out, logging.INFO),
                                (process.stderr, instance_logs.err, logging.ERROR)):
        if pipe is None:
            continue
        thread = threading.Thread(
            target=_read_pipe, args=(pipe, logger, level),
            daemon=True, name=f"PipeReader-{logger.name}",
        )
        thread.start()
        threads.append(thread)
    return threads
