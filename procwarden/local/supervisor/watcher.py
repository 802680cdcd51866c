import time
import logging
from fnmatch import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Set
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, DirModifiedEvent

if TYPE_CHECKING:
    from procwarden.local.ecosystem import AppSpec
    from .supervisor import ProcessManager

log = logging.getLogger(__name__)


class AppChangeHandler(FileSystemEventHandler):
    """A watchdog event handler that queues an app restart when its files change."""

    def __init__(self, manager: "ProcessManager", spec: "AppSpec", debounce_interval: float):
        super().__init__()
        self.manager = manager
        self.spec = spec
        self.debounce_interval = debounce_interval
        self.last_trigger: Optional[float] = None
        self.log_files: Set[Path] = {
            p.resolve() for p in (spec.logs.out_file, spec.logs.error_file, spec.logs.log_file) if p
        }

    def is_ignored(self, path_str: str) -> bool:
        """
        Checks a path against the app's ignore_watch patterns and its own log files.
        Patterns match any path component or the path relative to cwd.
        """
        path = Path(path_str).resolve()
        if path in self.log_files or any(path.parent == f.parent and path.name.startswith(f.stem) for f in self.log_files):
            return True
        try:
            relative = path.relative_to(self.spec.cwd)
        except ValueError:
            relative = path
        parts = relative.parts
        for pattern in self.spec.ignore_watch:
            if fnmatch(str(relative), pattern) or any(fnmatch(part, pattern) for part in parts):
                return True
        return False

    def _should_process_event(self) -> bool:
        """Check if the event should be processed or skipped due to debouncing."""
        now = time.monotonic()
        if self.last_trigger is not None and now - self.last_trigger < self.debounce_interval:
            return False
        self.last_trigger = now
        return True

    def on_any_event(self, event) -> None:
        """The main event handler method for watchdog, called on any file change."""
        if isinstance(event, DirModifiedEvent) or event.event_type in ("opened", "closed", "closed_no_write"):
            return
        if self.is_ignored(event.src_path):
            return
        if not self._should_process_event():
            return

        log.info(f"Change detected in '{event.src_path}' ({event.event_type}). Restarting app '{self.spec.name}'.")
        self.manager.request_watch_restart(self.spec.name)


class AppWatcher:
    """Runs one watchdog observer per app that enables `watch`."""

    def __init__(self) -> None:
        self.observers: Dict[str, Observer] = {}
        self.handlers: Dict[str, AppChangeHandler] = {}

    def start(self, manager: "ProcessManager", specs: List["AppSpec"]) -> None:
        debounce = manager.config.get("WATCH_DEBOUNCE_SECONDS", 1.0)
        for spec in specs:
            paths = [p for p in spec.watch_paths if p.exists()]
            if not paths or spec.name in self.observers:
                continue
            observer = Observer()
            handler = AppChangeHandler(manager, spec, debounce)
            for path in paths:
                target = path if path.is_dir() else path.parent
                observer.schedule(handler, str(target), recursive=path.is_dir())
            observer.daemon = True
            observer.start()
            self.observers[spec.name] = observer
            self.handlers[spec.name] = handler
            log.info(f"Watching {', '.join(str(p) for p in paths)} for app '{spec.name}'.")

    def stop(self) -> None:
        for name, observer in self.observers.items():
            observer.stop()
            observer.join(timeout=5)
            log.debug(f"Watcher for '{name}' stopped.")
        self.observers.clear()
        self.handlers.clear()

    def set_debounce(self, interval: float) -> None:
        for handler in self.handlers.values():
            handler.debounce_interval = interval
