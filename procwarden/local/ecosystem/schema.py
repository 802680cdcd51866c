from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union


class EcosystemError(ValueError):
    """Raised when an ecosystem file is missing, malformed or fails validation."""


@dataclass
class LogSettings:
    """Where an app's output goes and how each line is stamped."""
    out_file: Path
    error_file: Path
    log_file: Optional[Path] = None
    date_format: Optional[str] = None
    merge_logs: bool = False
    max_size: int = 0
    retain: int = 3


@dataclass
class AppSpec:
    """A single application entry, fully resolved and validated."""
    name: str
    script: str
    cwd: Path
    logs: LogSettings
    args: List[str] = field(default_factory=list)
    interpreter: Optional[str] = None
    exec_mode: str = "fork"
    instances: int = 1
    instance_var: str = "APP_INSTANCE"
    env: Dict[str, str] = field(default_factory=dict)

    # Restart policy
    autorestart: bool = True
    max_memory_restart: Optional[int] = None
    restart_delay: float = 0.0
    exp_backoff_restart_delay: float = 0.0
    max_restarts: int = 16
    min_uptime: float = 1.0
    stop_exit_codes: List[int] = field(default_factory=list)

    # Watching
    watch: Union[bool, List[str]] = False
    ignore_watch: List[str] = field(default_factory=list)

    # Lifecycle
    kill_timeout: float = 1.6
    kill_signal: str = "SIGTERM"
    listen_timeout: float = 3.0
    health_check_grace_period: float = 0.0
    health_check_fatal_exceptions: bool = False
    port: Optional[int] = None

    @property
    def watch_paths(self) -> List[Path]:
        """Directories to observe for changes, relative paths resolved against cwd."""
        if self.watch is True:
            return [self.cwd]
        if not self.watch:
            return []
        return [(self.cwd / p).resolve() for p in self.watch]


@dataclass
class DeployTarget:
    """A remote deployment descriptor. It is described, never executed."""
    name: str
    hosts: List[str]
    path: str
    user: Optional[str] = None
    ref: Optional[str] = None
    repo: Optional[str] = None
    hooks: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    ssh_options: List[str] = field(default_factory=list)


@dataclass
class Ecosystem:
    """The full contents of an ecosystem file."""
    apps: List[AppSpec]
    deploy: Dict[str, DeployTarget] = field(default_factory=dict)
    source: Optional[Path] = None
    env_name: Optional[str] = None

    def get_app(self, name: str) -> AppSpec:
        for app in self.apps:
            if app.name == name:
                return app
        raise KeyError(name)

    @property
    def app_names(self) -> List[str]:
        return [app.name for app in self.apps]
