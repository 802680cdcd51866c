import json
import shlex
import signal
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import psutil
import yaml

from procwarden.local import app_globals
from procwarden.local.ecosystem.schema import AppSpec, DeployTarget, Ecosystem, EcosystemError, LogSettings
from procwarden.local.ecosystem.units import convert_date_format, parse_duration, parse_memory

log = logging.getLogger(__name__)

APP_KEYS = {
    "name", "script", "args", "cwd", "interpreter", "exec_mode", "instances", "instance_var",
    "env", "log_file", "out_file", "error_file", "log_date_format", "merge_logs",
    "log_max_size", "log_retain", "autorestart", "max_memory_restart", "restart_delay",
    "exp_backoff_restart_delay", "max_restarts", "min_uptime", "stop_exit_codes", "watch",
    "ignore_watch", "kill_timeout", "kill_signal", "listen_timeout", "health_check_grace_period",
    "health_check_fatal_exceptions", "port",
}
DEPLOY_HOOKS = ("pre-setup", "post-setup", "pre-deploy-local", "pre-deploy", "post-deploy")
DEPLOY_KEYS = {"user", "host", "ref", "repo", "path", "env", "ssh_options", *DEPLOY_HOOKS}
EXEC_MODES = {"fork": "fork", "fork_mode": "fork", "cluster": "cluster", "cluster_mode": "cluster"}


#* --- Small coercion helpers ---
def _parse_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false", "1", "0", "yes", "no"):
        return value.lower() in ("true", "1", "yes")
    raise EcosystemError(f"'{field}' must be a boolean, got {value!r}")


def _parse_int(value: Any, field: str, minimum: Optional[int] = None) -> int:
    if isinstance(value, bool) or value is None:
        raise EcosystemError(f"'{field}' must be an integer, got {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value)
    if not isinstance(value, int):
        raise EcosystemError(f"'{field}' must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise EcosystemError(f"'{field}' must be >= {minimum}, got {value}")
    return value


def _parse_str_list(value: Any, field: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return [str(v) for v in value]
    raise EcosystemError(f"'{field}' must be a string or a list of strings, got {value!r}")


def _stringify_env(value: Any, field: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise EcosystemError(f"'{field}' must be a mapping, got {type(value).__name__}")
    env = {}
    for key, val in value.items():
        if isinstance(val, bool):
            env[str(key)] = "true" if val else "false"
        elif val is None:
            env[str(key)] = ""
        else:
            env[str(key)] = str(val)
    return env


def _parse_args(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return _parse_str_list(value, "args")


def _parse_instances(value: Any) -> int:
    """Resolves 'max', 0 and negative counts against the number of CPUs."""
    cpu_count = psutil.cpu_count() or 1
    if value is None:
        return 1
    if isinstance(value, str):
        if value.strip().lower() == "max":
            return cpu_count
        try:
            value = int(value)
        except ValueError:
            raise EcosystemError(f"'instances' must be an integer or 'max', got {value!r}")
    if isinstance(value, bool) or not isinstance(value, int):
        raise EcosystemError(f"'instances' must be an integer or 'max', got {value!r}")
    if value == 0:
        return cpu_count
    if value < 0:
        return max(cpu_count + value, 1)
    return value


def _parse_kill_signal(value: Any) -> str:
    name = str(value).upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        signal.Signals[name]
    except KeyError:
        raise EcosystemError(f"'kill_signal' is not a known signal: {value!r}")
    return name


def _parse_port(raw: Dict[str, Any], env: Dict[str, str]) -> Optional[int]:
    value = raw.get("port", env.get("PORT"))
    if value is None:
        return None
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise EcosystemError(f"'port' must be an integer, got {value!r}")
    if not 0 < port < 65536:
        raise EcosystemError(f"'port' is out of range: {port}")
    return port


def _resolve_path(value: Any, base: Path) -> Path:
    return (base / Path(str(value)).expanduser()).resolve()


#* --- Section parsers ---
def _parse_logs(raw: Dict[str, Any], name: str, cwd: Path, logs_dir: Path) -> LogSettings:
    log_file = raw.get("log_file")
    if log_file is True:
        log_file = logs_dir / f"{name}.log"
    elif log_file in (None, False):
        log_file = None
    else:
        log_file = _resolve_path(log_file, cwd)

    date_format = raw.get("log_date_format")
    return LogSettings(
        out_file=_resolve_path(raw.get("out_file", logs_dir / f"{name}-out.log"), cwd),
        error_file=_resolve_path(raw.get("error_file", logs_dir / f"{name}-error.log"), cwd),
        log_file=log_file,
        date_format=convert_date_format(str(date_format)) if date_format else None,
        merge_logs=_parse_bool(raw.get("merge_logs", False), "merge_logs"),
        max_size=parse_memory(raw["log_max_size"], "log_max_size") if raw.get("log_max_size") else 0,
        retain=_parse_int(raw.get("log_retain", app_globals.DEFAULT_LOG_RETAIN), "log_retain", minimum=0),
    )


def parse_app(raw: Dict[str, Any], base_dir: Path, env_name: Optional[str] = None,
              logs_dir: Optional[Path] = None) -> AppSpec:
    """
    Builds a validated AppSpec from one raw `apps` entry.

    :param raw: The mapping read from the ecosystem file.
    :param base_dir: Directory of the ecosystem file, the default cwd.
    :param env_name: Optional deployment environment whose `env_<name>` overlays `env`.
    :param logs_dir: Directory for default log file locations.
    :raises EcosystemError: If a required field is missing or a value is invalid.
    """
    if not isinstance(raw, dict):
        raise EcosystemError(f"Each app must be a mapping, got {type(raw).__name__}")

    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise EcosystemError("Every app needs a non-empty 'name'")
    if not raw.get("script"):
        raise EcosystemError(f"App '{name}' has no 'script'")

    unknown = [k for k in raw if k not in APP_KEYS and not str(k).startswith("env_")]
    if unknown:
        log.warning(f"App '{name}': ignoring unknown keys {sorted(unknown)}")

    try:
        return _build_app(raw, name, base_dir, env_name, logs_dir)
    except EcosystemError as e:
        raise EcosystemError(f"App '{name}': {e}") from None
    except (TypeError, ValueError) as e:
        raise EcosystemError(f"App '{name}': invalid value ({e})") from None


def _build_app(raw: Dict[str, Any], name: str, base_dir: Path, env_name: Optional[str],
               logs_dir: Optional[Path]) -> AppSpec:
    logs_dir = Path(logs_dir or app_globals.LOGS_DIR)
    cwd = _resolve_path(raw.get("cwd", "."), base_dir)

    env = _stringify_env(raw.get("env"), "env")
    if env_name:
        env.update(_stringify_env(raw.get(f"env_{env_name}"), f"env_{env_name}"))

    exec_mode = EXEC_MODES.get(str(raw.get("exec_mode", "fork")).lower())
    if exec_mode is None:
        raise EcosystemError("'exec_mode' must be 'fork' or 'cluster'")

    max_memory = raw.get("max_memory_restart")
    watch = raw.get("watch", False)
    if not isinstance(watch, bool):
        watch = _parse_str_list(watch, "watch")

    return AppSpec(
        name=name,
        script=str(raw["script"]),
        cwd=cwd,
        logs=_parse_logs(raw, name, cwd, logs_dir),
        args=_parse_args(raw.get("args")),
        interpreter=raw.get("interpreter") if raw.get("interpreter") not in (None, "none") else None,
        exec_mode=exec_mode,
        instances=_parse_instances(raw.get("instances", 1)),
        instance_var=str(raw.get("instance_var", app_globals.DEFAULT_INSTANCE_VAR)),
        env=env,
        autorestart=_parse_bool(raw.get("autorestart", True), "autorestart"),
        max_memory_restart=parse_memory(max_memory) if max_memory is not None else None,
        restart_delay=parse_duration(raw.get("restart_delay", 0), "restart_delay"),
        exp_backoff_restart_delay=parse_duration(raw.get("exp_backoff_restart_delay", 0), "exp_backoff_restart_delay"),
        max_restarts=_parse_int(raw.get("max_restarts", app_globals.DEFAULT_MAX_RESTARTS), "max_restarts", minimum=0),
        min_uptime=parse_duration(raw.get("min_uptime", app_globals.DEFAULT_MIN_UPTIME * 1000), "min_uptime"),
        stop_exit_codes=[_parse_int(c, "stop_exit_codes") for c in _parse_str_list(raw.get("stop_exit_codes"), "stop_exit_codes")],
        watch=watch,
        ignore_watch=_parse_str_list(raw.get("ignore_watch"), "ignore_watch"),
        kill_timeout=parse_duration(raw.get("kill_timeout", app_globals.DEFAULT_KILL_TIMEOUT * 1000), "kill_timeout"),
        kill_signal=_parse_kill_signal(raw.get("kill_signal", app_globals.DEFAULT_KILL_SIGNAL)),
        listen_timeout=parse_duration(raw.get("listen_timeout", app_globals.DEFAULT_LISTEN_TIMEOUT * 1000), "listen_timeout"),
        health_check_grace_period=parse_duration(raw.get("health_check_grace_period", 0), "health_check_grace_period"),
        health_check_fatal_exceptions=_parse_bool(raw.get("health_check_fatal_exceptions", False), "health_check_fatal_exceptions"),
        port=_parse_port(raw, env),
    )


def parse_deploy(name: str, raw: Dict[str, Any]) -> DeployTarget:
    """Builds a validated DeployTarget from one raw `deploy` entry."""
    if not isinstance(raw, dict):
        raise EcosystemError(f"Deploy target '{name}' must be a mapping")

    unknown = [k for k in raw if k not in DEPLOY_KEYS]
    if unknown:
        log.warning(f"Deploy target '{name}': ignoring unknown keys {sorted(unknown)}")

    hosts = _parse_str_list(raw.get("host"), "host")
    if not hosts:
        raise EcosystemError(f"Deploy target '{name}' has no 'host'")
    if not raw.get("path"):
        raise EcosystemError(f"Deploy target '{name}' has no 'path'")

    ssh_options = raw.get("ssh_options")
    return DeployTarget(
        name=name,
        hosts=hosts,
        path=str(raw["path"]),
        user=raw.get("user"),
        ref=raw.get("ref"),
        repo=raw.get("repo"),
        hooks={hook: str(raw[hook]) for hook in DEPLOY_HOOKS if raw.get(hook)},
        env=_stringify_env(raw.get("env"), f"deploy.{name}.env"),
        ssh_options=shlex.split(ssh_options) if isinstance(ssh_options, str) else _parse_str_list(ssh_options, "ssh_options"),
    )


def _read_raw(path: Path) -> Union[Dict[str, Any], List[Any]]:
    suffix = path.suffix.lower()
    try:
        with path.open("r", encoding="utf-8") as f:
            if suffix in (".yaml", ".yml"):
                return yaml.safe_load(f)
            if suffix == ".json":
                return json.load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise EcosystemError(f"Failed to parse ecosystem file '{path}': {e}") from None
    except OSError as e:
        raise EcosystemError(f"Failed to read ecosystem file '{path}': {e}") from None
    raise EcosystemError(f"Unsupported ecosystem file type '{suffix}'. Use .yaml, .yml or .json")


def load_ecosystem(path: Union[str, Path], env_name: Optional[str] = None,
                   logs_dir: Optional[Path] = None) -> Ecosystem:
    """
    Loads, resolves and validates an ecosystem file.

    :param path: Path to a .yaml/.yml/.json ecosystem file.
    :param env_name: Optional deployment environment (e.g. 'production').
    :param logs_dir: Directory for default log file locations.
    :return: The parsed Ecosystem.
    :raises EcosystemError: On any read, parse or validation error.
    """
    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise EcosystemError(f"Ecosystem file not found: '{path}'")

    raw = _read_raw(path)
    if isinstance(raw, list):
        raw = {"apps": raw}
    if not isinstance(raw, dict):
        raise EcosystemError(f"Ecosystem file '{path}' must contain a mapping or a list of apps")

    raw_apps = raw.get("apps")
    if isinstance(raw_apps, dict):
        raw_apps = [raw_apps]
    if not raw_apps or not isinstance(raw_apps, list):
        raise EcosystemError(f"Ecosystem file '{path}' declares no apps")

    apps = [parse_app(entry, path.parent, env_name, logs_dir) for entry in raw_apps]
    seen = set()
    for app in apps:
        if app.name in seen:
            raise EcosystemError(f"Duplicate app name '{app.name}'")
        seen.add(app.name)

    raw_deploy = raw.get("deploy") or {}
    if not isinstance(raw_deploy, dict):
        raise EcosystemError("'deploy' must be a mapping of target names to descriptors")
    deploy = {name: parse_deploy(name, entry) for name, entry in raw_deploy.items()}

    if env_name:
        declared = any(f"env_{env_name}" in entry for entry in raw_apps) or env_name in deploy
        if not declared:
            log.warning(f"Environment '{env_name}' is not declared by any app or deploy target.")

    log.debug(f"Loaded {len(apps)} app(s) and {len(deploy)} deploy target(s) from '{path}'.")
    return Ecosystem(apps=apps, deploy=deploy, source=path, env_name=env_name)
