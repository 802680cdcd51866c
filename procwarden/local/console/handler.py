import sys
import time
import psutil
import logging
from pathlib import Path
from typing import List, Optional, Tuple
from procwarden.local import app_globals
from procwarden.local.ecosystem import Ecosystem, EcosystemError, load_ecosystem
from procwarden.local.supervisor import ProcessManager
from procwarden.local.supervisor.log_router import LogRouter
from procwarden.local.supervisor.process_utils import get_proc_status_string, resolve_command
from procwarden.local.config_client import (
    fetch_config_from_supervisor, fetch_status, fetch_status_report, post_config_to_supervisor,
)
from procwarden.log.tail import follow_files, read_last_lines

# --- Platform-specific non-blocking keypress detection ---
try:
    import msvcrt
    def is_keypress_waiting() -> bool:
        return msvcrt.kbhit()
    def clear_keypress_buffer() -> None:
        # Read all waiting characters to clear the buffer
        while msvcrt.kbhit():
            msvcrt.getch()
except ImportError:
    import select
    import termios
    import tty
    def is_keypress_waiting() -> bool:
        if not sys.stdin.isatty():
            return False
        return select.select([sys.stdin], [], [], 0) == ([sys.stdin], [], [])
    def clear_keypress_buffer() -> None:
        if not sys.stdin.isatty():
            return
        # For non-Windows, need to switch to raw mode temporarily to read without Enter
        old_settings = termios.tcgetattr(sys.stdin)
        try:
            tty.setcbreak(sys.stdin.fileno())
            while is_keypress_waiting():
                sys.stdin.read(1)
        finally:
            termios.tcsetattr(sys.stdin, termios.TCSADRAIN, old_settings)

log = logging.getLogger(__name__)


#* --- Argument helpers ---
def parse_ecosystem_args(args: List[str]) -> Tuple[Path, Optional[str], List[str]]:
    """
    Splits console arguments into (ecosystem path, env name, remaining args).
    The first positional argument ending in .yaml/.yml/.json is the ecosystem
    file; '--env NAME' or '--env=NAME' selects the environment.
    """
    path: Optional[str] = None
    env_name: Optional[str] = None
    rest: List[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--env" and i + 1 < len(args):
            env_name = args[i + 1]
            i += 2
            continue
        if arg.startswith("--env="):
            env_name = arg.split("=", 1)[1]
        elif path is None and Path(arg).suffix.lower() in (".yaml", ".yml", ".json"):
            path = arg
        else:
            rest.append(arg)
        i += 1
    return Path(path or app_globals.ECOSYSTEM_FILE), env_name, rest


def _api_address() -> Tuple[str, int]:
    return app_globals.CONFIG_API_HOST, app_globals.CONFIG_API_PORT


def load_running_or_local_ecosystem(args: List[str]) -> Optional[Ecosystem]:
    """
    Loads the ecosystem the supervisor is running, or the one named in args
    when the supervisor is down or a file was given explicitly.
    """
    path, env_name, _ = parse_ecosystem_args(args)
    explicit = any(Path(a).suffix.lower() in (".yaml", ".yml", ".json") for a in args)
    if not explicit:
        report = fetch_status_report(*_api_address())
        if report and report.get("ecosystem"):
            path, env_name = Path(report["ecosystem"]), report.get("env") or env_name
    try:
        return load_ecosystem(path, env_name)
    except EcosystemError as e:
        print(f"Error: {e}")
        return None


#* --- Config ---
def _config_show(process_manager: ProcessManager):
    """
    Displays the current configuration settings. It fetches live data from the
    Supervisor if running, otherwise it shows the local bootstrap config.
    """
    print("\n--- Current procwarden Configuration ---")

    config_source = "Local Bootstrap"
    effective_config = {key: app_globals.get(key) for key in app_globals.MODIFIABLE_SETTINGS}

    if process_manager.is_running():
        live_config = fetch_config_from_supervisor(*_api_address(), retries=1)
        if live_config:
            for key in app_globals.MODIFIABLE_SETTINGS:
                if key in live_config:
                    effective_config[key] = live_config[key]
            config_source = f"Live from Supervisor (PID: {process_manager.get_pid_info().get('supervisor')})"
        else:
            config_source = "Local Bootstrap (Supervisor API unreachable)"

    print(f"(Source: {config_source})")

    for key in sorted(app_globals.MODIFIABLE_SETTINGS):
        value = effective_config.get(key, 'N/A')
        print(f"  {key} = {value}")

    print("---")
    print("Use 'config set <KEY> <VALUE>' to change a setting (requires the supervisor to be running).")
    print("---------------------------------------\n")

def _config_set(process_manager: ProcessManager, args: List[str]):
    """Sets a configuration setting by calling the Supervisor's API."""
    if not process_manager.is_running():
        print("\nERROR: Cannot change configuration while the supervisor is stopped.")
        print("Please run the 'start' command first.\n")
        return

    if len(args) < 2:
        print("Usage: config set <SETTING_NAME> <VALUE>")
        return

    key, value_str = args[0].upper(), " ".join(args[1:])

    if key not in app_globals.MODIFIABLE_SETTINGS:
        print(f"Error: '{key}' is not a modifiable setting.")
        return

    host, port = _api_address()
    if post_config_to_supervisor(host=host, port=port, key=key, value=value_str):
        print(f"Configuration update for '{key}' applied by the Supervisor.")
    else:
        print(f"Failed to update configuration for '{key}'. Check logs for details.")

def _config_help():
    """Displays help for the config command."""
    print("\nConfig Command Help:")
    print("  config show                - Display all modifiable settings.")
    print("  config set KEY VALUE       - Change a setting on the running supervisor.")
    print("  config help                - Show this help message.")
    print("Use 'check-config' to validate an ecosystem file.")

def handle_config_command(process_manager: ProcessManager, args: List[str]) -> None:
    """
    Handles all sub-commands for the 'config' command-line interface.

    :param process_manager: The console's ProcessManager.
    :param args: A list of string arguments following the 'config' command.
    """
    sub_command = args[0].lower() if args else "show"

    if sub_command == "show":
        _config_show(process_manager)
    elif sub_command == "set":
        _config_set(process_manager, args[1:])
    elif sub_command == "help":
        _config_help()
    else:
        print(f"Unknown config sub-command: '{sub_command}'. Type 'config help' for available commands.")


#* --- Validation & Deploy ---
def check_configuration(args: List[str]) -> bool:
    """
    Validates an ecosystem file and that every app's command and working
    directory can be resolved.

    :return: True if every app passed, otherwise False.
    """
    path, env_name, _ = parse_ecosystem_args(args)
    log.info(f"Validating ecosystem file '{path}'...")
    try:
        ecosystem = load_ecosystem(path, env_name)
    except EcosystemError as e:
        log.error(f"CONFIG CHECK FAILED: {e}")
        return False

    all_ok = True
    for spec in ecosystem.apps:
        if not spec.cwd.is_dir():
            log.error(f"CONFIG CHECK FAILED: '{spec.name}' cwd '{spec.cwd}' does not exist")
            all_ok = False
            continue
        try:
            command = resolve_command(spec, spec.env.get("PATH"))
        except FileNotFoundError as e:
            log.error(f"CONFIG CHECK FAILED: '{spec.name}': {e}")
            all_ok = False
            continue
        log.info(f"Config Check OK: '{spec.name}' x{spec.instances} -> {' '.join(command)}")
    return all_ok

def show_deploy(args: List[str]) -> None:
    """Prints the deployment descriptors of an ecosystem file. Nothing is executed."""
    path, env_name, rest = parse_ecosystem_args(args)
    try:
        ecosystem = load_ecosystem(path, env_name)
    except EcosystemError as e:
        print(f"Error: {e}")
        return

    targets = ecosystem.deploy
    if rest:
        missing = [name for name in rest if name not in targets]
        if missing:
            print(f"Unknown deploy target(s): {', '.join(missing)}. Available: {', '.join(targets) or 'none'}")
            return
        targets = {name: targets[name] for name in rest}

    if not targets:
        print(f"No deploy targets declared in '{ecosystem.source}'.")
        return

    for target in targets.values():
        print(f"\n--- Deploy target: {target.name} ---")
        user = f"{target.user}@" if target.user else ""
        print(f"  Hosts : {', '.join(user + host for host in target.hosts)}")
        print(f"  Repo  : {target.repo or 'N/A'} ({target.ref or 'default ref'})")
        print(f"  Path  : {target.path}")
        for hook, command in target.hooks.items():
            print(f"  {hook:<17}: {command}")
        for key, value in target.env.items():
            print(f"  env {key} = {value}")
        if target.ssh_options:
            print(f"  SSH options: {' '.join(target.ssh_options)}")
    print()


#* --- Status ---
def _format_memory(value: Optional[int]) -> str:
    return f"{value / 1024 / 1024:.1f} MB" if value is not None else "-"

def display_status(process_manager: ProcessManager) -> None:
    """Checks and displays the current status of every managed instance, including resource usage."""
    pids = process_manager.get_pid_info()
    if not pids:
        print("\nprocwarden is STOPPED (No PID file found).\n")
        return

    rows = fetch_status(*_api_address())
    if rows is None:
        _display_status_from_pid_file(pids)
        return

    print("\n--- procwarden Status ---")
    print(f"  Supervisor PID {pids.get('supervisor')}")
    total_mem = 0
    for row in rows:
        cpu = f"{row['cpu']:.1f}%" if row.get("cpu") is not None else "-"
        total_mem += row.get("memory") or 0
        print(
            f"  - {row['key']:<24} : PID {str(row.get('pid') or '-'):<8} | Status: {row['status'].upper():<16}"
            f" | Restarts: {row['restarts']:<3} | Uptime: {row['uptime']:>7.1f}s | CPU: {cpu:>6} | MEM: {_format_memory(row.get('memory'))}"
        )
        if row.get("error"):
            print(f"      last error: {row['error']}")
    print(f"\nTOTAL MEMORY: {_format_memory(total_mem)}")

    supervisor_pid = pids.get("supervisor")
    if supervisor_pid:
        try:
            started = psutil.Process(supervisor_pid).create_time()
            print(f"Runtime: {time.strftime('%H:%M:%S', time.gmtime(time.time() - started))}")
        except psutil.Error:
            pass
    print("-" * 26 + "\n")

def _display_status_from_pid_file(pids: dict) -> None:
    """Fallback status view built from the PID file when the API is unreachable."""
    print("\n--- procwarden Status (Supervisor API unreachable, showing PID file) ---")
    all_stale = True
    for name, pid in sorted(pids.items()):
        try:
            p = psutil.Process(pid)
            mem = p.memory_info().rss
            print(f"  - {name:<24} : PID {pid:<8} | Status: {get_proc_status_string(p).upper()} | MEM: {_format_memory(mem)}")
            all_stale = False
        except psutil.NoSuchProcess:
            print(f"  - {name:<24} : PID {pid:<8} | Status: STOPPED (Stale PID)")
        except psutil.AccessDenied:
            print(f"  - {name:<24} : PID {pid:<8} | Status: RUNNING (Access Denied)")
            all_stale = False

    if all_stale:
        print("\nWARNING: All processes are stopped but a stale PID file exists.")
        print("You should run 'stop' to clean it up before starting again.")
    print("-" * 26 + "\n")


#* --- Logs ---
def _log_files_for(ecosystem: Ecosystem, app_name: Optional[str]) -> List[Path]:
    files: List[Path] = []
    for spec in ecosystem.apps:
        if app_name and spec.name != app_name:
            continue
        ids = [0] if spec.logs.merge_logs else range(spec.instances)
        for instance_id in ids:
            for path in (spec.logs.out_file, spec.logs.error_file):
                candidate = LogRouter.instance_path(path, spec, instance_id)
                if candidate not in files:
                    files.append(candidate)
    return files

def handle_logs_command(args: List[str]) -> None:
    """
    Handles the 'logs' command: prints recent lines of the app log files and
    then follows them until a key is pressed.
    """
    lines = app_globals.LOG_HISTORY_COUNT
    if "--lines" in args:
        idx = args.index("--lines")
        try:
            lines = int(args[idx + 1])
            del args[idx:idx + 2]
        except (IndexError, ValueError):
            print("Usage: logs [APP] [--lines N]")
            return

    ecosystem = load_running_or_local_ecosystem(args)
    if ecosystem is None:
        return
    _, _, rest = parse_ecosystem_args(args)
    app_name = rest[0] if rest else None
    if app_name and app_name not in ecosystem.app_names:
        print(f"Unknown app '{app_name}'. Available: {', '.join(ecosystem.app_names)}")
        return

    files = _log_files_for(ecosystem, app_name)
    print(f"\n--- Displaying last {lines} lines per log file ---")
    for path in files:
        for line in read_last_lines(path, lines):
            print(f"[{path.stem}] {line}")

    print("\n--- Now tailing new log lines (Press any key or Ctrl+C to stop) ---\n")
    try:
        follow_files(files, is_keypress_waiting, lambda path, line: print(f"[{path.stem}] {line}"))
        clear_keypress_buffer()
        print("\n--- Log tailing stopped. Returning to console. ---")
    except KeyboardInterrupt:
        print("\n--- Log tailing interrupted. Returning to console. ---")


#* --- Misc ---
def toggle_verbose_logging() -> None:
    """Toggles verbose (DEBUG level) logging for the console handler."""
    app_globals.set("VERBOSE_LOGGING", not app_globals.VERBOSE_LOGGING)
    new_level = logging.DEBUG if app_globals.VERBOSE_LOGGING else logging.INFO

    # Reconfigure the console handler's level directly
    root_logger = logging.getLogger()
    found_handler = False
    for handler in root_logger.handlers:
        if type(handler) is logging.StreamHandler:
            handler.setLevel(new_level)
            found_handler = True
            break

    status = "ON" if app_globals.VERBOSE_LOGGING else "OFF"
    if found_handler:
        print(f"Verbose console logging is now {status}.")
        log.debug("Debug logging test: This message should only appear when verbose is ON.")
    else:
        print("Could not find console handler to modify level.")

def print_help():
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  start [FILE] [--env NAME]    - Start the supervisor daemon and every app in FILE.")
    print("  run [FILE] [--env NAME]      - Supervise FILE in the foreground (Ctrl+C stops).")
    print("  stop                         - Stop the supervisor and every app gracefully.")
    print("  restart [APP]                - Restart everything, or every instance of APP.")
    print("  app start|stop|restart APP   - Control the instances of one app.")
    print("  status                       - Show the status of every instance.")
    print("  logs [APP] [--lines N]       - Show recent app output and follow new lines.")
    print("  reload-logs                  - Reopen every app log file.")
    print("  check-config [FILE]          - Validate an ecosystem file and its commands.")
    print("  deploy [FILE] [TARGET...]    - Show deployment descriptors (nothing is executed).")
    print("  config <cmd>                 - Manage settings. Use 'config help' for more details.")
    print("  verbose                      - Toggle detailed DEBUG log output in the console.")
    print("  exit                         - Exit the management console.")
    print()
