import time
import logging
from typing import List
from procwarden.local import app_globals
from procwarden.local.supervisor import ProcessManager
from procwarden.local.supervisor.config_service import APP_ACTIONS
from procwarden.local.config_client import fetch_status_report, request_log_reload, send_app_action
from procwarden.local.console.handler import (
    check_configuration, display_status, handle_config_command, handle_logs_command,
    parse_ecosystem_args, print_help, show_deploy, toggle_verbose_logging,
)

log = logging.getLogger(__name__)
process_manager = ProcessManager()


def _start(args: List[str]) -> None:
    path, env_name, _ = parse_ecosystem_args(args)
    process_manager.start_all(path, env_name, app_globals.VERBOSE_LOGGING)


def _run(args: List[str]) -> None:
    """Supervises in the foreground of the console until Ctrl+C."""
    path, env_name, _ = parse_ecosystem_args(args)
    if process_manager.is_running():
        log.error("A supervisor daemon is already running. Use 'stop' first.")
        return
    ProcessManager().run(path, env_name, app_globals.VERBOSE_LOGGING)


def _restart(args: List[str]) -> None:
    host, port = app_globals.CONFIG_API_HOST, app_globals.CONFIG_API_PORT
    if args:
        for name in args:
            send_app_action(host, port, name, "restart")
        return

    # Restart the daemon with whatever ecosystem it is currently running
    report = fetch_status_report(host, port)
    if report and report.get("ecosystem"):
        path, env_name = report["ecosystem"], report.get("env")
    else:
        path, env_name, _ = parse_ecosystem_args([])
    log.info("Stopping services...")
    process_manager.stop_all()
    time.sleep(1)
    log.info("Starting services...")
    process_manager.start_all(path, env_name, app_globals.VERBOSE_LOGGING)


def _app(args: List[str]) -> None:
    if len(args) < 2 or args[0] not in APP_ACTIONS:
        print(f"Usage: app {'|'.join(APP_ACTIONS)} <APP>")
        return
    if not process_manager.is_running():
        print("The supervisor is not running. Use 'start' first.")
        return
    send_app_action(app_globals.CONFIG_API_HOST, app_globals.CONFIG_API_PORT, args[1], args[0])


def _reload_logs() -> None:
    if not process_manager.is_running():
        print("The supervisor is not running.")
        return
    request_log_reload(app_globals.CONFIG_API_HOST, app_globals.CONFIG_API_PORT)


def execute_command(command: str, args: List[str]) -> bool:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'start', 'config').
    :param args: A list of arguments for the command.
    :return bool: True if the console should exit, False otherwise.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "start": lambda: _start(args),
        "run": lambda: _run(args),
        "stop": lambda: process_manager.stop_all(),
        "shutdown": lambda: process_manager.stop_all(), # Foolproof alias
        "restart": lambda: _restart(args),
        "app": lambda: _app(args),
        "status": lambda: display_status(process_manager),
        "logs": lambda: handle_logs_command(args),
        "reload-logs": _reload_logs,
        "check-config": lambda: check_configuration(args),
        "deploy": lambda: show_deploy(args),
        "config": lambda: handle_config_command(process_manager, args),
        "verbose": toggle_verbose_logging,
        "help": print_help,
        "exit": lambda: True
    }

    should_exit = False
    if command in command_map:
        result = command_map[command]()
        if command == "exit" and result is True:
            should_exit = True
    else:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")

    return should_exit
