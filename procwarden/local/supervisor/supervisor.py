import os
import json
import time
import psutil
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union
from procwarden.local import app_globals
from procwarden.local.ecosystem import Ecosystem, load_ecosystem
from procwarden.local.supervisor import persistence, process_utils, shutdown, startup
from procwarden.local.supervisor.config_service import create_config_server, run_config_service
from procwarden.local.supervisor.health import HealthChecker, start_listen_wait
from procwarden.local.supervisor.instance import AppInstance, ERRORED, STOPPED, WAITING_RESTART, status_rows
from procwarden.local.supervisor.log_router import LogRouter
from procwarden.local.supervisor.resource_monitor import ResourceMonitor
from procwarden.local.supervisor.restart_policy import RestartPolicy
from procwarden.local.supervisor.watcher import AppWatcher

log = logging.getLogger(__name__)

# Timing settings that must stay above zero
POSITIVE_SETTINGS = {"SUPERVISOR_SLEEP_INTERVAL", "MEMORY_CHECK_INTERVAL", "HEALTH_CHECK_INTERVAL"}


class ProcessManager:
    """
    Manages the lifecycle of the apps declared in an ecosystem file and acts
    as the central authority for procwarden's runtime configuration.

    Inside the supervisor daemon it owns every AppInstance, runs the
    supervision loop and serves the control API. From the console it starts
    and stops the daemon itself.
    """

    def __init__(self, ecosystem: Optional[Ecosystem] = None, config: Optional[Dict[str, Any]] = None) -> None:
        """
        Initializes the ProcessManager state.

        :param ecosystem: An already loaded ecosystem, if any.
        :param config: Settings overriding app_globals for this manager only.
        """
        # The supervisor holds the master copy of the configuration.
        self.config: Dict[str, Any] = dict(app_globals.get_all_settings())
        if config:
            self.config.update(config)
        self.config_lock = threading.Lock()

        # Guards every AppInstance mutation
        self.lock = threading.RLock()
        self.ecosystem: Optional[Ecosystem] = None
        self.instances: List[AppInstance] = []
        self.pids_on_disk: Dict[str, int] = {}

        self.log_router = LogRouter()
        self.restart_policy = RestartPolicy(self.config["MAX_BACKOFF_DELAY"], self.config["BACKOFF_MULTIPLIER"])
        self.resource_monitor = ResourceMonitor(self.config["MEMORY_CHECK_INTERVAL"])
        self.health_checker = HealthChecker(self.config["HEALTH_CHECK_INTERVAL"])
        self.watcher = AppWatcher()

        self.shutdown_signal_received = threading.Event()
        self._pending_watch_restarts: Set[str] = set()
        self._last_pid_snapshot: Optional[Dict[str, int]] = None

        if ecosystem is not None:
            self.set_ecosystem(ecosystem)

    #* --- Ecosystem ---
    def load(self, path: Union[str, Path], env_name: Optional[str] = None) -> Ecosystem:
        """Loads an ecosystem file and builds the instance table from it."""
        ecosystem = load_ecosystem(path, env_name, logs_dir=Path(self.config["LOGS_DIR"]))
        self.set_ecosystem(ecosystem)
        return ecosystem

    def set_ecosystem(self, ecosystem: Ecosystem) -> None:
        with self.lock:
            self.ecosystem = ecosystem
            self.instances = [
                AppInstance(spec, instance_id)
                for spec in ecosystem.apps
                for instance_id in range(spec.instances)
            ]

    @property
    def app_names(self) -> List[str]:
        return self.ecosystem.app_names if self.ecosystem else []

    def instances_of(self, name: str) -> List[AppInstance]:
        return [inst for inst in self.instances if inst.spec.name == name]

    #* --- Runtime Settings ---
    def update_setting(self, key: str, value: Any) -> Tuple[bool, str]:
        """
        Thread-safe method to update a configuration setting.
        This is called by the control API.
        """
        with self.config_lock:
            if key not in self.config.get("MODIFIABLE_SETTINGS", set()):
                message = f"Setting '{key}' is not modifiable."
                log.warning(f"Rejected config update: {message}")
                return False, message

            # Coerce the new value to the type of the old value
            try:
                original_value = self.config.get(key)
                if isinstance(original_value, bool):
                    new_value = str(value).lower() in ('true', '1', 't', 'yes', 'y')
                elif original_value is not None:
                    new_value = type(original_value)(value)
                else:
                    new_value = value # Cannot determine type, accept as is
            except (ValueError, TypeError) as e:
                message = f"Could not convert value '{value}' for key '{key}'. Error: {e}"
                log.error(f"Config update failed: {message}")
                return False, message

            if key in POSITIVE_SETTINGS and not new_value > 0:
                message = f"Setting '{key}' must be greater than 0, got '{value}'."
                log.error(f"Config update failed: {message}")
                return False, message

            self.config[key] = new_value
            self._save_overrides_to_disk()
            app_globals.set(key, new_value)
            self._apply_runtime_settings()

            message = f"Setting '{key}' updated to '{new_value}'."
            log.info(message)
            return True, message

    def _apply_runtime_settings(self) -> None:
        """Pushes modifiable timing settings into the running monitors."""
        self.resource_monitor.interval = self.config["MEMORY_CHECK_INTERVAL"]
        self.health_checker.interval = self.config["HEALTH_CHECK_INTERVAL"]
        self.watcher.set_debounce(self.config["WATCH_DEBOUNCE_SECONDS"])

    def _save_overrides_to_disk(self) -> None:
        """Persists the modifiable parts of the config to overrides.json."""
        overrides_path = Path(self.config["OVERRIDES_JSON_PATH"])
        modifiable_keys = self.config["MODIFIABLE_SETTINGS"]

        current_overrides = {}
        if overrides_path.exists():
            try:
                current_overrides = json.loads(overrides_path.read_text())
            except json.JSONDecodeError:
                pass # Ignore malformed file

        for key in modifiable_keys:
            if key in self.config:
                current_overrides[key] = self.config[key]

        try:
            overrides_path.parent.mkdir(parents=True, exist_ok=True)
            overrides_path.write_text(json.dumps(current_overrides, indent=4))
        except IOError as e:
            log.error(f"Failed to write overrides to '{overrides_path}': {e}")

    def get_serializable_config(self) -> Dict[str, Any]:
        """The config with paths and sets converted for JSON transport."""
        serializable = {}
        for key, value in self.config.items():
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, set):
                value = sorted(value)
            serializable[key] = value
        return serializable

    #* --- Instance Lifecycle (daemon side) ---
    def start_instance(self, instance: AppInstance) -> bool:
        """Launches an instance. Returns False if it could not be spawned."""
        with self.lock:
            try:
                process_utils.launch_instance(self, instance)
            except OSError:
                self._release_logs(instance)
                return False
            start_listen_wait(self, instance)
            return True

    def _release_logs(self, instance: AppInstance) -> None:
        if instance.logs is not None:
            self.log_router.detach(instance.logs)
            instance.logs = None

    def _finalize_exit(self, instance: AppInstance, code: Optional[int], status: str) -> None:
        instance.last_exit_code = code
        instance.popen = None
        instance.process = None
        instance.started_at = None
        instance.status = status
        if status in (STOPPED, ERRORED):
            self._release_logs(instance)

    def stop_instance(self, instance: AppInstance) -> None:
        """Stops an instance for good; it will not be restarted by the policy."""
        with self.lock:
            instance.stop_requested = True
            instance.next_restart_at = None
            code = shutdown.stop_instance(instance)
            self._finalize_exit(instance, code, STOPPED)
            log.info(f"{instance.key} stopped (exit code {code}).")

    def restart_instance(self, instance: AppInstance, reason: str = "requested") -> bool:
        """
        Restarts an instance right away. Requested restarts (manual, memory,
        watch, health) do not count as unstable restarts.
        """
        with self.lock:
            log.info(f"Restarting {instance.key} ({reason}).")
            if instance.popen is not None:
                instance.stop_requested = True
                code = shutdown.stop_instance(instance)
                instance.last_exit_code = code
                instance.popen = None
                instance.process = None
                instance.started_at = None
            instance.next_restart_at = None
            instance.restarts += 1
            return self.start_instance(instance)

    def handle_exit(self, instance: AppInstance, exit_code: Optional[int]) -> None:
        """Applies the restart policy to an instance that exited on its own."""
        with self.lock:
            uptime = instance.uptime
            decision = self.restart_policy.evaluate(instance, exit_code, uptime)
            self._finalize_exit(instance, exit_code, decision.status)
            if decision.restart:
                instance.next_restart_at = time.monotonic() + decision.delay
                log.warning(
                    f"{instance.key} exited with code {exit_code}: {decision.reason}. "
                    f"Restarting in {decision.delay:.2f}s."
                )
            elif decision.status == ERRORED:
                instance.error = decision.reason
                log.critical(f"{instance.key} exited with code {exit_code}: {decision.reason}. Giving up.")
            else:
                log.info(f"{instance.key} exited with code {exit_code}: {decision.reason}.")

    def _start_due_restarts(self) -> None:
        now = time.monotonic()
        for instance in self.instances:
            if instance.status != WAITING_RESTART or instance.next_restart_at is None:
                continue
            if instance.next_restart_at > now:
                continue
            instance.next_restart_at = None
            instance.restarts += 1
            self.start_instance(instance)

    def request_watch_restart(self, name: str) -> None:
        """Queues a restart of every instance of an app. Called from watcher threads."""
        with self.lock:
            self._pending_watch_restarts.add(name)

    def _handle_watch_restarts(self) -> None:
        pending, self._pending_watch_restarts = self._pending_watch_restarts, set()
        for name in pending:
            for instance in self.instances_of(name):
                if instance.is_alive or instance.status == WAITING_RESTART:
                    self.restart_instance(instance, reason="watched files changed")

    #* --- App Operations ---
    def start_apps(self, names: Optional[List[str]] = None) -> int:
        """
        Starts every instance (of the named apps) that is not already running.

        :return: The number of instances launched.
        """
        started = 0
        with self.lock:
            for instance in self.instances:
                if names is not None and instance.spec.name not in names:
                    continue
                if instance.is_alive:
                    continue
                instance.reset_counters()
                instance.stop_requested = False
                instance.next_restart_at = None
                if self.start_instance(instance):
                    started += 1
        return started

    def start_app(self, name: str) -> int:
        return self.start_apps([name])

    def stop_app(self, name: str) -> int:
        """Stops every running or waiting instance of an app and returns how many were stopped."""
        stopped = 0
        with self.lock:
            for instance in self.instances_of(name):
                if instance.is_alive or instance.status == WAITING_RESTART:
                    self.stop_instance(instance)
                    stopped += 1
        return stopped

    def restart_app(self, name: str) -> int:
        """
        Restarts every instance of an app. The restart count keeps growing;
        the unstable streak and the backoff start over.

        :return: The number of instances that came back up.
        """
        restarted = 0
        with self.lock:
            for instance in self.instances_of(name):
                instance.unstable_restarts = 0
                instance.backoff_delay = 0.0
                instance.error = None
                if self.restart_instance(instance, reason="manual restart"):
                    restarted += 1
        return restarted

    def app_action(self, name: str, action: str) -> str:
        """Runs 'start', 'stop' or 'restart' on every instance of an app."""
        if action == "start":
            count = self.start_app(name)
            return f"Started {count} instance(s) of '{name}'."
        if action == "stop":
            count = self.stop_app(name)
            return f"Stopped {count} instance(s) of '{name}'."
        if action == "restart":
            count = self.restart_app(name)
            return f"Restarted {count} instance(s) of '{name}'."
        raise ValueError(f"Unknown action '{action}'")

    def reload_logs(self) -> int:
        return self.log_router.reopen()

    def get_status(self) -> List[Dict[str, Any]]:
        with self.lock:
            return status_rows(self.instances)

    def get_status_report(self) -> Dict[str, Any]:
        ecosystem = self.ecosystem
        return {
            "supervisor_pid": os.getpid(),
            "ecosystem": str(ecosystem.source) if ecosystem and ecosystem.source else None,
            "env": ecosystem.env_name if ecosystem else None,
            "instances": self.get_status(),
        }

    #* --- Supervision ---
    def _pid_snapshot(self) -> Dict[str, int]:
        pids = {"supervisor": os.getpid()}
        for instance in self.instances:
            if instance.is_alive:
                pids[instance.key] = instance.pid
        return pids

    def _sync_pid_file(self) -> None:
        with self.lock:
            snapshot = self._pid_snapshot()
        if snapshot != self._last_pid_snapshot:
            persistence.write_pid_file(self.config, snapshot)
            self._last_pid_snapshot = snapshot

    def supervision_tick(self) -> None:
        """One pass of the supervision loop."""
        with self.lock:
            for instance, code in process_utils.collect_exits(self.instances):
                self.handle_exit(instance, code)
            self._start_due_restarts()
            self._handle_watch_restarts()

        self.resource_monitor.maybe_check(self)
        self.health_checker.maybe_check(self)
        self._sync_pid_file()

    def supervision_loop(self) -> None:
        """Main supervisor loop that monitors and restarts app instances."""
        while not self.shutdown_signal_received.is_set():
            try:
                if persistence.check_for_shutdown_signal(self.config):
                    break
                self.supervision_tick()
                self.shutdown_signal_received.wait(self.config.get("SUPERVISOR_SLEEP_INTERVAL", 0.5))
            except KeyboardInterrupt:
                log.info("Supervisor loop interrupted by user.")
                break
            except Exception as e:
                log.critical(f"Critical error in supervisor loop: {e}", exc_info=True)
                break

    def shutdown(self) -> None:
        """Stops every instance, the watchers and the control API, then removes state files."""
        self.shutdown_signal_received.set()
        self.watcher.stop()
        with self.lock:
            running = [inst for inst in self.instances if inst.is_alive or inst.status == WAITING_RESTART]
            log.info(f"Initiating graceful shutdown for {len(running)} instance(s)...")
            for instance in running:
                self.stop_instance(instance)
        self.log_router.close_all()
        shutdown.cleanup_shutdown_files(self.config)

    def run(self, ecosystem_path: Union[str, Path], env_name: Optional[str] = None,
            verbose: bool = False, serve_api: bool = True) -> int:
        """
        The supervisor body: loads the ecosystem, starts every app, serves the
        control API and supervises until shutdown.

        :return: A process exit code.
        """
        startup.initialize_supervision(self, verbose)
        try:
            self.load(ecosystem_path, env_name)
        except ValueError as e:
            log.critical(f"Cannot load ecosystem: {e}")
            shutdown.cleanup_shutdown_files(self.config)
            return 1

        if serve_api:
            try:
                server = create_config_server(self)
            except OSError as e:
                log.critical(f"Cannot bind control API: {e}")
                shutdown.cleanup_shutdown_files(self.config)
                return 1
            threading.Thread(target=run_config_service, args=(self, server), daemon=True, name="ControlAPIThread").start()

        start_time = time.time()
        try:
            self._sync_pid_file()
            started = self.start_apps()
            log.info(f"{started} of {len(self.instances)} instance(s) started in {time.time() - start_time:.2f} seconds.")
            self.watcher.start(self, [spec for spec in self.ecosystem.apps if spec.watch])
            self._sync_pid_file()
            self.supervision_loop()
        finally:
            self.shutdown()
        log.info("Supervisor stopped.")
        return 0

    #* --- Console Side ---
    def get_pid_info(self) -> Dict[str, int]:
        """
        Retrieves the current process IDs from the PID file.
        If the PID file does not exist or is invalid, it returns an empty dictionary.
        """
        return persistence.get_pid_info(self) or {}

    def is_running(self) -> bool:
        pid = self.get_pid_info().get("supervisor")
        return bool(pid) and process_utils.pid_exists(pid)

    def start_all(self, ecosystem_path: Union[str, Path], env_name: Optional[str] = None,
                  verbose: bool = False) -> bool:
        """
        Starts the supervisor daemon for an ecosystem file.

        :return: True once the daemon answers on its control API.
        """
        if startup.check_if_already_running(self):
            return False

        try:
            ecosystem = load_ecosystem(ecosystem_path, env_name, logs_dir=Path(self.config["LOGS_DIR"]))
        except ValueError as e:
            log.error(f"Cannot start: {e}")
            return False

        log.info("=" * 20 + f" Starting {len(ecosystem.apps)} app(s) " + "=" * 20)
        Path(self.config["SHUTDOWN_SIGNAL_PATH"]).unlink(missing_ok=True)
        daemon = startup.spawn_supervisor_daemon(self, ecosystem.source, env_name, verbose)
        if not startup.wait_for_control_api(self, daemon):
            log.critical(f"Supervisor did not come up. See '{self.config['SUPERVISOR_LOG_PATH']}'.")
            if daemon.poll() is None:
                shutdown.graceful_shutdown_sequence({psutil.Process(daemon.pid)}, timeout=5)
            return False
        log.info(f"Supervisor running with PID {daemon.pid}.")
        return True

    def stop_all(self) -> None:
        """
        Stops the supervisor daemon and everything it manages.

        The daemon is asked to stop through the shutdown signal file. If it is
        still alive after GRACEFUL_SHUTDOWN_TIMEOUT, every PID in the PID file
        is terminated directly.
        """
        pid_info = self.get_pid_info()
        if not pid_info:
            log.info("No running supervisor found to stop.")
            shutdown.cleanup_shutdown_files(self.config)
            return

        supervisor_pid = pid_info.get("supervisor")
        if supervisor_pid and process_utils.pid_exists(supervisor_pid):
            persistence.touch_shutdown_signal(self.config)
            log.info(f"Waiting for supervisor (PID {supervisor_pid}) to stop its apps...")
            try:
                process_utils.get_process_from_pid(supervisor_pid).wait(timeout=self.config["GRACEFUL_SHUTDOWN_TIMEOUT"])
            except psutil.NoSuchProcess:
                pass
            except psutil.TimeoutExpired:
                log.warning("Supervisor did not stop in time.")

        leftovers = shutdown.identify_processes_to_stop(
            {name: pid for name, pid in pid_info.items() if process_utils.pid_exists(pid)}
        )
        if leftovers:
            log.warning(f"Terminating {len(leftovers)} leftover process(es) directly.")
            shutdown.graceful_shutdown_sequence(leftovers, timeout=self.config["GRACEFUL_SHUTDOWN_TIMEOUT"])
        shutdown.cleanup_shutdown_files(self.config)
        log.info("Stop sequence completed.")
