"""
Tests for procwarden.local.supervisor.supervisor.ProcessManager.
"""

import os
import sys
import json
import signal

import pytest

from procwarden.local.supervisor import persistence
from procwarden.local.supervisor.instance import AppInstance, ERRORED, ONLINE, STOPPED, WAITING_RESTART

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")

SLEEPER = "import time\ntime.sleep(60)\n"


def tick_until(manager, wait_for, condition, timeout=20.0):
    def _tick():
        manager.supervision_tick()
        return condition()
    return wait_for(_tick, timeout=timeout)


class TestInstanceTable:
    """Tests for building instances from an ecosystem."""

    def test_one_instance_per_count(self, manager, make_spec, make_ecosystem):
        manager.set_ecosystem(make_ecosystem(make_spec(name="web", instances=3, exec_mode="cluster"), make_spec(name="cron")))

        assert [inst.key for inst in manager.instances] == ["web-0", "web-1", "web-2", "cron-0"]
        assert manager.app_names == ["web", "cron"]
        assert manager.instances_of("web")[2].environment({})["APP_INSTANCE"] == "2"

    def test_custom_instance_var(self, make_spec):
        instance = AppInstance(make_spec(instance_var="WORKER_ID", env={"A": "1"}), 4)
        assert instance.environment({"PATH": "/bin"}) == {"PATH": "/bin", "A": "1", "WORKER_ID": "4"}


class TestLifecycle:
    """Tests for starting, stopping and restarting instances."""

    def test_start_and_stop_app(self, manager, make_spec, make_ecosystem, write_script):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec()))

        assert manager.start_apps() == 1
        instance = manager.instances[0]
        assert instance.status == ONLINE
        assert instance.is_alive

        manager.stop_app("app")

        assert instance.status == STOPPED
        assert instance.last_exit_code == -signal.SIGTERM
        assert not instance.is_alive

    def test_start_apps_skips_running(self, manager, make_spec, make_ecosystem, write_script):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec()))
        manager.start_apps()

        assert manager.start_apps() == 0

    def test_restart_app_replaces_process(self, manager, make_spec, make_ecosystem, write_script):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec()))
        manager.start_apps()
        instance = manager.instances[0]
        old_pid = instance.pid

        manager.restart_app("app")

        assert instance.is_alive
        assert instance.pid != old_pid
        assert instance.restarts == 1
        assert instance.unstable_restarts == 0

    def test_crash_is_restarted(self, manager, make_spec, make_ecosystem, write_script, wait_for):
        write_script("app.py", "raise SystemExit(1)\n")
        manager.set_ecosystem(make_ecosystem(make_spec(min_uptime=0, max_restarts=100)))
        manager.start_apps()
        instance = manager.instances[0]

        assert tick_until(manager, wait_for, lambda: instance.restarts >= 2)
        assert instance.status != ERRORED
        assert instance.unstable_restarts == 0

    def test_errored_after_max_restarts(self, manager, make_spec, make_ecosystem, write_script, wait_for):
        write_script("app.py", "raise SystemExit(1)\n")
        manager.set_ecosystem(make_ecosystem(make_spec(min_uptime="10s", max_restarts=2)))
        manager.start_apps()
        instance = manager.instances[0]

        assert tick_until(manager, wait_for, lambda: instance.status == ERRORED)
        assert instance.restarts == 2
        assert instance.unstable_restarts == 3
        assert instance.error
        assert instance.logs is None

    def test_stop_exit_code_is_not_restarted(self, manager, make_spec, make_ecosystem, write_script, wait_for):
        write_script("app.py", "raise SystemExit(0)\n")
        manager.set_ecosystem(make_ecosystem(make_spec(stop_exit_codes=[0])))
        manager.start_apps()
        instance = manager.instances[0]

        assert tick_until(manager, wait_for, lambda: instance.status == STOPPED)
        assert instance.restarts == 0
        assert instance.last_exit_code == 0

    def test_restart_delay_defers_start(self, manager, make_spec, make_ecosystem, write_script, wait_for):
        write_script("app.py", "raise SystemExit(2)\n")
        manager.set_ecosystem(make_ecosystem(make_spec(restart_delay="1h", min_uptime=0)))
        manager.start_apps()
        instance = manager.instances[0]

        assert tick_until(manager, wait_for, lambda: instance.status == WAITING_RESTART)
        manager.supervision_tick()

        assert instance.status == WAITING_RESTART
        assert instance.restarts == 0
        assert not instance.is_alive

    def test_stopping_waiting_instance_cancels_restart(self, manager, make_spec, make_ecosystem, write_script, wait_for):
        write_script("app.py", "raise SystemExit(2)\n")
        manager.set_ecosystem(make_ecosystem(make_spec(restart_delay="1h", min_uptime=0)))
        manager.start_apps()
        instance = manager.instances[0]
        assert tick_until(manager, wait_for, lambda: instance.status == WAITING_RESTART)

        manager.stop_app("app")

        assert instance.status == STOPPED
        assert instance.next_restart_at is None

    def test_launch_failure_is_errored(self, manager, make_spec, make_ecosystem):
        manager.set_ecosystem(make_ecosystem(make_spec(script="no-such-tool-xyz")))

        assert manager.start_apps() == 0
        assert manager.instances[0].status == ERRORED

    def test_unwritable_log_file_is_errored(self, manager, make_spec, make_ecosystem, write_script, tmp_path):
        write_script("app.py", SLEEPER)
        (tmp_path / "blocker").write_text("not a directory")
        spec = make_spec(error_file=str(tmp_path / "blocker" / "error.log"), log_file="combined.log")
        manager.set_ecosystem(make_ecosystem(spec))

        assert manager.start_apps() == 0
        instance = manager.instances[0]
        assert instance.status == ERRORED
        assert instance.error
        assert instance.popen is None
        assert instance.pid is None
        assert instance.logs is None
        assert manager.log_router.open_files == []

    def test_repeated_manual_restarts_are_counted(self, manager, make_spec, make_ecosystem, write_script):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec(instances=2, exec_mode="cluster")))
        manager.start_apps()

        assert manager.restart_app("app") == 2
        assert manager.restart_app("app") == 2
        assert [inst.restarts for inst in manager.instances] == [2, 2]

    def test_stop_app_counts_only_running_instances(self, manager, make_spec, make_ecosystem, write_script):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec(instances=2, exec_mode="cluster")))
        manager.start_apps()
        manager.stop_instance(manager.instances[0])

        assert manager.stop_app("app") == 1
        assert manager.stop_app("app") == 0

    def test_watch_restart_is_applied_on_tick(self, manager, make_spec, make_ecosystem, write_script):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec()))
        manager.start_apps()
        instance = manager.instances[0]
        old_pid = instance.pid

        manager.request_watch_restart("app")
        manager.supervision_tick()

        assert instance.pid != old_pid
        assert instance.restarts == 1


class TestMonitoring:
    """Tests for memory limits and the PID file."""

    def test_memory_limit_restarts_instance(self, manager, make_spec, make_ecosystem, write_script, mocker):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec(max_memory_restart="1M")))
        manager.start_apps()
        instance = manager.instances[0]
        old_pid = instance.pid
        mocker.patch.object(AppInstance, "memory_usage", return_value=512 * 1024 ** 2)

        restarted = manager.resource_monitor.check(manager)

        assert restarted == ["app-0"]
        assert instance.pid != old_pid
        assert instance.restarts == 1

    def test_memory_check_respects_grace_period(self, manager, make_spec, make_ecosystem, write_script, mocker):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec(max_memory_restart="1M", health_check_grace_period="1h")))
        manager.start_apps()
        mocker.patch.object(AppInstance, "memory_usage", return_value=512 * 1024 ** 2)

        assert manager.resource_monitor.check(manager) == []

    def test_pid_file_tracks_running_instances(self, manager, make_spec, make_ecosystem, write_script):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec(instances=2)))
        manager.start_apps()

        manager.supervision_tick()

        pids = persistence.read_pid_file(manager.config)
        assert pids == {
            "supervisor": os.getpid(),
            "app-0": manager.instances[0].pid,
            "app-1": manager.instances[1].pid,
        }

    def test_status_rows(self, manager, make_spec, make_ecosystem, write_script):
        write_script("app.py", SLEEPER)
        manager.set_ecosystem(make_ecosystem(make_spec(name="b"), make_spec(name="a")))
        manager.start_apps(["b"])

        rows = manager.get_status()

        assert [row["key"] for row in rows] == ["a-0", "b-0"]
        assert rows[0]["status"] == STOPPED and rows[0]["pid"] is None
        assert rows[1]["status"] == ONLINE and rows[1]["pid"] == manager.instances[0].pid

    def test_shutdown_signal_ends_loop(self, manager, make_spec, make_ecosystem):
        manager.set_ecosystem(make_ecosystem(make_spec()))
        persistence.touch_shutdown_signal(manager.config)

        manager.supervision_loop()

        assert not manager.shutdown_signal_received.is_set()


class TestRuntimeSettings:
    """Tests for update_setting."""

    def test_updates_and_persists(self, manager, mocker):
        app_set = mocker.patch("procwarden.local.supervisor.supervisor.app_globals.set")

        ok, _ = manager.update_setting("MEMORY_CHECK_INTERVAL", "2")

        assert ok
        assert manager.config["MEMORY_CHECK_INTERVAL"] == 2
        assert manager.resource_monitor.interval == 2
        app_set.assert_called_once_with("MEMORY_CHECK_INTERVAL", 2)
        overrides = json.loads(manager.config["OVERRIDES_JSON_PATH"].read_text())
        assert overrides["MEMORY_CHECK_INTERVAL"] == 2

    def test_rejects_unmodifiable(self, manager):
        ok, message = manager.update_setting("CONFIG_API_PORT", "1")
        assert not ok
        assert "not modifiable" in message

    def test_rejects_bad_value(self, manager, mocker):
        mocker.patch("procwarden.local.supervisor.supervisor.app_globals.set")
        ok, _ = manager.update_setting("GRACEFUL_SHUTDOWN_TIMEOUT", "soon")
        assert not ok

    @pytest.mark.parametrize("key", ["SUPERVISOR_SLEEP_INTERVAL", "MEMORY_CHECK_INTERVAL", "HEALTH_CHECK_INTERVAL"])
    @pytest.mark.parametrize("value", ["0", "-1"])
    def test_rejects_non_positive_intervals(self, manager, mocker, key, value):
        app_set = mocker.patch("procwarden.local.supervisor.supervisor.app_globals.set")
        before = manager.config[key]

        ok, message = manager.update_setting(key, value)

        assert not ok
        assert "greater than 0" in message
        assert manager.config[key] == before
        app_set.assert_not_called()

    def test_unknown_app_action(self, manager, make_spec, make_ecosystem):
        manager.set_ecosystem(make_ecosystem(make_spec()))
        with pytest.raises(ValueError):
            manager.app_action("app", "explode")


class TestRun:
    """Tests for the supervisor body."""

    def test_run_rejects_bad_ecosystem(self, manager, tmp_path, mocker):
        mocker.patch("procwarden.local.supervisor.startup.setup_logging")
        assert manager.run(tmp_path / "missing.yaml", serve_api=False) == 1

    def test_run_until_shutdown_signal(self, manager, tmp_path, write_script, mocker):
        mocker.patch("procwarden.local.supervisor.startup.setup_logging")
        write_script("app.py", SLEEPER)
        ecosystem = tmp_path / "ecosystem.yaml"
        ecosystem.write_text("apps:\n  - name: app\n    script: app.py\n")
        checked = []

        def fake_check(config):
            checked.append(True)
            return len(checked) > 3

        mocker.patch("procwarden.local.supervisor.persistence.check_for_shutdown_signal", side_effect=fake_check)

        assert manager.run(ecosystem, serve_api=False) == 0
        assert manager.instances[0].status == STOPPED
        assert not manager.config["PID_FILE_PATH"].exists()
