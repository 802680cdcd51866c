"""
Unit tests for procwarden.local.supervisor.persistence and shutdown file handling.
"""

import json

from procwarden.local.supervisor import persistence
from procwarden.local.supervisor.shutdown import cleanup_shutdown_files


class TestPidFile:
    """Tests for the PID file helpers."""

    def test_write_then_read(self, state_config):
        persistence.write_pid_file(state_config, {"supervisor": 100, "web-0": 101})

        assert persistence.read_pid_file(state_config) == {"supervisor": 100, "web-0": 101}
        assert not state_config["PID_FILE_PATH"].with_suffix(".tmp").exists()

    def test_missing_file(self, state_config):
        assert persistence.read_pid_file(state_config) is None

    def test_malformed_file_is_deleted(self, state_config):
        pid_path = state_config["PID_FILE_PATH"]
        pid_path.parent.mkdir(parents=True)
        pid_path.write_text(json.dumps({"supervisor": "not-a-pid"}))

        assert persistence.read_pid_file(state_config) is None
        assert not pid_path.exists()

    def test_unparseable_file_is_deleted(self, state_config):
        pid_path = state_config["PID_FILE_PATH"]
        pid_path.parent.mkdir(parents=True)
        pid_path.write_text("{")

        assert persistence.read_pid_file(state_config) is None
        assert not pid_path.exists()

    def test_get_pid_info_caches_on_manager(self, manager):
        persistence.write_pid_file(manager.config, {"supervisor": 42})

        assert persistence.get_pid_info(manager) == {"supervisor": 42}
        assert manager.pids_on_disk == {"supervisor": 42}


class TestShutdownSignal:
    """Tests for the shutdown signal file."""

    def test_touch_and_detect(self, state_config):
        assert persistence.check_for_shutdown_signal(state_config) is False
        persistence.touch_shutdown_signal(state_config)
        assert persistence.check_for_shutdown_signal(state_config) is True

    def test_cleanup_removes_state_files(self, state_config):
        persistence.write_pid_file(state_config, {"supervisor": 1})
        persistence.touch_shutdown_signal(state_config)

        cleanup_shutdown_files(state_config)

        assert not state_config["PID_FILE_PATH"].exists()
        assert not state_config["SHUTDOWN_SIGNAL_PATH"].exists()
