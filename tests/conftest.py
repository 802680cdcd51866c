# tests/conftest.py
"""
Global pytest fixtures for procwarden tests.
"""

import time
import textwrap

import pytest

from procwarden.local.ecosystem import Ecosystem, parse_app
from procwarden.local.supervisor import ProcessManager


@pytest.fixture
def state_config(tmp_path):
    """Settings that keep every state file of a manager inside tmp_path."""
    base = tmp_path / "state"
    run_dir = base / "run"
    logs_dir = base / "logs"
    return {
        "BASE_DIR": base,
        "RUN_DIR": run_dir,
        "LOGS_DIR": logs_dir,
        "PID_FILE_PATH": run_dir / "procwarden.pid",
        "SHUTDOWN_SIGNAL_PATH": run_dir / "shutdown.signal",
        "OVERRIDES_JSON_PATH": base / "overrides.json",
        "SUPERVISOR_LOG_PATH": logs_dir / "procwarden.log",
        "SUPERVISOR_SLEEP_INTERVAL": 0.05,
        "MEMORY_CHECK_INTERVAL": 3600,
        "HEALTH_CHECK_INTERVAL": 3600,
    }


@pytest.fixture
def manager(state_config):
    """A ProcessManager whose instances are all stopped after the test."""
    pm = ProcessManager(config=state_config)
    yield pm
    pm.shutdown()


@pytest.fixture
def write_script(tmp_path):
    """Write a small Python program into tmp_path and return its file name."""
    def _write(name, source):
        path = tmp_path / name
        path.write_text(textwrap.dedent(source))
        return name
    return _write


@pytest.fixture
def make_spec(tmp_path):
    """Build an AppSpec from raw ecosystem keys, rooted at tmp_path."""
    def _make(**raw):
        raw.setdefault("name", "app")
        raw.setdefault("script", "app.py")
        return parse_app(raw, tmp_path, logs_dir=tmp_path / "logs")
    return _make


@pytest.fixture
def make_ecosystem(tmp_path):
    """Wrap specs into an Ecosystem."""
    def _make(*specs, deploy=None):
        return Ecosystem(apps=list(specs), deploy=deploy or {}, source=tmp_path / "ecosystem.yaml")
    return _make


@pytest.fixture
def wait_for():
    """Poll a condition until it is true or the timeout expires."""
    def _wait(condition, timeout=10.0, interval=0.05):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if condition():
                return True
            time.sleep(interval)
        return condition()
    return _wait
