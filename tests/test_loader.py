"""
Unit tests for procwarden.local.ecosystem.loader module.
"""

import json

import pytest
import yaml

from procwarden.local.ecosystem import EcosystemError, load_ecosystem

REACT_APP = {
    "apps": [{
        "name": "my-react-app",
        "script": "serve",
        "args": "-s dist -l 3000",
        "instances": 1,
        "exec_mode": "fork",
        "env": {"NODE_ENV": "development", "PORT": 3000},
        "env_production": {"NODE_ENV": "production", "PORT": 3000},
        "log_file": "logs/combined.log",
        "out_file": "logs/out.log",
        "error_file": "logs/error.log",
        "log_date_format": "YYYY-MM-DD HH:mm:ss Z",
        "merge_logs": True,
        "max_memory_restart": "500M",
        "restart_delay": 4000,
        "max_restarts": 10,
        "min_uptime": "10s",
        "watch": False,
        "ignore_watch": ["node_modules", "logs"],
        "kill_timeout": 5000,
        "listen_timeout": 8000,
        "health_check_grace_period": 3000,
        "health_check_fatal_exceptions": True,
    }],
    "deploy": {
        "production": {
            "user": "appuser",
            "host": ["prod.example.com"],
            "ref": "origin/main",
            "repo": "git@example.com:me/repo.git",
            "path": "/opt/my-react-app",
            "post-deploy": "npm install && npm run build",
            "pre-setup": "apt update",
        },
    },
}


@pytest.fixture
def write_ecosystem(tmp_path):
    """Write a dict as a YAML or JSON ecosystem file."""
    def _write(data, name="ecosystem.yaml"):
        path = tmp_path / name
        if name.endswith(".json"):
            path.write_text(json.dumps(data))
        else:
            path.write_text(yaml.safe_dump(data))
        return path
    return _write


class TestLoadEcosystem:
    """Tests for load_ecosystem function."""

    def test_loads_full_app(self, write_ecosystem, tmp_path):
        ecosystem = load_ecosystem(write_ecosystem(REACT_APP))
        app = ecosystem.get_app("my-react-app")

        assert app.args == ["-s", "dist", "-l", "3000"]
        assert app.cwd == tmp_path.resolve()
        assert app.env == {"NODE_ENV": "development", "PORT": "3000"}
        assert app.port == 3000
        assert app.max_memory_restart == 500 * 1024 ** 2
        assert app.restart_delay == pytest.approx(4.0)
        assert app.min_uptime == pytest.approx(10.0)
        assert app.max_restarts == 10
        assert app.kill_timeout == pytest.approx(5.0)
        assert app.listen_timeout == pytest.approx(8.0)
        assert app.health_check_grace_period == pytest.approx(3.0)
        assert app.health_check_fatal_exceptions is True
        assert app.ignore_watch == ["node_modules", "logs"]
        assert app.watch_paths == []

    def test_log_settings(self, write_ecosystem, tmp_path):
        app = load_ecosystem(write_ecosystem(REACT_APP)).apps[0]

        assert app.logs.out_file == (tmp_path / "logs" / "out.log").resolve()
        assert app.logs.error_file == (tmp_path / "logs" / "error.log").resolve()
        assert app.logs.log_file == (tmp_path / "logs" / "combined.log").resolve()
        assert app.logs.date_format == "%Y-%m-%d %H:%M:%S %z"
        assert app.logs.merge_logs is True

    def test_env_overlay(self, write_ecosystem):
        data = json.loads(json.dumps(REACT_APP))
        data["apps"][0]["env_production"]["API_URL"] = "https://api.example.com"

        ecosystem = load_ecosystem(write_ecosystem(data), env_name="production")
        app = ecosystem.apps[0]

        assert ecosystem.env_name == "production"
        assert app.env["NODE_ENV"] == "production"
        assert app.env["API_URL"] == "https://api.example.com"

    def test_undeclared_env_still_loads(self, write_ecosystem):
        ecosystem = load_ecosystem(write_ecosystem(REACT_APP), env_name="qa")
        assert ecosystem.apps[0].env["NODE_ENV"] == "development"

    def test_deploy_targets(self, write_ecosystem):
        target = load_ecosystem(write_ecosystem(REACT_APP)).deploy["production"]

        assert target.hosts == ["prod.example.com"]
        assert target.user == "appuser"
        assert target.ref == "origin/main"
        assert target.path == "/opt/my-react-app"
        assert target.hooks == {"pre-setup": "apt update", "post-deploy": "npm install && npm run build"}

    def test_json_list_of_apps(self, write_ecosystem, tmp_path):
        path = write_ecosystem([{"name": "worker", "script": "worker.py"}], name="apps.json")
        ecosystem = load_ecosystem(path, logs_dir=tmp_path / "logs")
        app = ecosystem.apps[0]

        assert ecosystem.app_names == ["worker"]
        assert ecosystem.deploy == {}
        assert app.logs.out_file == (tmp_path / "logs" / "worker-out.log").resolve()
        assert app.logs.error_file == (tmp_path / "logs" / "worker-error.log").resolve()
        assert app.logs.log_file is None
        assert app.instances == 1
        assert app.exec_mode == "fork"

    def test_single_app_mapping(self, write_ecosystem):
        path = write_ecosystem({"apps": {"name": "solo", "script": "solo.py"}})
        assert load_ecosystem(path).app_names == ["solo"]

    def test_log_file_true_uses_logs_dir(self, write_ecosystem, tmp_path):
        path = write_ecosystem({"apps": [{"name": "web", "script": "web.py", "log_file": True}]})
        app = load_ecosystem(path, logs_dir=tmp_path / "logs").apps[0]
        assert app.logs.log_file == tmp_path / "logs" / "web.log"

    def test_relative_cwd_and_watch(self, write_ecosystem, tmp_path):
        path = write_ecosystem({"apps": [{"name": "web", "script": "web.py", "cwd": "srv", "watch": ["src"]}]})
        app = load_ecosystem(path).apps[0]

        assert app.cwd == (tmp_path / "srv").resolve()
        assert app.watch_paths == [(tmp_path / "srv" / "src").resolve()]

    def test_cluster_mode_and_signal(self, write_ecosystem):
        path = write_ecosystem({"apps": [{
            "name": "web", "script": "web.py", "exec_mode": "cluster_mode",
            "instances": 3, "kill_signal": "INT", "stop_exit_codes": [0, 3],
        }]})
        app = load_ecosystem(path).apps[0]

        assert app.exec_mode == "cluster"
        assert app.instances == 3
        assert app.kill_signal == "SIGINT"
        assert app.stop_exit_codes == [0, 3]


class TestInstances:
    """Tests for CPU-relative instance counts."""

    @pytest.mark.parametrize("value, expected", [("max", 4), (0, 4), (-1, 3), (-10, 1), ("2", 2)])
    def test_resolves_against_cpu_count(self, mocker, write_ecosystem, value, expected):
        mocker.patch("procwarden.local.ecosystem.loader.psutil.cpu_count", return_value=4)
        path = write_ecosystem({"apps": [{"name": "web", "script": "web.py", "instances": value}]})
        assert load_ecosystem(path).apps[0].instances == expected

    def test_rejects_garbage(self, write_ecosystem):
        path = write_ecosystem({"apps": [{"name": "web", "script": "web.py", "instances": "many"}]})
        with pytest.raises(EcosystemError, match="instances"):
            load_ecosystem(path)


class TestValidation:
    """Tests for ecosystem validation errors."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(EcosystemError, match="not found"):
            load_ecosystem(tmp_path / "missing.yaml")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "ecosystem.config.js"
        path.write_text("module.exports = {}")
        with pytest.raises(EcosystemError, match="Unsupported"):
            load_ecosystem(path)

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "ecosystem.yaml"
        path.write_text("apps: [unclosed")
        with pytest.raises(EcosystemError, match="Failed to parse"):
            load_ecosystem(path)

    @pytest.mark.parametrize("data, message", [
        ({"apps": []}, "declares no apps"),
        ({"apps": [{"script": "a.py"}]}, "name"),
        ({"apps": [{"name": "a"}]}, "script"),
        ({"apps": [{"name": "a", "script": "a.py"}, {"name": "a", "script": "b.py"}]}, "Duplicate"),
        ({"apps": [{"name": "a", "script": "a.py", "exec_mode": "thread"}]}, "exec_mode"),
        ({"apps": [{"name": "a", "script": "a.py", "kill_signal": "SIGFOO"}]}, "kill_signal"),
        ({"apps": [{"name": "a", "script": "a.py", "max_restarts": -1}]}, "max_restarts"),
        ({"apps": [{"name": "a", "script": "a.py", "port": 70000}]}, "port"),
        ({"apps": [{"name": "a", "script": "a.py", "autorestart": "maybe"}]}, "autorestart"),
        ({"apps": [{"name": "a", "script": "a.py"}], "deploy": {"prod": {"path": "/opt"}}}, "host"),
        ({"apps": [{"name": "a", "script": "a.py"}], "deploy": {"prod": {"host": "h"}}}, "path"),
    ])
    def test_rejects(self, write_ecosystem, data, message):
        with pytest.raises(EcosystemError, match=message):
            load_ecosystem(write_ecosystem(data))

    @pytest.mark.parametrize("field, value", [
        ("max_restarts", "ten"),
        ("max_restarts", None),
        ("max_restarts", "1.5"),
        ("max_restarts", True),
        ("stop_exit_codes", ["zero"]),
        ("log_retain", None),
        ("log_retain", "many"),
        ("watch", {"src": True}),
        ("env", ["NODE_ENV=production"]),
        ("instances", "many"),
        ("min_uptime", "soon"),
        ("max_memory_restart", "lots"),
    ])
    def test_invalid_values_name_the_app(self, write_ecosystem, field, value):
        path = write_ecosystem({"apps": [{"name": "web", "script": "web.py", field: value}]})
        with pytest.raises(EcosystemError, match=f"App 'web'.*{field}"):
            load_ecosystem(path)

    def test_integer_strings_are_accepted(self, write_ecosystem):
        path = write_ecosystem({"apps": [{
            "name": "web", "script": "web.py",
            "max_restarts": "3", "log_retain": 2.0, "stop_exit_codes": [0, "3"],
        }]})
        app = load_ecosystem(path).apps[0]
        assert app.max_restarts == 3
        assert app.logs.retain == 2
        assert app.stop_exit_codes == [0, 3]
