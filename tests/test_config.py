"""
tests/test_config.py — Global config tests.
"""

import os
import sys
import yaml
import pytest
import tempfile
from pathlib import Path

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from cairn.config import CairnConfig, cairn_home, config_path, load_config, save_config
from cairn.errors import ConfigError


@pytest.fixture(autouse=True)
def home(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        monkeypatch.setenv("CAIRN_HOME", d)
        for var in ("CAIRN_STATE_DIR", "CAIRN_PROVIDER", "CAIRN_REGION"):
            monkeypatch.delenv(var, raising=False)
        yield Path(d)


def _write_config(home, data):
    path = home / "config.yaml"
    with open(path, "w") as f:
        yaml.dump(data, f)
    return path


class TestLoadConfig:
    def test_defaults_without_file(self, home):
        cfg = load_config()
        assert cfg == CairnConfig()
        assert cfg.state_path() == home / "state"
        assert cfg.provider_path() == home / "state" / "provider" / "local.yaml"

    def test_home_from_env(self, home):
        assert cairn_home() == home
        assert config_path() == home / "config.yaml"

    def test_file_values(self, home):
        _write_config(home, {"region": "eu-west-1", "max_workers": "8",
                             "node_timeout": 30, "on_failure": "rollback"})
        cfg = load_config()
        assert cfg.region == "eu-west-1"
        assert cfg.max_workers == 8
        assert cfg.node_timeout == 30.0
        assert cfg.on_failure == "rollback"

    def test_env_overrides_file(self, home, monkeypatch):
        _write_config(home, {"region": "eu-west-1", "state_dir": "/srv/cairn"})
        monkeypatch.setenv("CAIRN_REGION", "us-west-2")
        cfg = load_config()
        assert cfg.region == "us-west-2"
        assert cfg.state_path() == Path("/srv/cairn")

    def test_explicit_path(self, home):
        path = home / "other.yaml"
        with open(path, "w") as f:
            yaml.dump({"provider": "mock"}, f)
        assert load_config(path).provider == "mock"

    def test_unknown_keys(self, home):
        _write_config(home, {"workers": 3})
        with pytest.raises(ConfigError, match="workers"):
            load_config()

    def test_not_a_mapping(self, home):
        _write_config(home, ["a", "b"])
        with pytest.raises(ConfigError, match="mapping"):
            load_config()

    def test_invalid_yaml(self, home):
        (home / "config.yaml").write_text("region: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config()

    def test_invalid_values(self, home):
        _write_config(home, {"max_workers": 0})
        with pytest.raises(ConfigError, match="max_workers"):
            load_config()
        _write_config(home, {"on_failure": "retry"})
        with pytest.raises(ConfigError, match="on_failure"):
            load_config()
        _write_config(home, {"node_timeout": "soon"})
        with pytest.raises(ConfigError, match="Invalid number"):
            load_config()


class TestSaveConfig:
    def test_only_non_defaults_written(self, home):
        save_config(CairnConfig(region="eu-west-1", max_workers=8))
        with open(home / "config.yaml") as f:
            data = yaml.safe_load(f)
        assert data == {"region": "eu-west-1", "max_workers": 8}

    def test_save_then_load(self, home):
        cfg = CairnConfig(provider="local", on_failure="rollback", node_timeout=120.0)
        save_config(cfg)
        assert load_config() == cfg
