from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from conv_queue.config import configure_logging, load_yaml, merge_dicts, resolve_config
from conv_queue.models import ConvQueueConfig

REPO_DEFAULT = Path(__file__).resolve().parents[1] / "config" / "default.yaml"


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep config/local.yaml and CONVQUEUE_CONFIG of the developer out of the tests."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CONVQUEUE_CONFIG", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)


def write_yaml(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config(config_path=REPO_DEFAULT)
    assert isinstance(config, ConvQueueConfig)
    assert config.queue.base_dir == "./data"
    assert config.queue.halt_on_failure is False
    assert config.queue.progress_formula == "ratio"
    assert config.server.port == 8080
    assert config.notifications.api_url is None


def test_missing_file_uses_builtin_defaults(tmp_path):
    config = resolve_config(config_path=tmp_path / "nope.yaml")
    assert config == ConvQueueConfig()


def test_env_var_selects_config(tmp_path, monkeypatch):
    path = write_yaml(tmp_path / "custom.yaml", {"queue": {"base_dir": "/srv/media"}})
    monkeypatch.setenv("CONVQUEUE_CONFIG", str(path))
    assert resolve_config().queue.base_dir == "/srv/media"


def test_local_overrides_default(tmp_path):
    default = write_yaml(tmp_path / "base.yaml", {"server": {"port": 9000, "host": "127.0.0.1"}})
    write_yaml(tmp_path / "config" / "local.yaml", {"server": {"port": 9100}})

    config = resolve_config(config_path=default)

    assert config.server.port == 9100
    assert config.server.host == "127.0.0.1"


def test_cli_overrides_win(tmp_path):
    default = write_yaml(tmp_path / "base.yaml", {"queue": {"base_dir": "/from/yaml"}})
    config = resolve_config(
        {
            "base_dir": "/from/cli",
            "halt_on_failure": True,
            "progress_formula": "legacy",
            "api_url": "http://listener:3000",
            "hw_accel": "cuda",
            "port": 9999,
            "log_level": "debug",
        },
        config_path=default,
    )
    assert config.queue.base_dir == "/from/cli"
    assert config.queue.halt_on_failure is True
    assert config.queue.progress_formula == "legacy"
    assert config.notifications.api_url == "http://listener:3000"
    assert config.engine.hw_accel == "cuda"
    assert config.server.port == 9999
    assert config.logging.level == "DEBUG"


def test_unrelated_cli_args_ignored(tmp_path):
    config = resolve_config({"command": "convert", "inputs": ["a.mp4"]}, config_path=tmp_path / "x.yaml")
    assert config == ConvQueueConfig()


def test_invalid_value_rejected(tmp_path):
    path = write_yaml(tmp_path / "bad.yaml", {"queue": {"progress_formula": "magic"}})
    with pytest.raises(ValidationError):
        resolve_config(config_path=path)


def test_load_yaml_missing_file(tmp_path):
    assert load_yaml(tmp_path / "missing.yaml") == {}


def test_merge_dicts_is_recursive():
    base = {"queue": {"base_dir": "a", "halt_on_failure": False}, "server": {"port": 1}}
    merged = merge_dicts(base, {"queue": {"base_dir": "b"}})
    assert merged == {"queue": {"base_dir": "b", "halt_on_failure": False}, "server": {"port": 1}}
    assert base["queue"]["base_dir"] == "a"


def test_configure_logging_env_wins(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "warning")
    assert configure_logging("DEBUG") == "WARNING"


def test_configure_logging_default():
    assert configure_logging() == "INFO"
