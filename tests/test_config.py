import json

import pytest

from websock.config import CONFIG, ConfigError, _apply_env_overrides, load_config, validate_config


def test_default_config_is_valid():
    validate_config(CONFIG)
    assert CONFIG["ENCRYPTION"] is True


def test_config_error_is_value_error():
    assert issubclass(ConfigError, ValueError)


def test_missing_key():
    cfg = dict(CONFIG)
    del cfg["CONTROLLER_PATH"]
    with pytest.raises(ConfigError, match="CONTROLLER_PATH"):
        validate_config(cfg)


@pytest.mark.parametrize(
    "key,value",
    [
        ("ENCRYPTION", False),
        ("CONTROLLER_PORT", 0),
        ("CONTROLLER_PORT", 70000),
        ("CONTROLLER_PORT", True),
        ("CONTROLLER_PORT", "8080"),
        ("CONTROLLER_PATH", "websock.php"),
        ("CONTROLLER_HOST", ""),
        ("SENTINEL_CHARSET", ""),
        ("SENTINEL_CHARSET", "AAB"),
        ("SENTINEL_CHARSET", "A-B"),
        ("DECOY_MIN_PARAMETERS", 2),
        ("DECOY_MAX_PARAMETERS", 1),
        ("DECOY_KEY_MAX_LEN", 1),
        ("DECOY_VALUE_MAX_LEN", 0),
        ("RESPONSE_TIMEOUT_S", 0),
        ("RESPONSE_TIMEOUT_S", True),
        ("HTTP_TIMEOUT_S", "30"),
        ("COMPRESSION", "yes"),
    ],
)
def test_invalid_values(key, value):
    cfg = dict(CONFIG)
    cfg[key] = value
    with pytest.raises(ConfigError):
        validate_config(cfg)


def test_integer_timeouts_are_accepted():
    cfg = dict(CONFIG)
    cfg["RESPONSE_TIMEOUT_S"] = 2
    validate_config(cfg)


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("CONTROLLER_PORT", "9090")
    monkeypatch.setenv("COMPRESSION", "on")
    monkeypatch.setenv("RESPONSE_TIMEOUT_S", "1.5")
    cfg = _apply_env_overrides(CONFIG)
    assert cfg["CONTROLLER_PORT"] == 9090
    assert cfg["COMPRESSION"] is True
    assert cfg["RESPONSE_TIMEOUT_S"] == 1.5


@pytest.mark.parametrize("var,value", [("CONTROLLER_PORT", "http"), ("VERBOSE", "maybe")])
def test_bad_env_override(monkeypatch, var, value):
    monkeypatch.setenv(var, value)
    with pytest.raises(ConfigError):
        _apply_env_overrides(CONFIG)


def test_encryption_is_not_env_overridable(monkeypatch):
    monkeypatch.setenv("ENCRYPTION", "false")
    assert _apply_env_overrides(CONFIG)["ENCRYPTION"] is True


def test_load_config_from_file(tmp_path, monkeypatch):
    monkeypatch.delenv("CONTROLLER_PATH", raising=False)
    monkeypatch.delenv("CONTROLLER_PORT", raising=False)
    path = tmp_path / "websock.json"
    path.write_text(json.dumps({"CONTROLLER_PATH": "/gate.php", "CONTROLLER_PORT": 8443}))
    cfg = load_config(path, {"CONTROLLER_PORT": 9000})
    assert cfg["CONTROLLER_PATH"] == "/gate.php"
    assert cfg["CONTROLLER_PORT"] == 9000
    assert CONFIG["CONTROLLER_PATH"] != "/gate.php"


def test_env_beats_file(tmp_path, monkeypatch):
    monkeypatch.setenv("CONTROLLER_PORT", "7000")
    path = tmp_path / "websock.json"
    path.write_text(json.dumps({"CONTROLLER_PORT": 8443}))
    assert load_config(path)["CONTROLLER_PORT"] == 7000


@pytest.mark.parametrize(
    "content",
    ['{"NOT_A_KEY": 1}', "not json", "[1, 2]", '{"ENCRYPTION": false}'],
)
def test_load_config_rejects_bad_files(tmp_path, content):
    path = tmp_path / "websock.json"
    path.write_text(content)
    with pytest.raises(ConfigError):
        load_config(path)


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.json")
