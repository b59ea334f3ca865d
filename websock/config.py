"""
Core configuration for the websock HTTP polling channel.

Single source of truth for the controller address, gate path, decoy
parameter policy and the timeouts that bound every blocking wait.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union


class ConfigError(ValueError):
    """Configuration is missing, mistyped or violates a constraint."""


# Default configuration - all required keys with correct types
CONFIG = {
    # Controller (listening side)
    "CONTROLLER_HOST": "0.0.0.0",
    "CONTROLLER_PORT": 8080,
    "CONTROLLER_PATH": "/websock.php",

    # Host the agent connects to
    "CONTROLLER_DOMAIN": "127.0.0.1",

    # Encryption cannot be disabled; the key only exists so a config file
    # asking for plaintext is rejected instead of silently ignored.
    "ENCRYPTION": True,
    # zlib-compress drained outbound data. Both peers must agree.
    "COMPRESSION": False,
    # Debug-level logging
    "VERBOSE": False,

    # Each character is one sentinel string. The handshake parameter key is
    # base64(<one sentinel>); decoy keys are always two characters or longer.
    "SENTINEL_CHARSET": "ABCDEFGHIJKLMNOPQRSTUVWXYZ",

    # Decoy form parameters surrounding the real parameter on every request
    "DECOY_MIN_PARAMETERS": 3,
    "DECOY_MAX_PARAMETERS": 12,
    "DECOY_KEY_MAX_LEN": 16,
    # -1 sizes decoy values relative to the real value (up to twice its length)
    "DECOY_VALUE_MAX_LEN": -1,

    # Upper bound on a CHECK_STREAM_DATA poll waiting for outbound data
    "RESPONSE_TIMEOUT_S": 5.0,
    # Upper bound on a handshake worker waiting for the registry dispatcher
    "REGISTRATION_TIMEOUT_S": 10.0,

    # Agent HTTP settings
    "HTTP_TIMEOUT_S": 30.0,
    "HTTP_USER_AGENT": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/115.0",
    "HTTP_CONTENT_TYPE": "application/x-www-form-urlencoded",

    # Log real session IDs only when explicitly enabled (default False masks them to hashes).
    "LOG_SESSION_ID": False,
}


# Required keys with their expected types
_REQUIRED_KEYS = {
    "CONTROLLER_HOST": str,
    "CONTROLLER_PORT": int,
    "CONTROLLER_PATH": str,
    "CONTROLLER_DOMAIN": str,
    "ENCRYPTION": bool,
    "COMPRESSION": bool,
    "VERBOSE": bool,
    "SENTINEL_CHARSET": str,
    "DECOY_MIN_PARAMETERS": int,
    "DECOY_MAX_PARAMETERS": int,
    "DECOY_KEY_MAX_LEN": int,
    "DECOY_VALUE_MAX_LEN": int,
    "RESPONSE_TIMEOUT_S": float,
    "REGISTRATION_TIMEOUT_S": float,
    "HTTP_TIMEOUT_S": float,
    "HTTP_USER_AGENT": str,
    "HTTP_CONTENT_TYPE": str,
    "LOG_SESSION_ID": bool,
}

# Keys that can be overridden by environment variables
_ENV_OVERRIDABLE = {
    "CONTROLLER_HOST",
    "CONTROLLER_PORT",
    "CONTROLLER_PATH",
    "CONTROLLER_DOMAIN",
    "COMPRESSION",
    "VERBOSE",
    "RESPONSE_TIMEOUT_S",
    "REGISTRATION_TIMEOUT_S",
    "HTTP_TIMEOUT_S",
    "LOG_SESSION_ID",
}


def validate_config(cfg: Dict[str, Any]) -> None:
    """
    Ensure all required keys exist with correct types/ranges.
    Raise ConfigError("<reason>") on any violation.
    No return value on success.
    """
    missing_keys = set(_REQUIRED_KEYS.keys()) - set(cfg.keys())
    if missing_keys:
        raise ConfigError(f"CONFIG missing required keys: {', '.join(sorted(missing_keys))}")

    for key, expected_type in _REQUIRED_KEYS.items():
        value = cfg[key]
        if expected_type is float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"CONFIG[{key}] must be float seconds, got {type(value).__name__}")
            if value <= 0:
                raise ConfigError(f"CONFIG[{key}] must be positive, got {value}")
            continue
        if expected_type is int and isinstance(value, bool):
            raise ConfigError(f"CONFIG[{key}] must be int, got bool")
        if not isinstance(value, expected_type):
            raise ConfigError(f"CONFIG[{key}] must be {expected_type.__name__}, got {type(value).__name__}")

    port = cfg["CONTROLLER_PORT"]
    if not (1 <= port <= 65535):
        raise ConfigError(f"CONFIG[CONTROLLER_PORT] must be valid port (1-65535), got {port}")

    if not cfg["ENCRYPTION"]:
        raise ConfigError("CONFIG[ENCRYPTION] must be True; the channel never runs unencrypted")

    path = cfg["CONTROLLER_PATH"]
    if not path.startswith("/"):
        raise ConfigError(f"CONFIG[CONTROLLER_PATH] must start with '/', got {path!r}")

    for host_key in ("CONTROLLER_HOST", "CONTROLLER_DOMAIN"):
        if not cfg[host_key]:
            raise ConfigError(f"CONFIG[{host_key}] must be non-empty string")

    charset = cfg["SENTINEL_CHARSET"]
    if not charset:
        raise ConfigError("CONFIG[SENTINEL_CHARSET] must not be empty")
    if len(set(charset)) != len(charset):
        raise ConfigError("CONFIG[SENTINEL_CHARSET] must not repeat characters")
    if not all(ch.isascii() and ch.isalnum() for ch in charset):
        raise ConfigError("CONFIG[SENTINEL_CHARSET] must be ASCII alphanumerics")

    low = cfg["DECOY_MIN_PARAMETERS"]
    high = cfg["DECOY_MAX_PARAMETERS"]
    if low < 3:
        raise ConfigError(f"CONFIG[DECOY_MIN_PARAMETERS] must be >= 3, got {low}")
    if high < low:
        raise ConfigError(f"CONFIG[DECOY_MAX_PARAMETERS] must be >= DECOY_MIN_PARAMETERS, got {high}")
    if cfg["DECOY_KEY_MAX_LEN"] < 2:
        raise ConfigError("CONFIG[DECOY_KEY_MAX_LEN] must be >= 2")
    value_len = cfg["DECOY_VALUE_MAX_LEN"]
    if value_len != -1 and value_len < 1:
        raise ConfigError("CONFIG[DECOY_VALUE_MAX_LEN] must be -1 or >= 1")

    if not cfg["HTTP_USER_AGENT"]:
        raise ConfigError("CONFIG[HTTP_USER_AGENT] must be non-empty string")


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config."""
    result = cfg.copy()

    for key in _ENV_OVERRIDABLE:
        env_var = key
        if env_var in os.environ:
            env_value = os.environ[env_var]
            expected_type = _REQUIRED_KEYS[key]

            try:
                if expected_type == int:
                    result[key] = int(env_value)
                elif expected_type == str:
                    result[key] = str(env_value)
                elif expected_type == bool:
                    lowered = str(env_value).strip().lower()
                    if lowered in {"1", "true", "yes", "on"}:
                        result[key] = True
                    elif lowered in {"0", "false", "no", "off"}:
                        result[key] = False
                    else:
                        raise ValueError(f"invalid boolean literal: {env_value}")
                elif expected_type == float:
                    result[key] = float(env_value)
                else:
                    raise ConfigError(f"Unsupported type for env override: {expected_type}")
            except ValueError:
                raise ConfigError(f"Invalid {expected_type.__name__} value for {env_var}: {env_value}")

    return result


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build a validated config from defaults, an optional JSON file and explicit overrides.

    Environment variables win over the file, explicit ``overrides`` win over both.
    """
    cfg = dict(CONFIG)
    if path is not None:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"cannot read config file {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"config file {path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"config file {path} must hold a JSON object")
        unknown = set(raw) - set(_REQUIRED_KEYS)
        if unknown:
            raise ConfigError(f"config file {path} has unknown keys: {', '.join(sorted(unknown))}")
        cfg.update(raw)
    cfg = _apply_env_overrides(cfg)
    if overrides:
        cfg.update(overrides)
    validate_config(cfg)
    return cfg


# Apply environment overrides and validate
CONFIG = _apply_env_overrides(CONFIG)
validate_config(CONFIG)
