import os

import yaml

from grtc.protocol.errors import ConfigError

DEFAULTS = {
    "store_url": "http://127.0.0.1:8080",
    "room_id": None,
    "role": "initiator",
    "poll_interval": 5.0,
    "connect_timeout": 60.0,
    "store_timeout": 10.0,
    "listen_host": "0.0.0.0",
    "listen_port": 0,
    "advertise_host": None,
    "encrypt_payloads": False,
}

ROLES = ("initiator", "joinee")


def load_config(path):
    """
    Read a YAML config file on top of DEFAULTS. A missing file gives the defaults.
    """
    config = dict(DEFAULTS)
    if os.path.exists(path):
        with open(path, "r") as f:
            try:
                loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Could not parse {path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping, not {type(loaded).__name__}")
        unknown = set(loaded) - set(DEFAULTS)
        if unknown:
            raise ConfigError(f"Unknown config keys in {path}: {', '.join(sorted(unknown))}")
        config.update(loaded)
    validate(config)
    return config


def validate(config):
    if config["role"] not in ROLES:
        raise ConfigError(f"role must be one of {ROLES}, got {config['role']!r}")
    if config["role"] == "joinee" and not config["room_id"]:
        raise ConfigError("A joinee needs the room_id of the initiator")
    for key in ("poll_interval", "store_timeout"):
        if not isinstance(config[key], (int, float)) or config[key] <= 0:
            raise ConfigError(f"{key} must be a positive number")
    timeout = config["connect_timeout"]
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        raise ConfigError("connect_timeout must be a positive number or null")
    if not isinstance(config["listen_port"], int) or not 0 <= config["listen_port"] <= 65535:
        raise ConfigError("listen_port must be an integer between 0 and 65535")
    if not config["store_url"]:
        raise ConfigError("store_url is required")
