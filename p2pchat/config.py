import yaml

from p2pchat.crypto.encrypt import HASHES
from p2pchat.protocol.errors import ConfigError

DEFAULTS = {
    "key_size": 2048,
    "hash_algorithm": "sha256",
    "max_frame_size": 64 * 1024,
    "key_path": None,
    "timeout": None,       # seconds for dial/read/write; None blocks forever
    "log_level": "INFO",
}


def load_config(path=None):
    """
    Defaults overlaid with the mapping found in a YAML file, if one is given.
    """
    config = dict(DEFAULTS)
    if path is None:
        return config
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    unknown = sorted(set(data) - set(DEFAULTS))
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
    config.update(data)
    validate_config(config)
    return config


def validate_config(config):
    if config["hash_algorithm"] not in HASHES:
        raise ConfigError(f"Unsupported hash algorithm: {config['hash_algorithm']}")
    for key in ("key_size", "max_frame_size"):
        if not isinstance(config[key], int) or config[key] <= 0:
            raise ConfigError(f"{key} must be a positive integer")
    digest_size = HASHES[config["hash_algorithm"]].digest_size
    if config["key_size"] // 8 - 2 * digest_size - 2 <= 0:
        raise ConfigError(
            f"{config['key_size']}-bit keys cannot carry OAEP blocks with {config['hash_algorithm']}"
        )
    timeout = config["timeout"]
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        raise ConfigError("timeout must be a positive number or null")
