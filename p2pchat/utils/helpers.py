import logging

from p2pchat.protocol.errors import ConfigError

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_logger(name):
    """Module-level logger with a stderr handler attached once."""
    logger = logging.getLogger(name)
    if not logger.hasHandlers():
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)
    return logger


def set_log_level(level):
    # module loggers stay at NOTSET and inherit from the package logger
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    if not isinstance(level, int):
        raise ConfigError(f"Unknown log level: {level}")
    logging.getLogger("p2pchat").setLevel(level)


def parse_address(addr):
    """
    Split a canonical "host:port" string into (host, port).
    Anything but exactly one colon, an empty host or a bad port is a ConfigError.
    """
    addr = addr.strip()
    if addr.count(":") != 1:
        raise ConfigError(f"Address must be host:port, got '{addr}'")
    host, port_str = addr.split(":")
    if not host:
        raise ConfigError(f"Missing host in '{addr}'")
    try:
        port = int(port_str)
    except ValueError:
        raise ConfigError(f"Port is not a number in '{addr}'") from None
    if not 0 < port < 65536:
        raise ConfigError(f"Port out of range in '{addr}'")
    return host, port


def chunked(data, size):
    """Yield successive slices of at most `size` bytes; nothing for empty data."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(data), size):
        yield data[start:start + size]
