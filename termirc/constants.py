"""
Configuration constants for the termirc protocol engine

This module contains the default values used throughout the engine.
Each constant can be overridden by setting an environment variable with the same name.
"""

import os


def _get_env_int(name: str, default: int) -> int:
    """Retrieve an integer value from an environment variable.

    Attempts to parse the environment variable as an integer. If the variable
    is not set or cannot be parsed, prints a warning and returns the default value.

    Args:
        name: The name of the environment variable to read.
        default: The default integer value to return if parsing fails.

    Returns:
        The parsed integer value from the environment, or the default if unavailable.
    """
    value = os.getenv(name)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            print(
                f"Warning: Invalid integer value for {name}='{value}', using default {default}"
            )
    return default


def _get_env_float(name: str, default: float) -> float:
    """Retrieve a float value from an environment variable.

    Attempts to parse the environment variable as a float. If the variable
    is not set or cannot be parsed, prints a warning and returns the default value.

    Args:
        name: The name of the environment variable to read.
        default: The default float value to return if parsing fails.

    Returns:
        The parsed float value from the environment, or the default if unavailable.
    """
    value = os.getenv(name)
    if value is not None:
        try:
            return float(value)
        except ValueError:
            print(
                f"Warning: Invalid float value for {name}='{value}', using default {default}"
            )
    return default


# Wire limits
MAX_LINE_LENGTH = 510  # Message body without CRLF (512 on the wire)
MAX_TAGS_LENGTH = 8191  # IRCv3 tag section including '@' and trailing space
MAX_MIDDLE_PARAMS = 14
READ_CHUNK_SIZE = _get_env_int("READ_CHUNK_SIZE", 4096)

# Server defaults
DEFAULT_PORT = _get_env_int("DEFAULT_PORT", 6667)
DEFAULT_TLS_PORT = _get_env_int("DEFAULT_TLS_PORT", 6697)
CONNECT_TIMEOUT = _get_env_float("CONNECT_TIMEOUT", 15.0)
CONNECT_ATTEMPTS = _get_env_int("CONNECT_ATTEMPTS", 2)  # Quick retries inside one connect

# Registration / capability negotiation
CAP_NEGOTIATION_TIMEOUT = _get_env_float("CAP_NEGOTIATION_TIMEOUT", 10.0)
REGISTRATION_TIMEOUT = _get_env_float("REGISTRATION_TIMEOUT", 60.0)
NICK_RETRY_LIMIT = _get_env_int("NICK_RETRY_LIMIT", 3)
DEFAULT_CAPABILITIES = (
    "message-tags",
    "server-time",
    "multi-prefix",
    "away-notify",
    "cap-notify",
)

# Keepalive
KEEPALIVE_TIMEOUT = _get_env_float("KEEPALIVE_TIMEOUT", 120.0)  # Idle before we PING
KEEPALIVE_GRACE = _get_env_float("KEEPALIVE_GRACE", 60.0)  # Wait for any reply after PING

# Outbound flood control
RATE_LIMIT_INTERVAL = _get_env_float("RATE_LIMIT_INTERVAL", 2.0)
RATE_LIMIT_BURST = _get_env_int("RATE_LIMIT_BURST", 4)

# Reconnect backoff
RECONNECT_BASE_DELAY = _get_env_float("RECONNECT_BASE_DELAY", 1.0)
RECONNECT_MAX_DELAY = _get_env_float("RECONNECT_MAX_DELAY", 30.0)
RECONNECT_JITTER = _get_env_float("RECONNECT_JITTER", 0.1)  # Fraction of the delay

# Shutdown
QUIT_GRACE_PERIOD = _get_env_float("QUIT_GRACE_PERIOD", 2.0)
CLOSE_TIMEOUT = _get_env_float("CLOSE_TIMEOUT", 5.0)  # Then the socket is aborted
DEFAULT_QUIT_MESSAGE = "Leaving"

# Senders whose messages are flagged as coming from network services
SERVICE_NICKS = ("NickServ", "ChanServ", "MemoServ")
