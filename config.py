# config.py

import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def get_env_variable(var_name, default=None):
    return os.getenv(var_name, default)


def get_int_variable(var_name, default):
    value = get_env_variable(var_name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {var_name}: {value!r}, using {default}")
        return default


def default_ws_url(api_url):
    """Push endpoint lives on the API host, port 8086, path /ws."""
    if not api_url:
        return None
    scheme = "https" if api_url.startswith("https") else "http"
    host = api_url.split("://", 1)[-1].split("/", 1)[0].split(":", 1)[0]
    return f"{scheme}://{host}:8086/ws"


_heartbeat_incoming_ms = get_int_variable('HEARTBEAT_INCOMING_MS', 4000)

SYNC_CONFIG = {
    'api_url': get_env_variable('API_URL', 'http://localhost:8080'),
    'ws_url': get_env_variable('WS_URL') or default_ws_url(get_env_variable('API_URL', 'http://localhost:8080')),
    'heartbeat_incoming_ms': _heartbeat_incoming_ms,
    'heartbeat_outgoing_ms': get_int_variable('HEARTBEAT_OUTGOING_MS', 4000),
    'heartbeat_timeout_ms': get_int_variable('HEARTBEAT_TIMEOUT_MS', _heartbeat_incoming_ms * 2),
    'reconnect_delay_ms': get_int_variable('RECONNECT_DELAY_MS', 5000),
    'grace_period_minutes': get_int_variable('GRACE_PERIOD_MINUTES', 120),
    'min_reason_length': get_int_variable('MIN_REASON_LENGTH', 10),
    'min_notes_length': get_int_variable('MIN_NOTES_LENGTH', 10),
    'request_timeout': get_int_variable('REQUEST_TIMEOUT', 30),
    'log_level': get_env_variable('LOG_LEVEL', 'INFO'),
    'log_file': get_env_variable('LOG_FILE'),
    'access_token': get_env_variable('ACCESS_TOKEN'),
    'user_id': get_env_variable('USER_ID'),
    'roles': get_env_variable('ROLES', ''),
    'client_version': "1.0.0"
}
