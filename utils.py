# utils.py

from dateutil import parser
import datetime
import pytz
import logging

from config import SYNC_CONFIG

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level=None, log_file=None):
    """
    Configure root logging for the client.

    Logs to the console, and additionally to a file when one is configured.
    """
    level = level or SYNC_CONFIG['log_level']
    log_file = log_file or SYNC_CONFIG['log_file']

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def utc_now():
    return datetime.datetime.now(pytz.utc)


def ensure_utc(value):
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=pytz.utc)
    return value.astimezone(pytz.utc)


def parse_server_timestamp(value):
    """
    Parse a timestamp as sent by the backend.

    The backend serialises local date-times without an offset; those are UTC.
    Returns None for empty values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.datetime.fromtimestamp(value / 1000.0, tz=pytz.utc)
    return ensure_utc(parser.isoparse(str(value)))


def format_remaining(delta):
    """Render a remaining-time delta as e.g. '1h 05m' or '12m'."""
    if delta is None:
        return None
    total_minutes = max(0, int(delta.total_seconds() // 60))
    hours, minutes = divmod(total_minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    return f"{minutes}m"
