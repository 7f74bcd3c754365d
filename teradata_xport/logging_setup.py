"""Root logging configuration with timestamps in a configurable timezone."""
import datetime
import logging

import pytz
import tzlocal

LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class TZFormatter(logging.Formatter):
    """Logging formatter that renders times in a given tzinfo (pytz).

    Usage: set handler.setFormatter(TZFormatter(fmt, datefmt, tz=tzobj))
    """
    def __init__(self, fmt=None, datefmt=None, tz=None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.tz = tz

    def formatTime(self, record, datefmt=None):
        dt = datetime.datetime.fromtimestamp(record.created, tz=self.tz or datetime.timezone.utc)
        if datefmt:
            return dt.strftime(datefmt)
        # Default ISO
        return dt.isoformat()


def get_timezone(tz_name):
    """'system' -> local zone, otherwise a pytz zone; unknown names fall back to UTC."""
    if not tz_name or tz_name == 'system':
        return tzlocal.get_localzone()
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logging.getLogger(__name__).warning(f"Invalid timezone '{tz_name}'; falling back to UTC")
        return pytz.utc


def configure_logging(level='INFO', tz_name='system'):
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT,
                        datefmt=DATE_FORMAT)
    logging.root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    apply_logging_timezone(get_timezone(tz_name))


def apply_logging_timezone(tzinfo):
    """Replace formatters on existing root handlers to use tzinfo for timestamps."""
    for h in logging.root.handlers:
        h.setFormatter(TZFormatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT, tz=tzinfo))
