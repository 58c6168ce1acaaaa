"""
Utility functions for the backup manager.
"""
import os
import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
import logging

LOG_FORMAT = '[%(levelname)s] %(asctime)s %(name)s: %(message)s'

# Snapshot ids look like docker_backup_20250827_082300 or docker_backup_20250827_082300-before-upgrade
SNAPSHOT_PREFIX = 'docker_backup_'
SNAPSHOT_SUFFIX = '.tar.gz'
SNAPSHOT_TS_FORMAT = '%Y%m%d_%H%M%S'
_SNAPSHOT_RE = re.compile(r'^docker_backup_(\d{8}_\d{6})(?:-([A-Za-z0-9._-]+))?$')


# Central logging helpers
def setup_logging(log_file=None, level_name=None):
    """Configure root logger.

    - Level comes from ``level_name`` or the LOG_LEVEL env var; defaults to INFO.
    - If no handlers exist, installs a StreamHandler and, when ``log_file`` is
      given, a TimedRotatingFileHandler writing to it.

    File logging is best-effort: an unwritable log location only produces a
    warning on the stream handler.
    """
    level_name = (level_name or os.environ.get('LOG_LEVEL', 'INFO')).upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()

    # Only configure handlers if none are present so tests or other
    # environments can configure logging differently
    if not root.handlers:
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(sh)

        if log_file:
            try:
                os.makedirs(os.path.dirname(log_file) or '.', exist_ok=True)
                from logging.handlers import TimedRotatingFileHandler
                fh = TimedRotatingFileHandler(
                    filename=log_file,
                    when='midnight',
                    backupCount=7,
                    encoding='utf-8'
                )
                fh.setLevel(level)
                fh.setFormatter(logging.Formatter(LOG_FORMAT))
                root.addHandler(fh)
            except OSError as e:
                root.warning("Failed to configure file logging (LOG_FILE=%s): %s", log_file, e)

    root.setLevel(level)


def get_logger(name=None):
    """Return a logger for the given name (or the module logger if none)."""
    return logging.getLogger(name if name else __name__)


def now():
    """Get current datetime in UTC.

    Returns a timezone-aware datetime with tzinfo=timezone.utc to avoid naive/aware
    mismatches across the app."""
    return datetime.now(timezone.utc)


def local_now():
    """Get current datetime in the display timezone (for filenames, logs)."""
    return datetime.now(timezone.utc).astimezone(get_display_timezone())


def get_display_timezone():
    """Get the configured display timezone."""
    tz_name = os.environ.get('TZ', 'UTC')
    try:
        return ZoneInfo(tz_name)
    except Exception:
        return ZoneInfo('UTC')


def to_iso_z(dt):
    """Convert a datetime to an ISO 8601 UTC string ending with 'Z'."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def filename_timestamp(dt=None):
    """Return a timestamp string suitable for filenames.

    Format: YYYYMMDD_HHMMSS (e.g. 20251225_182530) in the display timezone.
    """
    if dt is None:
        dt = local_now()
    return dt.strftime(SNAPSHOT_TS_FORMAT)


def filename_safe(name):
    """Return a filesystem-safe name derived from the provided string.

    Replaces any character not in [A-Za-z0-9._-] with a hyphen and collapses
    repeated hyphens, matching the naming used for custom backup names.
    """
    safe = re.sub(r'[^A-Za-z0-9._-]+', '-', str(name))
    safe = re.sub(r'-+', '-', safe).strip('-')
    return safe


def snapshot_id(dt=None, custom_name=None):
    """Build a snapshot id from a timestamp and an optional custom postfix."""
    sid = f"{SNAPSHOT_PREFIX}{filename_timestamp(dt)}"
    if custom_name:
        safe = filename_safe(custom_name)
        if safe:
            sid = f"{sid}-{safe}"
    return sid


def parse_snapshot_id(name):
    """Parse a snapshot id or archive filename.

    Returns (timestamp_utc, custom_name) or None if the name is not a snapshot.
    The embedded timestamp is interpreted in the display timezone it was written in.
    """
    base = os.path.basename(str(name))
    if base.endswith(SNAPSHOT_SUFFIX):
        base = base[:-len(SNAPSHOT_SUFFIX)]
    m = _SNAPSHOT_RE.match(base)
    if not m:
        return None
    try:
        ts = datetime.strptime(m.group(1), SNAPSHOT_TS_FORMAT)
    except ValueError:
        return None
    ts_utc = ts.replace(tzinfo=get_display_timezone()).astimezone(timezone.utc)
    return ts_utc, m.group(2)


def format_bytes(bytes_val):
    """Format bytes to human readable string."""
    if bytes_val is None:
        return 'N/A'

    bytes_val = float(bytes_val)

    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_val < 1024.0:
            return f"{bytes_val:.1f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f}PB"


def format_duration(seconds):
    """Format duration in seconds to human readable string."""
    if seconds is None:
        return 'N/A'

    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    minutes = seconds // 60
    secs = seconds % 60

    if minutes < 60:
        return f"{minutes}m {secs}s"

    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def strip_root(path):
    """Return ``path`` as an archive-relative name (no leading slash)."""
    return str(path).lstrip('/')


def is_privileged():
    """True when the process can change arbitrary ownership."""
    return hasattr(os, 'geteuid') and os.geteuid() == 0
