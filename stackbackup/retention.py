"""
Snapshot retention.

Snapshots are ordered by the timestamp embedded in their name, never by file
mtime, so copying archives around does not change which ones are kept.
"""
from datetime import timedelta
from pathlib import Path

from stackbackup.models import RetentionSummary
from stackbackup.utils import (
    SNAPSHOT_PREFIX,
    SNAPSHOT_SUFFIX,
    format_bytes,
    get_logger,
    now,
    parse_snapshot_id,
)

logger = get_logger(__name__)


def scan_snapshots(directory):
    """Return ``[(timestamp_utc, path)]`` for completed snapshot archives, newest first."""
    base = Path(directory)
    if not base.is_dir():
        return []
    found = []
    for item in base.iterdir():
        name = item.name
        # in-progress archives end in .tar.gz.tmp and never match
        if not (item.is_file() and name.startswith(SNAPSHOT_PREFIX) and name.endswith(SNAPSHOT_SUFFIX)):
            continue
        parsed = parse_snapshot_id(name)
        if parsed is None:
            continue
        found.append((parsed[0], item))
    found.sort(key=lambda x: (x[0], x[1].name), reverse=True)
    return found


def prune(directory, keep_count=None, keep_days=None, dry_run=False, log_callback=None):
    """
    Delete snapshots beyond the retention policy.

    Args:
        directory: Backup directory to scan
        keep_count: Keep the newest N snapshots
        keep_days: Keep snapshots younger than D days
        dry_run: Report what would be deleted without deleting
        log_callback: Function to call for logging

    When both limits are given a snapshot survives if either keeps it. With
    neither given nothing is deleted.

    Returns:
        RetentionSummary
    """
    def log(level, msg):
        if log_callback:
            log_callback(level, msg)
        else:
            if level == 'ERROR':
                logger.error("%s", msg)
            elif level == 'WARNING':
                logger.warning("%s", msg)
            else:
                logger.info("%s", msg)

    snapshots = scan_snapshots(directory)
    if keep_count is None and keep_days is None:
        log('INFO', "No retention policy configured; keeping all snapshots")
        return RetentionSummary(removed=[], kept=[p.name for _, p in snapshots], reclaimed_bytes=0)

    parts = []
    if keep_count is not None:
        parts.append(f"last {keep_count}")
    if keep_days is not None:
        parts.append(f"{keep_days} days")
    log('INFO', f"Starting retention in {directory}: keep {' or '.join(parts)}")

    cutoff = now() - timedelta(days=keep_days) if keep_days is not None else None
    removed, kept = [], []
    reclaimed = 0
    for index, (ts, path) in enumerate(snapshots):
        keep = False
        if keep_count is not None and index < keep_count:
            keep = True
        if cutoff is not None and ts >= cutoff:
            keep = True
        if keep:
            kept.append(path.name)
            continue

        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        if dry_run:
            log('INFO', f"Would delete {path.name} ({format_bytes(size)})")
        else:
            try:
                path.unlink()
                log('INFO', f"Deleted old backup: {path.name} ({format_bytes(size)})")
            except OSError as e:
                log('WARNING', f"Failed to delete {path.name}: {e}")
                kept.append(path.name)
                continue
        removed.append(path.name)
        reclaimed += size

    log('INFO', f"Retention finished: {len(removed)} removed, {len(kept)} kept, {format_bytes(reclaimed)} reclaimed")
    return RetentionSummary(removed=removed, kept=kept, reclaimed_bytes=reclaimed)
