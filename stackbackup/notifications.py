"""
Operation notifications via Apprise.

One message per backup/restore/migration outcome is sent to every URL in
NOTIFY_URLS. Notification failures are logged and never change the outcome
of the operation that triggered them.
"""
import time
import traceback
from dataclasses import dataclass
from typing import List, Optional, Tuple

import apprise

from stackbackup.utils import format_duration, get_logger

logger = get_logger(__name__)

STATUS_EMOJI = {
    'success': '✅',
    'partial': '⚠️',
    'failed': '✖️',
}

# keep message bodies below common transport limits
MAX_LOG_LINES = 40


@dataclass
class AdapterResult:
    channel: str
    success: bool
    detail: Optional[str] = None


def _make_apobj(urls: Optional[List[str]] = None) -> Tuple[object, int]:
    apobj = apprise.Apprise()
    added = 0
    for u in (urls or []):
        try:
            if apobj.add(u):
                added += 1
            else:
                logger.warning("Notifications: invalid Apprise URL skipped")
        except Exception as e:
            logger.warning("Notifications: failed to add Apprise URL: %s", e)
    return apobj, added


def _notify_with_retry(apobj: object, title: str, body: str, body_format: object = None) -> Tuple[bool, Optional[str]]:
    try:
        res = apobj.notify(title=title, body=body, body_format=body_format)
        return bool(res), None
    except Exception:
        first_tb = traceback.format_exc()
        try:
            time.sleep(0.5)
            res = apobj.notify(title=title, body=body, body_format=body_format)
            return bool(res), None
        except Exception:
            retry_tb = traceback.format_exc()
            return False, f"first: {first_tb.strip()} | retry: {retry_tb.strip()}"


class GenericAdapter:
    """Send to configured Apprise URLs."""

    def __init__(self, urls: Optional[List[str]] = None):
        self.urls = list(urls or [])

    def send(self, title: str, body: str, body_format: object = None) -> AdapterResult:
        apobj, added = _make_apobj(self.urls)
        if added == 0:
            return AdapterResult(channel='generic', success=False, detail='no apprise URLs added')

        ok, detail = _notify_with_retry(apobj, title=title, body=body, body_format=body_format)
        if ok:
            return AdapterResult(channel='generic', success=True)
        return AdapterResult(channel='generic', success=False, detail=f'notify exception: {detail}' if detail else 'notify returned false')


def build_body(report, hostname=None):
    """Plain-text body: summary, phases, then the tail of the job log."""
    lines = []
    if hostname:
        lines.append(f"Host: {hostname}")
    lines.append(f"Operation: {report.operation}")
    lines.append(f"Result: {report.status}")
    lines.append(f"Summary: {report.summary()}")
    if report.snapshot_id:
        lines.append(f"Snapshot: {report.snapshot_id}")
    if report.duration is not None:
        lines.append(f"Duration: {format_duration(report.duration)}")
    if report.phases:
        lines.append('')
        lines.append('Phases:')
        for phase in report.phases:
            lines.append(f"  - {phase.name}: {phase.status}")
    if report.log_lines:
        lines.append('')
        lines.append('Log (last lines):')
        lines.extend(report.log_lines[-MAX_LOG_LINES:])
    return '\n'.join(lines)


def notify_operation(config, report, hostname=None):
    """Send one notification for an operation report. Returns AdapterResult or None."""
    if not config.notify_urls:
        return None
    emoji = STATUS_EMOJI.get(report.status, '')
    title = f"{emoji} Docker backup manager: {report.operation} {report.status}".strip()
    try:
        result = GenericAdapter(config.notify_urls).send(title, build_body(report, hostname), body_format=apprise.NotifyFormat.TEXT)
    except Exception as e:
        logger.warning("Failed to send notification: %s", e)
        return AdapterResult(channel='generic', success=False, detail=str(e))
    if result.success:
        logger.info("Notification sent for %s", report.operation)
    else:
        logger.warning("Notification for %s failed: %s", report.operation, result.detail)
    return result
