"""
Backup and restore execution engine with phased processing.

Both executors hold the operation lock for their whole run, record every step
in a timestamped log buffer and return an OperationReport built from the
per-phase results. Only failures in loading the snapshot or extracting it
make a restore ``failed``; every other problem degrades it to ``partial``.
"""
import json
import shutil
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from stackbackup import archive, metadata, retention
from stackbackup.errors import ArchiveError, ControlPlaneError, OperationAborted
from stackbackup.locking import OperationLock
from stackbackup.models import (
    METADATA_FILE,
    STACK_STATE_FILE,
    MetadataRecord,
    Snapshot,
    decode_stack_state,
)
from stackbackup.notifications import notify_operation
from stackbackup.portainer import PortainerClient
from stackbackup.prompts import Prompter
from stackbackup.runtime import DockerRuntime
from stackbackup.stacks import StackStateManager, discover_stack_dirs
from stackbackup.utils import (
    SNAPSHOT_SUFFIX,
    filename_timestamp,
    format_bytes,
    get_logger,
    local_now,
    parse_snapshot_id,
    snapshot_id,
    strip_root,
    to_iso_z,
)

logger = get_logger(__name__)

PHASE_SUCCESS = 'success'
PHASE_PARTIAL = 'partial'
PHASE_FAILED = 'failed'
PHASE_SKIPPED = 'skipped'


@dataclass
class PhaseResult:
    name: str
    status: str = PHASE_SUCCESS
    messages: List[str] = field(default_factory=list)

    def warn(self, message):
        self.messages.append(message)
        if self.status == PHASE_SUCCESS:
            self.status = PHASE_PARTIAL

    def fail(self, message):
        self.messages.append(message)
        self.status = PHASE_FAILED


@dataclass
class OperationReport:
    operation: str
    status: str = 'success'  # success | partial | failed | aborted
    phases: List[PhaseResult] = field(default_factory=list)
    snapshot_id: Optional[str] = None
    snapshot_path: Optional[str] = None
    system_state: str = ''
    error: Optional[str] = None
    duration: Optional[int] = None
    log_lines: List[str] = field(default_factory=list)
    recovery_file: Optional[str] = None

    @property
    def failed_phase(self):
        for p in self.phases:
            if p.status == PHASE_FAILED:
                return p.name
        return None

    @property
    def partial_phases(self):
        return [p.name for p in self.phases if p.status == PHASE_PARTIAL]

    def finalize(self):
        """Derive the overall status from the phase results."""
        if self.status == 'aborted':
            return self
        if self.failed_phase:
            self.status = 'failed'
        elif self.partial_phases:
            self.status = 'partial'
        else:
            self.status = 'success'
        return self

    def summary(self):
        head = f"{self.operation} {self.status}"
        if self.status == 'failed' and self.failed_phase:
            head += f" in phase {self.failed_phase}"
            if self.error:
                head += f" ({self.error})"
        elif self.status == 'partial':
            head += f" ({', '.join(self.partial_phases)})"
        elif self.status == 'aborted' and self.error:
            head += f" ({self.error})"
        return f"{head}: {self.system_state}" if self.system_state else head


def list_snapshots(config, with_details=False):
    """Return snapshots in the backup directory, newest first."""
    snapshots = []
    for ts, path in retention.scan_snapshots(config.host_path(config.backup_path)):
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        snap = Snapshot(id=path.name[:-len(SNAPSHOT_SUFFIX)], path=path, created=ts, size_bytes=size)
        if with_details:
            load_side_files(snap)
        snapshots.append(snap)
    return snapshots


def load_side_files(snap):
    """Populate ``metadata`` and ``stack_state`` of a Snapshot from its archive."""
    meta_doc = archive.read_side_file(snap.path, METADATA_FILE)
    snap.metadata = MetadataRecord.from_dict(meta_doc) if isinstance(meta_doc, dict) and meta_doc else None
    snap.stack_state = decode_stack_state(archive.read_side_file(snap.path, STACK_STATE_FILE))
    return snap


def resolve_snapshot(config, selector=None):
    """Find a snapshot by 1-based index (newest first), id, file name, path or ``latest``."""
    if selector and ('/' in str(selector)) and Path(selector).is_file():
        path = Path(selector)
        parsed = parse_snapshot_id(path.name)
        created = parsed[0] if parsed else None
        sid = path.name[:-len(SNAPSHOT_SUFFIX)] if path.name.endswith(SNAPSHOT_SUFFIX) else path.name
        return Snapshot(id=sid, path=path, created=created, size_bytes=path.stat().st_size)

    snapshots = list_snapshots(config)
    if not snapshots:
        raise ArchiveError(f"No backups found in {config.backup_path}")
    if selector is None or str(selector) in ('', 'latest'):
        return snapshots[0]
    sel = str(selector)
    if sel.isdigit():
        index = int(sel)
        if 1 <= index <= len(snapshots):
            return snapshots[index - 1]
        raise ArchiveError(f"Invalid backup number {index}; {len(snapshots)} backups available")
    base = sel[:-len(SNAPSHOT_SUFFIX)] if sel.endswith(SNAPSHOT_SUFFIX) else sel
    for snap in snapshots:
        if snap.id == base:
            return snap
    raise ArchiveError(f"Backup not found: {selector}")


RECOVERY_INSTRUCTIONS = {
    'backup': [
        "Check that the stacks stopped for the backup are running again (Portainer > Stacks).",
        "Check free space and permissions of the backup directory.",
        "Run the backup again: docker-stack-backup backup",
    ],
    'restore': [
        "Run the restore again from the same snapshot: docker-stack-backup restore {snapshot}",
        "If files were restored, start remaining stacks from Portainer.",
        "Inspect container logs of stacks that failed to start: docker logs <container>",
    ],
    'migrate': [
        "Roll back to the pre-migration snapshot: docker-stack-backup rollback {snapshot}",
        "The configuration file still points at the old paths unless the migration reached the save step.",
    ],
    'rollback': [
        "Run the rollback again: docker-stack-backup rollback {snapshot}",
        "Restore an older snapshot if this one is damaged: docker-stack-backup list",
    ],
}


class BaseExecutor:
    """Shared logging, lock and reporting for all operations."""

    operation = 'operation'

    def __init__(self, config, client=None, runtime=None, prompter=None, sleep=time.sleep):
        self.config = config
        self.log_buffer = []
        self.client = client or PortainerClient.from_config(config)
        self.runtime = runtime or DockerRuntime(log_callback=self.log)
        self.prompter = prompter or Prompter.from_config(config)
        self.stacks = StackStateManager(config, self.client, log_callback=self.log)
        self._sleep = sleep

    def log(self, level, message):
        """Add log entry with timestamp to the buffer and the module logger."""
        timestamp = local_now().strftime('%Y-%m-%d %H:%M:%S')
        log_line = f"[{timestamp}] [{level}] {message}"
        self.log_buffer.append(log_line)
        if level == 'ERROR':
            logger.error("%s", message)
        elif level == 'WARNING':
            logger.warning("%s", message)
        elif level == 'DEBUG':
            logger.debug("%s", message)
        else:
            logger.info("%s", message)

    def host(self, path):
        return self.config.host_path(path)

    def _start_phase(self, report, name, title):
        self.log('INFO', f"### {title} ###")
        phase = PhaseResult(name)
        report.phases.append(phase)
        return phase

    def _finish(self, report, start_time):
        report.finalize()
        report.duration = int(time.time() - start_time)
        report.log_lines = list(self.log_buffer)
        if report.status in ('failed', 'partial'):
            report.recovery_file = self.write_recovery_info(report)
        if report.status == 'success':
            self.log('INFO', f"{self.operation.capitalize()} completed successfully: {report.summary()}")
        elif report.status == 'aborted':
            self.log('WARNING', report.summary())
        else:
            self.log('ERROR' if report.status == 'failed' else 'WARNING', report.summary())
        report.log_lines = list(self.log_buffer)
        if report.status != 'aborted':
            notify_operation(self.config, report, hostname=socket.gethostname())
        return report

    def _validate(self, report, expected):
        phase = self._start_phase(report, 'validation', 'Phase 7: Validating running stacks')
        if not expected:
            phase.status = PHASE_SKIPPED
            return []
        cfg = self.config
        pending = list(expected)
        for attempt in range(1, cfg.validation_retries + 1):
            still = []
            for name in pending:
                try:
                    state = self.runtime.project_state(name)
                except Exception as e:
                    self.log('DEBUG', f"Could not query {name}: {e}")
                    state = 'unknown'
                if state != 'running':
                    still.append(name)
            pending = still
            if not pending:
                self.log('INFO', f"All {len(expected)} stacks are running")
                return []
            self.log('INFO', f"Attempt {attempt}/{cfg.validation_retries}: waiting for {', '.join(pending)}")
            if attempt < cfg.validation_retries:
                self._sleep(cfg.validation_interval)
        phase.warn(f"not running: {', '.join(pending)}")
        return pending

    def write_recovery_info(self, report):
        """Write ``recovery_<op>_<ts>.json`` next to the backups. Best-effort."""
        directory = self.host(self.config.backup_path)
        path = directory / f"recovery_{self.operation}_{filename_timestamp()}.json"
        doc = {
            'operation': self.operation,
            'timestamp': to_iso_z(local_now()),
            'status': report.status,
            'failed_phase': report.failed_phase,
            'summary': report.summary(),
            'snapshot': report.snapshot_id,
            'phases': [{'name': p.name, 'status': p.status, 'messages': p.messages} for p in report.phases],
            'instructions': [i.format(snapshot=report.snapshot_id or '<snapshot>')
                             for i in RECOVERY_INSTRUCTIONS.get(self.operation, [])],
            'log': report.log_lines,
        }
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(doc, indent=2), encoding='utf-8')
        except OSError as e:
            self.log('WARNING', f"Could not write recovery information to {path}: {e}")
            return None
        self.log('INFO', f"Recovery information saved to {path}")
        return str(path)


class BackupExecutor(BaseExecutor):
    """Create one snapshot archive of the data roots and stack definitions."""

    operation = 'backup'

    def run(self, custom_name=None, run_retention=True, hold_lock=True):
        """Create a snapshot.

        ``hold_lock=False`` is for callers (migration) that already hold the
        operation lock.
        """
        start_time = time.time()
        report = OperationReport(self.operation)
        if hold_lock:
            with OperationLock(self.config.lock_dir, self.operation):
                self.log('INFO', "Starting backup")
                self._run(report, custom_name, run_retention)
        else:
            self.log('INFO', "Starting backup")
            self._run(report, custom_name, run_retention)
        return self._finish(report, start_time)

    def _backup_roots(self, stack_state):
        cfg = self.config
        roots = [cfg.portainer_path, cfg.npm_path]
        if stack_state is None:
            roots.append(cfg.tools_path)
            return roots
        for name in stack_state.names:
            if cfg.is_core_stack(name):
                continue
            directory = str(cfg.stack_directory(name))
            if directory not in roots:
                roots.append(directory)
        return roots

    def _run(self, report, custom_name, run_retention):
        cfg = self.config

        phase = self._start_phase(report, 'capture', 'Phase 1: Capturing stack states')
        stack_state = None
        try:
            stack_state = self.stacks.capture()
            self.log('INFO', f"Captured {len(stack_state.stacks)} stack(s)")
            partial = [s.name for s in stack_state.stacks if getattr(s, 'partial', False)]
            if partial:
                phase.warn(f"partially captured: {', '.join(partial)}")
        except ControlPlaneError as e:
            self.log('WARNING', f"Could not capture stack states: {e}")
            self.log('WARNING', "Backup continues with files only; stacks will need manual recreation on restore")
            phase.warn(f"stack state not captured: {e}")

        roots = self._backup_roots(stack_state)

        phase = self._start_phase(report, 'metadata', 'Phase 2: Recording permissions and system information')
        paths = dict(cfg.data_roots, backup=cfg.backup_path)
        meta = metadata.record(roots, paths=paths, base_dir=cfg.restore_root)
        self.log('INFO', f"Recorded permissions for {len(meta.permissions)} entries on {meta.system.architecture}")

        phase = self._start_phase(report, 'stop', 'Phase 3: Stopping stacks for a consistent backup')
        stopped = []
        if stack_state is None:
            phase.status = PHASE_SKIPPED
            phase.messages.append('no stack state')
        else:
            active = [s.name for s in stack_state.stacks if s.is_active and not cfg.is_core_stack(s.name)]
            try:
                for outcome in self.stacks.stop_stacks(active):
                    if outcome.status == 'stopped':
                        stopped.append(outcome.name)
                    elif outcome.status == 'failed':
                        phase.warn(f"could not stop {outcome.name}: {outcome.detail}")
            except ControlPlaneError as e:
                phase.warn(f"could not stop stacks: {e}")

        sid = snapshot_id(local_now(), custom_name)
        destination = self.host(cfg.backup_path) / f"{sid}{SNAPSHOT_SUFFIX}"
        report.snapshot_id = sid

        phase = self._start_phase(report, 'archive', 'Phase 4: Creating archive')
        ref = None
        try:
            ref = archive.create_archive(
                roots,
                {
                    METADATA_FILE: meta.to_dict(),
                    STACK_STATE_FILE: stack_state.to_dict() if stack_state else {},
                },
                destination,
                log_callback=self.log,
                base_dir=cfg.restore_root,
            )
            report.snapshot_path = str(ref.path)
        except ArchiveError as e:
            self.log('ERROR', str(e))
            phase.fail(str(e))
            report.error = str(e)
        finally:
            # stacks are restarted whether or not the archive was written
            if stopped:
                restart = self._start_phase(report, 'restart', 'Phase 5: Restarting stacks')
                try:
                    for outcome in self.stacks.start_stacks(stopped):
                        if outcome.status == 'failed':
                            restart.warn(f"could not restart {outcome.name}: {outcome.detail}")
                except ControlPlaneError as e:
                    restart.warn(f"could not restart stacks: {e}")

        if ref is None:
            report.system_state = "no snapshot written; stacks restarted" if stopped else "no snapshot written"
            return

        phase = self._start_phase(report, 'verify', 'Phase 6: Verifying archive')
        try:
            count = archive.verify_archive(ref)
            self.log('INFO', f"Archive verified: {count} entries")
        except ArchiveError as e:
            self.log('ERROR', str(e))
            phase.fail(str(e))
            report.error = str(e)
            report.system_state = f"snapshot {sid} is unreadable and must not be used"
            return

        if run_retention:
            phase = self._start_phase(report, 'retention', 'Phase 7: Running retention')
            try:
                retention.prune(
                    self.host(cfg.backup_path),
                    keep_count=cfg.backup_retention,
                    keep_days=cfg.backup_retention_days,
                    log_callback=self.log,
                )
            except OSError as e:
                phase.warn(f"retention failed: {e}")

        state = f"snapshot {sid} created ({format_bytes(ref.size_bytes)})"
        if stack_state is None:
            state += ", stack definitions not captured"
        report.system_state = state


class RestoreExecutor(BaseExecutor):
    """Reconcile the host to a snapshot: remove extra stacks, restore files, recreate and start stacks."""

    operation = 'restore'

    def run(self, selector=None, confirmed=False):
        start_time = time.time()
        report = OperationReport(self.operation)
        with OperationLock(self.config.lock_dir, self.operation):
            self.log('INFO', "Starting restore")
            try:
                self._run(report, selector, confirmed)
            except OperationAborted as e:
                self.log('WARNING', f"Restore aborted: {e}")
                report.status = 'aborted'
                report.error = str(e)
                report.system_state = "no changes were made"
        return self._finish(report, start_time)

    # Phase 0
    def _load(self, report, selector):
        phase = self._start_phase(report, 'load', 'Phase 0: Loading snapshot')
        try:
            snap = resolve_snapshot(self.config, selector)
            report.snapshot_id = snap.id
            report.snapshot_path = str(snap.path)
            self.log('INFO', f"Selected backup: {snap.id} ({format_bytes(snap.size_bytes)})")
            archive.verify_archive(snap.path)
            load_side_files(snap)
        except ArchiveError as e:
            self.log('ERROR', str(e))
            phase.fail(str(e))
            report.error = str(e)
            report.system_state = "no changes were made"
            return None

        if snap.metadata is None:
            phase.warn("backup metadata missing; permissions will come from the archive only")
            self.log('WARNING', "Backup metadata missing")
        else:
            mismatch = metadata.compare_fingerprint(snap.metadata)
            if mismatch:
                self.log('WARNING', f"Architecture mismatch: {mismatch}. Images must be available for this architecture.")
                phase.messages.append(f"architecture mismatch: {mismatch}")
        if snap.stack_state is None:
            self.log('WARNING', "Stack state missing from backup; files will be restored but stacks cannot be recreated")
            phase.warn("stack state missing")
        elif snap.stack_state.is_legacy:
            self.log('WARNING', "Backup uses the legacy stack state format; stacks not registered in the restored Portainer cannot be recreated")
            phase.warn("legacy stack state")
        return snap

    def _snapshot_stack_names(self, snap):
        if snap.stack_state is not None:
            return set(snap.stack_state.names)
        # fall back to the stack directories contained in the archive
        tools_rel = strip_root(self.config.tools_path).rstrip('/') + '/'
        names = set()
        for member in archive.list_members(snap.path):
            if member.startswith(tools_rel):
                first = member[len(tools_rel):].split('/', 1)[0]
                if first:
                    names.add(first)
        return names

    # Phase 1
    def _inventory(self, report, snap):
        phase = self._start_phase(report, 'inventory', 'Phase 1: Comparing current system with backup')
        cfg = self.config
        live_dirs = set(discover_stack_dirs(self.host(cfg.tools_path)))
        registered = {}
        try:
            registered = self.stacks.registered()
        except ControlPlaneError as e:
            self.log('WARNING', f"Cannot list stacks in Portainer: {e}")
            phase.warn(f"control plane unavailable: {e}")
        live = live_dirs | set(registered)
        target = self._snapshot_stack_names(snap)
        to_remove = sorted(n for n in live - target if not cfg.is_core_stack(n))
        self.log('INFO', f"Current stacks: {', '.join(sorted(live)) or 'none'}")
        self.log('INFO', f"Stacks in backup: {', '.join(sorted(target)) or 'none'}")
        if to_remove:
            self.log('INFO', f"Stacks to remove (not in backup): {', '.join(to_remove)}")
            try:
                running = self.runtime.running_projects()
            except Exception as e:
                self.log('DEBUG', f"Could not list running projects: {e}")
                running = {}
            busy = [n for n in to_remove if n in running]
            if busy:
                self.log('INFO', f"Running stacks to remove: {', '.join(busy)}")
        return to_remove, registered

    # Phase 2
    def _confirm(self, report, snap, to_remove, confirmed):
        phase = self._start_phase(report, 'confirm', 'Phase 2: Confirmation')
        if confirmed:
            phase.messages.append('confirmed by flag')
            return
        question = f"Restore {snap.id}? All data in the backed-up directories will be replaced"
        if to_remove:
            question += f" and these stacks will be removed: {', '.join(to_remove)}"
        if not self.prompter.confirm(question, default=False):
            phase.status = PHASE_SKIPPED
            raise OperationAborted("restore not confirmed")

    # Phase 3
    def _shutdown(self, report):
        phase = self._start_phase(report, 'shutdown', 'Phase 3: Stopping containers')
        try:
            self.runtime.stop_all_except(self.config.core_stacks)
        except Exception as e:
            self.log('WARNING', f"Could not stop containers: {e}")
            phase.warn(f"could not stop containers: {e}")

    # Phase 4
    def _cleanup(self, report, to_remove, registered):
        phase = self._start_phase(report, 'cleanup', 'Phase 4: Removing stacks not in backup')
        if not to_remove:
            phase.status = PHASE_SKIPPED
            return
        for name in to_remove:
            if name in registered:
                outcome = self.stacks.delete_stack(name, existing=registered)
                if outcome.status == 'failed':
                    phase.warn(f"delete {name}: {outcome.detail}")
            try:
                self.runtime.remove_project(name)
            except Exception as e:
                self.log('WARNING', f"Failed to remove containers of {name}: {e}")
                phase.warn(f"containers of {name}: {e}")
            directory = self.host(self.config.stack_directory(name))
            if directory.is_dir():
                try:
                    shutil.rmtree(directory)
                    self.log('INFO', f"Removed directory {directory}")
                except OSError as e:
                    self.log('WARNING', f"Failed to remove {directory}: {e}")
                    phase.warn(f"directory of {name}: {e}")

    # Phase 5
    def _extract(self, report, snap):
        phase = self._start_phase(report, 'extraction', 'Phase 5: Restoring files')
        cfg = self.config
        for name in (cfg.portainer_stack_name, cfg.npm_stack_name):
            try:
                self.runtime.stop_project(name)
            except Exception as e:
                self.log('WARNING', f"Could not stop {name}: {e}")

        if snap.metadata is not None and snap.metadata.roots:
            roots = snap.metadata.roots
        else:
            roots = archive.archive_roots(archive.list_members(snap.path))
        try:
            for root in roots:
                target = self.host(root)
                self.log('INFO', f"Clearing {target}")
                archive.clear_directory(target)
        except OSError as e:
            message = f"could not clear {target}: {e}"
            self.log('ERROR', message)
            phase.fail(message)
            report.error = message
            report.system_state = "data directories are partially cleared; run the restore again"
            return False
        try:
            archive.extract_archive(snap.path, cfg.restore_root, log_callback=self.log)
        except Exception as e:
            self.log('ERROR', f"Extraction failed: {e}")
            phase.fail(str(e) or e.__class__.__name__)
            report.error = str(e) or e.__class__.__name__
            report.system_state = "data directories are in an unknown state; run the restore again"
            return False

        if snap.metadata is not None:
            replay = metadata.replay(snap.metadata, dest_root=cfg.restore_root)
            self.log('INFO', f"Permissions applied to {replay.applied} entries")
            if replay.failed:
                phase.warn(f"permissions could not be applied to {len(replay.failed)} entries")
            if replay.missing:
                self.log('DEBUG', f"{len(replay.missing)} recorded entries were not present after extraction")

        self.log('INFO', "Starting Portainer from restored data")
        if not self.runtime.compose_up(self.host(cfg.portainer_path)):
            phase.warn("portainer could not be started")
        elif not self.client.wait_until_ready(timeout=cfg.ready_timeout):
            self.log('WARNING', f"Portainer not ready after {cfg.ready_timeout}s")
            phase.warn("portainer not ready")
        return True

    # Phase 6
    def _apply(self, report, snap):
        phase = self._start_phase(report, 'stack-apply', 'Phase 6: Recreating and starting stacks')
        record = snap.stack_state
        if record is None:
            phase.status = PHASE_SKIPPED
            phase.messages.append('no stack state in backup')
            return [], []
        applied = self.stacks.apply(record)
        for outcome in applied.failed:
            phase.warn(f"{outcome.name}: {outcome.status}{' (' + outcome.detail + ')' if outcome.detail else ''}")

        active = [s.name for s in record.stacks if s.is_active]
        startable = [n for n in active if n not in {o.name for o in applied.failed}]
        failed_start = [o.name for o in applied.failed if o.name in active]
        try:
            for outcome in self.stacks.start_stacks(startable):
                if outcome.status == 'failed':
                    failed_start.append(outcome.name)
                    phase.warn(f"could not start {outcome.name}: {outcome.detail}")
        except ControlPlaneError as e:
            phase.warn(f"could not start stacks: {e}")
            failed_start.extend(startable)
            startable = []
        inactive = [s.name for s in record.stacks if not s.is_active]
        if inactive:
            self.log('INFO', f"Left stopped (stopped at backup time): {', '.join(inactive)}")
        return active, sorted(set(failed_start))

    def _run(self, report, selector, confirmed):
        snap = self._load(report, selector)
        if snap is None:
            return
        to_remove, registered = self._inventory(report, snap)
        self._confirm(report, snap, to_remove, confirmed)
        self._shutdown(report)
        self._cleanup(report, to_remove, registered)
        if not self._extract(report, snap):
            return
        expected, failed_start = self._apply(report, snap)
        not_running = self._validate(report, [n for n in expected if n not in failed_start])

        state = "files restored"
        if snap.stack_state is None:
            state += ", stacks not recreated (no stack state in backup)"
        else:
            bad = sorted(set(failed_start) | set(not_running))
            if bad:
                state += f", {len(bad)} of {len(expected)} stacks failed to start ({', '.join(bad)})"
            elif expected:
                state += f", all {len(expected)} stacks running"
            if to_remove:
                state += f", removed {len(to_remove)} stack(s) not in backup"
        report.system_state = state
