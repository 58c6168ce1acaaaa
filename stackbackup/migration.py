"""
Data-root migration.

Moves the Portainer, nginx-proxy-manager, tools and backup roots to new
locations and rewires everything that refers to the old paths: the stored
stack definitions, the compose files on disk and the configuration file.
A snapshot is taken first so a failed migration can be rolled back with the
regular restore pipeline.
"""
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from stackbackup import metadata
from stackbackup.errors import ConfigError, ControlPlaneError, OperationAborted
from stackbackup.executor import (
    BackupExecutor,
    BaseExecutor,
    OperationReport,
    RestoreExecutor,
    load_side_files,
    resolve_snapshot,
)
from stackbackup.locking import OperationLock
from stackbackup.models import StackDescriptor
from stackbackup.stacks import find_compose_file, make_path_rewriter, rewrite_descriptor

PATH_KEYS = ('portainer_path', 'npm_path', 'tools_path', 'backup_path')


@dataclass
class MigrationReport(OperationReport):
    old_paths: Dict[str, str] = field(default_factory=dict)
    new_paths: Dict[str, str] = field(default_factory=dict)
    moved: List[str] = field(default_factory=list)
    rollback_snapshot: Optional[str] = None
    config_saved: bool = False


class MigrationController(BaseExecutor):
    """Move data roots to new paths and redeploy stacks against them."""

    operation = 'migrate'

    def __init__(self, config, client=None, runtime=None, prompter=None, sleep=time.sleep):
        super().__init__(config, client=client, runtime=runtime, prompter=prompter, sleep=sleep)
        self.original_config = config

    def _validate_changes(self, path_changes):
        changes = {}
        for key, value in (path_changes or {}).items():
            if key not in PATH_KEYS:
                raise ConfigError(f"Unknown path setting: {key}")
            if value is None:
                continue
            if not os.path.isabs(value):
                raise ConfigError(f"{key} must be an absolute path, got {value!r}")
            value = value.rstrip('/') or '/'
            if value != getattr(self.config, key):
                changes[key] = value
        for key, new in changes.items():
            target = self.host(new)
            if target.exists() and (not target.is_dir() or any(target.iterdir())):
                raise ConfigError(f"Target for {key} already exists and is not empty: {new}")
        return changes

    def run(self, path_changes, confirmed=False):
        start_time = time.time()
        report = MigrationReport(self.operation)
        changes = self._validate_changes(path_changes)
        report.old_paths = {k: getattr(self.config, k) for k in PATH_KEYS}
        report.new_paths = dict(report.old_paths, **changes)

        with OperationLock(self.config.lock_dir, self.operation):
            if not changes:
                phase = self._start_phase(report, 'config', 'Saving configuration')
                self.log('INFO', "No path changes; updating configuration only")
                self.config.save()
                report.config_saved = True
                phase.messages.append('no path changes')
                report.system_state = "configuration saved, no data moved"
            else:
                try:
                    self._run(report, changes, confirmed)
                except OperationAborted as e:
                    self.log('WARNING', f"Migration aborted: {e}")
                    report.status = 'aborted'
                    report.error = str(e)
                    report.system_state = "no changes were made"
        return self._finish(report, start_time)

    def _inventory(self, report, confirmed):
        phase = self._start_phase(report, 'inventory', 'Step 1: Inventorying deployed stacks')
        try:
            record = self.stacks.capture()
        except ControlPlaneError as e:
            self.log('ERROR', f"Cannot inventory stacks: {e}")
            phase.fail(str(e))
            report.error = str(e)
            report.system_state = "no changes were made"
            return None
        extra = [s.name for s in record.stacks if not self.config.is_core_stack(s.name)]
        self.log('INFO', f"Found {len(record.stacks)} deployed stacks")
        if extra and not confirmed:
            self.log('WARNING', f"Found stacks beyond the Portainer + nginx-proxy-manager setup: {', '.join(extra)}")
            self.log('WARNING', "This migration is more complex and may require manual intervention")
            if not self.prompter.confirm("Continue with complex migration?", default=False):
                raise OperationAborted("migration not confirmed")
        return record

    def _snapshot(self, report):
        phase = self._start_phase(report, 'rollback-snapshot', 'Step 2: Creating pre-migration backup')
        backup = BackupExecutor(self.config, client=self.client, runtime=self.runtime,
                                prompter=self.prompter, sleep=self._sleep)
        result = backup.run(custom_name='pre-migration', run_retention=False, hold_lock=False)
        self.log_buffer.extend(backup.log_buffer)
        if result.status == 'failed':
            phase.fail(result.summary())
            report.error = "pre-migration backup failed"
            report.system_state = "no changes were made"
            return False
        report.rollback_snapshot = result.snapshot_path
        report.snapshot_id = result.snapshot_id
        self.log('INFO', f"Rollback snapshot: {result.snapshot_path}")
        return True

    def _move(self, report, changes):
        phase = self._start_phase(report, 'move', 'Step 4: Moving data directories')
        # parents before children so nested roots travel with their parent
        done = {}
        for key in sorted(changes, key=lambda k: len(getattr(self.config, k))):
            old, new = getattr(self.config, key), changes[key]
            current = make_path_rewriter(done)(old)
            src, dst = self.host(current), self.host(new)
            if not src.exists():
                self.log('WARNING', f"{key}: {old} does not exist, nothing to move")
                done[old] = new
                continue
            self.log('INFO', f"Migrating {key}: {old} -> {new}")
            try:
                dst.parent.mkdir(parents=True, exist_ok=True)
                if dst.is_dir():
                    dst.rmdir()
                try:
                    os.rename(src, dst)
                except OSError:
                    # different filesystem
                    shutil.move(str(src), str(dst))
            except OSError as e:
                self.log('ERROR', f"Failed to move {old} to {new}: {e}")
                phase.fail(f"{key}: {e}")
                report.error = f"could not move {old}"
                return done, False
            done[old] = new
            report.moved.append(key)
        return done, True

    def _restore_ownership(self, report, mapping):
        if not report.rollback_snapshot:
            return
        snap = resolve_snapshot(self.config, report.rollback_snapshot)
        load_side_files(snap)
        if snap.metadata is None:
            return
        replay = metadata.replay(snap.metadata, root_mapping=mapping, dest_root=self.config.restore_root)
        self.log('INFO', f"Ownership and permissions re-applied to {replay.applied} entries")

    def _rewrite_compose_files(self, phase, rewriter):
        for directory in (self.config.portainer_path, self.config.npm_path):
            host_dir = self.host(directory)
            name = find_compose_file(host_dir)
            if not name:
                continue
            path = host_dir / name
            try:
                text = path.read_text(encoding='utf-8')
                updated = rewriter(text)
                if updated != text:
                    st = path.stat()
                    path.write_text(updated, encoding='utf-8')
                    os.chmod(path, st.st_mode & 0o7777)
                    self.log('INFO', f"Updated paths in {path}")
            except OSError as e:
                self.log('WARNING', f"Failed to update {path}: {e}")
                phase.warn(f"{path}: {e}")

    def _run(self, report, changes, confirmed):
        record = self._inventory(report, confirmed)
        if record is None:
            return
        if not self._snapshot(report):
            return

        phase = self._start_phase(report, 'stop', 'Step 3: Stopping containers')
        try:
            self.runtime.stop_all_except([])
        except Exception as e:
            phase.warn(f"could not stop containers: {e}")

        mapping, ok = self._move(report, changes)
        if report.rollback_snapshot and 'backup_path' in report.moved:
            moved_to = self.host(changes['backup_path']) / Path(report.rollback_snapshot).name
            report.rollback_snapshot = str(moved_to)
        if not ok:
            report.system_state = f"data partially moved; roll back with {report.rollback_snapshot}"
            return

        rewriter = make_path_rewriter(mapping)
        new_paths = {k: rewriter(getattr(self.config, k)) for k in PATH_KEYS}
        self.config = self.config.with_paths(**new_paths)
        self.stacks.config = self.config
        report.new_paths = new_paths
        try:
            self._restore_ownership(report, mapping)
        except Exception as e:
            self.log('WARNING', f"Could not re-apply ownership: {e}")

        phase = self._start_phase(report, 'rewrite', 'Step 5: Updating configuration for new paths')
        self._rewrite_compose_files(phase, rewriter)
        try:
            self.config.save()
            report.config_saved = True
        except OSError as e:
            self.log('ERROR', f"Could not save configuration: {e}")
            phase.fail(str(e))
            report.error = "configuration not saved"
            report.system_state = f"data moved but configuration still has the old paths; roll back with {report.rollback_snapshot}"
            return

        phase = self._start_phase(report, 'restart', 'Step 6: Restarting Portainer and stacks')
        if not self.runtime.compose_up(self.host(self.config.portainer_path)) or \
                not self.client.wait_until_ready(timeout=self.config.ready_timeout):
            phase.fail("portainer did not come back")
            report.error = "portainer did not start from the new location"
            report.system_state = f"data moved, Portainer down; roll back with {report.rollback_snapshot}"
            return

        redeployed = []
        for entry in record.stacks:
            if entry.name == self.config.portainer_stack_name or not isinstance(entry, StackDescriptor):
                continue
            outcome = self.stacks.redeploy_stack(rewrite_descriptor(entry, rewriter))
            if outcome.status == 'redeployed':
                redeployed.append(entry.name)
            else:
                phase.warn(f"{entry.name}: {outcome.status} {outcome.detail or ''}".strip())
        active = [s.name for s in record.stacks if s.is_active and s.name != self.config.portainer_stack_name]
        for outcome in self.stacks.start_stacks(active):
            if outcome.status == 'failed':
                phase.warn(f"could not start {outcome.name}: {outcome.detail}")

        not_running = self._validate(report, active)
        state = f"data moved to new paths, {len(redeployed)} stack(s) redeployed"
        if not_running:
            state += f", {len(not_running)} of {len(active)} stacks not running ({', '.join(not_running)})"
        report.system_state = state

    def rollback(self, report):
        """Restore the pre-migration snapshot with the pre-migration paths."""
        if not report.rollback_snapshot:
            raise ConfigError("Migration report has no rollback snapshot")
        return rollback_to_snapshot(
            self.original_config, report.rollback_snapshot,
            client=self.client, runtime=self.runtime, prompter=self.prompter, sleep=self._sleep,
            confirmed=True, leftovers=[v for k, v in report.new_paths.items() if k in report.moved],
        )


def rollback_to_snapshot(config, selector, client=None, runtime=None, prompter=None, sleep=time.sleep,
                         confirmed=False, leftovers=None):
    """Restore ``selector`` using the data paths recorded inside the snapshot.

    The configuration file is rewritten with those paths once the files are
    back. Directories at the migrated locations are left in place and listed
    in the log for manual removal.
    """
    snap = resolve_snapshot(config, selector)
    load_side_files(snap)
    recorded = snap.metadata.paths if snap.metadata else {}
    keys = {'portainer': 'portainer_path', 'npm': 'npm_path', 'tools': 'tools_path', 'backup': 'backup_path'}
    old_paths = {attr: recorded[name] for name, attr in keys.items() if recorded.get(name)}
    old_config = config.with_paths(**old_paths)
    # the snapshot may live in the migrated backup directory
    selector = str(snap.path)

    executor = RestoreExecutor(old_config, client=client, runtime=runtime, prompter=prompter, sleep=sleep)
    executor.operation = 'rollback'
    result = executor.run(selector, confirmed=confirmed)
    if result.status in ('success', 'partial'):
        try:
            old_config.save()
            executor.log('INFO', "Configuration restored to pre-migration paths")
        except OSError as e:
            executor.log('ERROR', f"Could not save configuration: {e}")
        for path in leftovers or []:
            if Path(old_config.host_path(path)).exists():
                executor.log('WARNING', f"Migrated data left at {path}; remove it manually once the rollback is verified")
        result.log_lines = list(executor.log_buffer)
    return result

