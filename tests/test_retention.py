import os
from datetime import timedelta

from stackbackup import retention
from stackbackup.utils import now, snapshot_id


def _snap(directory, age_days, name=None, size=10):
    path = directory / f"{snapshot_id(now() - timedelta(days=age_days), name)}.tar.gz"
    path.write_bytes(b'x' * size)
    return path


def test_keep_count_removes_oldest_by_embedded_timestamp(tmp_path):
    snaps = [_snap(tmp_path, age) for age in (1, 2, 3, 4, 5)]
    # mtimes in reverse order must not influence the selection
    for i, p in enumerate(snaps):
        os.utime(p, (1_000_000 + i, 1_000_000 + i))

    summary = retention.prune(tmp_path, keep_count=3)
    assert sorted(summary.removed) == sorted(p.name for p in snaps[3:])
    assert summary.kept == [p.name for p in snaps[:3]]
    assert summary.reclaimed_bytes == 20
    assert [p.exists() for p in snaps] == [True, True, True, False, False]


def test_in_progress_and_foreign_files_are_never_touched(tmp_path):
    snaps = [_snap(tmp_path, age) for age in (1, 2, 3)]
    tmp_file = tmp_path / (snaps[2].name + '.tmp')
    tmp_file.write_bytes(b'partial')
    other = tmp_path / 'recovery_restore_20240101_000000.json'
    other.write_text('{}')

    retention.prune(tmp_path, keep_count=1)
    assert tmp_file.exists()
    assert other.exists()
    assert [p.exists() for p in snaps] == [True, False, False]


def test_keep_days(tmp_path):
    young = _snap(tmp_path, 1)
    old = _snap(tmp_path, 10, 'manual')
    summary = retention.prune(tmp_path, keep_days=7)
    assert summary.removed == [old.name]
    assert young.exists() and not old.exists()


def test_either_rule_keeps_a_snapshot(tmp_path):
    snaps = [_snap(tmp_path, age) for age in (1, 2, 20, 30)]
    summary = retention.prune(tmp_path, keep_count=3, keep_days=7)
    assert summary.removed == [snaps[3].name]


def test_dry_run_and_no_policy(tmp_path):
    snaps = [_snap(tmp_path, age) for age in (1, 2, 3)]
    logs = []
    summary = retention.prune(tmp_path, keep_count=1, dry_run=True, log_callback=lambda lvl, msg: logs.append(msg))
    assert len(summary.removed) == 2
    assert all(p.exists() for p in snaps)
    assert any(msg.startswith('Would delete') for msg in logs)

    summary = retention.prune(tmp_path)
    assert summary.removed == []
    assert len(summary.kept) == 3


def test_scan_snapshots_newest_first(tmp_path):
    old = _snap(tmp_path, 5)
    new = _snap(tmp_path, 1, 'pre-migration')
    assert [p for _, p in retention.scan_snapshots(tmp_path)] == [new, old]
    assert retention.scan_snapshots(tmp_path / 'missing') == []
