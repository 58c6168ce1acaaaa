import os
import shutil
import stat

import pytest

from stackbackup import metadata
from stackbackup.models import MetadataRecord, SystemFingerprint


def _fingerprint(arch='x86_64'):
    return SystemFingerprint(hostname='docker01', kernel='6.1.0', architecture=arch, os='Debian GNU/Linux 12')


def _make_tree(base):
    root = base / 'opt' / 'tools' / 'gitea'
    (root / 'data').mkdir(parents=True)
    (root / 'data' / 'app.ini').write_text('[server]\n')
    os.chmod(root / 'data' / 'app.ini', 0o600)
    os.chmod(root / 'data', 0o750)
    return root


def test_record_lists_every_entry_relative_to_base(tmp_path):
    _make_tree(tmp_path)
    rec = metadata.record(['/opt/tools/gitea', '/opt/tools/missing'], paths={'tools': '/opt/tools'},
                          fingerprint=_fingerprint(), base_dir=str(tmp_path))
    assert rec.roots == ['/opt/tools/gitea']
    by_path = {p.path: p for p in rec.permissions}
    assert set(by_path) == {'opt/tools/gitea', 'opt/tools/gitea/data', 'opt/tools/gitea/data/app.ini'}
    assert by_path['opt/tools/gitea/data/app.ini'].mode == '600'
    assert by_path['opt/tools/gitea/data'].mode == '750'
    assert rec.paths == {'tools': '/opt/tools'}


def test_record_serializes_with_archive_key_names(tmp_path):
    _make_tree(tmp_path)
    rec = metadata.record(['/opt/tools/gitea'], fingerprint=_fingerprint(), base_dir=str(tmp_path))
    doc = rec.to_dict()
    assert doc['backup_version'] == '1.0'
    assert doc['system']['architecture'] == 'x86_64'
    assert {'path', 'permissions', 'owner', 'group'} <= set(doc['permissions'][0])
    again = MetadataRecord.from_dict(doc)
    assert again.permissions == rec.permissions
    assert again.roots == rec.roots


def test_current_fingerprint_uses_docker_version():
    fp = metadata.current_fingerprint()
    assert fp.docker_version == '24.0.7'
    assert fp.architecture


def test_replay_restores_modes_and_reports_missing(tmp_path):
    root = _make_tree(tmp_path)
    rec = metadata.record(['/opt/tools/gitea'], fingerprint=_fingerprint(), base_dir=str(tmp_path))
    os.chmod(root / 'data' / 'app.ini', 0o666)
    (root / 'data' / 'app.ini').unlink()
    os.chmod(root / 'data', 0o777)

    report = metadata.replay(rec, dest_root=str(tmp_path))
    assert stat.S_IMODE(os.stat(root / 'data').st_mode) == 0o750
    assert report.missing == ['opt/tools/gitea/data/app.ini']
    assert report.applied == 2
    assert report.failed == []


def test_replay_with_root_mapping(tmp_path):
    _make_tree(tmp_path)
    rec = metadata.record(['/opt/tools/gitea'], fingerprint=_fingerprint(), base_dir=str(tmp_path))
    os.rename(tmp_path / 'opt' / 'tools', tmp_path / 'srv')
    moved = tmp_path / 'srv' / 'gitea' / 'data' / 'app.ini'
    os.chmod(moved, 0o644)

    report = metadata.replay(rec, root_mapping={'/opt/tools': '/srv'}, dest_root=str(tmp_path))
    assert report.missing == []
    assert stat.S_IMODE(os.stat(moved).st_mode) == 0o600


def test_compare_fingerprint():
    rec = MetadataRecord(timestamp='', tool_version='', system=_fingerprint('aarch64'), paths={})
    mismatch = metadata.compare_fingerprint(rec, current='x86_64')
    assert mismatch.recorded == 'aarch64'
    assert 'aarch64' in str(mismatch) and 'x86_64' in str(mismatch)
    assert metadata.compare_fingerprint(rec, current='aarch64') is None
    rec.system.architecture = ''
    assert metadata.compare_fingerprint(rec, current='x86_64') is None


@pytest.mark.skipif(not hasattr(os, 'geteuid') or os.geteuid() != 0, reason='requires root')
def test_replay_applies_owners_under_moved_root(tmp_path):
    root = _make_tree(tmp_path)
    os.chown(root / 'data', 1234, 2345)
    os.chown(root / 'data' / 'app.ini', 4321, 5432)
    rec = metadata.record(['/opt/tools/gitea'], fingerprint=_fingerprint(), base_dir=str(tmp_path))

    moved = tmp_path / 'srv' / 'tools' / 'gitea'
    moved.parent.mkdir(parents=True)
    shutil.move(str(root), str(moved))
    for path in (moved, moved / 'data', moved / 'data' / 'app.ini'):
        os.lchown(path, 0, 0)

    report = metadata.replay(rec, root_mapping={'/opt/tools': '/srv/tools'}, dest_root=str(tmp_path))
    assert report.failed == [] and report.missing == []
    assert (os.stat(moved / 'data').st_uid, os.stat(moved / 'data').st_gid) == (1234, 2345)
    assert (os.stat(moved / 'data' / 'app.ini').st_uid, os.stat(moved / 'data' / 'app.ini').st_gid) == (4321, 5432)


@pytest.mark.skipif(hasattr(os, 'geteuid') and os.geteuid() == 0, reason='root can read any directory')
def test_unreadable_directory_is_reported(tmp_path, caplog):
    root = _make_tree(tmp_path)
    os.chmod(root / 'data', 0o000)
    try:
        entries = metadata.collect_permissions('/opt/tools/gitea', base_dir=str(tmp_path))
    finally:
        os.chmod(root / 'data', 0o750)
    assert 'opt/tools/gitea/data' in {e.path for e in entries}
    assert any('Cannot read' in r.getMessage() and 'data' in r.getMessage() for r in caplog.records)
