"""
Permission/ownership recording and replay.

The archive already carries modes and owners, but restores onto a host with
different users, or into moved roots during migration, need an explicit list
to re-apply. The list also records the system the backup was taken on so a
restore can warn about architecture changes.
"""
import grp
import os
import platform
import pwd
import socket
import stat
from pathlib import Path

from stackbackup import __version__
from stackbackup.models import ArchMismatch, MetadataRecord, PathPermission, ReplayReport, SystemFingerprint
from stackbackup.utils import get_logger, now, to_iso_z, strip_root, is_privileged

logger = get_logger(__name__)

OS_RELEASE = '/etc/os-release'


def _owner_name(uid):
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid):
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def _entry(path, base_dir):
    st = os.lstat(path)
    return PathPermission(
        path=os.path.relpath(path, base_dir),
        owner=_owner_name(st.st_uid),
        group=_group_name(st.st_gid),
        mode=format(stat.S_IMODE(st.st_mode), 'o'),
    )


def collect_permissions(root, base_dir='/'):
    """Walk ``root`` (without following symlinks) and return a PathPermission per entry.

    Paths are recorded relative to ``base_dir`` with no leading slash.
    """
    real = Path(base_dir) / strip_root(root)
    entries = []
    if not real.exists():
        return entries
    entries.append(_entry(real, base_dir))

    def walk_error(err):
        logger.warning("Cannot read %s, its contents are not recorded: %s", err.filename, err)

    for dirpath, dirnames, filenames in os.walk(real, onerror=walk_error, followlinks=False):
        for name in sorted(dirnames) + sorted(filenames):
            full = os.path.join(dirpath, name)
            try:
                entries.append(_entry(full, base_dir))
            except OSError as e:
                logger.warning("Cannot stat %s: %s", full, e)
    return entries


def _os_pretty_name():
    try:
        with open(OS_RELEASE, encoding='utf-8') as fh:
            for line in fh:
                if line.startswith('PRETTY_NAME='):
                    return line.split('=', 1)[1].strip().strip('"')
    except OSError:
        pass
    return platform.system()


def _docker_version():
    try:
        import docker
        client = docker.from_env()
        try:
            return str(client.version().get('Version') or 'Unknown')
        finally:
            client.close()
    except Exception as e:
        logger.debug("Could not query docker version: %s", e)
        return 'Unknown'


def current_fingerprint():
    """Describe the running host."""
    uname = platform.uname()
    return SystemFingerprint(
        hostname=socket.gethostname(),
        kernel=uname.release,
        architecture=uname.machine,
        os=_os_pretty_name(),
        docker_version=_docker_version(),
    )


def record(roots, paths=None, tool_version=None, fingerprint=None, base_dir='/'):
    """Build a MetadataRecord for the given directory roots.

    Args:
        roots: Absolute directories that go into the archive
        paths: Named data roots (portainer/npm/tools) to store for reference
        tool_version: Version string stored as ``script_version``
        fingerprint: Pre-computed SystemFingerprint (computed when omitted)
        base_dir: Filesystem root the ``roots`` are resolved under
    """
    permissions = []
    recorded_roots = []
    for root in roots:
        if not (Path(base_dir) / strip_root(root)).is_dir():
            continue
        recorded_roots.append(str(root))
        permissions.extend(collect_permissions(root, base_dir))
    return MetadataRecord(
        timestamp=to_iso_z(now()),
        tool_version=tool_version or __version__,
        system=fingerprint or current_fingerprint(),
        paths=dict(paths or {}),
        roots=recorded_roots,
        permissions=permissions,
    )


def _remap(path, root_mapping):
    """Rewrite a leading root prefix of ``path`` (both without leading '/')."""
    for old, new in (root_mapping or {}).items():
        old_rel = strip_root(old).rstrip('/')
        new_rel = strip_root(new).rstrip('/')
        if path == old_rel:
            return new_rel
        if path.startswith(old_rel + '/'):
            return new_rel + path[len(old_rel):]
    return path


def _lookup_uid(name):
    if name.isdigit():
        return int(name)
    try:
        return pwd.getpwnam(name).pw_uid
    except KeyError:
        return None


def _lookup_gid(name):
    if name.isdigit():
        return int(name)
    try:
        return grp.getgrnam(name).gr_gid
    except KeyError:
        return None


def replay(metadata, root_mapping=None, dest_root='/'):
    """Re-apply recorded modes and owners.

    Mode is always applied; owner/group only when running privileged and the
    named user and group exist on this host. Individual failures are counted,
    never raised.
    """
    report = ReplayReport()
    privileged = is_privileged()
    dest_root = Path(dest_root)

    for perm in metadata.permissions:
        rel = _remap(perm.path, root_mapping)
        target = dest_root / rel
        if not os.path.lexists(target):
            report.missing.append(rel)
            continue
        try:
            # symlink modes are not meaningful on Linux
            if not os.path.islink(target) and perm.mode:
                os.chmod(target, int(perm.mode, 8))
            if privileged:
                uid = _lookup_uid(perm.owner)
                gid = _lookup_gid(perm.group)
                if uid is not None and gid is not None:
                    os.lchown(target, uid, gid)
            report.applied += 1
        except (OSError, ValueError) as e:
            logger.debug("Could not apply permissions to %s: %s", target, e)
            report.failed.append(rel)

    return report


def compare_fingerprint(metadata, current=None):
    """Return ArchMismatch when the recorded architecture differs from this host."""
    recorded = (metadata.system.architecture or '').strip()
    if not recorded:
        return None
    if current is None:
        current = platform.machine()
    if recorded != current:
        return ArchMismatch(recorded=recorded, current=current)
    return None
