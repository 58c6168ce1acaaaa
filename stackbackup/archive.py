"""
Snapshot archive creation and extraction.

Archives are gzip-compressed tar streams holding each backed-up directory tree
at its original path (relative to /) plus JSON side files at the archive root.
Owner, group and the full mode of every entry are stored; extraction restores
modes exactly regardless of umask and restores ownership when running as root.
"""
import io
import json
import os
import shutil
import tarfile
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from stackbackup.errors import ArchiveError, ExtractionError
from stackbackup.models import METADATA_FILE, STACK_STATE_FILE
from stackbackup.utils import get_logger, strip_root, format_bytes, is_privileged

logger = get_logger(__name__)

SIDE_FILES = (METADATA_FILE, STACK_STATE_FILE)
TMP_SUFFIX = '.tmp'


@dataclass
class ArchiveRef:
    path: Path
    size_bytes: int = 0


@dataclass
class ExtractedTree:
    dest_root: Path
    roots: list = field(default_factory=list)
    member_count: int = 0
    side_files: dict = field(default_factory=dict)


def _make_log(log_callback):
    def log(level, msg):
        if log_callback:
            log_callback(level, msg)
        elif level == 'ERROR':
            logger.error("%s", msg)
        elif level == 'WARNING':
            logger.warning("%s", msg)
        elif level == 'DEBUG':
            logger.debug("%s", msg)
        else:
            logger.info("%s", msg)
    return log


def _side_file_bytes(content):
    if isinstance(content, bytes):
        return content
    if isinstance(content, str):
        return content.encode('utf-8')
    return json.dumps(content, indent=2, sort_keys=False).encode('utf-8')


def create_archive(roots, extra_files, destination, log_callback=None, base_dir='/'):
    """Package directory ``roots`` plus in-memory ``extra_files`` into ``destination``.

    Args:
        roots: Absolute directory paths to include, stored at their path relative to /
        extra_files: Mapping of archive-root file name -> dict/str/bytes content
        destination: Final archive path (.tar.gz)
        log_callback: Optional ``log(level, message)`` function
        base_dir: Filesystem root the ``roots`` are resolved under

    Returns:
        ArchiveRef for the completed archive

    The archive is written under a temporary name and renamed into place only
    when complete, so a partially written file never carries a snapshot name.
    """
    log = _make_log(log_callback)
    destination = Path(destination)
    tmp_path = destination.with_name(destination.name + TMP_SUFFIX)

    usable = []
    for root in roots:
        if not os.path.isabs(str(root)):
            raise ArchiveError(f"Backup root must be absolute: {root}")
        real = Path(base_dir) / strip_root(root)
        if real.is_dir():
            usable.append((str(root), real))
        else:
            log('WARNING', f"Directory not found: {root} (will be skipped)")
    if not usable:
        raise ArchiveError("No backup roots exist; nothing to archive")

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArchiveError(f"Cannot create backup directory {destination.parent}: {e}") from e

    log('INFO', f"Creating archive {destination.name} with: {', '.join(r for r, _ in usable)}")
    try:
        with tarfile.open(tmp_path, 'w:gz') as tar:
            for root, real in usable:
                tar.add(str(real), arcname=strip_root(root), recursive=True)
            for name, content in (extra_files or {}).items():
                data = _side_file_bytes(content)
                info = tarfile.TarInfo(name=name)
                info.size = len(data)
                info.mode = 0o644
                info.mtime = int(time.time())
                tar.addfile(info, io.BytesIO(data))
        os.replace(tmp_path, destination)
    except (OSError, tarfile.TarError) as e:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise ArchiveError(f"Failed to create archive {destination}: {e}") from e

    size = destination.stat().st_size
    log('INFO', f"Archive created: {destination} ({format_bytes(size)})")
    return ArchiveRef(path=destination, size_bytes=size)


def _open(ref, exc_class=ArchiveError):
    path = Path(ref.path if isinstance(ref, ArchiveRef) else ref)
    if not path.is_file():
        raise exc_class(f"Archive not found: {path}")
    try:
        return tarfile.open(path, 'r:gz')
    except (OSError, tarfile.TarError, EOFError) as e:
        raise exc_class(f"Archive {path} is unreadable or corrupt: {e}") from e


def _is_safe_name(name):
    p = PurePosixPath(name)
    return not p.is_absolute() and '..' not in p.parts and name not in ('', '.')


def list_members(ref):
    """Return the member names of an archive."""
    with _open(ref) as tar:
        try:
            return tar.getnames()
        except (OSError, tarfile.TarError, EOFError) as e:
            raise ArchiveError(f"Archive {ref} is corrupt: {e}") from e


def archive_roots(names):
    """Top-level backed-up directories: members whose parent is not itself a member."""
    members = set(n.rstrip('/') for n in names)
    roots = []
    for name in sorted(members):
        if name in SIDE_FILES:
            continue
        parent = str(PurePosixPath(name).parent)
        if parent == '.' or parent not in members:
            roots.append('/' + name)
    return roots


def read_side_file(ref, name):
    """Return the parsed JSON side file ``name`` or None when absent or malformed."""
    with _open(ref) as tar:
        try:
            member = tar.getmember(name)
        except KeyError:
            return None
        except (OSError, tarfile.TarError, EOFError) as e:
            raise ArchiveError(f"Archive {ref} is corrupt: {e}") from e
        fh = tar.extractfile(member)
        if fh is None:
            return None
        try:
            return json.loads(fh.read().decode('utf-8'))
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("Side file %s is not valid JSON: %s", name, e)
            return None


def verify_archive(ref):
    """Read every member through to detect truncation or corruption.

    Returns the number of members; raises ArchiveError on any read failure
    or on a hard link whose target is not stored before it.
    """
    count = 0
    seen = set()
    with _open(ref) as tar:
        try:
            for member in tar:
                count += 1
                if member.islnk() and member.linkname.rstrip('/') not in seen:
                    raise ArchiveError(
                        f"Archive {ref} failed integrity check: hard link target missing: "
                        f"{member.name} -> {member.linkname}"
                    )
                seen.add(member.name.rstrip('/'))
                if member.isfile():
                    fh = tar.extractfile(member)
                    while fh.read(1024 * 1024):
                        pass
        except (OSError, tarfile.TarError, EOFError) as e:
            raise ArchiveError(f"Archive {ref} failed integrity check: {e}") from e
    return count


def clear_directory(path):
    """Remove the contents of ``path`` (not the directory itself)."""
    p = Path(path)
    if not p.is_dir():
        return
    for child in p.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def extract_archive(ref, dest_root='/', log_callback=None):
    """Extract an archive's trees under ``dest_root``.

    Side files are returned parsed instead of being written into the tree.
    Any member that cannot be created raises ExtractionError; there is no
    partial-success mode.
    """
    log = _make_log(log_callback)
    dest_root = Path(dest_root)
    if not is_privileged():
        log('WARNING', "Not running as root: file ownership will not be restored")

    tree = ExtractedTree(dest_root=dest_root)
    with _open(ref, ExtractionError) as tar:
        try:
            members = tar.getmembers()
        except (OSError, tarfile.TarError, EOFError) as e:
            raise ExtractionError(f"Archive {ref} is corrupt: {e}") from e

        to_extract = []
        seen = set()
        for m in members:
            if not _is_safe_name(m.name):
                raise ExtractionError(f"Refusing unsafe archive member: {m.name}")
            if m.islnk():
                if not _is_safe_name(m.linkname):
                    raise ExtractionError(f"Refusing unsafe hard link: {m.name} -> {m.linkname}")
                # hard links can only point at an entry extracted before them
                if m.linkname.rstrip('/') not in seen:
                    raise ExtractionError(f"Hard link target missing from archive: {m.name} -> {m.linkname}")
            if m.name in SIDE_FILES:
                fh = tar.extractfile(m)
                try:
                    tree.side_files[m.name] = json.loads(fh.read().decode('utf-8'))
                except (ValueError, UnicodeDecodeError):
                    log('WARNING', f"Side file {m.name} is malformed and was ignored")
                continue
            if m.isdev():
                log('WARNING', f"Skipping device node {m.name}")
                continue
            to_extract.append(m)
            seen.add(m.name.rstrip('/'))

        tree.roots = archive_roots(m.name for m in to_extract)
        log('INFO', f"Extracting {len(to_extract)} entries into {dest_root}")
        # errorlevel 2: failures to set owner, mode or link targets are raised too
        tar.errorlevel = 2
        kwargs = {}
        if hasattr(tarfile, 'fully_trusted_filter'):
            # member names are validated above; the trusted filter keeps modes and owners intact
            kwargs['filter'] = 'fully_trusted'
        try:
            tar.extractall(path=str(dest_root), members=to_extract, **kwargs)
        except (OSError, tarfile.TarError, EOFError, KeyError, ValueError) as e:
            raise ExtractionError(f"Extraction failed: {e}") from e

    tree.member_count = len(to_extract)
    log('INFO', f"Extraction completed: {tree.member_count} entries restored")
    return tree
