"""
Backup export and import of the gateway's persisted state.

Export produces a deterministic .tar.gz (sorted entries, zeroed mtimes and
ownership) streamed to the client while it is being built. Import extracts
an uploaded archive below the data root, dropping any entry whose name
could land outside of it.
"""

import gzip
import os
import queue
import re
import tarfile
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import settings
from dirs import StateDirs, is_under

CHUNK_QUEUE_SIZE = 32
_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")
_SEP_RE = re.compile(r"[\\/]+")


class PayloadTooLarge(Exception):
    pass


class ArchiveIntegrityViolation(Exception):
    """An archive entry would be written outside the extraction root."""


def looks_safe_tar_path(name: str) -> bool:
    if not name:
        return False
    if name.startswith(("/", "\\")):
        return False
    if _DRIVE_RE.match(name):
        return False
    return ".." not in _SEP_RE.split(name)


def both_under_data_root(state_dirs: StateDirs) -> bool:
    root = settings.DATA_ROOT
    return is_under(state_dirs.state_dir, root) and is_under(state_dirs.workspace_dir, root)


def backup_filename(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"openclaw-backup-{now.strftime('%Y-%m-%dT%H-%M-%SZ')}.tar.gz"


# ============================================================
# Export
# ============================================================

def export_plan(state_dirs: StateDirs) -> tuple[Path, list[str]]:
    """
    Return (base, relative paths) to archive.

    Paths are relative to the data root when both dirs live below it, so an
    export can be imported back on another deployment. Otherwise each dir is
    archived by its absolute path from /.
    """
    state_dir = Path(os.path.abspath(state_dirs.state_dir))
    workspace_dir = Path(os.path.abspath(state_dirs.workspace_dir))

    if both_under_data_root(state_dirs):
        base = Path(os.path.abspath(settings.DATA_ROOT))
    else:
        base = Path("/")

    rels = []
    for d in (state_dir, workspace_dir):
        # Workspace is usually inside the state dir; archive it only once.
        if any(is_under(d, base / r) for r in rels):
            continue
        rels.append(os.path.relpath(d, base))
    return base, rels


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    return info


def _join(rel: str, child: str) -> str:
    return child if rel in ("", ".") else f"{rel}/{child}"


def _add_tree(tar: tarfile.TarFile, base: Path, rel: str):
    full = base / rel
    if not full.exists() and not full.is_symlink():
        return
    if rel not in ("", "."):
        tar.add(str(full), arcname=rel, recursive=False, filter=_normalize)
    if full.is_dir() and not full.is_symlink():
        for child in sorted(os.listdir(full)):
            _add_tree(tar, base, _join(rel, child))


def write_archive(fileobj, base: Path, rels: list[str]):
    """Write a reproducible gzip tar of base/rels to a binary file object."""
    with gzip.GzipFile(filename="", mode="wb", fileobj=fileobj, mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w|") as tar:
            for rel in rels:
                _add_tree(tar, base, rel)


class _QueueWriter:
    """File-like sink that hands written chunks to a bounded queue."""

    def __init__(self, q: queue.Queue, cancelled: threading.Event):
        self._q = q
        self._cancelled = cancelled

    def write(self, data) -> int:
        chunk = bytes(data)
        while True:
            if self._cancelled.is_set():
                raise BrokenPipeError("export cancelled by client")
            try:
                self._q.put(chunk, timeout=0.5)
                return len(chunk)
            except queue.Full:
                continue

    def flush(self):
        pass


def stream_archive(state_dirs: StateDirs) -> Iterator[bytes]:
    """
    Yield archive bytes as a producer thread builds the tarball.

    The queue is bounded so memory stays flat for large state dirs; closing
    the iterator early stops the producer.
    """
    for d in state_dirs:
        d.mkdir(parents=True, exist_ok=True)
    base, rels = export_plan(state_dirs)

    q: queue.Queue = queue.Queue(maxsize=CHUNK_QUEUE_SIZE)
    cancelled = threading.Event()
    done = object()

    def produce():
        try:
            write_archive(_QueueWriter(q, cancelled), base, rels)
        except BrokenPipeError:
            return
        except (OSError, tarfile.TarError) as e:
            print(f"[backup] export failed: {e}", flush=True)
        while not cancelled.is_set():
            try:
                q.put(done, timeout=0.5)
                return
            except queue.Full:
                continue

    producer = threading.Thread(target=produce, name="backup-export", daemon=True)
    producer.start()
    try:
        while True:
            item = q.get()
            if item is done:
                break
            yield item
    finally:
        cancelled.set()


# ============================================================
# Import
# ============================================================

async def read_body_limited(request, max_bytes: int) -> bytes:
    """Read a request body, raising PayloadTooLarge past max_bytes."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLarge(f"Payload too large (max {max_bytes} bytes)")

    chunks = []
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > max_bytes:
            raise PayloadTooLarge(f"Payload too large (max {max_bytes} bytes)")
        chunks.append(chunk)
    return b"".join(chunks)


def _check_member(member: tarfile.TarInfo, dest: str) -> tarfile.TarInfo:
    if not looks_safe_tar_path(member.name):
        raise ArchiveIntegrityViolation(f"unsafe entry name: {member.name!r}")
    try:
        return tarfile.data_filter(member, dest)
    except tarfile.FilterError as e:
        raise ArchiveIntegrityViolation(str(e)) from e


def extract_archive(archive_path: Path, dest: Path) -> dict:
    """Extract a .tar.gz into dest, skipping every unsafe entry."""
    extracted = 0
    skipped = []

    def entry_filter(member, path):
        nonlocal extracted
        try:
            checked = _check_member(member, path)
        except ArchiveIntegrityViolation as e:
            print(f"[backup] skipping entry: {e}", flush=True)
            skipped.append(member.name)
            return None
        extracted += 1
        return checked

    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive_path, mode="r:gz") as tar:
        tar.extractall(path=dest, filter=entry_filter)
    return {"extracted": extracted, "skipped": skipped}


def import_archive(data: bytes, dest: Optional[Path] = None) -> dict:
    """Write the upload to a private temp file and extract it below dest."""
    dest = dest or settings.DATA_ROOT
    fd, tmp_name = tempfile.mkstemp(prefix="openclaw-import-", suffix=".tar.gz")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp_path, 0o600)
        return extract_archive(tmp_path, dest)
    finally:
        tmp_path.unlink(missing_ok=True)
