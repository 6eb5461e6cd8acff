"""
File-system backed persistence for keys, certificates, chains and CSRs.

Every write goes to a temporary file in the destination directory and is
renamed into place, so readers only ever see complete artifacts. Private
keys are written with mode 0600, everything else with 0644.
"""
import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from cryptography import x509

from ..models.errors import MaterialIOError

if os.name != "nt":
    import fcntl
else:
    fcntl = None


KEY = "key"
CERT = "cert"
CHAIN = "chain"
CSR = "csr"

KIND_SUFFIXES = {
    KEY: "-key.pem",
    CERT: ".pem",
    CHAIN: ".pem",
    CSR: ".csr",
}

KEY_MODE = 0o600
PUBLIC_MODE = 0o644

# One in-process lock per lock file; flock alone does not order threads
# sharing an open file description.
_thread_locks: Dict[str, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def _thread_lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _thread_locks_guard:
        if key not in _thread_locks:
            _thread_locks[key] = threading.Lock()
        return _thread_locks[key]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


StoreEntry = Tuple[str, str, bytes]


class MaterialStore:
    """Idempotent, permission-aware store rooted at one PKI directory."""

    def __init__(self, root_dir: Union[str, Path], clock: Optional[Callable[[], datetime]] = None):
        self.root = Path(root_dir)
        self.clock = clock or _utcnow
        self.logger = logging.getLogger(__name__)

    def path_for(self, kind: str, name: str) -> Path:
        """Resolve the on-disk path of an artifact."""
        if kind not in KIND_SUFFIXES:
            raise MaterialIOError(f"Unknown artifact kind: {kind}", operation="path_for")
        if not name or name.startswith("/") or "\\" in name:
            raise MaterialIOError(f"Invalid artifact name: {name!r}", operation="path_for")
        parts = name.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise MaterialIOError(f"Invalid artifact name: {name!r}", operation="path_for")
        return self.root.joinpath(*parts[:-1], parts[-1] + KIND_SUFFIXES[kind])

    def exists(self, kind: str, name: str) -> bool:
        return self.path_for(kind, name).is_file()

    def get(self, kind: str, name: str) -> bytes:
        """
        Read an artifact.

        Raises:
            MaterialIOError: If the artifact is missing or unreadable
        """
        path = self.path_for(kind, name)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise MaterialIOError(f"{kind} '{name}' not found at {path}", subject=name, operation="get")
        except OSError as e:
            raise MaterialIOError(f"Failed to read {kind} '{name}': {e}", subject=name, operation="get")

    def is_current(self, kind: str, name: str) -> bool:
        """Whether an artifact exists and is still usable (certificates: not expired)."""
        if not self.exists(kind, name):
            return False
        if kind not in (CERT, CHAIN):
            return True
        try:
            certificates = x509.load_pem_x509_certificates(self.get(kind, name))
        except (ValueError, MaterialIOError) as e:
            self.logger.warning(f"Existing {kind} '{name}' is unreadable and will be replaced: {e}")
            return False
        now = self.clock()
        return all(cert.not_valid_after_utc > now for cert in certificates)

    def put(self, kind: str, name: str, data: bytes, overwrite: bool = False) -> bool:
        """
        Persist one artifact atomically.

        Returns:
            True if written, False if a still-valid artifact was kept
        """
        return bool(self.put_all([(kind, name, data)], overwrite=overwrite))

    def put_all(self, entries: Sequence[StoreEntry], overwrite: bool = False) -> List[Tuple[str, str]]:
        """
        Persist several artifacts, staging all of them before any rename.

        Artifacts sharing a name (key, CSR and certificate of one identity)
        are kept or replaced together: unless overwrite is set, they are kept
        only when every one of them is still valid. If any rename fails, the
        renames already done are rolled back.

        Returns:
            The (kind, name) pairs that were written
        """
        stale_names = set()
        for kind, name, _ in entries:
            if overwrite or not self.is_current(kind, name):
                stale_names.add(name)

        pending = []
        for kind, name, data in entries:
            if name not in stale_names:
                self.logger.info(f"Keeping existing {kind} '{name}'")
                continue
            pending.append((kind, name, data))

        staged: List[Tuple[str, Path, Tuple[str, str]]] = []
        backups: Dict[Path, Optional[str]] = {}
        applied: List[Path] = []
        try:
            for kind, name, data in pending:
                staged.append((self._stage(kind, name, data), self.path_for(kind, name), (kind, name)))
            for _, final_path, _ in staged:
                backups[final_path] = self._backup(final_path) if final_path.exists() else None
            for tmp_path, final_path, _ in staged:
                os.replace(tmp_path, final_path)
                applied.append(final_path)
        except OSError as e:
            self._rollback(applied, backups)
            for tmp_path, _, _ in staged:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
            names = ", ".join(name for _, name, _ in pending)
            raise MaterialIOError(f"Failed to write {names}: {e}", operation="put")
        finally:
            for backup_path in backups.values():
                if backup_path and os.path.exists(backup_path):
                    os.unlink(backup_path)

        written = [ident for _, _, ident in staged]
        for kind, name in written:
            self.logger.debug(f"Wrote {kind} '{name}' to {self.path_for(kind, name)}")
        return written

    def _backup(self, final_path: Path) -> str:
        """Copy an artifact about to be replaced next to itself."""
        fd, backup_path = tempfile.mkstemp(prefix=f".{final_path.name}.", suffix=".bak",
                                           dir=str(final_path.parent))
        os.close(fd)
        shutil.copy2(str(final_path), backup_path)
        return backup_path

    def _rollback(self, applied: List[Path], backups: Dict[Path, Optional[str]]) -> None:
        for final_path in reversed(applied):
            backup_path = backups.get(final_path)
            try:
                if backup_path:
                    shutil.copy2(backup_path, str(final_path))
                elif final_path.exists():
                    final_path.unlink()
            except OSError as e:
                self.logger.error(f"Could not roll back {final_path}: {e}")

    def _stage(self, kind: str, name: str, data: bytes) -> str:
        """Write data to a temp file next to its destination."""
        final_path = self.path_for(kind, name)
        final_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{final_path.name}.", suffix=".tmp",
                                        dir=str(final_path.parent))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_path, KEY_MODE if kind == KEY else PUBLIC_MODE)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return tmp_path

    def list_names(self, kind: str, prefix: str = "") -> List[str]:
        """List artifact names of one kind directly under a prefix directory."""
        suffix = KIND_SUFFIXES[kind]
        directory = self.root.joinpath(*prefix.split("/")) if prefix else self.root
        if not directory.is_dir():
            return []
        names = []
        for entry in sorted(directory.iterdir()):
            if not entry.is_file() or entry.name.startswith("."):
                continue
            filename = entry.name
            if kind != KEY and filename.endswith(KIND_SUFFIXES[KEY]):
                continue
            if filename.endswith(suffix):
                base = filename[: -len(suffix)]
                names.append(f"{prefix}/{base}" if prefix else base)
        return names

    def list_dirs(self, prefix: str = "") -> List[str]:
        """List sub-directory names under a prefix."""
        directory = self.root.joinpath(*prefix.split("/")) if prefix else self.root
        if not directory.is_dir():
            return []
        return [entry.name for entry in sorted(directory.iterdir())
                if entry.is_dir() and not entry.name.startswith(".")]

    @contextmanager
    def lock(self, scope: str = "ca") -> Iterator[None]:
        """Exclusive lock scoped to this store, across threads and processes."""
        lock_dir = self.root / ".locks"
        try:
            lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MaterialIOError(f"Cannot create lock directory {lock_dir}: {e}", operation="lock")
        lock_path = lock_dir / (scope.replace("/", "__") + ".lock")

        with _thread_lock_for(lock_path):
            with open(lock_path, "a+") as handle:
                if fcntl is not None:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    if fcntl is not None:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
