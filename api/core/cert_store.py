"""
Certificate store for the live TLS bundle.

Owns the canonical file layout under the SSL root, atomic replacement
of the certificate/key pair, the key=value metadata file, and the
append-only backup directory. All mutations run under an advisory
file lock so concurrent invocations cannot interleave a backup with
a write.
"""

import asyncio
import errno
import fcntl
import logging
import os
import shutil
import tempfile
import time
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from config import Settings, settings as default_settings
from core.cert_errors import StoreWriteError
from models.certificate import BackupOrigin, BackupRecord, CertificateBundle, CertificateMetadata

logger = logging.getLogger(__name__)

# Fixed permission policy
ROOT_DIR_MODE = 0o755
BACKUP_DIR_MODE = 0o700
CERT_FILE_MODE = 0o644
KEY_FILE_MODE = 0o600

METADATA_FILE = ".cert_info"
LOCK_FILE = ".lock"
BACKUP_DIR = "backup"


# Stores whose lock the current task or thread holds, by id()
_held_locks: ContextVar[frozenset] = ContextVar("held_store_locks", default=frozenset())


def _parse_backup_stamp(timestamp: str) -> datetime:
    return datetime.strptime(timestamp[:15], "%Y%m%d_%H%M%S")


def _collision_index(timestamp: str) -> int:
    _, _, counter = timestamp[15:].partition("_")
    return int(counter) if counter.isdigit() else 0


class CertificateStore:
    """Single source of truth for certificate/key locations, metadata and backups."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.root = Path(self.settings.ssl_root)
        self.name = self.settings.cert_name
        self._guard = asyncio.Lock()

    @property
    def cert_path(self) -> Path:
        return self.root / f"{self.name}.crt"

    @property
    def key_path(self) -> Path:
        return self.root / f"{self.name}.key"

    @property
    def metadata_path(self) -> Path:
        return self.root / METADATA_FILE

    @property
    def backup_dir(self) -> Path:
        return self.root / BACKUP_DIR

    def _ensure_root(self):
        try:
            if not self.root.exists():
                self.root.mkdir(parents=True, exist_ok=True)
                os.chmod(self.root, ROOT_DIR_MODE)
        except OSError as e:
            raise StoreWriteError(
                f"Cannot create SSL directory {self.root}: {e}",
                suggestion="Check that SSL_ROOT is writable by this process",
            )

    def _ensure_backup_dir(self):
        self._ensure_root()
        try:
            if not self.backup_dir.exists():
                self.backup_dir.mkdir(parents=True, exist_ok=True)
                os.chmod(self.backup_dir, BACKUP_DIR_MODE)
        except OSError as e:
            raise StoreWriteError(
                f"Cannot create backup directory {self.backup_dir}: {e}",
                suggestion="Check permissions on the SSL directory",
            )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILE

    def _holds_lock(self) -> bool:
        return id(self) in _held_locks.get()

    def _acquire_flock(self, shared: bool) -> int:
        """Block until the file lock is granted or LOCK_TIMEOUT passes; returns the open fd."""
        self._ensure_root()
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        operation = (fcntl.LOCK_SH if shared else fcntl.LOCK_EX) | fcntl.LOCK_NB
        deadline = time.monotonic() + self.settings.lock_timeout
        try:
            while True:
                try:
                    fcntl.flock(fd, operation)
                    return fd
                except OSError as e:
                    if e.errno not in (errno.EAGAIN, errno.EACCES):
                        raise
                    if time.monotonic() >= deadline:
                        raise self._lock_timeout_error()
                    time.sleep(0.1)
        except BaseException:
            os.close(fd)
            raise

    def _release_flock(self, fd: int):
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _lock_timeout_error(self) -> StoreWriteError:
        return StoreWriteError(
            f"Timed out after {self.settings.lock_timeout}s waiting for {self.lock_path}",
            suggestion="Another certificate operation is running; retry when it finishes",
        )

    @contextmanager
    def _mark_held(self):
        token = _held_locks.set(_held_locks.get() | {id(self)})
        try:
            yield
        finally:
            _held_locks.reset(token)

    @contextmanager
    def lock(self, shared: bool = False):
        """
        Hold the store's advisory lock from synchronous code.

        Re-entrant within one task or thread: nested calls (e.g. write()
        inside a resolve() that already holds the lock) do not lock again.
        """
        if self._holds_lock():
            yield
            return

        fd = self._acquire_flock(shared)
        try:
            with self._mark_held():
                yield
        finally:
            self._release_flock(fd)

    @asynccontextmanager
    async def async_lock(self, shared: bool = False):
        """
        Hold the store's lock from a coroutine.

        Coroutines of this process queue on an asyncio.Lock first, so the
        file lock is only contended across processes; that wait runs in a
        worker thread to keep the event loop free.
        """
        if self._holds_lock():
            yield
            return

        try:
            await asyncio.wait_for(self._guard.acquire(), timeout=self.settings.lock_timeout)
        except asyncio.TimeoutError:
            raise self._lock_timeout_error()
        try:
            fd = await asyncio.to_thread(self._acquire_flock, shared)
            try:
                with self._mark_held():
                    yield
            finally:
                self._release_flock(fd)
        finally:
            self._guard.release()

    # ------------------------------------------------------------------
    # Bundle access
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        """True when both certificate and key files are present."""
        return self.cert_path.is_file() and self.key_path.is_file()

    def read(self) -> CertificateBundle | None:
        """Read the live bundle, or None if absent or incomplete."""
        with self.lock(shared=True):
            has_cert = self.cert_path.is_file()
            has_key = self.key_path.is_file()
            if not has_cert and not has_key:
                return None
            if has_cert != has_key:
                missing = self.key_path if has_cert else self.cert_path
                logger.warning(f"Incomplete certificate bundle in {self.root}: {missing.name} is missing")
                return None

            return CertificateBundle(
                cert_pem=self.cert_path.read_bytes(),
                key_pem=self.key_path.read_bytes(),
                metadata=self.read_metadata(),
                cert_path=str(self.cert_path),
                key_path=str(self.key_path),
            )

    def _stage(self, target: Path, content: bytes, mode: int) -> Path:
        """Write content to a temp file beside target and fsync it."""
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, mode)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return Path(tmp_name)

    def write(self, bundle: CertificateBundle, metadata: CertificateMetadata | None = None) -> CertificateBundle:
        """
        Atomically replace the live bundle.

        Certificate, key and metadata are staged first and renamed into
        place together; if any rename fails the previous files are put
        back, so readers see either the old complete bundle or the new one.

        Raises:
            StoreWriteError: If staging or renaming fails
        """
        if metadata is not None:
            metadata = metadata.model_copy(update={"cert_file": str(self.cert_path), "key_file": str(self.key_path)})

        with self.lock():
            self._ensure_root()
            staged: dict[Path, Path] = {}
            try:
                staged[self.key_path] = self._stage(self.key_path, bundle.key_pem, KEY_FILE_MODE)
                staged[self.cert_path] = self._stage(self.cert_path, bundle.cert_pem, CERT_FILE_MODE)
                if metadata is not None:
                    staged[self.metadata_path] = self._stage(
                        self.metadata_path, metadata.to_info_text().encode(), CERT_FILE_MODE
                    )
            except OSError as e:
                for path in staged.values():
                    path.unlink(missing_ok=True)
                raise StoreWriteError(
                    f"Failed to stage certificate bundle in {self.root}: {e}",
                    suggestion="Check disk space and permissions on SSL_ROOT",
                )

            previous: dict[Path, Path | None] = {}
            try:
                previous = self._set_aside(list(staged))
                for target, tmp in staged.items():
                    os.replace(tmp, target)
            except OSError as e:
                self._put_back(previous)
                raise StoreWriteError(
                    f"Failed to install certificate bundle in {self.root}: {e}",
                    suggestion="Check disk space and permissions on SSL_ROOT",
                )
            finally:
                for path in staged.values():
                    path.unlink(missing_ok=True)
                for saved in previous.values():
                    if saved is not None:
                        saved.unlink(missing_ok=True)

            logger.info(f"Certificate bundle written to {self.cert_path} and {self.key_path}")
            return self.read()

    def _set_aside(self, paths: list[Path]) -> dict[Path, Path | None]:
        """Copy the files about to be replaced aside so a failed install can be undone."""
        saved: dict[Path, Path | None] = {}
        for path in paths:
            if path.is_file():
                aside = path.with_name(f".{path.name}.prev")
                try:
                    shutil.copy2(path, aside)
                except OSError as e:
                    for copied in saved.values():
                        if copied is not None:
                            copied.unlink(missing_ok=True)
                    raise StoreWriteError(
                        f"Failed to preserve {path.name} before replacing it: {e}",
                        suggestion="Check disk space and permissions on SSL_ROOT",
                    )
                saved[path] = aside
            else:
                saved[path] = None
        return saved

    def _put_back(self, saved: dict[Path, Path | None]):
        for path, aside in saved.items():
            try:
                if aside is None:
                    path.unlink(missing_ok=True)
                else:
                    os.replace(aside, path)
            except OSError as e:
                logger.error(f"Failed to roll back {path}: {e}")

    def remove(self) -> list[str]:
        """Delete the live certificate, key and metadata. Returns removed paths."""
        removed: list[str] = []
        with self.lock():
            for path in (self.cert_path, self.key_path, self.metadata_path):
                try:
                    if path.exists():
                        path.unlink()
                        removed.append(str(path))
                except OSError as e:
                    raise StoreWriteError(
                        f"Failed to remove {path}: {e}",
                        suggestion="Check permissions on SSL_ROOT",
                    )
        logger.info(f"Removed certificate bundle from {self.root}")
        return removed

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def read_metadata(self) -> CertificateMetadata | None:
        if not self.metadata_path.is_file():
            return None
        try:
            return CertificateMetadata.from_info_text(self.metadata_path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable metadata file {self.metadata_path}: {e}")
            return None

    def write_metadata(self, metadata: CertificateMetadata):
        with self.lock():
            self._ensure_root()
            try:
                tmp = self._stage(self.metadata_path, metadata.to_info_text().encode(), CERT_FILE_MODE)
                os.replace(tmp, self.metadata_path)
            except OSError as e:
                raise StoreWriteError(
                    f"Failed to write metadata {self.metadata_path}: {e}",
                    suggestion="Check permissions on SSL_ROOT",
                )

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def _backup_suffix(self, infix: str = "") -> str:
        """Timestamp suffix that does not collide with an existing backup."""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        candidate = stamp
        counter = 1
        while (self.backup_dir / f"{self.name}.crt.{infix}{candidate}").exists():
            candidate = f"{stamp}_{counter}"
            counter += 1
        return candidate

    def backup(self) -> BackupRecord | None:
        """
        Copy the live bundle into the backup directory.

        Never moves or alters the live files. Returns None (no-op) when
        there is no bundle to back up.
        """
        with self.lock():
            if not self.cert_path.is_file() and not self.key_path.is_file():
                logger.debug("No certificate bundle to back up")
                return None

            self._ensure_backup_dir()
            suffix = self._backup_suffix()
            cert_backup = self.backup_dir / f"{self.name}.crt.{suffix}"
            key_backup = self.backup_dir / f"{self.name}.key.{suffix}"
            metadata_backup = None

            try:
                if self.cert_path.is_file():
                    shutil.copy2(self.cert_path, cert_backup)
                if self.key_path.is_file():
                    shutil.copy2(self.key_path, key_backup)
                    os.chmod(key_backup, KEY_FILE_MODE)
                if self.metadata_path.is_file():
                    metadata_backup = self.backup_dir / f"cert_info.{suffix}"
                    shutil.copy2(self.metadata_path, metadata_backup)
            except OSError as e:
                raise StoreWriteError(
                    f"Failed to back up certificate bundle: {e}",
                    suggestion="Check disk space and permissions on the backup directory",
                )

        logger.info(f"Backed up certificate bundle as {cert_backup.name}")
        return BackupRecord(
            timestamp=suffix,
            cert_path=str(cert_backup),
            key_path=str(key_backup),
            metadata_path=str(metadata_backup) if metadata_backup else None,
        )

    def save_container_backup(self, cert_pem: bytes | None, key_pem: bytes | None) -> BackupRecord | None:
        """Store certificate/key bytes fetched from the proxy container as a backup."""
        if cert_pem is None and key_pem is None:
            return None

        with self.lock():
            self._ensure_backup_dir()
            suffix = self._backup_suffix(infix="container.")
            cert_backup = self.backup_dir / f"{self.name}.crt.container.{suffix}"
            key_backup = self.backup_dir / f"{self.name}.key.container.{suffix}"
            try:
                if cert_pem is not None:
                    cert_backup.write_bytes(cert_pem)
                if key_pem is not None:
                    key_backup.write_bytes(key_pem)
                    os.chmod(key_backup, KEY_FILE_MODE)
            except OSError as e:
                raise StoreWriteError(
                    f"Failed to save container certificate backup: {e}",
                    suggestion="Check disk space and permissions on the backup directory",
                )

        logger.info(f"Backed up in-container certificate as {cert_backup.name}")
        return BackupRecord(
            timestamp=suffix,
            cert_path=str(cert_backup),
            key_path=str(key_backup),
            origin=BackupOrigin.CONTAINER,
        )

    def list_backups(self) -> list[BackupRecord]:
        """List backup records, oldest first."""
        if not self.backup_dir.is_dir():
            return []

        records: list[BackupRecord] = []
        prefix = f"{self.name}.crt."
        for cert_backup in sorted(self.backup_dir.glob(f"{prefix}*")):
            suffix = cert_backup.name[len(prefix):]
            origin = BackupOrigin.STORE
            timestamp = suffix
            if suffix.startswith("container."):
                origin = BackupOrigin.CONTAINER
                timestamp = suffix[len("container."):]
            try:
                created_at = _parse_backup_stamp(timestamp)
            except ValueError:
                logger.debug(f"Skipping unrecognised backup file {cert_backup.name}")
                continue

            metadata_backup = self.backup_dir / f"cert_info.{timestamp}"
            has_metadata = origin == BackupOrigin.STORE and metadata_backup.exists()
            records.append(
                BackupRecord(
                    timestamp=timestamp,
                    cert_path=str(cert_backup),
                    key_path=str(self.backup_dir / f"{self.name}.key.{suffix}"),
                    metadata_path=str(metadata_backup) if has_metadata else None,
                    origin=origin,
                    created_at=created_at,
                )
            )

        records.sort(key=lambda r: (r.created_at, _collision_index(r.timestamp)))
        return records

    def restore(self, record: BackupRecord) -> CertificateBundle:
        """
        Put a backed-up bundle back in place (atomically, like write()).

        Raises:
            StoreWriteError: If the backup files are missing or cannot be installed
        """
        cert_backup = Path(record.cert_path)
        key_backup = Path(record.key_path)
        if not cert_backup.is_file() or not key_backup.is_file():
            raise StoreWriteError(
                f"Backup {record.timestamp} is incomplete",
                suggestion="Pick another backup from the backup directory",
            )

        with self.lock():
            bundle = CertificateBundle(cert_pem=cert_backup.read_bytes(), key_pem=key_backup.read_bytes())
            self.write(bundle)
            if record.metadata_path and Path(record.metadata_path).is_file():
                try:
                    shutil.copy2(record.metadata_path, self.metadata_path)
                except OSError as e:
                    raise StoreWriteError(f"Failed to restore metadata: {e}")
            else:
                self.metadata_path.unlink(missing_ok=True)
            logger.info(f"Restored certificate bundle from backup {record.timestamp}")
            return self.read()
