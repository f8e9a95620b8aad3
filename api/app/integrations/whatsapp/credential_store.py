"""Durable credential storage for the WhatsApp session."""

import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator
from urllib.parse import quote, unquote

import portalocker

logger = logging.getLogger(__name__)


class CredentialStoreError(Exception):
    """Raised when credentials cannot be read or written."""

    pass


class CredentialStore:
    """Persists the provider's credential blob as one JSON file per key.

    The directory is the only source of truth for resuming a session without
    a new enrollment. Reads and writes both hold a ``portalocker`` lock on a
    lock file inside the directory, and every key file is replaced with the
    temp-file-and-rename pattern, so a reader never observes a partially
    written blob.

    Attributes:
        directory: Credential directory
        lock_timeout: Seconds to wait for the lock before giving up
    """

    LOCK_FILE_NAME = ".credentials.lock"
    FILE_SUFFIX = ".json"

    def __init__(self, directory: str | Path, lock_timeout: float = 10.0):
        """Initialize credential store.

        Args:
            directory: Credential directory (created on first use)
            lock_timeout: Seconds to wait for the file lock
        """
        self.directory = Path(directory)
        self.lock_timeout = lock_timeout

    @property
    def lock_file(self) -> Path:
        return self.directory / self.LOCK_FILE_NAME

    def ensure_directory(self) -> None:
        """Create the credential directory if it doesn't exist."""
        if not self.directory.exists():
            logger.info(f"Creating credential directory {self.directory}")
        self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.ensure_directory()
        try:
            with portalocker.Lock(str(self.lock_file), mode="a", timeout=self.lock_timeout):
                yield
        except portalocker.exceptions.LockException as e:
            raise CredentialStoreError(
                f"Could not acquire credential lock {self.lock_file}: {e}"
            ) from e

    def _path_for(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}{self.FILE_SUFFIX}"

    def _key_for(self, path: Path) -> str:
        return unquote(path.name[: -len(self.FILE_SUFFIX)])

    def _key_files(self) -> list[Path]:
        return sorted(
            p for p in self.directory.glob(f"*{self.FILE_SUFFIX}") if p.is_file()
        )

    def load(self) -> Dict[str, Any]:
        """Load the current credential blob.

        An unreadable or corrupt key file fails the whole load: a partial
        identity is never handed to the provider.

        Returns:
            Mapping of credential key to its stored value; empty when the
            identity has never been enrolled

        Raises:
            CredentialStoreError: If the directory cannot be created or locked,
                or a key file cannot be read or parsed
        """
        blob: Dict[str, Any] = {}
        try:
            with self._locked():
                for path in self._key_files():
                    with open(path, "r", encoding="utf-8") as f:
                        blob[self._key_for(path)] = json.load(f)
        except ValueError as e:
            raise CredentialStoreError(
                f"Corrupt credential file in {self.directory}: {e}"
            ) from e
        except OSError as e:
            raise CredentialStoreError(
                f"Cannot read credentials from {self.directory}: {e}"
            ) from e

        if blob:
            logger.debug(f"Loaded {len(blob)} credential entries from {self.directory}")
        else:
            logger.info(f"No stored credentials in {self.directory}; enrollment required")
        return blob

    def save(self, blob: Dict[str, Any]) -> None:
        """Replace the stored credentials with ``blob``.

        Every key is first written to a temp file with restrictive permissions.
        Only when all of them are written are they renamed into place and the
        files for keys absent from ``blob`` removed. If any write fails the
        temp files are discarded and the previous blob stays untouched.

        Args:
            blob: JSON-serialisable credential mapping

        Raises:
            CredentialStoreError: If the lock cannot be acquired or a write fails
        """
        staged: list[tuple[Path, Path]] = []
        try:
            with self._locked():
                try:
                    for key, value in blob.items():
                        path = self._path_for(key)
                        staged.append((self._write_temp(path, value), path))
                except BaseException:
                    self._discard(temp for temp, _ in staged)
                    raise

                wanted = set()
                for temp_file, path in staged:
                    # Atomic rename (prevents corruption if crash during write)
                    temp_file.replace(path)
                    wanted.add(path.name)

                for path in self._key_files():
                    if path.name not in wanted:
                        path.unlink()
                        logger.debug(f"Removed stale credential file {path.name}")
        except (OSError, TypeError, ValueError) as e:
            raise CredentialStoreError(
                f"Failed to save credentials to {self.directory}: {e}"
            ) from e

        logger.info(f"Credentials saved to {self.directory} ({len(blob)} entries)")

    @staticmethod
    def _write_temp(path: Path, value: Any) -> Path:
        temp_file = path.with_name(path.name + ".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Set restrictive permissions before rename
            os.chmod(temp_file, 0o600)
        except BaseException:
            temp_file.unlink(missing_ok=True)
            raise
        return temp_file

    @staticmethod
    def _discard(temp_files: Iterable[Path]) -> None:
        for temp_file in temp_files:
            temp_file.unlink(missing_ok=True)
