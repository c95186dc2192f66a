"""
passh - Credential Store

Maps hierarchical names to envelope files under a root directory:

    email/work   ->   <root>/email/work.pass

Directories are 0700 and entry files 0600. Every write goes to a temporary
file in the target directory and is renamed into place, so a reader never
sees a half-written entry. Concurrent writers to the same name race and the
last rename wins.
"""

import os
import logging
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Union

from . import crypto
from .config import Config, ENTRY_EXTENSION
from .envelope import Envelope, EnvelopeCipher
from .errors import NotFoundError, StorageError, ValidationError

logger = logging.getLogger("passh.store")

DIR_MODE = 0o700
FILE_MODE = 0o600


def validate_name(name: str) -> List[str]:
    """
    Check a hierarchical name and split it into segments.

    Raises:
        ValidationError: empty name, absolute path, control character or
            backslash, or an empty / "." / ".." segment
    """
    if not isinstance(name, str) or not name:
        raise ValidationError("entry name must not be empty")
    if "\\" in name or any(ord(c) < 0x20 or ord(c) == 0x7f for c in name):
        raise ValidationError(f"illegal character in entry name {name!r}")
    if name.startswith("/") or os.path.isabs(name):
        raise ValidationError(f"entry name must be relative: {name!r}")

    segments = name.split("/")
    for segment in segments:
        if segment in ("", ".", ".."):
            raise ValidationError(f"illegal segment {segment!r} in entry name {name!r}")
    return segments


class CredentialStore:
    """
    Encrypted credentials, one file per name.

    Usage:
        store = CredentialStore("~/.passh", keyring)
        store.add("email/work", "S3cr3t!")
        store.get("email/work")        # b"S3cr3t!"
        store.list()                   # ["email/work"]
        store.delete("email/work")
    """

    def __init__(
        self,
        root: Union[str, Path],
        keyring=None,
        cipher: Optional[EnvelopeCipher] = None,
        extension: str = ENTRY_EXTENSION,
    ):
        self.root = Path(root).expanduser()
        self.keyring = keyring
        self.cipher = cipher or EnvelopeCipher(keyring)
        self.extension = extension
        self._make_private_dirs(self.root)

    @classmethod
    def from_config(cls, config: Config, keyring) -> "CredentialStore":
        return cls(config.store_dir, keyring, extension=config.extension)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def path_for(self, name: str) -> Path:
        """File path of an entry; guaranteed to be inside the store root."""
        segments = validate_name(name)
        path = self.root.joinpath(*segments[:-1], segments[-1] + self.extension)
        if self.root.resolve() not in path.resolve().parents:
            raise ValidationError(f"entry name {name!r} escapes the store")
        return path

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def add(self, name: str, secret) -> None:
        """
        Encrypt `secret` and store it under `name`, replacing any previous entry.

        Raises:
            ValidationError: illegal name
            EncryptError: no recipients
            StorageError: filesystem failure
        """
        path = self.path_for(name)
        if isinstance(secret, str):
            secret = secret.encode('utf-8')

        envelope = self.cipher.encrypt(secret, context={"name": name})

        self._make_private_dirs(path.parent)
        self._atomic_write(path, envelope.to_bytes())
        logger.info("Stored entry %s", name)

    def get(self, name: str) -> bytes:
        """
        Decrypt the secret stored under `name`.

        Raises:
            NotFoundError: no such entry
            AuthError: none of our keys can open it
            IntegrityError: the entry was modified or corrupted
        """
        with self.open(name) as secret:
            return bytes(secret)

    @contextmanager
    def open(self, name: str):
        """Like get(), but yields a bytearray that is wiped on exit."""
        path = self.path_for(name)
        envelope = Envelope.from_bytes(self._read(path, name))
        secret = self.cipher.decrypt(envelope, context={"name": name})
        with crypto.wiped(secret):
            yield secret

    def list(self) -> List[str]:
        """Every entry name, sorted. Directories are never entries."""
        if not self.root.is_dir():
            return []

        def _raise(exc):
            raise exc

        entries = []
        try:
            for dirpath, dirnames, filenames in os.walk(self.root, onerror=_raise):
                for filename in filenames:
                    if not filename.endswith(self.extension) or filename == self.extension:
                        continue
                    relative = Path(dirpath, filename).relative_to(self.root)
                    entries.append("/".join(relative.parts)[:-len(self.extension)])
        except OSError as exc:
            raise StorageError(f"failed to list store {self.root}: {exc}") from exc
        return sorted(entries)

    def delete(self, name: str) -> None:
        """
        Remove an entry. The file is unlinked, not shredded; empty parent
        directories are left in place.

        Raises:
            NotFoundError: no such entry
        """
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotFoundError(f"entry '{name}' not found") from exc
        except OSError as exc:
            raise StorageError(f"failed to delete entry '{name}': {exc}") from exc
        logger.info("Deleted entry %s", name)

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _read(self, path: Path, name: str) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError(f"entry '{name}' not found") from exc
        except OSError as exc:
            raise StorageError(f"failed to read entry '{name}': {exc}") from exc

    def _atomic_write(self, path: Path, data: bytes) -> None:
        """Write to a temp file beside `path`, fsync, then rename over it."""
        try:
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix="." + path.name + ".", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_path, FILE_MODE)
                os.replace(tmp_path, path)
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass
                raise
        except OSError as exc:
            raise StorageError(f"failed to write {path}: {exc}") from exc

    @staticmethod
    def _make_private_dirs(directory: Path) -> None:
        """mkdir -p, with every newly created directory set to 0700."""
        missing = []
        current = directory
        while not current.exists():
            missing.append(current)
            if current.parent == current:
                break
            current = current.parent

        try:
            for path in reversed(missing):
                try:
                    path.mkdir(mode=DIR_MODE)
                except FileExistsError:
                    pass
                os.chmod(path, DIR_MODE)
        except OSError as exc:
            raise StorageError(f"failed to create directory {directory}: {exc}") from exc

        if not directory.is_dir():
            raise StorageError(f"{directory} exists and is not a directory")
