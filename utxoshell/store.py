"""Durable YAML document holding wallets and providers."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import yaml

from .errors import ConfigurationError, DuplicateName, InvalidName, NotFound, StorageError

logger = logging.getLogger(__name__)

STORE_VERSION = 1
SECURE_FILE_MODE = 0o600

_SECTIONS = ("wallets", "providers")

# one lock per store path, shared by every StoreFile opened in this process
_PATH_LOCKS: dict[Path, threading.RLock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = path.resolve()
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = _PATH_LOCKS[key] = threading.RLock()
        return lock


def _empty_document() -> dict[str, Any]:
    return {"version": STORE_VERSION, "wallets": [], "providers": []}


class StoreFile:
    """Serialized access to the on-disk store document.

    Mutations go through :meth:`transaction`: the document is re-read under a
    lock shared by every handle on the same path, handed to the caller, and
    written back atomically (unique temp file and ``os.replace``) only if the
    block completes without raising. A failure inside the block leaves the
    previous file untouched.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = _lock_for(self.path)

    def read(self) -> dict[str, Any]:
        with self._lock:
            if not self.path.exists():
                return _empty_document()
            try:
                text = self.path.read_text()
            except OSError as exc:
                raise StorageError(f"Cannot read store file {self.path}: {exc.strerror or exc}") from exc
            try:
                loaded = yaml.safe_load(text) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Store file {self.path} is not valid YAML: {exc}") from exc
            if not isinstance(loaded, dict):
                raise ConfigurationError(f"Store file {self.path} must contain a mapping")
            version = loaded.get("version", STORE_VERSION)
            if version != STORE_VERSION:
                raise ConfigurationError(f"Unsupported store version: {version}")
            document = _empty_document()
            for section in _SECTIONS:
                entries = loaded.get(section) or []
                if not isinstance(entries, list):
                    raise ConfigurationError(f"Store section '{section}' must be a list")
                document[section] = entries
            return document

    @contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        with self._lock:
            document = self.read()
            yield document
            self._write(document)

    def _write(self, document: dict[str, Any]) -> None:
        temp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
            with os.fdopen(fd, "w") as handle:
                yaml.safe_dump(document, handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            if os.name == "posix":
                os.chmod(temp_name, SECURE_FILE_MODE)
            os.replace(temp_name, self.path)
            temp_name = None
        except OSError as exc:
            raise StorageError(f"Cannot write store file {self.path}: {exc.strerror or exc}") from exc
        finally:
            if temp_name is not None and os.path.exists(temp_name):
                os.unlink(temp_name)
        logger.debug("Wrote store %s", self.path)


_MAX_NAME_LENGTH = 64


def validate_name(name: str, *, label: str = "name") -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidName(f"{label.capitalize()} must be a non-empty string")
    cleaned = name.strip()
    if len(cleaned) > _MAX_NAME_LENGTH:
        raise InvalidName(f"{label.capitalize()} must be at most {_MAX_NAME_LENGTH} characters")
    if any(not char.isprintable() for char in cleaned):
        raise InvalidName(f"{label.capitalize()} contains non-printable characters")
    return cleaned


class NamedCollection:
    """Shared lookup and single-default bookkeeping for one store section."""

    section = ""
    label = "entry"

    def __init__(self, store: StoreFile, *, case_sensitive: bool = False) -> None:
        self.store = store
        self.case_sensitive = case_sensitive

    def _key(self, name: str) -> str:
        return name if self.case_sensitive else name.casefold()

    def _find(self, entries: list[dict[str, Any]], name: str) -> int | None:
        wanted = self._key(name.strip())
        for index, entry in enumerate(entries):
            if self._key(str(entry.get("name", ""))) == wanted:
                return index
        return None

    def _require(self, entries: list[dict[str, Any]], name: str) -> int:
        index = self._find(entries, name)
        if index is None:
            raise NotFound(f"No {self.label} named '{name}'", name=name)
        return index

    def _ensure_unique(self, entries: list[dict[str, Any]], name: str, *, skip: int | None = None) -> None:
        index = self._find(entries, name)
        if index is not None and index != skip:
            raise DuplicateName(f"A {self.label} named '{name}' already exists", name=name)

    @staticmethod
    def _set_default(entries: list[dict[str, Any]], index: int) -> None:
        for position, entry in enumerate(entries):
            entry["is_default"] = position == index

    def _entries(self) -> list[dict[str, Any]]:
        return self.store.read()[self.section]
