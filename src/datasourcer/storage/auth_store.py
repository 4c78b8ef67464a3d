"""Credential persistence keyed by connector name.

``FileAuthStore`` keeps one JSON document mapping a connector (or vendor) key
to a flat ``{field: string}`` map. Writes replace the file atomically
(temp file in the same directory, fsync, rename) so a crash mid-write leaves
the previous document in place.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from datasourcer.exceptions import IoError, ParseError

logger = logging.getLogger(__name__)

AuthDetails = Dict[str, str]


def stringify_details(values: Mapping[str, Any]) -> AuthDetails:
    """Flatten arbitrary JSON values into a string-to-string ``AuthDetails``.

    Strings pass through, booleans become ``true``/``false``, numbers and
    structured values are JSON-encoded, and nulls are dropped.
    """
    out: AuthDetails = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, str):
            out[str(key)] = value
        elif isinstance(value, bool):
            out[str(key)] = "true" if value else "false"
        else:
            out[str(key)] = json.dumps(value, separators=(",", ":"), sort_keys=True)
    return out


def default_store_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "datasourcer" / "auth.json"


class AuthStore(ABC):
    """Abstract credential store."""

    @abstractmethod
    def load(self, name: str) -> Optional[AuthDetails]:
        """Return the stored bundle for ``name`` or None."""

    @abstractmethod
    def save_many(self, entries: Mapping[str, AuthDetails]) -> None:
        """Persist several keys in a single write."""

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Remove ``name``; return True when an entry existed."""

    @abstractmethod
    def config_path(self) -> str:
        """Human-readable location of the store, for diagnostics."""

    def save(self, name: str, details: AuthDetails) -> None:
        self.save_many({name: details})


class MemoryAuthStore(AuthStore):
    """In-process store, mainly for tests."""

    def __init__(self) -> None:
        self._entries: Dict[str, AuthDetails] = {}
        self._lock = threading.Lock()

    def load(self, name: str) -> Optional[AuthDetails]:
        with self._lock:
            found = self._entries.get(name)
            return dict(found) if found is not None else None

    def save_many(self, entries: Mapping[str, AuthDetails]) -> None:
        with self._lock:
            for name, details in entries.items():
                self._entries[name] = dict(details)

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._entries.pop(name, None) is not None

    def config_path(self) -> str:
        return "<memory>"


class FileAuthStore(AuthStore):
    """JSON file store at ``~/.config/datasourcer/auth.json`` by default.

    Parameters
    ----------
    path:
        Location of the JSON document. The parent directory is created on
        first write, and the file is kept readable by the owning user only.
    """

    # One lock per process: read-modify-write cycles must not interleave
    _lock = threading.Lock()

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path).expanduser() if path else default_store_path()

    def config_path(self) -> str:
        return str(self.path)

    def _read_all(self) -> Dict[str, AuthDetails]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise IoError(f"Cannot read auth store {self.path}: {e}") from e
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ParseError(f"Auth store {self.path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ParseError(f"Auth store {self.path} must contain a JSON object")
        entries: Dict[str, AuthDetails] = {}
        for name, details in data.items():
            if not isinstance(details, dict):
                raise ParseError(f"Auth store entry '{name}' must be an object")
            entries[name] = stringify_details(details)
        return entries

    def _write_all(self, entries: Mapping[str, AuthDetails]) -> None:
        payload = json.dumps(entries, indent=2, sort_keys=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".auth-", suffix=".tmp", dir=str(self.path.parent)
            )
        except OSError as e:
            raise IoError(f"Cannot prepare auth store {self.path}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise IoError(f"Cannot write auth store {self.path}: {e}") from e

    def load(self, name: str) -> Optional[AuthDetails]:
        return self._read_all().get(name)

    def save_many(self, entries: Mapping[str, AuthDetails]) -> None:
        with self._lock:
            current = self._read_all()
            for name, details in entries.items():
                current[name] = dict(details)
            self._write_all(current)
        logger.debug("Saved credentials for %s to %s", ", ".join(entries), self.path)

    def delete(self, name: str) -> bool:
        with self._lock:
            current = self._read_all()
            if name not in current:
                return False
            del current[name]
            self._write_all(current)
        return True
