"""TOML file backing store with per-key comments.

Parsing goes through ``tomllib`` and writing through ``tomli_w``. Each
top-level key is written as its own chunk so a ``# comment`` block can be
placed directly above it. Scalars and arrays come before tables, so the
same in-memory state always renders to the same bytes.
"""

from __future__ import annotations

import hashlib
import logging
import pathlib
import re
import threading
import tomllib
from typing import Any

import tomli_w

import liveconf.errors

logger = logging.getLogger("liveconf.store")

_KEY = r"""(?P<key>"(?:[^"\\]|\\.)*"|'[^']*'|[A-Za-z0-9_-]+)"""
_KEY_LINE = re.compile(rf"^\s*{_KEY}\s*[=.]")
# Headers start in column 0; indented brackets are nested array values.
_TABLE_LINE = re.compile(rf"^\[\[?\s*{_KEY}\s*\]")


def _unquote(key: str) -> str:
    if key.startswith('"'):
        return tomllib.loads(f"k = {key}")["k"]
    if key.startswith("'"):
        return key[1:-1]
    return key


def _scan_comments(text: str) -> dict[str, str]:
    """Map each top-level key to the comment block directly above it."""
    comments: dict[str, str] = {}
    pending: list[str] = []
    in_table = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            pending.append(stripped[1:].removeprefix(" "))
            continue

        key = None
        match = _TABLE_LINE.match(line)
        if match:
            key = match.group("key")
            in_table = True
        elif line.startswith("["):
            # Dotted header such as [a.b]: belongs to a table already seen.
            in_table = True
        elif not in_table:
            match = _KEY_LINE.match(line)
            if match:
                key = match.group("key")

        if key is not None:
            name = _unquote(key)
            if pending and name not in comments:
                comments[name] = "\n".join(pending)
        pending = []
    return comments


def _comment_block(comment: str) -> str:
    return "".join(
        f"# {line}\n" if line else "#\n" for line in comment.splitlines()
    )


def _is_table(value: Any) -> bool:
    if isinstance(value, dict):
        return True
    return isinstance(value, list) and bool(value) and all(isinstance(v, dict) for v in value)


def _digest(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


class CommentedTomlFile:
    """In-memory view of one TOML file.

    ``get``/``set`` operate on memory only; ``load`` and ``save`` move the
    whole document to and from disk. ``lock`` guards every disk access and
    is held by callers that need a read-modify-write sequence.
    """

    def __init__(self, path: str | pathlib.Path) -> None:
        self.path = pathlib.Path(path)
        self.lock = threading.RLock()
        self._data: dict[str, Any] = {}
        self._comments: dict[str, str] = {}
        self._digest: str | None = None

    # -- values --------------------------------------------------------------

    def get(self, name: str, default: Any = None) -> Any:
        return self._data.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self._data[name] = value

    def remove(self, name: str) -> None:
        self._data.pop(name, None)
        self._comments.pop(name, None)

    def keys(self) -> list[str]:
        return list(self._data)

    def __contains__(self, name: object) -> bool:
        return name in self._data

    # -- comments ------------------------------------------------------------

    def get_comment(self, name: str) -> str:
        return self._comments.get(name, "")

    def set_comment(self, name: str, text: str) -> None:
        if text:
            self._comments[name] = text
        else:
            self._comments.pop(name, None)

    # -- disk ----------------------------------------------------------------

    def _read(self) -> bytes:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return b""

    def load(self) -> None:
        """Replace the in-memory document with the file's content.

        A missing file loads as empty. On failure the in-memory document
        is left untouched and :class:`liveconf.errors.LoadError` is raised.
        """
        with self.lock:
            try:
                raw = self._read()
            except OSError as exc:
                raise liveconf.errors.LoadError(self.path, str(exc)) from exc
            try:
                text = raw.decode("utf-8")
                data = tomllib.loads(text)
            except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
                raise liveconf.errors.LoadError(self.path, str(exc)) from exc

            self._data = data
            self._comments = _scan_comments(text)
            self._digest = _digest(raw)

    def render(self) -> str:
        """Return the document as TOML text."""
        literals: list[str] = []
        tables: list[str] = []
        for name, value in self._data.items():
            if value is None:
                continue
            chunk = _comment_block(self._comments.get(name, ""))
            chunk += tomli_w.dumps({name: value})
            (tables if _is_table(value) else literals).append(chunk)

        parts = ["".join(literals)] if literals else []
        parts.extend(tables)
        return "\n".join(parts)

    def save(self) -> None:
        """Write the document to disk, creating parent directories.

        Raises :class:`liveconf.errors.PersistenceError` if a value cannot
        be encoded or the file cannot be written.
        """
        with self.lock:
            try:
                raw = self.render().encode("utf-8")
            except (TypeError, ValueError) as exc:
                raise liveconf.errors.PersistenceError(self.path, str(exc)) from exc
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.write_bytes(raw)
            except OSError as exc:
                raise liveconf.errors.PersistenceError(self.path, str(exc)) from exc
            self._digest = _digest(raw)
            logger.debug("Wrote %d bytes to %s", len(raw), self.path)

    def changed_on_disk(self) -> bool:
        """Whether the file differs from what was last loaded or saved."""
        with self.lock:
            try:
                raw = self._read()
            except OSError:
                return True
            return _digest(raw) != self._digest
