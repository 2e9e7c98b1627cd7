"""Exception hierarchy for liveconf.

Everything raised by the package derives from :class:`ConfigError`, so
callers can catch the whole family at one seam.
"""

from __future__ import annotations

import pathlib
from typing import Any


class ConfigError(Exception):
    """Base class for liveconf errors."""


class DuplicateElementError(ConfigError, ValueError):
    """Two elements in one config share a name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Duplicate config element: {name!r}")


class UnsupportedTypeError(ConfigError, LookupError):
    """No handler could be resolved for a value type."""

    def __init__(self, value_type: Any) -> None:
        self.value_type = value_type
        type_name = getattr(value_type, "__qualname__", repr(value_type))
        super().__init__(f"No handler registered for type {type_name}")


class UnresolvedFieldTypeError(ConfigError):
    """An auto-serializable field has no resolvable handler."""

    def __init__(self, owner: type, field: str, value_type: Any) -> None:
        self.owner = owner
        self.field = field
        self.value_type = value_type
        type_name = getattr(value_type, "__qualname__", repr(value_type))
        super().__init__(
            f"Cannot resolve handler for field {owner.__qualname__}.{field} "
            f"of type {type_name}"
        )


class LoadError(ConfigError):
    """The backing file could not be read or parsed."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path = path
        super().__init__(f"Failed to load {path}: {reason}")


class PersistenceError(ConfigError):
    """The backing file could not be written."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path = path
        super().__init__(f"Failed to save {path}: {reason}")


class WatchSubscriptionError(ConfigError):
    """The backing file could not be watched for changes."""

    def __init__(self, path: pathlib.Path, reason: str) -> None:
        self.path = path
        super().__init__(f"Couldn't watch file {str(path)!r} for changes: {reason}")
