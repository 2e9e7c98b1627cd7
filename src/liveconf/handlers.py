"""Type handlers and the registry that dispatches to them.

A handler converts between an element's in-memory value and the value
stored in the TOML file. Handlers are stateless and shared by every
element of a matching type. The registry resolves a declared type to a
handler by exact match, then by auto-derivation for aggregates marked
``@liveconf.auto.auto_serializable``, then by scanning capability
predicates in registration order.
"""

from __future__ import annotations

import logging
import math
import numbers
import struct
import threading
import types
import typing
from typing import TYPE_CHECKING, Any

import liveconf.errors

if TYPE_CHECKING:
    import liveconf.element

logger = logging.getLogger("liveconf.handlers")


# ---------------------------------------------------------------------------
# Fixed-width value types
# ---------------------------------------------------------------------------

class Int32(int):
    """An ``int`` that wraps into the signed 32-bit range."""

    def __new__(cls, value: Any = 0) -> Int32:
        wrapped = (int(value) + 2**31) % 2**32 - 2**31
        return super().__new__(cls, wrapped)


class Float32(float):
    """A ``float`` rounded to single precision."""

    def __new__(cls, value: Any = 0.0) -> Float32:
        value = float(value)
        try:
            value = struct.unpack("f", struct.pack("f", value))[0]
        except OverflowError:
            value = math.copysign(math.inf, value)
        return super().__new__(cls, value)


def _is_numeric(value_type: type) -> bool:
    # bool is an int subclass; never treat it as a number.
    return issubclass(value_type, numbers.Number) and not issubclass(value_type, bool)


# ---------------------------------------------------------------------------
# Handler contract
# ---------------------------------------------------------------------------

class TypeHandler:
    """Strategy for storing one kind of value.

    ``can_handle`` answers whether a declared element type is covered, and
    ``accepts`` whether a value read from the file can be decoded (by
    default, whether its runtime type is covered). ``serialize`` produces
    the stored form of an element's value, ``deserialize`` decodes a stored
    value, and ``update`` writes a decoded value back into the element.
    """

    def can_handle(self, value_type: type) -> bool:
        raise NotImplementedError

    def accepts(self, stored: Any) -> bool:
        return self.can_handle(type(stored))

    def is_complete(self, element: liveconf.element.ConfigElement, stored: Any) -> bool:
        """Return False if *stored* lacks parts of the element's value."""
        return True

    def serialize(self, element: liveconf.element.ConfigElement) -> Any:
        return element.value

    def deserialize(self, element: liveconf.element.ConfigElement, stored: Any) -> Any:
        return stored

    def update(self, element: liveconf.element.ConfigElement, value: Any) -> None:
        element.value = value

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class BooleanHandler(TypeHandler):
    def can_handle(self, value_type: type) -> bool:
        return issubclass(value_type, bool)

    def deserialize(self, element, stored):
        return bool(stored)


class IntegerHandler(TypeHandler):
    def can_handle(self, value_type: type) -> bool:
        return issubclass(value_type, int) and not issubclass(value_type, bool)

    def serialize(self, element):
        return int(element.value)

    def deserialize(self, element, stored):
        return int(stored)


class Int32Handler(IntegerHandler):
    def deserialize(self, element, stored):
        return Int32(stored)


class FloatHandler(TypeHandler):
    """64-bit floats. Integers in the file are accepted and widened."""

    def can_handle(self, value_type: type) -> bool:
        return _is_numeric(value_type) and issubclass(value_type, (int, float))

    def serialize(self, element):
        return float(element.value)

    def deserialize(self, element, stored):
        return float(stored)


class Float32Handler(FloatHandler):
    def deserialize(self, element, stored):
        return Float32(stored)


class NumberHandler(TypeHandler):
    """Any real or integral number, stored as-is."""

    def can_handle(self, value_type: type) -> bool:
        return _is_numeric(value_type)


class StringHandler(TypeHandler):
    def can_handle(self, value_type: type) -> bool:
        return issubclass(value_type, str)

    def serialize(self, element):
        return str(element.value)

    def deserialize(self, element, stored):
        return str(stored)


class ListHandler(TypeHandler):
    def can_handle(self, value_type: type) -> bool:
        return issubclass(value_type, list)

    def serialize(self, element):
        return list(element.value)

    def deserialize(self, element, stored):
        return list(stored)


BOOLEAN = BooleanHandler()
INTEGER = IntegerHandler()
INT32 = Int32Handler()
FLOAT = FloatHandler()
FLOAT32 = Float32Handler()
STRING = StringHandler()
LIST = ListHandler()
NUMBER = NumberHandler()

# Registration order matters for the predicate fallback: narrow first.
_BUILTINS: tuple[tuple[type, TypeHandler], ...] = (
    (bool, BOOLEAN),
    (int, INTEGER),
    (Int32, INT32),
    (float, FLOAT),
    (Float32, FLOAT32),
    (str, STRING),
    (list, LIST),
    (numbers.Number, NUMBER),
)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _normalize(value_type: Any) -> Any:
    """Reduce ``list[int]`` to ``list`` and ``X | None`` to ``X``."""
    origin = typing.get_origin(value_type)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(value_type) if a is not type(None)]
        if len(args) == 1:
            return _normalize(args[0])
        return value_type
    return origin if origin is not None else value_type


class HandlerRegistry:
    """Mapping from value type to :class:`TypeHandler`.

    A fresh registry is pre-populated with the built-in handlers unless
    ``defaults=False``. Handlers registered or derived for a type are kept
    for the lifetime of the registry.
    """

    def __init__(self, *, defaults: bool = True) -> None:
        self._handlers: dict[type, TypeHandler] = {}
        # Reentrant: deriving an aggregate resolves its field types.
        self._lock = threading.RLock()
        if defaults:
            for value_type, handler in _BUILTINS:
                self.register(value_type, handler)

    def register(self, value_type: type, handler: TypeHandler) -> None:
        with self._lock:
            self._handlers[value_type] = handler

    def __contains__(self, value_type: object) -> bool:
        return value_type in self._handlers

    def handlers(self) -> dict[type, TypeHandler]:
        """Return a copy of the registrations, in registration order."""
        with self._lock:
            return dict(self._handlers)

    def resolve(self, value_type: Any) -> TypeHandler:
        """Return the handler for *value_type*.

        Raises :class:`liveconf.errors.UnsupportedTypeError` once exact
        lookup, auto-derivation and the predicate scan have all failed.
        Derivation failures propagate as
        :class:`liveconf.errors.UnresolvedFieldTypeError`.
        """
        import liveconf.auto

        value_type = _normalize(value_type)
        if not isinstance(value_type, type):
            raise liveconf.errors.UnsupportedTypeError(value_type)

        with self._lock:
            handler = self._handlers.get(value_type)
            if handler is not None:
                return handler

            if liveconf.auto.is_auto_serializable(value_type):
                handler = liveconf.auto.AutoElementHandler(value_type, registry=self)
                self._handlers[value_type] = handler
                logger.debug("Derived handler for %s", value_type.__qualname__)
                return handler

            for candidate in self._handlers.values():
                if candidate.can_handle(value_type):
                    return candidate

        raise liveconf.errors.UnsupportedTypeError(value_type)

    def get(self, value_type: Any) -> TypeHandler | None:
        """Like :meth:`resolve`, but return ``None`` for unsupported types."""
        try:
            return self.resolve(value_type)
        except liveconf.errors.UnsupportedTypeError:
            return None


_DEFAULT_REGISTRY: HandlerRegistry | None = None
_DEFAULT_LOCK = threading.Lock()


def default_registry() -> HandlerRegistry:
    """Return the process-wide registry, creating it on first use."""
    global _DEFAULT_REGISTRY
    with _DEFAULT_LOCK:
        if _DEFAULT_REGISTRY is None:
            _DEFAULT_REGISTRY = HandlerRegistry()
        return _DEFAULT_REGISTRY


def register_handler(value_type: type, handler: TypeHandler) -> None:
    """Register *handler* for *value_type* in the default registry."""
    default_registry().register(value_type, handler)


def get_handler(value_type: Any) -> TypeHandler:
    """Resolve *value_type* against the default registry."""
    return default_registry().resolve(value_type)
