"""Auto-derived elements and handlers for annotated dataclasses.

Mark a dataclass with ``@auto_serializable`` and declare its configurable
fields with :func:`setting`::

    @liveconf.auto.auto_serializable(category="audio")
    @dataclasses.dataclass
    class Audio:
        volume: float = liveconf.auto.setting(1.0, description="Master volume")
        muted: bool = liveconf.auto.setting(False)

The registry then derives an :class:`AutoElementHandler` for ``Audio``
the first time the type is resolved, and stores instances as a nested
TOML table. Classes that are not dataclasses can expose their fields by
defining ``__config_fields__()`` returning :class:`FieldSpec` objects.
"""

from __future__ import annotations

import collections.abc
import dataclasses
import typing
from typing import TYPE_CHECKING, Any, TypeVar

import liveconf.element
import liveconf.errors
import liveconf.handlers

if TYPE_CHECKING:
    from collections.abc import Iterable

T = TypeVar("T")

_MARKER = "__liveconf_auto__"
_METADATA_KEY = "liveconf"


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class Configurable:
    """Per-field declaration attached through :func:`setting`."""

    translation_key: str = ""
    description: str = ""
    category: str = ""
    tags: tuple[str, ...] = ()
    handler: Any = None


@dataclasses.dataclass(frozen=True)
class FieldSpec:
    """One configurable attribute of an aggregate type."""

    attr: str
    value_type: Any
    options: Configurable = Configurable()
    default: Any = None


def setting(
    default: Any = dataclasses.MISSING,
    *,
    default_factory: Any = dataclasses.MISSING,
    translation_key: str = "",
    description: str = "",
    category: str = "",
    tags: Iterable[str] = (),
    handler: Any = None,
) -> Any:
    """Declare a configurable dataclass field."""
    options = Configurable(
        translation_key=translation_key,
        description=description,
        category=category,
        tags=tuple(tags),
        handler=handler,
    )
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        metadata={_METADATA_KEY: options},
    )


def auto_serializable(cls: type[T] | None = None, *, category: str = ""):
    """Class decorator: let the registry derive a handler for *cls*.

    Usable bare or with a *category* that prefixes the category of every
    field.
    """

    def decorator(klass: type[T]) -> type[T]:
        setattr(klass, _MARKER, category)
        return klass

    if cls is not None:
        return decorator(cls)
    return decorator


def is_auto_serializable(cls: type) -> bool:
    return getattr(cls, _MARKER, None) is not None


def _field_default(field: dataclasses.Field) -> Any:
    if field.default is not dataclasses.MISSING:
        return field.default
    if field.default_factory is not dataclasses.MISSING:
        return field.default_factory()
    return None


def config_fields(cls: type) -> list[FieldSpec]:
    """Return the configurable fields declared on *cls*."""
    hook = getattr(cls, "__config_fields__", None)
    if hook is not None:
        return list(hook())
    if not dataclasses.is_dataclass(cls):
        return []

    try:
        hints = typing.get_type_hints(cls)
    except NameError:
        # Unresolvable forward reference; fall back to raw annotations and
        # let resolution report the offending field.
        hints = {}

    specs = []
    for f in dataclasses.fields(cls):
        options = f.metadata.get(_METADATA_KEY)
        if options is None:
            continue
        specs.append(
            FieldSpec(
                attr=f.name,
                value_type=hints.get(f.name, f.type),
                options=options,
                default=_field_default(f),
            )
        )
    return specs


def _explicit_handler(handler: Any) -> liveconf.handlers.TypeHandler | None:
    if handler is None or isinstance(handler, liveconf.handlers.TypeHandler):
        return handler
    if isinstance(handler, type) and issubclass(handler, liveconf.handlers.TypeHandler):
        instance = getattr(handler, "INSTANCE", None)
        return instance if instance is not None else handler()
    raise TypeError(f"Not a TypeHandler: {handler!r}")


# ---------------------------------------------------------------------------
# Derivation
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class _DerivedField:
    attr: str
    name: str
    comment: str
    category: str
    tags: tuple[str, ...]
    value_type: Any
    default: Any
    handler: liveconf.handlers.TypeHandler


class AutoElementHandler(liveconf.handlers.TypeHandler):
    """Composite handler storing an aggregate as a nested mapping.

    Each configurable field becomes one entry, keyed by its translation
    key (or attribute name) and encoded by that field's own handler.
    Raises :class:`liveconf.errors.UnresolvedFieldTypeError` if a field
    type has no handler.
    """

    def __init__(
        self,
        cls: type,
        *,
        registry: liveconf.handlers.HandlerRegistry | None = None,
    ) -> None:
        self.cls = cls
        registry = registry or liveconf.handlers.default_registry()
        class_category = getattr(cls, _MARKER, None) or ""

        derived: list[_DerivedField] = []
        seen: set[str] = set()
        for spec in config_fields(cls):
            opts = spec.options
            name = opts.translation_key or spec.attr
            if name in seen:
                raise liveconf.errors.DuplicateElementError(name)
            seen.add(name)

            category = opts.category or spec.attr
            if class_category:
                category = f"{class_category}.{category}"

            handler = _explicit_handler(opts.handler)
            if handler is None:
                try:
                    handler = registry.resolve(spec.value_type)
                except liveconf.errors.UnsupportedTypeError as exc:
                    raise liveconf.errors.UnresolvedFieldTypeError(
                        cls, spec.attr, spec.value_type
                    ) from exc

            derived.append(
                _DerivedField(
                    attr=spec.attr,
                    name=name,
                    comment=opts.description,
                    category=category,
                    tags=opts.tags,
                    value_type=spec.value_type,
                    default=spec.default,
                    handler=handler,
                )
            )
        self.fields: tuple[_DerivedField, ...] = tuple(derived)

    def elements(self, instance: object) -> list[liveconf.element.FieldElement]:
        """Bind one element per configurable field of *instance*."""
        return [
            liveconf.element.FieldElement(
                instance,
                f.attr,
                f.name,
                f.default,
                comment=f.comment,
                category=f.category,
                tags=f.tags,
                value_type=f.value_type,
                handler=f.handler,
            )
            for f in self.fields
        ]

    def can_handle(self, value_type: type) -> bool:
        return issubclass(value_type, self.cls)

    def accepts(self, stored):
        return isinstance(stored, collections.abc.Mapping)

    def is_complete(self, element, stored):
        for sub in self.elements(element.value):
            handler = sub.type_handler
            if handler.serialize(sub) is None:
                continue
            raw = stored.get(sub.name)
            if raw is None or not handler.accepts(raw) or not handler.is_complete(sub, raw):
                return False
        return True

    def serialize(self, element):
        table: dict[str, Any] = {}
        for sub in self.elements(element.value):
            stored = sub.type_handler.serialize(sub)
            if stored is not None:
                table[sub.name] = stored
        return table

    def deserialize(self, element, stored):
        decoded: dict[str, Any] = {}
        for sub in self.elements(element.value):
            raw = stored.get(sub.name)
            if raw is not None and sub.type_handler.accepts(raw):
                decoded[sub.name] = sub.type_handler.deserialize(sub, raw)
        return decoded

    def update(self, element, value):
        for sub in self.elements(element.value):
            if sub.name in value:
                sub.type_handler.update(sub, value[sub.name])

    def __repr__(self) -> str:
        return f"AutoElementHandler({self.cls.__qualname__})"


def derive_elements(
    instance: object,
    *,
    registry: liveconf.handlers.HandlerRegistry | None = None,
) -> list[liveconf.element.FieldElement]:
    """Return one top-level element per configurable field of *instance*."""
    cls = type(instance)
    if not is_auto_serializable(cls):
        raise liveconf.errors.UnsupportedTypeError(cls)
    registry = registry or liveconf.handlers.default_registry()
    handler = registry.resolve(cls)
    if not isinstance(handler, AutoElementHandler):
        # A custom handler was registered for the type; derive fields anyway.
        handler = AutoElementHandler(cls, registry=registry)
    return handler.elements(instance)
