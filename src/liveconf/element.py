"""Config elements: named, typed slots bound to one key of the backing file."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import liveconf.handlers

if TYPE_CHECKING:
    from collections.abc import Iterable


class ConfigElement:
    """A named configuration value.

    The handler is bound when the element is created: either the explicit
    *handler* or the one *registry* (default: the process-wide registry)
    resolves for *value_type*. *value_type* defaults to ``type(default)``.
    Raises :class:`liveconf.errors.UnsupportedTypeError` when nothing can
    handle the type.
    """

    def __init__(
        self,
        name: str,
        default: Any,
        *,
        comment: str = "",
        category: str = "",
        tags: Iterable[str] = (),
        value_type: Any = None,
        handler: liveconf.handlers.TypeHandler | None = None,
        registry: liveconf.handlers.HandlerRegistry | None = None,
    ) -> None:
        self._name = name
        self.default = default
        self._value = default
        self.comment = comment
        self.category = category
        self.tags = tuple(tags)
        self.value_type = value_type if value_type is not None else type(default)
        if handler is None:
            registry = registry or liveconf.handlers.default_registry()
            handler = registry.resolve(self.value_type)
        self._handler = handler

    @property
    def name(self) -> str:
        return self._name

    @property
    def value(self) -> Any:
        return self._value

    @value.setter
    def value(self, value: Any) -> None:
        self._value = value

    @property
    def type_handler(self) -> liveconf.handlers.TypeHandler:
        return self._handler

    def reset(self) -> None:
        """Restore the default value."""
        self.value = self.default

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, value={self.value!r})"


class FieldElement(ConfigElement):
    """An element whose value lives in an attribute of another object.

    Used for the fields of auto-serializable aggregates: reading or
    assigning ``value`` goes straight to ``getattr(instance, attr)``.
    """

    def __init__(self, instance: object, attr: str, name: str, default: Any, **kwargs: Any) -> None:
        self.instance = instance
        self.attr = attr
        super().__init__(name, default, **kwargs)

    @property
    def value(self) -> Any:
        return getattr(self.instance, self.attr)

    @value.setter
    def value(self, value: Any) -> None:
        setattr(self.instance, self.attr, value)
