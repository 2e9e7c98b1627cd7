"""Live-reloading configuration bound to a TOML file.

A :class:`Config` owns a list of elements and one backing file. On
construction it reloads (adopting values already in the file), saves
(writing defaults for missing keys and refreshing comments), then
watches the file so external edits flow back into the elements::

    config = (
        liveconf.config.Config.builder("settings.toml")
        .add("volume", 1.0, comment="Master volume")
        .build()
    )
    config.get("volume")  # 1.0, or whatever the file says

Reload protocol:
    PRE   emitted first, always
    load  the file is re-read
    each element adopts its stored value if the handler accepts it,
          otherwise its in-memory value is written back (reload is dirty)
    SAVE  emitted only when dirty, right before the implicit save
    POST  emitted last, always (also when load or save raised)
"""

from __future__ import annotations

import enum
import logging
import pathlib
from typing import TYPE_CHECKING, Any

import liveconf.auto
import liveconf.element
import liveconf.errors
import liveconf.handlers
import liveconf.store
import liveconf.watch

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

logger = logging.getLogger("liveconf.config")


class ReloadStage(enum.Enum):
    PRE = "pre"
    """Emitted when :meth:`Config.reload` is called."""

    SAVE = "save"
    """Emitted before the implicit save inside :meth:`Config.reload`. Not always emitted."""

    POST = "post"
    """Emitted when :meth:`Config.reload` has finished everything."""


class Config:
    """Synchronizes a set of elements with one TOML file.

    ``reload`` and ``save`` hold ``store.lock`` for their whole duration,
    so calls from the watch thread and from callers never interleave.
    Elements and listeners are iterated as snapshots; appending from
    another thread mid-iteration is safe.
    """

    def __init__(
        self,
        store: liveconf.store.CommentedTomlFile,
        elements: Iterable[liveconf.element.ConfigElement],
        *,
        listeners: Iterable[Callable[[ReloadStage], None]] = (),
        watch: bool = True,
    ) -> None:
        self._store = store
        self._elements: list[liveconf.element.ConfigElement] = []
        self._names: set[str] = set()
        for element in elements:
            self._claim(element.name)
            self._elements.append(element)
        self._listeners: list[Callable[[ReloadStage], None]] = list(listeners)
        self._bridge: liveconf.watch.FileWatchBridge | None = None
        self.watch_error: liveconf.errors.WatchSubscriptionError | None = None

        self.reload()
        with self._store.lock:
            self.save()

        if watch:
            self._subscribe()

    @staticmethod
    def builder(
        path: str | pathlib.Path,
        *,
        registry: liveconf.handlers.HandlerRegistry | None = None,
    ) -> ConfigBuilder:
        """Return a builder for a config backed by *path*.

        Raises :class:`liveconf.errors.LoadError` if *path* exists and is
        not a regular file.
        """
        return ConfigBuilder(path, registry=registry)

    # -- accessors -----------------------------------------------------------

    @property
    def store(self) -> liveconf.store.CommentedTomlFile:
        return self._store

    @property
    def path(self) -> pathlib.Path:
        return self._store.path

    @property
    def elements(self) -> tuple[liveconf.element.ConfigElement, ...]:
        return tuple(self._elements)

    def element(self, name: str) -> liveconf.element.ConfigElement:
        for element in list(self._elements):
            if element.name == name:
                return element
        raise KeyError(f"Unknown config element: {name}")

    def get(self, name: str) -> Any:
        """Return the current value of element *name*."""
        return self.element(name).value

    def __iter__(self) -> Iterator[liveconf.element.ConfigElement]:
        return iter(list(self._elements))

    def __len__(self) -> int:
        return len(self._elements)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    # -- membership ----------------------------------------------------------

    def _claim(self, name: str) -> None:
        if name in self._names:
            raise liveconf.errors.DuplicateElementError(name)
        self._names.add(name)

    def add_element(self, element: liveconf.element.ConfigElement) -> None:
        """Add *element* and reconcile it with the file.

        If the file holds a value the element's handler accepts, the
        element adopts it; otherwise the element's value is written back
        and the file is saved.
        """
        with self._store.lock:
            self._claim(element.name)
            self._elements.append(element)
            if not self._reconcile(element):
                self.save()

    # -- listeners -----------------------------------------------------------

    def on_reload(
        self, listener: Callable[[ReloadStage], None]
    ) -> Callable[[ReloadStage], None]:
        """Register *listener* for reload stages. Usable as a decorator."""
        self._listeners.append(listener)
        return listener

    def _emit(self, stage: ReloadStage) -> None:
        for listener in list(self._listeners):
            listener(stage)

    # -- sync ----------------------------------------------------------------

    def save(self) -> None:
        """Write every element's value and comment, then flush the file.

        Raises :class:`liveconf.errors.PersistenceError` if the flush fails.
        """
        with self._store.lock:
            for element in list(self._elements):
                handler = element.type_handler
                self._store.set(element.name, handler.serialize(element))
                self._store.set_comment(element.name, element.comment)
            self._store.save()

    def _reconcile(self, element: liveconf.element.ConfigElement) -> bool:
        """Adopt the stored value for *element*; False if it was rewritten."""
        stored = self._store.get(element.name)
        handler = element.type_handler
        if stored is not None and handler.accepts(stored):
            handler.update(element, handler.deserialize(element, stored))
            if handler.is_complete(element, stored):
                return True
            logger.debug(
                "%s: key %r partially rejected, writing merged value", self.path, element.name
            )
        elif stored is None:
            logger.debug("%s: key %r missing, writing current value", self.path, element.name)
        else:
            logger.debug(
                "%s: key %r holds %s, rejected by %r; writing current value",
                self.path,
                element.name,
                type(stored).__name__,
                handler,
            )
        self._store.set(element.name, handler.serialize(element))
        return False

    def reload(self) -> None:
        """Re-read the file and update every element from it.

        Raises :class:`liveconf.errors.LoadError` if the file cannot be
        parsed, or :class:`liveconf.errors.PersistenceError` if the
        implicit save fails. ``POST`` is emitted in either case.
        """
        with self._store.lock:
            self._emit(ReloadStage.PRE)
            try:
                self._store.load()
                dirty = False
                for element in list(self._elements):
                    if not self._reconcile(element):
                        dirty = True
                if dirty:
                    logger.info("Rewriting %s with current values", self.path)
                    self._emit(ReloadStage.SAVE)
                    self.save()
            finally:
                self._emit(ReloadStage.POST)

    # -- watching ------------------------------------------------------------

    def _subscribe(self) -> None:
        bridge = liveconf.watch.FileWatchBridge(self.path, self._on_file_changed)
        try:
            bridge.start()
        except liveconf.errors.WatchSubscriptionError as exc:
            logger.warning("%s; live reload disabled", exc)
            self.watch_error = exc
            return
        self._bridge = bridge

    def _on_file_changed(self) -> None:
        # Our own saves also produce events; only reload on foreign content.
        if not self._store.changed_on_disk():
            return
        try:
            self.reload()
        except Exception:
            # Runs on the observer thread; an escaping error would stop it.
            logger.exception("Reload of %s after file change failed", self.path)

    @property
    def watching(self) -> bool:
        return self._bridge is not None and self._bridge.running

    def close(self) -> None:
        """Stop watching the file. The config stays usable."""
        if self._bridge is not None:
            self._bridge.stop()
            self._bridge = None

    def __enter__(self) -> Config:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ConfigBuilder:
    """Collects element declarations for a :class:`Config`."""

    def __init__(
        self,
        path: str | pathlib.Path,
        *,
        registry: liveconf.handlers.HandlerRegistry | None = None,
    ) -> None:
        self.path = pathlib.Path(path)
        if self.path.exists() and not self.path.is_file():
            raise liveconf.errors.LoadError(self.path, "not a regular file")
        self.registry = registry or liveconf.handlers.default_registry()
        self._elements: list[liveconf.element.ConfigElement] = []
        self._names: set[str] = set()
        self._listeners: list[Callable[[ReloadStage], None]] = []
        self._watch = True

    def add_element(self, element: liveconf.element.ConfigElement) -> ConfigBuilder:
        if element.name in self._names:
            raise liveconf.errors.DuplicateElementError(element.name)
        self._names.add(element.name)
        self._elements.append(element)
        return self

    def add(
        self,
        name: str,
        default: Any,
        *,
        comment: str = "",
        category: str = "",
        tags: Iterable[str] = (),
        value_type: Any = None,
        handler: liveconf.handlers.TypeHandler | None = None,
    ) -> ConfigBuilder:
        """Declare a single value stored under *name*."""
        return self.add_element(
            liveconf.element.ConfigElement(
                name,
                default,
                comment=comment,
                category=category,
                tags=tags,
                value_type=value_type,
                handler=handler,
                registry=self.registry,
            )
        )

    def add_object(
        self,
        name: str,
        instance: object,
        *,
        comment: str = "",
        category: str = "",
    ) -> ConfigBuilder:
        """Store a whole auto-serializable *instance* as the table *name*.

        The instance is updated in place on reload.
        """
        return self.add(name, instance, comment=comment, category=category)

    def add_fields(self, instance: object) -> ConfigBuilder:
        """Store each configurable field of *instance* as a top-level key."""
        for element in liveconf.auto.derive_elements(instance, registry=self.registry):
            self.add_element(element)
        return self

    def on_reload(self, listener: Callable[[ReloadStage], None]) -> ConfigBuilder:
        """Register *listener*; it also sees the initial reload."""
        self._listeners.append(listener)
        return self

    def watch(self, enabled: bool = True) -> ConfigBuilder:
        self._watch = enabled
        return self

    def build(self) -> Config:
        return Config(
            liveconf.store.CommentedTomlFile(self.path),
            self._elements,
            listeners=self._listeners,
            watch=self._watch,
        )
