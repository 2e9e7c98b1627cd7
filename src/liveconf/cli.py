"""Command-line access to liveconf TOML files.

Usage:
    liveconf show <file>               Print the normalized file
    liveconf get <file> <key>          Print a value (dotted keys reach into tables)
    liveconf set <file> <key> <value>  Write a value, parsed as a TOML literal
    liveconf unset <file> <key>        Remove a value
    liveconf watch <file>              Print changes as the file is edited

Comments in the file are preserved by ``set`` and ``unset``.
"""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys
import threading
import tomllib
from typing import Any

import tomli_w

import liveconf.errors
import liveconf.store
import liveconf.watch


def _coerce(value: str) -> Any:
    """Parse *value* as a TOML literal, falling back to a plain string."""
    try:
        return tomllib.loads(f"v = {value}")["v"]
    except tomllib.TOMLDecodeError:
        return value


def _format(value: Any) -> str:
    if isinstance(value, dict):
        return tomli_w.dumps(value).rstrip("\n")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _open(path: pathlib.Path) -> liveconf.store.CommentedTomlFile:
    store = liveconf.store.CommentedTomlFile(path)
    store.load()
    return store


def _lookup(store: liveconf.store.CommentedTomlFile, key: str) -> Any:
    head, *rest = key.split(".")
    value = store.get(head)
    for part in rest:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def cmd_show(path: pathlib.Path) -> int:
    """Print the file as liveconf would write it."""
    try:
        store = _open(path)
    except liveconf.errors.LoadError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    sys.stdout.write(store.render())
    return 0


def cmd_get(path: pathlib.Path, key: str) -> int:
    """Print the value stored under *key*."""
    try:
        store = _open(path)
    except liveconf.errors.LoadError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    value = _lookup(store, key)
    if value is None:
        print(f"Unknown key: {key}", file=sys.stderr)
        return 1
    print(_format(value))
    return 0


def cmd_set(path: pathlib.Path, key: str, value: str) -> int:
    """Write *value* under *key*, creating intermediate tables."""
    try:
        store = _open(path)
        head, *rest = key.split(".")
        parsed = _coerce(value)
        if rest:
            table = store.get(head)
            if not isinstance(table, dict):
                table = {}
                store.set(head, table)
            for part in rest[:-1]:
                table = table.setdefault(part, {})
                if not isinstance(table, dict):
                    print(f"Not a table: {key}", file=sys.stderr)
                    return 1
            table[rest[-1]] = parsed
        else:
            store.set(head, parsed)
        store.save()
    except liveconf.errors.ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"Set {key} = {_format(parsed)}")
    return 0


def cmd_unset(path: pathlib.Path, key: str) -> int:
    """Remove the top-level *key*."""
    try:
        store = _open(path)
        if key not in store:
            print(f"Unknown key: {key}", file=sys.stderr)
            return 1
        store.remove(key)
        store.save()
    except liveconf.errors.ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"Removed {key}")
    return 0


def _diff(old: dict[str, Any], new: dict[str, Any]) -> list[str]:
    lines = []
    for key in new:
        if key not in old:
            lines.append(f"+ {key} = {_format(new[key])}")
        elif old[key] != new[key]:
            lines.append(f"~ {key} = {_format(new[key])}")
    for key in old:
        if key not in new:
            lines.append(f"- {key}")
    return lines


def cmd_watch(path: pathlib.Path, *, stop: threading.Event | None = None) -> int:
    """Print key changes each time the file changes, until interrupted."""
    store = liveconf.store.CommentedTomlFile(path)
    try:
        store.load()
    except liveconf.errors.LoadError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    snapshot = {key: store.get(key) for key in store.keys()}

    def on_change() -> None:
        nonlocal snapshot
        if not store.changed_on_disk():
            return
        try:
            store.load()
        except liveconf.errors.LoadError as exc:
            print(str(exc), file=sys.stderr)
            return
        current = {key: store.get(key) for key in store.keys()}
        for line in _diff(snapshot, current):
            print(line, flush=True)
        snapshot = current

    bridge = liveconf.watch.FileWatchBridge(path, on_change)
    try:
        bridge.start()
    except liveconf.errors.WatchSubscriptionError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    stop = stop or threading.Event()
    print(f"Watching {path} (Ctrl-C to stop)", flush=True)
    try:
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        bridge.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``liveconf``."""
    parser = argparse.ArgumentParser(
        prog="liveconf",
        description="Inspect and edit liveconf TOML files.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="subcmd")

    p_show = sub.add_parser("show", help="Print the normalized file")
    p_show.add_argument("file", type=pathlib.Path)

    p_get = sub.add_parser("get", help="Print a value")
    p_get.add_argument("file", type=pathlib.Path)
    p_get.add_argument("key", help="key or table.key")

    p_set = sub.add_parser("set", help="Write a value")
    p_set.add_argument("file", type=pathlib.Path)
    p_set.add_argument("key", help="key or table.key")
    p_set.add_argument("value", help="TOML literal or plain string")

    p_unset = sub.add_parser("unset", help="Remove a value")
    p_unset.add_argument("file", type=pathlib.Path)
    p_unset.add_argument("key")

    p_watch = sub.add_parser("watch", help="Print changes as the file is edited")
    p_watch.add_argument("file", type=pathlib.Path)

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    if args.subcmd is None:
        parser.print_help()
        return 1

    if args.subcmd == "show":
        return cmd_show(args.file)
    elif args.subcmd == "get":
        return cmd_get(args.file, args.key)
    elif args.subcmd == "set":
        return cmd_set(args.file, args.key, args.value)
    elif args.subcmd == "unset":
        return cmd_unset(args.file, args.key)
    elif args.subcmd == "watch":
        return cmd_watch(args.file)
    else:
        parser.print_help()
        return 1
