"""Tests for liveconf.config — reload/save protocol, events, builder."""

from __future__ import annotations

import dataclasses
import logging
import numbers
import pathlib
import threading
import tomllib

import pytest

import liveconf.auto
import liveconf.config
import liveconf.element
import liveconf.errors
import liveconf.handlers
import liveconf.store
import liveconf.watch

PRE = liveconf.config.ReloadStage.PRE
SAVE = liveconf.config.ReloadStage.SAVE
POST = liveconf.config.ReloadStage.POST


def _volume(registry=None) -> liveconf.element.ConfigElement:
    return liveconf.element.ConfigElement(
        "volume", 1.0, comment="Master volume", registry=registry
    )


def _read(path: pathlib.Path) -> dict:
    return tomllib.loads(path.read_text())


@liveconf.auto.auto_serializable(category="video")
@dataclasses.dataclass
class _Video:
    width: int = liveconf.auto.setting(1280, description="Horizontal resolution")
    vsync: bool = liveconf.auto.setting(True)


class TestVolumeScenario:
    def test_external_edits(self, make_config, toml_path, stages) -> None:
        config = make_config(_volume())
        assert _read(toml_path) == {"volume": 1.0}
        assert "volume = 1.0" in toml_path.read_text()
        config.on_reload(stages.append)

        toml_path.write_text("volume = 2.5\n")
        config.reload()
        assert config.get("volume") == 2.5
        assert SAVE not in stages

        stages.clear()
        toml_path.write_text('volume = "loud"\n')
        config.reload()
        assert config.get("volume") == 2.5
        assert stages == [PRE, SAVE, POST]
        assert _read(toml_path) == {"volume": 2.5}


class TestConstruction:
    def test_writes_defaults_and_comments(self, make_config, toml_path) -> None:
        make_config(_volume(), liveconf.element.ConfigElement("name", "player"))
        lines = toml_path.read_text().splitlines()
        assert lines[lines.index("volume = 1.0") - 1] == "# Master volume"
        assert _read(toml_path) == {"volume": 1.0, "name": "player"}

    def test_adopts_existing_values(self, make_config, toml_path) -> None:
        toml_path.write_text("volume = 0.3\n")
        config = make_config(_volume())
        assert config.get("volume") == 0.3

    def test_initial_reload_visible_to_listeners(self, make_config, stages) -> None:
        make_config(_volume(), listeners=[stages.append])
        assert stages == [PRE, SAVE, POST]

    def test_existing_complete_file_skips_save_stage(
        self, make_config, toml_path, stages
    ) -> None:
        toml_path.write_text("volume = 0.5\n")
        make_config(_volume(), listeners=[stages.append])
        assert stages == [PRE, POST]

    def test_duplicate_names_rejected(self, make_config) -> None:
        with pytest.raises(liveconf.errors.DuplicateElementError):
            make_config(_volume(), _volume())

    def test_unrelated_keys_preserved(self, make_config, toml_path) -> None:
        toml_path.write_text("# someone else's\nother = 1\n")
        make_config(_volume())
        text = toml_path.read_text()
        assert "# someone else's\nother = 1" in text
        assert _read(toml_path) == {"other": 1, "volume": 1.0}


class TestReloadEvents:
    def test_clean_store(self, make_config, stages) -> None:
        config = make_config(_volume())
        config.on_reload(stages.append)
        config.reload()
        assert stages == [PRE, POST]

    def test_corrupted_store(self, make_config, toml_path, stages) -> None:
        config = make_config(_volume())
        config.on_reload(stages.append)
        toml_path.write_text("volume = [1, 2]\n")
        config.reload()
        assert stages == [PRE, SAVE, POST]

    def test_listeners_in_registration_order(self, make_config) -> None:
        calls: list[str] = []
        config = make_config(_volume())
        config.on_reload(lambda stage: calls.append(f"a:{stage.value}"))
        config.on_reload(lambda stage: calls.append(f"b:{stage.value}"))
        config.reload()
        assert calls == ["a:pre", "b:pre", "a:post", "b:post"]

    def test_on_reload_decorator(self, make_config) -> None:
        config = make_config(_volume())

        @config.on_reload
        def listener(stage):
            pass

        assert callable(listener)

    def test_save_stage_precedes_write(self, make_config, toml_path) -> None:
        config = make_config(_volume())
        seen: dict[str, object] = {}

        def listener(stage):
            if stage is SAVE:
                seen["at_save"] = _read(toml_path).get("volume")

        config.on_reload(listener)
        toml_path.write_text("volume = false\n")
        config.reload()
        assert seen["at_save"] is False
        assert _read(toml_path)["volume"] == 1.0


class TestSelfHealing:
    def test_missing_key(self, make_config, toml_path, stages) -> None:
        config = make_config(_volume(), liveconf.element.ConfigElement("name", "p"))
        config.element("volume").value = 0.8
        config.on_reload(stages.append)
        toml_path.write_text('name = "q"\n')
        config.reload()
        assert config.get("volume") == 0.8
        assert config.get("name") == "q"
        assert stages == [PRE, SAVE, POST]
        assert _read(toml_path) == {"volume": 0.8, "name": "q"}

    def test_type_mismatch(self, make_config, toml_path, stages) -> None:
        config = make_config(liveconf.element.ConfigElement("enabled", True))
        config.on_reload(stages.append)
        toml_path.write_text("enabled = 1\n")
        config.reload()
        assert config.get("enabled") is True
        assert stages == [PRE, SAVE, POST]
        assert _read(toml_path) == {"enabled": True}

    def test_mismatched_table_entry(self, make_config, toml_path, registry, stages) -> None:
        video = _Video()
        config = make_config(liveconf.element.ConfigElement("video", video, registry=registry))
        config.on_reload(stages.append)
        toml_path.write_text('[video]\nwidth = "wide"\nvsync = false\n')
        config.reload()
        assert video.width == 1280
        assert video.vsync is False
        assert stages == [PRE, SAVE, POST]
        assert _read(toml_path) == {"video": {"width": 1280, "vsync": False}}

    def test_missing_table_entry(self, make_config, toml_path, registry, stages) -> None:
        video = _Video()
        config = make_config(liveconf.element.ConfigElement("video", video, registry=registry))
        config.on_reload(stages.append)
        toml_path.write_text("[video]\nwidth = 640\n")
        config.reload()
        assert video.width == 640
        assert stages == [PRE, SAVE, POST]
        assert _read(toml_path) == {"video": {"width": 640, "vsync": True}}

    def test_complete_table_is_clean(self, make_config, toml_path, registry, stages) -> None:
        config = make_config(liveconf.element.ConfigElement("video", _Video(), registry=registry))
        config.on_reload(stages.append)
        config.reload()
        assert stages == [PRE, POST]

    def test_deleted_file_is_rewritten(self, make_config, toml_path) -> None:
        config = make_config(_volume())
        toml_path.unlink()
        config.reload()
        assert _read(toml_path) == {"volume": 1.0}


class TestRoundTrip:
    @pytest.mark.parametrize(
        ("default", "value", "value_type"),
        [
            (False, True, None),
            (1, -42, None),
            (liveconf.handlers.Int32(1), liveconf.handlers.Int32(2**31 - 1), None),
            (1.0, 3.25, None),
            (liveconf.handlers.Float32(1.0), liveconf.handlers.Float32(0.1), None),
            ("a", "héllo \"quoted\"", None),
            ([], [1, "two", [3.0]], None),
            (0, 2.5, numbers.Number),
        ],
    )
    def test_save_then_reload(
        self, make_config, registry, default, value, value_type
    ) -> None:
        element = liveconf.element.ConfigElement(
            "v", default, value_type=value_type, registry=registry
        )
        config = make_config(element)
        element.value = value
        config.save()
        config.reload()
        assert element.value == value
        assert type(element.value) is type(value)

    def test_idempotent_save(self, make_config, toml_path) -> None:
        config = make_config(
            _volume(),
            liveconf.element.ConfigElement("tags", ["a"], comment="Tags\nmulti-line"),
        )
        config.save()
        first = toml_path.read_bytes()
        config.save()
        assert toml_path.read_bytes() == first


class TestFailures:
    def test_load_failure_still_emits_post(self, make_config, toml_path, stages) -> None:
        config = make_config(_volume())
        config.element("volume").value = 0.6
        config.on_reload(stages.append)
        toml_path.write_text("volume = \n")
        with pytest.raises(liveconf.errors.LoadError):
            config.reload()
        assert stages == [PRE, POST]
        assert config.get("volume") == 0.6

    def test_save_failure_propagates(self, make_config, monkeypatch) -> None:
        config = make_config(_volume())

        def boom() -> None:
            raise liveconf.errors.PersistenceError(config.path, "disk full")

        monkeypatch.setattr(config.store, "save", boom)
        with pytest.raises(liveconf.errors.PersistenceError, match="disk full"):
            config.save()

    def test_implicit_save_failure_emits_post(
        self, make_config, toml_path, monkeypatch, stages
    ) -> None:
        config = make_config(_volume())
        config.on_reload(stages.append)

        def boom() -> None:
            raise liveconf.errors.PersistenceError(config.path, "read-only")

        monkeypatch.setattr(config.store, "save", boom)
        toml_path.write_text('volume = "x"\n')
        with pytest.raises(liveconf.errors.PersistenceError):
            config.reload()
        assert stages == [PRE, SAVE, POST]


class TestMembership:
    def test_accessors(self, make_config) -> None:
        config = make_config(_volume(), liveconf.element.ConfigElement("name", "p"))
        assert len(config) == 2
        assert "volume" in config
        assert "missing" not in config
        assert [e.name for e in config] == ["volume", "name"]
        assert [e.name for e in config.elements] == ["volume", "name"]
        with pytest.raises(KeyError, match="missing"):
            config.get("missing")

    def test_add_element_adopts_stored_value(self, make_config, toml_path) -> None:
        toml_path.write_text("volume = 1.0\nextra = 9\n")
        config = make_config(_volume())
        config.add_element(liveconf.element.ConfigElement("extra", 0))
        assert config.get("extra") == 9

    def test_add_element_writes_missing_key(self, make_config, toml_path) -> None:
        config = make_config(_volume())
        config.add_element(liveconf.element.ConfigElement("extra", 7, comment="Added"))
        assert _read(toml_path)["extra"] == 7
        assert "# Added\nextra = 7" in toml_path.read_text()

    def test_add_element_duplicate(self, make_config) -> None:
        config = make_config(_volume())
        with pytest.raises(liveconf.errors.DuplicateElementError):
            config.add_element(_volume())
        assert len(config) == 1

    def test_concurrent_save_reload_and_add(self, make_config, toml_path) -> None:
        config = make_config(_volume())
        errors: list[BaseException] = []

        def worker(action, count=25):
            try:
                for i in range(count):
                    action(i)
            except BaseException as exc:  # collected for the assertion below
                errors.append(exc)

        threads = [
            threading.Thread(target=worker, args=(lambda i: config.save(),)),
            threading.Thread(target=worker, args=(lambda i: config.reload(),)),
            threading.Thread(
                target=worker,
                args=(
                    lambda i: config.add_element(
                        liveconf.element.ConfigElement(f"k{i}", i)
                    ),
                ),
            ),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        config.save()
        data = _read(toml_path)
        assert set(data) == {e.name for e in config}
        assert data["k24"] == 24


class TestWatching:
    def test_subscription_failure_is_not_fatal(
        self, toml_path, monkeypatch, caplog
    ) -> None:
        def refuse(self) -> None:
            raise liveconf.errors.WatchSubscriptionError(self.path, "no inotify")

        monkeypatch.setattr(liveconf.watch.FileWatchBridge, "start", refuse)
        with caplog.at_level(logging.WARNING, logger="liveconf.config"):
            config = liveconf.config.Config(
                liveconf.store.CommentedTomlFile(toml_path), [_volume()]
            )
        assert config.watch_error is not None
        assert not config.watching
        assert "no inotify" in caplog.text
        assert config.get("volume") == 1.0

    def test_change_callback_skips_own_writes(self, make_config, stages) -> None:
        config = make_config(_volume())
        config.on_reload(stages.append)
        config.save()
        config._on_file_changed()
        assert stages == []

    def test_change_callback_reloads_foreign_content(
        self, make_config, toml_path, stages
    ) -> None:
        config = make_config(_volume())
        config.on_reload(stages.append)
        toml_path.write_text("volume = 0.1\n")
        config._on_file_changed()
        assert stages == [PRE, POST]
        assert config.get("volume") == 0.1

    def test_change_callback_logs_load_failure(
        self, make_config, toml_path, caplog
    ) -> None:
        config = make_config(_volume())
        toml_path.write_text("volume = \n")
        with caplog.at_level(logging.ERROR, logger="liveconf.config"):
            config._on_file_changed()
        assert "Reload of" in caplog.text
        assert config.get("volume") == 1.0

    def test_change_callback_survives_listener_error(
        self, make_config, toml_path, caplog
    ) -> None:
        config = make_config(_volume())
        failures = [RuntimeError("listener bug")]

        def flaky(stage):
            if stage is POST and failures:
                raise failures.pop()

        config.on_reload(flaky)
        toml_path.write_text("volume = 2.0\n")
        with caplog.at_level(logging.ERROR, logger="liveconf.config"):
            config._on_file_changed()
        assert "listener bug" in caplog.text
        assert config.get("volume") == 2.0

        toml_path.write_text("volume = 3.0\n")
        config._on_file_changed()
        assert config.get("volume") == 3.0

    def test_live_reload_after_listener_error(self, toml_path) -> None:
        failed = threading.Event()
        adopted = threading.Event()
        config = liveconf.config.Config(
            liveconf.store.CommentedTomlFile(toml_path), [_volume()]
        )
        with config:

            def listener(stage):
                if stage is not POST:
                    return
                if config.get("volume") == 2.0 and not failed.is_set():
                    failed.set()
                    raise RuntimeError("listener bug")
                if config.get("volume") == 3.0:
                    adopted.set()

            config.on_reload(listener)
            staging = toml_path.with_name("settings.toml.tmp")
            staging.write_text("volume = 2.0\n")
            staging.replace(toml_path)
            assert failed.wait(10.0)

            staging.write_text("volume = 3.0\n")
            staging.replace(toml_path)
            assert adopted.wait(10.0)
            assert config._bridge.observer.is_alive()

    def test_live_reload(self, toml_path) -> None:
        reloaded = threading.Event()
        config = liveconf.config.Config(
            liveconf.store.CommentedTomlFile(toml_path), [_volume()]
        )
        with config:
            assert config.watching

            def listener(stage):
                if stage is POST and config.get("volume") == 4.0:
                    reloaded.set()

            config.on_reload(listener)
            # Replace atomically, as editors do, so no reload sees a half-written file.
            staging = toml_path.with_name("settings.toml.tmp")
            staging.write_text("volume = 4.0\n")
            staging.replace(toml_path)
            assert reloaded.wait(10.0)
        assert not config.watching

    def test_close_is_idempotent(self, make_config) -> None:
        config = make_config(_volume())
        config.close()
        config.close()


class TestBuilder:
    def test_build(self, toml_path, registry, stages) -> None:
        config = (
            liveconf.config.Config.builder(toml_path, registry=registry)
            .add("volume", 1.0, comment="Master volume")
            .add("port", liveconf.handlers.Int32(8080), category="net")
            .on_reload(stages.append)
            .watch(False)
            .build()
        )
        assert config.get("port") == 8080
        assert config.element("port").category == "net"
        assert stages == [PRE, SAVE, POST]
        assert _read(toml_path) == {"volume": 1.0, "port": 8080}
        assert not config.watching

    def test_duplicate_add(self, toml_path, registry) -> None:
        builder = liveconf.config.Config.builder(toml_path, registry=registry)
        builder.add("volume", 1.0)
        with pytest.raises(liveconf.errors.DuplicateElementError):
            builder.add("volume", 2.0)

    def test_unsupported_type(self, toml_path, registry) -> None:
        builder = liveconf.config.Config.builder(toml_path, registry=registry)
        with pytest.raises(liveconf.errors.UnsupportedTypeError):
            builder.add("blob", b"")

    def test_directory_path_rejected(self, tmp_path) -> None:
        with pytest.raises(liveconf.errors.LoadError, match="not a regular file"):
            liveconf.config.Config.builder(tmp_path)

    def test_add_object(self, toml_path, registry) -> None:
        video = _Video()
        config = (
            liveconf.config.Config.builder(toml_path, registry=registry)
            .add_object("video", video, comment="Video settings")
            .watch(False)
            .build()
        )
        assert _read(toml_path) == {"video": {"width": 1280, "vsync": True}}
        assert "# Video settings\n[video]" in toml_path.read_text()

        toml_path.write_text("[video]\nwidth = 1920\nvsync = false\n")
        config.reload()
        assert config.get("video") is video
        assert video.width == 1920
        assert video.vsync is False

    def test_add_fields(self, toml_path, registry) -> None:
        video = _Video()
        config = (
            liveconf.config.Config.builder(toml_path, registry=registry)
            .add_fields(video)
            .watch(False)
            .build()
        )
        assert _read(toml_path) == {"width": 1280, "vsync": True}
        assert config.element("width").category == "video.width"
        text = toml_path.read_text()
        assert "# Horizontal resolution\nwidth = 1280" in text

        toml_path.write_text("width = 640\nvsync = true\n")
        config.reload()
        assert video.width == 640
