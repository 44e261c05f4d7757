from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from watchfiles import Change

from claudedir.config import Settings
from claudedir.models import ChangeEvent, ChangeEventType, ConnectionState
from claudedir.watcher import (
    Debouncer,
    WatcherRegistry,
    WatchTarget,
    format_sse,
    normalize_change,
    watch_targets,
)


class FakeWatches:
    """Watch factory that counts live watches and lets tests inject raw changes."""

    def __init__(self) -> None:
        self.open = 0
        self.opened = 0
        self.queues: dict[str, asyncio.Queue] = {}

    def __call__(self, target: WatchTarget, stop_event: asyncio.Event):
        return self._watch(target, stop_event)

    async def _watch(self, target: WatchTarget, stop_event: asyncio.Event):
        self.open += 1
        self.opened += 1
        queue: asyncio.Queue = asyncio.Queue()
        self.queues[target.category] = queue
        try:
            while not stop_event.is_set():
                changes = await queue.get()
                if isinstance(changes, Exception):
                    raise changes
                yield changes
        finally:
            self.open -= 1


@pytest.fixture
def populated_root(root: Path) -> Path:
    (root / "rules").mkdir()
    (root / "skills").mkdir()
    (root / "CLAUDE.md").write_text("# instructions")
    return root


def test_normalize_change() -> None:
    assert normalize_change(Change.modified) is ChangeEventType.CHANGE
    assert normalize_change(Change.added) is ChangeEventType.RENAME
    assert normalize_change(Change.deleted) is ChangeEventType.RENAME


def test_format_sse_drops_unset_fields() -> None:
    frame = format_sse(ChangeEvent(type=ChangeEventType.CONNECTED, connection_id="abc"))

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: ") :]) == {"type": "connected", "connectionId": "abc"}


def test_watch_targets_skip_missing_entries(settings: Settings, root: Path) -> None:
    (root / "rules").mkdir()

    assert [target.category for target in watch_targets(settings)] == ["rules"]

    (root / "settings.json").write_text("{}")
    targets = watch_targets(settings)

    assert [target.category for target in targets] == ["rules", "root"]
    root_target = targets[-1]
    assert root_target.path == root
    assert root_target.recursive is False
    assert root_target.names == ("settings.json",)


def test_watch_target_relative_paths(root: Path) -> None:
    target = WatchTarget(path=root / "skills", category="skills")

    assert target.relative(str(root / "skills" / "deploy" / "SKILL.md")) == "deploy/SKILL.md"


def test_debounce_collapses_bursts() -> None:
    async def scenario() -> tuple[list[tuple[float, ChangeEvent]], float]:
        loop = asyncio.get_running_loop()
        emitted: list[tuple[float, ChangeEvent]] = []
        debouncer = Debouncer(0.1, lambda event: emitted.append((loop.time(), event)))
        event = ChangeEvent(type=ChangeEventType.CHANGE, path="style.md", category="rules")

        last_push = loop.time()
        for index in range(3):
            if index:
                await asyncio.sleep(0.02)
            debouncer.push(event)
            last_push = loop.time()
        assert debouncer.pending == 1

        await asyncio.sleep(0.3)
        return emitted, last_push

    emitted, last_push = asyncio.run(scenario())

    assert len(emitted) == 1
    fired_at, event = emitted[0]
    assert 0.09 <= fired_at - last_push < 0.3
    assert event.path == "style.md"
    assert event.timestamp is not None


def test_debounce_keeps_distinct_keys_apart() -> None:
    async def scenario() -> list[ChangeEvent]:
        emitted: list[ChangeEvent] = []
        debouncer = Debouncer(0.05, emitted.append)
        debouncer.push(ChangeEvent(type=ChangeEventType.CHANGE, path="a.md"))
        debouncer.push(ChangeEvent(type=ChangeEventType.RENAME, path="a.md"))
        debouncer.push(ChangeEvent(type=ChangeEventType.CHANGE, path="b.md"))
        await asyncio.sleep(0.2)
        return emitted

    emitted = asyncio.run(scenario())

    assert sorted((event.type.value, event.path) for event in emitted) == [
        ("change", "a.md"),
        ("change", "b.md"),
        ("rename", "a.md"),
    ]


def test_debounce_keeps_same_name_in_different_categories_apart() -> None:
    async def scenario() -> list[ChangeEvent]:
        emitted: list[ChangeEvent] = []
        debouncer = Debouncer(0.05, emitted.append)
        debouncer.push(ChangeEvent(type=ChangeEventType.CHANGE, path="README.md", category="skills"))
        debouncer.push(ChangeEvent(type=ChangeEventType.CHANGE, path="README.md", category="agents"))
        assert debouncer.pending == 2
        await asyncio.sleep(0.2)
        return emitted

    emitted = asyncio.run(scenario())

    assert sorted(event.category for event in emitted) == ["agents", "skills"]


def test_debounce_cancel_all() -> None:
    async def scenario() -> list[ChangeEvent]:
        emitted: list[ChangeEvent] = []
        debouncer = Debouncer(0.05, emitted.append)
        debouncer.push(ChangeEvent(type=ChangeEventType.CHANGE, path="a.md"))
        debouncer.cancel_all()
        await asyncio.sleep(0.1)
        assert debouncer.pending == 0
        return emitted

    assert asyncio.run(scenario()) == []


def test_stream_emits_connected_then_debounced_changes(settings: Settings, populated_root: Path) -> None:
    fake = FakeWatches()

    async def scenario() -> list[ChangeEvent]:
        registry = WatcherRegistry(settings, watch_factory=fake)
        connection = registry.create_connection()
        events = connection.events()

        received = [await anext(events)]
        assert connection.state is ConnectionState.OPEN
        assert connection.id in registry
        await asyncio.sleep(0)

        style = str(populated_root / "rules" / "style.md")
        for _ in range(3):
            fake.queues["rules"].put_nowait({(Change.modified, style)})
            await asyncio.sleep(0.01)
        received.append(await asyncio.wait_for(anext(events), 1))

        fake.queues["root"].put_nowait({(Change.added, str(populated_root / "CLAUDE.md"))})
        received.append(await asyncio.wait_for(anext(events), 1))

        await events.aclose()
        await connection.wait_closed()
        assert connection.state is ConnectionState.CLOSED
        assert registry.active_connections == 0
        return received

    connected, change, rename = asyncio.run(scenario())

    assert connected.type is ChangeEventType.CONNECTED
    assert connected.connection_id
    assert (change.type, change.path, change.category) == (ChangeEventType.CHANGE, "style.md", "rules")
    assert (rename.type, rename.path, rename.category) == (ChangeEventType.RENAME, "CLAUDE.md", "root")
    assert fake.open == 0


def test_heartbeat_is_sent_on_interval(root: Path) -> None:
    settings = Settings(root=root, heartbeat_interval=0.05)

    async def scenario() -> ChangeEvent:
        registry = WatcherRegistry(settings, watch_factory=FakeWatches())
        events = registry.create_connection().events()
        await anext(events)
        heartbeat = await asyncio.wait_for(anext(events), 1)
        await events.aclose()
        return heartbeat

    heartbeat = asyncio.run(scenario())

    assert heartbeat.type is ChangeEventType.HEARTBEAT
    assert heartbeat.to_payload() == {"type": "heartbeat"}


def test_close_cancels_pending_events(settings: Settings, populated_root: Path) -> None:
    fake = FakeWatches()

    async def scenario() -> None:
        registry = WatcherRegistry(settings, watch_factory=fake)
        connection = registry.create_connection()
        events = connection.events()
        await anext(events)
        await asyncio.sleep(0)

        fake.queues["skills"].put_nowait({(Change.modified, str(populated_root / "skills" / "x.md"))})
        await asyncio.sleep(0.01)
        assert connection.pending_events == 1

        registry.close(connection.id)
        assert connection.pending_events == 0
        assert all(handle.closed for handle in connection.handles)
        assert registry.active_watch_count == 0
        await connection.wait_closed()
        await events.aclose()

    asyncio.run(scenario())

    assert fake.open == 0


def test_watch_error_ends_stream_as_errored(settings: Settings, populated_root: Path) -> None:
    fake = FakeWatches()

    async def scenario() -> tuple[list[ChangeEvent], ConnectionState, int]:
        registry = WatcherRegistry(settings, watch_factory=fake)
        connection = registry.create_connection()
        received: list[ChangeEvent] = []

        async def consume() -> None:
            async for event in connection.events():
                received.append(event)
                if event.type is ChangeEventType.CONNECTED:
                    await asyncio.sleep(0)
                    fake.queues["rules"].put_nowait(OSError("watch limit reached"))

        await asyncio.wait_for(consume(), 1)
        await connection.wait_closed()
        return received, connection.state, registry.active_connections

    received, state, active = asyncio.run(scenario())

    assert [event.type for event in received] == [ChangeEventType.CONNECTED]
    assert state is ConnectionState.ERRORED
    assert active == 0
    assert fake.open == 0


def test_repeated_connections_do_not_leak_watches(settings: Settings, populated_root: Path) -> None:
    fake = FakeWatches()

    async def scenario() -> WatcherRegistry:
        registry = WatcherRegistry(settings, watch_factory=fake)
        for _ in range(50):
            connection = registry.create_connection()
            events = connection.events()
            await anext(events)
            await asyncio.sleep(0)
            assert registry.active_watch_count == 3
            await events.aclose()
            await connection.wait_closed()
        return registry

    registry = asyncio.run(scenario())

    assert fake.opened == 150
    assert fake.open == 0
    assert registry.active_connections == 0
    assert registry.active_watch_count == 0
