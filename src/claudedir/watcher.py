"""Change notification stream over the watched parts of the root."""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, replace
from pathlib import Path

from loguru import logger
from watchfiles import Change, DefaultFilter, awatch

from .config import Settings
from .filesystem import epoch_ms
from .models import ChangeEvent, ChangeEventType, ConnectionState

ROOT_CATEGORY = "root"

RawChanges = set[tuple[Change, str]]
WatchFactory = Callable[["WatchTarget", asyncio.Event], AsyncIterator[RawChanges]]


@dataclass(frozen=True, slots=True)
class WatchTarget:
    """A directory watched on behalf of one category.

    ``names`` limits events to direct children with those names, which is how
    the individual files at the top of the root are watched.
    """

    path: Path
    category: str
    recursive: bool = True
    names: tuple[str, ...] | None = None

    def relative(self, raw_path: str) -> str:
        path = Path(raw_path)
        try:
            return path.relative_to(self.path).as_posix()
        except ValueError:
            return path.name


def watch_targets(settings: Settings) -> list[WatchTarget]:
    """Return the watch targets that exist right now.

    Directories created later are not picked up until the subscriber reconnects.
    """

    targets: list[WatchTarget] = []
    for name in settings.watch_dirs:
        path = settings.root / name
        if not path.is_dir():
            logger.debug(f"Not watching missing directory {path}")
            continue
        targets.append(WatchTarget(path=path, category=name, recursive=True))

    names = tuple(name for name in settings.watch_files if (settings.root / name).is_file())
    if names:
        targets.append(WatchTarget(path=settings.root, category=ROOT_CATEGORY, recursive=False, names=names))
    return targets


def normalize_change(change: Change) -> ChangeEventType:
    """Map a raw watch notification onto the stream's event vocabulary."""

    if change == Change.modified:
        return ChangeEventType.CHANGE
    return ChangeEventType.RENAME


def default_watch_factory(target: WatchTarget, stop_event: asyncio.Event) -> AsyncIterator[RawChanges]:
    if target.names is None:
        watch_filter: Callable[[Change, str], bool] = DefaultFilter()
    else:
        allowed = frozenset(target.names)

        def watch_filter(_change: Change, path: str) -> bool:
            return os.path.basename(path) in allowed

    return awatch(
        target.path,
        watch_filter=watch_filter,
        recursive=target.recursive,
        step=50,
        stop_event=stop_event,
    )


def format_sse(event: ChangeEvent) -> str:
    """Encode ``event`` as a server-sent-events frame."""

    return f"data: {json.dumps(event.to_payload())}\n\n"


class Debouncer:
    """Collapse bursts of events for the same (type, category, path) key.

    Every push re-arms the key's timer; the most recent event is emitted once the
    key has been quiet for ``window`` seconds.
    """

    def __init__(self, window: float, emit: Callable[[ChangeEvent], None]) -> None:
        self.window = window
        self._emit = emit
        self._timers: dict[tuple[ChangeEventType, str | None, str | None], asyncio.TimerHandle] = {}

    @property
    def pending(self) -> int:
        return len(self._timers)

    def push(self, event: ChangeEvent) -> None:
        key = (event.type, event.category, event.path)
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.window, self._fire, key, event)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _fire(self, key: tuple[ChangeEventType, str | None, str | None], event: ChangeEvent) -> None:
        self._timers.pop(key, None)
        self._emit(replace(event, timestamp=epoch_ms()))


class WatchHandle:
    """A running watch over one target."""

    def __init__(self, target: WatchTarget, task: asyncio.Task, stop_event: asyncio.Event) -> None:
        self.target = target
        self.task = task
        self._stop_event = stop_event

    @property
    def closed(self) -> bool:
        return self._stop_event.is_set()

    def close(self) -> None:
        self._stop_event.set()
        self.task.cancel()

    async def wait_closed(self) -> None:
        await asyncio.gather(self.task, return_exceptions=True)


class WatchConnection:
    """One subscriber of the change stream.

    The connection opens when :meth:`events` is first iterated and releases its
    resources when iteration stops, whichever side ends it.
    """

    def __init__(
        self,
        settings: Settings,
        registry: "WatcherRegistry",
        watch_factory: WatchFactory = default_watch_factory,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.state = ConnectionState.CONNECTING
        self.settings = settings
        self._registry = registry
        self._watch_factory = watch_factory
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._debouncer = Debouncer(settings.debounce_seconds, self._enqueue)
        self._handles: list[WatchHandle] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._released = False

    @property
    def handles(self) -> tuple[WatchHandle, ...]:
        return tuple(self._handles)

    @property
    def open_watch_count(self) -> int:
        return sum(1 for handle in self._handles if not handle.closed)

    @property
    def pending_events(self) -> int:
        return self._debouncer.pending

    def start(self) -> None:
        if self.state is not ConnectionState.CONNECTING:
            return

        self._registry.register(self)
        self._enqueue(ChangeEvent(type=ChangeEventType.CONNECTED, connection_id=self.id))

        for target in watch_targets(self.settings):
            stop_event = asyncio.Event()
            task = asyncio.create_task(self._run_watch(target, stop_event))
            self._handles.append(WatchHandle(target, task, stop_event))

        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        self.state = ConnectionState.OPEN
        logger.info(f"Change stream {self.id} opened with {len(self._handles)} watch(es)")

    async def events(self) -> AsyncIterator[ChangeEvent]:
        self.start()
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    break
                yield event
        finally:
            self.close()

    def notify(self, target: WatchTarget, change: Change, raw_path: str) -> None:
        """Feed one raw notification through the debouncer."""

        event = ChangeEvent(
            type=normalize_change(change),
            path=target.relative(raw_path),
            category=target.category,
        )
        self._debouncer.push(event)

    def close(self) -> None:
        """Release the heartbeat, pending events, and watches, then end the stream."""

        if self._released:
            return
        self._released = True

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._debouncer.cancel_all()
        for handle in self._handles:
            handle.close()
        self._queue.put_nowait(None)

        if self.state is not ConnectionState.ERRORED:
            self.state = ConnectionState.CLOSED
        self._registry.discard(self.id)
        logger.info(f"Change stream {self.id} closed ({self.state.value})")

    async def wait_closed(self) -> None:
        """Wait until the heartbeat and every watch task have finished."""

        tasks = [handle.task for handle in self._handles]
        if self._heartbeat_task is not None:
            tasks.append(self._heartbeat_task)
        await asyncio.gather(*tasks, return_exceptions=True)

    def _enqueue(self, event: ChangeEvent) -> None:
        if self._released or self.state is ConnectionState.ERRORED:
            return
        self._queue.put_nowait(event)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            self._enqueue(ChangeEvent(type=ChangeEventType.HEARTBEAT))

    async def _run_watch(self, target: WatchTarget, stop_event: asyncio.Event) -> None:
        try:
            async for changes in self._watch_factory(target, stop_event):
                for change, raw_path in changes:
                    self.notify(target, change, raw_path)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Watch error for {target.category} ({target.path}): {exc}")
            self._fail()

    def _fail(self) -> None:
        if self.state is ConnectionState.OPEN:
            self.state = ConnectionState.ERRORED
            self._queue.put_nowait(None)


class WatcherRegistry:
    """Owns the active change stream connections, keyed by connection id."""

    def __init__(self, settings: Settings, watch_factory: WatchFactory = default_watch_factory) -> None:
        self.settings = settings
        self._watch_factory = watch_factory
        self._connections: dict[str, WatchConnection] = {}

    def create_connection(self) -> WatchConnection:
        return WatchConnection(self.settings, self, watch_factory=self._watch_factory)

    def register(self, connection: WatchConnection) -> None:
        self._connections[connection.id] = connection

    def discard(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> WatchConnection | None:
        return self._connections.get(connection_id)

    def close(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.close()

    def close_all(self) -> None:
        for connection in list(self._connections.values()):
            connection.close()

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    @property
    def active_watch_count(self) -> int:
        return sum(connection.open_watch_count for connection in self._connections.values())

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections
