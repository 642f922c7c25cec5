from __future__ import annotations

import enum
import functools
import logging
import os
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from claude_pings.paths import trigger_file_path

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 10240
DEFAULT_RESTART_DELAY = 0.5
DEFAULT_POLL_INTERVAL = 0.1
PID_MAX = 2**31 - 1

_PID_PATTERN = re.compile(r"[+-]?[0-9]+")

TriggerHandler = Callable[[int], None]
Dispatcher = Callable[[Callable[[], None]], Any]


class WatchEvent(enum.Flag):
    """Kinds of change reported for a watched file."""

    WRITE = enum.auto()
    EXTEND = enum.auto()
    RENAME = enum.auto()
    DELETE = enum.auto()


WATCH_MASK = WatchEvent.WRITE | WatchEvent.EXTEND | WatchEvent.RENAME | WatchEvent.DELETE

ChangeCallback = Callable[[WatchEvent], None]


class Subscription(Protocol):
    @property
    def active(self) -> bool: ...

    def cancel(self) -> None: ...


Subscriber = Callable[[Path, WatchEvent, ChangeCallback], Subscription]


def read_from(path: Path, offset: int) -> bytes:
    """Read ``[offset, EOF)`` of ``path`` through a fresh handle."""
    with path.open("rb") as handle:
        handle.seek(offset)
        return handle.read()


def decode_chunk(data: bytes) -> str | None:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


def split_lines(text: str) -> tuple[list[str], str]:
    """
    Split ``text`` on any newline sequence.

    Returns the complete lines without their terminators and the trailing
    fragment that has no terminator yet (empty when ``text`` ends a line).
    """
    lines = text.splitlines(keepends=True)
    partial = ""
    if lines and lines[-1].splitlines()[0] == lines[-1]:
        partial = lines.pop()
    return [line.splitlines()[0] for line in lines], partial


def parse_identifier(line: str) -> int | None:
    token = line.strip()
    if not _PID_PATTERN.fullmatch(token):
        return None
    value = int(token)
    if value <= 0 or value > PID_MAX:
        return None
    return value


def parse_identifiers(lines: Iterable[str]) -> list[int]:
    """Return the positive process identifiers found in ``lines``, in order."""
    identifiers: list[int] = []
    for line in lines:
        value = parse_identifier(line)
        if value is not None:
            identifiers.append(value)
    return identifiers


class PollingSubscription:
    """
    Watch one file by polling from a dedicated daemon thread.

    The file is held open for the lifetime of the subscription so that a
    deletion or replacement of the path can be told apart from an ordinary
    write. ``callback`` runs on the polling thread.
    """

    def __init__(
        self,
        path: str | Path,
        mask: WatchEvent,
        callback: ChangeCallback,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.path = Path(path)
        self.mask = mask
        self.interval = interval
        self._callback = callback
        self._handle = self.path.open("rb")
        held = os.fstat(self._handle.fileno())
        self._identity = (held.st_dev, held.st_ino)
        self._size = held.st_size
        self._mtime_ns = held.st_mtime_ns
        self._gone = False
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"watch:{self.path.name}",
            daemon=True,
        )
        self._thread.start()

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()

    def cancel(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval * 5 + 1.0)
        self._handle.close()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            events = self.poll()
            if not events or self._stopped.is_set():
                continue
            try:
                self._callback(events)
            except Exception:
                logger.exception("Change callback failed for %s", self.path)

    def poll(self) -> WatchEvent:
        """Compare the file against the last observation and report what changed."""
        events = WatchEvent(0)
        try:
            held = os.fstat(self._handle.fileno())
        except (OSError, ValueError):
            return events
        try:
            current = self.path.stat()
        except OSError:
            current = None

        if not self._gone:
            if current is None or held.st_nlink == 0:
                self._gone = True
                events |= WatchEvent.DELETE
            if current is not None and (current.st_dev, current.st_ino) != self._identity:
                self._gone = True
                events |= WatchEvent.RENAME

        if held.st_size > self._size:
            events |= WatchEvent.EXTEND
        elif held.st_size < self._size or held.st_mtime_ns != self._mtime_ns:
            events |= WatchEvent.WRITE
        self._size = held.st_size
        self._mtime_ns = held.st_mtime_ns
        return events & self.mask


def subscribe(
    path: str | Path,
    mask: WatchEvent,
    callback: ChangeCallback,
    *,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> PollingSubscription:
    """Start watching ``path`` for the changes in ``mask``; raises ``OSError`` if it cannot be opened."""
    return PollingSubscription(path, mask, callback, interval=interval)


class TriggerWatcher:
    """
    Tail the trigger file and hand every appended PID to ``on_trigger``.

    Content present when the watcher starts is treated as consumed. Each
    change notification reads the unread delta, parses one identifier per
    line and dispatches ``on_trigger(pid)`` on the consumer's context in
    file order. The file is truncated once it grows past ``max_size``.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        on_trigger: TriggerHandler | None = None,
        *,
        dispatch: Dispatcher | None = None,
        subscriber: Subscriber | None = None,
        restart_delay: float = DEFAULT_RESTART_DELAY,
        max_size: int = DEFAULT_MAX_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if max_size < 0:
            raise ValueError("max_size must be non-negative")
        if restart_delay < 0:
            raise ValueError("restart_delay must be non-negative")
        self.path = Path(path) if path is not None else trigger_file_path()
        self.on_trigger = on_trigger
        self.restart_delay = restart_delay
        self.max_size = max_size
        self._subscriber = subscriber or functools.partial(subscribe, interval=poll_interval)
        self._executor: ThreadPoolExecutor | None = None
        if dispatch is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="trigger-dispatch")
            dispatch = self._executor.submit
        self._dispatch = dispatch
        self._lock = threading.RLock()
        self._subscription: Subscription | None = None
        self._restart_timer: threading.Timer | None = None
        # Bumped by every stop(); a pending restart only proceeds if it is unchanged.
        self._generation = 0
        self._cursor = 0
        self._partial = ""

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def running(self) -> bool:
        return self._subscription is not None

    def start(self) -> bool:
        """Begin watching; returns ``False`` when the trigger file cannot be opened."""
        with self._lock:
            if self._subscription is not None:
                return True
            self._cancel_restart()
            try:
                self._ensure_trigger_file()
                self._cursor = self.path.stat().st_size
                self._partial = ""
                self._subscription = self._subscriber(self.path, WATCH_MASK, self.handle_change)
            except OSError as exc:
                logger.error("Failed to open trigger file %s for watching: %s", self.path, exc)
                return False
        logger.debug("Watching %s from offset %d", self.path, self._cursor)
        return True

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
            self._cancel_restart()
        self._detach()

    def _detach(self) -> None:
        with self._lock:
            subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.cancel()
            logger.debug("Stopped watching %s", self.path)

    def close(self) -> None:
        """Stop watching and release the dispatch worker owned by this watcher."""
        self.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    def __enter__(self) -> TriggerWatcher:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def handle_change(self, events: WatchEvent = WatchEvent.WRITE) -> None:
        """Process one change notification for the trigger file."""
        with self._lock:
            if self._subscription is None:
                return
            replaced = bool(events & (WatchEvent.RENAME | WatchEvent.DELETE))
            if replaced or not self.path.exists():
                self._schedule_restart()
                return

            try:
                size = self.path.stat().st_size
                if size < self._cursor:
                    logger.debug("Trigger file %s shrank to %d bytes; rewinding", self.path, size)
                    self._cursor = 0
                    self._partial = ""
                data = read_from(self.path, self._cursor)
            except OSError as exc:
                logger.debug("Failed to read trigger file %s: %s", self.path, exc)
                return
            if not data:
                return

            text = decode_chunk(data)
            if text is None:
                logger.debug("Skipping %d undecodable bytes at offset %d", len(data), self._cursor)
            else:
                lines, self._partial = split_lines(self._partial + text)
                self._cursor += len(data)
                for pid in parse_identifiers(lines):
                    self._emit(pid)
                    if self._subscription is None:
                        return

            self._truncate_if_oversized()

    def _ensure_trigger_file(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()

    def _emit(self, pid: int) -> None:
        handler = self.on_trigger
        if handler is None:
            return
        try:
            self._dispatch(functools.partial(_deliver, handler, pid))
        except RuntimeError as exc:
            logger.debug("Dropping trigger %d: %s", pid, exc)

    def _truncate_if_oversized(self) -> None:
        try:
            size = self.path.stat().st_size
            if size <= self.max_size:
                return
            with self.path.open("r+b") as handle:
                handle.truncate(0)
        except OSError as exc:
            logger.debug("Failed to truncate trigger file %s: %s", self.path, exc)
            return
        logger.debug("Truncated trigger file %s at %d bytes", self.path, size)
        self._cursor = 0
        self._partial = ""

    def _schedule_restart(self) -> None:
        if self._restart_timer is not None:
            return
        timer = threading.Timer(self.restart_delay, self._restart, args=(self._generation,))
        timer.daemon = True
        self._restart_timer = timer
        timer.start()

    def _cancel_restart(self) -> None:
        timer, self._restart_timer = self._restart_timer, None
        if timer is not None:
            timer.cancel()

    def _restart(self, generation: int) -> None:
        with self._lock:
            if self._generation != generation:
                return
            self._restart_timer = None
        logger.info("Trigger file %s was removed or replaced; restarting watch", self.path)
        self._detach()
        with self._lock:
            if self._generation != generation:
                logger.debug("Watcher for %s stopped during restart", self.path)
                return
            self.start()


def _deliver(handler: TriggerHandler, pid: int) -> None:
    try:
        handler(pid)
    except Exception:
        logger.exception("Trigger handler failed for pid %d", pid)
