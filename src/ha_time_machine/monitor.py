import os
import re
import threading
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .models import FeatureFlags, WatchEvent

WATCH_PATTERNS = {
    "config": ("*.yaml", "*.yml"),
    "lovelace": (".storage/lovelace*",),
    "esphome": ("esphome/**/*.yaml", "esphome/**/*.yml"),
    "packages": ("packages/**/*.yaml", "packages/**/*.yml"),
}
# Selectors that only apply when their subtree is part of the backup
FEATURE_GATED = {
    "esphome": "device_definitions",
    "packages": "user_packages",
}


def build_watch_patterns(selectors: Iterable[str], features: FeatureFlags) -> list[str]:
    patterns: list[str] = []
    for selector in selectors:
        if selector not in WATCH_PATTERNS:
            logger.warning(f"Unknown watch selector: {selector}")
            continue
        flag = FEATURE_GATED.get(selector)
        if flag and not getattr(features, flag):
            continue
        patterns.extend(p for p in WATCH_PATTERNS[selector] if p not in patterns)
    return patterns


def glob_to_regex(pattern: str) -> re.Pattern:
    """Compile a slash-separated glob. Wildcards never match dotfiles."""
    regex = ""
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            regex += r"(?:(?!\.)[^/]*/)*"
            i += 3
        elif pattern[i] == "*":
            regex += r"(?!\.)[^/]*" if i == 0 or pattern[i - 1] == "/" else r"[^/]*"
            i += 1
        elif pattern[i] == "?":
            regex += r"[^/]"
            i += 1
        else:
            regex += re.escape(pattern[i])
            i += 1
    return re.compile(f"^{regex}$")


class PatternMatcher:
    def __init__(self, patterns: Iterable[str]):
        self.patterns = list(patterns)
        self._compiled = [glob_to_regex(p) for p in self.patterns]

    def matches(self, relative_path: str) -> bool:
        return any(regex.match(relative_path) for regex in self._compiled)


class Debouncer:
    """
    Per-key debounce: each push re-arms that key's timer, and a key fires
    once with the last value pushed for it. Keys are independent.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[Any], None],
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.delay = delay
        self.callback = callback
        self.timer_factory = timer_factory

        self._cond = threading.Condition()
        self._timers: dict[str, tuple[Any, int]] = {}
        self._values: dict[str, Any] = {}
        self._generation = 0
        self._in_flight = 0
        self._stopped = False

    def push(self, key: str, value: Any):
        with self._cond:
            if self._stopped:
                return

            previous = self._timers.pop(key, None)
            if previous:
                previous[0].cancel()

            self._generation += 1
            token = self._generation
            timer = self.timer_factory(self.delay, self._fire, args=(key, token))
            if hasattr(timer, "daemon"):
                timer.daemon = True
            self._timers[key] = (timer, token)
            self._values[key] = value
            timer.start()

    def _fire(self, key: str, token: int):
        with self._cond:
            current = self._timers.get(key)
            if self._stopped or current is None or current[1] != token:
                return
            del self._timers[key]
            value = self._values.pop(key)
            self._in_flight += 1

        try:
            self.callback(value)
        except Exception as e:
            logger.error(f"Debounced callback for {key} failed: {e}")
        finally:
            with self._cond:
                self._in_flight -= 1
                self._cond.notify_all()

    def pending(self) -> list[str]:
        with self._cond:
            return list(self._timers)

    def stop(self, timeout: float | None = 30.0):
        """Cancel pending timers and wait for running callbacks to finish."""
        with self._cond:
            self._stopped = True
            for timer, _ in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._values.clear()
            self._cond.wait_for(lambda: self._in_flight == 0, timeout=timeout)


class WatchEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: "ChangeWatcher"):
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.handle_change(os.fsdecode(event.src_path), "created")

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.handle_change(os.fsdecode(event.src_path), "modified")

    def on_moved(self, event: FileSystemEvent):
        # Editors that save via rename show up as a move onto the watched file
        if not event.is_directory:
            self.watcher.handle_change(os.fsdecode(event.dest_path), "modified")


class ChangeWatcher:
    def __init__(
        self,
        source_dir: Path,
        on_change: Callable[[WatchEvent], None],
        timer_factory: Callable[..., Any] = threading.Timer,
        observer_factory: Callable[[], Any] = Observer,
    ):
        self.source_dir = Path(source_dir)
        self.on_change = on_change
        self.timer_factory = timer_factory
        self.observer_factory = observer_factory

        self.matcher = PatternMatcher([])
        self.debouncer: Debouncer | None = None
        self._observer = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self.debouncer is not None

    def start(self, patterns: Iterable[str], debounce_seconds: float = 60.0):
        with self._lock:
            if self.debouncer is not None:
                raise RuntimeError("Watcher already running")

            self.matcher = PatternMatcher(patterns)
            self.debouncer = Debouncer(debounce_seconds, self._settled, self.timer_factory)

            logger.info(f"Starting file watcher on {self.source_dir}")
            logger.info(f"Watching patterns: {', '.join(self.matcher.patterns)}")

            observer = self.observer_factory()
            observer.schedule(WatchEventHandler(self), str(self.source_dir), recursive=True)
            observer.start()
            self._observer = observer

    def stop(self):
        with self._lock:
            observer, self._observer = self._observer, None
            debouncer, self.debouncer = self.debouncer, None

        if observer is not None:
            observer.stop()
            observer.join()
        if debouncer is not None:
            debouncer.stop()
        logger.info("File watcher stopped")

    def handle_change(self, path: str, event_type: str) -> bool:
        """Queue a change if it matches a watched pattern. Returns True when queued."""
        debouncer = self.debouncer
        if debouncer is None:
            return False

        absolute = Path(path)
        try:
            relative = absolute.relative_to(self.source_dir).as_posix()
        except ValueError:
            return False

        if not self.matcher.matches(relative):
            return False

        logger.debug(f"File {event_type}: {relative}")
        debouncer.push(str(absolute), WatchEvent(path=absolute, event_type=event_type))
        return True

    def _settled(self, event: WatchEvent):
        logger.info(f"Change settled: {event.path} ({event.event_type})")
        self.on_change(event)
