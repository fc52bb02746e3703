import time
from pathlib import Path

import pytest

from ha_time_machine.models import FeatureFlags
from ha_time_machine.monitor import (
    ChangeWatcher,
    Debouncer,
    PatternMatcher,
    build_watch_patterns,
)


class FakeTimer:
    def __init__(self, interval, function, args=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


class TimerRecorder:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None):
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer

    def fire_all(self):
        for timer in list(self.timers):
            timer.fire()

    def live(self):
        return [t for t in self.timers if not t.cancelled]


class FakeObserver:
    def __init__(self):
        self.scheduled = []
        self.running = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.running = True

    def stop(self):
        self.running = False

    def join(self, timeout=None):
        pass


def test_burst_for_one_key_fires_once_with_last_value():
    timers = TimerRecorder()
    fired = []
    debouncer = Debouncer(60, fired.append, timer_factory=timers)

    for index in range(5):
        debouncer.push("automations.yaml", f"event-{index}")
    timers.fire_all()

    assert fired == ["event-4"]
    assert len(timers.live()) == 1
    assert all(t.interval == 60 for t in timers.timers)


def test_distinct_keys_fire_independently():
    timers = TimerRecorder()
    fired = []
    debouncer = Debouncer(1, fired.append, timer_factory=timers)

    for name in ("a.yaml", "b.yaml", "c.yaml"):
        debouncer.push(name, name)
    timers.fire_all()

    assert sorted(fired) == ["a.yaml", "b.yaml", "c.yaml"]


def test_stale_timer_firing_is_ignored():
    timers = TimerRecorder()
    fired = []
    debouncer = Debouncer(1, fired.append, timer_factory=timers)

    debouncer.push("a.yaml", "first")
    stale = timers.timers[0]
    debouncer.push("a.yaml", "second")

    # A cancelled threading.Timer may already be running its callback
    stale.function(*stale.args)
    assert fired == []

    timers.timers[-1].fire()
    assert fired == ["second"]


def test_stop_cancels_pending_timers():
    timers = TimerRecorder()
    fired = []
    debouncer = Debouncer(1, fired.append, timer_factory=timers)

    debouncer.push("a.yaml", "a")
    debouncer.stop()
    for timer in timers.timers:
        timer.function(*timer.args)
    debouncer.push("b.yaml", "b")

    assert fired == []
    assert all(t.cancelled for t in timers.timers)
    assert debouncer.pending() == []


def test_callback_errors_do_not_break_debouncer():
    timers = TimerRecorder()
    calls = []

    def callback(value):
        calls.append(value)
        raise RuntimeError("commit failed")

    debouncer = Debouncer(1, callback, timer_factory=timers)
    debouncer.push("a.yaml", 1)
    timers.fire_all()
    debouncer.push("a.yaml", 2)
    timers.timers[-1].fire()

    assert calls == [1, 2]


def test_build_watch_patterns_respects_feature_flags():
    selectors = ["config", "lovelace", "esphome", "packages"]

    assert build_watch_patterns(selectors, FeatureFlags()) == ["*.yaml", "*.yml", ".storage/lovelace*"]
    assert "esphome/**/*.yaml" in build_watch_patterns(selectors, FeatureFlags(device_definitions=True))
    assert build_watch_patterns(["packages", "bogus"], FeatureFlags(user_packages=True)) == [
        "packages/**/*.yaml",
        "packages/**/*.yml",
    ]


@pytest.mark.parametrize(
    "path, expected",
    [
        ("automations.yaml", True),
        ("scripts.yml", True),
        (".storage/lovelace", True),
        (".storage/lovelace.dashboard_energy", True),
        (".storage/core.config_entries", False),
        ("esphome/kitchen.yaml", True),
        ("esphome/devices/porch.yaml", True),
        ("esphome/.secret/porch.yaml", False),
        ("esphome/notes.txt", False),
        (".hidden.yaml", False),
        ("custom_components/foo.yaml", False),
    ],
)
def test_pattern_matching(path, expected):
    patterns = build_watch_patterns(
        ["config", "lovelace", "esphome"], FeatureFlags(device_definitions=True)
    )

    assert PatternMatcher(patterns).matches(path) is expected


def test_watcher_queues_matching_changes(tmp_path):
    timers = TimerRecorder()
    observer = FakeObserver()
    settled = []
    watcher = ChangeWatcher(tmp_path, settled.append, timer_factory=timers, observer_factory=lambda: observer)

    watcher.start(["*.yaml"], debounce_seconds=5)
    assert observer.running
    assert observer.scheduled[0][1] == str(tmp_path)

    assert watcher.handle_change(str(tmp_path / "automations.yaml"), "modified")
    assert watcher.handle_change(str(tmp_path / "automations.yaml"), "modified")
    assert not watcher.handle_change(str(tmp_path / "sub" / "x.yaml"), "created")
    assert not watcher.handle_change("/elsewhere/automations.yaml", "modified")

    timers.fire_all()
    assert len(settled) == 1
    assert settled[0].path == Path(tmp_path / "automations.yaml")
    assert settled[0].event_type == "modified"

    watcher.stop()
    assert not observer.running
    assert not watcher.handle_change(str(tmp_path / "automations.yaml"), "modified")


def test_stop_before_settle_prevents_firing(tmp_path):
    timers = TimerRecorder()
    settled = []
    watcher = ChangeWatcher(tmp_path, settled.append, timer_factory=timers, observer_factory=FakeObserver)

    watcher.start(["*.yaml"], debounce_seconds=5)
    watcher.handle_change(str(tmp_path / "a.yaml"), "created")
    watcher.stop()
    for timer in timers.timers:
        timer.function(*timer.args)

    assert settled == []


def test_watcher_cannot_start_twice(tmp_path):
    watcher = ChangeWatcher(tmp_path, lambda event: None, observer_factory=FakeObserver)
    watcher.start(["*.yaml"])

    with pytest.raises(RuntimeError):
        watcher.start(["*.yaml"])
    watcher.stop()


def _wait_for(condition, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.05)
    return condition()


def test_real_observer_debounces_bursts_per_file(tmp_path):
    source = tmp_path.resolve()
    (source / "automations.yaml").write_text("[]\n")
    (source / "notes.txt").write_text("ignored\n")

    settled = []
    watcher = ChangeWatcher(source, settled.append)
    watcher.start(["*.yaml"], debounce_seconds=0.3)
    try:
        time.sleep(1.0)
        assert settled == []

        for n in range(5):
            (source / "automations.yaml").write_text(f"- id: a{n}\n")
        (source / "scripts.yaml").write_text("{}\n")
        (source / "notes.txt").write_text("still ignored\n")

        assert _wait_for(lambda: len(settled) >= 2)
        time.sleep(1.0)
    finally:
        watcher.stop()

    assert sorted(event.path.name for event in settled) == ["automations.yaml", "scripts.yaml"]
