"""Tests for the measurement scheduler and its CLI."""

import json
import signal
from datetime import datetime, timezone

import pytest

import speed_monitor
import storage
from speed_monitor import SpeedMonitor, parse_args
from speedtest_providers import MeasurementError
from storage import Config, ConfigStore, HistoryStore, Reading, StorageError, format_timestamp

NOW = datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class FakeTimer:
    """Stands in for threading.Timer; fires only when the test says so."""

    created = []

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function()


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_reading(download=100.0):
    return Reading.create(download=download, upload=40.0, ping=10.0, jitter=1.0,
                          timestamp=format_timestamp(NOW), method="external-tool")


class FakeProvider:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, method):
        self.calls.append(method)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture(autouse=True)
def reset_timers():
    FakeTimer.created = []
    yield


@pytest.fixture
def config_store(tmp_path):
    return ConfigStore(tmp_path / "config.json")


@pytest.fixture
def history_store(tmp_path):
    return HistoryStore(tmp_path / "speed_data.json", clock=lambda: NOW)


def make_monitor(config_store, history_store, provider, **kwargs):
    return SpeedMonitor(config_store, history_store, measure=provider,
                        timer_factory=FakeTimer, clock=kwargs.pop("clock", FakeClock()), **kwargs)


class TestCycle:
    def test_successful_cycle_appends_and_rearms(self, config_store, history_store):
        provider = FakeProvider(make_reading())
        monitor = make_monitor(config_store, history_store, provider)
        monitor.run_cycle()

        assert len(history_store.load_all()) == 1
        assert len(FakeTimer.created) == 1
        timer = FakeTimer.created[0]
        assert timer.interval == 30 * 60
        assert timer.started
        assert timer.daemon
        assert monitor.state == speed_monitor.IDLE

    def test_method_from_config_passed_to_provider(self, config_store, history_store):
        config_store.save(Config(interval_minutes=10, method="approximate"))
        provider = FakeProvider(make_reading())
        make_monitor(config_store, history_store, provider).run_cycle()
        assert provider.calls == ["approximate"]

    def test_two_failures_leave_history_and_keep_scheduling(self, config_store, history_store):
        history_store.append(make_reading(download=50))
        provider = FakeProvider(MeasurementError("network down"), MeasurementError("network down"),
                                make_reading())
        monitor = make_monitor(config_store, history_store, provider)

        monitor.run_cycle()
        FakeTimer.created[-1].fire()
        assert len(history_store.load_all()) == 1
        assert len(FakeTimer.created) == 2
        third = FakeTimer.created[-1]
        assert third.interval == 30 * 60
        assert third.started
        assert not third.cancelled

        third.fire()
        assert len(history_store.load_all()) == 2

    def test_mid_cycle_config_change_used_for_next_timer(self, config_store, history_store):
        config_store.save(Config(interval_minutes=30))

        def provider(method):
            config_store.save(Config(interval_minutes=5))
            return make_reading()

        make_monitor(config_store, history_store, provider).run_cycle()
        assert FakeTimer.created[-1].interval == 5 * 60

    def test_unexpected_error_is_logged_not_fatal(self, config_store, history_store):
        provider = FakeProvider(RuntimeError("boom"))
        monitor = make_monitor(config_store, history_store, provider)
        monitor.run_cycle()
        assert history_store.load_all() == []
        assert FakeTimer.created[-1].started

    def test_storage_failure_skips_reading(self, config_store, history_store, monkeypatch):
        def broken_append(reading):
            raise StorageError("disk full")

        monkeypatch.setattr(history_store, "append", broken_append)
        seen = []
        monitor = make_monitor(config_store, history_store, FakeProvider(make_reading()),
                               on_reading=seen.append)
        assert monitor.measure_once() is None
        assert seen == []

    def test_on_reading_callback(self, config_store, history_store):
        reading = make_reading()
        seen = []
        monitor = make_monitor(config_store, history_store, FakeProvider(reading), on_reading=seen.append)
        assert monitor.measure_once() == reading
        assert seen == [reading]

    def test_measure_once_does_not_schedule(self, config_store, history_store):
        monitor = make_monitor(config_store, history_store, FakeProvider(make_reading()))
        monitor.measure_once()
        assert FakeTimer.created == []

    def test_concurrent_measurement_skipped(self, config_store, history_store):
        monitor = make_monitor(config_store, history_store, FakeProvider(make_reading()))
        monitor._cycle_lock.acquire()
        try:
            assert monitor.busy
            assert monitor.measure_once() is None
        finally:
            monitor._cycle_lock.release()
        assert history_store.load_all() == []


class TestScheduling:
    def test_rearm_cancels_previous_timer(self, config_store, history_store):
        monitor = make_monitor(config_store, history_store, FakeProvider())
        first = monitor.schedule_next(10)
        second = monitor.schedule_next(20)
        assert first.cancelled
        assert not second.cancelled
        assert second.interval == 20 * 60

    def test_start_arms_immediate_cycle(self, config_store, history_store):
        monitor = make_monitor(config_store, history_store, FakeProvider(make_reading()))
        timer = monitor.start()
        assert timer.interval == 0
        timer.fire()
        assert len(history_store.load_all()) == 1

    def test_stop_prevents_rearm(self, config_store, history_store):
        monitor = make_monitor(config_store, history_store, FakeProvider(make_reading()))
        pending = monitor.schedule_next(30)
        monitor.stop()
        assert pending.cancelled

        # an in-flight cycle finishes but arms nothing new
        monitor.run_cycle()
        assert len(history_store.load_all()) == 1
        assert FakeTimer.created == [pending]

    def test_config_read_failure_keeps_last_interval(self, config_store, history_store, monkeypatch):
        config_store.save(Config(interval_minutes=7))
        monitor = make_monitor(config_store, history_store,
                               FakeProvider(MeasurementError("x"), MeasurementError("x")))
        monitor.run_cycle()
        assert FakeTimer.created[-1].interval == 7 * 60

        def unreadable():
            raise StorageError("permission denied")

        monkeypatch.setattr(config_store, "load", unreadable)
        monitor.run_cycle()
        assert FakeTimer.created[-1].interval == 7 * 60

    def test_config_check_throttled(self, config_store, history_store, monkeypatch):
        clock = FakeClock()
        monitor = make_monitor(config_store, history_store, FakeProvider(), clock=clock)
        calls = []
        original = monitor.load_config

        def counting_load():
            calls.append(clock.now)
            return original()

        monkeypatch.setattr(monitor, "load_config", counting_load)

        clock.now += 5
        monitor._maybe_log_config()
        assert calls == []
        clock.now += 6
        monitor._maybe_log_config()
        monitor._maybe_log_config()
        assert calls == [clock.now]


class TestCli:
    def test_no_interval(self):
        assert parse_args([]).interval is None

    @pytest.mark.parametrize("value", ["1", "60", "1440"])
    def test_valid_interval(self, value):
        assert parse_args([value]).interval == int(value)

    @pytest.mark.parametrize("value", ["0", "1441", "-5", "ten", "2.5"])
    def test_invalid_interval_is_fatal(self, value):
        with pytest.raises(SystemExit) as exc:
            parse_args([value])
        assert exc.value.code == 2


class TestMain:
    @pytest.fixture
    def data_dir(self, tmp_path, monkeypatch):
        monkeypatch.setitem(storage.CONFIG, "data_dir", str(tmp_path))
        return tmp_path

    @pytest.fixture
    def started(self, monkeypatch):
        """Record monitors passed to start() and deliver SIGTERM right away."""
        handlers = {}
        monitors = []

        def fake_signal(signum, handler):
            handlers[signum] = handler

        def fake_start(self):
            monitors.append(self)
            handlers[signal.SIGTERM](signal.SIGTERM, None)

        monkeypatch.setattr(speed_monitor.signal, "signal", fake_signal)
        monkeypatch.setattr(SpeedMonitor, "start", fake_start)
        return monitors

    def _stored(self, data_dir):
        with open(data_dir / "config.json", encoding="utf-8") as f:
            return json.load(f)

    def test_interval_override_saved_with_method(self, data_dir, started):
        (data_dir / "config.json").write_text(
            json.dumps({"intervalMinutes": 30, "method": "approximate"}), encoding="utf-8")
        assert speed_monitor.main(["5"]) == 0
        assert self._stored(data_dir) == {"intervalMinutes": 5, "method": "approximate"}
        assert started[0].load_config() == Config(interval_minutes=5, method="approximate")

    def test_without_override_default_materialized(self, data_dir, started):
        assert speed_monitor.main([]) == 0
        assert self._stored(data_dir) == {"intervalMinutes": 30}

    def test_without_override_stored_interval_kept(self, data_dir, started):
        (data_dir / "config.json").write_text(json.dumps({"intervalMinutes": 45}), encoding="utf-8")
        speed_monitor.main([])
        assert self._stored(data_dir) == {"intervalMinutes": 45}

    def test_shutdown_stops_arming(self, data_dir, started):
        speed_monitor.main(["5"])
        monitor = started[0]
        assert monitor.schedule_next(5) is None

    def test_invalid_override_writes_nothing(self, data_dir, started):
        with pytest.raises(SystemExit) as exc:
            speed_monitor.main(["0"])
        assert exc.value.code == 2
        assert not (data_dir / "config.json").exists()
        assert started == []
