import sys
import time
import signal
import logging
import argparse
import threading
from typing import Optional

from speedtest_providers import MeasurementError, measure
from storage import (
    MAX_INTERVAL_MINUTES,
    MIN_INTERVAL_MINUTES,
    Config,
    ConfigStore,
    HistoryStore,
    Reading,
    StorageError,
)

log = logging.getLogger("speed_monitor")

CONFIG_CHECK_SECONDS = 10
MB_PER_TEST = 150

IDLE = "idle"
MEASURING = "measuring"
PERSISTING = "persisting"
SCHEDULING = "scheduling"


class SpeedMonitor:
    """Measure, store, re-read the interval, arm the next single-shot timer.

    At most one timer is pending at any time: arming a new one cancels the
    previous. Clock, timer factory and measurement function are injectable
    so a cycle can be driven without threads or network.
    """

    def __init__(self, config_store: ConfigStore, history_store: HistoryStore,
                 measure=measure, timer_factory=threading.Timer, clock=time.monotonic,
                 on_reading=None):
        self.config_store = config_store
        self.history_store = history_store
        self.state = IDLE
        self._measure = measure
        self._timer_factory = timer_factory
        self._clock = clock
        self._on_reading = on_reading
        self._timer = None
        self._timer_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._last_config_check = clock()
        self._last_config = Config()
        self._stopped = False

    @property
    def busy(self) -> bool:
        return self._cycle_lock.locked()

    def load_config(self) -> Config:
        try:
            self._last_config = self.config_store.load()
        except StorageError as e:
            log.warning("Config unreadable, keeping %d min interval: %s",
                        self._last_config.interval_minutes, e)
        return self._last_config

    def _maybe_log_config(self):
        now = self._clock()
        if now - self._last_config_check > CONFIG_CHECK_SECONDS:
            self._last_config_check = now
            log.info("Current setting: every %d min", self.load_config().interval_minutes)

    def measure_once(self) -> Optional[Reading]:
        """Run one measurement and append it to the history.

        Returns None when the measurement or the write failed, or when another
        measurement is already running.
        """
        if not self._cycle_lock.acquire(blocking=False):
            log.info("Measurement already in progress, skipping")
            return None
        try:
            config = self.load_config()
            self.state = MEASURING
            log.info("Testing speed at %s...", time.strftime("%H:%M"))
            try:
                reading = self._measure(config.method)
            except MeasurementError as e:
                log.warning("Speed test failed, cycle skipped: %s", e)
                return None

            self.state = PERSISTING
            try:
                self.history_store.append(reading)
            except StorageError as e:
                log.error("Could not store reading: %s", e)
                return None

            log.info("Results: DL=%.2f Mbps UL=%.2f Mbps Ping=%.2f ms Jitter=%.2f ms",
                     reading.download, reading.upload, reading.ping, reading.jitter)
            if reading.estimated:
                log.info("Estimated (not measured): %s", ", ".join(reading.estimated))
            if self._on_reading:
                self._on_reading(reading)
            return reading
        finally:
            self._cycle_lock.release()

    def run_cycle(self):
        self._maybe_log_config()
        try:
            self.measure_once()
        except Exception as e:
            log.exception("Measurement cycle error: %s", e)
        self.state = SCHEDULING
        config = self.load_config()
        self.schedule_next(config.interval_minutes)

    def _arm(self, seconds):
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._stopped:
                self._timer = self._timer_factory(seconds, self.run_cycle)
                self._timer.daemon = True
                self._timer.start()
            self.state = IDLE
            return self._timer

    def schedule_next(self, minutes: int):
        timer = self._arm(minutes * 60)
        if timer is not None:
            log.info("Next measurement in %d min", minutes)
        return timer

    def start(self):
        self._stopped = False
        return self._arm(0)

    def stop(self):
        with self._timer_lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        log.info("Scheduler stopped")


def interval_arg(value):
    try:
        minutes = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"interval must be an integer, got {value!r}")
    if not MIN_INTERVAL_MINUTES <= minutes <= MAX_INTERVAL_MINUTES:
        raise argparse.ArgumentTypeError(
            f"interval must be {MIN_INTERVAL_MINUTES}-{MAX_INTERVAL_MINUTES} minutes, got {minutes}"
        )
    return minutes


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Periodic internet speed monitor")
    parser.add_argument("interval", nargs="?", type=interval_arg,
                        help="measurement interval in minutes (1-1440), saved to the config")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(threadName)s: %(message)s"
    )

    config_store = ConfigStore()
    history_store = HistoryStore()
    monitor = SpeedMonitor(config_store, history_store)

    config = monitor.load_config()
    if args.interval is not None:
        try:
            config = config_store.save(Config(interval_minutes=args.interval, method=config.method))
        except StorageError as e:
            log.error("Could not save interval override: %s", e)

    log.info("Network speed monitor")
    log.info("Interval: %d min", config.interval_minutes)
    log.info("Retention: %s", history_store.retention)
    log.info("Data usage: about %d MB/day",
             round(24 * 60 / config.interval_minutes * MB_PER_TEST))

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        log.info("Received signal %d, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    monitor.start()
    while not stop_event.wait(1):
        pass
    monitor.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
