#!/usr/bin/env python3

import signal
import sys
import threading

from loguru import logger

from .backup_manager import BackupManager
from .cli import cli
from .models import BackendMode
from .monitor import ChangeWatcher, build_watch_patterns
from .schedule_store import ScheduleStore
from .scheduler import ScheduleEngine


def build_watcher(manager: BackupManager) -> tuple[ChangeWatcher | None, list[str]]:
    settings = manager.settings()
    if not settings.watch_enabled:
        logger.info("File watching disabled")
        return None, []
    if settings.backend_mode != BackendMode.HISTORY:
        logger.warning("File watching requires the history backend, not starting watcher")
        return None, []
    if not settings.live_config_path.is_dir():
        logger.warning(f"Live config path does not exist: {settings.live_config_path}")
        return None, []

    patterns = build_watch_patterns(settings.watched_paths, settings.features)
    return ChangeWatcher(settings.live_config_path, manager.autosave), patterns


def run_daemon_mode(manager: BackupManager, store: ScheduleStore):
    """Run scheduled backups and the file watcher until a shutdown signal arrives."""
    logger.info("Starting backup daemon...")

    settings = manager.settings()
    engine = ScheduleEngine(store, manager.run_scheduled_job)
    watcher, patterns = build_watcher(manager)
    stopped = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Received shutdown signal, stopping services...")
        stopped.set()

    def reload_handler(signum, frame):
        logger.info("Reloading scheduled jobs")
        engine.load_all()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, reload_handler)

    try:
        engine.load_all()
        engine.start()
        if watcher:
            watcher.start(patterns, settings.watch_debounce_seconds)

        logger.info("Backup daemon started successfully")
        logger.info("Press Ctrl+C to stop")

        while not stopped.wait(1.0):
            pass

    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        if watcher:
            watcher.stop()
        engine.stop()


def main():
    cli()


if __name__ == "__main__":
    sys.exit(main())
