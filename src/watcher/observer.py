"""File watcher: PollingObserver + IngestionPipeline hand-off.

Watches a drop folder for importer batch files (.json), waits for file
stability (size+mtime stable for 10s), validates that the JSON is
complete, then runs IngestionPipeline.ingest_file.

Uses PollingObserver as primary (not fallback) due to NAS/Docker volume
unreliability with inotify. 30-second polling interval.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEventHandler

from src.database.repository import StorageError
from src.parsers.base import ValidationError

if TYPE_CHECKING:
    from src.ingest.pipeline import BatchReport, IngestionPipeline

logger = logging.getLogger(__name__)

# File extensions we accept
SUPPORTED_EXTENSIONS = {".json"}

# Default stability check parameters
DEFAULT_STABILITY_SECONDS = 10
DEFAULT_CHECK_INTERVAL = 2.0

# Default polling interval for PollingObserver
DEFAULT_POLL_INTERVAL = 30


class FileStabilityError(Exception):
    """Raised when a file fails post-stability validation."""


# ── File stability & validation ──────────────────────────


def wait_for_stable(
    filepath: Path,
    stability_seconds: int = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = 300.0,
) -> None:
    """Wait until file size and mtime are stable for stability_seconds.

    Raises:
        TimeoutError: If file doesn't stabilize within max_wait.
    """
    prev_size = -1
    prev_mtime = -1.0
    stable_since: float | None = None
    start = time.monotonic()

    while True:
        if time.monotonic() - start > max_wait:
            raise TimeoutError(
                f"File did not stabilize within {max_wait}s: {filepath}"
            )

        stat = filepath.stat()
        if stat.st_size == prev_size and stat.st_mtime == prev_mtime:
            if stable_since is None:
                stable_since = time.monotonic()
            elif time.monotonic() - stable_since >= stability_seconds:
                return  # File is stable
        else:
            stable_since = None

        prev_size = stat.st_size
        prev_mtime = stat.st_mtime
        time.sleep(check_interval)


def validate_file_completeness(filepath: Path) -> None:
    """Post-stability validation: the batch file must be complete JSON.

    A half-written file from an importer still flushing fails to parse,
    which is caught here rather than as a batch-level error.

    Raises:
        FileStabilityError: If file is empty or not parseable JSON.
    """
    if filepath.stat().st_size == 0:
        raise FileStabilityError(f"Empty batch file: {filepath}")
    try:
        with open(filepath, "r", encoding="utf-8") as f:
            json.load(f)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FileStabilityError(f"Incomplete or invalid JSON in {filepath}: {e}") from e


# ── File watcher ─────────────────────────────────────────


class FileWatcher(FileSystemEventHandler):
    """Watch a drop folder for new batch files using PollingObserver.

    Primary watcher (not fallback). 30-second polling interval.
    Processes files sequentially to avoid database contention.

    Args:
        watch_dir: Directory to watch for new files.
        pipeline: IngestionPipeline to process files.
        stability_seconds: Seconds of stability before processing.
        check_interval: Seconds between stability checks.
    """

    def __init__(
        self,
        watch_dir: Path,
        pipeline: IngestionPipeline,
        stability_seconds: int = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.pipeline = pipeline
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self._observer = None

    def start(self) -> None:
        """Start watching the drop folder."""
        from watchdog.observers.polling import PollingObserver

        if not self.watch_dir.exists():
            self.watch_dir.mkdir(parents=True, exist_ok=True)

        self._observer = PollingObserver(timeout=DEFAULT_POLL_INTERVAL)
        self._observer.schedule(self, str(self.watch_dir), recursive=False)
        self._observer.start()
        logger.info("Watching %s for new batch files", self.watch_dir)

    def stop(self) -> None:
        """Stop watching."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("File watcher stopped")

    def on_created(self, event) -> None:
        """Handle new file creation events."""
        if event.is_directory:
            return

        filepath = Path(event.src_path)

        # Skip unsupported extensions
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return

        logger.info("New file detected: %s", filepath.name)
        self._process_file(filepath)

    def _process_file(self, filepath: Path) -> BatchReport | None:
        """Wait for stability, validate, then ingest.

        Returns the batch report, or None if the file could not be ingested.
        Failures are logged; the watcher keeps running.
        """
        try:
            wait_for_stable(
                filepath,
                stability_seconds=self.stability_seconds,
                check_interval=self.check_interval,
            )
            validate_file_completeness(filepath)

            report = self.pipeline.ingest_file(filepath)
            logger.info(
                "Ingest result for %s: %s (accepted=%d, dup=%d, review=%d,"
                " linked=%d, errors=%d)",
                filepath.name, report.status, report.accepted,
                report.exact_duplicates, report.parked_for_review,
                report.cross_source_linked, len(report.errors),
            )
            return report

        except FileStabilityError as e:
            logger.error("File validation failed: %s", e)
        except TimeoutError as e:
            logger.error("File stability timeout: %s", e)
        except ValidationError as e:
            logger.error("Rejected batch file %s: %s", filepath.name, e)
        except StorageError as e:
            logger.error("Storage failure ingesting %s: %s", filepath.name, e)
        except Exception:
            logger.exception("Unexpected error processing %s", filepath.name)
        return None
