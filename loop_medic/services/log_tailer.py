"""Tail a growing log file and emit each newly appended line."""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from loop_medic.models.monitor import LogLine

logger = logging.getLogger(__name__)

DEFAULT_POLLING_INTERVAL_MS = 2000
DEFAULT_DEBOUNCE_MS = 100


class _LogFileHandler(FileSystemEventHandler):
    """Watchdog handler that forwards events for a single file."""

    def __init__(
        self,
        path: str,
        on_change: Callable[[], None],
        on_gone: Callable[[], None],
    ):
        super().__init__()
        self.path = path
        self.on_change = on_change
        self.on_gone = on_gone

    def _matches(self, event: FileSystemEvent) -> bool:
        return not event.is_directory and os.path.abspath(event.src_path) == self.path

    def on_created(self, event):
        if self._matches(event):
            self.on_change()

    def on_modified(self, event):
        if self._matches(event):
            self.on_change()

    def on_deleted(self, event):
        if self._matches(event):
            self.on_gone()

    def on_moved(self, event):
        if self._matches(event):
            self.on_gone()


class LogTailer:
    """Emits a LogLine for every complete line appended after start().

    Change detection runs in two modes at once: a watchdog observer for
    low latency and a fixed-interval size poll for filesystems that drop
    events. Both feed a debounced read of the byte range
    ``[offset, size)``. Reads hold a lock and advance the offset, so a
    duplicate notification with no new bytes does nothing.
    """

    def __init__(
        self,
        log_file: Path,
        on_line: Callable[[LogLine], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the tailer.

        Args:
            log_file: File to tail.
            on_line: Called for every non-blank completed line.
            on_error: Called when the file is deleted or unreadable.
            polling_interval_ms: Size poll interval.
            debounce_ms: Quiet period before a burst of changes is read.
            logger: Logger to use (defaults to the module logger).
        """
        self.log_file = Path(log_file)
        self.on_line = on_line
        self.on_error = on_error
        self.polling_interval = polling_interval_ms / 1000.0
        self.debounce = debounce_ms / 1000.0
        self.logger = logger or logging.getLogger(__name__)

        self._path = os.path.abspath(str(self.log_file))
        self._offset = 0
        self._buffer = b""
        self._missing = False
        self._read_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._debounce_timer: Optional[threading.Timer] = None
        self._observer: Optional[Observer] = None
        self._poll_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._watching = False

    @property
    def is_watching(self) -> bool:
        return self._watching

    @property
    def file_size(self) -> int:
        """Byte offset up to which the file has been consumed."""
        return self._offset

    def start(self) -> None:
        """Start tailing from the current end of the file."""
        if self._watching:
            return

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self.log_file.touch(exist_ok=True)
        self._offset = self.log_file.stat().st_size
        self._buffer = b""
        self._missing = False
        self._stop_event.clear()

        observer = Observer()
        observer.schedule(
            _LogFileHandler(self._path, self._schedule_read, self._handle_gone),
            str(self.log_file.parent),
            recursive=False,
        )
        observer.daemon = True
        observer.start()
        self._observer = observer

        self._poll_thread = threading.Thread(
            target=self._poll_loop, name="log-tailer-poll", daemon=True
        )
        self._poll_thread.start()

        self._watching = True
        self.logger.info(
            f"Tailing {self.log_file} from offset {self._offset} "
            f"(poll {self.polling_interval}s, debounce {self.debounce}s)"
        )

    def stop(self) -> None:
        """Stop the observer, the poll thread and any pending read."""
        if not self._watching:
            return
        self._watching = False
        self._stop_event.set()

        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

        poll_thread = self._poll_thread
        if poll_thread is not None and poll_thread is not threading.current_thread():
            poll_thread.join(timeout=5)
        self._poll_thread = None

        self.logger.info(f"Stopped tailing {self.log_file}")

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.polling_interval):
            try:
                size = os.stat(self._path).st_size
            except OSError as e:
                self._report_missing(e)
                continue
            if size != self._offset:
                self._schedule_read()

    def _schedule_read(self) -> None:
        """Debounce a change notification into a single read."""
        if self._stop_event.is_set():
            return
        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            timer = threading.Timer(self.debounce, self.read_new_lines)
            timer.daemon = True
            self._debounce_timer = timer
            timer.start()

    def _handle_gone(self) -> None:
        self._report_missing(FileNotFoundError(f"Log file removed: {self._path}"))

    def _report_missing(self, error: Exception) -> None:
        if self._missing:
            return
        self._missing = True
        self.logger.warning(f"Log file unavailable: {error}")
        if self.on_error is not None:
            self.on_error(error)

    def read_new_lines(self) -> int:
        """Read and emit any complete lines appended since the last read.

        Returns:
            Number of lines emitted.
        """
        if self._stop_event.is_set():
            return 0

        with self._read_lock:
            try:
                size = os.stat(self._path).st_size
            except OSError as e:
                self._report_missing(e)
                return 0
            self._missing = False

            if size < self._offset:
                self.logger.info(
                    f"Log file truncated ({size} < {self._offset}), rewinding"
                )
                self._offset = 0
                self._buffer = b""

            if size == self._offset:
                return 0

            try:
                with open(self._path, "rb") as f:
                    f.seek(self._offset)
                    chunk = f.read(size - self._offset)
            except OSError as e:
                self._report_missing(e)
                return 0

            self._offset += len(chunk)
            data = self._buffer + chunk
            *complete, self._buffer = data.split(b"\n")

            emitted = 0
            for raw in complete:
                text = raw.decode("utf-8", errors="replace").rstrip("\r")
                if not text.strip():
                    continue
                try:
                    self.on_line(LogLine(line=text))
                except Exception:
                    self.logger.exception("Log line handler failed")
                emitted += 1
            return emitted
