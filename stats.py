"""
Run statistics shared by all workers, plus the optional console progress bar.
"""

import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from common import PROGRESS_INTERVAL, DirectoryError


class RunStats:
    """Thread-safe counters and path lists for one verify/update run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._dir_count = 0
        self._directories = 0
        self._verified = 0
        self._new = 0
        self._updated = 0
        self._failed = 0
        self._new_files: List[Path] = []
        self._updated_files: List[Path] = []
        self._failed_files: List[Path] = []
        self._errors: List[DirectoryError] = []
        self._progress: Optional["ProgressBar"] = None
        self.start_time = time.time()

    def set_dir_count(self, count: int) -> None:
        with self._lock:
            self._dir_count = count

    def incr_directories(self) -> None:
        with self._lock:
            self._directories += 1

    def incr_verified(self) -> None:
        with self._lock:
            self._verified += 1

    def incr_new(self, path: Path) -> None:
        with self._lock:
            self._new += 1
            self._new_files.append(path)

    def incr_updated(self, path: Path) -> None:
        with self._lock:
            self._updated += 1
            self._updated_files.append(path)

    def incr_failed(self, path: Path) -> None:
        with self._lock:
            self._failed += 1
            self._failed_files.append(path)

    def add_error(self, path: Path, message: str) -> None:
        with self._lock:
            self._errors.append(DirectoryError(path=path, message=message))

    @property
    def dir_count(self) -> int:
        with self._lock:
            return self._dir_count

    @property
    def directories(self) -> int:
        with self._lock:
            return self._directories

    @property
    def verified(self) -> int:
        with self._lock:
            return self._verified

    @property
    def new(self) -> int:
        with self._lock:
            return self._new

    @property
    def updated(self) -> int:
        with self._lock:
            return self._updated

    @property
    def failed(self) -> int:
        with self._lock:
            return self._failed

    @property
    def new_files(self) -> List[Path]:
        with self._lock:
            return list(self._new_files)

    @property
    def updated_files(self) -> List[Path]:
        with self._lock:
            return list(self._updated_files)

    @property
    def failed_files(self) -> List[Path]:
        with self._lock:
            return list(self._failed_files)

    @property
    def errors(self) -> List[DirectoryError]:
        with self._lock:
            return list(self._errors)

    def is_completed(self) -> bool:
        with self._lock:
            return self._directories >= self._dir_count

    def as_dict(self) -> Dict[str, int]:
        """Snapshot every counter under a single lock hold."""
        with self._lock:
            return {
                "directories": self._directories,
                "dir_count": self._dir_count,
                "verified": self._verified,
                "new": self._new,
                "updated": self._updated,
                "failed": self._failed,
                "errors": len(self._errors),
            }

    def show_progress(self, stream: Optional[TextIO] = None) -> None:
        """Start rendering a progress bar in the background."""
        if self._progress is not None:
            return
        self._progress = ProgressBar(self, stream)
        self._progress.start()

    def stop_progress(self) -> None:
        """Stop the progress bar, drawing the final directory count first."""
        if self._progress is None:
            return
        self._progress.stop()
        self._progress = None


class ProgressBar:
    """Polls a RunStats and redraws a single console line until the run completes."""

    LABEL = "Completed Sub Directories"

    def __init__(
        self,
        stats: RunStats,
        stream: Optional[TextIO] = None,
        interval: float = PROGRESS_INTERVAL,
        width: int = 40,
    ) -> None:
        self.stats = stats
        self.stream = stream if stream is not None else sys.stdout
        self.interval = interval
        self.width = width
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="rotcheck-progress", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self.render(self.stats.directories)
        self.stream.write("\n")
        self.stream.flush()

    def _run(self) -> None:
        while True:
            self.render(self.stats.directories)
            if self.stats.is_completed():
                break
            if self._stop_event.wait(self.interval):
                break

    def render(self, completed: int) -> None:
        self.stream.write("\r" + self.format_line(completed, self.stats.dir_count))
        self.stream.flush()

    def format_line(self, completed: int, total: int) -> str:
        """Return the bar text, e.g. 'Completed Sub Directories [====>   ] 3/8  37%'."""
        if total <= 0:
            fraction = 1.0
        else:
            fraction = min(completed / total, 1.0)
        filled = int(self.width * fraction)
        if filled >= self.width:
            bar = "=" * self.width
        else:
            bar = "=" * filled + ">" + " " * (self.width - filled - 1)
        return f"{self.LABEL} [{bar}] {completed}/{total} {fraction * 100:3.0f}%"
