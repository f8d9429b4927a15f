"""
Checksum engine: discover directories under a root and run verify/update passes
over them with a fixed pool of worker threads.

A directory is the unit of work. Workers drain a pre-filled queue, one directory
at a time, and report into a RunStats shared for the duration of the run.
"""

import logging
import os
import queue
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, TextIO

from common import (
    DEFAULT_WORKERS,
    MODE_ADD,
    MODE_UPDATE,
    MODE_VERIFY,
    DirectoryError,
    RotcheckError,
    SetupError,
    display_path,
    is_hidden,
)
from manifest import DirectoryManifest, DirectoryState, Echo
from stats import RunStats


Operation = Callable[[DirectoryManifest, RunStats, Echo], object]


@dataclass
class RunResult:
    """Outcome of one verify/update/add run."""
    mode: str
    root: Path
    stats: RunStats

    @property
    def errors(self) -> List[DirectoryError]:
        return self.stats.errors

    @property
    def changed(self) -> bool:
        return self.stats.new > 0 or self.stats.updated > 0

    @property
    def success(self) -> bool:
        if self.errors:
            return False
        if self.mode == MODE_VERIFY:
            return self.stats.failed == 0
        return True


class ChecksumEngine:
    """Manages checksum manifests for every directory below a root."""

    def __init__(
        self,
        root: Path,
        workers: int = DEFAULT_WORKERS,
        quiet: bool = False,
        progress: bool = False,
        stream: Optional[TextIO] = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.workers = max(1, int(workers))
        self.quiet = quiet
        self.progress = progress and not quiet
        self._stream = stream
        self.directories: Dict[Path, DirectoryManifest] = {}
        self.stats = RunStats()
        self._output_lock = threading.Lock()

    @classmethod
    def open(cls, root: Path, **kwargs) -> "ChecksumEngine":
        """Create an engine and discover its directories."""
        engine = cls(root, **kwargs)
        engine.discover()
        return engine

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    @property
    def narrate(self) -> bool:
        return not self.quiet and not self.progress

    def _echo(self, line: str) -> None:
        with self._output_lock:
            print(line, file=self.stream, flush=True)

    def discover(self) -> Dict[Path, DirectoryManifest]:
        """Walk the root and load the manifest of every non-hidden directory.

        Hidden directories are walked through but never become work units.
        """
        logging.info(f"Populating subdirectories of {self.root}")
        if not self.root.exists():
            raise SetupError(f"Directory {display_path(self.root)} does not exist, cannot manage checksums")
        if not self.root.is_dir():
            raise SetupError(f"{display_path(self.root)} is not a directory, cannot manage checksums")

        directories: Dict[Path, DirectoryManifest] = {}
        stack = [self.root]
        while stack:
            current = stack.pop()
            if current == self.root or not is_hidden(current.name):
                directories[current] = DirectoryManifest.load(current)
            try:
                with os.scandir(current) as entries:
                    for entry in entries:
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
            except OSError as exc:
                raise SetupError(f"Could not traverse {display_path(current)}: {exc}") from exc

        self.directories = directories
        logging.info(f"Found {len(directories)} directories")
        return directories

    def directory_states(self) -> Dict[Path, DirectoryState]:
        return {path: manifest.state for path, manifest in self.directories.items()}

    def verify(self) -> RunResult:
        """Report previously recorded files whose checksum no longer matches."""
        logging.info("Verifying checksums")
        return self._run(MODE_VERIFY, lambda m, stats, echo: m.verify(stats, echo))

    def update(self) -> RunResult:
        """Record new files and refresh checksums that changed."""
        logging.info("Updating checksums")
        return self._run(MODE_UPDATE, lambda m, stats, echo: m.update(stats, echo))

    def add(self) -> RunResult:
        """Record new files without re-reading those already recorded."""
        logging.info("Adding new file checksums")
        return self._run(MODE_ADD, lambda m, stats, echo: m.add(stats, echo))

    def _run(self, mode: str, operation: Operation) -> RunResult:
        stats = RunStats()
        stats.set_dir_count(len(self.directories))
        self.stats = stats

        work: "queue.Queue[DirectoryManifest]" = queue.Queue(maxsize=len(self.directories))
        for path in sorted(self.directories):
            manifest = self.directories[path]
            manifest.state = DirectoryState.UNPROCESSED
            work.put_nowait(manifest)

        if self.progress:
            stats.show_progress(self.stream)
        try:
            logging.debug(f"Starting {self.workers} workers for {len(self.directories)} directories")
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="rotcheck-worker") as executor:
                futures = [
                    executor.submit(self._worker, work, operation, stats, number)
                    for number in range(1, self.workers + 1)
                ]
                for future in as_completed(futures):
                    future.result()
        finally:
            if self.progress:
                stats.stop_progress()

        return RunResult(mode=mode, root=self.root, stats=stats)

    def _worker(
        self,
        work: "queue.Queue[DirectoryManifest]",
        operation: Operation,
        stats: RunStats,
        number: int,
    ) -> None:
        echo = self._echo if self.narrate else None
        while True:
            try:
                manifest = work.get_nowait()
            except queue.Empty:
                logging.debug(f"Worker {number} finished")
                return
            try:
                operation(manifest, stats, echo)
            except RotcheckError as exc:
                logging.error(f"Could not process {manifest.path}: {exc}")
                stats.add_error(manifest.path, str(exc))
