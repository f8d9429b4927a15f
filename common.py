"""
Shared code for rotcheck: constants, errors, hashing, directory listing, reporting.
"""

import hashlib
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union


MANIFEST_NAME = ".checksums.json"
HIDDEN_PREFIX = "."
DEFAULT_HASH_ALGO = "md5"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DEFAULT_WORKERS = os.cpu_count() or 1
PROGRESS_INTERVAL = 0.1

MODE_VERIFY = "verify"
MODE_UPDATE = "update"
MODE_ADD = "add-only"


class RotcheckError(Exception):
    """Base class for all errors raised while managing checksums."""


class SetupError(RotcheckError):
    """The run root is unusable or the directory walk failed."""


class _PathError(RotcheckError):
    _action = "Problem with"

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{self._action} {display_path(path)}: {reason}")


class ManifestLoadError(_PathError):
    """A manifest file exists but could not be read or parsed."""

    _action = "Could not load checksums from"


class ManifestSaveError(_PathError):
    """A manifest could not be written back to disk."""

    _action = "Could not save checksums to"


class ChecksumError(_PathError):
    """A file could not be read while computing its checksum."""

    _action = "Could not calculate checksum for"


class DirectoryListError(_PathError):
    """A directory could not be listed during a pass."""

    _action = "Could not list"


@dataclass(frozen=True)
class DirectoryError:
    """A per-directory failure recorded during a run."""
    path: Path
    message: str


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False, debug: bool = False) -> None:
    """Configure logging to file and console."""
    level = logging.ERROR
    if verbose:
        level = logging.INFO
    if debug:
        level = logging.DEBUG
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def is_hidden(name: str) -> bool:
    """Return True for names that are never checksummed or recorded as directories."""
    return name.startswith(HIDDEN_PREFIX)


def manifest_key(name: str) -> str:
    """Return the key a file name is recorded under in a manifest.

    Names that are not valid UTF-8 arrive surrogate-escaped from os.scandir. Their
    invalid bytes are replaced with U+FFFD, as the encoder behind existing manifests
    does. Two such names that differ only in their invalid bytes share a key.
    """
    return os.fsencode(name).decode("utf-8", "replace")


def display_path(path: Union[Path, str]) -> str:
    """Render a path for console output, replacing undecodable bytes."""
    return os.fsencode(str(path)).decode("utf-8", "replace")


def list_plain_files(directory: Path) -> List[str]:
    """Return the sorted names of regular files directly inside directory.

    Subdirectories, hidden entries and the manifest itself are skipped.
    Symlinks pointing at regular files are included, broken ones are not.
    """
    names: List[str] = []
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if is_hidden(entry.name):
                    continue
                if entry.is_file():
                    names.append(entry.name)
    except OSError as exc:
        raise DirectoryListError(directory, exc.strerror or str(exc)) from exc
    names.sort()
    return names


def compute_hash(file_path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Compute MD5 hash for a file."""
    hasher = hashlib.md5()
    with file_path.open('rb') as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


def build_report(
    root: Path,
    mode: str,
    workers: int,
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    success: bool,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "root": display_path(root),
        "hash_algo": DEFAULT_HASH_ALGO,
        "mode": mode,
        "workers": workers,
        "stats": stats,
        "success": success,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
