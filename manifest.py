"""
Per-directory checksum manifest: load, save, verify and update against the filesystem.

Each directory keeps a flat `.checksums.json` of the plain files directly inside it:

    {"created":1700000000,"updated":1700000500,"files":{"a.txt":"<md5 hex>"}}
"""

import enum
import json
import logging
import os
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from common import (
    MANIFEST_NAME,
    ChecksumError,
    ManifestLoadError,
    ManifestSaveError,
    compute_hash,
    display_path,
    list_plain_files,
    manifest_key,
)
from stats import RunStats


Echo = Optional[Callable[[str], None]]

# Characters escaped by the JSON encoder that wrote the first manifests.
_HTML_SAFE_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class DirectoryState(enum.Enum):
    UNPROCESSED = "unprocessed"
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"
    MISMATCHED = "mismatched"
    ADDED = "added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


def _encode_manifest(document: Dict[str, object]) -> str:
    encoded = json.dumps(document, ensure_ascii=False, separators=(",", ":"))
    for char, escape in _HTML_SAFE_ESCAPES.items():
        encoded = encoded.replace(char, escape)
    return encoded


def _read_timestamp(data: Dict[str, object], key: str, default: int, sumfile: Path) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ManifestLoadError(sumfile, f"field '{key}' is not an integer timestamp")
    return value


class DirectoryManifest:
    """The recorded file-name to checksum mapping for a single directory."""

    def __init__(
        self,
        path: Path,
        created: Optional[int] = None,
        updated: Optional[int] = None,
        files: Optional[Dict[str, str]] = None,
    ) -> None:
        now = int(time.time())
        self.path = path
        self.created = created if created is not None else now
        self.updated = updated if updated is not None else now
        self.files: Dict[str, str] = dict(files) if files else {}
        self.state = DirectoryState.UNPROCESSED

    def __repr__(self) -> str:
        return f"DirectoryManifest({str(self.path)!r}, files={len(self.files)}, state={self.state.value})"

    @property
    def manifest_path(self) -> Path:
        return self.path / MANIFEST_NAME

    @classmethod
    def load(cls, path: Path) -> "DirectoryManifest":
        """Load the manifest stored in path, or start an empty one if none exists."""
        if not path.is_dir():
            raise ManifestLoadError(path, "it's not a directory")

        sumfile = path / MANIFEST_NAME
        if not os.path.lexists(sumfile):
            return cls(path)

        try:
            raw = sumfile.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ManifestLoadError(sumfile, str(exc)) from exc

        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ManifestLoadError(sumfile, f"invalid JSON: {exc}") from exc

        manifest = cls.from_dict(path, data, sumfile)
        logging.debug(f"Loaded {len(manifest.files)} checksums from {sumfile}")
        return manifest

    @classmethod
    def from_dict(cls, path: Path, data: object, sumfile: Optional[Path] = None) -> "DirectoryManifest":
        """Build a manifest from a decoded JSON document, validating its shape."""
        source = sumfile if sumfile is not None else path / MANIFEST_NAME
        if not isinstance(data, dict):
            raise ManifestLoadError(source, "expected a JSON object")

        now = int(time.time())
        created = _read_timestamp(data, "created", now, source)
        updated = _read_timestamp(data, "updated", now, source)

        files = data.get("files")
        if files is None:
            files = {}
        if not isinstance(files, dict):
            raise ManifestLoadError(source, "field 'files' is not an object")
        for name, checksum in files.items():
            if not isinstance(checksum, str):
                raise ManifestLoadError(source, f"checksum for '{name}' is not a string")

        return cls(path, created=created, updated=updated, files=files)

    def to_dict(self) -> Dict[str, object]:
        return {
            "created": self.created,
            "updated": self.updated,
            "files": {name: self.files[name] for name in sorted(self.files)},
        }

    def save(self) -> None:
        """Write the manifest atomically, refreshing its updated timestamp."""
        out = self.manifest_path
        tmp = self.path / (MANIFEST_NAME + ".tmp")
        logging.debug(f"Saving {out}")

        self.updated = int(time.time())
        payload = _encode_manifest(self.to_dict())

        try:
            with open(tmp, "w", encoding="utf-8", newline="") as handle:
                handle.write(payload)
            os.replace(tmp, out)
        except (OSError, UnicodeError) as exc:
            try:
                if os.path.lexists(tmp):
                    os.remove(tmp)
            except OSError as cleanup_exc:
                logging.warning(f"Could not remove temp file {tmp}: {cleanup_exc}")
            reason = exc.strerror if isinstance(exc, OSError) and exc.strerror else str(exc)
            raise ManifestSaveError(out, reason) from exc

    def _checksum(self, file_path: Path) -> str:
        try:
            return compute_hash(file_path)
        except OSError as exc:
            raise ChecksumError(file_path, exc.strerror or str(exc)) from exc

    def verify(self, stats: RunStats, echo: Echo = None) -> bool:
        """Compare recorded checksums with the files on disk.

        Files that were never recorded are ignored. Returns False when at least one
        recorded file no longer matches. A file that cannot be read aborts the pass
        with ChecksumError.
        """
        self.state = DirectoryState.IN_PROGRESS
        success = True
        try:
            for name in list_plain_files(self.path):
                file_path = self.path / name
                recorded = self.files.get(manifest_key(name))
                if recorded is None:
                    logging.debug(f"Skipping previously unseen file {file_path}")
                    continue

                logging.debug(f"Verifying file {file_path}")
                checksum = self._checksum(file_path)
                if checksum != recorded:
                    success = False
                    stats.incr_failed(file_path)
                    logging.warning(f"Mismatch {file_path} {checksum} != {recorded}")
                    if echo:
                        echo(f"failed: {display_path(file_path)}")
                else:
                    stats.incr_verified()
        except Exception:
            self.state = DirectoryState.FAILED
            raise
        finally:
            stats.incr_directories()

        self.state = DirectoryState.VERIFIED if success else DirectoryState.MISMATCHED
        logging.debug(f"Done verifying {self.path}")
        return success

    def update(self, stats: RunStats, echo: Echo = None) -> bool:
        return self.add_or_update(False, stats, echo)

    def add(self, stats: RunStats, echo: Echo = None) -> bool:
        return self.add_or_update(True, stats, echo)

    def add_or_update(self, skip_existing: bool, stats: RunStats, echo: Echo = None) -> bool:
        """Record new files and, unless skip_existing, refresh changed checksums.

        The manifest is saved only when something changed. Returns True if it was.
        A read error aborts the pass before anything is saved.
        """
        self.state = DirectoryState.IN_PROGRESS
        pending: Dict[str, str] = {}
        added = 0
        changed = 0
        try:
            for name in list_plain_files(self.path):
                file_path = self.path / name
                recorded = self.files.get(manifest_key(name))
                if recorded is not None and skip_existing:
                    continue

                logging.debug(f"Updating file {file_path}")
                checksum = self._checksum(file_path)

                if recorded is None:
                    pending[manifest_key(name)] = checksum
                    added += 1
                    stats.incr_new(file_path)
                    logging.debug(f"Captured {file_path}")
                    if echo:
                        echo(f"new: {display_path(file_path)}")
                elif checksum != recorded:
                    pending[manifest_key(name)] = checksum
                    changed += 1
                    stats.incr_updated(file_path)
                    logging.debug(f"Updated {file_path} {recorded} -> {checksum}")
                    if echo:
                        echo(f"updated: {display_path(file_path)}")
                else:
                    stats.incr_verified()

            if pending:
                previous_files, previous_updated = dict(self.files), self.updated
                self.files.update(pending)
                try:
                    self.save()
                except ManifestSaveError:
                    self.files, self.updated = previous_files, previous_updated
                    raise
        except Exception:
            self.state = DirectoryState.FAILED
            raise
        finally:
            stats.incr_directories()

        if changed:
            self.state = DirectoryState.UPDATED
        elif added:
            self.state = DirectoryState.ADDED
        else:
            self.state = DirectoryState.UNCHANGED
        logging.debug(f"Done updating {self.path}")
        return bool(pending)
