#!/usr/bin/env python3
"""
rotcheck - detect and report bit rot.

Keeps a `.checksums.json` manifest of MD5 checksums in every directory under --root
and re-checks files against it later.

Commands:
  verify  Re-hash recorded files and report any whose checksum no longer matches.
  update  Record new files and store new checksums for files that changed.
  add     Record new files only; existing checksums are left untouched.

Exit status is 0 only when verify found no failures, or update/add changed nothing.
Use --help for full options and examples.
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from common import (
    DEFAULT_WORKERS,
    MODE_ADD,
    MODE_UPDATE,
    MODE_VERIFY,
    RotcheckError,
    build_report,
    display_path,
    setup_logging,
    write_report,
)
from engine import ChecksumEngine, RunResult


COMMAND_MODES = {
    "verify": MODE_VERIFY,
    "update": MODE_UPDATE,
    "add": MODE_ADD,
    "add-only": MODE_ADD,
}


def confirm(question: str, default: bool = False) -> bool:
    """Ask a yes/no question on stdin; EOF counts as the default."""
    suffix = " [Y/n] " if default else " [y/N] "
    while True:
        try:
            answer = input(question + suffix).strip().lower()
        except EOFError:
            print()
            return default
        if not answer:
            return default
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False


def exit_code(result: RunResult) -> int:
    """Map a run result to the process exit status."""
    if not result.success:
        return 1
    if result.mode != MODE_VERIFY and result.changed:
        return 1
    return 0


def print_summary(result: RunResult, progress: bool, stream: Optional[TextIO] = None) -> None:
    """Print affected files (when a progress bar hid them) and the summary block."""
    out = stream if stream is not None else sys.stdout
    stats = result.stats

    if result.mode == MODE_VERIFY:
        listed = [("failed", path) for path in stats.failed_files]
    else:
        listed = [("updated", path) for path in stats.updated_files]
        listed += [("new", path) for path in stats.new_files]

    if progress:
        if listed:
            print("", file=out)
            for label, path in listed:
                print(f"{label}: {display_path(path)}", file=out)
        print("", file=out)
    elif listed:
        print("", file=out)

    print("Summary:", file=out)
    print(f"    Root Directory: {display_path(result.root)}", file=out)
    print(f"   Sub Directories: {stats.directories}", file=out)
    print(f"    Files Verified: {stats.verified}", file=out)
    if result.mode == MODE_VERIFY:
        print(f"      Files Failed: {stats.failed}", file=out)
    else:
        print(f"       Files Added: {stats.new}", file=out)
        print(f"     Files Changed: {stats.updated}", file=out)

    errors = result.errors
    if errors:
        print("", file=out)
        action = "Verify" if result.mode == MODE_VERIFY else "Updating"
        print(f"{action} failed for {len(errors)} directories:", file=out)
        for error in errors:
            print(f"    {error.message}", file=out)


def result_report(result: RunResult, workers: int, run_started: int, run_finished: int) -> Dict[str, object]:
    """Build the JSON report for a finished run."""
    stats = result.stats
    details: Dict[str, object] = {
        "new": [display_path(p) for p in stats.new_files],
        "updated": [display_path(p) for p in stats.updated_files],
        "failed": [display_path(p) for p in stats.failed_files],
        "errors": [{"path": display_path(e.path), "error": e.message} for e in result.errors],
    }
    return build_report(
        root=result.root,
        mode=result.mode,
        workers=workers,
        stats=stats.as_dict(),
        run_started=run_started,
        run_finished=run_finished,
        success=result.success,
        details=details,
    )


def create_parent_parser() -> argparse.ArgumentParser:
    """Create parent parser with the options shared by all commands."""
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        '-p', '--root', '--path',
        dest='root',
        type=Path,
        required=True,
        help='Root path to traverse',
    )
    parent.add_argument(
        '-w', '--workers',
        type=int,
        default=DEFAULT_WORKERS,
        help=f'Number of worker threads used for checksumming (default: {DEFAULT_WORKERS})',
    )
    parent.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging',
    )
    parent.add_argument(
        '-d', '--debug',
        action='store_true',
        help='Enable debug logging',
    )
    parent.add_argument(
        '--progress',
        action='store_true',
        help='Show a progress bar and summary',
    )
    parent.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Do not produce output, only exit with 0 or 1',
    )
    parent.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parent.add_argument(
        '--report',
        type=Path,
        help='Write a JSON report of the run to this file',
    )
    return parent


def create_argument_parser() -> argparse.ArgumentParser:
    parent = create_parent_parser()
    parser = argparse.ArgumentParser(
        prog='rotcheck',
        description='Detect and report bit rot using per-directory checksum manifests.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  rotcheck update --root /path/to/photos
  rotcheck update --root /path/to/photos --yes --progress
  rotcheck add --root /path/to/photos --workers 4
  rotcheck verify --root /path/to/photos
  rotcheck verify --root /path/to/photos --quiet --report verify.json
        """,
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser(
        'verify',
        parents=[parent],
        help='Verify previously recorded checksums',
    )
    for name, aliases, help_text in (
        ('update', [], 'Store new checksums and update existing ones that do not match'),
        ('add', ['add-only'], 'Store checksums for new files, leaving existing ones untouched'),
    ):
        sub = subparsers.add_parser(name, aliases=aliases, parents=[parent], help=help_text)
        sub.add_argument(
            '-y', '--yes',
            action='store_true',
            help='Assume yes to any questions',
        )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the script."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)
    mode = COMMAND_MODES[args.command]

    setup_logging(args.log, args.verbose, args.debug)

    progress = args.progress
    if args.verbose or args.debug or args.quiet:
        progress = False

    logging.info(
        f"Managing checksums for path {args.root} "
        f"(mode={mode}, workers={args.workers}, quiet={args.quiet}, progress={progress})"
    )

    if mode != MODE_VERIFY and not args.yes:
        if not confirm("Are you sure you wish to update checksums and add new files"):
            sys.exit(1)

    run_started = int(time.time())
    try:
        engine = ChecksumEngine.open(
            args.root,
            workers=args.workers,
            quiet=args.quiet,
            progress=progress,
        )
    except RotcheckError as exc:
        logging.error(f"Could not initialize checksum manager: {exc}")
        sys.exit(1)

    if mode == MODE_VERIFY:
        result = engine.verify()
    elif mode == MODE_UPDATE:
        result = engine.update()
    else:
        result = engine.add()
    run_finished = int(time.time())

    if not args.quiet:
        print_summary(result, progress)

    if args.report:
        write_report(result_report(result, engine.workers, run_started, run_finished), args.report)

    sys.exit(exit_code(result))


if __name__ == "__main__":
    main()
