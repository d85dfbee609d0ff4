#!/usr/bin/env python3
"""
Re-apply original creation / last-access / last-write times to a migrated
tree from a JSON timestamp manifest (see timestamp_manifest.py).

Every manifest record is handled on its own: resolve under --root, convert the
three FILETIME values, apply (or only report with --dry-run), record an outcome.
A missing target or a bad value never stops the batch; only a missing root or
an unreadable manifest does.

Run:
    python restore_timestamps.py --root D:/Restored --manifest times.json --dry-run
    python restore_timestamps.py --root D:/Restored --manifest times.json --workers 8 --report-csv outcomes.csv
"""

import argparse
import csv
import logging
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from tqdm import tqdm

from filetime import (TimestampConversionError, filetime_to_datetime, filetime_to_unix_ns,
                      unix_ns_to_filetime)
from timestamp_manifest import ManifestError, TimestampRecord, load_manifest

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = "restore_timestamps.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(message)s"
FIELDS = ("creation", "last_access", "last_write")
# FAT keeps write times in 2-second steps
STORE_TOLERANCE_NS = 2_000_000_000

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_STRICT_FAILURE = 2


class Status(str, Enum):
    APPLIED = "Applied"
    SIMULATED = "Simulated"
    SKIPPED_NOT_FOUND = "Skipped-NotFound"
    SKIPPED_DECLINED = "Skipped-Declined"
    FAILED = "Failed"


STATUS_ICONS = {
    Status.APPLIED: "✅",
    Status.SIMULATED: "→",
    Status.SKIPPED_NOT_FOUND: "⚠️ ",
    Status.SKIPPED_DECLINED: "⏭ ",
    Status.FAILED: "❌",
}


# ----------------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------------

class RestoreError(Exception):
    pass


class TargetNotFound(RestoreError):
    pass


class UnsafePathError(RestoreError):
    """Relative path would land outside the configured root."""


class ApplyError(RestoreError):
    """One or more timestamp writes were rejected by the filesystem."""

    def __init__(self, path: Path, committed: Sequence[str], failed: Dict[str, OSError]):
        self.path = path
        self.committed = tuple(committed)
        self.failed = dict(failed)
        reasons = "; ".join(f"{name}: {err}" for name, err in self.failed.items())
        committed_txt = ", ".join(self.committed) or "none"
        super().__init__(f"{reasons} (committed: {committed_txt})")


class TimestampNotStored(OSError):
    """The write call succeeded but the filesystem kept a different value."""


# ----------------------------------------------------------------------------
# Data
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class RestoreConfig:
    root: Path
    manifest: Path
    dry_run: bool = False
    verbose: bool = False
    workers: int = 1
    auto_apply: bool = True
    strict: bool = False
    report_csv: Optional[Path] = None


@dataclass(frozen=True)
class AppliedTimestamps:
    creation: datetime
    last_access: datetime
    last_write: datetime
    # nanoseconds since the Unix epoch, FIELDS order
    ns: Tuple[int, int, int]

    def describe(self) -> str:
        return (f"creation={self.creation.isoformat()} "
                f"last_access={self.last_access.isoformat()} "
                f"last_write={self.last_write.isoformat()}")


@dataclass(frozen=True)
class OutcomeRecord:
    index: int
    relative_path: str
    status: Status
    detail: str = ""
    committed: Tuple[str, ...] = ()


ConfirmFn = Callable[[TimestampRecord, Path, AppliedTimestamps], bool]


# ----------------------------------------------------------------------------
# Resolve / convert / apply
# ----------------------------------------------------------------------------

def resolve_target(root: Path, relative_path: str) -> Path:
    """
    Join relative_path under root. Accepts '/' or '\\' separators, refuses
    anything that could point outside root, then checks existence.
    """
    # no strip(): leading/trailing spaces are legal in POSIX names
    normalized = relative_path.replace("\\", "/")
    if normalized.startswith("/") or (len(normalized) >= 2 and normalized[1] == ":"):
        raise UnsafePathError(f"absolute path not allowed: {relative_path}")

    parts = []
    for part in normalized.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise UnsafePathError(f"parent-directory segment not allowed: {relative_path}")
        parts.append(part)

    base = Path(root).resolve()
    target = base.joinpath(*parts)
    # symlinked directories inside the tree must not lead out of it either
    try:
        target.resolve().relative_to(base)
    except ValueError:
        raise UnsafePathError(f"path escapes root via symlink: {relative_path}") from None

    if not target.exists():
        raise TargetNotFound(f"not found under root: {target}")
    return target


def convert_record(record: TimestampRecord) -> AppliedTimestamps:
    """All three fields or nothing; the error names the field that failed."""
    instants = []
    ns = []
    raws = (record.creation_time_raw, record.last_access_time_raw, record.last_write_time_raw)
    for name, raw in zip(FIELDS, raws):
        try:
            instants.append(filetime_to_datetime(raw))
            ns.append(filetime_to_unix_ns(raw))
        except TimestampConversionError as e:
            raise TimestampConversionError(f"{name}: {e}") from e
    return AppliedTimestamps(*instants, ns=tuple(ns))


def set_creation_time(path: Path, ns: int) -> bool:
    """Returns False where the platform has no writable creation time."""
    if sys.platform != "win32":
        return False

    import ntsecuritycon
    import pywintypes
    import win32file

    when = pywintypes.Time(filetime_to_datetime(unix_ns_to_filetime(ns)))
    try:
        handle = win32file.CreateFile(
            str(path),
            ntsecuritycon.FILE_WRITE_ATTRIBUTES,
            win32file.FILE_SHARE_READ | win32file.FILE_SHARE_WRITE | win32file.FILE_SHARE_DELETE,
            None,
            win32file.OPEN_EXISTING,
            # required to open a directory handle
            win32file.FILE_FLAG_BACKUP_SEMANTICS,
            None,
        )
    except pywintypes.error as e:
        raise OSError(e.winerror, e.strerror, str(path)) from e
    try:
        win32file.SetFileTime(handle, when, None, None, UTCTimes=True)
    except pywintypes.error as e:
        raise OSError(e.winerror, e.strerror, str(path)) from e
    finally:
        handle.Close()
    # st_birthtime_ns exists on Windows from Python 3.12
    birth = getattr(os.stat(path), "st_birthtime_ns", None)
    if birth is not None:
        _check_stored(ns, birth)
    return True


def _describe_ns(ns: int) -> str:
    try:
        return filetime_to_datetime(unix_ns_to_filetime(ns)).isoformat()
    except TimestampConversionError:
        return f"{ns} ns"


def _check_stored(requested: int, stored: int) -> None:
    # ext4 and friends clamp out-of-range times without raising
    if abs(stored - requested) > STORE_TOLERANCE_NS:
        raise TimestampNotStored(
            f"filesystem stored {_describe_ns(stored)} instead of {_describe_ns(requested)}")


def set_access_time(path: Path, ns: int) -> bool:
    st = os.stat(path)
    os.utime(path, ns=(ns, st.st_mtime_ns))
    _check_stored(ns, os.stat(path).st_atime_ns)
    return True


def set_write_time(path: Path, ns: int) -> bool:
    st = os.stat(path)
    os.utime(path, ns=(st.st_atime_ns, ns))
    _check_stored(ns, os.stat(path).st_mtime_ns)
    return True


def apply_timestamps(target: Path, stamps: AppliedTimestamps) -> Tuple[List[str], List[str]]:
    """
    Write each field on its own so a rejected write leaves an accurate record
    of what did land. Access and write times are read back; a value the
    filesystem clamped counts as failed. Returns (committed, unsupported);
    raises ApplyError if any write failed.
    """
    setters = (set_creation_time, set_access_time, set_write_time)
    committed: List[str] = []
    unsupported: List[str] = []
    failed: Dict[str, OSError] = {}

    for name, setter, ns in zip(FIELDS, setters, stamps.ns):
        try:
            if setter(target, ns):
                committed.append(name)
            else:
                unsupported.append(name)
        except OSError as e:
            failed[name] = e

    if failed:
        raise ApplyError(target, committed, failed)
    return committed, unsupported


def restore_record(record: TimestampRecord, config: RestoreConfig,
                   confirm: Optional[ConfirmFn] = None) -> OutcomeRecord:
    rel = record.relative_path

    def outcome(status, detail="", committed=()):
        return OutcomeRecord(record.index, rel, status, detail, tuple(committed))

    try:
        target = resolve_target(config.root, rel)
        stamps = convert_record(record)

        if config.dry_run:
            return outcome(Status.SIMULATED, f"would set {stamps.describe()}")

        if not config.auto_apply and confirm is not None and not confirm(record, target, stamps):
            return outcome(Status.SKIPPED_DECLINED, "declined by operator")

        committed, unsupported = apply_timestamps(target, stamps)
    except TargetNotFound as e:
        return outcome(Status.SKIPPED_NOT_FOUND, str(e))
    except TimestampConversionError as e:
        return outcome(Status.FAILED, f"conversion error: {e}")
    except UnsafePathError as e:
        return outcome(Status.FAILED, f"unsafe path: {e}")
    except ApplyError as e:
        return outcome(Status.FAILED, f"apply error: {e}", e.committed)
    except OSError as e:
        return outcome(Status.FAILED, f"filesystem error: {e}")

    detail = f"{', '.join(unsupported)} not writable on this platform" if unsupported else ""
    return outcome(Status.APPLIED, detail, committed)


# ----------------------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------------------

class OutcomeReporter:
    """Thread-safe collector; outcomes come back in manifest order."""

    def __init__(self):
        self._lock = threading.Lock()
        self._outcomes: List[OutcomeRecord] = []
        self.interrupted = False

    def add(self, outcome: OutcomeRecord) -> None:
        with self._lock:
            self._outcomes.append(outcome)

    @property
    def outcomes(self) -> List[OutcomeRecord]:
        with self._lock:
            return sorted(self._outcomes, key=lambda o: o.index)

    @property
    def total(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def counts(self) -> Dict[Status, int]:
        counts = {s: 0 for s in Status}
        for o in self.outcomes:
            counts[o.status] += 1
        return counts

    def failures(self) -> List[OutcomeRecord]:
        return [o for o in self.outcomes if o.status is Status.FAILED]

    def skipped(self) -> List[OutcomeRecord]:
        return [o for o in self.outcomes
                if o.status in (Status.SKIPPED_NOT_FOUND, Status.SKIPPED_DECLINED)]

    def summary_line(self) -> str:
        parts = ", ".join(f"{s.value}={n}" for s, n in self.counts().items())
        return f"Total={self.total}: {parts}"

    def write_csv(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(["index", "relative_path", "status", "committed", "detail"])
            for o in self.outcomes:
                writer.writerow([o.index, o.relative_path, o.status.value,
                                 ";".join(o.committed), o.detail])

    def print_report(self) -> None:
        problems = self.skipped() + self.failures()
        if problems:
            print(f"\n📋 {len(problems)} record(s) need attention:")
            for o in sorted(problems, key=lambda o: o.index):
                print(f"  {STATUS_ICONS[o.status]} [{o.status.value}] {o.relative_path}: {o.detail}")
        if self.interrupted:
            print("\n⚠️  Interrupted: remaining records were not processed.")
        print(f"\n📊 {self.summary_line()}")


# ----------------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------------

def _trace(outcome: OutcomeRecord, verbose: bool) -> None:
    logger.info("%s %s %s", outcome.status.value, outcome.relative_path, outcome.detail)
    if verbose:
        tqdm.write(f"{STATUS_ICONS[outcome.status]} {outcome.status.value}: "
                   f"{outcome.relative_path} {outcome.detail}".rstrip())


def run_restore(records: Iterable[TimestampRecord], config: RestoreConfig,
                confirm: Optional[ConfirmFn] = None) -> OutcomeReporter:
    """
    Process every record on a pool of config.workers threads. Ctrl-C stops
    queued records from starting; ones already running are allowed to finish.
    """
    if not config.auto_apply and confirm is None and not config.dry_run:
        raise ValueError("auto_apply=False needs a confirm callback")

    records = list(records)
    reporter = OutcomeReporter()

    def work(rec: TimestampRecord) -> OutcomeRecord:
        result = restore_record(rec, config, confirm)
        reporter.add(result)
        _trace(result, config.verbose)
        return result

    desc = "Simulating" if config.dry_run else "Restoring timestamps"
    bar = tqdm(total=len(records), desc=desc, unit="item", dynamic_ncols=True)
    pool = ThreadPoolExecutor(max_workers=max(1, config.workers),
                              thread_name_prefix="restore")
    try:
        futures = [pool.submit(work, rec) for rec in records]
        for fut in as_completed(futures):
            fut.result()
            bar.update(1)
    except KeyboardInterrupt:
        reporter.interrupted = True
        logger.warning("Interrupted; cancelling queued records")
        pool.shutdown(wait=True, cancel_futures=True)
    finally:
        pool.shutdown(wait=True)
        bar.close()

    return reporter


# ----------------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------------

def ask_yes_no(prompt: str) -> bool:
    return input(prompt + " [y/N]: ").strip().lower() == "y"


def confirm_on_console(record: TimestampRecord, target: Path, stamps: AppliedTimestamps) -> bool:
    return ask_yes_no(f"Set {stamps.describe()} on {target}?")


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Restore file/folder timestamps from a JSON manifest")
    p.add_argument("--root", required=True, type=Path,
                   help="root folder the manifest's relative paths resolve under")
    p.add_argument("--manifest", required=True, type=Path,
                   help="JSON manifest produced by capture_timestamps.py")
    p.add_argument("--dry-run", action="store_true",
                   help="show what would be set without touching anything")
    p.add_argument("--verbose", "-v", action="store_true",
                   help="print one line per record")
    p.add_argument("--workers", "-w", type=int, default=1,
                   help="parallel workers (default: 1)")
    p.add_argument("--confirm", action="store_true",
                   help="ask before changing each item (forces one worker)")
    p.add_argument("--strict", action="store_true",
                   help=f"exit {EXIT_STRICT_FAILURE} if any record failed")
    p.add_argument("--report-csv", type=Path, default=None,
                   help="write every outcome to this CSV")
    p.add_argument("--log-file", default=DEFAULT_LOG_FILE,
                   help=f"log file (default: {DEFAULT_LOG_FILE})")
    args = p.parse_args(argv)
    if args.workers < 1:
        p.error("--workers must be at least 1")
    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(filename=args.log_file, level=logging.INFO, format=LOG_FORMAT)

    root = args.root.expanduser().resolve()
    if not root.is_dir():
        print(f"ERROR: root folder not found → {root}", file=sys.stderr)
        logger.error("Root not found: %s", root)
        return EXIT_FATAL

    try:
        records = load_manifest(args.manifest.expanduser())
    except (ManifestError, OSError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        logger.error("Cannot load manifest: %s", e)
        return EXIT_FATAL

    config = RestoreConfig(
        root=root,
        manifest=args.manifest,
        dry_run=args.dry_run,
        verbose=args.verbose,
        workers=1 if args.confirm else args.workers,
        auto_apply=not args.confirm,
        strict=args.strict,
        report_csv=args.report_csv,
    )

    mode = "DRY RUN" if config.dry_run else "LIVE MODE"
    print(f"🔍 {len(records)} records from {args.manifest} under {root} ({mode})")
    logger.info("Start: %d records, root=%s, dry_run=%s, workers=%d",
                len(records), root, config.dry_run, config.workers)

    reporter = run_restore(records, config,
                           confirm=None if config.auto_apply else confirm_on_console)
    reporter.print_report()
    logger.info("Done: %s", reporter.summary_line())

    if config.report_csv:
        reporter.write_csv(config.report_csv)
        print(f"📄 Outcomes written to: {config.report_csv}")

    if config.dry_run:
        print("💡 Dry-run mode: no timestamps were changed.")

    if reporter.interrupted:
        return EXIT_FATAL
    if config.strict and reporter.counts()[Status.FAILED]:
        return EXIT_STRICT_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
