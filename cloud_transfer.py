#!/usr/bin/env python3
"""
Drive azcopy for each folder in a folder inventory (see folder_inventory.py):
upload to a blob container, or bring it back down to a local root.

    copy  initial full copy (--overwrite policy, optional --include-after)
    sync  delta pass, only missing/changed files (optional --delete-destination)

Commands are built as argument lists and run without a shell, so folder
names and URLs are never interpreted by one. Authentication (SAS token or
`azcopy login`) is up to the operator; a SAS query string on --container-url
is passed through untouched.
"""

import argparse
import logging
import re
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from tqdm import tqdm

from folder_inventory import FolderEntry, InventoryError, load_inventory_json

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = "cloud_transfer.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(message)s"
DEFAULT_AZCOPY = "azcopy"

MODES = ("copy", "sync")
DIRECTIONS = ("upload", "download")
OVERWRITE_POLICIES = ("true", "false", "prompt", "ifSourceNewer")

# "12.5 %, 10 Done, 0 Failed, 90 Pending, ..."
PROGRESS_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*%")
SUMMARY_PREFIXES = (
    "Final Job Status",
    "Number of",
    "Total Number of",
    "Elapsed Time",
    "Log file is located at",
)


class TransferError(Exception):
    pass


@dataclass(frozen=True)
class TransferJob:
    source: str
    destination: str
    mode: str = "copy"
    recursive: bool = True
    dry_run: bool = False
    overwrite: str = "ifSourceNewer"
    include_after: Optional[datetime] = None
    delete_destination: bool = False


@dataclass
class TransferResult:
    job: TransferJob
    returncode: int
    summary_lines: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def redact_url(value: str) -> str:
    """Hide a SAS token before anything reaches the log."""
    parts = urlsplit(value)
    if parts.scheme in ("http", "https") and parts.query:
        return urlunsplit(parts._replace(query="<redacted>"))
    return value


def join_url(container_url: str, prefix: str) -> str:
    """container_url + '/' + prefix, keeping any query string at the end."""
    parts = urlsplit(container_url)
    path = parts.path.rstrip("/") + "/" + quote(prefix.strip("/"))
    return urlunsplit(parts._replace(path=path))


def _bool_flag(value: bool) -> str:
    return "true" if value else "false"


def build_command(job: TransferJob, executable: str = DEFAULT_AZCOPY) -> List[str]:
    if job.mode not in MODES:
        raise TransferError(f"unknown mode {job.mode!r} (expected one of {', '.join(MODES)})")

    cmd = [executable, job.mode, job.source, job.destination,
           f"--recursive={_bool_flag(job.recursive)}"]

    if job.mode == "copy":
        if job.overwrite not in OVERWRITE_POLICIES:
            raise TransferError(f"unknown overwrite policy {job.overwrite!r}")
        if job.delete_destination:
            raise TransferError("--delete-destination only applies to sync")
        cmd.append(f"--overwrite={job.overwrite}")
        if job.include_after is not None:
            if job.include_after.tzinfo is None:
                raise TransferError("include_after must be timezone-aware")
            when = job.include_after.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            cmd.append(f"--include-after={when}")
    else:
        if job.include_after is not None:
            raise TransferError("--include-after only applies to copy")
        cmd.append(f"--delete-destination={_bool_flag(job.delete_destination)}")

    if job.dry_run:
        cmd.append("--dry-run")
    return cmd


def jobs_from_inventory(entries: Iterable[FolderEntry], container_url: str,
                        direction: str = "upload", mode: str = "copy",
                        local_root: Optional[Path] = None, **options) -> List[TransferJob]:
    """
    upload:   <folder_path>                   -> <container_url>/<destination>
    download: <container_url>/<destination>   -> <local_root>/<destination>
    """
    if direction not in DIRECTIONS:
        raise TransferError(f"unknown direction {direction!r}")
    if direction == "download" and local_root is None:
        raise TransferError("download needs a local root")

    jobs = []
    for entry in entries:
        # an empty prefix would pour the folder into the container root
        if not entry.destination.strip("/"):
            raise TransferError(f"no destination prefix for {entry.folder_path}")
        remote = join_url(container_url, entry.destination)
        if direction == "upload":
            src, dst = entry.folder_path, remote
        else:
            src, dst = remote, str(Path(local_root) / entry.destination)
        jobs.append(TransferJob(source=src, destination=dst, mode=mode, **options))
    return jobs


def run_transfer(job: TransferJob, executable: str = DEFAULT_AZCOPY) -> TransferResult:
    cmd = build_command(job, executable)
    logger.info("Running: %s", " ".join(redact_url(c) for c in cmd))

    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except FileNotFoundError as e:
        raise TransferError(f"transfer tool not found: {executable}") from e

    label = Path(urlsplit(job.source).path).name or redact_url(job.source)
    bar = tqdm(total=100, desc=f"{job.mode} {label}",
               unit="%", dynamic_ncols=True)
    summary = []
    last = 0.0
    for raw_line in proc.stdout:
        line = raw_line.strip()
        match = PROGRESS_RE.match(line)
        if match:
            pct = min(float(match.group(1)), 100.0)
            if pct > last:
                bar.update(pct - last)
                last = pct
        elif line.startswith(SUMMARY_PREFIXES):
            summary.append(line)

    proc.wait()
    bar.close()

    result = TransferResult(job, proc.returncode, summary)
    log = logger.info if result.ok else logger.error
    log("%s %s -> %s exited %d", job.mode, redact_url(job.source),
        redact_url(job.destination), proc.returncode)
    return result


def _parse_when(value: str) -> datetime:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 date/time: {value!r}") from None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Copy/sync inventory folders to or from blob storage with azcopy")
    p.add_argument("inventory_json", type=Path, help="output of folder_inventory.py")
    p.add_argument("--container-url", required=True,
                   help="https://<account>.blob.core.windows.net/<container>[?<SAS>]")
    p.add_argument("--direction", choices=DIRECTIONS, default="upload")
    p.add_argument("--mode", choices=MODES, default="copy",
                   help="copy = initial full copy, sync = delta")
    p.add_argument("--local-root", type=Path, default=None,
                   help="where folders land on download")
    p.add_argument("--dry-run", action="store_true",
                   help="pass --dry-run to azcopy (nothing is transferred)")
    p.add_argument("--overwrite", choices=OVERWRITE_POLICIES, default="ifSourceNewer",
                   help="copy only (default: ifSourceNewer)")
    p.add_argument("--include-after", type=_parse_when, default=None,
                   help="copy only: files modified after this ISO-8601 time")
    p.add_argument("--delete-destination", action="store_true",
                   help="sync only: remove destination files missing from the source")
    p.add_argument("--azcopy", default=DEFAULT_AZCOPY, help="azcopy executable")
    p.add_argument("--log-file", default=DEFAULT_LOG_FILE,
                   help=f"log file (default: {DEFAULT_LOG_FILE})")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(filename=args.log_file, level=logging.INFO, format=LOG_FORMAT)

    options = {"dry_run": args.dry_run}
    if args.mode == "copy":
        options.update(overwrite=args.overwrite, include_after=args.include_after)
    else:
        options.update(delete_destination=args.delete_destination)

    try:
        entries = load_inventory_json(args.inventory_json)
        jobs = jobs_from_inventory(entries, args.container_url, args.direction,
                                   args.mode, args.local_root, **options)
        for job in jobs:
            build_command(job, args.azcopy)
    except (InventoryError, TransferError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(f"📦 {len(jobs)} folder(s) to {args.direction} ({args.mode}{', dry run' if args.dry_run else ''})")
    results = []
    for job in jobs:
        try:
            results.append(run_transfer(job, args.azcopy))
        except TransferError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1

    failed = [r for r in results if not r.ok]
    print("\n📋 azcopy summary:")
    for r in results:
        icon = "✅" if r.ok else "❌"
        print(f"  {icon} {redact_url(r.job.source)} → {redact_url(r.job.destination)} (exit {r.returncode})")
        for line in r.summary_lines:
            print("      " + line)
    print(f"\n{len(results) - len(failed)} succeeded, {len(failed)} failed")
    return 2 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
