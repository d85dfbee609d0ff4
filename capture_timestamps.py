#!/usr/bin/env python3
"""
Walk a source tree on the file server and record every file's and folder's
creation / last-access / last-write time as FILETIME ticks in a JSON
manifest. Run it before the upload; restore_timestamps.py replays the
manifest against the tree once it has come back down from cloud storage.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List

from tqdm import tqdm

from filetime import unix_ns_to_filetime
from timestamp_manifest import TimestampRecord, write_manifest

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = "capture_timestamps.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(message)s"


def creation_ns(st: os.stat_result) -> int:
    # st_birthtime: Windows (3.12+), macOS, BSD. Linux has no portable birth time.
    birth = getattr(st, "st_birthtime_ns", None)
    if birth is None and hasattr(st, "st_birthtime"):
        birth = int(st.st_birthtime * 1_000_000_000)
    return birth if birth is not None else st.st_mtime_ns


def _log_walk_error(err: OSError) -> None:
    logger.warning("Cannot list %s: %s", err.filename, err)


def list_entries(root: Path) -> List[Path]:
    """Files and folders under root, parents before children, sorted."""
    entries = []
    for folder, dirs, files in os.walk(root, onerror=_log_walk_error):
        dirs.sort()
        base = Path(folder)
        entries.extend(base / d for d in dirs)
        entries.extend(base / f for f in sorted(files))
    return sorted(entries, key=lambda p: p.relative_to(root).parts)


def capture_tree(root: Path, include_root: bool = False) -> List[TimestampRecord]:
    root = Path(root)
    entries = list_entries(root)
    if include_root:
        entries.insert(0, root)

    records: List[TimestampRecord] = []
    for path in tqdm(entries, desc="Capturing timestamps", unit="item"):
        rel = path.relative_to(root).as_posix()
        try:
            st = os.stat(path)
        except OSError as e:
            logger.warning("Skipping %s: %s", rel, e)
            continue
        records.append(TimestampRecord(
            relative_path=rel,
            creation_time_raw=unix_ns_to_filetime(creation_ns(st)),
            last_access_time_raw=unix_ns_to_filetime(st.st_atime_ns),
            last_write_time_raw=unix_ns_to_filetime(st.st_mtime_ns),
            index=len(records),
        ))
    logger.info("Captured %d of %d entries under %s", len(records), len(entries), root)
    return records


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Capture file/folder timestamps into a JSON manifest")
    p.add_argument("--root", required=True, type=Path, help="source tree to capture")
    p.add_argument("--output", "-o", required=True, type=Path, help="manifest to write")
    p.add_argument("--include-root", action="store_true",
                   help="also record the root folder itself (as '.')")
    p.add_argument("--log-file", default=DEFAULT_LOG_FILE,
                   help=f"log file (default: {DEFAULT_LOG_FILE})")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(filename=args.log_file, level=logging.INFO, format=LOG_FORMAT)

    root = args.root.expanduser().resolve()
    if not root.is_dir():
        print(f"ERROR: root folder not found → {root}", file=sys.stderr)
        return 1

    records = capture_tree(root, include_root=args.include_root)
    count = write_manifest(args.output, records)
    print(f"✅ Manifest written: {args.output} ({count} entries)")
    return 0


if __name__ == "__main__":
    sys.exit(main())

# **Usage**
# Run `python capture_timestamps.py --root \\fs01\share\Finance -o finance_times.json` on the
# file server before the upload, keep the JSON with the migration records, then hand it to
# restore_timestamps.py once the folder has been downloaded again.
