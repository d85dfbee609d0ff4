#!/usr/bin/env python3
"""
Turn the file server's folder-inventory CSV into structured folder metadata
(JSON) that cloud_transfer.py consumes.

Columns (header case and surrounding spaces don't matter):
    FolderPath      required, e.g. \\\\fs01\\share\\Finance or /srv/share/Finance
    Destination     optional target prefix in the container (default: folder name)
    Owner           optional
    SizeBytes       optional integer
    FileCount       optional integer
    LastModified    optional ISO-8601 date/time (naive values are taken as UTC)

Bad rows are reported and skipped, they don't stop the run.
"""

import argparse
import csv
import json
import logging
import re
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from tqdm import tqdm

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = "folder_inventory.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(message)s"

COLUMNS = {
    "folderpath": "folder_path",
    "destination": "destination",
    "owner": "owner",
    "sizebytes": "size_bytes",
    "filecount": "file_count",
    "lastmodified": "last_modified",
}
REQUIRED = "folder_path"


class InventoryError(Exception):
    pass


@dataclass(frozen=True)
class FolderEntry:
    folder_path: str
    name: str
    destination: str
    owner: str = ""
    size_bytes: int = 0
    file_count: int = 0
    last_modified: Optional[datetime] = None
    line: int = 0


@dataclass
class Inventory:
    entries: List[FolderEntry] = field(default_factory=list)
    # (csv line, reason)
    rejected: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(e.size_bytes for e in self.entries)

    @property
    def total_files(self) -> int:
        return sum(e.file_count for e in self.entries)


def folder_name(folder_path: str) -> str:
    """Last component of a Windows/UNC or POSIX path."""
    parts = re.split(r"[\\/]", folder_path.strip())
    return next((part for part in reversed(parts) if part), "")


def default_destination(name: str) -> str:
    """Folder name as a blob prefix: lower case, spaces → '-', letters of any script kept."""
    slug = re.sub(r"\s+", "-", name.strip().lower())
    return re.sub(r"[^\w.-]", "", slug)


def _parse_int(value: str, column: str) -> int:
    value = (value or "").strip().replace(",", "")
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{column} is not a whole number: {value!r}") from None


def _parse_when(value: str) -> Optional[datetime]:
    value = (value or "").strip()
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"LastModified is not an ISO-8601 date: {value!r}") from None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_inventory(csv_path: Path) -> Inventory:
    csv_path = Path(csv_path)
    if not csv_path.is_file():
        raise InventoryError(f"Inventory CSV not found: {csv_path}")

    inventory = Inventory()
    seen = set()
    # destination (lower case) -> line that claimed it
    destinations = {}
    # utf-8-sig: Excel and Export-Csv both like to prepend a BOM
    with csv_path.open("r", newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        header = {h: COLUMNS.get(h.strip().lower()) for h in (reader.fieldnames or [])}
        if REQUIRED not in header.values():
            raise InventoryError(f"{csv_path}: missing required column 'FolderPath'")

        for row in tqdm(reader, desc="Parsing inventory", unit="row"):
            line = reader.line_num
            values = {header[k]: (v or "") for k, v in row.items() if header.get(k)}
            if not any(v.strip() for v in values.values()):
                continue

            path = values.get("folder_path", "").strip()
            if not path:
                inventory.rejected.append((line, "empty FolderPath"))
                continue
            key = path.lower()
            if key in seen:
                inventory.rejected.append((line, f"duplicate FolderPath {path}"))
                continue

            try:
                size = _parse_int(values.get("size_bytes", ""), "SizeBytes")
                count = _parse_int(values.get("file_count", ""), "FileCount")
                when = _parse_when(values.get("last_modified", ""))
            except ValueError as e:
                inventory.rejected.append((line, str(e)))
                continue

            name = folder_name(path)
            destination = values.get("destination", "").strip().strip("/") or default_destination(name)
            if not destination:
                inventory.rejected.append((line, f"no usable Destination for {path}"))
                continue
            if destination.lower() in destinations:
                inventory.rejected.append(
                    (line, f"Destination {destination} already used by line {destinations[destination.lower()]}"))
                continue

            inventory.entries.append(FolderEntry(
                folder_path=path,
                name=name,
                destination=destination,
                owner=values.get("owner", "").strip(),
                size_bytes=size,
                file_count=count,
                last_modified=when,
                line=line,
            ))
            seen.add(key)
            destinations[destination.lower()] = line

    for line, reason in inventory.rejected:
        logger.warning("Rejected line %d: %s", line, reason)
    logger.info("Parsed %d folders from %s (%d rejected)",
                len(inventory.entries), csv_path, len(inventory.rejected))
    return inventory


def entry_to_dict(entry: FolderEntry) -> dict:
    data = asdict(entry)
    data["last_modified"] = entry.last_modified.isoformat() if entry.last_modified else None
    return data


def entry_from_dict(data: dict) -> FolderEntry:
    when = data.get("last_modified")
    destination = data.get("destination") or default_destination(folder_name(data["folder_path"]))
    if not destination:
        raise ValueError(f"no usable destination for {data['folder_path']}")
    return FolderEntry(
        folder_path=data["folder_path"],
        name=data.get("name") or folder_name(data["folder_path"]),
        destination=destination,
        owner=data.get("owner", ""),
        size_bytes=int(data.get("size_bytes", 0)),
        file_count=int(data.get("file_count", 0)),
        last_modified=datetime.fromisoformat(when) if when else None,
        line=int(data.get("line", 0)),
    )


def write_inventory_json(path: Path, entries: List[FolderEntry]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps([entry_to_dict(e) for e in entries], indent=2), encoding="utf-8")


def load_inventory_json(path: Path) -> List[FolderEntry]:
    path = Path(path)
    if not path.is_file():
        raise InventoryError(f"Inventory JSON not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return [entry_from_dict(item) for item in data]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise InventoryError(f"{path}: not a folder inventory ({e})") from e


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Convert a folder-inventory CSV to JSON folder metadata")
    p.add_argument("inventory_csv", type=Path, help="inventory CSV exported from the file server")
    p.add_argument("--output", "-o", type=Path, default=None,
                   help="JSON output (default: <csv name>.json next to the CSV)")
    p.add_argument("--log-file", default=DEFAULT_LOG_FILE,
                   help=f"log file (default: {DEFAULT_LOG_FILE})")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(filename=args.log_file, level=logging.INFO, format=LOG_FORMAT)

    try:
        inventory = parse_inventory(args.inventory_csv)
    except InventoryError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    output = args.output or args.inventory_csv.with_suffix(".json")
    write_inventory_json(output, inventory.entries)

    print(f"📁 Folders: {len(inventory.entries)}")
    print(f"💾 Size: {inventory.total_bytes / 1024 ** 3:.2f} GiB in {inventory.total_files} files")
    if inventory.rejected:
        print(f"⚠️  Rejected rows: {len(inventory.rejected)}")
        for line, reason in inventory.rejected:
            print(f"   line {line}: {reason}")
    print(f"📄 Written to: {output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
