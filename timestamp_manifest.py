"""
Read/write the timestamp manifest shared by capture_timestamps.py and
restore_timestamps.py.

Format: JSON array of objects

    [{"RelativePath": "a/b.txt",
      "CreationTimeRaw": 132223104000000000,
      "LastAccessTimeRaw": 132223104000000000,
      "LastWriteTimeRaw": 132223104000000000}, ...]

Raw values are FILETIME ticks (see filetime.py). Range checks happen at
conversion time, not here.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Iterable, List

logger = logging.getLogger(__name__)

RAW_FIELDS = {
    "CreationTimeRaw": "creation_time_raw",
    "LastAccessTimeRaw": "last_access_time_raw",
    "LastWriteTimeRaw": "last_write_time_raw",
}


class ManifestError(Exception):
    pass


class ManifestNotFound(ManifestError):
    pass


class ManifestParseError(ManifestError):
    pass


@dataclass(frozen=True)
class TimestampRecord:
    relative_path: str
    creation_time_raw: int
    last_access_time_raw: int
    last_write_time_raw: int
    index: int = 0


def _parse_item(i: int, item) -> TimestampRecord:
    if not isinstance(item, dict):
        raise ManifestParseError(f"record {i}: expected an object, got {type(item).__name__}")

    rel = item.get("RelativePath")
    if rel is None:
        raise ManifestParseError(f"record {i}: missing field 'RelativePath'")
    if not isinstance(rel, str):
        raise ManifestParseError(f"record {i}: 'RelativePath' must be a string")
    if not rel.strip():
        raise ManifestParseError(f"record {i}: 'RelativePath' is empty")

    raw = {}
    for key, attr in RAW_FIELDS.items():
        if key not in item:
            raise ManifestParseError(f"record {i}: missing field '{key}'")
        value = item[key]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ManifestParseError(
                f"record {i}: '{key}' must be an integer, got {value!r}"
            )
        raw[attr] = value

    return TimestampRecord(relative_path=rel, index=i, **raw)


def load_manifest(path: Path) -> List[TimestampRecord]:
    """Return the manifest's records in file order."""
    path = Path(path)
    if not path.is_file():
        raise ManifestNotFound(f"Manifest not found: {path}")

    try:
        # utf-8-sig: PowerShell's Out-File writes a BOM
        text = path.read_text(encoding="utf-8-sig")
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestParseError(f"{path}: not valid JSON ({e})") from e

    # ConvertTo-Json emits a bare object for a single-item collection
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ManifestParseError(f"{path}: expected a JSON array of records")

    records = [_parse_item(i, item) for i, item in enumerate(data)]
    logger.info("Loaded %d records from %s", len(records), path)
    return records


def write_manifest(path: Path, records: Iterable[TimestampRecord]) -> int:
    """Write records atomically (temp file on the same mount, then replace)."""
    path = Path(path)
    data = [
        {
            "RelativePath": r.relative_path,
            "CreationTimeRaw": r.creation_time_raw,
            "LastAccessTimeRaw": r.last_access_time_raw,
            "LastWriteTimeRaw": r.last_write_time_raw,
        }
        for r in records
    ]
    path.parent.mkdir(parents=True, exist_ok=True)
    with NamedTemporaryFile("w", delete=False, encoding="utf-8",
                            dir=path.parent, suffix=".tmp") as tmp:
        json.dump(data, tmp, indent=2)
        tmp_path = Path(tmp.name)
    try:
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    logger.info("Wrote %d records to %s", len(data), path)
    return len(data)
