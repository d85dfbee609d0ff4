import json
import os
from pathlib import Path

import pytest

from filetime import UNIX_EPOCH_TICKS
from restore_timestamps import RestoreConfig
from timestamp_manifest import TimestampRecord

# 2001-09-09T01:46:40Z, well inside every filesystem's timestamp range
Y2001_NS = 1_000_000_000 * 1_000_000_000
Y2001_RAW = Y2001_NS // 100 + UNIX_EPOCH_TICKS


def record(path, raw=Y2001_RAW, index=0, creation=None, access=None, write=None):
    return TimestampRecord(
        relative_path=path,
        creation_time_raw=raw if creation is None else creation,
        last_access_time_raw=raw if access is None else access,
        last_write_time_raw=raw if write is None else write,
        index=index,
    )


@pytest.fixture
def tree(tmp_path):
    """root/a/b.txt, root/a/c.txt, root/d (empty folder)"""
    root = tmp_path / "root"
    (root / "a").mkdir(parents=True)
    (root / "a" / "b.txt").write_text("b", encoding="utf-8")
    (root / "a" / "c.txt").write_text("c", encoding="utf-8")
    (root / "d").mkdir()
    return root


@pytest.fixture
def config(tree, tmp_path):
    def _make(**overrides):
        values = dict(root=tree, manifest=tmp_path / "manifest.json")
        values.update(overrides)
        return RestoreConfig(**values)
    return _make


@pytest.fixture
def write_json(tmp_path):
    def _write(data, name="manifest.json"):
        path = tmp_path / name
        path.write_text(json.dumps(data), encoding="utf-8")
        return path
    return _write


def stat_times(path: Path):
    st = os.stat(path)
    return st.st_atime_ns, st.st_mtime_ns
