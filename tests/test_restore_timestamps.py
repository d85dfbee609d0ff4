import csv
import os
import sys
import time

import pytest

import restore_timestamps
from conftest import Y2001_NS, Y2001_RAW, record, stat_times
from filetime import UNIX_EPOCH_TICKS
from restore_timestamps import (STORE_TOLERANCE_NS, ApplyError, OutcomeRecord,
                                OutcomeReporter, Status, TargetNotFound, TimestampNotStored,
                                UnsafePathError, _check_stored, apply_timestamps,
                                convert_record, main, resolve_target, restore_record,
                                run_restore)

EPOCH_1601_NS = -UNIX_EPOCH_TICKS * 100


# ----------------------------------------------------------------------------
# resolve_target
# ----------------------------------------------------------------------------

@pytest.mark.parametrize("rel", ["a/b.txt", "a\\b.txt", "./a//b.txt", "a/./b.txt"])
def test_resolves_both_separator_styles(tree, rel):
    assert resolve_target(tree, rel) == tree.resolve() / "a" / "b.txt"


def test_resolves_directories_and_root(tree):
    assert resolve_target(tree, "d") == tree.resolve() / "d"
    assert resolve_target(tree, ".") == tree.resolve()


@pytest.mark.parametrize("rel", [
    "../outside.txt",
    "a/../../outside.txt",
    "a/../b.txt",
    "..\\outside.txt",
    "/etc/passwd",
    "\\\\server\\share\\x",
    "C:\\Windows\\x.txt",
    "C:relative.txt",
])
def test_never_leaves_root(tree, rel):
    (tree.parent / "outside.txt").write_text("x", encoding="utf-8")
    with pytest.raises(UnsafePathError):
        resolve_target(tree, rel)


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="no symlink support")
def test_symlink_out_of_root_is_refused(tree, tmp_path):
    outside = tmp_path / "elsewhere"
    outside.mkdir()
    (outside / "secret.txt").write_text("s", encoding="utf-8")
    try:
        os.symlink(outside, tree / "link", target_is_directory=True)
    except OSError:
        pytest.skip("symlinks not permitted here")
    with pytest.raises(UnsafePathError):
        resolve_target(tree, "link/secret.txt")


@pytest.mark.skipif(sys.platform == "win32", reason="Windows trims trailing spaces from names")
def test_names_with_edge_spaces_are_kept(tree):
    (tree / " lead.txt").write_text("x", encoding="utf-8")
    (tree / "a" / "trail.txt ").write_text("x", encoding="utf-8")

    assert resolve_target(tree, " lead.txt") == tree.resolve() / " lead.txt"
    assert resolve_target(tree, "a/trail.txt ") == tree.resolve() / "a" / "trail.txt "
    with pytest.raises(TargetNotFound):
        resolve_target(tree, " a/b.txt")


def test_missing_target(tree):
    with pytest.raises(TargetNotFound):
        resolve_target(tree, "missing.txt")


# ----------------------------------------------------------------------------
# convert / apply
# ----------------------------------------------------------------------------

def test_convert_record_names_the_failing_field():
    with pytest.raises(Exception, match="last_write"):
        convert_record(record("x", write=2 ** 63 - 1))


def test_convert_record_orders_fields():
    stamps = convert_record(record("x", creation=0, access=UNIX_EPOCH_TICKS, write=Y2001_RAW))
    assert stamps.ns == (EPOCH_1601_NS, 0, Y2001_NS)
    assert stamps.creation.year == 1601
    assert stamps.last_access.year == 1970
    assert stamps.last_write.year == 2001


def test_apply_sets_access_and_write_on_files_and_dirs(tree):
    stamps = convert_record(record("x", access=Y2001_RAW, write=Y2001_RAW + 10_000_000))
    for target in (tree / "a" / "b.txt", tree / "d"):
        committed, unsupported = apply_timestamps(target, stamps)
        assert "last_access" in committed and "last_write" in committed
        assert sorted(committed + unsupported) == ["creation", "last_access", "last_write"]
        assert stat_times(target) == (Y2001_NS, Y2001_NS + 1_000_000_000)


@pytest.mark.skipif(sys.platform == "win32", reason="creation time is writable on Windows")
def test_creation_time_is_reported_unsupported_off_windows(tree):
    committed, unsupported = apply_timestamps(tree / "a" / "b.txt", convert_record(record("x")))
    assert unsupported == ["creation"]
    assert committed == ["last_access", "last_write"]


def test_partial_apply_reports_what_landed(tree, monkeypatch):
    def rejected(path, ns):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(restore_timestamps, "set_creation_time", lambda path, ns: True)
    monkeypatch.setattr(restore_timestamps, "set_write_time", rejected)

    target = tree / "a" / "b.txt"
    with pytest.raises(ApplyError) as info:
        apply_timestamps(target, convert_record(record("x")))
    assert info.value.committed == ("creation", "last_access")
    assert list(info.value.failed) == ["last_write"]
    assert stat_times(target)[0] == Y2001_NS


# ----------------------------------------------------------------------------
# restore_record
# ----------------------------------------------------------------------------

def test_zero_timestamps_ask_every_setter_for_1601(tree, config, monkeypatch):
    written = {}

    def remember(field):
        def setter(path, ns):
            written[field] = (path, ns)
            return True
        return setter

    for field in ("creation", "access", "write"):
        monkeypatch.setattr(restore_timestamps, f"set_{field}_time", remember(field))

    outcome = restore_record(record("a/b.txt", raw=0), config())

    assert outcome.status is Status.APPLIED
    assert outcome.committed == ("creation", "last_access", "last_write")
    target = tree.resolve() / "a" / "b.txt"
    assert written == {f: (target, EPOCH_1601_NS) for f in ("creation", "access", "write")}


@pytest.mark.parametrize("raw", [0, 300_000_000_000_000_000])
def test_far_dates_on_a_real_file_are_stored_or_reported(tree, config, raw):
    # 1601 and 2551 fit a datetime but not every filesystem (ext4 stops at 1901 and 2446)
    wanted = (raw - UNIX_EPOCH_TICKS) * 100
    outcome = restore_record(record("a/b.txt", raw=raw), config())

    mismatched = []
    for field, got in zip(("last_access", "last_write"), stat_times(tree / "a" / "b.txt")):
        if abs(got - wanted) <= STORE_TOLERANCE_NS:
            assert field in outcome.committed
        else:
            mismatched.append(field)
            assert field not in outcome.committed
            assert f"{field}: " in outcome.detail

    expected = Status.FAILED if mismatched else Status.APPLIED
    assert outcome.status is expected


def test_clamped_time_is_reported_as_failed(tree, config, monkeypatch):
    real_utime = os.utime
    floor = -(2 ** 31) * 1_000_000_000

    def clamping_utime(path, ns):
        real_utime(path, ns=tuple(max(v, floor) for v in ns))

    monkeypatch.setattr(restore_timestamps.os, "utime", clamping_utime)

    outcome = restore_record(record("a/b.txt", access=0), config())

    assert outcome.status is Status.FAILED
    assert "last_write" in outcome.committed
    assert "last_access" not in outcome.committed
    assert ("last_access: filesystem stored 1901-12-13T20:45:52+00:00 "
            "instead of 1601-01-01T00:00:00+00:00") in outcome.detail
    assert stat_times(tree / "a" / "b.txt")[1] == Y2001_NS


def test_store_check_allows_coarse_filesystems():
    _check_stored(Y2001_NS, Y2001_NS - 1_999_999_900)
    with pytest.raises(TimestampNotStored):
        _check_stored(Y2001_NS, Y2001_NS - 3_000_000_000)


def test_missing_target_is_skipped(config):
    outcome = restore_record(record("missing.txt"), config())
    assert outcome.status is Status.SKIPPED_NOT_FOUND
    assert "missing.txt" in outcome.detail


def test_conversion_error_fails_record_without_touching_it(tree, config):
    target = tree / "a" / "b.txt"
    before = stat_times(target)
    outcome = restore_record(record("a/b.txt", creation=2 ** 63 - 1), config())
    assert outcome.status is Status.FAILED
    assert outcome.detail.startswith("conversion error")
    assert stat_times(target) == before


def test_unsafe_path_fails_record(config):
    outcome = restore_record(record("../x"), config())
    assert outcome.status is Status.FAILED
    assert "unsafe path" in outcome.detail


def test_apply_error_keeps_committed_fields(config, monkeypatch):
    def rejected(path, ns):
        raise OSError(30, "Read-only file system", str(path))

    monkeypatch.setattr(restore_timestamps, "set_creation_time", lambda path, ns: False)
    monkeypatch.setattr(restore_timestamps, "set_access_time", rejected)

    outcome = restore_record(record("a/b.txt"), config())
    assert outcome.status is Status.FAILED
    assert outcome.committed == ("last_write",)
    assert "last_access" in outcome.detail


def test_dry_run_never_mutates(tree, config):
    target = tree / "a" / "b.txt"
    before = stat_times(target)

    simulated = restore_record(record("a/b.txt"), config(dry_run=True))
    assert simulated.status is Status.SIMULATED
    assert "2001-09-09" in simulated.detail
    assert stat_times(target) == before

    applied = restore_record(record("a/b.txt"), config())
    assert applied.status is Status.APPLIED
    assert stat_times(target) == (Y2001_NS, Y2001_NS)


def test_confirmation_gate(config):
    asked = []

    def confirm(rec, target, stamps):
        asked.append(rec.relative_path)
        return rec.relative_path == "a/b.txt"

    cfg = config(auto_apply=False)
    assert restore_record(record("a/b.txt"), cfg, confirm).status is Status.APPLIED
    declined = restore_record(record("a/c.txt", index=1), cfg, confirm)
    assert declined.status is Status.SKIPPED_DECLINED
    assert asked == ["a/b.txt", "a/c.txt"]


def test_confirmation_is_not_asked_in_dry_run(config):
    def confirm(rec, target, stamps):
        raise AssertionError("should not prompt")

    outcome = restore_record(record("a/b.txt"), config(dry_run=True, auto_apply=False), confirm)
    assert outcome.status is Status.SIMULATED


# ----------------------------------------------------------------------------
# reporter / engine
# ----------------------------------------------------------------------------

def test_reporter_orders_by_input_index_and_counts():
    reporter = OutcomeReporter()
    reporter.add(OutcomeRecord(2, "c", Status.FAILED, "boom"))
    reporter.add(OutcomeRecord(0, "a", Status.APPLIED))
    reporter.add(OutcomeRecord(1, "b", Status.SKIPPED_NOT_FOUND, "gone"))

    assert [o.relative_path for o in reporter.outcomes] == ["a", "b", "c"]
    counts = reporter.counts()
    assert set(counts) == set(Status)
    assert sum(counts.values()) == reporter.total == 3
    assert [o.relative_path for o in reporter.failures()] == ["c"]
    assert [o.relative_path for o in reporter.skipped()] == ["b"]
    assert reporter.summary_line().startswith("Total=3: Applied=1")


def test_bad_record_does_not_stop_the_batch(tree, config):
    records = [
        record("a/b.txt", index=0, creation=2 ** 63 - 1),
        record("missing.txt", index=1),
        record("a/c.txt", index=2),
        record("../escape", index=3),
        record("d", index=4),
    ]
    reporter = run_restore(records, config())
    statuses = [o.status for o in reporter.outcomes]
    assert statuses == [Status.FAILED, Status.SKIPPED_NOT_FOUND, Status.APPLIED,
                        Status.FAILED, Status.APPLIED]
    assert reporter.total == len(records)
    assert sum(reporter.counts().values()) == len(records)


def test_parallel_run_reports_in_manifest_order(tree, config):
    for i in range(30):
        (tree / f"f{i:02}.txt").write_text(str(i), encoding="utf-8")
    records = [record(f"f{i:02}.txt", index=i) for i in range(30)]

    reporter = run_restore(records, config(workers=6))

    assert [o.index for o in reporter.outcomes] == list(range(30))
    assert reporter.counts()[Status.APPLIED] == 30
    assert all(stat_times(tree / f"f{i:02}.txt")[1] == Y2001_NS for i in range(30))


def test_interrupt_lets_running_record_finish_and_drops_the_rest(config, monkeypatch):
    real_restore = restore_timestamps.restore_record
    real_as_completed = restore_timestamps.as_completed

    def slow_restore(rec, cfg, confirm=None):
        time.sleep(0.05)
        return real_restore(rec, cfg, confirm)

    def interrupted(futures):
        done = real_as_completed(futures)
        yield next(done)
        raise KeyboardInterrupt

    monkeypatch.setattr(restore_timestamps, "restore_record", slow_restore)
    monkeypatch.setattr(restore_timestamps, "as_completed", interrupted)

    records = [record(f"missing{i}.txt", index=i) for i in range(40)]
    reporter = run_restore(records, config(workers=1))

    assert reporter.interrupted
    assert 1 <= reporter.total < 40
    assert [o.index for o in reporter.outcomes] == list(range(reporter.total))


def test_manual_confirmation_needs_a_callback(config):
    with pytest.raises(ValueError):
        run_restore([record("a/b.txt")], config(auto_apply=False))


# ----------------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------------

def manifest_item(path, raw=Y2001_RAW):
    return {"RelativePath": path, "CreationTimeRaw": raw,
            "LastAccessTimeRaw": raw, "LastWriteTimeRaw": raw}


@pytest.fixture
def run_cli(tree, tmp_path):
    def _run(manifest, *extra, root=None):
        argv = ["--root", str(root or tree), "--manifest", str(manifest),
                "--log-file", str(tmp_path / "restore.log"), *extra]
        return main(argv)
    return _run


def test_cli_missing_target_still_exits_zero(run_cli, write_json, capsys):
    assert run_cli(write_json([manifest_item("missing.txt")])) == 0
    out = capsys.readouterr().out
    assert "Skipped-NotFound" in out
    assert "missing.txt" in out


def test_cli_fatal_setup_errors(run_cli, write_json, tmp_path):
    good = write_json([manifest_item("a/b.txt")])
    broken = tmp_path / "broken.json"
    broken.write_text("{nope", encoding="utf-8")

    assert run_cli(good, root=tmp_path / "no-such-root") == 1
    assert run_cli(tmp_path / "no-such-manifest.json") == 1
    assert run_cli(broken) == 1


def test_cli_dry_run_then_real_run(run_cli, write_json, tree):
    manifest = write_json([manifest_item("a/b.txt"), manifest_item("d")])
    before = stat_times(tree / "a" / "b.txt")

    assert run_cli(manifest, "--dry-run", "--verbose") == 0
    assert stat_times(tree / "a" / "b.txt") == before

    assert run_cli(manifest) == 0
    assert stat_times(tree / "a" / "b.txt") == (Y2001_NS, Y2001_NS)
    assert stat_times(tree / "d") == (Y2001_NS, Y2001_NS)


def test_cli_strict_mode_and_report_csv(run_cli, write_json, tmp_path):
    manifest = write_json([manifest_item("a/b.txt"), manifest_item("a/c.txt", raw=2 ** 63 - 1)])
    report = tmp_path / "out" / "outcomes.csv"

    assert run_cli(manifest) == 0
    assert run_cli(manifest, "--strict", "--workers", "2", "--report-csv", str(report)) == 2

    with report.open(newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [(r["relative_path"], r["status"]) for r in rows] == [
        ("a/b.txt", "Applied"), ("a/c.txt", "Failed")]
    assert "conversion error" in rows[1]["detail"]


def test_cli_confirm_prompts_per_item(run_cli, write_json, monkeypatch, tree):
    answers = iter(["y", "n"])
    monkeypatch.setattr("builtins.input", lambda prompt: next(answers))
    manifest = write_json([manifest_item("a/b.txt"), manifest_item("a/c.txt")])
    before = stat_times(tree / "a" / "c.txt")

    assert run_cli(manifest, "--confirm", "--workers", "4") == 0
    assert stat_times(tree / "a" / "b.txt") == (Y2001_NS, Y2001_NS)
    assert stat_times(tree / "a" / "c.txt") == before
