"""Tests for the backup rotation and retention system.

Covers:
- Directory size measurement
- Archive creation, AES encryption round trip, wrong password rejection
- Retention: age pass, size pass, oldest-first eviction, ignored files
- Rotation: threshold check, live dir clearing, idempotence, failures
- BackupManager lifecycle: startup cycle, disabled mode, stop semantics
"""

import os
import threading
import time
from datetime import datetime

import pytest
import pyzipper

from logserver.retention import events
from logserver.retention.archiver import archive_directory
from logserver.retention.backup_config import (
    ARCHIVE_TIMESTAMP_FORMAT,
    MB,
    SECONDS_PER_DAY,
    RetentionConfig,
)
from logserver.retention.backup_manager import BackupManager, ManagerState
from logserver.retention.disk_usage import dir_size
from logserver.retention.errors import ConfigError, PartialFailure
from logserver.retention.retention_policy import evaluate, list_archives, total_size
from logserver.retention.rotation import (
    archive_name,
    check_and_rotate,
    clear_directory,
    unique_archive_path,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def live_dir(tmp_path):
    d = tmp_path / "logs"
    d.mkdir()
    return d


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


def populate(root, files: dict[str, bytes]):
    for rel, content in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(content)


def make_backup(directory, name: str, size: int, age_seconds: float, now: float):
    directory.mkdir(parents=True, exist_ok=True)
    p = directory / name
    p.write_bytes(b"x" * size)
    mtime = now - age_seconds
    os.utime(p, (mtime, mtime))
    return p


SAMPLE_TREE = {
    "home_id_1/events.json": b'{"event": "boot"}\n{"event": "login"}\n',
    "home_id_1/device.log": b"line\n" * 200,
    "home_id_2/nested/deep.bin": bytes(range(256)) * 4,
    "top.txt": b"top level file",
}


# ---------------------------------------------------------------------------
# Directory size
# ---------------------------------------------------------------------------

class TestDirSize:
    def test_sums_all_files(self, live_dir):
        populate(live_dir, SAMPLE_TREE)
        assert dir_size(str(live_dir)) == sum(len(v) for v in SAMPLE_TREE.values())

    def test_empty_directory_is_zero(self, live_dir):
        assert dir_size(str(live_dir)) == 0

    def test_empty_subdirectories_contribute_nothing(self, live_dir):
        (live_dir / "a" / "b" / "c").mkdir(parents=True)
        assert dir_size(str(live_dir)) == 0

    def test_missing_path_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            dir_size(str(tmp_path / "nope"))


# ---------------------------------------------------------------------------
# Archiver
# ---------------------------------------------------------------------------

class TestArchiver:
    def test_round_trip_with_password(self, live_dir, tmp_path):
        populate(live_dir, SAMPLE_TREE)
        dest = tmp_path / "out.zip"
        count = archive_directory(str(live_dir), str(dest), "s3cret")

        assert count == len(SAMPLE_TREE)
        with pyzipper.AESZipFile(dest) as zf:
            zf.setpassword(b"s3cret")
            for rel, content in SAMPLE_TREE.items():
                assert zf.read(f"logs/{rel}") == content

    def test_entry_names_prefixed_with_source_basename(self, live_dir, tmp_path):
        populate(live_dir, SAMPLE_TREE)
        dest = tmp_path / "out.zip"
        archive_directory(str(live_dir), str(dest))

        with pyzipper.AESZipFile(dest) as zf:
            names = set(zf.namelist())
        assert "logs/" in names
        assert "logs/home_id_2/nested/" in names
        assert "logs/home_id_2/nested/deep.bin" in names
        assert all(n.startswith("logs/") for n in names)

    def test_file_entries_are_encrypted(self, live_dir, tmp_path):
        populate(live_dir, SAMPLE_TREE)
        dest = tmp_path / "out.zip"
        archive_directory(str(live_dir), str(dest), "s3cret")

        with pyzipper.AESZipFile(dest) as zf:
            files = [i for i in zf.infolist() if not i.is_dir()]
        assert files
        assert all(i.flag_bits & 0x1 for i in files)

    def test_wrong_password_fails(self, live_dir, tmp_path):
        populate(live_dir, {"secret.txt": b"classified" * 10})
        dest = tmp_path / "out.zip"
        archive_directory(str(live_dir), str(dest), "right")

        with pyzipper.AESZipFile(dest) as zf:
            zf.setpassword(b"wrong")
            with pytest.raises((RuntimeError, pyzipper.BadZipFile)):
                zf.read("logs/secret.txt")

    def test_encrypted_entry_needs_password(self, live_dir, tmp_path):
        populate(live_dir, {"secret.txt": b"classified"})
        dest = tmp_path / "out.zip"
        archive_directory(str(live_dir), str(dest), "right")

        with pyzipper.AESZipFile(dest) as zf:
            with pytest.raises(RuntimeError):
                zf.read("logs/secret.txt")

    def test_no_password_is_plain_but_compressed(self, live_dir, tmp_path):
        populate(live_dir, {"big.log": b"repetitive line\n" * 5000})
        dest = tmp_path / "out.zip"
        archive_directory(str(live_dir), str(dest), None)

        with pyzipper.AESZipFile(dest) as zf:
            info = zf.getinfo("logs/big.log")
            assert not info.flag_bits & 0x1
            assert info.compress_type == pyzipper.ZIP_DEFLATED
            assert info.compress_size < info.file_size
            assert zf.read("logs/big.log") == b"repetitive line\n" * 5000

    def test_source_untouched(self, live_dir, tmp_path):
        populate(live_dir, SAMPLE_TREE)
        archive_directory(str(live_dir), str(tmp_path / "out.zip"), "pw")
        for rel, content in SAMPLE_TREE.items():
            assert (live_dir / rel).read_bytes() == content

    def test_missing_destination_parent_raises(self, live_dir, tmp_path):
        populate(live_dir, SAMPLE_TREE)
        with pytest.raises(OSError):
            archive_directory(str(live_dir), str(tmp_path / "no" / "such" / "out.zip"))


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

class TestListArchives:
    def test_missing_directory_is_empty(self, tmp_path):
        assert list_archives(str(tmp_path / "never_created")) == []

    def test_ignores_other_files_and_subdirs(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "a.zip", 10, 60, now)
        make_backup(backup_dir, "notes.txt", 10, 60, now)
        (backup_dir / "nested.zip").mkdir()
        names = [a.name for a in list_archives(str(backup_dir))]
        assert names == ["a.zip"]

    def test_sorted_oldest_first_then_by_name(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "c.zip", 1, 100, now)
        make_backup(backup_dir, "b.zip", 1, 500, now)
        make_backup(backup_dir, "a.zip", 1, 100, now)
        names = [a.name for a in list_archives(str(backup_dir))]
        assert names == ["b.zip", "a.zip", "c.zip"]


class TestEvaluate:
    def test_missing_backup_dir_returns_empty(self, tmp_path):
        assert evaluate(str(tmp_path / "absent"), 30, 100) == []

    def test_age_pass_deletes_expired(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "old.zip", 10, 31 * SECONDS_PER_DAY, now)
        make_backup(backup_dir, "new.zip", 10, 1 * SECONDS_PER_DAY, now)

        deleted = evaluate(str(backup_dir), 30, 10 * MB, now=now)
        assert deleted == ["old.zip"]
        assert not (backup_dir / "old.zip").exists()
        assert (backup_dir / "new.zip").exists()

    def test_just_inside_age_limit_is_kept(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "edge.zip", 10, 30 * SECONDS_PER_DAY - 60, now)
        assert evaluate(str(backup_dir), 30, 10 * MB, now=now) == []

    def test_oldest_first_size_eviction(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "a.zip", 10, 3 * 3600, now)
        make_backup(backup_dir, "b.zip", 20, 2 * 3600, now)
        make_backup(backup_dir, "c.zip", 30, 1 * 3600, now)

        deleted = evaluate(str(backup_dir), 30, 35, now=now)
        assert deleted == ["a.zip", "b.zip"]
        assert [a.name for a in list_archives(str(backup_dir))] == ["c.zip"]

    def test_size_ties_broken_by_name(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "y.zip", 10, 3600, now)
        make_backup(backup_dir, "x.zip", 10, 3600, now)

        deleted = evaluate(str(backup_dir), 30, 10, now=now)
        assert deleted == ["x.zip"]

    def test_under_budget_keeps_everything(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "a.zip", 10, 3600, now)
        make_backup(backup_dir, "b.zip", 10, 7200, now)
        assert evaluate(str(backup_dir), 30, 20, now=now) == []

    def test_age_deletions_count_against_size(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "expired.zip", 100, 40 * SECONDS_PER_DAY, now)
        make_backup(backup_dir, "fresh.zip", 10, 3600, now)

        deleted = evaluate(str(backup_dir), 30, 50, now=now)
        assert deleted == ["expired.zip"]
        assert (backup_dir / "fresh.zip").exists()

    def test_single_file_larger_than_budget_is_removed(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "huge.zip", 100, 60, now)
        assert evaluate(str(backup_dir), 30, 50, now=now) == ["huge.zip"]
        assert total_size(list_archives(str(backup_dir))) == 0

    def test_retention_invariant_holds(self, backup_dir):
        now = time.time()
        sizes = [7, 13, 21, 5, 40, 8]
        for i, size in enumerate(sizes):
            make_backup(backup_dir, f"f{i}.zip", size, (10 - i) * 3600, now)

        evaluate(str(backup_dir), 30, 50, now=now)
        survivors = list_archives(str(backup_dir))
        assert total_size(survivors) <= 50
        # Only the oldest ones went
        assert [a.name for a in survivors] == ["f4.zip", "f5.zip"]

    def test_delete_failure_is_skipped(self, backup_dir, monkeypatch):
        now = time.time()
        make_backup(backup_dir, "a.zip", 10, 3 * 3600, now)
        make_backup(backup_dir, "b.zip", 10, 2 * 3600, now)
        make_backup(backup_dir, "c.zip", 10, 1 * 3600, now)

        real_remove = os.remove

        def flaky_remove(path):
            if path.endswith("a.zip"):
                raise PermissionError("read-only")
            real_remove(path)

        monkeypatch.setattr("logserver.retention.retention_policy.os.remove", flaky_remove)
        seen = []
        deleted = evaluate(str(backup_dir), 30, 15, now=now,
                           on_event=lambda name, data: seen.append((name, data)))
        assert deleted == ["b.zip", "c.zip"]
        assert (backup_dir / "a.zip").exists()
        assert any(name == events.BACKUP_DELETE_FAILED for name, _ in seen)

    def test_file_gone_before_size_pass_frees_budget(self, backup_dir):
        now = time.time()
        gone = make_backup(backup_dir, "a.zip", 30, 3 * 3600, now)
        make_backup(backup_dir, "b.zip", 20, 2 * 3600, now)
        make_backup(backup_dir, "c.zip", 10, 1 * 3600, now)

        def remove_oldest(name, data):
            # Removed by someone else after the listing
            if name == events.BACKUP_DIR_SIZE:
                gone.unlink()

        deleted = evaluate(str(backup_dir), 30, 35, now=now, on_event=remove_oldest)
        assert deleted == []
        assert [a.name for a in list_archives(str(backup_dir))] == ["b.zip", "c.zip"]

    def test_events_report_reason(self, backup_dir):
        now = time.time()
        make_backup(backup_dir, "old.zip", 10, 40 * SECONDS_PER_DAY, now)
        make_backup(backup_dir, "a.zip", 30, 7200, now)
        make_backup(backup_dir, "b.zip", 30, 3600, now)
        seen = []
        evaluate(str(backup_dir), 30, 40, now=now,
                 on_event=lambda name, data: seen.append((name, data)))

        reasons = {d["file"]: d["reason"] for n, d in seen if n == events.BACKUP_DELETED}
        assert reasons == {"old.zip": "age", "a.zip": "size"}


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------

class TestArchiveNaming:
    def test_name_format(self):
        ts = datetime(2026, 3, 7, 9, 5, 2)
        assert archive_name(ts) == "kettas_logs_07_03_2026_09_05_02.zip"

    def test_name_parses_back(self):
        ts = datetime(2026, 12, 31, 23, 59, 58)
        stamp = archive_name(ts)[len("kettas_logs_"):-len(".zip")]
        assert datetime.strptime(stamp, ARCHIVE_TIMESTAMP_FORMAT) == ts

    def test_collision_gets_suffix(self, backup_dir):
        backup_dir.mkdir()
        ts = datetime(2026, 1, 1, 12, 0, 0)
        (backup_dir / archive_name(ts)).write_bytes(b"first")
        path = unique_archive_path(str(backup_dir), ts)
        assert os.path.basename(path) == "kettas_logs_01_01_2026_12_00_00_1.zip"


class TestClearDirectory:
    def test_removes_everything_but_root(self, live_dir):
        populate(live_dir, SAMPLE_TREE)
        clear_directory(str(live_dir))
        assert live_dir.is_dir()
        assert os.listdir(live_dir) == []

    def test_partial_failure_reports_failed_entries(self, live_dir, monkeypatch):
        populate(live_dir, SAMPLE_TREE)

        def broken_rmtree(path, *args, **kwargs):
            raise PermissionError(f"busy: {path}")

        monkeypatch.setattr("logserver.retention.rotation.shutil.rmtree", broken_rmtree)
        with pytest.raises(PartialFailure) as excinfo:
            clear_directory(str(live_dir))

        failed = sorted(os.path.basename(p) for p, _ in excinfo.value.failures)
        assert failed == ["home_id_1", "home_id_2"]
        # Plain files were still removed
        assert not (live_dir / "top.txt").exists()
        assert isinstance(excinfo.value, OSError)


class TestCheckAndRotate:
    def test_over_threshold_rotates_once(self, live_dir, backup_dir):
        populate(live_dir, {"home_id_9/big.log": b"a" * 150_000})

        path = check_and_rotate(str(live_dir), str(backup_dir), "pw", 100_000)

        assert path is not None
        assert dir_size(str(live_dir)) == 0
        assert [a.name for a in list_archives(str(backup_dir))] == [os.path.basename(path)]
        with pyzipper.AESZipFile(path) as zf:
            zf.setpassword(b"pw")
            assert zf.read("logs/home_id_9/big.log") == b"a" * 150_000

    def test_under_threshold_is_noop(self, live_dir, backup_dir):
        populate(live_dir, {"small.log": b"a" * 100})
        assert check_and_rotate(str(live_dir), str(backup_dir), "pw", 100) is None
        assert (live_dir / "small.log").exists()
        assert not backup_dir.exists()

    def test_second_call_is_noop(self, live_dir, backup_dir):
        populate(live_dir, {"big.log": b"a" * 500})
        assert check_and_rotate(str(live_dir), str(backup_dir), None, 100) is not None
        assert check_and_rotate(str(live_dir), str(backup_dir), None, 100) is None
        assert len(list_archives(str(backup_dir))) == 1

    def test_missing_live_dir_raises(self, tmp_path, backup_dir):
        with pytest.raises(FileNotFoundError):
            check_and_rotate(str(tmp_path / "gone"), str(backup_dir), None, 100)

    def test_archive_failure_leaves_live_dir(self, live_dir, backup_dir, monkeypatch):
        populate(live_dir, SAMPLE_TREE)

        def failing_archive(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("logserver.retention.rotation.archive_directory", failing_archive)
        with pytest.raises(OSError, match="disk full"):
            check_and_rotate(str(live_dir), str(backup_dir), None, 10)
        for rel, content in SAMPLE_TREE.items():
            assert (live_dir / rel).read_bytes() == content

    def test_same_second_rotations_do_not_collide(self, live_dir, backup_dir):
        ts = datetime(2026, 5, 1, 8, 0, 0)
        populate(live_dir, {"one.log": b"1" * 500})
        first = check_and_rotate(str(live_dir), str(backup_dir), None, 100, now=ts)
        populate(live_dir, {"two.log": b"2" * 500})
        second = check_and_rotate(str(live_dir), str(backup_dir), None, 100, now=ts)

        assert first != second
        assert len(list_archives(str(backup_dir))) == 2

    def test_emits_rotation_events(self, live_dir, backup_dir):
        populate(live_dir, {"big.log": b"a" * 500})
        seen = []
        check_and_rotate(str(live_dir), str(backup_dir), None, 100,
                         on_event=lambda name, data: seen.append(name))
        assert seen == [
            events.LIVE_DIR_SIZE,
            events.ROTATION_TRIGGERED,
            events.ROTATION_SUCCEEDED,
            events.LIVE_DIR_CLEARED,
        ]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestRetentionConfig:
    def test_from_megabytes(self):
        cfg = RetentionConfig.from_megabytes("live", "bk", max_folder_size_mb=2,
                                             max_backup_size_mb=3, archive_password="")
        assert cfg.max_live_folder_size_bytes == 2 * MB
        assert cfg.max_backup_size_bytes == 3 * MB
        assert cfg.archive_password is None

    @pytest.mark.parametrize("field_name", [
        "check_interval_minutes",
        "max_live_folder_size_bytes",
        "max_backup_size_bytes",
        "retention_days",
    ])
    def test_non_positive_rejected(self, field_name):
        cfg = RetentionConfig(live_dir="live", backup_dir="bk")
        setattr(cfg, field_name, 0)
        with pytest.raises(ConfigError):
            cfg.validate()

    def test_disabled_config_not_validated(self):
        cfg = RetentionConfig(live_dir="", backup_dir="", enabled=False,
                              check_interval_minutes=0)
        cfg.validate()


# ---------------------------------------------------------------------------
# BackupManager lifecycle
# ---------------------------------------------------------------------------

@pytest.fixture
def retention_cfg(live_dir, backup_dir):
    return RetentionConfig(
        live_dir=str(live_dir),
        backup_dir=str(backup_dir),
        check_interval_minutes=1,
        max_live_folder_size_bytes=100,
        max_backup_size_bytes=10 * MB,
        retention_days=30,
        archive_password="pw",
    )


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestBackupManagerLifecycle:
    def test_stop_before_start(self, retention_cfg):
        mgr = BackupManager(retention_cfg)
        mgr.stop()
        assert mgr.state is ManagerState.STOPPED

    def test_double_stop(self, retention_cfg):
        mgr = BackupManager(retention_cfg)
        mgr.start()
        mgr.stop()
        mgr.stop()
        assert mgr.state is ManagerState.STOPPED
        assert not mgr.is_running

    def test_disabled_is_inert(self, retention_cfg, live_dir, backup_dir):
        retention_cfg.enabled = False
        populate(live_dir, {"big.log": b"a" * 500})
        mgr = BackupManager(retention_cfg)
        mgr.start()
        assert mgr.state is ManagerState.DISABLED
        assert not mgr.is_running
        mgr.stop()
        mgr.start()
        assert mgr.state is ManagerState.DISABLED
        assert (live_dir / "big.log").exists()
        assert not backup_dir.exists()

    def test_invalid_config_rejected_on_start(self, retention_cfg):
        retention_cfg.check_interval_minutes = -1
        mgr = BackupManager(retention_cfg)
        with pytest.raises(ConfigError):
            mgr.start()
        assert not mgr.is_running

    def test_startup_cycle_runs_immediately(self, retention_cfg, live_dir, backup_dir):
        populate(live_dir, {"home_id_1/big.log": b"a" * 500})
        mgr = BackupManager(retention_cfg)
        mgr.start()
        try:
            assert wait_for(lambda: mgr.status()["cycles"] >= 1)
        finally:
            mgr.stop()
        assert len(list_archives(str(backup_dir))) == 1
        assert os.listdir(live_dir) == []

    def test_stop_waits_for_inflight_cycle(self, retention_cfg, live_dir, backup_dir):
        populate(live_dir, {"big.log": b"a" * 500})
        triggered = threading.Event()

        def slow_listener(name, data):
            if name == events.ROTATION_TRIGGERED:
                triggered.set()
                time.sleep(0.3)

        mgr = BackupManager(retention_cfg, on_event=slow_listener)
        mgr.start()
        assert triggered.wait(5)
        mgr.stop()

        # The rotation that was under way completed before stop() returned
        assert mgr.state is ManagerState.STOPPED
        assert os.listdir(live_dir) == []
        assert len(list_archives(str(backup_dir))) == 1

    def test_lifecycle_events(self, retention_cfg):
        seen = []
        mgr = BackupManager(retention_cfg, on_event=lambda n, d: seen.append(n))
        mgr.start()
        assert wait_for(lambda: mgr.status()["cycles"] >= 1)
        mgr.stop()
        assert seen[0] == events.MANAGER_STARTED
        assert seen[-1] == events.MANAGER_STOPPED

    def test_failing_listener_does_not_break_cycle(self, retention_cfg, live_dir, backup_dir):
        populate(live_dir, {"big.log": b"a" * 500})

        def broken(name, data):
            raise ValueError("listener bug")

        result = BackupManager(retention_cfg, on_event=broken).run_cycle()
        assert result.ok
        assert result.archive_path is not None


class TestRunCycle:
    def test_rotation_error_is_recorded_not_raised(self, retention_cfg, tmp_path):
        retention_cfg.live_dir = str(tmp_path / "missing")
        result = BackupManager(retention_cfg).run_cycle()
        assert not result.ok
        assert result.errors[0].startswith("rotation:")
        assert result.finished_at is not None

    def test_archive_failure_logged_without_traceback(self, retention_cfg, live_dir,
                                                       monkeypatch, caplog):
        populate(live_dir, {"big.log": b"a" * 500})

        def broken_archive(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("logserver.retention.rotation.archive_directory", broken_archive)
        with caplog.at_level("INFO"):
            result = BackupManager(retention_cfg).run_cycle()

        assert result.errors == ["rotation: disk full"]
        failed = [r for r in caplog.records if getattr(r, "event", None) == events.ROTATION_FAILED]
        assert len(failed) == 1
        assert not any(r.exc_info for r in caplog.records)

    def test_unexpected_rotation_error_logs_traceback(self, retention_cfg, monkeypatch, caplog):
        def broken_size(path):
            raise ValueError("bad size")

        monkeypatch.setattr("logserver.retention.rotation.dir_size", broken_size)
        with caplog.at_level("INFO"):
            result = BackupManager(retention_cfg).run_cycle()

        assert result.errors == ["rotation: bad size"]
        assert any(r.exc_info for r in caplog.records)

    def test_rotation_then_retention(self, retention_cfg, live_dir, backup_dir):
        now = time.time()
        make_backup(backup_dir, "kettas_logs_01_01_2020_00_00_00.zip", 10,
                    60 * SECONDS_PER_DAY, now)
        populate(live_dir, {"big.log": b"a" * 500})

        result = BackupManager(retention_cfg).run_cycle()
        assert result.ok
        assert result.archive_path is not None
        assert result.deleted == ["kettas_logs_01_01_2020_00_00_00.zip"]
        assert [a.path for a in list_archives(str(backup_dir))] == [result.archive_path]

    def test_status_reports_last_cycle(self, retention_cfg):
        mgr = BackupManager(retention_cfg)
        mgr.run_cycle()
        status = mgr.status()
        assert status["state"] == "stopped"
        assert status["cycles"] == 1
        assert status["encrypted"] is True
        assert status["last_cycle"]["errors"] == []
