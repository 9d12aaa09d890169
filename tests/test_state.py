import os
import threading

import pytest

from bluegreen.errors import LockHeldError
from bluegreen.state import (
    HISTORY_LIMIT,
    DeployHistory,
    DeployLock,
    Slot,
    atomic_write_text,
    read_active,
    write_active,
)


# ── Marker ──


def test_missing_marker_means_blue(layout):
    assert read_active(layout.marker_file) is Slot.BLUE


@pytest.mark.parametrize("content", ["", "\n", "  ", "purple\n"])
def test_blank_or_invalid_marker_means_blue(layout, content):
    layout.marker_file.write_text(content)
    assert read_active(layout.marker_file) is Slot.BLUE


def test_marker_round_trip(layout):
    write_active(layout.marker_file, Slot.GREEN)
    assert layout.marker_file.read_text() == "green\n"
    assert read_active(layout.marker_file) is Slot.GREEN


def test_atomic_write_leaves_no_temp_files(tmp_path):
    target = tmp_path / "active"
    atomic_write_text(target, "blue\n")
    atomic_write_text(target, "green\n")
    assert sorted(p.name for p in tmp_path.iterdir()) == ["active"]


def test_atomic_write_keeps_existing_mode(tmp_path):
    target = tmp_path / "Caddyfile"
    target.write_text("old")
    os.chmod(target, 0o640)
    atomic_write_text(target, "new")
    assert target.stat().st_mode & 0o777 == 0o640
    assert target.read_text() == "new"


def test_atomic_write_new_file_is_world_readable(tmp_path):
    target = tmp_path / "Caddyfile"
    atomic_write_text(target, "new")
    assert target.stat().st_mode & 0o777 == 0o644


def test_slot_layout(layout, tmp_path):
    green = layout.slot(Slot.GREEN)
    assert green.port == 8081
    assert green.service == "myapp-green"
    assert green.directory == tmp_path / "myapp" / "app-green"
    assert green.mgmt_port == 8081
    assert Slot.BLUE.other is Slot.GREEN


# ── Lock ──


def test_second_lock_fails_and_names_path(layout):
    with DeployLock(layout.lock_dir):
        with pytest.raises(LockHeldError) as exc_info:
            DeployLock(layout.lock_dir).acquire()
    assert str(layout.lock_dir) in str(exc_info.value)
    assert exc_info.value.exit_code == 2


def test_lock_released_on_error(layout):
    with pytest.raises(RuntimeError):
        with DeployLock(layout.lock_dir):
            raise RuntimeError("boom")
    assert not layout.lock_dir.exists()


def test_failed_acquire_does_not_release_holders_lock(layout):
    holder = DeployLock(layout.lock_dir)
    holder.acquire()
    with pytest.raises(LockHeldError):
        with DeployLock(layout.lock_dir):
            pass
    assert layout.lock_dir.exists()
    holder.release()


def test_only_one_concurrent_acquirer_wins(layout):
    winners = []
    barrier = threading.Barrier(8)

    def contend():
        lock = DeployLock(layout.lock_dir)
        barrier.wait()
        try:
            lock.acquire()
        except LockHeldError:
            return
        winners.append(lock)

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1


# ── History ──


def test_history_keeps_last_entries(layout):
    history = DeployHistory(layout.history_file)
    for i in range(HISTORY_LIMIT + 5):
        history.append(from_slot="blue", to_slot="green", attempt=i, success=True)
    entries = history.entries()
    assert len(entries) == HISTORY_LIMIT
    assert entries[-1]["attempt"] == HISTORY_LIMIT + 4
    assert "timestamp" in entries[0]


def test_corrupt_history_reads_empty(layout):
    layout.history_file.write_text("{not json")
    assert DeployHistory(layout.history_file).entries() == []
