"""Tests for termhub.pty.session (SessionIdAllocator, Session, SessionTable)."""

from __future__ import annotations

import threading

import pytest

from conftest import FakePair
from termhub.pty.provider import PtySize
from termhub.pty.session import Session, SessionIdAllocator, SessionTable


def _session(session_id: int) -> tuple[Session, FakePair]:
    pair = FakePair(PtySize(), pid=100 + session_id)
    master = pair.master
    return Session(id=session_id, writer=master.writer, master=master), pair


# ---------------------------------------------------------------------------
# SessionIdAllocator
# ---------------------------------------------------------------------------


class TestSessionIdAllocator:
    def test_starts_at_zero(self) -> None:
        ids = SessionIdAllocator()
        assert ids.allocate() == 0
        assert ids.allocate() == 1

    def test_custom_start(self) -> None:
        assert SessionIdAllocator(start=10).allocate() == 10

    def test_unique_under_contention(self) -> None:
        ids = SessionIdAllocator()
        results: list[int] = []
        lock = threading.Lock()

        def _take() -> None:
            for _ in range(200):
                value = ids.allocate()
                with lock:
                    results.append(value)

        threads = [threading.Thread(target=_take) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(results) == list(range(1600))


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class TestSession:
    def test_write_flushes(self) -> None:
        session, pair = _session(0)
        session.write(b"ls\n")
        assert pair.master.writer.data == b"ls\n"
        assert pair.master.writer.flushes == 1

    def test_resize_tracks_size(self) -> None:
        session, pair = _session(0)
        session.resize(PtySize(rows=10, cols=20))
        assert session.size == PtySize(rows=10, cols=20)
        assert pair.master.sizes == [PtySize(rows=10, cols=20)]

    def test_close_releases_writer_and_master(self) -> None:
        session, pair = _session(0)
        session.close()
        assert session.closed
        assert pair.master.writer.closed
        assert pair.master.closed

    def test_close_idempotent(self) -> None:
        session, pair = _session(0)
        session.close()
        session.close()
        assert session.closed

    def test_write_after_close(self) -> None:
        session, _ = _session(0)
        session.close()
        with pytest.raises(OSError):
            session.write(b"x")

    def test_resize_after_close(self) -> None:
        session, _ = _session(0)
        session.close()
        with pytest.raises(OSError):
            session.resize(PtySize())

    def test_describe(self) -> None:
        session, _ = _session(3)
        info = session.describe()
        assert info["id"] == 3
        assert (info["cols"], info["rows"]) == (80, 24)


# ---------------------------------------------------------------------------
# SessionTable
# ---------------------------------------------------------------------------


class TestSessionTable:
    def test_empty(self) -> None:
        table = SessionTable()
        assert len(table) == 0
        assert table.ids() == []
        assert table.get(0) is None

    def test_insert_and_get(self) -> None:
        table = SessionTable()
        session, _ = _session(0)
        table.insert(session)
        assert table.get(0) is session
        assert 0 in table

    def test_duplicate_insert_rejected(self) -> None:
        table = SessionTable()
        table.insert(_session(0)[0])
        with pytest.raises(ValueError):
            table.insert(_session(0)[0])

    def test_removed_id_never_reinserted(self) -> None:
        table = SessionTable()
        table.insert(_session(0)[0])
        table.remove(0)
        with pytest.raises(ValueError):
            table.insert(_session(0)[0])

    def test_remove_returns_session_once(self) -> None:
        table = SessionTable()
        session, _ = _session(1)
        table.insert(session)
        assert table.remove(1) is session
        assert table.remove(1) is None
        assert 1 not in table

    def test_ids_sorted(self) -> None:
        table = SessionTable()
        for sid in (4, 1, 3):
            table.insert(_session(sid)[0])
        assert table.ids() == [1, 3, 4]
        assert [s.id for s in table.snapshot()] == [1, 3, 4]

    def test_concurrent_remove_single_winner(self) -> None:
        table = SessionTable()
        table.insert(_session(0)[0])
        winners: list[Session] = []
        lock = threading.Lock()
        barrier = threading.Barrier(10)

        def _remove() -> None:
            barrier.wait()
            removed = table.remove(0)
            if removed is not None:
                with lock:
                    winners.append(removed)

        threads = [threading.Thread(target=_remove) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(winners) == 1
