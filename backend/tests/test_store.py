import sqlite3

import pytest

import backend.config as config
import database.db as db
from backend.services.errors import StoreUnavailable, StoreWriteFailed
from backend.services.sessions import refresh_in


class TrackedConnection:
    def __init__(self, conn):
        self._conn = conn
        self.closed = False

    def cursor(self):
        return self._conn.cursor()

    def commit(self):
        self._conn.commit()

    def close(self):
        self.closed = True
        self._conn.close()


@pytest.fixture()
def tableless_store(tmp_path, monkeypatch):
    # a database file without the schema, so every query fails inside sqlite
    opened = []

    def _connect():
        conn = TrackedConnection(sqlite3.connect(str(tmp_path / "empty.db")))
        opened.append(conn)
        return conn

    monkeypatch.setattr(db, "connect_db", _connect)
    return opened


def test_read_failures_raise_store_unavailable(tableless_store):
    with pytest.raises(StoreUnavailable):
        db.get_session("s1")
    with pytest.raises(StoreUnavailable):
        db.get_checkin("s1", 1)
    with pytest.raises(StoreUnavailable):
        db.list_checkins("s1")
    with pytest.raises(StoreUnavailable):
        db.get_user_by_id(1)

    assert len(tableless_store) == 4
    assert all(conn.closed for conn in tableless_store)


def test_write_failures_close_the_connection(tableless_store):
    with pytest.raises(StoreWriteFailed):
        db.rotate_session_token("s1", "2000")
    with pytest.raises(StoreWriteFailed):
        db.end_session("s1")

    assert all(conn.closed for conn in tableless_store)


def test_unopenable_database_is_unavailable(tmp_path, monkeypatch):
    # a directory cannot be opened as a database file
    monkeypatch.setattr(db, "DB_PATH", tmp_path)
    with pytest.raises(StoreUnavailable):
        db.get_session("s1")


def test_create_session_reports_missing_row(professor, monkeypatch):
    monkeypatch.setattr(db, "get_session", lambda session_id: None)
    with pytest.raises(StoreWriteFailed):
        db.create_session(
            professor_id=professor["id"],
            department="Physics",
            year="FE",
            division="C",
            subject="Mechanics",
            lecture_date="2026-10-17",
            lecture_time="11:00",
            initial_token="1000",
        )


def test_rotation_stamps_rotated_at(lecture):
    before = lecture["token_rotated_at"]
    assert before > 0

    assert db.rotate_session_token(lecture["id"], "2000") is True
    assert db.get_session(lecture["id"])["token_rotated_at"] >= before


def test_refresh_in_counts_down_to_next_rotation(lecture, monkeypatch):
    monkeypatch.setattr(config, "TOKEN_ROTATION_INTERVAL_SECONDS", 20)
    rotated_at = lecture["token_rotated_at"]

    assert refresh_in(lecture, now=rotated_at) == 20
    assert refresh_in(lecture, now=rotated_at + 5.5) == 15
    assert refresh_in(lecture, now=rotated_at + 60) == 0

    db.end_session(lecture["id"])
    assert refresh_in(db.get_session(lecture["id"]), now=rotated_at) is None


def test_tables_gain_rotated_at_column(store):
    conn = sqlite3.connect(str(store))
    try:
        conn.execute("DROP TABLE checkins")
        conn.execute("DROP TABLE sessions")
        conn.execute(
            """
            CREATE TABLE sessions (
                id TEXT PRIMARY KEY, professor_id INTEGER NOT NULL, department TEXT NOT NULL,
                year TEXT NOT NULL, division TEXT NOT NULL, subject TEXT NOT NULL,
                lecture_date TEXT NOT NULL, lecture_time TEXT NOT NULL,
                total_students INTEGER NOT NULL DEFAULT 60, active INTEGER NOT NULL DEFAULT 1,
                qr_token TEXT NOT NULL, created_at TEXT NOT NULL, ended_at TEXT
            )
            """
        )
        conn.commit()
    finally:
        conn.close()

    db.create_tables()
    assert db.get_session("missing") is None
