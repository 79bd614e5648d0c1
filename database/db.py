import hashlib
import hmac
import logging
import secrets
import sqlite3
import time
from datetime import datetime
from typing import Any, Literal, TypedDict

from backend.config import DB_PATH, DEFAULT_TOTAL_STUDENTS
from backend.services.errors import StoreUnavailable, StoreWriteFailed

logger = logging.getLogger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

Role = Literal["professor", "student"]


class SessionRecord(TypedDict):
    id: str
    professor_id: int
    department: str
    year: str
    division: str
    subject: str
    lecture_date: str
    lecture_time: str
    total_students: int
    active: bool
    qr_token: str
    token_rotated_at: float
    created_at: str
    ended_at: str | None


class CheckInRecord(TypedDict):
    session_id: str
    user_id: int
    name: str
    roll_no: str
    email: str
    verification_photo: str | None
    confidence: float | None
    check_in_time: str


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def connect_db():
    try:
        conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
        # recommended with FK tables
        conn.execute("PRAGMA foreign_keys = ON;")
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Could not open database: {e}") from e
    return conn


def create_tables():
    conn = connect_db()
    try:
        cursor = conn.cursor()

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE COLLATE NOCASE,
            name TEXT NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('professor', 'student')),
            roll_no TEXT,
            password_hash TEXT NOT NULL,
            face_data_uri TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """)

        # One row per lecture session; qr_token is rewritten by the rotator while active = 1
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            professor_id INTEGER NOT NULL,
            department TEXT NOT NULL,
            year TEXT NOT NULL,
            division TEXT NOT NULL,
            subject TEXT NOT NULL,
            lecture_date TEXT NOT NULL,
            lecture_time TEXT NOT NULL,
            total_students INTEGER NOT NULL DEFAULT 60,
            active INTEGER NOT NULL DEFAULT 1,
            qr_token TEXT NOT NULL,
            token_rotated_at REAL NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            ended_at TEXT,
            FOREIGN KEY (professor_id) REFERENCES users(id)
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS checkins (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            roll_no TEXT NOT NULL,
            email TEXT NOT NULL,
            verification_photo TEXT,
            confidence REAL,
            check_in_time TEXT NOT NULL,
            UNIQUE (session_id, user_id),
            FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
        """)

        _ensure_session_columns(conn)

        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_sessions_professor ON sessions(professor_id, created_at)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_checkins_user ON checkins(user_id, check_in_time)"
        )

        conn.commit()
    finally:
        conn.close()


def _ensure_session_columns(conn: sqlite3.Connection) -> None:
    # databases created before rotation timestamps were tracked
    cur = conn.cursor()
    cur.execute("PRAGMA table_info(sessions)")
    cols = {str(row[1]) for row in cur.fetchall()}
    if "token_rotated_at" not in cols:
        cur.execute("ALTER TABLE sessions ADD COLUMN token_rotated_at REAL NOT NULL DEFAULT 0")


# -----------------------------
# Users
# -----------------------------
_USER_COLUMNS = "id, email, name, role, roll_no, face_data_uri, created_at"


def _user_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "email": row[1],
        "name": row[2],
        "role": row[3],
        "roll_no": row[4],
        "face_data_uri": row[5],
        "created_at": row[6],
    }


def create_user(
    email: str,
    password: str,
    name: str,
    role: Role,
    roll_no: str | None = None,
) -> int:
    """Raises sqlite3.IntegrityError when the email is already registered."""
    clean_email = email.strip()
    clean_password = password.strip()
    if not clean_email or not clean_password:
        raise ValueError("Email and password are required.")

    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO users (email, name, role, roll_no, password_hash)
            VALUES (?, ?, ?, ?, ?)
            """,
            (clean_email, name.strip(), role, roll_no, _hash_password(clean_password)),
        )
        conn.commit()
        return int(cur.lastrowid)
    except sqlite3.IntegrityError:
        raise
    except sqlite3.Error as e:
        raise StoreWriteFailed(f"Could not create account: {e}") from e
    finally:
        conn.close()


def verify_user_credentials(email: str, password: str) -> dict | None:
    clean_email = email.strip()
    clean_password = password.strip()
    if not clean_email or not clean_password:
        return None

    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_USER_COLUMNS}, password_hash
            FROM users
            WHERE email = ? COLLATE NOCASE
            """,
            (clean_email,),
        )
        row = cur.fetchone()
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Could not read account: {e}") from e
    finally:
        conn.close()

    if not row:
        return None
    if not _verify_password(clean_password, row[7]):
        return None

    return _user_from_row(row)


def get_user_by_id(user_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,))
        row = cur.fetchone()
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Could not read account: {e}") from e
    finally:
        conn.close()
    return _user_from_row(row) if row else None


def set_user_face(user_id: int, face_data_uri: str) -> bool:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            "UPDATE users SET face_data_uri = ? WHERE id = ?",
            (face_data_uri, user_id),
        )
        conn.commit()
        return cur.rowcount == 1
    except sqlite3.Error as e:
        raise StoreWriteFailed(f"Could not save enrolled face: {e}") from e
    finally:
        conn.close()


# -----------------------------
# Sessions
# -----------------------------
_SESSION_COLUMNS = (
    "id, professor_id, department, year, division, subject, lecture_date, "
    "lecture_time, total_students, active, qr_token, token_rotated_at, created_at, ended_at"
)


def _session_from_row(row) -> SessionRecord:
    return {
        "id": row[0],
        "professor_id": row[1],
        "department": row[2],
        "year": row[3],
        "division": row[4],
        "subject": row[5],
        "lecture_date": row[6],
        "lecture_time": row[7],
        "total_students": row[8],
        "active": bool(row[9]),
        "qr_token": row[10],
        "token_rotated_at": float(row[11] or 0),
        "created_at": row[12],
        "ended_at": row[13],
    }


def new_session_id() -> str:
    return f"{int(time.time() * 1000)}{secrets.token_hex(2)}"


def create_session(
    *,
    professor_id: int,
    department: str,
    year: str,
    division: str,
    subject: str,
    lecture_date: str,
    lecture_time: str,
    initial_token: str,
    total_students: int | None = None,
) -> SessionRecord:
    session_id = new_session_id()
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO sessions (
                id, professor_id, department, year, division, subject, lecture_date,
                lecture_time, total_students, active, qr_token, token_rotated_at, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                session_id,
                professor_id,
                department,
                year,
                division,
                subject,
                lecture_date,
                lecture_time,
                total_students or DEFAULT_TOTAL_STUDENTS,
                initial_token,
                time.time(),
                _now_iso(),
            ),
        )
        conn.commit()
    except sqlite3.Error as e:
        raise StoreWriteFailed(f"Could not create session: {e}") from e
    finally:
        conn.close()

    session = get_session(session_id)
    if session is None:
        raise StoreWriteFailed("Session was not saved.")
    return session


def get_session(session_id: str) -> SessionRecord | None:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,))
        row = cur.fetchone()
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Could not read session: {e}") from e
    finally:
        conn.close()
    return _session_from_row(row) if row else None


def list_sessions_for_professor(professor_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT s.id, s.professor_id, s.department, s.year, s.division, s.subject,
                   s.lecture_date, s.lecture_time, s.total_students, s.active, s.qr_token,
                   s.token_rotated_at, s.created_at, s.ended_at,
                   (SELECT COUNT(1) FROM checkins c WHERE c.session_id = s.id)
            FROM sessions s
            WHERE s.professor_id = ?
            ORDER BY s.created_at DESC, s.id DESC
            """,
            (professor_id,),
        )
        rows = cur.fetchall()
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Could not list sessions: {e}") from e
    finally:
        conn.close()

    out: list[dict[str, Any]] = []
    for row in rows:
        item: dict[str, Any] = dict(_session_from_row(row))
        item["attended_count"] = int(row[14] or 0)
        out.append(item)
    return out


def rotate_session_token(session_id: str, new_token: str) -> bool:
    """
    Overwrite qr_token only while the session is active, stamping the rotation time.
    Returns False when the session is missing or has ended.
    """
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE sessions
            SET qr_token = ?, token_rotated_at = ?
            WHERE id = ? AND active = 1
            """,
            (new_token, time.time(), session_id),
        )
        conn.commit()
        return cur.rowcount == 1
    except sqlite3.Error as e:
        raise StoreWriteFailed(f"Could not rotate token: {e}") from e
    finally:
        conn.close()


def end_session(session_id: str) -> bool:
    """Flip active to 0 once. Returns True only for the call that ended it."""
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE sessions
            SET active = 0, ended_at = ?
            WHERE id = ? AND active = 1
            """,
            (_now_iso(), session_id),
        )
        conn.commit()
        return cur.rowcount == 1
    except sqlite3.Error as e:
        raise StoreWriteFailed(f"Could not end session: {e}") from e
    finally:
        conn.close()


# -----------------------------
# Check-ins
# -----------------------------
_CHECKIN_COLUMNS = (
    "session_id, user_id, name, roll_no, email, verification_photo, confidence, check_in_time"
)


def _checkin_from_row(row) -> CheckInRecord:
    return {
        "session_id": row[0],
        "user_id": row[1],
        "name": row[2],
        "roll_no": row[3],
        "email": row[4],
        "verification_photo": row[5],
        "confidence": row[6],
        "check_in_time": row[7],
    }


def get_checkin(session_id: str, user_id: int) -> CheckInRecord | None:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            f"SELECT {_CHECKIN_COLUMNS} FROM checkins WHERE session_id = ? AND user_id = ?",
            (session_id, user_id),
        )
        row = cur.fetchone()
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Could not read attendance record: {e}") from e
    finally:
        conn.close()
    return _checkin_from_row(row) if row else None


def add_checkin(
    *,
    session_id: str,
    user_id: int,
    name: str,
    roll_no: str,
    email: str,
    verification_photo: str | None,
    confidence: float | None,
) -> tuple[CheckInRecord | None, bool]:
    """
    Append-if-absent, only while the session is active.

    Returns (record, inserted). record is None when nothing was written and no
    record exists, which means the session is missing or has ended.
    """
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT OR IGNORE INTO checkins (
                session_id, user_id, name, roll_no, email,
                verification_photo, confidence, check_in_time
            )
            SELECT id, ?, ?, ?, ?, ?, ?, ?
            FROM sessions
            WHERE id = ? AND active = 1
            """,
            (
                user_id,
                name,
                roll_no,
                email,
                verification_photo,
                confidence,
                _now_iso(),
                session_id,
            ),
        )
        inserted = cur.rowcount == 1
        conn.commit()
    except sqlite3.Error as e:
        raise StoreWriteFailed(f"Could not save attendance record: {e}") from e
    finally:
        conn.close()

    return get_checkin(session_id, user_id), inserted


def list_checkins(session_id: str) -> list[CheckInRecord]:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_CHECKIN_COLUMNS}
            FROM checkins
            WHERE session_id = ?
            ORDER BY check_in_time ASC, id ASC
            """,
            (session_id,),
        )
        rows = cur.fetchall()
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Could not list attendance records: {e}") from e
    finally:
        conn.close()
    return [_checkin_from_row(r) for r in rows]


def get_attendance_history(user_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT c.session_id, s.subject, s.lecture_date, s.lecture_time, c.check_in_time
            FROM checkins c
            JOIN sessions s ON s.id = c.session_id
            WHERE c.user_id = ?
            ORDER BY c.check_in_time DESC, c.id DESC
            """,
            (user_id,),
        )
        rows = cur.fetchall()
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Could not read attendance history: {e}") from e
    finally:
        conn.close()
    return [
        {
            "session_id": session_id,
            "subject": subject,
            "date": lecture_date,
            "lecture_time": lecture_time,
            "check_in_time": check_in_time,
            "status": "Present",
        }
        for (session_id, subject, lecture_date, lecture_time, check_in_time) in rows
    ]


def clear_all_tables():
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute("DELETE FROM checkins")
        cur.execute("DELETE FROM sessions")
        cur.execute("DELETE FROM users")
        conn.commit()
    finally:
        conn.close()
    logger.info("Cleared all tables in %s", DB_PATH)
