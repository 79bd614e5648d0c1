import base64

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.services.errors import OracleUnavailable
from backend.services.oracle import EnrollmentVerdict, FaceVerdict, NameVerdict, get_oracle


class FakeOracle:
    def __init__(self):
        self.face_verdict = FaceVerdict(is_match=True, confidence=0.95, reason="Same person.")
        self.name_verdict = NameVerdict(is_valid=True)
        self.enroll_verdict = EnrollmentVerdict(success=True, message="Face enrolled.")
        self.unavailable = False
        self.calls: list[tuple] = []

    def _check(self):
        if self.unavailable:
            raise OracleUnavailable()

    def verify_face(self, live_photo, enrolled_photo, student_name):
        self.calls.append(("verify_face", student_name))
        self._check()
        return self.face_verdict

    def validate_name(self, name):
        self.calls.append(("validate_name", name))
        self._check()
        return self.name_verdict

    def enroll_face(self, photo, student_id):
        self.calls.append(("enroll_face", student_id))
        self._check()
        return self.enroll_verdict


def make_photo_uri(seed: int = 0, size: int = 160) -> str:
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
    ok, buf = cv2.imencode(".jpg", img)
    assert ok
    return "data:image/jpeg;base64," + base64.b64encode(buf.tobytes()).decode("ascii")


@pytest.fixture()
def store(tmp_path, monkeypatch):
    test_db = tmp_path / "attendabyte_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(main, "DB_PATH", test_db, raising=False)

    db.create_tables()
    return test_db


@pytest.fixture()
def fake_oracle():
    return FakeOracle()


@pytest.fixture()
def client(store, fake_oracle):
    main.app.dependency_overrides[get_oracle] = lambda: fake_oracle
    try:
        with TestClient(main.app) as c:
            yield c
    finally:
        main.app.dependency_overrides.pop(get_oracle, None)


@pytest.fixture()
def photo_uri():
    return make_photo_uri()


@pytest.fixture()
def professor(store):
    user_id = db.create_user("prof@example.edu", "secret123", "Prof Ada", "professor")
    return db.get_user_by_id(user_id)


@pytest.fixture()
def student(store, photo_uri):
    user_id = db.create_user("sam@example.edu", "secret123", "Sam Student", "student", "CS-042")
    db.set_user_face(user_id, photo_uri)
    return db.get_user_by_id(user_id)


@pytest.fixture()
def lecture(professor):
    return db.create_session(
        professor_id=professor["id"],
        department="Computer Science",
        year="SE",
        division="A",
        subject="Operating Systems",
        lecture_date="2026-10-17",
        lecture_time="09:30",
        initial_token="1000",
    )
