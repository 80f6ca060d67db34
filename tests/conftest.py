import os

# keep the app's import-time create_all away from the working directory
os.environ.setdefault("TUTORHUB_DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tutorhub.db import Base, get_db
from tutorhub.main import app


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(client):
    def _make(name="Sam", email=None, role="student"):
        email = email or f"{name.lower()}@uni.test"
        r = client.post("/users", json={"name": name, "email": email, "role": role})
        assert r.status_code == 201, r.text
        return r.json()
    return _make


@pytest.fixture
def make_tutor(client, make_user):
    def _make(name="Tia", module_codes=("CS101",), year=2, gpa=3.6):
        user = make_user(name=name)
        r = client.post("/tutors", json={
            "user_id": user["id"],
            "year": year,
            "gpa": gpa,
            "module_codes": list(module_codes),
            "bio": "Happy to help",
            "availability": "Weekday evenings",
        })
        assert r.status_code == 201, r.text
        return r.json()
    return _make


@pytest.fixture
def make_booking(client):
    def _make(student, tutor, module_code="cs101", session_date="2026-11-02T15:00:00"):
        r = client.post("/bookings", json={
            "student_id": student["id"],
            "tutor_id": tutor["id"],
            "session_date": session_date,
            "module_code": module_code,
        })
        assert r.status_code == 201, r.text
        return r.json()
    return _make


@pytest.fixture
def completed_booking(client, make_user, make_tutor, make_booking):
    """A booking both parties have confirmed; returns (booking, student, tutor_user)."""
    student = make_user(name="Stu")
    tutor = make_tutor(name="Tom")["user"]
    b = make_booking(student, tutor)
    assert client.patch(f"/bookings/{b['id']}/status", json={"status": "accepted"}).status_code == 200
    assert client.patch(f"/bookings/{b['id']}/complete", json={"role": "student"}).status_code == 200
    r = client.patch(f"/bookings/{b['id']}/complete", json={"role": "tutor"})
    assert r.json()["status"] == "completed"
    return r.json(), student, tutor
