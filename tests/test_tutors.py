import pytest

from tutorhub import services
from tutorhub.errors import Duplicate, InvalidInput, InvalidReference, InvalidState, NotFound
from tutorhub.models import User


def _apply(client, user_id, **overrides):
    body = {"user_id": user_id, "year": 2, "gpa": 3.5, "module_codes": ["CS101"], "bio": "", "availability": ""}
    body.update(overrides)
    return client.post("/tutors", json=body)


def test_apply_auto_approves_and_flips_role(client, make_user):
    user = make_user(name="Tia")
    r = _apply(client, user["id"], module_codes=[" cs101", "ma102 "], bio="  Patient tutor ")
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["message"] == "Tutor approved automatically"
    assert body["tutor_profile"]["status"] == "approved"
    assert body["tutor_profile"]["module_codes"] == ["CS101", "MA102"]
    assert body["tutor_profile"]["bio"] == "Patient tutor"
    assert body["tutor_profile"]["tutor"]["role"] == "tutor"
    assert body["user"]["role"] == "tutor"
    assert client.get(f"/users/{user['id']}").json()["role"] == "tutor"


def test_module_codes_collapse_duplicates(client, make_user):
    user = make_user()
    r = _apply(client, user["id"], module_codes=["cs101", "CS101 ", "  "])
    assert r.json()["tutor_profile"]["module_codes"] == ["CS101"]


@pytest.mark.parametrize("overrides", [
    {"module_codes": []},
    {"module_codes": ["  ", ""]},
    {"module_codes": "CS101"},
    {"year": 0},
    {"year": 4},
    {"year": 1.5},
    {"gpa": 4.1},
    {"gpa": -0.1},
    {"gpa": "abc"},
    {"year": None},
])
def test_apply_rejects_invalid_fields(client, make_user, overrides):
    user = make_user()
    r = _apply(client, user["id"], **overrides)
    assert r.status_code == 400, r.text
    assert r.json()["code"] == "invalid_input"


def test_apply_accepts_numeric_strings(client, make_user):
    user = make_user()
    r = _apply(client, user["id"], year="3", gpa="3.9")
    assert r.status_code == 201
    assert r.json()["tutor_profile"]["year"] == 3
    assert r.json()["tutor_profile"]["gpa"] == 3.9


def test_one_profile_per_user(client, make_user):
    user = make_user()
    assert _apply(client, user["id"]).status_code == 201
    r = _apply(client, user["id"], module_codes=["MA102"])
    assert r.status_code == 409
    assert r.json()["message"] == "Tutor profile already exists"


def test_apply_for_unknown_user(client):
    r = _apply(client, 404)
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_reference"


def test_manual_moderation_when_auto_approve_is_off(client, make_user, monkeypatch):
    monkeypatch.setenv("TUTORHUB_AUTO_APPROVE", "off")
    user = make_user()
    r = _apply(client, user["id"])
    body = r.json()
    assert body["message"] == "Tutor application submitted for review"
    assert body["tutor_profile"]["status"] == "pending"
    assert body["user"]["role"] == "student"
    profile_id = body["tutor_profile"]["id"]

    # pending profiles are not listed
    assert client.get("/tutors").json() == []

    r = client.patch(f"/tutors/{profile_id}/status", json={"status": "approved"})
    assert r.status_code == 200
    assert r.json()["status"] == "approved"
    assert r.json()["tutor"]["role"] == "tutor"
    assert [t["id"] for t in client.get("/tutors").json()] == [profile_id]

    # moderation happens once
    r = client.patch(f"/tutors/{profile_id}/status", json={"status": "rejected"})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_state"


def test_rejected_application_keeps_student_role(client, make_user, monkeypatch):
    monkeypatch.setenv("TUTORHUB_AUTO_APPROVE", "0")
    user = make_user()
    profile_id = _apply(client, user["id"]).json()["tutor_profile"]["id"]
    r = client.patch(f"/tutors/{profile_id}/status", json={"status": "rejected"})
    assert r.json()["status"] == "rejected"
    assert client.get(f"/users/{user['id']}").json()["role"] == "student"


def test_moderation_rejects_unknown_status_and_profile(client, make_tutor):
    profile = make_tutor()["tutor_profile"]
    r = client.patch(f"/tutors/{profile['id']}/status", json={"status": "pending"})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_status"
    assert client.patch("/tutors/999/status", json={"status": "approved"}).status_code == 404


def test_get_by_profile_and_by_user(client, make_tutor):
    applied = make_tutor(name="Tia")
    profile, user = applied["tutor_profile"], applied["user"]

    r = client.get(f"/tutors/{profile['id']}")
    assert r.status_code == 200
    assert r.json()["tutor"]["email"] == "tia@uni.test"

    r = client.get(f"/tutors/by-user/{user['id']}")
    assert r.json()["id"] == profile["id"]

    assert client.get("/tutors/999").status_code == 404
    assert client.get("/tutors/by-user/999").status_code == 404


def test_orphan_profile_is_not_found_and_not_listed(client, db, make_tutor):
    applied = make_tutor(name="Gone")
    kept = make_tutor(name="Kept")
    db.query(User).filter(User.id == applied["user"]["id"]).delete()
    db.commit()

    assert client.get(f"/tutors/{applied['tutor_profile']['id']}").status_code == 404
    assert client.get(f"/tutors/by-user/{applied['user']['id']}").status_code == 404
    assert [t["id"] for t in client.get("/tutors").json()] == [kept["tutor_profile"]["id"]]


def test_list_filters_by_module_and_year(client, make_tutor):
    a = make_tutor(name="Ann", module_codes=["CS101", "MA102"], year=1)["tutor_profile"]
    b = make_tutor(name="Ben", module_codes=["cs101"], year=2)["tutor_profile"]
    c = make_tutor(name="Cat", module_codes=["PH201"], year=2)["tutor_profile"]

    ids = lambda r: [t["id"] for t in r.json()]
    assert ids(client.get("/tutors")) == [c["id"], b["id"], a["id"]]
    assert ids(client.get("/tutors", params={"module_code": " cs101 "})) == [b["id"], a["id"]]
    assert ids(client.get("/tutors", params={"year": 2})) == [c["id"], b["id"]]
    assert ids(client.get("/tutors", params={"year": 2, "module_code": "CS101"})) == [b["id"]]
    assert client.get("/tutors", params={"year": "two"}).status_code == 400


def test_listing_carries_rating_stats(client, make_tutor):
    listing = client.get("/tutors").json()
    assert listing == []
    make_tutor()
    t = client.get("/tutors").json()[0]
    assert t["avg_rating"] == 0
    assert t["review_count"] == 0
    assert t["tutor"]["name"] == "Tia"


def test_service_apply_errors(db):
    u = services.create_user(db, "Tia", "tia@uni.test", "student")
    with pytest.raises(InvalidInput):
        services.apply_tutor(db, u.id, 2, 3.0, [])
    with pytest.raises(InvalidReference):
        services.apply_tutor(db, 999, 2, 3.0, ["CS101"])
    joined, approved = services.apply_tutor(db, u.id, 2, 3.0, ["cs101"])
    assert approved and joined.tutor.role == "tutor"
    with pytest.raises(Duplicate):
        services.apply_tutor(db, u.id, 2, 3.0, ["CS101"])
    with pytest.raises(InvalidState):
        services.moderate_tutor(db, joined.record.id, "rejected")
    with pytest.raises(NotFound):
        services.get_tutor(db, 999)


@pytest.mark.parametrize("year", ["1e20", "5", "0"])
def test_list_rejects_year_out_of_range(client, make_tutor, year):
    make_tutor()
    r = client.get("/tutors", params={"year": year})
    assert r.status_code == 400
    assert r.json()["message"] == "Invalid year"
