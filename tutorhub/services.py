import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import (
    Duplicate,
    Forbidden,
    InvalidInput,
    InvalidReference,
    InvalidRole,
    InvalidState,
    InvalidStatus,
    NotFound,
)
from .models import (
    ACCEPTED,
    APPROVED,
    COMPLETED,
    PENDING,
    REJECTED,
    ROLES,
    STUDENT,
    TUTOR,
    Booking,
    Review,
    TutorProfile,
    User,
)
from .utils import (
    auto_approve_enabled,
    clean_text,
    coerce_rating,
    normalize_email,
    normalize_module_code,
    normalize_module_codes,
    parse_id,
    parse_optional_id,
    to_number,
)

logger = logging.getLogger(__name__)


# -------------------------------
# Weak user references
# -------------------------------

class Joined(NamedTuple):
    """A record with its referenced users resolved; a missing user is None."""
    record: Any
    student: Optional[User]
    tutor: Optional[User]
    dangling: bool


def _users_by_id(db: Session, ids: Iterable[int]) -> Dict[int, User]:
    ids = {i for i in ids if i is not None}
    if not ids:
        return {}
    return {u.id: u for u in db.query(User).filter(User.id.in_(ids)).all()}


def _join_users(
    db: Session,
    records: List[Any],
    student_attr: Optional[str] = "student_id",
    tutor_attr: Optional[str] = "tutor_id",
) -> List[Joined]:
    attrs = [a for a in (student_attr, tutor_attr) if a]
    users = _users_by_id(db, (getattr(r, a) for r in records for a in attrs))
    out = []
    for r in records:
        student = users.get(getattr(r, student_attr)) if student_attr else None
        tutor = users.get(getattr(r, tutor_attr)) if tutor_attr else None
        dangling = (student_attr is not None and student is None) or (tutor_attr is not None and tutor is None)
        out.append(Joined(r, student, tutor, dangling))
    return out


def _drop_dangling(joined: List[Joined], what: str) -> List[Joined]:
    kept = [j for j in joined if not j.dangling]
    if len(kept) != len(joined):
        logger.debug("dropped %d orphan %s", len(joined) - len(kept), what)
    return kept


# -------------------------------
# Users
# -------------------------------

def list_users(db: Session, email: Optional[str] = None) -> List[User]:
    q = db.query(User)
    if email:
        q = q.filter(User.email == normalize_email(email))
    return q.order_by(User.created_at.desc(), User.id.desc()).all()


def get_user(db: Session, user_id: int) -> User:
    u = db.query(User).filter(User.id == user_id).first()
    if not u:
        raise NotFound("User not found")
    return u


def create_user(db: Session, name: Optional[str], email: Optional[str], role: Optional[str]) -> User:
    name, email, role = clean_text(name), normalize_email(email), clean_text(role).lower()
    if not name or not email or not role:
        raise InvalidInput("Missing required fields")
    if role not in ROLES:
        raise InvalidInput("role must be 'student' or 'tutor'")

    if db.query(User).filter(User.email == email).first():
        raise Duplicate("Email already exists")

    u = User(name=name, email=email, role=role)
    db.add(u)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Duplicate("Email already exists")
    db.refresh(u)
    logger.info("created user %s (%s)", u.id, u.role)
    return u


# -------------------------------
# Rating aggregation
# -------------------------------

def _round_rating(avg: Any) -> float:
    """Two decimals, ties rounded up (4.125 -> 4.13)."""
    return float(Decimal(str(avg)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def tutor_rating_stats(db: Session, tutor_id: int) -> Tuple[float, int]:
    """Mean rating (2 decimals) and review count for one tutor; (0, 0) when unrated."""
    avg, count = (
        db.query(func.avg(Review.rating), func.count(Review.id))
        .filter(Review.tutor_id == tutor_id)
        .one()
    )
    if not count:
        return 0, 0
    return _round_rating(avg), count


def rating_stats_by_tutor(db: Session, tutor_ids: Iterable[int]) -> Dict[int, Tuple[float, int]]:
    ids = set(tutor_ids)
    if not ids:
        return {}
    rows = (
        db.query(Review.tutor_id, func.avg(Review.rating), func.count(Review.id))
        .filter(Review.tutor_id.in_(ids))
        .group_by(Review.tutor_id)
        .all()
    )
    return {tid: (_round_rating(avg), count) for tid, avg, count in rows}


# -------------------------------
# Tutor profiles
# -------------------------------

class TutorListing(NamedTuple):
    joined: Joined
    avg_rating: float
    review_count: int


def _join_profiles(db: Session, profiles: List[TutorProfile]) -> List[Joined]:
    return _join_users(db, profiles, student_attr=None, tutor_attr="user_id")


def _one_profile(db: Session, profile: Optional[TutorProfile]) -> Joined:
    if not profile:
        raise NotFound("Tutor profile not found")
    joined = _join_profiles(db, [profile])[0]
    if joined.dangling:
        raise NotFound("Tutor profile not found")
    return joined


def apply_tutor(
    db: Session,
    user_id: Any,
    year: Any,
    gpa: Any,
    module_codes: Any,
    bio: Optional[str] = None,
    availability: Optional[str] = None,
) -> Tuple[Joined, bool]:
    """
    Submit a tutor application. Returns the joined profile and whether it was
    approved on the spot (see auto_approve_enabled).
    """
    if user_id in (None, "") or year in (None, "") or gpa in (None, ""):
        raise InvalidInput("Missing required fields")
    uid = parse_id(user_id, "user_id")

    year_num = to_number(year)
    if year_num is None or not year_num.is_integer() or not 1 <= year_num <= 3:
        raise InvalidInput("year must be 1, 2 or 3")
    gpa_num = to_number(gpa)
    if gpa_num is None or not 0.0 <= gpa_num <= 4.0:
        raise InvalidInput("gpa must be between 0.0 and 4.0")

    if isinstance(module_codes, str) or not isinstance(module_codes, (list, tuple)):
        raise InvalidInput("Select at least one module")
    codes = normalize_module_codes(module_codes)
    if not codes:
        raise InvalidInput("Select at least one module")

    user = db.query(User).filter(User.id == uid).first()
    if not user:
        raise InvalidReference("User does not exist")

    approved = auto_approve_enabled()
    profile = TutorProfile(
        user_id=uid,
        year=int(year_num),
        gpa=gpa_num,
        module_codes=codes,
        bio=clean_text(bio),
        availability=clean_text(availability),
        status=APPROVED if approved else PENDING,
    )
    db.add(profile)
    if approved:
        user.role = TUTOR
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Duplicate("Tutor profile already exists")
    db.refresh(profile)
    db.refresh(user)
    logger.info("tutor profile %s for user %s is %s", profile.id, uid, profile.status)
    return Joined(profile, None, user, False), approved


def moderate_tutor(db: Session, profile_id: int, status: Optional[str]) -> Joined:
    if status not in (APPROVED, REJECTED):
        raise InvalidStatus("status must be 'approved' or 'rejected'")
    joined = _one_profile(db, db.query(TutorProfile).filter(TutorProfile.id == profile_id).first())

    changed = (
        db.query(TutorProfile)
        .filter(TutorProfile.id == profile_id, TutorProfile.status == PENDING)
        .update({"status": status}, synchronize_session=False)
    )
    if not changed:
        db.rollback()
        raise InvalidState(f"Tutor profile is already {joined.record.status}")
    if status == APPROVED:
        db.query(User).filter(User.id == joined.record.user_id).update({"role": TUTOR}, synchronize_session=False)
    db.commit()
    db.refresh(joined.record)
    db.refresh(joined.tutor)
    logger.info("tutor profile %s moderated to %s", profile_id, status)
    return joined


def get_tutor(db: Session, profile_id: int) -> Joined:
    return _one_profile(db, db.query(TutorProfile).filter(TutorProfile.id == profile_id).first())


def get_tutor_by_user(db: Session, user_id: int) -> Joined:
    return _one_profile(db, db.query(TutorProfile).filter(TutorProfile.user_id == user_id).first())


def list_tutors(db: Session, module_code: Optional[str] = None, year: Any = None) -> List[TutorListing]:
    q = db.query(TutorProfile).filter(TutorProfile.status == APPROVED)
    if year not in (None, ""):
        year_num = to_number(year)
        if year_num is None or not year_num.is_integer() or not 1 <= year_num <= 3:
            raise InvalidInput("Invalid year")
        q = q.filter(TutorProfile.year == int(year_num))
    profiles = q.order_by(TutorProfile.created_at.desc(), TutorProfile.id.desc()).all()

    code = normalize_module_code(module_code)
    if code:
        # JSON list membership is checked in Python
        profiles = [p for p in profiles if code in (p.module_codes or [])]

    joined = _drop_dangling(_join_profiles(db, profiles), "tutor profiles")
    stats = rating_stats_by_tutor(db, (j.record.user_id for j in joined))
    return [TutorListing(j, *stats.get(j.record.user_id, (0, 0))) for j in joined]


# -------------------------------
# Bookings
# -------------------------------

def _as_naive_utc(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise InvalidInput("Invalid session_date")
    if not isinstance(value, datetime):
        raise InvalidInput("Invalid session_date")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _load_booking(db: Session, booking_id: int) -> Joined:
    b = db.query(Booking).filter(Booking.id == booking_id).first()
    if not b:
        raise NotFound("Booking not found")
    joined = _join_users(db, [b])[0]
    if joined.dangling:
        raise NotFound("Booking is invalid (user deleted)")
    return joined


def create_booking(
    db: Session,
    student_id: Any,
    tutor_id: Any,
    session_date: Any,
    module_code: Any,
    remarks: Optional[str] = None,
) -> Joined:
    code = normalize_module_code(module_code)
    if student_id in (None, "") or tutor_id in (None, "") or not session_date or not code:
        raise InvalidInput("Missing required fields")
    sid = parse_id(student_id, "student_id")
    tid = parse_id(tutor_id, "tutor_id")
    when = _as_naive_utc(session_date)

    users = _users_by_id(db, (sid, tid))
    if sid not in users or tid not in users:
        raise InvalidReference("Student or tutor does not exist")

    b = Booking(
        student_id=sid,
        tutor_id=tid,
        module_code=code,
        session_date=when,
        status=PENDING,
        remarks=clean_text(remarks),
        completed_by_student=False,
        completed_by_tutor=False,
    )
    db.add(b)
    db.commit()
    db.refresh(b)
    logger.info("booking %s requested: student %s -> tutor %s (%s)", b.id, sid, tid, code)
    return Joined(b, users[sid], users[tid], False)


def list_bookings(db: Session, student_id: Any = None, tutor_id: Any = None) -> List[Joined]:
    sid = parse_optional_id(student_id, "student_id")
    tid = parse_optional_id(tutor_id, "tutor_id")
    q = db.query(Booking)
    if sid is not None:
        q = q.filter(Booking.student_id == sid)
    if tid is not None:
        q = q.filter(Booking.tutor_id == tid)
    bookings = q.order_by(Booking.created_at.desc(), Booking.id.desc()).all()
    return _drop_dangling(_join_users(db, bookings), "bookings")


def get_booking(db: Session, booking_id: int) -> Joined:
    return _load_booking(db, booking_id)


def transition_booking(db: Session, booking_id: int, status: Optional[str]) -> Joined:
    """Tutor accepts or rejects a pending request."""
    if status not in (ACCEPTED, REJECTED):
        raise InvalidStatus("Invalid status")
    joined = _load_booking(db, booking_id)

    changed = (
        db.query(Booking)
        .filter(Booking.id == booking_id, Booking.status == PENDING)
        .update({"status": status}, synchronize_session=False)
    )
    if not changed:
        db.rollback()
        raise InvalidState(f"Booking is already {joined.record.status}")
    db.commit()
    db.refresh(joined.record)
    logger.info("booking %s %s", booking_id, status)
    return joined


def complete_booking(db: Session, booking_id: int, role: Optional[str]) -> Joined:
    """
    One party confirms the session took place. The booking becomes completed
    once both parties have confirmed; confirming twice changes nothing.

    Each step is a single conditional UPDATE, so concurrent confirmations from
    the student and the tutor cannot overwrite each other's flag.
    """
    if role not in ROLES:
        raise InvalidRole("role must be 'student' or 'tutor'")
    joined = _load_booking(db, booking_id)

    flag = "completed_by_student" if role == STUDENT else "completed_by_tutor"
    changed = (
        db.query(Booking)
        .filter(Booking.id == booking_id, Booking.status.in_((ACCEPTED, COMPLETED)))
        .update({flag: True}, synchronize_session=False)
    )
    if not changed:
        db.rollback()
        raise InvalidState("Only accepted bookings can be completed")

    db.query(Booking).filter(
        Booking.id == booking_id,
        Booking.status == ACCEPTED,
        Booking.completed_by_student.is_(True),
        Booking.completed_by_tutor.is_(True),
    ).update({"status": COMPLETED}, synchronize_session=False)
    db.commit()
    db.refresh(joined.record)
    logger.info("booking %s confirmed by %s (status=%s)", booking_id, role, joined.record.status)
    return joined


def cancel_booking(db: Session, booking_id: int) -> None:
    if not db.query(Booking).filter(Booking.id == booking_id).first():
        raise NotFound("Booking not found")
    deleted = (
        db.query(Booking)
        .filter(Booking.id == booking_id, Booking.status != COMPLETED)
        .delete(synchronize_session=False)
    )
    if not deleted:
        db.rollback()
        raise InvalidState("Cannot cancel completed booking")
    db.commit()
    logger.info("booking %s cancelled", booking_id)


# -------------------------------
# Reviews
# -------------------------------

def create_review(
    db: Session,
    booking_id: Any,
    rating: Any,
    comment: Optional[str] = None,
    student_id: Any = None,
) -> Joined:
    if booking_id in (None, "") or rating is None:
        raise InvalidInput("Missing booking_id or rating")
    bid = parse_id(booking_id, "booking_id")
    stars = coerce_rating(rating)

    booking = db.query(Booking).filter(Booking.id == bid).first()
    if not booking:
        raise NotFound("Booking not found")
    if booking.status != COMPLETED:
        raise InvalidState("Session not completed")

    if student_id not in (None, ""):
        if parse_id(student_id, "student_id") != booking.student_id:
            raise Forbidden("Not allowed to review this booking")

    r = Review(
        booking_id=bid,
        tutor_id=booking.tutor_id,
        student_id=booking.student_id,
        rating=stars,
        comment=clean_text(comment),
    )
    db.add(r)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Duplicate("Review already submitted for this booking", http_status=400)
    db.refresh(r)
    logger.info("review %s for booking %s (%d stars)", r.id, bid, stars)
    return _join_users(db, [r])[0]


def list_reviews(
    db: Session,
    tutor_id: Any = None,
    student_id: Any = None,
    booking_id: Any = None,
) -> List[Joined]:
    tid = parse_optional_id(tutor_id, "tutor_id")
    sid = parse_optional_id(student_id, "student_id")
    bid = parse_optional_id(booking_id, "booking_id")

    q = db.query(Review)
    if tid is not None:
        q = q.filter(Review.tutor_id == tid)
    if sid is not None:
        q = q.filter(Review.student_id == sid)
    if bid is not None:
        q = q.filter(Review.booking_id == bid)
    joined = _join_users(db, q.order_by(Review.created_at.desc(), Review.id.desc()).all())

    # a booking lookup only asks "does a review exist", so orphans stay in
    if bid is not None:
        return joined
    return _drop_dangling(joined, "reviews")


def review_stats(db: Session, tutor_id: Any) -> Tuple[float, int]:
    if tutor_id in (None, ""):
        raise InvalidInput("Invalid tutor_id")
    return tutor_rating_stats(db, parse_id(tutor_id, "tutor_id"))
