from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, Float, Boolean, DateTime, JSON
from .db import Base

# Roles / statuses stored as plain strings
STUDENT = "student"
TUTOR = "tutor"
ROLES = (STUDENT, TUTOR)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
PROFILE_STATUSES = (PENDING, APPROVED, REJECTED)

ACCEPTED = "accepted"
COMPLETED = "completed"
BOOKING_STATUSES = (PENDING, ACCEPTED, REJECTED, COMPLETED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)  # stored lowercase/trimmed
    role = Column(String, nullable=False, default=STUDENT)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# User references below are weak links: plain ids, no foreign keys, so a deleted
# user leaves dangling references that the service layer has to detect.

class TutorProfile(Base):
    __tablename__ = "tutor_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, index=True, nullable=False)  # one profile per user
    year = Column(Integer, nullable=False)          # 1..3
    gpa = Column(Float, nullable=False)             # 0.0..4.0
    module_codes = Column(JSON, nullable=False)     # ["CS101", ...], never empty
    bio = Column(Text, nullable=False, default="")
    availability = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default=PENDING)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, index=True, nullable=False)
    tutor_id = Column(Integer, index=True, nullable=False)
    module_code = Column(String, nullable=False)
    session_date = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=PENDING)
    remarks = Column(Text, nullable=False, default="")
    completed_by_student = Column(Boolean, nullable=False, default=False)
    completed_by_tutor = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, unique=True, index=True, nullable=False)  # one review per booking
    # copied from the booking when the review is written
    tutor_id = Column(Integer, index=True, nullable=False)
    student_id = Column(Integer, index=True, nullable=False)
    rating = Column(Integer, nullable=False)  # 1..5
    comment = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=utcnow, nullable=False)
