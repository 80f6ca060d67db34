from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict

from .services import Joined, TutorListing

# -------------------------------
# Request bodies
# -------------------------------
# Fields are loose; the service layer validates them.

class UserCreate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class TutorApply(BaseModel):
    user_id: Any = None
    year: Any = None
    gpa: Any = None
    module_codes: Any = None
    bio: Optional[str] = None
    availability: Optional[str] = None


class StatusUpdate(BaseModel):
    status: Optional[str] = None


class BookingCreate(BaseModel):
    student_id: Any = None
    tutor_id: Any = None
    session_date: Optional[datetime] = None
    module_code: Optional[str] = None
    remarks: Optional[str] = None


class BookingComplete(BaseModel):
    role: Optional[str] = None


class ReviewCreate(BaseModel):
    booking_id: Any = None
    rating: Any = None
    comment: Optional[str] = None
    student_id: Any = None


# -------------------------------
# Responses
# -------------------------------

class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserOut(ORMModel):
    id: int
    name: str
    email: str
    role: str


class ReviewUser(ORMModel):
    id: int
    name: str
    email: str


class TutorProfileOut(ORMModel):
    id: int
    user_id: int
    year: int
    gpa: float
    module_codes: List[str]
    bio: str
    availability: str
    status: str
    created_at: datetime
    updated_at: datetime
    tutor: Optional[UserOut] = None


class TutorListingOut(TutorProfileOut):
    avg_rating: float = 0
    review_count: int = 0


class TutorApplyOut(BaseModel):
    message: str
    tutor_profile: TutorProfileOut
    user: UserOut


class BookingOut(ORMModel):
    id: int
    student_id: int
    tutor_id: int
    module_code: str
    session_date: datetime
    status: str
    remarks: str
    completed_by_student: bool
    completed_by_tutor: bool
    created_at: datetime
    updated_at: datetime
    student: Optional[UserOut] = None
    tutor: Optional[UserOut] = None


class ReviewOut(ORMModel):
    id: int
    booking_id: int
    tutor_id: int
    student_id: int
    rating: int
    comment: str
    created_at: datetime
    student: Optional[ReviewUser] = None
    tutor: Optional[ReviewUser] = None


class StatsOut(BaseModel):
    avg_rating: float
    review_count: int


class MessageOut(BaseModel):
    message: str


# -------------------------------
# Joined records -> responses
# -------------------------------

def _user(model, user):
    return model.model_validate(user) if user is not None else None


def profile_out(j: Joined) -> TutorProfileOut:
    out = TutorProfileOut.model_validate(j.record)
    out.tutor = _user(UserOut, j.tutor)
    return out


def listing_out(item: TutorListing) -> TutorListingOut:
    out = TutorListingOut.model_validate(item.joined.record)
    out.tutor = _user(UserOut, item.joined.tutor)
    out.avg_rating = item.avg_rating
    out.review_count = item.review_count
    return out


def booking_out(j: Joined) -> BookingOut:
    out = BookingOut.model_validate(j.record)
    out.student = _user(UserOut, j.student)
    out.tutor = _user(UserOut, j.tutor)
    return out


def review_out(j: Joined) -> ReviewOut:
    out = ReviewOut.model_validate(j.record)
    out.student = _user(ReviewUser, j.student)
    out.tutor = _user(ReviewUser, j.tutor)
    return out
