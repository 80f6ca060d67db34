import logging
from typing import List, Optional

from fastapi import FastAPI, Depends, Path, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import Base, engine, get_db
from .errors import DomainError
from .schemas import (
    BookingComplete,
    BookingCreate,
    BookingOut,
    MessageOut,
    ReviewCreate,
    ReviewOut,
    StatsOut,
    StatusUpdate,
    TutorApply,
    TutorApplyOut,
    TutorListingOut,
    TutorProfileOut,
    UserCreate,
    UserOut,
    booking_out,
    listing_out,
    profile_out,
    review_out,
)
from . import services
from .utils import MAX_ID, setup_logging

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="TutorHub")
Base.metadata.create_all(bind=engine)


# -------------------------------
# Error rendering
# -------------------------------

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = f"Invalid {field}" if field else "Invalid request"
    return JSONResponse(status_code=400, content={"code": "invalid_input", "message": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"code": "internal_error", "message": "Server error"})


# -------------------------------
# Service status
# -------------------------------

@app.get("/", response_class=PlainTextResponse)
def home():
    return "Welcome to the TutorHub API. The server is running."


@app.get("/debug/db")
def debug_db(db: Session = Depends(get_db)):
    bind = db.get_bind()
    try:
        ok = db.execute(text("SELECT 1")).scalar() == 1
    except SQLAlchemyError as e:
        logger.warning("database health check failed: %s", e)
        ok = False
    return {"dialect": bind.dialect.name, "database": bind.url.database, "status": "ok" if ok else "down"}


# -------------------------------
# Users
# -------------------------------

@app.get("/users", response_model=List[UserOut])
def list_users(email: Optional[str] = None, db: Session = Depends(get_db)):
    return services.list_users(db, email=email)


@app.get("/users/{user_id}", response_model=UserOut)
def get_user(user_id: int = Path(ge=1, le=MAX_ID), db: Session = Depends(get_db)):
    return services.get_user(db, user_id)


@app.post("/users", response_model=UserOut, status_code=201)
def create_user(body: UserCreate, db: Session = Depends(get_db)):
    return services.create_user(db, body.name, body.email, body.role)


# -------------------------------
# Tutors
# -------------------------------

@app.get("/tutors", response_model=List[TutorListingOut])
def list_tutors(module_code: Optional[str] = None, year: Optional[str] = None, db: Session = Depends(get_db)):
    return [listing_out(t) for t in services.list_tutors(db, module_code=module_code, year=year)]


# must be declared before /tutors/{profile_id}
@app.get("/tutors/by-user/{user_id}", response_model=TutorProfileOut)
def get_tutor_by_user(user_id: int = Path(ge=1, le=MAX_ID), db: Session = Depends(get_db)):
    return profile_out(services.get_tutor_by_user(db, user_id))


@app.get("/tutors/{profile_id}", response_model=TutorProfileOut)
def get_tutor(profile_id: int = Path(ge=1, le=MAX_ID), db: Session = Depends(get_db)):
    return profile_out(services.get_tutor(db, profile_id))


@app.post("/tutors", response_model=TutorApplyOut, status_code=201)
def apply_tutor(body: TutorApply, db: Session = Depends(get_db)):
    joined, approved = services.apply_tutor(
        db,
        user_id=body.user_id,
        year=body.year,
        gpa=body.gpa,
        module_codes=body.module_codes,
        bio=body.bio,
        availability=body.availability,
    )
    message = "Tutor approved automatically" if approved else "Tutor application submitted for review"
    return TutorApplyOut(message=message, tutor_profile=profile_out(joined), user=UserOut.model_validate(joined.tutor))


@app.patch("/tutors/{profile_id}/status", response_model=TutorProfileOut)
def moderate_tutor(body: StatusUpdate, profile_id: int = Path(ge=1, le=MAX_ID), db: Session = Depends(get_db)):
    return profile_out(services.moderate_tutor(db, profile_id, body.status))


# -------------------------------
# Bookings
# -------------------------------

@app.get("/bookings", response_model=List[BookingOut])
def list_bookings(student_id: Optional[str] = None, tutor_id: Optional[str] = None, db: Session = Depends(get_db)):
    return [booking_out(b) for b in services.list_bookings(db, student_id=student_id, tutor_id=tutor_id)]


@app.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: int = Path(ge=1, le=MAX_ID), db: Session = Depends(get_db)):
    return booking_out(services.get_booking(db, booking_id))


@app.post("/bookings", response_model=BookingOut, status_code=201)
def create_booking(body: BookingCreate, db: Session = Depends(get_db)):
    return booking_out(services.create_booking(
        db,
        student_id=body.student_id,
        tutor_id=body.tutor_id,
        session_date=body.session_date,
        module_code=body.module_code,
        remarks=body.remarks,
    ))


@app.patch("/bookings/{booking_id}/status", response_model=BookingOut)
def transition_booking(body: StatusUpdate, booking_id: int = Path(ge=1, le=MAX_ID), db: Session = Depends(get_db)):
    return booking_out(services.transition_booking(db, booking_id, body.status))


@app.patch("/bookings/{booking_id}/complete", response_model=BookingOut)
def complete_booking(body: BookingComplete, booking_id: int = Path(ge=1, le=MAX_ID), db: Session = Depends(get_db)):
    return booking_out(services.complete_booking(db, booking_id, body.role))


@app.delete("/bookings/{booking_id}", response_model=MessageOut)
def cancel_booking(booking_id: int = Path(ge=1, le=MAX_ID), db: Session = Depends(get_db)):
    services.cancel_booking(db, booking_id)
    return MessageOut(message="Booking cancelled")


# -------------------------------
# Reviews
# -------------------------------

@app.get("/reviews", response_model=List[ReviewOut])
def list_reviews(
    tutor_id: Optional[str] = None,
    student_id: Optional[str] = None,
    booking_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return [review_out(r) for r in services.list_reviews(db, tutor_id=tutor_id, student_id=student_id, booking_id=booking_id)]


@app.get("/reviews/stats", response_model=StatsOut)
def review_stats(tutor_id: Optional[str] = None, db: Session = Depends(get_db)):
    avg, count = services.review_stats(db, tutor_id)
    return StatsOut(avg_rating=avg, review_count=count)


@app.post("/reviews", response_model=ReviewOut, status_code=201)
def create_review(body: ReviewCreate, db: Session = Depends(get_db)):
    return review_out(services.create_review(
        db,
        booking_id=body.booking_id,
        rating=body.rating,
        comment=body.comment,
        student_id=body.student_id,
    ))
