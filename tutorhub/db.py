import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# SQLite file in the project folder unless a real database URL is configured
DATABASE_URL = os.getenv("TUTORHUB_DATABASE_URL", "sqlite:///./tutorhub.db")

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# Create the engine (the connection to the database)
engine = create_engine(DATABASE_URL, connect_args=connect_args)

# Each request to the database will use this SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class that our models (tables) will inherit from
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
