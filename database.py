"""Database models and connection for job persistence."""
from sqlalchemy import create_engine, Column, String, DateTime, Integer, Float, ForeignKey
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from datetime import datetime
import os

Base = declarative_base()

# Database file path
DB_PATH = os.getenv("SPLITTER_DB_PATH", "jobs.db")
DATABASE_URL = f"sqlite:///{DB_PATH}"

# Create engine and session
engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Job(Base):
    """Job model for tracking split jobs.

    Note: API keys are NEVER stored in the database for security.
    They are passed directly to the worker and only kept in memory.
    """
    __tablename__ = "jobs"

    id = Column(String, primary_key=True, index=True)
    # queued, decoding, transcribing, encoding, completed, failed
    status = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    audio_filename = Column(String, nullable=False)
    original_filename = Column(String, nullable=True)
    mime_type = Column(String, nullable=True)
    error_message = Column(String, nullable=True)

    segments = relationship(
        "Segment",
        back_populates="job",
        order_by="Segment.index",
        cascade="all, delete-orphan",
    )


class Segment(Base):
    """One sentence clip of a completed job.

    The WAV file is stored next to a .npy file holding the float samples,
    which MP3 conversion starts from.
    """
    __tablename__ = "segments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False, index=True)
    index = Column(Integer, nullable=False)  # 0-based position in the job
    text = Column(String, nullable=False)
    start = Column(Float, nullable=False)
    end = Column(Float, nullable=False)
    filename = Column(String, nullable=False)
    sample_rate = Column(Integer, nullable=False)

    job = relationship("Job", back_populates="segments")


def init_db(bind=None):
    """Initialize the database, creating tables if they don't exist."""
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """Get a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
