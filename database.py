"""
Database setup and models for tracked provider jobs.
"""
import os
import uuid
from datetime import datetime
from enum import Enum
from functools import lru_cache

from sqlalchemy import Column, DateTime, Integer, LargeBinary, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import get_settings

Base = declarative_base()


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
IN_FLIGHT_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})


def is_terminal(status) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


class JobKind(str, Enum):
    GENERATION = "generation"
    UPSCALE = "upscale"
    TRAINING = "training"
    VIDEO = "video"


class StorageMode(str, Enum):
    DURABLE = "durable"
    TEMPORARY_FALLBACK = "temporary-fallback"
    PROVIDER = "provider"  # provider-hosted permanent output (trained weights)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(20), nullable=False, default=JobKind.GENERATION.value)
    status = Column(String(20), nullable=False, default=JobStatus.QUEUED.value, index=True)

    external_job_id = Column(String(128), index=True)
    model_ref = Column(Text)
    input_params = Column(Text)  # JSON object sent to the provider

    output_urls = Column(Text)  # JSON array of permanent (or fallback) URLs
    thumbnail_urls = Column(Text)  # JSON array, parallel to output_urls
    storage_keys = Column(Text)  # JSON array of object store keys
    storage_mode = Column(String(24))
    error_message = Column(Text)
    progress = Column(Integer, default=0, nullable=False)
    source = Column(String(16))  # convergence path that wrote the terminal state
    expires_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    processing_time_ms = Column(Integer)


class StoredArtifact(Base):
    """Durably stored output bytes, served at /api/artifacts/{key}."""
    __tablename__ = "stored_artifacts"

    key = Column(String(512), primary_key=True)
    content_type = Column(String(64), nullable=False, default="image/png")
    data = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


def get_database_url() -> str:
    settings = get_settings()
    db_url = settings.database_url or os.environ.get("DATABASE_URL", "").strip()
    if not db_url:
        db_url = os.environ.get("POSTGRES_URL", "").strip()
    if not db_url:
        raise ValueError(
            "DATABASE_URL environment variable is not set. "
            "Set DATABASE_URL in your .env file or environment."
        )
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    return db_url


def build_engine(db_url: str):
    if db_url.startswith("sqlite"):
        # Reconciliation runs DB work in worker threads
        return create_engine(db_url, connect_args={"check_same_thread": False})
    return create_engine(
        db_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args={"connect_timeout": 10},
    )


@lru_cache
def get_engine():
    return build_engine(get_database_url())


@lru_cache
def get_session_factory() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def init_db(engine=None):
    # Creates jobs, stored_artifacts
    Base.metadata.create_all(bind=engine or get_engine())
