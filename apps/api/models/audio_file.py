"""AudioFile model: one ingested media item and its processing state."""

from sqlalchemy import Column, String, DateTime, Float, ForeignKey, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"


class AudioFile(Base):
    """Uploaded audio and its transcription job state."""

    __tablename__ = "audio_files"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    location_ref = Column(String, nullable=False)
    original_filename = Column(String, nullable=False)
    content_type = Column(String, nullable=True)
    size_bytes = Column(Integer, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    source = Column(String, nullable=False, default="direct")  # direct, chunked, remote
    source_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="audio_files")
    transcription = relationship(
        "Transcription",
        back_populates="audio_file",
        uselist=False,
        cascade="all, delete-orphan",
    )
