"""Transcription model: the settled output of a successful job."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Transcription(Base):
    """Transcript text plus the credits charged for it."""

    __tablename__ = "transcriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    audio_file_id = Column(
        String,
        ForeignKey("audio_files.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    text = Column(Text, nullable=False)
    language = Column(String, nullable=True)
    cost_credits = Column(Numeric(12, 2), nullable=False)
    is_public = Column(Boolean, nullable=False, default=False)
    share_token = Column(String, nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="transcriptions")
    audio_file = relationship("AudioFile", back_populates="transcription")
    summary = relationship(
        "Summary",
        back_populates="transcription",
        uselist=False,
        cascade="all, delete-orphan",
    )
