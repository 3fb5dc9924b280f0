"""Summary model for LLM enrichment of a transcription."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Summary(Base):
    """Structured summary derived from a transcript (optional)."""

    __tablename__ = "summaries"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    transcription_id = Column(
        String,
        ForeignKey("transcriptions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    short_summary = Column(Text, nullable=True)
    long_summary = Column(Text, nullable=True)
    bullet_points = Column(Text, nullable=True)
    keywords = Column(Text, nullable=True)
    sentiment = Column(String, nullable=True)  # positive, negative, neutral
    language = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    transcription = relationship("Transcription", back_populates="summary")
