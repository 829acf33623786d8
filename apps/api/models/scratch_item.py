"""Provisional items detected by frame analysis while recording."""

from sqlalchemy import Column, DateTime, Float, ForeignKey, String, Text
from sqlalchemy.sql import func
import uuid

from database import Base


class ScratchItem(Base):
    """Candidate inventory entry awaiting the transcript merge."""

    __tablename__ = "scratch_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    mux_asset_id = Column(String, nullable=True, index=True)
    correlation_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    video_timestamp = Column(Float, nullable=True)
    estimated_value = Column(Float, nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
