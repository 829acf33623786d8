"""Inventory asset model (source videos, photos and derived items)."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    JSON,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


MEDIA_TYPES = ("video", "image", "item")
PROCESSING_STATUSES = ("preparing", "ready", "error")
TRANSCRIPT_STATUSES = ("pending", "processing", "completed", "error")


asset_tags = Table(
    "asset_tags",
    Base.metadata,
    Column("asset_id", String, ForeignKey("assets.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Asset(Base):
    """
    One media item owned by a user.

    `mux_asset_id` is the join key used by every pipeline stage. Until the
    provider confirms the real asset id it holds the direct-upload id.
    """

    __tablename__ = "assets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False, default="Untitled")
    description = Column(Text, nullable=True)
    media_type = Column(String, nullable=False, default="video")  # video, image, item
    media_url = Column(String, nullable=False, default="")
    is_source_video = Column(Boolean, nullable=False, default=False)
    source_video_id = Column(String, ForeignKey("assets.id"), nullable=True, index=True)
    item_timestamp = Column(Float, nullable=True)
    estimated_value = Column(Float, nullable=True)
    is_processed = Column(Boolean, nullable=False, default=False)
    room_id = Column(String, ForeignKey("rooms.id"), nullable=True, index=True)
    client_reference_id = Column(String, nullable=True)

    # Mux
    mux_asset_id = Column(String, nullable=True, index=True)
    mux_upload_id = Column(String, nullable=True, index=True)
    mux_correlation_id = Column(String, nullable=True, index=True)
    mux_processing_status = Column(String, nullable=True)  # preparing, ready, error
    mux_playback_id = Column(String, nullable=True)
    mux_duration = Column(Float, nullable=True)
    mux_aspect_ratio = Column(String, nullable=True)
    mux_max_resolution = Column(String, nullable=True)
    mux_audio_url = Column(String, nullable=True)

    # Transcription
    transcript = Column(JSON, nullable=True)
    transcript_text = Column(Text, nullable=True)
    transcript_processing_status = Column(String, nullable=True)  # pending, processing, completed, error
    transcript_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="assets")
    room = relationship("Room", back_populates="assets")
    tags = relationship("Tag", secondary=asset_tags, back_populates="assets", lazy="selectin")
