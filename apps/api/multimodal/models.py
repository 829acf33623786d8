from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

class MergedItem(BaseModel):
    name: str
    description: str = ""
    timestamp: Optional[float] = None      # seconds into the source video
    estimated_value: Optional[float] = None  # USD
    tag_names: List[str] = Field(default_factory=list)
    room_name: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("item name must not be blank")
        return value

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value):
        return value or ""

    @field_validator("tag_names", mode="before")
    @classmethod
    def _none_tags(cls, value):
        return value or []

class MergeOutput(BaseModel):
    items: List[MergedItem]

class TranscriptParagraph(BaseModel):
    start: float
    end: float
    text: str

class TranscriptResult(BaseModel):
    text: str
    paragraphs: List[TranscriptParagraph] = Field(default_factory=list)
    provider: str = "deepgram"
