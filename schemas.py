"""
schemas.py — Pydantic v2 models for Itinerizer.

Two groups:
  - Itinerary / Segment: the persisted record shape. The same model is used for
    API writes, model-proposed changes, and records read back from storage, so
    every write path goes through identical validation (see validation.py).
  - Request bodies for the auth and designer routes.

Wire format is camelCase (startDate, createdBy, endDatetime); Python attributes
are snake_case. Dump with to_document() to get the stored/returned JSON.
"""

import re
import uuid
from datetime import date, datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError


SegmentType   = Literal['FLIGHT', 'HOTEL', 'MEETING', 'ACTIVITY', 'TRANSFER', 'CUSTOM']
SegmentStatus = Literal['TENTATIVE', 'CONFIRMED', 'WAITLISTED', 'CANCELLED', 'COMPLETED']


def _new_id() -> str:
    return str(uuid.uuid4())


def normalise_identity(v: str | None) -> str | None:
    """Owner identities are compared case-insensitively; store them lower-cased."""
    if v is None:
        return None
    s = str(v).strip().lower()
    return s or None


def _collapse(v: str | None) -> str | None:
    """Collapse all whitespace to a single space, strip ends. None if empty."""
    if v is None:
        return None
    s = re.sub(r'\s+', ' ', str(v)).strip()
    return s or None


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_document(self) -> dict:
        return self.model_dump(mode='json', by_alias=True)


# ── Itinerary record ──────────────────────────────────────────────────────────

class Segment(_WireModel):
    id:             str           = Field(default_factory=_new_id, min_length=1)
    type:           SegmentType
    status:         SegmentStatus = 'TENTATIVE'
    start_datetime: datetime
    end_datetime:   datetime
    title:          str | None    = Field(default=None, max_length=255)
    location:       str | None    = Field(default=None, max_length=255)
    notes:          str | None    = None

    @field_validator('start_datetime', 'end_datetime')
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # Naive timestamps are treated as UTC so start/end are always comparable
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator('end_datetime')
    @classmethod
    def end_after_start(cls, v: datetime, info: ValidationInfo) -> datetime:
        start = info.data.get('start_datetime')
        if start is not None and v <= start:
            raise PydanticCustomError(
                'segment_time_order',
                'endDatetime must be strictly after startDatetime',
            )
        return v


class Itinerary(_WireModel):
    id:           str           = Field(default_factory=_new_id)
    title:        str           = Field(..., min_length=1, max_length=255)
    description:  str           = ''
    start_date:   date
    end_date:     date
    draft:        bool          = False
    created_by:   str | None    = None
    destinations: list[str]     = Field(default_factory=list)
    tags:         list[str]     = Field(default_factory=list)
    segments:     list[Segment] = Field(default_factory=list)

    @field_validator('id')
    @classmethod
    def must_be_uuid(cls, v: str) -> str:
        try:
            return str(uuid.UUID(str(v)))
        except ValueError:
            raise PydanticCustomError('uuid', 'id must be a UUID')

    @field_validator('title', mode='before')
    @classmethod
    def collapse_title(cls, v):
        return _collapse(v) if isinstance(v, str) else v

    @field_validator('created_by', mode='before')
    @classmethod
    def normalise_owner(cls, v):
        return normalise_identity(v) if isinstance(v, str) else v

    @field_validator('end_date')
    @classmethod
    def end_not_before_start(cls, v: date, info: ValidationInfo) -> date:
        start = info.data.get('start_date')
        if start is not None and v < start:
            raise PydanticCustomError('date_order', 'endDate must be on or after startDate')
        return v

    def sorted_segments(self) -> list[Segment]:
        """Time-ordered view; the stored sequence is left untouched."""
        return sorted(self.segments, key=lambda s: s.start_datetime)


# ── Auth ──────────────────────────────────────────────────────────────────────

class LoginRequest(BaseModel):
    email:    str        = Field(..., min_length=3, max_length=255)
    password: str | None = None

    @field_validator('email', mode='before')
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return str(v).strip().lower()


# ── Trip designer ─────────────────────────────────────────────────────────────

class StartSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    itinerary_id: str = Field(..., alias='itineraryId', min_length=1, max_length=64)


class MessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=10_000)

    @field_validator('message', mode='before')
    @classmethod
    def strip_message(cls, v):
        return str(v).strip() if v is not None else v
