"""
SQLAlchemy ORM models for Itinerizer.

One model:
  ItineraryRecord — one durable row per itinerary, addressed by its id, holding
                    the full validated JSON document.

The owner column duplicates document['createdBy'] so listings can be filtered
in SQL even when the document itself no longer parses; that is what lets a
corrupt record be attributed to its owner and counted instead of vanishing.

Default database: SQLite (itinerizer.db).
Production: set DATABASE_URL to a PostgreSQL connection string.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import declarative_base


def _utcnow():
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


Base = declarative_base()


class ItineraryRecord(Base):
    __tablename__ = 'itineraries'

    id         = Column(String(36),  primary_key=True)
    created_by = Column(String(255), nullable=False, index=True)   # lower-cased email
    title      = Column(String(255), nullable=True)
    document   = Column(Text,        nullable=False)               # JSON, camelCase keys
    created_at = Column(DateTime,    nullable=False, default=_utcnow)
    updated_at = Column(DateTime,    nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f'<ItineraryRecord {self.id} owner={self.created_by!r}>'
