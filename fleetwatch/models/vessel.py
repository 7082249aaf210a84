"""
Vessel model - one mutable identity row per tracked vessel.

This is the "hot" table that the ingestion job upserts on every run and
that the map, status panel and timeline read constantly.

Design notes:
- One row per upstream external_id (upsert pattern)
- Vessels are never deleted; retirement is a status flag so that the
  position history keeps its foreign key target
- Last-known position is denormalized here for cheap map queries
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, Float, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from fleetwatch.models.base import Base, utc_now


class VesselStatus(str, Enum):
    """
    Lifecycle status maintained by reconciliation.

    - ACTIVE: present in the latest upstream snapshot
    - RETIRED: was active, then missing from a snapshot
    """
    ACTIVE = 'active'
    RETIRED = 'retired'


class Vessel(Base):
    """
    Current state of a tracked vessel.

    Updated via upsert on each ingestion run, keyed by external_id.
    Mutable fields follow last-write-wins from the upstream snapshot.
    """

    __tablename__ = 'vessels'

    # Surrogate key referenced by position samples
    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment='Surrogate key'
    )

    external_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment='Identifier assigned by the upstream feed'
    )

    # Identification
    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
        comment='Vessel display name'
    )

    mmsi: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        index=True,
        comment='Maritime Mobile Service Identity'
    )

    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=VesselStatus.ACTIVE.value,
        comment='Lifecycle status: active/retired'
    )

    # Last-known position (WGS84)
    latitude: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment='Latitude in decimal degrees'
    )

    longitude: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment='Longitude in decimal degrees'
    )

    speed_kmh: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment='Speed over ground in km/h'
    )

    speed_knots: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment='Speed over ground in knots'
    )

    course: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment='Course over ground in degrees (0-360)'
    )

    position_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        comment='UTC time of the last-known position'
    )

    # Provenance (free-form, straight from upstream)
    origin: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment='Country or port of origin'
    )

    vessel_type: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment='Vessel type as reported upstream'
    )

    image_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment='Vessel image URL'
    )

    vessel_status: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment='Operational status as reported upstream'
    )

    marinetraffic_shipid: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment='MarineTraffic ship id'
    )

    start_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        comment='Tracking start date reported upstream'
    )

    # Record timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        comment='First seen timestamp'
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        onupdate=utc_now,
        comment='Last ingestion touch'
    )

    __table_args__ = (
        # Reconciliation reads the active set on every run
        Index('ix_vessels_status', 'status'),
    )

    def __repr__(self) -> str:
        return f'<Vessel {self.external_id} {self.name!r} {self.status}>'

    @property
    def is_active(self) -> bool:
        return self.status == VesselStatus.ACTIVE.value

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict for API responses."""
        return {
            'external_id': self.external_id,
            'name': self.name,
            'mmsi': self.mmsi,
            'status': self.status,
            'position': {
                'latitude': self.latitude,
                'longitude': self.longitude,
                'timestamp_utc': _iso(self.position_timestamp),
            },
            'motion': {
                'speed_kmh': self.speed_kmh,
                'speed_knots': self.speed_knots,
                'course': self.course,
            },
            'provenance': {
                'origin': self.origin,
                'type': self.vessel_type,
                'image_url': self.image_url,
                'vessel_status': self.vessel_status,
                'marinetraffic_shipid': self.marinetraffic_shipid,
            },
            'timestamps': {
                'start_date': _iso(self.start_date),
                'created_at': _iso(self.created_at),
                'updated_at': _iso(self.updated_at),
            },
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + 'Z' if value else None
