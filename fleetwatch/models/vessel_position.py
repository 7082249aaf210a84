"""
VesselPosition model - append-only position history.

Every observation of a vessel ends up here exactly once. The upstream
feed re-sends its whole history on every snapshot, so the table relies
on a (external_id, timestamp_utc) unique constraint and insert-or-ignore
writes instead of checking for existing rows first.

Schema optimized for:
- Batch inserts with conflict suppression
- Time-range queries per vessel and across the fleet (timeline replay)
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Float, Integer, DateTime, Index, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fleetwatch.models.base import Base, utc_now

POSITION_CONFLICT_KEYS = ('external_id', 'timestamp_utc')


class VesselPosition(Base):
    """
    One timestamped location and motion observation for a vessel.

    external_id is denormalized from the vessel row: it is half of the
    deduplication key and lets timeline queries skip the join.
    """

    __tablename__ = 'vessel_positions'

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment='Surrogate key'
    )

    vessel_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey('vessels.id'),
        nullable=False,
        index=True,
        comment='Owning vessel'
    )

    external_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment='Upstream vessel identifier'
    )

    # Position (WGS84)
    latitude: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment='Latitude in decimal degrees'
    )

    longitude: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment='Longitude in decimal degrees'
    )

    # Motion - upstream reports speed in both units
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
        comment='Course over ground in degrees'
    )

    # Upstream-supplied observation time, half of the conflict key
    timestamp_utc: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        comment='UTC time of observation'
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        comment='Record creation time'
    )

    __table_args__ = (
        UniqueConstraint(*POSITION_CONFLICT_KEYS, name='uq_vessel_positions_external_time'),
        # Fleet-wide timeline queries scan by time
        Index('ix_vessel_positions_time', 'timestamp_utc'),
    )

    def __repr__(self) -> str:
        return f'<VesselPosition {self.external_id} @ {self.timestamp_utc}>'

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict for API responses."""
        return {
            'external_id': self.external_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'speed_kmh': self.speed_kmh,
            'speed_knots': self.speed_knots,
            'course': self.course,
            'timestamp_utc': self.timestamp_utc.isoformat() + 'Z',
        }
