"""
Timeline frame builder for position replay.

A frame is a snapshot of the whole fleet at one instant: for each vessel,
the last position known at or before that instant. Frames are derived
from position samples and never stored; rebuilding them from the sample
list is always correct.

    samples ──filter_samples(range)──> build_frames() ──> Frame, Frame, ...

One frame is produced per distinct sample timestamp across all vessels,
in ascending order. A vessel with no sample at a frame's timestamp is
carried forward from its previous sample.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from itertools import groupby, islice
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from fleetwatch.models import utc_now


class TimeRange(str, Enum):
    """Named replay windows."""
    LAST_48_HOURS = '48h'
    LAST_2_WEEKS = '2w'
    ALL = 'all'

    @classmethod
    def parse(cls, value: Optional[str], default: 'TimeRange' = None) -> 'TimeRange':
        """
        Parse a query-string value.

        Raises:
            ValueError for an unknown range name
        """
        if not value:
            return default or cls.LAST_48_HOURS
        try:
            return cls(value.lower())
        except ValueError:
            valid = ', '.join(r.value for r in cls)
            raise ValueError(f'Unknown time range {value!r} (expected one of: {valid})') from None

    def cutoff(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest timestamp inside the window, or None for no bound."""
        now = now or utc_now()
        if self is TimeRange.LAST_48_HOURS:
            return now - timedelta(hours=48)
        if self is TimeRange.LAST_2_WEEKS:
            return now - timedelta(weeks=2)
        return None


@dataclass(frozen=True)
class FramePosition:
    """A vessel's position as shown in one frame."""
    external_id: str
    latitude: float
    longitude: float
    timestamp_utc: datetime
    speed_knots: Optional[float] = None
    course: Optional[float] = None

    @classmethod
    def from_sample(cls, sample) -> 'FramePosition':
        return cls(
            external_id=sample.external_id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            timestamp_utc=sample.timestamp_utc,
            speed_knots=sample.speed_knots,
            course=sample.course,
        )

    def to_dict(self) -> dict:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'speed_knots': self.speed_knots,
            'course': self.course,
            'timestamp_utc': self.timestamp_utc.isoformat() + 'Z',
            # True when this position was carried forward from an earlier fix
            'carried': False,
        }


@dataclass(frozen=True)
class Frame:
    """Fleet snapshot at one timestamp."""
    index: int
    timestamp: datetime
    positions: Dict[str, FramePosition]

    def to_dict(self) -> dict:
        positions = {}
        for external_id, position in self.positions.items():
            data = position.to_dict()
            data['carried'] = position.timestamp_utc != self.timestamp
            positions[external_id] = data

        return {
            'index': self.index,
            'timestamp': self.timestamp.isoformat() + 'Z',
            'vessel_count': len(self.positions),
            'positions': positions,
        }


def filter_samples(samples: Iterable, time_range: TimeRange, now: Optional[datetime] = None) -> list:
    """Keep only samples inside the named window."""
    cutoff = time_range.cutoff(now)
    if cutoff is None:
        return list(samples)
    return [sample for sample in samples if sample.timestamp_utc >= cutoff]


def build_frames(samples: Iterable) -> Iterator[Frame]:
    """
    Yield one Frame per distinct timestamp, oldest first.

    samples need external_id, latitude, longitude, timestamp_utc,
    speed_knots and course attributes (VesselPosition rows qualify).
    """
    ordered = sorted(samples, key=lambda sample: sample.timestamp_utc)
    last_known: Dict[str, FramePosition] = {}

    for index, (timestamp, group) in enumerate(groupby(ordered, key=lambda sample: sample.timestamp_utc)):
        for sample in group:
            last_known[sample.external_id] = FramePosition.from_sample(sample)
        yield Frame(index=index, timestamp=timestamp, positions=dict(last_known))


class TimelineFrames:
    """
    Lazy, restartable sequence of frames over a fixed sample list.

    Every iteration rebuilds the frames from scratch.
    """

    def __init__(self, samples: Iterable, time_range: TimeRange = TimeRange.ALL, now: Optional[datetime] = None):
        self.time_range = time_range
        self._samples: List = filter_samples(samples, time_range, now)
        self._timestamps = sorted({sample.timestamp_utc for sample in self._samples})

    def __iter__(self) -> Iterator[Frame]:
        return build_frames(self._samples)

    def __len__(self) -> int:
        return len(self._timestamps)

    @property
    def time_span(self) -> Optional[Tuple[datetime, datetime]]:
        """First and last frame timestamps, or None when empty."""
        if not self._timestamps:
            return None
        return self._timestamps[0], self._timestamps[-1]

    @property
    def vessel_ids(self) -> List[str]:
        return sorted({sample.external_id for sample in self._samples})

    def page(self, offset: int = 0, limit: Optional[int] = None) -> List[Frame]:
        """Frames [offset, offset + limit) without materializing the rest."""
        stop = offset + limit if limit is not None else None
        return list(islice(iter(self), offset, stop))
