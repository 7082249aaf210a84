"""
Position writer - deduplicated, batched history appends per vessel.

The feed re-sends each vessel's whole history on every snapshot. Rather
than diffing against stored rows, every sample is offered to the store
with insert-or-ignore on (external_id, timestamp_utc): already-recorded
samples drop out at the database, new ones are appended.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fleetwatch.config import config
from fleetwatch.exceptions import StoreError
from fleetwatch.ingestion.upstream_client import RawPosition, RawVessel
from fleetwatch.models import POSITION_CONFLICT_KEYS, VesselPosition, utc_now
from fleetwatch.store import StoreGateway

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Outcome of writing one vessel's samples."""
    external_id: str
    written: int = 0
    attempted: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def merge_samples(vessel: RawVessel) -> List[RawPosition]:
    """
    Merge the embedded history with the vessel's current position.

    History comes first in feed order; the current position is appended
    only when no history entry has exactly the same timestamp.

    Raises:
        MalformedPayloadError if the embedded history cannot be decoded
    """
    samples = vessel.history()

    current = vessel.current_position()
    if current is not None:
        seen = {sample.timestamp_utc for sample in samples}
        if current.timestamp_utc not in seen:
            samples.append(current)

    return samples


def chunked(items: list, size: int) -> List[list]:
    """Split a list into consecutive chunks of at most size items."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class PositionWriter:
    """
    Writes position samples through the store gateway.

    Batches for one vessel run sequentially; batches for different
    vessels are independent and may run on different threads.
    """

    def __init__(self, gateway: StoreGateway, batch_size: Optional[int] = None):
        self.gateway = gateway
        self.batch_size = batch_size or config.ingestion.position_batch_size

    def _row(self, vessel_id: int, external_id: str, sample: RawPosition, now) -> Dict[str, Any]:
        return {
            'vessel_id': vessel_id,
            'external_id': external_id,
            'latitude': sample.latitude,
            'longitude': sample.longitude,
            'speed_kmh': sample.speed_kmh,
            'speed_knots': sample.speed_knots,
            'course': sample.course,
            'timestamp_utc': sample.timestamp_utc,
            'created_at': now,
        }

    def write_positions(self, vessel_id: int, external_id: str, samples: List[RawPosition]) -> WriteResult:
        """
        Insert samples for one vessel, ignoring ones already stored.

        A failing batch stops this vessel's remaining batches and is
        reported in the result; it never raises.

        Returns:
            WriteResult with the count of rows actually inserted
        """
        result = WriteResult(external_id=external_id, attempted=len(samples))
        if not samples:
            return result

        now = utc_now()
        rows = [self._row(vessel_id, external_id, sample, now) for sample in samples]

        for index, batch in enumerate(chunked(rows, self.batch_size)):
            try:
                outcome = self.gateway.upsert(
                    VesselPosition,
                    batch,
                    conflict_keys=POSITION_CONFLICT_KEYS,
                    ignore_duplicates=True,
                )
            except StoreError as e:
                logger.error(f'Position batch {index} for vessel {external_id} failed: {e}')
                result.error = f'Position batch {external_id}: {e}'
                break
            result.written += outcome.rowcount

        logger.debug(f'Vessel {external_id}: {result.written}/{result.attempted} new positions')
        return result

    def write_vessel(self, vessel_id: int, vessel: RawVessel) -> WriteResult:
        """Merge a snapshot vessel's samples and write them."""
        samples = merge_samples(vessel)
        return self.write_positions(vessel_id, vessel.external_id, samples)
