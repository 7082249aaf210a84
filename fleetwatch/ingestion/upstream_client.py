"""
Upstream vessel feed client.

Handles communication with the tracker feed REST API, including:
- Bearer token authentication
- A liveness probe before every full pull
- Retry with exponential backoff for transient failures
- Strict parsing of the loosely-typed payload into fixed types

Feed envelope:
    {"data": [RawVessel, ...]}

Each vessel record carries its current position as top-level fields and
its position history as a JSON-encoded *string* in "positions":
    "positions": "[{\"latitude\": 35.1, \"longitude\": 14.2,
                    \"timestamp_utc\": \"2025-09-01T10:00:00Z\", ...}]"
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from fleetwatch.config import UpstreamConfig, config
from fleetwatch.exceptions import (
    ConfigError,
    EmptySnapshotError,
    MalformedPayloadError,
    TransientUpstreamError,
)

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Field coercion - the feed sends numbers as strings and omits freely
# -------------------------------------------------------------------------

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an upstream timestamp into a naive UTC datetime.

    Accepts ISO-8601 strings (with 'Z', an offset, or none - assumed UTC)
    and Unix epoch seconds. Returns None for anything else.
    """
    if value is None or value == '':
        return None

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str):
        return None

    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        if parsed.tzinfo is not None:
            # Offsets near datetime.min/max overflow on conversion
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    except (ValueError, OverflowError):
        return None
    return parsed


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == '' or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _valid_coordinates(latitude: Optional[float], longitude: Optional[float]) -> bool:
    return (
        latitude is not None and longitude is not None
        and -90 <= latitude <= 90 and -180 <= longitude <= 180
    )


@dataclass
class RawPosition:
    """
    One validated position observation from the feed.

    Instances only exist for observations with a timestamp and valid
    coordinates; everything else is optional.
    """
    latitude: float
    longitude: float
    timestamp_utc: datetime
    speed_kmh: Optional[float] = None
    speed_knots: Optional[float] = None
    course: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional['RawPosition']:
        """Parse a position object, or None if it is unusable."""
        if not isinstance(data, dict):
            return None

        latitude = _to_float(data.get('latitude'))
        longitude = _to_float(data.get('longitude'))
        timestamp = parse_timestamp(data.get('timestamp_utc'))

        if timestamp is None or not _valid_coordinates(latitude, longitude):
            return None

        return cls(
            latitude=latitude,
            longitude=longitude,
            timestamp_utc=timestamp,
            speed_kmh=_to_float(data.get('speed_kmh')),
            speed_knots=_to_float(data.get('speed_knots')),
            course=_to_float(data.get('course')),
        )


@dataclass
class RawVessel:
    """
    Parsed vessel record from the feed.

    Normalizes the loosely-typed record into fixed fields. The embedded
    history is kept as the raw string and decoded on demand by history(),
    so a broken history fails only this vessel's position write.
    """
    external_id: str
    name: str
    mmsi: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    speed_kmh: Optional[float] = None
    speed_knots: Optional[float] = None
    course: Optional[float] = None
    timestamp_utc: Optional[datetime] = None
    origin: Optional[str] = None
    vessel_type: Optional[str] = None
    image_url: Optional[str] = None
    vessel_status: Optional[str] = None
    marinetraffic_shipid: Optional[str] = None
    start_date: Optional[datetime] = None
    positions_json: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional['RawVessel']:
        """
        Parse a feed record into a RawVessel.

        Returns None if the record is not an object or lacks an id or name.
        """
        if not isinstance(data, dict):
            return None

        external_id = _to_str(data.get('id'))
        name = _to_str(data.get('name'))
        if not external_id or not name:
            return None

        latitude = _to_float(data.get('latitude'))
        longitude = _to_float(data.get('longitude'))
        if not _valid_coordinates(latitude, longitude):
            latitude = longitude = None

        positions = data.get('positions')
        if positions is not None and not isinstance(positions, str):
            # Some feed revisions inline the array instead of a string
            positions = json.dumps(positions)

        return cls(
            external_id=external_id,
            name=name,
            mmsi=_to_str(data.get('mmsi')),
            latitude=latitude,
            longitude=longitude,
            speed_kmh=_to_float(data.get('speed_kmh')),
            speed_knots=_to_float(data.get('speed_knots')),
            course=_to_float(data.get('course')),
            timestamp_utc=parse_timestamp(data.get('timestamp_utc') or data.get('timestamp')),
            origin=_to_str(data.get('origin')),
            vessel_type=_to_str(data.get('type')),
            image_url=_to_str(data.get('image')),
            vessel_status=_to_str(data.get('vessel_status')),
            marinetraffic_shipid=_to_str(data.get('marinetraffic_shipid')),
            start_date=parse_timestamp(data.get('start_date')),
            positions_json=positions or None,
        )

    def has_position(self) -> bool:
        """Check if the current position is complete enough to store."""
        return self.latitude is not None and self.longitude is not None and self.timestamp_utc is not None

    def current_position(self) -> Optional[RawPosition]:
        """The top-level current position as a RawPosition, if complete."""
        if not self.has_position():
            return None
        return RawPosition(
            latitude=self.latitude,
            longitude=self.longitude,
            timestamp_utc=self.timestamp_utc,
            speed_kmh=self.speed_kmh,
            speed_knots=self.speed_knots,
            course=self.course,
        )

    def history(self) -> List[RawPosition]:
        """
        Decode the embedded position history.

        Raises:
            MalformedPayloadError if the field is not a JSON array.
            Individual unusable entries are skipped.
        """
        if not self.positions_json:
            return []

        try:
            decoded = json.loads(self.positions_json)
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(f'Vessel {self.external_id}: positions is not valid JSON ({e})')

        if not isinstance(decoded, list):
            raise MalformedPayloadError(f'Vessel {self.external_id}: positions is not a list')

        history = []
        skipped = 0
        for item in decoded:
            position = RawPosition.from_dict(item)
            if position:
                history.append(position)
            else:
                skipped += 1

        if skipped:
            logger.debug(f'Vessel {self.external_id}: skipped {skipped} unusable history entries')
        return history


@dataclass
class Snapshot:
    """The full fleet state pulled from the feed in one fetch."""
    vessels: List[RawVessel]
    fetched_at: datetime
    skipped_records: int = 0

    @property
    def external_ids(self) -> List[str]:
        return [v.external_id for v in self.vessels]

    def __len__(self) -> int:
        return len(self.vessels)


def parse_envelope(payload: Any) -> Snapshot:
    """
    Validate the feed envelope and parse every vessel record.

    Raises:
        MalformedPayloadError if the envelope has no 'data' list
        EmptySnapshotError if no record survives validation
    """
    if not isinstance(payload, dict) or not isinstance(payload.get('data'), list):
        raise MalformedPayloadError("Feed response has no 'data' list")

    records = payload['data']
    vessels: Dict[str, RawVessel] = {}
    skipped = 0
    for record in records:
        vessel = RawVessel.from_dict(record)
        if vessel is None:
            skipped += 1
            continue
        # Duplicate ids in one snapshot: last record wins
        vessels[vessel.external_id] = vessel

    if skipped:
        logger.warning(f'Skipped {skipped} invalid vessel records from feed')

    if not vessels:
        raise EmptySnapshotError(f'Feed returned no usable vessels ({len(records)} records)')

    return Snapshot(
        vessels=list(vessels.values()),
        fetched_at=datetime.now(timezone.utc).replace(tzinfo=None),
        skipped_records=skipped,
    )


class UpstreamClient:
    """
    Client for the upstream vessel feed.

    Handles:
    - HEAD liveness probe followed by GET of the full snapshot
    - Bearer token authentication
    - Bounded retries with exponential backoff (base * 2^(attempt-1))
    - Request timeouts on every call
    """

    def __init__(
        self,
        feed_url: str,
        api_token: str,
        probe_url: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not feed_url or not api_token:
            raise ConfigError('Feed URL and API token are required')

        self.feed_url = feed_url
        self.probe_url = probe_url or feed_url
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self._sleep = sleep

        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {api_token}',
            'Content-Type': 'application/json',
        })

        self.last_request_time: float = 0

    @classmethod
    def from_config(cls, upstream: Optional[UpstreamConfig] = None) -> 'UpstreamClient':
        """Create client from application configuration."""
        upstream = upstream or config.upstream
        return cls(
            feed_url=upstream.feed_url,
            api_token=upstream.api_token,
            probe_url=upstream.probe_url,
            timeout=upstream.timeout_seconds,
            max_retries=upstream.max_retries,
            base_delay=upstream.retry_base_delay_seconds,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number `attempt`."""
        return self.base_delay * (2 ** (attempt - 1))

    def probe(self) -> None:
        """
        Check the feed is answering before pulling the full snapshot.

        Raises:
            TransientUpstreamError on network failure or non-2xx status
        """
        self._request('HEAD', self.probe_url)

    def pull(self) -> Snapshot:
        """
        Fetch and parse the full snapshot (no probe, no retry).

        Raises:
            TransientUpstreamError on network failure, non-2xx or non-JSON body
            MalformedPayloadError / EmptySnapshotError from parse_envelope
        """
        response = self._request('GET', self.feed_url)
        try:
            payload = response.json()
        except ValueError as e:
            # Truncated bodies and proxy error pages are worth another attempt
            raise TransientUpstreamError(f'Feed body is not JSON: {e}', url=self.feed_url)

        snapshot = parse_envelope(payload)
        logger.info(f'Received {len(snapshot)} vessels from feed')
        return snapshot

    def fetch_snapshot(self, on_stage: Optional[Callable[[str], None]] = None) -> Snapshot:
        """
        Probe, then pull the full snapshot, retrying transient failures.

        Args:
            on_stage: Optional callback told 'probing' / 'fetching' as each
                      attempt moves through its stages

        Returns:
            Snapshot with at least one vessel

        Raises:
            TransientUpstreamError when every attempt failed
            MalformedPayloadError immediately on a schema violation
            EmptySnapshotError immediately when no vessels came back
        """
        last_error: Optional[TransientUpstreamError] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                if on_stage:
                    on_stage('probing')
                self.probe()
                if on_stage:
                    on_stage('fetching')
                return self.pull()
            except TransientUpstreamError as e:
                last_error = e
                if attempt == self.max_retries:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f'Feed attempt {attempt}/{self.max_retries} failed: {e}; '
                    f'retrying in {delay:.1f}s'
                )
                self._sleep(delay)

        logger.error(f'Feed unavailable after {self.max_retries} attempts: {last_error}')
        raise TransientUpstreamError(
            f'Feed unavailable after {self.max_retries} attempts: {last_error}',
            status_code=last_error.status_code if last_error else None,
            url=self.feed_url,
        )

    def _request(self, method: str, url: str) -> requests.Response:
        """Issue one request, mapping every failure to TransientUpstreamError."""
        logger.debug(f'{method} {url}')
        try:
            response = self.session.request(method, url, timeout=self.timeout)
            self.last_request_time = time.time()
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            logger.error(f'Feed timeout on {method} {url}')
            raise TransientUpstreamError(f'Timeout: {e}', url=url) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 429:
                logger.warning('Feed rate limit exceeded')
            else:
                logger.error(f'Feed error: {status}')
            raise TransientUpstreamError(f'HTTP {status} from {method} {url}', status_code=status, url=url) from e
        except requests.exceptions.RequestException as e:
            logger.error(f'Feed request failed: {e}')
            raise TransientUpstreamError(f'Request failed: {e}', url=url) from e

        # raise_for_status lets redirects through
        if not 200 <= response.status_code < 300:
            raise TransientUpstreamError(
                f'HTTP {response.status_code} from {method} {url}',
                status_code=response.status_code,
                url=url,
            )
        return response
