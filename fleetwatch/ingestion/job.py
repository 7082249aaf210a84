"""
Ingestion job - orchestrates data flow from the feed to the database.

One run walks a fixed sequence of stages:

    IDLE -> PROBING -> FETCHING -> RECONCILING -> WRITING -> SUMMARIZING -> IDLE

1. Probe/Fetch: pull the full snapshot (retries live in the client)
2. Reconcile: diff against active vessels, retire the missing ones
3. Write: upsert each vessel and append its new positions, in small
   parallel groups so one slow vessel doesn't serialize the run
4. Summarize: aggregate counts and a capped error list

Fatal errors (feed exhausted, malformed or empty snapshot, store failure
while reconciling) jump straight to SUMMARIZING with success=False and
leave the store untouched from that point. Failures for a single vessel
are recorded and the run carries on.

Runs never overlap: a second run() while one is active raises
IngestionBusyError, whether it came from the scheduler or a manual
trigger.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from fleetwatch.config import config
from fleetwatch.exceptions import FleetwatchError, IngestionBusyError, StoreError, UpstreamError
from fleetwatch.ingestion.position_writer import PositionWriter, chunked
from fleetwatch.ingestion.reconciler import VESSEL_UPDATE_COLUMNS, reconcile
from fleetwatch.ingestion.upstream_client import RawVessel, UpstreamClient
from fleetwatch.models import Vessel, VesselStatus, utc_now
from fleetwatch.store import StoreGateway

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """Stage of the ingestion state machine."""
    IDLE = 'idle'
    PROBING = 'probing'
    FETCHING = 'fetching'
    RECONCILING = 'reconciling'
    WRITING = 'writing'
    SUMMARIZING = 'summarizing'


@dataclass
class VesselOutcome:
    """Result of processing one snapshot vessel."""
    external_id: str
    positions_written: int = 0
    error: Optional[str] = None


@dataclass
class RunSummary:
    """
    Aggregate result of one ingestion run.

    errors holds at most max_summary_errors messages; error_count counts
    all of them. error is the fatal cause when success is False.
    """
    success: bool
    entities_processed: int = 0
    positions_written: int = 0
    entities_created: int = 0
    entities_retired: int = 0
    entities_reactivated: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0
    timestamp_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict for API responses."""
        return {
            'success': self.success,
            'entities_processed': self.entities_processed,
            'positions_written': self.positions_written,
            'entities_created': self.entities_created,
            'entities_retired': self.entities_retired,
            'entities_reactivated': self.entities_reactivated,
            'error_count': self.error_count,
            'errors': list(self.errors),
            'error': self.error,
            'duration_ms': round(self.duration_ms, 2),
            'timestamp_utc': self.timestamp_utc.isoformat(),
        }


class IngestionJob:
    """
    Manages the ingestion lifecycle.

    Coordinates the upstream client, reconciler and position writer.
    Can run as a background thread on a fixed interval and accepts
    manual triggers in between.
    """

    def __init__(
        self,
        gateway: StoreGateway,
        client: Optional[UpstreamClient] = None,
        writer: Optional[PositionWriter] = None,
        group_size: Optional[int] = None,
        max_summary_errors: Optional[int] = None,
    ):
        """
        Initialize the ingestion job.

        Args:
            gateway: Store gateway used for every read and write
            client: Feed client (created from config if None)
            writer: Position writer (created on the gateway if None)
            group_size: Vessels processed concurrently per group
            max_summary_errors: Error strings kept in a run summary
        """
        self.gateway = gateway
        self.client = client or UpstreamClient.from_config()
        self.writer = writer or PositionWriter(gateway)
        self.group_size = group_size or config.ingestion.group_size
        self.max_summary_errors = max_summary_errors or config.ingestion.max_summary_errors

        # State tracking
        self._state = JobState.IDLE
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._run_count: int = 0
        self._failure_count: int = 0
        self._last_summary: Optional[RunSummary] = None

        # Background scheduling
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def last_summary(self) -> Optional[RunSummary]:
        return self._last_summary

    def _set_state(self, state: JobState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        if previous != state:
            logger.debug(f'Ingestion state {previous.value} -> {state.value}')

    def _on_client_stage(self, stage: str) -> None:
        self._set_state(JobState.PROBING if stage == 'probing' else JobState.FETCHING)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self) -> RunSummary:
        """
        Execute one ingestion run.

        Returns:
            RunSummary (success=False with error set on fatal failure)

        Raises:
            IngestionBusyError if another run is in progress
        """
        if not self._run_lock.acquire(blocking=False):
            raise IngestionBusyError('An ingestion run is already in progress')

        try:
            summary = self._execute()
            self._run_count += 1
            if not summary.success:
                self._failure_count += 1
            self._last_summary = summary
            return summary
        finally:
            self._set_state(JobState.IDLE)
            self._run_lock.release()

    def _execute(self) -> RunSummary:
        started = time.perf_counter()
        summary = RunSummary(success=True)
        errors: List[str] = []

        try:
            # Stage 1: Probe + fetch
            snapshot = self.client.fetch_snapshot(on_stage=self._on_client_stage)

            # Stage 2: Reconcile
            self._set_state(JobState.RECONCILING)
            now = utc_now()
            active_ids = self.gateway.query_column(
                Vessel, 'external_id', {'status': VesselStatus.ACTIVE.value}
            )
            retired_ids = self.gateway.query_column(
                Vessel, 'external_id', {'status': VesselStatus.RETIRED.value}
            )
            plan = reconcile(snapshot, active_ids, retired_ids, now=now)

            if plan.to_retire:
                summary.entities_retired = self.gateway.update(
                    Vessel,
                    {'external_id': plan.to_retire, 'status': VesselStatus.ACTIVE.value},
                    {'status': VesselStatus.RETIRED.value, 'updated_at': now},
                )
                logger.info(f'Retired {summary.entities_retired} vessels: {", ".join(plan.to_retire)}')

            for external_id in plan.reactivated:
                logger.info(f'Vessel {external_id} reappeared in feed, reactivating')
            summary.entities_created = len(plan.created)
            summary.entities_reactivated = len(plan.reactivated)

            # Stage 3: Write vessels and positions
            self._set_state(JobState.WRITING)
            rows = {row['external_id']: row for row in plan.to_upsert}
            outcomes = self._write_all(snapshot.vessels, rows)

        except (UpstreamError, StoreError) as e:
            return self._aborted(summary, started, e)
        except Exception as e:
            logger.exception('Unexpected error during ingestion run')
            return self._aborted(summary, started, e)

        # Stage 4: Summarize
        self._set_state(JobState.SUMMARIZING)
        for outcome in outcomes:
            if outcome.error:
                errors.append(outcome.error)
            else:
                summary.entities_processed += 1
            summary.positions_written += outcome.positions_written

        summary.error_count = len(errors)
        summary.errors = errors[:self.max_summary_errors]
        summary.duration_ms = (time.perf_counter() - started) * 1000

        logger.info(
            f'Processed {summary.entities_processed} vessels with '
            f'{summary.positions_written} new positions'
        )
        if errors:
            logger.warning(f'{len(errors)} vessel errors occurred: {errors[:5]}')

        return summary

    def _aborted(self, summary: RunSummary, started: float, error: Exception) -> RunSummary:
        self._set_state(JobState.SUMMARIZING)
        logger.error(f'Ingestion run aborted: {error}')
        summary.success = False
        summary.error = str(error)
        summary.duration_ms = (time.perf_counter() - started) * 1000
        return summary

    def _write_all(self, vessels: List[RawVessel], rows: Dict[str, dict]) -> List[VesselOutcome]:
        """Process vessels in bounded parallel groups."""
        outcomes: List[VesselOutcome] = []
        with ThreadPoolExecutor(max_workers=self.group_size, thread_name_prefix='ingest') as pool:
            for group in chunked(vessels, self.group_size):
                outcomes.extend(pool.map(
                    lambda vessel: self._process_vessel(vessel, rows[vessel.external_id]),
                    group,
                ))
        return outcomes

    def _process_vessel(self, vessel: RawVessel, row: dict) -> VesselOutcome:
        """Upsert one vessel, then its positions. Never raises."""
        outcome = VesselOutcome(external_id=vessel.external_id)

        try:
            result = self.gateway.upsert(
                Vessel,
                [row],
                conflict_keys=['external_id'],
                update_columns=VESSEL_UPDATE_COLUMNS,
                returning=['id'],
            )
            vessel_id = result.rows[0]['id']

            written = self.writer.write_vessel(vessel_id, vessel)
        except FleetwatchError as e:
            logger.error(f'Error processing vessel {vessel.external_id}: {e}')
            outcome.error = f'Vessel {vessel.external_id}: {e}'
            return outcome
        except Exception as e:
            logger.exception(f'Unexpected error processing vessel {vessel.external_id}')
            outcome.error = f'Vessel {vessel.external_id}: {e}'
            return outcome

        outcome.positions_written = written.written
        outcome.error = written.error
        return outcome

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def run_continuous(self, interval_minutes: Optional[float] = None) -> None:
        """
        Run ingestion on a fixed interval until stop() is called.

        This method blocks - use start_background() for non-blocking.
        A tick that lands on a manual run in progress is skipped.
        """
        interval = (interval_minutes or config.ingestion.interval_minutes) * 60

        logger.info(f'Starting scheduled ingestion (interval={interval:.0f}s)')

        while not self._stop_event.is_set():
            try:
                self.run()
            except IngestionBusyError:
                logger.info('Scheduled ingestion skipped: a run is already in progress')
            except Exception:
                logger.exception('Unexpected ingestion failure')
            self._stop_event.wait(interval)

        logger.info('Scheduled ingestion stopped')

    def start_background(self, interval_minutes: Optional[float] = None) -> None:
        """Start scheduled ingestion in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning('Ingestion already running')
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_continuous,
            args=(interval_minutes,),
            daemon=True,
            name='ingestion-scheduler',
        )
        self._thread.start()
        logger.info('Background ingestion started')

    def stop(self) -> None:
        """Stop scheduled ingestion."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def stats(self) -> dict:
        """Get ingestion statistics."""
        last = self._last_summary
        return {
            'state': self._state.value,
            'run_count': self._run_count,
            'failure_count': self._failure_count,
            'scheduled': bool(self._thread and self._thread.is_alive()),
            'last_run': last.to_dict() if last else None,
        }
