"""
Sync coordinator: fetch, transform, deliver, commit.

One cycle reads a batch above the watermark, pushes every record to the
target in position order and, only when every record is delivered or
skipped under the failure policy, commits the batch's last position.
"""

import logging
import random
import threading
import uuid
from typing import Any, Callable, Dict, Optional

from ..connectors.base import TargetConnector
from ..exceptions import BillSyncError, DataIntegrityError, PersistenceError, SourceUnavailable, TransformError
from ..models.config import FailurePolicy, SyncConfig, SyncOptions
from ..models.records import DeliveryStatus, position_to_text
from ..models.sync import CoordinatorState, CycleResult, CycleStatus, RecordResult, RecordStatus
from ..services.watermark import WatermarkCell
from .fetcher import RecordFetcher
from .refresh import TagRefresher
from .transforms import PostingTransformer

logger = logging.getLogger(__name__)


def compute_backoff(attempt: int, options: SyncOptions, rand: Callable[[], float] = random.random) -> float:
    """
    Delay before the next cycle after `attempt` consecutive failures.

    The capped exponential delay is jittered down by up to `backoff_jitter`
    of itself, so the result lies in [delay * (1 - jitter), delay].
    """
    exponent = max(attempt - 1, 0)
    delay = min(options.backoff_max_seconds, options.backoff_base_seconds * options.backoff_multiplier ** exponent)
    return delay - delay * options.backoff_jitter * rand()


class SyncCoordinator:
    """
    Orchestrates sync cycles for one SyncConfig.
    """

    def __init__(
        self,
        config: SyncConfig,
        fetcher: RecordFetcher,
        transformer: PostingTransformer,
        target: TargetConnector,
        watermark: WatermarkCell,
        refresher: Optional[TagRefresher] = None,
        rand: Callable[[], float] = random.random,
    ):
        """
        Initialize the coordinator.

        Args:
            config: Sync configuration
            fetcher: Reads batches above the watermark
            transformer: Builds postings from records
            target: Delivers postings
            watermark: Single-owner watermark cell
            refresher: Optional tag refresh loop run between cycles
            rand: Source of jitter in [0, 1)
        """
        self.config = config
        self.options = config.options
        self.fetcher = fetcher
        self.transformer = transformer
        self.target = target
        self.watermark = watermark
        self.refresher = refresher
        self._rand = rand

        self._state = CoordinatorState.IDLE
        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()

        self.failed_attempts = 0
        self.next_delay: float = 0.0
        self.last_result: Optional[CycleResult] = None
        self.fatal_error: Optional[BaseException] = None

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def halted(self) -> bool:
        return self._state == CoordinatorState.HALTED

    # Control

    def trigger(self) -> bool:
        """
        Ask the loop to run the next cycle now.

        Ignored while the coordinator is backing off or halted; the backoff delay
        always runs to the end.

        Returns:
            True if the loop was woken
        """
        if self._state in (CoordinatorState.BACKOFF, CoordinatorState.HALTED):
            logger.info(f"Trigger ignored for {self.config.id}: coordinator is {self._state.value}")
            return False
        self._wake.set()
        return True

    def stop(self) -> None:
        """Finish the in-flight delivery, abandon the rest of the batch and exit the loop."""
        self._stop.set()
        self._wake.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    # Cycle

    def run_cycle(self, triggered_by: str = "timer") -> CycleResult:
        """
        Run one fetch, transform, deliver, commit cycle.

        Args:
            triggered_by: What triggered this cycle (timer, api, cli)

        Returns:
            CycleResult describing what happened

        Raises:
            PersistenceError: If the watermark cannot be loaded or committed;
                the coordinator is halted
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.info(f"Cycle requested by {triggered_by} while another is running, skipping")
            result = CycleResult(id=str(uuid.uuid4()), config_id=self.config.id, status=CycleStatus.SKIPPED_BUSY)
            result.completed_at = result.started_at
            return result

        try:
            if self.halted:
                raise PersistenceError(f"Coordinator is halted: {self.fatal_error}")
            result = self._run_cycle(triggered_by)
            self.last_result = result
            return result
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, triggered_by: str) -> CycleResult:
        result = CycleResult(id=str(uuid.uuid4()), config_id=self.config.id)

        try:
            after = self.watermark.load()
            result.watermark_before = position_to_text(after)
            logger.info(f"Starting cycle {result.id} for {self.config.id} after {result.watermark_before} "
                        f"(triggered by {triggered_by})")

            self._state = CoordinatorState.FETCHING
            batch = self.fetcher.fetch(after, self.options.batch_size)
            result.fetched = len(batch.records) + len(batch.skipped)
            result.more_pending = not batch.exhausted

            if batch.is_empty:
                logger.debug(f"Nothing above {result.watermark_before}")
                result.mark_idle()
                self._succeeded()
                return result

            logger.info(f"Fetched {len(batch.records)} records, {len(batch.skipped)} malformed rows skipped")
            for row in batch.skipped:
                result.skipped.append(RecordResult.for_position(row.position, RecordStatus.MALFORMED, row.reason))

            for record in batch.records:
                if self._stop.is_set():
                    return self._abort(result, "Stop requested, batch abandoned without commit", back_off=False)

                self._state = CoordinatorState.TRANSFORMING
                try:
                    posting = self.transformer.transform(record)
                except TransformError as e:
                    if self.options.failure_policy == FailurePolicy.ABORT:
                        return self._abort(result, str(e))
                    logger.warning(f"Skipping record at position {position_to_text(record.position)}: {e}")
                    result.skipped.append(RecordResult.for_position(record.position, RecordStatus.SKIPPED, str(e)))
                    continue

                self._state = CoordinatorState.DELIVERING
                outcome = self.target.deliver(posting)

                if outcome.status == DeliveryStatus.DELIVERED:
                    result.delivered.append(
                        RecordResult.for_position(record.position, RecordStatus.DELIVERED, outcome.reason)
                    )
                elif outcome.status == DeliveryStatus.RETRYABLE:
                    return self._back_off(
                        result, f"Retryable failure at position {position_to_text(record.position)}: {outcome.reason}"
                    )
                else:
                    reason = f"Permanent failure at position {position_to_text(record.position)}: {outcome.reason}"
                    if self.options.failure_policy == FailurePolicy.ABORT:
                        return self._abort(result, reason)
                    logger.warning(f"Skipping record: {reason}")
                    result.skipped.append(RecordResult.for_position(record.position, RecordStatus.SKIPPED, reason))

            self._state = CoordinatorState.COMMITTING
            self.watermark.advance(batch.last_position)
            result.mark_completed(batch.last_position)
            self._succeeded()
            logger.info(
                f"Cycle {result.id} committed watermark {result.watermark_after}: "
                f"{len(result.delivered)} delivered, {len(result.skipped)} skipped"
            )
            return result

        except PersistenceError as e:
            self._halt(e)
            result.mark_failed(str(e))
            self.last_result = result
            raise

        except SourceUnavailable as e:
            return self._back_off(result, f"Source unavailable: {e}")

        except DataIntegrityError as e:
            return self._abort(result, f"Data integrity error: {e}")

        except BillSyncError as e:
            return self._back_off(result, str(e))

        except Exception as e:
            logger.exception(f"Unexpected error in cycle {result.id}")
            return self._back_off(result, f"Unexpected error: {e}")

    def _halt(self, error: PersistenceError) -> None:
        self._state = CoordinatorState.HALTED
        self.fatal_error = error
        logger.error(f"Watermark persistence failed, halting: {error}")

    def _succeeded(self) -> None:
        self.failed_attempts = 0
        self.next_delay = 0.0
        self._state = CoordinatorState.IDLE

    def _back_off(self, result: CycleResult, reason: str) -> CycleResult:
        self.failed_attempts += 1
        self.next_delay = compute_backoff(self.failed_attempts, self.options, self._rand)
        self._state = CoordinatorState.BACKOFF
        logger.warning(f"Cycle {result.id} backing off {self.next_delay:.1f}s "
                       f"(attempt {self.failed_attempts}): {reason}")
        result.mark_backoff(reason)
        return result

    def _abort(self, result: CycleResult, reason: str, back_off: bool = True) -> CycleResult:
        logger.error(f"Cycle {result.id} aborted, watermark stays at {result.watermark_before}: {reason}")
        if back_off:
            self.failed_attempts += 1
            self.next_delay = compute_backoff(self.failed_attempts, self.options, self._rand)
            self._state = CoordinatorState.BACKOFF
        else:
            self._state = CoordinatorState.IDLE
        result.mark_aborted(reason)
        return result

    # Loop

    def _delay_after(self, result: CycleResult) -> float:
        if result.status in (CycleStatus.BACKOFF, CycleStatus.ABORTED):
            return self.next_delay
        if result.committed and result.more_pending:
            return 0.0
        return self.options.poll_interval_seconds

    def run_forever(self) -> None:
        """
        Run cycles until stop() is called.

        Raises:
            PersistenceError: When the watermark cannot be persisted
        """
        try:
            self.watermark.load()
        except PersistenceError as e:
            self._halt(e)
            raise
        logger.info(f"Sync loop started for {self.config.id}, polling every {self.options.poll_interval_seconds}s")

        while not self._stop.is_set():
            self._wake.clear()
            result = self.run_cycle()

            if self.refresher is not None and result.status != CycleStatus.BACKOFF and self.refresher.is_due():
                try:
                    self.refresher.run()
                except PersistenceError as e:
                    self._halt(e)
                    raise

            delay = self._delay_after(result)
            if delay > 0 and self._state == CoordinatorState.BACKOFF:
                # Only stop() cuts a backoff short
                self._stop.wait(delay)
            elif delay > 0:
                self._wake.wait(delay)
            if self._state == CoordinatorState.BACKOFF:
                self._state = CoordinatorState.IDLE

        logger.info(f"Sync loop stopped for {self.config.id}")

    def status(self) -> Dict[str, Any]:
        """Snapshot for the status endpoint and CLI."""
        current = self.watermark.current
        return {
            "config_id": self.config.id,
            "state": self._state.value,
            "watermark": position_to_text(current) if current is not None else None,
            "failed_attempts": self.failed_attempts,
            "next_delay_seconds": self.next_delay,
            "fatal_error": str(self.fatal_error) if self.fatal_error else None,
            "last_cycle": self.last_result.get_summary() if self.last_result else None,
        }

    def validate_config(self, check_connections: bool = True) -> Dict[str, Any]:
        """
        Validate the sync configuration against the template set and the collaborators.

        Args:
            check_connections: Also test the source schema and both connections

        Returns:
            Validation result with status and messages
        """
        errors = list(self.transformer.validate())
        warnings = []

        try:
            self.config.default_position()
        except BillSyncError as e:
            errors.append(str(e))

        if self.options.failure_policy == FailurePolicy.SKIP:
            warnings.append("failure_policy is 'skip': records failing permanently are logged and passed over")

        if check_connections:
            if not self.fetcher.source.test_connection():
                errors.append("Cannot connect to source database")
            elif not self.fetcher.source.has_expected_schema():
                errors.append(f"Source table {self.config.source.table} does not have the configured columns")
            if not self.target.test_connection():
                errors.append("Cannot connect to time-tracking API")

        return {
            "valid": len(errors) == 0,
            "errors": errors,
            "warnings": warnings
        }
