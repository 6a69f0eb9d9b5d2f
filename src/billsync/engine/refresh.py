"""
Tag refresh loop.

Walks over already synced records in small batches and upserts their tags on
the target, so renamed cases and missed tag updates converge over one full
refresh cycle. It keeps its own cursor and never reads past the sync
watermark.
"""

import logging
import math
import time
from typing import Callable, List, Optional

from ..connectors.base import TargetConnector
from ..exceptions import DataIntegrityError, SourceUnavailable, TransformError
from ..models.config import SyncConfig
from ..models.records import TransformedPosting, position_to_text
from ..models.sync import RefreshResult
from ..services.watermark import WatermarkCell
from .fetcher import RecordFetcher
from .transforms import PostingTransformer

logger = logging.getLogger(__name__)


def refresh_batch_size(total: int, config: SyncConfig) -> int:
    """
    Records per run so that every record is refreshed once per full cycle.

    Args:
        total: Number of records in the source
        config: Sync configuration with refresh and batch options

    Returns:
        Batch size clamped to [min_batch_size, batch_size]
    """
    refresh = config.refresh
    runs_per_cycle = (refresh.full_cycle_days * 24 * 60) / refresh.interval_minutes
    size = math.ceil(total / runs_per_cycle) if runs_per_cycle > 0 else total
    upper = max(config.options.batch_size, refresh.min_batch_size)
    return max(refresh.min_batch_size, min(size, upper))


class TagRefresher:
    """Re-sends tags of synced records, one small batch per interval."""

    def __init__(
        self,
        config: SyncConfig,
        fetcher: RecordFetcher,
        transformer: PostingTransformer,
        target: TargetConnector,
        cursor: WatermarkCell,
        sync_watermark: WatermarkCell,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.fetcher = fetcher
        self.transformer = transformer
        self.target = target
        self.cursor = cursor
        self.sync_watermark = sync_watermark
        self._clock = clock
        self._last_run: Optional[float] = None

    @property
    def interval_seconds(self) -> float:
        return self.config.refresh.interval_minutes * 60

    def is_due(self) -> bool:
        if not self.config.refresh.enabled:
            return False
        if self._last_run is None:
            return True
        return self._clock() - self._last_run >= self.interval_seconds

    def batch_size(self) -> int:
        return refresh_batch_size(self.fetcher.source.count(), self.config)

    def run(self) -> RefreshResult:
        """
        Refresh one batch of tags.

        Returns:
            RefreshResult; failures other than persistence are reported, not raised

        Raises:
            PersistenceError: If the refresh cursor cannot be read or written
        """
        self._last_run = self._clock()
        before = self.cursor.load()
        upper = self.sync_watermark.load()
        result = RefreshResult(status="refreshed", cursor_before=position_to_text(before))

        if before >= upper:
            return self._restart(result, "caught up with the sync watermark")

        try:
            batch = self.fetcher.fetch(before, self.batch_size())
        except (SourceUnavailable, DataIntegrityError) as e:
            logger.warning(f"Tag refresh fetch failed: {e}")
            result.status = "failed"
            result.message = str(e)
            return result

        positions = [r.position for r in batch.records if r.position <= upper]
        positions += [r.position for r in batch.skipped if r.position <= upper]
        if not positions:
            return self._restart(result, "no synced records above the refresh cursor")

        postings: List[TransformedPosting] = []
        for record in batch.records:
            if record.position > upper:
                break
            try:
                postings.append(self.transformer.transform(record))
            except TransformError as e:
                logger.debug(f"Tag refresh skips position {position_to_text(record.position)}: {e}")
                result.skipped += 1
        result.skipped += len([r for r in batch.skipped if r.position <= upper])

        if postings:
            outcome = self.target.upsert_tags(postings)
            if not outcome.is_delivered:
                logger.warning(f"Tag refresh of {len(postings)} tags not delivered: {outcome.reason}")
                result.status = "failed"
                result.message = outcome.reason
                return result

        last = max(positions)
        self.cursor.advance(last)
        result.refreshed = len(postings)
        result.cursor_after = position_to_text(last)
        logger.info(f"Refreshed {len(postings)} tags, refresh cursor at {result.cursor_after}")
        return result

    def _restart(self, result: RefreshResult, reason: str) -> RefreshResult:
        logger.info(f"Tag refresh restarting from the beginning: {reason}")
        self.cursor.reset()
        result.status = "reset"
        result.cursor_after = position_to_text(self.cursor.current)
        return result
