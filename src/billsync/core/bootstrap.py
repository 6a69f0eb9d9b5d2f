"""Wiring of connectors, stores and engine components from settings."""

import logging
from typing import Optional

from ..connectors import get_connector
from ..engine.fetcher import RecordFetcher
from ..engine.refresh import TagRefresher
from ..engine.sync import SyncCoordinator
from ..engine.transforms import PostingTransformer
from ..models.config import SyncConfig
from ..services.watermark import FileWatermarkStore, WatermarkCell, WatermarkStore
from .config import SyncSettings, mask_url

logger = logging.getLogger(__name__)

REFRESH_CURSOR_SUFFIX = ".refresh"


def create_watermark_store(settings: SyncSettings, config: SyncConfig, refresh: bool = False) -> WatermarkStore:
    """Create the sync (or refresh) cursor store for the configured backend."""
    position_type = config.source.position_type
    default = config.default_position()

    if settings.watermark_backend == "firestore":
        from ..services.firestore import FirestoreWatermarkStore

        cursor = f"{config.id}{REFRESH_CURSOR_SUFFIX}" if refresh else config.id
        return FirestoreWatermarkStore(cursor, position_type, default, project_id=settings.google_cloud_project)

    path = settings.refresh_watermark_path if refresh else settings.watermark_path
    return FileWatermarkStore(path, position_type, default)


class SyncRuntime:
    """All long-lived components of one sync, built once per process."""

    def __init__(self, settings: SyncSettings, config: SyncConfig, source=None, target=None,
                 watermark_store: Optional[WatermarkStore] = None,
                 refresh_store: Optional[WatermarkStore] = None):
        self.settings = settings
        self.config = config

        logger.info(f"Building sync '{config.id}' from {mask_url(settings.source_url)} to {settings.target_url}")
        self.source = source or get_connector("sql")(source=config.source, url=settings.source_url)
        self.target = target or get_connector("timetracker")(
            api_key=settings.target_api_key,
            base_url=settings.target_url,
            timeout=settings.target_timeout_seconds,
        )

        self.fetcher = RecordFetcher(self.source, config.source, config.options.malformed_rows)
        self.transformer = PostingTransformer(config)
        self.watermark = WatermarkCell(watermark_store or create_watermark_store(settings, config))

        self.refresher: Optional[TagRefresher] = None
        if config.refresh.enabled:
            refresh_cursor = WatermarkCell(refresh_store or create_watermark_store(settings, config, refresh=True))
            self.refresher = TagRefresher(
                config, self.fetcher, self.transformer, self.target, refresh_cursor, self.watermark
            )

        self.coordinator = SyncCoordinator(
            config, self.fetcher, self.transformer, self.target, self.watermark, refresher=self.refresher
        )

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "SyncRuntime":
        return cls(settings, SyncConfig.from_file(settings.config_file))

    def close(self) -> None:
        self.source.close()
        self.target.close()
