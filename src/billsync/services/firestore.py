"""
Firestore-backed watermark storage.
"""

import logging
from typing import Any, Optional

from google.api_core import exceptions as google_exceptions
from google.auth import default
from google.cloud import firestore

from ..exceptions import PersistenceError
from ..models.records import Position, PositionType, Watermark
from .watermark import WatermarkStore

logger = logging.getLogger(__name__)

WATERMARKS_COLLECTION = "sync_watermarks"


def create_firestore_client(project_id: Optional[str] = None) -> firestore.Client:
    """
    Create a Firestore client.

    Args:
        project_id: Google Cloud project ID. If None, uses default from environment.
    """
    if project_id:
        db = firestore.Client(project=project_id)
    else:
        # Use application default credentials
        credentials, project = default()
        db = firestore.Client(project=project, credentials=credentials)
    logger.info(f"Firestore client initialized for project: {db.project}")
    return db


class FirestoreWatermarkStore(WatermarkStore):
    """
    One Firestore document per cursor in the sync_watermarks collection.
    """

    def __init__(self, cursor: str, position_type: PositionType, default_position: Position,
                 client: Optional[Any] = None, project_id: Optional[str] = None,
                 collection: str = WATERMARKS_COLLECTION):
        """
        Initialize the store.

        Args:
            cursor: Document ID, e.g. '<config id>' or '<config id>.refresh'
            position_type: Type of the stored position
            default_position: Position returned when nothing is stored
            client: Firestore client; created from the environment if omitted
            project_id: Google Cloud project ID used when creating the client
            collection: Collection holding the watermark documents
        """
        super().__init__(position_type, default_position)
        try:
            self.db = client or create_firestore_client(project_id)
        except Exception as e:
            logger.error(f"Failed to initialize Firestore: {e}")
            raise PersistenceError(f"Failed to initialize Firestore: {e}") from e
        self.cursor = cursor
        self.collection = collection

    @property
    def location(self) -> str:
        return f"firestore:{self.collection}/{self.cursor}"

    def _document(self):
        return self.db.collection(self.collection).document(self.cursor)

    def read(self) -> Optional[Watermark]:
        try:
            doc = self._document().get()
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Failed to read watermark {self.cursor}: {e}")
            raise PersistenceError(f"Failed to read watermark {self.location}: {e}") from e

        if not doc.exists:
            return None
        try:
            return Watermark.from_document(doc.to_dict())
        except (ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Watermark document {self.location} is corrupt: {e}") from e

    def write(self, watermark: Watermark) -> None:
        try:
            # set() returns only once the write is committed server-side
            self._document().set(watermark.to_document())
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Failed to write watermark {self.cursor}: {e}")
            raise PersistenceError(f"Failed to write watermark {self.location}: {e}") from e
