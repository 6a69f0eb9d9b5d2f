"""
Base connector classes for the source store and the time-tracking target.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple
from pydantic import BaseModel
import logging

from ..models.records import DeliveryOutcome, TransformedPosting

logger = logging.getLogger(__name__)


class ConnectorCapability(BaseModel):
    """Defines what operations a connector supports."""
    can_fetch_records: bool = False
    can_deliver_postings: bool = False
    can_upsert_tags: bool = False


class RawRow(NamedTuple):
    """A row as returned by the source, before type coercion."""
    position: Any
    fields: Dict[str, Any]


class BaseConnector(ABC):
    """Abstract base class for connectors."""

    def __init__(self, **kwargs):
        """
        Initialize the connector.

        Args:
            **kwargs: Additional configuration parameters
        """
        self.config = kwargs
        logger.info(f"Initialized {self.__class__.__name__} connector")

    @abstractmethod
    def get_capabilities(self) -> ConnectorCapability:
        """Return what operations this connector supports."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test if the connector can successfully connect to the service."""
        pass

    def close(self) -> None:
        """Release pooled resources."""
        pass


class SourceConnector(BaseConnector):
    """Read side: billing rows ordered by a strictly increasing position."""

    def get_capabilities(self) -> ConnectorCapability:
        return ConnectorCapability(can_fetch_records=True)

    @abstractmethod
    def fetch_rows(self, after: Any, limit: int) -> List[RawRow]:
        """
        Read rows whose position is strictly greater than `after`.

        Args:
            after: Exclusive lower bound on the position
            limit: Maximum number of rows

        Returns:
            Rows in ascending position order

        Raises:
            SourceUnavailable: If the store cannot be reached
        """
        pass

    @abstractmethod
    def count(self) -> int:
        """Total number of rows in the source table."""
        pass

    @abstractmethod
    def has_expected_schema(self) -> bool:
        """Whether the configured table and columns exist."""
        pass


class TargetConnector(BaseConnector):
    """Write side: postings and tags on the time-tracking service."""

    def get_capabilities(self) -> ConnectorCapability:
        return ConnectorCapability(can_deliver_postings=True)

    @abstractmethod
    def deliver(self, posting: TransformedPosting) -> DeliveryOutcome:
        """
        Submit one posting. Never raises for transport or HTTP errors.

        Args:
            posting: Posting carrying its idempotency key

        Returns:
            Classified outcome
        """
        pass

    def upsert_tags(self, postings: List[TransformedPosting]) -> DeliveryOutcome:
        """
        Create or update the tags of already delivered postings.

        Args:
            postings: Postings whose tags should be refreshed

        Returns:
            Classified outcome for the whole batch
        """
        if not self.get_capabilities().can_upsert_tags:
            raise NotImplementedError(f"{self.__class__.__name__} does not support upserting tags")
        return self._upsert_tags(postings)

    def _upsert_tags(self, postings: List[TransformedPosting]) -> DeliveryOutcome:
        """Service-specific tag upsert implementation."""
        raise NotImplementedError()
