"""
Time-tracking target connector.

Maps postings onto the API client and turns every response or transport
failure into a DeliveryOutcome.
"""

import logging
from typing import Dict, List, Optional, Tuple

import requests

from ..integrations.timetracker.client import TimeTrackerClient
from ..models.records import DeliveryOutcome, TransformedPosting
from .base import ConnectorCapability, TargetConnector

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429}
DUPLICATE_STATUS_CODE = 409


def classify_status(status_code: int, body: str = "") -> DeliveryOutcome:
    """
    Classify an HTTP status code.

    2xx and 409 (already held under the same idempotency key) are delivered.
    408, 425, 429 and 5xx are retryable; every other 4xx is permanent.
    """
    snippet = (body or "")[:200]
    if 200 <= status_code < 300:
        return DeliveryOutcome.delivered(status_code=status_code)
    if status_code == DUPLICATE_STATUS_CODE:
        return DeliveryOutcome.delivered(reason="duplicate", status_code=status_code)
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return DeliveryOutcome.retryable(f"HTTP {status_code}: {snippet}", status_code=status_code)
    if 400 <= status_code < 500:
        return DeliveryOutcome.permanent(f"HTTP {status_code}: {snippet}", status_code=status_code)
    # 1xx/3xx should never reach us; not knowing means trying again
    return DeliveryOutcome.retryable(f"Unexpected HTTP {status_code}", status_code=status_code)


def classify_exception(error: requests.exceptions.RequestException) -> DeliveryOutcome:
    """Classify a transport error. All of them leave the outcome unknown, so all are retryable."""
    if isinstance(error, requests.exceptions.Timeout):
        return DeliveryOutcome.retryable(f"Timeout: {error}")
    if isinstance(error, requests.exceptions.ConnectionError):
        return DeliveryOutcome.retryable(f"Connection error: {error}")
    return DeliveryOutcome.retryable(f"Request failed: {error}")


class TimeTrackerConnector(TargetConnector):
    """Connector for the time-tracking service."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: float = 30.0, client: Optional[TimeTrackerClient] = None, **kwargs):
        """
        Initialize the connector.

        Args:
            api_key: Bearer token, required unless a client is given
            base_url: API base URL, required unless a client is given
            timeout: Per-request timeout in seconds
            client: Pre-built client (tests inject one with a fake session)
            **kwargs: Additional configuration parameters
        """
        super().__init__(**kwargs)
        if client is None:
            if not api_key or not base_url:
                raise ValueError("api_key and base_url are required")
            client = TimeTrackerClient(api_key=api_key, base_url=base_url, timeout=timeout)
        self.client = client

    def get_capabilities(self) -> ConnectorCapability:
        return ConnectorCapability(can_deliver_postings=True, can_upsert_tags=True)

    def test_connection(self) -> bool:
        result = self.client.test_connection()
        if result.get("status") != "success":
            logger.error(f"Time-tracking connection test failed: {result.get('message')}")
            return False
        return True

    def deliver(self, posting: TransformedPosting) -> DeliveryOutcome:
        """Submit one posting and classify the result."""
        try:
            response = self.client.post_posting(posting.to_payload(), posting.idempotency_key)
        except requests.exceptions.RequestException as e:
            outcome = classify_exception(e)
        else:
            outcome = classify_status(response.status_code, response.text)

        logger.debug(f"Delivery of {posting.idempotency_key}: {outcome.status.value} {outcome.reason or ''}")
        return outcome

    def _upsert_tags(self, postings: List[TransformedPosting]) -> DeliveryOutcome:
        tags: Dict[Tuple[str, str], Dict[str, str]] = {}
        for posting in postings:
            # Last posting wins for a tag shared by several records
            tags[(posting.tag_path, posting.tag_name)] = {
                "name": posting.tag_name,
                "path": posting.tag_path,
                "description": posting.description,
            }
        if not tags:
            return DeliveryOutcome.delivered(reason="nothing to upsert")

        try:
            response = self.client.upsert_tags(list(tags.values()))
        except requests.exceptions.RequestException as e:
            return classify_exception(e)
        return classify_status(response.status_code, response.text)

    def close(self) -> None:
        self.client.close()
