"""Time-tracking API client for postings and tags."""

import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ... import __version__
from ...exceptions import TargetAPIError

logger = logging.getLogger(__name__)

POSTINGS_ENDPOINT = "/v1/postings"
TAGS_ENDPOINT = "/v1/tags"
HEALTH_ENDPOINT = "/v1/health"


class TimeTrackerClient:
    """Client for interacting with the time-tracking API."""

    def __init__(self, api_key: str, base_url: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        """Initialize the time-tracking client.

        Args:
            api_key: Bearer token for the API
            base_url: Base URL for the API
            timeout: Per-request timeout in seconds
            session: Optional pre-configured session
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

        self.session = session or requests.Session()
        if session is None:
            # Retries are owned by the sync coordinator, not the transport
            retry_strategy = Retry(total=0, raise_on_status=False)
            adapter = HTTPAdapter(max_retries=retry_strategy)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)

        self.session.headers.update({
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': f'billsync/{__version__}'
        })

    def _send(self, method: str, endpoint: str, data: Optional[Any] = None,
              headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """Send a request and return the raw response without checking its status.

        Raises:
            requests.exceptions.RequestException: On timeouts and connection errors
        """
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"Making {method} request to {url}")
        return self.session.request(method, url, json=data, headers=headers, timeout=self.timeout)

    def _make_request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
                      data: Optional[Any] = None) -> Dict[str, Any]:
        """Make a request to the time-tracking API.

        Args:
            method: HTTP method
            endpoint: API endpoint
            params: Query parameters
            data: Request body data

        Returns:
            JSON response data

        Raises:
            TargetAPIError: If the API request fails
        """
        url = f"{self.base_url}{endpoint}"

        try:
            logger.debug(f"Making {method} request to {url} with params: {params}")
            response = self.session.request(method, url, params=params, json=data, timeout=self.timeout)
            response.raise_for_status()

            if response.content:
                return response.json()
            else:
                return {"status": "success"}

        except requests.exceptions.RequestException as e:
            logger.error(f"Time-tracking API request failed: {e}")
            if getattr(e, 'response', None) is not None:
                raise TargetAPIError(
                    f"HTTP {e.response.status_code}: {e.response.text}",
                    status_code=e.response.status_code,
                    body=e.response.text,
                ) from e
            raise TargetAPIError(f"Request failed: {str(e)}") from e
        except ValueError as e:
            raise TargetAPIError(f"Invalid JSON in response from {url}: {e}") from e

    def post_posting(self, payload: Dict[str, Any], idempotency_key: str) -> requests.Response:
        """Submit one posting.

        Args:
            payload: JSON body of the posting
            idempotency_key: Stable key the server deduplicates on

        Returns:
            Raw response, status not checked

        Raises:
            requests.exceptions.RequestException: On timeouts and connection errors
        """
        return self._send('POST', POSTINGS_ENDPOINT, data=payload,
                          headers={'Idempotency-Key': idempotency_key})

    def upsert_tags(self, tags: List[Dict[str, Any]]) -> requests.Response:
        """Create or update a batch of tags.

        Args:
            tags: Tag objects with 'name', 'path' and 'description'

        Returns:
            Raw response, status not checked
        """
        return self._send('PUT', TAGS_ENDPOINT, data={"tags": tags})

    def test_connection(self) -> Dict[str, Any]:
        """Test connection to the time-tracking API.

        Returns:
            Connection test result
        """
        try:
            result = self._make_request('GET', HEALTH_ENDPOINT)
            return {"status": "success", "message": "Connected to time-tracking API", "details": result}
        except TargetAPIError as e:
            return {"status": "error", "message": str(e)}

    def close(self) -> None:
        self.session.close()
