import json
from decimal import Decimal

import pytest
import requests

from billsync.connectors.timetracker import TimeTrackerConnector, classify_exception, classify_status
from billsync.integrations.timetracker import TimeTrackerClient
from billsync.models.records import DeliveryStatus, TransformedPosting


def make_response(status_code, body=None):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body).encode() if body is not None else b""
    return response


class FakeSession:
    """Stands in for requests.Session, answering from a queue."""

    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        answer = self.responses.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def close(self):
        self.closed = True


def connector_with(*responses):
    session = FakeSession(*responses)
    client = TimeTrackerClient(api_key="secret", base_url="https://tt.example.com/", session=session)
    return TimeTrackerConnector(client=client), session


def posting(position=101, tag_name="P-101", description="Case P-101"):
    return TransformedPosting(
        idempotency_key=f"billsync:{position}",
        position=position,
        tag_name=tag_name,
        tag_path="/Patricia/",
        description=description,
        narrative="Drafted the reply",
        amounts={"amount": Decimal("11.00")},
    )


class TestClassification:
    @pytest.mark.parametrize("status_code", [200, 201, 204, 409])
    def test_delivered(self, status_code):
        assert classify_status(status_code).status == DeliveryStatus.DELIVERED

    @pytest.mark.parametrize("status_code", [408, 425, 429, 500, 502, 503, 504])
    def test_retryable(self, status_code):
        assert classify_status(status_code).status == DeliveryStatus.RETRYABLE

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422])
    def test_permanent(self, status_code):
        outcome = classify_status(status_code, "bad tag")
        assert outcome.status == DeliveryStatus.PERMANENT
        assert "bad tag" in outcome.reason

    def test_unexpected_status_is_retried(self):
        assert classify_status(302).status == DeliveryStatus.RETRYABLE

    @pytest.mark.parametrize("error", [
        requests.exceptions.Timeout("read timed out"),
        requests.exceptions.ConnectionError("connection reset"),
        requests.exceptions.RequestException("boom"),
    ])
    def test_transport_errors_are_retryable(self, error):
        assert classify_exception(error).status == DeliveryStatus.RETRYABLE


class TestTimeTrackerConnector:
    def test_deliver_sends_payload_and_key(self):
        connector, session = connector_with(make_response(201, {"id": "p-1"}))
        outcome = connector.deliver(posting())

        assert outcome.is_delivered
        sent = session.requests[0]
        assert sent["method"] == "POST"
        assert sent["url"] == "https://tt.example.com/v1/postings"
        assert sent["headers"] == {"Idempotency-Key": "billsync:101"}
        assert sent["json"]["amounts"] == {"amount": "11.00"}
        assert sent["json"]["tag"] == {"name": "P-101", "path": "/Patricia/", "description": "Case P-101"}
        assert session.headers["Authorization"] == "Bearer secret"

    def test_duplicate_counts_as_delivered(self):
        connector, _ = connector_with(make_response(409, {"error": "duplicate"}))
        outcome = connector.deliver(posting())
        assert outcome.is_delivered
        assert outcome.reason == "duplicate"

    def test_server_error_is_retryable(self):
        connector, _ = connector_with(make_response(503))
        assert connector.deliver(posting()).status == DeliveryStatus.RETRYABLE

    def test_timeout_never_raises(self):
        connector, _ = connector_with(requests.exceptions.Timeout("read timed out"))
        assert connector.deliver(posting()).status == DeliveryStatus.RETRYABLE

    def test_upsert_tags_deduplicates(self):
        connector, session = connector_with(make_response(200, {"upserted": 2}))
        outcome = connector.upsert_tags([
            posting(101, "P-1", "old"),
            posting(102, "P-1", "new"),
            posting(103, "P-2", "other"),
        ])
        assert outcome.is_delivered
        sent = session.requests[0]
        assert sent["method"] == "PUT"
        assert sent["url"] == "https://tt.example.com/v1/tags"
        assert sent["json"] == {"tags": [
            {"name": "P-1", "path": "/Patricia/", "description": "new"},
            {"name": "P-2", "path": "/Patricia/", "description": "other"},
        ]}

    def test_upsert_nothing(self):
        connector, session = connector_with()
        assert connector.upsert_tags([]).is_delivered
        assert session.requests == []

    def test_connection(self):
        connector, session = connector_with(make_response(200, {"ok": True}), make_response(401, {"error": "no"}))
        assert connector.test_connection()
        assert session.requests[0]["url"] == "https://tt.example.com/v1/health"
        assert not connector.test_connection()

    def test_close(self):
        connector, session = connector_with()
        connector.close()
        assert session.closed

    def test_requires_credentials_without_client(self):
        with pytest.raises(ValueError):
            TimeTrackerConnector(base_url="https://tt.example.com")
