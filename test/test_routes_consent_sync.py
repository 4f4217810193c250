"""
Tests for the consent sync routes
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient

from consent_lineage.routes.consent_sync import get_validity_engine
from consent_lineage.services.expiration import ExpirationPolicy
from main import app
from utils.mock_utils import sync_payload

SYNC_URL = "/api/v1/consent/sync"


class TestSyncEndpoint:
    """Test POST /api/v1/consent/sync"""

    async def test_first_submission_granted(self, api_client, lineage_log):
        response = await api_client.post(
            SYNC_URL,
            json={"consentString": "abc123", "timestamp": "2024-10-24T11:01:00Z", "deviceId": "1234-5678-ABCD"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "Success"
        assert body["decision"] == "Granted"
        assert body["state"] == "Validated"
        assert body["message"] == "Access granted"
        assert body["duplicate"] is False
        assert body["validatedAt"].endswith("Z")

        entries = await lineage_log.entries("1234-5678-ABCD")
        assert len(entries) == 1
        assert entries[0].result == "Access granted"
        assert entries[0].consent_string == "abc123"

    @pytest.mark.parametrize("missing", ["consentString", "timestamp", "deviceId"])
    async def test_missing_required_field(self, api_client, missing):
        payload = sync_payload()
        del payload[missing]

        response = await api_client.post(SYNC_URL, json=payload)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields."}

    async def test_blank_field_counts_as_missing(self, api_client):
        response = await api_client.post(SYNC_URL, json=sync_payload(consent_string="  "))
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields."}

    async def test_non_json_body(self, api_client):
        response = await api_client.post(SYNC_URL, content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields."}

    async def test_missing_fields_are_logged(self, api_client, lineage_log):
        payload = sync_payload()
        del payload["timestamp"]
        await api_client.post(SYNC_URL, json=payload)

        entries = await lineage_log.entries("1234-5678-ABCD")
        assert len(entries) == 1
        assert entries[0].result == "Rejected: MissingField"

    async def test_unparseable_timestamp(self, api_client, lineage_log):
        response = await api_client.post(SYNC_URL, json=sync_payload(timestamp="2024-10-24 11:01"))

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "Failure"
        assert body["reason"] == "InvalidTimestamp"

        entries = await lineage_log.entries("1234-5678-ABCD")
        assert entries[0].result == "Rejected: InvalidTimestamp"

    async def test_offset_less_timestamp_rejected(self, api_client):
        response = await api_client.post(SYNC_URL, json=sync_payload(timestamp="2024-10-24T11:01:00"))
        assert response.status_code == 400
        assert response.json()["reason"] == "InvalidTimestamp"

    async def test_out_of_order_timestamps(self, api_client):
        response = await api_client.post(
            SYNC_URL,
            json=sync_payload(storedAt="2024-10-24T11:00:00Z", requestAt="2024-10-24T11:01:30Z"),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "Failure"
        assert body["reason"] == "InvalidTimestamp"
        assert body["state"] == "Rejected"

    async def test_future_timestamp_beyond_skew(self, api_client):
        response = await api_client.post(SYNC_URL, json=sync_payload(timestamp="2024-10-24T12:00:00Z"))
        assert response.status_code == 400
        assert response.json()["reason"] == "InvalidTimestamp"

    async def test_far_future_request_at_rejected(self, api_client):
        response = await api_client.post(
            SYNC_URL,
            json=sync_payload(timestamp="2024-10-24T11:00:00Z", requestAt="2099-01-01T00:00:00Z"),
        )

        assert response.status_code == 400
        assert response.json()["reason"] == "InvalidTimestamp"

        record = await api_client.get("/api/v1/consent/1234-5678-ABCD")
        assert record.status_code == 404

    async def test_wrongly_typed_scopes_is_invalid_field(self, api_client, lineage_log):
        response = await api_client.post(SYNC_URL, json=sync_payload(scopes="analytics"))

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "Failure"
        assert body["reason"] == "InvalidField"
        assert "scopes" in body["message"]

        entries = await lineage_log.entries("1234-5678-ABCD")
        assert [entry.result for entry in entries] == ["Rejected: InvalidField"]

    async def test_non_string_timestamp_is_invalid_timestamp(self, api_client):
        response = await api_client.post(SYNC_URL, json=sync_payload(timestamp=123))
        assert response.status_code == 400
        assert response.json()["reason"] == "InvalidTimestamp"

    async def test_non_string_device_id_counts_as_missing(self, api_client):
        response = await api_client.post(SYNC_URL, json=sync_payload(device_id=123))
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields."}

    async def test_superseded_answers_409(self, api_client):
        await api_client.post(SYNC_URL, json=sync_payload(timestamp="2024-10-24T11:01:00Z"))
        response = await api_client.post(SYNC_URL, json=sync_payload(timestamp="2024-10-24T10:59:00Z"))

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "Failure"
        assert body["reason"] == "Superseded"

    async def test_retransmission_is_duplicate(self, api_client, lineage_log, clock):
        first = await api_client.post(SYNC_URL, json=sync_payload(requestAt="2024-10-24T11:01:05Z"))
        clock.advance(120)
        second = await api_client.post(SYNC_URL, json=sync_payload(requestAt="2024-10-24T11:01:50Z"))

        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert second.json()["decision"] == first.json()["decision"]
        assert second.json()["validatedAt"] == first.json()["validatedAt"]

        entries = await lineage_log.entries("1234-5678-ABCD")
        assert [e.result for e in entries] == ["Access granted", "Duplicate"]

    async def test_client_expiry_ignored(self, api_client):
        response = await api_client.post(SYNC_URL, json=sync_payload(expiresAt="2024-10-24T11:01:01Z"))
        assert response.status_code == 200
        assert response.json()["expiresAt"] is None


class TestExpiredDecision:
    @pytest.fixture
    def expiration_policy(self):
        return ExpirationPolicy(timedelta(minutes=1))

    async def test_expired_is_a_decision(self, api_client, clock):
        clock.advance(600)
        response = await api_client.post(SYNC_URL, json=sync_payload(timestamp="2024-10-24T11:01:00Z"))

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "Success"
        assert body["decision"] == "Denied"
        assert body["state"] == "Expired"
        assert body["message"] == "Consent expired"
        assert body["expiresAt"] == "2024-10-24T11:02:00Z"


class TestReadEndpoints:
    async def test_get_consent(self, api_client):
        await api_client.post(SYNC_URL, json=sync_payload())
        response = await api_client.get("/api/v1/consent/1234-5678-ABCD")

        assert response.status_code == 200
        body = response.json()
        assert body["subject_id"] == "1234-5678-ABCD"
        assert body["consent_string"] == "abc123"
        assert body["created_at"] == "2024-10-24T11:01:00Z"
        assert body["decision"] == "Granted"

    async def test_get_consent_not_found(self, api_client):
        response = await api_client.get("/api/v1/consent/nobody")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["error_code"] == "RESOURCE_NOT_FOUND"
        assert error["path"] == "/api/v1/consent/nobody"
        assert error["subject_id"] == "nobody"
        assert error["type"] == "Not Found"
        assert error["details"] == {"resource_type": "ConsentRecord"}

    async def test_unknown_path_uses_envelope(self, api_client):
        response = await api_client.get("/api/v1/nothing-here")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["error_code"] == "RESOURCE_NOT_FOUND"
        assert "subject_id" not in error

    async def test_access_without_consent(self, api_client):
        response = await api_client.get("/api/v1/consent/nobody/access")
        assert response.status_code == 200
        assert response.json()["decision"] == "Denied"
        assert response.json()["reason"] == "NoConsent"

    async def test_access_with_scopes(self, api_client):
        await api_client.post(SYNC_URL, json=sync_payload())
        response = await api_client.get("/api/v1/consent/1234-5678-ABCD/access", params={"scopes": ["analytics"]})

        assert response.status_code == 200
        body = response.json()
        assert body["decision"] == "Granted"
        assert body["scopes"] == ["analytics"]

    async def test_lineage(self, api_client):
        await api_client.post(SYNC_URL, json=sync_payload(requestAt="2024-10-24T11:01:05Z"))
        await api_client.post(SYNC_URL, json=sync_payload(requestAt="2024-10-24T11:01:09Z"))

        response = await api_client.get("/api/v1/consent/1234-5678-ABCD/lineage")

        assert response.status_code == 200
        body = response.json()
        assert body["verification"]["valid"] is True
        assert [e["result"] for e in body["entries"]] == ["Access granted", "Duplicate"]
        assert body["entries"][0]["user_id"] == "1234-5678-ABCD"
        assert body["replay"]["decision"] == "Granted"
        assert body["replay"]["duplicates"] == 1


async def test_health():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_engine_dependency_reads_app_state(validity_engine):
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(validity_engine=validity_engine)))
    assert get_validity_engine(request) is validity_engine
