"""Tests for the registration, operations and webhook routes."""

import json

from a2p_registry.api.middleware.auth import compute_signature
from a2p_registry.cli.config import A2PConfig, APIConfig
from a2p_registry.services import client_provider
from tests.helpers import (
    OPERATOR_KEY,
    TENANT_ID,
    USER_ID,
    WEBHOOK_SECRET,
    brand_form,
    fill_wizard,
)

USER_HEADERS = {"X-User-Id": USER_ID}
OPS_HEADERS = {"X-Operator-Key": OPERATOR_KEY}


def _start(client) -> dict:
    response = client.post(
        "/api/v1/registrations", json={"tenant_id": TENANT_ID}, headers=USER_HEADERS
    )
    assert response.status_code == 201
    return response.json()


class TestRegistrationRoutes:

    def test_start_requires_acting_user(self, client):
        response = client.post("/api/v1/registrations", json={"tenant_id": TENANT_ID})
        assert response.status_code == 400

    def test_start_and_resume(self, client):
        first = _start(client)
        second = _start(client)

        assert first["status"] == "draft"
        assert first["current_step"] == 1
        assert second["id"] == first["id"]

    def test_save_step(self, client):
        registration = _start(client)

        response = client.put(
            f"/api/v1/registrations/{registration['id']}/steps/1",
            json={"data": brand_form(), "expected_version": registration["version"]},
            headers=USER_HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["version"] == registration["version"] + 1
        assert body["completed_by"] == USER_ID

    def test_stale_expected_version(self, client):
        registration = _start(client)
        url = f"/api/v1/registrations/{registration['id']}/steps/1"
        client.put(url, json={"data": brand_form()}, headers=USER_HEADERS)

        response = client.put(
            url,
            json={"data": brand_form(), "expected_version": registration["version"]},
            headers=USER_HEADERS,
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "E-2001"

    def test_invalid_step_payload(self, client):
        registration = _start(client)

        response = client.put(
            f"/api/v1/registrations/{registration['id']}/steps/1",
            json={"data": brand_form(ein="123")},
            headers=USER_HEADERS,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "E-1001"
        assert "ein" in body["field_errors"]
        assert body["is_retryable"] is False

    def test_step_without_data(self, client):
        registration = _start(client)
        response = client.put(
            f"/api/v1/registrations/{registration['id']}/steps/2",
            json={},
            headers=USER_HEADERS,
        )
        assert response.status_code == 400

    def test_unknown_registration(self, client):
        response = client.get("/api/v1/registrations/does-not-exist/status")

        assert response.status_code == 404
        body = response.json()
        assert body["error_code"] == "E-2006"
        assert body["remediation"]

    def test_advance_and_status(self, client, orchestrator, gateway):
        registration = fill_wizard(orchestrator)

        response = client.post(f"/api/v1/registrations/{registration.id}/advance")

        assert response.status_code == 200
        assert response.json()["status"] == "campaign_pending"
        gateway.register_brand.assert_called_once()

        status = client.get(f"/api/v1/registrations/{registration.id}/status").json()
        assert status["brand_ref"] == "BN-100"
        assert status["brand_status"] == "pending"
        assert [n["phone_number"] for n in status["per_number_status"]] == [
            "+14155550101",
            "+14155550102",
        ]

    def test_abandon_past_draft_conflicts(self, client, orchestrator):
        registration = fill_wizard(orchestrator)
        client.post(f"/api/v1/registrations/{registration.id}/advance")

        response = client.post(f"/api/v1/registrations/{registration.id}/abandon")

        assert response.status_code == 409
        assert response.json()["error_code"] == "E-2003"

    def test_remove_requires_numbers(self, client, orchestrator):
        registration = fill_wizard(orchestrator)
        response = client.post(
            f"/api/v1/registrations/{registration.id}/numbers/remove", json={}
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "E-1003"

    def test_events_and_export(self, client, orchestrator):
        registration = fill_wizard(orchestrator)
        client.post(f"/api/v1/registrations/{registration.id}/advance")

        events = client.get(f"/api/v1/registrations/{registration.id}/events").json()
        exported = client.get(f"/api/v1/registrations/{registration.id}/events/export")

        assert events["registration_id"] == registration.id
        assert events["events"]
        assert exported.status_code == 200
        assert exported.headers["content-type"].startswith("text/plain")
        assert "12-3456789" not in exported.text


class TestOpsRoutes:

    def test_operator_key_required(self, client, orchestrator):
        registration = fill_wizard(orchestrator)

        missing = client.get(f"/api/v1/ops/registrations/{registration.id}/attempts")
        wrong = client.get(
            f"/api/v1/ops/registrations/{registration.id}/attempts",
            headers={"X-Operator-Key": "nope"},
        )

        assert missing.status_code == 403
        assert wrong.status_code == 403

    def test_attempts(self, client, orchestrator):
        registration = fill_wizard(orchestrator)
        client.post(f"/api/v1/registrations/{registration.id}/advance")

        response = client.get(
            f"/api/v1/ops/registrations/{registration.id}/attempts", headers=OPS_HEADERS
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        attempt = body["attempts"][0]
        assert attempt["attempt_type"] == "brand_registration"
        assert attempt["status"] == "success"
        assert attempt["request_data"]["payload"]["ein"] == "***REDACTED***"

    def test_force_reconcile_with_nothing_pending(self, client, orchestrator):
        registration = fill_wizard(orchestrator)

        response = client.post(
            f"/api/v1/ops/registrations/{registration.id}/reconcile", headers=OPS_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["results"] == []

    def test_sweep(self, client, orchestrator):
        registration = fill_wizard(orchestrator)
        client.post(f"/api/v1/registrations/{registration.id}/advance")

        response = client.post("/api/v1/ops/sweep", headers=OPS_HEADERS)

        assert response.status_code == 200
        assert response.json()["visited"] == 1


class TestWebhook:

    def _post(self, client, payload: dict, secret: str = WEBHOOK_SECRET):
        body = json.dumps(payload).encode("utf-8")
        return client.post(
            "/api/v1/webhooks/compliance",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Compliance-Signature": compute_signature(body, secret),
            },
        )

    def test_bad_signature(self, client):
        response = self._post(client, {"upstream_ref": "BN-100", "status": "approved"}, "wrong")
        assert response.status_code == 401

    def test_applies_status_once(self, client, orchestrator):
        registration = fill_wizard(orchestrator)
        client.post(f"/api/v1/registrations/{registration.id}/advance")

        first = self._post(client, {"upstreamRef": "BN-100", "status": "APPROVED"})
        second = self._post(client, {"upstreamRef": "BN-100", "status": "APPROVED"})

        assert first.status_code == 200
        assert first.json()["status"] == "approved"
        assert first.json()["changed"] is True
        assert first.json()["registrations"] == [registration.id]
        assert second.json()["changed"] is False

    def test_unknown_reference(self, client):
        response = self._post(client, {"upstream_ref": "BN-404", "status": "approved"})
        assert response.status_code == 404

    def test_malformed_body(self, client):
        response = self._post(client, {"status": "approved"})
        assert response.status_code == 400


class TestApiKeyMiddleware:

    def test_api_key_enforced(self, client, monkeypatch):
        monkeypatch.setattr(
            client_provider, "_config", A2PConfig(api=APIConfig(api_key="secret-key"))
        )

        denied = client.get("/api/v1/registrations/r1")
        allowed = client.get("/api/v1/registrations/r1", headers={"X-API-Key": "secret-key"})

        assert denied.status_code == 401
        # Authenticated, then the lookup itself fails
        assert allowed.status_code == 404

    def test_webhook_exempt(self, client, monkeypatch):
        monkeypatch.setattr(
            client_provider, "_config", A2PConfig(api=APIConfig(api_key="secret-key"))
        )
        body = json.dumps({"upstream_ref": "BN-404", "status": "approved"}).encode("utf-8")
        response = client.post(
            "/api/v1/webhooks/compliance",
            content=body,
            headers={"X-Compliance-Signature": compute_signature(body, WEBHOOK_SECRET)},
        )
        # Signed, no API key, reaches the lookup
        assert response.status_code == 404
