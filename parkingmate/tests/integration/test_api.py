"""
Integration tests for the HTTP API.

Requests go through the FastAPI app (httpx ASGITransport) to a real
SQLite database.
"""

import pytest

from parkingmate.domain.models import utcnow


def _stamp() -> str:
    return utcnow().isoformat() + "Z"


class TestDetectionWebhook:
    """Tests for POST /api/v1/datahub/entry."""

    @pytest.mark.asyncio
    async def test_requires_api_key(self, client):
        response = await client.post(
            "/api/v1/datahub/entry",
            json={"plate": "AB-123"},
            headers={"X-API-Key": "wrong-key-000"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_camera_payload(self, client):
        """Test the camera's own field names are accepted."""
        response = await client.post(
            "/api/v1/datahub/entry",
            json={
                "licensePlate": "ab 123",
                "timestamp": _stamp(),
                "cameraId": "gate-1",
                "direction": "entry",
                "locationName": "North gate",
                "eventId": "cam-1",
                "confidence": 0.93,
                "deviceType": "anpr",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["action"] == "guest_created"
        assert body["isGuestEntry"] is True
        assert "guestId" in body["details"]
        assert body["eventId"]
        assert body["duplicate"] is False
        assert body["error"] is None

    @pytest.mark.asyncio
    async def test_canonical_payload(self, client, seed):
        """Test the canonical field names open a session for a registered vehicle."""
        customer, _ = await seed.owned_vehicle("REG-1")
        response = await client.post(
            "/api/v1/datahub/entry",
            json={
                "plate": "REG-1",
                "timestampUtc": _stamp(),
                "cameraId": "gate-1",
                "direction": "entry",
                "externalEventId": "evt-1",
                "organizationId": "00000000-0000-0000-0000-000000000000",
            },
        )

        body = response.json()
        assert response.status_code == 200
        assert body["action"] == "parking_session_created"
        assert body["details"]["customerId"] == customer.id
        assert body["details"]["sessionId"]

    @pytest.mark.asyncio
    async def test_validation_error(self, client):
        """Test malformed detections return the outcome with 422."""
        response = await client.post(
            "/api/v1/datahub/entry",
            json={"cameraId": "gate-1", "direction": "entry", "timestamp": _stamp()},
        )

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "VALIDATION_ERROR"
        assert body["eventId"] is None

    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Correlation-ID": "corr-123"})
        assert response.headers["X-Correlation-ID"] == "corr-123"


class TestListings:
    """Tests for the read-only listing endpoints."""

    @pytest.mark.asyncio
    async def test_events_and_sessions(self, client, seed):
        await seed.owned_vehicle("REG-1")
        for direction in ("entry", "exit"):
            await client.post(
                "/api/v1/datahub/entry",
                json={
                    "plate": "REG-1",
                    "timestamp": _stamp(),
                    "cameraId": "gate-1",
                    "direction": direction,
                },
            )

        events = (await client.get("/api/v1/events", params={"plate": "reg-1"})).json()
        assert events["count"] == 2
        assert {e["processedAction"] for e in events["events"]} == {
            "parking_session_created",
            "exit_processed",
        }

        completed = (await client.get("/api/v1/sessions", params={"status": "completed"})).json()
        assert completed["count"] == 1
        assert completed["sessions"][0]["exitTime"] is not None

        active = (await client.get("/api/v1/sessions", params={"status": "active"})).json()
        assert active["count"] == 0

    @pytest.mark.asyncio
    async def test_listing_requires_api_key(self, app):
        from httpx import ASGITransport, AsyncClient

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
            assert (await anonymous.get("/api/v1/sessions")).status_code == 401
            assert (await anonymous.get("/api/v1/events")).status_code == 401


class TestGuestValidationApi:
    """Tests for POST /api/v1/guest/validate-plate."""

    @pytest.mark.asyncio
    async def test_confirm_flow(self, client, seed):
        await client.post(
            "/api/v1/datahub/entry",
            json={"plate": "AB-123", "timestamp": _stamp(), "cameraId": "gate-1", "direction": "entry"},
        )

        confirmed = await client.post("/api/v1/guest/validate-plate", json={"plate": "ab-123"})
        assert confirmed.status_code == 200
        body = confirmed.json()
        assert body["plate"] == "AB-123"
        assert body["status"] == "Confirmed"
        assert body["sessionId"]

        again = await client.post("/api/v1/guest/validate-plate", json={"plate": "AB-123"})
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_rejections(self, client, seed):
        await seed.owned_vehicle("REG-1")

        unknown = await client.post("/api/v1/guest/validate-plate", json={"plate": "ZZ-999"})
        registered = await client.post("/api/v1/guest/validate-plate", json={"plate": "REG-1"})
        invalid = await client.post("/api/v1/guest/validate-plate", json={"plate": "A"})

        assert unknown.status_code == 404
        assert registered.status_code == 409
        assert invalid.status_code == 400


class TestRegistrationApi:
    """Tests for the registration endpoints."""

    @pytest.mark.asyncio
    async def test_register_through_api(self, client, seed, notifier):
        await seed.owned_vehicle("NEW-1", registered=False, email="new@example.com")
        detected = await client.post(
            "/api/v1/datahub/entry",
            json={"plate": "NEW-1", "timestamp": _stamp(), "cameraId": "gate-1", "direction": "entry"},
        )
        assert detected.json()["action"] == "registration_email_sent"
        assert detected.json()["details"]["registrationEmailSent"] is True
        token = notifier.sent[-1].data["token"]

        otp = await client.post("/api/v1/registration/otp", json={"token": token})
        assert otp.status_code == 200
        assert otp.json()["emailSent"] is True
        assert otp.json()["email"] == "new@example.com"
        code = notifier.sent[-1].data["code"]

        verified = await client.post(
            "/api/v1/registration/verify",
            json={"email": "new@example.com", "code": code},
        )
        assert verified.status_code == 200
        assert verified.json()["status"] == "registration_completed"

        reused = await client.post("/api/v1/registration/otp", json={"token": token})
        assert reused.status_code == 409

    @pytest.mark.asyncio
    async def test_bad_token_and_code(self, client):
        assert (await client.post("/api/v1/registration/otp", json={"token": "nope"})).status_code == 404
        bad_code = await client.post(
            "/api/v1/registration/verify",
            json={"email": "nobody@example.com", "code": "123456"},
        )
        assert bad_code.status_code == 400

    @pytest.mark.asyncio
    async def test_signin(self, client, seed, notifier):
        await seed.customer(email="member@example.com", registered=True)
        await seed.customer(email="new@example.com", registered=False)

        sent = await client.post("/api/v1/registration/signin", json={"email": "member@example.com"})
        pending = await client.post("/api/v1/registration/signin", json={"email": "new@example.com"})
        unknown = await client.post("/api/v1/registration/signin", json={"email": "nobody@example.com"})

        assert sent.status_code == 200
        assert sent.json()["emailSent"] is True
        assert pending.status_code == 403
        assert unknown.status_code == 404

        verified = await client.post(
            "/api/v1/registration/verify",
            json={"email": "member@example.com", "code": notifier.sent[-1].data["code"]},
        )
        assert verified.json()["status"] == "verified"


class TestSessionAdminApi:
    """Tests for the manual session transitions."""

    async def _open_session(self, client, seed) -> str:
        await seed.owned_vehicle("REG-1")
        response = await client.post(
            "/api/v1/datahub/entry",
            json={"plate": "REG-1", "timestamp": _stamp(), "cameraId": "gate-1", "direction": "entry"},
        )
        return response.json()["details"]["sessionId"]

    @pytest.mark.asyncio
    async def test_expire_active_session(self, client, seed):
        session_id = await self._open_session(client, seed)

        expired = await client.post(f"/api/v1/sessions/{session_id}/expire")
        again = await client.post(f"/api/v1/sessions/{session_id}/expire")

        assert expired.status_code == 200
        assert expired.json()["status"] == "expired"
        assert again.status_code == 409
        active = (await client.get("/api/v1/sessions", params={"status": "active"})).json()
        assert active["count"] == 0

    @pytest.mark.asyncio
    async def test_penalize_session(self, client, seed):
        """Test a penalty is recorded once."""
        session_id = await self._open_session(client, seed)

        penalized = await client.post(
            f"/api/v1/sessions/{session_id}/penalize",
            json={"amount": 25.0},
        )
        again = await client.post(f"/api/v1/sessions/{session_id}/penalize", json={})

        assert penalized.status_code == 200
        assert penalized.json()["status"] == "penalized"
        assert penalized.json()["penaltyAmount"] == 25.0
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_session_and_auth(self, client, app):
        from httpx import ASGITransport, AsyncClient

        assert (await client.post("/api/v1/sessions/missing/expire")).status_code == 404
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
            assert (await anonymous.post("/api/v1/sessions/missing/expire")).status_code == 401


class TestOperations:
    """Tests for health and maintenance endpoints."""

    @pytest.mark.asyncio
    async def test_health_and_ready(self, client):
        assert (await client.get("/health")).json()["status"] == "healthy"
        ready = await client.get("/ready")
        assert ready.status_code == 200
        assert ready.json()["database_connected"] is True

    @pytest.mark.asyncio
    async def test_dispatch_outbox(self, client):
        response = await client.post("/api/v1/notifications/dispatch")
        assert response.status_code == 200
        assert response.json() == {"sent": [], "failed": [], "skipped": [], "attempted": 0}
