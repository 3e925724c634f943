import asyncio
import json
import platform
from datetime import timedelta

import httpx
import pytest

from credentials import CredentialIssuer
from database import LocalLicenseCache, LocalLicenseValidationAttempt
from exceptions import SlotLimitReached, VerificationFailed
from hardware_fingerprint import DeviceIdentity
from license_client import LicenseClient, is_within_grace_period
from models import LicenseState
from security import utcnow

from conftest import FakeClock


@pytest.fixture
def make_client(client_db, app_settings, transport, clock):
    clients = []

    def factory(device_id="device-aaaa", transport=transport):
        license_client = LicenseClient(
            client_db,
            app_settings=app_settings,
            identity=DeviceIdentity(device_id),
            device_name=f"Test {device_id}",
            transport=transport,
            clock=clock,
        )
        clients.append(license_client)
        return license_client

    yield factory
    for license_client in clients:
        license_client.close()


def _cached(client_db):
    return client_db.query(LocalLicenseCache).first()


def test_grace_period_boundary(clock):
    now = clock.now

    assert is_within_grace_period(now - timedelta(hours=71, minutes=59), now) is True
    assert is_within_grace_period(now - timedelta(hours=72), now) is True
    assert is_within_grace_period(now - timedelta(hours=72, minutes=1), now) is False
    assert is_within_grace_period(None, now) is False


@pytest.mark.anyio
async def test_activation_caches_state_and_starts_heartbeat(make_client, client_db, clock):
    client = make_client()

    status = await client.activate_license(" ABCD-1234 ")

    assert status.state == LicenseState.ACTIVE
    assert status.isValid is True
    assert status.licensee == "owner@example.com"
    assert client.heartbeat_scheduled
    cached = _cached(client_db)
    assert cached.license_key == "ABCD-1234"
    assert cached.device_id == "device-aaaa"
    assert cached.last_heartbeat == clock.now
    assert cached.token
    assert client.is_license_active()


@pytest.mark.anyio
async def test_second_device_is_rejected(make_client):
    await make_client("device-aaaa").activate_license("ABCD-1234")
    other = make_client("device-bbbb")

    with pytest.raises(SlotLimitReached) as excinfo:
        await other.activate_license("ABCD-1234")

    assert "already activated" in excinfo.value.message
    assert other.state == LicenseState.REJECTED
    assert not other.heartbeat_scheduled


@pytest.mark.anyio
async def test_invalid_key_is_not_activated(make_client, verifier, client_db):
    verifier.rejected.add("FAKE-0000")
    client = make_client()

    with pytest.raises(VerificationFailed):
        await client.activate_license("FAKE-0000")

    assert client.state == LicenseState.UNVERIFIED
    assert _cached(client_db) is None
    attempt = client_db.query(LocalLicenseValidationAttempt).one()
    assert (attempt.action, attempt.result) == ("activate", "failed")


@pytest.mark.anyio
async def test_heartbeat_goes_offline_and_recovers(make_client, transport, client_db, clock):
    client = make_client()
    await client.activate_license("ABCD-1234")
    first_token = _cached(client_db).token

    transport.online = False
    clock.advance(hours=30)
    assert await client.send_heartbeat() == LicenseState.ACTIVE_OFFLINE
    assert client.get_license_status().inGracePeriod is True
    assert client.is_license_active()

    transport.online = True
    clock.advance(hours=1)
    assert await client.send_heartbeat() == LicenseState.ACTIVE
    cached = _cached(client_db)
    assert cached.last_heartbeat == clock.now
    assert cached.token != first_token


@pytest.mark.anyio
async def test_grace_window_exceeded_expires_license(make_client, transport, clock):
    client = make_client()
    await client.activate_license("ABCD-1234")

    transport.online = False
    clock.advance(hours=72, minutes=1)

    assert await client.send_heartbeat() == LicenseState.EXPIRED
    assert not client.heartbeat_scheduled
    assert not client.is_license_active()
    assert client.get_license_status().isValid is False


@pytest.mark.anyio
async def test_heartbeat_rejected_after_remote_deactivation(make_client, client_db, store):
    client = make_client()
    await client.activate_license("ABCD-1234")
    store.revoke("ABCD-1234", "device-aaaa")

    assert await client.send_heartbeat() == LicenseState.REVOKED
    assert _cached(client_db) is None
    assert not client.heartbeat_scheduled


@pytest.mark.anyio
async def test_deactivation_clears_cache_and_cancels_heartbeat(make_client, client_db, store):
    client = make_client()
    await client.activate_license("ABCD-1234")

    success, message = await client.deactivate_device()

    assert success is True
    assert message == "Device deactivated successfully"
    assert client.state == LicenseState.REVOKED
    assert not client.heartbeat_scheduled
    assert _cached(client_db) is None
    assert store.list_active("ABCD-1234") == []


@pytest.mark.anyio
async def test_startup_check_uses_cache_when_offline(make_client, transport, clock):
    await make_client().activate_license("ABCD-1234")

    # next application start
    restarted = make_client()
    transport.online = False
    clock.advance(hours=10)
    status = await restarted.verify_license("ABCD-1234")

    assert status.state == LicenseState.ACTIVE_OFFLINE
    assert status.isValid is True
    assert restarted.heartbeat_scheduled


@pytest.mark.anyio
async def test_startup_check_reactivates_after_grace(make_client, transport, clock, client_db):
    await make_client().activate_license("ABCD-1234")
    clock.advance(days=4)

    restarted = make_client()
    status = await restarted.verify_license("ABCD-1234")

    assert status.state == LicenseState.ACTIVE
    assert _cached(client_db).last_heartbeat == clock.now


@pytest.mark.anyio
async def test_startup_check_offline_without_cache_reports_invalid(make_client, transport):
    client = make_client()
    transport.online = False

    status = await client.verify_license("ABCD-1234")

    assert status.isValid is False
    assert status.state == LicenseState.UNVERIFIED
    assert status.message == "License server unreachable"


@pytest.mark.anyio
async def test_expired_token_triggers_heartbeat(make_client, client_db, app_settings):
    client = make_client()
    await client.activate_license("ABCD-1234")
    stale = CredentialIssuer(app_settings.JWT_SECRET, expiry_days=-1).issue(
        "ABCD-1234", "device-aaaa", "stale",
    )
    _cached(client_db).token = stale
    client_db.commit()

    token = await client.ensure_fresh_token()

    assert token is not None
    assert token != stale
    assert token == _cached(client_db).token
    assert CredentialIssuer(app_settings.JWT_SECRET).decode(token)["device_id"] == "device-aaaa"


@pytest.mark.anyio
async def test_fresh_token_is_returned_without_network(make_client, transport, client_db):
    client = make_client()
    await client.activate_license("ABCD-1234")
    transport.online = False

    assert await client.ensure_fresh_token() == _cached(client_db).token


@pytest.mark.anyio
async def test_server_errors_count_as_offline(make_client, clock):
    online = make_client()
    await online.activate_license("ABCD-1234")

    failing = make_client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    clock.advance(hours=2)

    assert await failing.send_heartbeat() == LicenseState.ACTIVE_OFFLINE


def test_device_mismatch_clears_cache(make_client, client_db, clock):
    client_db.add(LocalLicenseCache(
        license_key="ABCD-1234",
        device_id="some-other-device",
        token="token",
        is_valid=True,
        last_heartbeat=clock.now,
    ))
    client_db.commit()

    assert make_client().is_license_active() is False
    assert _cached(client_db) is None


@pytest.mark.anyio
@pytest.mark.parametrize("status_code", [400, 404, 408, 429])
async def test_non_auth_heartbeat_failures_keep_the_license(make_client, client_db, clock, status_code):
    await make_client().activate_license("ABCD-1234")
    failing = make_client(transport=httpx.MockTransport(
        lambda request: httpx.Response(status_code, json={"success": False, "message": "Try again later"})
    ))
    clock.advance(hours=2)

    assert await failing.send_heartbeat() == LicenseState.ACTIVE_OFFLINE
    cached = _cached(client_db)
    assert cached is not None
    assert cached.is_valid
    assert failing.is_license_active()


@pytest.mark.anyio
async def test_concurrent_activations_for_different_keys_are_verified_separately(make_client, verifier):
    verifier.rejected.add("BAD-KEY")
    client = make_client()

    good, bad = await asyncio.gather(
        client.activate_license("ABCD-1234"),
        client.activate_license("BAD-KEY"),
        return_exceptions=True,
    )

    assert good.isValid is True
    assert isinstance(bad, VerificationFailed)
    assert sorted(key for key, _ in verifier.calls) == ["ABCD-1234", "BAD-KEY"]
    assert client._in_flight == {}


@pytest.mark.anyio
async def test_concurrent_activations_for_the_same_key_share_one_request(make_client, verifier):
    client = make_client()

    await asyncio.gather(
        client.activate_license("ABCD-1234"),
        client.activate_license(" ABCD-1234 "),
    )

    assert verifier.calls == [("ABCD-1234", True)]


@pytest.mark.anyio
async def test_activation_reports_system_info(make_client):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={
            "success": True,
            "token": "token",
            "purchase": {"email": "owner@example.com"},
        })

    client = make_client(transport=httpx.MockTransport(handler))
    await client.activate_license("ABCD-1234")

    assert seen[0]["systemInfo"]["os_platform"] == platform.system()
    assert seen[0]["deviceId"] == "device-aaaa"


@pytest.mark.anyio
async def test_token_freshness_is_judged_by_the_wall_clock(client_db, app_settings, transport):
    # local clock already past the token's exp
    ahead = FakeClock(start=utcnow() + timedelta(days=30))
    client = LicenseClient(
        client_db,
        app_settings=app_settings,
        identity=DeviceIdentity("device-aaaa"),
        device_name="Test device-aaaa",
        transport=transport,
        clock=ahead,
    )
    try:
        await client.activate_license("ABCD-1234")
        token = _cached(client_db).token
        transport.online = False

        assert await client.ensure_fresh_token() == token
    finally:
        client.close()
