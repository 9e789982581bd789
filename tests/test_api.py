import base64

from conftest import make_key, public_key_b64, sign_b64
from devicemfa.models.device import AuthMethod

PREFIX = "/api/v1"
ADDRESS = "+15551234567"


async def _enroll(client, key, username="alice", device_id="D1", address=None):
    body = {
        "username": username,
        "deviceId": device_id,
        "method": "ASYMMETRIC_KEY",
        "publicKey": public_key_b64(key),
        "deviceModel": "Pixel 8",
    }
    if address:
        body["address"] = address
    return await client.post(f"{PREFIX}/mfa/enroll", json=body)


async def test_health(http_client):
    response = await http_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_enroll_and_sign_in_round_trip(http_client, private_key):
    response = await _enroll(http_client, private_key)
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "deviceId": "D1",
        "method": "ASYMMETRIC_KEY",
        "message": "Device enrolled successfully",
    }

    response = await http_client.post(f"{PREFIX}/auth/initiate", json={"username": "alice", "deviceId": "D1"})
    assert response.status_code == 200
    grant = response.json()
    assert grant["method"] == "ASYMMETRIC_KEY"
    assert grant["expiresIn"] == 300
    nonce = base64.b64decode(grant["challenge"])
    assert len(nonce) == 32

    body = {
        "username": "alice",
        "deviceId": "D1",
        "challengeId": grant["challengeId"],
        "signature": sign_b64(private_key, nonce),
    }
    response = await http_client.post(f"{PREFIX}/auth/verify-signature", json=body)
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["token"]

    response = await http_client.post(f"{PREFIX}/auth/verify-signature", json=body)
    assert response.status_code == 409
    assert response.json() == {"success": False, "error": "already_used", "message": "Challenge already used"}


async def test_invalid_signature_is_401(http_client, private_key):
    await _enroll(http_client, private_key)
    grant = (await http_client.post(f"{PREFIX}/auth/initiate", json={"username": "alice", "deviceId": "D1"})).json()

    response = await http_client.post(f"{PREFIX}/auth/verify-signature", json={
        "username": "alice",
        "deviceId": "D1",
        "challengeId": grant["challengeId"],
        "signature": sign_b64(make_key(), base64.b64decode(grant["challenge"])),
    })

    assert response.status_code == 401
    assert response.json()["success"] is False
    assert response.json()["error"] == "invalid_signature"


async def test_unknown_device_is_404(http_client):
    response = await http_client.post(f"{PREFIX}/auth/initiate", json={"username": "alice", "deviceId": "nope"})
    assert response.status_code == 404
    assert response.json()["success"] is False


async def test_missing_field_is_400_with_failure_body(http_client):
    response = await http_client.post(f"{PREFIX}/mfa/enroll", json={"username": "alice", "method": "ASYMMETRIC_KEY"})
    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert data["error"] == "validation_error"
    assert "deviceId" in data["message"]


async def test_key_enrollment_without_key_is_400(http_client):
    response = await http_client.post(f"{PREFIX}/mfa/enroll", json={
        "username": "alice", "deviceId": "D1", "method": "ASYMMETRIC_KEY",
    })
    assert response.status_code == 400
    assert response.json()["message"] == "Public key is required for ASYMMETRIC_KEY method"


async def test_out_of_band_flow(http_client, delivery):
    response = await http_client.post(f"{PREFIX}/mfa/enroll", json={
        "username": "alice", "deviceId": "D1", "method": "OUT_OF_BAND_CODE", "address": ADDRESS,
    })
    assert response.status_code == 200

    response = await http_client.post(f"{PREFIX}/auth/initiate", json={"username": "alice", "deviceId": "D1"})
    assert response.json() == {"method": "OUT_OF_BAND_CODE", "expiresIn": 300}

    response = await http_client.post(f"{PREFIX}/auth/request-otp", json={"username": "alice", "address": ADDRESS})
    assert response.status_code == 200
    assert ADDRESS not in response.json()["message"]
    code = delivery.last_code

    wrong = "000000" if code != "000000" else "111111"
    response = await http_client.post(f"{PREFIX}/auth/verify-otp", json={"username": "alice", "code": wrong})
    assert response.status_code == 404

    response = await http_client.post(f"{PREFIX}/auth/verify-otp", json={"username": "alice", "code": code})
    assert response.status_code == 200
    assert response.json()["token"]

    response = await http_client.post(f"{PREFIX}/auth/verify-otp", json={"username": "alice", "code": code})
    assert response.status_code == 409


async def test_short_code_is_400(http_client):
    response = await http_client.post(f"{PREFIX}/auth/verify-otp", json={"username": "alice", "code": "123"})
    assert response.status_code == 400
    assert response.json()["success"] is False


async def test_downgrade_upgrade_and_status(http_client, private_key):
    await _enroll(http_client, private_key, address=ADDRESS)

    response = await http_client.get(f"{PREFIX}/device/D1/status")
    status = response.json()
    assert status["enrolled"] is True
    assert status["method"] == "ASYMMETRIC_KEY"
    assert status["hasKey"] is True
    assert status["address"] == ADDRESS
    assert status["lastUsedAt"] is None

    response = await http_client.post(f"{PREFIX}/mfa/downgrade", json={"username": "alice", "deviceId": "D1"})
    assert response.json()["method"] == "OUT_OF_BAND_CODE"
    status = (await http_client.get(f"{PREFIX}/device/D1/status")).json()
    assert status["hasKey"] is False

    response = await http_client.post(f"{PREFIX}/mfa/upgrade", json={
        "username": "alice", "deviceId": "D1", "publicKey": public_key_b64(private_key),
    })
    assert response.json()["method"] == "ASYMMETRIC_KEY"


async def test_status_of_unknown_device(http_client):
    response = await http_client.get(f"{PREFIX}/device/ghost/status")
    assert response.status_code == 200
    assert response.json() == {"deviceId": "ghost", "enrolled": False, "method": None, "hasKey": False,
                               "address": None, "enrolledAt": None, "lastUsedAt": None}


async def test_unenroll(http_client, private_key):
    await _enroll(http_client, private_key)

    response = await http_client.post(f"{PREFIX}/mfa/unenroll", json={"username": "alice", "deviceId": "D1"})
    assert response.status_code == 200
    assert response.json()["success"] is True

    response = await http_client.post(f"{PREFIX}/mfa/unenroll", json={"username": "alice", "deviceId": "D1"})
    assert response.status_code == 404


async def test_list_user_devices(http_client, private_key):
    await _enroll(http_client, private_key, device_id="D1")
    await _enroll(http_client, make_key(), device_id="D2")

    response = await http_client.get(f"{PREFIX}/devices/alice")
    assert response.status_code == 200
    assert sorted(d["deviceId"] for d in response.json()) == ["D1", "D2"]


async def test_client_lists_user_devices(http_client, api_client, private_key):
    await _enroll(http_client, private_key, device_id="D1")
    await api_client.enroll("alice", "D2", AuthMethod.OUT_OF_BAND_CODE, address=ADDRESS)

    devices = await api_client.user_devices("alice")

    by_id = {device.device_id: device for device in devices}
    assert set(by_id) == {"D1", "D2"}
    assert by_id["D1"].has_key is True
    assert by_id["D2"].has_key is False
    assert by_id["D2"].address == ADDRESS
    assert await api_client.user_devices("nobody") == []
