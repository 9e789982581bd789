"""
HTTP client for the credential authority's REST contract (httpx).

Request and response bodies use the same pydantic wire models as the
server, so field names and encodings cannot drift apart.
"""

import base64
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx

from devicemfa.client.errors import ServerRejected
from devicemfa.models.device import AuthMethod
from devicemfa.schemas.auth import (
    AuthInitiateRequest,
    AuthResponse,
    ChallengeResponse,
    CodeRequest,
    VerifyCodeRequest,
    VerifySignatureRequest,
)
from devicemfa.schemas.base import WireModel
from devicemfa.schemas.device import DeviceStatusResponse
from devicemfa.schemas.enrollment import (
    DeviceRequest,
    EnrollmentRequest,
    EnrollmentResponse,
    UpgradeRequest,
)

logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT", bound=WireModel)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


class MFAApiClient:
    """Async client for one credential authority."""

    def __init__(
        self,
        base_url: str,
        api_prefix: str = "/api/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Server origin, e.g. ``https://mfa.example.com``
            api_prefix: Mount point of the REST API
            timeout: Per-request timeout in seconds
            transport: Custom transport (e.g. ``httpx.ASGITransport`` in tests)
        """
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + api_prefix,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "MFAApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _send(self, method: str, path: str, body: Optional[WireModel] = None) -> Any:
        kwargs: Dict[str, Any] = {}
        if body is not None:
            kwargs["json"] = body.model_dump(by_alias=True, exclude_none=True, mode="json")

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Request to {path} failed: {e}")
            raise ServerRejected(f"Server unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise ServerRejected(
                f"Unexpected response from server ({response.status_code})",
                status_code=response.status_code,
            )

        if response.is_error or (isinstance(data, dict) and data.get("success") is False):
            message = data.get("message") if isinstance(data, dict) else None
            error = data.get("error") if isinstance(data, dict) else None
            logger.info(f"Server rejected {path}: {response.status_code} {error}")
            raise ServerRejected(
                message or f"Request failed ({response.status_code})",
                status_code=response.status_code,
                error=error,
            )
        return data

    async def _call(self, model: Type[ResponseT], method: str, path: str, body: Optional[WireModel] = None) -> ResponseT:
        return model.model_validate(await self._send(method, path, body))

    # Enrollment

    async def enroll(
        self,
        username: str,
        device_id: str,
        method: AuthMethod,
        public_key: Optional[bytes] = None,
        address: Optional[str] = None,
        device_model: Optional[str] = None,
    ) -> EnrollmentResponse:
        body = EnrollmentRequest(
            username=username,
            device_id=device_id,
            method=method,
            public_key=_b64(public_key) if public_key else None,
            address=address,
            device_model=device_model,
        )
        return await self._call(EnrollmentResponse, "POST", "/mfa/enroll", body)

    async def unenroll(self, username: str, device_id: str) -> EnrollmentResponse:
        body = DeviceRequest(username=username, device_id=device_id)
        return await self._call(EnrollmentResponse, "POST", "/mfa/unenroll", body)

    async def upgrade(self, username: str, device_id: str, public_key: bytes) -> EnrollmentResponse:
        body = UpgradeRequest(username=username, device_id=device_id, public_key=_b64(public_key))
        return await self._call(EnrollmentResponse, "POST", "/mfa/upgrade", body)

    async def downgrade(self, username: str, device_id: str) -> EnrollmentResponse:
        body = DeviceRequest(username=username, device_id=device_id)
        return await self._call(EnrollmentResponse, "POST", "/mfa/downgrade", body)

    # Authentication

    async def initiate(self, username: str, device_id: str) -> ChallengeResponse:
        body = AuthInitiateRequest(username=username, device_id=device_id)
        return await self._call(ChallengeResponse, "POST", "/auth/initiate", body)

    async def verify_signature(
        self, username: str, device_id: str, challenge_id: str, signature: bytes
    ) -> AuthResponse:
        body = VerifySignatureRequest(
            username=username,
            device_id=device_id,
            challenge_id=challenge_id,
            signature=_b64(signature),
        )
        return await self._call(AuthResponse, "POST", "/auth/verify-signature", body)

    async def request_code(self, username: str, address: str) -> AuthResponse:
        body = CodeRequest(username=username, address=address)
        return await self._call(AuthResponse, "POST", "/auth/request-otp", body)

    async def verify_code(self, username: str, code: str) -> AuthResponse:
        # Sent as-is; the server owns validation
        return await self._call(
            AuthResponse,
            "POST",
            "/auth/verify-otp",
            VerifyCodeRequest.model_construct(username=username, code=code),
        )

    # Status

    async def device_status(self, device_id: str) -> DeviceStatusResponse:
        return await self._call(DeviceStatusResponse, "GET", f"/device/{device_id}/status")

    async def user_devices(self, username: str) -> List[DeviceStatusResponse]:
        data = await self._send("GET", f"/devices/{username}")
        return [DeviceStatusResponse.model_validate(item) for item in data]
