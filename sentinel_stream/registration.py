"""Control-plane registration client.

サーバーに topic / media_type を登録し、RTP 送出に使う SSRC とポートを受け取る。
リトライはしない（失敗は設定ミスか制御プレーン不達とみなしてセッションを終了する）。
"""

from __future__ import annotations

import logging

import requests  # type: ignore[import-untyped]
from pydantic import ValidationError

from .config import ConfigurationError
from .error_codes import ErrorCode
from .exceptions import StreamerError
from .models import MediaKind, RegisterStreamRequest, StreamRegistration

logger = logging.getLogger(__name__)

REGISTER_PATH = "/api/streams/register"
DEFAULT_TIMEOUT_SEC = 5.0


class RegistrationError(StreamerError):
    """Base class for registration errors."""

    error_code = ErrorCode.REGISTRATION_REJECTED


class RegistrationConnectionError(RegistrationError):
    """Raised when the control plane is unreachable."""

    error_code = ErrorCode.REGISTRATION_CONNECTION_FAILED


class RegistrationRejectedError(RegistrationError):
    """Raised when the control plane answers with a non-OK status."""

    error_code = ErrorCode.REGISTRATION_REJECTED

    def __init__(self, status_code: int, reason: str, body: str):
        super().__init__(
            f"Server returned non-OK status: {status_code} {reason}\n"
            f"Response body: {body}"
        )
        self.status_code = status_code
        self.reason = reason
        self.body = body


class RegistrationResponseError(RegistrationError):
    """Raised when the response body cannot be decoded."""

    error_code = ErrorCode.REGISTRATION_INVALID_RESPONSE


class RegistrationClient:
    """Thin synchronous HTTP client for stream registration."""

    def __init__(
        self,
        *,
        server_url: str,
        device_id: str,
        device_token: str,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = (server_url or "").strip().rstrip("/")
        self.device_id = device_id
        self.device_token = device_token
        self.timeout_sec = max(0.1, float(timeout_sec))
        self._session = session or requests.Session()

    @property
    def register_url(self) -> str:
        return f"{self.base_url}{REGISTER_PATH}"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Device-Id": self.device_id,
            "Authorization": f"Bearer {self.device_token}",
        }

    def register(
        self, topic: str, media_kind: MediaKind | None = MediaKind.AUDIO
    ) -> StreamRegistration:
        """Register a stream and return the assigned SSRC / RTP port.

        Raises:
            ConfigurationError: topic or credentials are empty (no request sent)
            RegistrationConnectionError: the server could not be reached
            RegistrationRejectedError: any status other than 200
            RegistrationResponseError: the body is not a valid {ssrc, rtp_port}
        """
        if not self.device_id or not self.device_token:
            raise ConfigurationError(
                "device_id and device_token must be set",
                error_code=ErrorCode.CONFIG_MISSING_CREDENTIALS,
            )
        if not self.base_url:
            raise ConfigurationError("server_url must be set")
        try:
            request_body = RegisterStreamRequest(topic=topic, media_type=media_kind)
        except ValidationError as exc:
            raise ConfigurationError(f"topic must be non-empty: {topic!r}") from exc

        url = self.register_url
        logger.info(
            "Registering stream topic=%s media_type=%s at %s",
            request_body.topic,
            media_kind.value if media_kind else "-",
            url,
        )
        try:
            response = self._session.post(
                url,
                json=request_body.to_payload(),
                headers=self._headers(),
                timeout=self.timeout_sec,
            )
        except requests.RequestException as exc:
            raise RegistrationConnectionError(
                f"Error making request to server: {exc}"
            ) from exc

        if response.status_code != requests.codes.ok:
            raise RegistrationRejectedError(
                response.status_code, response.reason or "", response.text
            )

        try:
            registration = StreamRegistration.model_validate_json(response.content)
        except ValidationError as exc:
            raise RegistrationResponseError(
                f"Error decoding response body: {exc}\nResponse body: {response.text}"
            ) from exc

        logger.info(
            "Successfully registered stream. Topic: %s, SSRC: %d, Port: %d",
            request_body.topic,
            registration.ssrc,
            registration.rtp_port,
        )
        return registration
