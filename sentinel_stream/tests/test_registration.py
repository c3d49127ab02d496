from __future__ import annotations

import json

import pytest
import requests

from sentinel_stream.config import ConfigurationError
from sentinel_stream.error_codes import EXIT_CONFIGURATION, EXIT_REGISTRATION, ErrorCode
from sentinel_stream.models import MediaKind, StreamRegistration
from sentinel_stream.registration import (
    RegistrationClient,
    RegistrationConnectionError,
    RegistrationRejectedError,
    RegistrationResponseError,
)


class _FakeResponse:
    def __init__(self, status_code: int, body: str, reason: str = "") -> None:
        self.status_code = status_code
        self.text = body
        self.content = body.encode("utf-8")
        self.reason = reason


class _FakeSession:
    def __init__(self, response: _FakeResponse | Exception) -> None:
        self._response = response
        self.calls: list[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


def _client(session: _FakeSession, **overrides) -> RegistrationClient:
    kwargs = {
        "server_url": "http://control.local:8080/",
        "device_id": "dev-1",
        "device_token": "secret",
        "timeout_sec": 2.0,
        "session": session,
    }
    kwargs.update(overrides)
    return RegistrationClient(**kwargs)


def test_register_returns_negotiated_stream() -> None:
    session = _FakeSession(_FakeResponse(200, json.dumps({"ssrc": 12345, "rtp_port": 6004})))
    registration = _client(session).register("front_door", MediaKind.AUDIO)

    assert registration == StreamRegistration(ssrc=12345, rtp_port=6004)
    assert len(session.calls) == 1
    call = session.calls[0]
    assert call["url"] == "http://control.local:8080/api/streams/register"
    assert call["json"] == {"topic": "front_door", "media_type": "audio"}
    assert call["headers"]["X-Device-Id"] == "dev-1"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["headers"]["Content-Type"] == "application/json"
    assert call["timeout"] == 2.0


def test_register_accepts_full_u32_ssrc() -> None:
    body = json.dumps({"ssrc": 0xFFFFFFFF, "rtp_port": 5004})
    registration = _client(_FakeSession(_FakeResponse(200, body))).register("t")
    assert registration.ssrc == 0xFFFFFFFF


def test_register_omits_media_type_when_not_given() -> None:
    session = _FakeSession(_FakeResponse(200, '{"ssrc": 1, "rtp_port": 5004}'))
    _client(session).register("clip", None)
    assert session.calls[0]["json"] == {"topic": "clip"}


def test_non_ok_status_carries_body_verbatim() -> None:
    session = _FakeSession(_FakeResponse(400, "invalid topic", reason="Bad Request"))
    with pytest.raises(RegistrationRejectedError) as excinfo:
        _client(session).register("bad topic")

    err = excinfo.value
    assert err.status_code == 400
    assert err.body == "invalid topic"
    assert "invalid topic" in str(err)
    assert "400" in str(err)
    assert err.exit_code == EXIT_REGISTRATION


@pytest.mark.parametrize("status", [201, 204, 401, 500])
def test_only_200_is_success(status) -> None:
    body = '{"ssrc": 1, "rtp_port": 5004}'
    with pytest.raises(RegistrationRejectedError):
        _client(_FakeSession(_FakeResponse(status, body))).register("t")


@pytest.mark.parametrize(
    "body",
    [
        "not json",
        '{"ssrc": 1}',
        '{"rtp_port": 5004}',
        '{"ssrc": -1, "rtp_port": 5004}',
        '{"ssrc": 4294967296, "rtp_port": 5004}',
        '{"ssrc": 1, "rtp_port": 80}',
        '{"ssrc": "1", "rtp_port": 5004}',
    ],
)
def test_malformed_body_is_response_error(body) -> None:
    with pytest.raises(RegistrationResponseError) as excinfo:
        _client(_FakeSession(_FakeResponse(200, body))).register("t")
    assert excinfo.value.error_code is ErrorCode.REGISTRATION_INVALID_RESPONSE


def test_transport_failure_is_connection_error() -> None:
    session = _FakeSession(requests.ConnectionError("refused"))
    with pytest.raises(RegistrationConnectionError) as excinfo:
        _client(session).register("t")
    assert "refused" in str(excinfo.value)
    assert excinfo.value.exit_code == EXIT_REGISTRATION


def test_timeout_is_connection_error() -> None:
    session = _FakeSession(requests.Timeout("slow"))
    with pytest.raises(RegistrationConnectionError):
        _client(session).register("t")


@pytest.mark.parametrize(
    "overrides, topic",
    [
        ({"device_id": ""}, "t"),
        ({"device_token": ""}, "t"),
        ({}, ""),
        ({}, "   "),
        ({"server_url": ""}, "t"),
    ],
)
def test_invalid_input_fails_before_any_request(overrides, topic) -> None:
    session = _FakeSession(_FakeResponse(200, '{"ssrc": 1, "rtp_port": 5004}'))
    with pytest.raises(ConfigurationError) as excinfo:
        _client(session, **overrides).register(topic)
    assert session.calls == []
    assert excinfo.value.exit_code == EXIT_CONFIGURATION
