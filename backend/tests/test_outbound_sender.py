from __future__ import annotations

import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from engagement_web.config import Settings
from engagement_web.outbound import HttpZApiSender, StubOutboundSender, create_outbound_sender


def _make_sender(*, client_token: str = "") -> HttpZApiSender:
    return HttpZApiSender(
        base_url="https://api.z-api.test/",
        instance_id="instance-1",
        instance_token="token-abc",
        client_token=client_token,
    )


def _mock_response(body: bytes) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = 200
    response.read.return_value = body
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("engagement_web.outbound.urllib.request.urlopen")
def test_zapi_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(json.dumps({"zaapId": "z-1", "messageId": "msg-123"}).encode("utf-8"))
    sender = _make_sender(client_token="client-xyz")

    result = sender.send(phone="+55 (11) 99999-0000", content="Hello donor", tenant_id="tenant-a")

    assert result.success is True
    assert result.provider_message_id == "msg-123"
    assert result.attempted_at.tzinfo == timezone.utc
    mock_urlopen.assert_called_once()

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://api.z-api.test/instances/instance-1/token/token-abc/send-text"
    assert request_arg.get_header("Client-token") == "client-xyz"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body == {"phone": "5511999990000", "message": "Hello donor"}


@patch("engagement_web.outbound.urllib.request.urlopen")
def test_zapi_sender_http_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://api.z-api.test/send-text",
        code=500,
        msg="Internal Server Error",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )

    result = _make_sender().send(phone="5511999990000", content="Hello", tenant_id="tenant-a")

    assert result.success is False
    assert result.error_code == "http_500"
    assert result.error_message is not None
    assert "500" in result.error_message
    assert "5511999990000" not in result.error_message


@patch("engagement_web.outbound.urllib.request.urlopen")
def test_zapi_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")

    result = _make_sender().send(phone="5511999990000", content="Hello", tenant_id="tenant-a")

    assert result.success is False
    assert result.error_code == "connection_error"


@patch("engagement_web.outbound.urllib.request.urlopen")
def test_zapi_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _make_sender().send(phone="5511999990000", content="Hello", tenant_id="tenant-a")

    assert result.success is False
    assert result.error_code == "timeout"


@patch("engagement_web.outbound.urllib.request.urlopen")
def test_zapi_sender_invalid_or_incomplete_response(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(b"<html>")
    invalid = _make_sender().send(phone="5511999990000", content="Hello", tenant_id="tenant-a")

    mock_urlopen.return_value = _mock_response(json.dumps({"zaapId": "z-1"}).encode("utf-8"))
    missing = _make_sender().send(phone="5511999990000", content="Hello", tenant_id="tenant-a")

    assert invalid.error_code == "invalid_response"
    assert missing.error_code == "missing_message_id"


@patch("engagement_web.outbound.urllib.request.urlopen")
def test_zapi_sender_rejects_bad_input_without_calling_provider(mock_urlopen: MagicMock) -> None:
    sender = _make_sender()

    assert sender.send(phone="n/a", content="Hello", tenant_id="tenant-a").error_code == "invalid_phone"
    assert sender.send(phone="5511999990000", content="  ", tenant_id="tenant-a").error_code == "empty_content"
    mock_urlopen.assert_not_called()


def test_zapi_sender_requires_configuration() -> None:
    with pytest.raises(ValueError, match="instance_token must not be empty"):
        HttpZApiSender(base_url="https://api.z-api.test", instance_id="instance-1", instance_token="")


def test_stub_sender() -> None:
    sender = StubOutboundSender(enabled=True, failing_phones={"5511000000000"})

    first = sender.send(phone="5511999990000", content="Hi", tenant_id="tenant-a")
    failed = sender.send(phone="5511000000000", content="Hi", tenant_id="tenant-a")
    disabled = StubOutboundSender(enabled=False).send(phone="5511999990000", content="Hi", tenant_id="tenant-a")

    assert first.provider_message_id == "stub-000001"
    assert failed.error_code == "stub_delivery_failed"
    assert disabled.error_code == "outbound_disabled"
    assert sender.sent == [("tenant-a", "5511999990000", "Hi")]


def test_create_outbound_sender() -> None:
    configured = create_outbound_sender(
        Settings(outbound_sender_type="zapi", zapi_instance_id="instance-1", zapi_instance_token="token-abc")
    )
    unconfigured = create_outbound_sender(Settings(outbound_sender_type="zapi"))

    assert isinstance(configured, HttpZApiSender)
    assert isinstance(create_outbound_sender(Settings()), StubOutboundSender)
    assert isinstance(unconfigured, StubOutboundSender)
    assert unconfigured.send(phone="5511999990000", content="Hi", tenant_id="tenant-a").error_code == "outbound_disabled"
