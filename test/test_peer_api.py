# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# test/test_peer_api.py

"""
Tests for PeerClient HTTP layer.

These tests verify the requests sent to a peer's node API, particularly the
multipart body used for writes.
"""

import pytest
from unittest.mock import MagicMock, patch

from ioserv.peer_api import CONNECT_TIMEOUT, PeerAPIError, PeerClient, route_from_dict
from ioserv.types import AddressSpec, ID_SIZE, ZERO_ID

ADDR = AddressSpec("127.0.0.1", 1025, 2)
KEY = b"\x0a" * ID_SIZE


def _response(status=200, json_data=None, content=b"", text=""):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = json_data
    response.content = content
    response.text = text
    return response


class TestRouteFromDict:
    def test_parses_wire_form(self):
        route = route_from_dict({"id": "01" * ID_SIZE, "addr": "10.0.0.1:1030:2"})
        assert route.id == b"\x01" * ID_SIZE
        assert route.addr == AddressSpec("10.0.0.1", 1030, 2)


class TestRequest:
    def test_error_uses_detail(self):
        client = PeerClient(ADDR)
        with patch.object(client.session, "request", return_value=_response(404, {"detail": "not here"})):
            with pytest.raises(PeerAPIError, match="not here") as exc_info:
                client._request("GET", "/id")
        assert exc_info.value.status_code == 404

    def test_error_falls_back_to_text(self):
        client = PeerClient(ADDR)
        response = _response(500, text="boom")
        response.json.side_effect = ValueError("no json")
        with patch.object(client.session, "request", return_value=response):
            with pytest.raises(PeerAPIError, match="boom"):
                client._request("GET", "/stat")

    def test_timeout_default(self):
        client = PeerClient(ADDR, timeout=7)
        with patch.object(client.session, "request", return_value=_response(200, {})) as mock_req:
            client._request("GET", "/id")
        assert mock_req.call_args[1]["timeout"] == (CONNECT_TIMEOUT, 7)
        assert mock_req.call_args[0] == ("GET", "http://127.0.0.1:1025/id")

    def test_connect_timeout_separate_from_wait(self):
        client = PeerClient(ADDR, timeout=3600, connect_timeout=2)
        with patch.object(client.session, "request", return_value=_response(200, {})) as mock_req:
            client._request("GET", "/id")
        assert mock_req.call_args[1]["timeout"] == (2, 3600)

    def test_connect_timeout_capped_by_wait(self):
        client = PeerClient(ADDR, timeout=1)
        assert client.connect_timeout == 1

    def test_retry_configuration(self):
        client = PeerClient(ADDR, resend_count=5)
        retry = client.session.get_adapter("http://127.0.0.1:1025").max_retries
        assert retry.total == 5
        assert 503 in retry.status_forcelist


class TestEndpoints:
    def test_join(self):
        client = PeerClient(ADDR)
        routes = [{"id": "00" * ID_SIZE, "addr": "127.0.0.1:1025:2"}]
        with patch.object(PeerClient, "_request", return_value=_response(200, {"routes": routes})) as mock_req:
            result = client.join(ZERO_ID, AddressSpec("127.0.0.1", 1030, 2))

        assert mock_req.call_args[0] == ("POST", "/join")
        assert mock_req.call_args[1]["json"] == {"id": "00" * ID_SIZE, "addr": "127.0.0.1:1030:2"}
        assert result[0].addr == ADDR

    def test_write_sends_multipart(self):
        client = PeerClient(ADDR)
        with patch.object(PeerClient, "_request", return_value=_response(200, {"size": 5})) as mock_req:
            size = client.write(KEY, 3, b"hello")

        assert size == 5
        args, kwargs = mock_req.call_args
        assert args == ("PUT", f"/objects/{KEY.hex()}")
        assert kwargs["headers"]["Content-Type"].startswith("multipart/form-data")
        body = kwargs["data"]
        assert isinstance(body, bytes)
        assert b'name="offset"' in body
        assert b"hello" in body

    def test_read_params(self):
        client = PeerClient(ADDR)
        with patch.object(PeerClient, "_request", return_value=_response(content=b"data")) as mock_req:
            assert client.read(KEY, 2, 4) == b"data"
        assert mock_req.call_args[1]["params"] == {"offset": 2, "size": 4}

    def test_read_history(self):
        client = PeerClient(ADDR)
        with patch.object(PeerClient, "_request", return_value=_response(content=b"log")) as mock_req:
            assert client.read_history(KEY, 48, 48) == b"log"
        assert mock_req.call_args[0] == ("GET", f"/objects/{KEY.hex()}/history")
        assert mock_req.call_args[1]["params"] == {"offset": 48, "size": 48}

    def test_remove(self):
        client = PeerClient(ADDR)
        with patch.object(PeerClient, "_request", return_value=_response()) as mock_req:
            client.remove(KEY)
        assert mock_req.call_args[0] == ("DELETE", f"/objects/{KEY.hex()}")

    def test_exec(self):
        client = PeerClient(ADDR)
        reply = {"addr": str(ADDR), "command": "true", "returncode": 0, "stdout": "", "stderr": ""}
        with patch.object(PeerClient, "_request", return_value=_response(200, reply)) as mock_req:
            assert client.exec(KEY, "true") == reply
        assert mock_req.call_args[1]["json"] == {"id": KEY.hex(), "command": "true"}
