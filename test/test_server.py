# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# test/test_server.py

"""Tests for the node API served to peers."""

import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from ioserv.backends import FileBackend
from ioserv.config import NodeConfig
from ioserv.errors import NodeCreateError
from ioserv.node import Node
from ioserv.server import NodeServer, create_app
from ioserv.types import AddressSpec, HistoryEntry, ID_SIZE, JOIN_NETWORK, ZERO_ID

LOCAL = AddressSpec("127.0.0.1", 1025, 2)
KEY = "0b" * ID_SIZE


@pytest.fixture
def node():
    with tempfile.TemporaryDirectory() as tmpdir:
        n = Node(NodeConfig(addr=LOCAL, backend=FileBackend(Path(tmpdir)), join=JOIN_NETWORK))
        n.join()
        yield n
        n.destroy()


@pytest.fixture
def client(node):
    with TestClient(create_app(node)) as c:
        yield c


def _put(client, key, data, offset=0):
    return client.put(
        f"/objects/{key}",
        data={"offset": str(offset)},
        files={"data": (key, data, "application/octet-stream")},
    )


class TestIdentity:
    def test_id(self, client):
        body = client.get("/id").json()
        assert body["id"] == ZERO_ID.hex()
        assert body["addr"] == str(LOCAL)
        assert body["joined"] is True
        assert body["routes"] == [{"id": ZERO_ID.hex(), "addr": str(LOCAL)}]

    def test_join_records_member(self, client, node):
        peer = {"id": "80" * ID_SIZE, "addr": "127.0.0.1:1030:2"}
        response = client.post("/join", json=peer)
        assert response.status_code == 200
        assert peer in response.json()["routes"]
        assert AddressSpec("127.0.0.1", 1030, 2) in node.routes

    def test_join_bad_addr(self, client):
        response = client.post("/join", json={"id": "80", "addr": "bad"})
        assert response.status_code == 400
        assert response.json()["code"] < 0


class TestObjects:
    def test_write_read(self, client):
        response = _put(client, KEY, b"hello")
        assert response.status_code == 200
        assert response.json() == {"id": KEY, "size": 5}

        response = client.get(f"/objects/{KEY}")
        assert response.status_code == 200
        assert response.content == b"hello"

    def test_read_window(self, client):
        _put(client, KEY, b"0123456789")
        response = client.get(f"/objects/{KEY}", params={"offset": 3, "size": 4})
        assert response.content == b"3456"

    def test_write_at_offset(self, client):
        _put(client, KEY, b"hello world")
        _put(client, KEY, b"THERE", offset=6)
        assert client.get(f"/objects/{KEY}").content == b"hello THERE"

    def test_history(self, client):
        _put(client, KEY, b"abc")
        _put(client, KEY, b"de", offset=3)
        response = client.get(f"/objects/{KEY}/history")
        entries = HistoryEntry.parse_log(response.content)
        assert [(e.offset, e.size) for e in entries] == [(0, 3), (3, 2)]

    def test_history_window(self, client):
        _put(client, KEY, b"abc")
        _put(client, KEY, b"de", offset=3)
        step = HistoryEntry.RECORD.size
        response = client.get(f"/objects/{KEY}/history", params={"offset": step, "size": step})
        assert len(response.content) == step
        assert HistoryEntry.unpack(response.content).offset == 3

    def test_negative_window_rejected(self, client):
        _put(client, KEY, b"abc")
        response = client.get(f"/objects/{KEY}/history", params={"offset": -1})
        assert response.status_code == 422

    def test_missing_is_404(self, client):
        response = client.get(f"/objects/{KEY}")
        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_bad_id_is_400(self, client):
        assert client.get("/objects/xyz").status_code == 400

    def test_remove(self, client):
        _put(client, KEY, b"abc")
        assert client.delete(f"/objects/{KEY}").json() == {"id": KEY, "removed": True}
        assert client.delete(f"/objects/{KEY}").status_code == 404

    def test_lookup(self, client):
        assert client.get(f"/lookup/{KEY}").json()["exists"] is False
        _put(client, KEY, b"abcd")
        body = client.get(f"/lookup/{KEY}").json()
        assert body["exists"] is True
        assert body["size"] == 4
        assert body["addr"] == str(LOCAL)


class TestStatAndExec:
    def test_stat(self, client):
        _put(client, KEY, b"x")
        body = client.get("/stat").json()
        assert body["addr"] == str(LOCAL)
        assert body["objects"] == 1
        assert body["backend"] == "file"

    def test_exec(self, client):
        body = client.post("/exec", json={"id": "00", "command": "echo hi"}).json()
        assert body["returncode"] == 0
        assert body["stdout"].strip() == "hi"


class TestPendingLimit:
    def test_busy_node_returns_503(self, node):
        node.config.max_pending = 1
        with patch("ioserv.server.threading.BoundedSemaphore") as mock_sem:
            mock_sem.return_value.acquire.return_value = False
            app = create_app(node)
        with TestClient(app) as c:
            response = _put(c, KEY, b"abc")
        assert response.status_code == 503

    def test_busy_node_leaves_upload_unread(self, node):
        node.config.max_pending = 1
        with patch("ioserv.server.threading.BoundedSemaphore") as mock_sem:
            mock_sem.return_value.acquire.return_value = False
            app = create_app(node)
        with patch.object(tempfile.SpooledTemporaryFile, "read") as mock_read, \
                patch.object(node, "process") as mock_process:
            with TestClient(app) as c:
                response = _put(c, KEY, b"abc")
        assert response.status_code == 503
        mock_read.assert_not_called()
        mock_process.assert_not_called()
        mock_sem.return_value.release.assert_not_called()


class TestNodeServer:
    def test_bind_failure(self, node):
        server = NodeServer(node, startup_timeout=1)
        with patch.object(server.server, "run", side_effect=SystemExit(1)):
            with pytest.raises(NodeCreateError):
                server.start()
