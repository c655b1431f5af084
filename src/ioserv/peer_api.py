# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# src/ioserv/peer_api.py

"""
HTTP client for the ioserv node API.

Every node serves the same API (see ioserv.server); this client is how a
node talks to its peers. Requests are resent on connection failures and on
HTTP 503 (peer busy), up to the node's resend count.
"""

import io
import logging

import requests
from requests.adapters import HTTPAdapter, Retry
from requests_toolbelt import MultipartEncoder

from ioserv.parse import parse_addr
from ioserv.types import AddressSpec, RouteEntry

logger = logging.getLogger(__name__)

# Seconds to establish a connection; the wait timeout only bounds the reply.
CONNECT_TIMEOUT = 5


class PeerAPIError(Exception):
    """Raised when a peer's API returns an error."""

    def __init__(self, message: str, status_code: int = None, response: dict = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


def route_from_dict(data: dict) -> RouteEntry:
    """Build a RouteEntry from the wire form {'id': hex, 'addr': 'host:port:family'}."""
    return RouteEntry(id=bytes.fromhex(data["id"]), addr=parse_addr(data["addr"]))


class PeerClient:
    """HTTP client for a single remote node."""

    def __init__(
        self,
        addr: AddressSpec,
        timeout: float = 3600,
        resend_count: int = 3,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        """
        Initialize peer client.

        Args:
            addr: Address of the remote node
            timeout: Seconds to wait for a reply (the node's wait timeout)
            resend_count: How many times to resend a failed request
            connect_timeout: Seconds allowed to connect, capped by timeout
        """
        self.addr = addr
        self.base_url = addr.url
        self.timeout = timeout
        self.connect_timeout = min(connect_timeout, timeout)
        self.session = requests.Session()
        retry = Retry(
            total=resend_count,
            read=0,
            status_forcelist=(503,),
            allowed_methods=None,
            backoff_factor=0.1,
            raise_on_status=False,
        )
        self.session.mount("http://", HTTPAdapter(max_retries=retry))

    def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        """Make HTTP request to the peer API."""
        url = f"{self.base_url}{endpoint}"
        kwargs.setdefault("timeout", (self.connect_timeout, self.timeout))

        logger.debug(f"Request: {method} {url}")
        response = self.session.request(method, url, **kwargs)
        logger.debug(f"Response status: {response.status_code}")

        if response.status_code >= 400:
            try:
                error_data = response.json()
                msg = error_data.get("detail", response.text)
            except Exception:
                msg = response.text
            raise PeerAPIError(msg, response.status_code)

        return response

    def id(self) -> dict:
        """
        Get the peer's identity.

        Returns dict with: id, addr, joined, routes
        """
        return self._request("GET", "/id").json()

    def join(self, node_id: bytes, addr: AddressSpec) -> list[RouteEntry]:
        """Announce a serving member to the peer, returns the peer's routes."""
        response = self._request(
            "POST", "/join", json={"id": node_id.hex(), "addr": str(addr)}
        )
        return [route_from_dict(r) for r in response.json().get("routes", [])]

    def write(self, key: bytes, offset: int, data: bytes) -> int:
        """
        Write data into the object at offset.

        The multipart body is rendered to bytes up front so it can be resent.
        """
        encoder = MultipartEncoder(fields={
            "offset": str(offset),
            "data": (key.hex(), io.BytesIO(data), "application/octet-stream"),
        })
        logger.debug(f"write: {key.hex()} offset={offset} size={len(data)} body={encoder.len}")
        response = self._request(
            "PUT",
            f"/objects/{key.hex()}",
            data=encoder.to_string(),
            headers={"Content-Type": encoder.content_type},
        )
        return response.json().get("size", 0)

    def read(self, key: bytes, offset: int = 0, size: int = 0) -> bytes:
        response = self._request(
            "GET", f"/objects/{key.hex()}", params={"offset": offset, "size": size}
        )
        return response.content

    def read_history(self, key: bytes, offset: int = 0, size: int = 0) -> bytes:
        response = self._request(
            "GET", f"/objects/{key.hex()}/history", params={"offset": offset, "size": size}
        )
        return response.content

    def remove(self, key: bytes) -> None:
        self._request("DELETE", f"/objects/{key.hex()}")

    def lookup(self, key: bytes) -> dict:
        """
        Ask the peer about an object.

        Returns dict with: addr, node_id, exists, size
        """
        return self._request("GET", f"/lookup/{key.hex()}").json()

    def stat(self) -> dict:
        return self._request("GET", "/stat").json()

    def exec(self, trans_id: bytes, command: str) -> dict:
        """
        Execute a command on the peer.

        Returns dict with: addr, command, returncode, stdout, stderr
        """
        response = self._request(
            "POST", "/exec", json={"id": trans_id.hex(), "command": command}
        )
        return response.json()

    def close(self) -> None:
        self.session.close()
