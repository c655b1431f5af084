# Author: PB and Claude
# Date: 2026-10-18
# License: (c) HRDAG, 2026, GPL-2 or newer
#
# ---
# test/test_types.py

"""Tests for ioserv types module."""

import json
import socket
from datetime import datetime, timezone

from ioserv.types import (
    ID_SIZE,
    OPERATION_ORDER,
    RC_SUCCESS,
    AddressSpec,
    CommandResult,
    HistoryEntry,
    LookupResult,
    NodeStat,
    OperationKind,
    OperationResult,
    RouteEntry,
    StatReport,
    ZERO_ID,
)


class TestAddressSpec:
    def test_str_is_wire_form(self):
        addr = AddressSpec("127.0.0.1", 1025, socket.AF_INET)
        assert str(addr) == f"127.0.0.1:1025:{int(socket.AF_INET)}"

    def test_url_ipv4(self):
        assert AddressSpec("10.0.0.1", 8080).url == "http://10.0.0.1:8080"

    def test_url_ipv6_brackets_host(self):
        addr = AddressSpec("::1", 1025, socket.AF_INET6)
        assert addr.url == "http://[::1]:1025"

    def test_hashable(self):
        a = AddressSpec("h", 1)
        b = AddressSpec("h", 1)
        assert {a: 1}[b] == 1


class TestHistoryEntry:
    def test_record_size(self):
        assert HistoryEntry.RECORD.size == 48

    def test_pack_unpack(self):
        entry = HistoryEntry(id=b"\x01" * ID_SIZE, offset=10, size=5, timestamp=1700000000.5, flags=3)
        raw = entry.pack()
        assert len(raw) == 48
        assert HistoryEntry.unpack(raw) == entry

    def test_parse_log_ignores_partial_record(self):
        a = HistoryEntry.now(ZERO_ID, 0, 10).pack()
        b = HistoryEntry.now(ZERO_ID, 10, 20).pack()
        entries = HistoryEntry.parse_log(a + b + b"\x00" * 7)
        assert [(e.offset, e.size) for e in entries] == [(0, 10), (10, 20)]

    def test_parse_log_empty(self):
        assert HistoryEntry.parse_log(b"") == []

    def test_to_dict(self):
        entry = HistoryEntry(id=ZERO_ID, offset=1, size=2, timestamp=0.0)
        d = entry.to_dict()
        assert d["id"] == "00" * ID_SIZE
        assert d["timestamp"] == "1970-01-01T00:00:00+00:00"
        assert d["flags"] == 0


class TestOperationResult:
    def test_ok(self):
        r = OperationResult(OperationKind.WRITE, "f", RC_SUCCESS)
        assert r.ok is True

    def test_failed(self):
        r = OperationResult(OperationKind.READ, "f", -2, error="not found")
        assert r.ok is False

    def test_to_json_serializes_nested_detail(self):
        lookup = LookupResult("sha1", b"\x01" * ID_SIZE, "h:1:2", ZERO_ID, exists=True, size=4)
        r = OperationResult(OperationKind.LOOKUP, "f", RC_SUCCESS, detail=[lookup])
        parsed = json.loads(r.to_json())
        assert parsed["kind"] == "lookup"
        assert parsed["detail"][0]["id"] == "01" * ID_SIZE
        assert parsed["detail"][0]["exists"] is True

    def test_to_dict_plain_detail(self):
        r = OperationResult(OperationKind.READ, "f", RC_SUCCESS, detail={"size": 3})
        assert r.to_dict()["detail"] == {"size": 3}


class TestOperationOrder:
    def test_fixed_order(self):
        assert [k.value for k in OPERATION_ORDER] == [
            "write", "read", "history", "remove", "command", "lookup", "stat",
        ]


class TestStatReport:
    def test_counts_skip_failed_nodes(self):
        report = StatReport(
            checked_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            nodes=[
                NodeStat(addr="a:1:2", id="00", objects=3),
                NodeStat(addr="b:1:2", id="01", objects=4),
                NodeStat(addr="c:1:2", id="", objects=9, error="down"),
            ],
        )
        assert report.nodes_ok == 2
        assert report.objects == 7
        parsed = json.loads(report.to_json())
        assert parsed["nodes_total"] == 3
        assert parsed["checked_at"].startswith("2026-01-01")

    def test_node_stat_from_dict(self):
        stat = NodeStat.from_dict({"addr": "a:1:2", "id": "00", "la": [0.1, 0.2, 0.3], "objects": 5})
        assert stat.la == [0.1, 0.2, 0.3]
        assert stat.objects == 5
        assert stat.error is None


class TestRouteAndCommand:
    def test_route_to_dict(self):
        route = RouteEntry(ZERO_ID, AddressSpec("h", 1, 2))
        assert route.to_dict() == {"id": "00" * ID_SIZE, "addr": "h:1:2"}

    def test_command_result_from_dict_defaults(self):
        result = CommandResult.from_dict({"addr": "h:1:2", "command": "true"})
        assert result.returncode == -1
        assert result.stdout == ""
