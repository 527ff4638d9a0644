# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md

import os
import sys
import io
import json
import urllib.error
import urllib.parse

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_ROOT = os.path.join(PROJECT_ROOT, "src")
for path in (PROJECT_ROOT, SRC_ROOT):
    if path not in sys.path:
        sys.path.append(path)

from topicbox.errors import TransportError  # noqa: E402
from topicbox.transport import mirror  # noqa: E402
from topicbox.transport.mirror import MirrorNodeClient  # noqa: E402


class _Resp(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeMirror:
    """Answers /topics/<id>/messages from a list of sequence numbers."""

    def __init__(self, seqs):
        self.seqs = sorted(seqs)
        self.urls = []

    def __call__(self, req, timeout=None):
        url = req.full_url
        self.urls.append(url)
        parsed = urllib.parse.urlparse(url)
        q = dict(urllib.parse.parse_qsl(parsed.query))
        rows = list(self.seqs)
        if "sequencenumber" in q:
            op, n = q["sequencenumber"].split(":")
            n = int(n)
            rows = [s for s in rows if {"gt": s > n, "gte": s >= n, "lt": s < n, "lte": s <= n}[op]]
        if q.get("order") == "desc":
            rows.reverse()
        rows = rows[: int(q.get("limit", 25))]
        body = {"messages": [{"sequence_number": s, "message": ""} for s in rows], "links": {"next": None}}
        return _Resp(json.dumps(body).encode())


@pytest.fixture
def fake(monkeypatch):
    def _install(seqs):
        f = FakeMirror(seqs)
        monkeypatch.setattr(mirror.urllib.request, "urlopen", f)
        return f
    return _install


def test_query_builds_mirror_url(fake):
    f = fake([1, 2, 3])
    client = MirrorNodeClient("https://mirror.example/")
    client.query_topic_messages("0.0.5", limit=100, order="asc", sequence_number=7, operator="gt")
    assert f.urls[0] == "https://mirror.example/api/v1/topics/0.0.5/messages?limit=100&order=asc&sequencenumber=gt:7"


def test_latest_and_first(fake):
    fake([4, 5, 9])
    client = MirrorNodeClient("https://mirror.example")
    assert client.get_latest_sequence_number("0.0.5") == 9
    assert client.get_first_topic_message("0.0.5")["sequence_number"] == 4


def test_latest_on_empty_topic(fake):
    fake([])
    client = MirrorNodeClient("https://mirror.example")
    assert client.get_latest_sequence_number("0.0.5") is None
    assert client.get_first_topic_message("0.0.5") is None


def test_new_messages_after(fake):
    f = fake(range(1, 11))
    client = MirrorNodeClient("https://mirror.example")
    assert [m["sequence_number"] for m in client.get_new_messages("0.0.5", 7)] == [8, 9, 10]
    assert "sequencenumber=gt:7" in f.urls[-1]
    assert "limit=100" in f.urls[-1]


def test_range_drains_pages_and_honours_end(fake):
    f = fake(range(1, 251))
    client = MirrorNodeClient("https://mirror.example")
    got = client.get_messages_in_range("0.0.5", 5, 230)
    assert [m["sequence_number"] for m in got] == list(range(5, 231))
    assert len(f.urls) == 3


def test_range_without_end(fake):
    fake(range(1, 8))
    client = MirrorNodeClient("https://mirror.example")
    assert [m["sequence_number"] for m in client.get_messages_in_range("0.0.5", 3)] == [3, 4, 5, 6, 7]


def test_bad_operator_rejected():
    client = MirrorNodeClient("https://mirror.example")
    with pytest.raises(ValueError):
        client.query_topic_messages("0.0.5", sequence_number=1, operator="eq")


def test_http_error_is_transport_error(monkeypatch):
    def boom(req, timeout=None):
        raise urllib.error.HTTPError(req.full_url, 500, "server error", {}, None)
    monkeypatch.setattr(mirror.urllib.request, "urlopen", boom)
    with pytest.raises(TransportError) as ei:
        MirrorNodeClient("https://mirror.example").get_latest_sequence_number("0.0.5")
    assert ei.value.topic_id == "0.0.5"


def test_not_found_topic_reads_as_empty(monkeypatch):
    def missing(req, timeout=None):
        raise urllib.error.HTTPError(req.full_url, 404, "not found", {}, None)
    monkeypatch.setattr(mirror.urllib.request, "urlopen", missing)
    assert MirrorNodeClient("https://mirror.example").get_first_topic_message("0.0.404") is None


def test_network_error_is_transport_error(monkeypatch):
    def down(req, timeout=None):
        raise urllib.error.URLError("no route")
    monkeypatch.setattr(mirror.urllib.request, "urlopen", down)
    with pytest.raises(TransportError):
        MirrorNodeClient("https://mirror.example").get_new_messages("0.0.5", 0)


def test_invalid_json_is_transport_error(monkeypatch):
    monkeypatch.setattr(mirror.urllib.request, "urlopen", lambda req, timeout=None: _Resp(b"<html>"))
    with pytest.raises(TransportError):
        MirrorNodeClient("https://mirror.example").get_new_messages("0.0.5", 0)


def test_account_memo(monkeypatch):
    seen = []

    def acct(req, timeout=None):
        seen.append(req.full_url)
        return _Resp(json.dumps({"account": "0.0.77", "memo": "[TBX:0.0.5]"}).encode())
    monkeypatch.setattr(mirror.urllib.request, "urlopen", acct)
    assert MirrorNodeClient("https://mirror.example").get_account_memo("0.0.77") == "[TBX:0.0.5]"
    assert seen == ["https://mirror.example/api/v1/accounts/0.0.77"]


def test_network_default_url():
    assert MirrorNodeClient(network="mainnet").base_url.startswith("https://mainnet")
