# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional

from ..errors import TransportError
from ..utils import config as CFG

# ---------------- Logger ----------------
from ..utils.box_logging import get_ctx_logger
log = get_ctx_logger("topicbox.transport(mirror)")

OPERATORS = ("gt", "gte", "lt", "lte")
ORDERS = ("asc", "desc")


class TopicQueries:
    """Read helpers over any `query_topic_messages` implementation."""

    page_limit: int = CFG.MIRROR_PAGE_LIMIT

    def query_topic_messages(self, topic_id: str, limit: Optional[int] = None, order: Optional[str] = None,
                             sequence_number: Optional[int] = None, operator: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def get_latest_sequence_number(self, topic_id: str) -> Optional[int]:
        resp = self.query_topic_messages(topic_id, limit=1, order="desc")
        msgs = resp.get("messages") or []
        return int(msgs[0]["sequence_number"]) if msgs else None

    def get_first_topic_message(self, topic_id: str) -> Optional[Dict[str, Any]]:
        resp = self.query_topic_messages(topic_id, limit=1, order="asc")
        msgs = resp.get("messages") or []
        return msgs[0] if msgs else None

    def get_new_messages(self, topic_id: str, after_sequence_number: int) -> List[Dict[str, Any]]:
        resp = self.query_topic_messages(
            topic_id, limit=self.page_limit, order="asc",
            sequence_number=after_sequence_number, operator="gt",
        )
        return list(resp.get("messages") or [])

    def get_messages_in_range(self, topic_id: str, start: int, end: Optional[int] = None) -> List[Dict[str, Any]]:
        """Inclusive range read, draining as many pages as needed."""
        out: List[Dict[str, Any]] = []
        last = start - 1
        while True:
            page = self.get_new_messages(topic_id, last)
            if not page:
                break
            for msg in page:
                seq = int(msg["sequence_number"])
                if end is not None and seq > end:
                    return out
                if seq >= start:
                    out.append(msg)
                last = seq
            if len(page) < self.page_limit:
                break
        return out


class MirrorNodeClient(TopicQueries):
    """Read side of the ledger over the public REST query service."""

    def __init__(self, base_url: Optional[str] = None, network: Optional[str] = None,
                 timeout: Optional[float] = None, page_limit: Optional[int] = None):
        self.base_url = (base_url or CFG.mirror_url_for(network)).rstrip("/")
        self.timeout = float(timeout or CFG.MIRROR_HTTP_TIMEOUT)
        self.page_limit = int(page_limit or CFG.MIRROR_PAGE_LIMIT)

    @property
    def cache_namespace(self) -> str:
        return self.base_url

    def _get_json(self, path: str, params: Dict[str, Any], topic_id: Optional[str] = None) -> Dict[str, Any]:
        qs = urllib.parse.urlencode(params, safe=":")
        url = f"{self.base_url}{CFG.MIRROR_API_PREFIX}{path}" + (f"?{qs}" if qs else "")
        req = urllib.request.Request(
            url,
            headers={
                "User-Agent": CFG.MIRROR_USER_AGENT,
                "Accept": "application/json",
            },
        )
        log.trace("[mirror] GET %s", url, extra={"topic": topic_id or "-"})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                return {}
            raise TransportError(f"query service returned HTTP {exc.code}", topic_id=topic_id) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise TransportError(f"query service request failed: {exc}", topic_id=topic_id) from exc
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransportError("query service returned invalid JSON", topic_id=topic_id) from exc

    def query_topic_messages(self, topic_id: str, limit: Optional[int] = None, order: Optional[str] = None,
                             sequence_number: Optional[int] = None, operator: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if limit:
            params["limit"] = int(limit)
        if order:
            if order not in ORDERS:
                raise ValueError(f"order must be one of {ORDERS}")
            params["order"] = order
        if sequence_number is not None and operator:
            if operator not in OPERATORS:
                raise ValueError(f"operator must be one of {OPERATORS}")
            params["sequencenumber"] = f"{operator}:{int(sequence_number)}"
        resp = self._get_json(f"/topics/{topic_id}/messages", params, topic_id)
        resp.setdefault("messages", [])
        return resp

    def get_account_memo(self, account_id: str) -> str:
        resp = self._get_json(f"/accounts/{account_id}", {})
        return str(resp.get("memo") or "")
