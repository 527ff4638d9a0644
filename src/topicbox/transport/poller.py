# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md

from __future__ import annotations

import base64, binascii
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import ChunkStreamError, MalformedChunkStream, MessageBoxError, TransportError
from ..utils import config as CFG
from .chunking import Chunk, Completed, Reassembler, Rejected, decode_frame

# ---------------- Logger ----------------
from ..utils.box_logging import get_ctx_logger
log = get_ctx_logger("topicbox.transport(poller)")

PayloadHandler = Callable[[bytes, Tuple[int, ...]], None]
ErrorSink = Callable[[Exception], None]


class PollerState(str, Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    PROCESSING = "PROCESSING"
    STOPPED = "STOPPED"


@dataclass
class Cursor:
    topic_id: str
    last_sequence_number: int = 0


def _txid_str(txid: Any) -> str:
    if isinstance(txid, dict):
        acct = txid.get("account_id", "")
        start = txid.get("transaction_valid_start", "")
        nonce = txid.get("nonce", 0) or 0
        return f"{acct}@{start}" + (f"/{nonce}" if nonce else "")
    return str(txid)


def entry_to_chunk(entry: Dict[str, Any]) -> Chunk:
    """Map one ledger entry to a transport chunk.

    Native ledger chunking (`chunk_info` with total > 1) wins, then an
    application frame, otherwise the entry stands alone as `seq:<n>` 0/1.
    """
    seq = int(entry["sequence_number"])
    ts = entry.get("consensus_timestamp")
    try:
        data = base64.b64decode(entry.get("message") or "", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedChunkStream(f"seq:{seq}", "entry message is not base64") from exc

    info = entry.get("chunk_info") or {}
    total = int(info.get("total") or 1)
    if info and total > 1:
        number = int(info.get("number") or 0)
        mid = _txid_str(info.get("initial_transaction_id"))
        return Chunk(mid, number - 1, total, data, seq, ts)

    framed = decode_frame(data, seq, ts)
    if framed is not None:
        return framed
    return Chunk(f"seq:{seq}", 0, 1, data, seq, ts)


class LogPoller:
    """One polling loop's worth of state: cursor, reassembly and handlers.

    `source` is anything exposing `query_topic_messages` (the HTTP query
    client or a LocalLedger).
    """

    def __init__(
        self,
        source,
        cursor: Cursor,
        on_payload: PayloadHandler,
        on_error: Optional[ErrorSink] = None,
        reassembler: Optional[Reassembler] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
        page_limit: Optional[int] = None,
    ):
        self.source = source
        self.cursor = cursor
        self.on_payload = on_payload
        self.on_error = on_error
        self.reassembler = reassembler or Reassembler()
        if self.reassembler.on_reject is None:
            self.reassembler.on_reject = self._on_reject
        self.is_cancelled = is_cancelled or (lambda: False)
        self.page_limit = int(page_limit or CFG.MIRROR_PAGE_LIMIT)
        self.state = PollerState.IDLE

    def _on_reject(self, rej: Rejected) -> None:
        self._emit_error(rej.error)

    def _emit_error(self, exc: Exception) -> None:
        if self.on_error is None:
            log.warning("[poller] %s", exc, extra={"topic": self.cursor.topic_id})
            return
        try:
            self.on_error(exc)
        except Exception:
            log.exception("[poller] error sink raised", extra={"topic": self.cursor.topic_id})

    def stop(self) -> None:
        self.state = PollerState.STOPPED

    def fetch_new(self, cursor: Optional[Cursor] = None) -> List[Dict[str, Any]]:
        cur = cursor or self.cursor
        floor = cur.last_sequence_number
        after = floor
        batch: List[Dict[str, Any]] = []
        while True:
            try:
                resp = self.source.query_topic_messages(
                    cur.topic_id, limit=self.page_limit, order="asc",
                    sequence_number=after, operator="gt",
                )
            except TransportError:
                raise
            except Exception as exc:
                raise TransportError(f"fetch failed: {exc}", topic_id=cur.topic_id,
                                     sequence_range=(floor + 1, None)) from exc
            page = list(resp.get("messages") or [])
            log.trace("[fetch_new] page of %d after %d", len(page), after, extra={"topic": cur.topic_id})
            if not page:
                break
            batch.extend(m for m in page if int(m["sequence_number"]) > after)
            top = max(int(m["sequence_number"]) for m in page)
            if top <= after:
                log.warning("[fetch_new] page did not advance past seq %d", after, extra={"topic": cur.topic_id})
                break
            after = top
            if len(page) < self.page_limit:
                break
        batch.sort(key=lambda m: int(m["sequence_number"]))
        return batch

    def poll_once(self) -> int:
        """Run one cycle; returns how many payloads were handed to `on_payload`."""
        if self.state == PollerState.STOPPED:
            return 0
        self.state = PollerState.FETCHING
        try:
            entries = self.fetch_new()
        except TransportError:
            self.state = PollerState.IDLE
            raise
        if self.is_cancelled():
            self.state = PollerState.STOPPED
            return 0

        self.state = PollerState.PROCESSING
        delivered = 0
        for entry in entries:
            try:
                chunk = entry_to_chunk(entry)
            except ChunkStreamError as exc:
                self._emit_error(exc)
                continue
            res = self.reassembler.ingest(chunk)
            if not isinstance(res, Completed):
                continue
            try:
                self.on_payload(res.payload, res.sequence_numbers)
                delivered += 1
            except MessageBoxError as exc:
                self._emit_error(exc)
            except Exception as exc:
                log.exception("[poll_once] payload handler failed for %s", res.message_id,
                              extra={"topic": self.cursor.topic_id, "mid": res.message_id})
                self._emit_error(exc)
        self.reassembler.sweep()

        if entries:
            self.cursor.last_sequence_number = max(int(e["sequence_number"]) for e in entries)
            log.debug("[poll_once] %d entries, %d payloads, cursor=%d", len(entries), delivered,
                      self.cursor.last_sequence_number, extra={"topic": self.cursor.topic_id})
        if self.state != PollerState.STOPPED:
            self.state = PollerState.IDLE
        return delivered
