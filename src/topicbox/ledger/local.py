# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md
'''
In-process stand-in for the consensus topic service and its query side.

Entries are stored in the KV layer and returned in the same shape as the
public REST query service (`sequence_number`, `consensus_timestamp`,
base64 `message`, optional `chunk_info`), so the poller cannot tell the
two apart.
'''

from __future__ import annotations

import json, time, uuid, base64, struct, threading
from typing import Any, Dict, List, Optional

from ..errors import TransportError
from ..storage.kv import open_store
from ..transport.mirror import OPERATORS, ORDERS, TopicQueries
from ..utils import config as CFG

# ---------------- Logger ----------------
from ..utils.box_logging import get_ctx_logger
log = get_ctx_logger("topicbox.ledger(local)")

DB_TOPICS   = "topics"
DB_ENTRIES  = "entries"
DB_ACCOUNTS = "accounts"
DB_META     = "meta"

MEMO_MAX_BYTES = 100
FIRST_TOPIC_NUM = 1000
MAX_QUERY_LIMIT = 100

_OPS = {
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
}


def _entry_key(topic_id: str, seq: int) -> bytes:
    return topic_id.encode("utf-8") + b"/" + struct.pack(">Q", seq)


def _check_memo(memo: str) -> str:
    memo = memo or ""
    if len(memo.encode("utf-8")) > MEMO_MAX_BYTES:
        raise ValueError(f"memo longer than {MEMO_MAX_BYTES} bytes")
    return memo


class LocalLedger(TopicQueries):
    def __init__(
        self,
        path: Optional[str] = None,
        backend: Optional[str] = None,
        operator_id: Optional[str] = None,
        max_entry_bytes: Optional[int] = None,
        max_chunks: Optional[int] = None,
    ):
        self.store = open_store(path, backend)
        self.operator_id = operator_id or CFG.ACCOUNT_ID or "0.0.2"
        self.max_entry_bytes = int(max_entry_bytes or CFG.LEDGER_MAX_ENTRY_BYTES)
        self.max_chunks = int(max_chunks or CFG.LEDGER_MAX_CHUNKS)
        self.page_limit = CFG.MIRROR_PAGE_LIMIT
        self._lock = threading.RLock()
        self._last_ts_ns = 0
        self.cache_namespace = f"local:{uuid.uuid4().hex}"

    # ---------------- helpers ----------------
    def _load_json(self, db: str, key: str) -> Optional[Dict[str, Any]]:
        raw = self.store.get(db, key.encode("utf-8"))
        return json.loads(raw.decode("utf-8")) if raw is not None else None

    def _save_json(self, db: str, key: str, obj: Dict[str, Any]) -> None:
        self.store.put(db, key.encode("utf-8"), json.dumps(obj, separators=(",", ":")).encode("utf-8"))

    def _next_timestamp(self) -> str:
        ns = max(time.time_ns(), self._last_ts_ns + 1)
        self._last_ts_ns = ns
        return f"{ns // 1_000_000_000}.{ns % 1_000_000_000:09d}"

    def _topic(self, topic_id: str) -> Dict[str, Any]:
        meta = self._load_json(DB_TOPICS, topic_id)
        if meta is None:
            raise TransportError("unknown topic", topic_id=topic_id)
        return meta

    def close(self) -> None:
        self.store.close()

    # ---------------- submission side ----------------
    def create_topic(self, memo: str = "") -> str:
        memo = _check_memo(memo)
        with self._lock:
            meta = self._load_json(DB_META, "counters") or {"next_topic": FIRST_TOPIC_NUM}
            num = int(meta["next_topic"])
            meta["next_topic"] = num + 1
            self._save_json(DB_META, "counters", meta)
            topic_id = f"{CFG.LOCAL_SHARD}.{CFG.LOCAL_REALM}.{num}"
            self._save_json(DB_TOPICS, topic_id, {"memo": memo, "last_seq": 0, "created": self._next_timestamp()})
        log.info("[create_topic] created %s", topic_id, extra={"topic": topic_id})
        return topic_id

    def submit_message(self, topic_id: str, data: bytes) -> Dict[str, Any]:
        """Append `data`; payloads above the entry limit are split natively."""
        data = bytes(data)
        n = max(1, -(-len(data) // self.max_entry_bytes))
        if n > self.max_chunks:
            raise TransportError(f"message needs {n} entries, limit is {self.max_chunks}", topic_id=topic_id)

        with self._lock:
            meta = self._topic(topic_id)
            first_ts = self._next_timestamp()
            txid = {"account_id": self.operator_id, "nonce": 0, "scheduled": False, "transaction_valid_start": first_ts}
            seqs: List[int] = []
            for i in range(n):
                seq = int(meta["last_seq"]) + 1
                meta["last_seq"] = seq
                entry: Dict[str, Any] = {
                    "consensus_timestamp": first_ts if i == 0 else self._next_timestamp(),
                    "message": base64.b64encode(data[i * self.max_entry_bytes:(i + 1) * self.max_entry_bytes]).decode("ascii"),
                    "payer_account_id": self.operator_id,
                    "running_hash_version": 3,
                    "sequence_number": seq,
                    "topic_id": topic_id,
                }
                if n > 1:
                    entry["chunk_info"] = {"initial_transaction_id": txid, "number": i + 1, "total": n}
                self.store.put(DB_ENTRIES, _entry_key(topic_id, seq), json.dumps(entry).encode("utf-8"))
                seqs.append(seq)
            self._save_json(DB_TOPICS, topic_id, meta)

        log.debug("[submit_message] %d bytes as seq %s", len(data), seqs, extra={"topic": topic_id, "seq": seqs[0]})
        return {
            "topic_id": topic_id,
            "sequence_number": seqs[0],
            "sequence_numbers": seqs,
            "transaction_id": f"{self.operator_id}@{first_ts}",
        }

    def get_account_memo(self, account_id: str) -> str:
        acct = self._load_json(DB_ACCOUNTS, account_id)
        return str(acct.get("memo", "")) if acct else ""

    def update_account_memo(self, account_id: str, memo: str) -> None:
        memo = _check_memo(memo)
        with self._lock:
            acct = self._load_json(DB_ACCOUNTS, account_id) or {}
            acct["memo"] = memo
            self._save_json(DB_ACCOUNTS, account_id, acct)
        log.info("[update_account_memo] %s -> %r", account_id, memo)

    # ---------------- query side ----------------
    def query_topic_messages(self, topic_id: str, limit: Optional[int] = None, order: Optional[str] = None,
                             sequence_number: Optional[int] = None, operator: Optional[str] = None) -> Dict[str, Any]:
        order = order or "asc"
        if order not in ORDERS:
            raise ValueError(f"order must be one of {ORDERS}")
        if operator and operator not in OPERATORS:
            raise ValueError(f"operator must be one of {OPERATORS}")
        lim = min(int(limit or 25), MAX_QUERY_LIMIT)

        if self._load_json(DB_TOPICS, topic_id) is None:
            return {"messages": [], "links": {"next": None}}

        prefix = topic_id.encode("utf-8") + b"/"
        entries = [json.loads(v.decode("utf-8")) for _, v in self.store.scan_prefix(DB_ENTRIES, prefix)]
        if sequence_number is not None and operator:
            cmp = _OPS[operator]
            entries = [e for e in entries if cmp(e["sequence_number"], int(sequence_number))]
        entries.sort(key=lambda e: e["sequence_number"], reverse=(order == "desc"))

        page = entries[:lim]
        nxt = None
        if len(entries) > lim:
            op = "gt" if order == "asc" else "lt"
            nxt = (f"{CFG.MIRROR_API_PREFIX}/topics/{topic_id}/messages"
                   f"?limit={lim}&order={order}&sequencenumber={op}:{page[-1]['sequence_number']}")
        return {"messages": page, "links": {"next": nxt}}
