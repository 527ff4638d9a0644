# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md

from __future__ import annotations

import re, base64, binascii, threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..crypto.envelope import decode_envelope, decrypt, encode_envelope, encrypt, is_public_key_entry
from ..crypto.keys import KeyPair, PublicKeyRecord, Secret, load_or_create, load_rsa_keypair, normalize_scheme
from ..errors import (
    AbandonedReassembly, ConfigurationError, MessageBoxError, PartialSendFailure,
    PublicKeyNotPublished, TransportError,
)
from ..transport.chunking import Completed, Rejected, Reassembler, encode_frame, new_message_id, split
from ..transport.poller import Cursor, LogPoller, entry_to_chunk
from ..utils import config as CFG

# ---------------- Logger ----------------
from ..utils.box_logging import get_ctx_logger
log = get_ctx_logger("topicbox.mailbox(controller)")

MEMO_POINTER_RE = re.compile(r"\[TBX:(\d+\.\d+\.\d+)\]")
BARE_TOPIC_RE = re.compile(r"^\s*(\d+\.\d+\.\d+)\s*$")

# Published keys never change for the life of a topic, so one cache serves every box in the process.
_PUBKEY_CACHE: Dict[Tuple[str, str], PublicKeyRecord] = {}
_PUBKEY_LOCK = threading.Lock()


def clear_public_key_cache() -> None:
    with _PUBKEY_LOCK:
        _PUBKEY_CACHE.clear()


def memo_pointer(topic_id: str) -> str:
    return f"[TBX:{topic_id}]"


@dataclass(frozen=True)
class SetupResult:
    topic_id: str
    public_key: PublicKeyRecord
    key_pair: KeyPair = field(repr=False, compare=False)
    account_id: Optional[str] = None


@dataclass(frozen=True)
class SendReceipt:
    topic_id: str
    message_id: str
    chunk_count: int
    sequence_numbers: Tuple[int, ...]
    scheme: str


@dataclass(frozen=True)
class ReceivedMessage:
    topic_id: str
    plaintext: bytes
    sequence_numbers: Tuple[int, ...]
    scheme: str

    @property
    def text(self) -> str:
        return self.plaintext.decode("utf-8", errors="replace")


class Subscription:
    """Handle for a background listening loop; one cycle in flight at a time."""

    def __init__(self, poller: LogPoller, interval: float, on_error: Optional[Callable[[Exception], None]] = None):
        self.poller = poller
        self.interval = float(interval)
        self.on_error = on_error
        self._stop = threading.Event()
        self.poller.is_cancelled = self._stop.is_set
        self._thread = threading.Thread(
            target=self._run, name=f"topicbox-listen-{poller.cursor.topic_id}", daemon=True
        )

    @property
    def topic_id(self) -> str:
        return self.poller.cursor.topic_id

    @property
    def cursor(self) -> Cursor:
        return self.poller.cursor

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> "Subscription":
        self._thread.start()
        return self

    def _run(self) -> None:
        log.info("[listen] polling every %.1fs from seq %d", self.interval,
                 self.cursor.last_sequence_number, extra={"topic": self.topic_id})
        while not self._stop.is_set():
            try:
                self.poller.poll_once()
            except TransportError as exc:
                log.warning("[listen] %s", exc, extra={"topic": self.topic_id})
                self._sink(exc)
            except Exception as exc:
                log.exception("[listen] poll cycle failed", extra={"topic": self.topic_id})
                self._sink(exc)
            if self._stop.wait(self.interval):
                break
        self.poller.stop()
        log.info("[listen] stopped at seq %d", self.cursor.last_sequence_number, extra={"topic": self.topic_id})

    def _sink(self, exc: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception:
            log.exception("[listen] error sink raised", extra={"topic": self.topic_id})

    def cancel(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)


class MessageBox:
    """Send to and receive from ledger-backed message boxes.

    `ledger` submits entries (and optionally owns account memos); `query` is
    the read side and defaults to the ledger when it can answer topic
    queries itself, as `LocalLedger` does.
    """

    def __init__(
        self,
        ledger,
        query=None,
        scheme: Optional[str] = None,
        key_pair: Optional[KeyPair] = None,
        account_secret: Optional[Secret] = None,
        key_dir: Optional[str] = None,
        passphrase: Optional[bytes] = None,
        chunking: Optional[str] = None,
        max_chunk_payload: Optional[int] = None,
        envelope_format: Optional[str] = None,
        poll_interval: Optional[float] = None,
        stale_after: Optional[float] = None,
    ):
        self.ledger = ledger
        self.query = query if query is not None else ledger
        if not hasattr(self.query, "query_topic_messages"):
            raise ConfigurationError("no query service: pass `query=` or a ledger that answers topic queries")
        self.scheme = normalize_scheme(scheme or (key_pair.scheme if key_pair else None))
        self.key_pair = key_pair
        self.account_secret = account_secret
        self.key_dir = key_dir
        self.passphrase = passphrase
        self.chunking = (chunking or CFG.CHUNKING_MODE).lower()
        if self.chunking not in ("application", "native"):
            raise ConfigurationError(f"unknown chunking mode: {chunking}")
        self.max_chunk_payload = self._fit_chunk_payload(
            CFG.MAX_CHUNK_PAYLOAD_BYTES if max_chunk_payload is None else max_chunk_payload
        )
        self.envelope_format = (envelope_format or CFG.ENVELOPE_FORMAT).lower()
        self.poll_interval = float(poll_interval if poll_interval is not None else CFG.POLL_INTERVAL_S)
        self.stale_after = stale_after

    def _fit_chunk_payload(self, requested: int) -> int:
        """Cap the envelope bytes per chunk so that one frame is one ledger entry."""
        requested = int(requested)
        if requested <= 0:
            raise ConfigurationError(f"max_chunk_payload must be positive, got {requested}")
        entry_limit = int(getattr(self.ledger, "max_entry_bytes", None) or CFG.LEDGER_MAX_ENTRY_BYTES)
        fit = entry_limit - CFG.CHUNK_FRAME_OVERHEAD
        if fit <= 0:
            raise ConfigurationError(f"ledger entries of {entry_limit} bytes cannot hold a chunk frame")
        if requested > fit:
            log.info("[init] max_chunk_payload %d lowered to %d (entry limit %d, frame header %d)",
                     requested, fit, entry_limit, CFG.CHUNK_FRAME_OVERHEAD)
            return fit
        return requested

    # ---------------- keys ----------------
    def _cache_ns(self) -> str:
        return str(getattr(self.query, "cache_namespace", None) or id(self.query))

    def fetch_public_key(self, topic_id: str, refresh: bool = False) -> PublicKeyRecord:
        ck = (self._cache_ns(), topic_id)
        if not refresh:
            cached = _PUBKEY_CACHE.get(ck)
            if cached is not None:
                return cached

        first = self.query.get_first_topic_message(topic_id)
        if first is None:
            raise PublicKeyNotPublished(topic_id)
        try:
            raw = base64.b64decode(first.get("message") or "", validate=True)
            record = PublicKeyRecord.from_entry_bytes(raw)
        except (binascii.Error, ValueError) as exc:
            raise PublicKeyNotPublished(topic_id, "first entry is not a PUBLIC_KEY record") from exc

        with _PUBKEY_LOCK:
            _PUBKEY_CACHE[ck] = record
        log.debug("[fetch_public_key] %s key cached", record.scheme, extra={"topic": topic_id})
        return record

    def _resolve_key_pair(self, key_pair: Optional[KeyPair] = None) -> KeyPair:
        if key_pair is not None:
            return key_pair
        if self.key_pair is not None:
            return self.key_pair
        if self.scheme == CFG.SCHEME_RSA:
            self.key_pair = load_rsa_keypair(self.key_dir, self.passphrase)
        else:
            if self.account_secret is None:
                raise ConfigurationError("ECIES boxes need the account secret to decrypt")
            self.key_pair = load_or_create(CFG.SCHEME_ECIES, self.account_secret)
        return self.key_pair

    def verify_key_pair_matches_topic(self, local_key_pair: KeyPair, topic_id: str) -> bool:
        published = self.fetch_public_key(topic_id, refresh=True)
        ok = published.matches(local_key_pair.public_key)
        if not ok:
            log.warning("[verify] local %s key does not match the published %s key",
                        local_key_pair.scheme, published.scheme, extra={"topic": topic_id})
        return ok

    # ---------------- setup ----------------
    def setup(
        self,
        scheme: Optional[str] = None,
        account_secret: Optional[Secret] = None,
        account_id: Optional[str] = None,
        memo: Optional[str] = None,
    ) -> SetupResult:
        s = normalize_scheme(scheme or self.scheme)
        secret = account_secret if account_secret is not None else self.account_secret
        if self.key_pair is not None and self.key_pair.scheme == s:
            pair = self.key_pair
        else:
            pair = load_or_create(s, secret, self.key_dir, self.passphrase)

        topic_memo = memo if memo is not None else (
            f"{CFG.APP_NAME} inbox of {account_id}" if account_id else f"{CFG.APP_NAME} inbox"
        )
        try:
            topic_id = self.ledger.create_topic(topic_memo)
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"topic creation failed: {exc}") from exc

        try:
            self.ledger.submit_message(topic_id, pair.public_key.to_entry_bytes())
        except Exception as exc:
            raise TransportError(f"publishing the public key failed: {exc}", topic_id=topic_id, chunk_index=0) from exc

        if account_id and hasattr(self.ledger, "update_account_memo"):
            try:
                self.ledger.update_account_memo(account_id, memo_pointer(topic_id))
            except Exception as exc:
                raise TransportError(f"account memo update failed: {exc}", topic_id=topic_id) from exc

        self.scheme = s
        self.key_pair = pair
        with _PUBKEY_LOCK:
            _PUBKEY_CACHE[(self._cache_ns(), topic_id)] = pair.public_key
        log.info("[setup] %s box ready", s, extra={"topic": topic_id})
        return SetupResult(topic_id, pair.public_key, pair, account_id)

    def resolve_topic(self, account_id: str) -> str:
        source = self.ledger if hasattr(self.ledger, "get_account_memo") else self.query
        if not hasattr(source, "get_account_memo"):
            raise ConfigurationError("no collaborator can read account memos")
        memo = source.get_account_memo(account_id) or ""
        m = MEMO_POINTER_RE.search(memo) or BARE_TOPIC_RE.match(memo)
        if not m:
            raise PublicKeyNotPublished(account_id, "account memo does not point to a message box")
        return m.group(1)

    # ---------------- send ----------------
    def _submit(self, topic_id: str, data: bytes) -> Tuple[Tuple[int, ...], Optional[str]]:
        """Returns the sequence numbers used and the ledger transaction id, when reported."""
        receipt = self.ledger.submit_message(topic_id, data)
        if isinstance(receipt, dict):
            seqs = receipt.get("sequence_numbers") or [receipt.get("sequence_number")]
            return tuple(int(s) for s in seqs if s is not None), receipt.get("transaction_id")
        if receipt is None:
            return (), None
        return (int(receipt),), None

    def send(self, recipient_topic_id: str, plaintext: bytes | str, fmt: Optional[str] = None) -> SendReceipt:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        record = self.fetch_public_key(recipient_topic_id)
        env = encrypt(plaintext, record)
        data = encode_envelope(env, fmt or self.envelope_format)

        if self.chunking == "native":
            mid = new_message_id()
            try:
                seqs, txid = self._submit(recipient_topic_id, data)
            except Exception as exc:
                raise PartialSendFailure(recipient_topic_id, mid, 0, 1) from exc
            count = len(seqs) or 1
            if count == 1 and seqs:
                mid = f"seq:{seqs[0]}"
            elif txid:
                mid = txid
            log.info("[send] %d bytes natively as %d entr(ies)", len(data), count,
                     extra={"topic": recipient_topic_id, "mid": mid})
            return SendReceipt(recipient_topic_id, mid, count, seqs, record.scheme)

        chunks = split(data, self.max_chunk_payload)
        if len(chunks) == 1:
            frames = [data]
        else:
            frames = [encode_frame(c) for c in chunks]
        mid = chunks[0].message_id
        seqs: List[int] = []
        for i, frame in enumerate(frames):
            try:
                seqs.extend(self._submit(recipient_topic_id, frame)[0])
            except Exception as exc:
                log.error("[send] chunk %d/%d failed: %s", i, len(frames), exc,
                          extra={"topic": recipient_topic_id, "mid": mid})
                raise PartialSendFailure(recipient_topic_id, mid, i, len(frames)) from exc
        if len(frames) == 1 and seqs:
            mid = f"seq:{seqs[0]}"
        log.info("[send] %d bytes as %d chunk(s)", len(data), len(frames),
                 extra={"topic": recipient_topic_id, "mid": mid, "seq": seqs[0] if seqs else "-"})
        return SendReceipt(recipient_topic_id, mid, len(frames), tuple(seqs), record.scheme)

    def send_to_account(self, account_id: str, plaintext: bytes | str, fmt: Optional[str] = None) -> SendReceipt:
        return self.send(self.resolve_topic(account_id), plaintext, fmt)

    # ---------------- receive ----------------
    def _open(self, topic_id: str, payload: bytes, seqs: Tuple[int, ...], key_pair: KeyPair) -> Optional[ReceivedMessage]:
        if is_public_key_entry(payload):
            return None
        env = decode_envelope(payload)
        plaintext = decrypt(env, key_pair)
        return ReceivedMessage(topic_id, plaintext, tuple(seqs), env.type)

    def listen(
        self,
        topic_id: str,
        on_message: Callable[[ReceivedMessage], Any],
        from_sequence: Optional[int] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        interval: Optional[float] = None,
        key_pair: Optional[KeyPair] = None,
    ) -> Subscription:
        pair = self._resolve_key_pair(key_pair)
        if from_sequence is None:
            start_after = self.query.get_latest_sequence_number(topic_id) or 0
        else:
            start_after = max(0, int(from_sequence) - 1)

        def _on_payload(payload: bytes, seqs: Tuple[int, ...]) -> None:
            msg = self._open(topic_id, payload, seqs, pair)
            if msg is not None:
                on_message(msg)

        poller = LogPoller(
            self.query, Cursor(topic_id, start_after), _on_payload, on_error,
            reassembler=Reassembler(self.stale_after),
        )
        sub = Subscription(poller, self.poll_interval if interval is None else interval, on_error)
        return sub.start()

    def check_messages(
        self,
        topic_id: str,
        start: int = 1,
        end: Optional[int] = None,
        key_pair: Optional[KeyPair] = None,
    ) -> Tuple[List[ReceivedMessage], List[Exception]]:
        """One-shot read of an inclusive sequence range."""
        pair = self._resolve_key_pair(key_pair)
        errors: List[Exception] = []
        messages: List[ReceivedMessage] = []

        def _on_reject(rej: Rejected) -> None:
            errors.append(rej.error)

        reasm = Reassembler(float("inf"), _on_reject)
        for entry in self.query.get_messages_in_range(topic_id, start, end):
            try:
                res = reasm.ingest(entry_to_chunk(entry))
                if isinstance(res, Completed):
                    msg = self._open(topic_id, res.payload, res.sequence_numbers, pair)
                    if msg is not None:
                        messages.append(msg)
            except MessageBoxError as exc:
                errors.append(exc)

        for mid, buf in list(reasm.buffers.items()):
            errors.append(AbandonedReassembly(mid, f"incomplete in range: {len(buf.chunks)}/{buf.total} chunks"))
        log.debug("[check_messages] %d message(s), %d error(s)", len(messages), len(errors), extra={"topic": topic_id})
        return messages, errors
