# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md
'''
Fragmentation of envelope bytes into ledger-sized chunks and index-keyed
reassembly from an out-of-order, at-least-once stream.

Frame layout (one ledger entry each, application chunking mode):

    b"TBXC" | version u8 | message_id 16B | index u16 BE | total u16 BE | payload
'''

from __future__ import annotations

import os, time, struct
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, MutableMapping, Optional, Tuple, Union

from ..errors import AbandonedReassembly, ChunkStreamError, MalformedChunkStream
from ..utils import config as CFG

# ---------------- Logger ----------------
from ..utils.box_logging import get_ctx_logger
log = get_ctx_logger("topicbox.transport(chunking)")

_HDR = struct.Struct(">B16sHH")


@dataclass(frozen=True)
class Chunk:
    message_id: str
    index: int
    total: int
    payload: bytes
    sequence_number: Optional[int] = None
    consensus_timestamp: Optional[str] = None


@dataclass
class ReassemblyBuffer:
    total: int
    first_seen_at: float
    last_seen_at: float
    chunks: Dict[int, bytes] = field(default_factory=dict)
    sequence_numbers: List[int] = field(default_factory=list)

    def is_complete(self) -> bool:
        return len(self.chunks) == self.total and all(i in self.chunks for i in range(self.total))

    def assemble(self) -> bytes:
        return b"".join(self.chunks[i] for i in range(self.total))


@dataclass(frozen=True)
class Completed:
    message_id: str
    payload: bytes
    sequence_numbers: Tuple[int, ...] = ()


@dataclass(frozen=True)
class Pending:
    message_id: str


@dataclass(frozen=True)
class Rejected:
    error: ChunkStreamError

    @property
    def message_id(self) -> str:
        return self.error.message_id


IngestResult = Union[Completed, Pending, Rejected]

TOMB_COMPLETED = "completed"
TOMB_ABANDONED = "abandoned"


class Tombstones:
    """Bounded memory of finished message ids, oldest forgotten first."""

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = int(max_entries or CFG.REASSEMBLY_TOMBSTONE_MAX)
        self._ids: "OrderedDict[str, str]" = OrderedDict()

    def add(self, message_id: str, status: str) -> None:
        self._ids[message_id] = status
        self._ids.move_to_end(message_id)
        while len(self._ids) > self.max_entries:
            self._ids.popitem(last=False)

    def get(self, message_id: str) -> Optional[str]:
        return self._ids.get(message_id)

    def __len__(self) -> int:
        return len(self._ids)


# =============================================================================
# Split
# =============================================================================

def new_message_id() -> str:
    return os.urandom(CFG.CHUNK_FRAME_ID_BYTES).hex()


def split(envelope_bytes: bytes, max_chunk_payload: int, message_id: Optional[str] = None) -> List[Chunk]:
    if max_chunk_payload <= 0:
        raise ValueError("max_chunk_payload must be positive")
    mid = message_id or new_message_id()
    data = bytes(envelope_bytes)
    total = max(1, -(-len(data) // max_chunk_payload))
    return [
        Chunk(mid, i, total, data[i * max_chunk_payload:(i + 1) * max_chunk_payload])
        for i in range(total)
    ]


# =============================================================================
# Frames
# =============================================================================

def encode_frame(chunk: Chunk) -> bytes:
    try:
        raw_id = bytes.fromhex(chunk.message_id)
    except ValueError as exc:
        raise ValueError(f"frame message id must be hex: {chunk.message_id!r}") from exc
    if len(raw_id) != CFG.CHUNK_FRAME_ID_BYTES:
        raise ValueError(f"frame message id must be {CFG.CHUNK_FRAME_ID_BYTES} bytes")
    if not (0 <= chunk.index < chunk.total <= 0xFFFF):
        raise ValueError(f"chunk {chunk.index}/{chunk.total} does not fit a frame header")
    return CFG.CHUNK_FRAME_MAGIC + _HDR.pack(CFG.CHUNK_FRAME_VERSION, raw_id, chunk.index, chunk.total) + chunk.payload


def is_frame(data: bytes) -> bool:
    return data[:len(CFG.CHUNK_FRAME_MAGIC)] == CFG.CHUNK_FRAME_MAGIC


def decode_frame(data: bytes, sequence_number: Optional[int] = None, consensus_timestamp: Optional[str] = None) -> Optional[Chunk]:
    """Parse an application frame; None when `data` is not a frame at all."""
    if not is_frame(data):
        return None
    body = data[len(CFG.CHUNK_FRAME_MAGIC):]
    if len(body) < _HDR.size:
        raise MalformedChunkStream(f"seq:{sequence_number}", "truncated frame header")
    version, raw_id, index, total = _HDR.unpack_from(body)
    if version != CFG.CHUNK_FRAME_VERSION:
        raise MalformedChunkStream(raw_id.hex(), f"unsupported frame version {version}")
    return Chunk(raw_id.hex(), index, total, body[_HDR.size:], sequence_number, consensus_timestamp)


# =============================================================================
# Reassembly
# =============================================================================

def _evict(
    message_id: str,
    buffers: MutableMapping[str, ReassemblyBuffer],
    tombstones: Tombstones,
    reason: str,
) -> Rejected:
    buf = buffers.pop(message_id)
    tombstones.add(message_id, TOMB_ABANDONED)
    detail = f"{reason}: {len(buf.chunks)}/{buf.total} chunks received"
    log.warning("[ingest] abandoned reassembly %s (%s)", message_id, detail, extra={"mid": message_id})
    return Rejected(AbandonedReassembly(message_id, detail))


def ingest(
    chunk: Chunk,
    buffers: MutableMapping[str, ReassemblyBuffer],
    now: float,
    stale_after: float,
    tombstones: Tombstones,
    on_reject: Optional[Callable[[Rejected], None]] = None,
    max_buffers: Optional[int] = None,
) -> IngestResult:
    """Feed one chunk into `buffers`.

    Stale buffers found on the way are evicted, logged at WARNING and passed
    to `on_reject`; the return value only describes the chunk itself.
    `tombstones` must outlive `buffers`: it is what keeps a replayed chunk of
    a completed message Pending and a late chunk of an evicted one Rejected.
    """
    if tombstones is None:
        raise TypeError("ingest needs a Tombstones instance shared across calls")
    mid = chunk.message_id
    if chunk.index < 0 or chunk.total < 1 or chunk.index >= chunk.total:
        return Rejected(MalformedChunkStream(mid, f"index {chunk.index} outside total {chunk.total}"))

    cutoff = now - stale_after
    for stale_id in [k for k, b in buffers.items() if b.first_seen_at < cutoff]:
        rej = _evict(stale_id, buffers, tombstones, "stale")
        if on_reject is not None:
            on_reject(rej)

    status = tombstones.get(mid)
    if status == TOMB_ABANDONED:
        return Rejected(AbandonedReassembly(mid, "late chunk for an abandoned message"))
    if status == TOMB_COMPLETED:
        return Pending(mid)

    buf = buffers.get(mid)
    if buf is None:
        limit = int(max_buffers or CFG.REASSEMBLY_MAX_BUFFERS)
        while len(buffers) >= limit:
            oldest = min(buffers, key=lambda k: buffers[k].first_seen_at)
            rej = _evict(oldest, buffers, tombstones, "buffer limit")
            if on_reject is not None:
                on_reject(rej)
        buf = ReassemblyBuffer(total=chunk.total, first_seen_at=now, last_seen_at=now)
        buffers[mid] = buf
    elif buf.total != chunk.total:
        return Rejected(MalformedChunkStream(mid, f"total {chunk.total} differs from {buf.total}"))

    if chunk.index in buf.chunks:
        return Pending(mid)

    buf.chunks[chunk.index] = chunk.payload
    buf.last_seen_at = now
    if chunk.sequence_number is not None:
        buf.sequence_numbers.append(int(chunk.sequence_number))

    if not buf.is_complete():
        return Pending(mid)

    del buffers[mid]
    tombstones.add(mid, TOMB_COMPLETED)
    return Completed(mid, buf.assemble(), tuple(sorted(buf.sequence_numbers)))


class Reassembler:
    """Stateful wrapper around `ingest` owned by one listening loop."""

    def __init__(
        self,
        stale_after: Optional[float] = None,
        on_reject: Optional[Callable[[Rejected], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        max_buffers: Optional[int] = None,
        max_tombstones: Optional[int] = None,
    ):
        self.stale_after = float(CFG.REASSEMBLY_STALE_AFTER_S if stale_after is None else stale_after)
        self.on_reject = on_reject
        self.clock = clock
        self.max_buffers = max_buffers
        self.buffers: Dict[str, ReassemblyBuffer] = {}
        self.tombstones = Tombstones(max_tombstones)

    def ingest(self, chunk: Chunk, now: Optional[float] = None) -> IngestResult:
        t = self.clock() if now is None else now
        res = ingest(chunk, self.buffers, t, self.stale_after, self.tombstones, self._reject, self.max_buffers)
        if isinstance(res, Rejected):
            self._reject(res)
        return res

    def sweep(self, now: Optional[float] = None) -> List[Rejected]:
        t = self.clock() if now is None else now
        cutoff = t - self.stale_after
        out = []
        for stale_id in [k for k, b in self.buffers.items() if b.first_seen_at < cutoff]:
            rej = _evict(stale_id, self.buffers, self.tombstones, "stale")
            self._reject(rej)
            out.append(rej)
        return out

    def _reject(self, rej: Rejected) -> None:
        if self.on_reject is not None:
            self.on_reject(rej)

    @property
    def pending_count(self) -> int:
        return len(self.buffers)
