# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md

from __future__ import annotations

from typing import Optional, Tuple


class MessageBoxError(Exception):
    """Base class for every error raised by topicbox."""


# ---------------- Configuration (fatal, never retried) ----------------
class ConfigurationError(MessageBoxError):
    pass


class SchemeKeyTypeMismatch(ConfigurationError):
    """Requested scheme cannot be served by the supplied key type."""

    def __init__(self, scheme: str, key_type: str, detail: str = ""):
        self.scheme = scheme
        self.key_type = key_type
        msg = f"scheme {scheme} cannot use a {key_type} key"
        super().__init__(f"{msg}: {detail}" if detail else msg)


class UnsupportedSchemeForKeyType(SchemeKeyTypeMismatch):
    """ECIES requested with a secret that cannot do ECDH on secp256k1."""


class KeyMaterialMissing(ConfigurationError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"key material not found: {path}")


class PublicKeyNotPublished(ConfigurationError):
    def __init__(self, topic_id: str, reason: str = "no PUBLIC_KEY entry"):
        self.topic_id = topic_id
        super().__init__(f"topic {topic_id}: {reason}")


# ---------------- Transport ----------------
class TransportError(MessageBoxError):
    """Submission or query failure; carries enough context to resume."""

    def __init__(
        self,
        message: str,
        *,
        topic_id: Optional[str] = None,
        chunk_index: Optional[int] = None,
        sequence_range: Optional[Tuple[int, Optional[int]]] = None,
    ):
        self.topic_id = topic_id
        self.chunk_index = chunk_index
        self.sequence_range = sequence_range
        parts = [message]
        if topic_id:
            parts.append(f"topic={topic_id}")
        if chunk_index is not None:
            parts.append(f"chunk={chunk_index}")
        if sequence_range is not None:
            parts.append(f"seq={sequence_range[0]}..{sequence_range[1] if sequence_range[1] is not None else ''}")
        super().__init__(" ".join(parts))


class PartialSendFailure(TransportError):
    """A chunk submission failed. `last_confirmed_index` is -1 when nothing landed."""

    def __init__(self, topic_id: str, message_id: str, failed_index: int, total: int):
        self.message_id = message_id
        self.failed_index = failed_index
        self.last_confirmed_index = failed_index - 1
        self.total = total
        super().__init__(
            f"send of {message_id} failed at chunk {failed_index}/{total} "
            f"(last confirmed {self.last_confirmed_index})",
            topic_id=topic_id,
            chunk_index=failed_index,
        )


# ---------------- Crypto ----------------
class EncryptionError(MessageBoxError):
    pass


class DecryptionError(MessageBoxError):
    pass


class SchemeMismatch(DecryptionError):
    """Envelope scheme differs from the private key scheme (routing/config error)."""

    def __init__(self, envelope_type: str, key_scheme: str):
        self.envelope_type = envelope_type
        self.key_scheme = key_scheme
        super().__init__(f"envelope is {envelope_type} but key pair is {key_scheme}")


class AuthenticationFailed(DecryptionError):
    pass


class MalformedEnvelope(DecryptionError):
    pass


# ---------------- Chunk stream (per message, never abort a loop) ----------------
class ChunkStreamError(MessageBoxError):
    def __init__(self, message_id: str, detail: str):
        self.message_id = message_id
        self.detail = detail
        super().__init__(f"{message_id}: {detail}")


class MalformedChunkStream(ChunkStreamError):
    pass


class AbandonedReassembly(ChunkStreamError):
    pass
