# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md
# Refs: RFC8017-OAEP; SEC1-ECIES; NIST-800-38A-CBC; NIST-800-38D-AES-GCM

from __future__ import annotations

import os, json, hashlib
from dataclasses import dataclass
from typing import Any, Dict, Union

import msgpack
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

# ---------------- Local Project ----------------
from ..errors import AuthenticationFailed, EncryptionError, MalformedEnvelope, SchemeMismatch
from ..utils import config as CFG
from .keys import KeyPair, PublicKeyRecord

# ---------------- Logger ----------------
from ..utils.box_logging import get_ctx_logger
log = get_ctx_logger("topicbox.crypto(envelope)")


@dataclass(frozen=True)
class RsaEnvelope:
    encrypted_key: bytes
    iv: bytes
    encrypted_data: bytes

    type = CFG.SCHEME_RSA

    def to_fields(self) -> Dict[str, bytes]:
        return {"encryptedKey": self.encrypted_key, "iv": self.iv, "encryptedData": self.encrypted_data}


@dataclass(frozen=True)
class EciesEnvelope:
    ephemeral_public_key: bytes
    iv: bytes
    encrypted_data: bytes
    auth_tag: bytes
    curve: str = CFG.ECIES_CURVE_NAME

    type = CFG.SCHEME_ECIES

    def to_fields(self) -> Dict[str, bytes]:
        return {
            "ephemeralPublicKey": self.ephemeral_public_key,
            "iv": self.iv,
            "encryptedData": self.encrypted_data,
            "authTag": self.auth_tag,
        }


Envelope = Union[RsaEnvelope, EciesEnvelope]

_OAEP = asym_padding.OAEP(
    mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


# =============================================================================
# Encrypt / decrypt
# =============================================================================

def encrypt(plaintext: bytes, recipient: PublicKeyRecord) -> Envelope:
    """Hybrid-encrypt `plaintext` for `recipient`; the record's scheme alone picks the path."""
    log.trace("[encrypt] %d bytes for %s recipient", len(plaintext), recipient.scheme)
    if recipient.scheme == CFG.SCHEME_RSA:
        return _encrypt_rsa(plaintext, recipient)
    if recipient.scheme == CFG.SCHEME_ECIES:
        return _encrypt_ecies(plaintext, recipient)
    raise EncryptionError(f"unsupported recipient scheme: {recipient.scheme}")


def decrypt(envelope: Envelope, key_pair: KeyPair) -> bytes:
    if envelope.type not in CFG.ENVELOPE_TYPES:
        raise MalformedEnvelope(f"unknown envelope type: {envelope.type!r}")
    if envelope.type != key_pair.scheme:
        raise SchemeMismatch(envelope.type, key_pair.scheme)
    log.trace("[decrypt] opening %s envelope", envelope.type)
    if isinstance(envelope, RsaEnvelope):
        return _decrypt_rsa(envelope, key_pair)
    return _decrypt_ecies(envelope, key_pair)


def _encrypt_rsa(plaintext: bytes, recipient: PublicKeyRecord) -> RsaEnvelope:
    try:
        pub = recipient.load_key()
        key = os.urandom(CFG.AES_KEY_BYTES)
        iv = os.urandom(CFG.CBC_IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        enc = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ct = enc.update(padded) + enc.finalize()
        wrapped = pub.encrypt(key, _OAEP)
    except (ValueError, TypeError) as exc:
        raise EncryptionError(f"RSA encryption failed: {exc}") from exc
    return RsaEnvelope(wrapped, iv, ct)


def _decrypt_rsa(env: RsaEnvelope, key_pair: KeyPair) -> bytes:
    if len(env.iv) != CFG.CBC_IV_BYTES:
        raise MalformedEnvelope(f"RSA iv must be {CFG.CBC_IV_BYTES} bytes")
    try:
        key = key_pair.private_key.decrypt(env.encrypted_key, _OAEP)
        if len(key) != CFG.AES_KEY_BYTES:
            raise ValueError("unwrapped session key has the wrong size")
        dec = Cipher(algorithms.AES(key), modes.CBC(env.iv)).decryptor()
        padded = dec.update(env.encrypted_data) + dec.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise AuthenticationFailed("RSA envelope could not be opened") from exc


def _ecdh_key(private_key: ec.EllipticCurvePrivateKey, peer: ec.EllipticCurvePublicKey) -> bytes:
    shared_x = private_key.exchange(ec.ECDH(), peer)
    return hashlib.sha256(shared_x).digest()


def _encrypt_ecies(plaintext: bytes, recipient: PublicKeyRecord) -> EciesEnvelope:
    try:
        pub = recipient.load_key()
        eph = ec.generate_private_key(ec.SECP256K1())
        key = _ecdh_key(eph, pub)
        iv = os.urandom(CFG.GCM_IV_BYTES)
        sealed = AESGCM(key).encrypt(iv, plaintext, None)
    except (ValueError, TypeError) as exc:
        raise EncryptionError(f"ECIES encryption failed: {exc}") from exc
    eph_pub = eph.public_key().public_bytes(Encoding.X962, PublicFormat.CompressedPoint)
    ct, tag = sealed[:-CFG.GCM_TAG_BYTES], sealed[-CFG.GCM_TAG_BYTES:]
    return EciesEnvelope(eph_pub, iv, ct, tag, CFG.ECIES_CURVE_NAME)


def _decrypt_ecies(env: EciesEnvelope, key_pair: KeyPair) -> bytes:
    if env.curve.lower() != CFG.ECIES_CURVE_NAME:
        raise MalformedEnvelope(f"unsupported ECIES curve: {env.curve}")
    if len(env.iv) != CFG.GCM_IV_BYTES or len(env.auth_tag) != CFG.GCM_TAG_BYTES:
        raise MalformedEnvelope("ECIES iv/authTag have the wrong size")
    try:
        peer = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), env.ephemeral_public_key)
    except ValueError as exc:
        raise MalformedEnvelope("ECIES ephemeral key is not a secp256k1 point") from exc
    key = _ecdh_key(key_pair.private_key, peer)
    try:
        return AESGCM(key).decrypt(env.iv, env.encrypted_data + env.auth_tag, None)
    except InvalidTag as exc:
        raise AuthenticationFailed("ECIES authentication tag mismatch") from exc


# =============================================================================
# Serialization
# =============================================================================

_RSA_FIELDS   = ("encryptedKey", "iv", "encryptedData")
_ECIES_FIELDS = ("ephemeralPublicKey", "iv", "encryptedData", "authTag")


def envelope_to_dict(env: Envelope, binary: bool = False) -> Dict[str, Any]:
    d: Dict[str, Any] = {"type": env.type}
    for k, v in env.to_fields().items():
        d[k] = v if binary else v.hex()
    if isinstance(env, EciesEnvelope):
        d["curve"] = env.curve
    return d


def envelope_from_dict(d: Any) -> Envelope:
    if not isinstance(d, dict):
        raise MalformedEnvelope("envelope is not a mapping")
    t = d.get("type")
    if t == CFG.SCHEME_RSA:
        f = _fields(d, _RSA_FIELDS)
        return RsaEnvelope(f["encryptedKey"], f["iv"], f["encryptedData"])
    if t == CFG.SCHEME_ECIES:
        f = _fields(d, _ECIES_FIELDS)
        curve = d.get("curve") or CFG.ECIES_CURVE_NAME
        if not isinstance(curve, str):
            raise MalformedEnvelope("ECIES curve must be a string")
        return EciesEnvelope(f["ephemeralPublicKey"], f["iv"], f["encryptedData"], f["authTag"], curve)
    raise MalformedEnvelope(f"missing or unknown envelope type: {t!r}")


def _fields(d: Dict[str, Any], names) -> Dict[str, bytes]:
    out: Dict[str, bytes] = {}
    for name in names:
        v = d.get(name)
        if isinstance(v, (bytes, bytearray)):
            out[name] = bytes(v)
        elif isinstance(v, str):
            try:
                out[name] = bytes.fromhex(v)
            except ValueError as exc:
                raise MalformedEnvelope(f"field {name} is not hex") from exc
        else:
            raise MalformedEnvelope(f"field {name} missing")
    return out


def encode_envelope(env: Envelope, fmt: str | None = None) -> bytes:
    """Serialize `env` as "json" (hex fields) or "msgpack" (raw bytes fields).

    The binary form is MessagePack, not CBOR: it is readable by TopicBox
    peers only, while the JSON form is the interoperable one. Senders that
    must reach other clients of the same topic should keep "json".
    """
    f = (fmt or CFG.ENVELOPE_FORMAT).lower()
    if f == "json":
        return json.dumps(envelope_to_dict(env), separators=(",", ":")).encode("utf-8")
    if f == "msgpack":
        return msgpack.packb(envelope_to_dict(env, binary=True), use_bin_type=True)
    raise ValueError(f"unknown envelope format: {fmt}")


def _is_msgpack_map(first: int) -> bool:
    # fixmap, map16, map32
    return 0x80 <= first <= 0x8F or first in (0xDE, 0xDF)


def decode_envelope(data: bytes) -> Envelope:
    if not data:
        raise MalformedEnvelope("empty payload")
    if data[:1] == b"{":
        try:
            obj = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedEnvelope("payload is not valid JSON") from exc
    elif _is_msgpack_map(data[0]):
        try:
            obj = msgpack.unpackb(data, raw=False)
        except (msgpack.exceptions.UnpackException, ValueError, TypeError) as exc:
            raise MalformedEnvelope("payload is not valid msgpack") from exc
    else:
        raise MalformedEnvelope("payload is neither a JSON nor a msgpack map")
    return envelope_from_dict(obj)


def is_public_key_entry(data: bytes) -> bool:
    """True when a received payload is the topic's own PUBLIC_KEY record."""
    if data[:1] != b"{":
        return False
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return False
    return isinstance(obj, dict) and obj.get("type") == CFG.PUBLIC_KEY_ENTRY_TYPE
