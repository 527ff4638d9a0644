# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md
# Refs: libsecp256k1; SEC1; RFC8017-OAEP; RFC5958-PKCS8

from __future__ import annotations

import os, json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from ecdsa import SECP256k1, SigningKey
from ecdsa.errors import MalformedPointError
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat, PrivateFormat

# ---------------- Local Project ----------------
from ..errors import ConfigurationError, KeyMaterialMissing, UnsupportedSchemeForKeyType
from ..utils import config as CFG

# ---------------- Logger ----------------
from ..utils.box_logging import get_ctx_logger
log = get_ctx_logger("topicbox.crypto(keys)")


KEY_TYPE_SECP256K1 = "SECP256K1"
KEY_TYPE_ED25519   = "ED25519"

# DER prefixes used by the ledger SDKs for raw 32-byte private keys
_DER_PREFIX_ED25519   = bytes.fromhex("302e020100300506032b657004220420")
_DER_PREFIX_SECP256K1 = bytes.fromhex("3030020100300706052b8104000a04220420")

Secret = Union[str, bytes, bytearray, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey, rsa.RSAPrivateKey]


def normalize_scheme(scheme: Optional[str]) -> str:
    s = (scheme or CFG.ENCRYPTION_SCHEME or "").strip().upper()
    if s not in CFG.ENVELOPE_TYPES:
        raise ConfigurationError(f"unsupported encryption scheme: {scheme!r}")
    return s


# =============================================================================
# Public key record
# =============================================================================

@dataclass(frozen=True)
class PublicKeyRecord:
    """Public half of a box key, as published in the first entry of the topic.

    `key_material` is canonical: DER SubjectPublicKeyInfo for RSA and the
    33-byte compressed point for ECIES, so two records can be compared
    byte-for-byte.
    """
    scheme: str
    key_material: bytes
    curve: Optional[str] = None

    @property
    def pem(self) -> str:
        if self.scheme != CFG.SCHEME_RSA:
            raise ValueError("PEM form only exists for RSA records")
        key = serialization.load_der_public_key(self.key_material)
        return key.public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo).decode("ascii")

    def load_key(self):
        if self.scheme == CFG.SCHEME_RSA:
            return serialization.load_der_public_key(self.key_material)
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), self.key_material)

    def matches(self, other: "PublicKeyRecord") -> bool:
        return (
            self.scheme == other.scheme
            and self.key_material == other.key_material
            and (self.curve or "") == (other.curve or "")
        )

    def to_entry(self) -> Dict[str, Any]:
        if self.scheme == CFG.SCHEME_RSA:
            return {
                "type": CFG.PUBLIC_KEY_ENTRY_TYPE,
                "publicKey": self.pem,
                "encryptionType": CFG.SCHEME_RSA,
            }
        return {
            "type": CFG.PUBLIC_KEY_ENTRY_TYPE,
            "publicKey": self.key_material.hex(),
            "encryptionType": CFG.SCHEME_ECIES,
            "curve": self.curve or CFG.ECIES_CURVE_NAME,
        }

    def to_entry_bytes(self) -> bytes:
        return json.dumps(self.to_entry(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_entry(cls, obj: Dict[str, Any]) -> "PublicKeyRecord":
        if not isinstance(obj, dict) or obj.get("type") != CFG.PUBLIC_KEY_ENTRY_TYPE:
            raise ValueError("not a PUBLIC_KEY entry")
        # boxes created before ECIES support carry no encryptionType
        scheme = normalize_scheme(obj.get("encryptionType") or CFG.SCHEME_RSA)
        raw = obj.get("publicKey")
        if not isinstance(raw, str) or not raw.strip():
            raise ValueError("PUBLIC_KEY entry has no publicKey")
        raw = raw.strip()

        if scheme == CFG.SCHEME_RSA:
            if raw.startswith("-----BEGIN"):
                key = serialization.load_pem_public_key(raw.encode("ascii"))
            else:
                key = serialization.load_der_public_key(bytes.fromhex(raw))
            if not isinstance(key, rsa.RSAPublicKey):
                raise ValueError("RSA PUBLIC_KEY entry holds a non-RSA key")
            der = key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
            return cls(CFG.SCHEME_RSA, der)

        curve = str(obj.get("curve") or CFG.ECIES_CURVE_NAME).lower()
        if curve != CFG.ECIES_CURVE_NAME:
            raise ValueError(f"unsupported ECIES curve: {curve}")
        point = bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)
        return cls(CFG.SCHEME_ECIES, compress_point(point), CFG.ECIES_CURVE_NAME)

    @classmethod
    def from_entry_bytes(cls, data: bytes) -> "PublicKeyRecord":
        try:
            obj = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("PUBLIC_KEY entry is not JSON") from exc
        return cls.from_entry(obj)


@dataclass(frozen=True)
class KeyPair:
    scheme: str
    private_key: Any = field(repr=False)
    public_key: PublicKeyRecord

    def __post_init__(self):
        if self.scheme != self.public_key.scheme:
            raise ConfigurationError(
                f"key pair scheme {self.scheme} differs from public record scheme {self.public_key.scheme}"
            )


# =============================================================================
# secp256k1 helpers
# =============================================================================

def compress_point(point: bytes) -> bytes:
    pub = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), point)
    return pub.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def _check_scalar(raw: bytes) -> int:
    if len(raw) != 32:
        raise ConfigurationError(f"secp256k1 private key must be 32 bytes, got {len(raw)}")
    d = int.from_bytes(raw, "big")
    if not 1 <= d < SECP256k1.order:
        raise ConfigurationError("secp256k1 private key is zero or not below the curve order")
    return d


def pubkey_from_scalar(raw: bytes) -> bytes:
    _check_scalar(raw)
    try:
        sk = SigningKey.from_string(raw, curve=SECP256k1)
    except MalformedPointError as exc:
        raise ConfigurationError(f"invalid secp256k1 private key: {exc}") from exc
    vk = sk.get_verifying_key()
    px = vk.pubkey.point.x()
    py = vk.pubkey.point.y()
    prefix = b'\x02' if (py % 2 == 0) else b'\x03'
    return prefix + px.to_bytes(32, 'big')


def ec_priv_from_scalar(raw: bytes) -> ec.EllipticCurvePrivateKey:
    return ec.derive_private_key(_check_scalar(raw), ec.SECP256K1())


def parse_account_secret(secret: Secret, key_type: Optional[str] = None) -> Tuple[str, bytes]:
    """Identify an account signing key and return `(key_type, raw_32_byte_scalar)`.

    Accepts key objects, PEM, the ledger's short DER forms, PKCS#8 DER, and
    raw 32-byte scalars (hex or bytes). A raw scalar is ambiguous, so it is
    taken as secp256k1 unless `key_type` says otherwise.
    """
    if isinstance(secret, ed25519.Ed25519PrivateKey):
        return KEY_TYPE_ED25519, secret.private_bytes(Encoding.Raw, PrivateFormat.Raw, serialization.NoEncryption())
    if isinstance(secret, ec.EllipticCurvePrivateKey):
        return _from_ec_key(secret)
    if isinstance(secret, rsa.RSAPrivateKey):
        return "RSA", b""

    if isinstance(secret, str):
        text = secret.strip()
        if text.startswith("-----BEGIN"):
            try:
                key = serialization.load_pem_private_key(text.encode("ascii"), password=None)
            except (ValueError, TypeError) as exc:
                raise ConfigurationError("account key PEM could not be loaded") from exc
            return parse_account_secret(key, key_type)
        if text.lower().startswith("0x"):
            text = text[2:]
        try:
            data = bytes.fromhex(text)
        except ValueError as exc:
            raise ConfigurationError("account key is neither PEM nor hex") from exc
    elif isinstance(secret, (bytes, bytearray)):
        data = bytes(secret)
    else:
        raise ConfigurationError(f"unsupported account key object: {type(secret).__name__}")

    if data.startswith(_DER_PREFIX_ED25519) and len(data) == len(_DER_PREFIX_ED25519) + 32:
        return KEY_TYPE_ED25519, data[-32:]
    if data.startswith(_DER_PREFIX_SECP256K1) and len(data) == len(_DER_PREFIX_SECP256K1) + 32:
        return KEY_TYPE_SECP256K1, data[-32:]
    if len(data) == 32:
        kt = (key_type or KEY_TYPE_SECP256K1).upper()
        if kt not in (KEY_TYPE_SECP256K1, KEY_TYPE_ED25519):
            raise ConfigurationError(f"unknown key type hint: {key_type}")
        return kt, data
    try:
        key = serialization.load_der_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"unrecognised account key encoding ({len(data)} bytes)") from exc
    return parse_account_secret(key, key_type)


def _from_ec_key(key: ec.EllipticCurvePrivateKey) -> Tuple[str, bytes]:
    if not isinstance(key.curve, ec.SECP256K1):
        return key.curve.name.upper(), b""
    return KEY_TYPE_SECP256K1, key.private_numbers().private_value.to_bytes(32, "big")


# =============================================================================
# Derivation
# =============================================================================

def _load_rsa_private(secret: Secret, passphrase: Optional[bytes] = None) -> rsa.RSAPrivateKey:
    if isinstance(secret, rsa.RSAPrivateKey):
        return secret
    if isinstance(secret, str):
        secret = secret.encode("ascii")
    if not isinstance(secret, (bytes, bytearray)):
        raise ConfigurationError("RSA boxes need an RSA private key")
    data = bytes(secret)
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            key = serialization.load_pem_private_key(data, password=passphrase)
        else:
            key = serialization.load_der_private_key(data, password=passphrase)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("RSA private key could not be loaded") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ConfigurationError(f"expected an RSA private key, got {type(key).__name__}")
    return key


def rsa_public_record(private_key: rsa.RSAPrivateKey) -> PublicKeyRecord:
    der = private_key.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
    return PublicKeyRecord(CFG.SCHEME_RSA, der)


def _ecies_scalar(secret: Optional[Secret]) -> bytes:
    if secret is None:
        raise UnsupportedSchemeForKeyType(CFG.SCHEME_ECIES, "missing", "ECIES boxes derive their key from the account's secp256k1 key")
    key_type, raw = parse_account_secret(secret)
    if key_type != KEY_TYPE_SECP256K1:
        raise UnsupportedSchemeForKeyType(CFG.SCHEME_ECIES, key_type, "only secp256k1 keys can perform ECDH here")
    return raw


def derive_public_key(scheme: str, external_secret: Secret) -> PublicKeyRecord:
    """Pure and deterministic: the same secret always yields the same record."""
    s = normalize_scheme(scheme)
    if s == CFG.SCHEME_RSA:
        return rsa_public_record(_load_rsa_private(external_secret))
    raw = _ecies_scalar(external_secret)
    return PublicKeyRecord(CFG.SCHEME_ECIES, pubkey_from_scalar(raw), CFG.ECIES_CURVE_NAME)


def derive_ecies_keypair(external_secret: Secret) -> KeyPair:
    raw = _ecies_scalar(external_secret)
    record = PublicKeyRecord(CFG.SCHEME_ECIES, pubkey_from_scalar(raw), CFG.ECIES_CURVE_NAME)
    return KeyPair(CFG.SCHEME_ECIES, ec_priv_from_scalar(raw), record)


# =============================================================================
# RSA persistence
# =============================================================================

def _key_paths(key_dir: Optional[str | os.PathLike]) -> Tuple[Path, Path]:
    base = Path(key_dir or CFG.KEYS_DIR)
    return base / CFG.RSA_PRIVATE_KEY_FILE, base / CFG.RSA_PUBLIC_KEY_FILE


def _write_atomic(path: Path, data: bytes, mode: Optional[int] = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "wb") as f:
        f.write(data)
        f.flush(); os.fsync(f.fileno())
    if mode is not None:
        os.chmod(tmp, mode)
    os.replace(tmp, path)


def generate_rsa_keypair() -> KeyPair:
    sk = rsa.generate_private_key(public_exponent=CFG.RSA_PUBLIC_EXP, key_size=CFG.RSA_KEY_BITS)
    return KeyPair(CFG.SCHEME_RSA, sk, rsa_public_record(sk))


def save_rsa_keypair(pair: KeyPair, key_dir: Optional[str | os.PathLike] = None, passphrase: Optional[bytes] = None) -> Tuple[Path, Path]:
    if pair.scheme != CFG.SCHEME_RSA:
        raise ConfigurationError("only RSA key pairs are persisted")
    priv_path, pub_path = _key_paths(key_dir)
    enc = serialization.BestAvailableEncryption(passphrase) if passphrase else serialization.NoEncryption()
    priv_pem = pair.private_key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, enc)
    _write_atomic(priv_path, priv_pem, 0o600)
    _write_atomic(pub_path, pair.public_key.pem.encode("ascii"))
    log.info("[save_rsa_keypair] RSA key pair written to %s", priv_path.parent)
    return priv_path, pub_path


def load_rsa_keypair(key_dir: Optional[str | os.PathLike] = None, passphrase: Optional[bytes] = None) -> KeyPair:
    priv_path, pub_path = _key_paths(key_dir)
    if not priv_path.exists():
        raise KeyMaterialMissing(str(priv_path))
    sk = _load_rsa_private(priv_path.read_bytes(), passphrase)
    record = rsa_public_record(sk)
    if pub_path.exists():
        stored = serialization.load_pem_public_key(pub_path.read_bytes())
        stored_der = stored.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
        if stored_der != record.key_material:
            raise ConfigurationError(f"{pub_path} does not belong to {priv_path}")
    return KeyPair(CFG.SCHEME_RSA, sk, record)


def load_or_create(
    scheme: Optional[str] = None,
    external_secret: Optional[Secret] = None,
    key_dir: Optional[str | os.PathLike] = None,
    passphrase: Optional[bytes] = None,
) -> KeyPair:
    s = normalize_scheme(scheme)
    if s == CFG.SCHEME_ECIES:
        return derive_ecies_keypair(external_secret)

    try:
        return load_rsa_keypair(key_dir, passphrase)
    except KeyMaterialMissing:
        pass

    priv_path, pub_path = _key_paths(key_dir)
    if pub_path.exists():
        log.warning(
            "[load_or_create] %s exists without its private key; messages sent to that key can no longer be decrypted",
            pub_path,
        )
    pair = generate_rsa_keypair()
    save_rsa_keypair(pair, key_dir, passphrase)
    return pair
