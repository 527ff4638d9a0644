# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md
# Refs: SEC1; RFC5958-PKCS8; RFC8017-OAEP

import os
import sys
import stat

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_ROOT = os.path.join(PROJECT_ROOT, "src")
for path in (PROJECT_ROOT, SRC_ROOT):
    if path not in sys.path:
        sys.path.append(path)

from topicbox.crypto import keys  # noqa: E402
from topicbox.crypto.keys import PublicKeyRecord  # noqa: E402
from topicbox.errors import (  # noqa: E402
    ConfigurationError, KeyMaterialMissing, SchemeKeyTypeMismatch, UnsupportedSchemeForKeyType,
)

SECP_PREFIX = "3030020100300706052b8104000a04220420"
ED_PREFIX = "302e020100300506032b657004220420"


def _secp_secret():
    sk = ec.generate_private_key(ec.SECP256K1())
    raw = sk.private_numbers().private_value.to_bytes(32, "big")
    return sk, raw


def test_parse_ledger_der_secp256k1():
    _, raw = _secp_secret()
    kt, scalar = keys.parse_account_secret(SECP_PREFIX + raw.hex())
    assert kt == keys.KEY_TYPE_SECP256K1
    assert scalar == raw


def test_parse_ledger_der_ed25519():
    raw = os.urandom(32)
    kt, scalar = keys.parse_account_secret("0x" + ED_PREFIX + raw.hex())
    assert kt == keys.KEY_TYPE_ED25519
    assert scalar == raw


def test_parse_pkcs8_der_and_pem_agree():
    sk, raw = _secp_secret()
    der = sk.private_bytes(Encoding.DER, serialization.PrivateFormat.PKCS8, serialization.NoEncryption())
    pem = sk.private_bytes(Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption())
    assert keys.parse_account_secret(der) == (keys.KEY_TYPE_SECP256K1, raw)
    assert keys.parse_account_secret(pem.decode()) == (keys.KEY_TYPE_SECP256K1, raw)


def test_raw_scalar_defaults_to_secp256k1_unless_hinted():
    raw = os.urandom(32)
    assert keys.parse_account_secret(raw)[0] == keys.KEY_TYPE_SECP256K1
    assert keys.parse_account_secret(raw, key_type="ed25519")[0] == keys.KEY_TYPE_ED25519


def test_parse_garbage_is_configuration_error():
    with pytest.raises(ConfigurationError):
        keys.parse_account_secret("not-a-key")
    with pytest.raises(ConfigurationError):
        keys.parse_account_secret(b"\x01\x02\x03")


def test_ecies_rejects_ed25519_secret():
    sk = ed25519.Ed25519PrivateKey.generate()
    with pytest.raises(UnsupportedSchemeForKeyType) as ei:
        keys.load_or_create("ECIES", sk)
    assert isinstance(ei.value, SchemeKeyTypeMismatch)
    assert ei.value.key_type == keys.KEY_TYPE_ED25519

    with pytest.raises(UnsupportedSchemeForKeyType):
        keys.load_or_create("ECIES", ED_PREFIX + os.urandom(32).hex())


def test_ecies_without_secret_is_rejected():
    with pytest.raises(UnsupportedSchemeForKeyType):
        keys.load_or_create("ECIES", None)


def test_derive_public_key_is_deterministic_and_compressed():
    sk, raw = _secp_secret()
    a = keys.derive_public_key("ECIES", SECP_PREFIX + raw.hex())
    b = keys.derive_public_key("ecies", raw)
    assert a == b
    assert a.curve == "secp256k1"
    assert len(a.key_material) == 33
    assert a.key_material == sk.public_key().public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def test_ecies_keypair_halves_match():
    _, raw = _secp_secret()
    pair = keys.load_or_create("ECIES", raw)
    expect = pair.private_key.public_key().public_bytes(Encoding.X962, PublicFormat.CompressedPoint)
    assert pair.public_key.key_material == expect


SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


@pytest.mark.parametrize("scalar", [0, SECP256K1_ORDER, 2**256 - 1])
def test_out_of_range_scalar_is_configuration_error(scalar):
    raw = scalar.to_bytes(32, "big")
    with pytest.raises(ConfigurationError):
        keys.pubkey_from_scalar(raw)
    with pytest.raises(ConfigurationError):
        keys.derive_public_key("ECIES", SECP_PREFIX + raw.hex())
    with pytest.raises(ConfigurationError):
        keys.load_or_create("ECIES", raw)


def test_unknown_scheme_rejected():
    with pytest.raises(ConfigurationError):
        keys.normalize_scheme("DSA")


def test_rsa_load_or_create_persists(tmp_path):
    first = keys.load_or_create("RSA", key_dir=tmp_path)
    second = keys.load_or_create("RSA", key_dir=tmp_path)
    assert first.public_key == second.public_key
    assert first.private_key.key_size == 2048

    priv = tmp_path / "rsa_private.pem"
    assert priv.exists() and (tmp_path / "rsa_public.pem").exists()
    if os.name == "posix":
        assert stat.S_IMODE(priv.stat().st_mode) == 0o600


def test_rsa_derive_public_key_from_private_pem(tmp_path):
    pair = keys.load_or_create("RSA", key_dir=tmp_path)
    pem = (tmp_path / "rsa_private.pem").read_bytes()
    assert keys.derive_public_key("RSA", pem) == pair.public_key


def test_load_rsa_keypair_missing(tmp_path):
    with pytest.raises(KeyMaterialMissing) as ei:
        keys.load_rsa_keypair(tmp_path)
    assert ei.value.path.endswith("rsa_private.pem")


def test_rsa_passphrase_required_when_encrypted(tmp_path):
    keys.load_or_create("RSA", key_dir=tmp_path, passphrase=b"hunter2")
    assert keys.load_rsa_keypair(tmp_path, passphrase=b"hunter2").scheme == "RSA"
    with pytest.raises(ConfigurationError):
        keys.load_rsa_keypair(tmp_path)


def test_regenerate_over_orphaned_public_key_logs_warning(tmp_path, caplog):
    keys.load_or_create("RSA", key_dir=tmp_path)
    (tmp_path / "rsa_private.pem").unlink()
    with caplog.at_level("WARNING", logger="topicbox.crypto(keys)"):
        keys.load_or_create("RSA", key_dir=tmp_path)
    assert any("can no longer be decrypted" in r.getMessage() for r in caplog.records)


def test_rsa_record_entry_roundtrip(tmp_path):
    pair = keys.load_or_create("RSA", key_dir=tmp_path)
    entry = pair.public_key.to_entry()
    assert entry["type"] == "PUBLIC_KEY"
    assert entry["encryptionType"] == "RSA"
    assert entry["publicKey"].startswith("-----BEGIN PUBLIC KEY-----")
    assert PublicKeyRecord.from_entry(entry).matches(pair.public_key)


def test_record_without_encryption_type_is_rsa(tmp_path):
    pair = keys.load_or_create("RSA", key_dir=tmp_path)
    entry = {"type": "PUBLIC_KEY", "publicKey": pair.public_key.pem}
    assert PublicKeyRecord.from_entry(entry).scheme == "RSA"


def test_ecies_record_accepts_uncompressed_point():
    sk, _ = _secp_secret()
    uncompressed = sk.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    rec = PublicKeyRecord.from_entry(
        {"type": "PUBLIC_KEY", "publicKey": uncompressed.hex(), "encryptionType": "ECIES", "curve": "secp256k1"}
    )
    assert len(rec.key_material) == 33
    assert rec.to_entry()["curve"] == "secp256k1"


def test_record_rejects_wrong_type_and_curve():
    with pytest.raises(ValueError):
        PublicKeyRecord.from_entry({"type": "MESSAGE", "publicKey": "00"})
    with pytest.raises(ValueError):
        PublicKeyRecord.from_entry({"type": "PUBLIC_KEY", "publicKey": "02" + "11" * 32,
                                    "encryptionType": "ECIES", "curve": "p256"})
