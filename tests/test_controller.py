# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md

import os
import sys
import time
import queue
import base64

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_ROOT = os.path.join(PROJECT_ROOT, "src")
for path in (PROJECT_ROOT, SRC_ROOT):
    if path not in sys.path:
        sys.path.append(path)

from topicbox.crypto import keys  # noqa: E402
from topicbox.errors import (  # noqa: E402
    AbandonedReassembly, ConfigurationError, MalformedEnvelope, PartialSendFailure, PublicKeyNotPublished,
    SchemeMismatch, UnsupportedSchemeForKeyType,
)
from topicbox.ledger.local import LocalLedger  # noqa: E402
from topicbox.mailbox.controller import MessageBox, memo_pointer  # noqa: E402

CHUNK_TEST = "CHUNK_TEST: " + "X" * 400
SECP_PREFIX = "3030020100300706052b8104000a04220420"


def _secp_secret_hex():
    sk = ec.generate_private_key(ec.SECP256K1())
    return SECP_PREFIX + sk.private_numbers().private_value.to_bytes(32, "big").hex()


class FlakyLedger(LocalLedger):
    def __init__(self, fail_on_call, **kw):
        super().__init__(backend="memory", **kw)
        self.fail_on_call = fail_on_call
        self.calls = 0

    def submit_message(self, topic_id, data):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise ConnectionError("ledger unavailable")
        return super().submit_message(topic_id, data)


class CountingLedger(LocalLedger):
    def __init__(self, **kw):
        super().__init__(backend="memory", **kw)
        self.first_lookups = 0
        self.topics_created = 0

    def get_first_topic_message(self, topic_id):
        self.first_lookups += 1
        return super().get_first_topic_message(topic_id)

    def create_topic(self, memo=""):
        self.topics_created += 1
        return super().create_topic(memo)


@pytest.fixture
def ledger():
    return CountingLedger()


@pytest.fixture
def rsa_box(ledger, tmp_path):
    return MessageBox(ledger, scheme="RSA", key_dir=str(tmp_path / "keys"))


@pytest.fixture
def ecies_box(ledger):
    return MessageBox(ledger, scheme="ECIES", account_secret=_secp_secret_hex())


def test_setup_publishes_public_key_first(rsa_box, ledger):
    res = rsa_box.setup()
    first = ledger.get_first_topic_message(res.topic_id)
    assert first["sequence_number"] == 1
    record = keys.PublicKeyRecord.from_entry_bytes(base64.b64decode(first["message"]))
    assert record.matches(res.public_key)


def test_setup_updates_account_memo(rsa_box, ledger):
    res = rsa_box.setup(account_id="0.0.77")
    assert ledger.get_account_memo("0.0.77") == memo_pointer(res.topic_id)
    assert rsa_box.resolve_topic("0.0.77") == res.topic_id


def test_ecies_setup_rejects_ed25519_before_ledger_call(ledger):
    box = MessageBox(ledger, scheme="ECIES")
    with pytest.raises(UnsupportedSchemeForKeyType):
        box.setup(account_secret="302e020100300506032b657004220420" + "11" * 32)
    assert ledger.topics_created == 0


def test_chunk_test_message_round_trip_rsa(rsa_box):
    topic = rsa_box.setup().topic_id
    receipt = rsa_box.send(topic, CHUNK_TEST)
    assert receipt.chunk_count == 2
    assert receipt.sequence_numbers == (2, 3)
    assert receipt.scheme == "RSA"

    messages, errors = rsa_box.check_messages(topic)
    assert errors == []
    assert [m.text for m in messages] == [CHUNK_TEST]
    assert messages[0].sequence_numbers == (2, 3)


@pytest.mark.parametrize("fmt", ["json", "msgpack"])
def test_round_trip_ecies(ecies_box, fmt):
    topic = ecies_box.setup().topic_id
    long_text = "This is a test message for HCS chunking. " * 50
    ecies_box.send(topic, "short one", fmt=fmt)
    ecies_box.send(topic, long_text, fmt=fmt)
    messages, errors = ecies_box.check_messages(topic)
    assert errors == []
    assert [m.text for m in messages] == ["short one", long_text]
    assert all(m.scheme == "ECIES" for m in messages)


def test_single_chunk_message_is_unframed(rsa_box, ledger):
    topic = rsa_box.setup().topic_id
    receipt = rsa_box.send(topic, "hi")
    assert receipt.chunk_count == 1
    assert receipt.message_id == f"seq:{receipt.sequence_numbers[0]}"
    raw = base64.b64decode(ledger.get_messages_in_range(topic, 2)[0]["message"])
    assert raw.startswith(b"{")


def test_native_chunking_mode(ledger, tmp_path):
    box = MessageBox(ledger, scheme="RSA", key_dir=str(tmp_path / "k"), chunking="native")
    topic = box.setup().topic_id
    receipt = box.send(topic, CHUNK_TEST)
    assert receipt.chunk_count == 2
    entries = ledger.get_messages_in_range(topic, 2)
    assert all("chunk_info" in e for e in entries)
    assert "@" in receipt.message_id
    messages, errors = box.check_messages(topic)
    assert errors == [] and messages[0].text == CHUNK_TEST


def test_oversized_chunk_payload_keeps_one_frame_per_entry(ledger, tmp_path):
    box = MessageBox(ledger, scheme="RSA", key_dir=str(tmp_path / "k"), max_chunk_payload=1024)
    assert box.max_chunk_payload == 1024 - 25
    topic = box.setup().topic_id
    receipt = box.send(topic, CHUNK_TEST)
    assert receipt.chunk_count == 2
    assert receipt.sequence_numbers == (2, 3)
    entries = ledger.get_messages_in_range(topic, 2)
    assert len(entries) == 2
    assert all("chunk_info" not in e for e in entries)
    messages, errors = box.check_messages(topic)
    assert errors == []
    assert [m.text for m in messages] == [CHUNK_TEST]


@pytest.mark.parametrize("limit", [0, -1])
def test_non_positive_chunk_payload_rejected(ledger, limit):
    with pytest.raises(ConfigurationError):
        MessageBox(ledger, scheme="RSA", max_chunk_payload=limit)


def test_send_to_topic_without_key(rsa_box, ledger):
    bare = ledger.create_topic("no key here")
    with pytest.raises(PublicKeyNotPublished):
        rsa_box.send(bare, "hello")
    ledger.submit_message(bare, b"just text")
    with pytest.raises(PublicKeyNotPublished):
        rsa_box.fetch_public_key(bare, refresh=True)


def test_public_key_cache(rsa_box, ledger):
    topic = rsa_box.setup().topic_id
    other = MessageBox(ledger, scheme="RSA", key_pair=rsa_box.key_pair)
    other.fetch_public_key(topic)
    other.fetch_public_key(topic)
    other.send(topic, "cached")
    assert ledger.first_lookups == 0
    other.fetch_public_key(topic, refresh=True)
    assert ledger.first_lookups == 1


def test_partial_send_failure_reports_last_confirmed(tmp_path):
    ledger = FlakyLedger(fail_on_call=3)
    box = MessageBox(ledger, scheme="RSA", key_dir=str(tmp_path / "k"), max_chunk_payload=400)
    topic = box.setup().topic_id  # call 1
    with pytest.raises(PartialSendFailure) as ei:
        box.send(topic, CHUNK_TEST)  # chunk 0 is call 2, chunk 1 fails
    err = ei.value
    assert err.failed_index == 1
    assert err.last_confirmed_index == 0
    assert err.total == 4
    assert err.topic_id == topic
    assert ledger.get_latest_sequence_number(topic) == 2


def test_incomplete_message_reported_by_check(tmp_path):
    ledger = FlakyLedger(fail_on_call=3)
    box = MessageBox(ledger, scheme="RSA", key_dir=str(tmp_path / "k"))
    topic = box.setup().topic_id
    with pytest.raises(PartialSendFailure):
        box.send(topic, CHUNK_TEST)
    messages, errors = box.check_messages(topic)
    assert messages == []
    assert len(errors) == 1 and isinstance(errors[0], AbandonedReassembly)


def test_scheme_mismatch_surfaces_distinctly(rsa_box, ecies_box):
    topic = rsa_box.setup().topic_id
    rsa_box.send(topic, "for the RSA key")
    ecies_pair = keys.load_or_create("ECIES", ecies_box.account_secret)
    messages, errors = rsa_box.check_messages(topic, key_pair=ecies_pair)
    assert messages == []
    assert len(errors) == 1 and isinstance(errors[0], SchemeMismatch)


def test_garbage_entry_goes_to_errors(rsa_box, ledger):
    topic = rsa_box.setup().topic_id
    ledger.submit_message(topic, b"not an envelope")
    rsa_box.send(topic, "real one")
    messages, errors = rsa_box.check_messages(topic)
    assert [m.text for m in messages] == ["real one"]
    assert len(errors) == 1 and isinstance(errors[0], MalformedEnvelope)


def test_check_messages_range(rsa_box):
    topic = rsa_box.setup().topic_id
    for word in ("one", "two", "three"):
        rsa_box.send(topic, word)
    messages, _ = rsa_box.check_messages(topic, start=3, end=3)
    assert [m.text for m in messages] == ["two"]


def test_send_to_account(rsa_box):
    rsa_box.setup(account_id="0.0.88")
    receipt = rsa_box.send_to_account("0.0.88", "via memo")
    messages, _ = rsa_box.check_messages(receipt.topic_id)
    assert [m.text for m in messages] == ["via memo"]


def test_resolve_topic_without_pointer(rsa_box, ledger):
    ledger.update_account_memo("0.0.99", "just a memo")
    with pytest.raises(PublicKeyNotPublished):
        rsa_box.resolve_topic("0.0.99")


def test_verify_key_pair_matches_topic(rsa_box, tmp_path):
    topic = rsa_box.setup().topic_id
    assert rsa_box.verify_key_pair_matches_topic(rsa_box.key_pair, topic)
    stranger = keys.load_or_create("RSA", key_dir=tmp_path / "other")
    assert not rsa_box.verify_key_pair_matches_topic(stranger, topic)


def test_verify_ecies_from_secret_alone(ecies_box):
    topic = ecies_box.setup().topic_id
    again = keys.load_or_create("ECIES", ecies_box.account_secret)
    assert ecies_box.verify_key_pair_matches_topic(again, topic)


def _wait_for(q, n, timeout=10.0):
    got = []
    deadline = time.monotonic() + timeout
    while len(got) < n and time.monotonic() < deadline:
        try:
            got.append(q.get(timeout=0.05))
        except queue.Empty:
            pass
    return got


def test_listen_delivers_new_messages_in_order(ecies_box):
    topic = ecies_box.setup().topic_id
    ecies_box.send(topic, "before listening")
    inbox, errors = queue.Queue(), []
    sub = ecies_box.listen(topic, inbox.put, on_error=errors.append, interval=0.05)
    try:
        ecies_box.send(topic, "first")
        ecies_box.send(topic, "This is a test message for HCS chunking. " * 50)
        got = _wait_for(inbox, 2)
    finally:
        sub.cancel()
        sub.join(5)
    assert [m.text for m in got][0] == "first"
    assert len(got) == 2
    assert errors == []
    assert not sub.running
    assert sub.cursor.last_sequence_number == ecies_box.query.get_latest_sequence_number(topic)


def test_listen_from_sequence_replays(rsa_box):
    topic = rsa_box.setup().topic_id
    rsa_box.send(topic, "old news")
    inbox = queue.Queue()
    sub = rsa_box.listen(topic, inbox.put, from_sequence=1, interval=0.05)
    try:
        got = _wait_for(inbox, 1)
    finally:
        sub.cancel()
        sub.join(5)
    assert [m.text for m in got] == ["old news"]
