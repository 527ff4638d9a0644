# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md
# Message box CLI: create a box, send to it, read from it

import argparse, signal, time, sys, colorama
from datetime import datetime

# ---------- Local Project ----------
from topicbox.crypto.keys import load_or_create
from topicbox.errors import MessageBoxError, PartialSendFailure
from topicbox.ledger.local import LocalLedger
from topicbox.mailbox.controller import MessageBox
from topicbox.transport.mirror import MirrorNodeClient
from topicbox.utils import config as CFG
from topicbox.utils.box_logging import setup_logging

# ---------- Simple color + timestamp utilities ----------

colorama.init()
RESET  = "\033[0m"
BLUE   = "\033[34m"
YELLOW = "\033[33m"
GREEN  = "\033[32m"
RED    = "\033[31m"
CYAN   = "\033[36m"

def _stamp() -> str:
    now = datetime.now()
    d = f"{now.year:04d}.{now.month:02d}.{now.day:02d}"
    t = f"{now.hour:02d}.{now.minute:02d}.{now.second:02d}"
    return f"[{BLUE}{d}{RESET}] - [{YELLOW}{t}{RESET}]"

def clog(message: str, color: str = GREEN):
    print(f"{_stamp()} : {color}{message}{RESET}")

def _fmt_seqs(seqs) -> str:
    seqs = list(seqs)
    if not seqs:
        return "-"
    return str(seqs[0]) if len(seqs) == 1 else f"{seqs[0]}..{seqs[-1]}"


def build_box(args) -> MessageBox:
    ledger = LocalLedger(args.ledger_dir, operator_id=args.account_id or None)
    query = MirrorNodeClient(args.mirror_url) if args.mirror_url else None
    return MessageBox(
        ledger,
        query=query,
        scheme=args.scheme,
        account_secret=args.account_key or None,
        key_dir=args.keys_dir,
        chunking=args.chunking,
    )


def cmd_setup(box: MessageBox, args) -> int:
    res = box.setup(scheme=args.scheme, account_id=args.account_id or None, memo=args.memo)
    clog(f"Message box created: {res.topic_id} ({res.public_key.scheme})")
    if res.account_id:
        clog(f"Account {res.account_id} memo now points to {res.topic_id}", color=CYAN)
    return 0


def cmd_send(box: MessageBox, args) -> int:
    text = args.message * max(1, int(args.repeat))
    fmt = "msgpack" if args.msgpack else None
    try:
        if args.account:
            receipt = box.send_to_account(args.recipient, text, fmt)
        else:
            receipt = box.send(args.recipient, text, fmt)
    except PartialSendFailure as exc:
        clog(f"Send interrupted: {exc}", color=RED)
        clog(f"Chunks 0..{exc.last_confirmed_index} of {exc.total} are on the ledger; resend the whole message.", color=YELLOW)
        return 1
    clog(f"Sent {len(text)} chars to {receipt.topic_id} as {receipt.chunk_count} chunk(s), "
         f"seq {_fmt_seqs(receipt.sequence_numbers)} [{receipt.scheme}]")
    return 0


def cmd_listen(box: MessageBox, args) -> int:
    def _on_message(msg):
        clog(f"#{_fmt_seqs(msg.sequence_numbers)} [{msg.scheme}] {msg.text}", color=CYAN)

    def _on_error(exc):
        clog(f"{type(exc).__name__}: {exc}", color=YELLOW)

    sub = box.listen(args.topic, _on_message, from_sequence=args.from_seq,
                     on_error=_on_error, interval=args.interval)
    clog(f"Listening on {args.topic} from seq {sub.cursor.last_sequence_number + 1}. Press Ctrl+C to stop.")

    def _stop(*_a):
        sub.cancel()
    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    while sub.running:
        time.sleep(0.5)
    sub.join()
    clog(f"Stopped at seq {sub.cursor.last_sequence_number}.", color=YELLOW)
    return 0


def cmd_check(box: MessageBox, args) -> int:
    messages, errors = box.check_messages(args.topic, start=args.start, end=args.end)
    for msg in messages:
        clog(f"#{_fmt_seqs(msg.sequence_numbers)} [{msg.scheme}] {msg.text}", color=CYAN)
    for exc in errors:
        clog(f"{type(exc).__name__}: {exc}", color=YELLOW)
    clog(f"{len(messages)} message(s), {len(errors)} error(s).")
    return 0 if not errors else 1


def cmd_verify(box: MessageBox, args) -> int:
    pair = load_or_create(box.scheme, box.account_secret, box.key_dir)
    if box.verify_key_pair_matches_topic(pair, args.topic):
        clog(f"Local {pair.scheme} key matches the key published on {args.topic}.")
        return 0
    clog(f"Local {pair.scheme} key does NOT match {args.topic}; messages there cannot be decrypted.", color=RED)
    return 1


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="TopicBox encrypted message box CLI")
    parser.add_argument("--ledger-dir", default=CFG.LEDGER_DIR, help="LocalLedger LMDB directory")
    parser.add_argument("--mirror-url", default=CFG.MIRROR_URL_OVERRIDE or None, help="Read through a REST query service")
    parser.add_argument("--scheme", default=CFG.ENCRYPTION_SCHEME, choices=list(CFG.ENVELOPE_TYPES))
    parser.add_argument("--keys-dir", default=CFG.KEYS_DIR, help="Directory holding the RSA key pair")
    parser.add_argument("--account-id", default=CFG.ACCOUNT_ID, help="Operator account id")
    parser.add_argument("--account-key", default=CFG.ACCOUNT_KEY, help="Operator secp256k1 key (ECIES boxes)")
    parser.add_argument("--chunking", default=CFG.CHUNKING_MODE, choices=["application", "native"])
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("setup", help="Create a message box and publish its public key")
    p.add_argument("--memo", help="Topic memo")
    p.set_defaults(func=cmd_setup)

    p = sub.add_parser("send", help="Encrypt and send a message")
    p.add_argument("recipient", help="Topic id, or account id with --account")
    p.add_argument("message")
    p.add_argument("--account", action="store_true", help="Resolve the box from the account memo")
    p.add_argument("--repeat", type=int, default=1, help="Repeat the message N times (chunking tests)")
    p.add_argument("--msgpack", action="store_true", help="Use the compact msgpack envelope")
    p.set_defaults(func=cmd_send)

    p = sub.add_parser("listen", help="Poll a box and print new messages")
    p.add_argument("topic")
    p.add_argument("--from-seq", type=int, default=None, help="First sequence number to read")
    p.add_argument("--interval", type=float, default=CFG.POLL_INTERVAL_S)
    p.set_defaults(func=cmd_listen)

    p = sub.add_parser("check", help="Read a range of a box once")
    p.add_argument("topic")
    p.add_argument("--start", type=int, default=1)
    p.add_argument("--end", type=int, default=None)
    p.set_defaults(func=cmd_check)

    p = sub.add_parser("verify", help="Check the local key against the published one")
    p.add_argument("topic")
    p.set_defaults(func=cmd_verify)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        box = build_box(args)
        return args.func(box, args)
    except MessageBoxError as exc:
        clog(f"{type(exc).__name__}: {exc}", color=RED)
        return 1
    except KeyboardInterrupt:
        clog("Interrupted by user.", color=YELLOW)
        return 130


if __name__ == "__main__":
    setup_logging(force=True)
    sys.exit(main())
