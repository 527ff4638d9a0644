# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md
# Refs: RFC8017-OAEP; SEC1-ECIES; NIST-800-38D-AES-GCM

'''
=============================================================================
 -------- !!! WIRE-COMPATIBILITY REMINDER - READ BEFORE EDITING !!! --------
=============================================================================

The values below **MUST BE IDENTICAL** for every sender and reader of a box.
Changing them makes existing topics unreadable unless otherwise stated.

  1) ENVELOPE
   - ENVELOPE_TYPES, ECIES_CURVE_NAME, RSA_KEY_BITS
   - AES_KEY_BYTES, CBC_IV_BYTES, GCM_IV_BYTES, GCM_TAG_BYTES

  2) CHUNK FRAMES
   - CHUNK_FRAME_MAGIC, CHUNK_FRAME_VERSION, CHUNK_FRAME_ID_BYTES

  3) PUBLIC KEY RECORD
   - PUBLIC_KEY_ENTRY_TYPE

NOT WIRE (safe to differ between processes):
   polling cadence, page size, staleness, logging/path, key directory.

=============================================================================
'''

import os
import appdirs


def _env(name: str, default: str) -> str:
    raw = os.environ.get(name)
    return raw.strip() if raw and raw.strip() else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw or not raw.strip():
        return default
    return int(raw.strip())


# =============================================================================
# 1. MODE & APPLICATION
# =============================================================================
# ---- RUNTIME PROFILE ----
MODE   = _env("TOPICBOX_MODE", "dev")  # "dev" or "prod"
IS_DEV = (MODE.lower() == "dev")  # cached boolean to simplify dev/prod toggles

# ---- APP METADATA ----
APP_NAME      = "TopicBox"  # display name used for user data directories
APP_AUTHOR    = "TsarStudio"  # vendor string passed into platform dir helpers
USER_DATA_DIR = appdirs.user_data_dir(APP_NAME, APP_AUTHOR)  # OS-specific data folder resolved via appdirs


# =============================================================================
# 2. NETWORK & ACCOUNT
# =============================================================================
NETWORK      = _env("TOPICBOX_NETWORK", "testnet").lower()  # "testnet" or "mainnet"
ACCOUNT_ID   = _env("TOPICBOX_ACCOUNT_ID", "")  # operator account, e.g. "0.0.1234"
ACCOUNT_KEY  = _env("TOPICBOX_ACCOUNT_KEY", "")  # operator signing key (DER hex), never logged

MIRROR_URLS = {
    "testnet": "https://testnet.mirrornode.hedera.com",
    "mainnet": "https://mainnet-public.mirrornode.hedera.com",
    "previewnet": "https://previewnet.mirrornode.hedera.com",
}  # public read-side query services per network
MIRROR_URL_OVERRIDE = _env("TOPICBOX_MIRROR_URL", "")  # takes precedence over MIRROR_URLS


def mirror_url_for(network: str | None = None) -> str:
    if MIRROR_URL_OVERRIDE:
        return MIRROR_URL_OVERRIDE.rstrip("/")
    net = (network or NETWORK or "testnet").lower()
    if net not in MIRROR_URLS:
        raise ValueError(f"unknown network: {net}")
    return MIRROR_URLS[net]


# ---- MIRROR QUERY ----
MIRROR_PAGE_LIMIT   = 100  # entries requested per page, full page means "drain more"
MIRROR_HTTP_TIMEOUT = 15.0  # seconds per HTTP request
MIRROR_USER_AGENT   = "TopicBox/1.0"  # UA string sent to the query service
MIRROR_API_PREFIX   = "/api/v1"  # REST prefix in front of /topics/<id>/messages


# =============================================================================
# 3. ENCRYPTION
# =============================================================================
SCHEME_RSA   = "RSA"
SCHEME_ECIES = "ECIES"
ENVELOPE_TYPES = (SCHEME_RSA, SCHEME_ECIES)  # the only valid envelope "type" values

ENCRYPTION_SCHEME = _env("TOPICBOX_ENCRYPTION_SCHEME", SCHEME_RSA).upper()  # scheme for new boxes

RSA_KEY_BITS      = 2048  # modulus size for generated box keys
RSA_PUBLIC_EXP    = 65537  # public exponent for generated box keys
ECIES_CURVE_NAME  = "secp256k1"  # only curve supported for ECIES boxes
AES_KEY_BYTES     = 32  # AES-256 session keys for both schemes
CBC_IV_BYTES      = 16  # IV size for the RSA scheme (AES-CBC)
GCM_IV_BYTES      = 12  # IV size for the ECIES scheme (AES-GCM)
GCM_TAG_BYTES     = 16  # GCM authentication tag kept in "authTag"

ENVELOPE_FORMAT = _env("TOPICBOX_ENVELOPE_FORMAT", "json").lower()  # "json" or "msgpack"

PUBLIC_KEY_ENTRY_TYPE = "PUBLIC_KEY"  # "type" of the first entry in every box


# =============================================================================
# 4. KEY STORAGE
# =============================================================================
KEYS_DIR             = _env("TOPICBOX_KEYS_DIR", os.path.join(USER_DATA_DIR, "keys"))  # RSA key files live here
RSA_PRIVATE_KEY_FILE = "rsa_private.pem"  # private half, chmod 0600
RSA_PUBLIC_KEY_FILE  = "rsa_public.pem"  # public half, published in the box


# =============================================================================
# 5. LEDGER LIMITS & CHUNKING
# =============================================================================
LEDGER_MAX_ENTRY_BYTES = 1024  # hard per-entry payload limit of the log
LEDGER_MAX_CHUNKS      = 20  # native chunking refuses messages needing more entries

CHUNKING_MODE = _env("TOPICBOX_CHUNKING", "application").lower()  # "application" or "native"

CHUNK_FRAME_MAGIC    = b"TBXC"  # marks an application-level chunk frame
CHUNK_FRAME_VERSION  = 1  # bumped when the frame header changes
CHUNK_FRAME_ID_BYTES = 16  # raw message id carried in every frame
CHUNK_FRAME_OVERHEAD = len(CHUNK_FRAME_MAGIC) + 1 + CHUNK_FRAME_ID_BYTES + 2 + 2  # header bytes per frame

MAX_CHUNK_PAYLOAD_BYTES = _env_int(
    "TOPICBOX_MAX_CHUNK_PAYLOAD", LEDGER_MAX_ENTRY_BYTES - CHUNK_FRAME_OVERHEAD
)  # envelope bytes per chunk so that a frame fits one entry


# =============================================================================
# 6. POLLING & REASSEMBLY
# =============================================================================
POLL_INTERVAL_S           = 3.0  # seconds between listen cycles
REASSEMBLY_STALE_AFTER_S  = 300.0  # incomplete buffers older than this are abandoned
REASSEMBLY_MAX_BUFFERS    = 1024  # live buffers per listener before forced eviction
REASSEMBLY_TOMBSTONE_MAX  = 4096  # completed/abandoned ids remembered for dedupe


# =============================================================================
# 7. LOCAL LEDGER & KV
# =============================================================================
LEDGER_DIR         = _env("TOPICBOX_LEDGER_DIR", os.path.join(USER_DATA_DIR, "ledger"))  # LMDB root for LocalLedger
KV_BACKEND         = _env("TOPICBOX_KV_BACKEND", "lmdb").lower()  # "lmdb" or "memory"
LMDB_MAP_SIZE_INIT = 16 * 1024 * 1024  # initial LMDB map size (16 MiB)
LMDB_MAP_SIZE_MAX  = 4 * 1024 * 1024 * 1024  # upper LMDB map cap (4 GiB)
LOCAL_SHARD        = 0  # shard.realm prefix for LocalLedger ids
LOCAL_REALM        = 0


# =============================================================================
# 8. LOGGING
# =============================================================================
# ---- BASE OUTPUT ----
LOG_PATH             = "data/logging/topicbox.log"  # canonical log file path before format-specific override
LOG_SHOW_PROCESS     = False  # include process metadata in log context when True
LOG_PROC_PLACEHOLDER = "-"  # value used when process info is hidden

# ---- MODE PROFILES ----
if IS_DEV:
    # ---- DEV PROFILE ----
    LOG_LEVEL                   = "DEBUG"  # verbose logging for development
    LOG_FORMAT                  = "plain"  # plain text logs ease local debugging
    LOG_TO_CONSOLE              = True  # mirror logs to stderr for dev loops
    LOG_RATE_LIMIT_SECONDS      = 0.0  # disable console throttling in dev
    LOG_FILE_RATE_LIMIT_SECONDS = 0.0  # disable file throttling in dev
    LOG_ROTATE_MAX_BYTES        = 5_000_000  # rollover log files after ~5MB in dev
    LOG_BACKUP_COUNT            = 3  # retain a few rotated dev log files
else:
    # ---- PROD PROFILE ----
    LOG_LEVEL                   = "INFO"  # balanced verbosity for production
    LOG_FORMAT                  = "json"  # JSON logs simplify ingestion in prod
    LOG_TO_CONSOLE              = False  # suppress console spam for daemons
    LOG_RATE_LIMIT_SECONDS      = 2.0  # throttle console spam in prod
    LOG_FILE_RATE_LIMIT_SECONDS = 1.0  # throttle file spam in prod
    LOG_ROTATE_MAX_BYTES        = 10_000_000  # rollover log files after ~10MB in prod
    LOG_BACKUP_COUNT            = 7  # keep more history on production hosts

LOG_LEVEL = _env("TOPICBOX_LOG_LEVEL", LOG_LEVEL)

# ---- LOG PATH NORMALIZATION ----
_LOG_BASE = "data/logging/topicbox"  # base path used to pick extension
if str(LOG_FORMAT).lower().strip() == "json":
    LOG_PATH = _LOG_BASE + ".jsonl"  # JSON lines extension to aid parsing
else:
    LOG_PATH = _LOG_BASE + ".log"  # plain-text log extension fallback
