# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Tsar Studio
# Part of TopicBox — see LICENSE and TRADEMARKS.md
import os, threading, lmdb
from typing import Dict, Iterator, Optional, Tuple

from ..utils import config as CFG

# ---------------- Logger ----------------
from ..utils.box_logging import get_ctx_logger
log = get_ctx_logger("topicbox.storage(kv)")


class LmdbStore:
    """Named sub-databases inside one LMDB environment; map grows on demand."""

    def __init__(self, path: str, map_size: Optional[int] = None, max_dbs: int = 16):
        os.makedirs(path, exist_ok=True)
        self.path = path
        self._env = lmdb.open(
            path, map_size=int(map_size or CFG.LMDB_MAP_SIZE_INIT), max_dbs=max_dbs,
            create=True, lock=True, subdir=True,
        )
        self._dbs: Dict[str, object] = {}
        self._lock = threading.Lock()

    def _db(self, name: str):
        db = self._dbs.get(name)
        if db is None:
            with self._lock:
                db = self._dbs.get(name)
                if db is None:
                    db = self._env.open_db(name.encode("utf-8"), create=True)
                    self._dbs[name] = db
        return db

    def _grow_map(self, min_target: int | None = None) -> int:
        cur = int(self._env.info().get("map_size", 0) or 0)
        # Double, or at least accommodate min_target, capped by MAX
        new = max(cur * 2, cur + (cur // 2))
        if min_target and min_target > new:
            new = min_target
        if new > int(CFG.LMDB_MAP_SIZE_MAX):
            new = int(CFG.LMDB_MAP_SIZE_MAX)
        if new <= cur:
            return cur
        self._env.set_mapsize(new)
        log.debug("[kv] LMDB map grown %d -> %d", cur, new)
        return new

    def get(self, name: str, key: bytes) -> Optional[bytes]:
        with self._env.begin(db=self._db(name), write=False) as txn:
            return txn.get(key)

    def put(self, name: str, key: bytes, val: bytes) -> None:
        db = self._db(name)
        try:
            with self._env.begin(db=db, write=True) as txn:
                txn.put(key, val)
        except lmdb.MapFullError:
            self._grow_map()
            with self._env.begin(db=db, write=True) as txn:
                txn.put(key, val)

    def scan_prefix(self, name: str, prefix: bytes) -> Iterator[Tuple[bytes, bytes]]:
        db = self._db(name)
        with self._env.begin(db=db, write=False) as txn:
            with txn.cursor() as cur:
                if not cur.set_range(prefix):
                    return
                while True:
                    k = cur.key()
                    if not k or not k.startswith(prefix):
                        break
                    yield k, cur.value()
                    if not cur.next():
                        break

    def close(self) -> None:
        self._env.close()


class MemoryStore:
    """Same surface as LmdbStore, kept in process memory (tests, throwaway ledgers)."""

    def __init__(self):
        self._data: Dict[str, Dict[bytes, bytes]] = {}
        self._lock = threading.Lock()

    def get(self, name: str, key: bytes) -> Optional[bytes]:
        with self._lock:
            return self._data.get(name, {}).get(key)

    def put(self, name: str, key: bytes, val: bytes) -> None:
        with self._lock:
            self._data.setdefault(name, {})[bytes(key)] = bytes(val)

    def scan_prefix(self, name: str, prefix: bytes) -> Iterator[Tuple[bytes, bytes]]:
        with self._lock:
            items = sorted((k, v) for k, v in self._data.get(name, {}).items() if k.startswith(prefix))
        return iter(items)

    def close(self) -> None:
        pass


def open_store(path: Optional[str] = None, backend: Optional[str] = None):
    kind = (backend or CFG.KV_BACKEND).lower()
    if kind == "memory":
        return MemoryStore()
    if kind == "lmdb":
        return LmdbStore(path or CFG.LEDGER_DIR)
    raise ValueError(f"unknown KV backend: {backend}")
