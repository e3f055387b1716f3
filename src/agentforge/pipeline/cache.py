"""
步骤响应缓存
"""
import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

from ..models.artifacts import ParsedArtifact, StepKind


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """缓存条目（写入后不可变）"""
    key: str
    content: str
    artifacts: Tuple[ParsedArtifact, ...]
    created_at: float


def context_digest(artifacts: Iterable[ParsedArtifact], previous_output: Optional[str] = None) -> str:
    """已有产物与上一步输出的摘要"""
    digest = hashlib.sha256()
    for artifact in sorted(artifacts, key=lambda a: a.path):
        digest.update(artifact.path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(hashlib.sha256(artifact.content.encode("utf-8")).digest())
    digest.update(b"\1")
    digest.update((previous_output or "").encode("utf-8"))
    return digest.hexdigest()


def fingerprint(step_kind: StepKind, input_text: str, digest: str) -> str:
    """步骤指纹：步骤类型 + 输入 + 上下文摘要"""
    payload = "\0".join([step_kind.value, input_text, digest])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResponseCache:
    """
    TTL 与条目数双重限制的响应缓存

    读取时检查过期；写入超过软上限时淘汰最早的条目。写入与淘汰在锁内完成，
    可在多线程宿主中共享。
    """

    def __init__(self, ttl_seconds: float = 600.0, max_entries: int = 100,
                 clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds

    def get(self, key: str) -> Optional[CacheEntry]:
        """读取未过期的条目"""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry

    def set(self, key: str, content: str, artifacts: Iterable[ParsedArtifact] = ()) -> CacheEntry:
        """写入条目"""
        with self._lock:
            now = self._clock()
            entry = CacheEntry(key=key, content=content, artifacts=tuple(artifacts), created_at=now)
            self._entries.pop(key, None)
            self._entries[key] = entry

            # 先清理过期条目，再按写入顺序淘汰最早的条目
            for stale in [k for k, e in self._entries.items() if self._expired(e, now)]:
                del self._entries[stale]
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted cache entry {evicted[:12]}")
            return entry

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "ttl_seconds": self.ttl_seconds,
                "max_entries": self.max_entries
            }
