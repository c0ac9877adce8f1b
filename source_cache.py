"""
In-process cache of resolved episode sources, keyed by ``session:episode``.

Concurrent misses for the same key may both hit the upstream resolver; the
last write wins. Only the store itself is locked.
"""
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Tuple

from config import SOURCE_CACHE_MAX_ENTRIES, SOURCE_CACHE_TTL
from retry import with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    sources: Tuple[Any, ...]
    tracks: Tuple[Any, ...]
    fetched_at: float

    def to_dict(self):
        return {'sources': list(self.sources), 'tracks': list(self.tracks), 'fetchedAt': self.fetched_at}


def make_key(session_id, episode_hash):
    return f"{session_id}:{episode_hash}"


class SourceCache:
    def __init__(self, ttl=SOURCE_CACHE_TTL, max_entries=SOURCE_CACHE_MAX_ENTRIES, clock=time.time):
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock
        self._entries = {}
        self._lock = Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def _expired(self, entry, now):
        return now - entry.fetched_at >= self.ttl

    def get(self, session_id, episode_hash):
        key = make_key(session_id, episode_hash)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, self.clock()):
                del self._entries[key]
                return None
            return entry

    def set(self, session_id, episode_hash, sources, tracks):
        entry = CacheEntry(tuple(sources or ()), tuple(tracks or ()), self.clock())
        with self._lock:
            self._entries[make_key(session_id, episode_hash)] = entry
            if len(self._entries) > self.max_entries:
                self._sweep(entry.fetched_at)
        return entry

    def _sweep(self, now):
        stale = [k for k, e in self._entries.items() if self._expired(e, now)]
        for key in stale:
            del self._entries[key]
        logger.info(f"Source cache sweep removed {len(stale)} stale entries, {len(self._entries)} left")

    def clear(self):
        with self._lock:
            self._entries.clear()


class SourceResolver:
    """Cache-first wrapper around an episode source resolver.

    ``resolve`` is any callable returning ``{'sources': [...], 'tracks': [...]}``;
    it is called through ``with_retry`` so a single 502 or timeout is retried.
    """

    def __init__(self, resolve, cache=None, policy=None, sleep=time.sleep):
        self.resolve = resolve
        self.cache = cache if cache is not None else SourceCache()
        self.policy = policy
        self.sleep = sleep

    def resolve_episode(self, session_id, episode_hash, **kwargs):
        entry = self.cache.get(session_id, episode_hash)
        if entry is not None:
            logger.info(f"Source cache hit for {make_key(session_id, episode_hash)}")
            return entry, True

        logger.info(f"Source cache miss for {make_key(session_id, episode_hash)}")
        payload = with_retry(
            lambda: self.resolve(**kwargs),
            policy=self.policy,
            sleep=self.sleep,
            label='episode source resolution',
        )
        entry = self.cache.set(session_id, episode_hash, payload.get('sources'), payload.get('tracks'))
        return entry, False
