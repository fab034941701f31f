"""
Cache Service — shared TTL cache for graph traversal results.

Provides a thin cache wrapper with:
  - Graph subtree cache keyed by (actor, topic, combo-hash), 60 s TTL
  - Prefix invalidation for graph mutations
  - Generic cache-aside helpers

Uses Redis when REDIS_URL points at a server, falls back to a simple
in-memory dict for development/testing. Values are JSON-serialised.
"""

import json
import logging
import os
import time

import redis
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

# ── In-memory fallback ───────────────────────────────────────────────────

_memory_store: dict = {}  # key → (value_json, expire_ts)


class _MemoryBackend:
    """Simple dict cache for dev/testing."""

    def get(self, key):
        entry = _memory_store.get(key)
        if entry is None:
            return None
        val, expires = entry
        if expires and time.time() > expires:
            _memory_store.pop(key, None)
            return None
        return val

    def setex(self, key, ttl_seconds, value):
        _memory_store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        for k in keys:
            _memory_store.pop(k, None)

    def keys(self, pattern):
        """Simple glob matching for 'prefix*' patterns."""
        if pattern.endswith("*"):
            prefix = pattern[:-1]
            return [k for k in _memory_store if k.startswith(prefix)]
        return [k for k in _memory_store if k == pattern]

    def flushdb(self):
        _memory_store.clear()

    def ping(self):
        return True


# ── Singleton cache backend ──────────────────────────────────────────────

_backend = None


def _redis_url():
    if has_app_context():
        return current_app.config.get("REDIS_URL")
    return os.getenv("REDIS_URL")


def _get_backend():
    """Lazy-initialise Redis or fall back to in-memory."""
    global _backend
    if _backend is not None:
        return _backend

    redis_url = _redis_url()
    if redis_url and not redis_url.startswith("memory://"):
        try:
            _backend = redis.from_url(redis_url, decode_responses=True)
            _backend.ping()
            logger.info("Cache: using Redis at %s", redis_url.split("@")[-1])
        except redis.RedisError as exc:
            logger.warning("Redis unavailable (%s), falling back to memory cache", exc)
            _backend = _MemoryBackend()
    else:
        _backend = _MemoryBackend()
    return _backend


def reset_backend():
    """Forget the selected backend so the next call re-reads REDIS_URL."""
    global _backend
    _backend = None


# ── Default TTLs ─────────────────────────────────────────────────────────

GRAPH_TTL = 60
DEFAULT_TTL = 300

GRAPH_PREFIX = "graph:"


# ── Key builders ─────────────────────────────────────────────────────────

def graph_key(actor_id, topic, combo_digest):
    return f"{GRAPH_PREFIX}{actor_id}:{topic}:{combo_digest}"


def traversal_key(actor_id, edge_type, attribute):
    return f"{GRAPH_PREFIX}traverse:{actor_id}:{edge_type or ''}:{attribute or ''}"


# ── Public API ───────────────────────────────────────────────────────────


def get_cached(key, ttl=DEFAULT_TTL, loader=None):
    """Generic cache-aside.  If *loader* is provided, it's called on miss
    and the result is cached."""
    be = _get_backend()
    raw = be.get(key)
    if raw is not None:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding undecodable cache entry %s", key)
            be.delete(key)
    if loader is None:
        return None
    value = loader()
    if value is not None:
        be.setex(key, ttl, json.dumps(value))
    return value


def set_cached(key, value, ttl=DEFAULT_TTL):
    """Generic set."""
    _get_backend().setex(key, ttl, json.dumps(value))


def invalidate_prefix(prefix):
    """Remove every key starting with *prefix*. Returns the number removed."""
    be = _get_backend()
    keys = be.keys(f"{prefix}*")
    if keys:
        be.delete(*keys)
    return len(keys)


def clear_all():
    """Flush entire cache (mainly for testing)."""
    _get_backend().flushdb()


def health_check():
    """Return cache backend status."""
    try:
        be = _get_backend()
        be.ping()
        backend_type = "redis" if not isinstance(be, _MemoryBackend) else "memory"
        return {"status": "ok", "backend": backend_type}
    except redis.RedisError as exc:
        return {"status": "error", "detail": str(exc)}
