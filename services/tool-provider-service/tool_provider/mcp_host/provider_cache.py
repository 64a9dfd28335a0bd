# services/tool-provider-service/tool_provider/mcp_host/provider_cache.py
"""
User-scoped cache of provider bundles.

Keeps one bundle of MCP connections per (user, session, configuration) alive
across chat requests. Entries are bounded per user and globally (LRU),
expire a fixed time after creation, and are disposed exactly once by
whichever path removes them: eviction, expiry, invalidation, clear or
shutdown.

All bookkeeping happens in synchronous sections (no await between a check
and the mutation it guards), so on a single event loop the entry index and
the pending-creation registry behave as if guarded by a mutex.
"""
from __future__ import annotations

import asyncio
import hashlib
import inspect
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from tool_provider.config import settings
from tool_provider.mcp_host.errors import (
    InvalidProviderConfigError,
    ProviderCacheShutdownError,
    ProviderCreationAbandonedError,
)
from tool_provider.mcp_host.lru import LRUIndex
from tool_provider.mcp_host.types import CacheKey, CacheStats, ProviderCacheOptions

logger = logging.getLogger("tool_provider.mcp.cache")

ProviderConfig = Union[BaseModel, Mapping[str, Any]]
BundleFactory = Callable[[], Awaitable[Any]]

# Headers that change per request without changing which tools a user gets.
_VOLATILE_HEADER_PARTS = ("auth", "cookie")
_VOLATILE_HEADERS = {"x-chat-history-id"}


# --------- Keys ------------------------------------------------------------- #

def _is_volatile_header(name: str) -> bool:
    lowered = name.lower()
    return lowered in _VOLATILE_HEADERS or any(part in lowered for part in _VOLATILE_HEADER_PARTS)


def _config_dict(config: ProviderConfig) -> Dict[str, Any]:
    if isinstance(config, BaseModel):
        data = config.model_dump(mode="json")
    elif isinstance(config, Mapping):
        data = dict(config)
    else:
        raise InvalidProviderConfigError(
            f"provider config must be a mapping or pydantic model, got {type(config).__name__}"
        )

    headers = data.get("headers")
    if headers is not None:
        if not isinstance(headers, Mapping):
            raise InvalidProviderConfigError("provider config 'headers' must be a mapping")
        data["headers"] = {k: v for k, v in headers.items() if not _is_volatile_header(str(k))}
    return data


def stable_hash(config: ProviderConfig) -> str:
    """
    Short hash of a provider config, independent of field order and of
    volatile (auth/cookie/chat-history) headers.
    """
    blob = json.dumps(
        _config_dict(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )
    return hashlib.sha1(blob.encode("utf-8")).hexdigest()[:12]


def make_cache_key(user_id: str, session_id: str, config: ProviderConfig) -> CacheKey:
    if not isinstance(user_id, str) or not user_id:
        raise InvalidProviderConfigError("user_id must be a non-empty string")
    if not isinstance(session_id, str) or not session_id:
        raise InvalidProviderConfigError("session_id must be a non-empty string")
    return (user_id, session_id, stable_hash(config))


def format_key(key: CacheKey) -> str:
    return ":".join(key)


# --------- Entries ---------------------------------------------------------- #

@dataclass(eq=False)
class CacheEntry:
    key: CacheKey
    bundle: Any
    created_at: float
    last_accessed_at: float
    generation: int
    listener: Optional[Callable[[], None]] = field(default=None, repr=False)

    @property
    def user_id(self) -> str:
        return self.key[0]

    @property
    def session_id(self) -> str:
        return self.key[1]


@dataclass(eq=False)
class _PendingCreation:
    key: CacheKey
    future: "asyncio.Future[Any]"
    abandoned: Optional[str] = None


def _consume_outcome(fut: "asyncio.Future[Any]") -> None:
    # Creation errors are re-raised to the creator; waiters are optional.
    if not fut.cancelled():
        fut.exception()


# --------- Cache ------------------------------------------------------------ #

class ProviderCache:
    """
    Cache of provider bundles keyed by (user, session, config hash).

    Example:
        cache = ProviderCache(max_entries_per_user=3, max_total_entries=100)
        bundle = await cache.get_or_create(
            user_id, session_id, {"write_enabled": False},
            lambda: create_bundle(endpoints),
        )
    """

    def __init__(
        self,
        *,
        max_entries_per_user: int = 3,
        max_total_entries: int = 100,
        ttl_sec: float = 30 * 60,
        cleanup_interval_sec: float = 5 * 60,
        require_healthy: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        try:
            self.options = ProviderCacheOptions(
                max_entries_per_user=max_entries_per_user,
                max_total_entries=max_total_entries,
                ttl_sec=ttl_sec,
                cleanup_interval_sec=cleanup_interval_sec,
                require_healthy=require_healthy,
            )
        except ValidationError as e:
            raise InvalidProviderConfigError(f"Invalid provider cache options: {e}") from e

        self._clock = clock
        self._entries: LRUIndex[CacheKey, CacheEntry] = LRUIndex()
        self._by_user: Dict[str, LRUIndex[CacheKey, CacheEntry]] = {}
        self._pending: Dict[CacheKey, _PendingCreation] = {}
        self._generation = itertools.count(1)
        self._sweeper: Optional["asyncio.Task[None]"] = None
        self._sweep: Optional["asyncio.Task[int]"] = None
        self._closed = False

    @classmethod
    def from_settings(cls, **overrides: Any) -> "ProviderCache":
        opts: Dict[str, Any] = {
            "max_entries_per_user": settings.provider_cache_max_entries_per_user,
            "max_total_entries": settings.provider_cache_max_total_entries,
            "ttl_sec": settings.provider_cache_ttl_sec,
            "cleanup_interval_sec": settings.provider_cache_cleanup_interval_sec,
            "require_healthy": settings.provider_cache_require_healthy,
        }
        opts.update(overrides)
        return cls(**opts)

    @property
    def is_shut_down(self) -> bool:
        return self._closed

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise ProviderCacheShutdownError(operation)

    # ---- periodic sweep ----

    def start(self) -> None:
        """Start the expiry sweep on the running loop (idempotent)."""
        self._ensure_open("start")
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="provider-cache-sweep")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.options.cleanup_interval_sec)
            try:
                # shielded so cancelling the loop never interrupts a half-finished
                # disposal; shutdown() waits for self._sweep instead
                self._sweep = asyncio.create_task(self.sweep_expired(), name="provider-cache-sweep-pass")
                await asyncio.shield(self._sweep)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Provider cache sweep failed", exc_info=True)

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return entry.created_at + self.options.ttl_sec < now

    async def sweep_expired(self) -> int:
        """Remove and dispose every entry past its TTL. Returns the number removed."""
        self._ensure_open("sweep_expired")
        now = self._clock()
        expired = [e for e in self._entries.values() if self._is_expired(e, now)]
        removed = [e for e in expired if self._detach(e)]
        if removed:
            await self._dispose_many(removed, "expired")
            logger.debug(
                "Cleaned up expired tool providers: removed=%d remaining=%d",
                len(removed), len(self._entries),
            )
        return len(removed)

    # ---- index bookkeeping (synchronous) ----

    def _attach(self, entry: CacheEntry) -> None:
        self._entries.push(entry.key, entry)
        self._by_user.setdefault(entry.user_id, LRUIndex()).push(entry.key, entry)

        add_listener = getattr(entry.bundle, "add_dispose_listener", None)
        if callable(add_listener):
            def _on_bundle_disposed() -> None:
                if self._detach(entry):
                    logger.debug(
                        "Cached provider bundle disposed externally; entry dropped: %s",
                        format_key(entry.key),
                    )

            entry.listener = _on_bundle_disposed
            add_listener(_on_bundle_disposed)

    def _detach(self, entry: CacheEntry) -> bool:
        """Remove exactly this entry object. False if the key now holds something else."""
        if self._entries.remove(entry.key, expected=entry) is None:
            return False
        user_index = self._by_user.get(entry.user_id)
        if user_index is not None:
            user_index.remove(entry.key, expected=entry)
            if not len(user_index):
                del self._by_user[entry.user_id]

        if entry.listener is not None:
            remove_listener = getattr(entry.bundle, "remove_dispose_listener", None)
            if callable(remove_listener):
                remove_listener(entry.listener)
            entry.listener = None
        return True

    def _touch(self, entry: CacheEntry, now: float) -> None:
        entry.last_accessed_at = now
        self._entries.touch(entry.key)
        user_index = self._by_user.get(entry.user_id)
        if user_index is not None:
            user_index.touch(entry.key)

    def _select_evictions(self, inserted: CacheEntry) -> List[CacheEntry]:
        victims: List[CacheEntry] = []

        user_index = self._by_user.get(inserted.user_id)
        while user_index is not None and len(user_index) > self.options.max_entries_per_user:
            oldest = user_index.oldest(exclude=inserted.key)
            if oldest is None or not self._detach(oldest[1]):
                break
            victims.append(oldest[1])
            logger.info(
                "Provider cache evicted LRU entry: scope=user user=%s session=%s",
                oldest[1].user_id, oldest[1].session_id,
            )

        while len(self._entries) > self.options.max_total_entries:
            oldest = self._entries.oldest(exclude=inserted.key)
            if oldest is None or not self._detach(oldest[1]):
                break
            victims.append(oldest[1])
            logger.info(
                "Provider cache evicted LRU entry: scope=global user=%s session=%s",
                oldest[1].user_id, oldest[1].session_id,
            )
        return victims

    def _abandon_pending(self, matches: Callable[[CacheKey], bool], reason: str) -> int:
        count = 0
        for key, pending in list(self._pending.items()):
            if not matches(key):
                continue
            del self._pending[key]
            pending.abandoned = reason
            if not pending.future.done():
                pending.future.set_exception(ProviderCreationAbandonedError(format_key(key), reason))
            count += 1
        return count

    # ---- disposal ----

    async def _dispose_bundle(self, bundle: Any, key: CacheKey, reason: str) -> None:
        try:
            result = bundle.dispose()
            if inspect.isawaitable(result):
                await result
            logger.debug("Tool provider disposed: reason=%s key=%s", reason, format_key(key))
        except Exception:
            logger.warning(
                "Error disposing tool provider: reason=%s key=%s", reason, format_key(key), exc_info=True
            )

    async def _dispose_many(self, entries: Iterable[CacheEntry], reason: str) -> None:
        await asyncio.gather(*(self._dispose_bundle(e.bundle, e.key, reason) for e in entries))

    # ---- public API ----

    async def get_or_create(
        self,
        user_id: str,
        session_id: str,
        config: ProviderConfig,
        factory: BundleFactory,
    ) -> Any:
        """
        Return the cached bundle for (user, session, config), joining an
        in-flight creation for the same key or calling factory() on a miss.
        Factory errors propagate and are never cached.

        With require_healthy, an unhealthy bundle is returned uncached to the
        creator and every joined waiter alike. The cache never disposes it;
        the callers own it. ProviderBundle.dispose() runs once, so any of
        them may dispose it.
        """
        self._ensure_open("get_or_create")
        key = make_cache_key(user_id, session_id, config)
        self.start()

        stale: Optional[CacheEntry] = None
        entry = self._entries.get(key)
        if entry is not None:
            now = self._clock()
            if not self._is_expired(entry, now):
                self._touch(entry, now)
                logger.debug("Tool provider cache hit: user=%s key=%s", user_id, format_key(key))
                return entry.bundle
            if self._detach(entry):
                stale = entry

        pending = self._pending.get(key)
        if pending is not None:
            logger.debug("Joining in-flight tool provider creation: key=%s", format_key(key))
            return await asyncio.shield(pending.future)

        pending = _PendingCreation(key=key, future=asyncio.get_running_loop().create_future())
        pending.future.add_done_callback(_consume_outcome)
        self._pending[key] = pending
        logger.debug("Creating new tool provider set: user=%s key=%s", user_id, format_key(key))
        return await self._create(pending, factory, stale)

    async def _create(
        self, pending: _PendingCreation, factory: BundleFactory, stale: Optional[CacheEntry]
    ) -> Any:
        key = pending.key
        try:
            if stale is not None:
                await self._dispose_bundle(stale.bundle, stale.key, "expired")
            bundle = await factory()
        except BaseException as e:
            if self._pending.get(key) is pending:
                del self._pending[key]
            if not pending.future.done():
                if isinstance(e, asyncio.CancelledError):
                    # waiters were not cancelled themselves; give them an ordinary error
                    pending.future.set_exception(
                        ProviderCreationAbandonedError(format_key(key), "creator cancelled")
                    )
                else:
                    pending.future.set_exception(e)
            if isinstance(e, Exception):
                logger.warning(
                    "Failed to create tool provider set: key=%s", format_key(key), exc_info=True
                )
            raise

        if self._pending.get(key) is pending:
            del self._pending[key]

        if pending.abandoned is not None or self._closed:
            reason = pending.abandoned or "cache shut down"
            err = ProviderCreationAbandonedError(format_key(key), reason)
            if not pending.future.done():
                pending.future.set_exception(err)
            await self._dispose_bundle(bundle, key, "abandoned")
            raise err

        if self.options.require_healthy and not getattr(bundle, "is_healthy", True):
            logger.info("Tool provider set unhealthy; returned without caching: key=%s", format_key(key))
            pending.future.set_result(bundle)
            return bundle

        victims: List[CacheEntry] = []
        occupant = self._entries.get(key)
        if occupant is not None and self._detach(occupant):
            victims.append(occupant)

        now = self._clock()
        entry = CacheEntry(
            key=key,
            bundle=bundle,
            created_at=now,
            last_accessed_at=now,
            generation=next(self._generation),
        )
        self._attach(entry)
        pending.future.set_result(bundle)
        victims.extend(self._select_evictions(entry))
        logger.debug(
            "Tool provider cached: key=%s generation=%d cache_size=%d",
            format_key(key), entry.generation, len(self._entries),
        )

        if victims:
            await self._dispose_many(victims, "evicted")
        return bundle

    async def invalidate_user(self, user_id: str) -> int:
        """Dispose every entry of one user and abandon its in-flight creations."""
        self._ensure_open("invalidate_user")
        user_index = self._by_user.get(user_id)
        victims = [e for e in (user_index.values() if user_index is not None else []) if self._detach(e)]
        abandoned = self._abandon_pending(lambda k: k[0] == user_id, "user invalidated")
        await self._dispose_many(victims, "invalidated")
        logger.debug(
            "Invalidated user tool providers: user=%s removed=%d abandoned=%d",
            user_id, len(victims), abandoned,
        )
        return len(victims)

    async def invalidate_session(self, user_id: str, session_id: str) -> int:
        self._ensure_open("invalidate_session")
        user_index = self._by_user.get(user_id)
        victims = [
            e
            for e in (user_index.values() if user_index is not None else [])
            if e.session_id == session_id and self._detach(e)
        ]
        abandoned = self._abandon_pending(
            lambda k: k[0] == user_id and k[1] == session_id, "session invalidated"
        )
        await self._dispose_many(victims, "invalidated")
        logger.debug(
            "Invalidated session tool providers: user=%s session=%s removed=%d abandoned=%d",
            user_id, session_id, len(victims), abandoned,
        )
        return len(victims)

    async def clear(self) -> None:
        """Dispose and remove every entry. The sweep keeps running."""
        self._ensure_open("clear")
        victims = [e for e in self._entries.values() if self._detach(e)]
        await self._dispose_many(victims, "cleared")
        logger.debug("Cleared all cached tool providers: removed=%d", len(victims))

    def get_stats(self) -> CacheStats:
        self._ensure_open("get_stats")
        user_counts: Dict[str, int] = {}
        for entry in self._entries.values():
            user_counts[entry.user_id] = user_counts.get(entry.user_id, 0) + 1
        return CacheStats(
            total_entries=len(self._entries),
            user_counts=user_counts,
            pending_creations=len(self._pending),
            config=self.options.model_dump(),
        )

    async def shutdown(self) -> None:
        """
        Stop the sweep, dispose everything, abandon in-flight creations. The
        cache cannot be used afterwards; a second call is a no-op.
        """
        if self._closed:
            logger.debug("Provider cache already shut down")
            return
        self._closed = True

        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        sweep, self._sweep = self._sweep, None
        if sweep is not None and not sweep.done():
            await asyncio.gather(sweep, return_exceptions=True)

        victims = [e for e in self._entries.values() if self._detach(e)]
        abandoned = self._abandon_pending(lambda _k: True, "cache shut down")
        await self._dispose_many(victims, "shutdown")
        logger.info(
            "User tool provider cache shutdown complete: disposed=%d abandoned=%d",
            len(victims), abandoned,
        )


class PassthroughProviderCache:
    """
    Stand-in used when provider caching is disabled: every call builds a
    fresh bundle that the caller owns; maintenance operations are no-ops.
    """

    is_shut_down = False

    def start(self) -> None:
        pass

    async def get_or_create(
        self,
        user_id: str,
        session_id: str,
        config: ProviderConfig,
        factory: BundleFactory,
    ) -> Any:
        make_cache_key(user_id, session_id, config)
        return await factory()

    async def invalidate_user(self, user_id: str) -> int:
        return 0

    async def invalidate_session(self, user_id: str, session_id: str) -> int:
        return 0

    async def clear(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    def get_stats(self) -> CacheStats:
        return CacheStats(total_entries=0, user_counts={}, pending_creations=0, config={})


# --------- Process-wide instance ------------------------------------------- #

_cache: Optional[ProviderCache] = None


def get_provider_cache(**overrides: Any) -> Union[ProviderCache, PassthroughProviderCache]:
    """
    Shared cache built from settings; replaced on the next call once shut down.
    Overrides only apply when a new instance is built.
    """
    global _cache
    if not settings.provider_cache_enabled:
        return PassthroughProviderCache()
    if _cache is None or _cache.is_shut_down:
        _cache = ProviderCache.from_settings(**overrides)
    return _cache


def reset_provider_cache() -> None:
    global _cache
    _cache = None


def current_provider_cache() -> Optional[Union[ProviderCache, PassthroughProviderCache]]:
    """The shared cache if one has been built, without building it."""
    if not settings.provider_cache_enabled:
        return PassthroughProviderCache()
    return _cache
