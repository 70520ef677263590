"""
Shared state store for lobby documents.

A hierarchical key-value tree addressed by '/'-separated paths. Supports
read-once fetches, replacing writes, merging (multi-path) updates, removal,
ordered pushes, change subscriptions, server-assigned timestamps and an
atomic read-modify-write transaction. Every connected client derives its
view of a lobby from snapshots delivered by this store.
"""

import asyncio
import copy
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

INVALID_KEY_CHARS = set(".#$[]")


class _ServerTimestamp:
    """Placeholder replaced by the store clock when a value is written."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


class _Abort:
    """Returned from a transaction function to leave the node untouched."""

    def __repr__(self) -> str:
        return "ABORT"


SERVER_TIMESTAMP = _ServerTimestamp()
ABORT = _Abort()


class StoreError(Exception):
    """Raised when a read or write cannot be applied. Callers may retry."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


@dataclass
class TransactionResult:
    """Outcome of a transaction."""
    committed: bool
    snapshot: Any


Listener = Callable[[Any], Any]


def split_path(path: str) -> Tuple[str, ...]:
    """
    Split a store path into its segments.

    Args:
        path: Path such as "lobbies/ABCD1/players/p1"

    Returns:
        Tuple of non-empty segments

    Raises:
        StoreError: If a segment contains a reserved character
    """
    if path is None:
        raise StoreError("Path must not be None")

    parts = tuple(p for p in str(path).split("/") if p)
    for part in parts:
        if INVALID_KEY_CHARS & set(part):
            raise StoreError(f"Invalid character in path segment '{part}'", path)
    return parts


def join_path(*parts: str) -> str:
    """Join path segments with '/'."""
    return "/".join(str(p).strip("/") for p in parts if p is not None and str(p).strip("/"))


def _is_related(a: Tuple[str, ...], b: Tuple[str, ...]) -> bool:
    """True if one path is an ancestor of (or equal to) the other."""
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class SharedStore:
    """
    In-memory realtime document tree.

    Writes are serialised with an asyncio lock and follow last-write-wins
    per path. Listeners are notified after the lock is released so they may
    write back into the store.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        """
        Initialize an empty store.

        Args:
            clock: Returns the current time in milliseconds (defaults to wall clock)
        """
        self._root: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._listeners: Dict[int, Tuple[Tuple[str, ...], Listener]] = {}
        self._next_listener_id = 0
        self._write_hooks: List[Callable[[Tuple[str, ...]], None]] = []
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._last_timestamp = 0
        self._push_counter = 0

    # ===== Clock =====

    def server_time(self) -> int:
        """
        Current server time in milliseconds.

        Never goes backwards, even if the underlying clock does.
        """
        now = int(self._clock())
        if now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now

    # ===== Reads =====

    async def get(self, path: str) -> Any:
        """
        Read a node once.

        Args:
            path: Node path

        Returns:
            Deep copy of the node value, or None if absent
        """
        parts = split_path(path)
        return copy.deepcopy(self._read(parts))

    async def exists(self, path: str) -> bool:
        """Check whether a node exists."""
        return self._read(split_path(path)) is not None

    # ===== Writes =====

    async def set(self, path: str, value: Any) -> None:
        """
        Replace a node. Writing None removes it.

        Args:
            path: Node path
            value: JSON-like value (may contain SERVER_TIMESTAMP)
        """
        parts = split_path(path)
        if not parts:
            raise StoreError("Cannot replace the store root", path)

        async with self._lock:
            self._write(parts, self._resolve(value))
            pending = self._collect([parts])
        await self._dispatch(pending)

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        """
        Merge children into a node in a single atomic write.

        Keys may be relative paths ("players/p1/isLeader"); each key
        replaces the child at that location, other children are kept.

        Args:
            path: Target node path
            values: Mapping of relative child path -> value
        """
        if not isinstance(values, dict):
            raise StoreError("Update values must be a mapping", path)

        base = split_path(path)
        targets = []
        for key, value in values.items():
            child = split_path(key)
            if not child:
                raise StoreError("Empty key in update", path)
            targets.append((base + child, value))

        async with self._lock:
            for parts, value in targets:
                self._write(parts, self._resolve(value))
            pending = self._collect([parts for parts, _ in targets])
        await self._dispatch(pending)

    async def remove(self, path: str) -> None:
        """Remove a node and everything beneath it."""
        await self.set(path, None)

    async def push(self, path: str, value: Any) -> str:
        """
        Append a child under a server-generated, lexically ordered key.

        Args:
            path: Parent node path
            value: Child value

        Returns:
            The generated key
        """
        base = split_path(path)
        async with self._lock:
            self._push_counter += 1
            key = f"{self.server_time():013d}-{self._push_counter:06d}"
            self._write(base + (key,), self._resolve(value))
            pending = self._collect([base + (key,)])
        await self._dispatch(pending)
        return key

    async def transaction(self, path: str, fn: Callable[[Any], Any]) -> TransactionResult:
        """
        Atomically read-modify-write a node.

        Args:
            path: Node path
            fn: Receives the current value (or None) and returns the new
                value, or ABORT to leave the node unchanged

        Returns:
            TransactionResult with the committed flag and resulting snapshot
        """
        parts = split_path(path)
        if not parts:
            raise StoreError("Cannot run a transaction on the store root", path)

        async with self._lock:
            current = copy.deepcopy(self._read(parts))
            new_value = fn(current)
            if new_value is ABORT:
                return TransactionResult(committed=False, snapshot=current)
            resolved = self._resolve(new_value)
            self._write(parts, resolved)
            pending = self._collect([parts])
        await self._dispatch(pending)
        return TransactionResult(committed=True, snapshot=copy.deepcopy(resolved))

    # ===== Subscriptions =====

    def subscribe(self, path: str, callback: Listener) -> Callable[[], None]:
        """
        Listen for changes at or below a path.

        The callback receives the node's snapshot after every write that
        touches it. Coroutine callbacks are awaited.

        Args:
            path: Node path to watch
            callback: Called with the new snapshot

        Returns:
            Function that removes the listener (safe to call twice)
        """
        parts = split_path(path)
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = (parts, callback)
        logger.debug(f"Listener {listener_id} subscribed to '{path}'")

        def unsubscribe() -> None:
            if self._listeners.pop(listener_id, None) is not None:
                logger.debug(f"Listener {listener_id} unsubscribed from '{path}'")

        return unsubscribe

    def listener_count(self) -> int:
        """Number of active listeners."""
        return len(self._listeners)

    def add_write_hook(self, hook: Callable[[Tuple[str, ...]], None]) -> None:
        """Register a synchronous hook called with each written path."""
        self._write_hooks.append(hook)

    def child_keys(self, path: str) -> List[str]:
        """List the keys directly under a node."""
        node = self._read(split_path(path))
        if isinstance(node, dict):
            return list(node.keys())
        return []

    # ===== Internals =====

    def _read(self, parts: Tuple[str, ...]) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _write(self, parts: Tuple[str, ...], value: Any) -> None:
        if value is None or (isinstance(value, dict) and not value):
            self._delete(parts)
            return

        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def _delete(self, parts: Tuple[str, ...]) -> None:
        trail = [self._root]
        node = self._root
        for part in parts[:-1]:
            node = node.get(part) if isinstance(node, dict) else None
            if not isinstance(node, dict):
                return
            trail.append(node)

        if parts[-1] in trail[-1]:
            del trail[-1][parts[-1]]

        # Prune parents left empty
        for depth in range(len(parts) - 1, 0, -1):
            parent = trail[depth - 1]
            key = parts[depth - 1]
            if isinstance(parent.get(key), dict) and not parent[key]:
                del parent[key]
            else:
                break

    def _resolve(self, value: Any) -> Any:
        """Deep-copy a value, replacing SERVER_TIMESTAMP and dropping None children."""
        if value is SERVER_TIMESTAMP:
            return self.server_time()
        if isinstance(value, dict):
            resolved = {}
            for key, child in value.items():
                key = str(key)
                if not key or "/" in key or INVALID_KEY_CHARS & set(key):
                    raise StoreError(f"Invalid key '{key}'")
                child = self._resolve(child)
                if child is None or (isinstance(child, dict) and not child):
                    continue
                resolved[key] = child
            return resolved
        if isinstance(value, (list, tuple)):
            return [self._resolve(item) for item in value]
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        raise StoreError(f"Unsupported value type: {type(value).__name__}")

    def _collect(self, written: List[Tuple[str, ...]]) -> List[Tuple[Listener, Any]]:
        for parts in written:
            for hook in self._write_hooks:
                try:
                    hook(parts)
                except Exception as e:
                    logger.error(f"Write hook failed for '{'/'.join(parts)}': {e}")

        pending = []
        for listener_path, callback in list(self._listeners.values()):
            if any(_is_related(listener_path, parts) for parts in written):
                pending.append((callback, copy.deepcopy(self._read(listener_path))))
        return pending

    async def _dispatch(self, pending: List[Tuple[Listener, Any]]) -> None:
        for callback, snapshot in pending:
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Store listener raised: {e}")


# Global store instance
_store = SharedStore()


def get_store() -> SharedStore:
    """Get global store instance."""
    return _store
