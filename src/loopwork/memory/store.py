"""
Memory Store — three-tier key/value memory shared by skills and the engine.

Tiers, from widest to narrowest visibility:

- PROCESS: readable by every run and invocation; persists across runs.
- RUN: readable by every invocation of the owning run; released when the
  run reaches a terminal state.
- INVOCATION: readable only by the invocation that wrote it; discarded when
  the invocation closes unless promoted to the run tier.

History is append-only: a write never replaces an entry, it appends a newer
one for the same key. Writes are serialized per run with an asyncio lock,
so concurrently dispatched skills of one run cannot lose updates.

Persistence (when a root is configured)::

    <root>/process.jsonl
    <root>/runs/<run_id>.jsonl

Each line is one complete entry, written with a single append.
"""

import asyncio
import json
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from ..errors import MemoryNotFound, MemoryVisibilityViolation

logger = structlog.get_logger()

PROCESS_SCOPE = "process"
_PROCESS_LOCK = "__process__"
_MISSING = object()


class MemoryTier(str, Enum):
    PROCESS = "process"
    RUN = "run"
    INVOCATION = "invocation"


@dataclass(frozen=True)
class MemoryEntry:
    tier: MemoryTier
    scope_id: str
    key: str
    value: Any
    writer: str
    timestamp: float
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "scope_id": self.scope_id,
            "key": self.key,
            "value": self.value,
            "writer": self.writer,
            "timestamp": self.timestamp,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryEntry":
        return cls(
            tier=MemoryTier(data["tier"]),
            scope_id=data["scope_id"],
            key=data["key"],
            value=data.get("value"),
            writer=data.get("writer", "unknown"),
            timestamp=float(data.get("timestamp", 0.0)),
            tags=tuple(data.get("tags", ())),
        )


@dataclass(frozen=True)
class MemoryReader:
    """Identity of whoever reads memory.

    ``MemoryReader()`` (no run, no invocation) is the engine itself and may
    read every scope. A skill reads as ``MemoryReader(run_id, invocation_id)``.
    """

    run_id: str | None = None
    invocation_id: str | None = None

    @property
    def is_engine(self) -> bool:
        return self.run_id is None and self.invocation_id is None


ENGINE_READER = MemoryReader()


class MemoryStore:
    """Tiered, append-only memory with per-run write serialization."""

    def __init__(self, root: Path | str | None = None, strict: bool = True):
        """Initialise the store.

        Args:
            root: Directory for persisted process/run entries. None keeps
                everything in memory.
            strict: Raise MemoryVisibilityViolation on a cross-scope access.
                When False the violation is logged and treated as not found.
        """
        self.root = Path(root) if root else None
        self.strict = strict
        self._entries: dict[tuple[MemoryTier, str], dict[str, list[MemoryEntry]]] = {}
        self._invocations: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.log = logger.bind(component="memory")
        if self.root:
            self._load(self.root)

    # ── persistence ──────────────────────────────────────────────────────

    def _load(self, root: Path) -> None:
        paths = [root / "process.jsonl"]
        runs_dir = root / "runs"
        if runs_dir.is_dir():
            paths.extend(sorted(runs_dir.glob("*.jsonl")))
        loaded = 0
        for path in paths:
            if not path.is_file():
                continue
            for line in path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    entry = MemoryEntry.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    self.log.warning("memory.corrupt_line", path=str(path), error=str(e))
                    continue
                self._append(entry)
                loaded += 1
        if loaded:
            self.log.debug("memory.loaded", entries=loaded)

    def _path_for(self, entry: MemoryEntry) -> Path | None:
        if self.root is None or entry.tier == MemoryTier.INVOCATION:
            return None
        if entry.tier == MemoryTier.PROCESS:
            return self.root / "process.jsonl"
        return self.root / "runs" / f"{entry.scope_id}.jsonl"

    def _persist(self, entry: MemoryEntry) -> None:
        path = self._path_for(entry)
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.to_dict(), default=str, ensure_ascii=False) + "\n"
        with path.open("a", encoding="utf-8") as f:
            f.write(line)

    # ── visibility ───────────────────────────────────────────────────────

    def _visible(self, tier: MemoryTier, scope_id: str, reader: MemoryReader) -> bool:
        if reader.is_engine or tier == MemoryTier.PROCESS:
            return True
        if tier == MemoryTier.RUN:
            return reader.run_id == scope_id
        return reader.invocation_id == scope_id

    def _check(self, tier: MemoryTier, scope_id: str, reader: MemoryReader) -> bool:
        """True if visible. Raises in strict mode, logs otherwise."""
        if self._visible(tier, scope_id, reader):
            return True
        if self.strict:
            raise MemoryVisibilityViolation(tier.value, scope_id, reader)
        self.log.warning(
            "memory.visibility_violation",
            tier=tier.value,
            scope_id=scope_id,
            reader_run=reader.run_id,
            reader_invocation=reader.invocation_id,
        )
        return False

    # ── writes ───────────────────────────────────────────────────────────

    def _lock_for(self, tier: MemoryTier, scope_id: str) -> asyncio.Lock:
        if tier == MemoryTier.PROCESS:
            name = _PROCESS_LOCK
        elif tier == MemoryTier.RUN:
            name = scope_id
        else:
            name = self._invocations.get(scope_id, scope_id)
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _append(self, entry: MemoryEntry) -> None:
        bucket = self._entries.setdefault((entry.tier, entry.scope_id), {})
        bucket.setdefault(entry.key, []).append(entry)

    async def write(
        self,
        tier: MemoryTier,
        scope_id: str,
        key: str,
        value: Any,
        writer: str = "engine",
        tags: Iterable[str] = (),
        reader: MemoryReader = ENGINE_READER,
    ) -> MemoryEntry | None:
        """Append a new entry for ``key``.

        Returns None (and writes nothing) when a non-strict store refuses a
        cross-scope write.

        Raises:
            MemoryVisibilityViolation: Strict mode and ``reader`` cannot
                access the target scope.
            ValueError: Invocation-tier write to an invocation that is not open.
        """
        tier = MemoryTier(tier)
        if tier == MemoryTier.PROCESS:
            scope_id = PROCESS_SCOPE
        if not self._check(tier, scope_id, reader):
            return None
        if tier == MemoryTier.INVOCATION and scope_id not in self._invocations:
            raise ValueError(f"Invocation '{scope_id}' is not open")

        async with self._lock_for(tier, scope_id):
            entry = MemoryEntry(
                tier=tier,
                scope_id=scope_id,
                key=key,
                value=value,
                writer=writer,
                timestamp=time.time(),
                tags=tuple(tags),
            )
            self._persist(entry)
            self._append(entry)
        self.log.debug("memory.write", tier=tier.value, scope_id=scope_id, key=key, writer=writer)
        return entry

    # ── reads ────────────────────────────────────────────────────────────

    def entry(
        self,
        tier: MemoryTier,
        scope_id: str,
        key: str,
        reader: MemoryReader = ENGINE_READER,
    ) -> MemoryEntry:
        """Latest entry for ``key``.

        Raises:
            MemoryNotFound: No entry, or (non-strict) the scope is not visible.
            MemoryVisibilityViolation: Strict mode and the scope is not visible.
        """
        tier = MemoryTier(tier)
        if tier == MemoryTier.PROCESS:
            scope_id = PROCESS_SCOPE
        if not self._check(tier, scope_id, reader):
            raise MemoryNotFound(tier.value, scope_id, key)
        history = self._entries.get((tier, scope_id), {}).get(key)
        if not history:
            raise MemoryNotFound(tier.value, scope_id, key)
        return history[-1]

    def read(
        self,
        tier: MemoryTier,
        scope_id: str,
        key: str,
        reader: MemoryReader = ENGINE_READER,
    ) -> Any:
        return self.entry(tier, scope_id, key, reader).value

    def get(
        self,
        tier: MemoryTier,
        scope_id: str,
        key: str,
        default: Any = None,
        reader: MemoryReader = ENGINE_READER,
    ) -> Any:
        try:
            return self.read(tier, scope_id, key, reader)
        except MemoryNotFound:
            return default

    def query(
        self,
        tier: MemoryTier,
        scope_id: str,
        tags: Iterable[str] | None = None,
        reader: MemoryReader = ENGINE_READER,
    ) -> list[MemoryEntry]:
        """Latest entry of every key in a scope carrying all of ``tags``."""
        tier = MemoryTier(tier)
        if tier == MemoryTier.PROCESS:
            scope_id = PROCESS_SCOPE
        if not self._check(tier, scope_id, reader):
            return []
        wanted = set(tags or ())
        latest = [h[-1] for h in self._entries.get((tier, scope_id), {}).values() if h]
        return sorted(
            (e for e in latest if wanted.issubset(e.tags)),
            key=lambda e: e.timestamp,
        )

    def history(
        self,
        tier: MemoryTier,
        scope_id: str,
        key: str,
        reader: MemoryReader = ENGINE_READER,
    ) -> list[MemoryEntry]:
        tier = MemoryTier(tier)
        if tier == MemoryTier.PROCESS:
            scope_id = PROCESS_SCOPE
        if not self._check(tier, scope_id, reader):
            return []
        return list(self._entries.get((tier, scope_id), {}).get(key, ()))

    # ── invocation lifecycle ─────────────────────────────────────────────

    def open_invocation(self, run_id: str, invocation_id: str) -> "ScopedMemory":
        """Open an invocation scope and return the view handed to the skill."""
        self._invocations[invocation_id] = run_id
        return ScopedMemory(self, run_id, invocation_id)

    async def promote(self, invocation_id: str, key: str, tags: Iterable[str] = ()) -> MemoryEntry:
        """Copy the latest invocation entry for ``key`` into the run tier.

        Raises:
            MemoryNotFound: The invocation never wrote ``key``.
        """
        run_id = self._invocations.get(invocation_id)
        if run_id is None:
            raise MemoryNotFound(MemoryTier.INVOCATION.value, invocation_id, key)
        source = self.entry(MemoryTier.INVOCATION, invocation_id, key)
        return await self.write(
            MemoryTier.RUN,
            run_id,
            key,
            source.value,
            writer=source.writer,
            tags=tuple(dict.fromkeys((*source.tags, *tags))),
        )

    async def close_invocation(
        self,
        invocation_id: str,
        promote: Iterable[str] = (),
    ) -> list[MemoryEntry]:
        """Promote the requested keys, then discard the invocation scope."""
        promoted: list[MemoryEntry] = []
        if invocation_id not in self._invocations:
            return promoted
        for key in promote:
            try:
                promoted.append(await self.promote(invocation_id, key))
            except MemoryNotFound:
                self.log.warning("memory.promote_missing", invocation=invocation_id, key=key)
        self._entries.pop((MemoryTier.INVOCATION, invocation_id), None)
        self._invocations.pop(invocation_id, None)
        return promoted

    def release_run(self, run_id: str) -> None:
        """Drop every run- and invocation-scoped entry owned by ``run_id``."""
        for invocation_id, owner in list(self._invocations.items()):
            if owner == run_id:
                self._entries.pop((MemoryTier.INVOCATION, invocation_id), None)
                del self._invocations[invocation_id]
        dropped = len(self._entries.pop((MemoryTier.RUN, run_id), {}))
        self._locks.pop(run_id, None)
        if self.root:
            path = self.root / "runs" / f"{run_id}.jsonl"
            if path.exists():
                path.unlink()
        self.log.debug("memory.run_released", run_id=run_id, keys=dropped)

    def open_invocations(self, run_id: str) -> list[str]:
        return [i for i, owner in self._invocations.items() if owner == run_id]


@dataclass
class ScopedMemory:
    """Memory as seen by one skill invocation.

    ``read`` without a tier looks in the invocation scope, then the run, then
    the process tier. Writes default to the invocation scope.
    """

    store: MemoryStore
    run_id: str
    invocation_id: str
    writer: str = ""
    reader: MemoryReader = field(init=False)

    def __post_init__(self) -> None:
        self.reader = MemoryReader(self.run_id, self.invocation_id)
        if not self.writer:
            self.writer = self.invocation_id

    def _scope(self, tier: MemoryTier) -> str:
        if tier == MemoryTier.INVOCATION:
            return self.invocation_id
        if tier == MemoryTier.RUN:
            return self.run_id
        return PROCESS_SCOPE

    async def write(
        self,
        key: str,
        value: Any,
        tier: MemoryTier = MemoryTier.INVOCATION,
        tags: Iterable[str] = (),
    ) -> MemoryEntry:
        tier = MemoryTier(tier)
        return await self.store.write(
            tier, self._scope(tier), key, value, writer=self.writer, tags=tags, reader=self.reader
        )

    def read(self, key: str, tier: MemoryTier | None = None, scope_id: str | None = None) -> Any:
        """Read ``key``; ``scope_id`` lets a caller target another scope explicitly."""
        if tier is not None:
            tier = MemoryTier(tier)
            return self.store.read(tier, scope_id or self._scope(tier), key, self.reader)
        for candidate in (MemoryTier.INVOCATION, MemoryTier.RUN, MemoryTier.PROCESS):
            try:
                return self.store.read(candidate, self._scope(candidate), key, self.reader)
            except MemoryNotFound:
                continue
        raise MemoryNotFound("any", self.invocation_id, key)

    def get(self, key: str, default: Any = None, tier: MemoryTier | None = None) -> Any:
        try:
            return self.read(key, tier)
        except MemoryNotFound:
            return default

    def query(self, tier: MemoryTier, tags: Iterable[str] | None = None) -> list[MemoryEntry]:
        tier = MemoryTier(tier)
        return self.store.query(tier, self._scope(tier), tags, self.reader)

    def contains(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING
