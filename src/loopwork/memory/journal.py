"""
Memory Journal — decisions, learned patterns and handoffs on top of MemoryStore.

- Decisions (ADR-style) belong to a run: run tier, tagged ``decision``.
- Patterns are process-wide and de-duplicated by name; repeating a pattern
  bumps its use count and confidence.
- Handoffs are process-wide, one current handoff per loop.
"""

import time
from typing import Any

import structlog

from .store import PROCESS_SCOPE, MemoryStore, MemoryTier

logger = structlog.get_logger()

DECISION_TAG = "decision"
PATTERN_TAG = "pattern"
HANDOFF_TAG = "handoff"


def _confidence(uses: int) -> str:
    if uses >= 10:
        return "high"
    if uses >= 5:
        return "medium"
    return "low"


_CONFIDENCE_SCORE = {"high": 3, "medium": 2, "low": 1}


class MemoryJournal:
    def __init__(self, store: MemoryStore):
        self.store = store
        self.log = logger.bind(component="memory_journal")

    # ── decisions ────────────────────────────────────────────────────────

    async def record_decision(
        self,
        run_id: str,
        title: str,
        rationale: str = "",
        author: str = "engine",
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append a numbered decision (ADR-001, ADR-002, ...) to the run."""
        number = len(self.decisions(run_id)) + 1
        decision = {
            "id": f"ADR-{number:03d}",
            "title": title,
            "rationale": rationale,
            "author": author,
            "context": dict(context or {}),
            "timestamp": time.time(),
        }
        await self.store.write(
            MemoryTier.RUN, run_id, f"decision:{decision['id']}", decision,
            writer=author, tags=(DECISION_TAG,),
        )
        self.log.info("journal.decision", run_id=run_id, decision=decision["id"], title=title)
        return decision

    def decisions(self, run_id: str) -> list[dict[str, Any]]:
        return [e.value for e in self.store.query(MemoryTier.RUN, run_id, tags=[DECISION_TAG])]

    # ── patterns ─────────────────────────────────────────────────────────

    async def add_pattern(
        self,
        name: str,
        description: str = "",
        context: str = "",
        source_run: str | None = None,
    ) -> dict[str, Any]:
        """Record a learned pattern; an existing name is reinforced, not duplicated."""
        key = f"pattern:{name}"
        existing = self.store.get(MemoryTier.PROCESS, PROCESS_SCOPE, key)
        if existing is not None:
            pattern = dict(existing)
            pattern["uses"] = pattern.get("uses", 1) + 1
            pattern["confidence"] = _confidence(pattern["uses"])
            pattern["last_used"] = time.time()
        else:
            number = len(self.patterns()) + 1
            pattern = {
                "id": f"PAT-{number:03d}",
                "name": name,
                "description": description,
                "context": context,
                "uses": 1,
                "confidence": "low",
                "created_at": time.time(),
                "last_used": time.time(),
            }
        if source_run:
            pattern["source_run"] = source_run
        await self.store.write(
            MemoryTier.PROCESS, PROCESS_SCOPE, key, pattern, writer="journal", tags=(PATTERN_TAG,),
        )
        self.log.debug("journal.pattern", name=name, uses=pattern["uses"])
        return pattern

    def patterns(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Patterns ranked by confidence times use count."""
        patterns = [
            e.value for e in self.store.query(MemoryTier.PROCESS, PROCESS_SCOPE, tags=[PATTERN_TAG])
        ]
        patterns.sort(
            key=lambda p: _CONFIDENCE_SCORE.get(p.get("confidence", "low"), 1) * p.get("uses", 1),
            reverse=True,
        )
        return patterns[:limit] if limit is not None else patterns

    # ── handoffs ─────────────────────────────────────────────────────────

    async def set_handoff(
        self,
        loop_id: str,
        summary: str,
        next_steps: list[str] | None = None,
        run_id: str | None = None,
    ) -> dict[str, Any]:
        handoff = {
            "id": f"HO-{int(time.time() * 1000):x}".upper(),
            "loop_id": loop_id,
            "summary": summary,
            "next_steps": list(next_steps or []),
            "run_id": run_id,
            "created_at": time.time(),
        }
        await self.store.write(
            MemoryTier.PROCESS, PROCESS_SCOPE, f"handoff:{loop_id}", handoff,
            writer="journal", tags=(HANDOFF_TAG,),
        )
        self.log.info("journal.handoff", loop_id=loop_id, run_id=run_id)
        return handoff

    def get_handoff(self, loop_id: str) -> dict[str, Any] | None:
        return self.store.get(MemoryTier.PROCESS, PROCESS_SCOPE, f"handoff:{loop_id}")

    def load_context(self, loop_id: str, run_id: str | None = None) -> dict[str, Any]:
        """Cold-start context for a loop: handoff, top patterns, recent decisions."""
        recent = self.decisions(run_id)[-5:] if run_id else []
        return {
            "handoff": self.get_handoff(loop_id),
            "patterns": self.patterns(limit=10),
            "recent_decisions": list(reversed(recent)),
        }
