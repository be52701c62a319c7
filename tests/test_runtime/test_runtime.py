"""
Tests for runtime wiring.

Covers:
- build_runtime loads skills and loops from configured directories
- State directory layout: runs, memory and archive under one root
- End-to-end: run a loop, query it, calibrate from the archive
- reload_catalog bumps the generation
"""

from pathlib import Path

import pytest

from loopwork.config import AppConfig
from loopwork.engine import HandlerRegistry, RunStatus
from loopwork.runtime import build_runtime

SCORING = """---
name: scoring
version: 1.0.0
phase: VALIDATE
deliverables: [championStrength]
---
# Scoring
"""

PROPOSAL = """---
name: proposal
phase: IMPLEMENT
depends_on: [scoring]
---
# Proposal
"""

LOOP = """
id: deal-loop
version: 1.0.0
estimated_duration: 30
phases:
  - name: ASSESS
    skills: [scoring]
    gate:
      criteria: "championStrength > 30"
  - name: PROPOSE
    skills: [proposal]
"""


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    for name, text in (("scoring", SCORING), ("proposal", PROPOSAL)):
        skill_dir = tmp_path / "skills" / name
        skill_dir.mkdir(parents=True)
        (skill_dir / "SKILL.md").write_text(text)
    (tmp_path / "loops").mkdir()
    (tmp_path / "loops" / "deal-loop.yaml").write_text(LOOP)
    return tmp_path


def _config(root: Path) -> AppConfig:
    return AppConfig(
        engine={"state_dir": root / "state", "retry": {"base_delay": 0}},
        catalog={"skills_dirs": [root / "skills"], "loops_dirs": [root / "loops"]},
    )


def _handlers() -> HandlerRegistry:
    handlers = HandlerRegistry()

    @handlers.handler("scoring")
    async def scoring(ctx):
        return {"championStrength": 55}

    @handlers.handler("proposal")
    async def proposal(ctx):
        return None

    return handlers


class TestBuildRuntime:
    def test_loads_catalog_and_loops(self, workspace: Path):
        runtime = build_runtime(_config(workspace), runner=_handlers())
        assert "scoring" in runtime.catalogs.snapshot()
        assert runtime.templates.get("deal-loop").estimated_duration == 30
        assert runtime.run_store is not None
        assert runtime.memory.strict is True

    def test_defaults_without_config(self):
        runtime = build_runtime()
        assert len(runtime.catalogs.snapshot()) == 0
        assert runtime.run_store is None
        assert runtime.templates.list_templates() == []

    def test_reload_catalog(self, workspace: Path):
        runtime = build_runtime(_config(workspace))
        assert runtime.reload_catalog() == 2

    @pytest.mark.asyncio
    async def test_end_to_end(self, workspace: Path):
        runtime = build_runtime(_config(workspace), runner=_handlers())
        run = await runtime.engine.start("deal-loop", project="acme")
        await runtime.engine.wait(run.id, timeout=2)
        assert run.status == RunStatus.COMPLETED

        state = workspace / "state"
        assert (state / "runs" / f"{run.id}.json").is_file()
        assert (state / "archive" / "calibration.jsonl").is_file()

        summary = runtime.query.list_executions(project="acme")[0]
        assert summary.to_payload()["status"] == "completed"
        assert runtime.calibrator.report("deal-loop")["samples"] == 1
