"""
Tests for gates: criteria expressions and the Gate Evaluator.

Covers:
- parse_criteria: grammar, precedence, literals, dotted names, errors
- Criteria.evaluate: unresolved references and type errors FAIL with a reason
- GateEvaluator.check: automatic gates, deliverable requirements, memory lookup
- Human gates: PENDING until decided; idempotent replay; GateAlreadyResolved
- Gate instances: a resolved instance is never re-evaluated; fingerprints
- GateDecision: normalization and payload parsing
"""

import pytest

from loopwork.engine.state import Run
from loopwork.errors import GateAlreadyResolved, ParseError
from loopwork.gates import (
    GateDecision,
    GateEvaluator,
    GateOutcome,
    parse_criteria,
)
from loopwork.gates.evaluator import lookup_path
from loopwork.loops import GateKind, GateSpec
from loopwork.memory import MemoryStore, MemoryTier


def _resolver(data: dict):
    def resolve(name: str):
        return lookup_path(data, name)

    return resolve


def _run(**deliverables) -> Run:
    run = Run(
        id="run-test",
        loop_id="deal-loop",
        loop_version="1.0.0",
        phase_names=["ASSESS", "PROPOSE"],
        skills_total=2,
    )
    run.enter_phase(0)
    run.deliverables.update(deliverables)
    return run


def _auto(criteria: str | None = None, **kw) -> GateSpec:
    return GateSpec(
        id=kw.pop("id", "assess-gate"),
        kind=GateKind.AUTOMATIC,
        criteria=criteria,
        compiled=parse_criteria(criteria) if criteria else None,
        **kw,
    )


HUMAN = GateSpec(id="review-gate", kind=GateKind.HUMAN)


# ── Tests: criteria ───────────────────────────────────────────────────


class TestCriteria:
    @pytest.mark.parametrize(
        "expression,data,expected",
        [
            ("championStrength > 30", {"championStrength": 45}, True),
            ("championStrength > 30", {"championStrength": 10}, False),
            ("score >= 80 and not blockers", {"score": 80, "blockers": False}, True),
            ("score >= 80 and not blockers", {"score": 80, "blockers": True}, False),
            ("a or b and c", {"a": True, "b": False, "c": False}, True),
            ("(a or b) and c", {"a": True, "b": False, "c": False}, False),
            ('status == "approved"', {"status": "approved"}, True),
            ("status != 'draft'", {"status": "draft"}, False),
            ("coverage.lines >= 80", {"coverage": {"lines": 91.5}}, True),
            ("ready", {"ready": "yes"}, True),
            ("!ready", {"ready": 0}, True),
            ("owner == null", {"owner": None}, True),
            ("flag == true", {"flag": True}, True),
            ("a > 1 && b < 2 || c", {"a": 0, "b": 5, "c": True}, True),
            ("risk <= -1", {"risk": -3}, True),
            ("count > 3", {"count": "7"}, True),
            ('owner == "José"', {"owner": "José"}, True),
            (r'note == "say \"hi\""', {"note": 'say "hi"'}, True),
            (r"path == 'C:\xyz'", {"path": r"C:\xyz"}, True),
            (r'path == "a\\b"', {"path": r"a\b"}, True),
        ],
    )
    def test_evaluate(self, expression, data, expected):
        assert parse_criteria(expression).evaluate(_resolver(data)).passed is expected

    def test_references(self):
        criteria = parse_criteria("a > 1 and (b.c or a == 2)")
        assert criteria.references == ("a", "b.c")

    def test_failure_reason(self):
        result = parse_criteria("x > 30").evaluate(_resolver({"x": 1}))
        assert not result.passed
        assert result.reason == "criteria not met: x > 30"

    def test_unresolved_reference_fails(self):
        result = parse_criteria("x > 30").evaluate(_resolver({}))
        assert not result.passed
        assert result.reason == "unresolved reference 'x'"

    def test_type_error_fails(self):
        result = parse_criteria("x > 30").evaluate(_resolver({"x": "abc"}))
        assert not result.passed
        assert result.reason.startswith("type error")

    def test_dotted_key_exact_match_first(self):
        data = {"coverage.lines": 10, "coverage": {"lines": 99}}
        assert not parse_criteria("coverage.lines > 50").evaluate(_resolver(data)).passed

    @pytest.mark.parametrize(
        "expression",
        ["", "   ", "x >", "(a and b", "a b", "x > > 1", "a ==", "@x"],
    )
    def test_invalid(self, expression):
        with pytest.raises(ParseError):
            parse_criteria(expression)


# ── Tests: automatic gates ────────────────────────────────────────────


class TestAutomaticGates:
    def test_pass(self):
        run = _run(championStrength=45)
        record = GateEvaluator().check(_auto("championStrength > 30"), run)
        assert record.result == GateOutcome.PASS
        assert record.instance_id == "assess-gate#1"
        assert record.phase == "ASSESS"
        assert run.gate_log == [record]

    def test_fail(self):
        run = _run(championStrength=10)
        record = GateEvaluator().check(_auto("championStrength > 30"), run)
        assert record.result == GateOutcome.FAIL
        assert "criteria not met" in record.reason

    def test_no_criteria_passes(self):
        assert GateEvaluator().evaluate(_auto(), _run()) == GateOutcome.PASS

    def test_missing_deliverable_fails(self):
        gate = _auto(deliverables=("proposalDoc", "pricing"))
        record = GateEvaluator().check(gate, _run(pricing=10))
        assert record.result == GateOutcome.FAIL
        assert record.reason == "missing deliverables: proposalDoc"

    def test_deliverables_and_criteria(self):
        gate = _auto("pricing > 5", deliverables=("pricing",))
        assert GateEvaluator().evaluate(gate, _run(pricing=10)) == GateOutcome.PASS

    def test_resolved_instance_not_reevaluated(self):
        run = _run(championStrength=10)
        evaluator = GateEvaluator()
        gate = _auto("championStrength > 30")
        first = evaluator.check(gate, run)
        run.deliverables["championStrength"] = 90
        second = evaluator.check(gate, run)
        assert second is first
        assert len(run.gate_log) == 1

    def test_new_instance_reevaluates(self):
        run = _run(championStrength=10)
        evaluator = GateEvaluator()
        gate = _auto("championStrength > 30")
        evaluator.check(gate, run)
        run.deliverables["championStrength"] = 90
        assert run.open_gate_instance(gate.id) == "assess-gate#2"
        record = evaluator.check(gate, run)
        assert record.result == GateOutcome.PASS
        assert record.instance_id == "assess-gate#2"
        assert [r.result for r in run.gate_records_for(gate.id)] == [GateOutcome.FAIL, GateOutcome.PASS]

    def test_fingerprint_tracks_inputs(self):
        run = _run(championStrength=10, unrelated=1)
        evaluator = GateEvaluator()
        gate = _auto("championStrength > 30")
        before = evaluator.fingerprint(gate, run)
        run.deliverables["unrelated"] = 2
        assert evaluator.fingerprint(gate, run) == before
        run.deliverables["championStrength"] = 11
        assert evaluator.fingerprint(gate, run) != before

    @pytest.mark.asyncio
    async def test_reads_run_then_process_memory(self):
        memory = MemoryStore()
        await memory.write(MemoryTier.PROCESS, "process", "threshold_met", True)
        await memory.write(MemoryTier.RUN, "run-test", "score", 70)
        await memory.write(MemoryTier.RUN, "other-run", "secret", 1)
        evaluator = GateEvaluator(memory)

        run = _run()
        assert evaluator.evaluate(_auto("score > 50 and threshold_met"), run) == GateOutcome.PASS

        record = evaluator.check(_auto("secret == 1", id="other"), run)
        assert record.result == GateOutcome.FAIL
        assert record.reason == "unresolved reference 'secret'"

    @pytest.mark.asyncio
    async def test_deliverables_shadow_memory(self):
        memory = MemoryStore()
        await memory.write(MemoryTier.RUN, "run-test", "score", 10)
        run = _run(score=90)
        assert GateEvaluator(memory).evaluate(_auto("score > 50"), run) == GateOutcome.PASS


# ── Tests: human gates ────────────────────────────────────────────────


class TestHumanGates:
    def test_pending_until_decided(self):
        run = _run()
        evaluator = GateEvaluator()
        record = evaluator.check(HUMAN, run)
        assert record.result == GateOutcome.PENDING
        # repeated checks do not append
        evaluator.check(HUMAN, run)
        assert len(run.gate_log) == 1

    def test_approve(self):
        run = _run()
        evaluator = GateEvaluator()
        evaluator.check(HUMAN, run)
        decision = GateDecision("review-gate", "approve", rationale="looks good", approver="ana")
        record = evaluator.record_decision(HUMAN, run, decision)
        assert record.result == GateOutcome.PASS
        assert record.approver == "ana"
        assert evaluator.evaluate(HUMAN, run) == GateOutcome.PASS

    def test_replay_is_idempotent(self):
        run = _run()
        evaluator = GateEvaluator()
        evaluator.check(HUMAN, run)
        decision = GateDecision("review-gate", "pass", approver="ana")
        first = evaluator.record_decision(HUMAN, run, decision)
        again = evaluator.record_decision(HUMAN, run, decision)
        assert again is first
        assert len(run.gate_log) == 2

    def test_same_outcome_returns_stored(self):
        run = _run()
        evaluator = GateEvaluator()
        first = evaluator.record_decision(HUMAN, run, GateDecision("review-gate", "pass", approver="ana"))
        second = evaluator.record_decision(HUMAN, run, GateDecision("review-gate", "pass", approver="bob"))
        assert second is first

    def test_conflicting_decision_raises(self):
        run = _run()
        evaluator = GateEvaluator()
        evaluator.record_decision(HUMAN, run, GateDecision("review-gate", "pass"))
        with pytest.raises(GateAlreadyResolved):
            evaluator.record_decision(HUMAN, run, GateDecision("review-gate", "reject"))

    def test_rejection_then_new_instance(self):
        run = _run()
        evaluator = GateEvaluator()
        evaluator.check(HUMAN, run)
        rejected = evaluator.record_decision(HUMAN, run, GateDecision("review-gate", "fail", "too risky"))
        assert rejected.result == GateOutcome.FAIL
        assert rejected.rationale == "too risky"

        run.open_gate_instance("review-gate")
        assert evaluator.check(HUMAN, run).result == GateOutcome.PENDING
        approved = evaluator.record_decision(HUMAN, run, GateDecision("review-gate", "pass"))
        assert approved.instance_id == "review-gate#2"

    def test_expire(self):
        run = _run()
        evaluator = GateEvaluator()
        evaluator.check(HUMAN, run)
        record = evaluator.expire(HUMAN, run, 30)
        assert record.result == GateOutcome.FAIL
        assert record.reason == "approval timed out after 30s"
        assert evaluator.expire(HUMAN, run, 30) is None


class TestGateDecision:
    @pytest.mark.parametrize("raw,expected", [
        ("PASS", "pass"), ("approved", "pass"), ("Reject", "fail"), ("fail", "fail"),
    ])
    def test_normalized(self, raw, expected):
        assert GateDecision("g", raw).decision == expected

    def test_invalid(self):
        with pytest.raises(ValueError):
            GateDecision("g", "maybe")

    def test_from_payload(self):
        decision = GateDecision.from_payload(
            {"gateId": "g", "decision": "approve", "approver": "ana", "timestamp": 12}
        )
        assert decision.gate_id == "g"
        assert decision.outcome == GateOutcome.PASS
        assert decision.timestamp == 12.0

    def test_from_payload_needs_gate(self):
        with pytest.raises(ValueError, match="gateId"):
            GateDecision.from_payload({"decision": "pass"})
