"""
Execution Engine — the per-run phase/gate state machine.

    PENDING → ACTIVE(phase i) ⇄ BLOCKED → ACTIVE(phase i+1) → … → COMPLETED
    any ACTIVE/BLOCKED ⇄ PAUSED;  any non-terminal → ABORTED;  timeouts → FAILED

Each run is driven by its own asyncio task. Within a phase the required
skills are dispatched in dependency order; a phase marked ``parallel``
dispatches independent skills concurrently (bounded by
``max_parallel_skills``). When every required skill has succeeded the phase
gate is consulted. Skill failures are retried with exponential backoff;
once retries are exhausted the run is BLOCKED for an operator, never failed
automatically.

All control operations (pause, resume, abort, gate decisions, remediation)
are coroutines and must run on the engine's event loop.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from types import MappingProxyType
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..archive.archive import RunArchive
from ..catalog.catalog import Catalog
from ..catalog.descriptor import SkillDescriptor
from ..catalog.registry import CatalogRegistry
from ..config.schema import EngineConfig
from ..errors import (
    CycleError,
    GateNotFound,
    GateRejection,
    InvalidTransition,
    PermanentSkillError,
    RunNotFound,
    SkillExecutionFailure,
    TemplateNotFound,
)
from ..gates.evaluator import GateDecision, GateEvaluator, GateOutcome, GateRecord
from ..logging.human import HumanLog
from ..loops.store import LoopTemplateStore
from ..loops.template import GateSpec, LoopTemplate, PhaseSpec
from ..memory.journal import MemoryJournal
from ..memory.store import MemoryStore
from .persistence import RunStore
from .runner import SkillContext, SkillOutcome, SkillRunner
from .state import (
    BlockReason,
    InvocationStatus,
    Run,
    RunStatus,
    SkillInvocation,
    generate_run_id,
)

logger = structlog.get_logger()

_CONTROLLABLE = (RunStatus.ACTIVE, RunStatus.BLOCKED)


class _RetryableFailure(Exception):
    """Raised inside the retry loop for a failed, non-permanent attempt."""

    def __init__(self, outcome: SkillOutcome):
        super().__init__(outcome.error)
        self.outcome = outcome


@dataclass
class _PhasePlan:
    """Dispatch order and intra-phase dependencies, fixed at run start."""

    order: list[str]
    deps: dict[str, frozenset[str]]
    descriptors: dict[str, SkillDescriptor]


@dataclass
class _RunHandle:
    run: Run
    template: LoopTemplate
    catalog: Catalog
    plans: list[_PhasePlan]
    driver: asyncio.Task | None = None
    skill_tasks: set[asyncio.Task] = field(default_factory=set)
    gate_timer: asyncio.Task | None = None

    @property
    def phase(self) -> PhaseSpec:
        return self.template.phases[self.run.current_phase_index]

    @property
    def plan(self) -> _PhasePlan:
        return self.plans[self.run.current_phase_index]


class ExecutionEngine:
    """Hosts many concurrent runs, each driven by its own task."""

    def __init__(
        self,
        catalogs: CatalogRegistry,
        templates: LoopTemplateStore,
        runner: SkillRunner,
        memory: MemoryStore | None = None,
        archive: RunArchive | None = None,
        config: EngineConfig | None = None,
        run_store: RunStore | None = None,
        evaluator: GateEvaluator | None = None,
    ):
        self.catalogs = catalogs
        self.templates = templates
        self.runner = runner
        self.memory = memory or MemoryStore()
        self.archive = archive
        self.config = config or EngineConfig()
        self.run_store = run_store
        self.evaluator = evaluator or GateEvaluator(self.memory)
        self.journal = MemoryJournal(self.memory)
        self._runs: dict[str, _RunHandle] = {}
        self.log = logger.bind(component="engine")
        self.hlog = HumanLog(logging.getLogger("loopwork.engine"))

    # ── lookup ───────────────────────────────────────────────────────────

    def _handle(self, run_id: str) -> _RunHandle:
        handle = self._runs.get(run_id)
        if handle is None:
            raise RunNotFound(run_id)
        return handle

    def get_run(self, run_id: str) -> Run:
        return self._handle(run_id).run

    def get_template(self, run_id: str) -> LoopTemplate:
        return self._handle(run_id).template

    def list_runs(
        self,
        status: RunStatus | str | None = None,
        loop_id: str | None = None,
        project: str | None = None,
    ) -> list[Run]:
        """Runs hosted by this engine, most recently started first."""
        wanted = RunStatus(status) if status is not None else None
        runs = [
            h.run for h in self._runs.values()
            if (wanted is None or h.run.status == wanted)
            and (loop_id is None or h.run.loop_id == loop_id)
            and (project is None or h.run.project == project)
        ]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)

    # ── start ────────────────────────────────────────────────────────────

    async def start(
        self,
        loop_id: str,
        project: str = "",
        version: str | None = None,
        estimated_duration: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Run:
        """Start the latest (or constrained) version of a loop on the current catalog.

        Raises:
            TemplateNotFound: Unknown loop or no matching version.
        """
        template = self.templates.get(loop_id, version)
        return await self.start_run(
            template,
            self.catalogs.snapshot(),
            project=project,
            estimated_duration=estimated_duration,
            metadata=metadata,
        )

    async def start_run(
        self,
        template: LoopTemplate,
        catalog: Catalog,
        project: str = "",
        estimated_duration: float | None = None,
        metadata: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> Run:
        """Create a run bound to ``template`` and the frozen ``catalog`` snapshot.

        Raises:
            SkillNotFound: A required skill does not resolve in ``catalog``.
            CycleError: The pinned versions of a phase depend on each other in a cycle.
        """
        plans = self._plan(template, catalog)
        run = Run(
            id=run_id or generate_run_id(),
            loop_id=template.id,
            loop_version=template.version,
            phase_names=template.phase_names,
            skills_total=template.skill_count(),
            project=project,
            estimated_duration=estimated_duration or template.estimated_duration,
            catalog_generation=catalog.generation,
            metadata=dict(metadata or {}),
        )
        handle = _RunHandle(run=run, template=template, catalog=catalog, plans=plans)
        self._runs[run.id] = handle
        run.log("info", "system", f"Run created for {template.id}@{template.version}")
        self._persist(run)

        run.status = RunStatus.ACTIVE
        self.log.info(
            "run.started",
            run_id=run.id,
            loop=template.id,
            version=template.version,
            catalog_generation=catalog.generation,
        )
        self.hlog.run_started(run.id, template.id, template.version)
        self._enter_phase(handle, 0)
        self._ensure_driver(handle)
        return run

    @staticmethod
    def _plan(template: LoopTemplate, catalog: Catalog) -> list[_PhasePlan]:
        plans: list[_PhasePlan] = []
        for phase in template.phases:
            ids = phase.skill_ids
            members = set(ids)
            descriptors = {ref.skill_id: catalog.get(ref.skill_id, ref.constraint) for ref in phase.skills}
            graph = catalog.dependency_graph(descriptors.values())
            order = graph.topological_order(ids)
            deps = {sid: frozenset(graph.dependencies(sid)) & members for sid in ids}
            plans.append(_PhasePlan(order=order, deps=deps, descriptors=descriptors))
        return plans

    async def wait(self, run_id: str, timeout: float | None = None) -> Run:
        """Wait until the run's driver is idle (blocked, paused or terminal)."""
        handle = self._handle(run_id)

        async def settle() -> None:
            while handle.driver is not None and not handle.driver.done():
                await asyncio.wait({handle.driver})

        if timeout is None:
            await settle()
        else:
            await asyncio.wait_for(settle(), timeout)
        return handle.run

    # ── driver ───────────────────────────────────────────────────────────

    def _ensure_driver(self, handle: _RunHandle) -> None:
        if handle.driver is None or handle.driver.done():
            handle.driver = asyncio.create_task(
                self._drive(handle), name=f"loopwork-run-{handle.run.id}"
            )

    async def _drive(self, handle: _RunHandle) -> None:
        run = handle.run
        try:
            while run.status == RunStatus.ACTIVE:
                plan = handle.plan
                done = run.succeeded_skills(run.current_phase_index)
                outstanding = [sid for sid in plan.order if sid not in done]
                if outstanding:
                    if not await self._dispatch(handle, outstanding):
                        return
                    continue
                if not self._consult_gate(handle):
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.exception("run.crashed", run_id=run.id)
            self._fail(handle, f"internal error: {type(e).__name__}: {e}")

    async def _dispatch(self, handle: _RunHandle, outstanding: list[str]) -> bool:
        """Run the outstanding skills of the current phase.

        Returns:
            True if every skill succeeded and the run is still ACTIVE.
        """
        run = handle.run
        phase = handle.phase
        plan = handle.plan
        succeeded = run.succeeded_skills(phase.index)
        pending = list(outstanding)
        in_flight: dict[asyncio.Task, str] = {}
        failure: SkillInvocation | None = None
        limit = self.config.max_parallel_skills if phase.parallel else 1

        while pending or in_flight:
            if run.status == RunStatus.ACTIVE and failure is None:
                for sid in list(pending):
                    if len(in_flight) >= limit:
                        break
                    if plan.deps[sid] <= succeeded:
                        pending.remove(sid)
                        task = asyncio.create_task(self._invoke(handle, phase, sid))
                        in_flight[task] = sid
                        handle.skill_tasks.add(task)
            if not in_flight:
                break

            finished, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for task in finished:
                sid = in_flight.pop(task)
                handle.skill_tasks.discard(task)
                invocation = task.result()
                if invocation.status == InvocationStatus.SUCCEEDED:
                    succeeded.add(sid)
                elif failure is None:
                    failure = invocation

        if failure is not None:
            self._block(handle, BlockReason.SKILL_FAILURE, failure.error)
            return False
        return run.status == RunStatus.ACTIVE and not pending

    async def _invoke(self, handle: _RunHandle, phase: PhaseSpec, skill_id: str) -> SkillInvocation:
        run = handle.run
        descriptor = handle.plans[phase.index].descriptors[skill_id]
        number = len(run.invocations_for(phase.index, skill_id)) + 1
        invocation = SkillInvocation(
            id=f"{run.id}/{phase.index}/{skill_id}/{number}",
            skill_id=skill_id,
            skill_version=descriptor.version,
            phase_index=phase.index,
            phase=phase.name,
        )
        run.invocations.append(invocation)
        run.log("info", "skill", f"Dispatched {skill_id}", invocation=invocation.id)
        self.log.info("skill.dispatched", run_id=run.id, skill=skill_id, invocation=invocation.id)
        self._persist(run)

        scoped = self.memory.open_invocation(run.id, invocation.id)
        retry = self.config.retry
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(_RetryableFailure),
            stop=stop_after_attempt(retry.max_attempts),
            wait=wait_exponential(
                multiplier=retry.base_delay,
                exp_base=retry.factor,
                max=retry.max_delay,
            ),
            before_sleep=partial(self._on_retry_sleep, run, invocation),
            reraise=True,
        )
        try:
            try:
                async for attempt in retrying:
                    with attempt:
                        context = SkillContext(
                            run_id=run.id,
                            invocation_id=invocation.id,
                            skill=descriptor,
                            phase=phase.name,
                            attempt=attempt.retry_state.attempt_number,
                            memory=scoped,
                            deliverables=MappingProxyType(dict(run.deliverables)),
                            project=run.project,
                        )
                        outcome = await self._attempt(context)
                        if not outcome.success and not outcome.permanent:
                            raise _RetryableFailure(outcome)
            except _RetryableFailure as e:
                outcome = e.outcome

            if outcome.success:
                invocation.deliverables = dict(outcome.deliverables)
                invocation.refs = list(outcome.refs)
                run.deliverables.update(outcome.deliverables)
                await self.memory.close_invocation(invocation.id, promote=outcome.promote)
                invocation.close(InvocationStatus.SUCCEEDED)
                run.log(
                    "info", "skill", f"Completed {skill_id}",
                    invocation=invocation.id, deliverables=sorted(outcome.deliverables),
                )
                self.log.info(
                    "skill.completed",
                    run_id=run.id,
                    skill=skill_id,
                    attempt=invocation.retry_count + 1,
                    deliverables=sorted(outcome.deliverables),
                )
                self.hlog.skill_completed(run.id, skill_id)
                self._persist(run)
                return invocation

            invocation.error = outcome.error
            failure = SkillExecutionFailure(skill_id, invocation.retry_count + 1, invocation.error)
            await self.memory.close_invocation(invocation.id)
            invocation.close(InvocationStatus.FAILED, str(failure))
            run.log("error", "skill", str(failure), invocation=invocation.id)
            self.log.error(
                "skill.exhausted",
                run_id=run.id,
                skill=skill_id,
                attempts=failure.attempts,
                error=failure.error,
            )
            self.hlog.skill_exhausted(run.id, skill_id, failure.error)
            self._persist(run)
            return invocation
        except asyncio.CancelledError:
            if invocation.status == InvocationStatus.RUNNING:
                invocation.close(InvocationStatus.CANCELLED, "cancelled")
            raise

    def _on_retry_sleep(
        self, run: Run, invocation: SkillInvocation, retry_state: RetryCallState
    ) -> None:
        """Record a transient failure before tenacity sleeps for the next attempt."""
        attempt = retry_state.attempt_number
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        error = retry_state.outcome.exception().outcome.error if retry_state.outcome else None
        max_attempts = self.config.retry.max_attempts

        invocation.error = error
        invocation.retry_count += 1
        run.log(
            "warning", "skill", f"{invocation.skill_id} failed, retrying in {delay:g}s",
            invocation=invocation.id, attempt=attempt, error=error,
        )
        self.log.warning(
            "skill.failed",
            run_id=run.id,
            skill=invocation.skill_id,
            attempt=attempt,
            max_attempts=max_attempts,
            error=error,
            retry_in=round(delay, 1),
        )
        self.hlog.skill_retrying(run.id, invocation.skill_id, attempt + 1, max_attempts)

    async def _attempt(self, context: SkillContext) -> SkillOutcome:
        timeout = self.config.skill_timeout
        try:
            if timeout:
                return await asyncio.wait_for(self.runner(context), timeout)
            return await self.runner(context)
        except PermanentSkillError as e:
            return SkillOutcome.failed(str(e), permanent=True)
        except asyncio.TimeoutError:
            return SkillOutcome.failed(f"timed out after {timeout:g}s")
        except Exception as e:
            return SkillOutcome.failed(f"{type(e).__name__}: {e}")

    # ── gates ────────────────────────────────────────────────────────────

    def _consult_gate(self, handle: _RunHandle) -> bool:
        """Evaluate the phase gate. Returns True if the run advanced."""
        run = handle.run
        phase = handle.phase
        required = set(phase.skill_ids)
        if not required <= run.succeeded_skills(phase.index):
            raise RuntimeError(f"gate consulted before every skill of {phase.name} succeeded")

        gate = phase.gate
        if gate is None:
            self._advance(handle, None)
            return True

        record = self.evaluator.check(gate, run)
        if record.result == GateOutcome.PENDING:
            run.log("info", "gate", f"Gate {gate.id} awaiting approval", instance=record.instance_id)
            self.hlog.gate_awaiting(run.id, gate.id)
            self._block(handle, BlockReason.AWAITING_APPROVAL, f"gate {gate.id}")
            self._start_gate_timer(handle, gate)
            return False

        self._log_gate(run, gate, record)
        if record.result == GateOutcome.PASS:
            self._advance(handle, record)
            return True

        if gate.is_human:
            self._block(handle, BlockReason.GATE_REJECTED, record.rationale or record.reason)
            return False
        if not gate.blocking:
            run.log("warning", "gate", f"Advisory gate {gate.id} failed: {record.reason}")
            self._advance(handle, record)
            return True
        self._block(handle, BlockReason.GATE_FAILED, record.reason)
        return False

    def _log_gate(self, run: Run, gate: GateSpec, record: GateRecord) -> None:
        level = "info" if record.result == GateOutcome.PASS else "warning"
        run.log(
            level, "gate", f"Gate {gate.id}: {record.result.value.upper()}",
            instance=record.instance_id, reason=record.reason, blocking=gate.blocking,
        )
        self.hlog.gate_result(run.id, gate.id, record.result.value, record.reason, gate.blocking)

    def _start_gate_timer(self, handle: _RunHandle, gate: GateSpec) -> None:
        timeout = gate.timeout or self.config.human_gate_timeout
        if not timeout:
            return
        self._cancel_gate_timer(handle)
        instance_id = handle.run.gate_instance_id(gate.id)
        handle.gate_timer = asyncio.create_task(
            self._gate_timeout(handle, gate, instance_id, timeout)
        )

    def _cancel_gate_timer(self, handle: _RunHandle) -> None:
        timer = handle.gate_timer
        handle.gate_timer = None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _gate_timeout(
        self, handle: _RunHandle, gate: GateSpec, instance_id: str, timeout: float
    ) -> None:
        await asyncio.sleep(timeout)
        run = handle.run
        if run.is_terminal or run.gate_instance_id(gate.id) != instance_id:
            return
        record = self.evaluator.expire(gate, run, timeout)
        if record is None:
            return
        handle.gate_timer = None
        self._log_gate(run, gate, record)
        self._fail(handle, f"gate {gate.id} approval timed out after {timeout:g}s")

    # ── transitions ──────────────────────────────────────────────────────

    def _enter_phase(self, handle: _RunHandle, index: int) -> None:
        run = handle.run
        run.enter_phase(index)
        run.log("info", "phase", f"Entered phase {run.current_phase_name}")
        self.log.info("phase.entered", run_id=run.id, phase=run.current_phase_name, index=index)
        self.hlog.phase_entered(run.id, run.current_phase_name or "", index, len(run.phase_names))
        self._persist(run)

    def _advance(self, handle: _RunHandle, record: GateRecord | None) -> None:
        run = handle.run
        current = run.current_phase_record()
        if current is not None:
            current.exited_at = time.time()
            current.gate_result = record.result.value if record else None
        run.log("info", "phase", f"Exited phase {run.current_phase_name}")
        next_index = run.current_phase_index + 1
        if next_index >= len(handle.template.phases):
            self._complete(handle)
        else:
            self._enter_phase(handle, next_index)

    def _block(self, handle: _RunHandle, reason: BlockReason, detail: str | None) -> None:
        run = handle.run
        if run.status == RunStatus.PAUSED:
            run.paused_from = RunStatus.BLOCKED
        else:
            run.status = RunStatus.BLOCKED
        run.block_reason = reason
        run.block_detail = detail
        run.log("warning", "system", f"Blocked: {reason.value}", detail=detail)
        self.log.warning(
            "run.blocked", run_id=run.id, phase=run.current_phase_name,
            reason=reason.value, detail=detail,
        )
        self.hlog.run_blocked(run.id, run.current_phase_name, reason.value, detail)
        self._persist(run)

    def _unblock(self, handle: _RunHandle) -> None:
        run = handle.run
        run.block_reason = None
        run.block_detail = None
        if run.status == RunStatus.PAUSED:
            run.paused_from = RunStatus.ACTIVE
            return
        run.status = RunStatus.ACTIVE
        self._ensure_driver(handle)

    def _complete(self, handle: _RunHandle) -> None:
        run = handle.run
        run.status = RunStatus.COMPLETED
        run.completed_at = time.time()
        run.log("info", "system", "Run completed")
        self.log.info("run.completed", run_id=run.id, duration=round(run.duration, 3))
        self.hlog.run_completed(run.id, len(run.phase_names), run.duration)
        self._finalize(handle)

    def _fail(self, handle: _RunHandle, error: str) -> None:
        run = handle.run
        if run.is_terminal:
            return
        run.status = RunStatus.FAILED
        run.error = error
        run.completed_at = time.time()
        run.log("error", "system", f"Run failed: {error}")
        self.log.error("run.failed", run_id=run.id, error=error)
        self.hlog.run_failed(run.id, error)
        self._finalize(handle)

    def _finalize(self, handle: _RunHandle) -> None:
        """Archive, release run memory and persist a terminal run."""
        run = handle.run
        self._cancel_gate_timer(handle)
        if self.archive is not None:
            try:
                self.archive.archive(run)
            except OSError as e:
                self.log.error("archive.write_failed", run_id=run.id, error=str(e))
        self.memory.release_run(run.id)
        self._persist(run)
        self._evict_archived()

    def _evict_archived(self) -> None:
        """Drop the oldest archived terminal runs beyond ``retain_terminal_runs``.

        Evicted runs are no longer listed by the engine; ``ExecutionQuery``
        serves their detail from the archive.
        """
        if self.archive is None:
            return
        archived = [
            h.run for h in self._runs.values()
            if h.run.is_terminal and h.run.id in self.archive
        ]
        excess = len(archived) - self.config.retain_terminal_runs
        if excess <= 0:
            return
        archived.sort(key=lambda r: r.completed_at or 0.0)
        for run in archived[:excess]:
            del self._runs[run.id]
            self.log.debug("run.evicted", run_id=run.id)

    def _persist(self, run: Run) -> None:
        run.touch()
        if self.run_store is None:
            return
        try:
            self.run_store.save(run)
        except OSError as e:
            self.log.error("run.persist_failed", run_id=run.id, error=str(e))

    # ── control ──────────────────────────────────────────────────────────

    async def pause(self, run_id: str) -> Run:
        """Stop dispatching new skills; in-flight skills finish.

        Raises:
            InvalidTransition: The run is not ACTIVE or BLOCKED.
        """
        handle = self._handle(run_id)
        run = handle.run
        if run.status not in _CONTROLLABLE:
            raise InvalidTransition(run.id, run.status.value, "pause")
        run.paused_from = run.status
        run.status = RunStatus.PAUSED
        run.log("info", "system", "Paused")
        self.log.info("run.paused", run_id=run.id, phase=run.current_phase_name)
        self.hlog.run_paused(run.id, run.current_phase_name)
        self._persist(run)
        return run

    async def resume(self, run_id: str) -> Run:
        """Return a paused run to the state it was paused from.

        Raises:
            InvalidTransition: The run is not PAUSED.
        """
        handle = self._handle(run_id)
        run = handle.run
        if run.status != RunStatus.PAUSED:
            raise InvalidTransition(run.id, run.status.value, "resume")
        run.status = run.paused_from or RunStatus.ACTIVE
        run.paused_from = None
        run.log("info", "system", f"Resumed as {run.status.value}")
        self.log.info("run.resumed", run_id=run.id, status=run.status.value)
        self.hlog.run_resumed(run.id, run.current_phase_name)
        self._persist(run)
        if run.status == RunStatus.ACTIVE:
            self._ensure_driver(handle)
        return run

    async def abort(self, run_id: str, reason: str | None = None) -> Run:
        """Terminate the run; outstanding dispatches are cancelled.

        Raises:
            InvalidTransition: The run is already terminal.
        """
        handle = self._handle(run_id)
        run = handle.run
        if run.is_terminal:
            raise InvalidTransition(run.id, run.status.value, "abort")

        run.status = RunStatus.ABORTED
        run.abort_reason = reason
        run.completed_at = time.time()

        current = asyncio.current_task()
        tasks = [t for t in (*handle.skill_tasks, handle.driver) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        handle.skill_tasks.clear()
        for invocation in run.running_invocations():
            invocation.close(InvocationStatus.CANCELLED, "run aborted")

        run.log("warning", "system", f"Aborted: {reason or 'no reason given'}")
        self.log.warning("run.aborted", run_id=run.id, reason=reason)
        self.hlog.run_aborted(run.id, reason)
        self._finalize(handle)
        return run

    async def submit_decision(self, run_id: str, decision: GateDecision) -> GateRecord:
        """Apply an operator decision to the current human gate.

        Replaying a decision already recorded is a no-op returning the
        stored record.

        Raises:
            GateNotFound: The gate is not the current phase's human gate.
            GateAlreadyResolved: A conflicting decision was already recorded.
            InvalidTransition: The run is terminal.
        """
        handle = self._handle(run_id)
        run = handle.run
        if run.is_terminal:
            raise InvalidTransition(run.id, run.status.value, "decide gate on")
        gate = handle.phase.gate
        if gate is None or gate.id != decision.gate_id or not gate.is_human:
            raise GateNotFound(decision.gate_id, run.id)

        if not run.gate_records_for(gate.id):
            raise InvalidTransition(run.id, f"{run.status.value} before gate {gate.id} opened", "decide gate on")

        logged = len(run.gate_log)
        record = self.evaluator.record_decision(gate, run, decision)
        if len(run.gate_log) == logged:
            return record

        self._cancel_gate_timer(handle)
        await self.journal.record_decision(
            run.id,
            f"Gate {gate.id}: {decision.decision}",
            rationale=decision.rationale,
            author=decision.approver or "operator",
            context={"instance": record.instance_id},
        )

        if record.result == GateOutcome.PASS:
            if run.block_reason == BlockReason.AWAITING_APPROVAL or run.paused_from == RunStatus.BLOCKED:
                self._unblock(handle)
        else:
            self._log_gate(run, gate, record)
            rejection = GateRejection(gate.id, decision.rationale, decision.approver)
            run.log("warning", "gate", str(rejection), approver=decision.approver)
            self._block(handle, BlockReason.GATE_REJECTED, decision.rationale or None)
        self._persist(run)
        return record

    async def approve_gate(
        self, run_id: str, gate_id: str, approver: str | None = None, rationale: str = ""
    ) -> GateRecord:
        return await self.submit_decision(
            run_id, GateDecision(gate_id, "pass", rationale=rationale, approver=approver)
        )

    async def reject_gate(
        self, run_id: str, gate_id: str, approver: str | None = None, rationale: str = ""
    ) -> GateRecord:
        return await self.submit_decision(
            run_id, GateDecision(gate_id, "fail", rationale=rationale, approver=approver)
        )

    async def update_deliverables(self, run_id: str, values: dict[str, Any], author: str = "operator") -> Run:
        """Record operator corrections to a run's deliverables."""
        handle = self._handle(run_id)
        run = handle.run
        if run.is_terminal:
            raise InvalidTransition(run.id, run.status.value, "update deliverables of")
        run.deliverables.update(values)
        run.log("info", "system", "Deliverables updated", keys=sorted(values), author=author)
        self._persist(run)
        return run

    async def remediate(self, run_id: str) -> bool:
        """Retry whatever blocked the run.

        - skill failure: outstanding skills are dispatched again;
        - failed automatic gate: a new gate instance is evaluated, but only if
          its inputs changed since the failing evaluation;
        - rejected human gate: a new gate instance awaits approval.

        Returns:
            True if the run left its blocked condition, False if nothing changed.

        Raises:
            InvalidTransition: The run is not BLOCKED, or is waiting for approval.
        """
        handle = self._handle(run_id)
        run = handle.run
        if run.status != RunStatus.BLOCKED:
            raise InvalidTransition(run.id, run.status.value, "remediate")

        reason = run.block_reason
        gate = handle.phase.gate
        if reason == BlockReason.SKILL_FAILURE:
            run.log("info", "system", "Remediation: re-dispatching failed skills")
            self._unblock(handle)
            self._persist(run)
            return True

        if reason == BlockReason.GATE_FAILED and gate is not None:
            failed = run.resolved_gate(run.gate_instance_id(gate.id))
            fingerprint = self.evaluator.fingerprint(gate, run)
            if failed is not None and failed.fingerprint == fingerprint:
                run.log("warning", "gate", f"Gate {gate.id} inputs unchanged; not re-evaluated")
                self.log.info("gate.inputs_unchanged", run_id=run.id, gate=gate.id)
                return False
            instance = run.open_gate_instance(gate.id)
            run.log("info", "gate", f"Remediation: re-evaluating {gate.id}", instance=instance)
            self._unblock(handle)
            self._persist(run)
            return True

        if reason == BlockReason.GATE_REJECTED and gate is not None:
            instance = run.open_gate_instance(gate.id)
            run.log("info", "gate", f"Remediation: {gate.id} re-opened for approval", instance=instance)
            self.evaluator.check(gate, run)
            self._block(handle, BlockReason.AWAITING_APPROVAL, f"gate {gate.id}")
            self._start_gate_timer(handle, gate)
            return True

        raise InvalidTransition(run.id, f"blocked ({reason.value if reason else 'unknown'})", "remediate")

    # ── recovery / shutdown ──────────────────────────────────────────────

    async def recover(self) -> list[Run]:
        """Reload non-terminal runs from the RunStore and resume driving them.

        Recovered runs are bound to the current catalog snapshot. Invocations
        that were running when the process stopped are marked failed.
        """
        if self.run_store is None:
            return []
        recovered: list[Run] = []
        catalog = self.catalogs.snapshot()
        for run in self.run_store.load_all():
            if run.is_terminal or run.id in self._runs:
                continue
            try:
                template = self.templates.get(run.loop_id, f"={run.loop_version}")
                plans = self._plan(template, catalog)
            except (TemplateNotFound, CycleError, LookupError) as e:
                handle = _RunHandle(run=run, template=_stub_template(run), catalog=catalog, plans=[])
                self._runs[run.id] = handle
                self._fail(handle, f"cannot recover: {e}")
                recovered.append(run)
                continue

            handle = _RunHandle(run=run, template=template, catalog=catalog, plans=plans)
            self._runs[run.id] = handle
            for invocation in run.running_invocations():
                invocation.close(InvocationStatus.FAILED, "interrupted by restart")
            if run.catalog_generation != catalog.generation:
                self.log.warning(
                    "run.recovered_on_new_catalog",
                    run_id=run.id,
                    original=run.catalog_generation,
                    current=catalog.generation,
                )
            run.log("info", "system", "Recovered after restart")
            self.log.info("run.recovered", run_id=run.id, status=run.status.value)

            if run.status == RunStatus.PENDING:
                run.status = RunStatus.ACTIVE
                self._enter_phase(handle, 0)
            self._persist(run)
            waiting = run.status == RunStatus.BLOCKED and run.block_reason == BlockReason.AWAITING_APPROVAL
            if waiting and handle.phase.gate is not None:
                self._start_gate_timer(handle, handle.phase.gate)
            if run.status == RunStatus.ACTIVE:
                self._ensure_driver(handle)
            recovered.append(run)
        return recovered

    async def shutdown(self) -> None:
        """Cancel every task without changing run state; runs stay recoverable."""
        tasks: list[asyncio.Task] = []
        for handle in self._runs.values():
            tasks.extend(handle.skill_tasks)
            for task in (handle.driver, handle.gate_timer):
                if task is not None:
                    tasks.append(task)
        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for handle in self._runs.values():
            handle.skill_tasks.clear()
            if not handle.run.is_terminal:
                self._persist(handle.run)
        self.log.info("engine.shutdown", runs=len(self._runs), cancelled=len(pending))


def _stub_template(run: Run) -> LoopTemplate:
    """Placeholder for a run whose template is no longer loaded."""
    return LoopTemplate(id=run.loop_id, version=run.loop_version, phases=())
