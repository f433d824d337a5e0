from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
import threading
import time
import traceback
from typing import Any, Callable, Iterator

from langgraph.graph import END, StateGraph
from opentelemetry import trace

from awe_roundtable.adapters.base import normalize_provider_name
from awe_roundtable.adapters.supervisor import RunEvent
from awe_roundtable.agents.base import (
    AgentCall,
    DISCUSSION_MODE,
    IMPLEMENTATION_MODE,
    PROPOSAL_MODE,
    STRICT_JSON_MODE,
    TextRunner,
)
from awe_roundtable.agents.coder import CoderResult, run_coder
from awe_roundtable.agents.profiles import RoleProfile, resolve_role_profiles
from awe_roundtable.agents.reviewer import DECISION_CHANGES_REQUESTED, ReviewerResult, run_reviewer
from awe_roundtable.agents.tester import TesterResult, run_tester
from awe_roundtable.command_policy import (
    AllowlistResolution,
    build_tester_blocked_retry_feedback,
    normalize_allowed_prefixes,
    normalize_tester_blocked_policy,
    should_finalize_as_tester_command_blocked,
    should_retry_blocked_commands,
)
from awe_roundtable.command_runner import (
    TestCommandRunner,
    TestRunReport,
    render_test_results_text,
    summarize_test_run,
)
from awe_roundtable.contract import DiscussionContract, build_discussion_contract, contract_from_dict
from awe_roundtable.domain.errors import RunCanceledError, UnsupportedProviderError
from awe_roundtable.domain.events import (
    AgentFinished,
    AgentProgress,
    AgentStarted,
    DomainEvent,
    RoundTransition,
    RunEventType,
)
from awe_roundtable.domain.models import (
    FSM_STATES,
    ROLES,
    FinalOutcome,
    FsmState,
    RoundRecord,
    StateEvent,
    WorkflowPhase,
)
from awe_roundtable.live import EventBus, LiveHooks, hooks_subscriber
from awe_roundtable.observability import (
    agent_role_context,
    get_diagnostics_logger,
    get_logger,
    set_round_context,
    set_task_context,
)
from awe_roundtable.storage.artifacts import TaskHandle, TaskStore
from awe_roundtable.text_utils import clip_error_message, clip_tail, sanitize_log_text
from awe_roundtable.timeline import build_timeline

_log = get_logger('awe_roundtable.workflow')
_diagnostics = get_diagnostics_logger()

CODER_FAILED_OUTCOME = 'coder_runtime_error'
_GATE_PRESERVED_KEYS = (
    'provider',
    'model',
    'role_providers',
    'role_profiles',
    'tester_blocked_policy',
    'allowed_test_commands',
    'allowlist_rejected',
    'allowlist_used_fallback',
    'max_iterations',
)
_STDERR_TAIL_CHARS = 500
_PROGRESS_EVENT_TYPES = frozenset({
    RunEventType.RUN_SPAWNED.value,
    RunEventType.ASSISTANT_TEXT.value,
    RunEventType.RUN_TERMINATING.value,
    RunEventType.RUN_COMPLETED.value,
    RunEventType.RUN_FAILED.value,
})


@dataclass(frozen=True)
class RoleBinding:
    provider: str
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'provider': self.provider,
            'model': self.model,
            'model_id': f'{self.provider}:{self.model or "default"}',
        }


@dataclass
class TaskOptions:
    provider: str = 'claude'
    model: str | None = None
    role_providers: dict[str, Any] = field(default_factory=dict)
    role_profiles: dict[str, Any] | None = None
    max_iterations: int = 3
    allowed_test_commands: list[str] | None = None
    tester_blocked_policy: str = 'strict'
    execution_mode: str = WorkflowPhase.PROPOSAL.value
    operator_confirmed: bool = False
    abort_signal: threading.Event | None = None
    task_id: str | None = None
    task_dir: str | None = None
    live_hooks: LiveHooks | None = None
    cwd: str | None = None


@dataclass
class _RunContext:
    task: TaskHandle
    prompt: str
    options: TaskOptions
    phase: str
    resumed: bool
    gate_blocked: bool
    bindings: dict[str, RoleBinding]
    profiles: dict[str, RoleProfile]
    allowlist: AllowlistResolution
    policy: str
    abort_signal: threading.Event
    rounds: list[dict[str, Any]]
    state_events: list[dict[str, Any]]
    must_fix: list[str]
    final_outcome: str
    contract: DiscussionContract | None
    current_state: str | None
    round_no: int | None = None
    iterations_used: int = 0
    current_round: RoundRecord | None = None
    coder: CoderResult | None = None
    reviewer: ReviewerResult | None = None
    finalized: bool = False
    summary: dict[str, Any] | None = None
    prior_summary: dict[str, Any] = field(default_factory=dict)

    @property
    def task_id(self) -> str:
        return self.task.task_id


def _now_ms() -> int:
    return int(time.time() * 1000)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_phase(value: str | None) -> str:
    text = str(value or '').strip().lower()
    if text == WorkflowPhase.IMPLEMENTATION.value:
        return WorkflowPhase.IMPLEMENTATION.value
    return WorkflowPhase.PROPOSAL.value


class WorkflowCoordinator:
    """Drives coder, reviewer and tester through the intake-to-finalize FSM.

    ``run_task`` always finalizes: every path, including cancellation and
    unexpected errors, ends in exactly one transition to ``finalize`` and a
    written summary and timeline.
    """

    def __init__(
        self,
        *,
        runner: TextRunner,
        command_runner: TestCommandRunner,
        store: TaskStore,
        event_bus: EventBus | None = None,
        participant_timeout_seconds: int = 600,
        command_timeout_seconds: int = 120,
        command_batch_timeout_seconds: int | None = None,
        workflow_backend: str = 'langgraph',
    ):
        self.runner = runner
        self.command_runner = command_runner
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.participant_timeout_seconds = int(participant_timeout_seconds)
        self.command_timeout_seconds = int(command_timeout_seconds)
        self.command_batch_timeout_seconds = command_batch_timeout_seconds
        self.workflow_backend = self._normalize_workflow_backend(workflow_backend)
        self._handlers: dict[str, Callable[[_RunContext], None]] = {
            FsmState.INTAKE.value: self._node_intake,
            FsmState.PLAN.value: self._node_plan,
            FsmState.BUILD.value: self._node_build,
            FsmState.REVIEW.value: self._node_review,
            FsmState.TEST.value: self._node_test,
            FsmState.ITERATE.value: self._node_iterate,
            FsmState.FINALIZE.value: self._node_finalize,
        }
        self._langgraph_compiled = None

    def run_task(self, prompt: str, options: TaskOptions | None = None) -> dict[str, Any]:
        """Run one invocation for a new or existing task and return its summary.

        Invalid input (empty prompt, bad task id, ``max_iterations < 1``)
        raises before any state is touched; after that nothing escapes.
        """
        opts = options or TaskOptions()
        ctx = self._prepare(prompt, opts)
        set_task_context(task_id=ctx.task_id, round_no=None)
        _log.info(
            'workflow_started task_id=%s phase=%s resumed=%s backend=%s',
            ctx.task_id,
            ctx.phase,
            ctx.resumed,
            self.workflow_backend,
        )
        unsubscribe = None
        if opts.live_hooks is not None:
            unsubscribe = self.event_bus.subscribe(hooks_subscriber(ctx.task_id, opts.live_hooks))
        try:
            try:
                self._execute(ctx)
            except RunCanceledError:
                self._finalize_canceled(ctx)
            except Exception as exc:
                self._finalize_error(ctx, exc)
        finally:
            if unsubscribe is not None:
                unsubscribe()
        _log.info('workflow_finished task_id=%s outcome=%s', ctx.task_id, ctx.final_outcome)
        return ctx.summary or self._build_summary(ctx)

    # -- setup ---------------------------------------------------------------

    def _prepare(self, prompt: str, options: TaskOptions) -> _RunContext:
        text = str(prompt or '').strip()
        if not text:
            raise ValueError('prompt is required')
        if int(options.max_iterations) < 1:
            raise ValueError('max_iterations must be >= 1')

        prior: dict[str, Any] | None = None
        if options.task_id and self.store.has_task(options.task_id):
            task = self.store.open_task(options.task_id, task_dir=options.task_dir)
            prior = self.store.read_summary(task.task_id)
        else:
            task = self.store.create_task(text, task_id=options.task_id)
        resumed = prior is not None
        if resumed:
            self.store.append_prompt(task.task_id, text, heading='Follow-up')

        awaiting = bool(prior and prior.get('awaiting_operator_confirm'))
        phase = WorkflowPhase.IMPLEMENTATION.value if options.operator_confirmed else _normalize_phase(
            options.execution_mode
        )
        gate_blocked = awaiting and phase == WorkflowPhase.IMPLEMENTATION.value and not options.operator_confirmed
        if gate_blocked:
            phase = WorkflowPhase.PROPOSAL.value

        prior = prior or {}
        state_events = [dict(item) for item in prior.get('state_events') or []]
        if gate_blocked:
            final_outcome = str(prior.get('final_outcome') or FinalOutcome.AWAITING_OPERATOR_CONFIRM.value)
        elif phase == WorkflowPhase.IMPLEMENTATION.value:
            final_outcome = FinalOutcome.MAX_ITERATIONS_REACHED.value
        else:
            final_outcome = FinalOutcome.AWAITING_OPERATOR_CONFIRM.value

        return _RunContext(
            task=task,
            prompt=text,
            options=options,
            phase=phase,
            resumed=resumed,
            gate_blocked=gate_blocked,
            bindings=self._resolve_bindings(options),
            profiles=resolve_role_profiles(options.role_profiles),
            allowlist=normalize_allowed_prefixes(options.allowed_test_commands),
            policy=normalize_tester_blocked_policy(options.tester_blocked_policy),
            abort_signal=options.abort_signal or threading.Event(),
            rounds=[dict(item) for item in prior.get('rounds') or []],
            state_events=state_events,
            must_fix=[str(item) for item in prior.get('unresolved_must_fix') or []],
            final_outcome=final_outcome,
            contract=contract_from_dict(prior.get('discussion_contract')),
            current_state=str(state_events[-1].get('to')) if state_events else None,
            prior_summary=prior,
        )

    @staticmethod
    def _resolve_bindings(options: TaskOptions) -> dict[str, RoleBinding]:
        default = RoleBinding(provider=normalize_provider_name(options.provider), model=options.model)
        bindings: dict[str, RoleBinding] = {}
        for role in ROLES:
            raw = (options.role_providers or {}).get(role)
            if isinstance(raw, RoleBinding):
                bindings[role] = RoleBinding(provider=normalize_provider_name(raw.provider), model=raw.model)
            elif isinstance(raw, dict) and raw.get('provider'):
                bindings[role] = RoleBinding(
                    provider=normalize_provider_name(raw.get('provider')),
                    model=raw.get('model') or None,
                )
            else:
                bindings[role] = default
        return bindings

    # -- execution -----------------------------------------------------------

    def _execute(self, ctx: _RunContext) -> None:
        if self.workflow_backend == 'langgraph':
            graph = self._get_langgraph()
            limit = 10 + 5 * int(ctx.options.max_iterations)
            graph.invoke({'ctx': ctx}, config={'recursion_limit': limit})
            return
        node = FsmState.INTAKE.value
        while True:
            self._handlers[node](ctx)
            if node == FsmState.FINALIZE.value:
                return
            node = str(ctx.current_state)

    def _get_langgraph(self):
        if self._langgraph_compiled is not None:
            return self._langgraph_compiled
        graph = StateGraph(dict)
        for name in FSM_STATES:
            graph.add_node(name, self._graph_node(name))
        graph.set_entry_point(FsmState.INTAKE.value)
        routes = {name: name for name in FSM_STATES}
        for name in FSM_STATES:
            if name == FsmState.FINALIZE.value:
                graph.add_edge(name, END)
            else:
                graph.add_conditional_edges(name, self._route, routes)
        self._langgraph_compiled = graph.compile()
        return self._langgraph_compiled

    def _graph_node(self, name: str) -> Callable[[dict], dict]:
        handler = self._handlers[name]

        def _node(state: dict) -> dict:
            ctx = state['ctx']
            handler(ctx)
            return {'ctx': ctx}

        return _node

    @staticmethod
    def _route(state: dict) -> str:
        # Each node transitions before returning, so the current state names the next node.
        return str(state['ctx'].current_state)

    # -- nodes ---------------------------------------------------------------

    def _node_intake(self, ctx: _RunContext) -> None:
        reason = 'task_followup_received' if ctx.resumed else 'task_received'
        self._transition(ctx, FsmState.INTAKE, reason)
        self._check_abort(ctx)
        if ctx.gate_blocked:
            _log.info('operator_confirmation_required task_id=%s', ctx.task_id)
            self._transition(ctx, FsmState.FINALIZE, 'operator_confirmation_required')
            return
        if ctx.phase == WorkflowPhase.PROPOSAL.value:
            self._start_round(ctx)
            self._transition(ctx, FsmState.PLAN, 'draft_proposal', round_no=ctx.round_no)
            return
        self._transition(ctx, FsmState.PLAN, 'implementation_confirmed')

    def _node_plan(self, ctx: _RunContext) -> None:
        if ctx.phase == WorkflowPhase.IMPLEMENTATION.value:
            self._start_round(ctx)
            self._transition(ctx, FsmState.BUILD, 'start_coder', round_no=ctx.round_no)
            return
        self._check_abort(ctx)
        coder = self._call_coder(ctx, mode=PROPOSAL_MODE)
        if not coder.ok:
            self._coder_failed(ctx, coder)
            return
        ctx.coder = coder
        self._transition(ctx, FsmState.REVIEW, 'roundtable_reviewer', round_no=ctx.round_no)

    def _node_build(self, ctx: _RunContext) -> None:
        self._check_abort(ctx)
        coder = self._call_coder(ctx, mode=IMPLEMENTATION_MODE)
        if not coder.ok:
            self._coder_failed(ctx, coder)
            return
        ctx.coder = coder
        self._transition(ctx, FsmState.REVIEW, 'start_reviewer', round_no=ctx.round_no)

    def _node_review(self, ctx: _RunContext) -> None:
        self._check_abort(ctx)
        proposal = ctx.phase == WorkflowPhase.PROPOSAL.value
        reviewer = self._call_reviewer(ctx, mode=DISCUSSION_MODE if proposal else STRICT_JSON_MODE)
        ctx.reviewer = reviewer
        if proposal:
            self._transition(ctx, FsmState.TEST, 'roundtable_tester', round_no=ctx.round_no)
            return

        record = self._require_round(ctx)
        if not reviewer.ok:
            outcome = reviewer.error_class or FinalOutcome.REVIEW_SCHEMA_INVALID.value
            ctx.must_fix = reviewer.must_fix
            self._close_round(ctx, outcome)
            self._transition(ctx, FsmState.FINALIZE, 'reviewer_output_invalid', round_no=record.round)
            return
        if reviewer.decision == DECISION_CHANGES_REQUESTED:
            ctx.must_fix = reviewer.must_fix
            self._close_round(ctx, FinalOutcome.REVIEW_CHANGES_REQUESTED.value)
            self._transition(ctx, FsmState.ITERATE, 'review_changes_requested', round_no=record.round)
            return
        self._transition(ctx, FsmState.TEST, 'review_approved', round_no=record.round)

    def _node_test(self, ctx: _RunContext) -> None:
        if ctx.phase == WorkflowPhase.PROPOSAL.value:
            self._proposal_tester(ctx)
            return
        self._implementation_tester(ctx)

    def _node_iterate(self, ctx: _RunContext) -> None:
        if ctx.iterations_used < int(ctx.options.max_iterations):
            self._check_abort(ctx)
            self._start_round(ctx)
            self._transition(ctx, FsmState.BUILD, 'start_coder', round_no=ctx.round_no)
            return
        last_outcome = ctx.final_outcome
        ctx.final_outcome = FinalOutcome.MAX_ITERATIONS_REACHED.value
        self._transition(
            ctx,
            FsmState.FINALIZE,
            'max_iterations_reached',
            extra={'last_round_outcome': last_outcome},
        )

    def _node_finalize(self, ctx: _RunContext) -> None:
        self._persist(ctx)

    # -- stage helpers -------------------------------------------------------

    def _proposal_tester(self, ctx: _RunContext) -> None:
        self._check_abort(ctx)
        tester = self._call_tester(ctx, mode=DISCUSSION_MODE)
        record = self._require_round(ctx)
        record.tester = tester.to_record()
        self._write_artifact(ctx, 'tester_raw.md', tester.text)

        coder_text = ctx.coder.text if ctx.coder else ''
        reviewer_text = ctx.reviewer.text if ctx.reviewer else ''
        contract = build_discussion_contract(
            source_round=record.round,
            goal=ctx.prompt,
            coder_text=coder_text,
            reviewer_text=reviewer_text,
            tester_text=tester.text,
        )
        if contract is not None:
            ctx.contract = contract
            self._write_artifact(ctx, 'discussion_contract.json', contract.to_dict())
        ctx.must_fix = []
        self._close_round(ctx, FinalOutcome.AWAITING_OPERATOR_CONFIRM.value)
        self._transition(ctx, FsmState.FINALIZE, 'await_operator_confirm', round_no=record.round)

    def _implementation_tester(self, ctx: _RunContext) -> None:
        record = self._require_round(ctx)
        self._check_abort(ctx)
        tester = self._call_tester(ctx, mode=STRICT_JSON_MODE)
        if not tester.ok:
            self._tester_invalid(ctx, tester, attempts=0)
            return
        self._check_abort(ctx)
        report = self._run_test_commands(ctx, tester.commands)
        summary = summarize_test_run(report)

        attempts = 0
        initial_blocked: list[str] = []
        if should_retry_blocked_commands(ctx.policy, summary, attempts):
            attempts = 1
            initial_blocked = [item.command for item in report.blocked]
            _log.info(
                'tester_blocked_retry task_id=%s round=%s blocked=%d',
                ctx.task_id,
                record.round,
                len(initial_blocked),
            )
            self._write_artifact(ctx, 'tester_raw.initial.md', tester.text)
            self._write_artifact(ctx, 'test-results.initial.json', report.to_dict())
            feedback = build_tester_blocked_retry_feedback(initial_blocked, ctx.allowlist.prefixes)
            self._check_abort(ctx)
            tester = self._call_tester(ctx, mode=STRICT_JSON_MODE, retry_feedback=feedback)
            if not tester.ok:
                self._tester_invalid(ctx, tester, attempts=attempts)
                return
            self._check_abort(ctx)
            report = self._run_test_commands(ctx, tester.commands)
            summary = summarize_test_run(report)
        self._check_abort(ctx)

        record.tester = {
            **tester.to_record(),
            **summary,
            'attempts': attempts,
            'retry_used': attempts > 0,
            'initial_blocked_commands': initial_blocked,
        }
        self._write_artifact(ctx, 'tester_raw.md', tester.text)
        self._write_artifact(ctx, 'tester.json', tester.spec_dict())
        self._write_artifact(ctx, 'tester_meta.json', record.tester)
        self._write_artifact(ctx, 'test-results.json', report.to_dict())
        self._write_artifact(ctx, 'test-results.txt', render_test_results_text(report))

        if should_finalize_as_tester_command_blocked(summary):
            blocked = [item.command for item in report.blocked]
            ctx.must_fix = [
                f'Tester generated blocked command(s): {"; ".join(blocked)}',
                f'Only allowed: {", ".join(ctx.allowlist.prefixes)}',
            ]
            self._close_round(ctx, FinalOutcome.TESTER_COMMAND_BLOCKED.value)
            self._transition(ctx, FsmState.FINALIZE, 'tester_command_blocked', round_no=record.round)
            return

        if report.all_passed:
            ctx.must_fix = []
            self._close_round(ctx, FinalOutcome.APPROVED.value)
            self._transition(ctx, FsmState.FINALIZE, 'tests_passed', round_no=record.round)
            return

        failure = report.first_failure
        failed_command = failure.command if failure is not None else ''
        error_output = ''
        if failure is not None:
            error_output = sanitize_log_text(failure.stderr or failure.stdout).strip()
        ctx.must_fix = [
            'Tests failed in tester stage',
            f'Failed command: {failed_command}',
            f'Error output: {clip_tail(error_output, max_chars=_STDERR_TAIL_CHARS)}',
        ]
        record.failed_command = failed_command
        previous = ctx.rounds[-1] if ctx.rounds else None
        if previous is not None and failed_command and previous.get('failed_command') == failed_command:
            self._close_round(ctx, FinalOutcome.REPEATED_TEST_FAILURE.value)
            self._transition(ctx, FsmState.FINALIZE, 'repeated_test_failure', round_no=record.round)
            return
        self._close_round(ctx, FinalOutcome.TEST_FAILED.value)
        self._transition(ctx, FsmState.ITERATE, 'tests_failed', round_no=record.round)

    def _tester_invalid(self, ctx: _RunContext, tester: TesterResult, *, attempts: int) -> None:
        record = self._require_round(ctx)
        record.tester = {**tester.to_record(), 'attempts': attempts, 'retry_used': attempts > 0}
        self._write_artifact(ctx, 'tester_raw.md', tester.text)
        self._write_artifact(ctx, 'tester_meta.json', record.tester)
        if tester.error_class:
            ctx.must_fix = [f'Tester provider failed: {tester.error_class}']
            self._close_round(ctx, tester.error_class)
            self._transition(ctx, FsmState.FINALIZE, 'tester_provider_error', round_no=record.round)
            return
        ctx.must_fix = [f'Tester output schema invalid: {tester.parse_error}']
        self._close_round(ctx, FinalOutcome.TESTER_SCHEMA_INVALID.value)
        self._transition(ctx, FsmState.ITERATE, 'tester_schema_invalid', round_no=record.round)

    def _coder_failed(self, ctx: _RunContext, coder: CoderResult) -> None:
        record = self._require_round(ctx)
        outcome = coder.error_class or CODER_FAILED_OUTCOME
        detail = 'empty response' if not coder.error_class else coder.error_class
        ctx.must_fix = [f'Coder did not produce usable output ({detail})']
        self._close_round(ctx, outcome)
        self._transition(ctx, FsmState.FINALIZE, 'coder_failed', round_no=record.round)

    def _run_test_commands(self, ctx: _RunContext, commands: tuple[str, ...]) -> TestRunReport:
        with self._span('workflow.test_commands', {'task_id': ctx.task_id, 'round': ctx.round_no}):
            report = self.command_runner.run_commands(
                list(commands),
                allowed_prefixes=ctx.allowlist.prefixes,
                stop_on_failure=True,
                abort_signal=ctx.abort_signal,
                cwd=ctx.options.cwd,
                timeout_seconds=self.command_timeout_seconds,
                batch_timeout_seconds=self.command_batch_timeout_seconds,
            )
        passed = sum(1 for item in report.runnable if item.ok)
        self._publish(AgentProgress(
            task_id=ctx.task_id,
            round=ctx.round_no,
            role='tester',
            event_type='test.commands.completed',
            preview=f'{passed}/{len(report.runnable)} runnable passed, {len(report.blocked)} blocked',
        ))
        return report

    # -- agents --------------------------------------------------------------

    def _call_coder(self, ctx: _RunContext, *, mode: str) -> CoderResult:
        contract = ctx.contract if mode == IMPLEMENTATION_MODE else None
        result = self._invoke_agent(
            ctx,
            role='coder',
            mode=mode,
            fn=lambda call: run_coder(
                self.runner,
                call,
                task=ctx.prompt,
                mode=mode,
                round_no=int(ctx.round_no or 0),
                must_fix=ctx.must_fix,
                contract=contract,
            ),
        )
        record = self._require_round(ctx)
        record.coder = result.to_record()
        self._write_artifact(ctx, 'coder_output.md', result.text)
        self._write_artifact(ctx, 'coder_run.json', {**result.run.to_dict(), 'mode': mode})
        self._copy_run(ctx, result.run.run_dir, prefix='coder')
        return result

    def _call_reviewer(self, ctx: _RunContext, *, mode: str) -> ReviewerResult:
        coder_text = ctx.coder.text if ctx.coder else ''
        contract = ctx.contract if mode == STRICT_JSON_MODE else None
        result = self._invoke_agent(
            ctx,
            role='reviewer',
            mode=mode,
            fn=lambda call: run_reviewer(
                self.runner,
                call,
                task=ctx.prompt,
                coder_output=coder_text,
                mode=mode,
                round_no=int(ctx.round_no or 0),
                contract=contract,
            ),
        )
        record = self._require_round(ctx)
        record.reviewer = result.to_record()
        self._write_artifact(ctx, 'reviewer_raw.md', result.text)
        if mode == STRICT_JSON_MODE:
            self._write_artifact(ctx, 'reviewer.json', result.review)
        self._write_artifact(ctx, 'reviewer_meta.json', {**result.to_record(), 'run': result.run.to_dict()})
        self._copy_run(ctx, result.run.run_dir, prefix='reviewer')
        return result

    def _call_tester(self, ctx: _RunContext, *, mode: str, retry_feedback: str | None = None) -> TesterResult:
        coder_text = ctx.coder.text if ctx.coder else ''
        reviewer_text = ctx.reviewer.text if ctx.reviewer else ''
        result = self._invoke_agent(
            ctx,
            role='tester',
            mode=mode,
            fn=lambda call: run_tester(
                self.runner,
                call,
                task=ctx.prompt,
                coder_output=coder_text,
                reviewer_output=reviewer_text,
                mode=mode,
                round_no=int(ctx.round_no or 0),
                allowed_prefixes=ctx.allowlist.prefixes,
                retry_feedback=retry_feedback,
            ),
        )
        self._copy_run(ctx, result.run.run_dir, prefix='tester-retry' if retry_feedback else 'tester')
        return result

    def _invoke_agent(self, ctx: _RunContext, *, role: str, mode: str, fn: Callable[[AgentCall], Any]) -> Any:
        binding = ctx.bindings[role]
        self._publish(AgentStarted(
            task_id=ctx.task_id,
            round=ctx.round_no,
            role=role,
            provider=binding.provider,
            model=binding.model,
            mode=mode,
        ))
        ok = False
        run_id = None
        error_class = None
        try:
            with agent_role_context(role), self._span(f'workflow.{role}', {
                'task_id': ctx.task_id,
                'round': ctx.round_no,
                'provider': binding.provider,
                'mode': mode,
            }):
                result = fn(self._agent_call(ctx, role))
            ok = bool(result.ok)
            run_id = result.run.run_id
            error_class = result.error_class
            return result
        except RunCanceledError:
            error_class = FinalOutcome.CANCELED.value
            raise
        finally:
            self._publish(AgentFinished(
                task_id=ctx.task_id,
                round=ctx.round_no,
                role=role,
                ok=ok,
                run_id=run_id,
                error_class=error_class,
            ))

    def _agent_call(self, ctx: _RunContext, role: str) -> AgentCall:
        binding = ctx.bindings[role]
        round_no = ctx.round_no

        def _on_event(event: RunEvent) -> None:
            if event.type not in _PROGRESS_EVENT_TYPES:
                return
            self._publish(AgentProgress(
                task_id=ctx.task_id,
                round=round_no,
                role=role,
                event_type=event.type,
                run_id=event.meta.get('run_id'),
                preview=str(event.data.get('text') or event.data.get('reason') or ''),
            ))

        return AgentCall(
            provider=binding.provider,
            model=binding.model,
            timeout_ms=self.participant_timeout_seconds * 1000,
            abort_signal=ctx.abort_signal,
            event_meta={'task_id': ctx.task_id, 'round_id': round_no, 'agent_role': role},
            on_event=_on_event,
            role_profiles=ctx.profiles,
        )

    # -- bookkeeping ---------------------------------------------------------

    def _start_round(self, ctx: _RunContext) -> None:
        used = [int(item.get('round') or 0) for item in ctx.rounds]
        ctx.round_no = max(used, default=0) + 1
        ctx.current_round = RoundRecord(round=ctx.round_no, phase=ctx.phase)
        ctx.coder = None
        ctx.reviewer = None
        if ctx.phase == WorkflowPhase.IMPLEMENTATION.value:
            ctx.iterations_used += 1
        set_round_context(ctx.round_no)

    @staticmethod
    def _require_round(ctx: _RunContext) -> RoundRecord:
        if ctx.current_round is None:
            raise RuntimeError('no round in progress')
        return ctx.current_round

    def _close_round(self, ctx: _RunContext, outcome: str, *, canceled: bool = False) -> None:
        record = self._require_round(ctx)
        record.round_outcome = outcome
        record.canceled = canceled
        ctx.final_outcome = outcome
        ctx.rounds.append(record.to_dict())
        ctx.current_round = None

    def _transition(
        self,
        ctx: _RunContext,
        to_state: FsmState,
        reason: str,
        *,
        round_no: int | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        if ctx.finalized:
            raise RuntimeError('task already finalized in this run')
        last_ts = int(ctx.state_events[-1].get('ts') or 0) if ctx.state_events else 0
        event = StateEvent(
            ts=max(last_ts, _now_ms()),
            from_state=ctx.current_state,
            to=to_state.value,
            reason=reason,
            round=round_no,
            extra=dict(extra or {}),
        ).to_dict()
        ctx.state_events.append(event)
        ctx.current_state = to_state.value
        if to_state is FsmState.FINALIZE:
            ctx.finalized = True
        self.store.append_state_event(ctx.task_id, {'type': 'fsm.transition', 'task_id': ctx.task_id, **event})
        _log.info(
            'fsm_transition task_id=%s from=%s to=%s reason=%s round=%s',
            ctx.task_id,
            event['from'],
            event['to'],
            reason,
            round_no,
        )
        self._publish(RoundTransition(
            task_id=ctx.task_id,
            round=round_no,
            from_state=event['from'],
            to_state=event['to'],
            reason=reason,
            ts=event['ts'],
        ))

    def _finalize_canceled(self, ctx: _RunContext) -> None:
        _log.info('workflow_canceled task_id=%s round=%s', ctx.task_id, ctx.round_no)
        if ctx.current_round is not None:
            self._close_round(ctx, FinalOutcome.CANCELED.value, canceled=True)
        ctx.final_outcome = FinalOutcome.CANCELED.value
        ctx.must_fix = []
        self._finish_after_failure(ctx, 'aborted_by_operator')

    def _finalize_error(self, ctx: _RunContext, exc: Exception) -> None:
        outcome = (
            FinalOutcome.PROVIDER_UNSUPPORTED.value
            if isinstance(exc, UnsupportedProviderError)
            else FinalOutcome.INTERNAL_ERROR.value
        )
        _diagnostics.error('workflow_unhandled_error task_id=%s outcome=%s', ctx.task_id, outcome, exc_info=exc)
        trace_text = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self.store.append_diagnostic(ctx.task_id, trace_text)
        if ctx.current_round is not None:
            self._close_round(ctx, outcome)
        ctx.final_outcome = outcome
        ctx.must_fix = [f'{outcome}: {clip_error_message(str(exc) or type(exc).__name__)}']
        self._finish_after_failure(ctx, outcome)

    def _finish_after_failure(self, ctx: _RunContext, reason: str) -> None:
        if not ctx.finalized:
            self._transition(ctx, FsmState.FINALIZE, reason, round_no=ctx.round_no)
        self._persist(ctx)

    def _persist(self, ctx: _RunContext) -> None:
        summary = self._build_summary(ctx)
        self.store.write_summary(ctx.task_id, summary)
        self.store.write_timeline(ctx.task_id, build_timeline(ctx.task_id, ctx.state_events))
        ctx.summary = summary

    def _build_summary(self, ctx: _RunContext) -> dict[str, Any]:
        default = RoleBinding(provider=normalize_provider_name(ctx.options.provider), model=ctx.options.model)
        summary = {
            'task_id': ctx.task_id,
            'task_dir': ctx.task.task_dir,
            'timeline_file': ctx.task.timeline_file,
            'provider': default.provider,
            'model': default.model,
            'role_providers': {role: binding.to_dict() for role, binding in ctx.bindings.items()},
            'role_profiles': {role: profile.to_dict() for role, profile in ctx.profiles.items()},
            'final_status': ctx.current_state,
            'final_outcome': ctx.final_outcome,
            'awaiting_operator_confirm': ctx.final_outcome == FinalOutcome.AWAITING_OPERATOR_CONFIRM.value,
            'workflow_phase': ctx.phase,
            'tester_blocked_policy': ctx.policy,
            'allowed_test_commands': list(ctx.allowlist.prefixes),
            'allowlist_rejected': [dict(item) for item in ctx.allowlist.rejected],
            'allowlist_used_fallback': ctx.allowlist.used_fallback,
            'max_iterations': int(ctx.options.max_iterations),
            'fsm_states': list(FSM_STATES),
            'state_events': list(ctx.state_events),
            'rounds': list(ctx.rounds),
            'unresolved_must_fix': list(ctx.must_fix),
            'discussion_contract': ctx.contract.to_dict() if ctx.contract is not None else None,
            'updated_at': _utc_now_iso(),
        }
        if ctx.gate_blocked:
            # The stored proposal settings are what a later confirm resumes with.
            for key in _GATE_PRESERVED_KEYS:
                if key in ctx.prior_summary:
                    summary[key] = ctx.prior_summary[key]
        return summary

    def _write_artifact(self, ctx: _RunContext, name: str, payload: Any) -> None:
        round_no = ctx.round_no
        if round_no is None:
            return
        self.store.append_round_artifact(ctx.task_id, round_no, name, payload)

    def _copy_run(self, ctx: _RunContext, run_dir, *, prefix: str) -> None:
        if ctx.round_no is None:
            return
        self.store.copy_run_artifacts(ctx.task_id, ctx.round_no, run_dir, prefix=prefix)

    def _publish(self, event: DomainEvent) -> None:
        self.event_bus.publish(event)

    @staticmethod
    def _check_abort(ctx: _RunContext) -> None:
        if ctx.abort_signal.is_set():
            raise RunCanceledError('aborted by operator')

    @staticmethod
    @contextmanager
    def _span(name: str, attributes: dict[str, Any]) -> Iterator[None]:
        tracer = trace.get_tracer('awe_roundtable.workflow')
        clean = {key: value for key, value in attributes.items() if value is not None}
        with tracer.start_as_current_span(name, attributes=clean):
            yield

    @staticmethod
    def _normalize_workflow_backend(value: str | None) -> str:
        backend = str(value or '').strip().lower()
        return 'classic' if backend == 'classic' else 'langgraph'


__all__ = ['RoleBinding', 'TaskOptions', 'WorkflowCoordinator']
