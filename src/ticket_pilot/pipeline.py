from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence

from langgraph.graph import END, StateGraph

from ticket_pilot.analysis.compilation import CompilationAnalyzer, is_compilation_failure
from ticket_pilot.domain.events import EventType
from ticket_pilot.domain.gate import UNIT_TEST_GATE_FEEDBACK, evaluate_unit_test_gate
from ticket_pilot.domain.models import (
    DesignProposal,
    EditPayload,
    RepoSnapshot,
    RunInput,
    RunRecord,
    TestExecutionReport,
    TrackerTask,
)
from ticket_pilot.errors import GateExhaustedError, ResponseFormatError, TicketPilotError
from ticket_pilot.instructions import InstructionLibrary
from ticket_pilot.locks import REPOSITORY_LOCKS, RepositoryLocks
from ticket_pilot.observability import get_logger, get_tracer, stage_context
from ticket_pilot.prompts import (
    INITIAL_DRAFT_FEEDBACK,
    build_edit_prompt,
    build_preview_diff,
    build_proposal_prompt,
    coerce_edit_payload,
    coerce_proposal,
)
from ticket_pilot.response_parsing import ParseFailed, interpret_response, parse_json_object
from ticket_pilot.tools.grounding import build_grounding_checklist
from ticket_pilot.tools.repo_scan import write_file
from ticket_pilot.tools.vcs import build_branch_name

_log = get_logger('ticket_pilot.pipeline')

WORKFLOW_BACKENDS = ('langgraph', 'classic')
STAGED_REUSE_SUMMARY = 'Applied previously staged draft edits after approval.'
STAGED_REUSE_PR_DESCRIPTION = 'Automated edits approved by reviewer.'
DRY_RUN_SUFFIX = '\n\nDry-run mode is enabled. Review diff and manually commit/push/create MR.'
VERIFICATION_ERROR_NOTE = 'Verification could not stage the candidate edits.'

StageState = Mapping[str, Any]
EventSink = Callable[[str, EventType, dict], None]


@dataclass(frozen=True)
class Stage:
    name: str
    run: Callable[[StageState], dict[str, Any] | None]
    guard: Callable[[StageState], bool] | None = None


class StagePipeline:
    """Run a fixed, linear list of stages over an accumulating state.

    Every stage sees a read-only view of the state built so far and returns the
    fields it contributes. A stage whose guard returns False is skipped. Any
    exception aborts the sequence.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        *,
        backend: str = 'langgraph',
        on_event: EventSink | None = None,
        tracer_name: str = 'ticket_pilot.pipeline',
    ):
        names = [stage.name for stage in stages]
        if len(set(names)) != len(names):
            raise ValueError(f'duplicate stage names: {names}')
        self.stages = tuple(stages)
        self.backend = self._normalize_backend(backend)
        self.on_event = on_event
        self.tracer = get_tracer(tracer_name)
        self._compiled = None

    @staticmethod
    def _normalize_backend(value: str | None) -> str:
        backend = str(value or '').strip().lower()
        if backend not in WORKFLOW_BACKENDS:
            _log.warning('unknown workflow backend %r; using langgraph', value)
            return 'langgraph'
        return backend

    def execute(self, initial: Mapping[str, Any]) -> dict[str, Any]:
        state = dict(initial)
        if self.backend == 'classic':
            for stage in self.stages:
                state = self._run_stage(stage, state)
            return state
        graph = self._get_langgraph()
        result = graph.invoke(state, config={'recursion_limit': len(self.stages) + 5})
        return dict(result)

    def _get_langgraph(self):
        if self._compiled is not None:
            return self._compiled
        graph = StateGraph(dict)
        previous: str | None = None
        for stage in self.stages:
            graph.add_node(stage.name, self._node_for(stage))
            if previous is None:
                graph.set_entry_point(stage.name)
            else:
                graph.add_edge(previous, stage.name)
            previous = stage.name
        if previous is not None:
            graph.add_edge(previous, END)
        self._compiled = graph.compile()
        return self._compiled

    def _node_for(self, stage: Stage) -> Callable[[dict], dict]:
        def node(state: dict) -> dict:
            # a dict-typed graph replaces its state with the node's return value
            return self._run_stage(stage, state)

        return node

    def _emit(self, state: StageState, event_type: EventType, payload: dict) -> None:
        if self.on_event is not None:
            self.on_event(str(state.get('run_id') or ''), event_type, payload)

    def _run_stage(self, stage: Stage, state: dict[str, Any]) -> dict[str, Any]:
        view = MappingProxyType(dict(state))
        if stage.guard is not None and not stage.guard(view):
            self._emit(view, EventType.STAGE_SKIPPED, {'stage': stage.name})
            return dict(state)
        self._emit(view, EventType.STAGE_STARTED, {'stage': stage.name})
        with stage_context(stage.name), self.tracer.start_as_current_span(
            f'ticket_pilot.stage.{stage.name}',
            attributes={'ticket_pilot.run_id': str(state.get('run_id') or '')},
        ):
            partial = stage.run(view) or {}
        merged = {**state, **partial}
        _log.info('stage_completed run_id=%s stage=%s', state.get('run_id'), stage.name)
        self._emit(view, EventType.STAGE_COMPLETED, {'stage': stage.name, 'fields': sorted(partial)})
        return merged


class RunPipeline:
    """The two stage sequences of a run: drafting up to the review gate, and finalizing after approval."""

    def __init__(
        self,
        *,
        tracker,
        scanner,
        feedback_memory,
        vcs,
        reasoning,
        verifier,
        publisher,
        instructions: InstructionLibrary,
        analyzer: CompilationAnalyzer | None = None,
        on_event: EventSink | None = None,
        on_diff: Callable[[str, str], None] | None = None,
        max_attempts: int = 2,
        backend: str = 'langgraph',
        locks: RepositoryLocks | None = None,
    ):
        self.tracker = tracker
        self.scanner = scanner
        self.feedback_memory = feedback_memory
        self.vcs = vcs
        self.reasoning = reasoning
        self.verifier = verifier
        self.publisher = publisher
        self.instructions = instructions
        self.analyzer = analyzer or CompilationAnalyzer(reasoning.generate_text)
        self.on_event = on_event
        self.on_diff = on_diff
        self.max_attempts = max(1, int(max_attempts))
        self.locks = locks or REPOSITORY_LOCKS
        self.initial = StagePipeline(
            [
                Stage('load_task', self._load_task),
                Stage('scan_repo', self._scan_repo),
                Stage('load_feedback', self._load_feedback),
                Stage('prepare_branch', self._prepare_branch),
                Stage('propose', self._propose),
                Stage('draft_changes', self._draft_changes),
                Stage('verify_changes', self._verify_changes),
                Stage('preview_diff', self._preview_diff),
            ],
            backend=backend,
            on_event=self._emit,
        )
        self.finalize = StagePipeline(
            [
                Stage('resolve_edits', self._resolve_edits),
                Stage('apply_edits', self._apply_edits),
                Stage('compute_diff', self._compute_diff),
                Stage('commit', self._commit, guard=_not_dry_run),
                Stage('push', self._push, guard=_not_dry_run),
                Stage('publish', self._publish, guard=_not_dry_run),
            ],
            backend=backend,
            on_event=self._emit,
        )

    def _emit(self, run_id: str, event_type: EventType, payload: dict) -> None:
        if self.on_event is not None:
            self.on_event(run_id, event_type, payload)

    def run_initial(self, run_id: str, run_input: RunInput) -> dict[str, Any]:
        with self.locks.hold(run_input.repo_path):
            state = self.initial.execute({'run_id': run_id, 'input': run_input})
        return self._record_fields(state)

    @staticmethod
    def _record_fields(state: Mapping[str, Any]) -> dict[str, Any]:
        return {
            'task': state.get('task'),
            'repo': state.get('repo'),
            'proposal': state.get('proposal'),
            'branch_name': state.get('branch_name'),
            'staged_edits': state.get('staged_edits'),
            'test_report': state.get('test_report'),
            'compilation_analysis': state.get('compilation_analysis'),
            'diff_preview': state.get('diff_preview'),
        }

    def run_finalize(self, run: RunRecord, feedback: str | None) -> dict[str, Any]:
        if run.task is None or run.repo is None or run.proposal is None or not run.branch_name:
            raise TicketPilotError('Run is missing proposal context.')
        with self.locks.hold(run.input.repo_path):
            state = self.finalize.execute({
                'run_id': run.run_id,
                'input': run.input,
                'run': run,
                'feedback': (feedback or '').strip(),
            })
        payload: EditPayload = state['edit_payload']
        url = state.get('merge_request_url')
        if run.input.dry_run:
            summary = f'{payload.summary}{DRY_RUN_SUFFIX}'
        else:
            summary = f'{payload.summary}\nMerge request: {url}' if url else payload.summary
        return {
            'summary': summary,
            'changed_files': state.get('changed_files', ()),
            'commit_sha': state.get('commit_sha'),
            'merge_request_url': url,
            'diff': state.get('diff'),
        }

    # first sequence

    def _load_task(self, state: StageState) -> dict:
        run_input: RunInput = state['input']
        return {'task': self.tracker.fetch_task(run_input.tracker, run_input.task_id)}

    def _scan_repo(self, state: StageState) -> dict:
        return {'repo': self.scanner.scan(state['input'].repo_path)}

    def _load_feedback(self, state: StageState) -> dict:
        return {'feedback_bias': self.feedback_memory.summarize_bias(state['input'].repo_path)}

    def _prepare_branch(self, state: StageState) -> dict:
        run_input: RunInput = state['input']
        branch_name = build_branch_name(run_input.task_id)
        self.vcs.create_or_checkout_branch(
            run_input.repo_path, branch_name, run_input.target_branch, dry_run=run_input.dry_run,
        )
        return {'branch_name': branch_name}

    def _propose(self, state: StageState) -> dict:
        repo: RepoSnapshot = state['repo']
        instructions = self.instructions.load_bundle(repo)
        prompt = build_proposal_prompt(
            task=state['task'],
            repo=repo,
            feedback_bias=state['feedback_bias'],
            target_branch=state['input'].target_branch,
            grounding=build_grounding_checklist(repo),
            instructions=instructions,
        )
        proposal = coerce_proposal(parse_json_object(self.reasoning.generate_text(prompt)))
        return {'proposal': proposal, 'instructions': instructions}

    def _draft_changes(self, state: StageState) -> dict:
        payload = self.request_edits(
            run_id=state['run_id'],
            repo_path=state['input'].repo_path,
            task=state['task'],
            repo=state['repo'],
            proposal=state['proposal'],
            feedback=INITIAL_DRAFT_FEEDBACK,
            instructions=state.get('instructions', ''),
        )
        return {'staged_edits': payload.edits, 'draft_summary': payload.summary}

    def _verify_changes(self, state: StageState) -> dict:
        repo: RepoSnapshot = state['repo']
        try:
            report = self.verifier.verify(state['input'].repo_path, repo, state['staged_edits'])
        except OSError as exc:
            _log.exception('verification_io_error run_id=%s', state['run_id'])
            report = TestExecutionReport(
                executed=False,
                success=False,
                failure_cause=str(exc),
                notes=(VERIFICATION_ERROR_NOTE,),
            )
        analysis = self.analyzer.analyze(report, repo) if is_compilation_failure(report) else None
        self._emit(state['run_id'], EventType.VERIFICATION_COMPLETED, {
            'executed': report.executed,
            'success': report.success,
            'command': report.command,
            'overall_line_coverage_percent': report.overall_line_coverage_percent,
            'compilation_failure': analysis is not None,
        })
        return {'test_report': report, 'compilation_analysis': analysis}

    def _preview_diff(self, state: StageState) -> dict:
        return {'diff_preview': build_preview_diff(state['input'].repo_path, state['staged_edits'])}

    # retry loop

    def request_edits(
        self,
        *,
        run_id: str,
        repo_path: str,
        task: TrackerTask,
        repo: RepoSnapshot,
        proposal: DesignProposal,
        feedback: str | None,
        instructions: str = '',
    ) -> EditPayload:
        """Ask for a candidate edit set until one passes the unit-test gate.

        Unparseable responses and gate failures consume an attempt; the error of
        the final attempt is raised once attempts run out.
        """
        current_feedback = feedback
        last_error: TicketPilotError | None = None
        for attempt in range(1, self.max_attempts + 1):
            prompt = build_edit_prompt(
                repo_path=repo_path,
                task=task,
                repo=repo,
                proposal=proposal,
                feedback=current_feedback,
                instructions=instructions,
            )
            result = interpret_response(self.reasoning.generate_text(prompt))
            if isinstance(result, ParseFailed):
                last_error = ResponseFormatError(
                    f'reasoning service response is not valid JSON ({result.reason}): {result.preview}',
                    preview=result.preview,
                )
                self._emit(run_id, EventType.RESPONSE_REJECTED, {
                    'attempt': attempt, 'reason': result.reason, 'preview': result.preview,
                })
                continue
            try:
                payload = coerce_edit_payload(result.value, repo_path)
            except ResponseFormatError as exc:
                last_error = exc
                self._emit(run_id, EventType.RESPONSE_REJECTED, {
                    'attempt': attempt, 'reason': str(exc), 'preview': exc.preview,
                })
                continue
            outcome = evaluate_unit_test_gate(payload.edits, repo)
            if outcome.passed:
                self._emit(run_id, EventType.GATE_PASSED, {
                    'attempt': attempt, 'reason': outcome.reason, 'edits': len(payload.edits),
                })
                return payload
            _log.info('gate_failed run_id=%s attempt=%d reason=%s', run_id, attempt, outcome.reason)
            self._emit(run_id, EventType.GATE_FAILED, {
                'attempt': attempt,
                'reason': outcome.reason,
                'source_paths': list(outcome.source_paths),
            })
            last_error = GateExhaustedError(
                f'Unit-test gate failed after {attempt} attempt(s): {outcome.reason}',
                reason=outcome.reason,
                attempts=attempt,
            )
            if UNIT_TEST_GATE_FEEDBACK not in (current_feedback or ''):
                current_feedback = '\n\n'.join(part for part in (current_feedback, UNIT_TEST_GATE_FEEDBACK) if part)
        assert last_error is not None
        raise last_error

    # finalize sequence

    def _resolve_edits(self, state: StageState) -> dict:
        run: RunRecord = state['run']
        feedback = state['feedback']
        staged = tuple(run.staged_edits or ())
        if staged and not feedback:
            outcome = evaluate_unit_test_gate(staged, run.repo)
            if outcome.passed:
                self._emit(run.run_id, EventType.STAGED_EDITS_REUSED, {'edits': len(staged)})
                return {
                    'edit_payload': EditPayload(
                        edits=staged,
                        summary=STAGED_REUSE_SUMMARY,
                        commit_title=run.proposal.commit_title or None,
                        pr_description=STAGED_REUSE_PR_DESCRIPTION,
                    )
                }
            _log.info('staged_edits_rejected run_id=%s reason=%s', run.run_id, outcome.reason)
        payload = self.request_edits(
            run_id=run.run_id,
            repo_path=run.input.repo_path,
            task=run.task,
            repo=run.repo,
            proposal=run.proposal,
            feedback=feedback or None,
            instructions=self.instructions.load_bundle(run.repo),
        )
        return {'edit_payload': payload}

    def _apply_edits(self, state: StageState) -> dict:
        payload: EditPayload = state['edit_payload']
        repo_path = state['input'].repo_path
        changed: list[str] = []
        for edit in payload.edits:
            write_file(repo_path, edit.path, edit.content)
            changed.append(edit.path)
        _log.info('edits_applied run_id=%s files=%d', state['run_id'], len(changed))
        return {'changed_files': tuple(changed)}

    def _compute_diff(self, state: StageState) -> dict:
        diff = self.vcs.get_diff(state['input'].repo_path)
        if self.on_diff is not None:
            self.on_diff(state['run_id'], diff)
        return {'diff': diff}

    def _commit(self, state: StageState) -> dict:
        run: RunRecord = state['run']
        payload: EditPayload = state['edit_payload']
        message = payload.commit_title or run.proposal.commit_title or f'{run.task.id}: {run.task.title}'
        return {'commit_sha': self.vcs.stage_commit_and_get_sha(run.input.repo_path, message)}

    def _push(self, state: StageState) -> dict:
        run: RunRecord = state['run']
        self.vcs.push_branch(run.input.repo_path, run.branch_name)
        return {}

    def _publish(self, state: StageState) -> dict:
        run: RunRecord = state['run']
        payload: EditPayload = state['edit_payload']
        url = self.publisher.create_merge_request(
            source_branch=run.branch_name,
            target_branch=run.input.target_branch,
            title=run.proposal.pr_title or payload.commit_title or run.proposal.commit_title or run.task.title,
            description=payload.pr_description or f'Automated changes for {run.task.id}',
        )
        return {'merge_request_url': url}


def _not_dry_run(state: StageState) -> bool:
    return not state['input'].dry_run
