"""
Realizes an OrderedPlan through a provider.

Only the coordinating thread touches the graph: it resolves a node's
properties right before submitting it and records outputs once the node's
future has completed. A dependent is submitted only after every dependency's
future succeeded, which is the happens-before edge between a node's
realization and any read of its outputs.
"""

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from tenacity import Retrying, stop_after_attempt, wait_exponential

from stackgraph import log
from stackgraph.errors import RealizationError, StackGraphError
from stackgraph.kinds import NodeKind
from stackgraph.planner import OrderedPlan, PlanStep
from stackgraph.references import resolve_value


class RealizationStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 1
    wait_multiplier: float = 1.0
    wait_max: float = 30.0


@dataclass
class NodeOutcome:
    node_id: str
    kind: NodeKind
    status: RealizationStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[RealizationError] = None
    attempts: int = 0
    resolved_properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionReport:
    outcomes: Dict[str, NodeOutcome] = field(default_factory=dict)

    def _with_status(self, status: RealizationStatus) -> List[NodeOutcome]:
        return [o for o in self.outcomes.values() if o.status is status]

    @property
    def succeeded(self) -> List[NodeOutcome]:
        return self._with_status(RealizationStatus.SUCCEEDED)

    @property
    def failed(self) -> List[NodeOutcome]:
        return self._with_status(RealizationStatus.FAILED)

    @property
    def skipped(self) -> List[NodeOutcome]:
        return self._with_status(RealizationStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    def raise_for_failures(self) -> None:
        failed = self.failed
        if failed:
            raise failed[0].error


class _Attempt:
    def __init__(self, step: PlanStep):
        self.step = step
        self.count = 0


class PlanExecutor:
    def __init__(
        self,
        provider: Any,
        max_workers: int = 4,
        fail_fast: bool = True,
        retries: Optional[Mapping[NodeKind, RetryPolicy]] = None,
    ):
        self.provider = provider
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.retries: Dict[NodeKind, RetryPolicy] = dict(retries or {})

    def _realize(self, attempt: _Attempt, properties: Dict[str, Any], policies: List[Any]) -> Dict[str, Any]:
        step = attempt.step
        policy = self.retries.get(step.kind, RetryPolicy())
        retrying = Retrying(
            stop=stop_after_attempt(max(policy.attempts, 1)),
            wait=wait_exponential(multiplier=policy.wait_multiplier, max=policy.wait_max),
            reraise=True,
        )
        try:
            for managed in retrying:
                with managed:
                    attempt.count = managed.retry_state.attempt_number
                    if attempt.count > 1:
                        log.warn(f"Retrying '{step.node_id}' (attempt {attempt.count})", "executor")
                    return dict(self.provider.realize(step, properties, policies) or {})
        except Exception as e:
            raise RealizationError(step.node_id, e) from e

    def _prepare(self, step: PlanStep, graph: Mapping[str, Any], outcome: NodeOutcome):
        properties = resolve_value(dict(step.properties), graph)
        policies = [resolve_value(s, graph, defer=step.node_id) for s in step.policy_statements]
        outcome.resolved_properties = properties
        return properties, policies

    def _record(self, outcome: NodeOutcome, graph: Mapping[str, Any], outputs: Dict[str, Any]) -> None:
        graph[outcome.node_id].realize(outputs)
        outcome.outputs = dict(graph[outcome.node_id].outputs)
        outcome.status = RealizationStatus.SUCCEEDED
        log.info(f"Realized {outcome.node_id} ({outcome.kind.value})", "executor")

    def _fail(self, outcome: NodeOutcome, error: BaseException) -> None:
        if not isinstance(error, RealizationError):
            error = RealizationError(outcome.node_id, error)
        outcome.status = RealizationStatus.FAILED
        outcome.error = error
        log.error(str(error), "executor")

    def execute(self, plan: OrderedPlan, graph: Optional[Mapping[str, Any]] = None) -> ExecutionReport:
        graph = plan.graph if graph is None else graph
        report = ExecutionReport(
            {
                step.node_id: NodeOutcome(step.node_id, step.kind, RealizationStatus.SKIPPED)
                for step in plan.steps
            }
        )
        if self.max_workers <= 1:
            self._execute_inline(plan, graph, report)
        else:
            self._execute_parallel(plan, graph, report)
        if report.skipped:
            log.warn(f"Skipped {len(report.skipped)} resources after a failure", "executor")
        return report

    def _blocked(self, step: PlanStep, report: ExecutionReport) -> bool:
        return any(report.outcomes[d].status is not RealizationStatus.SUCCEEDED for d in step.depends_on)

    def _execute_inline(self, plan: OrderedPlan, graph: Mapping[str, Any], report: ExecutionReport) -> None:
        failed = False
        for step in plan.steps:
            if failed and self.fail_fast:
                break
            if self._blocked(step, report):
                continue
            outcome = report.outcomes[step.node_id]
            attempt = _Attempt(step)
            try:
                properties, policies = self._prepare(step, graph, outcome)
                outputs = self._realize(attempt, properties, policies)
                self._record(outcome, graph, outputs)
            except StackGraphError as e:
                self._fail(outcome, e)
                failed = True
            finally:
                outcome.attempts = attempt.count

    def _execute_parallel(self, plan: OrderedPlan, graph: Mapping[str, Any], report: ExecutionReport) -> None:
        waiting: Dict[str, Set[str]] = {step.node_id: set(step.depends_on) for step in plan.steps}
        dependents = plan.dependents()
        ready = [step.node_id for step in plan.steps if not waiting[step.node_id]]
        running: Dict[Future, _Attempt] = {}
        failed = False

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or running:
                while ready and not (failed and self.fail_fast):
                    node_id = ready.pop(0)
                    step = plan.step(node_id)
                    outcome = report.outcomes[node_id]
                    try:
                        properties, policies = self._prepare(step, graph, outcome)
                    except StackGraphError as e:
                        self._fail(outcome, e)
                        failed = True
                        continue
                    attempt = _Attempt(step)
                    running[pool.submit(self._realize, attempt, properties, policies)] = attempt
                if not running:
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    attempt = running.pop(future)
                    node_id = attempt.step.node_id
                    outcome = report.outcomes[node_id]
                    outcome.attempts = attempt.count
                    try:
                        self._record(outcome, graph, future.result())
                    except StackGraphError as e:
                        self._fail(outcome, e)
                        failed = True
                        continue
                    for dependent in dependents[node_id]:
                        waiting[dependent].discard(node_id)
                        if not waiting[dependent]:
                            ready.append(dependent)
