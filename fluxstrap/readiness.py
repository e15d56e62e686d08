"""
Readiness polling.

Polls cluster objects until every convergence target satisfies its predicate,
a target reports a terminal failure, or the deadline elapses.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fluxstrap.cluster import ClusterClient
from fluxstrap.context import RunContext
from fluxstrap.errors import (
    CancelledError,
    FatalConditionError,
    ReadinessTimeoutError,
    TransientError,
)
from fluxstrap.models import ConvergenceTarget


DEFAULT_INTERVAL = 2.0
DEFAULT_TIMEOUT = 300.0


class Status(str, Enum):
    READY = "ready"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class Verdict:
    """Result of evaluating a predicate against one observation."""
    status: Status
    message: str = ""


def _condition(obj: Dict[str, Any], condition_type: str) -> Optional[Dict[str, Any]]:
    for condition in (obj.get('status') or {}).get('conditions') or []:
        if condition.get('type') == condition_type:
            return condition
    return None


def _generation_observed(obj: Dict[str, Any]) -> bool:
    generation = (obj.get('metadata') or {}).get('generation')
    observed = (obj.get('status') or {}).get('observedGeneration')
    if generation is None:
        return True
    return observed is not None and observed >= generation


def condition_predicate(
    condition_type: str = "Ready",
    status: str = "True",
    terminal: Optional[Dict[str, str]] = None
) -> Callable[[Dict[str, Any]], Verdict]:
    """
    Build a predicate on a status condition.

    Args:
        condition_type: Condition that must hold (e.g. Ready)
        status: Required condition status
        terminal: Conditions that short-circuit as failures, as {type: status}
            (default: {"Stalled": "True"})
    """
    terminal = {"Stalled": "True"} if terminal is None else terminal

    def evaluate(obj: Dict[str, Any]) -> Verdict:
        for bad_type, bad_status in terminal.items():
            bad = _condition(obj, bad_type)
            if bad is not None and bad.get('status') == bad_status:
                return Verdict(Status.FAILED, f"{bad_type}={bad_status}: {bad.get('message', '')}".strip())

        if not _generation_observed(obj):
            return Verdict(Status.PENDING, "generation not yet observed")

        condition = _condition(obj, condition_type)
        if condition is None:
            return Verdict(Status.PENDING, f"no {condition_type} condition")
        if condition.get('status') == status:
            return Verdict(Status.READY)
        return Verdict(Status.PENDING, f"{condition_type}={condition.get('status')}: {condition.get('message', '')}".strip())

    return evaluate


def deployment_predicate(obj: Dict[str, Any]) -> Verdict:
    """Deployment rollout is complete and every replica is available."""
    progressing = _condition(obj, 'Progressing')
    if progressing is not None and progressing.get('reason') == 'ProgressDeadlineExceeded':
        return Verdict(Status.FAILED, f"ProgressDeadlineExceeded: {progressing.get('message', '')}".strip())

    if not _generation_observed(obj):
        return Verdict(Status.PENDING, "generation not yet observed")

    spec = obj.get('spec') or {}
    status = obj.get('status') or {}
    desired = spec.get('replicas', 1)
    updated = status.get('updatedReplicas', 0) or 0
    available = status.get('availableReplicas', 0) or 0
    if updated < desired or available < desired:
        return Verdict(Status.PENDING, f"{available}/{desired} replicas available, {updated} updated")
    return Verdict(Status.READY)


def deployment_target(name: str, namespace: str) -> ConvergenceTarget:
    return ConvergenceTarget(
        api_version='apps/v1',
        kind='Deployment',
        name=name,
        namespace=namespace,
        predicate=deployment_predicate,
    )


def flux_target(api_version: str, kind: str, name: str, namespace: str) -> ConvergenceTarget:
    return ConvergenceTarget(
        api_version=api_version,
        kind=kind,
        name=name,
        namespace=namespace,
        predicate=condition_predicate('Ready', 'True'),
    )


class ReadinessPoller:
    """Waits for a set of convergence targets with bounded parallelism."""

    def __init__(
        self,
        cluster: ClusterClient,
        interval: float = DEFAULT_INTERVAL,
        max_parallel: int = 4
    ):
        """
        Initialize poller.

        Args:
            cluster: Cluster client used to read objects
            interval: Seconds between polls of one target
            max_parallel: Maximum targets polled concurrently
        """
        self.cluster = cluster
        self.interval = interval
        self.max_parallel = max_parallel

    def _observe(self, target: ConvergenceTarget) -> Optional[Verdict]:
        """Read one target once. None means the object is not observable yet."""
        try:
            obj = self.cluster.get_object(target.api_version, target.kind, target.name, target.namespace)
        except TransientError as e:
            return Verdict(Status.PENDING, str(e))
        if obj is None:
            return None
        return target.predicate(obj)

    def wait_ready(
        self,
        targets: List[ConvergenceTarget],
        timeout: float,
        ctx: RunContext
    ):
        """
        Block until every target is ready.

        Each tick reads every still-unsatisfied target once, at most
        max_parallel at a time, then sleeps one interval.

        Args:
            targets: Convergence targets
            timeout: Seconds before giving up
            ctx: Run context (logger, cancellation)

        Raises:
            ReadinessTimeoutError: Naming exactly the targets still unsatisfied
            FatalConditionError: When a target reports a terminal condition
            CancelledError: When the run is cancelled while waiting
            AuthError: When the cluster rejects credentials; any other
                non-transient read or predicate error also stops the wait
        """
        if not targets:
            return

        deadline = ctx.clock() + timeout
        pending = list(targets)
        last_message: Dict[str, str] = {}
        failures: List[FatalConditionError] = []
        errors: List[Exception] = []

        workers = min(self.max_parallel, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='fluxstrap-poll') as pool:
            while pending and not ctx.is_cancelled():
                futures = [(target, pool.submit(self._observe, target)) for target in pending]
                still_pending = []
                for target, future in futures:
                    name = target.display_name
                    try:
                        verdict = future.result()
                    except Exception as e:
                        errors.append(e)
                        continue
                    if verdict is None:
                        last_message.setdefault(name, "not found")
                        still_pending.append(target)
                    elif verdict.status == Status.READY:
                        ctx.logger.info(f"{name} is ready")
                    elif verdict.status == Status.FAILED:
                        failures.append(FatalConditionError([name], verdict.message))
                    else:
                        last_message[name] = verdict.message
                        still_pending.append(target)

                pending = still_pending
                if errors or failures or not pending:
                    break
                remaining = deadline - ctx.clock()
                if remaining <= 0:
                    break
                ctx.wait(min(self.interval, remaining))

        if errors:
            raise errors[0]
        if failures:
            raise failures[0]
        if pending and ctx.is_cancelled():
            raise CancelledError(f"Bootstrap cancelled while waiting for readiness: {ctx.cancel_reason}")

        if pending:
            unsatisfied = [target.display_name for target in pending]
            details = '; '.join(f"{name} ({last_message.get(name, 'pending')})" for name in unsatisfied)
            raise ReadinessTimeoutError(unsatisfied, f"Timed out after {timeout:.0f}s waiting for: {details}")
