"""
Bootstrap reconciler.

Drives the bootstrap state machine:

    Init -> RepoEnsured -> CredentialEnsured -> InstallCommitted ->
    InstallApplied -> ControllersReady -> SyncCommitted -> SourceReady -> Done

Steps run strictly in order. Each one re-derives from remote state whether its
goal is already met, so a failed run can simply be re-invoked.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from fluxstrap.cluster import ClusterClient
from fluxstrap.context import RunContext
from fluxstrap.credentials import SecretProvisioner
from fluxstrap.errors import ConflictError, classify
from fluxstrap.generator import INSTALL, KUSTOMIZE_API_VERSION, SOURCE_API_VERSION, SYNC, ManifestGenerator
from fluxstrap.models import DeployCredential, ManifestSet, RepositoryRef
from fluxstrap.providers.base import GitProvider, check_repository_shape
from fluxstrap.readiness import ReadinessPoller, deployment_target, flux_target
from fluxstrap.request import BootstrapRequest
from fluxstrap.retry import RetryPolicy, run_with_retry
from fluxstrap.sync import ManifestSynchronizer


class BootstrapState(str, Enum):
    INIT = "Init"
    REPO_ENSURED = "RepoEnsured"
    CREDENTIAL_ENSURED = "CredentialEnsured"
    INSTALL_COMMITTED = "InstallCommitted"
    INSTALL_APPLIED = "InstallApplied"
    CONTROLLERS_READY = "ControllersReady"
    SYNC_COMMITTED = "SyncCommitted"
    SOURCE_READY = "SourceReady"
    DONE = "Done"
    FAILED = "Failed"


STEP_ORDER = [
    BootstrapState.REPO_ENSURED,
    BootstrapState.CREDENTIAL_ENSURED,
    BootstrapState.INSTALL_COMMITTED,
    BootstrapState.INSTALL_APPLIED,
    BootstrapState.CONTROLLERS_READY,
    BootstrapState.SYNC_COMMITTED,
    BootstrapState.SOURCE_READY,
]


@dataclass
class StepReport:
    """What one state transition did."""
    state: BootstrapState
    action: str  # created, updated, unchanged, planned, skipped
    detail: str = ""


@dataclass
class BootstrapResult:
    """Outcome of one bootstrap run."""
    success: bool
    state: BootstrapState
    last_completed: BootstrapState
    failed_step: Optional[BootstrapState] = None
    error: Optional[BaseException] = None
    failure_type: Optional[str] = None
    steps: List[StepReport] = field(default_factory=list)
    repository: Optional[RepositoryRef] = None
    credential: Optional[DeployCredential] = None

    @property
    def error_summary(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    @property
    def mutated(self) -> bool:
        """Whether any step changed (or would change) remote state."""
        return any(step.action in ('created', 'updated', 'planned') for step in self.steps)


@dataclass
class _Run:
    """Values carried between steps of one run."""
    request: BootstrapRequest
    ctx: RunContext
    repo: Optional[RepositoryRef] = None
    credential: Optional[DeployCredential] = None
    install: Optional[ManifestSet] = None


class BootstrapReconciler:
    """
    Runs the bootstrap steps for one request.

    The reconciler is the only component that retries: transient failures are
    retried per step with bounded backoff, everything else ends the run in
    Failed with the step that stopped it.
    """

    def __init__(
        self,
        provider: GitProvider,
        cluster: ClusterClient,
        generator: ManifestGenerator,
        retry_policy: Optional[RetryPolicy] = None,
        poller: Optional[ReadinessPoller] = None,
        provisioner: Optional[SecretProvisioner] = None,
        synchronizer: Optional[ManifestSynchronizer] = None
    ):
        """
        Initialize reconciler.

        Args:
            provider: Provider session owned by this run
            cluster: Cluster client
            generator: Manifest generator
            retry_policy: Retry policy for transient failures
            poller: Readiness poller (default: built from the request's poll settings)
            provisioner: Secret provisioner (default: built from provider and cluster)
            synchronizer: Manifest synchronizer (default: built from provider)
        """
        self.provider = provider
        self.cluster = cluster
        self.generator = generator
        self.retry_policy = retry_policy or RetryPolicy()
        self.poller = poller
        self.provisioner = provisioner or SecretProvisioner(provider, cluster)
        self.synchronizer = synchronizer or ManifestSynchronizer(provider)

    def run(self, request: BootstrapRequest, ctx: Optional[RunContext] = None) -> BootstrapResult:
        """
        Execute the bootstrap state machine.

        Args:
            request: Validated bootstrap request
            ctx: Run context (default: one bounded by request.timeout)

        Returns:
            BootstrapResult naming the last completed state and, on failure,
            the failing step and its classified error
        """
        ctx = ctx or RunContext(timeout=request.timeout)
        run = _Run(request=request, ctx=ctx)
        result = BootstrapResult(success=False, state=BootstrapState.INIT, last_completed=BootstrapState.INIT)

        handlers = {
            BootstrapState.REPO_ENSURED: self._ensure_repository,
            BootstrapState.CREDENTIAL_ENSURED: self._ensure_credential,
            BootstrapState.INSTALL_COMMITTED: self._commit_install,
            BootstrapState.INSTALL_APPLIED: self._apply_install,
            BootstrapState.CONTROLLERS_READY: self._wait_controllers,
            BootstrapState.SYNC_COMMITTED: self._commit_sync,
            BootstrapState.SOURCE_READY: self._wait_source,
        }

        mode = "dry-run" if request.dry_run else "read-write"
        ctx.logger.info(
            f"Bootstrapping {request.repository.full_name}@{request.repository.branch} "
            f"into namespace {request.namespace} ({request.provider.value}, {mode})"
        )

        for state in STEP_ORDER:
            try:
                ctx.raise_if_cancelled()
                report = handlers[state](run)
            except Exception as e:
                failure_type = classify(e)
                if failure_type == 'unexpected':
                    ctx.logger.exception(f"Step {state.value} failed unexpectedly")
                else:
                    ctx.logger.error(f"Step {state.value} failed ({failure_type}): {e}")
                result.state = BootstrapState.FAILED
                result.failed_step = state
                result.error = e
                result.failure_type = failure_type
                result.repository = run.repo
                result.credential = run.credential
                return result

            result.steps.append(report)
            result.state = state
            result.last_completed = state
            ctx.logger.info(f"{state.value}: {report.action}{' - ' + report.detail if report.detail else ''}")

        result.state = BootstrapState.DONE
        result.last_completed = BootstrapState.DONE
        result.success = True
        result.repository = run.repo
        result.credential = run.credential
        ctx.logger.info("Bootstrap finished")
        return result

    def _retry(self, fn: Callable, run: _Run, description: str):
        return run_with_retry(fn, self.retry_policy, run.ctx, description)

    def _poller(self, request: BootstrapRequest) -> ReadinessPoller:
        if self.poller is not None:
            return self.poller
        return ReadinessPoller(self.cluster, interval=request.poll_interval, max_parallel=request.max_parallel_polls)

    def _ensure_repository(self, run: _Run) -> StepReport:
        spec = run.request.repository

        if run.request.dry_run:
            repo = self._retry(lambda: self.provider.get_repository(spec), run, "repository lookup")
            if repo is None:
                if not self.provider.capabilities.supports_repository_create:
                    raise ConflictError(
                        f"Repository {spec.full_name} does not exist and {self.provider.kind} cannot create repositories")
                run.repo = RepositoryRef(
                    owner=spec.owner,
                    name=spec.name,
                    default_branch=spec.branch,
                    visibility=spec.visibility.value,
                    exists=False,
                )
                return StepReport(BootstrapState.REPO_ENSURED, 'planned', f"would create {spec.full_name}")
            check_repository_shape(spec, repo)
            run.repo = repo
            return StepReport(BootstrapState.REPO_ENSURED, 'unchanged', repo.full_name)

        repo, created = self._retry(lambda: self.provider.ensure_repository(spec), run, "ensure repository")
        run.repo = repo
        return StepReport(BootstrapState.REPO_ENSURED, 'created' if created else 'unchanged', repo.full_name)

    def _ensure_credential(self, run: _Run) -> StepReport:
        credential = self._retry(
            lambda: self.provisioner.ensure_credential(run.request, run.repo, run.ctx),
            run,
            "ensure credential",
        )
        run.credential = credential
        if not credential.created:
            action = 'unchanged'
        elif run.request.dry_run:
            action = 'planned'
        else:
            action = 'created'
        detail = f"{credential.kind} {credential.fingerprint or '(new)'} in {credential.secret_namespace}/{credential.secret_name}"
        return StepReport(BootstrapState.CREDENTIAL_ENSURED, action, detail)

    def _commit_install(self, run: _Run) -> StepReport:
        run.install = self.generator.generate(INSTALL, run.request)
        outcome = self._retry(
            lambda: self.synchronizer.sync(run.repo, run.install, run.request, run.ctx),
            run,
            "commit install manifests",
        )
        return StepReport(BootstrapState.INSTALL_COMMITTED, outcome.action, ', '.join(outcome.changed_paths))

    def _apply(self, manifests: ManifestSet, state: BootstrapState, run: _Run) -> StepReport:
        if run.request.dry_run:
            count = len(manifests.appliable())
            return StepReport(state, 'skipped', f"dry-run: {count} file(s) not applied")

        applied = self._retry(lambda: self.cluster.apply(manifests), run, f"apply {manifests.kind} manifests")
        changed = [str(obj) for obj in applied if obj.changed]
        if changed:
            return StepReport(state, 'updated', f"{len(changed)} of {len(applied)} object(s) changed")
        return StepReport(state, 'unchanged', f"{len(applied)} object(s) already applied")

    def _apply_install(self, run: _Run) -> StepReport:
        if run.install is None:
            run.install = self.generator.generate(INSTALL, run.request)
        return self._apply(run.install, BootstrapState.INSTALL_APPLIED, run)

    def _wait_controllers(self, run: _Run) -> StepReport:
        if run.request.dry_run:
            return StepReport(BootstrapState.CONTROLLERS_READY, 'skipped', "dry-run")

        targets = [deployment_target(component, run.request.namespace) for component in run.request.all_components]
        self._poller(run.request).wait_ready(targets, run.request.ready_timeout, run.ctx)
        return StepReport(BootstrapState.CONTROLLERS_READY, 'unchanged', f"{len(targets)} controller(s) ready")

    def _commit_sync(self, run: _Run) -> StepReport:
        request = run.request
        ssh = run.credential is None or run.credential.kind == 'ssh'
        source_url = self.provider.clone_url(run.repo, ssh=ssh)
        manifests = self.generator.generate(SYNC, request, source_url=source_url)

        outcome = self._retry(
            lambda: self.synchronizer.sync(run.repo, manifests, request, run.ctx),
            run,
            "commit sync manifests",
        )
        applied = self._apply(manifests, BootstrapState.SYNC_COMMITTED, run)

        if outcome.action in ('created', 'updated', 'planned'):
            action = outcome.action
        else:
            action = applied.action if applied.action == 'updated' else outcome.action
        detail = f"commit: {outcome.action}; apply: {applied.action}"
        return StepReport(BootstrapState.SYNC_COMMITTED, action, detail)

    def _wait_source(self, run: _Run) -> StepReport:
        if run.request.dry_run:
            return StepReport(BootstrapState.SOURCE_READY, 'skipped', "dry-run")

        name = run.request.namespace
        targets = [
            flux_target(SOURCE_API_VERSION, 'GitRepository', name, run.request.namespace),
            flux_target(KUSTOMIZE_API_VERSION, 'Kustomization', name, run.request.namespace),
        ]
        self._poller(run.request).wait_ready(targets, run.request.ready_timeout, run.ctx)
        return StepReport(BootstrapState.SOURCE_READY, 'unchanged', "source reconciled")
