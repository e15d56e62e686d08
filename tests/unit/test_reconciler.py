"""
Unit tests for the bootstrap reconciler state machine.

Runs the reconciler against the in-memory provider and cluster and checks
step ordering, idempotent re-runs and resumption after failures.
"""
import pytest

from fluxstrap.context import RunContext
from fluxstrap.errors import AuthError, TransientError
from fluxstrap.generator import DefaultManifestGenerator
from fluxstrap.providers.base import Capabilities
from fluxstrap.reconciler import STEP_ORDER, BootstrapReconciler, BootstrapState
from fluxstrap.retry import RetryPolicy

from fakes import FakeCluster, FakeProvider


@pytest.fixture
def reconciler(fake_provider, fake_cluster, components_dir):
    return BootstrapReconciler(
        provider=fake_provider,
        cluster=fake_cluster,
        generator=DefaultManifestGenerator(components_dir),
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0),
    )


class TestFreshBootstrap:
    """Test a bootstrap against empty remote state."""

    def test_reaches_done(self, reconciler, fake_provider, fake_cluster, make_request):
        """Should walk every state in order and finish in Done."""
        result = reconciler.run(make_request(), RunContext())

        assert result.success is True
        assert result.state == BootstrapState.DONE
        assert [step.state for step in result.steps] == STEP_ORDER
        assert result.steps[0].action == 'created'
        assert result.steps[1].action == 'created'

    def test_remote_writes(self, reconciler, fake_provider, fake_cluster, make_request):
        """Should make one install commit, one sync commit and one credential."""
        reconciler.run(make_request(), RunContext())

        assert [intent.message for intent in fake_provider.commits] == [
            'Add Flux: install manifests',
            'Add Flux: sync manifests',
        ]
        assert len(fake_provider.keys) == 1
        assert list(fake_cluster.secrets) == [('flux-system', 'flux-system')]
        assert ('GitRepository', 'flux-system', 'flux-system') in fake_cluster.objects
        assert ('Kustomization', 'flux-system', 'flux-system') in fake_cluster.objects

    def test_sync_points_at_ssh_url(self, reconciler, fake_cluster, make_request):
        reconciler.run(make_request(), RunContext())

        source = fake_cluster.objects[('GitRepository', 'flux-system', 'flux-system')]
        assert source['spec']['url'] == 'ssh://git@git.example.com/acme/fleet'

    def test_token_credential_uses_https(self, reconciler, fake_cluster, make_request):
        """Should point the source at the HTTPS URL for token credentials."""
        reconciler.run(make_request(credential_policy='token', token='pat-123'), RunContext())

        source = fake_cluster.objects[('GitRepository', 'flux-system', 'flux-system')]
        assert source['spec']['url'] == 'https://git.example.com/acme/fleet.git'


class TestIdempotence:
    """Test re-running a finished bootstrap."""

    def test_rerun_makes_no_changes(self, reconciler, fake_provider, fake_cluster, make_request):
        """Should finish in Done with zero remote mutations on the second run."""
        reconciler.run(make_request(), RunContext())
        fake_provider.mutations.clear()
        fake_cluster.mutations.clear()

        result = reconciler.run(make_request(), RunContext())

        assert result.success is True
        assert fake_provider.mutations == []
        assert fake_cluster.mutations == []
        assert len(fake_provider.commits) == 2
        assert result.mutated is False
        assert all(step.action == 'unchanged' for step in result.steps)


class TestFailures:
    """Test failure classification and resumption."""

    def test_transient_exhaustion_fails_step(self, reconciler, fake_cluster, make_request):
        """Should stop at the failing step after retries run out."""
        fake_cluster.fail_next('apply', TransientError("connection reset"), TransientError("connection reset"))

        result = reconciler.run(make_request(), RunContext())

        assert result.success is False
        assert result.state == BootstrapState.FAILED
        assert result.failed_step == BootstrapState.INSTALL_APPLIED
        assert result.last_completed == BootstrapState.INSTALL_COMMITTED
        assert result.failure_type == 'transient'

    def test_transient_recovered_by_retry(self, reconciler, fake_cluster, make_request):
        fake_cluster.fail_next('apply', TransientError("connection reset"))

        result = reconciler.run(make_request(), RunContext())

        assert result.success is True

    def test_resume_after_failure(self, reconciler, fake_provider, fake_cluster, make_request):
        """Should skip already-met goals and continue from the failed step."""
        fake_cluster.fail_next('apply', TransientError("reset"), TransientError("reset"))
        reconciler.run(make_request(), RunContext())
        fake_provider.mutations.clear()

        result = reconciler.run(make_request(), RunContext())

        assert result.success is True
        actions = {step.state: step.action for step in result.steps}
        assert actions[BootstrapState.REPO_ENSURED] == 'unchanged'
        assert actions[BootstrapState.CREDENTIAL_ENSURED] == 'unchanged'
        assert actions[BootstrapState.INSTALL_COMMITTED] == 'unchanged'
        assert actions[BootstrapState.INSTALL_APPLIED] == 'updated'
        assert fake_provider.mutations == ['commit clusters/prod/flux-system/gotk-sync.yaml,'
                                           'clusters/prod/flux-system/kustomization.yaml']

    def test_auth_error_not_retried(self, reconciler, fake_provider, make_request):
        """Should fail immediately on an authentication error."""
        fake_provider.fail_next('ensure_repository', AuthError("bad token"), AuthError("bad token"))

        result = reconciler.run(make_request(), RunContext())

        assert result.failed_step == BootstrapState.REPO_ENSURED
        assert result.failure_type == 'auth'
        assert result.last_completed == BootstrapState.INIT
        assert len(fake_provider.failures['ensure_repository']) == 1

    def test_fatal_condition(self, reconciler, fake_cluster, make_request):
        """Should fail SourceReady when the Kustomization is stalled."""
        fake_cluster.status_overrides[('Kustomization', 'flux-system')] = {
            'observedGeneration': 1,
            'conditions': [
                {'type': 'Ready', 'status': 'False', 'message': 'kustomization path not found'},
                {'type': 'Stalled', 'status': 'True', 'message': 'kustomization path not found'},
            ],
        }

        result = reconciler.run(make_request(), RunContext())

        assert result.failed_step == BootstrapState.SOURCE_READY
        assert result.failure_type == 'fatal_condition'
        assert 'path not found' in result.error_summary

    def test_controllers_timeout(self, fake_provider, components_dir, make_request):
        """Should name the controllers that never became ready."""
        reconciler = BootstrapReconciler(
            provider=fake_provider,
            cluster=FakeCluster(ready=False),
            generator=DefaultManifestGenerator(components_dir),
            retry_policy=RetryPolicy(base_delay=0),
        )

        result = reconciler.run(make_request(ready_timeout=0.2), RunContext())

        assert result.failed_step == BootstrapState.CONTROLLERS_READY
        assert result.failure_type == 'timeout'
        assert 'source-controller' in result.error_summary

    def test_cancelled(self, reconciler, fake_provider, fake_cluster, make_request):
        """Should stop before touching anything once cancelled."""
        ctx = RunContext()
        ctx.cancel("operator abort")

        result = reconciler.run(make_request(), ctx)

        assert result.failure_type == 'cancelled'
        assert result.failed_step == BootstrapState.REPO_ENSURED
        assert fake_provider.mutations == []
        assert fake_cluster.mutations == []


class TestDryRun:
    """Test dry-run planning."""

    def test_plans_without_writes(self, reconciler, fake_provider, fake_cluster, make_request):
        """Should report the plan and perform no remote writes."""
        result = reconciler.run(make_request(dry_run=True), RunContext())

        assert result.success is True
        actions = {step.state: step.action for step in result.steps}
        assert actions[BootstrapState.REPO_ENSURED] == 'planned'
        assert actions[BootstrapState.CREDENTIAL_ENSURED] == 'planned'
        assert actions[BootstrapState.INSTALL_COMMITTED] == 'planned'
        assert actions[BootstrapState.INSTALL_APPLIED] == 'skipped'
        assert actions[BootstrapState.SOURCE_READY] == 'skipped'
        assert fake_provider.mutations == []
        assert fake_cluster.mutations == []
        assert fake_provider.commits == []

    def test_plan_after_bootstrap_is_empty(self, reconciler, fake_provider, make_request):
        reconciler.run(make_request(), RunContext())

        result = reconciler.run(make_request(dry_run=True), RunContext())

        assert result.mutated is False

    def test_plan_missing_repo_without_create_support(self, fake_cluster, components_dir, make_request):
        """Should fail the plan when the backend cannot create the missing repository."""
        provider = FakeProvider(capabilities=Capabilities(supports_repository_create=False))
        reconciler = BootstrapReconciler(
            provider=provider,
            cluster=fake_cluster,
            generator=DefaultManifestGenerator(components_dir),
            retry_policy=RetryPolicy(base_delay=0),
        )

        result = reconciler.run(make_request(dry_run=True), RunContext())

        assert result.success is False
        assert result.failed_step == BootstrapState.REPO_ENSURED
        assert result.failure_type == 'conflict'
        assert 'cannot create repositories' in result.error_summary
