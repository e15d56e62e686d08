"""
Unit tests for fluxstrapctl CLI.
"""
import pytest
from unittest.mock import Mock, patch

from fluxstrap.cli.fluxstrapctl import FluxstrapCLI, main, print_result
from fluxstrap.context import RunContext
from fluxstrap.errors import ConfigError
from fluxstrap.generator import DefaultManifestGenerator
from fluxstrap.models import DeployCredential
from fluxstrap.reconciler import BootstrapReconciler, BootstrapResult, BootstrapState, StepReport
from fluxstrap.retry import RetryPolicy


class TestMain:
    """Test argument handling and exit codes."""

    def test_no_command(self):
        """Should print help and exit 1 without a command."""
        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 1

    @patch('fluxstrap.cli.fluxstrapctl.get_config')
    @patch('fluxstrap.cli.fluxstrapctl.FluxstrapCLI')
    def test_bootstrap_success(self, mock_cli_class, mock_get_config):
        cli = mock_cli_class.return_value
        cli.bootstrap.return_value = Mock(success=True)

        with pytest.raises(SystemExit) as exc_info:
            main(['bootstrap', 'request.yaml', '--timeout', '120'])

        assert exc_info.value.code == 0
        cli.load_request.assert_called_once_with('request.yaml', {'dry_run': None, 'timeout': 120.0})

    @patch('fluxstrap.cli.fluxstrapctl.get_config')
    @patch('fluxstrap.cli.fluxstrapctl.FluxstrapCLI')
    def test_bootstrap_failure_exit_code(self, mock_cli_class, mock_get_config):
        """Should exit 1 when the run ends in Failed."""
        mock_cli_class.return_value.bootstrap.return_value = Mock(success=False)

        with pytest.raises(SystemExit) as exc_info:
            main(['bootstrap', 'request.yaml'])

        assert exc_info.value.code == 1

    @patch('fluxstrap.cli.fluxstrapctl.get_config')
    @patch('fluxstrap.cli.fluxstrapctl.FluxstrapCLI')
    def test_plan_forces_dry_run(self, mock_cli_class, mock_get_config):
        cli = mock_cli_class.return_value
        cli.bootstrap.return_value = Mock(success=True)

        with pytest.raises(SystemExit):
            main(['plan', 'request.yaml'])

        cli.load_request.assert_called_once_with('request.yaml', {'dry_run': True})

    @patch('fluxstrap.cli.fluxstrapctl.get_config')
    @patch('fluxstrap.cli.fluxstrapctl.FluxstrapCLI')
    def test_check_unhealthy(self, mock_cli_class, mock_get_config):
        mock_cli_class.return_value.check.return_value = False

        with pytest.raises(SystemExit) as exc_info:
            main(['check', 'request.yaml'])

        assert exc_info.value.code == 1

    @patch('fluxstrap.cli.fluxstrapctl.get_config')
    @patch('fluxstrap.cli.fluxstrapctl.FluxstrapCLI')
    def test_invalid_request(self, mock_cli_class, mock_get_config, capsys):
        """Should report configuration errors on stderr and exit 1."""
        mock_cli_class.return_value.load_request.side_effect = ConfigError("repository.name is required")

        with pytest.raises(SystemExit) as exc_info:
            main(['bootstrap', 'request.yaml'])

        assert exc_info.value.code == 1
        assert "Error: repository.name is required" in capsys.readouterr().err


class TestCheck:
    """Test the status report."""

    def make_cli(self, provider, cluster):
        cli = FluxstrapCLI(Mock())
        cli._provider = Mock(return_value=provider)
        cli._cluster = Mock(return_value=cluster)
        return cli

    def test_healthy_after_bootstrap(self, fake_provider, fake_cluster, components_dir, make_request, capsys):
        """Should report every object ready after a finished bootstrap."""
        request = make_request()
        BootstrapReconciler(
            fake_provider, fake_cluster, DefaultManifestGenerator(components_dir), RetryPolicy(base_delay=0)
        ).run(request, RunContext())

        healthy = self.make_cli(fake_provider, fake_cluster).check(request)

        assert healthy is True
        output = capsys.readouterr().out
        assert "✓ GitRepository/flux-system/flux-system" in output
        assert "✗" not in output

    def test_unhealthy_before_bootstrap(self, fake_provider, fake_cluster, make_request, capsys):
        healthy = self.make_cli(fake_provider, fake_cluster).check(make_request())

        assert healthy is False
        output = capsys.readouterr().out
        assert "acme/fleet (missing)" in output
        assert "✗ Deployment/flux-system/source-controller: not found" in output


class TestPrintResult:
    """Test the run summary."""

    def test_failed_run(self, make_request, capsys):
        result = BootstrapResult(
            success=False,
            state=BootstrapState.FAILED,
            last_completed=BootstrapState.INSTALL_COMMITTED,
            failed_step=BootstrapState.INSTALL_APPLIED,
            error=ConfigError("bad manifest"),
            failure_type='config',
            steps=[StepReport(BootstrapState.REPO_ENSURED, 'unchanged', 'acme/fleet')],
        )

        print_result(make_request(), result)

        output = capsys.readouterr().out
        assert "Failed step: InstallApplied" in output
        assert "Error [config]: bad manifest" in output
        assert "last completed: InstallCommitted" in output

    def test_unregistered_key_hint(self, make_request, capsys):
        """Should print the public key when it still needs manual registration."""
        credential = DeployCredential(
            kind='ssh',
            secret_namespace='flux-system',
            secret_name='flux-system',
            fingerprint='SHA256:abc',
            public_key='ssh-ed25519 AAAA flux',
            created=True,
            registered=False,
        )
        result = BootstrapResult(
            success=True, state=BootstrapState.DONE, last_completed=BootstrapState.DONE, credential=credential)

        print_result(make_request(), result)

        assert "ssh-ed25519 AAAA flux" in capsys.readouterr().out
