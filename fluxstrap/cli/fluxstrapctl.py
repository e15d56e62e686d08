#!/usr/bin/env python3
"""
fluxstrapctl - fluxstrap operator CLI

Bootstrap Flux onto a cluster from a request file, preview a bootstrap,
or check the current bootstrap status.
"""
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fluxstrap.cluster import KubernetesCluster
from fluxstrap.config import FluxstrapConfig, get_config
from fluxstrap.context import RunContext
from fluxstrap.errors import FluxstrapError
from fluxstrap.generator import KUSTOMIZE_API_VERSION, SOURCE_API_VERSION, DefaultManifestGenerator
from fluxstrap.providers import get_provider
from fluxstrap.readiness import Status, deployment_target, flux_target
from fluxstrap.reconciler import BootstrapReconciler, BootstrapResult
from fluxstrap.request import BootstrapRequest
from fluxstrap.retry import RetryPolicy


logger = logging.getLogger("fluxstrap")


class FluxstrapCLI:
    """Wires configuration, provider and cluster into a reconciler."""

    def __init__(self, config: FluxstrapConfig):
        self.config = config

    def load_request(self, path: str, overrides: Optional[Dict[str, Any]] = None) -> BootstrapRequest:
        return BootstrapRequest.from_yaml(Path(path), overrides=overrides)

    def _provider(self, request: BootstrapRequest):
        token = self.config.provider_token(request.provider) or request.token
        return get_provider(request, token, timeout=self.config.http_timeout)

    def _cluster(self) -> KubernetesCluster:
        return KubernetesCluster(
            in_cluster=self.config.in_cluster,
            kubeconfig=str(self.config.kubeconfig) if self.config.kubeconfig else None,
            context=self.config.kube_context,
        )

    def reconciler(self, request: BootstrapRequest) -> BootstrapReconciler:
        return BootstrapReconciler(
            provider=self._provider(request),
            cluster=self._cluster(),
            generator=DefaultManifestGenerator(self.config.manifests_dir, self.config.flux_version),
            retry_policy=RetryPolicy(
                max_attempts=self.config.retry_attempts,
                base_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
            ),
        )

    def bootstrap(self, request: BootstrapRequest) -> BootstrapResult:
        """Run the bootstrap, cancelling cleanly on SIGINT/SIGTERM."""
        ctx = RunContext(logger=logger, timeout=request.timeout)

        def handle_signal(signum, frame):
            ctx.cancel(f"received signal {signum}")

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        result = self.reconciler(request).run(request, ctx)
        print_result(request, result)
        return result

    def check(self, request: BootstrapRequest) -> bool:
        """Report repository, secret and readiness status without waiting or writing."""
        provider = self._provider(request)
        cluster = self._cluster()
        healthy = True

        print("Bootstrap Status")
        print("=" * 50)

        repo = provider.get_repository(request.repository)
        if repo is None:
            print(f"Repository:  {request.repository.full_name} (missing)")
            healthy = False
        else:
            print(f"Repository:  {repo.full_name} (default branch {repo.default_branch}, {repo.visibility})")

        secret = cluster.get_secret(request.namespace, request.effective_secret_name)
        if secret is None:
            print(f"Secret:      {request.namespace}/{request.effective_secret_name} (missing)")
            healthy = False
        else:
            print(f"Secret:      {request.namespace}/{request.effective_secret_name} ({', '.join(sorted(secret))})")
        print()

        targets = [deployment_target(c, request.namespace) for c in request.all_components]
        targets += [
            flux_target(SOURCE_API_VERSION, 'GitRepository', request.namespace, request.namespace),
            flux_target(KUSTOMIZE_API_VERSION, 'Kustomization', request.namespace, request.namespace),
        ]
        print("Objects:")
        for target in targets:
            obj = cluster.get_object(target.api_version, target.kind, target.name, target.namespace)
            if obj is None:
                print(f"  ✗ {target.display_name}: not found")
                healthy = False
                continue
            verdict = target.predicate(obj)
            mark = "✓" if verdict.status == Status.READY else "✗"
            if verdict.status != Status.READY:
                healthy = False
            message = f": {verdict.message}" if verdict.message else ""
            print(f"  {mark} {target.display_name} ({verdict.status.value}){message}")

        return healthy


def print_result(request: BootstrapRequest, result: BootstrapResult):
    """Print a human readable run summary."""
    title = "Bootstrap Plan" if request.dry_run else "Bootstrap Result"
    print(title)
    print("=" * 50)
    for step in result.steps:
        detail = f" ({step.detail})" if step.detail else ""
        print(f"  {step.state.value:<18} {step.action}{detail}")

    if result.credential is not None and result.credential.public_key and not result.credential.registered \
            and result.credential.kind == 'ssh' and result.credential.created:
        print()
        print("Register this read-only deploy key with the Git server:")
        print(f"  {result.credential.public_key}")

    print()
    if result.success:
        print(f"State: {result.state.value}")
    else:
        print(f"State: {result.state.value} (last completed: {result.last_completed.value})")
        print(f"Failed step: {result.failed_step.value}")
        print(f"Error [{result.failure_type}]: {result.error_summary}")


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description='fluxstrap operator CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # bootstrap
    bootstrap_parser = subparsers.add_parser('bootstrap', help='Bootstrap Flux from a request file')
    bootstrap_parser.add_argument('request', help='Path to bootstrap request YAML')
    bootstrap_parser.add_argument('--dry-run', action='store_true', help='Report the plan without changing anything')
    bootstrap_parser.add_argument('--timeout', type=float, help='Aggregate run timeout in seconds')

    # plan
    plan_parser = subparsers.add_parser('plan', help='Show what a bootstrap would change')
    plan_parser.add_argument('request', help='Path to bootstrap request YAML')

    # check
    check_parser = subparsers.add_parser('check', help='Report bootstrap status without waiting')
    check_parser.add_argument('request', help='Path to bootstrap request YAML')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    try:
        cli = FluxstrapCLI(get_config())
        if args.command == 'bootstrap':
            overrides = {'dry_run': True if args.dry_run else None, 'timeout': args.timeout}
            result = cli.bootstrap(cli.load_request(args.request, overrides))
            sys.exit(0 if result.success else 1)
        elif args.command == 'plan':
            result = cli.bootstrap(cli.load_request(args.request, {'dry_run': True}))
            sys.exit(0 if result.success else 1)
        elif args.command == 'check':
            healthy = cli.check(cli.load_request(args.request))
            sys.exit(0 if healthy else 1)
        else:
            parser.print_help()
            sys.exit(1)
    except FluxstrapError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
