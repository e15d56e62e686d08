"""
Manifest synchronization: the diff-and-commit decision.

Compares generated files against the branch tip by blob id and commits only
the paths that differ. Files under the target path that were not generated
are never modified or deleted.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from fluxstrap.context import RunContext
from fluxstrap.errors import ConflictError
from fluxstrap.generator import MANAGED_MARKER
from fluxstrap.models import CommitIntent, CommitResult, ManifestSet, RepositoryRef
from fluxstrap.providers.base import GitProvider, changed_paths
from fluxstrap.request import BootstrapRequest


@dataclass
class SyncOutcome:
    """Result of synchronizing one manifest set."""
    kind: str
    action: str  # created, updated, unchanged, planned
    changed_paths: List[str] = field(default_factory=list)
    commit: Optional[CommitResult] = None

    @property
    def skipped(self) -> bool:
        return self.action == 'unchanged'


class ManifestSynchronizer:
    """Commits generated manifests that drifted from the repository."""

    def __init__(self, provider: GitProvider):
        self.provider = provider

    def _check_collisions(self, ref: RepositoryRef, branch: str, paths: List[str]):
        """
        Refuse to overwrite files this tool did not generate.

        Raises:
            ConflictError: If an existing file lacks the managed marker
        """
        marker = MANAGED_MARKER.encode('utf-8')
        for path in paths:
            content = self.provider.read_file(ref, branch, path)
            if content is not None and not content.startswith(marker):
                raise ConflictError(
                    f"{path} exists in {ref.full_name}@{branch} and was not generated by fluxstrap; "
                    f"remove or rename it to continue"
                )

    def sync(
        self,
        ref: RepositoryRef,
        manifests: ManifestSet,
        request: BootstrapRequest,
        ctx: RunContext
    ) -> SyncOutcome:
        """
        Commit the subset of manifests that differs from the branch tip.

        Args:
            ref: Target repository
            manifests: Freshly generated manifest set
            request: Bootstrap request (branch, path, author, dry-run)
            ctx: Run context

        Returns:
            SyncOutcome describing what was (or would be) committed

        Raises:
            ConflictError: If a generated path collides with an unmanaged file
        """
        branch = request.repository.branch
        path = request.manifests_path

        current = self.provider.list_file_hashes(ref, branch, path) if ref.exists else {}
        changed = changed_paths(manifests, current)
        if not changed:
            ctx.logger.info(f"{manifests.kind} manifests are up to date in {ref.full_name}@{branch}")
            return SyncOutcome(kind=manifests.kind, action='unchanged')

        existing = [p for p in changed if p in current]
        self._check_collisions(ref, branch, existing)

        if request.dry_run:
            ctx.logger.info(f"[dry-run] Would commit {manifests.kind} manifests: {', '.join(changed)}")
            return SyncOutcome(kind=manifests.kind, action='planned', changed_paths=changed)

        intent = CommitIntent(
            files=manifests.subset(changed),
            branch=branch,
            path=path,
            author_name=request.author_name,
            author_email=request.author_email,
            message=f"{request.commit_message_prefix}: {manifests.kind} manifests",
        )
        if not self.provider.capabilities.supports_server_side_commit:
            ctx.logger.info(f"Committing {manifests.kind} manifests through a temporary clone of {ref.full_name}")
        result = self.provider.commit_files(ref, intent)
        if result.skipped:
            return SyncOutcome(kind=manifests.kind, action='unchanged', commit=result)

        ctx.logger.info(
            f"Committed {len(result.changed_paths or changed)} {manifests.kind} file(s) "
            f"to {ref.full_name}@{branch}: {result.sha}"
        )
        return SyncOutcome(
            kind=manifests.kind,
            action='updated' if existing else 'created',
            changed_paths=result.changed_paths or changed,
            commit=result,
        )
