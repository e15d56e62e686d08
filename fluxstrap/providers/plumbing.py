"""
Git plumbing used by the generic server provider.

Every operation works in a throwaway directory that is removed before the
call returns, so no local working tree outlives a provider call.
"""
import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from fluxstrap.errors import AuthError, ConflictError, ProviderError, TransientError


logger = logging.getLogger(__name__)

AUTH_MARKERS = (
    'authentication failed',
    'permission denied',
    'could not read username',
    'access denied',
    'invalid username or password',
)
TRANSIENT_MARKERS = (
    'could not resolve host',
    'connection timed out',
    'connection refused',
    'connection reset',
    'operation timed out',
    'the remote end hung up unexpectedly',
    'early eof',
)
NOT_FOUND_MARKERS = (
    'repository not found',
    'does not appear to be a git repository',
    'not found',
)


class GitCommandError(ProviderError):
    """Raised when a git command fails for a reason that fits no other class."""
    pass


class GitPlumbing(ABC):
    """Clone/commit/push primitives against a remote URL."""

    @abstractmethod
    def ls_remote(self, url: str) -> Optional[Dict[str, str]]:
        """
        List remote refs.

        Returns:
            Mapping of ref name to sha (including 'HEAD' symref target under
            'symref:HEAD'), or None if the repository does not exist
        """
        pass

    @abstractmethod
    def list_tree(self, url: str, branch: str, path: str) -> Dict[str, str]:
        """Blob ids of files under path at the branch tip."""
        pass

    @abstractmethod
    def read_blob(self, url: str, branch: str, path: str) -> Optional[bytes]:
        """Content of one file at the branch tip, or None."""
        pass

    @abstractmethod
    def commit_and_push(
        self,
        url: str,
        branch: str,
        base_branch: Optional[str],
        files: Dict[str, bytes],
        message: str,
        author_name: str,
        author_email: str
    ) -> str:
        """Write files, commit once and push to branch. Returns the new commit sha."""
        pass


def classify_git_failure(command: List[str], stderr: str) -> Exception:
    """Map git stderr output to a fluxstrap error."""
    lowered = stderr.lower()
    summary = f"git {command[1] if len(command) > 1 else ''} failed: {stderr.strip()[:300]}"
    if any(marker in lowered for marker in AUTH_MARKERS):
        return AuthError(summary)
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientError(summary)
    if '[rejected]' in lowered or 'non-fast-forward' in lowered or 'fetch first' in lowered:
        return ConflictError(summary)
    return GitCommandError(summary)


class SubprocessGitPlumbing(GitPlumbing):
    """GitPlumbing implemented with the git command line."""

    def __init__(self, git_binary: str = 'git', timeout: float = 120.0):
        self.git_binary = git_binary
        self.timeout = timeout

    def _run(self, args: List[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        command = [self.git_binary] + args
        env = dict(os.environ, GIT_TERMINAL_PROMPT='0')
        try:
            result = subprocess.run(
                command,
                cwd=cwd,
                capture_output=True,
                env=env,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"git {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise GitCommandError(f"git binary not found: {self.git_binary}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace')
            raise classify_git_failure(command, stderr)
        return result

    def _workdir(self) -> Path:
        return Path(tempfile.mkdtemp(prefix='fluxstrap-'))

    def _clone(self, url: str, branch: str, workdir: Path):
        self._run(['clone', '--quiet', '--depth', '1', '--branch', branch, url, str(workdir / 'repo')])

    def ls_remote(self, url: str) -> Optional[Dict[str, str]]:
        try:
            result = self._run(['ls-remote', '--symref', url])
        except GitCommandError as e:
            if any(marker in str(e).lower() for marker in NOT_FOUND_MARKERS):
                return None
            raise

        refs = {}
        for line in result.stdout.decode('utf-8').splitlines():
            if not line.strip():
                continue
            left, _, name = line.partition('\t')
            if left.startswith('ref: '):
                refs[f"symref:{name}"] = left[len('ref: '):]
            else:
                refs[name] = left
        return refs

    def list_tree(self, url: str, branch: str, path: str) -> Dict[str, str]:
        workdir = self._workdir()
        try:
            self._clone(url, branch, workdir)
            args = ['ls-tree', '-r', 'HEAD']
            if path:
                args += ['--', path]
            result = self._run(args, cwd=workdir / 'repo')
            hashes = {}
            for line in result.stdout.decode('utf-8').splitlines():
                meta, _, file_path = line.partition('\t')
                parts = meta.split()
                if len(parts) == 3 and parts[1] == 'blob':
                    hashes[file_path] = parts[2]
            return hashes
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def read_blob(self, url: str, branch: str, path: str) -> Optional[bytes]:
        workdir = self._workdir()
        try:
            self._clone(url, branch, workdir)
            try:
                return self._run(['show', f'HEAD:{path}'], cwd=workdir / 'repo').stdout
            except GitCommandError:
                return None
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def commit_and_push(
        self,
        url: str,
        branch: str,
        base_branch: Optional[str],
        files: Dict[str, bytes],
        message: str,
        author_name: str,
        author_email: str
    ) -> str:
        workdir = self._workdir()
        repo_dir = workdir / 'repo'
        try:
            if base_branch:
                self._clone(url, base_branch, workdir)
                self._run(['checkout', '--quiet', '-B', branch], cwd=repo_dir)
            else:
                # Empty remote: start an orphan history
                repo_dir.mkdir(parents=True)
                self._run(['init', '--quiet'], cwd=repo_dir)
                self._run(['checkout', '--quiet', '-b', branch], cwd=repo_dir)

            for rel_path, content in files.items():
                target = repo_dir / rel_path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)

            self._run(['add', '--'] + list(files.keys()), cwd=repo_dir)
            self._run([
                '-c', f'user.name={author_name}',
                '-c', f'user.email={author_email}',
                'commit', '--quiet', '-m', message,
            ], cwd=repo_dir)
            self._run(['push', '--quiet', url, f'HEAD:refs/heads/{branch}'], cwd=repo_dir)
            sha = self._run(['rev-parse', 'HEAD'], cwd=repo_dir).stdout.decode('utf-8').strip()
            logger.debug(f"Pushed {sha[:12]} to {branch}")
            return sha
        finally:
            shutil.rmtree(workdir, ignore_errors=True)


def split_branch_refs(refs: Dict[str, str]) -> Tuple[Optional[str], Dict[str, str]]:
    """
    Split ls-remote output into (default branch, {branch: sha}).
    """
    branches = {
        name[len('refs/heads/'):]: sha
        for name, sha in refs.items()
        if name.startswith('refs/heads/')
    }
    head = refs.get('symref:HEAD')
    default = head[len('refs/heads/'):] if head and head.startswith('refs/heads/') else None
    return default, branches
