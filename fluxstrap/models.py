"""
Data carried between bootstrap steps.

Everything here lives for the duration of one run; the only state that
outlives a run is the cluster secret and the committed repository content.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional


def git_blob_sha(content: bytes) -> str:
    """
    Compute the Git blob object id of some content.

    Hosting backends expose blob ids in their tree listings, so comparing
    against this value needs no content download.
    """
    header = f"blob {len(content)}\0".encode('utf-8')
    return hashlib.sha1(header + content).hexdigest()


@dataclass
class RepositoryRef:
    """A remote repository as observed on the provider."""
    owner: str
    name: str
    default_branch: str
    visibility: str
    exists: bool = False
    project_id: Optional[str] = None  # backend-specific id (GitLab numeric project id)
    ssh_url: Optional[str] = None
    http_url: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class DeployKey:
    """A public key registered on a repository."""
    key_id: str
    title: str
    public_key: str
    fingerprint: str
    read_only: bool = True


@dataclass
class DeployCredential:
    """Credential the cluster uses to pull from the repository."""
    kind: str  # ssh, token
    fingerprint: str
    secret_namespace: str
    secret_name: str
    public_key: Optional[str] = None
    key_id: Optional[str] = None
    created: bool = False
    registered: bool = False


@dataclass(frozen=True)
class ManifestFile:
    """One generated file destined for the repository."""
    path: str
    content: bytes
    appliable: bool = True

    @property
    def sha(self) -> str:
        return git_blob_sha(self.content)


@dataclass(frozen=True)
class ManifestSet:
    """Ordered, path-keyed collection of generated files."""
    kind: str
    files: tuple = ()

    def __post_init__(self):
        paths = [f.path for f in self.files]
        if len(paths) != len(set(paths)):
            raise ValueError(f"Duplicate paths in {self.kind} manifest set")

    def __iter__(self) -> Iterator[ManifestFile]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    def hashes(self) -> Dict[str, str]:
        return {f.path: f.sha for f in self.files}

    def subset(self, paths: Iterable[str]) -> 'ManifestSet':
        """Return the files whose path is in paths, preserving order."""
        wanted = set(paths)
        return ManifestSet(kind=self.kind, files=tuple(f for f in self.files if f.path in wanted))

    def appliable(self) -> 'ManifestSet':
        """Return only the files that hold cluster objects."""
        return ManifestSet(kind=self.kind, files=tuple(f for f in self.files if f.appliable))


@dataclass
class CommitIntent:
    """A commit to be made because generated content drifted from the branch."""
    files: ManifestSet
    branch: str
    path: str
    author_name: str
    author_email: str
    message: str


@dataclass
class CommitResult:
    """Outcome of consuming a CommitIntent."""
    sha: Optional[str]
    skipped: bool
    changed_paths: List[str] = field(default_factory=list)


@dataclass
class AppliedObjectRef:
    """A cluster object touched by an apply."""
    api_version: str
    kind: str
    name: str
    namespace: Optional[str] = None
    changed: bool = True

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass
class ConvergenceTarget:
    """A cluster object plus the condition that must hold for it to count as ready."""
    api_version: str
    kind: str
    name: str
    namespace: Optional[str]
    predicate: Callable[[Dict[str, Any]], Any]

    @property
    def display_name(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"
