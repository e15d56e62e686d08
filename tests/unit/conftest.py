"""
Pytest configuration for unit tests.

Sets up shared fixtures: in-memory provider and cluster, upstream-style
component manifests and a request builder.
"""
import pytest
import yaml

from fluxstrap.context import RunContext
from fluxstrap.request import DEFAULT_COMPONENTS, EXTRA_COMPONENTS, BootstrapRequest

from fakes import KNOWN_HOSTS, FakeCluster, FakeProvider, component_documents


@pytest.fixture
def components_dir(tmp_path):
    """Directory with upstream-style manifests for every known component."""
    directory = tmp_path / "manifests"
    directory.mkdir()
    for component in DEFAULT_COMPONENTS + EXTRA_COMPONENTS:
        with open(directory / f"{component}.yaml", 'w') as f:
            yaml.safe_dump_all(component_documents(component), f)
    return directory


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_cluster():
    return FakeCluster()


@pytest.fixture
def ctx():
    return RunContext()


@pytest.fixture
def make_request():
    """Build a BootstrapRequest with test defaults."""

    def _make(**overrides):
        data = {
            'namespace': 'flux-system',
            'repository': {'owner': 'acme', 'name': 'fleet', 'branch': 'main', 'path': 'clusters/prod'},
            'provider': 'github',
            'known_hosts': KNOWN_HOSTS,
            'poll_interval': 0.01,
            'ready_timeout': 5,
            'timeout': 60,
        }
        data.update(overrides)
        return BootstrapRequest.from_dict(data)

    return _make
