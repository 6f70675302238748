"""Shared pytest fixtures for iac-engine tests."""

import shutil
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

REPO_ROOT = Path(__file__).parent.parent
SAMPLE_MANIFEST = REPO_ROOT / 'manifests' / 'ecs-service.yaml'


@pytest.fixture
def workspace(tmp_path):
    """Create a temporary engine workspace.

    Creates:
    - engine.yaml (no readiness delay, no retry backoff)
    - manifests/ecs-service.yaml (the sample stack)
    """
    (tmp_path / 'manifests').mkdir()
    shutil.copy(SAMPLE_MANIFEST, tmp_path / 'manifests' / 'ecs-service.yaml')
    (tmp_path / 'engine.yaml').write_text("""
state:
  backend: local
provider:
  name: local
parallelism: 4
retries: 2
retry_backoff: 0
ready_timeout: 5
ready_interval: 0
on_error: continue
""")
    return tmp_path


@pytest.fixture
def config(workspace):
    """EngineConfig for the temporary workspace."""
    from config import EngineConfig
    return EngineConfig(workspace=workspace)


@pytest.fixture
def sample_manifest(config):
    """The ecs-service sample manifest."""
    from manifest import ManifestLoader
    return ManifestLoader(config.manifests_dir).load('ecs-service')


@pytest.fixture
def provider(config):
    """Local simulated provider backed by the workspace."""
    from providers.local import LocalCloudProvider
    return LocalCloudProvider(config.cloud_path())


@pytest.fixture
def make_manifest():
    """Factory building a Manifest from resource dicts."""
    from manifest import Manifest

    def _make(resources, name='test', data=None, variables=None, outputs=None):
        doc = {'name': name, 'resources': resources}
        if data:
            doc['data'] = data
        if variables:
            doc['variables'] = variables
        if outputs:
            doc['outputs'] = outputs
        return Manifest.from_dict(doc)

    return _make


@pytest.fixture
def make_engine(config, provider):
    """Factory building an Engine against the workspace provider and state."""
    from manifest_opr.engine import Engine

    def _make(manifest, variables=None):
        return Engine(config, manifest, provider=provider, variables=variables)

    return _make
