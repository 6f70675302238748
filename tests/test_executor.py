"""Tests for manifest_opr.executor - parallel plan execution."""

import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from manifest_opr.engine import Engine
from manifest_opr.state import APPLIED, FAILED, SKIPPED
from providers.base import ProviderError, TransientProviderError
from providers.local import LocalCloudProvider


class ScriptedProvider(LocalCloudProvider):
    """Local provider with injectable failures.

    Args:
        fail_types: Resource types whose create raises ProviderError
        transient: Resource type -> number of TransientProviderErrors to raise first
        never_ready: If True, is_ready always returns False
        barrier: If set, every create waits on it before proceeding
        fail_delete_types: Resource types whose delete raises ProviderError
    """

    def __init__(self, path, fail_types=(), transient=None, never_ready=False, barrier=None,
                 fail_delete_types=()):
        super().__init__(path)
        self.fail_types = set(fail_types)
        self.fail_delete_types = set(fail_delete_types)
        self.transient = dict(transient or {})
        self.never_ready = never_ready
        self.barrier = barrier
        self.create_calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self._count_lock = threading.Lock()

    def create(self, type_name, attributes):
        with self._count_lock:
            self.create_calls.append(type_name)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.barrier is not None:
                self.barrier.wait()
            if type_name in self.fail_types:
                raise ProviderError('AccessDenied', f'not allowed to create {type_name}')
            if self.transient.get(type_name, 0) > 0:
                self.transient[type_name] -= 1
                raise TransientProviderError('Throttling', 'rate exceeded')
            return super().create(type_name, attributes)
        finally:
            with self._count_lock:
                self.active -= 1

    def delete(self, type_name, resource_id):
        if type_name in self.fail_delete_types:
            raise ProviderError('AccessDenied', f'not allowed to delete {type_name}')
        super().delete(type_name, resource_id)

    def is_ready(self, type_name, resource_id):
        if self.never_ready:
            return False
        return super().is_ready(type_name, resource_id)


NETWORK = [
    {'type': 'aws_vpc', 'name': 'main', 'attributes': {'cidr_block': '10.0.0.0/16'}},
    {'type': 'aws_s3_bucket', 'name': 'logs', 'attributes': {'bucket': 'logs'}},
    {'type': 'aws_subnet', 'name': 'a', 'attributes': {
        'vpc_id': '${aws_vpc.main.id}', 'cidr_block': '10.0.1.0/24'}},
]

TWO_BUCKETS = [
    {'type': 'aws_s3_bucket', 'name': 'a', 'attributes': {'bucket': 'a'}},
    {'type': 'aws_s3_bucket', 'name': 'b', 'attributes': {'bucket': 'b'}},
]


@pytest.fixture
def scripted(config):
    """Factory building an Engine around a ScriptedProvider."""
    def _make(manifest, **kwargs):
        provider = ScriptedProvider(config.cloud_path(), **kwargs)
        return Engine(config, manifest, provider=provider), provider
    return _make


class TestApply:
    """Successful execution."""

    def test_all_nodes_applied(self, make_manifest, make_engine):
        engine = make_engine(make_manifest(NETWORK))
        success, plan, run_state = engine.apply()

        assert success
        assert {n.status for n in run_state.nodes.values()} == {APPLIED}
        document = engine.backend.load()
        assert set(document.resources) == {'aws_vpc.main', 'aws_s3_bucket.logs', 'aws_subnet.a'}
        subnet = document.get('aws_subnet.a')
        assert subnet.attributes['vpc_id'] == document.get('aws_vpc.main').id
        assert subnet.dependencies == ['aws_vpc.main']

    def test_node_resource_ids_recorded(self, make_manifest, make_engine):
        engine = make_engine(make_manifest(NETWORK))
        _, _, run_state = engine.apply()
        assert run_state.get_node('aws_s3_bucket.logs').resource_id == 'logs'

    def test_state_saved_after_each_node(self, make_manifest, make_engine):
        engine = make_engine(make_manifest(NETWORK))
        sizes = []
        original = engine.backend.save

        def spy(document):
            sizes.append(len(document.resources))
            original(document)

        engine.backend.save = spy
        engine.apply()
        # One persisted resource at a time, never a single bulk write
        assert sizes[0] == 1
        assert sizes == sorted(sizes)
        assert sizes[-1] == 3

    def test_readiness_re_read_persisted(self, make_manifest, make_engine):
        engine = make_engine(make_manifest([
            {'type': 'aws_ecs_cluster', 'name': 'main', 'attributes': {'name': 'c'}},
        ]))
        engine.apply()
        assert engine.backend.load().get('aws_ecs_cluster.main').attributes['status'] == 'ACTIVE'

    def test_outputs_saved(self, make_manifest, make_engine):
        engine = make_engine(make_manifest(
            NETWORK, outputs={'vpc': '${aws_vpc.main.id}'},
        ))
        engine.apply()
        outputs = engine.backend.load().outputs
        assert outputs['vpc'].startswith('vpc-')

    def test_no_changes_leaves_serial(self, make_manifest, make_engine):
        engine = make_engine(make_manifest(NETWORK))
        engine.apply()
        serial = engine.backend.load().serial
        success, plan, run_state = engine.apply()
        assert success
        assert not plan.has_changes
        assert run_state.summary() == 'nothing to do'
        assert engine.backend.load().serial == serial


class TestParallelism:
    """Independent nodes run concurrently, bounded by parallelism."""

    def test_independent_nodes_overlap(self, config, make_manifest, scripted):
        config.parallelism = 2
        engine, provider = scripted(make_manifest(TWO_BUCKETS),
                                    barrier=threading.Barrier(2, timeout=5))
        success, _, _ = engine.apply()
        assert success
        assert provider.max_active == 2

    def test_parallelism_one_serializes(self, config, make_manifest, scripted):
        config.parallelism = 1
        engine, provider = scripted(make_manifest(TWO_BUCKETS))
        success, _, _ = engine.apply()
        assert success
        assert provider.max_active == 1


class TestFailures:
    """Failure propagation, on_error, retries and readiness."""

    def test_failure_skips_dependents_only(self, make_manifest, scripted):
        engine, _ = scripted(make_manifest(NETWORK), fail_types={'aws_vpc'})
        success, _, run_state = engine.apply()

        assert not success
        vpc = run_state.get_node('aws_vpc.main')
        assert vpc.status == FAILED
        assert 'AccessDenied' in vpc.error
        subnet = run_state.get_node('aws_subnet.a')
        assert subnet.status == SKIPPED
        assert 'aws_vpc.main' in subnet.error
        assert run_state.get_node('aws_s3_bucket.logs').status == APPLIED
        assert set(engine.backend.load().resources) == {'aws_s3_bucket.logs'}

    def test_on_error_stop(self, config, make_manifest, scripted):
        config.on_error = 'stop'
        config.parallelism = 1
        engine, provider = scripted(make_manifest(NETWORK), fail_types={'aws_vpc'})
        success, _, run_state = engine.apply()

        assert not success
        assert provider.create_calls == ['aws_vpc']
        assert run_state.get_node('aws_s3_bucket.logs').status == SKIPPED
        assert 'stopped' in run_state.get_node('aws_s3_bucket.logs').error

    def test_transient_error_retried(self, make_manifest, scripted):
        engine, provider = scripted(make_manifest(TWO_BUCKETS[:1]),
                                    transient={'aws_s3_bucket': 1})
        success, _, _ = engine.apply()
        assert success
        assert provider.create_calls == ['aws_s3_bucket', 'aws_s3_bucket']

    def test_transient_error_exhausted(self, config, make_manifest, scripted):
        engine, provider = scripted(make_manifest(TWO_BUCKETS[:1]),
                                    transient={'aws_s3_bucket': 10})
        success, _, run_state = engine.apply()
        assert not success
        # retries: 2 in the workspace config
        assert len(provider.create_calls) == config.retries + 1
        assert 'Throttling' in run_state.get_node('aws_s3_bucket.a').error

    def test_readiness_timeout(self, config, make_manifest, scripted):
        config.ready_timeout = 0
        engine, _ = scripted(make_manifest(TWO_BUCKETS[:1]), never_ready=True)
        success, _, run_state = engine.apply()

        assert not success
        assert 'did not become ready' in run_state.get_node('aws_s3_bucket.a').error
        # Created resources are tracked even when the readiness wait fails
        assert engine.backend.load().get('aws_s3_bucket.a') is not None

    def test_cancel_before_start(self, make_manifest, make_engine):
        engine = make_engine(make_manifest(NETWORK))
        cancel = threading.Event()
        cancel.set()
        success, _, run_state = engine.apply(cancel=cancel)

        assert not success
        assert run_state.cancelled
        assert run_state.count(SKIPPED) == 3
        assert engine.backend.load().is_empty


class TestDestroyExecution:
    """Destroy runs dependents first."""

    def test_destroy_empties_state_and_cloud(self, make_manifest, make_engine, provider):
        engine = make_engine(make_manifest(NETWORK))
        engine.apply()
        vpc_id = engine.backend.load().get('aws_vpc.main').id

        success, plan, run_state = engine.destroy()
        assert success
        assert [c.address for c in plan.ordered()].index('aws_subnet.a') < \
            [c.address for c in plan.ordered()].index('aws_vpc.main')
        assert engine.backend.load().is_empty
        assert engine.backend.load().outputs == {}
        assert provider.read('aws_vpc', vpc_id) is None

    def test_removed_node_destroyed_on_apply(self, make_manifest, make_engine, provider):
        make_engine(make_manifest(NETWORK)).apply()
        engine = make_engine(make_manifest(NETWORK[:2]))
        success, plan, _ = engine.apply()
        assert success
        assert plan.summary()['destroy'] == 1
        assert 'aws_subnet.a' not in engine.backend.load().resources

    def test_replace_removes_old_dependents_before_dependency(self, make_manifest, make_engine):
        make_engine(make_manifest(NETWORK)).apply()
        moved = [dict(r, attributes=dict(r['attributes'])) for r in NETWORK]
        moved[0]['attributes']['cidr_block'] = '10.1.0.0/16'
        moved[2]['attributes']['cidr_block'] = '10.1.1.0/24'
        engine = make_engine(make_manifest(moved))

        success, plan, run_state = engine.apply()
        assert success, run_state.to_dict()
        assert plan.get('aws_vpc.main').action == 'replace'
        assert plan.get('aws_subnet.a').action == 'replace'
        document = engine.backend.load()
        assert document.get('aws_vpc.main').attributes['cidr_block'] == '10.1.0.0/16'
        assert document.get('aws_subnet.a').attributes['vpc_id'] == document.get('aws_vpc.main').id
        assert run_state.get_node('aws_vpc.main').status == APPLIED

    def test_failed_replace_removal_skips_dependents(self, make_manifest, make_engine, scripted):
        make_engine(make_manifest(NETWORK)).apply()
        old_subnet = make_engine(make_manifest(NETWORK)).backend.load().get('aws_subnet.a').id
        moved = [dict(r, attributes=dict(r['attributes'])) for r in NETWORK]
        moved[0]['attributes']['cidr_block'] = '10.1.0.0/16'
        moved[2]['attributes']['cidr_block'] = '10.1.1.0/24'
        engine, provider = scripted(make_manifest(moved), fail_delete_types=['aws_vpc'])

        success, _, run_state = engine.apply()
        assert not success
        assert run_state.get_node('aws_vpc.main').status == FAILED
        assert run_state.get_node('aws_subnet.a').status == SKIPPED
        assert provider.create_calls == []
        assert provider.read('aws_subnet', old_subnet) is None
        assert 'aws_subnet.a' not in engine.backend.load().resources


class TestDryRun:
    """Dry-run prints the plan and changes nothing."""

    def test_preview(self, make_manifest, make_engine, capsys):
        engine = make_engine(make_manifest(NETWORK))
        success, plan, run_state = engine.apply(dry_run=True)

        assert success
        out = capsys.readouterr().out
        assert 'DRY-RUN APPLY: test' in out
        assert '+ aws_vpc.main' in out
        assert 'Plan: 3 to create' in out
        assert engine.backend.load().is_empty
        assert not engine.backend.path.exists()
