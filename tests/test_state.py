"""Tests for manifest_opr.state module."""

import json
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from manifest_opr.state import (
    APPLIED,
    APPLYING,
    DESTROYED,
    DESTROYING,
    FAILED,
    PENDING,
    SKIPPED,
    NodeState,
    RunState,
)


class TestNodeState:
    """Tests for NodeState dataclass."""

    def test_defaults(self):
        state = NodeState(address='aws_vpc.main')
        assert state.status == PENDING
        assert state.resource_id is None
        assert state.duration is None
        assert not state.succeeded

    def test_start_apply(self):
        state = NodeState(address='aws_vpc.main', action='create')
        state.start()
        assert state.status == APPLYING
        assert state.started_at is not None

    def test_start_destroy(self):
        state = NodeState(address='aws_vpc.main', action='destroy')
        state.start()
        assert state.status == DESTROYING

    def test_complete(self):
        state = NodeState(address='aws_vpc.main', action='create')
        state.start()
        state.complete('vpc-1')
        assert state.status == APPLIED
        assert state.resource_id == 'vpc-1'
        assert state.duration >= 0
        assert state.succeeded

    def test_fail(self):
        state = NodeState(address='aws_vpc.main', action='create')
        state.start()
        state.fail('AccessDenied: no')
        assert state.status == FAILED
        assert state.error == 'AccessDenied: no'
        assert not state.succeeded

    def test_skip(self):
        state = NodeState(address='aws_subnet.a', action='create')
        state.skip("dependency 'aws_vpc.main' did not complete")
        assert state.status == SKIPPED
        assert 'aws_vpc.main' in state.error

    def test_mark_destroyed(self):
        state = NodeState(address='aws_vpc.main', action='destroy')
        state.start()
        state.mark_destroyed()
        assert state.status == DESTROYED
        assert state.succeeded

    def test_to_dict_omits_unset(self):
        state = NodeState(address='aws_vpc.main', action='create')
        assert state.to_dict() == {'address': 'aws_vpc.main', 'action': 'create', 'status': PENDING}


class TestRunState:
    """Tests for RunState class."""

    def test_add_and_get(self):
        run = RunState('app', 'apply')
        run.add_node('aws_vpc.main', 'create')
        assert run.get_node('aws_vpc.main').action == 'create'
        assert list(run.nodes) == ['aws_vpc.main']

    def test_empty_run_succeeds(self):
        run = RunState('app', 'apply')
        assert run.success
        assert run.summary() == 'nothing to do'

    def test_success_requires_all_nodes(self):
        run = RunState('app', 'apply')
        run.add_node('a.a', 'create').complete('1')
        node = run.add_node('b.b', 'create')
        assert not run.success
        node.complete('2')
        assert run.success

    def test_cancelled_is_not_success(self):
        run = RunState('app', 'apply')
        run.cancelled = True
        assert not run.success

    def test_summary(self):
        run = RunState('app', 'apply')
        run.add_node('a.a', 'create').complete('1')
        run.add_node('b.b', 'create').fail('boom')
        run.add_node('c.c', 'create').skip('dependency failed')
        run.add_node('d.d', 'destroy').mark_destroyed()
        assert run.summary() == '1 applied, 1 destroyed, 1 failed, 1 skipped'
        assert run.count(FAILED) == 1

    def test_to_dict(self):
        run = RunState('app', 'destroy')
        run.start()
        run.add_node('a.a', 'destroy').mark_destroyed()
        run.finish()
        data = json.loads(json.dumps(run.to_dict()))
        assert data['manifest'] == 'app'
        assert data['operation'] == 'destroy'
        assert data['success'] is True
        assert data['duration_seconds'] is not None
        assert data['nodes'][0]['status'] == DESTROYED
