"""Tests for the CLI entry points (cli.py, manifest_opr/cli.py, state_cli.py)."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import cli
from config import ConfigError
from manifest import Manifest
from manifest_opr import cli as manifest_cli
from manifest_opr.backend import LocalStateBackend, LockInfo
import state_cli


def _args(workspace, *rest):
    return ['-M', 'ecs-service', '-W', str(workspace), *rest]


@pytest.fixture
def applied(workspace, capsys):
    """Workspace with the sample stack applied."""
    rc = manifest_cli.apply_main(_args(workspace))
    assert rc == 0
    capsys.readouterr()
    return workspace


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert cli.main([]) == 0
        assert 'Usage: iac-engine <noun> <action>' in capsys.readouterr().out

    def test_unknown_noun(self, capsys):
        assert cli.main(['frobnicate']) == 1
        assert "Unknown command 'frobnicate'" in capsys.readouterr().out

    def test_manifest_without_action(self, capsys):
        assert cli.main(['manifest']) == 1
        assert 'Actions:' in capsys.readouterr().out

    def test_unknown_manifest_action(self, capsys):
        assert cli.main(['manifest', 'import']) == 1
        assert "Unknown manifest action 'import'" in capsys.readouterr().out

    @patch('cli.subprocess.run', side_effect=OSError('no git'))
    def test_version_outside_git(self, mock_run, capsys):
        assert cli.main(['--version']) == 0
        assert capsys.readouterr().out.strip() == 'iac-engine dev'

    def test_dispatch_to_manifest_validate(self, workspace, capsys):
        assert cli.main(['manifest', 'validate', *_args(workspace)]) == 0
        assert "Manifest 'ecs-service' is valid" in capsys.readouterr().out


class TestParseVars:
    """Tests for --var parsing."""

    def _manifest(self):
        return Manifest.from_dict({
            'name': 'v',
            'variables': {'port': 80, 'tag': 'a', 'public': {'default': False}},
            'resources': [],
        })

    def test_coerced_to_default_type(self):
        values = manifest_cli.parse_vars(['port=8080', 'tag=2.0', 'public=yes'], self._manifest())
        assert values == {'port': 8080, 'tag': '2.0', 'public': True}

    def test_value_may_contain_equals(self):
        assert manifest_cli.parse_vars(['tag=a=b'], self._manifest()) == {'tag': 'a=b'}

    def test_malformed_pair(self):
        with pytest.raises(ConfigError):
            manifest_cli.parse_vars(['port'], self._manifest())

    def test_wrong_type(self):
        with pytest.raises(ConfigError) as exc_info:
            manifest_cli.parse_vars(['port=eighty'], self._manifest())
        assert "Variable 'port'" in str(exc_info.value)


class TestPlan:
    """Tests for 'manifest plan'."""

    def test_plan_lists_creates(self, workspace, capsys):
        assert manifest_cli.plan_main(_args(workspace)) == 0
        out = capsys.readouterr().out
        assert "Plan for manifest 'ecs-service'" in out
        assert '+ aws_ecs_service.app (create)' in out

    def test_detailed_exitcode(self, workspace, capsys):
        assert manifest_cli.plan_main(_args(workspace, '--detailed-exitcode')) == 2

    def test_detailed_exitcode_no_changes(self, applied, capsys):
        assert manifest_cli.plan_main(_args(applied, '--detailed-exitcode')) == 0
        assert 'No changes.' in capsys.readouterr().out

    def test_var_changes_plan(self, applied, capsys):
        rc = manifest_cli.plan_main(_args(applied, '--var', 'image_tag=2.0.0', '--json-output'))
        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert data['summary']['replace'] == 1
        assert data['summary']['update'] == 1

    def test_undeclared_var(self, workspace, capsys):
        assert manifest_cli.plan_main(_args(workspace, '--var', 'nope=1')) == 1
        assert 'Undeclared variable' in capsys.readouterr().err

    def test_missing_manifest_source(self, workspace, capsys):
        assert manifest_cli.plan_main(['-W', str(workspace)]) == 1
        assert 'specify a manifest' in capsys.readouterr().err

    def test_preflight_failure(self, workspace, capsys):
        bad = json.dumps({'name': 'bad', 'resources': [
            {'type': 'aws_ecs_cluster', 'name': 'c', 'attributes': {}},
        ]})
        rc = manifest_cli.plan_main(['--manifest-json', bad, '-W', str(workspace)])
        assert rc == 1
        assert 'missing required attribute(s): name' in capsys.readouterr().err

    def test_plan_writes_nothing(self, workspace, capsys):
        manifest_cli.plan_main(_args(workspace))
        assert not (workspace / '.states' / 'ecs-service' / 'state.json').exists()
        assert not (workspace / '.cloud' / 'resources.json').exists()


class TestApplyDestroy:
    """Tests for 'manifest apply' and 'manifest destroy'."""

    def test_apply_json_output(self, workspace, capsys):
        rc = manifest_cli.apply_main(_args(workspace, '--json-output'))
        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert data['verb'] == 'apply'
        assert data['success'] is True
        assert data['plan']['create'] == 16
        assert data['outputs']['lock_table'] == 'web-locks'
        assert all(n['status'] == 'applied' for n in data['nodes'])

    def test_apply_prints_outputs(self, workspace, capsys):
        assert manifest_cli.apply_main(_args(workspace)) == 0
        out = capsys.readouterr().out
        assert 'Apply complete' in out
        assert 'lock_table = web-locks' in out

    def test_apply_dry_run(self, workspace, capsys):
        assert manifest_cli.apply_main(_args(workspace, '--dry-run')) == 0
        assert 'DRY-RUN APPLY: ecs-service' in capsys.readouterr().out
        assert not (workspace / '.cloud' / 'resources.json').exists()

    def test_apply_report(self, workspace, tmp_path, capsys):
        report_dir = tmp_path / 'reports'
        assert manifest_cli.apply_main(_args(workspace, '--report-dir', str(report_dir))) == 0
        names = sorted(p.name for p in report_dir.iterdir())
        assert len(names) == 2
        assert names[0].endswith('.ecs-service.apply.passed.json')
        assert names[1].endswith('.ecs-service.apply.passed.md')

    def test_dry_run_writes_no_report(self, workspace, tmp_path, capsys):
        report_dir = tmp_path / 'reports'
        assert manifest_cli.apply_main(_args(workspace, '--dry-run', '--report-dir', str(report_dir))) == 0
        assert 'DRY-RUN APPLY' in capsys.readouterr().out
        assert not report_dir.exists()

    def test_invalid_parallelism(self, workspace, capsys):
        assert manifest_cli.apply_main(_args(workspace, '--parallelism', '0')) == 1

    def test_destroy_requires_confirmation(self, applied, capsys):
        with patch('builtins.input', return_value='n'):
            assert manifest_cli.destroy_main(_args(applied)) == 1
        assert 'Aborted.' in capsys.readouterr().out
        assert not LocalStateBackend(applied / '.states' / 'ecs-service' / 'state.json').load().is_empty

    def test_destroy_yes(self, applied, capsys):
        assert manifest_cli.destroy_main(_args(applied, '--yes')) == 0
        assert 'Destroy complete' in capsys.readouterr().out
        assert LocalStateBackend(applied / '.states' / 'ecs-service' / 'state.json').load().is_empty

    def test_locked_state(self, workspace, capsys):
        backend = LocalStateBackend(workspace / '.states' / 'ecs-service' / 'state.json')
        with backend.lock('apply'):
            assert manifest_cli.apply_main(_args(workspace)) == 1
        assert 'locked' in capsys.readouterr().err.lower()


class TestValidateAndGraph:
    """Tests for 'manifest validate' and 'manifest graph'."""

    def test_validate_warnings(self, workspace, capsys):
        assert manifest_cli.validate_main(_args(workspace)) == 0
        out = capsys.readouterr().out
        assert 'egress allows all protocols' in out
        assert 'open to the internet' in out
        assert '(18 nodes)' in out

    def test_validate_cycle(self, workspace, capsys):
        cyclic = json.dumps({'name': 'c', 'resources': [
            {'type': 'aws_vpc', 'name': 'a', 'attributes': {'cidr_block': '${aws_vpc.b.cidr_block}'}},
            {'type': 'aws_vpc', 'name': 'b', 'attributes': {'cidr_block': '${aws_vpc.a.cidr_block}'}},
        ]})
        assert manifest_cli.validate_main(['--manifest-json', cyclic, '-W', str(workspace)]) == 1
        assert 'Cycle detected' in capsys.readouterr().err

    def test_graph_levels(self, workspace, capsys):
        assert manifest_cli.graph_main(_args(workspace, '--levels')) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert lines[0].startswith('[0] data.aws_caller_identity.current, data.aws_region.current')
        assert 'aws_ecs_service.app' in lines[-1]

    def test_graph_dot(self, workspace, capsys):
        assert manifest_cli.graph_main(_args(workspace)) == 0
        out = capsys.readouterr().out
        assert '"aws_ecs_service.app" -> "aws_ecs_cluster.main";' in out

    def test_graph_json(self, workspace, capsys):
        assert manifest_cli.graph_main(_args(workspace, '--json-output')) == 0
        data = json.loads(capsys.readouterr().out)
        service = next(n for n in data['nodes'] if n['address'] == 'aws_ecs_service.app')
        assert 'aws_ecs_task_definition.app' in service['dependencies']


class TestStateCli:
    """Tests for 'state' subcommands."""

    def test_list_empty(self, workspace, capsys):
        assert state_cli.main(['-M', 'ecs-service', '-W', str(workspace), 'list']) == 0
        assert 'State is empty.' in capsys.readouterr().out

    def test_list(self, applied, capsys):
        assert state_cli.main(['-M', 'ecs-service', '-W', str(applied), 'list']) == 0
        out = capsys.readouterr().out
        assert 'aws_s3_bucket.state' in out
        assert 'web-state-123456789012' in out

    def test_show(self, applied, capsys):
        rc = state_cli.main(['-M', 'ecs-service', '-W', str(applied), 'show', 'aws_ecr_repository.app'])
        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert data['address'] == 'aws_ecr_repository.app'
        assert data['attributes']['name'] == 'web'

    def test_show_missing(self, applied, capsys):
        rc = state_cli.main(['-M', 'ecs-service', '-W', str(applied), 'show', 'aws_vpc.other'])
        assert rc == 1

    def test_pull(self, applied, capsys):
        assert state_cli.main(['-M', 'ecs-service', '-W', str(applied), 'pull']) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['version'] == 1
        assert 'aws_ecs_service.app' in data['resources']

    def test_unlock(self, workspace, capsys):
        backend = LocalStateBackend(workspace / '.states' / 'ecs-service' / 'state.json')
        info = LockInfo.new('apply')
        backend._acquire(info)
        rc = state_cli.main(['-M', 'ecs-service', '-W', str(workspace), 'unlock', info.id, '--yes'])
        assert rc == 0
        assert backend.read_lock() is None

    def test_unlock_wrong_id(self, workspace, capsys):
        backend = LocalStateBackend(workspace / '.states' / 'ecs-service' / 'state.json')
        backend._acquire(LockInfo.new('apply'))
        rc = state_cli.main(['-M', 'ecs-service', '-W', str(workspace), 'unlock', 'wrong', '--yes'])
        assert rc == 1
        assert backend.read_lock() is not None

    def test_no_action(self, workspace, capsys):
        assert state_cli.main(['-M', 'ecs-service', '-W', str(workspace)]) == 1
