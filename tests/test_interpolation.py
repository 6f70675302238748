"""Tests for interpolation.py - reference parsing and resolution."""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from interpolation import (
    UNKNOWN,
    InterpolationError,
    Reference,
    Resolver,
    contains_unknown,
    find_references,
    node_references,
    parse_reference,
    render_json,
)

NODES = {
    'aws_s3_bucket.state': {'id': 'b1', 'arn': 'arn:aws:s3:::b1', 'tags': {'Name': 'state'}},
    'aws_ecs_service.app': {'ports': [{'port': 80}, {'port': 443}], 'desired_count': 2},
    'data.aws_region.current': {'name': 'us-east-1'},
    'aws_ecs_task_definition.app': UNKNOWN,
}


def _resolver(variables=None):
    return Resolver(variables or {'app': 'web', 'count': 3}, NODES.get)


class TestParseReference:
    """Tests for parse_reference."""

    def test_resource(self):
        ref = parse_reference('aws_s3_bucket.state.arn')
        assert ref == Reference('resource', 'aws_s3_bucket.state', ('arn',))

    def test_data(self):
        ref = parse_reference('data.aws_region.current.name')
        assert ref.kind == 'data'
        assert ref.address == 'data.aws_region.current'

    def test_variable_with_path(self):
        ref = parse_reference('var.settings.port')
        assert ref == Reference('var', 'var.settings', ('port',))

    def test_index(self):
        ref = parse_reference('aws_ecs_service.app.ports[1].port')
        assert ref.path == ('ports', 1, 'port')
        assert str(ref) == 'aws_ecs_service.app.ports[1].port'

    @pytest.mark.parametrize('expr', [
        'aws_s3_bucket',
        'aws_s3_bucket.state',
        'data.aws_region.current',
        'var',
        'aws_s3_bucket..arn',
        '',
    ])
    def test_malformed(self, expr):
        with pytest.raises(InterpolationError):
            parse_reference(expr)


class TestFindReferences:
    """Tests for find_references and node_references."""

    def test_nested_structures(self):
        value = {
            'a': '${aws_s3_bucket.state.arn}/*',
            'b': ['${var.app}', {'c': '${data.aws_region.current.name}'}],
        }
        addresses = {r.address for r in find_references(value)}
        assert addresses == {'aws_s3_bucket.state', 'var.app', 'data.aws_region.current'}
        assert node_references(value) == {'aws_s3_bucket.state', 'data.aws_region.current'}

    def test_literals_have_no_references(self):
        assert find_references({'a': 1, 'b': 'plain', 'c': [True, None]}) == []


class TestResolver:
    """Tests for Resolver."""

    def test_whole_expression_keeps_type(self):
        assert _resolver().resolve('${var.count}') == 3
        assert _resolver().resolve('${aws_s3_bucket.state.tags}') == {'Name': 'state'}

    def test_embedded_expression_is_text(self):
        assert _resolver().resolve('${var.app}-${var.count}') == 'web-3'
        assert _resolver().resolve('${aws_s3_bucket.state.arn}/*') == 'arn:aws:s3:::b1/*'

    def test_index_and_nested_key(self):
        assert _resolver().resolve('${aws_ecs_service.app.ports[1].port}') == 443

    def test_unknown_node(self):
        assert _resolver().resolve('${aws_ecs_task_definition.app.arn}') is UNKNOWN

    def test_unknown_taints_embedding_string(self):
        assert _resolver().resolve('task=${aws_ecs_task_definition.app.arn}') is UNKNOWN

    def test_structure_preserved_with_unknown(self):
        result = _resolver().resolve({'a': '${aws_ecs_task_definition.app.arn}', 'b': 'x'})
        assert result['a'] is UNKNOWN
        assert result['b'] == 'x'
        assert contains_unknown(result)

    def test_jsonencode(self):
        value = {'jsonencode': {
            'Resource': ['${aws_s3_bucket.state.arn}', '${aws_s3_bucket.state.arn}/*'],
            'Effect': 'Deny',
        }}
        rendered = _resolver().resolve(value)
        assert isinstance(rendered, str)
        assert json.loads(rendered)['Resource'] == ['arn:aws:s3:::b1', 'arn:aws:s3:::b1/*']
        assert rendered == render_json(json.loads(rendered))

    def test_jsonencode_with_unknown_is_unknown(self):
        value = {'jsonencode': [{'image': '${aws_ecs_task_definition.app.arn}'}]}
        assert _resolver().resolve(value) is UNKNOWN

    def test_bool_rendered_as_json_text(self):
        assert Resolver({'flag': True}, NODES.get).resolve('enabled=${var.flag}') == 'enabled=true'

    def test_undefined_variable(self):
        with pytest.raises(InterpolationError) as exc_info:
            _resolver().resolve('${var.missing}')
        assert 'missing' in str(exc_info.value)

    def test_undeclared_node(self):
        with pytest.raises(InterpolationError) as exc_info:
            _resolver().resolve('${aws_vpc.main.id}')
        assert 'undeclared' in str(exc_info.value)

    def test_missing_attribute(self):
        with pytest.raises(InterpolationError) as exc_info:
            _resolver().resolve('${aws_s3_bucket.state.nope}')
        assert 'nope' in str(exc_info.value)

    def test_index_out_of_range(self):
        with pytest.raises(InterpolationError):
            _resolver().resolve('${aws_ecs_service.app.ports[5].port}')


class TestUnknown:
    """Tests for the UNKNOWN sentinel."""

    def test_singleton_and_falsy(self):
        assert type(UNKNOWN)() is UNKNOWN
        assert not UNKNOWN
        assert repr(UNKNOWN) == '(known after apply)'

    def test_contains_unknown_nested(self):
        assert contains_unknown([{'a': [UNKNOWN]}])
        assert not contains_unknown([{'a': [None, 0, '']}])
