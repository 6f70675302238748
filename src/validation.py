"""Pre-flight validation checks for manifests.

These checks run before planning and catch configuration issues early with
actionable error messages. Structural problems (cycles, dangling references,
duplicate addresses) are already rejected when the manifest is loaded; this
module adds per-type checks against the schema registry plus reachability of
the configured state backend.

Errors block apply; warnings are reported but do not.
"""

import json
import logging
import os
from typing import Any

import requests

from config import EngineConfig
from interpolation import JSONENCODE_KEY, find_references
from manifest import Manifest, ResourceNode
from providers.schemas import get_schema

logger = logging.getLogger(__name__)

OPEN_CIDRS = {'0.0.0.0/0', '::/0'}
ALL_PROTOCOLS = {'-1', 'all'}

# Attributes holding JSON documents, checked when given as literal strings
JSON_DOCUMENT_ATTRS = {
    'aws_iam_role': 'assume_role_policy',
    'aws_s3_bucket_policy': 'policy',
    'aws_ecs_task_definition': 'container_definitions',
}


# -----------------------------------------------------------------------------
# Per-node checks
# -----------------------------------------------------------------------------

def _is_literal_string(value: Any) -> bool:
    return isinstance(value, str) and not find_references(value)


def validate_node(node: ResourceNode) -> tuple[list[str], list[str]]:
    """Check one node against its type schema.

    Returns:
        (errors, warnings) tuple
    """
    errors: list[str] = []
    warnings: list[str] = []

    schema = get_schema(node.type, data=node.is_data)
    if schema is None:
        kind = 'data source' if node.is_data else 'resource'
        errors.append(f"{node.address}: unknown {kind} type '{node.type}'")
        return errors, warnings

    missing = sorted(a for a in schema.required if node.attributes.get(a) in (None, ''))
    if missing:
        errors.append(f"{node.address}: missing required attribute(s): {', '.join(missing)}")

    computed = sorted(a for a in node.attributes if a in schema.computed)
    if computed:
        errors.append(
            f"{node.address}: computed attribute(s) cannot be set: {', '.join(computed)}"
        )

    doc_attr = JSON_DOCUMENT_ATTRS.get(node.type)
    if doc_attr and _is_literal_string(node.attributes.get(doc_attr)):
        try:
            json.loads(node.attributes[doc_attr])
        except json.JSONDecodeError as e:
            errors.append(f"{node.address}: '{doc_attr}' is not valid JSON: {e}")

    if node.type == 'aws_security_group':
        warnings.extend(_security_group_warnings(node))

    return errors, warnings


def _security_group_warnings(node: ResourceNode) -> list[str]:
    """Flag rules that open the perimeter wider than usual."""
    warnings = []
    for rule in node.attributes.get('ingress') or []:
        if not isinstance(rule, dict):
            continue
        cidrs = set(rule.get('cidr_blocks') or []) | set(rule.get('ipv6_cidr_blocks') or [])
        if cidrs & OPEN_CIDRS:
            warnings.append(
                f"{node.address}: ingress on port {rule.get('from_port')} is open to the internet "
                f"({', '.join(sorted(cidrs & OPEN_CIDRS))})"
            )
    for rule in node.attributes.get('egress') or []:
        if not isinstance(rule, dict):
            continue
        if str(rule.get('protocol')) in ALL_PROTOCOLS:
            warnings.append(
                f"{node.address}: egress allows all protocols (protocol \"-1\"); "
                "confirm unrestricted outbound traffic is intended"
            )
    return warnings


def validate_manifest(manifest: Manifest) -> tuple[list[str], list[str]]:
    """Run per-node checks for every node in a manifest.

    Returns:
        (errors, warnings) tuple
    """
    errors: list[str] = []
    warnings: list[str] = []
    for node in manifest.nodes:
        node_errors, node_warnings = validate_node(node)
        errors.extend(node_errors)
        warnings.extend(node_warnings)

    for name, expr in manifest.outputs.items():
        if isinstance(expr, dict) and JSONENCODE_KEY not in expr:
            warnings.append(f"Output '{name}' is a mapping; use {{{JSONENCODE_KEY}: ...}} to render JSON")

    return errors, warnings


# -----------------------------------------------------------------------------
# State backend
# -----------------------------------------------------------------------------

def validate_state_backend(config: EngineConfig, manifest_name: str, timeout: float = 10.0) -> list[str]:
    """Check that the configured state backend can be reached.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    settings = config.state

    if settings.backend == 'local':
        state_dir = config.state_path(manifest_name).parent
        existing = state_dir
        while not existing.exists() and existing != existing.parent:
            existing = existing.parent
        if not os.access(existing, os.W_OK):
            errors.append(
                f"State directory {state_dir} is not writable\n"
                f"  Check permissions on {existing}"
            )
        return errors

    try:
        auth = (settings.username, settings.password) if settings.username else None
        resp = requests.get(settings.address, auth=auth, timeout=timeout)
        if resp.status_code in (401, 403):
            errors.append(
                f"State backend rejected credentials ({resp.status_code})\n"
                f"  Check state.username / state.password in engine.yaml"
            )
        elif resp.status_code not in (200, 204, 404):
            errors.append(f"State backend returned {resp.status_code}: {resp.text[:100]}")
    except requests.exceptions.ConnectionError:
        errors.append(
            f"Cannot connect to state backend at {settings.address}\n"
            f"  Check state.address in engine.yaml"
        )
    except requests.exceptions.Timeout:
        errors.append(f"Timeout connecting to state backend at {settings.address}")
    except requests.exceptions.RequestException as e:
        errors.append(f"Error checking state backend: {e}")

    return errors


def run_preflight_checks(config: EngineConfig, manifest: Manifest,
                         check_backend: bool = True) -> tuple[list[str], list[str]]:
    """Run all pre-flight checks for a manifest.

    Returns:
        (errors, warnings) tuple
    """
    errors, warnings = validate_manifest(manifest)
    if check_backend:
        errors.extend(validate_state_backend(config, manifest.name))
    for w in warnings:
        logger.warning(w)
    return errors, warnings
