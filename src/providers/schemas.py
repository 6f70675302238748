"""Per-resource-type metadata used by planning and validation.

Each schema lists the attributes a declaration must set, the attributes whose
change forces a replacement (destroy-then-create), and the attributes computed
by the provider after creation.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ResourceSchema:
    """Metadata for one resource or data source type.

    Attributes:
        type: Resource type name
        required: Attributes the declaration must set
        force_new: Attributes whose change requires replacement
        computed: Attributes set by the provider (never declared)
        data: True for data source types
    """
    type: str
    required: frozenset = field(default_factory=frozenset)
    force_new: frozenset = field(default_factory=frozenset)
    computed: frozenset = field(default_factory=frozenset)
    data: bool = False


def _schema(type_name: str, required=(), force_new=(), computed=(), data=False) -> ResourceSchema:
    return ResourceSchema(
        type=type_name,
        required=frozenset(required),
        force_new=frozenset(force_new),
        computed=frozenset(computed) | {'id'},
        data=data,
    )


RESOURCE_SCHEMAS: dict[str, ResourceSchema] = {s.type: s for s in [
    _schema(
        'aws_s3_bucket',
        required=['bucket'],
        force_new=['bucket'],
        computed=['arn', 'bucket_domain_name', 'region'],
    ),
    _schema(
        'aws_s3_bucket_versioning',
        required=['bucket', 'status'],
        force_new=['bucket'],
    ),
    _schema(
        'aws_s3_bucket_lifecycle_configuration',
        required=['bucket', 'rules'],
        force_new=['bucket'],
    ),
    _schema(
        'aws_s3_bucket_policy',
        required=['bucket', 'policy'],
        force_new=['bucket'],
    ),
    _schema(
        'aws_dynamodb_table',
        required=['name', 'billing_mode', 'hash_key', 'attributes'],
        force_new=['name', 'hash_key'],
        computed=['arn'],
    ),
    _schema(
        'aws_ecr_repository',
        required=['name'],
        force_new=['name'],
        computed=['arn', 'registry_id', 'repository_url'],
    ),
    _schema(
        'aws_ecs_cluster',
        required=['name'],
        force_new=['name'],
        computed=['arn', 'status'],
    ),
    _schema(
        'aws_iam_role',
        required=['name', 'assume_role_policy'],
        force_new=['name'],
        computed=['arn', 'unique_id'],
    ),
    _schema(
        'aws_iam_role_policy_attachment',
        required=['role', 'policy_arn'],
        force_new=['role', 'policy_arn'],
    ),
    _schema(
        'aws_ecs_task_definition',
        required=['family', 'container_definitions'],
        # Task definitions are immutable; every change registers a new revision.
        force_new=['family', 'container_definitions', 'cpu', 'memory', 'network_mode',
                   'requires_compatibilities', 'execution_role_arn', 'task_role_arn'],
        computed=['arn', 'revision'],
    ),
    _schema(
        'aws_security_group',
        required=['name', 'vpc_id'],
        force_new=['name', 'vpc_id'],
        computed=['arn'],
    ),
    _schema(
        'aws_vpc',
        required=['cidr_block'],
        force_new=['cidr_block'],
        computed=['arn'],
    ),
    _schema(
        'aws_subnet',
        required=['vpc_id', 'cidr_block'],
        force_new=['vpc_id', 'cidr_block', 'availability_zone'],
        computed=['arn'],
    ),
    _schema(
        'aws_ecs_service',
        required=['name', 'cluster', 'task_definition', 'desired_count'],
        force_new=['name', 'cluster', 'launch_type'],
        computed=['arn', 'status'],
    ),
]}

DATA_SCHEMAS: dict[str, ResourceSchema] = {s.type: s for s in [
    _schema('aws_caller_identity', computed=['account_id', 'arn', 'user_id'], data=True),
    _schema('aws_region', computed=['name', 'description'], data=True),
]}


def get_schema(type_name: str, data: bool = False) -> Optional[ResourceSchema]:
    """Look up the schema for a resource (or data source) type."""
    return (DATA_SCHEMAS if data else RESOURCE_SCHEMAS).get(type_name)


def schema_or_default(type_name: str, data: bool = False) -> ResourceSchema:
    """Schema for a type, or a permissive default for types without metadata."""
    return get_schema(type_name, data) or _schema(type_name, data=data)
