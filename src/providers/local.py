"""Local simulated cloud provider.

Keeps "cloud" resources in a JSON file so plans and applies are reproducible
across runs without network access. Computed attributes (ids, ARNs, URLs)
follow AWS naming so references between nodes look like the real thing.

Resources start out provisioning and report ready on the next readiness poll,
which exercises the executor's wait loop.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional

from providers.base import ProviderError
from providers.schemas import DATA_SCHEMAS, RESOURCE_SCHEMAS

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = '123456789012'
DEFAULT_REGION = 'us-east-1'

VALID_BILLING_MODES = {'PAY_PER_REQUEST', 'PROVISIONED'}
VALID_NETWORK_MODES = {'awsvpc', 'bridge', 'host', 'none'}


class LocalCloudProvider:
    """Provider backed by a JSON file.

    Args:
        path: Storage file; created on first write
        account_id: Account reported by aws_caller_identity and used in ARNs
        region: Region reported by aws_region and used in ARNs
    """
    name = 'local'

    def __init__(self, path: Path, account_id: str = DEFAULT_ACCOUNT_ID,
                 region: str = DEFAULT_REGION):
        self.path = Path(path)
        self.account_id = account_id
        self.region = region
        self._lock = threading.Lock()
        self._computers: dict[str, Callable[[dict, dict], dict]] = {
            'aws_s3_bucket': self._compute_s3_bucket,
            'aws_s3_bucket_versioning': self._compute_bucket_child,
            'aws_s3_bucket_lifecycle_configuration': self._compute_bucket_child,
            'aws_s3_bucket_policy': self._compute_bucket_policy,
            'aws_dynamodb_table': self._compute_dynamodb_table,
            'aws_ecr_repository': self._compute_ecr_repository,
            'aws_ecs_cluster': self._compute_ecs_cluster,
            'aws_iam_role': self._compute_iam_role,
            'aws_iam_role_policy_attachment': self._compute_policy_attachment,
            'aws_ecs_task_definition': self._compute_task_definition,
            'aws_security_group': self._compute_security_group,
            'aws_vpc': self._compute_vpc,
            'aws_subnet': self._compute_subnet,
            'aws_ecs_service': self._compute_ecs_service,
        }

    # -----------------------------------------------------------------------
    # Storage
    # -----------------------------------------------------------------------

    def _load(self) -> dict:
        if not self.path.exists():
            return {'resources': {}, 'counters': {}}
        with open(self.path, encoding='utf-8') as f:
            return json.load(f)

    def _save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + '.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    @staticmethod
    def _key(type_name: str, resource_id: str) -> str:
        return f'{type_name}/{resource_id}'

    @staticmethod
    def _next(data: dict, counter: str) -> int:
        value = data['counters'].get(counter, 0) + 1
        data['counters'][counter] = value
        return value

    # -----------------------------------------------------------------------
    # Provider protocol
    # -----------------------------------------------------------------------

    def read_data(self, type_name: str, attributes: dict) -> dict:
        if type_name not in DATA_SCHEMAS:
            raise ProviderError('UnsupportedDataSource', f"Data source '{type_name}' is not supported")
        if type_name == 'aws_caller_identity':
            return {
                'id': self.account_id,
                'account_id': self.account_id,
                'arn': f'arn:aws:iam::{self.account_id}:user/local',
                'user_id': 'AIDALOCALUSER',
            }
        return {
            'id': self.region,
            'name': self.region,
            'description': f'Local simulated region {self.region}',
        }

    def create(self, type_name: str, attributes: dict) -> dict:
        self._check_supported(type_name)
        self._check_required(type_name, attributes)
        with self._lock:
            data = self._load()
            realized = dict(attributes)
            realized.update(self._computers[type_name](data, attributes))
            resource_id = realized['id']
            key = self._key(type_name, resource_id)
            if key in data['resources']:
                raise ProviderError(
                    'AlreadyExists', f"{type_name} '{resource_id}' already exists"
                )
            data['resources'][key] = {
                'type': type_name,
                'attributes': realized,
                'ready': False,
            }
            self._save(data)
        logger.debug(f"[local] Created {type_name} {resource_id}")
        return realized

    def read(self, type_name: str, resource_id: str) -> Optional[dict]:
        with self._lock:
            entry = self._load()['resources'].get(self._key(type_name, resource_id))
        if entry is None or entry['type'] != type_name:
            return None
        return dict(entry['attributes'])

    def update(self, type_name: str, resource_id: str, attributes: dict) -> dict:
        self._check_supported(type_name)
        self._check_required(type_name, attributes)
        schema = RESOURCE_SCHEMAS[type_name]
        with self._lock:
            data = self._load()
            entry = data['resources'].get(self._key(type_name, resource_id))
            if entry is None or entry['type'] != type_name:
                raise ProviderError('NotFound', f"{type_name} '{resource_id}' does not exist")
            current = entry['attributes']
            for attr in sorted(schema.force_new):
                if attr in attributes and attributes[attr] != current.get(attr):
                    raise ProviderError(
                        'InvalidParameter',
                        f"Attribute '{attr}' of {type_name} cannot be changed in place",
                    )
            self._validate(type_name, attributes)
            realized = {k: v for k, v in current.items() if k in schema.computed}
            realized.update(attributes)
            entry['attributes'] = realized
            entry['ready'] = False
            self._save(data)
        logger.debug(f"[local] Updated {type_name} {resource_id}")
        return dict(realized)

    def delete(self, type_name: str, resource_id: str) -> None:
        with self._lock:
            data = self._load()
            entry = data['resources'].get(self._key(type_name, resource_id))
            if entry is None:
                logger.debug(f"[local] {type_name} {resource_id} already gone")
                return
            if type_name == 'aws_vpc':
                in_use = sorted(k for k, e in data['resources'].items()
                                if e['attributes'].get('vpc_id') == resource_id)
                if in_use:
                    raise ProviderError(
                        'DependencyViolation',
                        f"VPC '{resource_id}' has dependent resources: {', '.join(in_use)}",
                    )
            del data['resources'][self._key(type_name, resource_id)]
            self._save(data)
        logger.debug(f"[local] Deleted {type_name} {resource_id}")

    def is_ready(self, type_name: str, resource_id: str) -> bool:
        with self._lock:
            data = self._load()
            entry = data['resources'].get(self._key(type_name, resource_id))
            if entry is None:
                raise ProviderError('NotFound', f"{type_name} '{resource_id}' does not exist")
            if entry.get('ready'):
                return True
            entry['ready'] = True
            if 'status' in RESOURCE_SCHEMAS[entry['type']].computed:
                entry['attributes']['status'] = 'ACTIVE'
            self._save(data)
        return False

    # -----------------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------------

    def _check_supported(self, type_name: str) -> None:
        if type_name not in self._computers:
            raise ProviderError('UnsupportedResourceType', f"Resource type '{type_name}' is not supported")

    def _check_required(self, type_name: str, attributes: dict) -> None:
        missing = sorted(a for a in RESOURCE_SCHEMAS[type_name].required
                         if attributes.get(a) in (None, ''))
        if missing:
            raise ProviderError(
                'InvalidParameter',
                f"{type_name} missing required attribute(s): {', '.join(missing)}",
            )

    def _validate(self, type_name: str, attributes: dict) -> None:
        """Type-specific parameter checks shared by create and update."""
        if type_name == 'aws_dynamodb_table':
            if attributes['billing_mode'] not in VALID_BILLING_MODES:
                raise ProviderError('InvalidParameter', f"Invalid billing_mode '{attributes['billing_mode']}'")
            names = {a.get('name') for a in attributes['attributes']}
            if attributes['hash_key'] not in names:
                raise ProviderError(
                    'InvalidParameter',
                    f"hash_key '{attributes['hash_key']}' is not a declared attribute",
                )
        elif type_name in ('aws_iam_role', 'aws_s3_bucket_policy'):
            key = 'assume_role_policy' if type_name == 'aws_iam_role' else 'policy'
            _parse_json_document(attributes[key], 'MalformedPolicyDocument')
        elif type_name == 'aws_ecs_task_definition':
            containers = _parse_json_document(attributes['container_definitions'],
                                              'InvalidContainerDefinitions')
            if not isinstance(containers, list) or not containers:
                raise ProviderError('InvalidContainerDefinitions',
                                    'container_definitions must be a non-empty JSON list')
            mode = attributes.get('network_mode', 'bridge')
            if mode not in VALID_NETWORK_MODES:
                raise ProviderError('InvalidParameter', f"Invalid network_mode '{mode}'")
        elif type_name == 'aws_ecs_service':
            if int(attributes['desired_count']) < 0:
                raise ProviderError('InvalidParameter', 'desired_count must be >= 0')

    # -----------------------------------------------------------------------
    # Computed attributes per type
    # -----------------------------------------------------------------------

    def _arn(self, service: str, resource: str, regional: bool = True) -> str:
        region = self.region if regional else ''
        return f'arn:aws:{service}:{region}:{self.account_id}:{resource}'

    def _compute_s3_bucket(self, data: dict, attrs: dict) -> dict:
        bucket = attrs['bucket']
        return {
            'id': bucket,
            'arn': f'arn:aws:s3:::{bucket}',
            'bucket_domain_name': f'{bucket}.s3.amazonaws.com',
            'region': self.region,
        }

    def _compute_bucket_child(self, data: dict, attrs: dict) -> dict:
        return {'id': attrs['bucket']}

    def _compute_bucket_policy(self, data: dict, attrs: dict) -> dict:
        self._validate('aws_s3_bucket_policy', attrs)
        return {'id': attrs['bucket']}

    def _compute_dynamodb_table(self, data: dict, attrs: dict) -> dict:
        self._validate('aws_dynamodb_table', attrs)
        return {
            'id': attrs['name'],
            'arn': self._arn('dynamodb', f"table/{attrs['name']}"),
        }

    def _compute_ecr_repository(self, data: dict, attrs: dict) -> dict:
        return {
            'id': attrs['name'],
            'arn': self._arn('ecr', f"repository/{attrs['name']}"),
            'registry_id': self.account_id,
            'repository_url': f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com/{attrs['name']}",
        }

    def _compute_ecs_cluster(self, data: dict, attrs: dict) -> dict:
        arn = self._arn('ecs', f"cluster/{attrs['name']}")
        return {'id': arn, 'arn': arn, 'status': 'PROVISIONING'}

    def _compute_iam_role(self, data: dict, attrs: dict) -> dict:
        self._validate('aws_iam_role', attrs)
        n = self._next(data, 'iam_role')
        return {
            'id': attrs['name'],
            'arn': self._arn('iam', f"role/{attrs['name']}", regional=False),
            'unique_id': f'AROALOCAL{n:011d}',
        }

    def _compute_policy_attachment(self, data: dict, attrs: dict) -> dict:
        policy_name = str(attrs['policy_arn']).rsplit('/', 1)[-1]
        return {'id': f"{attrs['role']}/{policy_name}"}

    def _compute_task_definition(self, data: dict, attrs: dict) -> dict:
        self._validate('aws_ecs_task_definition', attrs)
        revision = self._next(data, f"task_definition:{attrs['family']}")
        arn = self._arn('ecs', f"task-definition/{attrs['family']}:{revision}")
        return {'id': arn, 'arn': arn, 'revision': revision}

    def _compute_security_group(self, data: dict, attrs: dict) -> dict:
        sg_id = f"sg-{self._next(data, 'security_group'):017x}"
        return {'id': sg_id, 'arn': self._arn('ec2', f'security-group/{sg_id}')}

    def _compute_vpc(self, data: dict, attrs: dict) -> dict:
        vpc_id = f"vpc-{self._next(data, 'vpc'):017x}"
        return {'id': vpc_id, 'arn': self._arn('ec2', f'vpc/{vpc_id}')}

    def _compute_subnet(self, data: dict, attrs: dict) -> dict:
        if self._key('aws_vpc', attrs['vpc_id']) not in data['resources']:
            raise ProviderError('InvalidVpcID.NotFound', f"VPC '{attrs['vpc_id']}' does not exist")
        subnet_id = f"subnet-{self._next(data, 'subnet'):017x}"
        return {'id': subnet_id, 'arn': self._arn('ec2', f'subnet/{subnet_id}')}

    def _compute_ecs_service(self, data: dict, attrs: dict) -> dict:
        self._validate('aws_ecs_service', attrs)
        cluster_name = str(attrs['cluster']).rsplit('/', 1)[-1]
        arn = self._arn('ecs', f"service/{cluster_name}/{attrs['name']}")
        return {'id': arn, 'arn': arn, 'status': 'PROVISIONING'}


def _parse_json_document(text, code: str):
    """Parse an embedded JSON document attribute."""
    if not isinstance(text, str):
        raise ProviderError(code, 'document must be a JSON string')
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ProviderError(code, f'invalid JSON: {e}')
