"""Persisted state and locking for manifest-based orchestration.

The state document records the realized attributes of every managed resource
so the next run can diff against it. It is the single mutable shared resource
of the engine: every plan/apply/destroy holds an exclusive lock on it for the
duration of the operation.

Backends:
- LocalStateBackend: JSON file in the workspace, lock file beside it
- HttpStateBackend: REST endpoint (GET/POST state, LOCK/UNLOCK verbs)
"""

import getpass
import json
import logging
import os
import socket
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

import requests

from config import EngineConfig

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateError(Exception):
    """State could not be read or written."""


class LockError(Exception):
    """State is locked by another run, or the lock could not be released."""

    def __init__(self, message: str, info: Optional['LockInfo'] = None):
        self.info = info
        super().__init__(message)


@dataclass
class LockInfo:
    """The global lock record held for one operation."""
    id: str
    operation: str
    who: str
    created: str
    path: str = ''

    @classmethod
    def new(cls, operation: str, path: str = '') -> 'LockInfo':
        return cls(
            id=str(uuid.uuid4()),
            operation=operation,
            who=f'{getpass.getuser()}@{socket.gethostname()}',
            created=datetime.now(timezone.utc).isoformat(),
            path=path,
        )

    def to_dict(self) -> dict:
        return {
            'ID': self.id,
            'Operation': self.operation,
            'Who': self.who,
            'Created': self.created,
            'Path': self.path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LockInfo':
        return cls(
            id=data.get('ID', ''),
            operation=data.get('Operation', ''),
            who=data.get('Who', ''),
            created=data.get('Created', ''),
            path=data.get('Path', ''),
        )

    def describe(self) -> str:
        return f"ID {self.id}, held by {self.who} for '{self.operation}' since {self.created}"


@dataclass
class ResourceState:
    """Realized state of one managed resource.

    Attributes:
        address: Node address (type.name)
        type: Resource type
        name: Local name
        id: Provider id
        attributes: Realized attributes (declared + computed)
        dependencies: Addresses this resource depended on when applied
        prevent_destroy: Lifecycle flag at the time of apply
    """
    address: str
    type: str
    name: str
    id: str
    attributes: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    prevent_destroy: bool = False

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
            'id': self.id,
            'attributes': self.attributes,
            'dependencies': sorted(self.dependencies),
        }
        if self.prevent_destroy:
            d['prevent_destroy'] = True
        return d

    @classmethod
    def from_dict(cls, address: str, data: dict) -> 'ResourceState':
        return cls(
            address=address,
            type=data['type'],
            name=data['name'],
            id=data['id'],
            attributes=dict(data.get('attributes') or {}),
            dependencies=list(data.get('dependencies') or []),
            prevent_destroy=bool(data.get('prevent_destroy', False)),
        )


@dataclass
class StateDocument:
    """Versioned record of all realized resources for one manifest.

    Attributes:
        lineage: Identity of this state; fixed for its whole life
        serial: Incremented on every write
        resources: address -> ResourceState
        outputs: Output name -> resolved value
    """
    lineage: str = field(default_factory=lambda: str(uuid.uuid4()))
    serial: int = 0
    version: int = STATE_VERSION
    resources: dict[str, ResourceState] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    def get(self, address: str) -> Optional[ResourceState]:
        return self.resources.get(address)

    def set(self, resource: ResourceState) -> None:
        self.resources[resource.address] = resource

    def remove(self, address: str) -> None:
        self.resources.pop(address, None)

    @property
    def is_empty(self) -> bool:
        return not self.resources

    def to_dict(self) -> dict:
        return {
            'version': self.version,
            'serial': self.serial,
            'lineage': self.lineage,
            'resources': {a: r.to_dict() for a, r in sorted(self.resources.items())},
            'outputs': self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'StateDocument':
        version = data.get('version', STATE_VERSION)
        if version != STATE_VERSION:
            raise StateError(f"Unsupported state version {version} (expected {STATE_VERSION})")
        return cls(
            lineage=data.get('lineage') or str(uuid.uuid4()),
            serial=int(data.get('serial', 0)),
            version=version,
            resources={
                address: ResourceState.from_dict(address, r)
                for address, r in (data.get('resources') or {}).items()
            },
            outputs=dict(data.get('outputs') or {}),
        )


class StateBackend:
    """Base class for state backends.

    Subclasses implement _read, _write, _acquire and _release. Saving is
    serialized within the process so worker threads can persist after each
    node without interleaving writes.
    """
    name = 'base'

    def __init__(self):
        self._write_lock = threading.Lock()
        self.current_lock: Optional[LockInfo] = None

    def load(self) -> StateDocument:
        """Load the state document; an empty one if none exists yet."""
        data = self._read()
        if data is None:
            logger.debug(f"No existing state in {self.describe()}, starting empty")
            return StateDocument()
        return StateDocument.from_dict(data)

    def save(self, document: StateDocument) -> None:
        """Persist the document, bumping its serial."""
        with self._write_lock:
            document.serial += 1
            self._write(document.to_dict())
        logger.debug(f"Saved state serial {document.serial} to {self.describe()}")

    @contextmanager
    def lock(self, operation: str) -> Iterator[LockInfo]:
        """Hold the global state lock for the duration of an operation.

        Raises:
            LockError: If another run holds the lock
        """
        info = LockInfo.new(operation, path=self.describe())
        self._acquire(info)
        self.current_lock = info
        logger.debug(f"Acquired state lock {info.id} for '{operation}'")
        try:
            yield info
        except BaseException:
            self.current_lock = None
            try:
                self._release(info)
            except LockError as e:
                # Keep the original error; the lock may need a force-unlock
                logger.warning(f"Failed to release state lock {info.id}: {e}")
            raise
        self.current_lock = None
        self._release(info)
        logger.debug(f"Released state lock {info.id}")

    def force_unlock(self, lock_id: str) -> None:
        """Remove a stale lock left behind by an interrupted run.

        Raises:
            LockError: If the lock does not exist or has a different id
        """
        self._release(LockInfo(id=lock_id, operation='force-unlock', who='', created=''))

    def describe(self) -> str:
        raise NotImplementedError

    def _read(self) -> Optional[dict]:
        raise NotImplementedError

    def _write(self, data: dict) -> None:
        raise NotImplementedError

    def _acquire(self, info: LockInfo) -> None:
        raise NotImplementedError

    def _release(self, info: LockInfo) -> None:
        raise NotImplementedError


class LocalStateBackend(StateBackend):
    """State stored as a JSON file, locked by an exclusively-created lock file.

    The previous state is kept as <file>.backup on every write.
    """
    name = 'local'

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.stem + '.lock.json')
        self.backup_path = self.path.with_name(self.path.name + '.backup')

    def describe(self) -> str:
        return str(self.path)

    def _read(self) -> Optional[dict]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Corrupt state file {self.path}: {e}")

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            self.backup_path.write_bytes(self.path.read_bytes())
        tmp = self.path.with_name(self.path.name + '.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)

    def read_lock(self) -> Optional[LockInfo]:
        """Current lock record, None if unlocked."""
        if not self.lock_path.exists():
            return None
        with open(self.lock_path, encoding='utf-8') as f:
            return LockInfo.from_dict(json.load(f))

    def _acquire(self, info: LockInfo) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self.read_lock()
            detail = holder.describe() if holder else 'unknown holder'
            raise LockError(f"State {self.path} is locked ({detail})", holder)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(info.to_dict(), f, indent=2)

    def _release(self, info: LockInfo) -> None:
        holder = self.read_lock()
        if holder is None:
            raise LockError(f"State {self.path} is not locked")
        if holder.id != info.id:
            raise LockError(
                f"Lock id mismatch for {self.path}: held by {holder.id}, not {info.id}", holder
            )
        self.lock_path.unlink()


class HttpStateBackend(StateBackend):
    """State stored behind a REST endpoint.

    GET address returns the state (404/204 when empty), POST address stores
    it. Locking uses the LOCK and UNLOCK methods with the LockInfo as JSON
    body; 409 or 423 means the lock is held by someone else.
    """
    name = 'http'

    def __init__(self, address: str, lock_address: str = '', unlock_address: str = '',
                 username: str = '', password: str = '', timeout: int = 30):
        super().__init__()
        self.address = address
        self.lock_address = lock_address or address
        self.unlock_address = unlock_address or address
        self.timeout = timeout
        self.session = requests.Session()
        if username:
            self.session.auth = (username, password)

    def describe(self) -> str:
        return self.address

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise StateError(f"{method} {url} failed: {e}")

    def _read(self) -> Optional[dict]:
        resp = self._request('GET', self.address)
        if resp.status_code in (204, 404):
            return None
        if resp.status_code != 200:
            raise StateError(f"GET {self.address} returned {resp.status_code}: {resp.text[:200]}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise StateError(f"Invalid state JSON from {self.address}: {e}")

    def _write(self, data: dict) -> None:
        params = {'ID': self.current_lock.id} if self.current_lock else None
        resp = self._request('POST', self.address, json=data, params=params)
        if resp.status_code not in (200, 201, 204):
            raise StateError(f"POST {self.address} returned {resp.status_code}: {resp.text[:200]}")

    def _acquire(self, info: LockInfo) -> None:
        resp = self._request('LOCK', self.lock_address, json=info.to_dict())
        if resp.status_code == 200:
            return
        if resp.status_code in (409, 423):
            holder = None
            try:
                holder = LockInfo.from_dict(resp.json())
            except ValueError:
                pass
            detail = holder.describe() if holder else 'unknown holder'
            raise LockError(f"State {self.address} is locked ({detail})", holder)
        raise LockError(f"LOCK {self.lock_address} returned {resp.status_code}: {resp.text[:200]}")

    def _release(self, info: LockInfo) -> None:
        resp = self._request('UNLOCK', self.unlock_address, json=info.to_dict())
        if resp.status_code not in (200, 204):
            raise LockError(
                f"UNLOCK {self.unlock_address} returned {resp.status_code}: {resp.text[:200]}"
            )


def get_backend(config: EngineConfig, manifest_name: str) -> StateBackend:
    """Build the configured state backend for a manifest."""
    settings = config.state
    if settings.backend == 'http':
        return HttpStateBackend(
            address=settings.address,
            lock_address=settings.lock_address,
            unlock_address=settings.unlock_address,
            username=settings.username,
            password=settings.password,
        )
    return LocalStateBackend(config.state_path(manifest_name))
