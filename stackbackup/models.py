"""Dataclasses describing snapshots, metadata and stack state."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

STACK_STATUS_ACTIVE = 1

STACK_STATE_FORMAT_ENHANCED = 'enhanced-v2'
STACK_STATE_FORMAT_LEGACY = 'legacy'

METADATA_FILE = 'backup_metadata.json'
STACK_STATE_FILE = 'stack_states.json'
METADATA_VERSION = '1.0'


@dataclass(slots=True)
class PathPermission:
    path: str
    owner: str
    group: str
    mode: str

    def to_dict(self) -> Dict[str, str]:
        # "permissions" is the key name used by existing archives
        return {'path': self.path, 'permissions': self.mode, 'owner': self.owner, 'group': self.group}

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'PathPermission':
        return cls(
            path=str(data.get('path') or ''),
            owner=str(data.get('owner') or ''),
            group=str(data.get('group') or ''),
            mode=str(data.get('permissions') or data.get('mode') or ''),
        )


@dataclass(slots=True)
class SystemFingerprint:
    hostname: str
    kernel: str
    architecture: str
    os: str
    docker_version: str = 'Unknown'

    def to_dict(self) -> Dict[str, str]:
        return {
            'hostname': self.hostname,
            'kernel': self.kernel,
            'architecture': self.architecture,
            'os': self.os,
            'docker_version': self.docker_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'SystemFingerprint':
        data = data or {}
        return cls(
            hostname=str(data.get('hostname') or ''),
            kernel=str(data.get('kernel') or ''),
            architecture=str(data.get('architecture') or ''),
            os=str(data.get('os') or ''),
            docker_version=str(data.get('docker_version') or 'Unknown'),
        )


@dataclass(slots=True)
class MetadataRecord:
    timestamp: str
    tool_version: str
    system: SystemFingerprint
    paths: Dict[str, str]
    roots: List[str] = field(default_factory=list)
    permissions: List[PathPermission] = field(default_factory=list)
    backup_version: str = METADATA_VERSION

    def to_dict(self) -> Dict[str, object]:
        return {
            'backup_version': self.backup_version,
            'timestamp': self.timestamp,
            'script_version': self.tool_version,
            'system': self.system.to_dict(),
            'paths': dict(self.paths),
            'backed_up_roots': list(self.roots),
            'permissions': [p.to_dict() for p in self.permissions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'MetadataRecord':
        return cls(
            timestamp=str(data.get('timestamp') or ''),
            tool_version=str(data.get('script_version') or ''),
            system=SystemFingerprint.from_dict(data.get('system') or {}),
            paths={str(k): str(v) for k, v in (data.get('paths') or {}).items()},
            roots=[str(r) for r in (data.get('backed_up_roots') or [])],
            permissions=[PathPermission.from_dict(p) for p in (data.get('permissions') or []) if isinstance(p, dict)],
            backup_version=str(data.get('backup_version') or METADATA_VERSION),
        )


@dataclass(slots=True)
class LegacyStack:
    """Stack entry from the legacy state format: identity and status only."""

    id: Optional[int]
    name: str
    status: Optional[int]

    @property
    def is_active(self) -> bool:
        return self.status == STACK_STATUS_ACTIVE

    @property
    def can_recreate(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, object]:
        return {'id': self.id, 'name': self.name, 'status': self.status}


@dataclass(slots=True)
class StackDescriptor:
    """Full definition of one stack as captured from Portainer."""

    id: Optional[int]
    name: str
    status: Optional[int]
    compose_file_content: Optional[str]
    env_variables: List[Dict[str, str]] = field(default_factory=list)
    entry_point: str = 'docker-compose.yml'
    additional_files: List[Dict[str, str]] = field(default_factory=list)
    auto_update: Optional[Dict[str, object]] = None
    git_config: Optional[Dict[str, object]] = None
    project_path: Optional[str] = None
    endpoint_id: Optional[int] = None
    type: Optional[int] = None
    partial: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == STACK_STATUS_ACTIVE

    @property
    def can_recreate(self) -> bool:
        return bool(self.compose_file_content)

    def to_dict(self) -> Dict[str, object]:
        return {
            'id': self.id,
            'name': self.name,
            'status': self.status,
            'type': self.type,
            'endpoint_id': self.endpoint_id,
            'compose_file_content': self.compose_file_content,
            'env_variables': list(self.env_variables),
            'entry_point': self.entry_point,
            'additional_files': list(self.additional_files),
            'auto_update': self.auto_update,
            'git_config': self.git_config,
            'project_path': self.project_path,
            'partial': self.partial,
            'capture_errors': list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'StackDescriptor':
        files = []
        for item in data.get('additional_files') or []:
            # older captures stored bare file names
            if isinstance(item, dict):
                files.append({'name': str(item.get('name')), 'content': item.get('content')})
            else:
                files.append({'name': str(item), 'content': None})
        return cls(
            id=data.get('id'),
            name=str(data.get('name')),
            status=data.get('status'),
            compose_file_content=data.get('compose_file_content') or None,
            env_variables=[{'name': str(e.get('name')), 'value': str(e.get('value', ''))}
                           for e in (data.get('env_variables') or []) if isinstance(e, dict)],
            entry_point=str(data.get('entry_point') or 'docker-compose.yml'),
            additional_files=files,
            auto_update=data.get('auto_update'),
            git_config=data.get('git_config'),
            project_path=data.get('project_path'),
            endpoint_id=data.get('endpoint_id'),
            type=data.get('type'),
            partial=bool(data.get('partial', False)),
            errors=list(data.get('capture_errors') or []),
        )


StackEntry = Union[StackDescriptor, LegacyStack]


@dataclass(slots=True)
class StackStateRecord:
    capture_timestamp: str
    format: str
    stacks: List[StackEntry] = field(default_factory=list)

    @property
    def is_legacy(self) -> bool:
        return self.format == STACK_STATE_FORMAT_LEGACY

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.stacks]

    def get(self, name: str) -> Optional[StackEntry]:
        for s in self.stacks:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> Dict[str, object]:
        doc: Dict[str, object] = {
            'capture_timestamp': self.capture_timestamp,
            'total_stacks': len(self.stacks),
            'stacks': [s.to_dict() for s in self.stacks],
        }
        if not self.is_legacy:
            doc['capture_version'] = self.format
        return doc


def decode_stack_state(doc: Optional[Dict[str, object]]) -> Optional[StackStateRecord]:
    """Decode a stack_states.json document into the matching record shape.

    The enhanced shape carries ``capture_version``; anything else with a
    ``stacks`` list is the legacy shape. An empty or stack-less document
    (written when capture was impossible) decodes to None.
    """
    if not doc or not isinstance(doc, dict) or not isinstance(doc.get('stacks'), list):
        return None

    timestamp = str(doc.get('capture_timestamp') or '')
    if doc.get('capture_version'):
        stacks: List[StackEntry] = [StackDescriptor.from_dict(s) for s in doc['stacks'] if isinstance(s, dict) and s.get('name')]
        return StackStateRecord(timestamp, str(doc['capture_version']), stacks)

    stacks = [LegacyStack(id=s.get('id'), name=str(s.get('name')), status=s.get('status'))
              for s in doc['stacks'] if isinstance(s, dict) and s.get('name')]
    return StackStateRecord(timestamp, STACK_STATE_FORMAT_LEGACY, stacks)


@dataclass(slots=True)
class Snapshot:
    id: str
    path: Path
    created: datetime
    size_bytes: int
    metadata: Optional[MetadataRecord] = None
    stack_state: Optional[StackStateRecord] = None


@dataclass(slots=True)
class ArchMismatch:
    recorded: str
    current: str

    def __str__(self) -> str:
        return f"backup created on {self.recorded}, current system is {self.current}"


@dataclass(slots=True)
class ReplayReport:
    applied: int = 0
    missing: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass(slots=True)
class StackOutcome:
    name: str
    status: str  # created | exists | started | stopped | deleted | redeployed | cannot_recreate | failed | skipped
    stack_id: Optional[int] = None
    detail: Optional[str] = None


@dataclass(slots=True)
class ApplyReport:
    outcomes: List[StackOutcome] = field(default_factory=list)

    @property
    def failed(self) -> List[StackOutcome]:
        return [o for o in self.outcomes if o.status in ('failed', 'cannot_recreate')]


@dataclass(slots=True)
class RetentionSummary:
    removed: List[str]
    kept: List[str]
    reclaimed_bytes: int


__all__ = [
    'ApplyReport',
    'ArchMismatch',
    'LegacyStack',
    'MetadataRecord',
    'PathPermission',
    'ReplayReport',
    'RetentionSummary',
    'Snapshot',
    'StackDescriptor',
    'StackOutcome',
    'StackStateRecord',
    'SystemFingerprint',
    'decode_stack_state',
]
