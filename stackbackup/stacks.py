"""
Stack discovery, capture and re-creation.

Stack definitions live in Portainer; their data lives in per-stack directories
under the tools root (plus the fixed Portainer and nginx-proxy-manager roots).
"""
from dataclasses import replace
from pathlib import Path

from stackbackup.errors import AuthenticationError, ControlPlaneError
from stackbackup.models import (
    STACK_STATE_FORMAT_ENHANCED,
    ApplyReport,
    StackDescriptor,
    StackOutcome,
    StackStateRecord,
)
from stackbackup.utils import get_logger, now

logger = get_logger(__name__)

COMPOSE_FILES = (
    'compose.yml',
    'compose.yaml',
    'docker-compose.yml',
    'docker-compose.yaml',
)

# Portainer runs with <portainer_path>/data mounted at /data
PORTAINER_DATA_MOUNT = '/data'

_LEVELS = {'DEBUG': 10, 'INFO': 20, 'WARNING': 30, 'ERROR': 40}


def find_compose_file(directory):
    """
    Find compose file in directory.
    Looks for: compose.yml, compose.yaml, docker-compose.yml, docker-compose.yaml
    Returns filename if found, None otherwise.
    """
    for filename in COMPOSE_FILES:
        filepath = Path(directory) / filename
        if filepath.is_file():
            return filename
    return None


def discover_stack_dirs(tools_path):
    """Return the names of stack data directories directly under ``tools_path``."""
    base = Path(tools_path)
    if not base.is_dir():
        return []
    names = []
    try:
        for child in base.iterdir():
            if child.is_dir() and not child.name.startswith('.'):
                names.append(child.name)
    except OSError as e:
        logger.warning("Cannot list stack directories in %s: %s", base, e)
    return sorted(names)


def make_path_rewriter(mapping):
    """Return a function replacing old root prefixes with new ones in a string.

    Longer prefixes are replaced first so nested roots (/opt/tools under /opt)
    are handled before their parents. Only whole path components match.
    """
    pairs = sorted(
        ((str(old).rstrip('/'), str(new).rstrip('/')) for old, new in (mapping or {}).items() if old != new),
        key=lambda p: len(p[0]),
        reverse=True,
    )

    def rewrite(text):
        if not text or not pairs:
            return text
        out = []
        i = 0
        while i < len(text):
            for old, new in pairs:
                if text.startswith(old, i):
                    end = i + len(old)
                    nxt = text[end] if end < len(text) else ''
                    prev = text[i - 1] if i > 0 else ''
                    if (nxt == '' or nxt in '/:"\' \n\t,})') and (prev == '' or not (prev.isalnum() or prev in '._')):
                        out.append(new)
                        i = end
                        break
            else:
                out.append(text[i])
                i += 1
        return ''.join(out)

    return rewrite


def rewrite_descriptor(descriptor, rewriter):
    """Copy of ``descriptor`` with compose content, env values and project path rewritten."""
    return replace(
        descriptor,
        compose_file_content=rewriter(descriptor.compose_file_content),
        env_variables=[{'name': e['name'], 'value': rewriter(e['value'])} for e in descriptor.env_variables],
        project_path=rewriter(descriptor.project_path),
        additional_files=[dict(f) for f in descriptor.additional_files],
        errors=list(descriptor.errors),
    )


class StackStateManager:
    """Capture stack definitions from Portainer and apply them back."""

    def __init__(self, config, client, log_callback=None):
        self.config = config
        self.client = client
        self.log_callback = log_callback

    def log(self, level, msg):
        if self.log_callback:
            self.log_callback(level, msg)
        else:
            logger.log(_LEVELS.get(level, 20), "%s", msg)

    def registered(self):
        """Return ``{name: stack json}`` for every stack Portainer knows."""
        return {s.get('Name'): s for s in self.client.list_stacks() if s.get('Name')}

    def _host_project_path(self, project_path):
        if not project_path:
            return None
        p = str(project_path)
        if p == PORTAINER_DATA_MOUNT or p.startswith(PORTAINER_DATA_MOUNT + '/'):
            rel = p[len(PORTAINER_DATA_MOUNT):].lstrip('/')
            return self.config.host_path(Path(self.config.portainer_path) / 'data' / rel)
        return self.config.host_path(p)

    def _read_additional_files(self, descriptor, names):
        files = []
        base = self._host_project_path(descriptor.project_path)
        for name in names or []:
            content = None
            if base is None:
                descriptor.errors.append(f"no project path to read {name}")
            else:
                try:
                    content = (base / name).read_text(encoding='utf-8')
                except (OSError, UnicodeDecodeError) as e:
                    descriptor.errors.append(f"could not read additional file {name}: {e}")
            files.append({'name': name, 'content': content})
        return files

    def _capture_one(self, summary):
        stack_id = summary.get('Id')
        descriptor = StackDescriptor(
            id=stack_id,
            name=summary.get('Name'),
            status=summary.get('Status'),
            compose_file_content=None,
            type=summary.get('Type'),
            endpoint_id=summary.get('EndpointId'),
        )
        detail = summary
        try:
            detail = self.client.get_stack(stack_id) or summary
        except AuthenticationError:
            raise
        except ControlPlaneError as e:
            descriptor.errors.append(f"detail: {e}")

        descriptor.status = detail.get('Status', descriptor.status)
        descriptor.env_variables = [
            {'name': str(e.get('name')), 'value': str(e.get('value', ''))}
            for e in (detail.get('Env') or []) if isinstance(e, dict)
        ]
        descriptor.entry_point = detail.get('EntryPoint') or descriptor.entry_point
        descriptor.auto_update = detail.get('AutoUpdate')
        descriptor.git_config = detail.get('GitConfig')
        descriptor.project_path = detail.get('ProjectPath')

        try:
            descriptor.compose_file_content = self.client.get_stack_file(stack_id) or None
            if not descriptor.compose_file_content:
                descriptor.errors.append("compose file is empty")
        except AuthenticationError:
            raise
        except ControlPlaneError as e:
            descriptor.errors.append(f"compose file: {e}")

        descriptor.additional_files = self._read_additional_files(descriptor, detail.get('AdditionalFiles'))
        descriptor.partial = bool(descriptor.errors)
        return descriptor

    def capture(self):
        """Capture the full definition of every registered stack.

        A stack whose details cannot be fetched completely is kept and marked
        partial. Failing to list stacks at all raises ControlPlaneError.
        """
        stacks = []
        for summary in self.client.list_stacks():
            if not summary.get('Name'):
                continue
            descriptor = self._capture_one(summary)
            if descriptor.partial:
                self.log('WARNING', f"Stack {descriptor.name} captured partially: {'; '.join(descriptor.errors)}")
            else:
                self.log('INFO', f"Captured stack {descriptor.name} (id {descriptor.id})")
            stacks.append(descriptor)

        timestamp = now().strftime('%Y-%m-%d %H:%M:%S')
        return StackStateRecord(capture_timestamp=timestamp, format=STACK_STATE_FORMAT_ENHANCED, stacks=stacks)

    def apply(self, record, create=None, path_rewriter=None):
        """Create every stack in ``record`` that Portainer does not know by name.

        Args:
            record: StackStateRecord from a snapshot
            create: Optional collection of names to restrict creation to
            path_rewriter: Optional callable applied to compose content and env values

        Returns ApplyReport. Running this twice against the same record creates
        nothing the second time.
        """
        report = ApplyReport()
        try:
            existing = self.registered()
        except ControlPlaneError as e:
            self.log('ERROR', f"Cannot list stacks: {e}")
            for entry in record.stacks:
                if create is None or entry.name in create:
                    report.outcomes.append(StackOutcome(entry.name, 'failed', detail=str(e)))
            return report

        for entry in record.stacks:
            if create is not None and entry.name not in create:
                continue
            if entry.name in existing:
                report.outcomes.append(StackOutcome(entry.name, 'exists', stack_id=existing[entry.name].get('Id')))
                continue
            if not entry.can_recreate:
                self.log('WARNING', f"Stack {entry.name} cannot be recreated: no compose definition in backup")
                report.outcomes.append(StackOutcome(entry.name, 'cannot_recreate', detail='no compose definition'))
                continue

            compose = entry.compose_file_content
            env = [dict(e) for e in entry.env_variables]
            if path_rewriter:
                compose = path_rewriter(compose)
                for e in env:
                    e['value'] = path_rewriter(e['value'])
            try:
                created = self.client.create_stack(entry.name, compose, env) or {}
            except ControlPlaneError as e:
                self.log('WARNING', f"Failed to create stack {entry.name}: {e}")
                report.outcomes.append(StackOutcome(entry.name, 'failed', detail=str(e)))
                continue
            new_id = created.get('Id') if isinstance(created, dict) else None
            self.log('INFO', f"Created stack {entry.name} (id {new_id})")
            report.outcomes.append(StackOutcome(entry.name, 'created', stack_id=new_id))
            existing[entry.name] = created if isinstance(created, dict) else {'Name': entry.name}
        return report

    def _by_name(self, names):
        existing = self.registered()
        for name in names:
            yield name, existing.get(name)

    def start_stacks(self, names):
        outcomes = []
        for name, stack in self._by_name(names):
            if stack is None:
                outcomes.append(StackOutcome(name, 'failed', detail='not registered'))
                continue
            try:
                self.client.start_stack(stack.get('Id'))
                self.log('INFO', f"Started stack {name}")
                outcomes.append(StackOutcome(name, 'started', stack_id=stack.get('Id')))
            except ControlPlaneError as e:
                # Portainer answers 400 when the stack is already running
                if e.status_code == 400 and 'already' in str(e).lower():
                    outcomes.append(StackOutcome(name, 'started', stack_id=stack.get('Id'), detail='already running'))
                    continue
                self.log('WARNING', f"Failed to start stack {name}: {e}")
                outcomes.append(StackOutcome(name, 'failed', stack_id=stack.get('Id'), detail=str(e)))
        return outcomes

    def stop_stacks(self, names):
        outcomes = []
        for name, stack in self._by_name(names):
            if stack is None:
                outcomes.append(StackOutcome(name, 'skipped', detail='not registered'))
                continue
            try:
                self.client.stop_stack(stack.get('Id'))
                self.log('INFO', f"Stopped stack {name}")
                outcomes.append(StackOutcome(name, 'stopped', stack_id=stack.get('Id')))
            except ControlPlaneError as e:
                self.log('WARNING', f"Failed to stop stack {name}: {e}")
                outcomes.append(StackOutcome(name, 'failed', stack_id=stack.get('Id'), detail=str(e)))
        return outcomes

    def delete_stack(self, name, existing=None):
        """Remove stack ``name`` from Portainer. ``existing`` reuses a prior listing."""
        if existing is None:
            existing = self.registered()
        stack = existing.get(name)
        if stack is None:
            return StackOutcome(name, 'skipped', detail='not registered')
        try:
            self.client.delete_stack(stack.get('Id'))
        except ControlPlaneError as e:
            self.log('WARNING', f"Failed to delete stack {name}: {e}")
            return StackOutcome(name, 'failed', stack_id=stack.get('Id'), detail=str(e))
        self.log('INFO', f"Deleted stack {name} from Portainer")
        return StackOutcome(name, 'deleted', stack_id=stack.get('Id'))

    def redeploy_stack(self, descriptor, path_rewriter=None):
        """Push a (possibly rewritten) definition to an existing stack."""
        existing = self.registered()
        stack = existing.get(descriptor.name)
        if stack is None:
            return StackOutcome(descriptor.name, 'failed', detail='not registered')
        if not descriptor.can_recreate:
            return StackOutcome(descriptor.name, 'cannot_recreate', stack_id=stack.get('Id'), detail='no compose definition')
        compose = descriptor.compose_file_content
        env = [dict(e) for e in descriptor.env_variables]
        if path_rewriter:
            compose = path_rewriter(compose)
            for e in env:
                e['value'] = path_rewriter(e['value'])
        try:
            self.client.update_stack(stack.get('Id'), compose, env)
        except ControlPlaneError as e:
            self.log('WARNING', f"Failed to redeploy stack {descriptor.name}: {e}")
            return StackOutcome(descriptor.name, 'failed', stack_id=stack.get('Id'), detail=str(e))
        self.log('INFO', f"Redeployed stack {descriptor.name}")
        return StackOutcome(descriptor.name, 'redeployed', stack_id=stack.get('Id'))

