import pytest

from stackbackup.config import Config
from stackbackup.errors import ControlPlaneError
from stackbackup.prompts import Prompter


class FakeRuntime:
    """In-memory stand-in for DockerRuntime keyed by compose project name."""

    def __init__(self):
        self.running = set()
        self.removed = []
        self.compose_up_calls = []
        self.fail_compose_up = 0

    def running_projects(self):
        return {p: [f"{p}-1"] for p in self.running}

    def project_state(self, project):
        return 'running' if project in self.running else 'stopped'

    def stop_project(self, project, timeout=30):
        if project in self.running:
            self.running.discard(project)
            return [f"{project}-1"]
        return []

    def remove_project(self, project):
        self.running.discard(project)
        self.removed.append(project)
        return [f"{project}-1"]

    def stop_all_except(self, keep_projects, timeout=30):
        keep = set(keep_projects or [])
        stopped = [p for p in self.running if p not in keep]
        for p in stopped:
            self.running.discard(p)
        return stopped

    def compose_up(self, directory):
        self.compose_up_calls.append(str(directory))
        if self.fail_compose_up > 0:
            self.fail_compose_up -= 1
            return False
        self.running.add('portainer')
        return True


class FakePortainer:
    """In-memory stand-in for PortainerClient."""

    def __init__(self, runtime=None):
        self.runtime = runtime
        self.stacks = {}
        self.files = {}
        self.next_id = 1
        self.created = []
        self.deleted = []
        self.updated = []
        self.fail_list = None
        self.fail_file_for = set()
        self.ready = True

    def add_stack(self, name, compose, status=1, env=None, project_path=None):
        sid = self.next_id
        self.next_id += 1
        self.stacks[sid] = {
            'Id': sid,
            'Name': name,
            'Status': status,
            'Type': 2,
            'EndpointId': 1,
            'Env': list(env or []),
            'EntryPoint': 'docker-compose.yml',
            'ProjectPath': project_path or f'/data/compose/{sid}',
        }
        self.files[sid] = compose
        if status == 1 and self.runtime is not None:
            self.runtime.running.add(name)
        return sid

    def names(self):
        return {s['Name'] for s in self.stacks.values()}

    def _get(self, stack_id):
        if stack_id not in self.stacks:
            raise ControlPlaneError(f"stack {stack_id} not found", status_code=404)
        return self.stacks[stack_id]

    def list_stacks(self):
        if self.fail_list:
            raise ControlPlaneError(self.fail_list)
        return [dict(s) for s in self.stacks.values()]

    def get_stack(self, stack_id):
        return dict(self._get(stack_id))

    def get_stack_file(self, stack_id):
        if stack_id in self.fail_file_for:
            raise ControlPlaneError("file unavailable", status_code=500)
        self._get(stack_id)
        return self.files.get(stack_id, '')

    def create_stack(self, name, compose_content, env=None):
        sid = self.add_stack(name, compose_content, status=1, env=env)
        self.created.append(name)
        return dict(self.stacks[sid])

    def update_stack(self, stack_id, compose_content, env=None, prune=False):
        self._get(stack_id)
        self.files[stack_id] = compose_content
        self.stacks[stack_id]['Env'] = list(env or [])
        self.updated.append((self.stacks[stack_id]['Name'], compose_content, list(env or [])))
        return dict(self.stacks[stack_id])

    def start_stack(self, stack_id):
        stack = self._get(stack_id)
        stack['Status'] = 1
        if self.runtime is not None:
            self.runtime.running.add(stack['Name'])
        return dict(stack)

    def stop_stack(self, stack_id):
        stack = self._get(stack_id)
        stack['Status'] = 2
        if self.runtime is not None:
            self.runtime.running.discard(stack['Name'])
        return dict(stack)

    def delete_stack(self, stack_id):
        stack = self.stacks.pop(stack_id)
        self.files.pop(stack_id, None)
        self.deleted.append(stack['Name'])

    def is_ready(self):
        return self.ready

    def wait_until_ready(self, timeout=120, interval=5):
        return self.ready


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=''):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        if json_data is not None:
            self.content = b'{}'
        else:
            self.content = text.encode('utf-8')

    def json(self):
        if self._json is None:
            raise ValueError('no json')
        return self._json


class FakeSession:
    """Records calls and replays queued responses (or exceptions)."""

    def __init__(self, responses=None, login_responses=None):
        self.responses = list(responses or [])
        self.login_responses = list(login_responses or [])
        self.calls = []
        self.logins = 0

    def post(self, url, json=None, timeout=None):
        self.logins += 1
        self.calls.append(('POST', url, json, None))
        item = self.login_responses.pop(0) if self.login_responses else FakeResponse(200, {'jwt': f'token-{self.logins}'})
        if isinstance(item, Exception):
            raise item
        return item

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append((method, url, json, headers))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, timeout=None):
        self.calls.append(('GET', url, None, None))
        item = self.responses.pop(0) if self.responses else FakeResponse(200, {'Version': '2.19.0'})
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture(autouse=True)
def _quiet_host(monkeypatch):
    # never talk to a real docker daemon while recording metadata
    monkeypatch.setattr('stackbackup.metadata._docker_version', lambda: '24.0.7')
    monkeypatch.setenv('TZ', 'UTC')


@pytest.fixture
def host(tmp_path):
    """Host filesystem root with the default data roots populated."""
    root = tmp_path / 'host'
    portainer = root / 'opt' / 'portainer'
    (portainer / 'data' / 'compose' / '2').mkdir(parents=True)
    (portainer / 'docker-compose.yml').write_text(
        "services:\n  portainer:\n    image: portainer/portainer-ce\n    volumes:\n      - /opt/portainer/data:/data\n")
    (portainer / 'data' / 'portainer.db').write_text('db')
    npm = root / 'opt' / 'nginx-proxy-manager'
    (npm / 'data').mkdir(parents=True)
    (npm / 'data' / 'database.sqlite').write_text('npm')
    (root / 'opt' / 'tools').mkdir(parents=True)
    (root / 'opt' / 'backup').mkdir(parents=True)
    return root


@pytest.fixture
def config(host, tmp_path):
    return Config(
        restore_root=str(host),
        lock_dir=str(tmp_path / 'lock'),
        log_file=None,
        config_file=str(tmp_path / 'docker-backup-manager.conf'),
        portainer_username='admin',
        portainer_password='secret',
        validation_retries=2,
        validation_interval=0,
        ready_timeout=1,
    )


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def portainer(runtime):
    return FakePortainer(runtime)


@pytest.fixture
def prompter():
    return Prompter(auto_yes=True)


def make_stack_dir(host, name, content='v1'):
    d = host / 'opt' / 'tools' / name
    (d / 'data').mkdir(parents=True, exist_ok=True)
    (d / 'data' / 'value.txt').write_text(content)
    return d


def compose_for(name):
    return f"services:\n  {name}:\n    image: nginx\n    volumes:\n      - /opt/tools/{name}/data:/data\n"
