"""
Container runtime adapter.

Queries and stops containers through the docker SDK, grouped by their compose
project label. Bringing a compose project up from its directory is delegated
to ``docker compose`` the same way an operator would run it.
"""
import subprocess

from stackbackup.utils import get_logger

logger = get_logger(__name__)

PROJECT_LABEL = 'com.docker.compose.project'


class DockerRuntime:
    """Docker engine operations used during backup, restore and migration."""

    def __init__(self, client=None, log_callback=None, compose_timeout=300):
        self._client = client
        self.log_callback = log_callback
        self.compose_timeout = compose_timeout

    def log(self, level, msg):
        if self.log_callback:
            self.log_callback(level, msg)
        elif level == 'ERROR':
            logger.error("%s", msg)
        elif level == 'WARNING':
            logger.warning("%s", msg)
        else:
            logger.info("%s", msg)

    @property
    def client(self):
        if self._client is None:
            import docker
            self._client = docker.from_env()
        return self._client

    def _containers(self, project=None, all=False):
        filters = {}
        if project:
            filters['label'] = f'{PROJECT_LABEL}={project}'
        return self.client.containers.list(all=all, filters=filters)

    def running_projects(self):
        """Return ``{project: [container names]}`` for running containers."""
        projects = {}
        for c in self._containers():
            project = (c.labels or {}).get(PROJECT_LABEL) or ''
            projects.setdefault(project, []).append(c.name)
        return projects

    def project_state(self, project):
        """Summarise a project's containers.

        Returns one of ``missing`` (no containers), ``stopped``, ``starting``
        (running but health check pending), ``unhealthy`` or ``running``.
        """
        containers = self._containers(project, all=True)
        if not containers:
            return 'missing'
        states = []
        for c in containers:
            try:
                c.reload()
            except Exception as e:
                logger.debug("Could not refresh container %s: %s", c.name, e)
            state = (c.attrs or {}).get('State') or {}
            if c.status != 'running':
                states.append('stopped')
                continue
            health = (state.get('Health') or {}).get('Status')
            if health == 'starting':
                states.append('starting')
            elif health == 'unhealthy':
                states.append('unhealthy')
            else:
                states.append('running')
        for s in ('stopped', 'unhealthy', 'starting'):
            if s in states:
                return s
        return 'running'

    def stop_project(self, project, timeout=30):
        """Stop a project's running containers. Returns the names stopped."""
        stopped = []
        for c in self._containers(project):
            try:
                c.stop(timeout=timeout)
                stopped.append(c.name)
            except Exception as e:
                self.log('WARNING', f"Failed to stop container {c.name}: {e}")
        return stopped

    def remove_project(self, project):
        """Stop and remove every container of a project. Returns the names removed."""
        removed = []
        for c in self._containers(project, all=True):
            try:
                c.remove(force=True)
                removed.append(c.name)
            except Exception as e:
                self.log('WARNING', f"Failed to remove container {c.name}: {e}")
        return removed

    def stop_all_except(self, keep_projects, timeout=30):
        """Stop every running container whose project is not in ``keep_projects``."""
        keep = set(keep_projects or [])
        stopped = []
        for c in self._containers():
            project = (c.labels or {}).get(PROJECT_LABEL)
            if project in keep:
                continue
            try:
                c.stop(timeout=timeout)
                stopped.append(c.name)
            except Exception as e:
                self.log('WARNING', f"Failed to stop container {c.name}: {e}")
        if stopped:
            self.log('INFO', f"Stopped {len(stopped)} container(s): {', '.join(stopped)}")
        return stopped

    def _compose(self, directory, args):
        cmd_parts = ['docker', 'compose'] + list(args)
        self.log('INFO', f"Starting command: {' '.join(cmd_parts)} (in {directory})")
        try:
            result = subprocess.run(
                cmd_parts,
                cwd=str(directory),
                capture_output=True,
                text=True,
                timeout=self.compose_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.log('ERROR', f"Exception running docker compose in {directory}: {e}")
            return False
        if result.returncode == 0:
            self.log('INFO', f"Successfully finished: docker compose {' '.join(args)}")
            return True
        self.log('ERROR', f"docker compose {' '.join(args)} failed in {directory}: {result.stderr.strip()}")
        return False

    def compose_up(self, directory):
        return self._compose(directory, ['up', '-d'])
