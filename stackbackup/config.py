"""
Configuration loading.

Settings come from a shell-style ``KEY="value"`` file (default
/etc/docker-backup-manager.conf) and may be overridden by environment
variables with the same names. Portainer credentials are read from
``<PORTAINER_PATH>/.credentials`` unless set explicitly.

The resulting ``Config`` value is passed into every component; nothing in the
core reads ``os.environ`` directly.
"""
import os
import shlex
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

from stackbackup.errors import ConfigError
from stackbackup.utils import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = '/etc/docker-backup-manager.conf'
CREDENTIALS_FILE_NAME = '.credentials'

# config-file key -> (attribute, converter)
_KEYS = {
    'PORTAINER_PATH': ('portainer_path', str),
    'NPM_PATH': ('npm_path', str),
    'TOOLS_PATH': ('tools_path', str),
    'BACKUP_PATH': ('backup_path', str),
    'BACKUP_RETENTION': ('backup_retention', int),
    'BACKUP_RETENTION_DAYS': ('backup_retention_days', int),
    'PORTAINER_USER': ('portainer_user', str),
    'PORTAINER_API_URL': ('portainer_api_url', str),
    'PORTAINER_ADMIN_USERNAME': ('portainer_username', str),
    'PORTAINER_ADMIN_PASSWORD': ('portainer_password', str),
    'PORTAINER_ENDPOINT_ID': ('endpoint_id', int),
    'PORTAINER_STACK_NAME': ('portainer_stack_name', str),
    'NPM_STACK_NAME': ('npm_stack_name', str),
    'CORE_STACKS': ('extra_core_stacks', 'list'),
    'RESTORE_ROOT': ('restore_root', str),
    'LOCK_DIR': ('lock_dir', str),
    'LOG_FILE': ('log_file', str),
    'PROMPT_TIMEOUT': ('prompt_timeout', int),
    'AUTO_YES': ('auto_yes', 'bool'),
    'NON_INTERACTIVE': ('non_interactive', 'bool'),
    'VALIDATION_RETRIES': ('validation_retries', int),
    'VALIDATION_INTERVAL': ('validation_interval', int),
    'READY_TIMEOUT': ('ready_timeout', int),
    'HTTP_TIMEOUT': ('http_timeout', int),
    'NOTIFY_URLS': ('notify_urls', 'list'),
}


def _to_bool(value):
    return str(value).strip().lower() in ('1', 'true', 'yes', 'y', 'on')


def _to_list(value):
    return [v.strip() for v in str(value).replace(',', ' ').split() if v.strip()]


def parse_shell_file(path):
    """Parse a ``KEY=value`` file as written by the shell tooling.

    Quotes are honoured, comments and blank lines are ignored. Lines that are
    not assignments raise ConfigError so a broken file is not silently used.
    """
    values = {}
    try:
        text = Path(path).read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}") from e

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].strip()
        key, sep, value = line.partition('=')
        key = key.strip()
        if not sep or not key.replace('_', '').isalnum():
            raise ConfigError(f"{path}:{lineno}: expected KEY=value, got {raw!r}")
        try:
            parts = shlex.split(value, comments=True)
        except ValueError as e:
            raise ConfigError(f"{path}:{lineno}: {e}") from e
        values[key] = ' '.join(parts)
    return values


@dataclass
class Config:
    portainer_path: str = '/opt/portainer'
    npm_path: str = '/opt/nginx-proxy-manager'
    tools_path: str = '/opt/tools'
    backup_path: str = '/opt/backup'
    backup_retention: int = 7
    backup_retention_days: int | None = None
    portainer_user: str = 'portainer'
    portainer_api_url: str = 'http://localhost:9000/api'
    portainer_username: str | None = None
    portainer_password: str | None = None
    endpoint_id: int = 1
    portainer_stack_name: str = 'portainer'
    npm_stack_name: str = 'nginx-proxy-manager'
    extra_core_stacks: list = field(default_factory=list)
    restore_root: str = '/'
    lock_dir: str = '/tmp'
    log_file: str | None = '/var/log/docker-backup-manager.log'
    prompt_timeout: int = 60
    auto_yes: bool = False
    non_interactive: bool = False
    validation_retries: int = 6
    validation_interval: int = 10
    ready_timeout: int = 120
    http_timeout: int = 15
    notify_urls: list = field(default_factory=list)
    config_file: str | None = None

    @classmethod
    def load(cls, config_file=None, environ=None):
        """Build a Config from a config file and environment overrides.

        An explicitly given ``config_file`` must exist; the default location is
        only used when present.
        """
        environ = os.environ if environ is None else environ
        values = {}

        path = config_file or environ.get('CONFIG_FILE') or None
        if path:
            if not Path(path).is_file():
                raise ConfigError(f"Configuration file not found: {path}")
        elif Path(DEFAULT_CONFIG_FILE).is_file():
            path = DEFAULT_CONFIG_FILE

        if path:
            logger.info("Loading configuration from: %s", path)
            values.update(parse_shell_file(path))

        for key in _KEYS:
            if key in environ and environ[key] != '':
                values[key] = environ[key]

        cfg = cls.from_mapping(values)
        cfg.config_file = path or DEFAULT_CONFIG_FILE
        cfg.load_credentials()
        cfg.validate()
        return cfg

    @classmethod
    def from_mapping(cls, values):
        kwargs = {}
        for key, raw in values.items():
            if key not in _KEYS:
                continue
            attr, conv = _KEYS[key]
            try:
                if conv == 'bool':
                    kwargs[attr] = _to_bool(raw)
                elif conv == 'list':
                    kwargs[attr] = _to_list(raw)
                else:
                    kwargs[attr] = conv(raw)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {key}: {raw!r}") from e
        return cls(**kwargs)

    def load_credentials(self):
        """Fill missing Portainer credentials from ``<PORTAINER_PATH>/.credentials``."""
        if self.portainer_username and self.portainer_password:
            return
        cred_file = Path(self.portainer_path) / CREDENTIALS_FILE_NAME
        if not cred_file.is_file():
            logger.debug("Portainer credentials file not found: %s", cred_file)
            return
        try:
            creds = parse_shell_file(cred_file)
        except ConfigError as e:
            logger.warning("Ignoring unreadable credentials file: %s", e)
            return
        self.portainer_username = self.portainer_username or creds.get('PORTAINER_ADMIN_USERNAME')
        self.portainer_password = self.portainer_password or creds.get('PORTAINER_ADMIN_PASSWORD')
        if creds.get('PORTAINER_API_URL'):
            self.portainer_api_url = creds['PORTAINER_API_URL']

    def validate(self):
        for attr in ('portainer_path', 'npm_path', 'tools_path', 'backup_path', 'restore_root'):
            value = getattr(self, attr)
            if not value or not os.path.isabs(value):
                raise ConfigError(f"{attr} must be an absolute path, got {value!r}")
        if self.backup_retention is not None and self.backup_retention < 1:
            raise ConfigError("BACKUP_RETENTION must be at least 1")
        if self.prompt_timeout < 0:
            raise ConfigError("PROMPT_TIMEOUT must not be negative")

    @property
    def core_stacks(self):
        """Names of stacks never removed by reconciliation."""
        names = [self.portainer_stack_name, self.npm_stack_name]
        names.extend(n for n in self.extra_core_stacks if n not in names)
        return names

    def is_core_stack(self, name):
        return name in self.core_stacks

    @property
    def data_roots(self):
        """Named data roots, in backup order."""
        return {
            'portainer': self.portainer_path,
            'npm': self.npm_path,
            'tools': self.tools_path,
        }

    def stack_directory(self, name):
        """Host directory holding a stack's data."""
        if name == self.npm_stack_name:
            return Path(self.npm_path)
        if name == self.portainer_stack_name:
            return Path(self.portainer_path)
        return Path(self.tools_path) / name

    def host_path(self, path):
        """Map an absolute path onto the restore root (identity for '/')."""
        return Path(self.restore_root) / str(path).lstrip('/')

    def with_paths(self, **changes):
        """Return a copy with some path settings replaced."""
        return replace(self, **changes)

    def save(self, path=None):
        """Write the path/retention settings back in the shell file format."""
        target = Path(path or self.config_file or DEFAULT_CONFIG_FILE)
        lines = ['# Docker Backup Manager Configuration']
        for key, (attr, conv) in _KEYS.items():
            if key.startswith('PORTAINER_ADMIN') or attr in ('auto_yes', 'non_interactive'):
                continue
            value = getattr(self, attr)
            if value is None or value == []:
                continue
            if conv == 'list':
                value = ' '.join(value)
            elif conv == 'bool':
                value = 'true' if value else 'false'
            lines.append(f'{key}={shlex.quote(str(value))}')
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + '.tmp')
        tmp.write_text('\n'.join(lines) + '\n', encoding='utf-8')
        os.replace(tmp, target)
        logger.info("Configuration saved to %s", target)
        return target

    def as_dict(self):
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        if out.get('portainer_password'):
            out['portainer_password'] = '***'
        return out
