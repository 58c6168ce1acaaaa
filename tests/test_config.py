import pytest

from stackbackup.config import Config, parse_shell_file
from stackbackup.errors import ConfigError


def test_parse_shell_file_handles_quotes_and_comments(tmp_path):
    f = tmp_path / 'backup.conf'
    f.write_text(
        '# Docker Backup Manager Configuration\n'
        'BACKUP_PATH="/srv/backup"\n'
        "TOOLS_PATH='/srv/my tools'\n"
        '\n'
        'export BACKUP_RETENTION=3  # keep three\n'
    )
    values = parse_shell_file(f)
    assert values == {
        'BACKUP_PATH': '/srv/backup',
        'TOOLS_PATH': '/srv/my tools',
        'BACKUP_RETENTION': '3',
    }


def test_parse_shell_file_rejects_garbage(tmp_path):
    f = tmp_path / 'backup.conf'
    f.write_text('this is not an assignment\n')
    with pytest.raises(ConfigError):
        parse_shell_file(f)


def test_load_applies_environment_overrides(tmp_path):
    f = tmp_path / 'backup.conf'
    f.write_text('BACKUP_PATH=/srv/backup\nBACKUP_RETENTION=3\nNOTIFY_URLS="json://a json://b"\n')
    cfg = Config.load(str(f), environ={'BACKUP_RETENTION': '5', 'PORTAINER_ADMIN_USERNAME': 'admin'})
    assert cfg.backup_path == '/srv/backup'
    assert cfg.backup_retention == 5
    assert cfg.notify_urls == ['json://a', 'json://b']
    assert cfg.portainer_username == 'admin'
    assert cfg.config_file == str(f)


def test_load_missing_explicit_file():
    with pytest.raises(ConfigError):
        Config.load('/nonexistent/backup.conf', environ={})


def test_invalid_values_are_rejected(tmp_path):
    f = tmp_path / 'backup.conf'
    f.write_text('BACKUP_RETENTION=many\n')
    with pytest.raises(ConfigError):
        Config.load(str(f), environ={})
    f.write_text('TOOLS_PATH=relative/tools\n')
    with pytest.raises(ConfigError):
        Config.load(str(f), environ={})


def test_credentials_file_fills_missing_values(tmp_path):
    portainer = tmp_path / 'portainer'
    portainer.mkdir()
    (portainer / '.credentials').write_text(
        'PORTAINER_ADMIN_USERNAME=admin\nPORTAINER_ADMIN_PASSWORD="s3cret pw"\n')
    f = tmp_path / 'backup.conf'
    f.write_text(f'PORTAINER_PATH={portainer}\n')
    cfg = Config.load(str(f), environ={})
    assert cfg.portainer_username == 'admin'
    assert cfg.portainer_password == 's3cret pw'
    assert cfg.as_dict()['portainer_password'] == '***'


def test_save_round_trip(tmp_path):
    target = tmp_path / 'etc' / 'backup.conf'
    cfg = Config(tools_path='/srv/tools', backup_retention=4, extra_core_stacks=['traefik'],
                 portainer_password='secret', config_file=str(target))
    cfg.save()
    values = parse_shell_file(target)
    assert values['TOOLS_PATH'] == '/srv/tools'
    assert values['BACKUP_RETENTION'] == '4'
    assert values['CORE_STACKS'] == 'traefik'
    assert 'PORTAINER_ADMIN_PASSWORD' not in values
    assert not target.with_name('backup.conf.tmp').exists()


def test_core_stacks_and_stack_directory():
    cfg = Config(extra_core_stacks=['traefik'])
    assert cfg.core_stacks == ['portainer', 'nginx-proxy-manager', 'traefik']
    assert cfg.is_core_stack('traefik')
    assert str(cfg.stack_directory('gitea')) == '/opt/tools/gitea'
    assert str(cfg.stack_directory('nginx-proxy-manager')) == '/opt/nginx-proxy-manager'


def test_host_path_maps_under_restore_root(tmp_path):
    cfg = Config(restore_root=str(tmp_path))
    assert cfg.host_path('/opt/tools') == tmp_path / 'opt' / 'tools'
    assert str(Config().host_path('/opt/tools')) == '/opt/tools'
