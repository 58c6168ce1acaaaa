from conftest import FakePortainer, compose_for
from stackbackup.errors import ControlPlaneError
from stackbackup.models import (
    STACK_STATE_FORMAT_LEGACY,
    LegacyStack,
    StackDescriptor,
    StackStateRecord,
    decode_stack_state,
)
from stackbackup.stacks import (
    StackStateManager,
    discover_stack_dirs,
    find_compose_file,
    make_path_rewriter,
    rewrite_descriptor,
)


def test_capture_records_full_definitions(config):
    client = FakePortainer()
    client.add_stack('gitea', compose_for('gitea'), env=[{'name': 'TZ', 'value': 'UTC'}])
    client.add_stack('wiki', compose_for('wiki'), status=2)

    record = StackStateManager(config, client).capture()
    assert not record.is_legacy
    assert record.names == ['gitea', 'wiki']
    gitea = record.get('gitea')
    assert gitea.compose_file_content == compose_for('gitea')
    assert gitea.env_variables == [{'name': 'TZ', 'value': 'UTC'}]
    assert gitea.is_active and not record.get('wiki').is_active
    assert not gitea.partial


def test_capture_marks_stack_partial_when_file_unavailable(config):
    client = FakePortainer()
    client.add_stack('gitea', compose_for('gitea'))
    broken = client.add_stack('wiki', compose_for('wiki'))
    client.fail_file_for.add(broken)

    logs = []
    record = StackStateManager(config, client, log_callback=lambda lvl, msg: logs.append((lvl, msg))).capture()
    wiki = record.get('wiki')
    assert wiki.partial
    assert wiki.compose_file_content is None
    assert not wiki.can_recreate
    assert not record.get('gitea').partial
    assert any(lvl == 'WARNING' and 'wiki' in msg for lvl, msg in logs)


def test_capture_reads_additional_files_from_portainer_data(config, host):
    client = FakePortainer()
    sid = client.add_stack('gitea', compose_for('gitea'), project_path='/data/compose/2')
    client.stacks[sid]['AdditionalFiles'] = ['override.yml', 'absent.yml']
    (host / 'opt' / 'portainer' / 'data' / 'compose' / '2' / 'override.yml').write_text('services: {}\n')

    gitea = StackStateManager(config, client).capture().get('gitea')
    assert gitea.additional_files == [
        {'name': 'override.yml', 'content': 'services: {}\n'},
        {'name': 'absent.yml', 'content': None},
    ]
    assert gitea.partial


def test_stack_state_document_round_trip(config):
    client = FakePortainer()
    client.add_stack('gitea', compose_for('gitea'))
    record = StackStateManager(config, client).capture()
    doc = record.to_dict()
    assert doc['capture_version'] == 'enhanced-v2'
    assert doc['total_stacks'] == 1
    decoded = decode_stack_state(doc)
    assert decoded.get('gitea').compose_file_content == compose_for('gitea')


def test_decode_legacy_and_empty_documents():
    legacy = decode_stack_state({'capture_timestamp': '2024-01-01 00:00:00',
                                 'stacks': [{'id': 3, 'name': 'gitea', 'status': 1}]})
    assert legacy.is_legacy
    assert isinstance(legacy.stacks[0], LegacyStack)
    assert legacy.stacks[0].is_active and not legacy.stacks[0].can_recreate
    assert decode_stack_state({}) is None
    assert decode_stack_state(None) is None


def test_apply_creates_missing_stacks_and_is_idempotent(config):
    source = FakePortainer()
    source.add_stack('gitea', compose_for('gitea'))
    source.add_stack('wiki', compose_for('wiki'))
    record = StackStateManager(config, source).capture()

    target = FakePortainer()
    target.add_stack('gitea', compose_for('gitea'))
    manager = StackStateManager(config, target)

    first = manager.apply(record)
    assert [(o.name, o.status) for o in first.outcomes] == [('gitea', 'exists'), ('wiki', 'created')]
    second = manager.apply(record)
    assert [o.status for o in second.outcomes] == ['exists', 'exists']
    assert target.created == ['wiki']


def test_apply_legacy_entries_cannot_be_recreated(config):
    record = StackStateRecord('2024-01-01 00:00:00', STACK_STATE_FORMAT_LEGACY,
                              [LegacyStack(id=1, name='gitea', status=1), LegacyStack(id=2, name='wiki', status=1)])
    target = FakePortainer()
    target.add_stack('gitea', compose_for('gitea'))
    report = StackStateManager(config, target).apply(record)
    assert [(o.name, o.status) for o in report.outcomes] == [('gitea', 'exists'), ('wiki', 'cannot_recreate')]
    assert [o.name for o in report.failed] == ['wiki']
    assert target.created == []


def test_apply_marks_everything_failed_when_listing_fails(config):
    record = StackStateRecord('', 'enhanced-v2', [StackDescriptor(1, 'gitea', 1, compose_for('gitea'))])
    target = FakePortainer()
    target.fail_list = 'connection refused'
    report = StackStateManager(config, target).apply(record)
    assert [(o.name, o.status) for o in report.outcomes] == [('gitea', 'failed')]


def test_start_stop_and_delete(config):
    client = FakePortainer()
    client.add_stack('gitea', compose_for('gitea'), status=2)
    manager = StackStateManager(config, client)

    started = manager.start_stacks(['gitea', 'ghost'])
    assert [(o.name, o.status) for o in started] == [('gitea', 'started'), ('ghost', 'failed')]
    stopped = manager.stop_stacks(['gitea', 'ghost'])
    assert [(o.name, o.status) for o in stopped] == [('gitea', 'stopped'), ('ghost', 'skipped')]
    assert manager.delete_stack('gitea').status == 'deleted'
    assert manager.delete_stack('gitea').status == 'skipped'
    assert client.deleted == ['gitea']


def test_start_already_running_counts_as_started(config):
    client = FakePortainer()
    client.add_stack('gitea', compose_for('gitea'))

    def start_stack(stack_id):
        raise ControlPlaneError('POST /stacks/1/start returned HTTP 400: Stack is already active', status_code=400)

    client.start_stack = start_stack
    outcome = StackStateManager(config, client).start_stacks(['gitea'])[0]
    assert outcome.status == 'started'
    assert outcome.detail == 'already running'


def test_path_rewriter_matches_whole_components():
    rewrite = make_path_rewriter({'/opt/tools': '/srv/tools', '/opt': '/data/opt'})
    text = (
        'volumes:\n'
        '  - /opt/tools/gitea/data:/data\n'
        '  - /opt/toolshed:/x\n'
        '  - "/opt/portainer"\n'
        'env: /var/opt/tools\n'
    )
    assert rewrite(text) == (
        'volumes:\n'
        '  - /srv/tools/gitea/data:/data\n'
        '  - /data/opt/toolshed:/x\n'
        '  - "/data/opt/portainer"\n'
        'env: /var/opt/tools\n'
    )
    assert make_path_rewriter({})('/opt/tools') == '/opt/tools'


def test_rewrite_descriptor_leaves_original_untouched():
    original = StackDescriptor(1, 'gitea', 1, compose_for('gitea'),
                               env_variables=[{'name': 'DATA', 'value': '/opt/tools/gitea'}])
    rewritten = rewrite_descriptor(original, make_path_rewriter({'/opt/tools': '/srv/tools'}))
    assert '/srv/tools/gitea/data' in rewritten.compose_file_content
    assert rewritten.env_variables == [{'name': 'DATA', 'value': '/srv/tools/gitea'}]
    assert original.env_variables == [{'name': 'DATA', 'value': '/opt/tools/gitea'}]


def test_redeploy_stack(config):
    client = FakePortainer()
    client.add_stack('gitea', compose_for('gitea'))
    manager = StackStateManager(config, client)
    descriptor = manager.capture().get('gitea')

    outcome = manager.redeploy_stack(descriptor, path_rewriter=make_path_rewriter({'/opt/tools': '/srv/tools'}))
    assert outcome.status == 'redeployed'
    assert '/srv/tools/gitea/data' in client.updated[0][1]
    missing = StackDescriptor(None, 'ghost', 1, compose_for('ghost'))
    assert manager.redeploy_stack(missing).status == 'failed'


def test_discover_stack_dirs_and_compose_file(tmp_path):
    (tmp_path / 'gitea').mkdir()
    (tmp_path / 'wiki').mkdir()
    (tmp_path / '.cache').mkdir()
    (tmp_path / 'notes.txt').write_text('x')
    assert discover_stack_dirs(tmp_path) == ['gitea', 'wiki']
    assert discover_stack_dirs(tmp_path / 'missing') == []

    assert find_compose_file(tmp_path / 'gitea') is None
    (tmp_path / 'gitea' / 'docker-compose.yml').write_text('services: {}\n')
    assert find_compose_file(tmp_path / 'gitea') == 'docker-compose.yml'


def test_delete_stack_reuses_existing_listing(config):
    client = FakePortainer()
    client.add_stack('gitea', compose_for('gitea'))
    manager = StackStateManager(config, client)
    existing = manager.registered()
    client.fail_list = 'connection refused'

    assert manager.delete_stack('gitea', existing=existing).status == 'deleted'
    assert client.deleted == ['gitea']
