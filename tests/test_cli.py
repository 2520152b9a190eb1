import json

from click.testing import CliRunner

from bitroute.cli import cli, ProgressView, _describe
from bitroute.node import BitRouteNode
from bitroute.transfer import TransferProgress, TransferStatus


def test_config_command_prints_example(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ['config'])

    assert result.exit_code == 0
    assert '"signaling_urls"' in result.output


def test_send_requires_existing_files(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ['send', str(tmp_path / 'missing.bin')])

    assert result.exit_code == 2


def test_receive_requires_room(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ['receive'])

    assert result.exit_code == 2


def test_describe_events():
    base = dict(id='t', filename='a.bin', size=2048, progress=50)

    assert 'boom' in _describe(TransferProgress(status=TransferStatus.ERROR,
                                                error='boom', **base))
    assert '2 KB' in _describe(TransferProgress(status=TransferStatus.COMPLETED, **base))
    assert '1 KB/s' in _describe(TransferProgress(status=TransferStatus.TRANSFERRING,
                                                  speed=1024, eta=1.0, **base))
    assert _describe(TransferProgress(status=TransferStatus.PREPARING, **base)) == 'preparing'


class FakeProgress:
    def __init__(self):
        self.tasks = {}

    def add_task(self, description, total, detail):
        task_id = len(self.tasks)
        self.tasks[task_id] = {'description': description, 'completed': 0}
        return task_id

    def update(self, task_id, completed, detail):
        self.tasks[task_id]['completed'] = completed


def test_progress_view_tracks_each_file():
    progress = FakeProgress()
    view = ProgressView(progress)

    view(TransferProgress('a', 'a.bin', 10, 0, TransferStatus.PREPARING))
    view(TransferProgress('b', 'b.bin', 10, 0, TransferStatus.PREPARING))
    view(TransferProgress('a', 'a.bin', 10, 100, TransferStatus.COMPLETED))
    view(TransferProgress('b', 'b.bin', 10, 40, TransferStatus.ERROR, error='x'))

    assert [t['completed'] for t in progress.tasks.values()] == [100, 40]
    assert view.finished == {'a': TransferStatus.COMPLETED, 'b': TransferStatus.ERROR}


def test_global_signaling_option(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / 'config.json'
    config_path.write_text(json.dumps({'log_level': 'WARNING'}))

    result = CliRunner().invoke(
        cli, ['--config', str(config_path), '--signaling', 'wss://x.test', 'config']
    )

    assert result.exit_code == 0


def test_bad_room_link_is_a_single_error_line(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ['receive', 'a/b'])

    assert result.exit_code == 1
    assert 'Not a room id or link' in result.output
    assert 'Traceback' not in result.output


def test_send_reports_receiver_timeout(tmp_path, monkeypatch, relay, network, make_file):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(
        'bitroute.cli.BitRouteNode',
        lambda config: BitRouteNode(config, connector=relay.connect,
                                    peer_factory=network.factory()),
    )
    path = make_file('a.txt', 10)

    result = CliRunner().invoke(cli, ['send', str(path), '--timeout', '0.1'])

    assert result.exit_code == 1
    assert 'No peer connected' in result.output
