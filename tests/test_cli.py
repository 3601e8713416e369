import os
import signal

import pytest

from keypool import __main__ as cli
from keypool.config import Config
from keypool.host import Host
from keypool.keystore import KEYSTORE_MAPPER


@pytest.fixture(autouse=True)
def system(monkeypatch, host, config):
    monkeypatch.setattr(Host, 'system', lambda: host)
    monkeypatch.setattr(Config, 'load', lambda: config)
    handlers = {}
    monkeypatch.setattr(signal, 'signal', handlers.__setitem__)
    return handlers


def test_no_command(capsys):
    assert cli.main([]) == 2
    assert 'usage:' in capsys.readouterr().err


def test_help(capsys):
    assert cli.main(['help']) == 0
    out = capsys.readouterr().out
    for command in ['newks', 'attach', 'wipe', 'recover']:
        assert command in out


def test_usage_error():
    with pytest.raises(SystemExit) as excinfo:
        cli.main(['wipe'])
    assert excinfo.value.code == 2


def test_bad_size():
    with pytest.raises(SystemExit) as excinfo:
        cli.main(['wipe', 'sda', '12q'])
    assert excinfo.value.code == 2


def test_operational_failure(capsys):
    assert cli.main(['status']) == 1
    assert capsys.readouterr().err.startswith('error: There is no keystore')


def test_debug_traceback(capsys):
    assert cli.main(['--debug', 'status']) == 1
    assert 'Traceback' in capsys.readouterr().err


def test_keystore_round_trip(host, config, capsys):
    assert cli.main(['newks']) is None
    assert host.flags.is_immutable(config.keystore)

    assert cli.main(['openks']) is None
    assert host.crypt.is_attached(KEYSTORE_MAPPER)
    assert 'mounted on' in capsys.readouterr().out
    assert cli.main(['openks']) == 1

    assert cli.main(['closeks']) is None
    assert not host.crypt.is_attached(KEYSTORE_MAPPER)
    assert host.volumes.loops == {}
    assert host.flags.is_immutable(config.keystore)
    # Closing twice is harmless
    assert cli.main(['closeks']) is None


def test_pool_commands(host, capsys):
    host.catalog.add_disk('sda', 'SERIAL1')
    host.catalog.add_disk('sdb', 'SERIAL2')
    assert cli.main(['newks']) is None
    assert cli.main(['init', 'sda', 'sdb']) is None
    assert cli.main(['disable', 'SERIAL2']) is None
    assert cli.main(['attach']) is None
    assert sorted(host.crypt.active) == ['SERIAL1']
    assert cli.main(['attach', 'SERIAL2']) is None
    capsys.readouterr()

    assert cli.main(['status']) is None
    out = capsys.readouterr().out
    assert 'SERIAL1: attached, auto-attach on' in out
    assert 'SERIAL2: attached, auto-attach off' in out

    assert cli.main(['detach']) is None
    assert host.crypt.active == {}
    assert cli.main(['enable', 'SERIAL3']) == 1


def test_wipe(host, tmp_path, capsys):
    device = tmp_path / 'device'
    with open(str(device), 'wb') as fo:
        fo.truncate(4096)
    assert cli.main(['wipe', str(device)]) is None
    assert 'Wrote 4096 bytes' in capsys.readouterr().out


def test_unusable_keystore_directory(tmp_path, capsys):
    (tmp_path / 'db').write_bytes(b'')
    assert cli.main(['newks']) == 1
    assert capsys.readouterr().err.startswith('error: Can\'t create')


def test_signal_handlers(system):
    cli.main(['status'])
    assert system == {
        signal.SIGHUP: cli._exit_on_signal,
        signal.SIGTERM: cli._exit_on_signal,
    }


def test_terminated_while_opening(host, config, monkeypatch):
    assert cli.main(['newks']) is None

    def terminated(devpath, mpoint, *, readonly):
        cli._exit_on_signal(signal.SIGTERM, None)
    monkeypatch.setattr(host.volumes, 'mount', terminated)
    with pytest.raises(SystemExit) as excinfo:
        cli.main(['openks'])
    assert excinfo.value.code == 128 + signal.SIGTERM
    assert not host.crypt.is_attached(KEYSTORE_MAPPER)
    assert host.volumes.loops == {}
    directory, _ = config.mount_template
    assert os.listdir(directory) == []
    assert host.flags.is_immutable(config.keystore)


def test_terminated_while_attaching(host, monkeypatch):
    host.catalog.add_disk('sda', 'SERIAL1')
    host.catalog.add_disk('sdb', 'SERIAL2')
    assert cli.main(['newks']) is None
    assert cli.main(['init', 'sda', 'sdb']) is None
    attach = host.crypt.attach

    def terminated(devpath, name, **kwargs):
        attach(devpath, name, **kwargs)
        if name == 'SERIAL2':
            cli._exit_on_signal(signal.SIGTERM, None)
    monkeypatch.setattr(host.crypt, 'attach', terminated)
    with pytest.raises(SystemExit) as excinfo:
        cli.main(['attach'])
    assert excinfo.value.code == 128 + signal.SIGTERM
    assert host.crypt.active == {}
    assert host.volumes.loops == {}
