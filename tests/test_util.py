import argparse
import hashlib
import os
import signal
import subprocess

import pytest

from keypool.errors import OperationFailed
from keypool.util import (
    DISK_ID_RE, GiB, MiB, align, digest_file, os_errors, parse_size,
    parse_size_arg, quiet_call, succeeds)


@pytest.mark.parametrize('arg,size', [
    ('16', 16 * MiB),
    ('16m', 16 * MiB),
    ('512b', 512),
    ('4k', 4096),
    ('2G', 2 * GiB),
    ('1t', 1024 * GiB),
])
def test_parse_size(arg, size):
    assert parse_size(arg) == size


@pytest.mark.parametrize('arg', ['', 'm', '1.5g', '-1', '12mb', '3x'])
def test_parse_size_invalid(arg):
    with pytest.raises(ValueError):
        parse_size(arg)
    with pytest.raises(argparse.ArgumentTypeError):
        parse_size_arg(arg)


def test_align():
    assert align(3 * GiB - 1, GiB) == 2 * GiB
    assert align(2 * GiB, GiB) == 2 * GiB


@pytest.mark.parametrize('disk_id,valid', [
    ('WD-WCC4N1234567', True),
    ('S3Z9NB0K123456A', True),
    ('a' * 27, True),
    ('a' * 28, False),
    ('', False),
    ('has space', False),
    ('../x', False),
    ('disk\n', False),
])
def test_disk_id(disk_id, valid):
    assert bool(DISK_ID_RE.match(disk_id)) == valid


def test_digest_file(tmp_path):
    path = tmp_path / 'data'
    data = bytes(range(256)) * 9000
    path.write_bytes(data)
    assert digest_file(str(path)) == hashlib.sha256(data).hexdigest()
    assert digest_file(str(path), 1000, chunk_size=64) == (
        hashlib.sha256(data[:1000]).hexdigest())


def test_quiet_call():
    assert quiet_call(['sh', '-c', 'cat'], input=b'secret') == b'secret'


def test_quiet_call_failure(capsys):
    with pytest.raises(subprocess.CalledProcessError) as excinfo:
        quiet_call(['sh', '-c', 'echo to-out; echo to-err >&2; exit 3'])
    assert excinfo.value.returncode == 3
    err = capsys.readouterr().err
    assert 'to-out' in err
    assert 'to-err' in err


def test_succeeds():
    assert succeeds(['true'])
    assert not succeeds(['false'])


def test_missing_command():
    with pytest.raises(OperationFailed, match='nonexistent'):
        quiet_call(['/nonexistent/keypool-tool'])
    with pytest.raises(OperationFailed, match='nonexistent'):
        succeeds(['/nonexistent/keypool-tool'])


def test_quiet_call_interrupted_waits(tmp_path):
    marker = tmp_path / 'done'

    def interrupt(signum, frame):
        raise SystemExit(128 + signum)
    previous = signal.signal(signal.SIGALRM, interrupt)
    try:
        signal.setitimer(signal.ITIMER_REAL, 0.2)
        with pytest.raises(SystemExit):
            quiet_call(['sh', '-c', 'sleep 1; touch {}'.format(marker)])
        # The command was allowed to finish before teardown could run
        assert marker.exists()
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, previous)


def test_os_errors(tmp_path):
    with pytest.raises(OperationFailed, match='^Can\'t list') as excinfo:
        with os_errors('Can\'t list'):
            os.listdir(str(tmp_path / 'none'))
    assert isinstance(excinfo.value.__cause__, FileNotFoundError)
