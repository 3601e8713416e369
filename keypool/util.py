import argparse
import contextlib
import hashlib
import re
import subprocess
import sys

from .errors import OperationFailed


MiB = 1024 ** 2
GiB = 1024 ** 3

# Serial ids double as GPT names ("<id>.keystore" must fit in 36 chars)
# and device-mapper names.
DISK_ID_RE = re.compile(r'^[A-Za-z0-9._-]{1,27}\Z', re.ASCII)


def align(size, align):
    return (size // align) * align


# SQLa, compatible license
class memoized_property(object):
    """A read-only @property that is only evaluated once."""
    def __init__(self, fget, doc=None):
        self.fget = fget
        self.__doc__ = doc or fget.__doc__
        self.__name__ = fget.__name__

    def __get__(self, obj, cls):
        if obj is None:
            return self
        obj.__dict__[self.__name__] = result = self.fget(obj)
        return result


def quiet_call(cmd, *, input=None):
    """Run cmd, returning its stdout; output is only shown on failure.

    If an exception (a signal turned into SystemExit, say) interrupts
    the call, the command is still waited for before it propagates,
    so that teardown observes whatever the command did.
    """
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as err:
        raise OperationFailed('Can\'t run {}: {}'.format(cmd[0], err)) from err
    try:
        odat, edat = proc.communicate(input)
    except BaseException:
        proc.communicate()
        raise
    if proc.returncode != 0:
        print(
            'Command {!r} has failed with status {}\n'
            'Standard output:\n{}\n'
            'Standard error:\n{}'.format(
                cmd, proc.returncode,
                odat.decode(errors='replace'),
                edat.decode(errors='replace')), file=sys.stderr)
        raise subprocess.CalledProcessError(proc.returncode, cmd, odat)
    return odat


@contextlib.contextmanager
def os_errors(what):
    """Report filesystem and process errors as OperationFailed."""
    try:
        yield
    except OSError as err:
        raise OperationFailed('{}: {}'.format(what, err)) from err


def succeeds(cmd):
    """True if cmd exits with status 0; all output is discarded."""
    try:
        return subprocess.call(
            cmd, stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL) == 0
    except OSError as err:
        raise OperationFailed('Can\'t run {}: {}'.format(cmd[0], err)) from err


def digest_file(path, length=None, chunk_size=MiB):
    """SHA-256 of the first length bytes of path (the whole file if None)."""
    hasher = hashlib.sha256()
    with open(path, 'rb') as fi:
        remaining = length
        while remaining is None or remaining > 0:
            want = chunk_size if remaining is None else min(chunk_size, remaining)
            chunk = fi.read(want)
            if not chunk:
                break
            hasher.update(chunk)
            if remaining is not None:
                remaining -= len(chunk)
    return hasher.hexdigest()


SIZE_RE = re.compile(r'^(\d+)([bkmgtpe])?\Z')


def parse_size(size, default_unit='m'):
    """Parse "<int>[bkmgtpe]" in powers of 1024 units.

    Raises ValueError; a bare integer is in default_unit (MiB).
    """
    match = SIZE_RE.match(size.strip().lower())
    if not match:
        raise ValueError(
            'Size must be a decimal integer '
            'and an optional one-character unit suffix (bkmgtpe)')
    val = int(match.group(1))
    unit = match.group(2)
    if unit is None:
        unit = default_unit
    # reserving uppercase in case decimal units are needed
    return val * 1024**'bkmgtpe'.find(unit)


def parse_size_arg(size):
    try:
        return parse_size(size)
    except ValueError as err:
        raise argparse.ArgumentTypeError(str(err))


class ProgressListener:
    def notify(self, msg):
        pass

    def notify_warning(self, msg):
        pass

    def notify_error(self, msg, err):
        pass


class CLIProgressHandler(ProgressListener):
    """A progress listener that prints messages.

    Errors and warnings go to stderr with a distinct prefix.
    """

    def notify(self, msg):
        print(msg, flush=True)

    def notify_warning(self, msg):
        print('warning: ' + msg, file=sys.stderr, flush=True)

    def notify_error(self, msg, err):
        """Takes an exception so ProgressListener callers remember to raise it.
        """

        print('error: ' + msg, file=sys.stderr, flush=True)
