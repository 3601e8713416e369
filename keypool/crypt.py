import subprocess

from .errors import OperationFailed
from .util import quiet_call, succeeds


class EncryptionProvider:
    """Block-level encryption: format, unlock, lock.

    The secret is either a key file path, raw bytes, or, when both
    are None, whatever the provider prompts the user for.
    """

    def init(self, devpath, *, key_file=None, secret=None, iterations=None):
        raise NotImplementedError

    def attach(self, devpath, name, *, key_file=None, secret=None,
               readonly=False):
        raise NotImplementedError

    def detach(self, name):
        raise NotImplementedError

    def is_attached(self, name):
        raise NotImplementedError

    def backup_header(self, devpath, dest):
        raise NotImplementedError

    def cleartext_path(self, name):
        return '/dev/mapper/' + name


class LUKS(EncryptionProvider):
    """
    pycryptsetup isn't used because:
        it isn't in PyPI, or in Debian or Ubuntu
        it isn't Python 3
    """

    def _run(self, cmd, key_file, secret, what):
        if key_file is not None:
            cmd[2:2] = ['--key-file', key_file]
        elif secret is not None:
            cmd[2:2] = ['--key-file', '-']
        try:
            if key_file is None and secret is None:
                # Interactive, cryptsetup prompts on the terminal
                subprocess.check_call(cmd)
            else:
                quiet_call(cmd, input=secret)
        except (subprocess.CalledProcessError, OSError) as err:
            raise OperationFailed(what) from err

    def init(self, devpath, *, key_file=None, secret=None, iterations=None):
        # No --integrity: authenticated LUKS2 is not used for the keystore
        # or the disks, confidentiality only.
        cmd = ['cryptsetup', 'luksFormat', '--type', 'luks2']
        if key_file is not None or secret is not None:
            cmd.append('--batch-mode')
        if iterations is not None:
            cmd += [
                '--pbkdf', 'pbkdf2',
                '--pbkdf-force-iterations', '%d' % iterations]
        cmd += ['--', devpath]
        self._run(
            cmd, key_file, secret,
            'Can\'t initialise encryption on {}'.format(devpath))

    def attach(self, devpath, name, *, key_file=None, secret=None,
               readonly=False):
        cmd = ['cryptsetup', 'open', '--type', 'luks2']
        if readonly:
            cmd.append('--readonly')
        cmd += ['--', devpath, name]
        self._run(
            cmd, key_file, secret,
            'Can\'t attach {} as {}'.format(devpath, name))

    def detach(self, name):
        try:
            quiet_call(['cryptsetup', 'close', '--', name])
        except subprocess.CalledProcessError as err:
            raise OperationFailed('Can\'t detach {}'.format(name)) from err

    def is_attached(self, name):
        return succeeds(['cryptsetup', 'status', '--', name])

    def backup_header(self, devpath, dest):
        try:
            quiet_call(
                ['cryptsetup', 'luksHeaderBackup',
                 '--header-backup-file', dest, '--', devpath])
        except subprocess.CalledProcessError as err:
            raise OperationFailed(
                'Can\'t back up the header of {}'.format(devpath)) from err
