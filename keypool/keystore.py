"""The keystore: an encrypted container file holding per-disk secrets.

The container is a LUKS volume inside a regular file, with a small
filesystem inside. At rest the file is immutable; only one keystore
can be unlocked at a time, which is how "already open" is detected.

Inside the filesystem:
    keys/<id>      keyfile of member disk <id>
    headers/<id>   encryption header backup of the data partition of <id>
    noauto/<id>    present if <id> must not be attached by default
"""

import contextlib
import getpass
import os
import tempfile

from .errors import (
    AlreadyEnrolled, AlreadyExists, AlreadyOpen, KeypoolError, NotEnrolled,
    NotFound, OperationFailed, PartialRollback, ValidationFailed)
from .util import DISK_ID_RE, digest_file, os_errors


KEYSTORE_MAPPER = 'keypool-keystore'

READ_ONLY = 'ro'
READ_WRITE = 'rw'

KEYS_DIR = 'keys'
HEADERS_DIR = 'headers'
NOAUTO_DIR = 'noauto'


class KeyfileStore:
    def __init__(self, mount_point, flags):
        self.mount_point = mount_point
        self.flags = flags

    def _path(self, subdir, disk_id):
        if not DISK_ID_RE.match(disk_id):
            raise ValidationFailed('Invalid disk id {!r}'.format(disk_id))
        return os.path.join(self.mount_point, subdir, disk_id)

    def _mkdir(self, subdir):
        path = os.path.join(self.mount_point, subdir)
        with os_errors('Can\'t create {}'.format(path)):
            os.makedirs(path, exist_ok=True)

    def enrolled(self):
        keys = os.path.join(self.mount_point, KEYS_DIR)
        try:
            names = os.listdir(keys)
        except FileNotFoundError:
            return []
        except OSError as err:
            raise OperationFailed(
                'Can\'t list {}: {}'.format(keys, err)) from err
        return sorted(name for name in names if DISK_ID_RE.match(name))

    def has_keyfile(self, disk_id):
        return (
            DISK_ID_RE.match(disk_id) is not None
            and os.path.exists(self._path(KEYS_DIR, disk_id)))

    def keyfile_path(self, disk_id):
        path = self._path(KEYS_DIR, disk_id)
        if not os.path.exists(path):
            raise NotEnrolled('{} has no keyfile'.format(disk_id))
        return path

    def write_keyfile(self, disk_id, data):
        path = self._path(KEYS_DIR, disk_id)
        self._mkdir(KEYS_DIR)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o400)
        except FileExistsError as err:
            raise AlreadyEnrolled(
                '{} already has a keyfile'.format(disk_id)) from err
        except OSError as err:
            raise OperationFailed(
                'Can\'t create {}: {}'.format(path, err)) from err
        try:
            with os_errors('Can\'t write {}'.format(path)):
                wr_len = os.write(fd, data)
                assert wr_len == len(data)
                os.fsync(fd)
        finally:
            os.close(fd)
        self.lock(path)
        return path

    def header_path(self, disk_id):
        self._mkdir(HEADERS_DIR)
        return self._path(HEADERS_DIR, disk_id)

    def lock(self, path):
        with os_errors('Can\'t make {} read-only'.format(path)):
            os.chmod(path, 0o400)
        self.flags.set_immutable(path)

    def is_auto_attach_enabled(self, disk_id):
        return not os.path.exists(self._path(NOAUTO_DIR, disk_id))

    def set_auto_attach(self, disk_id, enabled):
        marker = self._path(NOAUTO_DIR, disk_id)
        if enabled:
            if os.path.exists(marker):
                with os_errors('Can\'t remove {}'.format(marker)):
                    os.unlink(marker)
        else:
            self._mkdir(NOAUTO_DIR)
            with os_errors('Can\'t create {}'.format(marker)):
                open(marker, 'a').close()


class Session:
    """An unlocked keystore, and how to lock it again.

    Release actions go on a teardown stack, pushed *before* the step
    they undo, so they must cope with that step not having happened.
    close() runs all of them, even if some fail.
    """

    def __init__(self, keystore, mode):
        self.keystore = keystore
        self.host = keystore.host
        self.progress = keystore.progress
        self.mode = mode
        self.digest = None
        self.mount_point = None
        # The attach session: member disks unlocked by this process,
        # detached again on close unless the attach went through
        self.attached = []
        self._teardown = contextlib.ExitStack()
        self._errors = []

    @property
    def store(self):
        return KeyfileStore(self.mount_point, self.host.flags)

    def push(self, what, release):
        self._teardown.callback(self._release, what, release)

    def _release(self, what, release):
        try:
            release()
        except (KeypoolError, OSError) as err:
            self.progress.notify_error('{} failed: {}'.format(what, err), err)
            self._errors.append(err)

    def keep(self):
        """Leave the keystore open when the session ends."""
        self._teardown.pop_all()

    def rollback_attached(self):
        crypt = self.host.crypt
        failures = []
        while self.attached:
            disk_id = self.attached.pop()
            self.progress.notify('Detaching {}'.format(disk_id))
            try:
                if crypt.is_attached(disk_id):
                    crypt.detach(disk_id)
            except KeypoolError as err:
                failures.append(err)
        if failures:
            raise PartialRollback(
                'Rolling back failed, {} disk(s) may still be attached; '
                'detach them manually'.format(len(failures)), failures)

    def close(self, *, check=True):
        self._errors = []
        self._teardown.close()
        errors, self._errors = self._errors, []
        if self.host.crypt.is_attached(KEYSTORE_MAPPER):
            self.progress.notify_warning(
                '!!! THE KEYSTORE IS STILL UNLOCKED ({}) !!! '
                'Its state is unknown, check it and run closeks'
                .format(self.host.crypt.cleartext_path(KEYSTORE_MAPPER)))
        if errors and check:
            raise errors[0]


class Keystore:
    def __init__(self, host, config, progress):
        self.host = host
        self.config = config
        self.progress = progress

    @property
    def path(self):
        return self.config.keystore

    def _secret(self, confirm, key_file=None):
        if key_file is None:
            key_file = self.config.keyfile
        # Without an external key file the provider prompts by itself
        if key_file is None:
            return {}
        with os_errors('Can\'t read the key file {}'.format(key_file)):
            with open(key_file, 'rb') as fi:
                secret = fi.read()
        passphrase = getpass.getpass('Keystore passphrase: ')
        if confirm and getpass.getpass('Again: ') != passphrase:
            raise ValidationFailed('The passphrases don\'t match')
        return {'secret': secret + passphrase.encode()}

    def _lock_container(self):
        flags = self.host.flags
        if os.path.exists(self.path) and not flags.is_immutable(self.path):
            flags.set_immutable(self.path)

    def _lock_provider(self):
        crypt = self.host.crypt
        if crypt.is_attached(KEYSTORE_MAPPER):
            crypt.detach(KEYSTORE_MAPPER)

    def _release_images(self):
        if os.path.exists(self.path):
            self.host.volumes.detach_images(self.path)

    def _push_unmount(self, session, mpoint):
        def unmount():
            if self.host.volumes.is_mounted(mpoint):
                self.host.volumes.unmount(mpoint)

        def rmdir():
            if os.path.isdir(mpoint):
                os.rmdir(mpoint)

        session.push('removing {}'.format(mpoint), rmdir)
        return unmount

    def is_open(self):
        return self.host.crypt.is_attached(KEYSTORE_MAPPER)

    def create(self, size, key_file=None, iterations=None):
        """Create the container file, size bytes long.

        The secret is read from key_file (or the configured key file)
        plus a passphrase; without either, cryptsetup prompts for one.
        """

        path = self.path
        host = self.host
        if os.path.exists(path):
            raise AlreadyExists('{} already exists'.format(path))
        secret = self._secret(True, key_file)

        with os_errors('Can\'t create {}'.format(path)):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            try:
                imgf = open(path, 'xb')
            except FileExistsError as err:
                raise AlreadyExists('{} already exists'.format(path)) from err
        try:
            with os_errors('Can\'t allocate {}'.format(path)), imgf:
                imgf.truncate(size)
            session = Session(self, READ_WRITE)
            try:
                session.push('releasing the loop device', self._release_images)
                lo_dev = host.volumes.attach_image(path, readonly=False)
                self.progress.notify(
                    'Encrypting a {} byte keystore at {}'.format(size, path))
                host.crypt.init(lo_dev, iterations=iterations, **secret)
                session.push('locking the keystore', self._lock_provider)
                host.crypt.attach(lo_dev, KEYSTORE_MAPPER, **secret)
                host.volumes.format(host.crypt.cleartext_path(KEYSTORE_MAPPER))
            except BaseException:
                session.close(check=False)
                raise
            session.close()
            host.flags.set_immutable(path)
        except BaseException:
            if os.path.exists(path):
                os.unlink(path)
            raise
        self.progress.notify('Created the keystore {}'.format(path))

    def begin(self, mode):
        """Unlock and mount the keystore, returning the Session.

        If anything fails along the way, whatever was done is undone.
        """

        path = self.path
        host = self.host
        readonly = mode == READ_ONLY
        if not os.path.exists(path):
            raise NotFound('There is no keystore at {}'.format(path))
        if self.is_open():
            raise AlreadyOpen(
                'The keystore is already open ({}); run closeks first'
                .format(host.crypt.cleartext_path(KEYSTORE_MAPPER)))
        directory, prefix = self.config.mount_template
        secret = self._secret(confirm=False)

        session = Session(self, mode)
        try:
            session.push('detaching disks', session.rollback_attached)
            with os_errors('Can\'t read {}'.format(path)):
                session.digest = digest_file(path)
            if not readonly:
                session.push(
                    'restoring the immutable flag of {}'.format(path),
                    self._lock_container)
                host.flags.set_immutable(path, False)
            try:
                session.mount_point = mpoint = tempfile.mkdtemp(
                    prefix=prefix, dir=directory)
            except OSError as err:
                raise OperationFailed(
                    'Can\'t create a mount point in {}: {}'
                    .format(directory, err)) from err
            unmount = self._push_unmount(session, mpoint)
            session.push('releasing the loop device', self._release_images)
            lo_dev = host.volumes.attach_image(path, readonly=readonly)
            session.push('locking the keystore', self._lock_provider)
            host.crypt.attach(
                lo_dev, KEYSTORE_MAPPER, readonly=readonly, **secret)
            if not readonly:
                # The loop device holds the file open,
                # it can be made immutable again right away
                host.flags.set_immutable(path)
            session.push('unmounting {}'.format(mpoint), unmount)
            host.volumes.mount(
                host.crypt.cleartext_path(KEYSTORE_MAPPER), mpoint,
                readonly=readonly)
        except BaseException:
            session.close(check=False)
            raise
        return session

    @contextlib.contextmanager
    def open(self, mode):
        session = self.begin(mode)
        try:
            yield session
        except BaseException:
            # Whatever went wrong in the body is what gets reported;
            # teardown failures have been reported along the way
            session.close(check=False)
            raise
        session.close()

    def recover_session(self):
        """A Session for the keystore as the system currently has it.

        This is how a keystore left open by another process gets closed.
        """

        host = self.host
        session = Session(self, READ_WRITE)
        session.push(
            'restoring the immutable flag of {}'.format(self.path),
            self._lock_container)
        mpoint = None
        if self.is_open():
            mpoint = host.volumes.find_mount(
                host.crypt.cleartext_path(KEYSTORE_MAPPER))
        unmount = None
        if mpoint is not None:
            session.mount_point = mpoint
            unmount = self._push_unmount(session, mpoint)
        session.push('releasing the loop device', self._release_images)
        session.push('locking the keystore', self._lock_provider)
        if unmount is not None:
            session.push('unmounting {}'.format(mpoint), unmount)
        return session
