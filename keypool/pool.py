"""Enrolling member disks, and attaching them with the keystore's keys."""

import collections
import os

from . import ptable
from .devices import keystore_label
from .errors import (
    AlreadyEnrolled, AlreadyExists, AlreadyPartitioned, DeviceNotFound,
    KeypoolError, NotEnrolled, OperationFailed, PartialRollback,
    ValidationFailed)
from .keystore import READ_ONLY, READ_WRITE
from .util import DISK_ID_RE, MiB, digest_file, os_errors


class Policy:
    # Stop at the first failure and roll back
    ALL_OR_NOTHING = 'all-or-nothing'
    # Keep going, fail at the end
    BEST_EFFORT = 'best-effort'


DiskStatus = collections.namedtuple(
    'DiskStatus', 'disk_id attached auto_attach present backup_fresh')


def apply_each(items, action, *, policy, rollback=None, progress):
    first_err = None
    for item in items:
        try:
            action(item)
        except KeypoolError as err:
            if policy == Policy.ALL_OR_NOTHING:
                if rollback is not None:
                    try:
                        rollback()
                    except PartialRollback as rb_err:
                        raise rb_err from err
                raise
            progress.notify_warning('{}: {}'.format(item, err))
            if first_err is None:
                first_err = err
    if first_err is not None:
        raise first_err


def resolve_id(host, ref, store=None):
    """The disk id of a device reference.

    Enrolled ids and member partition labels are taken as is,
    anything else is looked up as a device.
    """

    if DISK_ID_RE.match(ref):
        if store is not None and store.has_keyfile(ref):
            return ref
        if ref in host.catalog.members():
            return ref
    return host.catalog.resolve(ref).serial


def resolve_ids(host, refs, store=None):
    ids = []
    for ref in refs:
        disk_id = resolve_id(host, ref, store)
        if disk_id not in ids:
            ids.append(disk_id)
    return ids


def copy_extent(src, dest, length, *, create=False, chunk_size=MiB):
    """Copy the first length bytes of src over dest, synchronously."""

    flags = os.O_WRONLY | os.O_SYNC | os.O_EXCL
    if create:
        flags |= os.O_CREAT
    with open(src, 'rb') as fi:
        fd = os.open(dest, flags, 0o600)
        try:
            offset = 0
            while offset < length:
                chunk = fi.read(min(chunk_size, length - offset))
                if not chunk:
                    raise OperationFailed(
                        '{} is shorter than {} bytes'.format(src, length))
                wr_len = os.pwrite(fd, chunk, offset)
                assert wr_len == len(chunk)
                offset += wr_len
        finally:
            os.close(fd)


def backup_is_fresh(session, backup_path):
    container = session.keystore.path
    with os_errors(
            'Can\'t compare {} with {}'.format(backup_path, container)):
        size = os.path.getsize(container)
        return digest_file(backup_path, size) == session.digest


def refresh_backup(host, session, backup_path, *, progress):
    """Bring a keystore backup partition up to date.

    Returns True if it had to be rewritten.
    """

    container = session.keystore.path
    with os_errors('Can\'t read {}'.format(container)):
        size = os.path.getsize(container)
    if host.catalog.size_of(backup_path) < size:
        raise OperationFailed(
            'The backup partition {} is smaller than the keystore'
            .format(backup_path))
    if backup_is_fresh(session, backup_path):
        return False
    progress.notify('Refreshing the keystore backup on {}'.format(backup_path))
    try:
        copy_extent(container, backup_path, size)
    except OSError as err:
        raise OperationFailed(
            'Can\'t write {}: {}'.format(backup_path, err)) from err
    # Read back what was written
    if not backup_is_fresh(session, backup_path):
        raise OperationFailed(
            'The keystore backup on {} doesn\'t match after writing'
            .format(backup_path))
    return True


def enroll(host, session, ref, *, progress):
    config = session.keystore.config
    catalog = host.catalog
    store = session.store

    disk = catalog.resolve(ref)
    disk_id = disk.serial
    if catalog.ptable_type(disk.devpath) is not None:
        raise AlreadyPartitioned(
            '{} already has a partition table; wipe it first'
            .format(disk.devpath))
    if catalog.serial_node(disk_id) is None:
        raise DeviceNotFound(
            '{} has no node named after its serial {}'
            .format(disk.devpath, disk_id))
    if (catalog.partition_path(disk_id) is not None
            or catalog.partition_path(keystore_label(disk_id)) is not None
            or store.has_keyfile(disk_id)):
        raise AlreadyEnrolled('{} is already enrolled'.format(disk_id))

    layout = ptable.plan(
        catalog.size_of(disk.devpath), config.keystore_size, config.data_size)
    keystore_type, data_type = config.keystore_type, config.data_type

    progress.notify('Enrolling {} as {}'.format(disk.devpath, disk_id))
    keyfile = store.write_keyfile(disk_id, host.random.keyfile())
    ptable.apply(
        host.ptable(), catalog, disk.devpath, disk_id, layout,
        keystore_type=keystore_type, data_type=data_type, progress=progress)
    data_path = catalog.partition_path(disk_id)
    progress.notify('Encrypting {}'.format(data_path))
    host.crypt.init(data_path, key_file=keyfile)
    header = store.header_path(disk_id)
    host.crypt.backup_header(data_path, header)
    store.lock(header)
    progress.notify(
        'Enrolled {}, attach it with: keypool attach {}'
        .format(disk_id, disk_id))
    return disk_id


def init(host, keystore, refs, *, progress):
    with keystore.open(READ_WRITE) as session:
        return [enroll(host, session, ref, progress=progress) for ref in refs]


def _preflight(host, store, ids):
    paths = {}
    problems = []
    for disk_id in ids:
        backup = host.catalog.partition_path(keystore_label(disk_id))
        data = host.catalog.partition_path(disk_id)
        if backup is None:
            problems.append('{}: no keystore backup partition'.format(disk_id))
        if data is None:
            problems.append('{}: no data partition'.format(disk_id))
        if not store.has_keyfile(disk_id):
            problems.append('{}: not enrolled in this keystore'.format(disk_id))
        paths[disk_id] = backup, data
    if problems:
        raise ValidationFailed(
            'Not attaching anything:\n  ' + '\n  '.join(problems))
    return paths


def attach(host, keystore, refs, *, progress):
    """Attach member disks, all of them or none.

    Without refs, every enrolled disk that doesn't have auto-attach
    disabled. Returns the ids that were attached.
    """

    with keystore.open(READ_ONLY) as session:
        store = session.store
        if refs:
            ids = resolve_ids(host, refs, store)
        else:
            ids = store.enrolled()
        paths = _preflight(host, store, ids)

        todo = []
        for disk_id in ids:
            if host.crypt.is_attached(disk_id):
                progress.notify('{} is already attached'.format(disk_id))
            elif not refs and not store.is_auto_attach_enabled(disk_id):
                progress.notify(
                    'Skipping {}, auto-attach is disabled'.format(disk_id))
            else:
                todo.append(disk_id)

        def attach_one(disk_id):
            backup, data = paths[disk_id]
            progress.notify('Attaching {}'.format(disk_id))
            # Recorded first: an interrupted attach may still have happened
            session.attached.append(disk_id)
            host.crypt.attach(
                data, disk_id, key_file=store.keyfile_path(disk_id))
            refresh_backup(host, session, backup, progress=progress)

        apply_each(
            todo, attach_one, policy=Policy.ALL_OR_NOTHING,
            rollback=session.rollback_attached, progress=progress)
        # They stay attached when the session closes
        del session.attached[:]
    return todo


def detach(host, refs, *, progress):
    """Detach member disks, as many as possible.

    Each ref is resolved on its own, an unknown one doesn't keep
    the others attached. Returns the ids that were handled.
    """

    if not refs:
        refs = [
            disk_id for disk_id in host.catalog.members()
            if host.crypt.is_attached(disk_id)]
    done = []

    def detach_one(ref):
        disk_id = resolve_id(host, ref)
        if disk_id in done:
            return
        done.append(disk_id)
        if not host.crypt.is_attached(disk_id):
            progress.notify('{} is not attached'.format(disk_id))
            return
        progress.notify('Detaching {}'.format(disk_id))
        host.crypt.detach(disk_id)

    apply_each(refs, detach_one, policy=Policy.BEST_EFFORT, progress=progress)
    return done


def _find_enrolled(host, store, ref):
    try:
        disk_id = resolve_id(host, ref, store)
    except DeviceNotFound:
        return None
    if store.has_keyfile(disk_id):
        return disk_id


def set_auto_attach(host, keystore, refs, enabled, *, progress):
    unknown = []
    with keystore.open(READ_WRITE) as session:
        store = session.store
        for ref in refs:
            disk_id = _find_enrolled(host, store, ref)
            if disk_id is None:
                progress.notify_warning('{} is not enrolled'.format(ref))
                unknown.append(ref)
                continue
            store.set_auto_attach(disk_id, enabled)
            progress.notify('{} auto-attach of {}'.format(
                'Enabled' if enabled else 'Disabled', disk_id))
    if unknown:
        raise NotEnrolled('Not enrolled: {}'.format(', '.join(unknown)))


def status(host, keystore, *, progress):
    rows = []
    with keystore.open(READ_ONLY) as session:
        store = session.store
        for disk_id in store.enrolled():
            backup = host.catalog.partition_path(keystore_label(disk_id))
            data = host.catalog.partition_path(disk_id)
            rows.append(DiskStatus(
                disk_id=disk_id,
                attached=host.crypt.is_attached(disk_id),
                auto_attach=store.is_auto_attach_enabled(disk_id),
                present=backup is not None and data is not None,
                backup_fresh=(
                    None if backup is None
                    else backup_is_fresh(session, backup))))
    if not rows:
        progress.notify('No disks are enrolled')
    for row in rows:
        progress.notify('{}: {}, auto-attach {}, {}, backup {}'.format(
            row.disk_id,
            'attached' if row.attached else 'detached',
            'on' if row.auto_attach else 'off',
            'present' if row.present else 'missing',
            {None: 'missing', True: 'current', False: 'stale'}[
                row.backup_fresh]))
    return rows


def recover(host, config, ref, *, progress):
    """Restore a lost keystore file from a member disk's backup partition."""

    path = config.keystore
    if os.path.exists(path):
        raise AlreadyExists(
            '{} exists, move it away to recover from a backup'.format(path))
    disk_id = resolve_id(host, ref)
    backup = host.catalog.partition_path(keystore_label(disk_id))
    if backup is None:
        raise NotEnrolled(
            '{} has no keystore backup partition'.format(disk_id))
    size = config.keystore_size
    if host.catalog.size_of(backup) < size:
        raise ValidationFailed(
            'The backup partition {} is smaller than {} bytes'
            .format(backup, size))

    progress.notify('Restoring {} from {}'.format(path, backup))
    with os_errors('Can\'t create {}'.format(path)):
        os.makedirs(os.path.dirname(path), exist_ok=True)
    try:
        try:
            copy_extent(backup, path, size, create=True)
        except OSError as err:
            raise OperationFailed(
                'Can\'t restore {}: {}'.format(path, err)) from err
        host.flags.set_immutable(path)
    except BaseException:
        if os.path.exists(path):
            os.unlink(path)
        raise
    return path
