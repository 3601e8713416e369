"""In-memory stand-ins for the host: the keystore lives in a tmp dir,
partitions are regular files, and mappers are dict entries.
"""

import itertools
import os
import shutil

import pytest

from keypool.config import Config
from keypool.crypt import EncryptionProvider
from keypool.devices import Disk, DeviceCatalog, keystore_label
from keypool.entropy import RandomSource
from keypool.errors import DeviceNotFound, OperationFailed
from keypool.host import Host
from keypool.keystore import Keystore
from keypool.ptable import PartitionTable
from keypool.util import MiB, ProgressListener
from keypool.volume import FileFlags, VolumeMount


class Injector:
    def __init__(self, log):
        self.log = log
        self.fail = set()

    def _call(self, op, arg=None):
        self.log.append((op, arg))
        if op in self.fail or (op, arg) in self.fail:
            raise OperationFailed('injected {} failure ({})'.format(op, arg))


class FakeCrypt(Injector, EncryptionProvider):
    def __init__(self, log):
        super().__init__(log)
        self.formatted = {}
        self.active = {}

    def init(self, devpath, *, key_file=None, secret=None, iterations=None):
        self._call('init', devpath)
        self.formatted[devpath] = key_file if secret is None else secret

    def attach(self, devpath, name, *, key_file=None, secret=None,
               readonly=False):
        self._call('attach', name)
        assert name not in self.active
        self.active[name] = devpath

    def detach(self, name):
        self._call('detach', name)
        del self.active[name]

    def is_attached(self, name):
        return name in self.active

    def backup_header(self, devpath, dest):
        self._call('backup_header', devpath)
        with open(dest, 'xb') as fo:
            fo.write(b'header of ' + devpath.encode())


class FakeFlags(Injector, FileFlags):
    def __init__(self, log):
        super().__init__(log)
        self.immutable = set()

    def set_immutable(self, path, immutable=True):
        self._call('set_immutable' if immutable else 'clear_immutable', path)
        if immutable:
            self.immutable.add(path)
        else:
            self.immutable.discard(path)

    def is_immutable(self, path):
        return path in self.immutable


class FakeVolumes(Injector, VolumeMount):
    """Filesystems are directories, copied in on mount and out on unmount."""

    def __init__(self, log, crypt, flags, root):
        super().__init__(log)
        self.crypt = crypt
        self.flags = flags
        self.root = root
        os.mkdir(root)
        self.loops = {}
        self.filesystems = {}
        self.mounts = {}
        self._counter = itertools.count()

    def _image(self, devpath):
        name = devpath[len('/dev/mapper/'):]
        return self.loops[self.crypt.active[name]]

    def _touch(self, image):
        # What writing through the encryption does to the container
        with open(image, 'r+b') as fo:
            fo.write(os.urandom(64))

    def format(self, devpath):
        self._call('format', devpath)
        image = self._image(devpath)
        backing = os.path.join(self.root, 'fs{}'.format(next(self._counter)))
        os.mkdir(backing)
        self.filesystems[image] = backing
        self._touch(image)

    def mount(self, devpath, mpoint, *, readonly):
        self._call('mount', mpoint)
        image = self._image(devpath)
        shutil.copytree(self.filesystems[image], mpoint, dirs_exist_ok=True)
        self.mounts[mpoint] = image, readonly

    def unmount(self, mpoint):
        self._call('unmount', mpoint)
        image, readonly = self.mounts.pop(mpoint)
        if not readonly:
            backing = self.filesystems[image]
            shutil.rmtree(backing)
            shutil.copytree(mpoint, backing)
            self._touch(image)
        for name in os.listdir(mpoint):
            path = os.path.join(mpoint, name)
            if os.path.isdir(path):
                shutil.rmtree(path)
            else:
                os.unlink(path)

    def is_mounted(self, mpoint):
        return mpoint in self.mounts

    def find_mount(self, devpath):
        image = self._image(devpath)
        for mpoint, (mounted, _) in self.mounts.items():
            if mounted == image:
                return mpoint

    def attach_image(self, path, *, readonly):
        self._call('attach_image', path)
        if not readonly and self.flags.is_immutable(path):
            raise OperationFailed('{} is immutable'.format(path))
        lo_dev = '/dev/loop{}'.format(next(self._counter))
        self.loops[lo_dev] = path
        return lo_dev

    def detach_images(self, path):
        self._call('detach_images', path)
        for lo_dev, image in list(self.loops.items()):
            if image == path:
                del self.loops[lo_dev]


class FakeDisk:
    def __init__(self, serial, size):
        self.serial = serial
        self.size = size
        self.ptable = None


class FakeCatalog(DeviceCatalog):
    def __init__(self, root):
        self.root = root
        os.mkdir(root)
        self.disks = {}
        self.labels = {}
        self.hidden_nodes = set()

    def add_disk(self, name, serial, size=8 * MiB):
        self.disks['/dev/' + name] = FakeDisk(serial, size)
        return '/dev/' + name

    def resolve(self, ref):
        for devpath, disk in self.disks.items():
            if ref in (devpath, devpath[len('/dev/'):], disk.serial):
                return Disk(serial=disk.serial, devpath=devpath)
        raise DeviceNotFound('No block device matches {!r}'.format(ref))

    def size_of(self, devpath):
        if devpath in self.disks:
            return self.disks[devpath].size
        return os.path.getsize(devpath)

    def ptable_type(self, devpath):
        return self.disks[devpath].ptable

    def serial_node(self, serial):
        if serial in self.hidden_nodes:
            return None
        for disk in self.disks.values():
            if disk.serial == serial:
                return '/dev/disk/by-id/ata-FAKE_' + serial

    def partition_path(self, label):
        return self.labels.get(label)

    def members(self):
        return sorted(
            label for label in self.labels
            if keystore_label(label) in self.labels)


class FakePartitionTable(Injector, PartitionTable):
    def __init__(self, log, catalog, fail):
        super().__init__(log)
        self.catalog = catalog
        self.fail = fail
        self.parts = None

    def create(self, devpath):
        self._call('create', devpath)
        self.devpath = devpath
        self.parts = []

    def add_partition(self, label, type_uuid, start, length):
        self._call('add_partition', label)
        self.parts.append((label, type_uuid, start, length))

    def partitions(self):
        return [(label, start, length) for label, _, start, length in self.parts]

    def commit(self):
        self._call('commit', self.devpath)
        self.catalog.disks[self.devpath].ptable = 'gpt'
        if 'hide_partitions' in self.fail:
            return
        for label, _, _, length in self.parts:
            path = os.path.join(self.catalog.root, label)
            with open(path, 'wb') as fo:
                fo.truncate(length)
            self.catalog.labels[label] = path

    def discard(self):
        self._call('discard', self.devpath)
        self.parts = None

    def clobber(self):
        self._call('clobber', self.devpath)
        self.catalog.disks[self.devpath].ptable = None
        for label, _, _, _ in self.parts:
            path = self.catalog.labels.pop(label, None)
            if path is not None:
                os.unlink(path)


@pytest.fixture
def log():
    return []


@pytest.fixture
def host(tmp_path, log):
    crypt = FakeCrypt(log)
    flags = FakeFlags(log)
    catalog = FakeCatalog(str(tmp_path / 'dev'))
    volumes = FakeVolumes(log, crypt, flags, str(tmp_path / 'fs'))
    ptable_fail = set()
    rv = Host(
        crypt=crypt, volumes=volumes, flags=flags, catalog=catalog,
        ptable=lambda: FakePartitionTable(log, catalog, ptable_fail),
        random=RandomSource())
    rv.ptable_fail = ptable_fail
    return rv


@pytest.fixture
def config(tmp_path):
    (tmp_path / 'mnt').mkdir()
    return Config({
        'KEYPOOL_KEYSTORE': str(tmp_path / 'db' / 'keystore.img'),
        'KEYPOOL_KEYSTORE_SIZE': '1',
        'KEYPOOL_DATA_SIZE': '1',
        'KEYPOOL_MOUNT_TEMPLATE': str(tmp_path / 'mnt' / 'keypool.XXXXXX'),
    })


@pytest.fixture
def progress():
    return ProgressListener()


@pytest.fixture
def keystore(host, config, progress):
    return Keystore(host, config, progress)


@pytest.fixture
def created(keystore, config):
    keystore.create(config.keystore_size)
    return keystore
