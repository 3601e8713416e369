import collections
import os
import stat
import subprocess

from .errors import DeviceNotFound, OperationFailed, ValidationFailed
from .util import DISK_ID_RE, memoized_property, quiet_call


BY_ID_DIR = '/dev/disk/by-id'
BY_PARTLABEL_DIR = '/dev/disk/by-partlabel'
KEYSTORE_LABEL_SUFFIX = '.keystore'


Disk = collections.namedtuple('Disk', 'serial devpath')


def keystore_label(disk_id):
    return disk_id + KEYSTORE_LABEL_SUFFIX


def check_disk_id(disk_id):
    if not DISK_ID_RE.match(disk_id):
        raise ValidationFailed(
            'Serial {!r} can\'t be used as a disk id: '
            'it must be 1 to 27 characters among [A-Za-z0-9._-]'
            .format(disk_id))
    return disk_id


def parse_udev_properties(text):
    props = {}
    for line in text.splitlines():
        key, sep, val = line.partition('=')
        if sep:
            props[key.strip()] = val.strip()
    return props


class BlockDevice:
    def __init__(self, devpath):
        self.devpath = devpath

    @property
    def exists(self):
        try:
            st = os.stat(self.devpath)
        except FileNotFoundError:
            return False
        return stat.S_ISBLK(st.st_mode)

    @memoized_property
    def size(self):
        rv = int(subprocess.check_output(
            'blockdev --getsize64'.split() + [self.devpath]))
        assert rv % 512 == 0
        return rv

    @memoized_property
    def ptable_type(self):
        try:
            rv = subprocess.check_output(
                'blkid -p -o value -s PTTYPE --'.split() + [self.devpath]
            ).rstrip().decode('ascii')
        except subprocess.CalledProcessError as err:
            # No recognised signature
            if err.returncode == 2:
                return None
            raise
        if rv:
            return rv

    @memoized_property
    def udev_properties(self):
        return parse_udev_properties(subprocess.check_output(
            'udevadm info --query=property --name'.split() + [self.devpath],
            universal_newlines=True))

    @property
    def serial(self):
        props = self.udev_properties
        return props.get('ID_SERIAL_SHORT') or props.get('ID_SERIAL')


class DeviceCatalog:
    """Maps user-supplied disk references to serials and device facts."""

    def resolve(self, ref):
        """Return a Disk for a path, short name or serial number.

        Raises DeviceNotFound.
        """
        raise NotImplementedError

    def size_of(self, devpath):
        raise NotImplementedError

    def ptable_type(self, devpath):
        """The partition table type of devpath, None if unpartitioned."""
        raise NotImplementedError

    def serial_node(self, serial):
        """The serial-indexed node of a whole disk, None if absent."""
        raise NotImplementedError

    def partition_path(self, label):
        """The node of the partition with that GPT name, None if absent."""
        raise NotImplementedError

    def members(self):
        """Ids having both a data and a keystore backup partition."""
        raise NotImplementedError

    def settle(self):
        pass


class UdevCatalog(DeviceCatalog):
    def __init__(self, *, by_id=BY_ID_DIR, by_partlabel=BY_PARTLABEL_DIR):
        self.by_id = by_id
        self.by_partlabel = by_partlabel

    def _candidates(self, ref):
        if ref.startswith('/'):
            yield ref
        else:
            yield '/dev/' + ref
            node = self.serial_node(ref)
            if node is not None:
                yield node

    def resolve(self, ref):
        for path in self._candidates(ref):
            device = BlockDevice(os.path.realpath(path))
            if device.exists:
                break
        else:
            raise DeviceNotFound(
                'No block device matches {!r}'.format(ref))
        try:
            serial = device.serial
        except (subprocess.CalledProcessError, OSError) as err:
            raise OperationFailed(
                'Can\'t query udev about {}'.format(device.devpath)) from err
        if not serial:
            raise DeviceNotFound(
                'Device {} has no serial number'.format(device.devpath))
        return Disk(serial=check_disk_id(serial), devpath=device.devpath)

    def size_of(self, devpath):
        try:
            return BlockDevice(devpath).size
        except (subprocess.CalledProcessError, OSError) as err:
            raise OperationFailed(
                'Can\'t get the size of {}'.format(devpath)) from err

    def ptable_type(self, devpath):
        try:
            return BlockDevice(devpath).ptable_type
        except (subprocess.CalledProcessError, OSError) as err:
            raise OperationFailed(
                'Can\'t probe {} for a partition table'.format(devpath)
            ) from err

    def serial_node(self, serial):
        try:
            names = sorted(os.listdir(self.by_id))
        except FileNotFoundError:
            return None
        for name in names:
            # Skip partitions; whole disks are named <bus>-<model>_<serial>
            if '-part' in name:
                continue
            # dm-name-<id> and dm-uuid-CRYPT-...-<id> are attached members
            if name.startswith('dm-'):
                continue
            if name.endswith('_' + serial) or name.endswith('-' + serial):
                return os.path.join(self.by_id, name)

    def partition_path(self, label):
        path = os.path.join(self.by_partlabel, label)
        if os.path.exists(path):
            return path

    def members(self):
        try:
            labels = set(os.listdir(self.by_partlabel))
        except FileNotFoundError:
            return []
        return sorted(
            label for label in labels
            if keystore_label(label) in labels)

    def settle(self):
        try:
            quiet_call(['udevadm', 'settle'])
        except subprocess.CalledProcessError as err:
            raise OperationFailed('udevadm settle failed') from err
