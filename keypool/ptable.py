import collections

from .devices import keystore_label
from .errors import KeypoolError, OperationFailed, ValidationFailed
from .util import GiB, MiB, align


# Where the first partition starts, also the room left at the end
# for the secondary GPT header and entries
GPT_LEAD_IN = MiB
GPT_TRAILER = MiB
# Data partitions are a whole number of GiB, so that disks of the
# same nominal capacity from different vendors get the same layout
DATA_ALIGNMENT = GiB


PartitionPlan = collections.namedtuple(
    'PartitionPlan', 'keystore_start keystore_size data_start data_size')


def plan(device_size, keystore_size, data_size=None):
    """Lay out the keystore backup and data partitions of a member disk.

    Sizes are in bytes; keystore_size and data_size must be multiples
    of 1MiB. Without a fixed data_size, the data partition gets the
    largest DATA_ALIGNMENT multiple that fits.
    """

    assert keystore_size > 0 and keystore_size % MiB == 0
    data_start = GPT_LEAD_IN + keystore_size
    available = device_size - data_start - GPT_TRAILER
    if data_size is None:
        data_size = align(available, DATA_ALIGNMENT)
        if data_size <= 0:
            raise ValidationFailed(
                'A {} byte device is too small for a data partition'
                .format(device_size))
    else:
        assert data_size % MiB == 0
        if not 0 < data_size <= available:
            raise ValidationFailed(
                'A {} byte data partition doesn\'t fit in {} bytes '
                '(at most {} are available)'
                .format(data_size, device_size, available))
    return PartitionPlan(
        keystore_start=GPT_LEAD_IN, keystore_size=keystore_size,
        data_start=data_start, data_size=data_size)


class PartitionTable:
    """An in-memory partition table, written out by commit()."""

    def create(self, devpath):
        """Start a new, empty GPT for devpath."""
        raise NotImplementedError

    def add_partition(self, label, type_uuid, start, length):
        raise NotImplementedError

    def partitions(self):
        """(label, start, length) tuples of the in-memory table."""
        raise NotImplementedError

    def commit(self):
        raise NotImplementedError

    def discard(self):
        """Forget uncommitted changes, the device is left untouched."""
        raise NotImplementedError

    def clobber(self):
        """Erase the committed table from the device."""
        raise NotImplementedError


class GPTTable(PartitionTable):
    parted_device = None
    parted_disk = None

    def create(self, devpath):
        import parted
        try:
            self.parted_device = parted.getDevice(devpath)
            self.parted_disk = parted.freshDisk(self.parted_device, 'gpt')
        except (
            parted.DeviceException, parted.DiskException, parted.IOException,
        ) as err:
            raise OperationFailed(
                'Can\'t create a GPT for {}: {}'.format(devpath, err)
            ) from err

    def _sectors(self, size):
        sectors, rem = divmod(size, self.parted_device.sectorSize)
        assert rem == 0
        return sectors

    def add_partition(self, label, type_uuid, start, length):
        import parted
        try:
            geom = parted.Geometry(
                device=self.parted_device,
                start=self._sectors(start),
                length=self._sectors(length))
            part = parted.Partition(
                disk=self.parted_disk, type=parted.PARTITION_NORMAL,
                geometry=geom)
            # Parted would otherwise move the partition to suit its alignment
            cons = parted.Constraint(exactGeom=geom)
            self.parted_disk.addPartition(partition=part, constraint=cons)
            part.getPedPartition().set_name(label)
            part.type_uuid = type_uuid.bytes
        except (
            parted.GeometryException, parted.ConstraintException,
            parted.PartitionException,
        ) as err:
            raise OperationFailed(
                'Can\'t add partition {}: {}'.format(label, err)) from err

    def partitions(self):
        sector_size = self.parted_device.sectorSize
        return [
            (part.getPedPartition().get_name(),
             part.geometry.start * sector_size,
             part.geometry.length * sector_size)
            for part in self.parted_disk.partitions]

    def commit(self):
        import parted
        try:
            # commitToDevice (atomic) + commitToOS (not atomic, less important)
            self.parted_disk.commit()
        except (parted.DiskException, parted.IOException) as err:
            raise OperationFailed(
                'Can\'t write the partition table of {}: {}'
                .format(self.parted_device.path, err)) from err

    def discard(self):
        # Nothing reaches the device before commit
        self.parted_disk = None

    def clobber(self):
        import parted
        try:
            self.parted_device.clobber()
        except (parted.DeviceException, parted.IOException) as err:
            raise OperationFailed(
                'Can\'t erase the partition table of {}: {}'
                .format(self.parted_device.path, err)) from err


def apply(table, catalog, devpath, disk_id, plan, *,
          keystore_type, data_type, progress):
    """Write the two-partition layout of disk_id to devpath.

    Either both partitions end up visible, or the disk is left
    without a partition table.
    """

    layout = [
        (keystore_label(disk_id), keystore_type,
         plan.keystore_start, plan.keystore_size),
        (disk_id, data_type, plan.data_start, plan.data_size),
    ]

    try:
        table.create(devpath)
        for label, type_uuid, start, length in layout:
            table.add_partition(label, type_uuid, start, length)
        expected = [(label, start, length) for label, _, start, length in layout]
        if table.partitions() != expected:
            raise OperationFailed(
                'The new partition table of {} doesn\'t have the '
                'requested layout'.format(devpath))
    except KeypoolError:
        table.discard()
        raise

    progress.notify(
        'Writing a GPT to {} ({} byte keystore backup partition, '
        '{} byte data partition)'.format(
            devpath, plan.keystore_size, plan.data_size))
    try:
        table.commit()
        catalog.settle()
        missing = [
            label for label, _, _, _ in layout
            if catalog.partition_path(label) is None]
        if missing:
            raise OperationFailed(
                'Partitions {} didn\'t show up after writing the '
                'partition table of {}'.format(', '.join(missing), devpath))
    except KeypoolError as err:
        progress.notify_error(
            'Partitioning {} failed, erasing its partition table'
            .format(devpath), err)
        try:
            table.clobber()
        except KeypoolError as clobber_err:
            progress.notify_error(str(clobber_err), clobber_err)
        raise
