import os
import subprocess

from .errors import OperationFailed
from .util import quiet_call


MOUNT_OPTIONS = 'noatime,noexec,nosuid,nodev'
FS_TYPE = 'ext2'


def _unescape_mountinfo(field):
    # Spaces and friends are octal-escaped in /proc/self/mountinfo
    return field.encode().decode('unicode_escape')


class VolumeMount:
    """Small filesystems inside file-backed volumes."""

    def format(self, devpath):
        raise NotImplementedError

    def mount(self, devpath, mpoint, *, readonly):
        raise NotImplementedError

    def unmount(self, mpoint):
        raise NotImplementedError

    def is_mounted(self, mpoint):
        raise NotImplementedError

    def find_mount(self, devpath):
        """Where devpath is mounted, or None."""
        raise NotImplementedError

    def attach_image(self, path, *, readonly):
        """Expose a file as a block device, returning the device path."""
        raise NotImplementedError

    def detach_images(self, path):
        """Release every block device backed by path."""
        raise NotImplementedError


class HostVolumes(VolumeMount):
    def format(self, devpath):
        try:
            quiet_call(['mkfs.' + FS_TYPE, '-q', '-m', '0', '--', devpath])
        except subprocess.CalledProcessError as err:
            raise OperationFailed(
                'Can\'t create a filesystem on {}'.format(devpath)) from err

    def mount(self, devpath, mpoint, *, readonly):
        options = MOUNT_OPTIONS
        if readonly:
            options = 'ro,' + options
        try:
            quiet_call(
                ['mount', '-t', FS_TYPE, '-o', options,
                 '--', devpath, mpoint])
        except subprocess.CalledProcessError as err:
            raise OperationFailed(
                'Can\'t mount {} on {}'.format(devpath, mpoint)) from err

    def unmount(self, mpoint):
        try:
            quiet_call(['umount', '--', mpoint])
        except subprocess.CalledProcessError as err:
            raise OperationFailed('Can\'t unmount {}'.format(mpoint)) from err

    def is_mounted(self, mpoint):
        return os.path.ismount(mpoint)

    def find_mount(self, devpath):
        dn = '%d:%d' % devnum(devpath)
        with open('/proc/self/mountinfo') as mounts:
            for line in mounts:
                items = line.split()
                if items[2] == dn:
                    return _unescape_mountinfo(items[4])

    def attach_image(self, path, *, readonly):
        cmd = 'losetup -f --show --'.split() + [path]
        if readonly:
            cmd[1:1] = ['-r']
        try:
            return quiet_call(cmd).rstrip().decode('ascii')
        except subprocess.CalledProcessError as err:
            raise OperationFailed(
                'Can\'t set up a loop device for {}'.format(path)) from err

    def detach_images(self, path):
        try:
            out = quiet_call(['losetup', '-j', path]).decode()
        except subprocess.CalledProcessError as err:
            raise OperationFailed(
                'Can\'t list loop devices for {}'.format(path)) from err
        for line in out.splitlines():
            lo_dev = line.split(':', 1)[0]
            try:
                quiet_call(['losetup', '-d', '--', lo_dev])
            except subprocess.CalledProcessError as err:
                raise OperationFailed(
                    'Can\'t release loop device {}'.format(lo_dev)) from err


def devnum(devpath):
    st = os.stat(devpath)
    return (os.major(st.st_rdev), os.minor(st.st_rdev))


class FileFlags:
    """The immutable attribute of files."""

    def set_immutable(self, path, immutable=True):
        raise NotImplementedError

    def is_immutable(self, path):
        raise NotImplementedError


class Chattr(FileFlags):
    def set_immutable(self, path, immutable=True):
        try:
            quiet_call(['chattr', '+i' if immutable else '-i', '--', path])
        except subprocess.CalledProcessError as err:
            raise OperationFailed(
                'Can\'t change the immutable flag of {}'.format(path)
            ) from err

    def is_immutable(self, path):
        try:
            out = quiet_call(['lsattr', '-d', '--', path]).decode()
        except subprocess.CalledProcessError as err:
            raise OperationFailed(
                'Can\'t read the attributes of {}'.format(path)) from err
        return 'i' in out.split(maxsplit=1)[0]
