import os

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import OperationFailed
from .util import MiB


KEYFILE_SIZE = 64


class RandomSource:
    """Keyfile material and bulk pseudorandom data.

    Keyfiles come straight from the kernel CSPRNG. Bulk data is
    AES-256-CTR over zeros under a throwaway random key, which is
    as good as random for overwriting disks and much faster.
    """

    def keyfile(self, size=KEYFILE_SIZE):
        return os.urandom(size)

    def stream(self, chunk_size=MiB):
        encryptor = Cipher(
            algorithms.AES(os.urandom(32)), modes.CTR(os.urandom(16))
        ).encryptor()
        zeros = bytes(chunk_size)
        while True:
            yield encryptor.update(zeros)


def _fill(fd, stream, offset, length):
    written = 0
    while written < length:
        chunk = next(stream)[:length - written]
        wr_len = os.pwrite(fd, chunk, offset + written)
        assert wr_len == len(chunk)
        written += wr_len
    return written


def wipe(catalog, random, devpath, bound=None, *, progress):
    """Overwrite devpath with pseudorandom data.

    If bound (in bytes) is given, only the first and last bound bytes
    are overwritten, which is enough to destroy partition tables.
    Returns the number of bytes written.
    """

    size = catalog.size_of(devpath)
    if bound is None or 2 * bound >= size:
        extents = [(0, size)]
    else:
        extents = [(0, bound), (size - bound, bound)]

    stream = random.stream()
    written = 0
    try:
        fd = os.open(devpath, os.O_WRONLY | os.O_EXCL)
    except OSError as err:
        raise OperationFailed('Can\'t open {}: {}'.format(devpath, err)) from err
    try:
        for offset, length in extents:
            progress.notify(
                'Overwriting {} bytes at offset {} of {}'
                .format(length, offset, devpath))
            written += _fill(fd, stream, offset, length)
        os.fsync(fd)
    except OSError as err:
        raise OperationFailed(
            'Writing to {} failed: {}'.format(devpath, err)) from err
    finally:
        os.close(fd)
    return written
