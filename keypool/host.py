from .crypt import LUKS
from .devices import UdevCatalog
from .entropy import RandomSource
from .ptable import GPTTable
from .volume import Chattr, HostVolumes


class Host:
    """The operating system primitives keypool drives."""

    def __init__(self, *, crypt, volumes, flags, catalog, ptable, random):
        self.crypt = crypt
        self.volumes = volumes
        self.flags = flags
        self.catalog = catalog
        # A factory, each enrollment gets a fresh table
        self.ptable = ptable
        self.random = random

    @classmethod
    def system(cls):
        return cls(
            crypt=LUKS(), volumes=HostVolumes(), flags=Chattr(),
            catalog=UdevCatalog(), ptable=GPTTable, random=RandomSource())
