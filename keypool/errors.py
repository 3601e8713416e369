class KeypoolError(Exception):
    pass


class AlreadyExists(KeypoolError):
    pass


class NotFound(KeypoolError):
    pass


class AlreadyOpen(KeypoolError):
    pass


class AlreadyPartitioned(KeypoolError):
    pass


class AlreadyEnrolled(KeypoolError):
    pass


class NotEnrolled(KeypoolError):
    pass


class DeviceNotFound(KeypoolError):
    pass


class ValidationFailed(KeypoolError):
    pass


class OperationFailed(KeypoolError):
    pass


class PartialRollback(KeypoolError):
    """Rolling back a failed operation failed too.

    The disks listed in errors may still be attached;
    they need manual intervention.
    """

    def __init__(self, msg, errors):
        super().__init__(msg)
        self.errors = errors
