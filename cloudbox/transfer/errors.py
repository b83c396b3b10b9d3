"""
Transfer error hierarchy.

PreconditionError subclasses are raised before anything is mutated and are
reported to the caller as a rejection. Anything raised once a run has started
ends the run in the `error` phase.
"""


class TransferError(Exception):
    """Base class for device transfer errors"""


class PreconditionError(TransferError):
    """A run cannot start with the given volume/package"""


class VolumeNotFoundError(PreconditionError):
    pass


class VolumeNotWritableError(PreconditionError):
    pass


class PackageNotFoundError(PreconditionError):
    pass


class PackageIncompleteError(PreconditionError):
    pass


class InvalidPasswordError(PreconditionError):
    """The password chosen for the imported account is unacceptable"""


class TransferBusyError(TransferError):
    """Another export or import is already running"""


class TransferCancelled(TransferError):
    """The run observed a stop request or its deadline"""
