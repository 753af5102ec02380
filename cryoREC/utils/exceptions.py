class ReconstructionError(Exception):
    """Base class for the errors raised by cryoREC."""


class ConfigurationError(ReconstructionError, ValueError):
    """Invalid parameters or incompatible geometries. Raised before any insertion takes place."""


class AccumulatorStateError(ReconstructionError, RuntimeError):
    """The requested operation is not allowed in the current lifecycle state of an accumulator."""


class ProjectionLoadError(ReconstructionError):
    """A single projection could not be read. The reconstruction skips it and carries on."""


class FourierTransformError(ReconstructionError, RuntimeError):
    """A transform plan could not be created. This is fatal for the whole reconstruction."""
