"""Error taxonomy for the encoding agent.

Each class maps to one outcome policy:

- ``SetupError``: missing tool or unreadable config. Fatal to the agent or batch.
- ``ContentionError``: another owner holds the file. Abandon silently.
- ``TransientIOError``: file not yet writable. Requeue, do not surface.
- ``EncodeFailure``: no success sentinel or no output. Route to the failure dir.
- ``OperatorCancellation``: explicit abort or shutdown. No-op outcome.
- ``DataInconsistency``: frame size changed mid crop scan. Fatal to that crop only.
"""


class VeaError(Exception):
    """Base class for all agent errors."""


class SetupError(VeaError):
    pass


class ConfigError(SetupError):
    """Per-batch encoder configuration is missing or invalid."""


class ContentionError(VeaError):
    pass


class SourceVanished(ContentionError):
    """Source file disappeared before it could be staged."""


class TransientIOError(VeaError):
    pass


class EncodeFailure(VeaError):
    def __init__(self, message: str, stderr_text: str = ""):
        super().__init__(message)
        self.stderr_text = stderr_text


class OperatorCancellation(VeaError):
    pass


class CropCancelled(OperatorCancellation):
    """Crop computation was aborted from outside the engine."""


class DataInconsistency(VeaError):
    pass
