"""
Errors raised by the reconstruction engine.

DataIntegrityError marks a single bad execution; the tracker skips it and
records a warning. StateInvariantError means the engine itself produced an
inconsistent position and the whole run must fail.
"""


class ReconstructionError(Exception):
    """Base class for reconstruction failures."""


class DataIntegrityError(ReconstructionError):
    """An execution that cannot be applied (bad quantity, missing price, out of order...)."""

    def __init__(self, execution, reason: str):
        self.execution = execution
        self.reason = reason
        exec_id = getattr(execution, 'exec_id', '?')
        super().__init__(f"execution {exec_id}: {reason}")


class StateInvariantError(ReconstructionError):
    """Position state violated an invariant; results of the run are unusable."""
