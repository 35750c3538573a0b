"""Error kinds raised by the solver."""


class SolverError(Exception):
    """Base class for reportable solver failures."""


class ValidationError(SolverError):
    """Configuration rejected before any search starts."""


class SearchSpaceTooLargeError(ValidationError):
    """Estimated combination count exceeds the hard cap."""

    def __init__(self, estimate: int, cap: int):
        self.estimate = estimate
        self.cap = cap
        super().__init__(
            f"search space too large ({estimate:,} combinations, cap {cap:,}); "
            f"narrow a range or enlarge a step"
        )


class WorkerFault(SolverError):
    """Unexpected failure inside one shard; fatal to the whole search."""

    def __init__(self, shard_id: int, message: str):
        self.shard_id = shard_id
        super().__init__(f"shard {shard_id}: {message}")


class CacheFault(SolverError):
    """Result cache read or write failure. Never fatal."""


class CancellationSignal(Exception):
    """
    Internal unwind of a cancelled walk.

    Not a SolverError: it must never reach a caller as an error.
    """
