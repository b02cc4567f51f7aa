"""
Exception taxonomy for the clause-level fusion engine.
"""

from typing import Optional


class FusionError(Exception):
    """Base class for all fusion engine errors."""


class SegmentationError(FusionError):
    """Perplexity oracle failure or malformed input during segmentation."""


class RoutingDegenerate(FusionError):
    """
    No candidate expert for a clause.

    Recovered locally by generating that clause with the base model.
    """


class NumericInstability(FusionError):
    """Non-finite values in routing logits or fusion weights."""


class RegistryError(FusionError, KeyError):
    """Unknown or duplicate expert id."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class FusionTimeoutError(FusionError, TimeoutError):
    """A request exceeded its deadline at a suspension point."""


class ComputationAbandoned(FusionError):
    """
    A shared cache computation was abandoned by its owner.

    Requests that joined the computation should retry on their own.
    """


class BatchDispatchError(FusionError):
    """
    The generation backend failed on a whole batch.

    Raised identically for every member of the batch. ``shared_failure`` is
    always True: no member is individually to blame and the caller may
    resubmit.
    """

    shared_failure = True

    def __init__(
        self,
        message: str,
        signature=None,
        batch_size: int = 0,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.signature = signature
        self.batch_size = batch_size
        self.cause = cause
