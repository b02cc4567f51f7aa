"""
Input validation utilities.
"""

import math

import torch

from ..errors import NumericInstability, SegmentationError
from .routing import WEIGHT_TOLERANCE, FusionWeights


def check_finite(tensor: torch.Tensor, name: str = "tensor") -> None:
    """
    Check tensor for NaN or infinite values.

    Args:
        tensor: Tensor to check
        name: Name of tensor for error messages

    Raises:
        NumericInstability: If NaN or inf values found
    """
    if torch.isnan(tensor).any():
        raise NumericInstability(f"{name} contains NaN values")

    if torch.isinf(tensor).any():
        raise NumericInstability(f"{name} contains infinite values")


def sanitize_logits(logits: torch.Tensor) -> torch.Tensor:
    """
    Replace non-finite logits with finite values.

    NaN and -inf become the smallest finite logit, +inf the largest. An
    all-non-finite vector becomes all zeros.

    Args:
        logits: (n,) - Raw logits

    Returns:
        sanitized: (n,) - Finite logits
    """
    finite = torch.isfinite(logits)
    if not finite.any():
        return torch.zeros_like(logits)

    low = logits[finite].min()
    high = logits[finite].max()

    sanitized = torch.where(torch.isnan(logits), low, logits)
    sanitized = torch.where(sanitized == float("inf"), high, sanitized)
    sanitized = torch.where(sanitized == float("-inf"), low, sanitized)
    return sanitized


def validate_text(text) -> str:
    """
    Validate request text.

    Raises:
        SegmentationError: If text is not a string
    """
    if not isinstance(text, str):
        raise SegmentationError(
            f"text must be a string, got {type(text).__name__}"
        )
    return text


def validate_weights(weights: FusionWeights, name: str = "weights") -> None:
    """
    Check that weights are finite and sum to 1.

    Args:
        weights: Fusion weights to check
        name: Name for error messages

    Raises:
        NumericInstability: If weights are non-finite or do not sum to 1
    """
    if weights.is_empty():
        return

    for expert_id, value in weights.weights.items():
        if not math.isfinite(value):
            raise NumericInstability(f"{name}[{expert_id}] is not finite: {value}")

    total = weights.total()
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise NumericInstability(f"{name} sum to {total}, expected 1.0")
