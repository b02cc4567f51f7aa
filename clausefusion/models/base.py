"""
Base module interface for the torch components of the fusion engine.
"""

import torch
import torch.nn as nn
from abc import ABC, abstractmethod
from typing import Any, Optional
from ..config import FusionConfig
from ..errors import NumericInstability


class BaseModule(nn.Module, ABC):
    """
    Abstract base class for fusion torch modules.

    Provides common functionality and interface for all components.
    """

    def __init__(self, config: FusionConfig):
        """
        Initialize base module.

        Args:
            config: Fusion configuration object
        """
        super().__init__()
        self.config = config

    @abstractmethod
    def forward(self, *args, **kwargs) -> Any:
        """
        Forward pass - must be implemented by subclasses.
        """
        pass

    def get_num_params(self, trainable_only: bool = True) -> int:
        """
        Get number of parameters in module.

        Args:
            trainable_only: If True, count only trainable parameters

        Returns:
            Number of parameters
        """
        if trainable_only:
            return sum(p.numel() for p in self.parameters() if p.requires_grad)
        return sum(p.numel() for p in self.parameters())

    def validate_input(self, x: torch.Tensor, expected_shape: Optional[tuple] = None):
        """
        Validate input tensor.

        Args:
            x: Input tensor
            expected_shape: Expected shape (use None for variable dimensions)

        Raises:
            NumericInstability: If input contains NaN or inf
            ValueError: If input has the wrong shape
        """
        if torch.isnan(x).any():
            raise NumericInstability("Input contains NaN values")

        if torch.isinf(x).any():
            raise NumericInstability("Input contains infinite values")

        if expected_shape is not None:
            if len(x.shape) != len(expected_shape):
                raise ValueError(
                    f"Expected {len(expected_shape)}D tensor, got {len(x.shape)}D"
                )

            for i, (actual, expected) in enumerate(zip(x.shape, expected_shape)):
                if expected is not None and actual != expected:
                    raise ValueError(
                        f"Dimension {i}: expected {expected}, got {actual}"
                    )

    def get_device(self) -> torch.device:
        """Get device of module parameters (CPU for parameterless modules)."""
        for p in self.parameters():
            return p.device
        return torch.device("cpu")
