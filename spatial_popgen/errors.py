"""Exception and warning types for spatial_popgen.

  - ConfigurationError:      fatal, raised before a generation runs
  - RateRangeError:          a vital rate evaluated outside its valid range
  - GeometryMismatchError:   realized operator used against another landscape
  - GenerationError:         a stage failed; carries stage + generation index
  - SummaryError:            a simulator summary function failed
  - NumericDegeneracyWarning: recoverable (zero rows, zero capacity)
"""

from __future__ import annotations

from typing import Optional


class PopGenError(Exception):
    """Base class for all spatial_popgen errors."""


class ConfigurationError(PopGenError, ValueError):
    """Invalid model configuration (genotypes, tensors, kernels, shapes)."""


class RateRangeError(ConfigurationError):
    """A vital rate produced values outside its admissible range."""

    def __init__(self, rate_name: str, low: float, high: float,
                 message: Optional[str] = None):
        self.rate_name = rate_name
        self.low = low
        self.high = high
        super().__init__(
            message or
            f"vital rate '{rate_name}' out of range: "
            f"min={low:.6g}, max={high:.6g}"
        )


class GeometryMismatchError(PopGenError):
    """A realized migration operator was applied to a different landscape."""


class GenerationError(PopGenError):
    """A demographic stage failed during one generation."""

    def __init__(self, stage: str, generation: int, cause: BaseException):
        self.stage = stage
        self.generation = generation
        super().__init__(
            f"stage '{stage}' failed at generation {generation}: "
            f"{type(cause).__name__}: {cause}"
        )


class SummaryError(PopGenError):
    """A summary function raised while recording a snapshot."""

    def __init__(self, summary: str, generation: int, cause: BaseException):
        self.summary = summary
        self.generation = generation
        super().__init__(
            f"summary '{summary}' failed at generation {generation}: "
            f"{type(cause).__name__}: {cause}"
        )


class NumericDegeneracyWarning(UserWarning):
    """Recoverable numerical degeneracy (all-zero rows, zero capacity)."""
