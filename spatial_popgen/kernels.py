"""Distance-decay dispersal kernels.

A Kernel maps a non-negative distance d to a weight f(d / scale) and is
truncated at a hard cutoff radius: weights at d > radius are exactly 0.

Presets (u = d / scale):
  gaussian     exp(-u² / 2)
  exponential  exp(-u)
  cauchy       1 / (1 + u²)
  uniform      1

Any vectorized callable f(u) may be used instead of a preset name.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

import numpy as np

from spatial_popgen.errors import ConfigurationError


# ═══════════════════════════════════════════════════════════════════════
# PRESET SHAPES
# ═══════════════════════════════════════════════════════════════════════

def gaussian(u: np.ndarray) -> np.ndarray:
    return np.exp(-0.5 * u * u)


def exponential(u: np.ndarray) -> np.ndarray:
    return np.exp(-u)


def cauchy(u: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + u * u)


def uniform(u: np.ndarray) -> np.ndarray:
    return np.ones_like(u, dtype=np.float64)


KERNEL_PRESETS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    'gaussian': gaussian,
    'exponential': exponential,
    'cauchy': cauchy,
    'uniform': uniform,
}

# Cell-centre distances are computed two ways (stencil offsets vs.
# coordinate differences); both compare against radius * (1 + tol).
_RADIUS_RTOL = 1e-9


# ═══════════════════════════════════════════════════════════════════════
# KERNEL
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Kernel:
    """Truncated distance-decay kernel.

    Attributes:
        shape: Preset name or callable f(u) of scaled distance u = d / scale.
        scale: Distance scale σ (> 0).
        radius: Hard cutoff r (> 0), in map units.
        normalize: Row-sum target τ for induced operators, or None for
            raw weights.
        include_self: Whether a cell lies in its own neighbourhood.
    """
    shape: Union[str, Callable[[np.ndarray], np.ndarray]] = 'gaussian'
    scale: float = 1.0
    radius: float = 1.0
    normalize: Optional[float] = 1.0
    include_self: bool = False

    def __post_init__(self):
        if isinstance(self.shape, str):
            if self.shape not in KERNEL_PRESETS:
                raise ConfigurationError(
                    f"kernel shape must be one of {sorted(KERNEL_PRESETS)}, "
                    f"got '{self.shape}'"
                )
        elif not callable(self.shape):
            raise ConfigurationError(
                f"kernel shape must be a preset name or callable, "
                f"got {type(self.shape).__name__}"
            )
        if not np.isfinite(self.radius) or self.radius <= 0:
            raise ConfigurationError(
                f"kernel radius must be positive and finite, got {self.radius}"
            )
        if not np.isfinite(self.scale) or self.scale <= 0:
            raise ConfigurationError(
                f"kernel scale must be positive and finite, got {self.scale}"
            )
        if self.normalize is not None and (
                not np.isfinite(self.normalize) or self.normalize < 0):
            raise ConfigurationError(
                f"kernel normalize target must be >= 0, got {self.normalize}"
            )

    @property
    def function(self) -> Callable[[np.ndarray], np.ndarray]:
        if isinstance(self.shape, str):
            return KERNEL_PRESETS[self.shape]
        return self.shape

    @property
    def cutoff(self) -> float:
        return self.radius * (1.0 + _RADIUS_RTOL)

    def weights(self, distances: np.ndarray) -> np.ndarray:
        """Kernel weights for an array of distances (0 beyond the radius).

        Negative or non-finite kernel outputs are a configuration error.
        """
        d = np.asarray(distances, dtype=np.float64)
        w = np.asarray(self.function(d / self.scale), dtype=np.float64)
        w = np.broadcast_to(w, d.shape).copy()
        w[d > self.cutoff] = 0.0
        if np.any(~np.isfinite(w)) or np.any(w < 0):
            raise ConfigurationError(
                "kernel produced negative or non-finite weights"
            )
        return w

    def stencil(self, resolution: Tuple[float, float]) -> np.ndarray:
        """2-D weight stencil over raster cell offsets within the radius.

        Args:
            resolution: (x_res, y_res) cell size in map units.

        Returns:
            (2h+1, 2w+1) array; centre is the focal cell.
        """
        x_res, y_res = float(resolution[0]), float(resolution[1])
        w = int(np.floor(self.cutoff / x_res))
        h = int(np.floor(self.cutoff / y_res))
        dy, dx = np.mgrid[-h:h + 1, -w:w + 1]
        dist = np.hypot(dx * x_res, dy * y_res)
        weights = self.weights(dist)
        if not self.include_self:
            weights[h, w] = 0.0
        return weights

    # ── Configuration ─────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Kernel':
        """Kernel from a config mapping; other keys (n_steps) are ignored."""
        return cls(
            shape=data.get('shape', 'gaussian'),
            scale=float(data.get('scale', 1.0)),
            radius=float(data.get('radius', 1.0)),
            normalize=(None if data.get('normalize', 1.0) is None
                       else float(data.get('normalize', 1.0))),
            include_self=bool(data.get('include_self', False)),
        )
