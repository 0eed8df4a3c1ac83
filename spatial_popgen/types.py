"""Core data types for spatial_popgen.

This module is the SINGLE SOURCE OF TRUTH for:
  - IndexSpace: which cell set a per-cell array is indexed over
  - Stage: the seven ordered stages of one generation
  - RateContext: what a vital rate may read besides abundance

Per-cell arrays are indexed over the full raster, the accessible cells,
or the habitable cells. Mixing them is a bug; every function that
accepts per-cell data names the space it expects.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Optional

import numpy as np

if TYPE_CHECKING:
    from spatial_popgen.population import Population


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class IndexSpace(IntEnum):
    """Cell index spaces. HABITABLE ⊆ ACCESSIBLE ⊆ RASTER."""
    RASTER     = 0   # every raster cell, row-major
    ACCESSIBLE = 1   # cells migrants may land in
    HABITABLE  = 2   # cells that may hold positive population


class Stage(str, Enum):
    """Stages of one generation, in execution order.

      SEEDERS      M  = Binomial(N, prob_seed)
      POLLEN       P  = pollen_migration(M)
      SEEDS        S  = fecundity x mating(M, P)
      DISPERSAL    SD = seed_migration(S)
      GERMINATION  K  = prob_germination(N, carrying_capacity)
      RECRUITMENT  G  = Poisson(SD * K)
      SURVIVAL     N' = Binomial(N, prob_survival) + G
    """
    SEEDERS     = "seeders"
    POLLEN      = "pollen"
    SEEDS       = "seeds"
    DISPERSAL   = "dispersal"
    GERMINATION = "germination"
    RECRUITMENT = "recruitment"
    SURVIVAL    = "survival"


STAGE_ORDER = tuple(Stage)


# ═══════════════════════════════════════════════════════════════════════
# VITAL-RATE EVALUATION CONTEXT
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RateContext:
    """Read-only inputs available to a vital rate besides abundance."""
    population: 'Population'
    carrying_capacity: Optional[np.ndarray] = None   # (n_habitable,)
    generation: int = 0
