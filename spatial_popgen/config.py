"""Configuration system for spatial_popgen.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Sections map 1:1 to YAML top-level keys. The build_* helpers turn a
validated SimulationConfig into model objects (Kernel, Landscape,
Population, Demography and the carrying-capacity field).
"""

from __future__ import annotations

import dataclasses
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import yaml

from spatial_popgen.demography import Demography
from spatial_popgen.errors import ConfigurationError
from spatial_popgen.kernels import KERNEL_PRESETS, Kernel
from spatial_popgen.landscape import Landscape
from spatial_popgen.mating import MatingTensor
from spatial_popgen.migration import MigrationOperator
from spatial_popgen.population import Population
from spatial_popgen import vital_rates


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Run length, seeding and backend."""
    seed: int = 42
    n_generations: int = 20
    record_every: int = 1
    backend: str = 'matrix'     # 'matrix' or 'raster'
    stochastic: bool = True


@dataclass
class LandscapeSection:
    """Habitat raster and carrying capacity.

    Without a habitat_file a uniform rows × cols grid of habitat_value
    is used.
    """
    habitat_file: Optional[str] = None
    band: int = 1
    rows: int = 10
    cols: int = 10
    habitat_value: float = 1.0
    resolution: float = 1.0
    habitable_threshold: float = 0.0
    capacity_per_habitat: float = 10.0   # K = habitat value × this


@dataclass
class GenotypesSection:
    """Genotype set, mating system and initial abundance."""
    mode: str = 'diploid'                 # 'diploid', 'clonal' or 'single'
    alleles: List[str] = field(default_factory=lambda: ['a', 'A'])
    names: Optional[List[str]] = None     # clonal / single mode
    initial_per_cell: Union[float, List[float]] = 5.0


@dataclass
class KernelSection:
    """One dispersal or competition kernel."""
    shape: str = 'gaussian'
    scale: float = 1.0
    radius: float = 2.0
    normalize: Optional[float] = 1.0
    include_self: bool = True
    n_steps: Optional[List[float]] = None


@dataclass
class DemographySection:
    """Vital rates.

    germination: 'constant' (r0 everywhere), 'beverton_holt' or
    'soft_selection'. survival: 'constant' or 'density_dependent'.
    """
    prob_seed: float = 0.5
    fecundity: float = 4.0
    germination: str = 'beverton_holt'
    r0: float = 0.5
    selection: Optional[List[float]] = None
    survival: str = 'constant'
    prob_survival: float = 0.5


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    landscape: LandscapeSection = field(default_factory=LandscapeSection)
    genotypes: GenotypesSection = field(default_factory=GenotypesSection)
    pollen: KernelSection = field(default_factory=lambda: KernelSection(radius=3.0))
    seed: KernelSection = field(default_factory=KernelSection)
    competition: KernelSection = field(default_factory=lambda: KernelSection(radius=1.5))
    demography: DemographySection = field(default_factory=DemographySection)


_SECTIONS = {
    'simulation': SimulationSection,
    'landscape': LandscapeSection,
    'genotypes': GenotypesSection,
    'pollen': KernelSection,
    'seed': KernelSection,
    'competition': KernelSection,
    'demography': DemographySection,
}


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict, defaults: Any = None) -> Any:
    """Convert a dict to a dataclass on top of defaults; unknown keys warn."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    unknown = sorted(set(data) - valid_fields)
    if unknown:
        warnings.warn(
            f"ignoring unknown {section_cls.__name__} keys {unknown}",
            UserWarning,
            stacklevel=3,
        )
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if defaults is not None:
        return dataclasses.replace(defaults, **filtered)
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    defaults = SimulationConfig()
    sections = {}
    for key, cls in _SECTIONS.items():
        value = data.get(key)
        if isinstance(value, dict):
            sections[key] = _dict_to_section(cls, value, getattr(defaults, key))
        else:
            sections[key] = getattr(defaults, key)
    return SimulationConfig(**sections)


def config_to_dict(config: SimulationConfig) -> Dict[str, Any]:
    return dataclasses.asdict(config)


def _check_kernel(name: str, section: KernelSection) -> None:
    if section.shape not in KERNEL_PRESETS:
        raise ConfigurationError(
            f"{name}.shape must be one of {sorted(KERNEL_PRESETS)}, "
            f"got '{section.shape}'"
        )
    if section.radius <= 0 or section.scale <= 0:
        raise ConfigurationError(
            f"{name}.radius and {name}.scale must be positive"
        )
    if section.normalize is not None and section.normalize < 0:
        raise ConfigurationError(f"{name}.normalize must be >= 0 or null")
    if section.n_steps is not None and any(v < 0 for v in section.n_steps):
        raise ConfigurationError(f"{name}.n_steps weights must be >= 0")


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ConfigurationError on failure."""
    sim = config.simulation
    if sim.backend not in ('matrix', 'raster'):
        raise ConfigurationError(
            f"simulation.backend must be 'matrix' or 'raster', got '{sim.backend}'"
        )
    if sim.n_generations < 0:
        raise ConfigurationError("simulation.n_generations must be >= 0")
    if sim.record_every < 1:
        raise ConfigurationError("simulation.record_every must be >= 1")
    if sim.seed < 0:
        raise ConfigurationError("simulation.seed must be non-negative")

    land = config.landscape
    if land.habitat_file is None and (land.rows < 1 or land.cols < 1):
        raise ConfigurationError("landscape.rows and landscape.cols must be >= 1")
    if land.resolution <= 0:
        raise ConfigurationError("landscape.resolution must be positive")
    if land.capacity_per_habitat < 0:
        raise ConfigurationError("landscape.capacity_per_habitat must be >= 0")

    gen = config.genotypes
    if gen.mode not in ('diploid', 'clonal', 'single'):
        raise ConfigurationError(
            f"genotypes.mode must be 'diploid', 'clonal' or 'single', "
            f"got '{gen.mode}'"
        )
    if gen.mode == 'clonal' and not gen.names:
        raise ConfigurationError("genotypes.names required for clonal mode")
    if np.any(np.asarray(gen.initial_per_cell, dtype=np.float64) < 0):
        raise ConfigurationError("genotypes.initial_per_cell must be >= 0")

    for name in ('pollen', 'seed', 'competition'):
        _check_kernel(name, getattr(config, name))

    demo = config.demography
    for name in ('prob_seed', 'prob_survival', 'r0'):
        value = getattr(demo, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(
                f"demography.{name} must be in [0, 1], got {value}"
            )
    if demo.fecundity < 0:
        raise ConfigurationError("demography.fecundity must be >= 0")
    if demo.germination not in ('constant', 'beverton_holt', 'soft_selection'):
        raise ConfigurationError(
            f"demography.germination must be 'constant', 'beverton_holt' or "
            f"'soft_selection', got '{demo.germination}'"
        )
    if demo.germination == 'soft_selection' and demo.selection is None:
        raise ConfigurationError(
            "demography.selection required for soft_selection germination"
        )
    if demo.survival not in ('constant', 'density_dependent'):
        raise ConfigurationError(
            f"demography.survival must be 'constant' or 'density_dependent', "
            f"got '{demo.survival}'"
        )
    if demo.selection is not None:
        n_genotypes = len(genotype_names(config))
        if len(demo.selection) != n_genotypes:
            raise ConfigurationError(
                f"demography.selection has {len(demo.selection)} values for "
                f"{n_genotypes} genotypes"
            )
        if any(s < 0 for s in demo.selection):
            raise ConfigurationError("demography.selection must be >= 0")


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigurationError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config


# ═══════════════════════════════════════════════════════════════════════
# MODEL CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════

def genotype_names(config: SimulationConfig) -> Tuple[str, ...]:
    return mating_tensor(config).genotypes


def mating_tensor(config: SimulationConfig) -> MatingTensor:
    gen = config.genotypes
    if gen.mode == 'diploid':
        return MatingTensor.diploid(tuple(gen.alleles))
    if gen.mode == 'clonal':
        return MatingTensor.clonal(tuple(gen.names))
    name = gen.names[0] if gen.names else 'aa'
    return MatingTensor.single(name)


def build_kernel(section: KernelSection) -> Kernel:
    return Kernel.from_dict(dataclasses.asdict(section))


def build_migration(section: KernelSection, name: str) -> MigrationOperator:
    return MigrationOperator(build_kernel(section), n_steps=section.n_steps,
                             name=name)


def build_landscape(config: SimulationConfig) -> Landscape:
    land = config.landscape
    if land.habitat_file is not None:
        return Landscape.from_file(land.habitat_file, band=land.band,
                                   habitable_threshold=land.habitable_threshold)
    values = np.full((land.rows, land.cols), float(land.habitat_value))
    return Landscape.from_array(values, resolution=land.resolution,
                                habitable_threshold=land.habitable_threshold)


def build_carrying_capacity(config: SimulationConfig,
                            landscape: Landscape) -> np.ndarray:
    """K per habitable cell: habitat value × capacity_per_habitat."""
    return landscape.habitat_values() * config.landscape.capacity_per_habitat


def build_population(config: SimulationConfig,
                     landscape: Landscape) -> Population:
    return Population.uniform(landscape, genotype_names(config),
                              config.genotypes.initial_per_cell)


def build_demography(config: SimulationConfig) -> Demography:
    """Unbound Demography from the pollen/seed/competition/demography sections."""
    demo = config.demography
    mating = mating_tensor(config)
    competition = build_migration(config.competition, 'competition')

    if demo.germination == 'constant':
        if demo.selection is not None:
            # (1, G) row: a (G,) vector reads as per-cell when n == G
            germination = vital_rates.constant(
                demo.r0 * np.asarray(demo.selection, dtype=np.float64)[None, :],
                name='prob_germination')
        else:
            germination = vital_rates.constant(demo.r0, name='prob_germination')
    elif demo.germination == 'beverton_holt':
        germination = vital_rates.beverton_holt(demo.r0, competition,
                                                selection=demo.selection)
    else:
        germination = vital_rates.soft_selection(demo.r0, competition,
                                                 demo.selection)

    if demo.survival == 'density_dependent':
        survival = vital_rates.density_dependent_survival(demo.prob_survival,
                                                          competition)
    else:
        survival = vital_rates.constant(demo.prob_survival, name='prob_survival')

    return Demography(
        genotypes=mating.genotypes,
        mating=mating,
        pollen_migration=build_migration(config.pollen, 'pollen'),
        seed_migration=build_migration(config.seed, 'seed'),
        prob_seed=vital_rates.constant(demo.prob_seed, name='prob_seed'),
        fecundity=vital_rates.constant(demo.fecundity, name='fecundity'),
        prob_germination=germination,
        prob_survival=survival,
    )


def time_grid(config: SimulationConfig) -> List[int]:
    """Recorded generations: every record_every, always including the last."""
    sim = config.simulation
    grid = list(range(0, sim.n_generations + 1, sim.record_every))
    if grid[-1] != sim.n_generations:
        grid.append(sim.n_generations)
    return grid
