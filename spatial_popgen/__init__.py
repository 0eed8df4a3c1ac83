"""spatial_popgen: Discrete-generation spatial population genetics on rasters.

A gridded-landscape model coupling:
  - Genotype-structured abundance per habitable raster cell
  - Pollen and seed dispersal through distance-decay kernels
  - Mating via a genotype x genotype -> offspring-genotype tensor
  - Density-dependent (Beverton-Holt) germination against a carrying capacity
  - Binomial survival and Poisson recruitment each generation

Dispersal operators run either as lazy raster convolutions or as
precomputed sparse matrices over accessible cells.
"""

__version__ = "0.1.0"
