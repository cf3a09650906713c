from .geometry import cauchy_geometry, spider_geometry, lagrange_geometry, denominator_geometry
from .optim import trust_region_step

__all__ = ['cauchy_geometry', 'spider_geometry', 'lagrange_geometry', 'denominator_geometry', 'trust_region_step']
