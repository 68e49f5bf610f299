"""
@file   diffusion_coefficients.py
@brief  Five-point stencil coefficients for the illumination smoothness operator.

The illumination field L is the solution of

    (I + λ·L_w) L = b

on the interior points, where L_w is a weighted graph Laplacian on the
5-point stencil. Edges towards the boundary ring are dropped (zero flux),
so the ring never enters the system. Each edge
(p, q) between two neighbouring pixels carries a weight w(b_p, b_q) that is
symmetric in its arguments, which keeps the operator symmetric. Since every
row has a unit contribution on the diagonal on top of the Laplacian, the
operator is strictly diagonally dominant and therefore positive definite.

The weight model is selected with DiffusionType. Every consumer of the
stencil (relaxation, matrix-free application, dense assembly) reads the
same CoefficientField, so all of them share one discretization.
"""

import enum
from typing import NamedTuple

import torch

from retinexmg.ops.multigrid_illumination.errors import ConfigurationError, DimensionMismatch


class DiffusionType(enum.IntEnum):
    """Diffusion model used to weight the smoothness term."""
    ISOTROPIC = 0
    WEBER = 1


def _isotropic_weights(b_p: torch.Tensor, b_q: torch.Tensor) -> torch.Tensor:
    """Constant unit weight: plain 5-point Laplacian."""
    return torch.ones_like(b_p)


def _weber_weights(b_p: torch.Tensor, b_q: torch.Tensor) -> torch.Tensor:
    """
    Edge-aware weight 1 / (1 + Weber contrast).

    The Weber contrast of an edge is |b_p - b_q| / min(|b_p|, |b_q|), so the
    weight reads m / (m + d) with m the smaller magnitude and d the absolute
    difference. Flat zero regions (m + d == 0) get full weight.
    """
    m = torch.minimum(b_p.abs(), b_q.abs())
    d = (b_p - b_q).abs()
    denom = m + d
    ones = torch.ones_like(denom)
    flat = denom == 0
    return torch.where(flat, ones, m / torch.where(flat, ones, denom))


_EDGE_WEIGHTS = {
    DiffusionType.ISOTROPIC: _isotropic_weights,
    DiffusionType.WEBER: _weber_weights,
}


def as_diffusion_type(value) -> DiffusionType:
    """Convert an integer option to a DiffusionType."""
    try:
        return DiffusionType(int(value))
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Unknown diffusion type {value!r}, expected one of {[t.value for t in DiffusionType]}"
        ) from None


class CoefficientField(NamedTuple):
    """
    Stencil weights over the interior points of one grid level.

    Each field has shape [H-2, W-2]. The four neighbour weights already
    include the smoothness weight λ and are zero towards the boundary ring;
    center = 1 + north + south + east + west.
    """
    center: torch.Tensor
    north: torch.Tensor
    south: torch.Tensor
    east: torch.Tensor
    west: torch.Tensor
    lambda_: float
    diffusion_type: DiffusionType

    @property
    def shape(self):
        """Shape of the grid the field was computed for (including the boundary ring)."""
        h, w = self.center.shape
        return h + 2, w + 2


def compute_coefficients(b: torch.Tensor, lambda_: float, diffusion_type) -> CoefficientField:
    """
    Compute the stencil weights of one level from its right-hand side.

    Args:
        b: Right-hand side of the level [H, W], H, W >= 3
        lambda_: Relative importance of the smoothness constraint (> 0)
        diffusion_type: DiffusionType (or its integer value)

    Returns:
        CoefficientField over the interior points of b
    """
    if b.dim() != 2 or b.shape[0] < 3 or b.shape[1] < 3:
        raise DimensionMismatch(f"Coefficients need a 2-D grid of at least 3x3, got {tuple(b.shape)}")
    if not lambda_ > 0:
        raise ConfigurationError(f"lambda must be positive, got {lambda_}")
    diffusion_type = as_diffusion_type(diffusion_type)
    edge_weights = _EDGE_WEIGHTS[diffusion_type]

    # Horizontal edges (i, j)-(i, j+1): [H, W-1]; vertical edges (i, j)-(i+1, j): [H-1, W]
    w_h = lambda_ * edge_weights(b[:, :-1], b[:, 1:])
    w_v = lambda_ * edge_weights(b[:-1, :], b[1:, :])

    west = w_h[1:-1, :-1].clone()
    east = w_h[1:-1, 1:].clone()
    north = w_v[:-1, 1:-1].clone()
    south = w_v[1:, 1:-1].clone()

    # The boundary ring is not an unknown: edges reaching it carry no flux
    north[0, :] = 0.0
    south[-1, :] = 0.0
    west[:, 0] = 0.0
    east[:, -1] = 0.0

    center = 1.0 + north + south + east + west

    return CoefficientField(
        center=center,
        north=north,
        south=south,
        east=east,
        west=west,
        lambda_=float(lambda_),
        diffusion_type=diffusion_type,
    )
