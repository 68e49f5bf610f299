"""
@file   dense_operator.py
@brief  Dense form of the illumination operator and the direct solve used on
        the coarsest multigrid level.

The coarsest grid is small enough to materialize the full (H·W) x (H·W)
matrix and solve it exactly. The matrix uses the row-major point index
k = i * W + j and the same CoefficientField as the matrix-free operator:

- boundary points get identity rows,
- interior rows carry `center` on the diagonal and `-weight` for every
  interior neighbour; interior and boundary points are never coupled.
"""

import torch

from retinexmg.ops.multigrid_illumination.diffusion_coefficients import CoefficientField
from retinexmg.ops.multigrid_illumination.errors import ConfigurationError, DimensionMismatch

# Status reported when the backend succeeded but produced inf/nan values
NONFINITE_STATUS = -1

SOLVER_METHODS = ("lu", "cholesky")


def build_operator(coefficients: CoefficientField, shape=None) -> torch.Tensor:
    """
    Materialize the operator described by a coefficient field.

    Args:
        coefficients: Stencil weights of the level
        shape: Grid shape (H, W); defaults to the shape the field was built for

    Returns:
        A: Dense operator [H*W, H*W]
    """
    nx, ny = coefficients.shape
    if shape is not None and tuple(shape) != (nx, ny):
        raise DimensionMismatch(f"Coefficients built for {nx}x{ny}, operator requested for {tuple(shape)}")

    center = coefficients.center
    n = nx * ny
    A = torch.eye(n, dtype=center.dtype, device=center.device)

    index = torch.arange(n, device=center.device).view(nx, ny)
    interior = torch.zeros(nx, ny, dtype=torch.bool, device=center.device)
    interior[1:-1, 1:-1] = True

    p = index[1:-1, 1:-1]
    A[p.reshape(-1), p.reshape(-1)] = center.reshape(-1)

    neighbours = (
        (coefficients.north, index[:-2, 1:-1], interior[:-2, 1:-1]),
        (coefficients.south, index[2:, 1:-1], interior[2:, 1:-1]),
        (coefficients.west, index[1:-1, :-2], interior[1:-1, :-2]),
        (coefficients.east, index[1:-1, 2:], interior[1:-1, 2:]),
    )
    for weight, q, mask in neighbours:
        A[p[mask], q[mask]] = -weight[mask]

    return A


def dense_solve_(A: torch.Tensor, x: torch.Tensor, method: str = "lu") -> int:
    """
    Solve A y = x and overwrite x with y.

    Args:
        A: Dense system matrix [N, N]
        x: Right-hand side with N elements (any shape); receives the solution
        method: "lu" (partial pivoting, as LAPACK dgesv) or "cholesky"

    Returns:
        status: 0 on success. Positive values are the backend's info code
                (singular or not positive definite), NONFINITE_STATUS flags a
                solution containing inf/nan. x is left untouched on failure.
    """
    if method not in SOLVER_METHODS:
        raise ConfigurationError(f"Unknown dense solver method {method!r}, expected one of {SOLVER_METHODS}")
    if A.dim() != 2 or A.shape[0] != A.shape[1] or A.shape[0] != x.numel():
        raise DimensionMismatch(f"Cannot solve a {tuple(A.shape)} system for {x.numel()} unknowns")

    rhs = x.reshape(-1, 1)
    if method == "lu":
        y, info = torch.linalg.solve_ex(A, rhs)
        status = int(info)
    else:
        L, info = torch.linalg.cholesky_ex(A)
        status = int(info)
        y = torch.cholesky_solve(rhs, L) if status == 0 else None

    if status == 0 and not bool(torch.isfinite(y).all()):
        status = NONFINITE_STATUS
    if status == 0:
        x.copy_(y.reshape(x.shape))
    return status
