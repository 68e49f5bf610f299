"""
Multigrid V-cycle Solver for the Illumination Field

@file   multi_grid_solver.py
@brief  Geometric multigrid solver for the smoothness-regularized illumination
        model: (I + λ·L_w) L = b

This module estimates the illumination field L of a single-channel image b.
The full-resolution system is never assembled: every level relaxes and
computes residuals matrix-free, and only the coarsest level materializes the
dense operator for an exact solve.

Grid hierarchy:
- Level 0 is the image grid [H, W]
- Level k+1 has shape [H_k // 2, W_k // 2] (truncating division)
- Level n_grids-1 is solved directly

Boundary handling:
- The outermost row/column of every grid is not an unknown of the system
- Relaxation and operator application only read and write interior points
- The ring is set to 0 after the coarsest solve and after each correction
"""

import logging

import numpy as np
import torch

from retinexmg.ops.multigrid_illumination.dense_operator import (
    SOLVER_METHODS,
    build_operator,
    dense_solve_,
)
from retinexmg.ops.multigrid_illumination.diffusion_coefficients import (
    CoefficientField,
    DiffusionType,
    as_diffusion_type,
    compute_coefficients,
)
from retinexmg.ops.multigrid_illumination.errors import (
    ConfigurationError,
    DimensionMismatch,
    SolverFailure,
)

# Smallest usable grid side: one interior point plus the boundary ring
MIN_GRID_SIZE = 3


def _make_masks(nx, ny, device):
    """
    Create red-black checkerboard masks over the interior points.

    Red points: (i+j) % 2 == 0
    Black points: (i+j) % 2 == 1
    """
    idx = (torch.arange(nx, device=device).view(-1, 1) +
           torch.arange(ny, device=device)) & 1
    red = (idx == 0)[1:-1, 1:-1]
    black = ~red
    return red, black


def _check_coefficients(x: torch.Tensor, coefficients: CoefficientField):
    if tuple(x.shape) != tuple(coefficients.shape):
        raise DimensionMismatch(
            f"Grid of shape {tuple(x.shape)} does not match coefficients built for {coefficients.shape}"
        )


def _with_zero_ring(x: torch.Tensor) -> torch.Tensor:
    """Copy of x whose boundary ring is zero, so ring values never leak into the stencil."""
    work = torch.zeros_like(x)
    work[1:-1, 1:-1] = x[1:-1, 1:-1]
    return work


def _neighbour_sum(work: torch.Tensor, coefficients: CoefficientField) -> torch.Tensor:
    """Weighted sum of the four neighbours of every interior point."""
    return (coefficients.north * work[:-2, 1:-1] +
            coefficients.south * work[2:, 1:-1] +
            coefficients.west * work[1:-1, :-2] +
            coefficients.east * work[1:-1, 2:])


def apply_bc(x: torch.Tensor) -> torch.Tensor:
    """Set the boundary ring of x to zero (in place)."""
    x[0, :] = 0
    x[-1, :] = 0
    x[:, 0] = 0
    x[:, -1] = 0
    return x


def smooth(
    x: torch.Tensor,
    b: torch.Tensor,
    coefficients: CoefficientField,
    num_iterations: int = 2,
    omega: float = 1.0,
) -> torch.Tensor:
    """
    Red-Black Gauss-Seidel relaxation, in place on the interior of x.

    Each iteration updates all red points, then all black points, from the
    latest neighbour values. The ordering is fixed, so the result is
    deterministic. omega > 1 gives SOR.

    Args:
        x: Current estimate [H, W], mutated
        b: Right-hand side [H, W]
        coefficients: Stencil weights of this level
        num_iterations: Number of red-black sweeps
        omega: Relaxation parameter

    Returns:
        x
    """
    _check_coefficients(x, coefficients)
    if tuple(b.shape) != tuple(x.shape):
        raise DimensionMismatch(f"x has shape {tuple(x.shape)} but b has shape {tuple(b.shape)}")

    nx, ny = x.shape
    red_mask, black_mask = _make_masks(nx, ny, device=x.device)
    work = _with_zero_ring(x)
    inner = work[1:-1, 1:-1]
    rhs = b[1:-1, 1:-1]

    for _ in range(num_iterations):
        for mask in (red_mask, black_mask):
            phi_new = (rhs + _neighbour_sum(work, coefficients)) / coefficients.center
            inner.copy_(torch.where(mask, inner + omega * (phi_new - inner), inner))

    x[1:-1, 1:-1] = inner
    return x


def apply_operator(x: torch.Tensor, coefficients: CoefficientField) -> torch.Tensor:
    """
    Matrix-free application of the operator to x.

    Returns:
        A·x on interior points, zeros on the boundary ring
    """
    _check_coefficients(x, coefficients)
    work = _with_zero_ring(x)
    out = torch.zeros_like(x)
    out[1:-1, 1:-1] = coefficients.center * work[1:-1, 1:-1] - _neighbour_sum(work, coefficients)
    return out


def compute_residual(x: torch.Tensor, b: torch.Tensor, coefficients: CoefficientField) -> torch.Tensor:
    """r = b - A·x"""
    return b - apply_operator(x, coefficients)


def residual_norm(x: torch.Tensor, b: torch.Tensor, coefficients: CoefficientField) -> float:
    """L2 norm of the residual over interior points."""
    return torch.norm(compute_residual(x, b, coefficients)[1:-1, 1:-1]).item()


def restrict(fine: torch.Tensor) -> torch.Tensor:
    """
    2x2 block-average restriction to [H // 2, W // 2].

    Averages are taken pairwise, first over rows then over columns, so a
    constant grid restricts to exactly the same constant. An odd trailing
    row or column is dropped.
    """
    nx, ny = fine.shape
    cx, cy = nx // 2, ny // 2
    if cx < 1 or cy < 1:
        raise ConfigurationError(f"Cannot restrict a {nx}x{ny} grid")
    f = fine[:2 * cx, :2 * cy]
    rows = 0.5 * (f[0::2, :] + f[1::2, :])
    return 0.5 * (rows[:, 0::2] + rows[:, 1::2])


def _interpolation_weights(n_coarse, n_fine, dtype, device):
    """Cell-centred source indices and lerp factors along one axis."""
    pos = (torch.arange(n_fine, dtype=dtype, device=device) + 0.5) * (n_coarse / n_fine) - 0.5
    pos = pos.clamp(0, n_coarse - 1)
    i0 = pos.floor().long()
    i1 = (i0 + 1).clamp(max=n_coarse - 1)
    return i0, i1, pos - i0.to(dtype)


def prolongate(coarse: torch.Tensor, fine_nx: int = None, fine_ny: int = None) -> torch.Tensor:
    """
    Bilinear prolongation (cell-centred, edge-clamped) to [fine_nx, fine_ny].

    Matches bilinear interpolation with align_corners=False. Written in lerp
    form a + t·(b - a), so constants are reproduced exactly.
    Defaults to doubling both dimensions.

    F.interpolate is not used: it does not reproduce every constant bit-exactly.
    """
    cx, cy = coarse.shape
    fine_nx = 2 * cx if fine_nx is None else fine_nx
    fine_ny = 2 * cy if fine_ny is None else fine_ny

    r0, r1, tr = _interpolation_weights(cx, fine_nx, coarse.dtype, coarse.device)
    c0, c1, tc = _interpolation_weights(cy, fine_ny, coarse.dtype, coarse.device)

    rows = coarse[r0] + tr.view(-1, 1) * (coarse[r1] - coarse[r0])
    return rows[:, c0] + tc.view(1, -1) * (rows[:, c1] - rows[:, c0])


def grid_hierarchy(shape, n_grids):
    """
    Shapes of all levels for a finest grid of the given shape.

    Raises ConfigurationError if n_grids < 1 or if any level would be
    smaller than MIN_GRID_SIZE in either dimension.
    """
    if int(n_grids) != n_grids or n_grids < 1:
        raise ConfigurationError(f"n_grids must be a positive integer, got {n_grids}")
    nx, ny = shape
    shapes = [(nx, ny)]
    for _ in range(1, n_grids):
        nx, ny = nx // 2, ny // 2
        shapes.append((nx, ny))

    for level, (lx, ly) in enumerate(shapes):
        if lx < MIN_GRID_SIZE or ly < MIN_GRID_SIZE:
            raise ConfigurationError(
                f"n_grids={n_grids} is too large for a {shape[0]}x{shape[1]} grid: "
                f"level {level} would be {lx}x{ly} (minimum {MIN_GRID_SIZE}x{MIN_GRID_SIZE})"
            )
    return shapes


def as_grid(image) -> torch.Tensor:
    """
    Convert a single-channel image to a float64 grid [H, W].

    Accepts a tensor or array of shape [H, W] or [H, W, 1].
    """
    if isinstance(image, torch.Tensor):
        grid = image.detach().to(torch.float64)
    else:
        grid = torch.from_numpy(np.ascontiguousarray(image, dtype=np.float64))

    if grid.dim() == 3:
        if grid.shape[2] != 1:
            raise DimensionMismatch(f"Only gray level images are supported, got {grid.shape[2]} channels")
        grid = grid[:, :, 0]
    if grid.dim() != 2:
        raise DimensionMismatch(f"Expected an [H, W] or [H, W, 1] image, got shape {tuple(grid.shape)}")
    return grid.clone()


class MultigridIlluminationSolver:
    """
    Geometric multigrid solver for the illumination field.

    Attributes:
        lambda_: Relative importance of the smoothness constraint
        n_grids: Number of grids used in the V-cycle
        diffusion_type: Diffusion model of the smoothness term
        num_pre_smooth: Red-black sweeps before restriction
        num_post_smooth: Red-black sweeps after the correction
        omega: Relaxation parameter of the smoother
        max_iterations: Maximum number of V-cycles run by solve()
        tolerance: Residual norm at which solve() stops early (0 runs all cycles)
        solver_method: Dense solver used on the coarsest level
    """

    def __init__(self, lambda_=5.0, n_grids=1, diffusion_type=DiffusionType.WEBER,
                 num_pre_smooth=2, num_post_smooth=2, omega=1.0,
                 max_iterations=1, tolerance=0.0, solver_method='lu'):
        if not lambda_ > 0:
            raise ConfigurationError(f"lambda must be positive, got {lambda_}")
        if int(n_grids) != n_grids or n_grids < 1:
            raise ConfigurationError(f"n_grids must be a positive integer, got {n_grids}")
        if num_pre_smooth < 1 or num_post_smooth < 1:
            raise ConfigurationError("At least one pre- and one post-smoothing sweep is required")
        if not 0.0 < omega < 2.0:
            raise ConfigurationError(f"omega must lie in (0, 2), got {omega}")
        if max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be at least 1, got {max_iterations}")
        if tolerance < 0:
            raise ConfigurationError(f"tolerance must be non-negative, got {tolerance}")
        if solver_method not in SOLVER_METHODS:
            raise ConfigurationError(f"Unknown dense solver method {solver_method!r}, expected one of {SOLVER_METHODS}")

        self.lambda_ = float(lambda_)
        self.n_grids = int(n_grids)
        self.diffusion_type = as_diffusion_type(diffusion_type)
        self.num_pre_smooth = int(num_pre_smooth)
        self.num_post_smooth = int(num_post_smooth)
        self.omega = float(omega)
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.solver_method = solver_method

    def solve(self, image):
        """
        Estimate the illumination field of an image.

        Starts from a zero guess and runs V-cycles until the residual norm
        drops below the tolerance or max_iterations cycles have been run.

        Args:
            image: Single-channel image [H, W] or [H, W, 1] (tensor or array)

        Returns:
            light: Illumination field [H, W], float64, zero on the boundary ring
        """
        b = as_grid(image)
        grid_hierarchy(tuple(b.shape), self.n_grids)

        light = torch.zeros_like(b)
        coefficients = compute_coefficients(b, self.lambda_, self.diffusion_type)

        for iteration in range(self.max_iterations):
            light = self.v_cycle(light, b)

            res = residual_norm(light, b, coefficients)
            logging.debug(f"V-cycle {iteration + 1}/{self.max_iterations}: residual {res:.3e}")
            if res < self.tolerance:
                logging.debug(f"Converged in {iteration + 1} V-cycles, residual: {res:.2e}")
                break
        else:
            if self.tolerance > 0:
                logging.warning(f"Multigrid did not converge in {self.max_iterations} V-cycles "
                                f"(residual {res:.3e} > tolerance {self.tolerance:.3e})")

        return light

    def v_cycle(self, x0, b, level=0):
        """
        Run one V-cycle from `level` down to the coarsest grid and back.

        Args:
            x0: Initial guess [H, W]; relaxed in place on recursive levels
            b: Right-hand side [H, W]
            level: Level index of b in the hierarchy (0 is the finest)

        Returns:
            New grid [H, W] owned by the caller
        """
        if x0.dim() != 2 or b.dim() != 2:
            raise DimensionMismatch(f"Expected 2-D grids, got x0 {tuple(x0.shape)} and b {tuple(b.shape)}")
        if x0.shape != b.shape:
            raise DimensionMismatch(f"x0 has shape {tuple(x0.shape)} but b has shape {tuple(b.shape)}")
        if not 0 <= level < self.n_grids:
            raise ConfigurationError(f"level must lie in [0, {self.n_grids - 1}], got {level}")

        shapes = grid_hierarchy(tuple(b.shape), self.n_grids - level)
        return self._v_cycle(x0, b, level, shapes)

    def _v_cycle(self, x0, b, level, shapes):
        """
        Recursive V-cycle. shapes[0] is the expected shape at `level`,
        shapes[-1] the coarsest one.
        """
        if tuple(b.shape) != shapes[0] or tuple(x0.shape) != shapes[0]:
            raise DimensionMismatch(
                f"Level {level} expects {shapes[0]}, got x0 {tuple(x0.shape)} and b {tuple(b.shape)}"
            )

        coefficients = compute_coefficients(b, self.lambda_, self.diffusion_type)

        if level == self.n_grids - 1:
            return self._coarse_solve(b, coefficients, level)

        # Pre-smoothing
        smooth(x0, b, coefficients, self.num_pre_smooth, self.omega)

        # Residual, restricted to the coarser grid
        residual = compute_residual(x0, b, coefficients)
        coarse_residual = restrict(residual)
        logging.debug(f"Level {level}: restricted {tuple(residual.shape)} -> {tuple(coarse_residual.shape)}")

        # Coarse correction, starting from zero
        coarse_correction = self._v_cycle(torch.zeros_like(coarse_residual), coarse_residual,
                                          level + 1, shapes[1:])

        correction = prolongate(coarse_correction, *shapes[0])
        result = apply_bc(x0 + correction)

        # Post-smoothing
        smooth(result, b, coefficients, self.num_post_smooth, self.omega)

        return result

    def _coarse_solve(self, b, coefficients, level):
        """Direct solve on the coarsest grid."""
        A = build_operator(coefficients)
        result = b.clone()

        status = dense_solve_(A, result, self.solver_method)
        if status != 0:
            raise SolverFailure(
                f"Dense {self.solver_method} solve failed on level {level} "
                f"({result.shape[0]}x{result.shape[1]} grid) with status {status}",
                status=status,
            )
        logging.debug(f"Level {level}: direct solve of a {A.shape[0]}x{A.shape[1]} system")

        return apply_bc(result)
