##
# @file   test_multi_grid_solver.py
# @brief  Tests for the multigrid illumination solver
#

import logging
import math

import pytest
import torch
import torch.nn.functional as F

from retinexmg.ops.multigrid_illumination import multi_grid_solver
from retinexmg.ops.multigrid_illumination.dense_operator import build_operator, dense_solve_
from retinexmg.ops.multigrid_illumination.diffusion_coefficients import DiffusionType, compute_coefficients
from retinexmg.ops.multigrid_illumination.errors import (
    ConfigurationError,
    DimensionMismatch,
    SolverFailure,
)
from retinexmg.ops.multigrid_illumination.multi_grid_solver import (
    MultigridIlluminationSolver,
    apply_bc,
    apply_operator,
    grid_hierarchy,
    prolongate,
    residual_norm,
    restrict,
    smooth,
)


def _random_image(nx, ny, seed=0):
    generator = torch.Generator().manual_seed(seed)
    return 255.0 * torch.rand(nx, ny, generator=generator, dtype=torch.float64)


def _smooth_image(nx, ny):
    x = torch.linspace(0, 1, nx, dtype=torch.float64)
    y = torch.linspace(0, 1, ny, dtype=torch.float64)
    X, Y = torch.meshgrid(x, y, indexing="ij")
    return 100.0 + 50.0 * torch.sin(math.pi * X) * torch.cos(math.pi * Y)


def _ring(x):
    return torch.cat([x[0, :], x[-1, :], x[:, 0], x[:, -1]])


@pytest.mark.parametrize("diffusion_type", list(DiffusionType))
def test_single_grid_matches_dense_solve(diffusion_type):
    b = _random_image(7, 6)
    solver = MultigridIlluminationSolver(lambda_=5.0, n_grids=1, diffusion_type=diffusion_type)
    light = solver.v_cycle(torch.zeros_like(b), b)

    A = build_operator(compute_coefficients(b, 5.0, diffusion_type))
    expected = apply_bc(torch.linalg.solve(A, b.reshape(-1)).view(7, 6))

    assert light.shape == b.shape
    assert torch.allclose(light, expected, rtol=1e-10, atol=1e-10)


@pytest.mark.parametrize("shape", [(8, 8), (9, 7), (16, 10)])
@pytest.mark.parametrize("value", [0.0, 1.0, -3.7, 0.1, 123.456])
def test_prolongate_restrict_preserves_constants(shape, value):
    grid = torch.full(shape, value, dtype=torch.float64)
    coarse = restrict(grid)
    assert coarse.shape == (shape[0] // 2, shape[1] // 2)
    assert torch.equal(prolongate(coarse, *shape), grid)


def test_restrict_truncates_odd_dimensions():
    fine = torch.arange(9 * 7, dtype=torch.float64).view(9, 7)
    coarse = restrict(fine)
    assert coarse.shape == (4, 3)
    assert coarse[0, 0].item() == pytest.approx((0 + 1 + 7 + 8) / 4.0)
    assert coarse[3, 2].item() == pytest.approx((46 + 47 + 53 + 54) / 4.0)


def test_prolongate_doubles_like_bilinear_interpolation():
    coarse = _random_image(4, 5)
    fine = prolongate(coarse)
    expected = F.interpolate(coarse[None, None], size=(8, 10), mode="bilinear", align_corners=False)[0, 0]
    assert fine.shape == (8, 10)
    assert torch.allclose(fine, expected, atol=1e-12)


@pytest.mark.parametrize("diffusion_type", list(DiffusionType))
@pytest.mark.parametrize("shape", [(3, 3), (5, 5), (6, 4), (7, 9)])
def test_operator_is_symmetric_positive_definite(diffusion_type, shape):
    b = _random_image(*shape, seed=3)
    b[1, 1] = 0.0  # zero-weight Weber edges
    A = build_operator(compute_coefficients(b, 5.0, diffusion_type))

    assert A.shape == (shape[0] * shape[1], shape[0] * shape[1])
    assert torch.allclose(A, A.T, atol=1e-12)
    _, info = torch.linalg.cholesky_ex(A)
    assert int(info) == 0


@pytest.mark.parametrize("diffusion_type", list(DiffusionType))
def test_apply_operator_matches_dense_operator(diffusion_type):
    b = _random_image(6, 7, seed=1)
    x = _random_image(6, 7, seed=2)
    coefficients = compute_coefficients(b, 2.5, diffusion_type)

    Ax = apply_operator(x, coefficients)
    dense = (build_operator(coefficients) @ x.reshape(-1)).view(6, 7)

    assert torch.allclose(Ax[1:-1, 1:-1], dense[1:-1, 1:-1], atol=1e-9)
    assert torch.all(_ring(Ax) == 0)


def _interior_solution(b, coefficients):
    nx, ny = b.shape
    interior = torch.arange(nx * ny).view(nx, ny)[1:-1, 1:-1].reshape(-1)
    A = build_operator(coefficients)[interior][:, interior]
    exact = torch.zeros_like(b)
    exact[1:-1, 1:-1] = torch.linalg.solve(A, b[1:-1, 1:-1].reshape(-1)).view(nx - 2, ny - 2)
    return exact


def _energy(error, coefficients):
    """e^T A e over interior points"""
    return (error[1:-1, 1:-1] * apply_operator(error, coefficients)[1:-1, 1:-1]).sum().item()


@pytest.mark.parametrize("diffusion_type", list(DiffusionType))
def test_smooth_reduces_energy_error_and_keeps_boundary(diffusion_type):
    b = _smooth_image(12, 12)
    coefficients = compute_coefficients(b, 5.0, diffusion_type)
    exact = _interior_solution(b, coefficients)
    x = torch.zeros_like(b)
    x[0, :] = 7.0
    x[:, -1] = -2.0
    ring_before = _ring(x).clone()

    before = _energy(x - exact, coefficients)
    smooth(x, b, coefficients, num_iterations=3)

    assert torch.equal(_ring(x), ring_before)
    assert _energy(x - exact, coefficients) < before


@pytest.mark.parametrize("n_grids", [2, 3])
@pytest.mark.parametrize("diffusion_type", list(DiffusionType))
def test_repeated_v_cycles_converge(diffusion_type, n_grids):
    b = _smooth_image(32, 32)
    solver = MultigridIlluminationSolver(lambda_=5.0, n_grids=n_grids, diffusion_type=diffusion_type,
                                         num_pre_smooth=3, num_post_smooth=3)
    coefficients = compute_coefficients(b, 5.0, diffusion_type)

    light = torch.zeros_like(b)
    initial = residual_norm(light, b, coefficients)
    tolerance = 1e-6 * initial
    history = [initial]
    for _ in range(20):
        light = solver.v_cycle(light, b)
        history.append(residual_norm(light, b, coefficients))
        if history[-1] < tolerance:
            break

    assert history[-1] < tolerance
    assert all(later < earlier for earlier, later in zip(history, history[1:]))


def test_constant_interior_gives_constant_illumination():
    b = torch.zeros(9, 9, dtype=torch.float64)
    b[1:-1, 1:-1] = 100.0
    solver = MultigridIlluminationSolver(lambda_=5.0, n_grids=1, diffusion_type=1)

    light = solver.v_cycle(torch.zeros_like(b), b)

    assert torch.allclose(light[1:-1, 1:-1], torch.full((7, 7), 100.0, dtype=torch.float64), rtol=1e-10)
    assert torch.all(_ring(light) == 0.0)


def test_two_grid_cycle_transfers_once(monkeypatch):
    restricted, prolongated = [], []

    def recording_restrict(fine):
        coarse = restrict(fine)
        restricted.append((tuple(fine.shape), tuple(coarse.shape)))
        return coarse

    def recording_prolongate(coarse, *shape):
        fine = prolongate(coarse, *shape)
        prolongated.append((tuple(coarse.shape), tuple(fine.shape)))
        return fine

    monkeypatch.setattr(multi_grid_solver, "restrict", recording_restrict)
    monkeypatch.setattr(multi_grid_solver, "prolongate", recording_prolongate)

    b = _random_image(8, 8)
    light = MultigridIlluminationSolver(n_grids=2).v_cycle(torch.zeros_like(b), b)

    assert restricted == [((8, 8), (4, 4))]
    assert prolongated == [((4, 4), (8, 8))]
    assert light.shape == (8, 8)


@pytest.mark.parametrize("shape,n_grids", [((16, 16), 2), ((16, 16), 3), ((25, 19), 3)])
def test_boundary_ring_is_zero_after_solve(shape, n_grids):
    b = _random_image(*shape, seed=5)
    x0 = _random_image(*shape, seed=6)
    light = MultigridIlluminationSolver(n_grids=n_grids).v_cycle(x0, b)

    assert light.shape == b.shape
    assert torch.isfinite(light).all()
    assert torch.all(_ring(light) == 0.0)


def test_grid_hierarchy_halves_with_truncation():
    assert grid_hierarchy((25, 19), 3) == [(25, 19), (12, 9), (6, 4)]


def test_too_many_grids_raise_configuration_error():
    b = _random_image(8, 8)
    solver = MultigridIlluminationSolver(n_grids=3)
    with pytest.raises(ConfigurationError):
        solver.v_cycle(torch.zeros_like(b), b)
    with pytest.raises(ConfigurationError):
        solver.solve(b)


def test_mismatched_shapes_raise_dimension_mismatch():
    solver = MultigridIlluminationSolver(n_grids=2)
    with pytest.raises(DimensionMismatch):
        solver.v_cycle(torch.zeros(8, 8, dtype=torch.float64), _random_image(8, 7))
    with pytest.raises(DimensionMismatch):
        solver.v_cycle(torch.zeros(8, 8, 1, dtype=torch.float64), _random_image(8, 8)[:, :, None])

    coefficients = compute_coefficients(_random_image(8, 8), 5.0, 1)
    with pytest.raises(DimensionMismatch):
        smooth(torch.zeros(6, 8, dtype=torch.float64), torch.zeros(6, 8, dtype=torch.float64), coefficients)


def test_solver_failure_propagates_from_coarsest_level(monkeypatch):
    monkeypatch.setattr(multi_grid_solver, "dense_solve_", lambda A, x, method="lu": 3)

    b = _random_image(16, 16)
    solver = MultigridIlluminationSolver(n_grids=3)
    with pytest.raises(SolverFailure) as excinfo:
        solver.v_cycle(torch.zeros_like(b), b)
    assert excinfo.value.status == 3


def test_dense_solve_reports_status():
    A = torch.zeros(4, 4, dtype=torch.float64)
    x = torch.ones(2, 2, dtype=torch.float64)
    assert dense_solve_(A, x) != 0
    assert torch.equal(x, torch.ones(2, 2, dtype=torch.float64))

    indefinite = torch.tensor([[1.0, 2.0], [2.0, 1.0]], dtype=torch.float64)
    assert dense_solve_(indefinite, torch.ones(2, dtype=torch.float64), method="cholesky") != 0

    spd = torch.tensor([[4.0, 1.0], [1.0, 3.0]], dtype=torch.float64)
    x = torch.tensor([1.0, 2.0], dtype=torch.float64)
    assert dense_solve_(spd, x, method="cholesky") == 0
    assert torch.allclose(spd @ x, torch.tensor([1.0, 2.0], dtype=torch.float64))


def test_cholesky_and_lu_agree():
    b = _random_image(10, 10)
    lu = MultigridIlluminationSolver(n_grids=2, solver_method="lu").solve(b)
    chol = MultigridIlluminationSolver(n_grids=2, solver_method="cholesky").solve(b)
    assert torch.allclose(lu, chol, atol=1e-8)


@pytest.mark.parametrize("options", [
    {"lambda_": 0.0},
    {"n_grids": 0},
    {"diffusion_type": 5},
    {"omega": 2.0},
    {"max_iterations": 0},
    {"solver_method": "qr"},
])
def test_invalid_options_raise_configuration_error(options):
    with pytest.raises(ConfigurationError):
        MultigridIlluminationSolver(**options)


def test_solve_accepts_single_channel_arrays():
    image = _random_image(12, 12).numpy()[:, :, None]
    light = MultigridIlluminationSolver(n_grids=2).solve(image)
    assert light.shape == (12, 12)
    assert light.dtype == torch.float64


def test_solve_stops_at_tolerance():
    b = _smooth_image(16, 16)
    solver = MultigridIlluminationSolver(n_grids=2, diffusion_type=0, max_iterations=40, tolerance=1e-4)
    light = solver.solve(b)
    assert residual_norm(light, b, compute_coefficients(b, 5.0, 0)) < 1e-4


def test_solve_warns_when_tolerance_not_reached(caplog):
    b = _random_image(16, 16)
    solver = MultigridIlluminationSolver(n_grids=2, max_iterations=1, tolerance=1e-30)
    with caplog.at_level(logging.WARNING):
        solver.solve(b)
    assert any("did not converge" in record.getMessage() for record in caplog.records)
