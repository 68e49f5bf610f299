"""
@file   illumination_reflectance.py
@brief  Illumination/reflectance separation of gray level images.
        Wraps the multigrid illumination solver into an nn.Module that returns
        the display-ready reflectance R = I / L.
"""

import logging

import torch
from torch import nn

from retinexmg.ops.multigrid_illumination.diffusion_coefficients import DiffusionType
from retinexmg.ops.multigrid_illumination.errors import DimensionMismatch
from retinexmg.ops.multigrid_illumination.multi_grid_solver import MultigridIlluminationSolver, as_grid


def compute_reflectance(image, light, eps=0.01):
    """
    Reflectance R = I / L.

    R is set to 1 on the boundary ring, where the illumination is forced to
    zero, and wherever |L| <= eps.

    Args:
        image: Image grid [H, W]
        light: Illumination field [H, W]
        eps: Absolute tolerance under which L counts as zero

    Returns:
        reflectance: [H, W], float64
    """
    if image.shape != light.shape:
        raise DimensionMismatch(f"image has shape {tuple(image.shape)} but light has shape {tuple(light.shape)}")

    neutral = light.abs() <= eps
    neutral[0, :] = True
    neutral[-1, :] = True
    neutral[:, 0] = True
    neutral[:, -1] = True

    safe_light = torch.where(neutral, torch.ones_like(light), light)
    return torch.where(neutral, torch.ones_like(light), image / safe_light)


def cut_extremum(data, distribution_width=4):
    """
    Clip values outside mean ± distribution_width·std (in place).

    The standard deviation uses the unbiased estimator.
    """
    mean = data.mean()
    std = data.std() if data.numel() > 1 else torch.zeros_like(mean)
    upper = (mean + distribution_width * std).item()
    lower = (mean - distribution_width * std).item()
    return data.clamp_(min=lower, max=upper)


def rescale_gray(data):
    """
    Rescale values linearly to [0, 255] and round to int16.

    A constant input maps to zeros.
    """
    lo, hi = data.min(), data.max()
    if hi <= lo:
        logging.warning("rescale_gray: constant input, returning a zero image")
        return torch.zeros(data.shape, dtype=torch.int16, device=data.device)
    scaled = (data - lo) * (255.0 / (hi - lo))
    return torch.round(scaled).to(torch.int16)


class MultigridIlluminationNormalization(nn.Module):
    """
    Illumination normalization of gray level images.

    The illumination field L is estimated with a multigrid V-cycle and the
    reflectance I / L is clipped to mean ± distribution_width·std, then
    rescaled to [0, 255].

    Args:
        lambda_: Relative importance of the smoothness constraint
        n_grids: Number of grids used in the V-cycle
        diffusion_type: Type of diffusion (coefficients)
        distribution_width: Clipping width in standard deviations
        eps: Tolerance under which the illumination counts as zero
        name: Name used in log messages
        **solver_kwargs: Extra options of MultigridIlluminationSolver
    """

    def __init__(
        self,
        lambda_=5.0,
        n_grids=1,
        diffusion_type=DiffusionType.WEBER,
        distribution_width=4,
        eps=0.01,
        name="IlluminationNormalization",
        **solver_kwargs
    ):
        super(MultigridIlluminationNormalization, self).__init__()

        self.distribution_width = distribution_width
        self.eps = float(eps)
        self.name = name

        self.solver = MultigridIlluminationSolver(
            lambda_=lambda_,
            n_grids=n_grids,
            diffusion_type=diffusion_type,
            **solver_kwargs
        )

        logging.info(f"{name}: lambda={self.solver.lambda_}, n_grids={self.solver.n_grids}, "
                     f"type={self.solver.diffusion_type.name}")

    def illumination(self, image):
        """Illumination field of an [H, W] or [H, W, 1] image."""
        return self.solver.solve(image)

    def forward(self, image):
        """
        Normalize the illumination of a gray level image.

        Args:
            image: Tensor of shape [H, W] or [H, W, 1]

        Returns:
            reflectance: int16 tensor in [0, 255] with the shape of `image`
        """
        grid = as_grid(image)
        light = self.solver.solve(grid)

        reflectance = compute_reflectance(grid, light, self.eps)
        cut_extremum(reflectance, self.distribution_width)
        output = rescale_gray(reflectance)

        return output.view(tuple(image.shape))
