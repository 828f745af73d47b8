# Copyright 2024 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
diff_surfel_rasterization - Differentiable Surfel Rasterization

Tile-based rasterization of oriented 3D surfels with PyTorch autograd support.

Features:
- Exclusive appearance (SH or RGB) and shape (scale/rotation or covariance) inputs
- Front-to-back alpha compositing with early saturation, color and depth output
- Exact reverse-mode gradients for every surfel parameter
- Pluggable backends: sequential reference, vectorized PyTorch, external CUDA

Example:
    import torch
    from diff_surfel_rasterization import (
        GaussianRasterizationSettings,
        GaussianRasterizer,
    )

    settings = GaussianRasterizationSettings(
        image_height=64, image_width=64, tanfovx=0.5, tanfovy=0.5,
        bg=torch.zeros(3), scale_modifier=1.0,
        viewmatrix=viewmatrix, projmatrix=projmatrix,
        sh_degree=0, campos=campos,
    )
    rasterizer = GaussianRasterizer(settings)
    means2D = torch.zeros_like(means3D, requires_grad=True)
    color, radii, depth = rasterizer(
        means3D, means2D, opacities,
        colors_precomp=colors, scales=scales, rotations=quats,
    )
    color.sum().backward()
"""

from .backends import RenderBackend, get_backend
from .context import ContextState, RenderContext, RenderOutput, SurfelGradients
from .errors import (
    BackendUnavailableError,
    ContextStateError,
    InvalidArgumentError,
    RasterizerError,
)
from .inputs import (
    PrecomputedColors,
    PrecomputedCovariance,
    ScaleRotation,
    SHCoefficients,
)
from .rasterizer import GaussianRasterizer, rasterize_gaussians, render
from .settings import GaussianRasterizationSettings
from .sh import eval_sh

__version__ = "0.1.0"

__all__ = [
    "BackendUnavailableError",
    "ContextState",
    "ContextStateError",
    "GaussianRasterizationSettings",
    "GaussianRasterizer",
    "InvalidArgumentError",
    "PrecomputedColors",
    "PrecomputedCovariance",
    "RasterizerError",
    "RenderBackend",
    "RenderContext",
    "RenderOutput",
    "SHCoefficients",
    "ScaleRotation",
    "SurfelGradients",
    "eval_sh",
    "get_backend",
    "rasterize_gaussians",
    "render",
]
