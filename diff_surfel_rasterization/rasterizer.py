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
Differentiable surfel rasterization for PyTorch.

The entry points here validate and normalize the per-primitive inputs, run a
rendering backend inside a ``torch.autograd.Function`` and route the engine
gradients back to the caller's tensors.
"""

import warnings
from typing import Any, Optional, Tuple

import torch
import torch.nn as nn
from torch.autograd import Function

from .backends import RenderBackend, get_backend
from .context import RenderContext, RenderOutput
from .inputs import (
    engine_arguments,
    resolve_appearance,
    resolve_shape,
    validate_inputs,
)
from .settings import GaussianRasterizationSettings


# =============================================================================
# _RasterizeGaussians - autograd wrapper around a rendering backend
# =============================================================================

class _RasterizeGaussians(Function):
    @staticmethod
    def forward(
        ctx: Any,
        means3D: torch.Tensor,
        means2D: torch.Tensor,
        sh: torch.Tensor,
        colors_precomp: torch.Tensor,
        opacities: torch.Tensor,
        scales: torch.Tensor,
        rotations: torch.Tensor,
        cov3D_precomp: torch.Tensor,
        raster_settings: GaussianRasterizationSettings,
        backend: RenderBackend,
    ):
        render_ctx = RenderContext(backend, raster_settings)
        out = render_ctx.forward(
            means3D, opacities, sh, colors_precomp, scales, rotations, cov3D_precomp
        )
        ctx.mark_non_differentiable(out.radii)

        if any(ctx.needs_input_grad):
            ctx.render_ctx = render_ctx
            ctx.means2D_like = torch.zeros_like(means2D)
            ctx.opacities_shape = opacities.shape
        else:
            render_ctx.discard()
        return out.color, out.radii, out.depth

    @staticmethod
    def backward(ctx, grad_color, _, grad_depth):
        grads = ctx.render_ctx.backward(grad_color, grad_depth)

        grad_means2D = ctx.means2D_like
        if grad_means2D.dim() == 2 and grad_means2D.shape[1] >= 2:
            grad_means2D[:, :2] = grads.means2D.to(grad_means2D)

        return (
            grads.means3D,
            grad_means2D,
            grads.sh,
            grads.colors_precomp,
            grads.opacities.reshape(ctx.opacities_shape),
            grads.scales,
            grads.rotations,
            grads.cov3D_precomp,
            None,  # raster_settings
            None,  # backend
        )


def rasterize_gaussians(
    means3D: torch.Tensor,
    means2D: torch.Tensor,
    sh: torch.Tensor,
    colors_precomp: torch.Tensor,
    opacities: torch.Tensor,
    scales: torch.Tensor,
    rotations: torch.Tensor,
    cov3D_precomp: torch.Tensor,
    raster_settings: GaussianRasterizationSettings,
    backend: Optional[RenderBackend] = None,
):
    """
    Rasterize surfels with every optional input already resolved.

    Unused inputs must be empty placeholders (``torch.empty(0)``) so the engine
    always sees the same arity; :class:`GaussianRasterizer` takes care of this.

    Parameters
    ----------
    means3D : torch.Tensor
        Surfel centers, shape (N, 3)
    means2D : torch.Tensor
        Screen-space placeholder, shape (N, 2) or (N, 3); receives the gradient
        of the projected centers in NDC units
    sh : torch.Tensor
        SH coefficients (N, K, 3), or a placeholder
    colors_precomp : torch.Tensor
        Precomputed RGB (N, 3), or a placeholder
    opacities : torch.Tensor
        Opacities, shape (N, 1) or (N,)
    scales, rotations : torch.Tensor
        Scales (N, 2) or (N, 3) and (w, x, y, z) quaternions (N, 4), or placeholders
    cov3D_precomp : torch.Tensor
        Upper-triangle covariances (N, 6), or a placeholder
    raster_settings : GaussianRasterizationSettings
        Camera and image configuration
    backend : RenderBackend, optional
        Defaults to :func:`get_backend` ()

    Returns
    -------
    tuple
        (color (H, W, 3), radii (N,) int32, depth (H, W))
    """
    return _RasterizeGaussians.apply(
        means3D,
        means2D,
        sh,
        colors_precomp,
        opacities,
        scales,
        rotations,
        cov3D_precomp,
        raster_settings,
        get_backend(backend),
    )


def render(
    means3D: torch.Tensor,
    opacities: torch.Tensor,
    raster_settings: GaussianRasterizationSettings,
    shs: Optional[torch.Tensor] = None,
    colors_precomp: Optional[torch.Tensor] = None,
    scales: Optional[torch.Tensor] = None,
    rotations: Optional[torch.Tensor] = None,
    cov3D_precomp: Optional[torch.Tensor] = None,
    backend=None,
) -> Tuple[RenderOutput, RenderContext]:
    """Render outside of autograd.

    Returns the images together with the context holding the engine buffers;
    call ``context.backward(grad_color, grad_depth)`` once to obtain
    :class:`~.context.SurfelGradients`, or ``context.discard()``.
    """
    appearance = resolve_appearance(shs, colors_precomp)
    shape = resolve_shape(scales, rotations, cov3D_precomp)
    validate_inputs(means3D, opacities, appearance, shape, raster_settings.sh_degree)
    engine = engine_arguments(means3D, appearance, shape)

    render_ctx = RenderContext(get_backend(backend), raster_settings)
    with torch.no_grad():
        output = render_ctx.forward(
            means3D,
            opacities,
            engine["sh"],
            engine["colors_precomp"],
            engine["scales"],
            engine["rotations"],
            engine["cov3D_precomp"],
        )
    return output, render_ctx


# =============================================================================
# GaussianRasterizer - module interface
# =============================================================================

class GaussianRasterizer(nn.Module):
    """Rasterizes oriented surfels for a fixed camera.

    ``backend`` is a backend name (``"torch"``, ``"reference"``, ``"cuda"``), a
    :class:`~.backends.RenderBackend` instance, or None for the default.
    """

    def __init__(self, raster_settings: GaussianRasterizationSettings, backend=None):
        super().__init__()
        self.raster_settings = raster_settings
        self.backend = get_backend(backend)

    def mark_visible(self, positions: torch.Tensor) -> torch.Tensor:
        """Mark points as visible based on the camera frustum."""
        with torch.no_grad():
            raster_settings = self.raster_settings
            visible = self.backend.mark_visible(
                positions, raster_settings.viewmatrix, raster_settings.projmatrix
            )
        return visible

    def forward(
        self,
        means3D: torch.Tensor,
        means2D: torch.Tensor,
        opacities: torch.Tensor,
        shs: Optional[torch.Tensor] = None,
        colors_precomp: Optional[torch.Tensor] = None,
        scales: Optional[torch.Tensor] = None,
        rotations: Optional[torch.Tensor] = None,
        cov3D_precomp: Optional[torch.Tensor] = None,
    ):
        raster_settings = self.raster_settings

        appearance = resolve_appearance(shs, colors_precomp)
        shape = resolve_shape(scales, rotations, cov3D_precomp)
        validate_inputs(
            means3D, opacities, appearance, shape, raster_settings.sh_degree, means2D=means2D
        )

        if torch.is_grad_enabled() and means3D.requires_grad and not means2D.requires_grad:
            warnings.warn(
                "means2D does not require grad; screen-space gradients will be dropped",
                stacklevel=2,
            )

        engine = engine_arguments(means3D, appearance, shape)
        return rasterize_gaussians(
            means3D,
            means2D,
            engine["sh"],
            engine["colors_precomp"],
            opacities,
            engine["scales"],
            engine["rotations"],
            engine["cov3D_precomp"],
            raster_settings,
            self.backend,
        )

    def extra_repr(self) -> str:
        s = self.raster_settings
        return f"image={s.image_width}x{s.image_height}, sh_degree={s.sh_degree}, backend={self.backend!r}"
