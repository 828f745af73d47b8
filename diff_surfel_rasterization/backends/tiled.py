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

"""Shared pipeline for the backends implemented in PyTorch.

Preprocessing and binning are common; subclasses only provide the per-pixel
compositing and its reverse-mode counterpart. The backward pass chains the
compositing gradients to the primitive parameters by replaying
:func:`preprocess` under autograd with the recorded visibility mask.
"""

import abc
import logging
from typing import Dict, Tuple

import torch

from ..inputs import is_placeholder
from ..projection import in_frustum, preprocess
from ..tiling import TileBins, bin_surfels
from .base import GeometryState, ImageState, RasterGradients, RenderBackend

logger = logging.getLogger(__name__)

# Differentiable engine inputs, in the order they are returned by render_backward
_LEAF_NAMES = ("colors_precomp", "means3D", "cov3D_precomp", "sh", "scales", "rotations")


class TiledBackend(RenderBackend):
    @abc.abstractmethod
    def blend(
        self,
        geom: GeometryState,
        bins: TileBins,
        bg: torch.Tensor,
        image_height: int,
        image_width: int,
    ) -> Tuple[torch.Tensor, torch.Tensor, ImageState]:
        """Composite every tile; returns color [H, W, 3], depth [H, W] and the image record."""

    @abc.abstractmethod
    def blend_backward(
        self,
        geom: GeometryState,
        bins: TileBins,
        img: ImageState,
        bg: torch.Tensor,
        grad_color: torch.Tensor,
        grad_depth: torch.Tensor,
    ) -> RasterGradients:
        """Replay the compositing back to front and accumulate per-primitive gradients."""

    def mark_visible(self, means3D, viewmatrix, projmatrix):
        with torch.no_grad():
            return in_frustum(means3D, viewmatrix, projmatrix)

    def render(
        self,
        bg,
        means3D,
        colors_precomp,
        opacities,
        scales,
        rotations,
        scale_modifier,
        cov3D_precomp,
        viewmatrix,
        projmatrix,
        tanfovx,
        tanfovy,
        image_height,
        image_width,
        sh,
        sh_degree,
        campos,
        prefiltered,
        debug,
    ):
        with torch.no_grad():
            proj = preprocess(
                means3D,
                opacities,
                sh,
                colors_precomp,
                scales,
                rotations,
                cov3D_precomp,
                scale_modifier,
                viewmatrix,
                projmatrix,
                tanfovx,
                tanfovy,
                image_height,
                image_width,
                sh_degree,
                campos,
                prefiltered,
            )
            geom = GeometryState(
                means2D=proj.means2D,
                points_xy=proj.points_xy,
                depths=proj.depths,
                conic_opacity=torch.cat(
                    [proj.conic, opacities.reshape(-1, 1).to(proj.conic)], dim=1
                ),
                colors=proj.colors.to(proj.conic),
                radii=proj.radii,
                tiles_touched=proj.tiles_touched,
            )
            bins = bin_surfels(
                geom.points_xy,
                geom.depths,
                geom.radii,
                geom.tiles_touched,
                image_height,
                image_width,
            )
            num_rendered = int(bins.point_list.shape[0])
            bg = bg.to(device=means3D.device, dtype=means3D.dtype).reshape(3)
            color, depth, img = self.blend(geom, bins, bg, image_height, image_width)

        if debug:
            logger.debug(
                "%s: %d of %d primitives visible, %d tile entries",
                self.name,
                int((geom.radii > 0).sum().item()),
                means3D.shape[0],
                num_rendered,
            )
        return num_rendered, color, depth, geom.radii, geom, bins, img

    def render_backward(
        self,
        bg,
        means3D,
        radii,
        colors_precomp,
        scales,
        rotations,
        scale_modifier,
        cov3D_precomp,
        viewmatrix,
        projmatrix,
        tanfovx,
        tanfovy,
        grad_color,
        grad_depth,
        sh,
        sh_degree,
        campos,
        geom_buffer,
        num_rendered,
        binning_buffer,
        img_buffer,
        debug,
    ):
        image_height, image_width = img_buffer.final_T.shape
        dtype, device = means3D.dtype, means3D.device
        bg = bg.to(device=device, dtype=dtype).reshape(3)
        if grad_color is None:
            grad_color = torch.zeros(image_height, image_width, 3, dtype=dtype, device=device)
        if grad_depth is None:
            grad_depth = torch.zeros(image_height, image_width, dtype=dtype, device=device)
        grad_color = grad_color.to(dtype).reshape(image_height, image_width, 3)
        grad_depth = grad_depth.to(dtype).reshape(image_height, image_width)

        with torch.no_grad():
            raster = self.blend_backward(
                geom_buffer, binning_buffer, img_buffer, bg, grad_color, grad_depth
            )
            ndc_scale = torch.tensor(
                [0.5 * image_width, 0.5 * image_height], dtype=dtype, device=device
            )
            grad_means2D = raster.points_xy * ndc_scale

        inputs = {
            "means3D": means3D,
            "colors_precomp": colors_precomp,
            "cov3D_precomp": cov3D_precomp,
            "sh": sh,
            "scales": scales,
            "rotations": rotations,
        }
        grads = self._chain_to_inputs(
            inputs,
            radii,
            scale_modifier,
            viewmatrix,
            projmatrix,
            tanfovx,
            tanfovy,
            image_height,
            image_width,
            sh_degree,
            campos,
            (grad_means2D, raster.conic, raster.colors, raster.depths),
        )
        if debug:
            logger.debug("%s: backward over %d tile entries", self.name, num_rendered)
        return (
            grad_means2D,
            grads["colors_precomp"],
            raster.opacities.reshape(-1, 1),
            grads["means3D"],
            grads["cov3D_precomp"],
            grads["sh"],
            grads["scales"],
            grads["rotations"],
        )

    def _chain_to_inputs(
        self,
        inputs: Dict[str, torch.Tensor],
        radii,
        scale_modifier,
        viewmatrix,
        projmatrix,
        tanfovx,
        tanfovy,
        image_height,
        image_width,
        sh_degree,
        campos,
        grad_outputs,
    ) -> Dict[str, torch.Tensor]:
        leaves = {
            name: t.detach().requires_grad_(True)
            for name, t in inputs.items()
            if not is_placeholder(t)
        }
        args = {name: leaves.get(name, t) for name, t in inputs.items()}
        with torch.enable_grad():
            proj = preprocess(
                args["means3D"],
                None,
                args["sh"],
                args["colors_precomp"],
                args["scales"],
                args["rotations"],
                args["cov3D_precomp"],
                scale_modifier,
                viewmatrix,
                projmatrix,
                tanfovx,
                tanfovy,
                image_height,
                image_width,
                sh_degree,
                campos,
                True,
                visible=radii > 0,
            )
            outputs = (proj.means2D, proj.conic, proj.colors, proj.depths)
            names = [name for name in _LEAF_NAMES if name in leaves]
            computed = torch.autograd.grad(
                outputs,
                [leaves[name] for name in names],
                [g.to(o) for o, g in zip(outputs, grad_outputs)],
                allow_unused=True,
            )

        grads = {}
        for name, t in inputs.items():
            grads[name] = torch.zeros_like(t)
        for name, g in zip(names, computed):
            if g is not None:
                grads[name] = g
        return grads
