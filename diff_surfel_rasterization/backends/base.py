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

"""Rendering backend interface and the intermediate buffers it produces."""

import abc
from dataclasses import dataclass
from typing import Any, Tuple

import torch


@dataclass
class GeometryState:
    """Per-primitive projection results retained for the backward pass."""

    means2D: torch.Tensor  # [N, 2] NDC
    points_xy: torch.Tensor  # [N, 2] pixels
    depths: torch.Tensor  # [N]
    conic_opacity: torch.Tensor  # [N, 4]
    colors: torch.Tensor  # [N, 3]
    radii: torch.Tensor  # [N] int32
    tiles_touched: torch.Tensor  # [N]


@dataclass
class ImageState:
    """Per-pixel compositing record: where each pixel stopped and what was left."""

    final_T: torch.Tensor  # [H, W] transmittance after the last blended entry
    n_contrib: torch.Tensor  # [H, W] 1-based position of the last blended entry in the tile list


@dataclass
class RasterGradients:
    """Gradients produced by the compositing backward, per primitive."""

    points_xy: torch.Tensor  # [N, 2] w.r.t. pixel-space centers
    conic: torch.Tensor  # [N, 3]
    opacities: torch.Tensor  # [N]
    colors: torch.Tensor  # [N, 3]
    depths: torch.Tensor  # [N]


class RenderBackend(abc.ABC):
    """Engine entry points.

    ``render`` returns ``(num_rendered, color, depth, radii, geom_buffer,
    binning_buffer, img_buffer)``; the three buffers are opaque to callers and
    are handed back unchanged to ``render_backward``.
    """

    name = "abstract"

    @abc.abstractmethod
    def mark_visible(
        self, means3D: torch.Tensor, viewmatrix: torch.Tensor, projmatrix: torch.Tensor
    ) -> torch.Tensor:
        ...

    @abc.abstractmethod
    def render(
        self,
        bg: torch.Tensor,
        means3D: torch.Tensor,
        colors_precomp: torch.Tensor,
        opacities: torch.Tensor,
        scales: torch.Tensor,
        rotations: torch.Tensor,
        scale_modifier: float,
        cov3D_precomp: torch.Tensor,
        viewmatrix: torch.Tensor,
        projmatrix: torch.Tensor,
        tanfovx: float,
        tanfovy: float,
        image_height: int,
        image_width: int,
        sh: torch.Tensor,
        sh_degree: int,
        campos: torch.Tensor,
        prefiltered: bool,
        debug: bool,
    ) -> Tuple[int, torch.Tensor, torch.Tensor, torch.Tensor, Any, Any, Any]:
        ...

    @abc.abstractmethod
    def render_backward(
        self,
        bg: torch.Tensor,
        means3D: torch.Tensor,
        radii: torch.Tensor,
        colors_precomp: torch.Tensor,
        scales: torch.Tensor,
        rotations: torch.Tensor,
        scale_modifier: float,
        cov3D_precomp: torch.Tensor,
        viewmatrix: torch.Tensor,
        projmatrix: torch.Tensor,
        tanfovx: float,
        tanfovy: float,
        grad_color: torch.Tensor,
        grad_depth: torch.Tensor,
        sh: torch.Tensor,
        sh_degree: int,
        campos: torch.Tensor,
        geom_buffer: Any,
        num_rendered: int,
        binning_buffer: Any,
        img_buffer: Any,
        debug: bool,
    ) -> Tuple[torch.Tensor, ...]:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
