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

"""Immutable per-call camera / frame settings."""

from typing import NamedTuple, Tuple

import torch

from . import config


class GaussianRasterizationSettings(NamedTuple):
    """Camera and image configuration shared by the forward and backward pass.

    Matrices follow the row-vector convention used by the CUDA rasterizers:
    ``p_view = [p, 1] @ viewmatrix`` and ``p_clip = [p, 1] @ projmatrix``,
    where ``projmatrix`` is the full world-to-clip transform.
    """

    image_height: int
    image_width: int
    tanfovx: float
    tanfovy: float
    bg: torch.Tensor
    scale_modifier: float
    viewmatrix: torch.Tensor
    projmatrix: torch.Tensor
    sh_degree: int
    campos: torch.Tensor
    prefiltered: bool = False
    debug: bool = False

    @property
    def focal_x(self) -> float:
        return self.image_width / (2.0 * self.tanfovx)

    @property
    def focal_y(self) -> float:
        return self.image_height / (2.0 * self.tanfovy)


def tile_grid(image_height: int, image_width: int) -> Tuple[int, int]:
    """Number of tiles along (x, y) covering the image."""
    grid_x = (image_width + config.BLOCK_X - 1) // config.BLOCK_X
    grid_y = (image_height + config.BLOCK_Y - 1) // config.BLOCK_Y
    return grid_x, grid_y
