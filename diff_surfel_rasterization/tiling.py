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

"""Tile binning: duplicate primitives into the tiles they overlap and sort.

Within a tile, entries are ordered front to back by view depth. Ties are
broken by primitive index, so the order is fully determined by the inputs and
the backward pass can replay it exactly.
"""

from typing import NamedTuple

import torch

from . import config
from .projection import tile_rect
from .settings import tile_grid


class TileBins(NamedTuple):
    tile_ids: torch.Tensor  # [R] tile of each sorted entry
    point_list: torch.Tensor  # [R] primitive index of each sorted entry
    ranges: torch.Tensor  # [num_tiles, 2] [start, end) into point_list


def sort_entries(tile_ids: torch.Tensor, depths: torch.Tensor) -> torch.Tensor:
    """Permutation ordering entries by (tile, depth, original position)."""
    order = torch.sort(depths, stable=True).indices
    return order[torch.sort(tile_ids[order], stable=True).indices]


@torch.no_grad()
def bin_surfels(
    points_xy: torch.Tensor,
    depths: torch.Tensor,
    radii: torch.Tensor,
    tiles_touched: torch.Tensor,
    image_height: int,
    image_width: int,
) -> TileBins:
    device = points_xy.device
    grid_x, grid_y = tile_grid(image_height, image_width)
    num_tiles = grid_x * grid_y

    rect_min, rect_max = tile_rect(points_xy, radii, (grid_x, grid_y))
    counts = tiles_touched.long()
    num_rendered = int(counts.sum().item())

    ids = torch.repeat_interleave(torch.arange(points_xy.shape[0], device=device), counts)
    offsets = torch.cumsum(counts, dim=0) - counts
    local = torch.arange(num_rendered, device=device) - offsets[ids]
    width = (rect_max[:, 0] - rect_min[:, 0])[ids]
    tx = rect_min[ids, 0] + local % width
    ty = rect_min[ids, 1] + local // width
    tile_ids = ty * grid_x + tx

    order = sort_entries(tile_ids, depths[ids])
    tile_ids = tile_ids[order]
    point_list = ids[order]

    per_tile = torch.bincount(tile_ids, minlength=num_tiles)
    ends = torch.cumsum(per_tile, dim=0)
    ranges = torch.stack([ends - per_tile, ends], dim=1)
    return TileBins(tile_ids=tile_ids, point_list=point_list, ranges=ranges)


def tile_pixels(tile_id: int, grid_x: int, image_height: int, image_width: int):
    """Pixel coordinate ranges (xs, ys) of one tile, clipped to the image."""
    tx, ty = tile_id % grid_x, tile_id // grid_x
    x0, y0 = tx * config.BLOCK_X, ty * config.BLOCK_Y
    xs = range(x0, min(x0 + config.BLOCK_X, image_width))
    ys = range(y0, min(y0 + config.BLOCK_Y, image_height))
    return xs, ys
