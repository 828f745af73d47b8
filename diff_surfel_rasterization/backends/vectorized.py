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

"""Vectorized compositing in PyTorch.

Non-empty tiles are processed in chunks. Within a chunk every (pixel, list
entry) pair is evaluated at once: tile lists are padded to the longest list in
the chunk, the front-to-back transmittance is a cumulative product along the
list, and the saturation cut-off is where that product first drops below the
threshold. Runs on whatever device the primitives live on.
"""

from typing import NamedTuple

import torch

from .. import config
from ..settings import tile_grid
from .base import ImageState, RasterGradients
from .tiled import TiledBackend

_PIXELS_PER_TILE = config.BLOCK_X * config.BLOCK_Y


class _TileChunk(NamedTuple):
    pixel_index: torch.Tensor  # [T, P] flat pixel index, clamped into the image
    inside: torch.Tensor  # [T, P] pixel lies inside the image
    ids: torch.Tensor  # [T, L] primitive index per padded list entry
    valid: torch.Tensor  # [T, L] entry exists
    dx: torch.Tensor  # [T, P, L]
    dy: torch.Tensor  # [T, P, L]
    power: torch.Tensor  # [T, P, L]
    G: torch.Tensor  # [T, P, L]
    raw_alpha: torch.Tensor  # [T, P, L]
    alpha: torch.Tensor  # [T, P, L]
    active: torch.Tensor  # [T, P, L] passes the power and alpha tests


def _tile_chunks(ranges: torch.Tensor, budget: int):
    """Yield (tile ids, max list length) groups whose padded size fits the budget."""
    counts = ranges[:, 1] - ranges[:, 0]
    tiles = torch.nonzero(counts > 0).flatten()
    if tiles.numel() == 0:
        return
    lengths = counts[tiles].tolist()
    start = 0
    while start < len(lengths):
        longest = lengths[start]
        end = start + 1
        while end < len(lengths):
            longest_next = max(longest, lengths[end])
            if (end + 1 - start) * longest_next * _PIXELS_PER_TILE > budget:
                break
            longest = longest_next
            end += 1
        yield tiles[start:end], longest
        start = end


def _evaluate_chunk(geom, bins, tiles, length, image_height, image_width):
    device = geom.points_xy.device
    grid_x, _ = tile_grid(image_height, image_width)

    local = torch.arange(_PIXELS_PER_TILE, device=device)
    px = (tiles % grid_x)[:, None] * config.BLOCK_X + local % config.BLOCK_X
    py = (tiles // grid_x)[:, None] * config.BLOCK_Y + local // config.BLOCK_X
    inside = (px < image_width) & (py < image_height)
    pixel_index = torch.where(inside, py * image_width + px, torch.zeros_like(px))

    start = bins.ranges[tiles, 0]
    count = bins.ranges[tiles, 1] - start
    slot = torch.arange(length, device=device)
    valid = slot[None, :] < count[:, None]
    entry = torch.where(valid, start[:, None] + slot[None, :], torch.zeros_like(valid, dtype=torch.long))
    ids = bins.point_list[entry]

    xy = geom.points_xy[ids]  # [T, L, 2]
    conic_opacity = geom.conic_opacity[ids]  # [T, L, 4]
    dtype = xy.dtype
    dx = xy[:, None, :, 0] - px[:, :, None].to(dtype)
    dy = xy[:, None, :, 1] - py[:, :, None].to(dtype)
    a = conic_opacity[:, None, :, 0]
    b = conic_opacity[:, None, :, 1]
    c = conic_opacity[:, None, :, 2]
    o = conic_opacity[:, None, :, 3]
    power = -0.5 * (a * dx * dx + c * dy * dy) - b * dx * dy
    G = torch.exp(power.clamp(max=0.0))
    raw_alpha = o * G
    alpha = raw_alpha.clamp(max=config.MAX_ALPHA)
    active = valid[:, None, :] & (power <= 0.0) & (alpha >= config.ALPHA_THRESHOLD)
    return _TileChunk(
        pixel_index, inside, ids, valid, dx, dy, power, G, raw_alpha, alpha, active
    )


def _transmittance(alpha: torch.Tensor, blended: torch.Tensor):
    """Transmittance before each entry and after the last one."""
    keep = 1.0 - torch.where(blended, alpha, torch.zeros_like(alpha))
    after = torch.cumprod(keep, dim=-1)
    before = torch.cat([torch.ones_like(after[..., :1]), after[..., :-1]], dim=-1)
    return before, after[..., -1]


class TorchBackend(TiledBackend):
    name = "torch"

    def __init__(self, chunk_size: int = None):
        self.chunk_size = chunk_size

    def _budget(self) -> int:
        return self.chunk_size if self.chunk_size is not None else config.chunk_size()

    def blend(self, geom, bins, bg, image_height, image_width):
        dtype, device = geom.depths.dtype, geom.depths.device
        num_pixels = image_height * image_width
        out_color = bg.reshape(1, 3).repeat(num_pixels, 1)
        out_depth = torch.zeros(num_pixels, dtype=dtype, device=device)
        final_T = torch.ones(num_pixels, dtype=dtype, device=device)
        n_contrib = torch.zeros(num_pixels, dtype=torch.int64, device=device)

        for tiles, length in _tile_chunks(bins.ranges, self._budget()):
            chunk = _evaluate_chunk(geom, bins, tiles, length, image_height, image_width)
            # Transmittance is non-increasing along the list, so every entry
            # past the first one that would saturate is cut as well.
            keep = 1.0 - torch.where(chunk.active, chunk.alpha, torch.zeros_like(chunk.alpha))
            saturating = torch.cumprod(keep, dim=-1) < config.TRANSMITTANCE_EPS
            blended = chunk.active & ~saturating
            T_before, T_after = _transmittance(chunk.alpha, blended)
            weight = torch.where(blended, chunk.alpha, torch.zeros_like(chunk.alpha)) * T_before

            colors = geom.colors[chunk.ids]  # [T, L, 3]
            depths = geom.depths[chunk.ids]  # [T, L]
            C = torch.einsum("tpl,tlc->tpc", weight, colors) + T_after[..., None] * bg
            D = torch.einsum("tpl,tl->tp", weight, depths)
            position = torch.arange(1, length + 1, device=device)
            last = (blended.long() * position).amax(dim=-1)

            sel = chunk.inside
            index = chunk.pixel_index[sel]
            out_color[index] = C[sel]
            out_depth[index] = D[sel]
            final_T[index] = T_after[sel]
            n_contrib[index] = last[sel]

        img = ImageState(
            final_T=final_T.reshape(image_height, image_width),
            n_contrib=n_contrib.reshape(image_height, image_width),
        )
        return (
            out_color.reshape(image_height, image_width, 3),
            out_depth.reshape(image_height, image_width),
            img,
        )

    def blend_backward(self, geom, bins, img, bg, grad_color, grad_depth):
        image_height, image_width = img.final_T.shape
        n = geom.points_xy.shape[0]
        dtype, device = geom.depths.dtype, geom.depths.device
        acc = {
            key: torch.zeros(n, dtype=dtype, device=device)
            for key in ("x", "y", "conic_a", "conic_b", "conic_c", "opacity", "depth")
        }
        dL_dcolors = torch.zeros(n, 3, dtype=dtype, device=device)

        flat_T = img.final_T.reshape(-1)
        flat_contrib = img.n_contrib.reshape(-1)
        flat_grad = grad_color.reshape(-1, 3)
        flat_grad_depth = grad_depth.reshape(-1)

        for tiles, length in _tile_chunks(bins.ranges, self._budget()):
            chunk = _evaluate_chunk(geom, bins, tiles, length, image_height, image_width)
            inside = chunk.inside
            zero = torch.zeros((), dtype=dtype, device=device)
            T_final = torch.where(inside, flat_T[chunk.pixel_index], zero)
            last = flat_contrib[chunk.pixel_index] * inside
            g = flat_grad[chunk.pixel_index] * inside[..., None]  # [T, P, 3]
            gd = torch.where(inside, flat_grad_depth[chunk.pixel_index], zero)  # [T, P]

            position = torch.arange(1, length + 1, device=device)
            blended = chunk.active & (position <= last[..., None])
            alpha = torch.where(blended, chunk.alpha, torch.zeros_like(chunk.alpha))
            T_before, _ = _transmittance(alpha, blended)
            weight = alpha * T_before

            colors = geom.colors[chunk.ids]  # [T, L, 3]
            depths = geom.depths[chunk.ids]  # [T, L]
            color_dot = torch.einsum("tlc,tpc->tpl", colors, g)
            depth_dot = depths[:, None, :] * gd[..., None]
            contribution = weight * (color_dot + depth_dot)
            behind = contribution.flip(-1).cumsum(-1).flip(-1) - contribution
            bg_dot = (g * bg).sum(-1)

            dL_dalpha = T_before * (color_dot + depth_dot) - (
                behind + (T_final * bg_dot)[..., None]
            ) / (1.0 - alpha)
            dL_dalpha = torch.where(blended, dL_dalpha, torch.zeros_like(dL_dalpha))
            unclamped = chunk.raw_alpha <= config.MAX_ALPHA
            dL_dalpha_raw = torch.where(unclamped, dL_dalpha, torch.zeros_like(dL_dalpha))

            o = geom.conic_opacity[chunk.ids][:, None, :, 3]
            conic = geom.conic_opacity[chunk.ids][:, None, :, :3]
            dL_dG = o * dL_dalpha_raw
            gdx = chunk.G * chunk.dx
            gdy = chunk.G * chunk.dy
            a, b, c = conic[..., 0], conic[..., 1], conic[..., 2]

            ids = chunk.ids[chunk.valid]
            valid = chunk.valid

            def scatter(key, per_pair):
                acc[key].index_add_(0, ids, per_pair.sum(dim=1)[valid])

            scatter("x", dL_dG * (-gdx * a - gdy * b))
            scatter("y", dL_dG * (-gdy * c - gdx * b))
            scatter("conic_a", -0.5 * gdx * chunk.dx * dL_dG)
            scatter("conic_b", -gdx * chunk.dy * dL_dG)
            scatter("conic_c", -0.5 * gdy * chunk.dy * dL_dG)
            scatter("opacity", chunk.G * dL_dalpha_raw)
            dL_dcolors.index_add_(
                0, ids, torch.einsum("tpl,tpc->tlc", weight, g)[valid]
            )
            scatter("depth", weight * gd[..., None])

        return RasterGradients(
            points_xy=torch.stack([acc["x"], acc["y"]], dim=1),
            conic=torch.stack([acc["conic_a"], acc["conic_b"], acc["conic_c"]], dim=1),
            opacities=acc["opacity"],
            colors=dL_dcolors,
            depths=acc["depth"],
        )
