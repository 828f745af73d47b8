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

"""Sequential compositing, one tile, pixel and list entry at a time.

Slow, but a direct statement of the blending rules. Used to cross-check the
vectorized backend and on hosts where nothing else is available.
"""

import math

import torch

from .. import config
from ..settings import tile_grid
from ..tiling import tile_pixels
from .base import ImageState, RasterGradients
from .tiled import TiledBackend


class ReferenceBackend(TiledBackend):
    name = "reference"

    def blend(self, geom, bins, bg, image_height, image_width):
        grid_x, _ = tile_grid(image_height, image_width)
        xy = geom.points_xy.tolist()
        conic_opacity = geom.conic_opacity.tolist()
        colors = geom.colors.tolist()
        depths = geom.depths.tolist()
        point_list = bins.point_list.tolist()
        bg_color = bg.tolist()

        out_color = [[list(bg_color) for _ in range(image_width)] for _ in range(image_height)]
        out_depth = [[0.0] * image_width for _ in range(image_height)]
        final_T = [[1.0] * image_width for _ in range(image_height)]
        n_contrib = [[0] * image_width for _ in range(image_height)]

        for tile_id, (start, end) in enumerate(bins.ranges.tolist()):
            if start == end:
                continue
            xs, ys = tile_pixels(tile_id, grid_x, image_height, image_width)
            for py in ys:
                for px in xs:
                    T = 1.0
                    C = [0.0, 0.0, 0.0]
                    D = 0.0
                    contributor = 0
                    last_contributor = 0
                    for k in range(start, end):
                        contributor += 1
                        i = point_list[k]
                        a, b, c, o = conic_opacity[i]
                        dx = xy[i][0] - px
                        dy = xy[i][1] - py
                        power = -0.5 * (a * dx * dx + c * dy * dy) - b * dx * dy
                        if power > 0.0:
                            continue
                        alpha = min(config.MAX_ALPHA, o * math.exp(power))
                        if alpha < config.ALPHA_THRESHOLD:
                            continue
                        test_T = T * (1.0 - alpha)
                        if test_T < config.TRANSMITTANCE_EPS:
                            break
                        w = alpha * T
                        for ch in range(3):
                            C[ch] += colors[i][ch] * w
                        D += depths[i] * w
                        T = test_T
                        last_contributor = contributor

                    out_color[py][px] = [C[ch] + T * bg_color[ch] for ch in range(3)]
                    out_depth[py][px] = D
                    final_T[py][px] = T
                    n_contrib[py][px] = last_contributor

        like = dict(dtype=geom.depths.dtype, device=geom.depths.device)
        img = ImageState(
            final_T=torch.tensor(final_T, **like),
            n_contrib=torch.tensor(n_contrib, dtype=torch.int64, device=like["device"]),
        )
        return (
            torch.tensor(out_color, **like).reshape(image_height, image_width, 3),
            torch.tensor(out_depth, **like).reshape(image_height, image_width),
            img,
        )

    def blend_backward(self, geom, bins, img, bg, grad_color, grad_depth):
        image_height, image_width = img.final_T.shape
        grid_x, _ = tile_grid(image_height, image_width)
        n = geom.points_xy.shape[0]
        xy = geom.points_xy.tolist()
        conic_opacity = geom.conic_opacity.tolist()
        colors = geom.colors.tolist()
        depths = geom.depths.tolist()
        point_list = bins.point_list.tolist()
        bg_color = bg.tolist()
        final_T = img.final_T.tolist()
        n_contrib = img.n_contrib.tolist()
        dL_dpixels = grad_color.tolist()
        dL_ddepths = grad_depth.tolist()

        dL_dxy = [[0.0, 0.0] for _ in range(n)]
        dL_dconic = [[0.0, 0.0, 0.0] for _ in range(n)]
        dL_dopacity = [0.0] * n
        dL_dcolors = [[0.0, 0.0, 0.0] for _ in range(n)]
        dL_ddepth = [0.0] * n

        for tile_id, (start, _) in enumerate(bins.ranges.tolist()):
            xs, ys = tile_pixels(tile_id, grid_x, image_height, image_width)
            for py in ys:
                for px in xs:
                    last = n_contrib[py][px]
                    if last == 0:
                        continue
                    T_final = final_T[py][px]
                    T = T_final
                    g = dL_dpixels[py][px]
                    gd = dL_ddepths[py][px]
                    bg_dot = sum(bg_color[ch] * g[ch] for ch in range(3))

                    accum_rec = [0.0, 0.0, 0.0]
                    accum_depth = 0.0
                    last_alpha = 0.0
                    last_color = [0.0, 0.0, 0.0]
                    last_depth = 0.0
                    for k in range(start + last - 1, start - 1, -1):
                        i = point_list[k]
                        a, b, c, o = conic_opacity[i]
                        dx = xy[i][0] - px
                        dy = xy[i][1] - py
                        power = -0.5 * (a * dx * dx + c * dy * dy) - b * dx * dy
                        if power > 0.0:
                            continue
                        G = math.exp(power)
                        raw_alpha = o * G
                        alpha = min(config.MAX_ALPHA, raw_alpha)
                        if alpha < config.ALPHA_THRESHOLD:
                            continue

                        T = T / (1.0 - alpha)
                        weight = alpha * T

                        dL_dalpha = 0.0
                        for ch in range(3):
                            accum_rec[ch] = (
                                last_alpha * last_color[ch] + (1.0 - last_alpha) * accum_rec[ch]
                            )
                            last_color[ch] = colors[i][ch]
                            dL_dalpha += (colors[i][ch] - accum_rec[ch]) * g[ch]
                            dL_dcolors[i][ch] += weight * g[ch]
                        accum_depth = last_alpha * last_depth + (1.0 - last_alpha) * accum_depth
                        last_depth = depths[i]
                        dL_dalpha += (depths[i] - accum_depth) * gd
                        dL_ddepth[i] += weight * gd

                        dL_dalpha *= T
                        last_alpha = alpha
                        dL_dalpha -= T_final / (1.0 - alpha) * bg_dot

                        if raw_alpha > config.MAX_ALPHA:
                            continue
                        dL_dG = o * dL_dalpha
                        gdx = G * dx
                        gdy = G * dy
                        dL_dxy[i][0] += dL_dG * (-gdx * a - gdy * b)
                        dL_dxy[i][1] += dL_dG * (-gdy * c - gdx * b)
                        dL_dconic[i][0] += -0.5 * gdx * dx * dL_dG
                        dL_dconic[i][1] += -gdx * dy * dL_dG
                        dL_dconic[i][2] += -0.5 * gdy * dy * dL_dG
                        dL_dopacity[i] += G * dL_dalpha

        like = dict(dtype=geom.depths.dtype, device=geom.depths.device)
        return RasterGradients(
            points_xy=torch.tensor(dL_dxy, **like).reshape(n, 2),
            conic=torch.tensor(dL_dconic, **like).reshape(n, 3),
            opacities=torch.tensor(dL_dopacity, **like),
            colors=torch.tensor(dL_dcolors, **like).reshape(n, 3),
            depths=torch.tensor(dL_ddepth, **like),
        )
