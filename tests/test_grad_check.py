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

"""Finite-difference gradient checks of the full rasterization pipeline."""

import dataclasses

import numpy as np
import torch
from absl.testing import absltest
from absl.testing import parameterized

from diff_surfel_rasterization import GaussianRasterizer, get_backend, render
from diff_surfel_rasterization.projection import pack_covariance, scale_rotation_to_covariance
from tests.test_utils import make_settings, random_surfels

torch.set_printoptions(precision=10)
np.set_printoptions(precision=10)

BACKENDS = ('torch', 'reference')


def _scene(N, flat, seed=42):
    # One 16x16 tile with surfels near the center at clearly separated depths.
    # Footprints are wide enough that the 1/255 alpha cut-off lies outside the
    # image, so finite differences never straddle it.
    scene = random_surfels(N, seed=seed, spread=0.15, scale_range=(1.2, 1.6), flat=flat)
    gen = torch.Generator().manual_seed(seed)
    tilt = 0.1 * (2 * torch.rand(N, 3, generator=gen, dtype=torch.float64) - 1)
    scene["rotations"] = torch.cat([torch.ones(N, 1, dtype=torch.float64), tilt], dim=1)
    return scene


class GradCheckTest(parameterized.TestCase):

    @parameterized.product(
        backend=BACKENDS,
        N=[1, 3],
        flat=[False, True],
    )
    def test_grad_check_scale_rotation(self, backend, N, flat):
        torch.manual_seed(42)
        settings = make_settings(bg=(0.2, 0.4, 0.6))
        scene = _scene(N, flat)
        rasterizer = GaussianRasterizer(settings, backend=backend)
        means2D = torch.zeros(N, 3, dtype=torch.float64)

        def loss(means, scales, quats, opacities, colors):
            color, _, depth = rasterizer(
                means, means2D, opacities,
                colors_precomp=colors, scales=scales, rotations=quats,
            )
            return color, depth

        inputs = tuple(
            torch.nn.Parameter(scene[k].clone())
            for k in ('means3D', 'scales', 'rotations', 'opacities', 'colors')
        )
        torch.autograd.gradcheck(loss, inputs, eps=1e-6, atol=1e-5, rtol=1e-4)

    @parameterized.product(
        backend=BACKENDS,
        sh_degree=[0, 1, 3],
    )
    def test_grad_check_sh(self, backend, sh_degree):
        N = 3
        gen = torch.Generator().manual_seed(0)
        settings = make_settings(sh_degree=sh_degree, yaw=0.1)
        scene = _scene(N, flat=False)
        rasterizer = GaussianRasterizer(settings, backend=backend)
        means2D = torch.zeros(N, 3, dtype=torch.float64)
        K = (sh_degree + 1) ** 2
        shs = 0.1 * torch.randn(N, K, 3, generator=gen, dtype=torch.float64)
        # Keep every channel positive so no color is clamped
        shs[:, 0] = 1.0 + torch.rand(N, 3, generator=gen, dtype=torch.float64)

        def loss(means, scales, quats, opacities, shs):
            color, _, depth = rasterizer(
                means, means2D, opacities, shs=shs, scales=scales, rotations=quats,
            )
            return color, depth

        inputs = tuple(
            torch.nn.Parameter(t.clone())
            for t in (scene['means3D'], scene['scales'], scene['rotations'],
                      scene['opacities'], shs)
        )
        torch.autograd.gradcheck(loss, inputs, eps=1e-6, atol=1e-5, rtol=1e-4)

    @parameterized.parameters(*BACKENDS)
    def test_grad_check_covariance(self, backend):
        N = 3
        settings = make_settings()
        scene = _scene(N, flat=False)
        cov3D = pack_covariance(scale_rotation_to_covariance(scene['scales'], scene['rotations']))
        rasterizer = GaussianRasterizer(settings, backend=backend)
        means2D = torch.zeros(N, 3, dtype=torch.float64)

        def loss(means, cov3D, opacities, colors):
            color, _, depth = rasterizer(
                means, means2D, opacities, colors_precomp=colors, cov3D_precomp=cov3D,
            )
            return color, depth

        inputs = tuple(
            torch.nn.Parameter(t.clone())
            for t in (scene['means3D'], cov3D, scene['opacities'], scene['colors'])
        )
        torch.autograd.gradcheck(loss, inputs, eps=1e-6, atol=1e-5, rtol=1e-4)

    @parameterized.parameters(*BACKENDS)
    def test_means2D_gradient(self, backend):
        """The screen-space gradient is d(loss)/d(center) in NDC units."""
        settings = make_settings(bg=(0.5, 0.5, 0.5))
        scene = _scene(2, flat=False)
        weights = torch.rand(16, 16, 3, generator=torch.Generator().manual_seed(1),
                             dtype=torch.float64)
        _, ctx = render(
            scene['means3D'], scene['opacities'], settings, colors_precomp=scene['colors'],
            scales=scene['scales'], rotations=scene['rotations'], backend=backend,
        )
        geom, bins, _ = ctx._buffers
        grads = ctx.backward(weights, None)

        engine = get_backend(backend)
        bg = settings.bg
        eps = 1e-6
        for i in range(2):
            for axis, size in ((0, 16), (1, 16)):
                losses = []
                for sign in (1.0, -1.0):
                    points_xy = geom.points_xy.clone()
                    points_xy[i, axis] += sign * eps
                    moved = dataclasses.replace(geom, points_xy=points_xy)
                    color, _, _ = engine.blend(moved, bins, bg, 16, 16)
                    losses.append((color * weights).sum().item())
                numeric = (losses[0] - losses[1]) / (2 * eps) * 0.5 * size
                self.assertAlmostEqual(grads.means2D[i, axis].item(), numeric, delta=1e-5)


if __name__ == '__main__':
    absltest.main()
