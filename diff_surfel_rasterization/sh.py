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

"""Real spherical harmonics evaluation for view-dependent surfel color."""

from typing import Tuple

import torch

SH_C0 = 0.28209479177387814
SH_C1 = 0.4886025119029199
SH_C2 = (
    1.0925484305920792,
    -1.0925484305920792,
    0.31539156525252005,
    -1.0925484305920792,
    0.5462742152960396,
)
SH_C3 = (
    -0.5900435899266435,
    2.890611442640554,
    -0.4570457994644658,
    0.3731763325901154,
    -0.4570457994644658,
    1.445305721320277,
    -0.5900435899266435,
)


def num_sh_coeffs(degree: int) -> int:
    return (degree + 1) ** 2


def sh_basis_dot(degree: int, sh: torch.Tensor, dirs: torch.Tensor) -> torch.Tensor:
    """Sum of SH basis functions up to ``degree`` weighted by ``sh``.

    Args:
        degree: active SH degree (0-3)
        sh: [N, K, C] coefficients, K >= (degree + 1) ** 2
        dirs: [N, 3] unit directions

    Returns:
        [N, C]
    """
    result = SH_C0 * sh[:, 0]
    if degree > 0:
        x, y, z = dirs[:, 0:1], dirs[:, 1:2], dirs[:, 2:3]
        result = (
            result
            - SH_C1 * y * sh[:, 1]
            + SH_C1 * z * sh[:, 2]
            - SH_C1 * x * sh[:, 3]
        )
        if degree > 1:
            xx, yy, zz = x * x, y * y, z * z
            xy, yz, xz = x * y, y * z, x * z
            result = (
                result
                + SH_C2[0] * xy * sh[:, 4]
                + SH_C2[1] * yz * sh[:, 5]
                + SH_C2[2] * (2.0 * zz - xx - yy) * sh[:, 6]
                + SH_C2[3] * xz * sh[:, 7]
                + SH_C2[4] * (xx - yy) * sh[:, 8]
            )
            if degree > 2:
                result = (
                    result
                    + SH_C3[0] * y * (3.0 * xx - yy) * sh[:, 9]
                    + SH_C3[1] * xy * z * sh[:, 10]
                    + SH_C3[2] * y * (4.0 * zz - xx - yy) * sh[:, 11]
                    + SH_C3[3] * z * (2.0 * zz - 3.0 * xx - 3.0 * yy) * sh[:, 12]
                    + SH_C3[4] * x * (4.0 * zz - xx - yy) * sh[:, 13]
                    + SH_C3[5] * z * (xx - yy) * sh[:, 14]
                    + SH_C3[6] * x * (xx - 3.0 * yy) * sh[:, 15]
                )
    return result


def view_directions(means: torch.Tensor, view_origin: torch.Tensor) -> torch.Tensor:
    """Unit directions from the camera center toward each primitive."""
    dirs = means - view_origin.reshape(1, 3).to(means)
    return dirs / dirs.norm(dim=1, keepdim=True)


def eval_sh(
    means: torch.Tensor,
    sh_coeffs: torch.Tensor,
    view_origin: torch.Tensor,
    sh_degree: int,
) -> torch.Tensor:
    """
    Evaluate spherical harmonics to compute view-dependent colors.

    Parameters
    ----------
    means : torch.Tensor
        Primitive centers, shape (N, 3)
    sh_coeffs : torch.Tensor
        SH coefficients, shape (N, D, 3) where D >= (degree+1)^2
    view_origin : torch.Tensor
        Camera/view position, shape (3,) or (1, 3)
    sh_degree : int
        Degree of spherical harmonics (0-3)

    Returns
    -------
    torch.Tensor
        Evaluated colors (offset by 0.5, unclamped), shape (N, 3)
    """
    dirs = view_directions(means, view_origin)
    return sh_basis_dot(sh_degree, sh_coeffs, dirs) + 0.5


def compute_colors_from_sh(
    means: torch.Tensor,
    sh_coeffs: torch.Tensor,
    view_origin: torch.Tensor,
    sh_degree: int,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Evaluate SH colors and clamp negatives to zero.

    Returns the clamped colors and a mask of the channels that were clamped.
    Clamped channels do not propagate gradient.
    """
    rgb = eval_sh(means, sh_coeffs, view_origin, sh_degree)
    clamped = rgb < 0
    return torch.where(clamped, torch.zeros_like(rgb), rgb), clamped
