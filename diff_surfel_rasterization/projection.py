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

"""Per-primitive preprocessing: culling, covariance projection, colors.

Everything here is plain PyTorch and vectorised over primitives. The same
:func:`preprocess` runs without gradient tracking in the forward pass and is
replayed with a fixed visibility mask during the backward pass, where autograd
chains the rasterization gradients back to the primitive parameters.
"""

from typing import NamedTuple, Optional, Tuple

import torch

from . import config
from .inputs import is_placeholder
from .settings import tile_grid
from .sh import compute_colors_from_sh


class ProjectedSurfels(NamedTuple):
    means2D: torch.Tensor  # [N, 2] projected centers in NDC
    points_xy: torch.Tensor  # [N, 2] projected centers in pixels
    depths: torch.Tensor  # [N] view-space depth
    conic: torch.Tensor  # [N, 3] inverse 2D covariance (a, b, c)
    colors: torch.Tensor  # [N, 3]
    radii: torch.Tensor  # [N] int32, 0 for culled primitives
    tiles_touched: torch.Tensor  # [N] int64


def transform_points(points: torch.Tensor, matrix: torch.Tensor) -> torch.Tensor:
    """Apply a row-vector 4x4 transform: ``[p, 1] @ matrix``."""
    ones = torch.ones_like(points[:, :1])
    return torch.cat([points, ones], dim=1) @ matrix


def ndc_to_pixel(v: torch.Tensor, size: int) -> torch.Tensor:
    return ((v + 1.0) * size - 1.0) * 0.5


def quaternion_to_rotation(q: torch.Tensor) -> torch.Tensor:
    """Quaternion (w, x, y, z) -> rotation matrix [N, 3, 3]."""
    q = q / q.norm(dim=1, keepdim=True).clamp_min(1e-12)
    r, x, y, z = q[:, 0], q[:, 1], q[:, 2], q[:, 3]
    return torch.stack(
        [
            1.0 - 2.0 * (y * y + z * z),
            2.0 * (x * y - r * z),
            2.0 * (x * z + r * y),
            2.0 * (x * y + r * z),
            1.0 - 2.0 * (x * x + z * z),
            2.0 * (y * z - r * x),
            2.0 * (x * z - r * y),
            2.0 * (y * z + r * x),
            1.0 - 2.0 * (x * x + y * y),
        ],
        dim=1,
    ).reshape(-1, 3, 3)


def scale_rotation_to_covariance(
    scales: torch.Tensor, rotations: torch.Tensor, scale_modifier: float = 1.0
) -> torch.Tensor:
    """World-space covariance R diag(s)^2 R^T, [N, 3, 3].

    A two-column scale describes a flat surfel whose normal axis has zero extent.
    """
    s = scales * scale_modifier
    if s.shape[1] == 2:
        s = torch.cat([s, torch.zeros_like(s[:, :1])], dim=1)
    M = quaternion_to_rotation(rotations) * s[:, None, :]
    return M @ M.transpose(1, 2)


def unpack_covariance(cov6: torch.Tensor) -> torch.Tensor:
    """Upper-triangle [N, 6] (xx, xy, xz, yy, yz, zz) -> symmetric [N, 3, 3]."""
    xx, xy, xz, yy, yz, zz = cov6.unbind(dim=1)
    return torch.stack([xx, xy, xz, xy, yy, yz, xz, yz, zz], dim=1).reshape(-1, 3, 3)


def pack_covariance(cov: torch.Tensor) -> torch.Tensor:
    return torch.stack(
        [cov[:, 0, 0], cov[:, 0, 1], cov[:, 0, 2], cov[:, 1, 1], cov[:, 1, 2], cov[:, 2, 2]],
        dim=1,
    )


def in_frustum(
    means3D: torch.Tensor, viewmatrix: torch.Tensor, projmatrix: torch.Tensor
) -> torch.Tensor:
    """Primitives in front of the near plane whose centers project into the guard band."""
    viewmatrix = viewmatrix.to(means3D)
    projmatrix = projmatrix.to(means3D)
    p_view = transform_points(means3D, viewmatrix)
    p_hom = transform_points(means3D, projmatrix)
    w = p_hom[:, 3]
    w = torch.where(w.abs() > 1e-7, w, torch.ones_like(w))
    ndc = p_hom[:, :2] / w[:, None]
    return (
        (p_view[:, 2] > config.NEAR_PLANE)
        & (ndc.abs() <= config.FRUSTUM_GUARD_BAND).all(dim=1)
    )


def project_covariance(
    p_view: torch.Tensor,
    cov3D: torch.Tensor,
    viewmatrix: torch.Tensor,
    focal_x: float,
    focal_y: float,
    tanfovx: float,
    tanfovy: float,
) -> torch.Tensor:
    """EWA splatting of a world covariance into screen space, [N, 2, 2]."""
    tz = p_view[:, 2]
    limx = config.FRUSTUM_GUARD_BAND * tanfovx
    limy = config.FRUSTUM_GUARD_BAND * tanfovy
    tx = torch.clamp(p_view[:, 0] / tz, -limx, limx) * tz
    ty = torch.clamp(p_view[:, 1] / tz, -limy, limy) * tz

    zeros = torch.zeros_like(tz)
    J = torch.stack(
        [
            focal_x / tz, zeros, -(focal_x * tx) / (tz * tz),
            zeros, focal_y / tz, -(focal_y * ty) / (tz * tz),
        ],
        dim=1,
    ).reshape(-1, 2, 3)
    T = J @ viewmatrix[:3, :3].T
    cov2D = T @ cov3D @ T.transpose(1, 2)
    eye = torch.eye(2, dtype=cov2D.dtype, device=cov2D.device)
    return cov2D + config.LOW_PASS_FILTER * eye


def tile_rect(
    points_xy: torch.Tensor, radii: torch.Tensor, grid: Tuple[int, int]
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Inclusive-exclusive tile rectangle [min, max) covered by each primitive."""
    grid_x, grid_y = grid
    block = torch.tensor(
        [config.BLOCK_X, config.BLOCK_Y], dtype=points_xy.dtype, device=points_xy.device
    )
    r = radii.to(points_xy.dtype)[:, None]
    upper = torch.tensor([grid_x, grid_y], device=points_xy.device)
    rect_min = torch.floor((points_xy - r) / block).long()
    rect_max = torch.floor((points_xy + r + block - 1) / block).long()
    rect_min = torch.minimum(rect_min.clamp_min(0), upper)
    rect_max = torch.minimum(rect_max.clamp_min(0), upper)
    return rect_min, rect_max


def preprocess(
    means3D: torch.Tensor,
    opacities: Optional[torch.Tensor],
    sh: torch.Tensor,
    colors_precomp: torch.Tensor,
    scales: torch.Tensor,
    rotations: torch.Tensor,
    cov3D_precomp: torch.Tensor,
    scale_modifier: float,
    viewmatrix: torch.Tensor,
    projmatrix: torch.Tensor,
    tanfovx: float,
    tanfovy: float,
    image_height: int,
    image_width: int,
    sh_degree: int,
    campos: torch.Tensor,
    prefiltered: bool,
    visible: Optional[torch.Tensor] = None,
) -> ProjectedSurfels:
    """Project every primitive to screen space.

    When ``visible`` is None the culling decisions are made here (forward).
    Passing the mask recorded by a previous call replays those decisions, so a
    backward recomputation sees exactly the primitives that were rendered.
    Culled rows are replaced by finite stand-in values before any division so
    that autograd never multiplies a zero gradient by an infinite derivative.
    """
    dtype, device = means3D.dtype, means3D.device
    viewmatrix = viewmatrix.to(device=device, dtype=dtype)
    projmatrix = projmatrix.to(device=device, dtype=dtype)
    campos = campos.to(device=device, dtype=dtype).reshape(3)
    n = means3D.shape[0]
    grid = tile_grid(image_height, image_width)
    focal_x = image_width / (2.0 * tanfovx)
    focal_y = image_height / (2.0 * tanfovy)

    p_view = transform_points(means3D, viewmatrix)[:, :3]
    p_hom = transform_points(means3D, projmatrix)

    decide = visible is None
    if decide:
        with torch.no_grad():
            visible = p_view[:, 2] > 0
            if not prefiltered:
                visible &= in_frustum(means3D, viewmatrix, projmatrix)
            if opacities is not None:
                visible &= opacities.reshape(-1) > config.ALPHA_THRESHOLD
    visible = visible.to(device=device, dtype=torch.bool)
    mask = visible[:, None]

    stand_in = torch.tensor([0.0, 0.0, 1.0], dtype=dtype, device=device).expand(n, 3)
    p_view = torch.where(mask, p_view, stand_in)
    w = torch.where(visible, p_hom[:, 3], torch.ones_like(p_hom[:, 3]))
    means2D = p_hom[:, :2] / (w[:, None] + 1e-7)

    if is_placeholder(cov3D_precomp):
        cov3D = scale_rotation_to_covariance(scales, rotations, scale_modifier)
    else:
        cov3D = unpack_covariance(cov3D_precomp)
    cov2D = project_covariance(
        p_view, cov3D, viewmatrix, focal_x, focal_y, tanfovx, tanfovy
    )
    a, b, c = cov2D[:, 0, 0], cov2D[:, 0, 1], cov2D[:, 1, 1]
    det = a * c - b * b
    if decide:
        visible = visible & (det > 0)
        mask = visible[:, None]
    det = torch.where(visible, det, torch.ones_like(det))
    conic = torch.stack([c / det, -b / det, a / det], dim=1)

    points_xy = torch.stack(
        [ndc_to_pixel(means2D[:, 0], image_width), ndc_to_pixel(means2D[:, 1], image_height)],
        dim=1,
    )

    with torch.no_grad():
        mid = 0.5 * (a + c)
        lambda1 = mid + torch.sqrt(torch.clamp(mid * mid - det, min=0.1))
        radius = torch.ceil(3.0 * torch.sqrt(lambda1.clamp_min(0)))
        radius = torch.where(visible, radius, torch.zeros_like(radius))
        rect_min, rect_max = tile_rect(points_xy, radius, grid)
        area = (rect_max - rect_min).prod(dim=1)
        if decide:
            visible = visible & (area > 0)
            mask = visible[:, None]
        radii = torch.where(visible, radius, torch.zeros_like(radius)).to(torch.int32)
        tiles_touched = torch.where(visible, area, torch.zeros_like(area))

    if is_placeholder(colors_precomp):
        sh_means = torch.where(mask, means3D, campos + stand_in)
        colors, _ = compute_colors_from_sh(sh_means, sh, campos, sh_degree)
    else:
        colors = colors_precomp

    return ProjectedSurfels(
        means2D=means2D,
        points_xy=points_xy,
        depths=p_view[:, 2],
        conic=conic,
        colors=colors,
        radii=radii,
        tiles_touched=tiles_touched,
    )
