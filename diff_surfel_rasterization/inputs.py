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

"""Validation and normalization of per-primitive rasterizer inputs.

Appearance and shape are exclusive parameter groups. They are resolved once
into tagged variants so everything downstream of :func:`resolve_appearance`
and :func:`resolve_shape` can rely on exactly one representation being set.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Union

import torch

from . import config
from .errors import InvalidArgumentError

APPEARANCE_ERROR = "Please provide exactly one of either SHs or precomputed colors!"
SHAPE_ERROR = (
    "Please provide exactly one of either scale/rotation pair or precomputed 3D covariance!"
)


@dataclass(frozen=True)
class SHCoefficients:
    coeffs: torch.Tensor  # [N, K, 3]


@dataclass(frozen=True)
class PrecomputedColors:
    colors: torch.Tensor  # [N, 3]


@dataclass(frozen=True)
class ScaleRotation:
    scales: torch.Tensor  # [N, 2] (flat surfel) or [N, 3]
    rotations: torch.Tensor  # [N, 4], (w, x, y, z)


@dataclass(frozen=True)
class PrecomputedCovariance:
    cov3D: torch.Tensor  # [N, 6], upper triangle xx, xy, xz, yy, yz, zz


Appearance = Union[SHCoefficients, PrecomputedColors]
Shape = Union[ScaleRotation, PrecomputedCovariance]


def resolve_appearance(
    shs: Optional[torch.Tensor], colors_precomp: Optional[torch.Tensor]
) -> Appearance:
    if (shs is None) == (colors_precomp is None):
        raise InvalidArgumentError(APPEARANCE_ERROR)
    if shs is not None:
        return SHCoefficients(shs)
    return PrecomputedColors(colors_precomp)


def resolve_shape(
    scales: Optional[torch.Tensor],
    rotations: Optional[torch.Tensor],
    cov3D_precomp: Optional[torch.Tensor],
) -> Shape:
    has_pair = scales is not None and rotations is not None
    has_any = scales is not None or rotations is not None
    has_cov = cov3D_precomp is not None
    if (not has_pair and not has_cov) or (has_any and has_cov):
        raise InvalidArgumentError(SHAPE_ERROR)
    if has_cov:
        return PrecomputedCovariance(cov3D_precomp)
    return ScaleRotation(scales, rotations)


def placeholder(like: torch.Tensor) -> torch.Tensor:
    """Empty tensor standing in for an unused optional input."""
    return torch.empty(0, device=like.device, dtype=like.dtype)


def is_placeholder(t: torch.Tensor) -> bool:
    return t.dim() == 1 and t.shape[0] == 0


def engine_arguments(
    means3D: torch.Tensor, appearance: Appearance, shape: Shape
) -> Dict[str, torch.Tensor]:
    """Expand the variants into the fixed-arity tensors the engine expects."""
    empty = placeholder(means3D)
    args = {
        "sh": empty,
        "colors_precomp": empty,
        "scales": empty,
        "rotations": empty,
        "cov3D_precomp": empty,
    }
    if isinstance(appearance, SHCoefficients):
        args["sh"] = appearance.coeffs
    else:
        args["colors_precomp"] = appearance.colors
    if isinstance(shape, ScaleRotation):
        args["scales"] = shape.scales
        args["rotations"] = shape.rotations
    else:
        args["cov3D_precomp"] = shape.cov3D
    return args


def _check_tensor(name, t, n, device, trailing):
    if not isinstance(t, torch.Tensor):
        raise InvalidArgumentError(f"{name} must be a torch.Tensor, got {type(t).__name__}")
    if t.device != device:
        raise InvalidArgumentError(
            f"{name} is on {t.device} but means3D is on {device}; "
            "all inputs must reside on the same device"
        )
    if t.dim() == 0:
        raise InvalidArgumentError(f"{name} must be [N, ...], got a 0-dim tensor")
    if t.shape[0] != n:
        raise InvalidArgumentError(f"{name} has {t.shape[0]} primitives, expected {n}")
    if trailing is not None and tuple(t.shape[1:]) not in trailing:
        raise InvalidArgumentError(
            f"{name} has shape {tuple(t.shape)}, expected [N, ...] with trailing "
            f"dims in {sorted(trailing)}"
        )


def validate_inputs(
    means3D: torch.Tensor,
    opacities: torch.Tensor,
    appearance: Appearance,
    shape: Shape,
    sh_degree: int,
    means2D: Optional[torch.Tensor] = None,
) -> None:
    """Check devices, primitive counts and per-primitive shapes."""
    if means3D.dim() != 2 or means3D.shape[1] != 3:
        raise InvalidArgumentError(f"means3D must be [N, 3], got {tuple(means3D.shape)}")
    n = means3D.shape[0]
    device = means3D.device

    _check_tensor("opacities", opacities, n, device, {(), (1,)})
    if means2D is not None:
        _check_tensor("means2D", means2D, n, device, None)

    if isinstance(appearance, SHCoefficients):
        sh = appearance.coeffs
        _check_tensor("shs", sh, n, device, None)
        if sh.dim() != 3 or sh.shape[2] != 3:
            raise InvalidArgumentError(f"shs must be [N, K, 3], got {tuple(sh.shape)}")
        if not 0 <= sh_degree <= config.MAX_SH_DEGREE:
            raise InvalidArgumentError(
                f"sh_degree must be in [0, {config.MAX_SH_DEGREE}], got {sh_degree}"
            )
        if sh.shape[1] < (sh_degree + 1) ** 2:
            raise InvalidArgumentError(
                f"sh_degree {sh_degree} needs {(sh_degree + 1) ** 2} coefficients, "
                f"shs only has {sh.shape[1]}"
            )
    else:
        _check_tensor("colors_precomp", appearance.colors, n, device, {(3,)})

    if isinstance(shape, ScaleRotation):
        _check_tensor("scales", shape.scales, n, device, {(2,), (3,)})
        _check_tensor("rotations", shape.rotations, n, device, {(4,)})
    else:
        _check_tensor("cov3D_precomp", shape.cov3D, n, device, {(6,)})
