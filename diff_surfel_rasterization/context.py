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

"""Per-call render context carrying engine buffers from forward to backward.

A context is used exactly once: IDLE, then FORWARD_COMPLETE after
:meth:`RenderContext.forward`, then either BACKWARD_COMPLETE after
:meth:`RenderContext.backward` or DISCARDED after :meth:`RenderContext.discard`.

Buffers are released as soon as the context leaves ``FORWARD_COMPLETE``.
"""

import enum
import logging
from typing import NamedTuple, Optional

import torch

from .backends import RenderBackend
from .errors import ContextStateError
from .settings import GaussianRasterizationSettings

logger = logging.getLogger(__name__)

FORWARD_SNAPSHOT = "snapshot_fw.dump"
BACKWARD_SNAPSHOT = "snapshot_bw.dump"


class ContextState(enum.Enum):
    IDLE = "idle"
    FORWARD_COMPLETE = "forward_complete"
    BACKWARD_COMPLETE = "backward_complete"
    DISCARDED = "discarded"


class RenderOutput(NamedTuple):
    color: torch.Tensor  # [H, W, 3]
    depth: torch.Tensor  # [H, W]
    radii: torch.Tensor  # [N] int32
    num_rendered: int


class SurfelGradients(NamedTuple):
    """Gradients w.r.t. every engine input; unused inputs get empty tensors."""

    means2D: torch.Tensor
    colors_precomp: torch.Tensor
    opacities: torch.Tensor
    means3D: torch.Tensor
    cov3D_precomp: torch.Tensor
    sh: torch.Tensor
    scales: torch.Tensor
    rotations: torch.Tensor


def cpu_deep_copy_tuple(input_tuple):
    copied_tensors = [
        item.cpu().clone() if isinstance(item, torch.Tensor) else item
        for item in input_tuple
    ]
    return tuple(copied_tensors)


def _call_engine(fn, args, debug: bool, snapshot: str):
    if not debug:
        return fn(*args)
    cpu_args = cpu_deep_copy_tuple(args)
    try:
        return fn(*args)
    except Exception:
        torch.save(cpu_args, snapshot)
        logger.error(
            "An error occurred in the rasterizer; wrote %s for debugging.", snapshot
        )
        raise


class RenderContext:
    """Owns the inputs and engine buffers of one render call."""

    def __init__(
        self, backend: RenderBackend, raster_settings: GaussianRasterizationSettings
    ):
        self.backend = backend
        self.raster_settings = raster_settings
        self.state = ContextState.IDLE
        self.num_rendered = 0
        self._saved = None
        self._buffers = None

    def _require(self, expected: ContextState, action: str):
        if self.state is not expected:
            raise ContextStateError(
                f"Cannot {action} a render context in state {self.state.name} "
                f"(expected {expected.name})"
            )

    def forward(
        self,
        means3D: torch.Tensor,
        opacities: torch.Tensor,
        sh: torch.Tensor,
        colors_precomp: torch.Tensor,
        scales: torch.Tensor,
        rotations: torch.Tensor,
        cov3D_precomp: torch.Tensor,
    ) -> RenderOutput:
        self._require(ContextState.IDLE, "run forward on")
        s = self.raster_settings
        args = (
            s.bg,
            means3D,
            colors_precomp,
            opacities,
            scales,
            rotations,
            s.scale_modifier,
            cov3D_precomp,
            s.viewmatrix,
            s.projmatrix,
            s.tanfovx,
            s.tanfovy,
            s.image_height,
            s.image_width,
            sh,
            s.sh_degree,
            s.campos,
            s.prefiltered,
            s.debug,
        )
        num_rendered, color, depth, radii, geom, binning, img = _call_engine(
            self.backend.render, args, s.debug, FORWARD_SNAPSHOT
        )
        self.num_rendered = int(num_rendered)
        self._saved = dict(
            means3D=means3D,
            sh=sh,
            colors_precomp=colors_precomp,
            scales=scales,
            rotations=rotations,
            cov3D_precomp=cov3D_precomp,
            radii=radii,
        )
        self._buffers = (geom, binning, img)
        self.state = ContextState.FORWARD_COMPLETE
        return RenderOutput(color, depth, radii, self.num_rendered)

    def backward(
        self,
        grad_color: Optional[torch.Tensor] = None,
        grad_depth: Optional[torch.Tensor] = None,
    ) -> SurfelGradients:
        self._require(ContextState.FORWARD_COMPLETE, "run backward on")
        s = self.raster_settings
        saved = self._saved
        geom, binning, img = self._buffers
        args = (
            s.bg,
            saved["means3D"],
            saved["radii"],
            saved["colors_precomp"],
            saved["scales"],
            saved["rotations"],
            s.scale_modifier,
            saved["cov3D_precomp"],
            s.viewmatrix,
            s.projmatrix,
            s.tanfovx,
            s.tanfovy,
            grad_color,
            grad_depth,
            saved["sh"],
            s.sh_degree,
            s.campos,
            geom,
            self.num_rendered,
            binning,
            img,
            s.debug,
        )
        grads = _call_engine(self.backend.render_backward, args, s.debug, BACKWARD_SNAPSHOT)
        self._release()
        self.state = ContextState.BACKWARD_COMPLETE
        return SurfelGradients(*grads)

    def discard(self):
        """Release the buffers of a forward pass that will not be differentiated."""
        self._require(ContextState.FORWARD_COMPLETE, "discard")
        self._release()
        self.state = ContextState.DISCARDED

    def _release(self):
        self._saved = None
        self._buffers = None

    def __repr__(self):
        return (
            f"RenderContext(backend={self.backend!r}, state={self.state.name}, "
            f"num_rendered={self.num_rendered})"
        )
