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

"""Adapter for a separately built CUDA extension.

The extension is not part of this package. It must expose
``rasterize_gaussians``, ``rasterize_gaussians_backward`` and ``mark_visible``
with the same argument order as :class:`~.base.RenderBackend`. It is imported
on first use so that the package itself never requires a GPU toolchain.
"""

import importlib
import logging
from typing import Callable

from ..errors import BackendUnavailableError
from .base import RenderBackend

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "diff_surfel_rasterization._C"
_ENTRY_POINTS = ("rasterize_gaussians", "rasterize_gaussians_backward", "mark_visible")


class CudaBackend(RenderBackend):
    name = "cuda"

    def __init__(self, module=None, module_name: str = DEFAULT_EXTENSION):
        self._module = module
        self.module_name = module_name

    def _load(self):
        if self._module is None:
            try:
                # pylint: disable=import-outside-toplevel
                module = importlib.import_module(self.module_name)
            except ImportError as e:
                raise BackendUnavailableError(
                    f"CUDA backend requires the compiled extension {self.module_name!r}"
                ) from e
            missing = [fn for fn in _ENTRY_POINTS if not hasattr(module, fn)]
            if missing:
                raise BackendUnavailableError(
                    f"{self.module_name!r} does not provide {', '.join(missing)}"
                )
            logger.info("Loaded CUDA rasterizer extension %s", self.module_name)
            self._module = module
        return self._module

    def _lazy(self, name: str) -> Callable:
        def call_cuda(*args):
            return getattr(self._load(), name)(*args)

        return call_cuda

    def mark_visible(self, means3D, viewmatrix, projmatrix):
        return self._lazy("mark_visible")(means3D, viewmatrix, projmatrix)

    def render(self, *args):
        return self._lazy("rasterize_gaussians")(*args)

    def render_backward(self, *args):
        return self._lazy("rasterize_gaussians_backward")(*args)

    def __repr__(self) -> str:
        return f"CudaBackend(module_name={self.module_name!r})"
