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

"""Rendering backends and the registry used to select one by name."""

from typing import Optional, Union

from .. import config
from ..errors import BackendUnavailableError
from .base import GeometryState, ImageState, RasterGradients, RenderBackend
from .cuda import CudaBackend
from .reference import ReferenceBackend
from .tiled import TiledBackend
from .vectorized import TorchBackend

BACKENDS = {
    "reference": ReferenceBackend,
    "torch": TorchBackend,
    "cuda": CudaBackend,
}


def get_backend(name: Optional[Union[str, RenderBackend]] = None) -> RenderBackend:
    """Instantiate a backend by name.

    ``None`` selects the default, which can be overridden with the
    ``DIFF_SURFEL_RASTERIZATION_BACKEND`` environment variable. A backend
    instance is returned unchanged.
    """
    if isinstance(name, RenderBackend):
        return name
    if name is None:
        name = config.default_backend_name()
    try:
        cls = BACKENDS[name.lower()]
    except KeyError:
        raise BackendUnavailableError(
            f"Unknown backend {name!r}, expected one of {sorted(BACKENDS)}"
        ) from None
    return cls()


__all__ = [
    "BACKENDS",
    "CudaBackend",
    "GeometryState",
    "ImageState",
    "RasterGradients",
    "ReferenceBackend",
    "RenderBackend",
    "TiledBackend",
    "TorchBackend",
    "get_backend",
]
