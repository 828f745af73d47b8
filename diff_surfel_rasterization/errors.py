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

"""Exceptions raised by the surfel rasterizer."""


class RasterizerError(Exception):
    """Base class for rasterizer errors."""


class InvalidArgumentError(RasterizerError, ValueError):
    """Inputs violate a rasterizer contract (exclusive groups, devices, shapes)."""


class ContextStateError(RasterizerError, RuntimeError):
    """A render context was used outside its forward -> backward lifecycle."""


class BackendUnavailableError(RasterizerError, ImportError):
    """The requested rendering backend cannot be loaded."""
