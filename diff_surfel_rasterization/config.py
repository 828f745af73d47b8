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

"""Engine constants and environment-driven defaults."""

import os

# Screen tile size in pixels
BLOCK_X = 16
BLOCK_Y = 16

# Primitives closer than this (view space) are culled
NEAR_PLANE = 0.2

# Projected centers must satisfy |ndc| <= guard band to be considered visible,
# and view-space tangents are clamped to guard_band * tan(fov / 2) in the
# projection Jacobian
FRUSTUM_GUARD_BAND = 1.3

# Screen-space low-pass filter added to the projected covariance diagonal
LOW_PASS_FILTER = 0.3

# Compositing thresholds
ALPHA_THRESHOLD = 1.0 / 255.0
MAX_ALPHA = 0.99
TRANSMITTANCE_EPS = 1e-4

MAX_SH_DEGREE = 3

BACKEND_ENV_VAR = "DIFF_SURFEL_RASTERIZATION_BACKEND"
CHUNK_ENV_VAR = "DIFF_SURFEL_RASTERIZATION_CHUNK"

DEFAULT_BACKEND = "torch"
# Max (pixel, list entry) pairs evaluated at once by the vectorized backend
DEFAULT_CHUNK_SIZE = 1 << 22


def default_backend_name() -> str:
    return os.environ.get(BACKEND_ENV_VAR, DEFAULT_BACKEND).strip().lower()


def chunk_size() -> int:
    value = os.environ.get(CHUNK_ENV_VAR)
    if not value:
        return DEFAULT_CHUNK_SIZE
    size = int(value)
    if size <= 0:
        raise ValueError(f"{CHUNK_ENV_VAR} must be positive, got {value!r}")
    return size
