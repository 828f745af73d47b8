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

"""Tests for the render context lifecycle and the autograd wrapper."""

import logging

import pytest
import torch

from diff_surfel_rasterization import (
    ContextState,
    ContextStateError,
    GaussianRasterizer,
    RenderBackend,
    RenderContext,
    rasterize_gaussians,
    render,
)
from diff_surfel_rasterization.backends import TorchBackend
from diff_surfel_rasterization.context import BACKWARD_SNAPSHOT, FORWARD_SNAPSHOT
from diff_surfel_rasterization.inputs import placeholder
from tests.test_utils import make_settings, random_surfels


def _render(settings=None, backend="torch", n=5):
    scene = random_surfels(n)
    out, ctx = render(
        scene["means3D"], scene["opacities"], settings or make_settings(),
        colors_precomp=scene["colors"], scales=scene["scales"],
        rotations=scene["rotations"], backend=backend,
    )
    return scene, out, ctx


class FailingBackend(TorchBackend):
    name = "failing"

    def __init__(self, fail_forward=False):
        super().__init__()
        self.fail_forward = fail_forward

    def render(self, *args):
        if self.fail_forward:
            raise RuntimeError("engine failure")
        return super().render(*args)

    def render_backward(self, *args):
        raise RuntimeError("engine failure")


class TestStateMachine:

    def test_forward_then_backward(self):
        _, out, ctx = _render()
        assert ctx.state is ContextState.FORWARD_COMPLETE
        assert ctx.num_rendered == out.num_rendered > 0
        grads = ctx.backward(torch.ones_like(out.color), None)
        assert ctx.state is ContextState.BACKWARD_COMPLETE
        assert grads.means3D.shape == (5, 3)
        assert grads.opacities.shape == (5, 1)

    def test_backward_twice_raises(self):
        _, out, ctx = _render()
        ctx.backward(torch.ones_like(out.color), torch.ones_like(out.depth))
        with pytest.raises(ContextStateError):
            ctx.backward(torch.ones_like(out.color), torch.ones_like(out.depth))

    def test_backward_before_forward_raises(self):
        ctx = RenderContext(TorchBackend(), make_settings())
        assert ctx.state is ContextState.IDLE
        with pytest.raises(ContextStateError):
            ctx.backward()

    def test_forward_twice_raises(self):
        scene, _, ctx = _render()
        empty = placeholder(scene["means3D"])
        with pytest.raises(ContextStateError):
            ctx.forward(
                scene["means3D"], scene["opacities"], empty, scene["colors"],
                scene["scales"], scene["rotations"], empty,
            )

    def test_discard_releases_buffers(self):
        _, _, ctx = _render()
        ctx.discard()
        assert ctx.state is ContextState.DISCARDED
        assert ctx._buffers is None and ctx._saved is None
        with pytest.raises(ContextStateError):
            ctx.backward()
        with pytest.raises(ContextStateError):
            ctx.discard()

    def test_state_error_is_runtime_error(self):
        ctx = RenderContext(TorchBackend(), make_settings())
        with pytest.raises(RuntimeError):
            ctx.discard()

    def test_missing_gradients_are_zero(self):
        _, out, ctx = _render()
        grads = ctx.backward(None, None)
        for name, g in zip(grads._fields, grads):
            assert torch.count_nonzero(g) == 0, name

    def test_placeholder_gradients_are_empty(self):
        _, out, ctx = _render()
        grads = ctx.backward(torch.ones_like(out.color), None)
        assert grads.sh.numel() == 0
        assert grads.cov3D_precomp.numel() == 0
        assert grads.colors_precomp.shape == (5, 3)
        assert grads.means2D.shape == (5, 2)


class TestAutogradWrapper:

    def test_gradients_reach_leaf_tensors(self):
        settings = make_settings()
        scene = random_surfels(4)
        params = {k: v.clone().requires_grad_(True) for k, v in scene.items()}
        means2D = torch.zeros(4, 3, dtype=torch.float64, requires_grad=True)
        rasterizer = GaussianRasterizer(settings)
        color, radii, depth = rasterizer(
            params["means3D"], means2D, params["opacities"],
            colors_precomp=params["colors"], scales=params["scales"],
            rotations=params["rotations"],
        )
        assert not radii.requires_grad
        (color.sum() + depth.sum()).backward()

        for name, p in params.items():
            assert p.grad is not None and p.grad.shape == p.shape, name
            assert torch.isfinite(p.grad).all(), name
        assert means2D.grad.shape == (4, 3)
        assert (means2D.grad[:, 2] == 0).all()
        assert means2D.grad[:, :2].abs().sum() > 0

    def test_means2D_gradient_matches_explicit_context(self):
        settings = make_settings()
        scene = random_surfels(4)
        means3D = scene["means3D"].clone().requires_grad_(True)
        means2D = torch.zeros(4, 2, dtype=torch.float64, requires_grad=True)
        empty = placeholder(means3D)
        color, _, _ = rasterize_gaussians(
            means3D, means2D, empty, scene["colors"], scene["opacities"],
            scene["scales"], scene["rotations"], empty, settings,
        )
        color.sum().backward()

        _, out, ctx = _render(settings, n=4)
        grads = ctx.backward(torch.ones_like(out.color), None)
        torch.testing.assert_close(means2D.grad, grads.means2D)
        torch.testing.assert_close(means3D.grad, grads.means3D)

    def test_context_discarded_without_grad(self, monkeypatch):
        contexts = []
        original = RenderContext.forward

        def spy(self, *args):
            contexts.append(self)
            return original(self, *args)

        monkeypatch.setattr(RenderContext, "forward", spy)
        scene = random_surfels(3)
        rasterizer = GaussianRasterizer(make_settings())
        rasterizer(
            scene["means3D"], torch.zeros_like(scene["means3D"]), scene["opacities"],
            colors_precomp=scene["colors"], scales=scene["scales"],
            rotations=scene["rotations"],
        )
        (ctx,) = contexts
        assert ctx.state is ContextState.DISCARDED

    def test_second_backward_raises_state_error(self):
        scene = random_surfels(4)
        means3D = scene["means3D"].clone().requires_grad_(True)
        means2D = torch.zeros(4, 3, dtype=torch.float64, requires_grad=True)
        color, _, depth = GaussianRasterizer(make_settings())(
            means3D, means2D, scene["opacities"],
            colors_precomp=scene["colors"], scales=scene["scales"],
            rotations=scene["rotations"],
        )
        loss = color.sum() + depth.sum()
        loss.backward(retain_graph=True)
        with pytest.raises(ContextStateError):
            loss.backward()

    def test_warns_when_means2D_has_no_grad(self):
        scene = random_surfels(3)
        means3D = scene["means3D"].clone().requires_grad_(True)
        rasterizer = GaussianRasterizer(make_settings())
        with pytest.warns(UserWarning, match="means2D"):
            rasterizer(
                means3D, torch.zeros_like(means3D), scene["opacities"],
                colors_precomp=scene["colors"], scales=scene["scales"],
                rotations=scene["rotations"],
            )


class TestDebugSnapshots:

    def test_forward_failure_writes_snapshot(self, tmp_path, monkeypatch, caplog):
        monkeypatch.chdir(tmp_path)
        with caplog.at_level(logging.ERROR, logger="diff_surfel_rasterization.context"):
            with pytest.raises(RuntimeError, match="engine failure"):
                _render(make_settings(debug=True), backend=FailingBackend(fail_forward=True))
        assert (tmp_path / FORWARD_SNAPSHOT).exists()
        assert FORWARD_SNAPSHOT in caplog.text
        args = torch.load(tmp_path / FORWARD_SNAPSHOT, weights_only=False)
        assert len(args) == 19
        assert args[1].shape == (5, 3)

    def test_backward_failure_writes_snapshot(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        _, out, ctx = _render(make_settings(debug=True), backend=FailingBackend())
        with pytest.raises(RuntimeError, match="engine failure"):
            ctx.backward(torch.ones_like(out.color), None)
        assert (tmp_path / BACKWARD_SNAPSHOT).exists()
        assert ctx.state is ContextState.FORWARD_COMPLETE

    def test_no_snapshot_without_debug(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(RuntimeError):
            _render(backend=FailingBackend(fail_forward=True))
        assert not (tmp_path / FORWARD_SNAPSHOT).exists()

    def test_debug_logs_statistics(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="diff_surfel_rasterization"):
            _render(make_settings(debug=True))
        assert "tile entries" in caplog.text


class TestCustomBackend:

    def test_any_render_backend_is_accepted(self):
        assert isinstance(TorchBackend(), RenderBackend)
        rasterizer = GaussianRasterizer(make_settings(), backend=TorchBackend(chunk_size=1))
        assert rasterizer.backend.chunk_size == 1
