"""Tests for the multi-channel TV proximal step."""

import numpy as np
import pytest
import torch

from mtvlib.core import Lattice, Volume
from mtvlib.reconstruction import (
    Channel,
    Observation,
    rescale_duals,
    tv_energy,
    update_tv,
    vectorial_shrinkage,
)


def _stationarity_residual(u, v, lam, rho):
    """max |ρ(u_c - v_c) + λ_c² u_c / N| over voxels with u != 0."""
    view = (-1,) + (1,) * (v.ndim - 1)
    lam2 = (lam**2).view(view)
    n = torch.sqrt(torch.sum(lam2 * torch.sum(u * u, dim=1, keepdim=True), dim=0, keepdim=True))
    active = n > 0
    r = rho * (u - v) + lam2 * u / torch.where(active, n, torch.ones_like(n))
    return float(torch.max(torch.abs(torch.where(active, r, torch.zeros_like(r)))))


class TestVectorialShrinkage:
    """Tests for vectorial_shrinkage."""

    def test_zero_input(self):
        """Zero magnitude shrinks to exactly zero."""
        v = torch.zeros(2, 3, 4, 4, 4, dtype=torch.float64)
        for lam in ([1.0, 1.0], [1.0, 3.0]):
            u = vectorial_shrinkage(v, torch.tensor(lam, dtype=torch.float64), rho=2.0)
            assert torch.all(u == 0)
            assert not torch.any(torch.isnan(u))

    def test_single_channel_soft_threshold(self):
        """One channel, one direction: scalar soft-thresholding at λ/ρ."""
        values = torch.tensor([-2.0, -0.5, -0.1, 0.0, 0.3, 0.5, 1.5], dtype=torch.float64)
        v = values.view(1, 1, -1)
        u = vectorial_shrinkage(v, torch.tensor([2.0], dtype=torch.float64), rho=4.0)
        expected = torch.sign(values) * torch.clamp(values.abs() - 0.5, min=0.0)
        assert torch.allclose(u.view(-1), expected)

    def test_joint_magnitude_threshold(self):
        """Equal weights shrink the joint magnitude, not each component."""
        v = torch.zeros(2, 1, 1, dtype=torch.float64)
        v[0, 0, 0] = 3.0
        v[1, 0, 0] = 4.0
        u = vectorial_shrinkage(v, torch.tensor([1.0, 1.0], dtype=torch.float64), rho=1.0)
        # |v| = 5 -> 4, direction kept
        assert torch.allclose(u.view(-1), torch.tensor([2.4, 3.2], dtype=torch.float64))

    def test_newton_matches_closed_form(self):
        """Nearly equal weights (Newton path) agree with the closed form."""
        torch.manual_seed(0)
        v = torch.randn(2, 3, 6, 6, 6, dtype=torch.float64)
        closed = vectorial_shrinkage(v, torch.tensor([1.0, 1.0], dtype=torch.float64), rho=1.5)
        newton = vectorial_shrinkage(
            v, torch.tensor([1.0, 1.0 + 1e-9], dtype=torch.float64), rho=1.5
        )
        assert torch.allclose(closed, newton, atol=1e-7)

    @pytest.mark.parametrize("rho", [0.5, 2.0, 10.0])
    def test_unequal_weights_stationarity(self, rho):
        """Newton solution satisfies the first-order optimality condition."""
        torch.manual_seed(1)
        v = torch.randn(3, 3, 5, 5, 5, dtype=torch.float64)
        lam = torch.tensor([0.5, 1.0, 2.5], dtype=torch.float64)
        u = vectorial_shrinkage(v, lam, rho)
        assert _stationarity_residual(u, v, lam, rho) < 1e-8

    def test_unequal_weights_zero_region(self):
        """u = 0 exactly where Σ|v_c|²/λ_c² <= 1/ρ²."""
        torch.manual_seed(2)
        rho = 1.0
        v = 0.3 * torch.randn(2, 3, 8, 8, 8, dtype=torch.float64)
        lam = torch.tensor([1.0, 2.0], dtype=torch.float64)
        u = vectorial_shrinkage(v, lam, rho)
        crit = torch.sum(torch.sum(v * v, dim=1) / (lam**2).view(-1, 1, 1, 1), dim=0)
        inactive = crit <= 1.0 / rho**2
        assert torch.any(inactive)
        assert torch.all(u[:, :, inactive] == 0)
        assert torch.all(torch.sum(u * u, dim=(0, 1))[~inactive] > 0)

    def test_shared_edge_preserves_weak_channel(self):
        """A strong edge in one channel keeps a weak edge in the other."""
        v = torch.zeros(2, 1, 1, dtype=torch.float64)
        v[0, 0, 0] = 5.0
        v[1, 0, 0] = 0.4
        lam = torch.tensor([1.0, 1.0], dtype=torch.float64)
        alone = vectorial_shrinkage(v[1:], lam[1:], rho=2.0)
        joint = vectorial_shrinkage(v, lam, rho=2.0)
        assert float(alone[0, 0, 0]) == 0.0
        assert float(joint[1, 0, 0]) > 0.3


class TestTVEnergy:
    """Tests for tv_energy and update_tv."""

    def test_single_channel_is_weighted_l1(self):
        torch.manual_seed(3)
        g = torch.randn(1, 1, 10, dtype=torch.float64)
        energy = tv_energy(g, torch.tensor([2.0]))
        assert energy == pytest.approx(2.0 * float(g.abs().sum()))

    def test_update_tv_dual_step(self):
        """w ← w + ∇y - u and ll2 = -R(y)."""
        lat = Lattice((8, 8, 8), np.eye(4))
        torch.manual_seed(4)
        channels = []
        for c in range(2):
            vol = Volume.from_array(torch.rand(lat.shape, dtype=torch.float64) + 0.5)
            ch = Channel(c, [Observation(vol)], lat, lam0=1.0 + c, dtype=torch.float64)
            ch.set_image(torch.rand(lat.shape, dtype=torch.float64))
            channels.append(ch)

        ll2, grads = update_tv(channels, rho=3.0)
        lam = torch.tensor([1.0, 2.0], dtype=torch.float64)
        assert ll2 == pytest.approx(-tv_energy(grads, lam))
        for c, ch in enumerate(channels):
            assert torch.allclose(ch.w.data, grads[c] - ch.u.data)

    def test_rescale_duals_keeps_unscaled_dual(self):
        """ρw is unchanged when the penalty changes."""
        lat = Lattice((6, 6, 6), np.eye(4))
        vol = Volume.from_array(torch.ones(lat.shape, dtype=torch.float64))
        ch = Channel(0, [Observation(vol)], lat, dtype=torch.float64)
        torch.manual_seed(5)
        w = torch.randn((3,) + lat.shape, dtype=torch.float64)
        ch.w.assign(w.clone())

        rescale_duals([ch], rho_old=2.0, rho_new=8.0)
        assert torch.allclose(8.0 * ch.w.data, 2.0 * w)
        rescale_duals([ch], rho_old=8.0, rho_new=8.0)
        assert torch.allclose(8.0 * ch.w.data, 2.0 * w)
