"""Tests for the per-block solver updates: Hessian, image, rigid and bias."""

import numpy as np
import pytest
import torch

from mtvlib.core import Lattice, Volume
from mtvlib.operators import ProjectionOperator, gradient, gradient_adjoint, laplacian
from mtvlib.reconstruction import (
    BiasField,
    Channel,
    Observation,
    approximate_hessian,
    dct_basis,
    link_groups,
    mean_correct,
    observation_mask,
    update_bias,
    update_channel_image,
    update_hessians,
    update_observation_rigid,
)
from toy import smooth_phantom, stack_affine

DTYPE = torch.float64


def _identity_channel(data, tau=1.0, lam0=1.0, index=0):
    lat = Lattice(data[0].shape if isinstance(data, list) else data.shape, np.eye(4))
    arrays = data if isinstance(data, list) else [data]
    obs = [Observation(Volume.from_array(torch.as_tensor(x, dtype=DTYPE)), tau) for x in arrays]
    return Channel(index, obs, lat, lam0, dtype=DTYPE)


class TestChannel:
    """Tests for Channel and Observation."""

    def test_mask_excludes_zero_and_nan(self):
        x = torch.tensor([0.0, 1.0, float("nan"), float("inf"), -2.0])
        np.testing.assert_array_equal(observation_mask(x).numpy(), [False, True, False, False, True])

    def test_missing_voxels_do_not_contribute(self):
        """Changing y where the data is missing leaves ll1 unchanged."""
        x = np.full((6, 6, 6), 2.0)
        x[0] = 0.0
        x[1, 0, 0] = np.nan
        ch = _identity_channel(x, tau=3.0)
        y = torch.full((6, 6, 6), 2.0, dtype=DTYPE)
        assert ch.log_likelihood(y) == 0.0
        y[0] = 100.0
        y[1, 0, 0] = -50.0
        assert ch.log_likelihood(y) == 0.0
        g = ch.data_gradient(y)
        assert torch.all(g == 0)

    def test_log_likelihood(self):
        x = np.full((4, 4, 4), 1.0)
        ch = _identity_channel(x, tau=2.0)
        y = torch.full((4, 4, 4), 1.5, dtype=DTYPE)
        assert ch.log_likelihood(y) == pytest.approx(-0.5 * 2.0 * 64 * 0.25)

    def test_name_from_first_observation(self):
        vol = Volume.from_array(torch.ones(4, 4, 4), name="t1.nii")
        ch = Channel(3, [Observation(vol)], vol.lattice())
        assert ch.name == "t1.nii"
        ch2 = Channel(3, [Observation(Volume.from_array(torch.ones(4, 4, 4)))], vol.lattice())
        assert ch2.name == "channel03"

    def test_no_observations_raises(self):
        with pytest.raises(ValueError, match="no observations"):
            Channel(0, [], Lattice((4, 4, 4), np.eye(4)))

    def test_paged_state(self, tmp_path):
        """Solver state in paged storage behaves like resident storage."""
        lat = Lattice((5, 5, 5), np.eye(4))
        obs = [Observation(Volume.from_array(torch.ones(lat.shape, dtype=DTYPE)))]
        ch = Channel(0, obs, lat, paged=True, directory=str(tmp_path), dtype=DTYPE)
        assert len(list(tmp_path.glob("*.npy"))) == 4
        ch.set_image(torch.full(lat.shape, 2.0, dtype=DTYPE))
        assert torch.all(ch.image() == 2.0)
        ch.release()
        assert len(list(tmp_path.glob("*.npy"))) == 0


class TestHessian:
    """Tests for approximate_hessian."""

    def test_identity_is_sum_of_precisions(self):
        x = np.ones((5, 5, 5))
        ch = _identity_channel([x, 2 * x], tau=3.0)
        h = approximate_hessian(ch)
        assert torch.allclose(h, torch.full_like(h, 6.0))

    def test_floor_where_unobserved(self):
        x = np.ones((5, 5, 5))
        x[0] = 0.0
        ch = _identity_channel(x, tau=2.0)
        h = approximate_hessian(ch)
        assert torch.allclose(h[1:], torch.full_like(h[1:], 2.0))
        assert torch.all(h[0] > 0)
        assert torch.allclose(h[0], torch.full_like(h[0], 2e-6))

    def test_majorises_projected_curvature(self):
        """x^T K x <= x^T diag(H) x for the projected data term."""
        latent = Lattice((12, 12, 12), np.eye(4))
        observed = Lattice((12, 12, 4), np.diag([1.0, 1.0, 3.0, 1.0]))
        op = ProjectionOperator(latent, observed, q=np.array([0.3, 0, 0, 0, 0, 0.05]), dtype=DTYPE)
        vol = Volume.from_array(torch.ones(observed.shape, dtype=DTYPE), observed.affine)
        ch = Channel(0, [Observation(vol, 2.0, op)], latent, dtype=DTYPE)
        h = approximate_hessian(ch)
        torch.manual_seed(0)
        for _ in range(3):
            v = torch.randn(latent.shape, dtype=DTYPE)
            quad = 2.0 * float(torch.sum(op.forward(v) ** 2))
            assert quad <= float(torch.sum(h * v * v)) * (1 + 1e-10)


class TestImageUpdate:
    """Tests for update_channel_image."""

    def test_identity_single_step_is_exact(self):
        """Without projection one step solves (tau + ρ D^T D) y = tau x + ρ D^T (u - w)."""
        torch.manual_seed(1)
        x = 1.0 + torch.rand(8, 8, 8, dtype=DTYPE)
        ch = _identity_channel(x.numpy(), tau=5.0)
        torch.manual_seed(2)
        ch.u.assign(0.1 * torch.randn(3, 8, 8, 8, dtype=DTYPE))
        ch.w.assign(0.1 * torch.randn(3, 8, 8, 8, dtype=DTYPE))
        update_hessians([ch])

        rho = 2.0
        update_channel_image(ch, rho, num_steps=1)
        y = ch.image()
        target = ch.u.data - ch.w.data
        residual = 5.0 * (y - x) + rho * laplacian(y, ch.lattice) - rho * gradient_adjoint(target, ch.lattice)
        assert torch.linalg.vector_norm(residual) < 1e-9 * torch.linalg.vector_norm(5.0 * x)

    def test_projected_steps_decrease_energy(self):
        """Gauss-Newton steps with the majorising Hessian are monotone."""
        latent = Lattice((12, 12, 12), np.eye(4))
        observed = Lattice((12, 12, 4), stack_affine(2, 3))
        op = ProjectionOperator(latent, observed, dtype=DTYPE)
        truth = torch.as_tensor(smooth_phantom((12, 12, 12)))
        vol = Volume.from_array(op.forward(truth), observed.affine)
        ch = Channel(0, [Observation(vol, 10.0, op)], latent, dtype=DTYPE)
        update_hessians([ch])

        rho = 1.0

        def energy():
            g = gradient(ch.image(), latent)
            return -ch.log_likelihood() + 0.5 * rho * float(torch.sum(g**2))

        energies = [energy()]
        for _ in range(4):
            update_channel_image(ch, rho, num_steps=1)
            energies.append(energy())
        assert all(b <= a * (1 + 1e-10) for a, b in zip(energies, energies[1:]))
        assert energies[-1] < energies[0]


class TestRigidUpdate:
    """Tests for Gauss-Newton rigid refinement."""

    def test_recovers_translation(self):
        latent = Lattice((20, 20, 20), np.eye(4))
        y = torch.as_tensor(smooth_phantom((20, 20, 20), sigma=3.0))
        q_true = np.array([0.6, -0.4, 0.3, 0.0, 0.0, 0.0])
        sim = ProjectionOperator(latent, latent, q=q_true, dtype=DTYPE)
        vol = Volume.from_array(sim.forward(y))

        op = ProjectionOperator(latent, latent, dtype=DTYPE)
        obs = Observation(vol, 1.0, op)
        start = update_observation_rigid(obs, y, ndim=3, num_steps=0)
        end = update_observation_rigid(obs, y, ndim=3, num_steps=10)
        assert end < start
        np.testing.assert_allclose(op.q, q_true, atol=0.05)

    def test_2d_only_in_plane(self):
        """Single-slice data leaves tz, rx and ry untouched."""
        latent = Lattice((24, 24, 1), np.eye(4))
        y = torch.as_tensor(smooth_phantom((24, 24, 1), sigma=3.0))
        sim = ProjectionOperator(latent, latent, q=np.array([0.5, 0.3, 0, 0, 0, 0.02]), dtype=DTYPE)
        op = ProjectionOperator(latent, latent, dtype=DTYPE)
        obs = Observation(Volume.from_array(sim.forward(y)), 1.0, op)
        update_observation_rigid(obs, y, ndim=2, num_steps=5)
        assert np.all(op.q[[2, 3, 4]] == 0)
        assert np.any(op.q[[0, 1, 5]] != 0)

    def test_mean_correction(self):
        lat = Lattice((6, 6, 6), np.eye(4))

        def make_channel(index, qs):
            obs = []
            for q in qs:
                op = ProjectionOperator(lat, lat, q=np.asarray(q, dtype=float), dtype=DTYPE)
                obs.append(Observation(Volume.from_array(torch.ones(lat.shape)), 1.0, op))
            return Channel(index, obs, lat, dtype=DTYPE)

        qa = [[1.0, 0, 0, 0, 0, 0], [3.0, 0, 0, 0, 0, 0]]
        qb = [[0, 2.0, 0, 0, 0, 0]]

        chans = [make_channel(0, qa), make_channel(1, qb)]
        mean_correct(chans, "channel")
        np.testing.assert_allclose([o.q[0] for o in chans[0].observations], [-1.0, 1.0])
        # Single-observation channel is left alone
        np.testing.assert_allclose(chans[1].observations[0].q[1], 2.0)

        chans = [make_channel(0, qa), make_channel(1, qb)]
        mean_correct(chans, "global")
        total = np.sum([o.q for ch in chans for o in ch.observations], axis=0)
        np.testing.assert_allclose(total, np.zeros(6), atol=1e-12)

        chans = [make_channel(0, qa), make_channel(1, qb)]
        mean_correct(chans, "none")
        np.testing.assert_allclose(chans[0].observations[1].q[0], 3.0)


class TestBias:
    """Tests for bias-field estimation."""

    def test_dct_basis_orthonormal(self):
        b = dct_basis(10, 4)
        np.testing.assert_allclose((b @ b.T).numpy(), np.eye(4), atol=1e-12)
        assert dct_basis(2, 5).shape == (2, 2)

    def test_zero_coefficients_give_unit_field(self):
        field = BiasField(Lattice((6, 6, 6), np.eye(4)), dtype=DTYPE)
        assert torch.allclose(field.field(), torch.ones(6, 6, 6, dtype=DTYPE))
        assert field.log_prior() == 0.0

    def test_dc_component_frozen(self):
        field = BiasField(Lattice((6, 6, 6), np.eye(4)), dtype=DTYPE)
        field.set_coefficients(torch.ones(3, 3, 3, dtype=torch.float64))
        assert float(field.coefficients[0, 0, 0]) == 0.0
        assert field.log_prior() < 0.0

    def test_curvature_matches_projection(self):
        """curvature(s) @ β equals project(s ⊙ log_field) for the same β."""
        field = BiasField(Lattice((7, 6, 5), np.eye(4)), num_basis=(3, 2, 2), dtype=DTYPE)
        torch.manual_seed(3)
        beta = torch.randn(3, 2, 2, dtype=torch.float64)
        beta[0, 0, 0] = 0.0
        field.set_coefficients(beta)
        s = torch.rand(7, 6, 5, dtype=DTYPE)
        lhs = field.curvature(s) @ beta.reshape(-1)
        rhs = field.project(s * field.log_field()).reshape(-1)
        assert torch.allclose(lhs, rhs, atol=1e-10)

    def test_recovers_field(self):
        """Identity observations of a biased image recover the coefficients."""
        lat = Lattice((12, 12, 12), np.eye(4))
        y = torch.as_tensor(smooth_phantom((12, 12, 12)))
        truth = BiasField(lat, reg=0.0, dtype=DTYPE)
        beta = torch.zeros(3, 3, 3, dtype=torch.float64)
        beta[1, 0, 0] = 1.0
        beta[0, 1, 0] = -0.6
        beta[0, 0, 2] = 0.4
        truth.set_coefficients(beta)

        ch = _identity_channel((truth.field() * y).numpy(), tau=1e4)
        ch.set_image(y)
        ch.bias = BiasField(lat, reg=1e-8, dtype=DTYPE)
        ll3 = update_bias([ch], num_steps=10)
        assert torch.allclose(ch.bias.coefficients, beta, atol=1e-3)
        assert ll3 == pytest.approx(ch.bias.log_prior())
        assert ch.log_likelihood() > -1e-3

    def test_link_groups(self):
        assert link_groups(3, None) == [[0], [1], [2]]
        assert link_groups(3, [[2, 0]]) == [[0, 2], [1]]
        with pytest.raises(ValueError, match="refers to channel"):
            link_groups(2, [[0, 2]])
        with pytest.raises(ValueError, match="more than one"):
            link_groups(3, [[0, 1], [1, 2]])
