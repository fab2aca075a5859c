"""Tests for MTVConfig validation and input checks."""

import math

import numpy as np
import pytest
import torch

from mtvlib.core import Volume
from mtvlib.operators import SliceProfile
from mtvlib.reconstruction import (
    MTVConfig,
    ObjectiveTrace,
    get_gain,
    reconstruction_lattice,
    validate_inputs,
)


def _vol(shape=(8, 8, 8), value=1.0):
    return Volume.from_array(torch.full(shape, value))


class TestMTVConfig:
    """Tests for option validation."""

    def test_defaults(self):
        config = MTVConfig()
        assert config.method == "denoise"
        assert not config.use_projection
        assert not config.use_decreasing_reg
        assert config.prefix == "den"
        assert config.reg_schedule[-1] == 1.0

    def test_superres_defaults(self):
        config = MTVConfig(method="superres")
        assert config.use_projection
        assert config.use_decreasing_reg
        assert config.prefix == "sr"

    def test_rigid_denoising_uses_projection(self):
        config = MTVConfig(estimate_rigid=True)
        assert config.use_projection
        assert config.use_decreasing_reg

    def test_decreasing_reg_override(self):
        assert not MTVConfig(method="superres", decreasing_reg=False).use_decreasing_reg

    def test_workers_none_means_one_per_cpu(self):
        assert MTVConfig(workers=None).workers is None

    def test_scalar_and_inferred_voxel_size(self):
        MTVConfig(voxel_size=0.8)
        MTVConfig(voxel_size=None)

    def test_observation_profiles_lookup(self):
        """Per-observation profiles take precedence over the shared options."""
        thick = SliceProfile(through_plane="gaussian", gap=-10.0)
        config = MTVConfig(slice_gap=5.0, observation_profiles=((SliceProfile(), thick),))
        assert config.slice_profile(0, 1) is thick
        assert config.slice_profile(0, 0) == SliceProfile()
        assert config.slice_profile().gap == 5.0

    @pytest.mark.parametrize(
        "kwargs, match",
        [
            ({"method": "deblur"}, "method"),
            ({"modality": "PET"}, "modality"),
            ({"max_iter": 0}, "max_iter"),
            ({"tolerance": -1.0}, "tolerance"),
            ({"reg_schedule": (4.0, 2.0)}, "last reg_schedule"),
            ({"reg_schedule": ()}, "reg_schedule"),
            ({"voxel_size": (1.0, 0.0, 1.0)}, "voxel_size"),
            ({"voxel_size": (1.0, 2.0)}, "voxel_size"),
            ({"voxel_size": -1.0}, "voxel_size"),
            ({"observation_profiles": (("rect",),)}, "observation_profiles"),
            ({"profile_in_plane": "sinc"}, "profile_in_plane"),
            ({"slice_gap_unit": "cm"}, "gap_unit"),
            ({"mean_correct_rigid": "median"}, "mean_correct_rigid"),
            ({"bound": "mirror"}, "bound"),
            ({"interp_bound": "mirror"}, "interp_bound"),
            ({"bias_basis": (3, 3)}, "bias_basis"),
            ({"reg_weight": (1.0, -1.0)}, "reg_weight"),
            ({"noise_precision": (0.0,)}, "noise_precision"),
            ({"workers": -1}, "workers"),
        ],
    )
    def test_invalid_options(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            MTVConfig(**kwargs)


class TestValidateInputs:
    """Tests for data/option consistency checks."""

    def test_reference_with_projection_raises(self):
        config = MTVConfig(method="superres")
        with pytest.raises(ValueError, match="reference image"):
            validate_inputs([[_vol()]], config, reference=[_vol()])

    def test_reference_with_rigid_raises(self):
        config = MTVConfig(estimate_rigid=True)
        with pytest.raises(ValueError, match="reference image"):
            validate_inputs([[_vol()]], config, reference=[_vol()])

    def test_reference_count_raises(self):
        with pytest.raises(ValueError, match="reference volumes"):
            validate_inputs([[_vol()], [_vol()]], MTVConfig(), reference=[_vol()])

    def test_reference_shape_raises(self):
        with pytest.raises(ValueError, match="Reference shape"):
            validate_inputs([[_vol()]], MTVConfig(), reference=[_vol((8, 8, 6))])

    def test_bias_on_2d_raises(self):
        config = MTVConfig(estimate_bias=True)
        with pytest.raises(ValueError, match="requires 3D"):
            validate_inputs([[_vol((8, 8, 1))]], config)

    def test_denoise_grid_mismatch_raises(self):
        with pytest.raises(ValueError, match="one grid"):
            validate_inputs([[_vol()], [_vol((8, 8, 4))]], MTVConfig())

    def test_superres_accepts_mixed_grids(self):
        validate_inputs([[_vol()], [_vol((8, 8, 4))]], MTVConfig(method="superres"))

    def test_override_length_raises(self):
        config = MTVConfig(reg_weight=(1.0,))
        with pytest.raises(ValueError, match="reg_weight"):
            validate_inputs([[_vol()], [_vol()]], config)

    def test_rigid_channels_raises(self):
        config = MTVConfig(estimate_rigid=True, rigid_channels=(0, 2))
        with pytest.raises(ValueError, match="rigid_channels"):
            validate_inputs([[_vol()], [_vol()]], config)

    def test_bias_links_raises(self):
        config = MTVConfig(estimate_bias=True, bias_links=((0, 1), (1,)))
        with pytest.raises(ValueError, match="more than one"):
            validate_inputs([[_vol()], [_vol()]], config)

    def test_empty_raises(self):
        with pytest.raises(ValueError, match="At least one channel"):
            validate_inputs([], MTVConfig())
        with pytest.raises(ValueError, match="no observations"):
            validate_inputs([[]], MTVConfig())


class TestGain:
    """Tests for get_gain and ObjectiveTrace."""

    def test_gain(self):
        assert math.isinf(get_gain([]))
        assert math.isinf(get_gain([-5.0]))
        assert get_gain([-10.0, -8.0]) == pytest.approx(0.25)

    def test_trace_gain_by_kind(self):
        trace = ObjectiveTrace()
        trace.append(-10.0, "init")
        trace.append(-9.0, "image")
        trace.append(-4.0, "bias")
        trace.append(-8.0, "image")
        assert len(trace) == 4
        assert trace.gain("image") == pytest.approx(1.0 / 8.0)
        assert trace.gain() == pytest.approx(0.5)
        assert math.isinf(trace.gain("rigid"))
        np.testing.assert_allclose(trace.values, [-10.0, -9.0, -4.0, -8.0])


class TestReconstructionLattice:
    """Tests for voxel-size handling of the super-resolution lattice."""

    def _channels(self):
        thick = Volume.from_array(torch.ones(10, 10, 4), np.diag([0.8, 0.8, 3.0, 1.0]))
        iso = Volume.from_array(torch.ones(8, 8, 8), np.eye(4))
        return [[thick], [iso]]

    def test_inferred_voxel_size_is_smallest_input(self):
        lat = reconstruction_lattice(self._channels(), MTVConfig(method="superres", voxel_size=None))
        np.testing.assert_allclose(lat.voxel_size, [0.8, 0.8, 0.8])

    def test_scalar_voxel_size_is_isotropic(self):
        lat = reconstruction_lattice(self._channels(), MTVConfig(method="superres", voxel_size=2.0))
        np.testing.assert_allclose(lat.voxel_size, [2.0, 2.0, 2.0])

    def test_denoising_keeps_first_grid(self):
        channels = [[_vol()]]
        lat = reconstruction_lattice(channels, MTVConfig(voxel_size=None))
        assert lat.shape == (8, 8, 8)

    def test_observation_profiles_shape_raises(self):
        config = MTVConfig(
            method="superres", observation_profiles=((SliceProfile(),), (SliceProfile(),))
        )
        with pytest.raises(ValueError, match="observation_profiles"):
            validate_inputs([[_vol(), _vol()], [_vol()]], config)
