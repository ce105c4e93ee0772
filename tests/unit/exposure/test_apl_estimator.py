"""Unit tests for the Monte Carlo APL estimator."""

from __future__ import annotations

import numpy as np
import pytest

from autoexposure.exposure.apl import (
    APLEstimator,
    SeededAPLEstimator,
    build_estimator,
    effective_samples,
    estimate_apl,
    luma,
)
from tests.infrastructure.mocks.exposure_mocks import uniform_rgba


class CountingGenerator:
    """Wraps a numpy Generator and records requested sample sizes."""

    def __init__(self, seed: int = 0) -> None:
        self._rng = np.random.default_rng(seed)
        self.sizes = []

    def integers(self, low, high, size):
        self.sizes.append(size)
        return self._rng.integers(low, high, size=size)


class TestUniformImages:
    """Sampling noise vanishes on constant images."""

    @pytest.mark.parametrize("rgb", [(0, 0, 0), (255, 255, 255), (128, 128, 128), (10, 200, 33), (255, 0, 0)])
    @pytest.mark.parametrize("num_samples", [1, 7, 1000, 50_000])
    def test_uniform_image_returns_its_luma(self, rgb, num_samples):
        frame = uniform_rgba(64, 48, rgb)
        estimator = APLEstimator(num_samples)

        assert estimator.estimate(frame, 64, 48) == luma(*rgb)

    def test_gray_luma_matches_channel_value(self):
        assert estimate_apl(uniform_rgba(10, 10, (100, 100, 100)), 10, 10) == pytest.approx(100.0)

    def test_alpha_channel_ignored(self):
        frame = uniform_rgba(8, 8, (50, 60, 70))
        frame[..., 3] = 0

        assert estimate_apl(frame, 8, 8) == luma(50, 60, 70)


class TestSampleCount:
    """Effective sample count is capped at the pixel count."""

    def test_effective_samples_caps_at_area(self):
        assert effective_samples(10, 10, 1000) == 100
        assert effective_samples(200, 200, 1000) == 1000
        assert effective_samples(0, 10, 1000) == 0
        assert effective_samples(-3, 10, 1000) == 0

    def test_estimator_never_draws_more_than_area(self):
        rng = CountingGenerator()
        estimator = APLEstimator(1000, rng=rng)

        estimator.estimate(uniform_rgba(5, 4), 5, 4)
        estimator.estimate(uniform_rgba(100, 100), 100, 100)

        assert rng.sizes == [20, 1000]

    def test_per_call_override(self):
        rng = CountingGenerator()
        estimator = APLEstimator(1000, rng=rng)

        estimator.estimate(uniform_rgba(100, 100), 100, 100, num_samples=5000)

        assert rng.sizes == [5000]

    def test_zero_area_returns_zero(self):
        assert APLEstimator().estimate(b"", 0, 0) == 0.0
        assert APLEstimator().estimate(np.zeros((0, 0, 4), dtype=np.uint8), 0, 5) == 0.0

    def test_zero_samples_returns_zero(self):
        assert APLEstimator(0).estimate(uniform_rgba(4, 4, (200, 200, 200)), 4, 4) == 0.0


class TestBuffers:
    """Accepted pixel buffer layouts."""

    def test_bytes_buffer(self):
        frame = uniform_rgba(6, 6, (30, 40, 50))

        assert estimate_apl(frame.tobytes(), 6, 6) == luma(30, 40, 50)

    def test_flat_array(self):
        frame = uniform_rgba(6, 6, (30, 40, 50))

        assert estimate_apl(frame.reshape(-1), 6, 6) == luma(30, 40, 50)

    def test_short_buffer_rejected(self):
        with pytest.raises(ValueError):
            estimate_apl(bytes(10), 4, 4)

    def test_negative_sample_count_rejected(self):
        with pytest.raises(ValueError):
            APLEstimator(-1)


class TestAccuracyAndDeterminism:
    """Stochastic behaviour on non-uniform images."""

    def test_half_black_half_white_is_close_to_mean(self):
        frame = uniform_rgba(200, 200, (0, 0, 0))
        frame[:, 100:, :3] = 255

        apl = estimate_apl(frame, 200, 200, 1000, seed=1)

        assert apl == pytest.approx(127.5, abs=127.5 * 0.15)

    def test_seeded_estimator_is_reproducible(self):
        rng = np.random.default_rng(42)
        frame = np.concatenate(
            [rng.integers(0, 256, size=(120, 160, 3), dtype=np.uint8), np.full((120, 160, 1), 255, np.uint8)],
            axis=2,
        )

        first = SeededAPLEstimator(500, seed=7)
        second = SeededAPLEstimator(500, seed=7)

        assert first.deterministic
        assert [first.estimate(frame, 160, 120) for _ in range(3)] == [
            second.estimate(frame, 160, 120) for _ in range(3)
        ]

    def test_explicit_generator_is_deterministic(self):
        frame = uniform_rgba(32, 32, (90, 90, 90))
        frame[:16, :, :3] = 200

        first = APLEstimator(200, rng=np.random.default_rng(11))
        second = APLEstimator(200, rng=np.random.default_rng(11))

        assert first.deterministic
        assert first.estimate(frame, 32, 32) == second.estimate(frame, 32, 32)
        assert APLEstimator(200, seed=4).deterministic

    def test_build_estimator_respects_seed(self):
        assert isinstance(build_estimator(100, seed=3), SeededAPLEstimator)
        assert not build_estimator(100).deterministic
