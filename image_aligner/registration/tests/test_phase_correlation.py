"""Tests for phase correlation translation estimation."""
import numpy as np
import pytest

from ...errors import UserAbort
from ...parameters import PhaseCorrelationSettings
from ...testutil import shifted_crops, textured_field
from .._phase_correlation import (
    PhaseCorrelationEstimator,
    blackman_window,
    estimate_translation,
    locate_peak,
    next_power_of_two,
    phase_correlation_surface,
    prepare_frame,
    working_size,
)

FRAME_SIZE = (200, 160)


@pytest.fixture
def field():
    return textured_field(512, 512, sigma=1.0, seed=3)


def _estimate_all(frames, subpixel=True, refinement="parabolic"):
    estimator = PhaseCorrelationEstimator(
        subpixel, PhaseCorrelationSettings(subpixel_refinement=refinement)
    )
    return estimator.estimate_sequence(
        lambda i: frames[i], [(f.shape[1], f.shape[0]) for f in frames]
    )


def test_next_power_of_two():
    assert next_power_of_two(1) == 2
    assert next_power_of_two(200) == 256
    # Strictly greater, even for powers of two
    assert next_power_of_two(256) == 512


def test_working_size():
    assert working_size([(200, 160), (120, 300)]) == (256, 512)


def test_blackman_window():
    window = blackman_window(64, 32)
    assert window.shape == (32, 64)
    assert window.dtype == np.float32
    # Largest in the center, zero in the corners
    assert window[16, 32] == pytest.approx(window.max())
    assert window[0, 0] == 0.0
    assert window[-1, -1] == 0.0
    np.testing.assert_allclose(window, window[::-1, ::-1])


def test_prepare_frame_centers_frame():
    frame = np.ones((10, 20), dtype=np.uint8)
    padded = prepare_frame(frame, (32, 16))
    assert padded.shape == (16, 32)
    assert padded.sum() == 200
    assert padded[3:13, 6:26].all()


def test_prepare_frame_rejects_non_finite():
    frame = np.ones((10, 20), dtype=np.float32)
    frame[2, 3] = np.nan
    with pytest.raises(ValueError, match="non-finite"):
        prepare_frame(frame, (32, 16))


@pytest.mark.parametrize("refinement", ["parabolic", "foroosh"])
def test_flat_surface_still_gives_an_estimate(refinement):
    flat = np.zeros((8, 8))
    assert locate_peak(flat, subpixel=True, refinement=refinement) == (0.0, 0.0)

    blank = np.zeros((40, 50), dtype=np.uint16)
    settings = PhaseCorrelationSettings(subpixel_refinement=refinement)
    assert estimate_translation(blank, blank, True, settings) == (0.0, 0.0)


def test_surface_peak_at_displacement(field):
    reference = field[:64, :64]
    moving = np.roll(reference, shift=(3, -5), axis=(0, 1))
    surface = phase_correlation_surface(reference, moving)
    assert locate_peak(surface, subpixel=False) == (-5.0, 3.0)


def test_surface_rejects_mismatched_shapes():
    with pytest.raises(ValueError):
        phase_correlation_surface(np.zeros((4, 4)), np.zeros((4, 5)))


def test_locate_peak_wraparound():
    surface = np.zeros((16, 16))
    surface[15, 2] = 1.0
    assert locate_peak(surface, subpixel=False) == (2.0, -1.0)


@pytest.mark.parametrize("refinement", ["parabolic", "foroosh"])
def test_locate_peak_subpixel(refinement):
    surface = np.zeros((16, 16))
    surface[4, 6] = 1.0
    surface[4, 7] = 0.5
    surface[4, 5] = 0.1
    tx, ty = locate_peak(surface, subpixel=True, refinement=refinement)
    assert 6.0 < tx < 6.5
    assert ty == pytest.approx(4.0)


def test_locate_peak_unknown_refinement():
    surface = np.zeros((8, 8))
    surface[1, 1] = 1.0
    with pytest.raises(ValueError):
        locate_peak(surface, subpixel=True, refinement="centroid")


def test_identical_frames(field):
    frame = field[:160, :200]
    for subpixel in (True, False):
        translations = _estimate_all([frame, frame.copy()], subpixel=subpixel)
        assert len(translations) == 2
        assert translations[0] == (0.0, 0.0)
        np.testing.assert_allclose(translations[1], (0.0, 0.0), atol=1e-6)


@pytest.mark.parametrize("refinement", ["parabolic", "foroosh"])
def test_known_shifts_subpixel(field, refinement):
    frames = shifted_crops(field, FRAME_SIZE, [(0, 0), (2, 0), (2, 3)])
    translations = _estimate_all(frames, subpixel=True, refinement=refinement)
    np.testing.assert_allclose(translations, [(0, 0), (2, 0), (2, 3)], atol=0.1)


def test_known_shifts_whole_pixels(field):
    frames = shifted_crops(field, FRAME_SIZE, [(0, 0), (2, 0), (2, 3)])
    translations = _estimate_all(frames, subpixel=False)
    assert translations == [(0.0, 0.0), (2.0, 0.0), (2.0, 3.0)]


def test_negative_shifts(field):
    frames = shifted_crops(field, FRAME_SIZE, [(0, 0), (-4, 7)])
    translations = _estimate_all(frames, subpixel=False)
    assert translations[1] == (-4.0, 7.0)


def test_sequence_is_consistent_with_pairwise_estimates(field):
    frames = shifted_crops(field, FRAME_SIZE, [(0, 0), (1, 2), (4, 1), (3, -2)])
    translations = _estimate_all(frames)
    for i in range(len(frames) - 1):
        pairwise = estimate_translation(frames[i], frames[i + 1])
        np.testing.assert_allclose(
            np.subtract(translations[i + 1], translations[i]), pairwise, atol=1e-9
        )


def test_deterministic(field):
    frames = shifted_crops(field, FRAME_SIZE, [(0, 0), (3, 1), (1, 1)])
    assert _estimate_all(frames) == _estimate_all(frames)


def test_callbacks_in_input_order(field):
    frames = shifted_crops(field, FRAME_SIZE, [(0, 0), (1, 0), (2, 0)])
    reported = []
    checkpoints = []
    estimator = PhaseCorrelationEstimator(subpixel=False)
    translations = estimator.estimate_sequence(
        lambda i: frames[i],
        [FRAME_SIZE] * 3,
        on_translation=lambda i, t: reported.append((i, t)),
        checkpoint=lambda: checkpoints.append(None),
    )
    assert [i for i, _ in reported] == [0, 1, 2]
    assert [t for _, t in reported] == translations
    assert len(checkpoints) >= 3


def test_cancellation(field):
    frames = shifted_crops(field, FRAME_SIZE, [(0, 0), (1, 0)])

    def checkpoint():
        raise UserAbort()

    with pytest.raises(UserAbort):
        PhaseCorrelationEstimator(subpixel=True).estimate_sequence(
            lambda i: frames[i], [FRAME_SIZE] * 2, checkpoint=checkpoint
        )


def test_empty_sequence():
    assert PhaseCorrelationEstimator(subpixel=True).estimate_sequence(lambda i: None, []) == []
