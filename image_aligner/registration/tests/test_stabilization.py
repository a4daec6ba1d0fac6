"""Tests for sequence-wide limb stabilization."""
import numpy as np
import pytest

from ...errors import ConvergenceError, DetectionError, UserAbort
from ...geometry import Rect, plan_canvas
from ...parameters import CropMode, StabilizationSettings
from ...testutil import circle_points, jittered_disc_frames, textured_disc_frames
from .._limb_detection import DiscEstimate, LimbDetection, detect_limb, fit_circle
from .._stabilization import (
    area_quality,
    choose_radius,
    find_feature,
    smooth_track,
    stabilize,
    track_feature,
)


def _detection(center, radius, noise=0.2, seed=0, n=64):
    points = circle_points(center, radius, n=n, noise=noise, seed=seed)
    fit = fit_circle(points, initial_center=center)
    return LimbDetection(
        estimate=DiscEstimate(centroid=fit.center, radius=fit.radius, image_size=(400, 400)),
        limb_points=points,
        residual=fit.residual,
    )


def test_choose_radius():
    detections = [_detection((100.0, 100.0), r, noise=0.0) for r in (50.0, 52.0, 54.0)]
    assert choose_radius(detections, 1.5) == pytest.approx(52.0)


def test_inconsistent_radii_rejected():
    detections = [_detection((100.0, 100.0), 40.0), _detection((100.0, 100.0), 70.0)]
    with pytest.raises(DetectionError, match="valid disc radius"):
        stabilize(detections)


def test_translations_follow_disc_centers():
    centers = [(200.0, 200.0), (203.0, 198.5), (197.2, 201.0)]
    detections = [_detection(c, 80.0, seed=i) for i, c in enumerate(centers)]
    result = stabilize(detections)
    assert result.translations[0] == (0.0, 0.0)
    expected = np.subtract(centers, centers[0])
    np.testing.assert_allclose(result.translations, expected, atol=0.1)
    assert result.radius == pytest.approx(80.0, abs=0.1)
    assert result.iterations < StabilizationSettings().max_iterations


def test_progress_and_radius_reporting():
    detections = [_detection((150.0, 150.0 + i), 60.0, seed=i) for i in range(4)]
    chosen = []
    progress = []
    result = stabilize(
        detections,
        on_radius_chosen=chosen.append,
        on_progress=progress.append,
    )
    assert len(chosen) == 1
    assert chosen[0] == pytest.approx(60.0, abs=0.2)
    assert progress[-1] == 1.0
    assert progress[:-1] == [
        (k + 1) / StabilizationSettings().max_iterations for k in range(result.iterations)
    ]
    assert progress == sorted(progress)


def test_convergence_failure():
    detections = [_detection((150.0, 150.0), 60.0, seed=1), _detection((152.0, 149.0), 61.0, seed=2)]
    progress = []
    with pytest.raises(ConvergenceError):
        stabilize(
            detections,
            StabilizationSettings(max_iterations=1, tolerance=1e-12),
            on_progress=progress.append,
        )
    assert progress == [1.0 / 1]


def test_cancellation():
    detections = [_detection((150.0, 150.0), 60.0)]

    def checkpoint():
        raise UserAbort()

    with pytest.raises(UserAbort):
        stabilize(detections, checkpoint=checkpoint)


def test_single_frame():
    result = stabilize([_detection((120.0, 110.0), 45.0)])
    assert result.translations == [(0.0, 0.0)]


def test_jittered_disc_sequence():
    radius = 60.0
    jitter = [(0.0, 0.0), (2.0, -1.5), (-2.5, 1.0), (1.2, 2.8), (-0.7, -2.2)]
    frames = jittered_disc_frames(jitter, radius=radius)
    detections = [detect_limb(frame) for frame in frames]
    for detection in detections:
        assert detection.estimate.radius == pytest.approx(radius, abs=1.0)

    result = stabilize(detections)
    max_jitter = max(np.hypot(*j) for j in jitter)
    for (tx, ty), (jx, jy) in zip(result.translations, jitter):
        assert np.hypot(tx, ty) <= max_jitter + 1.0
        assert tx == pytest.approx(jx, abs=0.5)
        assert ty == pytest.approx(jy, abs=0.5)


def test_area_quality():
    assert area_quality(np.zeros((16, 16))) == 0.0
    ramp = np.tile(np.arange(16.0), (16, 1))
    # 10x10 pixels remain inside the border; 10 rows of 9 unit steps.
    assert area_quality(ramp) == pytest.approx(90.0)


def test_find_feature_picks_textured_area():
    rng = np.random.default_rng(0)
    image = rng.random((256, 256)) * 0.1
    image[128:, :128] = rng.random((128, 128)) * 10.0
    canvas = Rect(0, 0, 256, 256)
    cx, cy = find_feature(image, (0.0, 0.0), canvas, 64)
    assert 0 <= cx - 32 and cx + 32 <= 128
    assert 128 <= cy - 32 and cy + 32 <= 256

    assert find_feature(np.full((256, 256), 7.0), (0.0, 0.0), canvas, 64) is None


def test_smooth_track_holds_stationary_feature():
    track = np.array([(50.0, 60.0), (50.4, 59.7), (49.8, 60.2), (50.1, 60.5)])
    corrections = smooth_track(track)
    np.testing.assert_allclose(track + corrections, np.tile(track.mean(axis=0), (4, 1)))


def test_smooth_track_projects_onto_arc():
    angles = np.linspace(0.0, 0.5, 6)
    radial = 100.0 + np.array([0.0, 1.5, -1.5, 1.5, -1.5, 0.0])
    track = np.column_stack([radial * np.cos(angles), radial * np.sin(angles)])
    smoothed = track + smooth_track(track)
    assert fit_circle(smoothed).residual < 1e-4
    assert fit_circle(track).residual > 0.5


def test_smooth_track_never_moves_backwards():
    angles = np.array([0.0, 0.1, 0.2, 0.15, 0.3, 0.4])
    track = 100.0 * np.column_stack([np.cos(angles), np.sin(angles)])
    smoothed = track + smooth_track(track)
    np.testing.assert_allclose(smoothed[3], smoothed[2], atol=1e-9)
    np.testing.assert_allclose(smoothed[4], track[4], atol=1e-4)


def _common_area(frames, translations):
    sizes = [(f.shape[1], f.shape[0]) for f in frames]
    return plan_canvas(sizes, translations, CropMode.crop_to_intersection)


def test_track_feature_removes_residual_jitter():
    jitter = [(0.0, 0.0), (3.0, -2.0), (-2.0, 1.0), (1.0, 2.0)]
    errors = [(0.0, 0.0), (0.4, -0.3), (-0.35, 0.25), (0.3, 0.4)]
    frames = textured_disc_frames(jitter, seed=4)
    noisy = [(jx + ex, jy + ey) for (jx, jy), (ex, ey) in zip(jitter, errors)]

    progress = []
    corrected = track_feature(
        lambda i: frames[i].astype(np.float32),
        noisy,
        _common_area(frames, noisy),
        StabilizationSettings(track_features=True),
        on_progress=progress.append,
    )
    assert corrected[0] == (0.0, 0.0)
    np.testing.assert_allclose(corrected, jitter, atol=0.2)
    assert progress[-1] == 1.0
    assert progress == sorted(progress)
    assert len(progress) == len(frames)


def test_track_feature_after_limb_fit():
    jitter = [(0.0, 0.0), (2.0, -1.0), (-1.0, 2.0)]
    frames = textured_disc_frames(jitter, seed=9)
    result = stabilize([detect_limb(frame) for frame in frames])
    corrected = track_feature(
        lambda i: frames[i].astype(np.float32),
        result.translations,
        _common_area(frames, result.translations),
    )
    np.testing.assert_allclose(corrected, jitter, atol=0.5)


def test_track_feature_small_common_area():
    def load_frame(i):
        raise AssertionError("no frame should be loaded")

    translations = [(0.0, 0.0), (1.5, 0.5)]
    assert track_feature(load_frame, translations, Rect(0, 0, 100, 300)) == translations


def test_track_feature_without_contrast():
    flat = np.zeros((256, 256))
    with pytest.raises(ConvergenceError, match="contrast"):
        track_feature(lambda i: flat, [(0.0, 0.0), (0.0, 0.0)], Rect(0, 0, 256, 256))


def test_track_feature_cancellation():
    frames = textured_disc_frames([(0.0, 0.0), (1.0, 1.0)])
    calls = []

    def checkpoint():
        calls.append(1)
        if len(calls) == 2:
            raise UserAbort()

    with pytest.raises(UserAbort):
        track_feature(
            lambda i: frames[i],
            [(0.0, 0.0), (1.0, 1.0)],
            Rect(0, 0, 255, 255),
            checkpoint=checkpoint,
        )
