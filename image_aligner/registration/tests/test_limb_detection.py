"""Tests for disc limb detection and circle fitting."""
import numpy as np
import pytest

from ...errors import DetectionError, UserAbort
from ...parameters import LimbDetectionSettings
from ...testutil import circle_points, disc_image
from .._limb_detection import (
    DiscEstimate,
    detect_limb,
    detect_limbs,
    find_disc_threshold,
    find_limb_crossing,
    fit_circle,
    ray_coordinates,
)


def test_fit_circle_free_radius():
    points = circle_points((40.0, 30.0), 12.0, n=32)
    fit = fit_circle(points)
    assert fit.center == pytest.approx((40.0, 30.0), abs=1e-6)
    assert fit.radius == pytest.approx(12.0, abs=1e-6)
    assert fit.residual < 1e-6


def test_fit_circle_partial_arc_with_initial_center():
    angles = np.linspace(0.0, np.pi / 2, 20)
    points = np.column_stack([100 + 50 * np.cos(angles), 80 + 50 * np.sin(angles)])
    fit = fit_circle(points, initial_center=(95.0, 85.0))
    assert fit.center == pytest.approx((100.0, 80.0), abs=1e-4)
    assert fit.radius == pytest.approx(50.0, abs=1e-4)


def test_fit_circle_forced_radius():
    points = circle_points((10.0, -5.0), 20.0, n=40, noise=0.3, seed=2)
    fit = fit_circle(points, initial_center=(12.0, -4.0), radius=25.0)
    assert fit.radius == 25.0
    # Symmetric points: the center does not depend on the forced radius
    assert fit.center == pytest.approx((10.0, -5.0), abs=0.2)
    assert fit.residual == pytest.approx(5.0, abs=0.5)


def test_fit_circle_too_few_points():
    with pytest.raises(DetectionError):
        fit_circle(np.array([[0.0, 0.0], [1.0, 1.0]]))


def test_disc_estimate_validation():
    DiscEstimate(centroid=(5.0, 5.0), radius=3.0, image_size=(10, 10))
    with pytest.raises(DetectionError):
        DiscEstimate(centroid=(5.0, 5.0), radius=0.0, image_size=(10, 10))
    with pytest.raises(DetectionError):
        DiscEstimate(centroid=(10.5, 5.0), radius=3.0, image_size=(10, 10))


def test_find_disc_threshold():
    image = disc_image((100, 100), (50.0, 50.0), 25.0, noise=0.0)
    threshold, avg_disc, avg_background = find_disc_threshold(image)
    assert 20 <= threshold < 200
    assert avg_disc == pytest.approx(200.0, abs=10.0)
    assert avg_background == pytest.approx(20.0, abs=2.0)


def test_find_disc_threshold_flat_image():
    with pytest.raises(DetectionError):
        find_disc_threshold(np.full((10, 10), 7, dtype=np.uint8))


def test_ray_coordinates_reach_border():
    xs, ys = ray_coordinates((10.0, 20.0), 0.0, (40, 30))
    np.testing.assert_array_equal(xs, np.arange(10, 30))
    assert (ys == 20).all()
    xs, ys = ray_coordinates((10.0, 20.0), np.pi / 2, (40, 30))
    np.testing.assert_array_equal(ys, np.arange(20, 40))
    xs, ys = ray_coordinates((10.0, 10.0), np.pi / 4, (40, 30))
    np.testing.assert_array_equal(xs - 10, ys - 10)
    assert xs[-1] == 29


def test_find_limb_crossing_step():
    values = np.array([200] * 60 + [20] * 40)
    index, steepness = find_limb_crossing(values, 110, LimbDetectionSettings())
    assert index == 60
    assert steepness == pytest.approx(5 * 180)


def test_find_limb_crossing_ignores_bright_border():
    # A bright sharpening artifact at the image border must not be taken for the disc
    values = np.array([200] * 50 + [20] * 46 + [255] * 4)
    index, _ = find_limb_crossing(values, 110, LimbDetectionSettings())
    assert index == 50


@pytest.mark.parametrize("center", [(128.0, 128.0), (120.3, 133.7)])
def test_detect_limb(center):
    image = disc_image((256, 256), center, 60.0)
    detection = detect_limb(image)
    assert detection.estimate.centroid == pytest.approx(center, abs=0.5)
    assert detection.estimate.radius == pytest.approx(60.0, abs=1.0)
    assert detection.estimate.image_size == (256, 256)
    assert len(detection.limb_points) >= 32
    assert detection.residual < 1.0


def test_detect_limb_near_border():
    image = disc_image((300, 200), (200.0, 90.0), 70.0, seed=4)
    detection = detect_limb(image)
    assert detection.estimate.centroid == pytest.approx((200.0, 90.0), abs=0.5)
    assert detection.estimate.radius == pytest.approx(70.0, abs=1.0)


def test_detect_limb_ignores_sunspot():
    image = disc_image((256, 256), (128.0, 128.0), 60.0)
    image[120:130, 140:152] = 40
    detection = detect_limb(image)
    assert detection.estimate.radius == pytest.approx(60.0, abs=1.0)
    assert detection.estimate.centroid == pytest.approx((128.0, 128.0), abs=0.5)


def test_detect_limb_blank_frame():
    with pytest.raises(DetectionError):
        detect_limb(np.zeros((64, 64), dtype=np.uint8))


def test_detect_limb_noise_frame():
    noise = np.random.default_rng(0).integers(0, 256, size=(128, 128), dtype=np.uint8)
    with pytest.raises(DetectionError):
        detect_limb(noise)


def test_detect_limb_requires_min_points():
    image = disc_image((256, 256), (128.0, 128.0), 60.0)
    with pytest.raises(DetectionError):
        detect_limb(image, LimbDetectionSettings(num_rays=8, min_points=16))


def test_detect_limb_cancellation():
    image = disc_image((128, 128), (64.0, 64.0), 30.0)

    def checkpoint():
        raise UserAbort()

    with pytest.raises(UserAbort):
        detect_limb(image, checkpoint=checkpoint)


def test_detect_limbs_reports_every_frame():
    frames = [disc_image((200, 200), (100.0 + i, 100.0), 50.0, seed=i) for i in range(3)]
    found = []
    detections = detect_limbs(
        lambda i: frames[i], 3, on_detection=lambda i, d: found.append((i, d.estimate.radius))
    )
    assert [i for i, _ in found] == [0, 1, 2]
    assert len(detections) == 3
    for _, radius in found:
        assert radius == pytest.approx(50.0, abs=1.0)


def test_detect_limbs_fails_whole_sequence():
    frames = [disc_image((200, 200), (100.0, 100.0), 50.0), np.zeros((200, 200), dtype=np.uint8)]
    found = []
    with pytest.raises(DetectionError, match="frame_1"):
        detect_limbs(
            lambda i: frames[i],
            2,
            on_detection=lambda i, d: found.append(i),
            describe=lambda i: f"frame_{i}",
        )
    assert found == [0]
