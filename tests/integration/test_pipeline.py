"""
End-to-end tests of the keypoint pipeline: learn -> match -> filter -> pose -> decide
"""

import json
import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.config import PipelineConfig
from common.errors import InvalidArgument, InvalidConfiguration, PoseEstimationFailed
from common.logging_setup import setup_logging
from pose import se3
from recognition.cli import main
from recognition.pipeline import KeyPointPipeline
from tests.fixtures.scene import (
    flip_bits,
    make_camera,
    make_pose,
    project,
    random_binary_descriptors,
    random_object_points,
    shift_image,
    textured_image,
)

PLANE = np.array([[-0.5, -0.38, 0.0], [0.5, -0.38, 0.0], [0.5, 0.38, 0.0], [-0.5, 0.38, 0.0]])


def _synthetic_scene(seed=3):
    """
    Two training images of 50 points each (the first 30 of each carry 3-D points)
    and a query seeing all 60 3-D points plus 20 of the 2-D-only ones.
    The last 10 3-D query points are placed at random pixels.
    """
    rng = np.random.default_rng(seed)
    cam = make_camera()
    cMo = make_pose()
    desc = random_binary_descriptors(100, rng)
    obj = random_object_points(60, rng)

    train = []
    for image_id in range(2):
        rows = slice(50 * image_id, 50 * image_id + 50)
        pts3d = np.full((50, 3), np.nan)
        pts3d[:30] = obj[30 * image_id:30 * image_id + 30]
        kps = [(float(x), float(y)) for x, y in rng.uniform(0, 640, size=(50, 2))]
        train.append((image_id, kps, desc[rows], pts3d))

    with3d = np.r_[0:30, 50:80]
    without3d = np.r_[30:40, 80:90]
    q_desc = np.array([flip_bits(desc[i], 5, rng) for i in np.r_[with3d, without3d]])
    q_px = project(cam, cMo, obj) + rng.normal(0.0, 0.3, size=(60, 2))
    q_px[50:] = rng.uniform(0, 480, size=(10, 2))
    q_px = np.vstack([q_px, rng.uniform(0, 480, size=(20, 2))])
    q_kps = [cv2.KeyPoint(float(x), float(y), 7.0) for x, y in q_px]
    return cam, cMo, train, q_kps, q_desc


def _synthetic_pipeline(cam, train):
    kp = KeyPointPipeline(camera=cam)
    for image_id, kps, desc, pts3d in train:
        kp.database.add(image_id, kps, desc, pts3d)
    kp.set_ratio(0.8)
    kp.set_max_iterations(1000)
    kp.set_reprojection_error(2.0)
    kp.set_min_inlier_count(40)
    kp.set_seed(7)
    return kp


class TestSyntheticDescriptors:
    """Pipeline on synthetic descriptors with known correspondences"""

    def test_match_filter_and_pose(self):
        cam, cMo, train, q_kps, q_desc = _synthetic_scene()
        kp = _synthetic_pipeline(cam, train)

        matches = kp.match_descriptors(q_kps, q_desc)
        assert matches.knn and matches.k == 2
        assert matches.n_queries == 80

        fs = kp.filter()
        assert len(fs) == 80
        expected_train = np.r_[0:30, 50:80, 30:40, 80:90]
        assert [m.correspondence.train_idx for m in fs.matches] == expected_train.tolist()
        img, obj, _ = fs.pose_pairs()
        assert img.shape == (60, 2)

        pose = kp.estimate()
        assert pose.n_inliers >= 40
        dt, dr = se3.pose_distance(pose.cMo, cMo)
        assert dt < 5e-3
        assert dr < 1e-2

        inlier_queries = {fs.matches[p].correspondence.query_idx for p in kp.ransac_inlier_matches}
        assert inlier_queries.isdisjoint(range(50, 60))
        assert kp.ransac_inliers.shape == (pose.n_inliers, 2)
        assert kp.ransac_outliers.shape[0] == 60 - pose.n_inliers
        assert kp.pose_error < 2.0

        verdict = kp.decide()
        assert verdict.present
        assert verdict.n_matches == 80
        assert verdict.mean_distance == pytest.approx(5.0)
        assert verdict.pose_inliers == pose.n_inliers

    def test_robust_iterative_with_covariance(self):
        cam, cMo, train, q_kps, q_desc = _synthetic_scene()
        kp = _synthetic_pipeline(cam, train)
        kp.set_use_vvs(True)
        kp.set_ransac_threshold(0.005)
        kp.set_covariance(True)
        kp.match_descriptors(q_kps, q_desc)
        kp.filter()
        pose = kp.estimate()
        dt, dr = se3.pose_distance(pose.cMo, cMo)
        assert dt < 5e-3
        assert dr < 1e-2
        assert kp.covariance.shape == (6, 6)
        assert np.all(np.diag(kp.covariance) >= 0.0)

    def test_new_match_resets_query_state(self):
        cam, _, train, q_kps, q_desc = _synthetic_scene()
        kp = _synthetic_pipeline(cam, train)
        kp.match_descriptors(q_kps, q_desc)
        kp.filter()
        kp.estimate()
        assert kp.pose is not None
        kp.match_descriptors(q_kps[:5], q_desc[:5])
        assert kp.pose is None
        assert kp.filtered_set is None
        assert len(kp.query_keypoints) == 5
        assert kp.query_descriptors.shape == (5, 32)

    def test_failed_estimate_drops_previous_pose(self):
        """After a failed estimate the pose accessors no longer report the earlier success"""
        cam, _, train, q_kps, q_desc = _synthetic_scene()
        kp = _synthetic_pipeline(cam, train)
        kp.match_descriptors(q_kps, q_desc)
        kp.filter()
        kp.estimate()
        assert kp.ransac_inliers.shape[0] >= 40

        kp.set_max_iterations(50)
        kp.set_min_inlier_count(1000)
        with pytest.raises(PoseEstimationFailed):
            kp.estimate()
        assert kp.pose is None
        assert kp.ransac_inliers.shape == (0, 2)
        assert kp.ransac_outliers.shape == (0, 2)
        assert kp.ransac_inlier_matches.size == 0
        assert kp.covariance is None
        assert kp.pose_error is None
        assert kp.filtered_set is not None

    def test_flat_policies(self):
        cam, _, train, q_kps, q_desc = _synthetic_scene()
        kp = _synthetic_pipeline(cam, train)
        kp.set_filter_policy("constantFactor")
        matches = kp.match_descriptors(q_kps, q_desc)
        assert not matches.knn
        assert len(kp.filter()) == 80
        kp.set_filter_policy("none")
        kp.match_descriptors(q_kps, q_desc)
        assert len(kp.filter()) == 80
        with pytest.raises(InvalidConfiguration):
            kp.set_filter_policy("bestOnly")
        with pytest.raises(InvalidConfiguration):
            kp.set_knn_k(1)

    def test_cross_check_matcher(self):
        cam, _, train, q_kps, q_desc = _synthetic_scene()
        kp = _synthetic_pipeline(cam, train)
        kp.set_filter_policy("stdDev")
        kp.set_matcher("BruteForce-Hamming")
        kp.set_cross_check(True)
        matches = kp.match_descriptors(q_kps, q_desc)
        assert len(matches) == 80

    @pytest.mark.parametrize("suffix", ["model.json", "model.npz"])
    def test_learning_data_round_trip(self, tmp_path, suffix):
        cam, _, train, q_kps, q_desc = _synthetic_scene()
        kp = _synthetic_pipeline(cam, train)
        before = kp.match_descriptors(q_kps, q_desc).all()
        kp.save_learning_data(tmp_path / suffix)

        other = _synthetic_pipeline(cam, [])
        other.load_learning_data(tmp_path / suffix)
        assert other.database.stats() == kp.database.stats()
        assert other.match_descriptors(q_kps, q_desc).all() == before

        other.load_learning_data(tmp_path / suffix, append=True)
        assert len(other.database) == 200
        assert other.database.image_ids() == [0, 1, 2, 3]

    def test_failed_load_keeps_database(self, tmp_path):
        cam, _, train, _, _ = _synthetic_scene()
        kp = _synthetic_pipeline(cam, train)
        bad = tmp_path / "broken.json"
        bad.write_text("{not json")
        with pytest.raises(InvalidArgument):
            kp.load_learning_data(bad)
        assert len(kp.database) == 100


class TestImagePipeline:
    """Pipeline on a textured planar target seen under a pure image translation"""

    @pytest.fixture
    def learned(self):
        cam = make_camera()
        kp = KeyPointPipeline(camera=cam)
        kp.set_min_inlier_count(30)
        kp.set_reprojection_error(3.0)
        kp.set_seed(0)
        image = textured_image(seed=1)
        cMo = se3.from_rvec_tvec(np.zeros(3), np.array([0.0, 0.0, 1.0]))
        kp.build_reference(image, cMo=cMo, polygons=[PLANE])
        return kp, image

    def test_reference_has_3d_points(self, learned):
        kp, _ = learned
        assert len(kp.database) > 100
        assert kp.database.n_points3d() == len(kp.database)
        pts = kp.database.points3d()
        np.testing.assert_allclose(pts[:, 2], 0.0, atol=1e-9)

    def test_pose_from_shifted_view(self, learned):
        kp, image = learned
        pose = kp.match_point_and_pose(shift_image(image, 12, -8))
        assert pose.n_inliers >= 30
        np.testing.assert_allclose(pose.cMo[:3, 3], [12 / 600.0, -8 / 600.0, 1.0], atol=1e-2)
        _, dr = se3.pose_distance(pose.cMo, np.eye(4))
        assert dr < 2e-2

    def test_detect_and_locate(self, learned):
        kp, image = learned
        verdict = kp.match_point_and_detect(shift_image(image, 12, -8))
        assert verdict.present
        x, y, w, h = verdict.bounding_box
        assert x >= 0 and y >= 0
        assert x + w <= 640 and y + h <= 480
        assert kp.matching_time_ms >= 0.0

    def test_blank_query_is_absent(self, learned):
        kp, _ = learned
        verdict = kp.match_point_and_detect(np.zeros((480, 640), dtype=np.uint8))
        assert not verdict.present
        assert verdict.n_matches == 0
        assert verdict.bounding_box is None
        assert kp.match_point(np.zeros((480, 640), dtype=np.uint8)) == 0

    def test_joined_extractors(self):
        """ORB and BRISK descriptors are joined per keypoint, and 3-D points stay aligned"""
        kp = KeyPointPipeline(camera=make_camera())
        kp.set_extractors(["ORB", "BRISK"])
        kp.set_min_inlier_count(20)
        kp.set_reprojection_error(3.0)
        kp.set_seed(0)
        image = textured_image(seed=1)
        cMo = se3.from_rvec_tvec(np.zeros(3), np.array([0.0, 0.0, 1.0]))
        kp.build_reference(image, cMo=cMo, polygons=[PLANE])
        des = kp.database.descriptors()
        assert des.dtype == np.uint8
        assert des.shape == (len(kp.database), 32 + 64)
        assert kp.database.n_points3d() == len(kp.database)

        pose = kp.match_point_and_pose(shift_image(image, 12, -8))
        assert pose.n_inliers >= 20
        np.testing.assert_allclose(pose.cMo[:3, 3], [12 / 600.0, -8 / 600.0, 1.0], atol=1e-2)

    def test_mixed_descriptor_types_rejected(self):
        kp = KeyPointPipeline()
        with pytest.raises(InvalidConfiguration):
            kp.set_extractors(["ORB", "SIFT"])
        with pytest.raises(InvalidConfiguration):
            kp.set_extractors(["ORB", "FAST"])
        with pytest.raises(InvalidConfiguration):
            kp.set_extractors([])


class TestCommandLine:
    """learn / detect / info subcommands"""

    def teardown_method(self):
        setup_logging(force=True)

    def _rows(self, capsys):
        return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]

    def test_learn_detect_info(self, tmp_path, capsys):
        config = os.path.join(project_root, "config", "params.yaml")
        image = textured_image(seed=2)
        train_path = str(tmp_path / "train.png")
        query_path = str(tmp_path / "query.png")
        cv2.imwrite(train_path, image)
        cv2.imwrite(query_path, shift_image(image, 10, 5))
        model = str(tmp_path / "model.npz")

        assert main(["--config", config, "--log-level", "ERROR", "learn", train_path, "--out", model]) == 0
        learned = self._rows(capsys)[-1]
        assert learned["train_points"] > 100
        assert learned["with_3d"] == 0

        assert main(["--config", config, "--log-level", "ERROR", "detect", query_path, "--model", model]) == 0
        row = self._rows(capsys)[-1]
        assert row["image"] == query_path
        assert row["present"] is True
        assert "pose" not in row

        assert main(["--config", config, "--log-level", "ERROR", "info", model]) == 0
        info = self._rows(capsys)[-1]
        assert info["image_ids"] == [0]
        assert info["train_points"] == learned["train_points"]

    def test_missing_image_fails(self, tmp_path, capsys):
        config = os.path.join(project_root, "config", "params.yaml")
        rc = main(["--config", config, "--log-level", "ERROR", "learn", str(tmp_path / "nope.png"),
                   "--out", str(tmp_path / "m.json")])
        assert rc == 1
