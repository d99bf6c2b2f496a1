"""
Unit tests for robust pose estimation
"""

import logging
import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import InsufficientCorrespondences, InvalidArgument, InvalidConfiguration, PoseEstimationFailed
from pose import se3
from pose.estimator import PoseEstimator
from pose.params import Dof, PoseParams, PoseStrategy, dof_columns
from pose.vvs import line_of_sight_distances, refine_vvs, tukey_weights
from tests.fixtures.scene import make_camera, make_pose, noisy_correspondences, project


STRATEGIES = [PoseStrategy.CONSENSUS_PNP, PoseStrategy.ROBUST_ITERATIVE]

FOUR_POINTS = np.array([
    [0.0, 0.0, 0.0],
    [0.1, 0.0, 0.02],
    [0.0, 0.1, -0.03],
    [0.08, 0.09, 0.05],
])


def _estimator(strategy, min_count=4, **kw):
    params = PoseParams(seed=0, **kw)
    params.set_min_inlier_count(min_count)
    return PoseEstimator(params, strategy)


class TestPoseParams:
    """Test cases for parameter validation"""

    @pytest.mark.parametrize("field,value", [
        ("max_iterations", 0),
        ("reprojection_error", 0.0),
        ("ransac_threshold", -1.0),
        ("min_inlier_count", 0),
        ("consensus_percentage", 0.0),
        ("consensus_percentage", 100.5),
    ])
    def test_rejects_out_of_range(self, field, value):
        with pytest.raises(InvalidConfiguration):
            PoseParams(**{field: value})

    def test_setters_reject_without_clamping(self):
        p = PoseParams()
        with pytest.raises(InvalidConfiguration):
            p.set_reprojection_error(-2.0)
        with pytest.raises(InvalidConfiguration):
            p.set_consensus_percentage(150.0)
        assert p.reprojection_error == 6.0
        assert p.consensus_percentage == 20.0

    def test_consensus_mode_last_setter_wins(self):
        p = PoseParams()
        p.set_consensus_percentage(50.0)
        assert p.consensus_target(10) == 5
        p.set_min_inlier_count(7)
        assert p.consensus_target(10) == 7
        p.set_consensus_percentage(25.0)
        assert p.consensus_target(10) == 3

    def test_from_dict_rejects_both_modes(self):
        with pytest.raises(InvalidConfiguration):
            PoseParams.from_dict({"min_inlier_count": 10, "consensus_percentage": 20})
        assert PoseParams.from_dict({"consensus_percentage": 40}).use_consensus_percentage

    def test_dofs(self):
        assert dof_columns({Dof.RZ, Dof.TX}).tolist() == [0, 5]
        with pytest.raises(InvalidConfiguration):
            PoseParams(dofs=frozenset())
        with pytest.raises(ValueError):
            PoseParams(dofs={"twist"})


class TestInputValidation:
    """Test cases for correspondence validation"""

    @pytest.mark.parametrize("strategy", STRATEGIES)
    def test_three_correspondences(self, strategy):
        cam, T = make_camera(), make_pose()
        img = project(cam, T, FOUR_POINTS[:3])
        with pytest.raises(InsufficientCorrespondences):
            _estimator(strategy).estimate(img, FOUR_POINTS[:3], cam)

    def test_length_mismatch(self):
        cam, T = make_camera(), make_pose()
        img = project(cam, T, FOUR_POINTS)
        with pytest.raises(InvalidArgument):
            _estimator(PoseStrategy.CONSENSUS_PNP).estimate(img, np.vstack([FOUR_POINTS, FOUR_POINTS[:1]]), cam)

    def test_bad_shape(self):
        with pytest.raises(InvalidArgument):
            _estimator(PoseStrategy.CONSENSUS_PNP).estimate(np.zeros((4, 3)), FOUR_POINTS, make_camera())


class TestExactPose:
    """Four noiseless correspondences give back the generating pose"""

    @pytest.mark.parametrize("strategy", STRATEGIES)
    def test_four_noiseless_points(self, strategy):
        cam, T = make_camera(), make_pose()
        img = project(cam, T, FOUR_POINTS)
        res = _estimator(strategy).estimate(img, FOUR_POINTS, cam)
        np.testing.assert_allclose(res.cMo, T, atol=1e-6)
        assert res.inliers.tolist() == [0, 1, 2, 3]
        assert res.outliers.size == 0
        assert np.max(res.residuals) < 1e-6
        assert res.error < 1e-6
        assert res.strategy == strategy.value
        assert res.elapsed_ms >= 0.0


class TestConsensusPnP:
    """Test cases for RANSAC over minimal samples"""

    def test_rejects_outliers(self):
        rng = np.random.default_rng(1)
        img, obj, cam, T, out_idx = noisy_correspondences(60, 15, rng)
        est = _estimator(PoseStrategy.CONSENSUS_PNP, min_count=35, max_iterations=500, reprojection_error=2.0)
        res = est.estimate(img, obj, cam)
        dt, angle = se3.pose_distance(res.cMo, T)
        assert dt < 0.005
        assert angle < np.deg2rad(1.0)
        assert set(out_idx.tolist()) <= set(res.outliers.tolist())
        assert res.n_inliers >= 35

    def test_same_seed_same_result(self):
        rng = np.random.default_rng(2)
        img, obj, cam, _, _ = noisy_correspondences(40, 10, rng)
        a = _estimator(PoseStrategy.CONSENSUS_PNP, min_count=20, max_iterations=100).estimate(img, obj, cam)
        b = _estimator(PoseStrategy.CONSENSUS_PNP, min_count=20, max_iterations=100).estimate(img, obj, cam)
        np.testing.assert_array_equal(a.cMo, b.cMo)
        assert a.iterations == b.iterations

    def test_early_stop_exits_on_first_sufficient_hypothesis(self):
        rng = np.random.default_rng(3)
        img, obj, cam, _, _ = noisy_correspondences(30, 0, rng, noise_px=0.0)
        res = _estimator(PoseStrategy.CONSENSUS_PNP, min_count=30, max_iterations=200).estimate(img, obj, cam)
        assert res.iterations == 1
        full = _estimator(PoseStrategy.CONSENSUS_PNP, min_count=30, max_iterations=50, early_stop=False)
        assert full.estimate(img, obj, cam).iterations == 50

    def test_unreachable_target_fails(self):
        rng = np.random.default_rng(4)
        img, obj, cam, _, _ = noisy_correspondences(30, 20, rng)
        est = _estimator(PoseStrategy.CONSENSUS_PNP, min_count=25, max_iterations=50, reprojection_error=2.0)
        with pytest.raises(PoseEstimationFailed) as exc:
            est.estimate(img, obj, cam)
        assert exc.value.required == 25

    def test_percentage_target(self):
        rng = np.random.default_rng(5)
        img, obj, cam, _, _ = noisy_correspondences(40, 10, rng)
        params = PoseParams(seed=0, max_iterations=300, reprojection_error=2.0)
        params.set_consensus_percentage(70.0)
        res = PoseEstimator(params).estimate(img, obj, cam)
        assert res.n_inliers >= 28

    def test_accept_predicate(self):
        rng = np.random.default_rng(6)
        img, obj, cam, _, _ = noisy_correspondences(20, 0, rng)
        calls = []

        def accept(cMo):
            calls.append(cMo)
            return True

        _estimator(PoseStrategy.CONSENSUS_PNP, min_count=10).estimate(img, obj, cam, accept=accept)
        assert len(calls) >= 2

        with pytest.raises(PoseEstimationFailed):
            _estimator(PoseStrategy.CONSENSUS_PNP, min_count=10, max_iterations=20).estimate(
                img, obj, cam, accept=lambda cMo: False
            )

    def test_covariance_request_warns(self, caplog):
        rng = np.random.default_rng(7)
        img, obj, cam, _, _ = noisy_correspondences(20, 0, rng)
        est = _estimator(PoseStrategy.CONSENSUS_PNP, min_count=10, compute_covariance=True)
        with caplog.at_level(logging.WARNING):
            res = est.estimate(img, obj, cam)
        assert res.covariance is None
        assert any("Covariance" in r.getMessage() for r in caplog.records)


class TestRobustIterative:
    """Test cases for the M-estimator VVS strategy"""

    def test_rejects_outliers(self):
        rng = np.random.default_rng(8)
        img, obj, cam, T, out_idx = noisy_correspondences(60, 15, rng)
        est = _estimator(PoseStrategy.ROBUST_ITERATIVE, min_count=40, ransac_threshold=0.005, max_iterations=500)
        res = est.estimate(img, obj, cam)
        dt, angle = se3.pose_distance(res.cMo, T)
        assert dt < 0.005
        assert angle < np.deg2rad(1.0)
        assert set(out_idx.tolist()) <= set(res.outliers.tolist())
        assert np.all(res.residuals[res.inliers] <= 0.005)

    def test_covariance(self):
        rng = np.random.default_rng(9)
        img, obj, cam, _, _ = noisy_correspondences(40, 0, rng)
        res = _estimator(PoseStrategy.ROBUST_ITERATIVE, min_count=30, compute_covariance=True).estimate(img, obj, cam)
        C = res.covariance
        assert C.shape == (6, 6)
        np.testing.assert_allclose(C, C.T, atol=1e-12)
        assert np.all(np.diag(C) > 0.0)

    def test_no_covariance_by_default(self):
        rng = np.random.default_rng(10)
        img, obj, cam, _, _ = noisy_correspondences(20, 0, rng)
        assert _estimator(PoseStrategy.ROBUST_ITERATIVE, min_count=10).estimate(img, obj, cam).covariance is None

    def test_line_of_sight_distance(self):
        cam, T = make_camera(), make_pose()
        obj = FOUR_POINTS
        normalized = cam.normalize(project(cam, T, obj))
        assert np.max(line_of_sight_distances(T, obj, normalized)) < 1e-9
        shifted = se3.from_rvec_tvec(np.zeros(3), np.array([0.01, 0.0, 0.0])) @ T
        d = line_of_sight_distances(shifted, obj, normalized)
        assert np.all((d > 0.005) & (d <= 0.01 + 1e-9))

    def test_tukey_weights(self):
        r = np.array([0.0, 0.001, 0.002, 0.001, 5.0])
        w = tukey_weights(r)
        assert w[1] == pytest.approx(1.0)
        assert w[0] > 0.9
        assert w[-1] == 0.0
        assert np.all((w >= 0.0) & (w <= 1.0))

    def test_tukey_weights_on_uniform_bias(self):
        """Residuals of similar size (biased start) all keep a large weight"""
        w = tukey_weights(np.array([0.020, 0.021, 0.019, 0.022, 0.018, 0.020]))
        assert np.all(w > 0.5)

    def test_refine_moves_biased_start(self):
        cam, T = make_camera(), make_pose()
        rng = np.random.default_rng(12)
        obj = rng.uniform(-0.1, 0.1, size=(20, 3))
        normalized = cam.normalize(project(cam, T, obj))
        start = T.copy()
        start[:3, 3] += [0.01, -0.01, 0.02]
        refined, cov, iters = refine_vvs(start, obj, normalized, PoseParams(compute_covariance=True))
        assert iters > 2
        dt, angle = se3.pose_distance(refined, T)
        assert dt < 1e-6
        assert angle < 1e-6
        assert cov.shape == (6, 6)

    def test_dofs_restrict_the_update(self):
        """With translation-only DOFs the rotation is left untouched"""
        cam, T = make_camera(), make_pose()
        rng = np.random.default_rng(11)
        obj = rng.uniform(-0.1, 0.1, size=(20, 3))
        normalized = cam.normalize(project(cam, T, obj))
        start = T.copy()
        start[:3, 3] += [0.01, -0.01, 0.02]
        params = PoseParams(dofs={Dof.TX, Dof.TY, Dof.TZ})
        refined, _, _ = refine_vvs(start, obj, normalized, params)
        np.testing.assert_allclose(refined[:3, :3], T[:3, :3], atol=1e-12)
        np.testing.assert_allclose(refined[:3, 3], T[:3, 3], atol=1e-6)
