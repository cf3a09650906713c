import numpy as np
import pytest
from scipy.optimize import Bounds, rosen

from ..framework import TrustRegion
from ..models import Quadratic
from ..problem import ObjectiveFunction, BoundConstraints, Problem
from ..settings import Options


class TestTrustRegion:

    @staticmethod
    def get_framework(x0, xl=None, xu=None, rhobeg=1.0, rhoend=1e-6):
        n = len(x0)
        xl = np.full(n, -np.inf) if xl is None else xl
        xu = np.full(n, np.inf) if xu is None else xu
        obj = ObjectiveFunction(rosen, False, True)
        pb = Problem(obj, x0, BoundConstraints(Bounds(xl, xu)), None, True)
        pb.set_budget(-np.inf, 1000, False, 1)
        options = get_options(n, rhobeg, rhoend)
        return TrustRegion(pb, options), options

    def test_simple(self):
        framework, options = self.get_framework([-1.2, 1.0])
        assert framework.radius == 1.0
        assert framework.resolution == 1.0
        assert not framework.is_bound_constrained
        assert framework.fun_best == rosen(framework.x_best)
        assert framework.fun_best == np.min(framework.models.fval)
        assert not framework.should_shift_x_base()

        # The radius is never below the resolution.
        framework.reduce_resolution(options)
        assert framework.resolution == pytest.approx(0.1)
        assert framework.radius == pytest.approx(0.5)
        framework.radius = 0.14
        assert framework.radius == framework.resolution
        framework.radius = 0.2
        assert framework.radius == 0.2

    def test_update_radius(self):
        framework, options = self.get_framework([-1.2, 1.0])
        framework.reduce_resolution(options)
        for ratio, dnorm, expected in [
            (-1.0, 0.8, 0.5),
            (0.05, 0.8, 0.5),
            (0.5, 0.8, 0.8),
            (0.5, 0.2, 0.5),
            (0.9, 0.8, 1.6),
            (0.9, 0.1, 0.5),
            (0.0, 0.12, 0.1),
        ]:
            framework.radius = 1.0
            framework.update_radius(dnorm, ratio, options)
            assert framework.radius == pytest.approx(expected)

    def test_reduce_resolution(self):
        framework, options = self.get_framework([-1.2, 1.0])
        resolutions = [0.1, 1e-2, 1e-3, 1e-4, 1e-5, 1e-6]
        for resolution in resolutions:
            resolution_old = framework.resolution
            framework.reduce_resolution(options)
            assert framework.resolution == pytest.approx(resolution)
            assert framework.radius == pytest.approx(max(0.5 * resolution_old, resolution))
        assert framework.resolution == options[Options.RHOEND]

    def test_model_accurate(self):
        framework, options = self.get_framework([-1.2, 1.0])
        framework.crvmin = 1.0
        assert not framework.is_model_accurate()
        framework.record_step(0.5, 1e-3)
        assert not framework.is_model_accurate()
        framework.record_step(0.5, 1e-3)
        assert framework.is_model_accurate()

        # The step lengths and the model errors must both be small.
        framework.record_step(2.0, 1e-3)
        assert not framework.is_model_accurate()
        framework.record_step(0.5, 1e-3)
        framework.record_step(0.5, 1.0)
        assert not framework.is_model_accurate()
        framework.reset_records()
        assert not framework.is_model_accurate()

        # A nonpositive curvature never certifies the model.
        framework.record_step(0.5, 1e-3)
        framework.record_step(0.5, 1e-3)
        framework.crvmin = 0.0
        assert not framework.is_model_accurate()

    def test_model_accurate_bounds(self):
        framework, _ = self.get_framework([0.5, 0.5], xl=np.zeros(2), xu=np.ones(2), rhobeg=0.25)
        assert framework.is_bound_constrained
        framework.record_step(0.1, 1e-3)
        framework.record_step(0.1, -1e-3)
        assert framework.is_model_accurate(1e-2)
        assert not framework.is_model_accurate(1e-4)
        error_bound = framework.get_error_bound(np.zeros(2))
        assert np.isfinite(error_bound)

    def test_interpolation_set_close(self):
        framework, options = self.get_framework([-1.2, 1.0], rhobeg=0.5)
        assert framework.is_interpolation_set_close()
        framework.reduce_resolution(options)
        framework.radius = 0.2
        assert not framework.is_interpolation_set_close()

    def test_trust_region_step(self):
        framework, _ = self.get_framework([-1.2, 1.0])
        step = framework.get_trust_region_step()
        assert np.linalg.norm(step) <= 1.1 * framework.radius
        assert framework.get_model_reduction(step) >= 0.0
        assert framework.crvmin >= 0.0

    def test_trust_region_step_bounds(self):
        xl = np.array([-1.5, 0.5])
        xu = np.array([0.0, 1.5])
        framework, _ = self.get_framework([-1.2, 1.0], xl=xl, xu=xu, rhobeg=0.25)
        step = framework.get_trust_region_step()
        step_xl, step_xu = framework.get_step_bounds()
        tol = 10.0 * np.finfo(float).eps
        assert np.all(step_xl - tol <= step)
        assert np.all(step <= step_xu + tol)
        assert framework.get_model_reduction(step) >= 0.0

    def test_try_alternative(self, monkeypatch):
        framework, _ = self.get_framework([-1.2, 1.0])
        n, npt = framework.models.n, framework.models.npt
        model_alt = Quadratic(np.zeros(n), np.zeros((n, n)), np.zeros(npt))
        monkeypatch.setattr(framework.models, 'get_alternative_model', lambda: model_alt)
        model = framework.models.model

        # A successful iteration resets the count.
        framework.try_alternative(0.0)
        framework.try_alternative(0.0)
        framework.try_alternative(0.5)
        framework.try_alternative(0.0)
        assert framework.models.model is model
        framework.try_alternative(0.0)
        assert framework.models.model is model
        framework.try_alternative(0.0)
        assert framework.models.model is model_alt

    def test_geometry(self):
        framework, _ = self.get_framework([-1.2, 1.0])
        radius = framework.get_geometry_radius()
        assert framework.resolution <= radius <= max(framework.radius, framework.resolution)
        k_new = int(np.argmax(framework.models.dist_sq()))
        step = framework.get_geometry_step(k_new, radius)
        assert np.linalg.norm(step) <= 1.1 * radius
        assert framework.is_denominator_damaged(np.full(2, np.nan))

    def test_rescue(self):
        framework, _ = self.get_framework([0.5, 0.5], xl=np.zeros(2), xu=np.ones(2), rhobeg=0.25)
        framework.record_step(0.1, 1e-3)
        framework.record_step(0.1, 1e-3)
        framework.rescue()
        assert not framework.is_model_accurate(1.0)
        assert framework.models.interpolation.check_inverse() < 1e-8


def get_options(n, rhobeg, rhoend):
    return {
        Options.DEBUG.value: True,
        Options.ETA1.value: 0.1,
        Options.ETA2.value: 0.7,
        Options.GAMMA1.value: 0.5,
        Options.GAMMA2.value: 2.0,
        Options.NPT.value: 2 * n + 1,
        Options.RHOBEG.value: rhobeg,
        Options.RHOEND.value: rhoend,
    }
