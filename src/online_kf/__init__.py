"""online-kf: a stateful linear Kalman estimator in PyTorch.

online-kf tracks the hidden state of a linear Gaussian system from a stream of
noisy measures, possibly sampled at irregular intervals. A single
:class:`~online_kf.Estimator` owns the model (``F, H, Q, R`` and the initial
covariance ``P0``) together with the running estimate ``N(x, P)`` and its clock.

Getting started
---------------
- :meth:`~online_kf.Estimator.init` starts (or restarts) the estimator.
- :meth:`~online_kf.Estimator.predict` propagates the estimate by the default
  or by an explicit time step.
- :meth:`~online_kf.Estimator.update` fuses a measure.
- :meth:`~online_kf.Estimator.update_with_dynamics` fuses a measure and switches
  to a new time step and process matrix (irregular sampling, time varying plants).

:mod:`online_kf.ckf` builds ready-to-use constant position / velocity /
acceleration models.

Numerical notes
---------------
The covariance is updated with the standard form ``P <- (I - K H) P``. Prefer
``float64`` matrices when the noise levels span several orders of magnitude.
A singular innovation covariance raises
:class:`~online_kf.SingularInnovationError` unless the estimator is built with
``strict=False``.

Notes on shapes
---------------
online-kf uses column vectors of shape ``(..., dim, 1)``. Leading dimensions
``...`` are batch dimensions: several signals sharing the same model can be
tracked by a single estimator.
"""

from .estimator import Estimator, GaussianState, NotInitializedError, SingularInnovationError

__all__ = ["Estimator", "GaussianState", "NotInitializedError", "SingularInnovationError"]
__version__ = "0.1.0"
