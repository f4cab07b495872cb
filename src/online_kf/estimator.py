from __future__ import annotations

import contextlib
import copy
import dataclasses
import itertools
import logging
from typing import Iterable, overload

import torch
import torch.linalg

logger = logging.getLogger(__name__)

# Note on the innovation inverse:
# S = H P Hᵀ + R is inverted explicitly (rather than solved with a cholesky factor) as dim_z is usually small.
# `inv_ex` is used instead of `inverse` so that a singular S is reported through `info` instead of being
# silently turned into garbage (or into an error on some backends).


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Temporarily change pytorch printoptions (missing from old pytorch versions)."""
        saved = copy.copy(torch._tensor_str.PRINT_OPTS)  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = saved  # noqa: SLF001


class NotInitializedError(RuntimeError):
    """The estimator was asked to predict or update before any call to `init`."""


class SingularInnovationError(torch.linalg.LinAlgError):
    """The innovation covariance H P Hᵀ + R is not invertible (raised in strict mode only)."""


@dataclasses.dataclass
class GaussianState:
    """Multivariate Gaussian x ~ N(mean, covariance).

    Used to expose the running estimate of an :class:`Estimator` and the distribution
    of the expected measure (see :meth:`Estimator.project`).

    Vectors are column vectors: ``mean`` has shape ``(..., dim, 1)`` and ``covariance`` has
    shape ``(..., dim, dim)``. Leading dimensions are batch dimensions.

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional inverse of the covariance, computed lazily when needed.
            Shape: ``(..., dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    @property
    def dim(self) -> int:
        """Dimension of the random variable."""
        return self.mean.shape[-2]

    def clone(self) -> GaussianState:
        """Deep copy of the state."""
        precision = None if self.precision is None else self.precision.clone()
        return GaussianState(self.mean.clone(), self.covariance.clone(), precision)

    def __getitem__(self, idx) -> GaussianState:
        """Index the leading (batch or time) dimensions of the state."""
        precision = None if self.precision is None else self.precision[idx]
        return GaussianState(self.mean[idx], self.covariance[idx], precision)

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Send the state to another dtype or device."""
        precision = None if self.precision is None else self.precision.to(fmt)
        return GaussianState(self.mean.to(fmt), self.covariance.to(fmt), precision)

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Squared Mahalanobis distance (x - μ)ᵀ Σ⁻¹ (x - μ) of `measure` to the distribution.

        Useful to gate measures before feeding them to :meth:`Estimator.update`.

        Args:
            measure (torch.Tensor): Point(s) to evaluate, broadcastable with the state.
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared distances.
                Shape: ``(...)``
        """
        diff = measure - self.mean
        if self.precision is None:
            self.precision = torch.linalg.inv(self.covariance)
        return (diff.mT @ self.precision @ diff)[..., 0, 0]

    def mahalanobis(self, measure: torch.Tensor) -> torch.Tensor:
        """Mahalanobis distance of `measure` to the distribution.

        Prefer :meth:`mahalanobis_squared` when comparing to a threshold.
        """
        return self.mahalanobis_squared(measure).sqrt()

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Log density of the distribution at `measure`.

            log p(x) = -1/2 * (dim * log(2π) + log|Σ| + MAHA²)

        Args:
            measure (torch.Tensor): Point(s) to evaluate, broadcastable with the state.
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log-likelihoods.
                Shape: ``(...)``
        """
        maha_2 = self.mahalanobis_squared(measure)
        _, log_det = torch.linalg.slogdet(self.covariance)
        log_two_pi = torch.log(torch.tensor(2 * torch.pi, dtype=log_det.dtype, device=log_det.device))
        return -0.5 * (self.dim * log_two_pi + log_det + maha_2)

    def likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Density of the distribution at `measure`."""
        return self.log_likelihood(measure).exp()


class Estimator:
    """Stateful discrete-time linear Kalman filter.

    The estimator tracks the hidden state of the linear Gaussian system:

        x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)
        z_k = H x_k     + v_k,   v_k ~ N(0, R)

    It owns every matrix of the model and the running estimate N(x, P) together with the
    current time t. Measures are fused as they arrive: `predict` propagates the estimate
    in time (by the default step `dt` or by an explicit one), `update` corrects it with a
    measure, and `update_with_dynamics` corrects it while switching to a new process matrix
    (irregular sampling periods or time varying plants).

    Example:
    ```python
        estimator = Estimator(0.1, F, H, Q, R, P)
        estimator.init(0.0, x0)
        for z in measures:
            estimator.predict()
            estimator.update(z)
        estimator.state()  # Shape: (dim_x, 1)
    ```

    Calling ``Estimator()`` without matrices builds a blank, unconfigured estimator
    (``state_dim == measure_dim == -1``).

    Shape conventions:
    - x and measures are column vectors ``(dim, 1)``. 1d vectors are accepted and turned into columns.
    - A batch of independent signals sharing the same model can be tracked at once by
      giving an initial state of shape ``(..., dim_x, 1)`` and measures of shape ``(..., dim_z, 1)``.

    The estimator is not thread-safe: concurrent calls on the same instance must be serialized by the caller.

    Attributes:
        strict (bool): If True, a singular innovation covariance raises :class:`SingularInnovationError`
            and leaves the estimator untouched. Otherwise a warning is logged and the (invalid) inverse is used,
            which may fill the state with NaN/Inf.
            Default: True
    """

    _REPR_SPLIT_LENGTH = 110

    def __init__(  # noqa: PLR0913
        self,
        dt: float = 0.0,
        process_matrix: torch.Tensor | None = None,
        measurement_matrix: torch.Tensor | None = None,
        process_noise: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
        initial_covariance: torch.Tensor | None = None,
        *,
        strict=True,
    ) -> None:
        matrices = [process_matrix, measurement_matrix, process_noise, measurement_noise, initial_covariance]
        if all(matrix is None for matrix in matrices):
            matrices = [torch.empty(0, 0) for _ in matrices]
            self._state_dim = -1
            self._measure_dim = -1
        elif any(matrix is None for matrix in matrices):
            raise ValueError("F, H, Q, R and P should all be given (or none of them for a blank estimator).")
        else:
            # Shapes are not checked, the linear algebra will complain if they do not match
            reference = torch.as_tensor(process_matrix)
            matrices = [
                torch.as_tensor(matrix, dtype=reference.dtype, device=reference.device).clone() for matrix in matrices
            ]
            self._state_dim = matrices[0].shape[-2]
            self._measure_dim = matrices[1].shape[-2]

        (
            self._process_matrix,
            self._measurement_matrix,
            self._process_noise,
            self._measurement_noise,
            self._initial_covariance,
        ) = matrices
        self._identity = torch.eye(max(self._state_dim, 0), dtype=self.dtype, device=self.device)

        self.strict = strict
        self._dt = float(dt)
        self._t0 = 0.0
        self._t = 0.0
        self._initialized = False
        self._mean = self._zero_state()
        self._covariance = self._initial_covariance.clone()
        self._gain: torch.Tensor | None = None

    @property
    def state_dim(self) -> int:
        """Dimension n of the state (-1 for a blank estimator)."""
        return self._state_dim

    @property
    def measure_dim(self) -> int:
        """Dimension m of the measures (-1 for a blank estimator)."""
        return self._measure_dim

    @property
    def is_configured(self) -> bool:
        """Whether the estimator was built with its matrices."""
        return self._state_dim >= 0

    @property
    def initialized(self) -> bool:
        """Whether `init` was called."""
        return self._initialized

    @property
    def dt(self) -> float:
        """Default time step used by `predict`."""
        return self._dt

    @property
    def t0(self) -> float:
        """Time of the last initialization."""
        return self._t0

    @property
    def process_matrix(self) -> torch.Tensor:
        """Process matrix F. Shape: ``(dim_x, dim_x)``."""
        return self._process_matrix

    @property
    def measurement_matrix(self) -> torch.Tensor:
        """Measurement matrix H. Shape: ``(dim_z, dim_x)``."""
        return self._measurement_matrix

    @property
    def process_noise(self) -> torch.Tensor:
        """Process noise covariance Q. Shape: ``(dim_x, dim_x)``."""
        return self._process_noise

    @property
    def measurement_noise(self) -> torch.Tensor:
        """Measurement noise covariance R. Shape: ``(dim_z, dim_z)``."""
        return self._measurement_noise

    @property
    def initial_covariance(self) -> torch.Tensor:
        """Covariance P0 restored by `init`. Shape: ``(dim_x, dim_x)``."""
        return self._initial_covariance

    @property
    def covariance(self) -> torch.Tensor:
        """Current error covariance P. Shape: ``(..., dim_x, dim_x)``."""
        return self._covariance

    @property
    def gain(self) -> torch.Tensor | None:
        """Kalman gain K of the last update (None if no update happened since `init`)."""
        return self._gain

    @property
    def device(self) -> torch.device:
        """Device of the estimator."""
        return self._process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the estimator."""
        return self._process_matrix.dtype

    def init(self, t0: float | None = None, x0: torch.Tensor | None = None) -> None:
        """(Re-)initialize the estimator.

        Without arguments, the state starts at zero at t = 0. Otherwise it starts from the
        guess `x0` at time `t0`. In both cases P is reset to the initial covariance P0.

        Args:
            t0 (float | None): Initial time.
                Default: 0.0
            x0 (torch.Tensor | None): Initial guess of the state. Its size is not checked.
                Shape: ``(..., dim_x, 1)`` or ``(dim_x,)``
                Default: zeros
        """
        self._t0 = 0.0 if t0 is None else float(t0)
        self._t = self._t0
        self._mean = self._zero_state() if x0 is None else self._as_column(x0).clone()
        self._covariance = self._initial_covariance.clone()
        self._gain = None
        self._initialized = True
        logger.debug("Estimator initialized at t0=%s (dim_x=%d)", self._t0, self._state_dim)

    def state(self) -> torch.Tensor:
        """Current estimate x (zeros before `init`). Shape: ``(..., dim_x, 1)``."""
        return self._mean.clone()

    def time(self) -> float:
        """Current time t of the estimator."""
        return self._t

    def estimate(self) -> GaussianState:
        """Current estimate N(x, P) as a standalone GaussianState."""
        return GaussianState(self._mean.clone(), self._covariance.clone())

    def predict(self, dt: float | None = None) -> None:
        """Propagate the estimate to the next time step.

            x <- F x
            P <- F P Fᵀ + Q
            t <- t + dt

        It may be called several times between two measures (e.g. at a fixed rate independent of the sensors).

        Args:
            dt (float | None): Time step. It only advances the clock: F is not rebuilt from it.
                Default: the estimator's `dt`
        """
        self._check_initialized("predict")
        if dt is None:
            dt = self._dt

        self._mean = self._process_matrix @ self._mean
        self._covariance = self._process_matrix @ self._covariance @ self._process_matrix.mT + self._process_noise
        self._t += float(dt)

    def project(self) -> GaussianState:
        """Distribution of the expected measure z ~ N(H x, H P Hᵀ + R).

        The returned state holds the precision S⁻¹ of the innovation covariance.

        Raises:
            SingularInnovationError: In strict mode, if H P Hᵀ + R is not invertible.
        """
        self._check_initialized("project")
        return GaussianState(*self._project())

    def update(self, measure: torch.Tensor) -> None:
        """Correct the estimate with a new measure, keeping the current dynamics.

            K <- P Hᵀ (H P Hᵀ + R)⁻¹
            x <- x + K (z - H x)
            P <- (I - K H) P

        F, H, Q, R and t are left untouched.

        Args:
            measure (torch.Tensor): Measure z.
                Shape: ``(..., dim_z, 1)`` or ``(dim_z,)``

        Raises:
            SingularInnovationError: In strict mode, if H P Hᵀ + R is not invertible.
        """
        self._check_initialized("update")
        self._mean, self._covariance, self._gain = self._correct(self._as_column(measure))

    def update_with_dynamics(self, measure: torch.Tensor, dt: float, process_matrix: torch.Tensor) -> None:
        """Correct the estimate with a new measure, switching to a new time step and process matrix.

        The new F is stored for the following predictions (the gain does not depend on it), `dt` becomes
        the default time step, and the clock advances by `dt`. Then the same correction as `update` is applied.

        The measure is fused at the current estimate, and the clock then reads the time of the next measure,
        one new period ahead. The next prediction should therefore only propagate the estimate, without moving
        the clock again:

        ```python
        estimator.predict()  # Old period
        estimator.update_with_dynamics(z, new_dt, new_process_matrix)  # t <- t + new_dt
        estimator.predict(0.0)  # Propagate with the new F, t is already up to date
        estimator.update(next_z)
        estimator.predict()  # Then new_dt is the default step
        ```

        Nothing is modified if the correction fails.

        Args:
            measure (torch.Tensor): Measure y.
                Shape: ``(..., dim_z, 1)`` or ``(dim_z,)``
            dt (float): The new sampling period, added to the clock.
            process_matrix (torch.Tensor): New process matrix F.
                Shape: ``(dim_x, dim_x)``

        Raises:
            SingularInnovationError: In strict mode, if H P Hᵀ + R is not invertible.
        """
        self._check_initialized("update_with_dynamics")
        mean, covariance, gain = self._correct(self._as_column(measure))

        self._process_matrix = torch.as_tensor(process_matrix, dtype=self.dtype, device=self.device).clone()
        self._dt = float(dt)
        self._t += self._dt
        self._mean, self._covariance, self._gain = mean, covariance, gain
        logger.debug("Process matrix replaced at t=%s (dt=%s)", self._t, self._dt)

    def filter(self, measures: Iterable[torch.Tensor], *, update_first=True, return_all=False) -> GaussianState:
        """Run the predict/update loop over a sequence of measures.

        The default time step and the current process matrix are used for every prediction.
        A measure with a NaN component is skipped (no update for the corresponding signal at that step).

        Args:
            measures (Iterable[torch.Tensor]): Measures in time order. A tensor of shape ``(T, ..., dim_z, 1)``
                can be given directly.
            update_first (bool): If True, the first measure updates the current estimate without prediction.
                Default: True
            return_all (bool): If True, return the posterior estimate of each step stacked on a leading time
                dimension (empty when there is no measure). Otherwise only the last one is returned.
                Default: False

        Returns:
            GaussianState: Last or all posterior estimates.
                Shape (mean): ``([T, ]..., dim_x, 1)``
                Shape (covariance): ``([T, ]..., dim_x, dim_x)``
        """
        self._check_initialized("filter")

        estimates: list[GaussianState] = []
        for step, measure in enumerate(measures):
            if step or not update_first:
                self.predict()

            measure = self._as_column(measure)  # noqa: PLW2901
            valid = ~torch.isnan(measure).any(dim=-2, keepdim=True)  # Shape: (..., 1, 1)
            if valid.any():
                mean, covariance, gain = self._correct(torch.nan_to_num(measure))
                self._mean = torch.where(valid, mean, self._mean)
                self._covariance = torch.where(valid, covariance, self._covariance)
                self._gain = gain

            if return_all:
                estimates.append(self.estimate())

        if not return_all:
            return self.estimate()

        if not estimates:  # No measures: empty time dimension
            batch = torch.broadcast_shapes(self._mean.shape[:-2], self._covariance.shape[:-2])
            return GaussianState(
                self._mean.new_empty(0, *batch, *self._mean.shape[-2:]),
                self._covariance.new_empty(0, *batch, *self._covariance.shape[-2:]),
            )

        # The covariance may only become batched after a partial (NaN) update
        batch = torch.broadcast_shapes(
            *(estimate.mean.shape[:-2] for estimate in estimates),
            *(estimate.covariance.shape[:-2] for estimate in estimates),
        )
        return GaussianState(
            torch.stack([e.mean.expand(*batch, self._state_dim, 1) for e in estimates]),
            torch.stack([e.covariance.expand(*batch, self._state_dim, self._state_dim) for e in estimates]),
        )

    @overload
    def to(self, dtype: torch.dtype) -> Estimator: ...

    @overload
    def to(self, device: torch.device) -> Estimator: ...

    def to(self, fmt):
        """Copy the estimator (model and running estimate) to another dtype or device.

        Args:
            fmt (torch.dtype | torch.device): Format to send the estimator to.

        Returns:
            Estimator: The converted estimator
        """
        if self.is_configured:
            other = Estimator(
                self._dt,
                self._process_matrix.to(fmt),
                self._measurement_matrix.to(fmt),
                self._process_noise.to(fmt),
                self._measurement_noise.to(fmt),
                self._initial_covariance.to(fmt),
                strict=self.strict,
            )
        else:
            other = Estimator(self._dt, strict=self.strict)

        other._t0 = self._t0  # noqa: SLF001
        other._t = self._t  # noqa: SLF001
        other._initialized = self._initialized  # noqa: SLF001
        other._mean = self._mean.to(fmt)  # noqa: SLF001
        other._covariance = self._covariance.to(fmt)  # noqa: SLF001
        other._gain = None if self._gain is None else self._gain.to(fmt)  # noqa: SLF001
        return other

    def _zero_state(self) -> torch.Tensor:
        return torch.zeros(max(self._state_dim, 0), 1, dtype=self.dtype, device=self.device)

    def _as_column(self, vector: torch.Tensor) -> torch.Tensor:
        vector = torch.as_tensor(vector, dtype=self.dtype, device=self.device)
        if vector.ndim == 1:
            return vector[:, None]
        return vector

    def _check_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise NotInitializedError(f"The estimator is not initialized: call `init` before `{operation}`.")

    def _project(self) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Compute (H x, S, S⁻¹) with S = H P Hᵀ + R."""
        mean = self._measurement_matrix @ self._mean
        covariance = self._measurement_matrix @ self._covariance @ self._measurement_matrix.mT + self._measurement_noise
        precision, info = torch.linalg.inv_ex(covariance)

        if (info != 0).any():
            if self.strict:
                raise SingularInnovationError(f"Singular innovation covariance at t={self._t}: S = {covariance}")
            logger.warning("Singular innovation covariance at t=%s. The estimate may be corrupted by NaN/Inf.", self._t)

        return mean, covariance, precision

    def _correct(self, measure: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Compute the corrected (x, P, K) for `measure` without modifying the estimator."""
        projected_mean, _, precision = self._project()

        gain = self._covariance @ self._measurement_matrix.mT @ precision
        mean = self._mean + gain @ (measure - projected_mean)
        covariance = (self._identity - gain @ self._measurement_matrix) @ self._covariance
        return mean, covariance, gain

    def __repr__(self) -> str:
        """Render the model and the current time of the estimator."""
        header = (
            f"Kalman Estimator (State dimension: {self._state_dim}, Measure dimension: {self._measure_dim}, "
            f"dt: {self._dt})"
        )
        if not self.is_configured:
            return header

        process = self._repr_pair("Process: ", ("F", self._process_matrix), ("Q", self._process_noise), 80)
        measurement = self._repr_pair(
            "Measurement: ", ("H", self._measurement_matrix), ("R", self._measurement_noise), 100
        )
        clock = f"Time: t = {self._t} (t0 = {self._t0})" if self._initialized else "Time: uninitialized"

        n_char = max(len(line) for line in "\n".join((process, measurement, clock)).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, process, measurement, clock])

    def _repr_pair(
        self, title: str, left: tuple[str, torch.Tensor], right: tuple[str, torch.Tensor], linewidth: int
    ) -> str:
        """Print two matrices side by side, or one below the other if too wide."""
        with printoptions(profile="short", sci_mode=False, linewidth=linewidth):
            left_lines = str(left[1]).split("\n")
            right_lines = str(right[1]).split("\n")

        indent = " " * (len(title) + 4)
        left_width = max(len(line) for line in left_lines)
        right_width = max(len(line) for line in right_lines)

        if left_width + right_width <= self._REPR_SPLIT_LENGTH:  # Single line
            heads = [f"{title}{left[0]} = "] + [indent] * (len(left_lines) - 1)
            seps = [f"  &  {right[0]} = "] + [" " * 9] * (len(right_lines) - 1)
            rows = itertools.zip_longest(heads, (line.ljust(left_width) for line in left_lines), seps, right_lines)
            return "\n".join("".join(part or "" for part in row).rstrip() for row in rows)

        # Two lines
        heads = [f"{title}{left[0]} = "] + [indent] * (len(left_lines) - 1)
        heads += ["", " " * len(title) + f"{right[0]} = "] + [indent] * (len(right_lines) - 1)
        return "\n".join("".join(row).rstrip() for row in zip(heads, [*left_lines, "", *right_lines]))
