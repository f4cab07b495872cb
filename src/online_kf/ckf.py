"""Constant-derivative motion models.

The state holds, for each of ``dim`` independent axes, a value and its derivatives
up to ``order`` (``order=0``: constant position, ``1``: constant velocity,
``2``: constant acceleration, ...). Only the values are measured.

Two noise models are available for the process:

- constant order-th derivative (default): the highest derivative stays constant
  over a step, up to an additive noise of std ``process_std``;
- expected model: the (order+1)-th derivative is a zero-mean white noise of std
  ``process_std`` over the step.

F depends on the time step. When the sampling period of the sensor changes, the
matching F can be rebuilt and handed to :meth:`~online_kf.Estimator.update_with_dynamics`
so that the following predictions use it. It already moves the clock to the next
measure, so the next prediction does not advance it:

```python
    estimator = constant_estimator(1.0, 0.5, dim=2, order=1, dt=0.1)
    estimator.init()
    switched = False
    for z, next_dt in stream:  # next_dt: delay before the following measure
        estimator.predict(0.0 if switched else None)
        switched = next_dt != estimator.dt
        if switched:
            estimator.update_with_dynamics(z, next_dt, constant_process_matrix(1, next_dt, dim=2))
        else:
            estimator.update(z)
```
"""

from __future__ import annotations

import math

import torch

from .estimator import Estimator


def _derivative_first(dim: int, order: int) -> torch.Tensor:
    """Permutation from the (x, x', y, y') layout to the (x, y, x', y') one."""
    return torch.arange(dim * (order + 1)).reshape(dim, order + 1).T.reshape(-1)


def _arrange(blocks: list[torch.Tensor], order: int, order_by_dim: bool, dtype: torch.dtype | None) -> torch.Tensor:
    matrix = torch.block_diag(*blocks)
    if not order_by_dim:
        permutation = _derivative_first(len(blocks), order)
        matrix = matrix[permutation][:, permutation]
    return matrix.to(dtype or torch.get_default_dtype()).contiguous()


def constant_process_matrix(
    order: int, dt=1.0, *, dim=1, order_by_dim=False, approximate=False, dtype: torch.dtype | None = None
) -> torch.Tensor:
    r"""Process matrix ``F`` of a constant-derivative model.

    Each derivative is propagated with the Taylor expansion truncated at ``order``:

    x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    For instance with ``order=2`` and ``dt=0.5`` (a single axis)::

        [
            [1, 0.5, 0.125],
            [0, 1.0, 0.5],
            [0, 0.0, 1.0],
        ]

    Args:
        order (int): Highest derivative in the state.
        dt (float): Time step.
            Default: 1.0
        dim (int): Number of independent axes.
            Default: 1
        order_by_dim (bool): If True, the state is grouped by axis (x, x', y, y'),
            otherwise by derivative (x, y, x', y').
            Default: False
        approximate (bool): Keep only first order terms (x^{(i)} + dt x^{(i+1)}).
            Default: False
        dtype (torch.dtype | None): Dtype of the matrix.
            Default: torch default dtype

    Returns:
        torch.Tensor: F
            Shape: ``(dim * (order + 1), dim * (order + 1))``
    """
    block = torch.zeros(order + 1, order + 1, dtype=torch.float64)
    for i in range(order + 1):
        for j in range(i, order + 1):
            lag = j - i
            if approximate and lag > 1:
                continue
            block[i, j] = dt**lag / math.factorial(lag)

    return _arrange([block] * dim, order, order_by_dim, dtype)


def constant_process_noise(  # noqa: PLR0913
    process_std: float | torch.Tensor,
    order: int,
    dt=1.0,
    *,
    dim=1,
    order_by_dim=False,
    expected_model=False,
    approximate=False,
    dtype: torch.dtype | None = None,
) -> torch.Tensor:
    """Process noise covariance ``Q`` of a constant-derivative model.

    The noise of each axis enters through its highest derivative (constant model) or through
    the next one (expected model) and is integrated over ``dt`` with the same Taylor
    coefficients as F. It yields a rank-one block ``std² c cᵀ`` per axis.

    Args:
        process_std (float | torch.Tensor): Noise std, homogeneous to the order-th derivative
            (or to the (order+1)-th one with `expected_model`).
            Shape: broadcastable to ``(dim,)``
        order (int): Highest derivative in the state.
        dt (float): Time step.
            Default: 1.0
        dim (int): Number of independent axes.
            Default: 1
        order_by_dim (bool): State layout, see `constant_process_matrix`.
            Default: False
        expected_model (bool): Use the zero-mean (order+1)-th derivative model.
            Default: False
        approximate (bool): Keep only first order terms: only the highest derivative is noisy.
            Default: False
        dtype (torch.dtype | None): Dtype of the matrix.
            Default: torch default dtype

    Returns:
        torch.Tensor: Q
            Shape: ``(dim * (order + 1), dim * (order + 1))``
    """
    process_std = torch.broadcast_to(torch.as_tensor(process_std, dtype=torch.float64), (dim,))

    shift = int(expected_model)
    powers = [order + shift - i for i in range(order + 1)]
    coefficients = torch.tensor(
        [dt**power / math.factorial(power) if not approximate or power <= shift else 0.0 for power in powers],
        dtype=torch.float64,
    )
    block = torch.outer(coefficients, coefficients)

    return _arrange([std**2 * block for std in process_std], order, order_by_dim, dtype)


def constant_measurement_matrix(
    order: int, *, dim=1, order_by_dim=False, dtype: torch.dtype | None = None
) -> torch.Tensor:
    """Measurement matrix ``H`` selecting the value of each axis.

    Returns:
        torch.Tensor: H
            Shape: ``(dim, dim * (order + 1))``
    """
    measurement_matrix = torch.zeros(dim, dim * (order + 1), dtype=dtype or torch.get_default_dtype())
    axes = torch.arange(dim)
    measurement_matrix[axes, axes * (order + 1) if order_by_dim else axes] = 1.0
    return measurement_matrix


def constant_estimator(  # noqa: PLR0913
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    dim=2,
    order=1,
    dt=1.0,
    initial_std: float | torch.Tensor = 10.0,
    expected_model=False,
    order_by_dim=False,
    approximate=False,
    strict=True,
    dtype: torch.dtype | None = None,
) -> Estimator:
    """Build an estimator for a constant-derivative model.

    The state has ``(order + 1) * dim`` components, only the ``dim`` values are measured
    with independent noises.

    Args:
        measurement_std (float | torch.Tensor): Measurement noise std. 99.7% of the measures are
            expected within 3 std of the true value.
            Shape: broadcastable to ``(dim,)``
        process_std (float | torch.Tensor): Process noise std (see `constant_process_noise`).
            Shape: broadcastable to ``(dim,)``
        dim (int): Number of independent axes.
            Default: 2
        order (int): Highest derivative in the state.
            Default: 1 (constant velocity)
        dt (float): Default time step of the estimator.
            Default: 1.0
        initial_std (float | torch.Tensor): Std of the initial uncertainty on every state component.
            Shape: broadcastable to ``(dim * (order + 1),)``
            Default: 10.0
        expected_model (bool): Use the zero-mean (order+1)-th derivative process noise.
            Default: False
        order_by_dim (bool): State layout, see `constant_process_matrix`.
            Default: False
        approximate (bool): Use the first order approximation of the model.
            Default: False
        strict (bool): Fail on singular innovation covariance, see `Estimator`.
            Default: True
        dtype (torch.dtype | None): Dtype of the model.
            Default: torch default dtype

    Returns:
        Estimator: Uninitialized estimator for the model.
    """
    dtype = dtype or torch.get_default_dtype()
    state_dim = (order + 1) * dim

    measurement_std = torch.broadcast_to(torch.as_tensor(measurement_std, dtype=dtype), (dim,))
    initial_std = torch.broadcast_to(torch.as_tensor(initial_std, dtype=dtype), (state_dim,))

    return Estimator(
        dt,
        constant_process_matrix(order, dt, dim=dim, order_by_dim=order_by_dim, approximate=approximate, dtype=dtype),
        constant_measurement_matrix(order, dim=dim, order_by_dim=order_by_dim, dtype=dtype),
        constant_process_noise(
            process_std,
            order,
            dt,
            dim=dim,
            order_by_dim=order_by_dim,
            expected_model=expected_model,
            approximate=approximate,
            dtype=dtype,
        ),
        torch.diag(measurement_std**2),
        torch.diag(initial_std**2),
        strict=strict,
    )
