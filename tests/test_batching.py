import torch

from online_kf import Estimator


def _spd_matrix(dim: int, batch: tuple[int, ...] = ()) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(*batch, dim, dim, dtype=torch.float64)
    return cov @ cov.mT + 1e-2 * torch.eye(dim, dtype=torch.float64)


def random_estimator(dim_x: int, dim_z: int, batch: tuple[int, ...] = ()) -> Estimator:
    return Estimator(
        1.0,
        torch.randn(*batch, dim_x, dim_x, dtype=torch.float64),
        torch.randn(*batch, dim_z, dim_x, dtype=torch.float64),
        _spd_matrix(dim_x, batch),
        _spd_matrix(dim_z, batch),
        _spd_matrix(dim_x),
    )


def _single(estimator: Estimator, *idx: int) -> Estimator:
    return Estimator(
        estimator.dt,
        estimator.process_matrix[idx] if idx else estimator.process_matrix,
        estimator.measurement_matrix[idx] if idx else estimator.measurement_matrix,
        estimator.process_noise[idx] if idx else estimator.process_noise,
        estimator.measurement_noise[idx] if idx else estimator.measurement_noise,
        estimator.initial_covariance,
    )


def test_batch_of_states_matches_single_estimators():
    batch, length = 5, 4
    dim_x, dim_z = 3, 2
    estimator = random_estimator(dim_x, dim_z)
    x0 = torch.randn(batch, dim_x, 1, dtype=torch.float64)
    measures = torch.randn(length, batch, dim_z, 1, dtype=torch.float64)

    estimator.init(0.0, x0)
    for measure in measures:
        estimator.predict()
        estimator.update(measure)

    assert estimator.state().shape == (batch, dim_x, 1)

    for b in range(batch):
        single = _single(estimator)
        single.init(0.0, x0[b])
        for measure in measures:
            single.predict()
            single.update(measure[b])

        assert torch.allclose(single.state(), estimator.state()[b])
        assert torch.allclose(single.covariance, estimator.covariance)  # The covariance does not depend on x


def test_batch_of_models_broadcasts_with_states():
    models, batch = 3, 4
    dim_x, dim_z = 2, 1
    estimator = random_estimator(dim_x, dim_z, batch=(models, 1))
    x0 = torch.randn(batch, dim_x, 1, dtype=torch.float64)
    measure = torch.randn(batch, dim_z, 1, dtype=torch.float64)

    estimator.init(0.0, x0)
    estimator.predict()
    estimator.update(measure)

    assert estimator.state().shape == (models, batch, dim_x, 1)
    assert estimator.covariance.shape == (models, 1, dim_x, dim_x)

    for m in range(models):
        for b in range(batch):
            single = _single(estimator, m, 0)
            single.init(0.0, x0[b])
            single.predict()
            single.update(measure[b])

            assert torch.allclose(single.state(), estimator.state()[m, b])
            assert torch.allclose(single.covariance, estimator.covariance[m, 0])


def test_project_broadcasts_over_states():
    batch = 6
    dim_x, dim_z = 4, 2
    estimator = random_estimator(dim_x, dim_z)
    estimator.init(0.0, torch.randn(batch, dim_x, 1))

    projection = estimator.project()

    assert projection.mean.shape == (batch, dim_z, 1)
    assert projection.covariance.shape == (dim_z, dim_z)

    # Gating of a single measure against every tracked signal
    distances = projection.mahalanobis(torch.randn(dim_z, 1, dtype=torch.float64))
    assert distances.shape == (batch,)
