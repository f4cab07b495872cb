import pytest
import torch


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.cuda.manual_seed_all(0)
    torch.use_deterministic_algorithms(True)


@pytest.fixture
def tracker_1d():
    """Model of the 1d position tracker: F = H = [[1]], Q = 1e-5, R = 1e-2, P0 = 1, dt = 0.1."""
    return {
        "dt": 0.1,
        "process_matrix": torch.tensor([[1.0]], dtype=torch.float64),
        "measurement_matrix": torch.tensor([[1.0]], dtype=torch.float64),
        "process_noise": torch.tensor([[1e-5]], dtype=torch.float64),
        "measurement_noise": torch.tensor([[1e-2]], dtype=torch.float64),
        "initial_covariance": torch.tensor([[1.0]], dtype=torch.float64),
    }


def pytest_runtest_setup(item):
    if "cuda" in item.keywords and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
