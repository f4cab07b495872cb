"""Example tracking a 2d target whose sensor changes its sampling period"""

import argparse
import logging

import matplotlib.pyplot as plt
import torch

from online_kf.ckf import constant_estimator, constant_process_matrix


def simulate(periods: list[float], process_std: float, measurement_std: float) -> tuple[torch.Tensor, torch.Tensor]:
    """Simulate a 2d target with a random walk velocity, observed at the given sampling periods.

    Args:
        periods (list[float]): Time elapsed before each measure
        process_std (float): Std of the acceleration
        measurement_std (float): Std of the position measures

    Returns:
        torch.Tensor: True positions
            Shape: (T, 2, 1)
        torch.Tensor: Measured positions
            Shape: (T, 2, 1)
    """
    position, velocity = torch.zeros(2, 1), torch.ones(2, 1)
    positions = torch.empty(len(periods), 2, 1)
    for t, dt in enumerate(periods):
        velocity = velocity + torch.randn(2, 1) * process_std * dt
        position = position + velocity * dt
        positions[t] = position
    return positions, positions + torch.randn_like(positions) * measurement_std


def main(n: int, measurement_std: float, process_std: float, switch_every: int):
    logging.basicConfig(level=logging.DEBUG)

    # The sensor alternates between 10Hz and 2Hz every `switch_every` measures
    periods = [0.1 if (t // switch_every) % 2 == 0 else 0.5 for t in range(n)]
    positions, measures = simulate(periods, process_std, measurement_std)

    estimator = constant_estimator(
        measurement_std, process_std, dim=2, order=1, dt=periods[0], expected_model=True, dtype=torch.float64
    )
    estimator.init(0.0, torch.cat((measures[0], torch.zeros(2, 1))).to(torch.float64))
    print(estimator)

    estimates = torch.empty(n, estimator.state_dim, 1, dtype=torch.float64)
    estimates[0] = estimator.state()
    gates = []
    switched = False
    for t in range(1, n):
        # After a switch, the clock already reached this measure
        estimator.predict(0.0 if switched else None)
        gates.append(estimator.project().mahalanobis(measures[t].to(torch.float64)).item())

        next_period = periods[t + 1] if t + 1 < n else estimator.dt
        switched = next_period != estimator.dt
        if switched:  # The sensor rate changes: switch the dynamics for the next predictions
            process_matrix = constant_process_matrix(1, next_period, dim=2, dtype=torch.float64)
            estimator.update_with_dynamics(measures[t], next_period, process_matrix)
        else:
            estimator.update(measures[t])
        estimates[t] = estimator.state()

    print(f"Sensor clock: {sum(periods[1:])}, estimator clock: {estimator.time()}")
    print(f"Measure MSE: {(measures - positions).pow(2).mean()}")
    print(f"Filtering MSE: {(estimates[:, :2].to(torch.float32) - positions).pow(2).mean()}")
    print(f"Mean Mahalanobis distance of the measures: {sum(gates) / len(gates)}")

    plt.figure(figsize=(24, 16))
    plt.plot(positions[:, 0, 0], positions[:, 1, 0], color="k", label="True trajectory")
    plt.plot(measures[:, 0, 0], measures[:, 1, 0], "o", color="r", markersize=2.0, label="Measures")
    plt.plot(estimates[:, 0, 0], estimates[:, 1, 0], color="y", label="Filtered trajectory")
    plt.xlabel("x")
    plt.ylabel("y")
    plt.legend(loc="upper right")
    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Kalman estimator example, with a sensor changing its rate")
    parser.add_argument("--n", default=400, type=int, help="Number of measures")
    parser.add_argument("--measurement-std", default=0.5, type=float, help="Std of the measurement noise")
    parser.add_argument("--process-std", default=1.0, type=float, help="Std of the target acceleration")
    parser.add_argument("--switch-every", default=50, type=int, help="Number of measures between rate switches")
    args = parser.parse_args()

    torch.manual_seed(0)
    main(args.n, args.measurement_std, args.process_std, args.switch_every)
