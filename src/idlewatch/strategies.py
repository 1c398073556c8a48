"""Interchangeable idle classification strategies."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class IdleDetectionStrategy(Protocol):
    """Decides whether a resource is idle from two activity readings."""

    name: str

    def is_idle(
        self,
        primary_utilization: float,
        secondary_activity: float,
        threshold: float,
    ) -> bool: ...


class CpuBasedIdleStrategy:
    """Idle when primary utilization (CPU) is below the threshold."""

    name = "cpu"

    def is_idle(
        self, primary_utilization: float, secondary_activity: float, threshold: float
    ) -> bool:
        return primary_utilization < threshold


class NetworkBasedIdleStrategy:
    """Idle when secondary activity (network, connections) is below the threshold."""

    name = "network"

    def is_idle(
        self, primary_utilization: float, secondary_activity: float, threshold: float
    ) -> bool:
        return secondary_activity < threshold


class CombinedIdleStrategy:
    """Idle only when both readings are below the threshold."""

    name = "combined"

    def is_idle(
        self, primary_utilization: float, secondary_activity: float, threshold: float
    ) -> bool:
        return primary_utilization < threshold and secondary_activity < threshold


STRATEGIES: dict[str, type] = {
    CpuBasedIdleStrategy.name: CpuBasedIdleStrategy,
    NetworkBasedIdleStrategy.name: NetworkBasedIdleStrategy,
    CombinedIdleStrategy.name: CombinedIdleStrategy,
}


def get_strategy(name: str) -> IdleDetectionStrategy:
    """Instantiate a strategy by name ('cpu', 'network' or 'combined')."""
    try:
        return STRATEGIES[name.strip().lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown idle strategy {name!r}: must be one of {sorted(STRATEGIES)}"
        ) from None
