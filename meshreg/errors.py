"""Exception hierarchy for meshreg."""

from __future__ import annotations

from collections.abc import Iterable


class RegistryError(Exception):
    """Base exception for registry controller errors."""

    pass


class TargetPortNotFoundError(RegistryError):
    """Raised when a service target port cannot be resolved on a workload."""

    pass


class ServicePortNotFoundError(RegistryError):
    """Raised when a raw service port has no counterpart on the model."""

    pass


class ClusterMismatchError(RegistryError):
    """Raised when a proxy claims a cluster this controller does not serve."""

    def __init__(self, proxy_cluster: str, controller_cluster: str) -> None:
        super().__init__(
            f"proxy is in cluster {proxy_cluster}, "
            f"but controller is for cluster {controller_cluster}"
        )
        self.proxy_cluster = proxy_cluster
        self.controller_cluster = controller_cluster


class SyncError(RegistryError):
    """Flattened collection of failures from the ordered full sync."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors: tuple[BaseException, ...] = tuple(flatten_errors(errors))
        detail = "; ".join(str(error) for error in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred: {detail}")


def flatten_errors(errors: Iterable[BaseException | None]) -> list[BaseException]:
    """Drop empty entries and unnest nested ``SyncError`` collections."""
    flat: list[BaseException] = []
    for error in errors:
        if error is None:
            continue
        if isinstance(error, SyncError):
            flat.extend(error.errors)
        else:
            flat.append(error)
    return flat


def combine_errors(errors: Iterable[BaseException | None]) -> SyncError | None:
    flat = flatten_errors(errors)
    if not flat:
        return None
    return SyncError(flat)
