# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from .state import ConvergenceResult


class TopologyError(Exception):
    """Root of all of the errors raised by the provisioner.

    Each error keeps the resource kind and the identifying key (region name, pair name, resource id) it is about
    and the underlying cause (mostly a botocore ClientError) so that the caller can diagnose without re-querying.
    """

    def __init__(self, message: str, kind: Optional[str] = None, key: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.key = key
        self.cause = cause

    def __str__(self) -> str:
        msg = super().__str__()
        context = ", ".join(f"{name}={value!r}" for name, value in (("kind", self.kind), ("key", self.key)) if value)
        return f"{msg} ({context})" if context else msg


class ValidationError(TopologyError):
    """Topology description is invalid. Always raised before any mutating call."""

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems: List[str] = list(problems)
        super().__init__("Invalid topology: " + "; ".join(self.problems))


class DependencyNotReadyError(TopologyError):
    """A gating condition did not become true within the bounded wait. Retryable by the caller."""

    def __init__(self, message: str, kind: str, key: str, waited_secs: float, last_observed: Optional[str] = None) -> None:
        super().__init__(message, kind, key)
        self.waited_secs = waited_secs
        self.last_observed = last_observed


class ProviderRejected(TopologyError):
    """The control-plane refused the call (quota, permission, malformed request). Not retried."""

    def __init__(self, kind: str, key: str, error_code: str, error_message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Provider rejected {kind} operation: {error_code}: {error_message}", kind, key, cause)
        self.error_code = error_code
        self.error_message = error_message


class DependencyViolationError(TopologyError):
    """A resource was about to be destroyed while dependents still exist."""

    def __init__(self, message: str, kind: str, key: str, dependents: Sequence[str] = (), cause: Optional[BaseException] = None) -> None:
        super().__init__(message, kind, key, cause)
        self.dependents: List[str] = list(dependents)


class RouteConflictError(TopologyError):
    """Destination CIDR is already routed to a target that is not managed by this topology."""


class ConvergenceCancelled(TopologyError):
    """Convergence was cancelled. Everything created so far is tagged and `status` can enumerate it."""


class PartialConvergenceError(TopologyError):
    """Some units of a convergence succeeded while others failed.

    `result` holds every identifier realized so far, `failures` the underlying errors (in the order they were
    collected). Calling `converge` again resumes from the realized state.
    """

    def __init__(self, result: "ConvergenceResult", failures: Sequence[BaseException]) -> None:
        self.result = result
        self.failures: List[BaseException] = list(failures)
        summary = "; ".join(str(f) for f in self.failures)
        super().__init__(f"Topology partially converged with {len(self.failures)} failure(s): {summary}", cause=self.failures[0] if self.failures else None)
