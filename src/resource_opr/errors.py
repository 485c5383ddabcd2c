"""Exception taxonomy for the resource operator.

ValidationError subclasses are raised while building the graph, before any
provider call. ProviderError subclasses are raised by adapters and caught per
action by the executor. StateConflictError is fatal to a run.
"""

from typing import Optional


class ValidationError(Exception):
    """Declaration set is not a valid resource graph.

    Attributes:
        addresses: Offending resource addresses (Kind.name)
    """

    def __init__(self, message: str, addresses: Optional[list[str]] = None):
        self.addresses = list(addresses or [])
        super().__init__(message)


class DeclarationError(ValidationError):
    """Malformed declaration document (missing kind/name, bad types)."""


class DuplicateResourceError(ValidationError):
    """Two declarations share the same (kind, name)."""

    def __init__(self, address: str):
        super().__init__(f"Duplicate resource: '{address}'", [address])


class UndeclaredReferenceError(ValidationError):
    """A reference names a (kind, name) that is not declared.

    Attributes:
        missing: List of (referrer, target) address pairs
    """

    def __init__(self, missing: list[tuple[str, str]]):
        self.missing = list(missing)
        details = ', '.join(f"{src} -> {dst}" for src, dst in self.missing)
        super().__init__(
            f"Undeclared reference(s): {details}",
            [src for src, _ in self.missing],
        )


class CyclicDependencyError(ValidationError):
    """The reference graph contains a cycle.

    Attributes:
        cycle: Addresses along the cycle, ending with the first address again
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Dependency cycle: {' -> '.join(self.cycle)}",
            self.cycle[:-1] if len(self.cycle) > 1 else self.cycle,
        )


class UnknownKindError(ValidationError):
    """A declaration uses a resource kind with no registered adapter."""

    def __init__(self, kind: str, address: str):
        self.kind = kind
        super().__init__(f"Unknown resource kind '{kind}' for '{address}'", [address])


class ProviderError(Exception):
    """Error reported by a provider adapter.

    Attributes:
        message: Provider-reported reason, kept verbatim
        transient: True if the operation may succeed when retried
    """

    transient = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Rate limiting, momentary network failure, provider overload."""

    transient = True


class PermanentProviderError(ProviderError):
    """Bad input, quota/policy rejection, anything a retry will not fix."""


class PreconditionError(PermanentProviderError):
    """Provider refused the operation until a precondition is met.

    Attributes:
        precondition: Name of the unmet precondition (e.g. 'final_snapshot')
    """

    def __init__(self, message: str, precondition: str):
        self.precondition = precondition
        super().__init__(message)

    def __str__(self) -> str:
        return f"precondition '{self.precondition}' not satisfied: {self.message}"


class ResourceNotFoundError(PermanentProviderError):
    """The provider has no resource with the given id."""


class StateConflictError(Exception):
    """Run lock held elsewhere, or state changed since it was read."""
