"""Assembly-time errors.

Every error is raised while the plan is being built, before any provider
resource is touched.
"""
from typing import Optional, Sequence


class TopologyError(Exception):
    """Base class for all topology errors."""

    def __init__(self, message: str, stack: Optional[str] = None) -> None:
        super().__init__(message)
        self.stack = stack


class UnresolvedReferenceError(TopologyError):
    def __init__(
        self,
        stack: str,
        input_name: str,
        source: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        message = f"unresolved reference: input '{input_name}' of stack '{stack}'"
        if source:
            message += f" (source {source})"
        if detail:
            message += f": {detail}"
        super().__init__(message, stack=stack)
        self.input_name = input_name
        self.source = source


class CyclicDependencyError(TopologyError):
    def __init__(self, cycle: Sequence[str]) -> None:
        path = " -> ".join(list(cycle) + [cycle[0]]) if cycle else ""
        super().__init__(f"circular stack dependency: {path}", stack=cycle[0] if cycle else None)
        self.cycle = list(cycle)


class DiscoveryNameConflictError(TopologyError):
    def __init__(self, namespace: str, name: str, existing: str, incoming: str, stack: Optional[str] = None) -> None:
        super().__init__(
            f"discovery name '{name}' in namespace '{namespace}' is registered by "
            f"'{existing}' and requested again by '{incoming}'",
            stack=stack,
        )
        self.namespace = namespace
        self.name = name
        self.existing = existing
        self.incoming = incoming


class DuplicateIngressRuleError(TopologyError):
    """A rule reached a boundary twice; the composer's idempotence was bypassed."""


class TypeMismatchError(TopologyError):
    def __init__(self, stack: str, input_name: str, expected: str, actual: str, source: Optional[str] = None) -> None:
        message = (
            f"type mismatch: input '{input_name}' of stack '{stack}' expects "
            f"'{expected}' but source"
        )
        message += f" {source} " if source else " "
        message += f"provides '{actual}'"
        super().__init__(message, stack=stack)
        self.input_name = input_name
        self.expected = expected
        self.actual = actual


class DuplicateDeclarationError(TopologyError):
    pass


class InvalidDeclarationError(TopologyError, ValueError):
    pass


class MissingBindingError(TopologyError):
    def __init__(self, key: str, stack: Optional[str] = None) -> None:
        super().__init__(f"environment binding '{key}' is not set", stack=stack)
        self.key = key


class PlanNotProvisionableError(TopologyError):
    pass
