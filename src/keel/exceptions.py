"""Exception hierarchy for keel.

All framework-specific exceptions inherit from :class:`KeelError`, making it
easy to catch any keel error with a single ``except KeelError`` clause.
"""

from typing import Any, Iterable, List, Optional


def _name(obj: Any) -> str:
    if isinstance(obj, str):
        return obj
    name = getattr(obj, "name", None)
    if isinstance(name, str) and not isinstance(obj, type):
        return name
    return getattr(obj, "__name__", str(obj))


class KeelError(Exception):
    """Base exception for all keel errors."""

    pass


class BindingNotFoundError(KeelError):
    """Raised when no binding, deferred provider or contextual override resolves a key.

    Attributes:
        identifier: The identifier that could not be resolved.
        consumer: The consumer that requested it, if known.
    """

    def __init__(self, identifier: Any, consumer: Any = None):
        origin = _name(consumer) if consumer is not None else "root"
        super().__init__(f"No binding found for '{_name(identifier)}' (required by: '{origin}')")
        self.identifier = identifier
        self.consumer = consumer


class CyclicDependencyError(KeelError):
    """Raised when an identifier is requested while it is already being resolved.

    Attributes:
        chain: The resolution path, ending with the repeated identifier.
    """

    def __init__(self, chain: Iterable[Any]):
        self.chain = tuple(chain)
        path = " -> ".join(_name(k) for k in self.chain)
        super().__init__(f"Circular dependency detected: {path}")


class InjectionFailureError(KeelError):
    """Raised when a required property injection cannot be satisfied.

    Attributes:
        member: The member that could not be injected.
        owner: The class whose instance was being injected.
        identifier: The identifier that failed to resolve.
        cause: The underlying exception.
    """

    def __init__(self, member: str, owner: type, identifier: Any, cause: Optional[Exception] = None):
        msg = f"Failed to inject property '{member}' with service '{_name(identifier)}' in class '{_name(owner)}'"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
        self.member = member
        self.owner = owner
        self.identifier = identifier
        self.cause = cause


class ContextualBindingValidationError(KeelError):
    """Raised when a contextual binding is malformed.

    Attributes:
        problems: Every problem found in the binding.
    """

    def __init__(self, problems: List[str]):
        super().__init__("Invalid contextual binding:\n" + "\n".join(f"- {p}" for p in problems))
        self.problems = list(problems)


class InvalidProviderError(KeelError):
    """Raised when a service provider lacks a required capability.

    Attributes:
        provider_name: Class name of the offending provider.
        problems: Every missing capability.
    """

    def __init__(self, provider_name: str, problems: List[str]):
        super().__init__(f"Invalid provider '{provider_name}': " + "; ".join(problems))
        self.provider_name = provider_name
        self.problems = list(problems)


class ProviderRegistrationError(KeelError):
    """Raised by bulk registration with every provider that failed validation.

    Attributes:
        errors: The individual :class:`InvalidProviderError` instances.
    """

    def __init__(self, errors: List[InvalidProviderError]):
        super().__init__("Provider registration failed:\n" + "\n".join(f"- {e}" for e in errors))
        self.errors = list(errors)


class ProviderBootError(KeelError):
    """Raised when a provider fails to register or boot. Halts ``boot()``.

    Attributes:
        provider_name: Class name of the failing provider.
        cause: The original exception.
    """

    def __init__(self, provider_name: str, cause: Exception):
        super().__init__(f"Failed to boot provider '{provider_name}': {cause.__class__.__name__}: {cause}")
        self.provider_name = provider_name
        self.cause = cause


class ProviderTerminationError(KeelError):
    """Wraps a failure raised by a provider's ``terminate()``. Never re-raised.

    Attributes:
        provider_name: Class name of the failing provider.
        cause: The original exception.
    """

    def __init__(self, provider_name: str, cause: BaseException):
        super().__init__(f"Error terminating provider '{provider_name}': {cause.__class__.__name__}: {cause}")
        self.provider_name = provider_name
        self.cause = cause


class AsyncResolutionError(KeelError):
    """Raised when a synchronous resolution meets an awaitable.

    Attributes:
        identifier: The identifier being resolved.
    """

    def __init__(self, identifier: Any):
        super().__init__(
            f"Synchronous resolution of '{_name(identifier)}' produced an awaitable. Use aresolve() instead."
        )
        self.identifier = identifier


class ScopeError(KeelError):
    """Raised for scope problems (unknown scope, no active request boundary)."""

    def __init__(self, msg: str):
        super().__init__(msg)


class InvalidStateError(KeelError):
    """Raised when a lifecycle operation is attempted in the wrong state."""

    def __init__(self, state: Any, expected: Iterable[Any]):
        names = ", ".join(getattr(s, "value", str(s)) for s in expected)
        current = getattr(state, "value", str(state))
        super().__init__(f"Invalid state: {current}. Expected one of: {names}")
        self.state = state
        self.expected = tuple(expected)


class ConfigurationError(KeelError):
    """Raised for configuration problems (unreadable sources, bad values)."""

    def __init__(self, msg: str):
        super().__init__(msg)


class MetadataError(KeelError):
    """Raised when metadata cannot be stored for an entity."""

    def __init__(self, msg: str):
        super().__init__(msg)


class CodecError(KeelError):
    """Raised when an identifier or value cannot be encoded or decoded."""

    def __init__(self, msg: str):
        super().__init__(msg)
