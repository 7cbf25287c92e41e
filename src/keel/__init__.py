# keel/__init__.py
try:
    from ._version import __version__
except Exception:
    __version__ = "0.0.0"

from .analysis import DependencyRequest, Inject, InjectionDeclaration, Named, Tagged
from .application import Application
from .binding import Binding
from .config import (
    ApplicationConfig,
    DictSource,
    EnvSource,
    JsonFileSource,
    TreeSource,
    YamlFileSource,
    configuration,
)
from .constants import (
    APPLICATION,
    CONTAINER,
    REGISTRY,
    SCOPE_REQUEST,
    SCOPE_SINGLETON,
    SCOPE_TRANSIENT,
)
from .container import Container
from .contextual import NO_OVERRIDE, ContextualBinding, ContextualBindingManager
from .decorators import (
    inject,
    inject_optional,
    injectable,
    is_injectable,
    register_injectable,
    register_property,
)
from .exceptions import (
    AsyncResolutionError,
    BindingNotFoundError,
    CodecError,
    ConfigurationError,
    ContextualBindingValidationError,
    CyclicDependencyError,
    InjectionFailureError,
    InvalidProviderError,
    InvalidStateError,
    KeelError,
    MetadataError,
    ProviderBootError,
    ProviderRegistrationError,
    ProviderTerminationError,
    ScopeError,
)
from .identifiers import Token, decode_identifier, decode_value, encode_identifier, encode_value
from .injection import PropertyInjectionResolver
from .metadata import MetadataStore, default_store, set_default_store
from .providers import (
    DeferredServiceProvider,
    ProviderConfig,
    ServiceProvider,
    TerminableServiceProvider,
    is_service_provider,
    service_provider,
    service_provider_options,
)
from .reflector import MemberKind, Reflector
from .registry import LifecycleState, ServiceProviderRegistry

__all__ = [
    "__version__",
    "Application",
    "ApplicationConfig",
    "Container",
    "ServiceProviderRegistry",
    "LifecycleState",
    "MetadataStore",
    "default_store",
    "set_default_store",
    "Reflector",
    "MemberKind",
    "PropertyInjectionResolver",
    "ContextualBinding",
    "ContextualBindingManager",
    "NO_OVERRIDE",
    "Binding",
    "Token",
    "encode_identifier",
    "decode_identifier",
    "encode_value",
    "decode_value",
    "inject",
    "inject_optional",
    "injectable",
    "is_injectable",
    "register_property",
    "register_injectable",
    "Inject",
    "Named",
    "Tagged",
    "DependencyRequest",
    "InjectionDeclaration",
    "ServiceProvider",
    "DeferredServiceProvider",
    "TerminableServiceProvider",
    "ProviderConfig",
    "service_provider",
    "is_service_provider",
    "service_provider_options",
    "configuration",
    "TreeSource",
    "DictSource",
    "EnvSource",
    "JsonFileSource",
    "YamlFileSource",
    "SCOPE_SINGLETON",
    "SCOPE_TRANSIENT",
    "SCOPE_REQUEST",
    "CONTAINER",
    "APPLICATION",
    "REGISTRY",
    "KeelError",
    "BindingNotFoundError",
    "CyclicDependencyError",
    "InjectionFailureError",
    "ContextualBindingValidationError",
    "InvalidProviderError",
    "ProviderRegistrationError",
    "ProviderBootError",
    "ProviderTerminationError",
    "AsyncResolutionError",
    "ScopeError",
    "InvalidStateError",
    "ConfigurationError",
    "MetadataError",
    "CodecError",
]
