"""Constants used throughout keel.

This module defines the framework logger, the metadata keys written by the
declaration front-ends, the binding scopes and strategies, and the well-known
injection tokens.
"""

import logging

from .identifiers import Token

LOGGER_NAME: str = "keel"
"""Default logger name for keel."""

LOGGER: logging.Logger = logging.getLogger(LOGGER_NAME)
"""Package logger for keel internal diagnostics."""

INJECT_PROPERTY: Token = Token("inject:property")
"""Metadata key for the ``{member: InjectionDeclaration}`` mapping of a class."""

INJECT_CONSTRUCTOR: Token = Token("inject:constructor")
"""Metadata key for explicitly declared constructor dependencies."""

INJECTABLE: Token = Token("injectable")
"""Metadata key marking a class as injectable."""

SERVICE_PROVIDER: Token = Token("service_provider:is_provider")
"""Metadata key marking a class as a service provider."""

SERVICE_PROVIDER_OPTIONS: Token = Token("service_provider:options")
"""Metadata key storing the :class:`~keel.providers.ProviderConfig` declared by ``@service_provider``."""

SCOPE_SINGLETON: str = "singleton"
"""One instance per container lifetime."""

SCOPE_TRANSIENT: str = "transient"
"""A new instance on every resolution."""

SCOPE_REQUEST: str = "request"
"""One instance per active request boundary."""

KNOWN_SCOPES = (SCOPE_SINGLETON, SCOPE_TRANSIENT, SCOPE_REQUEST)

STRATEGY_CONSTANT: str = "constant"
STRATEGY_FACTORY: str = "factory"
STRATEGY_CLASS: str = "class"

CONTAINER: Token = Token("Container")
APPLICATION: Token = Token("Application")
REGISTRY: Token = Token("ServiceProviderRegistry")
