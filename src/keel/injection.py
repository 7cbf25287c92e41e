"""Property injection.

:class:`PropertyInjectionResolver` fills the declared members of a freshly
materialized instance from a container. Declarations come from the
:class:`~keel.reflector.Reflector`, so inherited declarations are honoured and
a subclass may redeclare a member.
"""

import logging
from typing import Any, List

from .analysis import InjectionDeclaration
from .exceptions import InjectionFailureError
from .identifiers import identifier_name
from .reflector import Reflector

_logger = logging.getLogger(__name__)


class PropertyInjectionResolver:
    """Assigns injected members on instances.

    Args:
        reflector: Source of the injection declarations.
    """

    def __init__(self, reflector: Reflector) -> None:
        self._reflector = reflector

    def declarations_for(self, cls: type):
        return self._reflector.injection_declarations(cls)

    def has_property_injections(self, cls: type) -> bool:
        return len(self.declarations_for(cls)) > 0

    def resolve(self, instance: Any, container: Any) -> None:
        """Inject every declared member of *instance*.

        Optional members whose dependency cannot be resolved are set to
        ``None``. A required member that fails aborts the whole call with
        :class:`InjectionFailureError`; members assigned before it keep their
        values.

        Raises:
            InjectionFailureError: If a required member cannot be resolved.
        """
        owner = type(instance)
        for decl in self.declarations_for(owner):
            try:
                service = self._resolve_one(decl, owner, container)
            except Exception as e:
                if not decl.optional:
                    raise InjectionFailureError(decl.member, owner, decl.identifier, e) from e
                setattr(instance, decl.member, None)
                _logger.debug("Optional injection failed for %s.%s: %s", owner.__name__, decl.member, e)
                continue
            setattr(instance, decl.member, service)
            _logger.debug("Injected %s into %s.%s", identifier_name(decl.identifier), owner.__name__, decl.member)

    def _resolve_one(self, decl: InjectionDeclaration, owner: type, container: Any) -> Any:
        if decl.factory is not None:
            return decl.factory()
        if decl.named is not None:
            return container.get_named(decl.identifier, decl.named, context=owner)
        if decl.tagged is not None:
            key, value = decl.tagged
            return container.get_tagged(decl.identifier, key, value, context=owner)
        return container.get(decl.identifier, context=owner)

    @staticmethod
    def validate_declaration(decl: InjectionDeclaration) -> List[str]:
        problems: List[str] = []
        if not decl.member:
            problems.append("member name is required")
        if decl.identifier is None or decl.identifier == "":
            problems.append("identifier is required")
        if decl.named is not None and not isinstance(decl.named, (str, int)):
            problems.append("named constraint must be a string or integer")
        if decl.tagged is not None and (not isinstance(decl.tagged, tuple) or len(decl.tagged) != 2):
            problems.append("tag constraint must be a (key, value) pair")
        if decl.factory is not None and not callable(decl.factory):
            problems.append("factory must be callable")
        return problems
