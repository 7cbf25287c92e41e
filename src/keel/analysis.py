import inspect
import types
import typing
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple, Union, get_args, get_origin, Annotated

from .identifiers import KeyT


@dataclass(frozen=True)
class Named:
    """``Annotated`` marker selecting the binding registered under *name*."""

    name: str


@dataclass(frozen=True)
class Tagged:
    """``Annotated`` marker selecting the binding whose tag *key* equals *value*."""

    key: str
    value: Any


@dataclass(frozen=True)
class Inject:
    """``Annotated`` marker overriding the identifier resolved for a parameter."""

    identifier: Any


@dataclass(frozen=True)
class DependencyRequest:
    parameter_name: str
    key: KeyT
    is_optional: bool = False
    has_default: bool = False
    named: Optional[str] = None
    tagged: Optional[Tuple[str, Any]] = None


@dataclass(frozen=True)
class InjectionDeclaration:
    member: str
    identifier: KeyT
    optional: bool = False
    factory: Optional[Callable[[], Any]] = field(default=None, compare=False)
    named: Optional[str] = None
    tagged: Optional[Tuple[str, Any]] = None


def _extract_annotated(ann: Any) -> Tuple[Any, Optional[str], Optional[Tuple[str, Any]], Any]:
    named = None
    tagged = None
    override = None
    base = ann
    if get_origin(ann) is Annotated:
        args = get_args(ann)
        base = args[0] if args else Any
        for m in args[1:]:
            if isinstance(m, Named):
                named = m.name
            elif isinstance(m, Tagged):
                tagged = (m.key, m.value)
            elif isinstance(m, Inject):
                override = m.identifier
    return base, named, tagged, override


_UNION_TYPES = (Union, types.UnionType) if hasattr(types, "UnionType") else (Union,)


def _check_optional(ann: Any) -> Tuple[Any, bool]:
    if get_origin(ann) in _UNION_TYPES:
        args = [a for a in get_args(ann) if a is not type(None)]
        if len(args) == 1:
            return args[0], True
    return ann, False


def _hints(callable_obj: Callable[..., Any]) -> dict:
    target = callable_obj.__init__ if inspect.isclass(callable_obj) else callable_obj
    try:
        return typing.get_type_hints(target, include_extras=True)
    except Exception:
        return {}


def analyze_callable_dependencies(callable_obj: Callable[..., Any]) -> Tuple[DependencyRequest, ...]:
    try:
        sig = inspect.signature(callable_obj)
    except (ValueError, TypeError):
        return ()

    hints = _hints(callable_obj)
    plan: List[DependencyRequest] = []

    for name, param in sig.parameters.items():
        if name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue

        ann = hints.get(name, param.annotation)
        base_type, is_optional = _check_optional(ann)
        base_type, named, tagged, override = _extract_annotated(base_type)
        if not is_optional:
            base_type, is_optional = _check_optional(base_type)
        # unresolved string annotations name a string identifier
        if isinstance(base_type, typing.ForwardRef):
            base_type = base_type.__forward_arg__

        final_key: Any
        if override is not None:
            final_key = override
        elif isinstance(base_type, (type, str)):
            final_key = base_type
        elif ann is inspect.Parameter.empty or base_type is Any:
            final_key = name
        else:
            final_key = base_type

        has_default = param.default is not inspect.Parameter.empty
        plan.append(
            DependencyRequest(
                parameter_name=name,
                key=final_key,
                is_optional=is_optional or has_default,
                has_default=has_default,
                named=named,
                tagged=tagged,
            )
        )

    return tuple(plan)


def requests_from_identifiers(callable_obj: Callable[..., Any], identifiers: Tuple[Any, ...]) -> Tuple[DependencyRequest, ...]:
    """Pair explicitly declared identifiers with the callable's parameters, in order."""
    inferred = analyze_callable_dependencies(callable_obj)
    if len(identifiers) > len(inferred):
        raise ValueError(
            f"{getattr(callable_obj, '__name__', callable_obj)} declares {len(identifiers)} dependencies "
            f"but accepts only {len(inferred)} parameters"
        )
    out: List[DependencyRequest] = []
    for ident, req in zip(identifiers, inferred):
        if isinstance(ident, DependencyRequest):
            out.append(ident)
        else:
            out.append(DependencyRequest(parameter_name=req.parameter_name, key=ident,
                                         is_optional=req.is_optional, has_default=req.has_default))
    return tuple(out)
