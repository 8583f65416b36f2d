"""
Component definitions & exposed-command registry.

This module contains:
- exposed (decorator marking methods callable by the peer)
- ComponentDefinition (immutable per-process component description)
- ComponentRegistry (registration, lookup and include resolution)
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, NamedTuple, TypedDict, TypeVar, overload

from ..errors import ComponentDefinitionError, UnknownComponentError
from ..shared import ClientEndpoint, HostEndpoint, SharedEndpoint

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

RESERVED_ATTRIBUTES = frozenset(
    {"client", "host", "tools", "instances", "context", "shared_context", "definition"}
)

_FRAMEWORK_CLASSES = (SharedEndpoint, HostEndpoint, ClientEndpoint, object)


class Side(str, Enum):
    HOST = "host"
    CLIENT = "client"


class ExposedCommand(NamedTuple):
    attribute: str
    reply: bool


class WireDefinition(TypedDict):
    name: str
    library: bool
    hostCommands: dict[str, bool]
    clientCommands: dict[str, bool]
    includes: list[str]
    assets: list[str]


# ---------------------------------------------------------------------------
# @exposed
# ---------------------------------------------------------------------------

@overload
def exposed(func: F) -> F: ...
@overload
def exposed(name: str | None = None, *, reply: bool = False) -> Callable[[F], F]: ...


def exposed(func: Any = None, *, reply: bool = False) -> Any:
    """Mark a method as callable by the peer.

    Usage::

        @exposed
        def add(self, a, b): ...

        @exposed("requestRefresh")
        def request_refresh(self): ...

        @exposed(reply=True)
        def prompt(self, text): ...

    ``reply=True`` makes the caller's stub receive the method's return value
    through a reply id instead of resolving with ``None``.
    """
    wire_name = func if isinstance(func, str) else None

    def mark(f: F) -> F:
        if not callable(f):
            raise ComponentDefinitionError(f"@exposed target {f!r} is not callable")
        f._tandem_exposed = wire_name or f.__name__  # type: ignore[attr-defined]
        f._tandem_reply = reply  # type: ignore[attr-defined]
        return f

    if func is None or wire_name is not None:
        return mark
    return mark(func)


def _check_reserved(cls: type, component: str) -> None:
    for klass in cls.__mro__:
        if klass in _FRAMEWORK_CLASSES:
            continue
        clash = RESERVED_ATTRIBUTES.intersection(vars(klass))
        if clash:
            raise ComponentDefinitionError(
                f"Component {component}: {klass.__qualname__} defines reserved attribute(s) "
                f"{sorted(clash)}"
            )


def _scan_exposed(cls: type, component: str) -> dict[str, ExposedCommand]:
    table: dict[str, ExposedCommand] = {}

    def add(wire_name: str, attribute: str, reply: bool) -> None:
        existing = table.get(wire_name)
        if existing is not None and existing.attribute != attribute:
            raise ComponentDefinitionError(
                f"Component {component}: command {wire_name!r} is exposed by both "
                f"{existing.attribute} and {attribute}"
            )
        table[wire_name] = ExposedCommand(attribute, reply)

    for attribute in dir(cls):
        if attribute.startswith("__"):
            continue
        member = inspect.getattr_static(cls, attribute)
        if isinstance(member, property):
            if getattr(member.fget, "_tandem_exposed", None):
                raise ComponentDefinitionError(
                    f"Component {component}: exposed member {attribute!r} is a property, not a method"
                )
            continue
        member = getattr(cls, attribute)
        wire_name = getattr(member, "_tandem_exposed", None)
        if wire_name is None:
            continue
        if not callable(member):
            raise ComponentDefinitionError(
                f"Component {component}: exposed member {attribute!r} is not callable"
            )
        add(wire_name, attribute, bool(getattr(member, "_tandem_reply", False)))

    for attribute in getattr(cls, "__exposed__", ()):
        if not hasattr(cls, attribute):
            raise ComponentDefinitionError(
                f"Component {component}: __exposed__ names missing member {attribute!r}"
            )
        member = getattr(cls, attribute)
        if not callable(member):
            raise ComponentDefinitionError(
                f"Component {component}: exposed member {attribute!r} is not callable"
            )
        if not any(entry.attribute == attribute for entry in table.values()):
            add(attribute, attribute, False)

    return table


def _compose(name: str, side_cls: type | None, base_cls: type | None, default: type) -> type:
    for bundle, required in ((side_cls, default), (base_cls, SharedEndpoint)):
        if bundle is not None and not (isinstance(bundle, type) and issubclass(bundle, required)):
            raise ComponentDefinitionError(
                f"Component {name}: {bundle!r} must subclass {required.__name__}"
            )
    bases = [c for c in (side_cls, base_cls) if c is not None and c is not SharedEndpoint]
    if side_cls is None:
        bases.append(default)
    try:
        return type(f"{name}{default.__name__}", tuple(bases), {})
    except TypeError as exc:
        raise ComponentDefinitionError(f"Component {name}: cannot combine bundles: {exc}") from exc


def resolve_exposed_methods(definition: ComponentDefinition, side: Side) -> dict[str, ExposedCommand]:
    """Return ``wire name -> ExposedCommand`` for *side* of *definition*.

    Raises:
        ComponentDefinitionError: If a marked or listed member is not callable,
            or a bundle defines a reserved attribute.
    """
    cls = definition.instance_class(side)
    _check_reserved(cls, definition.name)
    return _scan_exposed(cls, definition.name)


# ---------------------------------------------------------------------------
# ComponentDefinition
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class ComponentDefinition:
    """Static description of one component, shared by every session."""

    name: str
    library: bool = False
    base: type[SharedEndpoint] | None = None
    host: type[HostEndpoint] | None = None
    client: type[ClientEndpoint] | None = None
    includes: tuple[str, ...] = ()
    assets: tuple[str, ...] = ()
    host_instance_class: type[HostEndpoint] = field(init=False, repr=False)
    client_instance_class: type[ClientEndpoint] = field(init=False, repr=False)
    host_commands: Mapping[str, ExposedCommand] = field(init=False, repr=False)
    client_commands: Mapping[str, ExposedCommand] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.name or not isinstance(self.name, str):
            raise ComponentDefinitionError(f"Invalid component name: {self.name!r}")
        object.__setattr__(self, "includes", tuple(self.includes))
        object.__setattr__(self, "assets", tuple(self.assets))
        object.__setattr__(
            self, "host_instance_class", _compose(self.name, self.host, self.base, HostEndpoint))
        object.__setattr__(
            self, "client_instance_class", _compose(self.name, self.client, self.base, ClientEndpoint))
        object.__setattr__(
            self, "host_commands", MappingProxyType(resolve_exposed_methods(self, Side.HOST)))
        object.__setattr__(
            self, "client_commands", MappingProxyType(resolve_exposed_methods(self, Side.CLIENT)))

    def instance_class(self, side: Side) -> type:
        return self.host_instance_class if side is Side.HOST else self.client_instance_class

    def commands(self, side: Side) -> Mapping[str, ExposedCommand]:
        return self.host_commands if side is Side.HOST else self.client_commands

    def to_wire(self) -> WireDefinition:
        """Data-only description sent to the client in install payloads."""
        return WireDefinition(
            name=self.name,
            library=self.library,
            hostCommands={k: v.reply for k, v in self.host_commands.items()},
            clientCommands={k: v.reply for k, v in self.client_commands.items()},
            includes=list(self.includes),
            assets=list(self.assets),
        )


# ---------------------------------------------------------------------------
# ComponentRegistry
# ---------------------------------------------------------------------------

class ComponentRegistry:
    """Process-wide, registration-ordered set of component definitions."""

    def __init__(self) -> None:
        self._definitions: dict[str, ComponentDefinition] = {}

    def register(self, definition: ComponentDefinition) -> ComponentDefinition:
        if definition.name in self._definitions:
            raise ComponentDefinitionError(f"Component {definition.name} is already registered")
        self._definitions[definition.name] = definition
        logger.debug(
            "Registered %s %s (host: %s, client: %s)",
            "library" if definition.library else "component",
            definition.name,
            sorted(definition.host_commands),
            sorted(definition.client_commands),
        )
        return definition

    def library(self, name: str, **bundles: Any) -> ComponentDefinition:
        """Register a library component, installed for every session at bootstrap."""
        return self.register(ComponentDefinition(name, library=True, **bundles))

    def component(self, name: str, **bundles: Any) -> ComponentDefinition:
        """Register a feature component, installed on demand."""
        return self.register(ComponentDefinition(name, library=False, **bundles))

    def get(self, name: str) -> ComponentDefinition | None:
        return self._definitions.get(name)

    def require(self, name: str) -> ComponentDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise UnknownComponentError(name)
        return definition

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __iter__(self) -> Iterator[ComponentDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)

    def libraries(self) -> list[ComponentDefinition]:
        return [d for d in self._definitions.values() if d.library]

    def features(self) -> list[ComponentDefinition]:
        return [d for d in self._definitions.values() if not d.library]

    def validate(self) -> None:
        """Check that every include refers to a registered component."""
        for definition in self._definitions.values():
            for include in definition.includes:
                if include not in self._definitions:
                    raise ComponentDefinitionError(
                        f"Component {definition.name} includes unknown component {include}"
                    )

    def resolve_includes(self, names: list[str] | tuple[str, ...]) -> list[ComponentDefinition]:
        """Return *names* plus their transitive includes, dependencies first.

        Discovery is breadth-first with a visited set, so include cycles
        terminate and every component appears once.

        Raises:
            UnknownComponentError: If a name or include is not registered.
        """
        discovered: list[str] = []
        seen: set[str] = set()
        pending = deque(names)
        while pending:
            name = pending.popleft()
            if name in seen:
                continue
            seen.add(name)
            discovered.append(name)
            pending.extend(self.require(name).includes)

        ordered: list[ComponentDefinition] = []
        placed: set[str] = set()
        visiting: set[str] = set()

        def place(name: str) -> None:
            if name in placed or name in visiting:
                return
            visiting.add(name)
            definition = self._definitions[name]
            for include in definition.includes:
                place(include)
            visiting.discard(name)
            placed.add(name)
            ordered.append(definition)

        for name in discovered:
            place(name)
        return ordered
