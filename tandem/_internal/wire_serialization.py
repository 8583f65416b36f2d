"""Conversion of command arguments and results to and from wire values.

Custom types are supported through :class:`SerializerRegistry`: a registered
type is sent as ``{"__type__": name, "data": ...}`` and rebuilt by the
receiving side's deserializer for the same name.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)

_PRIMITIVES = (str, int, float, bool, type(None))


class _Handler(NamedTuple):
    serialize: Callable[[Any], Any]
    deserialize: Callable[[Any], Any] | None


class SerializerRegistry:
    """Singleton registry of wire handlers keyed by type name."""

    _instance: SerializerRegistry | None = None

    def __init__(self) -> None:
        self._handlers: dict[str, _Handler] = {}

    @classmethod
    def get_instance(cls) -> SerializerRegistry:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def register(
        self,
        type_or_name: type | str,
        serializer: Callable[[Any], Any],
        deserializer: Callable[[Any], Any] | None = None,
    ) -> None:
        """Register a handler for a class (or its name)."""
        name = type_or_name if isinstance(type_or_name, str) else type_or_name.__name__
        if name in self._handlers:
            logger.debug("Replacing wire handler for %s", name)
        self._handlers[name] = _Handler(serializer, deserializer)
        logger.debug("Registered wire handler for type: %s", name)

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def get_serializer(self, name: str) -> Callable[[Any], Any] | None:
        handler = self._handlers.get(name)
        return handler.serialize if handler else None

    def get_deserializer(self, name: str) -> Callable[[Any], Any] | None:
        handler = self._handlers.get(name)
        return handler.deserialize if handler else None

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    def clear(self) -> None:
        self._handlers.clear()


def prepare_for_wire(obj: Any) -> Any:
    """Recursively convert *obj* into JSON-compatible data.

    Registered types are matched by class name, then by base class name.

    Raises:
        TypeError: If *obj* contains a value that has no wire representation.
    """
    if isinstance(obj, _PRIMITIVES):
        return obj

    registry = SerializerRegistry.get_instance()
    for klass in type(obj).__mro__:
        serializer = registry.get_serializer(klass.__name__)
        if serializer is not None:
            return {"__type__": klass.__name__, "data": prepare_for_wire(serializer(obj))}

    if isinstance(obj, dict):
        prepared: dict[str, Any] = {}
        for key, value in obj.items():
            if not isinstance(key, str):
                raise TypeError(f"Wire dict keys must be strings, got {type(key).__name__}")
            prepared[key] = prepare_for_wire(value)
        return prepared

    if isinstance(obj, (list, tuple)):
        return [prepare_for_wire(item) for item in obj]

    raise TypeError(f"Object of type {type(obj).__name__} cannot be sent over the wire")


def restore_from_wire(obj: Any) -> Any:
    """Inverse of :func:`prepare_for_wire`.

    Markers without a registered deserializer are left as plain dicts.
    """
    if isinstance(obj, list):
        return [restore_from_wire(item) for item in obj]

    if isinstance(obj, dict):
        type_name = obj.get("__type__")
        if isinstance(type_name, str) and "data" in obj:
            deserializer = SerializerRegistry.get_instance().get_deserializer(type_name)
            if deserializer is not None:
                return deserializer(restore_from_wire(obj["data"]))
            logger.debug("No deserializer registered for %s", type_name)
        return {k: restore_from_wire(v) for k, v in obj.items()}

    return obj
