from dataclasses import dataclass

import pytest

from tandem import SerializerRegistry
from tandem._internal.wire_serialization import prepare_for_wire, restore_from_wire


@dataclass
class Point:
    x: int
    y: int


class Point3(Point):
    pass


def register_point(registry):
    registry.register(Point, lambda p: {"x": p.x, "y": p.y}, lambda d: Point(d["x"], d["y"]))


def test_singleton_identity():
    r1 = SerializerRegistry.get_instance()
    r2 = SerializerRegistry.get_instance()
    assert r1 is r2


def test_register_and_lookup():
    registry = SerializerRegistry.get_instance()
    registry.register("Foo", lambda x: {"v": x}, lambda x: x["v"])

    assert registry.has_handler("Foo")
    serializer = registry.get_serializer("Foo")
    deserializer = registry.get_deserializer("Foo")

    payload = serializer(123) if serializer else None
    assert payload == {"v": 123}
    assert deserializer(payload) == 123 if deserializer else False


def test_clear_and_unregister():
    registry = SerializerRegistry.get_instance()
    registry.register("Bar", lambda x: x)
    registry.register("Baz", lambda x: x)

    registry.unregister("Bar")
    assert not registry.has_handler("Bar")
    registry.clear()
    assert not registry.has_handler("Baz")


def test_registered_type_on_the_wire():
    register_point(SerializerRegistry.get_instance())

    wire = prepare_for_wire([Point(1, 2), {"p": Point(3, 4)}])

    assert wire == [
        {"__type__": "Point", "data": {"x": 1, "y": 2}},
        {"p": {"__type__": "Point", "data": {"x": 3, "y": 4}}},
    ]
    assert restore_from_wire(wire) == [Point(1, 2), {"p": Point(3, 4)}]


def test_subclass_uses_base_handler():
    register_point(SerializerRegistry.get_instance())
    assert prepare_for_wire(Point3(5, 6)) == {"__type__": "Point", "data": {"x": 5, "y": 6}}


def test_tuples_become_lists():
    assert prepare_for_wire((1, (2, 3))) == [1, [2, 3]]


def test_unknown_marker_left_as_dict():
    wire = {"__type__": "Mystery", "data": {"a": 1}}
    assert restore_from_wire(wire) == wire


@pytest.mark.parametrize("value", [object(), {1: "non-string key"}, {1, 2}, b"bytes"])
def test_unsendable_values(value):
    with pytest.raises(TypeError):
        prepare_for_wire(value)
