import copy
from enum import Enum

from jsonpointer import JsonPointer


class ValueKind(Enum):
    """Shape of the payload carried by a patch operation."""
    ARRAY = "array"        # whole list, creates an absent array field
    ELEMENT = "element"    # single item appended with a trailing "-"
    MAPPING = "mapping"    # whole object, creates an absent mapping field
    STRING = "string"      # scalar value of a single mapping key


class PatchOperation(object):
    """A single JSON Patch operation.

    Instances are immutable. The payload is deep-copied on construction so that
    a patch never shares objects with the profile registry or the admitted pod.
    """

    __slots__ = ("_op", "_path", "_kind", "_value")

    def __init__(self, op, path, kind, value):
        if op not in ("add", "replace"):
            raise ValueError(f"unsupported patch op: {op}")
        object.__setattr__(self, "_op", op)
        object.__setattr__(self, "_path", path)
        object.__setattr__(self, "_kind", ValueKind(kind))
        object.__setattr__(self, "_value", copy.deepcopy(value))

    def __setattr__(self, name, value):
        raise AttributeError("PatchOperation is immutable")

    @property
    def op(self):
        return self._op

    @property
    def path(self):
        return self._path

    @property
    def kind(self):
        return self._kind

    @property
    def value(self):
        return copy.deepcopy(self._value)

    def to_dict(self):
        if self._kind is ValueKind.ARRAY:
            value = list(self._value)
        elif self._kind is ValueKind.MAPPING:
            value = dict(self._value)
        elif self._kind is ValueKind.STRING:
            value = str(self._value)
        elif self._kind is ValueKind.ELEMENT:
            value = self._value
        else:
            raise ValueError(f"unknown value kind: {self._kind}")
        return {"op": self._op, "path": self._path, "value": copy.deepcopy(value)}

    def __eq__(self, other):
        if not isinstance(other, PatchOperation):
            return NotImplemented
        return self.to_dict() == other.to_dict() and self._kind is other._kind

    def __repr__(self):
        return f"PatchOperation(op={self._op!r}, path={self._path!r}, kind={self._kind.value})"


def pointer(*parts):
    """Build an escaped JSON Pointer from raw path segments."""
    return JsonPointer.from_parts([str(part) for part in parts]).path


def add_array(path, items):
    return PatchOperation("add", path, ValueKind.ARRAY, list(items))


def add_element(path, item):
    return PatchOperation("add", path + "/-", ValueKind.ELEMENT, item)


def add_mapping(path, mapping):
    return PatchOperation("add", path, ValueKind.MAPPING, dict(mapping))


def add_string(path, value):
    return PatchOperation("add", path, ValueKind.STRING, value)


def replace_string(path, value):
    return PatchOperation("replace", path, ValueKind.STRING, value)


def to_json_patch(operations):
    return [operation.to_dict() for operation in operations]
