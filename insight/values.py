"""
Values - The small, closed vocabulary of data that flows through the pipeline

Game state maps, element attributes, step parameters and rule parameters all
carry loosely-typed data coming from the detector. Instead of passing raw
objects around and inspecting them at every use site, each entry is wrapped
in a tagged Value of one of five kinds:

- NUMBER  - ints and floats (bools are NOT numbers here)
- TEXT    - strings, including numeric-looking strings
- FLAG    - booleans
- RECT    - screen rectangles
- MAPPING - nested ValueMaps

Accessors never raise on the wrong kind; they return None (or the caller's
default) so matching code can treat "absent" and "wrong kind" the same way.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple


class ValueKind(Enum):
    NUMBER = "number"
    TEXT = "text"
    FLAG = "flag"
    RECT = "rect"
    MAPPING = "mapping"


@dataclass(frozen=True)
class Rect:
    """Axis-aligned screen rectangle in pixels"""
    left: float
    top: float
    right: float
    bottom: float

    @property
    def center_x(self) -> float:
        return (self.left + self.right) / 2.0

    @property
    def center_y(self) -> float:
        return (self.top + self.bottom) / 2.0

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    def to_list(self) -> List[float]:
        return [self.left, self.top, self.right, self.bottom]

    @classmethod
    def from_any(cls, raw: Any) -> Optional['Rect']:
        """Accept a Rect, a 4-sequence or a dict with left/top/right/bottom (or x/y/w/h)"""
        if isinstance(raw, Rect):
            return raw
        if isinstance(raw, (list, tuple)) and len(raw) == 4:
            try:
                return cls(*(float(v) for v in raw))
            except (TypeError, ValueError):
                return None
        if isinstance(raw, dict):
            try:
                if 'left' in raw:
                    return cls(float(raw['left']), float(raw['top']),
                               float(raw['right']), float(raw['bottom']))
                if 'x' in raw:
                    x, y = float(raw['x']), float(raw['y'])
                    return cls(x, y, x + float(raw.get('w', 0)), y + float(raw.get('h', 0)))
            except (KeyError, TypeError, ValueError):
                return None
        return None


@dataclass(frozen=True)
class Value:
    kind: ValueKind
    data: Any

    @classmethod
    def of(cls, raw: Any) -> Optional['Value']:
        """Classify a raw python value; returns None when it fits no kind"""
        if isinstance(raw, Value):
            return raw
        if isinstance(raw, bool):
            return cls(ValueKind.FLAG, raw)
        if isinstance(raw, (int, float)):
            if isinstance(raw, float) and math.isnan(raw):
                return None
            return cls(ValueKind.NUMBER, float(raw))
        if isinstance(raw, str):
            return cls(ValueKind.TEXT, raw)
        if isinstance(raw, Rect):
            return cls(ValueKind.RECT, raw)
        if isinstance(raw, ValueMap):
            return cls(ValueKind.MAPPING, raw)
        if isinstance(raw, dict):
            return cls(ValueKind.MAPPING, ValueMap.from_raw(raw))
        # numpy scalars and friends
        if hasattr(raw, 'item'):
            try:
                return cls.of(raw.item())
            except (TypeError, ValueError):
                return None
        return None

    def as_number(self) -> Optional[float]:
        return self.data if self.kind is ValueKind.NUMBER else None

    def as_text(self) -> Optional[str]:
        return self.data if self.kind is ValueKind.TEXT else None

    def as_flag(self) -> Optional[bool]:
        return self.data if self.kind is ValueKind.FLAG else None

    def as_rect(self) -> Optional[Rect]:
        return self.data if self.kind is ValueKind.RECT else None

    def as_mapping(self) -> Optional['ValueMap']:
        return self.data if self.kind is ValueKind.MAPPING else None

    def to_raw(self) -> Any:
        if self.kind is ValueKind.RECT:
            return self.data.to_list()
        if self.kind is ValueKind.MAPPING:
            return self.data.to_raw()
        return self.data

    def __str__(self) -> str:
        if self.kind is ValueKind.NUMBER and float(self.data).is_integer():
            return str(int(self.data))
        return str(self.to_raw())


class ValueMap(Mapping[str, Value]):
    """
    Immutable str -> Value mapping with typed accessors.

    Equality and hashing follow the contents, so two maps built from the
    same raw dict compare equal.
    """

    __slots__ = ('_items',)

    def __init__(self, items: Optional[Dict[str, Value]] = None):
        self._items: Dict[str, Value] = dict(items or {})

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> 'ValueMap':
        if raw is None:
            return cls()
        if isinstance(raw, ValueMap):
            return raw
        items = {}
        for key, value in raw.items():
            wrapped = Value.of(value)
            if wrapped is not None:
                items[str(key)] = wrapped
        return cls(items)

    def __getitem__(self, key: str) -> Value:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ValueMap):
            return self._items == other._items
        return NotImplemented

    def __hash__(self) -> int:
        return hash(tuple(sorted((k, v.kind, str(v.to_raw())) for k, v in self._items.items())))

    def __repr__(self) -> str:
        return f"ValueMap({self.to_raw()!r})"

    def number(self, key: str, default: float = 0.0) -> float:
        value = self._items.get(key)
        result = value.as_number() if value is not None else None
        return default if result is None else result

    def maybe_number(self, key: str) -> Optional[float]:
        value = self._items.get(key)
        return value.as_number() if value is not None else None

    def text(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self._items.get(key)
        result = value.as_text() if value is not None else None
        return default if result is None else result

    def flag(self, key: str, default: bool = False) -> bool:
        value = self._items.get(key)
        result = value.as_flag() if value is not None else None
        return default if result is None else result

    def rect(self, key: str) -> Optional[Rect]:
        value = self._items.get(key)
        return value.as_rect() if value is not None else None

    def mapping(self, key: str) -> 'ValueMap':
        value = self._items.get(key)
        result = value.as_mapping() if value is not None else None
        return ValueMap() if result is None else result

    def numeric_items(self) -> List[Tuple[str, float]]:
        return [(k, v.data) for k, v in self._items.items() if v.kind is ValueKind.NUMBER]

    def with_items(self, **updates: Any) -> 'ValueMap':
        """Return a copy with some entries replaced"""
        items = dict(self._items)
        for key, raw in updates.items():
            wrapped = Value.of(raw)
            if wrapped is None:
                items.pop(key, None)
            else:
                items[key] = wrapped
        return ValueMap(items)

    def to_raw(self) -> Dict[str, Any]:
        return {k: v.to_raw() for k, v in self._items.items()}
