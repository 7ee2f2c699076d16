from __future__ import annotations
from sqlentity.errors import tert, vert
from typing import Any, Callable, Hashable, Iterable, Optional
import json
import random as _random


_operators: dict[str, Callable[[Any, Any], bool]] = {
    '=': lambda a, b: a == b,
    '==': lambda a, b: a == b,
    '!=': lambda a, b: a != b,
    '<>': lambda a, b: a != b,
    '<': lambda a, b: a is not None and a < b,
    '<=': lambda a, b: a is not None and a <= b,
    '>': lambda a, b: a is not None and a > b,
    '>=': lambda a, b: a is not None and a >= b,
}


def _value(item: Any, key: str|Callable|None) -> Any:
    """Extract key from item. Models, Rows and dicts are read through
        their `get` method; other objects through getattr.
    """
    if key is None:
        return item
    if callable(key):
        return key(item)
    getter = getattr(item, 'get', None)
    if callable(getter):
        return getter(key)
    return getattr(item, key, None)


class Collection(list):
    """Ordered result container with declarative transforms. Returned
        by query builders and plural relations; never persisted.
    """

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({list.__repr__(self)})"

    def first(self, predicate: Callable[[Any], bool] = None,
              default: Any = None) -> Any:
        """Returns the first item (matching predicate if supplied)."""
        for item in self:
            if predicate is None or predicate(item):
                return item
        return default

    def last(self, predicate: Callable[[Any], bool] = None,
             default: Any = None) -> Any:
        """Returns the last item (matching predicate if supplied)."""
        for item in reversed(self):
            if predicate is None or predicate(item):
                return item
        return default

    def is_empty(self) -> bool:
        return len(self) == 0

    def is_not_empty(self) -> bool:
        return len(self) > 0

    def map(self, fn: Callable[[Any], Any]) -> Collection:
        return Collection(fn(item) for item in self)

    def each(self, fn: Callable[[Any], Any]) -> Collection:
        """Call fn for each item, stopping early if fn returns False."""
        for item in self:
            if fn(item) is False:
                break
        return self

    def filter(self, fn: Callable[[Any], bool] = None) -> Collection:
        if fn is None:
            return Collection(item for item in self if item)
        return Collection(item for item in self if fn(item))

    def reject(self, fn: Callable[[Any], bool]) -> Collection:
        return Collection(item for item in self if not fn(item))

    def partition(self, fn: Callable[[Any], bool]) -> tuple[Collection, Collection]:
        """Split into (matching, not matching)."""
        passed, failed = Collection(), Collection()
        for item in self:
            (passed if fn(item) else failed).append(item)
        return passed, failed

    def pluck(self, key: str|Callable, key_by: str|Callable = None) -> Collection|dict:
        """Returns the value of key for every item. If key_by is given,
            returns a dict of key_by value to key value instead.
        """
        if key_by is not None:
            return {_value(item, key_by): _value(item, key) for item in self}
        return Collection(_value(item, key) for item in self)

    def where(self, key: str|Callable, operator: str, value: Any = None,
              *, strict: bool = False) -> Collection:
        """Filter by comparing key of each item. Call as
            `where(key, value)` for equality or `where(key, op, value)`.
        """
        if value is None and operator not in _operators:
            operator, value = '=', operator
        vert(operator in _operators, f'unsupported operator {operator}')
        compare = _operators[operator]
        return Collection(
            item for item in self
            if compare(_value(item, key), value)
        )

    def where_in(self, key: str|Callable, values: Iterable) -> Collection:
        values = list(values)
        return Collection(item for item in self if _value(item, key) in values)

    def where_not_in(self, key: str|Callable, values: Iterable) -> Collection:
        values = list(values)
        return Collection(item for item in self if _value(item, key) not in values)

    def first_where(self, key: str|Callable, operator: str, value: Any = None) -> Any:
        return self.where(key, operator, value).first()

    def unique(self, key: str|Callable = None) -> Collection:
        """Remove duplicates by key (or by the item itself), keeping
            the first occurrence.
        """
        seen = []
        result = Collection()
        for item in self:
            marker = _value(item, key)
            if marker in seen:
                continue
            seen.append(marker)
            result.append(item)
        return result

    def group_by(self, key: str|Callable) -> dict[Hashable, Collection]:
        groups: dict[Hashable, Collection] = {}
        for item in self:
            groups.setdefault(_value(item, key), Collection()).append(item)
        return groups

    def key_by(self, key: str|Callable) -> dict[Hashable, Any]:
        """Index by key; later items overwrite earlier ones."""
        return {_value(item, key): item for item in self}

    def count_by(self, key: str|Callable = None) -> dict[Hashable, int]:
        counts: dict[Hashable, int] = {}
        for item in self:
            marker = _value(item, key)
            counts[marker] = counts.get(marker, 0) + 1
        return counts

    def sort_by(self, key: str|Callable, descending: bool = False) -> Collection:
        """Stable sort by key. None values sort first when ascending."""
        def sort_key(item):
            value = _value(item, key)
            return (value is not None, value)
        return Collection(sorted(self, key=sort_key, reverse=descending))

    def sort_by_desc(self, key: str|Callable) -> Collection:
        return self.sort_by(key, descending=True)

    def _numbers(self, key: str|Callable = None) -> list:
        return [v for v in (_value(item, key) for item in self) if v is not None]

    def sum(self, key: str|Callable = None) -> int|float:
        return sum(self._numbers(key))

    def avg(self, key: str|Callable = None) -> Optional[float]:
        values = self._numbers(key)
        return sum(values) / len(values) if values else None

    def min(self, key: str|Callable = None) -> Any:
        values = self._numbers(key)
        return min(values) if values else None

    def max(self, key: str|Callable = None) -> Any:
        values = self._numbers(key)
        return max(values) if values else None

    def chunk(self, size: int) -> Collection:
        """Split into Collections of at most size items."""
        tert(type(size) is int, 'size must be int')
        vert(size > 0, 'size must be > 0')
        return Collection(
            Collection(self[i:i+size]) for i in range(0, len(self), size)
        )

    def flatten(self, depth: int = -1) -> Collection:
        """Flatten nested lists; depth < 0 flattens completely."""
        result = Collection()
        for item in self:
            if isinstance(item, list) and depth != 0:
                result.extend(Collection(item).flatten(depth - 1))
            else:
                result.append(item)
        return result

    def take(self, count: int) -> Collection:
        """Take count items from the start, or from the end if count
            is negative.
        """
        if count < 0:
            return Collection(self[count:])
        return Collection(self[:count])

    def skip(self, count: int) -> Collection:
        return Collection(self[count:])

    def random(self, count: int = None) -> Any:
        """Returns one random item, or a Collection of count items."""
        if count is None:
            return _random.choice(self) if self else None
        vert(count <= len(self), 'cannot take more random items than exist')
        return Collection(_random.sample(list(self), count))

    def shuffle(self) -> Collection:
        items = Collection(self)
        _random.shuffle(items)
        return items

    def tap(self, fn: Callable[[Collection], Any]) -> Collection:
        fn(self)
        return self

    def when(self, condition: Any, fn: Callable[[Collection], Any],
             default: Callable[[Collection], Any] = None) -> Any:
        """Apply fn if condition is truthy, otherwise default (if given).
            Returns the result, or self if the callback returned None.
        """
        if condition:
            result = fn(self)
        elif default is not None:
            result = default(self)
        else:
            return self
        return self if result is None else result

    def unless(self, condition: Any, fn: Callable[[Collection], Any],
               default: Callable[[Collection], Any] = None) -> Any:
        return self.when(not condition, fn, default)

    def when_empty(self, fn: Callable[[Collection], Any]) -> Any:
        return self.when(self.is_empty(), fn)

    def when_not_empty(self, fn: Callable[[Collection], Any]) -> Any:
        return self.when(self.is_not_empty(), fn)

    def model_keys(self) -> Collection:
        """Returns the primary key of every model."""
        return Collection(item.get_key() for item in self)

    def to_list(self) -> list:
        """Serialize items, using to_dict where available."""
        return [
            item.to_dict() if hasattr(item, 'to_dict') else item
            for item in self
        ]

    def to_json(self) -> str:
        return json.dumps(self.to_list(), default=str)
