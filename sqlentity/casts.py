"""
    Reversible attribute casts. A model maps attribute names to cast
    names (or instances) in its `casts` class attribute; the stored
    representation lives in `model.data` and `model.get` applies the
    cast's `get` on every read.
"""

from __future__ import annotations
from sqlentity.errors import tert, vert, tressa, UnresolvableReferenceError
from sqlentity.interfaces import CastProtocol
from cryptography.fernet import Fernet
from datetime import date, datetime
from os import environ
from typing import Any, Callable
import json


class MoneyCast:
    """Stores currency amounts as integer cents."""
    def get(self, raw: Any) -> float|None:
        if raw is None:
            return None
        return int(raw) / 100

    def set(self, value: Any) -> int|None:
        if value is None:
            return None
        tert(type(value) in (int, float) or hasattr(value, '__float__'),
             'money value must be numeric')
        return int(round(float(value) * 100))


class EncryptedCast:
    """Stores text encrypted with Fernet. The key is taken from the
        key parameter or the SQLENTITY_CAST_KEY environment variable.
        Raises UsageError if neither is set.
    """
    deterministic: bool = False

    def __init__(self, key: bytes|str = None) -> None:
        key = key or environ.get('SQLENTITY_CAST_KEY')
        tressa(bool(key), 'EncryptedCast requires a key or SQLENTITY_CAST_KEY')
        if type(key) is str:
            key = key.encode()
        self._fernet = Fernet(key)

    def get(self, raw: Any) -> str|None:
        if raw is None:
            return None
        if type(raw) is str:
            raw = raw.encode()
        return self._fernet.decrypt(raw).decode()

    def set(self, value: Any) -> str|None:
        if value is None:
            return None
        tert(type(value) is str, 'encrypted value must be str')
        return self._fernet.encrypt(value.encode()).decode()


class JsonCast:
    """Stores structures as JSON text with sorted keys, so that equal
        structures always have equal stored forms.
    """
    def get(self, raw: Any) -> Any:
        if raw is None or type(raw) is not str:
            return raw
        return json.loads(raw)

    def set(self, value: Any) -> str|None:
        if value is None:
            return None
        return json.dumps(value, sort_keys=True, separators=(',', ':'))


class ArrayCast(JsonCast):
    """Stores ordered sequences as JSON arrays."""
    def get(self, raw: Any) -> list|None:
        value = super().get(raw)
        if value is None:
            return None
        tert(type(value) is list, 'stored array value must decode to a list')
        return value

    def set(self, value: Any) -> str|None:
        if value is None:
            return None
        tert(type(value) in (list, tuple), 'array value must be list or tuple')
        return super().set(list(value))


class DateCast:
    """Stores dates as ISO 8601 strings (YYYY-MM-DD)."""
    def get(self, raw: Any) -> date|None:
        if raw is None:
            return None
        if type(raw) is date:
            return raw
        return date.fromisoformat(str(raw)[:10])

    def set(self, value: Any) -> str|None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        tert(type(value) is str, 'date value must be date or str')
        return date.fromisoformat(value[:10]).isoformat()


class DateTimeCast:
    """Stores datetimes as ISO 8601 strings."""
    def get(self, raw: Any) -> datetime|None:
        if raw is None:
            return None
        if isinstance(raw, datetime):
            return raw
        return datetime.fromisoformat(str(raw))

    def set(self, value: Any) -> str|None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.isoformat()
        tert(type(value) is str, 'datetime value must be datetime or str')
        return datetime.fromisoformat(value).isoformat()


class BooleanCast:
    """Stores booleans as 1 or 0."""
    def get(self, raw: Any) -> bool|None:
        if raw is None:
            return None
        if type(raw) is str:
            return raw.strip().lower() not in ('', '0', 'false')
        return bool(raw)

    def set(self, value: Any) -> int|None:
        if value is None:
            return None
        return 1 if self.get(value) else 0


class NumberCast:
    """Reads stored numbers (or numeric text) as int or float."""
    def get(self, raw: Any) -> int|float|None:
        if raw is None or type(raw) in (int, float):
            return raw
        try:
            return int(raw)
        except ValueError:
            return float(raw)

    def set(self, value: Any) -> int|float|None:
        return self.get(value)


class StringCast:
    """Stores any value as its str form."""
    def get(self, raw: Any) -> str|None:
        return None if raw is None else str(raw)

    def set(self, value: Any) -> str|None:
        return self.get(value)


_casts: dict[str, Callable[[], CastProtocol]] = {
    'money': MoneyCast,
    'encrypted': EncryptedCast,
    'json': JsonCast,
    'array': ArrayCast,
    'date': DateCast,
    'datetime': DateTimeCast,
    'boolean': BooleanCast,
    'bool': BooleanCast,
    'number': NumberCast,
    'int': NumberCast,
    'float': NumberCast,
    'string': StringCast,
}


def register_cast(name: str, cast: CastProtocol|Callable[[], CastProtocol]) -> None:
    """Register a named cast. The cast can be an instance or a factory
        (e.g. a class) that produces one. Raises TypeError for invalid
        name or cast.
    """
    tert(type(name) is str and len(name) > 0, 'name must be non-empty str')
    if isinstance(cast, CastProtocol) and not isinstance(cast, type):
        _casts[name] = lambda: cast
        return
    tert(callable(cast), 'cast must implement CastProtocol or be a factory')
    _casts[name] = cast

def resolve_cast(name_or_cast: str|CastProtocol) -> CastProtocol:
    """Turn a cast name or instance into a cast instance. Raises
        UnresolvableReferenceError for unknown names.
    """
    if type(name_or_cast) is str:
        if name_or_cast not in _casts:
            raise UnresolvableReferenceError(
                name_or_cast, f'unknown cast {name_or_cast!r}'
            )
        cast = _casts[name_or_cast]()
    else:
        cast = name_or_cast() if isinstance(name_or_cast, type) else name_or_cast
    vert(isinstance(cast, CastProtocol), 'cast must implement CastProtocol')
    return cast
