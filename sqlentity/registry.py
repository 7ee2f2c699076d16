"""
    Process-wide directory of model classes by name. Models register
    themselves when their class is created, which lets relations name
    their targets as strings and lets polymorphic relations turn a
    stored type name back into a class.
"""

from __future__ import annotations
from sqlentity.errors import tert, UnresolvableReferenceError
from typing import Type
import logging


logger = logging.getLogger(__name__)

_types: dict[str, type] = {}


def register_type(name: str, cls: type) -> None:
    """Register cls under name. A later registration under the same
        name replaces the earlier one. Raises TypeError for invalid
        name or cls.
    """
    tert(type(name) is str and len(name) > 0, 'name must be non-empty str')
    tert(isinstance(cls, type), 'cls must be a class')
    if name in _types and _types[name] is not cls:
        logger.debug('replacing registered type %s', name)
    _types[name] = cls

def unregister_type(name: str) -> None:
    """Remove the registration for name if it exists."""
    _types.pop(name, None)

def has_type(name: str) -> bool:
    """Returns True if a class is registered under name."""
    return name in _types

def resolve_type(name: str|Type, context: str = '') -> type:
    """Resolve a registered name to its class. Classes pass through
        unchanged. Raises UnresolvableReferenceError for an unregistered
        name; the message names the context (e.g. the relation) if one
        is given.
    """
    if isinstance(name, type):
        return name
    tert(type(name) is str, 'name must be str or class')
    if name not in _types:
        where = f' for {context}' if context else ''
        raise UnresolvableReferenceError(
            name, f'type {name!r} is not registered{where}'
        )
    return _types[name]

def registered_types() -> dict[str, type]:
    """Returns a copy of the registry."""
    return {**_types}
