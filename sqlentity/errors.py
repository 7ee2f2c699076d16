from typing import Any


class UsageError(Exception):
    """Raised when the library is used incorrectly."""
    ...


class NotFoundError(LookupError):
    """Raised when a record that must exist cannot be found."""
    model: str
    id: Any

    def __init__(self, model: str, id: Any = None, message: str = '') -> None:
        self.model = model
        self.id = id
        if not message:
            message = f'no {model} record found' + \
                (f' with id {id!r}' if id is not None else '')
        super().__init__(message)


class UnresolvableReferenceError(LookupError):
    """Raised when a type name or relation name cannot be resolved."""
    reference: str

    def __init__(self, reference: str, message: str = '') -> None:
        self.reference = reference
        super().__init__(message or f'cannot resolve reference {reference!r}')


def tert(condition: bool, error_message: str = '') -> None:
    """If condition is false, raises a TypeError with the given message."""
    if not condition:
        raise TypeError(error_message)

def vert(condition: bool, error_message: str = '') -> None:
    """If condition is false, raises a ValueError with the given message."""
    if not condition:
        raise ValueError(error_message)

def tressa(condition: bool, error_message: str = '') -> None:
    """If condition is false, raises a UsageError with the given message."""
    if not condition:
        raise UsageError(error_message)
