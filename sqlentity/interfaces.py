"""
    The interfaces used by the package. `AsyncCursorProtocol`,
    `AsyncDBContextProtocol` and `AsyncTransactionProtocol` must be
    implemented to bind the library to a new SQL driver. Custom casts
    should implement `CastProtocol`, and custom relations should
    implement `RelationProtocol` so that the eager loading engine can
    batch-resolve them.
"""

from __future__ import annotations
from types import TracebackType, MappingProxyType
from typing import (
    Any,
    AsyncGenerator,
    Callable,
    Iterable,
    Optional,
    Protocol,
    Type,
    runtime_checkable,
)


@runtime_checkable
class AsyncCursorProtocol(Protocol):
    """Interface showing how a DB cursor should function."""
    async def execute(self, sql: str, parameters: list[Any] = []) -> AsyncCursorProtocol:
        """Execute a single query with the given parameters."""
        ...

    async def executemany(self, sql: str,
                    seq_of_parameters: Iterable[list[Any]] = []) -> AsyncCursorProtocol:
        """Execute a query once for each list of parameters."""
        ...

    async def fetchone(self) -> Any:
        """Get one record returned by the previous query."""
        ...

    async def fetchall(self) -> Any:
        """Get all records returned by the previous query."""
        ...


@runtime_checkable
class AsyncDBContextProtocol(Protocol):
    """Interface showing how a context manager for connecting to a
        database should behave.
    """
    def __init__(self, connection_info: str = '') -> None:
        """Using the connection_info parameter is optional but should be
            supported. The default should come from a class attribute
            that is read from an environment variable, overridden by
            the parameter only if it is not empty. If a transaction is
            active for the same connection_info, its connection should
            be reused.
        """
        ...

    async def __aenter__(self) -> AsyncCursorProtocol:
        """Enter the `async with` block. Should return a cursor useful
            for making db calls.
        """
        ...

    async def __aexit__(self, exc_type: Optional[Type[BaseException]],
                exc_value: Optional[BaseException],
                traceback: Optional[TracebackType]) -> None:
        """Exit the `async with` block. Should commit any pending
            changes and close the cursor and connection, unless the
            connection belongs to an active transaction, in which case
            the transaction decides when to commit.
        """
        ...


@runtime_checkable
class AsyncTransactionProtocol(Protocol):
    """Interface showing how an ambient transaction should behave. On
        entry it becomes the current transaction for the running task;
        on exit it commits (or rolls back on error) and stops being
        current.
    """
    def __init__(self, connection_info: str = '') -> None:
        """Initialize with the connection_info of the database."""
        ...

    async def __aenter__(self) -> AsyncTransactionProtocol:
        """Begin the transaction and publish it as the current one."""
        ...

    async def __aexit__(self, exc_type: Optional[Type[BaseException]],
                exc_value: Optional[BaseException],
                traceback: Optional[TracebackType]) -> None:
        """Commit or roll back, then clear the current transaction."""
        ...

    async def commit(self) -> None:
        """Commit the pending changes."""
        ...

    async def rollback(self) -> None:
        """Discard the pending changes."""
        ...


@runtime_checkable
class CastProtocol(Protocol):
    """Interface for reversible attribute transforms. `set` turns a
        domain value into its stored form and `get` turns it back.
    """
    def get(self, raw: Any) -> Any:
        """Convert the stored value to the domain value."""
        ...

    def set(self, value: Any) -> Any:
        """Convert the domain value to the stored value."""
        ...


@runtime_checkable
class RowProtocol(Protocol):
    """Interface for a generic row representation."""
    @property
    def data(self) -> dict:
        """Returns the underlying row data."""
        ...

    def get(self, key: str, default: Any = None) -> Any:
        """Returns the value stored under key."""
        ...


@runtime_checkable
class ModelProtocol(Protocol):
    """Interface showing how a model should function."""
    @property
    def table(self) -> str:
        """Str with the name of the table."""
        ...

    @property
    def id_column(self) -> str:
        """Str with the name of the id column."""
        ...

    @property
    def columns(self) -> tuple[str]:
        """Tuple of str column names."""
        ...

    @property
    def data(self) -> dict:
        """Dict for storing the stored representation of the row."""
        ...

    @property
    def data_original(self) -> MappingProxyType:
        """Read-only snapshot of data as of the last load or save."""
        ...

    @property
    def relations(self) -> dict:
        """Dict mapping relation names to loaded related models."""
        ...

    @property
    def exists(self) -> bool:
        """Whether the model corresponds to a persisted row."""
        ...

    def get(self, key: str) -> Any:
        """Read an attribute through its accessor or cast."""
        ...

    def set(self, key: str, value: Any) -> ModelProtocol:
        """Write an attribute through its accessor or cast."""
        ...

    def is_dirty(self, *keys: str) -> bool:
        """Whether any (or any of the given) attributes changed since
            the last sync.
        """
        ...

    @classmethod
    def from_row(cls, row: dict) -> ModelProtocol:
        """Hydrate a persisted model from a raw row."""
        ...

    @classmethod
    def query(cls, conditions: dict = None) -> QueryBuilderProtocol:
        """Returns a query builder with global scopes applied."""
        ...

    async def save(self) -> bool:
        """Persist the model, returning False if a hook aborted."""
        ...

    async def delete(self) -> bool:
        """Delete the model, returning False if a hook aborted."""
        ...

    async def reload(self) -> ModelProtocol:
        """Reload values from the datastore."""
        ...

    def to_dict(self) -> dict:
        """Serialize to a dict."""
        ...


@runtime_checkable
class QueryBuilderProtocol(Protocol):
    """Interface showing how a query builder should function."""
    @property
    def model(self) -> Type[ModelProtocol]:
        """The class of the relevant model."""
        ...

    def equal(self, column: str, data: Any) -> QueryBuilderProtocol:
        """Save the 'column = data' clause and param, then return self."""
        ...

    def is_in(self, column: str, data: tuple|list) -> QueryBuilderProtocol:
        """Save the 'column in data' clause and param, then return self."""
        ...

    def order_by(self, column: str, direction: str = 'desc') -> QueryBuilderProtocol:
        """Sets query order."""
        ...

    def with_(self, *paths: str|dict[str, Callable]) -> QueryBuilderProtocol:
        """Request eager loading of relation paths."""
        ...

    def where_has(self, relation: str,
                  callback: Optional[Callable] = None) -> QueryBuilderProtocol:
        """Keep only rows with at least one matching related record."""
        ...

    def clone(self) -> QueryBuilderProtocol:
        """Returns an independent copy of the builder."""
        ...

    async def get(self) -> list:
        """Run the query and return the results."""
        ...

    async def first(self) -> Optional[Any]:
        """Run the query and return the first result."""
        ...

    async def count(self) -> int:
        """Returns the number of records matching the query."""
        ...

    def chunk(self, number: int) -> AsyncGenerator[list, None]:
        """Iterate over all matching rows number at a time."""
        ...


@runtime_checkable
class RelationProtocol(Protocol):
    """Interface showing how a relation should function. A relation is
        bound to at most one owner (`primary`) but can batch-resolve
        for any number of owners through `eager_load`.
    """
    @property
    def name(self) -> str:
        """The relation name used as key in model.relations."""
        ...

    @property
    def primary(self) -> Optional[ModelProtocol]:
        """The owner instance, if bound."""
        ...

    def query(self) -> QueryBuilderProtocol:
        """Creates the base query for the bound owner."""
        ...

    async def get_results(self) -> Any:
        """Resolve the relation for the bound owner."""
        ...

    async def reload(self) -> Any:
        """Resolve the relation and store it on the owner."""
        ...

    async def eager_load(self, owners: list[ModelProtocol],
                         constraint: Optional[Callable] = None) -> None:
        """Resolve the relation for all owners with one query and store
            the results on each owner under the relation name.
        """
        ...

    def correlated_query(self, owner_table: str,
                         constraint: Optional[Callable] = None) -> QueryBuilderProtocol:
        """The related query linked to the current row of owner_table."""
        ...
