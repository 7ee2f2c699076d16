from __future__ import annotations
from sqlentity.casts import resolve_cast
from sqlentity.collection import Collection
from sqlentity.errors import (
    tert,
    vert,
    tressa,
    NotFoundError,
    UnresolvableReferenceError,
)
from sqlentity.interfaces import (
    AsyncCursorProtocol,
    AsyncDBContextProtocol,
    AsyncTransactionProtocol,
    CastProtocol,
    QueryBuilderProtocol,
)
from sqlentity.registry import register_type
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import date, datetime
from math import ceil
from os import environ
from types import MappingProxyType, TracebackType
from typing import Any, AsyncGenerator, Callable, Optional, Type
from uuid import uuid4
import aiosqlite
import copy
import inspect
import json
import logging
import packify
import re
import sqlite3


logger = logging.getLogger(__name__)

_current_transaction: ContextVar[Optional[AsyncSqliteTransaction]] = ContextVar(
    'sqlentity_transaction', default=None
)


def current_transaction() -> Optional[AsyncSqliteTransaction]:
    """Returns the transaction active in the current context, if any."""
    return _current_transaction.get()


class AsyncSqliteContext:
    """Context manager for sqlite. Reuses the connection of the current
        transaction when it targets the same database; otherwise opens
        a connection and commits or rolls back on exit.
    """
    connection: aiosqlite.Connection
    cursor: aiosqlite.Cursor
    connection_info: str = environ.get('SQLENTITY_CONNECTION_STRING', '')
    transaction: Optional[AsyncSqliteTransaction]

    def __init__(self, connection_info: str = '') -> None:
        """Initialize the instance. Raises TypeError for non-str
            connection_info or UsageError if it is empty.
        """
        if not connection_info:
            connection_info = self.__class__.connection_info
        tert(type(connection_info) in (str, bytes),
            'connection_info must be str or bytes')
        tressa(len(connection_info) > 0, 'cannot use with empty connection_info')
        self.connection_info = connection_info
        self.transaction = None

    async def __aenter__(self) -> AsyncCursorProtocol:
        """Enter the context block and return the cursor."""
        transaction = current_transaction()
        if transaction is not None and transaction.connection is not None \
            and transaction.connection_info == self.connection_info:
            self.transaction = transaction
            self.connection = transaction.connection
        else:
            self.connection = await aiosqlite.connect(self.connection_info)
        self.cursor = await self.connection.cursor()
        return self.cursor

    async def __aexit__(self, exc_type: Optional[Type[BaseException]],
                exc_value: Optional[BaseException],
                traceback: Optional[TracebackType]) -> None:
        """Exit the context block. Outside of a transaction, commit or
            rollback as appropriate, then close the connection.
        """
        await self.cursor.close()
        if self.transaction is not None:
            return

        if exc_type is not None:
            await self.connection.rollback()
        else:
            await self.connection.commit()

        await self.connection.close()


class AsyncSqliteTransaction:
    """Ambient transaction for sqlite. While the `async with` block
        runs, every AsyncSqliteContext for the same database in the
        same task uses this transaction's connection. A transaction
        entered while another one for the same database is active joins
        the outer one and leaves commit/rollback to it.
    """
    connection: Optional[aiosqlite.Connection]
    connection_info: str = environ.get('SQLENTITY_CONNECTION_STRING', '')

    def __init__(self, connection_info: str = '') -> None:
        if not connection_info:
            connection_info = self.__class__.connection_info or \
                AsyncSqliteContext.connection_info
        tert(type(connection_info) in (str, bytes),
            'connection_info must be str or bytes')
        tressa(len(connection_info) > 0, 'cannot use with empty connection_info')
        self.connection_info = connection_info
        self.connection = None
        self._token = None
        self._outer = None

    async def __aenter__(self) -> AsyncSqliteTransaction:
        outer = current_transaction()
        if outer is not None and outer.connection_info == self.connection_info:
            self._outer = outer
            self.connection = outer.connection
            return self

        self.connection = await aiosqlite.connect(self.connection_info)
        self._token = _current_transaction.set(self)
        logger.debug('transaction begin: %s', self.connection_info)
        return self

    async def __aexit__(self, exc_type: Optional[Type[BaseException]],
                exc_value: Optional[BaseException],
                traceback: Optional[TracebackType]) -> None:
        if self._outer is not None:
            return

        try:
            if exc_type is None:
                await self.commit()
            else:
                await self.rollback()
        finally:
            _current_transaction.reset(self._token)
            await self.connection.close()
            self.connection = None

    async def commit(self) -> None:
        await self.connection.commit()
        logger.debug('transaction commit: %s', self.connection_info)

    async def rollback(self) -> None:
        await self.connection.rollback()
        logger.debug('transaction rollback: %s', self.connection_info)


_retryable_errors = ('locked', 'busy', 'deadlock', 'serializ')

async def transaction(callback: Callable[[AsyncTransactionProtocol], Any],
                      connection_info: str = '', attempts: int = 1,
                      transaction_class: Type[AsyncTransactionProtocol] = AsyncSqliteTransaction,
                      ) -> Any:
    """Run callback inside a transaction and return its result. The
        callback receives the transaction and may be a coroutine
        function. The transaction commits if the callback returns and
        rolls back if it raises. Lock and serialization failures re-run
        the callback up to attempts times in total; any other error
        propagates immediately.
    """
    tert(callable(callback), 'callback must be callable')
    tert(type(attempts) is int, 'attempts must be int')
    vert(attempts > 0, 'attempts must be > 0')

    for attempt in range(1, attempts + 1):
        try:
            async with transaction_class(connection_info) as txn:
                result = callback(txn)
                if inspect.isawaitable(result):
                    result = await result
                return result
        except sqlite3.OperationalError as e:
            retryable = any([m in str(e).lower() for m in _retryable_errors])
            if attempt >= attempts or not retryable:
                raise
            logger.warning(
                'transaction attempt %d of %d failed: %s; retrying',
                attempt, attempts, e
            )


@dataclass
class JoinSpec:
    """Class for representing joins to be executed by a query builder."""
    kind: str = field()
    table_1: str = field()
    table_1_columns: list[str] = field()
    column_1: str = field()
    comparison: str = field()
    table_2: str = field()
    table_2_columns: list[str] = field()
    column_2: str = field()


@dataclass
class Row:
    """Class for representing a row from a query when no better model
        exists, and for pivot data. Values are readable as attributes.
    """
    data: dict = field(default_factory=dict)

    def __getattr__(self, name: str) -> Any:
        data = self.__dict__.get('data')
        if data is not None and name in data:
            return data[name]
        raise AttributeError(name)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> dict:
        return {**self.data}


@dataclass
class JoinedModel:
    """Class for representing the results of SQL JOIN queries."""
    models: list[Type[SqlModel]]
    data: dict

    def __init__(self, models: list[Type[SqlModel]], data: dict) -> None:
        """Initialize the instance. Raises TypeError for invalid models
            or data.
        """
        self.models = models
        self.data = self.parse_data(models, data)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}" + \
            f"(models={[m.__name__ for m in self.models]}, data={self.data})"

    @staticmethod
    def parse_data(models: list[Type[SqlModel]], data: dict) -> dict:
        """Parse data of form {table.column:value} to
            {table:{column:value}}. Raises TypeError for invalid models
            or data.
        """
        tert(type(models) is list, 'models must be list[Type[SqlModel]]')
        tert(all([issubclass(m, SqlModel) for m in models]),
             'models must be list[Type[SqlModel]]')
        tert(type(data) is dict, 'data must be dict')
        result = {}
        for model in models:
            result[model.table] = {
                column: data[f"{model.table}.{column}"]
                for column in model.columns
                if f"{model.table}.{column}" in data
            }
        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Read a value by 'table.column' key."""
        if '.' not in key:
            return default
        table, column = key.split('.', 1)
        return self.data.get(table, {}).get(column, default)

    def get_models(self) -> list[SqlModel]:
        """Returns the underlying models hydrated from the joined row.
            Tables whose id column is null (e.g. unmatched outer joins)
            are skipped.
        """
        instances = []
        for model in self.models:
            row = self.data.get(model.table, {})
            if row.get(model.id_column) is not None:
                instances.append(model.from_row(row))
        return instances


def dynamic_sqlmodel(connection_string: str|bytes, table_name: str = '',
                     column_names: tuple[str] = ()) -> Type[SqlModel]:
    """Generates a dynamic model for a bare table, e.g. a pivot table.
        The generated class is not added to the type registry. Raises
        TypeError for invalid connection_string or table_name.
    """
    tert(type(connection_string) in (str, bytes), 'connection_string must be str|bytes')
    tert(type(table_name) is str, 'table_name must be str')
    class DynamicModel(SqlModel, register=False):
        connection_info: str = connection_string
        table: str = table_name
        columns: tuple[str] = tuple(column_names)
        timestamps: bool = False
        incrementing: bool = False
        key_type: str = 'str'
    return DynamicModel


def _column_key(expression: str) -> str:
    """Result key for a select expression: the alias if there is one,
        otherwise the bare column name.
    """
    parts = re.split(r'\s+as\s+', expression.strip(), flags=re.IGNORECASE)
    if len(parts) > 1:
        return parts[-1].strip()
    if '(' not in parts[0] and '.' in parts[0]:
        return parts[0].rsplit('.', 1)[1]
    return parts[0]

def _scalar(value: Any, numeric: bool = False) -> Any:
    """Normalize an aggregate result to a plain scalar: bytes are
        decoded, and text is converted to int/float only when numeric
        is True (count, sum and avg). min/max keep the column's text.
    """
    if type(value) in (bytes, bytearray):
        value = value.decode()
    if numeric and type(value) is str:
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                return value
    return value

def _interpolate(sql: str, params: list) -> str:
    """Render params into the placeholders for display."""
    pieces = sql.split('?')
    rendered = pieces[0]
    for i, piece in enumerate(pieces[1:]):
        if i >= len(params):
            param = '?'
        elif type(params[i]) is str:
            param = "'" + params[i].replace("'", "''") + "'"
        elif params[i] is None:
            param = 'null'
        else:
            param = str(params[i])
        rendered += param + piece
    return rendered

def _normalize_paths(paths: tuple) -> dict[str, Optional[Callable]]:
    """Turn `with_` arguments into an ordered {path: constraint} dict."""
    normalized: dict[str, Optional[Callable]] = {}
    for item in paths:
        if type(item) is str:
            normalized.setdefault(item, None)
        elif isinstance(item, dict):
            for path, constraint in item.items():
                tert(type(path) is str, 'relation path must be str')
                tert(constraint is None or callable(constraint),
                     'constraint must be callable')
                normalized[path] = constraint
        elif type(item) in (list, tuple):
            normalized.update({
                k: v for k, v in _normalize_paths(tuple(item)).items()
                if v is not None or k not in normalized
            })
        else:
            raise TypeError('relation paths must be str, dict, list, or tuple')
    return normalized


async def load_relations(models: list[SqlModel], paths: dict[str, Optional[Callable]],
                         missing_only: bool = False) -> None:
    """Eager load relation paths for the models. Each dot-separated
        segment is resolved for the whole frontier at once: `a.b` loads
        `a` for every model with one query (per model class), then `b`
        for every loaded `a`. Shared prefixes are loaded once. A
        constraint registered for a path applies to the query that
        loads that path's last segment.
    """
    loaded: dict[str, list] = {'': list(models)}
    for path in paths:
        segments = path.split('.')
        for i, name in enumerate(segments):
            prefix = '.'.join(segments[:i+1])
            if prefix in loaded:
                continue
            frontier = loaded['.'.join(segments[:i])]
            loaded[prefix] = await _load_segment(
                frontier, name, paths.get(prefix), missing_only
            )

async def _load_segment(frontier: list, name: str, constraint: Optional[Callable],
                        missing_only: bool) -> list:
    """Load one relation for every model in the frontier and return
        the related models as the next frontier.
    """
    groups: dict[type, list[SqlModel]] = {}
    seen = set()
    for model in frontier:
        if not isinstance(model, SqlModel) or id(model) in seen:
            continue
        seen.add(id(model))
        groups.setdefault(type(model), []).append(model)

    for model_class, owners in groups.items():
        pending = [o for o in owners if not (missing_only and o.relation_loaded(name))]
        if not pending:
            continue
        relation = model_class.make_relation(name)
        await relation.eager_load(pending, constraint)

    results = []
    seen = set()
    for owners in groups.values():
        for owner in owners:
            value = owner.relations.get(name)
            items = value if isinstance(value, list) else [value]
            for item in items:
                if item is not None and id(item) not in seen:
                    seen.add(id(item))
                    results.append(item)
    return results


@dataclass
class LengthAwarePage:
    """A page of results together with the total number of results."""
    data: Collection
    total: int
    per_page: int
    current_page: int
    last_page: int
    from_item: Optional[int]
    to_item: Optional[int]

    def has_more_pages(self) -> bool:
        return self.current_page < self.last_page

    def to_dict(self) -> dict:
        return {
            'data': self.data.to_list(),
            'total': self.total,
            'per_page': self.per_page,
            'current_page': self.current_page,
            'last_page': self.last_page,
            'from': self.from_item,
            'to': self.to_item,
        }


@dataclass
class SimplePage:
    """A page of results that only knows whether another page exists."""
    data: Collection
    per_page: int
    current_page: int
    has_more: bool

    def to_dict(self) -> dict:
        return {
            'data': self.data.to_list(),
            'per_page': self.per_page,
            'current_page': self.current_page,
            'has_more': self.has_more,
        }


@dataclass
class CursorPage:
    """A keyset page: next_cursor is the cursor column value of the
        last row, set only when another page exists.
    """
    data: Collection
    per_page: int
    next_cursor: Any
    has_next_page: bool

    def to_dict(self) -> dict:
        return {
            'data': self.data.to_list(),
            'per_page': self.per_page,
            'next_cursor': self.next_cursor,
            'has_next_page': self.has_next_page,
        }


class SqlQueryBuilder:
    """Main query builder class. Extend with child class to bind to a
        specific database by supplying the context_manager param to a
        call to `super().__init__()`. Default binding is to aiosqlite.
    """
    context_manager: Type[AsyncDBContextProtocol]
    connection_info: str
    clauses: list[str]
    params: list
    orders: list[tuple[str, str]]
    limit_value: Optional[int]
    offset_value: Optional[int]
    joins: list[JoinSpec]
    columns: Optional[list[str]]
    grouping: Optional[str]
    having_clauses: list[str]
    having_params: list
    eager_loads: dict[str, Optional[Callable]]
    trashed: str
    applied_scopes: list[str]
    scoped_marks: tuple[int, int]
    distinct_rows: bool
    count_selects: dict[str, tuple[str, list]]

    def __init__(self, model_or_table: Type[SqlModel]|str = None,
                 context_manager: Type[AsyncDBContextProtocol] = AsyncSqliteContext,
                 connection_info: str = '', model: Type[SqlModel] = None,
                 table: str = '', columns: list[str] = []
                 ) -> None:
        tressa(model_or_table is not None or model is not None or len(table) > 0,
               'model_or_table, model, or table parameter must be specified')
        if model_or_table is None and model is not None:
            tert(type(model) is type and issubclass(model, SqlModel),
                 'model must be subclass of SqlModel')
            model_or_table = model
        if model_or_table is None:
            tert(type(table) is str, 'table must be str name')
            model_or_table = table
        tert(type(model_or_table) is str or
             (type(model_or_table) is type and issubclass(model_or_table, SqlModel)),
             'model_or_table must be Type[SqlModel]|str')
        tert(type(context_manager) is type and issubclass(context_manager, AsyncDBContextProtocol),
             'context_manager must be class implementing AsyncDBContextProtocol')
        tressa(type(model_or_table) is type or len(columns),
               'must provide class implementing ModelProtocol or columns')
        if type(model_or_table) is type:
            self._model = model_or_table
        else:
            self._model = dynamic_sqlmodel(connection_info, model_or_table, columns)
        self._table = self._model.table
        self.context_manager = context_manager
        self.connection_info = connection_info or self._model.connection_info
        self.clauses = []
        self.params = []
        self.orders = []
        self.limit_value = None
        self.offset_value = None
        self.joins = []
        self.columns = None
        self.grouping = None
        self.having_clauses = []
        self.having_params = []
        self.eager_loads = {}
        self.trashed = 'without'
        self.applied_scopes = []
        self.scoped_marks = (0, 0)
        self.distinct_rows = False
        self.count_selects = {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self._model.__name__}, " + \
            f"sql={self.to_sql()!r})"

    @property
    def model(self) -> Type[SqlModel]:
        """The model type that non-joined query results will be. Setting
            raises TypeError if supplied something other than a subclass
            of SqlModel.
        """
        return self._model

    @model.setter
    def model(self, model: Type[SqlModel]) -> None:
        tert(type(model) is type, 'model must be SqlModel subclass')
        tert(issubclass(model, SqlModel), 'model must be SqlModel subclass')
        self._model = model

    @property
    def table(self) -> str:
        """The table name for the base query. Setting raises TypeError
            if supplied something other than a str.
        """
        return self._table

    @table.setter
    def table(self, name: str) -> None:
        tert(type(name) is str, 'name must be str')
        self._table = name

    # predicates

    def is_null(self, column: str) -> SqlQueryBuilder:
        """Save the 'column is null' clause, then return self. Raises
            TypeError for invalid column.
        """
        tert(type(column) is str, 'column must be str')
        self.clauses.append(f'{column} is null')
        return self

    def not_null(self, column: str) -> SqlQueryBuilder:
        """Save the 'column is not null' clause, then return self.
            Raises TypeError for invalid column.
        """
        tert(type(column) is str, 'column must be str')
        self.clauses.append(f'{column} is not null')
        return self

    def compare(self, column: str, operator: str, data: Any) -> SqlQueryBuilder:
        """Save the 'column operator data' clause and param, then return
            self. Raises TypeError or ValueError for invalid column or
            operator.
        """
        tert(type(column) is str, 'column must be str')
        tert(type(operator) is str, 'operator must be str')
        operator = operator.lower()
        vert(operator in ('=', '!=', '<>', '<', '<=', '>', '>=', 'like', 'not like'),
             f'unsupported operator {operator}')
        self.clauses.append(f'{column} {operator} ?')
        self.params.append(data)
        return self

    def equal(self, column: str, data: Any) -> SqlQueryBuilder:
        """Save the 'column = data' clause and param, then return self.
            Raises TypeError for invalid column.
        """
        return self.compare(column, '=', data)

    def not_equal(self, column: str, data: Any) -> SqlQueryBuilder:
        """Save the 'column != data' clause and param, then return self.
            Raises TypeError for invalid column.
        """
        return self.compare(column, '!=', data)

    def less(self, column: str, data: Any) -> SqlQueryBuilder:
        return self.compare(column, '<', data)

    def less_or_equal(self, column: str, data: Any) -> SqlQueryBuilder:
        return self.compare(column, '<=', data)

    def greater(self, column: str, data: Any) -> SqlQueryBuilder:
        return self.compare(column, '>', data)

    def greater_or_equal(self, column: str, data: Any) -> SqlQueryBuilder:
        return self.compare(column, '>=', data)

    def between(self, column: str, low: Any, high: Any) -> SqlQueryBuilder:
        """Save the 'column between low and high' clause, then return
            self.
        """
        tert(type(column) is str, 'column must be str')
        self.clauses.append(f'{column} between ? and ?')
        self.params.extend([low, high])
        return self

    def like(self, column: str, pattern: str, data: str) -> SqlQueryBuilder:
        """Save the 'column like {pattern.replace(?, data)}' clause and
            param, then return self. Raises TypeError or ValueError for
            invalid column, pattern, or data.
        """
        tert(type(column) is str, 'column must be str')
        tert(type(pattern) is str, 'pattern must be str')
        tert(type(data) is str, 'data must be str')
        vert(len(column), 'column cannot be empty')
        vert(len(pattern), 'pattern cannot be empty')
        vert(len(data), 'data cannot be empty')
        self.clauses.append(f'{column} like ?')
        self.params.append(pattern.replace('?', data))
        return self

    def not_like(self, column: str, pattern: str, data: str) -> SqlQueryBuilder:
        """Save the 'column not like {pattern.replace(?, data)}' clause
            and param, then return self. Raises TypeError or ValueError
            for invalid column, pattern, or data.
        """
        tert(type(column) is str, 'column must be str')
        tert(type(pattern) is str, 'pattern must be str')
        tert(type(data) is str, 'data must be str')
        vert(len(column), 'column cannot be empty')
        vert(len(pattern), 'pattern cannot be empty')
        vert(len(data), 'data cannot be empty')
        self.clauses.append(f'{column} not like ?')
        self.params.append(pattern.replace('?', data))
        return self

    def starts_with(self, column: str, data: str) -> SqlQueryBuilder:
        return self.like(column, '?%', data)

    def does_not_start_with(self, column: str, data: str) -> SqlQueryBuilder:
        return self.not_like(column, '?%', data)

    def contains(self, column: str, data: str) -> SqlQueryBuilder:
        return self.like(column, '%?%', data)

    def excludes(self, column: str, data: str) -> SqlQueryBuilder:
        return self.not_like(column, '%?%', data)

    def ends_with(self, column: str, data: str) -> SqlQueryBuilder:
        return self.like(column, '%?', data)

    def does_not_end_with(self, column: str, data: str) -> SqlQueryBuilder:
        return self.not_like(column, '%?', data)

    def is_in(self, column: str, data: tuple|list) -> SqlQueryBuilder:
        """Save the 'column in data' clause and param, then return self.
            Raises TypeError or ValueError for invalid column or data.
        """
        tert(type(column) is str, 'column must be str')
        tert(type(data) in (tuple, list), 'data must be tuple or list')
        vert(len(column), 'column cannot be empty')
        vert(len(data), 'data cannot be empty')
        self.clauses.append(f'{column} in ({",".join(["?" for _ in data])})')
        self.params.extend(data)
        return self

    def not_in(self, column: str, data: tuple|list) -> SqlQueryBuilder:
        """Save the 'column not in data' clause and param, then return
            self. Raises TypeError or ValueError for invalid column or
            data.
        """
        tert(type(column) is str, 'column must be str')
        tert(type(data) in (tuple, list), 'data must be tuple or list')
        vert(len(column), 'column cannot be empty')
        vert(len(data), 'data cannot be empty')
        self.clauses.append(f'{column} not in ({",".join(["?" for _ in data])})')
        self.params.extend(data)
        return self

    def where(self, conditions: dict = None, **kwargs) -> SqlQueryBuilder:
        """Add equality clauses for every column=value pair; a None
            value becomes 'column is null'.
        """
        tert(conditions is None or type(conditions) is dict, 'conditions must be dict')
        for column, value in {**(conditions or {}), **kwargs}.items():
            if value is None:
                self.is_null(column)
            else:
                self.equal(column, value)
        return self

    def where_raw(self, clause: str, *params: Any) -> SqlQueryBuilder:
        """Add a raw clause with ? placeholders. The clause is wrapped
            in parentheses so that it combines safely with the others.
        """
        tert(type(clause) is str, 'clause must be str')
        vert(clause.count('?') == len(params), 'placeholder and param count must match')
        self.clauses.append(f'({clause})')
        self.params.extend(params)
        return self

    def or_where(self, conditions: dict|Callable[[SqlQueryBuilder], Any] = None,
                 **kwargs) -> SqlQueryBuilder:
        """Add an alternative to the clauses added so far: rows match
            if they satisfy either all of the previous clauses or the
            new group. The group is a dict of column=value pairs (as for
            `where`) or a callback that receives a fresh builder to add
            clauses to. Clauses added by global scopes and the soft
            delete filter still apply to both alternatives.
        """
        tert(conditions is None or type(conditions) is dict or callable(conditions),
             'conditions must be dict or callable')
        group = self.reset()
        if callable(conditions):
            tressa(not inspect.iscoroutinefunction(conditions),
                   'callback must be synchronous')
            conditions(group)
            group.where(kwargs)
        else:
            group.where(conditions, **kwargs)
        if not group.clauses:
            return self

        mark = self.scoped_marks[0]
        previous = self.clauses[mark:]
        alternative = ' and '.join(group.clauses)
        if previous:
            self.clauses[mark:] = [f'(({" and ".join(previous)}) or ({alternative}))']
        else:
            self.clauses.append(f'({alternative})')
        self.params.extend(group.params)
        return self

    def where_date(self, column: str, operator: str, data: date|str) -> SqlQueryBuilder:
        """Compare the date part of a stored timestamp column."""
        if isinstance(data, (date, datetime)):
            data = data.isoformat()[:10]
        return self.compare(f'date({column})', operator, data)

    def where_month(self, column: str, operator: str, month: int) -> SqlQueryBuilder:
        tert(type(month) is int, 'month must be int')
        return self.compare(f"cast(strftime('%m', {column}) as integer)", operator, month)

    def where_year(self, column: str, operator: str, year: int) -> SqlQueryBuilder:
        tert(type(year) is int, 'year must be int')
        return self.compare(f"cast(strftime('%Y', {column}) as integer)", operator, year)

    def where_has(self, relation: str,
                  callback: Callable[[SqlQueryBuilder], Any] = None) -> SqlQueryBuilder:
        """Keep only rows that have at least one related record. The
            optional callback receives the related query to constrain
            it further. Dot paths like 'items.product' require a match
            at every level. Raises UnresolvableReferenceError for an
            unknown relation name.
        """
        return self._where_related('exists', relation, callback)

    def where_doesnt_have(self, relation: str,
                          callback: Callable[[SqlQueryBuilder], Any] = None
                          ) -> SqlQueryBuilder:
        """Keep only rows without a matching related record."""
        return self._where_related('not exists', relation, callback)

    def _where_related(self, operator: str, relation: str,
                       callback: Optional[Callable]) -> SqlQueryBuilder:
        query = self._related_query(relation, callback)
        sql, params = query._compile_select(['1'], with_order=False, with_limit=False)
        self.clauses.append(f'{operator} ({sql})')
        self.params.extend(params)
        return self

    def _related_query(self, relation: str, callback: Optional[Callable]) -> SqlQueryBuilder:
        """Related query correlated to the rows of this query."""
        tert(type(relation) is str, 'relation must be str')
        tert(callback is None or callable(callback), 'callback must be callable')
        tressa(not inspect.iscoroutinefunction(callback), 'callback must be synchronous')
        name, _, rest = relation.partition('.')
        if rest:
            inner = callback
            callback = lambda query: query.where_has(rest, inner)
        return self.model.make_relation(name).correlated_query(self.table, callback)

    def with_count(self, *relations: str|dict[str, Callable]) -> SqlQueryBuilder:
        """Select the number of related records per row as
            '{relation}_count'. Accepts relation names and dicts mapping
            names to constraint callbacks. The counts are stored in the
            `counts` dict of each returned model.
        """
        for name, callback in _normalize_paths(relations).items():
            vert('.' not in name, 'with_count does not accept dot paths')
            query = self._related_query(name, callback)
            sql, params = query._compile_select(
                ['count(*)'], with_order=False, with_limit=False
            )
            self.count_selects[f'{name}_count'] = (f'({sql}) as {name}_count', params)
        return self

    def when(self, condition: Any, callback: Callable[[SqlQueryBuilder], Any],
             default: Callable[[SqlQueryBuilder], Any] = None) -> SqlQueryBuilder:
        """Call callback with self if condition is truthy, otherwise
            call default (if supplied). Returns self.
        """
        if condition:
            callback(self)
        elif default is not None:
            default(self)
        return self

    def scope(self, name: str, *args, **kwargs) -> SqlQueryBuilder:
        """Apply the local scope registered on the model under name.
            Raises UnresolvableReferenceError for an unknown scope.
        """
        if name not in self.model.local_scopes:
            raise UnresolvableReferenceError(
                f'{self.model.__name__}.{name}',
                f'scope {name!r} is not defined on {self.model.__name__}'
            )
        self.model.local_scopes[name](self, *args, **kwargs)
        return self

    # soft deletes

    def with_trashed(self) -> SqlQueryBuilder:
        """Include soft-deleted rows."""
        self.trashed = 'with'
        return self

    def only_trashed(self) -> SqlQueryBuilder:
        """Return only soft-deleted rows."""
        self.trashed = 'only'
        return self

    def without_trashed(self) -> SqlQueryBuilder:
        """Exclude soft-deleted rows (the default)."""
        self.trashed = 'without'
        return self

    # shape

    def _known_column(self, column: str) -> bool:
        if column in self.model.columns:
            return True
        if self.columns and column in [_column_key(c) for c in self.columns]:
            return True
        if '.' in column:
            table, name = column.split('.', 1)
            if table == self.table:
                return name in self.model.columns
            return any([
                j.table_2 == table and name in j.table_2_columns
                for j in self.joins
            ])
        return False

    def order_by(self, column: str, direction: str = 'desc') -> SqlQueryBuilder:
        """Adds an order. Raises TypeError or ValueError for invalid
            column or direction.
        """
        tert(type(column) is str, 'column must be str')
        tert(type(direction) is str, 'direction must be str')
        direction = direction.lower()
        vert(self._known_column(column), f'unrecognized column {column}')
        vert(direction in ('asc', 'desc'), 'direction must be asc or desc')
        self.orders.append((column, direction))
        return self

    def latest(self, column: str = None) -> SqlQueryBuilder:
        """Order by column (default the created timestamp) descending."""
        return self.order_by(column or self.model.created_at_column, 'desc')

    def oldest(self, column: str = None) -> SqlQueryBuilder:
        """Order by column (default the created timestamp) ascending."""
        return self.order_by(column or self.model.created_at_column, 'asc')

    def limit(self, limit: int) -> SqlQueryBuilder:
        """Sets the maximum number of rows. Raises TypeError or
            ValueError for invalid limit.
        """
        tert(type(limit) is int, 'limit must be positive int')
        vert(limit > 0, 'limit must be positive int')
        self.limit_value = limit
        return self

    def skip(self, offset: int) -> SqlQueryBuilder:
        """Sets the number of rows to skip. Raises TypeError or
            ValueError for invalid offset.
        """
        tert(type(offset) is int, 'offset must be positive int')
        vert(offset >= 0, 'offset must be positive int')
        self.offset_value = offset
        return self

    def join(self, model_or_table: Type[SqlModel]|str, on: list[str],
             kind: str = "inner", joined_table_columns: tuple[str] = (),
             ) -> SqlQueryBuilder:
        """Prepares the query for a join over multiple tables/models.
            Raises TypeError or ValueError for invalid model, on, or
            kind.
        """
        tert(type(model_or_table) in (type, str),
             "model_or_table must be Type[SqlModel] or str")
        if type(model_or_table) is str:
            tressa(type(joined_table_columns) in (tuple, list) and len(joined_table_columns),
                   'cannot join on table without columns')
        model = model_or_table
        if type(model) is not type:
            model = dynamic_sqlmodel(self.connection_info, model, joined_table_columns)
        tert(type(on) is list, "on must be list[str]")
        tert(all([type(o) is str for o in on]), "on must be list[str]")
        tert(type(kind) is str, "kind must be str")
        vert(len(on) in (2, 3),
             "on must be of form [column, column] or [column, comparison, column]")
        vert(kind in ("inner", "left", "right", "full", "cross"),
             "kind must be inner, left, right, full, or cross")

        def get_join(model: Type[SqlModel], column: str) -> list:
            if "." in column:
                return [model.table, model.columns, column]
            tert(column in model.columns,
                 f"column name must be valid for {model.table}")
            return [model.table, model.columns, f"{model.table}.{column}"]

        join = [kind]
        if len(on) == 2:
            join.extend(get_join(self.model, on[0]))
            join.append('=')
            join.extend(get_join(model, on[1]))
        else:
            vert(on[1] in ('=', '>', '>=', '<', '<=', '<>'),
                 "comparison must be in (=, >, >=, <, <=, <>)")
            join.extend(get_join(self.model, on[0]))
            join.append(on[1])
            join.extend(get_join(model, on[2]))

        self.joins.append(JoinSpec(*join))
        return self

    def select(self, columns: list[str]) -> SqlQueryBuilder:
        """Sets the columns to select. Raises TypeError for invalid
            columns.
        """
        tert(type(columns) in (list, tuple), "select columns must be list[str]")
        tert(all([type(c) is str for c in columns]), "select columns must be list[str]")
        self.columns = [*columns]
        return self

    def distinct(self) -> SqlQueryBuilder:
        """Return only distinct rows."""
        self.distinct_rows = True
        return self

    def group(self, by: str) -> SqlQueryBuilder:
        """Adds a GROUP BY constraint. Raises TypeError for invalid by."""
        tert(type(by) is str, "group by parameter must be str")
        self.grouping = by
        return self

    def having(self, clause: str, *params: Any) -> SqlQueryBuilder:
        """Adds a HAVING clause with ? placeholders."""
        tert(type(clause) is str, 'clause must be str')
        vert(clause.count('?') == len(params), 'placeholder and param count must match')
        self.having_clauses.append(f'({clause})')
        self.having_params.extend(params)
        return self

    def with_(self, *paths: str|dict[str, Callable]|list) -> SqlQueryBuilder:
        """Request eager loading of relations. Accepts dot paths like
            'items.product' and dicts mapping paths to constraint
            callbacks, which receive the supplemental query builder
            before it runs. Callbacks may be coroutine functions.
        """
        for path, constraint in _normalize_paths(paths).items():
            if constraint is not None or path not in self.eager_loads:
                self.eager_loads[path] = constraint
        return self

    def without(self, *paths: str) -> SqlQueryBuilder:
        """Cancel previously requested eager loads."""
        for path in paths:
            self.eager_loads.pop(path, None)
        return self

    def reset(self) -> SqlQueryBuilder:
        """Returns a fresh instance using the configured model."""
        return self.__class__(
            model=self.model, context_manager=self.context_manager,
            connection_info=self.connection_info
        )

    def clone(self) -> SqlQueryBuilder:
        """Returns an independent copy of this builder."""
        other = copy.copy(self)
        other.clauses = [*self.clauses]
        other.params = [*self.params]
        other.orders = [*self.orders]
        other.joins = [*self.joins]
        other.columns = [*self.columns] if self.columns else None
        other.having_clauses = [*self.having_clauses]
        other.having_params = [*self.having_params]
        other.eager_loads = {**self.eager_loads}
        other.applied_scopes = [*self.applied_scopes]
        other.count_selects = {**self.count_selects}
        return other

    # compilation

    def _where_sql(self) -> tuple[str, list]:
        clauses, params = [*self.clauses], [*self.params]
        if self.model.soft_deletes and self.trashed != 'with':
            column = f'{self.table}.{self.model.deleted_at_column}'
            if self.trashed == 'only':
                clauses.append(f'{column} is not null')
            else:
                clauses.append(f'{column} is null')
        if not clauses:
            return '', params
        return ' where ' + ' and '.join(clauses), params

    def _joins_sql(self) -> str:
        return ''.join([
            f' {j.kind} join {j.table_2} on {j.column_1} {j.comparison} {j.column_2}'
            for j in self.joins
        ])

    def _select_columns(self) -> list[str]:
        counts = [expression for expression, _ in self.count_selects.values()]
        if self.columns:
            return [*self.columns, *counts]
        if self.joins:
            columns = [f'{self.table}.{c}' for c in self.model.columns]
            tables = [self.table]
            for join in self.joins:
                if join.table_2 not in tables:
                    tables.append(join.table_2)
                    columns.extend([f'{join.table_2}.{c}' for c in join.table_2_columns])
            return columns
        return [*self.model.columns, *counts]

    def _compile_select(self, columns: list[str], with_order: bool = True,
                        with_limit: bool = True) -> tuple[str, list]:
        where, params = self._where_sql()
        params = [
            *[p for expression, ps in self.count_selects.values()
              if expression in columns for p in ps],
            *params,
        ]
        sql = 'select distinct ' if self.distinct_rows else 'select '
        sql += f'{",".join(columns)} from {self.table}'
        sql += self._joins_sql() + where

        if self.grouping:
            sql += f' group by {self.grouping}'

        if self.having_clauses:
            sql += ' having ' + ' and '.join(self.having_clauses)
            params.extend(self.having_params)

        if with_order and self.orders:
            sql += ' order by ' + ','.join([f'{c} {d}' for c, d in self.orders])

        if with_limit:
            if self.limit_value:
                sql += f' limit {self.limit_value}'
            elif self.offset_value:
                sql += ' limit -1'
            if self.offset_value:
                sql += f' offset {self.offset_value}'

        return sql, params

    def to_sql(self, interpolate: bool = True) -> str:
        """Return the select statement this builder would run. Params
            are rendered into the placeholders unless interpolate is
            False.
        """
        sql, params = self._compile_select(self._select_columns())
        return _interpolate(sql, params) if interpolate else sql

    async def _run(self, sql: str, params: list = [], many: bool = False,
                   fetch: bool = False) -> tuple[int, Any, list]:
        """Execute sql and return (rowcount, lastrowid, rows)."""
        logger.debug('sql: %s; params: %s', sql, params)
        async with self.context_manager(self.connection_info) as cursor:
            if many:
                await cursor.executemany(sql, params)
            else:
                await cursor.execute(sql, params)
            rows = await cursor.fetchall() if fetch else []
            return cursor.rowcount, cursor.lastrowid, rows

    # retrieval

    async def get_rows(self) -> list[dict]:
        """Run the query and return raw rows as dicts keyed by column
            name (or alias).
        """
        columns = self._select_columns()
        sql, params = self._compile_select(columns)
        keys = [_column_key(c) for c in columns]
        _, _, rows = await self._run(sql, params, fetch=True)
        return [dict(zip(keys, row)) for row in rows]

    async def get(self) -> Collection:
        """Run the query on the datastore and return a Collection of
            results. Returns models for a simple query (with requested
            relations eager loaded), JoinedModels for a join query
            without explicit columns, and Rows for a GROUP BY query.
        """
        if self.joins and not self.columns and not self.grouping:
            return await self._get_joined()

        rows = await self.get_rows()
        if self.grouping:
            return Collection([Row(data=row) for row in rows])

        models = Collection([self.model.from_row(row) for row in rows])
        if self.count_selects:
            for model, row in zip(models, rows):
                model.counts = {
                    alias: _scalar(row[alias], numeric=True)
                    for alias in self.count_selects
                }
        if self.eager_loads and models:
            await load_relations(models, self.eager_loads)
        return models

    async def _get_joined(self) -> Collection:
        """Run the join query and return JoinedModels. Used by the `get`
            method when appropriate. Do not call this method manually.
        """
        classes: list[Type[SqlModel]] = [self.model]
        for join in self.joins:
            if join.table_2 not in [c.table for c in classes]:
                classes.append(dynamic_sqlmodel(
                    self.connection_info, join.table_2, join.table_2_columns))

        columns = self._select_columns()
        sql, params = self._compile_select(columns)
        _, _, rows = await self._run(sql, params, fetch=True)
        return Collection([
            JoinedModel(classes, data=dict(zip(columns, row)))
            for row in rows
        ])

    async def first(self) -> Optional[SqlModel|JoinedModel|Row]:
        """Run the query on the datastore and return the first result."""
        results = await self.clone().limit(1).get()
        return results[0] if results else None

    async def find(self, id: Any) -> Optional[SqlModel]:
        """Find a record by its id among the rows matching the query.
            Returns None if it does not exist.
        """
        return await self.clone().equal(
            f'{self.table}.{self.model.id_column}', id
        ).first()

    async def find_or_fail(self, id: Any) -> SqlModel:
        """Find a record by its id. Raises NotFoundError on a miss."""
        result = await self.find(id)
        if result is None:
            raise NotFoundError(self.model.__name__, id)
        return result

    async def first_or_fail(self) -> SqlModel:
        """Return the first result. Raises NotFoundError if there is none."""
        result = await self.first()
        if result is None:
            raise NotFoundError(self.model.__name__)
        return result

    async def take(self, limit: int) -> Collection:
        """Takes the specified number of rows. Raises TypeError or
            ValueError for invalid limit.
        """
        return await self.clone().limit(limit).get()

    async def pluck(self, column: str, key: str = None) -> Collection|dict:
        """Returns the values of column for all matching rows, or a dict
            mapping key values to column values if key is given.
        """
        tert(type(column) is str, 'column must be str')
        query = self.clone().select([column] if key is None else [column, key])
        query.eager_loads = {}
        query.count_selects = {}
        rows = await query.get_rows()
        value_key = _column_key(column)
        if key is None:
            return Collection([row[value_key] for row in rows])
        return {row[_column_key(key)]: row[value_key] for row in rows}

    async def exists(self) -> bool:
        """Returns True if any row matches the query."""
        sql, params = self.clone().limit(1)._compile_select(['1'])
        _, _, rows = await self._run(sql, params, fetch=True)
        return len(rows) > 0

    async def doesnt_exist(self) -> bool:
        return not await self.exists()

    # aggregates

    async def count(self, column: str = '*') -> int:
        """Returns the number of records matching the query."""
        tert(type(column) is str, 'column must be str')
        if self.grouping or self.limit_value or self.offset_value or self.distinct_rows:
            inner, params = self._compile_select(self._select_columns(), with_order=False)
            sql = f'select count(*) from ({inner})'
        else:
            where, params = self._where_sql()
            sql = f'select count({column}) from {self.table}' + self._joins_sql() + where
        _, _, rows = await self._run(sql, params, fetch=True)
        return _scalar(rows[0][0], numeric=True) or 0

    async def _aggregate(self, function: str, column: str) -> Any:
        tert(type(column) is str, 'column must be str')
        where, params = self._where_sql()
        sql = f'select {function}({column}) from {self.table}' + self._joins_sql() + where
        _, _, rows = await self._run(sql, params, fetch=True)
        return _scalar(rows[0][0], function in ('sum', 'avg')) if rows else None

    async def sum(self, column: str) -> int|float:
        """Sum of column over matching rows; 0 if there are none."""
        return (await self._aggregate('sum', column)) or 0

    async def avg(self, column: str) -> Optional[float]:
        """Average of column over matching rows; None if there are none."""
        result = await self._aggregate('avg', column)
        return None if result is None else float(result)

    async def min(self, column: str) -> Any:
        return await self._aggregate('min', column)

    async def max(self, column: str) -> Any:
        return await self._aggregate('max', column)

    # pagination

    async def paginate(self, per_page: int = 15, page: int = 1) -> LengthAwarePage:
        """Return a page of results plus the total count (two queries)."""
        tert(type(per_page) is int and type(page) is int, 'per_page and page must be int')
        vert(per_page > 0 and page > 0, 'per_page and page must be > 0')
        counter = self.clone()
        counter.limit_value, counter.offset_value = None, None
        total = await counter.count()
        offset = (page - 1) * per_page
        data = await self.clone().limit(per_page).skip(offset).get()
        return LengthAwarePage(
            data=data,
            total=total,
            per_page=per_page,
            current_page=page,
            last_page=max(ceil(total / per_page), 1),
            from_item=offset + 1 if data else None,
            to_item=offset + len(data) if data else None,
        )

    async def simple_paginate(self, per_page: int = 15, page: int = 1) -> SimplePage:
        """Return a page of results; fetches one extra row to learn
            whether another page exists instead of counting.
        """
        tert(type(per_page) is int and type(page) is int, 'per_page and page must be int')
        vert(per_page > 0 and page > 0, 'per_page and page must be > 0')
        data = await self.clone().limit(per_page + 1).skip((page - 1) * per_page).get()
        has_more = len(data) > per_page
        return SimplePage(
            data=Collection(data[:per_page]),
            per_page=per_page,
            current_page=page,
            has_more=has_more,
        )

    async def cursor_paginate(self, per_page: int = 15, cursor: Any = None,
                              column: str = None, direction: str = 'asc') -> CursorPage:
        """Keyset pagination ordered by column (default the id column).
            Pass the previous page's next_cursor to get the following
            page.
        """
        tert(type(per_page) is int, 'per_page must be int')
        vert(per_page > 0, 'per_page must be > 0')
        vert(direction in ('asc', 'desc'), 'direction must be asc or desc')
        column = column or self.model.id_column
        qualified = column if '.' in column else f'{self.table}.{column}'

        query = self.clone()
        query.orders = []
        query.offset_value = None
        if cursor is not None:
            query.compare(qualified, '>' if direction == 'asc' else '<', cursor)
        query.order_by(qualified, direction).limit(per_page + 1)
        data = await query.get()

        has_next_page = len(data) > per_page
        data = Collection(data[:per_page])
        next_cursor = None
        if has_next_page:
            next_cursor = data[-1].data.get(_column_key(column))
        return CursorPage(
            data=data,
            per_page=per_page,
            next_cursor=next_cursor,
            has_next_page=has_next_page,
        )

    # iteration

    def chunk(self, number: int) -> AsyncGenerator[Collection, None]:
        """Iterate over all matching rows the specified number of rows
            at a time, re-querying with an advancing offset. Raises
            TypeError or ValueError for invalid number.
        """
        tert(type(number) is int, 'number must be int > 0')
        vert(number > 0, 'number must be int > 0')
        return self._chunk(number)

    async def _chunk(self, number: int) -> AsyncGenerator[Collection, None]:
        query = self.clone()
        if not query.orders:
            query.order_by(f'{self.table}.{self.model.id_column}', 'asc')
        offset = query.offset_value or 0

        while True:
            result = await query.clone().limit(number).skip(offset).get()
            if len(result) > 0:
                yield result
            if len(result) < number:
                break
            offset += number

    def chunk_by_id(self, number: int, column: str = None) -> AsyncGenerator[Collection, None]:
        """Iterate over all matching rows number at a time using keyset
            pagination on column (default the id column). Any ordering
            set on the builder is replaced.
        """
        tert(type(number) is int, 'number must be int > 0')
        vert(number > 0, 'number must be int > 0')
        return self._chunk_by_id(number, column or self.model.id_column)

    async def _chunk_by_id(self, number: int, column: str) -> AsyncGenerator[Collection, None]:
        cursor = None
        while True:
            page = await self.cursor_paginate(number, cursor, column)
            if len(page.data) > 0:
                yield page.data
            if not page.has_next_page:
                break
            cursor = page.next_cursor

    async def cursor(self, chunk_size: int = 100) -> AsyncGenerator[SqlModel, None]:
        """Yield matching models one at a time while holding at most
            chunk_size of them in memory. Uses keyset pagination unless
            the builder has an explicit order.
        """
        chunks = self.chunk(chunk_size) if self.orders else self.chunk_by_id(chunk_size)
        async for chunk in chunks:
            for model in chunk:
                yield model

    # mutation

    def _insertable(self, data: dict) -> tuple[list[str], list]:
        columns, params = [], []
        for key in data:
            if key in self.model.columns:
                columns.append(key)
                params.append(data[key])
        return columns, params

    async def insert(self, data: dict) -> int:
        """Insert a record and return the number of rows inserted.
            Keys that are not columns are ignored. Raises TypeError for
            invalid data.
        """
        tert(isinstance(data, dict), 'data must be dict')
        columns, params = self._insertable(data)
        sql = f'insert into {self.table} ({",".join(columns)})' + \
            f' values ({",".join(["?" for _ in params])})'
        rowcount, _, _ = await self._run(sql, params)
        return rowcount

    async def insert_get_id(self, data: dict) -> Any:
        """Insert a record and return the key generated by the database."""
        tert(isinstance(data, dict), 'data must be dict')
        columns, params = self._insertable(data)
        if columns:
            sql = f'insert into {self.table} ({",".join(columns)})' + \
                f' values ({",".join(["?" for _ in params])})'
        else:
            sql = f'insert into {self.table} default values'
        _, lastrowid, _ = await self._run(sql, params)
        return lastrowid

    async def insert_many(self, items: list[dict]) -> int:
        """Insert a batch of records and return the number inserted.
            Raises TypeError for invalid items.
        """
        tert(isinstance(items, list), 'items must be list[dict]')
        tert(all([isinstance(item, dict) for item in items]), 'items must be list[dict]')
        if not items:
            return 0
        columns = [c for c in self.model.columns if any([c in i for i in items])]
        rows = [[item.get(c) for c in columns] for item in items]
        sql = f'insert into {self.table} ({",".join(columns)})' + \
            f' values ({",".join(["?" for _ in columns])})'
        rowcount, _, _ = await self._run(sql, rows, many=True)
        return rowcount

    async def upsert(self, items: list[dict], unique_by: list[str]|str,
                     update: list[str] = None) -> int:
        """Insert the items, updating the update columns (default all
            non-unique columns given) of rows that conflict on
            unique_by. An empty update list ignores conflicting rows.
            Returns the number of affected rows.
        """
        tert(isinstance(items, list), 'items must be list[dict]')
        tert(all([isinstance(item, dict) for item in items]), 'items must be list[dict]')
        if type(unique_by) is str:
            unique_by = [unique_by]
        tert(type(unique_by) in (list, tuple) and len(unique_by),
             'unique_by must be a non-empty list of columns')
        if not items:
            return 0

        columns = [c for c in self.model.columns if any([c in i for i in items])]
        if update is None:
            update = [c for c in columns if c not in unique_by]
        vert(all([c in self.model.columns for c in update]), 'unrecognized update column')

        sql = f'insert into {self.table} ({",".join(columns)})' + \
            f' values ({",".join(["?" for _ in columns])})' + \
            f' on conflict ({",".join(unique_by)}) do '
        if update:
            sql += 'update set ' + ','.join([f'{c} = excluded.{c}' for c in update])
        else:
            sql += 'nothing'
        rows = [[item.get(c) for c in columns] for item in items]
        rowcount, _, _ = await self._run(sql, rows, many=True)
        return rowcount

    async def update(self, updates: dict, conditions: dict = {}) -> int:
        """Update the matching rows and return the number updated.
            Raises TypeError for invalid updates or conditions.
        """
        tert(type(updates) is dict, 'updates must be dict')
        tert(type(conditions) is dict, 'conditions must be dict')
        tressa(not self.joins, 'cannot update a join query')
        tressa(self.limit_value is None and self.offset_value is None,
               'cannot update a limited query')

        where, params = self.clone().where(
            {k: v for k, v in conditions.items() if k in self.model.columns}
        )._where_sql()

        columns, values = [], []
        for key in updates:
            if key in self.model.columns:
                columns.append(f'{key} = ?')
                values.append(updates[key])

        if len(columns) == 0:
            return 0

        sql = f'update {self.table} set {",".join(columns)}' + where
        rowcount, _, _ = await self._run(sql, [*values, *params])
        return rowcount

    async def delete(self) -> int:
        """Delete the matching rows and return the number deleted. For
            soft-deleting models this stamps the deleted column instead.
        """
        if self.model.soft_deletes:
            return await self.update({
                self.model.deleted_at_column: self.model.fresh_timestamp()
            })
        return await self.force_delete()

    async def force_delete(self) -> int:
        """Remove the matching rows and return the number deleted."""
        tressa(not self.joins, 'cannot delete from a join query')
        tressa(self.limit_value is None and self.offset_value is None,
               'cannot delete from a limited query')
        where, params = self._where_sql()
        rowcount, _, _ = await self._run(f'delete from {self.table}' + where, params)
        return rowcount

    async def restore(self) -> int:
        """Clear the deleted column of matching soft-deleted rows."""
        tressa(self.model.soft_deletes, 'model does not use soft deletes')
        return await self.clone().only_trashed().update({
            self.model.deleted_at_column: None
        })

    async def execute_raw(self, sql: str, params: list = []) -> tuple[int, list[tuple[Any]]]:
        """Execute raw SQL against the database. Return rowcount and
            fetchall results.
        """
        tert(type(sql) is str, 'sql must be str')
        rowcount, _, rows = await self._run(sql, params, fetch=True)
        return rowcount, rows


@dataclass(frozen=True)
class Accessor:
    """Per-attribute accessor. `get(model, raw)` returns the value read
        by `model.get(key)`; `set(model, value)` returns the value to
        store. Either may be omitted. Accessors take precedence over
        casts.
    """
    get: Optional[Callable[[SqlModel, Any], Any]] = None
    set: Optional[Callable[[SqlModel, Any], Any]] = None


EVENTS = (
    'creating', 'created', 'updating', 'updated', 'saving', 'saved',
    'deleting', 'deleted', 'restoring', 'restored',
)
_abortable_events = ('creating', 'updating', 'saving', 'deleting', 'restoring')
_reserved_names = ('data', 'data_original', 'relations')


class SqlModel:
    """General model for mapping a SQL row to an in-memory object."""
    table: str = 'example'
    id_column: str = 'id'
    columns: tuple = ('id', 'name')
    key_type: str = 'int'
    incrementing: bool = True
    timestamps: bool = True
    created_at_column: str = 'created_at'
    updated_at_column: str = 'updated_at'
    soft_deletes: bool = False
    deleted_at_column: str = 'deleted_at'
    fillable: tuple = ()
    guarded: tuple = ('*',)
    hidden: tuple = ()
    visible: tuple = ()
    appends: tuple = ()
    casts: dict[str, str|CastProtocol] = {}
    accessors: dict[str, Accessor] = {}
    morph_name: Optional[str] = None
    query_builder_class: Type[QueryBuilderProtocol] = SqlQueryBuilder
    connection_info: str = ''
    relation_factories: dict[str, Callable[[SqlModel], Any]] = {}
    global_scopes: dict[str, Callable[[SqlQueryBuilder], Any]] = {}
    local_scopes: dict[str, Callable[..., Any]] = {}
    _event_hooks: dict[str, list[Callable]] = {}
    _cast_cache: dict[str, CastProtocol] = {}
    exists: bool = False
    was_recently_created: bool = False
    pivot: Optional[Row] = None
    data: dict
    data_original: MappingProxyType
    relations: dict

    def __init_subclass__(cls, register: bool = True, **kwargs) -> None:
        """Give each class its own registries, create the column
            properties and add the class to the type registry.
        """
        super().__init_subclass__(**kwargs)
        for name in ('relation_factories', 'global_scopes', 'local_scopes'):
            if name not in cls.__dict__:
                setattr(cls, name, {**getattr(cls, name)})
        cls._event_hooks = {}
        cls._cast_cache = {}

        for column in cls.columns:
            if column not in _reserved_names and not hasattr(cls, column):
                setattr(cls, column, cls.create_property(column))

        if register:
            register_type(cls.get_morph_name(), cls)

    def __init__(self, data: dict = None) -> None:
        """Initialize the instance, filling data through the
            mass-assignment policy. Raises TypeError if data is not a
            dict.
        """
        tert(data is None or isinstance(data, dict), 'data must be dict')
        self.data = {}
        self.data_original = MappingProxyType({})
        self.relations = {}
        self.counts = {}
        self.exists = False
        self.was_recently_created = False
        self.pivot = None
        self._hidden = list(self.hidden)
        self._visible = list(self.visible)
        self._appends = list(self.appends)
        if data:
            self.fill(data)
        self.sync_original()

    @staticmethod
    def create_property(name: str) -> property:
        """Create a dynamic property for the column with the given name."""
        @property
        def prop(self):
            return self.get(name)
        @prop.setter
        def prop(self, value):
            self.set(name, value)
        return prop

    @staticmethod
    def encode_value(val: Any) -> str:
        """Encode a value for hashing. Uses the pack function from
            packify.
        """
        return packify.pack(val).hex()

    def __hash__(self) -> int:
        """Allow inclusion in sets. Raises TypeError for unencodable
            type within self.data (calls packify.pack).
        """
        data = self.encode_value(self.data)
        return hash(bytes(data, 'utf-8'))

    def __eq__(self, other) -> bool:
        """Allow comparisons. Raises TypeError on unencodable value in
            self.data or other.data (calls cls.__hash__ which calls
            packify.pack).
        """
        if type(other) != type(self):
            return False

        return hash(self) == hash(other)

    def __repr__(self) -> str:
        """Pretty str representation."""
        return f"{self.__class__.__name__}(table='{self.table}', " + \
            f"data={self.data}, exists={self.exists})"

    @classmethod
    def get_morph_name(cls) -> str:
        """The name stored in polymorphic type columns and used for the
            type registry.
        """
        return cls.morph_name or cls.__name__

    @classmethod
    def generate_id(cls) -> str:
        """Generates and returns a hexadecimal UUID4."""
        return uuid4().bytes.hex()

    @classmethod
    def fresh_timestamp(cls) -> str:
        """Returns the current local time formatted for storage."""
        return datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')

    @classmethod
    def from_row(cls, row: dict) -> SqlModel:
        """Hydrate a persisted model from a raw row. Keys prefixed with
            'pivot_' become the pivot Row and a 'through_key' value is
            kept for has-many-through matching; other non-column keys
            are dropped.
        """
        model = cls()
        model.data = {k: v for k, v in row.items() if k in cls.columns}
        pivot = {
            k[len('pivot_'):]: v for k, v in row.items()
            if k.startswith('pivot_') and k not in cls.columns
        }
        if pivot:
            model.pivot = Row(data=pivot)
        if 'through_key' in row and 'through_key' not in cls.columns:
            model.through_key = row['through_key']
        model.exists = True
        model.sync_original()
        return model

    # attributes

    def get_key(self) -> Any:
        return self.data.get(self.id_column)

    @classmethod
    def get_cast(cls, key: str) -> Optional[CastProtocol]:
        """Returns the cast instance for key, if one is configured."""
        if key not in cls.casts:
            return None
        if key not in cls._cast_cache:
            cls._cast_cache[key] = resolve_cast(cls.casts[key])
        return cls._cast_cache[key]

    def get(self, key: str) -> Any:
        """Read an attribute: accessor getter if one is defined, else
            cast, else the stored value. Selected relation counts and
            loaded relations are returned for their names.
        """
        accessor = self.accessors.get(key)
        if accessor is not None and accessor.get is not None:
            return accessor.get(self, self.data.get(key))
        cast = self.get_cast(key)
        if cast is not None:
            return cast.get(self.data.get(key))
        if key in self.data or key in self.columns:
            return self.data.get(key)
        if key in self.counts:
            return self.counts[key]
        return self.relations.get(key)

    def set(self, key: str, value: Any) -> SqlModel:
        """Write an attribute through its accessor setter or cast. On a
            model that does not exist yet, the original is updated too,
            so the value is not reported as dirty. Raises ValueError for
            unrecognized columns.
        """
        vert(key in self.columns, f'unrecognized column: {key}')
        accessor = self.accessors.get(key)
        if accessor is not None and accessor.set is not None:
            value = accessor.set(self, value)
        else:
            cast = self.get_cast(key)
            if cast is not None:
                if not getattr(cast, 'deterministic', True) and key in self.data \
                    and cast.get(self.data[key]) == value:
                    return self
                value = cast.set(value)

        self.data[key] = value
        if not self.exists:
            self.data_original = MappingProxyType({**self.data_original, key: value})
        return self

    def is_fillable(self, key: str) -> bool:
        """A non-empty fillable list wins; otherwise guarded denies the
            keys it lists, or everything if it contains '*'.
        """
        if self.fillable:
            return key in self.fillable
        return '*' not in self.guarded and key not in self.guarded

    def fill(self, attributes: dict) -> SqlModel:
        """Set the columns permitted by the mass-assignment policy.
            Other keys are ignored.
        """
        tert(isinstance(attributes, dict), 'attributes must be dict')
        for key, value in attributes.items():
            if key in self.columns and self.is_fillable(key):
                self.set(key, value)
        return self

    def force_fill(self, attributes: dict) -> SqlModel:
        """Set all column keys, bypassing the mass-assignment policy."""
        tert(isinstance(attributes, dict), 'attributes must be dict')
        for key, value in attributes.items():
            if key in self.columns:
                self.set(key, value)
        return self

    def get_dirty(self) -> dict:
        return {
            k: v for k, v in self.data.items()
            if k not in self.data_original or self.data_original[k] != v
        }

    def is_dirty(self, *keys: str) -> bool:
        dirty = self.get_dirty()
        if keys:
            return any([k in dirty for k in keys])
        return len(dirty) > 0

    def is_clean(self, *keys: str) -> bool:
        return not self.is_dirty(*keys)

    def get_original(self, key: str = None, default: Any = None) -> Any:
        if key is None:
            return dict(self.data_original)
        return self.data_original.get(key, default)

    def sync_original(self) -> SqlModel:
        self.data_original = MappingProxyType({**self.data})
        return self

    # hooks

    @classmethod
    def add_hook(cls, event: str, hook: Callable) -> None:
        """Add the hook for the event. Hooks are called as
            hook(cls, model) and may be coroutine functions.
        """
        vert(event in EVENTS, f'unknown event {event}')
        tert(callable(hook), 'hook must be callable')
        if event not in cls._event_hooks:
            cls._event_hooks[event] = []
        if hook not in cls._event_hooks[event]:
            cls._event_hooks[event].append(hook)

    @classmethod
    def remove_hook(cls, event: str, hook: Callable) -> None:
        """Remove the hook for the event."""
        if hook in cls._event_hooks.get(event, []):
            cls._event_hooks[event].remove(hook)

    @classmethod
    def clear_hooks(cls, event: str = None) -> None:
        """Remove all hooks for an event. If no event is specified,
            clear all hooks for all events.
        """
        if event is None:
            return cls._event_hooks.clear()
        cls._event_hooks.pop(event, None)

    @classmethod
    async def invoke_hooks(cls, event: str, *args, **kwargs) -> bool:
        """Invoke the hooks for the event in registration order. For
            pre-action events, a hook returning False stops the chain
            and the result is False.
        """
        for hook in [*cls._event_hooks.get(event, [])]:
            result = hook(cls, *args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            if result is False and event in _abortable_events:
                logger.debug('%s.%s aborted by hook', cls.__name__, event)
                return False
        return True

    @classmethod
    def observe(cls, observer: Any) -> None:
        """Register every method of observer named after an event as a
            hook. A class is instantiated first.
        """
        if isinstance(observer, type):
            observer = observer()
        for event in EVENTS:
            method = getattr(observer, event, None)
            if callable(method):
                cls.add_hook(event, lambda _cls, model, _m=method: _m(model))

    # scopes

    @classmethod
    def add_global_scope(cls, name: str, scope: Callable[[SqlQueryBuilder], Any]) -> None:
        """Register a predicate applied to every query for this class."""
        tert(type(name) is str, 'name must be str')
        tert(callable(scope), 'scope must be callable')
        cls.global_scopes[name] = scope

    @classmethod
    def remove_global_scope(cls, name: str) -> None:
        cls.global_scopes.pop(name, None)

    @classmethod
    def add_scope(cls, name: str, scope: Callable[..., Any]) -> None:
        """Register a local scope, applied with `query().scope(name)`.
            It is called as scope(builder, *args, **kwargs).
        """
        tert(type(name) is str, 'name must be str')
        tert(callable(scope), 'scope must be callable')
        cls.local_scopes[name] = scope

    # relations

    @classmethod
    def define_relation(cls, name: str, relation: Any) -> None:
        """Register a relation under name. The relation is configured
            for this class, added to the relation table consulted by the
            eager loader, and exposed as an attribute.
        """
        tert(type(name) is str and len(name) > 0, 'name must be non-empty str')
        vert(name not in cls.columns, f'relation {name} conflicts with a column')
        if 'relation_factories' not in cls.__dict__:
            cls.relation_factories = {**cls.relation_factories}
        relation.configure(cls, name)
        cls.relation_factories[name] = relation.bind
        if cls.__dict__.get(name) is not relation:
            setattr(cls, name, relation)

    @classmethod
    def make_relation(cls, name: str, owner: SqlModel = None) -> Any:
        """Returns the relation named name, bound to owner if given.
            Raises UnresolvableReferenceError for unknown names.
        """
        if name not in cls.relation_factories:
            raise UnresolvableReferenceError(
                f'{cls.__name__}.{name}',
                f'relation {name!r} is not defined on {cls.__name__}'
            )
        return cls.relation_factories[name](owner)

    def relation(self, name: str) -> Any:
        """Returns the named relation bound to this model."""
        return self.make_relation(name, self)

    def relation_loaded(self, name: str) -> bool:
        return name in self.relations

    def get_relation(self, name: str) -> Any:
        return self.relations.get(name)

    def set_relation(self, name: str, value: Any) -> SqlModel:
        self.relations[name] = value
        return self

    def unset_relation(self, name: str) -> SqlModel:
        self.relations.pop(name, None)
        return self

    async def load(self, *paths: str|dict[str, Callable]) -> SqlModel:
        """Eager load relation paths onto this model, replacing any
            already loaded.
        """
        await load_relations([self], _normalize_paths(paths))
        return self

    async def load_missing(self, *paths: str|dict[str, Callable]) -> SqlModel:
        """Eager load only the relations that are not loaded yet."""
        await load_relations([self], _normalize_paths(paths), missing_only=True)
        return self

    # queries

    @classmethod
    def unscoped(cls, connection_info: str = None) -> SqlQueryBuilder:
        """Returns a query builder without global scopes."""
        return cls.query_builder_class(
            model=cls, connection_info=connection_info or cls.connection_info
        )

    @classmethod
    def query(cls, conditions: dict = None, connection_info: str = None) -> SqlQueryBuilder:
        """Returns a query builder with the global scopes and any
            conditions provided. Conditions are parsed as key=value and
            cannot handle other comparison types.
        """
        return cls._scoped((), connection_info).where(conditions or {})

    @classmethod
    def without_global_scopes(cls, *names: str) -> SqlQueryBuilder:
        """Returns a query builder without the named global scopes, or
            without any if no names are given.
        """
        return cls._scoped(names or tuple(cls.global_scopes))

    @classmethod
    def _scoped(cls, excluded: tuple, connection_info: str = None) -> SqlQueryBuilder:
        builder = cls.unscoped(connection_info)
        for name, scope in cls.global_scopes.items():
            if name in excluded:
                continue
            scope(builder)
            builder.applied_scopes.append(name)
        builder.scoped_marks = (len(builder.clauses), len(builder.params))
        return builder

    @classmethod
    def with_(cls, *paths: str|dict[str, Callable]) -> SqlQueryBuilder:
        return cls.query().with_(*paths)

    @classmethod
    def with_trashed(cls) -> SqlQueryBuilder:
        return cls.query().with_trashed()

    @classmethod
    def only_trashed(cls) -> SqlQueryBuilder:
        return cls.query().only_trashed()

    @classmethod
    async def all(cls) -> Collection:
        return await cls.query().get()

    @classmethod
    async def find(cls, id: Any) -> Optional[SqlModel]:
        """Find a record by its id and return it. Return None if it does
            not exist.
        """
        return await cls.query().find(id)

    @classmethod
    async def find_or_fail(cls, id: Any) -> SqlModel:
        """Find a record by its id. Raises NotFoundError on a miss."""
        return await cls.query().find_or_fail(id)

    @classmethod
    async def first(cls, conditions: dict = None) -> Optional[SqlModel]:
        return await cls.query(conditions).first()

    @classmethod
    async def create(cls, data: dict) -> SqlModel:
        """Fill a new instance and save it. The instance is returned
            even if a hook aborted the save; check `exists`.
        """
        model = cls(data)
        await model.save()
        return model

    @classmethod
    async def first_or_new(cls, attributes: dict, values: dict = None) -> SqlModel:
        """Return the first match for attributes, or a new unsaved
            instance filled with attributes and values.
        """
        model = await cls.query(attributes).first()
        if model is None:
            model = cls({**attributes, **(values or {})})
        return model

    @classmethod
    async def first_or_create(cls, attributes: dict, values: dict = None) -> SqlModel:
        """Return the first match for attributes, or create one."""
        model = await cls.query(attributes).first()
        if model is None:
            model = await cls.create({**attributes, **(values or {})})
        return model

    @classmethod
    async def update_or_create(cls, attributes: dict, values: dict = None) -> SqlModel:
        """Update the first match for attributes with values, or create
            one from both.
        """
        model = await cls.query(attributes).first()
        if model is None:
            return await cls.create({**attributes, **(values or {})})
        await model.update(values or {})
        return model

    @classmethod
    async def destroy(cls, *ids: Any) -> int:
        """Delete the models with the given ids one by one, firing their
            hooks. Returns the number deleted.
        """
        if len(ids) == 1 and type(ids[0]) in (list, tuple):
            ids = tuple(ids[0])
        if not ids:
            return 0
        count = 0
        for model in await cls.query().is_in(f'{cls.table}.{cls.id_column}', list(ids)).get():
            if await model.delete():
                count += 1
        return count

    @classmethod
    async def upsert(cls, items: list[dict], unique_by: list[str]|str,
                     update: list[str] = None) -> int:
        """Insert or update rows in one statement without hooks. The
            timestamp columns are stamped; the created column is not
            overwritten on update.
        """
        tert(isinstance(items, list), 'items must be list[dict]')
        items = [{**item} for item in items]
        if cls.timestamps:
            now = cls.fresh_timestamp()
            for item in items:
                for column in (cls.created_at_column, cls.updated_at_column):
                    if column in cls.columns and item.get(column) is None:
                        item[column] = now
        if update is None:
            unique = [unique_by] if type(unique_by) is str else unique_by
            update = [
                c for c in cls.columns
                if any([c in i for i in items])
                and c not in unique and c != cls.created_at_column
            ]
        return await cls.unscoped().upsert(items, unique_by, update)

    @classmethod
    async def transaction(cls, callback: Callable[[AsyncTransactionProtocol], Any],
                          attempts: int = 1) -> Any:
        """Run callback in a transaction on this model's database."""
        return await transaction(callback, cls.connection_info, attempts)

    # persistence

    async def save(self, suppress_events: bool = False) -> bool:
        """Persist to the datastore. Inserts a new model (generating its
            key) or updates only the dirty columns of an existing one.
            Returns False if a hook aborted. Saving an existing model
            with no changes does nothing.
        """
        if not self.exists:
            return await self._perform_insert(suppress_events)
        return await self._perform_update(suppress_events)

    async def _fire(self, event: str, suppress_events: bool) -> bool:
        if suppress_events:
            return True
        return await self.invoke_hooks(event, self)

    async def _perform_insert(self, suppress_events: bool) -> bool:
        if not await self._fire('creating', suppress_events):
            return False
        if not await self._fire('saving', suppress_events):
            return False

        if self.timestamps:
            now = self.fresh_timestamp()
            for column in (self.created_at_column, self.updated_at_column):
                if column in self.columns and self.data.get(column) is None:
                    self.data[column] = now

        query = self.unscoped()
        if self.get_key() is None and self.incrementing and self.key_type == 'int':
            data = {k: v for k, v in self.data.items() if k != self.id_column}
            self.data[self.id_column] = await query.insert_get_id(data)
        else:
            if self.get_key() is None and self.key_type == 'str':
                self.data[self.id_column] = self.generate_id()
            await query.insert(self.data)

        self.exists = True
        self.was_recently_created = True
        self.sync_original()
        await self._fire('created', suppress_events)
        await self._fire('saved', suppress_events)
        return True

    async def _perform_update(self, suppress_events: bool) -> bool:
        if not self.is_dirty():
            return True
        if not await self._fire('updating', suppress_events):
            return False
        if not await self._fire('saving', suppress_events):
            return False

        if self.timestamps and self.updated_at_column in self.columns:
            self.data[self.updated_at_column] = self.fresh_timestamp()

        dirty = self.get_dirty()
        dirty.pop(self.created_at_column, None)
        key = self.data_original.get(self.id_column, self.get_key())
        await self.unscoped().with_trashed().equal(
            f'{self.table}.{self.id_column}', key
        ).update(dirty)

        self.sync_original()
        await self._fire('updated', suppress_events)
        await self._fire('saved', suppress_events)
        return True

    async def update(self, attributes: dict) -> bool:
        """Fill the attributes and save."""
        return await self.fill(attributes).save()

    async def delete(self) -> bool:
        """Delete the record. Soft-deleting models stamp the deleted
            column and save; others remove the row. Returns False if
            the model does not exist or a hook aborted.
        """
        if not self.exists:
            return False
        if not await self.invoke_hooks('deleting', self):
            return False

        if self.soft_deletes:
            previous = self.data.get(self.deleted_at_column)
            self.data[self.deleted_at_column] = self.fresh_timestamp()
            if not await self.save():
                self.data[self.deleted_at_column] = previous
                return False
        else:
            await self.unscoped().equal(
                f'{self.table}.{self.id_column}', self.get_key()
            ).force_delete()
            self.exists = False

        await self.invoke_hooks('deleted', self)
        return True

    async def force_delete(self) -> bool:
        """Remove the row even for soft-deleting models."""
        if not self.exists:
            return False
        if not await self.invoke_hooks('deleting', self):
            return False
        await self.unscoped().with_trashed().equal(
            f'{self.table}.{self.id_column}', self.get_key()
        ).force_delete()
        self.exists = False
        await self.invoke_hooks('deleted', self)
        return True

    async def restore(self) -> bool:
        """Clear the deleted column of a soft-deleted model. Returns
            False for a model that was never saved. Raises UsageError
            if the model does not use soft deletes.
        """
        tressa(self.soft_deletes, f'{self.__class__.__name__} does not use soft deletes')
        if not self.exists:
            return False
        if not await self.invoke_hooks('restoring', self):
            return False
        self.data[self.deleted_at_column] = None
        if not await self.save():
            return False
        await self.invoke_hooks('restored', self)
        return True

    def trashed(self) -> bool:
        return self.soft_deletes and self.data.get(self.deleted_at_column) is not None

    async def reload(self) -> SqlModel:
        """Reload values from datastore. Return self in monad pattern.
            Raises UsageError if id is not set in self.data.
        """
        tressa(self.get_key() is not None,
               'id_column must be set in self.data to reload from db')
        query = self.unscoped().with_trashed().equal(
            f'{self.table}.{self.id_column}', self.get_key()
        )
        rows = await query.limit(1).get_rows()
        if rows:
            self.data = {k: v for k, v in rows[0].items() if k in self.columns}
            self.exists = True
            self.sync_original()
        return self

    # serialization

    def make_hidden(self, *keys: str) -> SqlModel:
        self._hidden.extend([k for k in keys if k not in self._hidden])
        return self

    def make_visible(self, *keys: str) -> SqlModel:
        self._hidden = [k for k in self._hidden if k not in keys]
        if self._visible:
            self._visible.extend([k for k in keys if k not in self._visible])
        return self

    def append(self, *keys: str) -> SqlModel:
        self._appends.extend([k for k in keys if k not in self._appends])
        return self

    def _serializable(self, key: str) -> bool:
        if self._visible and key not in self._visible:
            return False
        return key not in self._hidden

    def to_dict(self) -> dict:
        """Serialize: stored attributes minus hidden ones (or only the
            visible ones) with casts and accessors applied, appended
            attributes, relation counts, pivot data and loaded relations.
        """
        result = {
            key: self.get(key)
            for key in self.columns
            if key in self.data and self._serializable(key)
        }
        result.update(self.counts)
        for key in self._appends:
            result[key] = self.get(key)
        if self.pivot is not None:
            result['pivot'] = self.pivot.to_dict()
        for name, value in self.relations.items():
            if not self._serializable(name):
                continue
            if hasattr(value, 'to_dict'):
                result[name] = value.to_dict()
            elif isinstance(value, list):
                result[name] = [
                    v.to_dict() if hasattr(v, 'to_dict') else v for v in value
                ]
            else:
                result[name] = value
        return result

    def to_json(self) -> str:
        def default(value: Any) -> Any:
            if isinstance(value, (date, datetime)):
                return value.isoformat()
            if type(value) in (bytes, bytearray):
                return value.hex()
            raise TypeError(f'cannot serialize {type(value).__name__}')
        return json.dumps(self.to_dict(), default=default)
