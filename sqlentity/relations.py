"""
    Relations are declared in a model class body, e.g.
    `items = has_many('OrderItem', 'order_id')`, or afterwards with
    `Order.define_relation('items', has_many(OrderItem))`. Reading the
    attribute on an instance returns the relation bound to that
    instance; the eager loader looks relations up by name in the
    model's relation table and resolves them for many owners at once.
    Related models can be named by string; names are resolved through
    the type registry on first use.
"""

from __future__ import annotations
from sqlentity.classes import SqlModel, SqlQueryBuilder
from sqlentity.collection import Collection
from sqlentity.errors import tert, vert, tressa, UsageError
from sqlentity.registry import resolve_type
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Type
import copy
import inspect
import logging
import re


logger = logging.getLogger(__name__)


def _pascalcase_to_snake_case(name: str) -> str:
    """Simple function to turn PascalCase to snake_case."""
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()

def _foreign_key_for(model: Type[SqlModel]|str) -> str:
    """Conventional foreign key column for a model: Order -> order_id."""
    if isinstance(model, type):
        return f'{_pascalcase_to_snake_case(model.__name__)}_{model.id_column}'
    return f'{_pascalcase_to_snake_case(model)}_id'


class Relation(ABC):
    """Abstract base class for relations. A relation object is
        configured once per owner class; `bind` copies it for a single
        owner instance. Subclasses must implement `owner_key_column`,
        `link_column` and `result_key` to describe how owners link to
        related rows, and may override `base_query`; the base class
        uses those to resolve one owner, batch-resolve many, or build a
        correlated subquery.
    """
    singular: bool = False
    name: str
    primary_class: Optional[Type[SqlModel]]
    primary: Optional[SqlModel]

    def __init__(self, related: Type[SqlModel]|str|None) -> None:
        tert(related is None or type(related) is str or
             (isinstance(related, type) and issubclass(related, SqlModel)),
             'related must be a SqlModel subclass or registered name')
        self._related = related
        self.primary_class = None
        self.primary = None
        self.name = ''

    def __set_name__(self, owner: type, name: str) -> None:
        tert(issubclass(owner, SqlModel), 'relations can only be declared on SqlModel classes')
        owner.define_relation(name, self)

    def __get__(self, instance: Optional[SqlModel], owner: type = None) -> Relation:
        if instance is None:
            return self
        return self.bind(instance)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.describe()})"

    def describe(self) -> str:
        owner = self.primary_class.__name__ if self.primary_class else '?'
        return f'{owner}.{self.name or "?"}'

    def configure(self, owner_class: Type[SqlModel], name: str) -> Relation:
        """Set the owner class and name and fill in default keys."""
        self.primary_class = owner_class
        self.name = name
        return self

    def bind(self, owner: Optional[SqlModel]) -> Relation:
        """Returns a copy of this relation bound to owner."""
        bound = copy.copy(self)
        bound.primary = owner
        return bound

    @property
    def related(self) -> Type[SqlModel]:
        """The related class. Raises UnresolvableReferenceError naming
            this relation if a string name is not registered.
        """
        tressa(self._related is not None, f'relation {self.describe()} has no fixed related class')
        related = resolve_type(self._related, f'relation {self.describe()}')
        tert(issubclass(related, SqlModel), 'related must be a SqlModel subclass')
        return related

    def _require_primary(self) -> SqlModel:
        tressa(self.primary is not None, f'relation {self.describe()} is not bound to a model')
        return self.primary

    @abstractmethod
    def owner_key_column(self) -> str:
        """Column on the owner holding the linking value."""
        pass

    @abstractmethod
    def link_column(self) -> str:
        """Qualified column the related query filters on."""
        pass

    @abstractmethod
    def result_key(self, model: SqlModel) -> Any:
        """The linking value of a related model."""
        pass

    def base_query(self) -> SqlQueryBuilder:
        """The related query before owner constraints."""
        return self.related.query()

    def owner_keys(self, owners: list[SqlModel]) -> list:
        """Deduplicated linking values of the owners, skipping None."""
        keys, seen = [], set()
        for owner in owners:
            value = owner.data.get(self.owner_key_column())
            if value is None or str(value) in seen:
                continue
            seen.add(str(value))
            keys.append(value)
        return keys

    def eager_query(self, keys: list) -> SqlQueryBuilder:
        return self.base_query().is_in(self.link_column(), keys)

    def correlated_query(self, owner_table: str,
                         constraint: Optional[Callable] = None) -> SqlQueryBuilder:
        """The related query restricted to rows linked to the current
            row of owner_table, for use as an exists or count subquery.
        """
        query = self.base_query()
        if constraint is not None:
            constraint(query)
        query.clauses.append(
            f'{self.link_column()} = {owner_table}.{self.owner_key_column()}'
        )
        return query

    async def _fetch(self, query: SqlQueryBuilder, keys: list,
                     constraint: Optional[Callable] = None) -> Collection:
        if constraint is not None:
            result = constraint(query)
            if inspect.isawaitable(result):
                await result
        logger.debug('eager loading %s for %d keys', self.describe(), len(keys))
        return await query.get()

    def _package(self, found: list) -> Any:
        if self.singular:
            return found[0] if found else None
        return Collection(found)

    def match(self, owners: list[SqlModel], results: list[SqlModel]) -> None:
        """Assign results to owners by linking value. Values are
            compared as str so that e.g. 1 and '1' match.
        """
        groups: dict[str, list] = {}
        for model in results:
            groups.setdefault(str(self.result_key(model)), []).append(model)
        for owner in owners:
            value = owner.data.get(self.owner_key_column())
            found = groups.get(str(value), []) if value is not None else []
            owner.set_relation(self.name, self._package(found))

    async def eager_load(self, owners: list[SqlModel],
                         constraint: Optional[Callable] = None) -> None:
        """Resolve the relation for every owner with a single query and
            store the results on the owners. If no owner has a linking
            value, no query is run.
        """
        keys = self.owner_keys(owners)
        results = Collection()
        if keys:
            results = await self._fetch(self.eager_query(keys), keys, constraint)
        self.match(owners, results)

    def query(self) -> SqlQueryBuilder:
        """Creates the base query for the bound owner."""
        primary = self._require_primary()
        return self.eager_query([primary.data.get(self.owner_key_column())])

    async def get_results(self) -> Optional[SqlModel]|Collection:
        """Resolve the relation for the bound owner with one query."""
        primary = self._require_primary()
        if primary.data.get(self.owner_key_column()) is None:
            return self._package([])
        if self.singular:
            return await self.query().first()
        return Collection(await self.query().get())

    async def reload(self) -> Optional[SqlModel]|Collection:
        """Resolve the relation and store the result on the owner."""
        value = await self.get_results()
        self._require_primary().set_relation(self.name, value)
        return value

    async def resolve(self) -> Optional[SqlModel]|Collection:
        """Returns the loaded value, loading it first if necessary."""
        primary = self._require_primary()
        if primary.relation_loaded(self.name):
            return primary.get_relation(self.name)
        return await self.reload()


class HasOne(Relation):
    """The owner has one related model whose foreign_key column holds
        the owner's local_key value.
    """
    singular: bool = True
    foreign_key: Optional[str]
    local_key: Optional[str]

    def __init__(self, related: Type[SqlModel]|str, foreign_key: str = None,
                 local_key: str = None) -> None:
        tert(foreign_key is None or type(foreign_key) is str, 'foreign_key must be str')
        tert(local_key is None or type(local_key) is str, 'local_key must be str')
        super().__init__(related)
        self.foreign_key = foreign_key
        self.local_key = local_key

    def configure(self, owner_class: Type[SqlModel], name: str) -> HasOne:
        super().configure(owner_class, name)
        if self.foreign_key is None:
            self.foreign_key = _foreign_key_for(owner_class)
        if self.local_key is None:
            self.local_key = owner_class.id_column
        return self

    def owner_key_column(self) -> str:
        return self.local_key

    def link_column(self) -> str:
        return f'{self.related.table}.{self.foreign_key}'

    def result_key(self, model: SqlModel) -> Any:
        return model.data.get(self.foreign_key)

    def _remember(self, model: SqlModel) -> None:
        self.primary.set_relation(self.name, model)

    async def save(self, model: SqlModel) -> SqlModel:
        """Point model at the owner, save it and return it."""
        primary = self._require_primary()
        tert(isinstance(model, self.related), f'model must be {self.related.__name__}')
        model.set(self.foreign_key, primary.data.get(self.local_key))
        await model.save()
        self._remember(model)
        return model

    async def create(self, data: dict) -> SqlModel:
        """Create a related model pointing at the owner."""
        return await self.save(self.related(data))


class HasMany(HasOne):
    """The owner has many related models whose foreign_key column holds
        the owner's local_key value.
    """
    singular: bool = False

    def _remember(self, model: SqlModel) -> None:
        loaded = self.primary.get_relation(self.name)
        if isinstance(loaded, list) and model not in loaded:
            loaded.append(model)

    async def save_many(self, models: list[SqlModel]) -> list[SqlModel]:
        return [await self.save(model) for model in models]

    async def create_many(self, items: list[dict]) -> Collection:
        return Collection([await self.create(data) for data in items])


class BelongsTo(Relation):
    """The owner's foreign_key column holds the owner_key value of the
        related model.
    """
    singular: bool = True
    foreign_key: Optional[str]
    _owner_key: Optional[str]

    def __init__(self, related: Type[SqlModel]|str, foreign_key: str = None,
                 owner_key: str = None) -> None:
        tert(foreign_key is None or type(foreign_key) is str, 'foreign_key must be str')
        tert(owner_key is None or type(owner_key) is str, 'owner_key must be str')
        super().__init__(related)
        self.foreign_key = foreign_key
        self._owner_key = owner_key

    def configure(self, owner_class: Type[SqlModel], name: str) -> BelongsTo:
        super().configure(owner_class, name)
        if self.foreign_key is None:
            self.foreign_key = _foreign_key_for(self._related)
        return self

    @property
    def owner_key(self) -> str:
        return self._owner_key or self.related.id_column

    def owner_key_column(self) -> str:
        return self.foreign_key

    def link_column(self) -> str:
        return f'{self.related.table}.{self.owner_key}'

    def result_key(self, model: SqlModel) -> Any:
        return model.data.get(self.owner_key)

    def associate(self, model: SqlModel) -> SqlModel:
        """Point the owner at model. The owner is not saved."""
        primary = self._require_primary()
        tert(isinstance(model, self.related), f'model must be {self.related.__name__}')
        primary.set(self.foreign_key, model.data.get(self.owner_key))
        primary.set_relation(self.name, model)
        return primary

    def dissociate(self) -> SqlModel:
        """Clear the owner's foreign key. The owner is not saved."""
        primary = self._require_primary()
        primary.set(self.foreign_key, None)
        primary.set_relation(self.name, None)
        return primary


class BelongsToMany(Relation):
    """Many-to-many through a pivot table (or pivot model class). Pivot
        columns are selected as pivot_<column> and exposed on each
        related model as `model.pivot`.
    """
    pivot: Type[SqlModel]|str|None
    foreign_pivot_key: Optional[str]
    related_pivot_key: Optional[str]
    parent_key: Optional[str]
    pivot_columns: tuple[str]
    pivot_timestamps: bool

    def __init__(self, related: Type[SqlModel]|str, pivot: Type[SqlModel]|str = None,
                 foreign_pivot_key: str = None, related_pivot_key: str = None,
                 parent_key: str = None, related_key: str = None,
                 pivot_columns: tuple[str] = (), pivot_timestamps: bool = False) -> None:
        tert(pivot is None or type(pivot) is str or
             (isinstance(pivot, type) and issubclass(pivot, SqlModel)),
             'pivot must be table name or SqlModel subclass')
        tert(type(pivot_columns) in (list, tuple), 'pivot_columns must be list[str]')
        super().__init__(related)
        self.pivot = pivot
        self.foreign_pivot_key = foreign_pivot_key
        self.related_pivot_key = related_pivot_key
        self.parent_key = parent_key
        self._related_key = related_key
        self.pivot_columns = tuple(pivot_columns)
        self.pivot_timestamps = pivot_timestamps

    def configure(self, owner_class: Type[SqlModel], name: str) -> BelongsToMany:
        super().configure(owner_class, name)
        if self.foreign_pivot_key is None:
            self.foreign_pivot_key = _foreign_key_for(owner_class)
        if self.related_pivot_key is None:
            self.related_pivot_key = _foreign_key_for(self._related)
        if self.parent_key is None:
            self.parent_key = owner_class.id_column
        return self

    def with_pivot(self, *columns: str) -> BelongsToMany:
        """Also select these pivot columns."""
        tert(all([type(c) is str for c in columns]), 'columns must be str')
        self.pivot_columns = (
            *self.pivot_columns, *[c for c in columns if c not in self.pivot_columns]
        )
        return self

    def with_timestamps(self) -> BelongsToMany:
        """Stamp and select the pivot created/updated columns."""
        self.pivot_timestamps = True
        return self

    @property
    def pivot_table(self) -> str:
        """The pivot table name; defaults to both table names sorted
            and joined with '_'.
        """
        if isinstance(self.pivot, type):
            return self.pivot.table
        if self.pivot:
            return self.pivot
        return '_'.join(sorted([self.primary_class.table, self.related.table]))

    @property
    def related_key(self) -> str:
        return self._related_key or self.related.id_column

    def pivot_column_names(self) -> list[str]:
        columns = [self.foreign_pivot_key, self.related_pivot_key, *self.pivot_columns]
        if self.pivot_timestamps:
            columns.extend([SqlModel.created_at_column, SqlModel.updated_at_column])
        return list(dict.fromkeys(columns))

    def owner_key_column(self) -> str:
        return self.parent_key

    def link_column(self) -> str:
        return f'{self.pivot_table}.{self.foreign_pivot_key}'

    def result_key(self, model: SqlModel) -> Any:
        return model.pivot.get(self.foreign_pivot_key) if model.pivot else None

    def base_query(self) -> SqlQueryBuilder:
        related, pivot_table = self.related, self.pivot_table
        columns = self.pivot_column_names()
        return related.query().join(
            pivot_table,
            [self.related_key, f'{pivot_table}.{self.related_pivot_key}'],
            joined_table_columns=columns,
        ).select([
            *[f'{related.table}.{c}' for c in related.columns],
            *[f'{pivot_table}.{c} as pivot_{c}' for c in columns],
        ])

    def _pivot_query(self, extra_columns: list[str] = ()) -> SqlQueryBuilder:
        if isinstance(self.pivot, type):
            return self.pivot.unscoped()
        columns = list(dict.fromkeys([*self.pivot_column_names(), *extra_columns]))
        return self.primary_class.query_builder_class(
            table=self.pivot_table, columns=columns,
            connection_info=self.primary.connection_info or self.primary_class.connection_info,
        )

    def _owner_value(self) -> Any:
        value = self._require_primary().data.get(self.parent_key)
        tressa(value is not None, f'cannot use {self.describe()} on a model without a key')
        return value

    def _id_of(self, item: Any) -> Any:
        if isinstance(item, SqlModel):
            return item.data.get(self.related_key)
        return item

    def _normalize_ids(self, ids: Any) -> dict[Any, dict]:
        if isinstance(ids, dict):
            return {self._id_of(k): {**(v or {})} for k, v in ids.items()}
        if type(ids) not in (list, tuple, Collection):
            ids = [ids]
        return {self._id_of(i): {} for i in ids}

    async def attach(self, ids: Any, attributes: dict = None) -> int:
        """Insert pivot rows linking the owner to ids. ids can be a key,
            a model, a list of either, or a dict mapping keys to per-row
            pivot attributes. Returns the number of rows inserted.
        """
        tert(attributes is None or type(attributes) is dict, 'attributes must be dict')
        owner_value = self._owner_value()
        now = SqlModel.fresh_timestamp()
        rows = []
        for related_id, extra in self._normalize_ids(ids).items():
            row = {
                **(attributes or {}), **extra,
                self.foreign_pivot_key: owner_value,
                self.related_pivot_key: related_id,
            }
            if self.pivot_timestamps:
                row.setdefault(SqlModel.created_at_column, now)
                row.setdefault(SqlModel.updated_at_column, now)
            rows.append(row)

        self.primary.unset_relation(self.name)
        if isinstance(self.pivot, type):
            for row in rows:
                await self.pivot().force_fill(row).save()
            return len(rows)
        extra_columns = list(dict.fromkeys([k for row in rows for k in row]))
        return await self._pivot_query(extra_columns).insert_many(rows)

    async def detach(self, ids: Any = None) -> int:
        """Delete the owner's pivot rows for ids, or all of them if ids
            is None. Returns the number of rows deleted.
        """
        query = self._pivot_query().equal(
            f'{self.pivot_table}.{self.foreign_pivot_key}', self._owner_value()
        )
        if ids is not None:
            related_ids = list(self._normalize_ids(ids))
            if not related_ids:
                return 0
            query.is_in(f'{self.pivot_table}.{self.related_pivot_key}', related_ids)
        self.primary.unset_relation(self.name)
        return await query.force_delete()

    async def update_existing_pivot(self, related_id: Any, attributes: dict) -> int:
        """Update the pivot row linking the owner to related_id."""
        tert(type(attributes) is dict, 'attributes must be dict')
        attributes = {**attributes}
        if self.pivot_timestamps:
            attributes[SqlModel.updated_at_column] = SqlModel.fresh_timestamp()
        self.primary.unset_relation(self.name)
        return await self._pivot_query(list(attributes)).equal(
            f'{self.pivot_table}.{self.foreign_pivot_key}', self._owner_value()
        ).equal(
            f'{self.pivot_table}.{self.related_pivot_key}', self._id_of(related_id)
        ).update(attributes)

    async def sync(self, ids: Any, detaching: bool = True) -> dict[str, list]:
        """Make the owner's links match ids: attach missing ones, update
            pivot attributes given for existing ones, and (unless
            detaching is False) detach the rest.
        """
        records = self._normalize_ids(ids)
        current = await self._pivot_query().equal(
            f'{self.pivot_table}.{self.foreign_pivot_key}', self._owner_value()
        ).pluck(self.related_pivot_key)
        current = {str(c): c for c in current}

        to_attach = {k: v for k, v in records.items() if str(k) not in current}
        to_detach = [c for s, c in current.items() if s not in {str(k) for k in records}]
        updated = []
        for related_id, attributes in records.items():
            if str(related_id) in current and attributes:
                if await self.update_existing_pivot(related_id, attributes):
                    updated.append(related_id)

        if detaching and to_detach:
            await self.detach(to_detach)
        if to_attach:
            await self.attach(to_attach)

        return {
            'attached': list(to_attach),
            'detached': to_detach if detaching else [],
            'updated': updated,
        }


class HasManyThrough(Relation):
    """Related models reached through an intermediate model, e.g.
        Country -> User -> Post: first_key is the intermediate table's
        column pointing at the owner (users.country_id), second_key the
        related table's column pointing at the intermediate (posts.user_id).
    """
    first_key: Optional[str]
    second_key: Optional[str]
    local_key: Optional[str]

    def __init__(self, related: Type[SqlModel]|str, through: Type[SqlModel]|str,
                 first_key: str = None, second_key: str = None,
                 local_key: str = None, second_local_key: str = None) -> None:
        tert(type(through) is str or
             (isinstance(through, type) and issubclass(through, SqlModel)),
             'through must be a SqlModel subclass or registered name')
        super().__init__(related)
        self._through = through
        self.first_key = first_key
        self.second_key = second_key
        self.local_key = local_key
        self._second_local_key = second_local_key

    def configure(self, owner_class: Type[SqlModel], name: str) -> HasManyThrough:
        super().configure(owner_class, name)
        if self.first_key is None:
            self.first_key = _foreign_key_for(owner_class)
        if self.second_key is None:
            self.second_key = _foreign_key_for(self._through)
        if self.local_key is None:
            self.local_key = owner_class.id_column
        return self

    @property
    def through(self) -> Type[SqlModel]:
        return resolve_type(self._through, f'relation {self.describe()}')

    @property
    def second_local_key(self) -> str:
        return self._second_local_key or self.through.id_column

    def owner_key_column(self) -> str:
        return self.local_key

    def link_column(self) -> str:
        return f'{self.through.table}.{self.first_key}'

    def result_key(self, model: SqlModel) -> Any:
        return getattr(model, 'through_key', None)

    def base_query(self) -> SqlQueryBuilder:
        related, through = self.related, self.through
        query = related.query().join(
            through, [self.second_key, self.second_local_key]
        ).select([
            *[f'{related.table}.{c}' for c in related.columns],
            f'{through.table}.{self.first_key} as through_key',
        ])
        if through.soft_deletes:
            query.is_null(f'{through.table}.{through.deleted_at_column}')
        return query


class HasOneThrough(HasManyThrough):
    """Like HasManyThrough but resolves to a single model."""
    singular: bool = True


class MorphMany(Relation):
    """Polymorphic one-to-many: related rows store the owner's key in
        <morph_name>_id and the owner's morph name in <morph_name>_type.
    """
    morph_name: str
    type_column: Optional[str]
    id_column: Optional[str]
    local_key: Optional[str]
    owner_class: Optional[Type[SqlModel]]

    def __init__(self, related: Type[SqlModel]|str, morph_name: str,
                 type_column: str = None, id_column: str = None,
                 local_key: str = None) -> None:
        tert(type(morph_name) is str and len(morph_name) > 0, 'morph_name must be str')
        super().__init__(related)
        self.morph_name = morph_name
        self.type_column = type_column or f'{morph_name}_type'
        self.id_column = id_column or f'{morph_name}_id'
        self.local_key = local_key
        self.owner_class = None

    def configure(self, owner_class: Type[SqlModel], name: str) -> MorphMany:
        super().configure(owner_class, name)
        if self.local_key is None:
            self.local_key = owner_class.id_column
        return self

    def morph_type(self) -> str:
        """The type name stored for the owner."""
        if self.primary is not None:
            return type(self.primary).get_morph_name()
        return (self.owner_class or self.primary_class).get_morph_name()

    def owner_key_column(self) -> str:
        return self.local_key

    def link_column(self) -> str:
        return f'{self.related.table}.{self.id_column}'

    def result_key(self, model: SqlModel) -> Any:
        return model.data.get(self.id_column)

    def base_query(self) -> SqlQueryBuilder:
        related = self.related
        return related.query().equal(f'{related.table}.{self.type_column}', self.morph_type())

    async def eager_load(self, owners: list[SqlModel],
                         constraint: Optional[Callable] = None) -> None:
        if owners:
            self.owner_class = type(owners[0])
        await super().eager_load(owners, constraint)

    def _remember(self, model: SqlModel) -> None:
        loaded = self.primary.get_relation(self.name)
        if self.singular:
            self.primary.set_relation(self.name, model)
        elif isinstance(loaded, list) and model not in loaded:
            loaded.append(model)

    async def save(self, model: SqlModel) -> SqlModel:
        """Point model at the owner, save it and return it."""
        primary = self._require_primary()
        tert(isinstance(model, self.related), f'model must be {self.related.__name__}')
        model.set(self.type_column, self.morph_type())
        model.set(self.id_column, primary.data.get(self.local_key))
        await model.save()
        self._remember(model)
        return model

    async def create(self, data: dict) -> SqlModel:
        return await self.save(self.related(data))


class MorphOne(MorphMany):
    """Polymorphic one-to-one."""
    singular: bool = True


class MorphTo(Relation):
    """Inverse of MorphMany/MorphOne: the owner stores the related
        model's morph name and key. Eager loading groups owners by
        stored type name and runs one query per type.
    """
    singular: bool = True
    morph_name: Optional[str]
    type_column: Optional[str]
    id_column: Optional[str]

    def __init__(self, morph_name: str = None, type_column: str = None,
                 id_column: str = None, owner_key: str = None) -> None:
        tert(morph_name is None or type(morph_name) is str, 'morph_name must be str')
        super().__init__(None)
        self.morph_name = morph_name
        self.type_column = type_column
        self.id_column = id_column
        self._owner_key = owner_key

    def configure(self, owner_class: Type[SqlModel], name: str) -> MorphTo:
        super().configure(owner_class, name)
        self.morph_name = self.morph_name or name
        self.type_column = self.type_column or f'{self.morph_name}_type'
        self.id_column = self.id_column or f'{self.morph_name}_id'
        return self

    def target_class(self, type_name: str) -> Type[SqlModel]:
        """Resolve a stored type name. Raises UnresolvableReferenceError
            naming this relation for unregistered names.
        """
        target = resolve_type(type_name, f'relation {self.describe()}')
        tert(issubclass(target, SqlModel), 'morph target must be a SqlModel subclass')
        return target

    def target_key(self, target: Type[SqlModel]) -> str:
        return self._owner_key or target.id_column

    def owner_key_column(self) -> str:
        return self.id_column

    def link_column(self) -> str:
        """The linked table depends on the stored type of each owner,
            so there is no single link column. Raises UsageError.
        """
        raise UsageError(f'{self.describe()} links to a different table per stored type')

    def result_key(self, model: SqlModel) -> Any:
        return model.data.get(self.target_key(type(model)))

    async def eager_load(self, owners: list[SqlModel],
                         constraint: Optional[Callable] = None) -> None:
        groups: dict[str, list[SqlModel]] = {}
        for owner in owners:
            type_name = owner.data.get(self.type_column)
            if type_name is None or owner.data.get(self.id_column) is None:
                owner.set_relation(self.name, None)
                continue
            groups.setdefault(type_name, []).append(owner)

        for type_name, group in groups.items():
            target = self.target_class(type_name)
            keys = self.owner_keys(group)
            query = target.query().is_in(f'{target.table}.{self.target_key(target)}', keys)
            self.match(group, await self._fetch(query, keys, constraint))

    def query(self) -> SqlQueryBuilder:
        primary = self._require_primary()
        type_name = primary.data.get(self.type_column)
        tressa(type_name is not None, f'{self.describe()} has no stored type')
        target = self.target_class(type_name)
        return target.query().equal(
            f'{target.table}.{self.target_key(target)}', primary.data.get(self.id_column)
        )

    async def get_results(self) -> Optional[SqlModel]:
        primary = self._require_primary()
        if primary.data.get(self.type_column) is None or \
            primary.data.get(self.id_column) is None:
            return None
        return await self.query().first()

    def associate(self, model: SqlModel) -> SqlModel:
        """Point the owner at model. The owner is not saved."""
        primary = self._require_primary()
        tert(isinstance(model, SqlModel), 'model must be a SqlModel')
        primary.set(self.type_column, type(model).get_morph_name())
        primary.set(self.id_column, model.data.get(self.target_key(type(model))))
        primary.set_relation(self.name, model)
        return primary

    def dissociate(self) -> SqlModel:
        primary = self._require_primary()
        primary.set(self.type_column, None)
        primary.set(self.id_column, None)
        primary.set_relation(self.name, None)
        return primary


def has_one(related: Type[SqlModel]|str, foreign_key: str = None,
            local_key: str = None) -> HasOne:
    """Creates a HasOne relation. Usage syntax is like
        `avatar = has_one('Avatar')` in the User class body. If the
        foreign key column on the avatars table is not user_id
        (owner PascalCase -> snake_case + "_id"), it can be specified.
    """
    return HasOne(related, foreign_key, local_key)

def has_many(related: Type[SqlModel]|str, foreign_key: str = None,
             local_key: str = None) -> HasMany:
    """Creates a HasMany relation. Usage syntax is like
        `items = has_many('OrderItem', 'order_id')` in the Order class
        body.
    """
    return HasMany(related, foreign_key, local_key)

def belongs_to(related: Type[SqlModel]|str, foreign_key: str = None,
               owner_key: str = None) -> BelongsTo:
    """Creates a BelongsTo relation. Usage syntax is like
        `order = belongs_to('Order')` in the OrderItem class body. The
        foreign key defaults to the related name in snake_case + "_id".
    """
    return BelongsTo(related, foreign_key, owner_key)

def belongs_to_many(related: Type[SqlModel]|str, pivot: Type[SqlModel]|str = None,
                    foreign_pivot_key: str = None, related_pivot_key: str = None,
                    parent_key: str = None, related_key: str = None) -> BelongsToMany:
    """Creates a BelongsToMany relation. Usage syntax is like
        `roles = belongs_to_many('Role', 'role_user').with_pivot('assigned_at')`
        in the User class body. The pivot keys default to user_id and
        role_id.
    """
    return BelongsToMany(related, pivot, foreign_pivot_key, related_pivot_key,
                         parent_key, related_key)

def has_many_through(related: Type[SqlModel]|str, through: Type[SqlModel]|str,
                     first_key: str = None, second_key: str = None,
                     local_key: str = None, second_local_key: str = None) -> HasManyThrough:
    """Creates a HasManyThrough relation. Usage syntax is like
        `posts = has_many_through('Post', 'User')` in the Country class
        body.
    """
    return HasManyThrough(related, through, first_key, second_key,
                          local_key, second_local_key)

def has_one_through(related: Type[SqlModel]|str, through: Type[SqlModel]|str,
                    first_key: str = None, second_key: str = None,
                    local_key: str = None, second_local_key: str = None) -> HasOneThrough:
    return HasOneThrough(related, through, first_key, second_key,
                         local_key, second_local_key)

def morph_to(morph_name: str = None, type_column: str = None,
             id_column: str = None, owner_key: str = None) -> MorphTo:
    """Creates a MorphTo relation. Usage syntax is like
        `commentable = morph_to()` in the Comment class body, reading
        commentable_type and commentable_id.
    """
    return MorphTo(morph_name, type_column, id_column, owner_key)

def morph_many(related: Type[SqlModel]|str, morph_name: str,
               type_column: str = None, id_column: str = None,
               local_key: str = None) -> MorphMany:
    """Creates a MorphMany relation. Usage syntax is like
        `comments = morph_many('Comment', 'commentable')` in the Post
        class body.
    """
    return MorphMany(related, morph_name, type_column, id_column, local_key)

def morph_one(related: Type[SqlModel]|str, morph_name: str,
              type_column: str = None, id_column: str = None,
              local_key: str = None) -> MorphOne:
    return MorphOne(related, morph_name, type_column, id_column, local_key)
