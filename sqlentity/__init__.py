"""
    Sqlentity is an async package for mapping database records into
    objects (i.e. ORM), including dirty tracking, attribute casts, life
    cycle event hooks, soft deletes, global and local query scopes, and
    a relation system with batched eager loading. It also includes a
    query builder with pagination, chunked iteration and aggregates,
    and ambient transactions. The default binding is to sqlite through
    aiosqlite; other databases can be bound by implementing the
    protocols in sqlentity.interfaces.
"""

from sqlentity.classes import (
    SqlModel,
    SqlQueryBuilder,
    AsyncSqliteContext,
    AsyncSqliteTransaction,
    Accessor,
    Row,
    JoinedModel,
    JoinSpec,
    LengthAwarePage,
    SimplePage,
    CursorPage,
    EVENTS,
    dynamic_sqlmodel,
    load_relations,
    current_transaction,
    transaction,
)
from sqlentity.casts import (
    MoneyCast,
    EncryptedCast,
    JsonCast,
    ArrayCast,
    DateCast,
    DateTimeCast,
    BooleanCast,
    NumberCast,
    StringCast,
    register_cast,
    resolve_cast,
)
from sqlentity.collection import Collection
from sqlentity.errors import (
    UsageError,
    NotFoundError,
    UnresolvableReferenceError,
)
from sqlentity.interfaces import (
    AsyncCursorProtocol,
    AsyncDBContextProtocol,
    AsyncTransactionProtocol,
    CastProtocol,
    ModelProtocol,
    QueryBuilderProtocol,
    RowProtocol,
    RelationProtocol,
)
from sqlentity.registry import (
    register_type,
    unregister_type,
    has_type,
    resolve_type,
    registered_types,
)
from sqlentity.relations import (
    Relation,
    HasOne,
    HasMany,
    BelongsTo,
    BelongsToMany,
    HasManyThrough,
    HasOneThrough,
    MorphMany,
    MorphOne,
    MorphTo,
    has_one,
    has_many,
    belongs_to,
    belongs_to_many,
    has_many_through,
    has_one_through,
    morph_to,
    morph_many,
    morph_one,
)
from sqlentity.version import version
