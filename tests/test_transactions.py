from __future__ import annotations
from context import classes, errors
from genericpath import isfile
import asyncio
import os
import sqlite3
import unittest


DB_FILEPATH = 'test_transactions.db'


class TestTransactions(unittest.TestCase):
    db: sqlite3.Connection = None
    cursor: sqlite3.Cursor = None

    def setUp(self) -> None:
        """Set up the test database and model."""
        try:
            if isfile(DB_FILEPATH):
                os.remove(DB_FILEPATH)
        except:
            ...
        self.db = sqlite3.connect(DB_FILEPATH)
        self.cursor = self.db.cursor()
        self.cursor.execute('create table accounts (id integer primary key, ' +
            'name text, balance integer)')
        self.db.commit()

        class Account(classes.SqlModel):
            connection_info: str = DB_FILEPATH
            table: str = 'accounts'
            columns: tuple = ('id', 'name', 'balance')
            fillable: tuple = ('name', 'balance')

        self.Account = Account
        return super().setUp()

    def tearDown(self) -> None:
        """Close cursor and delete test database."""
        self.cursor.close()
        self.db.close()
        os.remove(DB_FILEPATH)
        return super().tearDown()

    def stored_names(self) -> list[str]:
        return [r[0] for r in self.cursor.execute(
            'select name from accounts order by id'
        ).fetchall()]

    def test_transaction_commits_when_callback_returns(self):
        async def callback(txn):
            await self.Account.create({'name': 'alice', 'balance': 10})
            await self.Account.create({'name': 'bob', 'balance': 5})
            return 'done'

        result = asyncio.run(classes.transaction(callback, DB_FILEPATH))
        assert result == 'done'
        assert self.stored_names() == ['alice', 'bob']

    def test_transaction_rolls_back_when_callback_raises(self):
        async def callback(txn):
            await self.Account.create({'name': 'alice', 'balance': 10})
            assert await self.Account.query().count() == 1
            raise ValueError('boom')

        with self.assertRaises(ValueError) as e:
            asyncio.run(classes.transaction(callback, DB_FILEPATH))
        assert str(e.exception) == 'boom'
        assert self.stored_names() == []

    def test_sync_callbacks_are_accepted(self):
        result = asyncio.run(classes.transaction(lambda txn: 42, DB_FILEPATH))
        assert result == 42

    def test_current_transaction_is_set_only_inside(self):
        seen = []

        async def callback(txn):
            seen.append(classes.current_transaction())
            return txn

        assert classes.current_transaction() is None
        txn = asyncio.run(classes.transaction(callback, DB_FILEPATH))
        assert seen == [txn]
        assert isinstance(txn, classes.AsyncSqliteTransaction)
        assert classes.current_transaction() is None
        assert txn.connection is None

    def test_queries_inside_transaction_share_its_connection(self):
        async def test():
            async with classes.AsyncSqliteTransaction(DB_FILEPATH) as txn:
                context = classes.AsyncSqliteContext(DB_FILEPATH)
                async with context as cursor:
                    await cursor.execute("insert into accounts (name) values ('x')")
                assert context.connection is txn.connection
                await txn.rollback()

        asyncio.run(test())
        assert self.stored_names() == []

    def test_nested_transaction_joins_the_outer_one(self):
        inner_seen = []

        async def inner(txn):
            inner_seen.append((txn.connection, classes.current_transaction()))
            await self.Account.create({'name': 'inner'})

        async def outer(txn):
            await self.Account.create({'name': 'outer'})
            await classes.transaction(inner, DB_FILEPATH)
            inner_seen.append(txn)
            raise ValueError('undo everything')

        with self.assertRaises(ValueError):
            asyncio.run(classes.transaction(outer, DB_FILEPATH))

        (_, current), outer_txn = inner_seen
        assert current is outer_txn
        assert outer_txn.connection is None
        assert self.stored_names() == []

    def test_inner_failure_leaves_outcome_to_outer_transaction(self):
        async def inner(txn):
            await self.Account.create({'name': 'inner'})
            raise ValueError('inner failed')

        async def outer(txn):
            await self.Account.create({'name': 'outer'})
            try:
                await classes.transaction(inner, DB_FILEPATH)
            except ValueError:
                pass

        asyncio.run(classes.transaction(outer, DB_FILEPATH))
        assert self.stored_names() == ['outer', 'inner']

    def test_transaction_is_scoped_to_its_task(self):
        seen = {}

        async def in_transaction(entered: asyncio.Event, release: asyncio.Event):
            async def callback(txn):
                entered.set()
                await release.wait()
                seen['inside'] = classes.current_transaction()
            await classes.transaction(callback, DB_FILEPATH)

        async def observer(entered: asyncio.Event, release: asyncio.Event):
            await entered.wait()
            seen['other_task'] = classes.current_transaction()
            release.set()

        async def test():
            entered, release = asyncio.Event(), asyncio.Event()
            await asyncio.gather(
                in_transaction(entered, release),
                observer(entered, release),
            )

        asyncio.run(test())
        assert seen['inside'] is not None
        assert seen['other_task'] is None

    def test_retryable_errors_rerun_the_callback(self):
        calls = []

        async def callback(txn):
            calls.append(1)
            await self.Account.create({'name': f'attempt {len(calls)}'})
            if len(calls) < 3:
                raise sqlite3.OperationalError('database is locked')
            return len(calls)

        with self.assertLogs('sqlentity.classes', 'WARNING') as logs:
            result = asyncio.run(classes.transaction(callback, DB_FILEPATH, attempts=3))
        assert result == 3
        assert len([m for m in logs.output if 'retrying' in m]) == 2
        assert self.stored_names() == ['attempt 3']

    def test_retries_stop_after_attempts(self):
        calls = []

        async def callback(txn):
            calls.append(1)
            raise sqlite3.OperationalError('database is locked')

        with self.assertRaises(sqlite3.OperationalError):
            asyncio.run(classes.transaction(callback, DB_FILEPATH, attempts=2))
        assert len(calls) == 2

    def test_other_errors_are_not_retried(self):
        calls = []

        async def callback(txn):
            calls.append(1)
            raise sqlite3.OperationalError('no such table: ledger')

        with self.assertRaises(sqlite3.OperationalError):
            asyncio.run(classes.transaction(callback, DB_FILEPATH, attempts=3))
        assert len(calls) == 1

        async def fails(txn):
            calls.append(1)
            raise KeyError('nope')

        with self.assertRaises(KeyError):
            asyncio.run(classes.transaction(fails, DB_FILEPATH, attempts=3))
        assert len(calls) == 2

    def test_model_transaction_uses_model_database(self):
        async def callback(txn):
            assert txn.connection_info == DB_FILEPATH
            account = await self.Account.create({'name': 'carol', 'balance': 1})
            await account.update({'balance': 2})
            return account

        account = asyncio.run(self.Account.transaction(callback))
        assert account.exists
        assert self.cursor.execute(
            'select balance from accounts where id = ?', [account.id]
        ).fetchone()[0] == 2

    def test_invalid_arguments_raise(self):
        with self.assertRaises(TypeError):
            asyncio.run(classes.transaction('not callable', DB_FILEPATH))

        with self.assertRaises(ValueError):
            asyncio.run(classes.transaction(lambda txn: None, DB_FILEPATH, attempts=0))

        with self.assertRaises(TypeError):
            classes.AsyncSqliteTransaction(123)

    def test_transaction_class_can_be_replaced(self):
        entered = []

        class RecordingTransaction(classes.AsyncSqliteTransaction):
            async def __aenter__(self):
                entered.append(self.connection_info)
                return await super().__aenter__()

        asyncio.run(classes.transaction(
            lambda txn: None, DB_FILEPATH, transaction_class=RecordingTransaction
        ))
        assert entered == [DB_FILEPATH]

    def test_empty_connection_info_raises_UsageError(self):
        original = classes.AsyncSqliteTransaction.connection_info
        context_original = classes.AsyncSqliteContext.connection_info
        classes.AsyncSqliteTransaction.connection_info = ''
        classes.AsyncSqliteContext.connection_info = ''
        try:
            with self.assertRaises(errors.UsageError):
                classes.AsyncSqliteTransaction()
        finally:
            classes.AsyncSqliteTransaction.connection_info = original
            classes.AsyncSqliteContext.connection_info = context_original


if __name__ == '__main__':
    unittest.main()
