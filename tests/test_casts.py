from context import casts, errors, interfaces
from cryptography.fernet import Fernet
from datetime import date, datetime
import os
import unittest


class TestCasts(unittest.TestCase):
    def test_builtin_casts_implement_CastProtocol(self):
        for name in ('money', 'json', 'array', 'date', 'datetime',
                     'boolean', 'number', 'string'):
            assert isinstance(casts.resolve_cast(name), interfaces.CastProtocol), name

    def test_MoneyCast_stores_integer_cents(self):
        cast = casts.MoneyCast()
        assert cast.set(12.34) == 1234
        assert cast.set(0.1 + 0.2) == 30
        assert cast.get(1234) == 12.34
        assert cast.set(None) is None
        assert cast.get(None) is None

        with self.assertRaises(TypeError) as e:
            cast.set('12.34')
        assert str(e.exception) == 'money value must be numeric'

    def test_EncryptedCast_round_trips_and_hides_plaintext(self):
        cast = casts.EncryptedCast(Fernet.generate_key())
        stored = cast.set('secret')
        assert type(stored) is str
        assert 'secret' not in stored
        assert cast.get(stored) == 'secret'
        assert cast.deterministic is False
        assert cast.set('secret') != stored

    def test_EncryptedCast_reads_key_from_environment(self):
        key = Fernet.generate_key().decode()
        previous = os.environ.get('SQLENTITY_CAST_KEY')
        os.environ['SQLENTITY_CAST_KEY'] = key
        try:
            cast = casts.resolve_cast('encrypted')
            assert casts.EncryptedCast(key).get(cast.set('abc')) == 'abc'
        finally:
            if previous is None:
                del os.environ['SQLENTITY_CAST_KEY']
            else:
                os.environ['SQLENTITY_CAST_KEY'] = previous

    def test_EncryptedCast_without_key_raises_UsageError(self):
        previous = os.environ.pop('SQLENTITY_CAST_KEY', None)
        try:
            with self.assertRaises(errors.UsageError):
                casts.EncryptedCast()
        finally:
            if previous is not None:
                os.environ['SQLENTITY_CAST_KEY'] = previous

    def test_JsonCast_uses_canonical_form(self):
        cast = casts.JsonCast()
        assert cast.set({'b': 1, 'a': [1, 2]}) == '{"a":[1,2],"b":1}'
        assert cast.set({'a': [1, 2], 'b': 1}) == cast.set({'b': 1, 'a': [1, 2]})
        assert cast.get('{"a":[1,2],"b":1}') == {'a': [1, 2], 'b': 1}

    def test_ArrayCast_requires_sequences(self):
        cast = casts.ArrayCast()
        assert cast.set(('x', 'y')) == '["x","y"]'
        assert cast.get('["x","y"]') == ['x', 'y']

        with self.assertRaises(TypeError) as e:
            cast.set({'x': 1})
        assert str(e.exception) == 'array value must be list or tuple'

    def test_DateCast_and_DateTimeCast_use_iso_strings(self):
        assert casts.DateCast().set(date(2024, 3, 1)) == '2024-03-01'
        assert casts.DateCast().set(datetime(2024, 3, 1, 12, 30)) == '2024-03-01'
        assert casts.DateCast().get('2024-03-01') == date(2024, 3, 1)

        moment = datetime(2024, 3, 1, 12, 30, 15)
        stored = casts.DateTimeCast().set(moment)
        assert stored == '2024-03-01T12:30:15'
        assert casts.DateTimeCast().get(stored) == moment

    def test_BooleanCast_and_NumberCast(self):
        cast = casts.BooleanCast()
        assert cast.set(True) == 1
        assert cast.set(False) == 0
        assert cast.get(1) is True
        assert cast.get('false') is False

        number = casts.NumberCast()
        assert number.get('12') == 12
        assert number.get('1.5') == 1.5
        assert casts.StringCast().set(12) == '12'

    def test_register_cast_accepts_instances_and_factories(self):
        class Upper:
            def get(self, raw):
                return raw
            def set(self, value):
                return value.upper()

        casts.register_cast('test_upper', Upper)
        assert isinstance(casts.resolve_cast('test_upper'), Upper)

        instance = Upper()
        casts.register_cast('test_upper_instance', instance)
        assert casts.resolve_cast('test_upper_instance') is instance

        with self.assertRaises(TypeError) as e:
            casts.register_cast('', Upper)
        assert str(e.exception) == 'name must be non-empty str'

    def test_resolve_cast_raises_UnresolvableReferenceError_for_unknown_name(self):
        with self.assertRaises(errors.UnresolvableReferenceError) as e:
            casts.resolve_cast('no_such_cast')
        assert e.exception.reference == 'no_such_cast'


if __name__ == '__main__':
    unittest.main()
