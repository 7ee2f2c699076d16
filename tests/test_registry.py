from context import classes, errors, registry
import unittest


class TestRegistry(unittest.TestCase):
    def tearDown(self) -> None:
        for name in ('RegistryWidget', 'widget_alias', 'Gadget'):
            registry.unregister_type(name)
        return super().tearDown()

    def test_model_classes_register_themselves_by_name(self):
        class RegistryWidget(classes.SqlModel):
            table = 'widgets'
            columns = ('id', 'name')

        assert registry.has_type('RegistryWidget')
        assert registry.resolve_type('RegistryWidget') is RegistryWidget

    def test_morph_name_overrides_registered_name(self):
        class Gadget(classes.SqlModel):
            table = 'gadgets'
            columns = ('id', 'name')
            morph_name = 'widget_alias'

        assert registry.resolve_type('widget_alias') is Gadget
        assert Gadget.get_morph_name() == 'widget_alias'

    def test_register_false_skips_registration(self):
        class Hidden(classes.SqlModel, register=False):
            table = 'hidden'
            columns = ('id',)

        assert not registry.has_type('Hidden')

    def test_later_registration_replaces_earlier(self):
        class First:
            ...
        class Second:
            ...
        registry.register_type('Gadget', First)
        registry.register_type('Gadget', Second)
        assert registry.resolve_type('Gadget') is Second
        assert registry.registered_types()['Gadget'] is Second

    def test_resolve_type_passes_classes_through(self):
        assert registry.resolve_type(classes.SqlModel) is classes.SqlModel

    def test_resolve_type_raises_for_unknown_name_with_context(self):
        with self.assertRaises(errors.UnresolvableReferenceError) as e:
            registry.resolve_type('NoSuchModel', 'relation Post.author')
        assert e.exception.reference == 'NoSuchModel'
        assert 'relation Post.author' in str(e.exception)
        assert isinstance(e.exception, LookupError)

    def test_register_type_rejects_invalid_input(self):
        with self.assertRaises(TypeError) as e:
            registry.register_type('', classes.SqlModel)
        assert str(e.exception) == 'name must be non-empty str'

        with self.assertRaises(TypeError) as e:
            registry.register_type('thing', 'not a class')
        assert str(e.exception) == 'cls must be a class'


if __name__ == '__main__':
    unittest.main()
