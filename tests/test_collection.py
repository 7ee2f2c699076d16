from context import collection
import json
import unittest


Collection = collection.Collection


class Item:
    def __init__(self, name, price):
        self.name = name
        self.price = price


class TestCollection(unittest.TestCase):
    def setUp(self) -> None:
        self.items = Collection([
            {'id': 1, 'kind': 'fruit', 'name': 'apple', 'price': 3},
            {'id': 2, 'kind': 'veg', 'name': 'carrot', 'price': 1},
            {'id': 3, 'kind': 'fruit', 'name': 'banana', 'price': 2},
            {'id': 4, 'kind': 'veg', 'name': 'pea', 'price': None},
        ])
        return super().setUp()

    def test_Collection_is_a_list(self):
        assert isinstance(self.items, list)
        assert len(self.items) == 4
        assert Collection().is_empty()
        assert self.items.is_not_empty()

    def test_first_and_last(self):
        assert self.items.first()['id'] == 1
        assert self.items.last()['id'] == 4
        assert self.items.first(lambda i: i['kind'] == 'veg')['id'] == 2
        assert Collection().first(default='nothing') == 'nothing'

    def test_pluck_reads_dicts_and_objects(self):
        assert self.items.pluck('name') == ['apple', 'carrot', 'banana', 'pea']
        assert self.items.pluck('name', 'id') == {
            1: 'apple', 2: 'carrot', 3: 'banana', 4: 'pea'
        }
        objects = Collection([Item('a', 1), Item('b', 2)])
        assert objects.pluck('name') == ['a', 'b']

    def test_where_supports_equality_and_operators(self):
        assert self.items.where('kind', 'fruit').pluck('id') == [1, 3]
        assert self.items.where('price', '>=', 2).pluck('id') == [1, 3]
        assert self.items.where('price', '!=', 1).pluck('id') == [1, 3, 4]
        assert self.items.where_in('id', [2, 4]).pluck('name') == ['carrot', 'pea']
        assert self.items.where_not_in('id', [2, 4]).pluck('name') == ['apple', 'banana']
        assert self.items.first_where('kind', 'veg')['name'] == 'carrot'

        with self.assertRaises(ValueError):
            self.items.where('price', '~', 1)

    def test_filter_reject_and_partition(self):
        cheap = self.items.filter(lambda i: (i['price'] or 0) < 2)
        assert cheap.pluck('id') == [2, 4]
        assert self.items.reject(lambda i: i['kind'] == 'veg').pluck('id') == [1, 3]
        fruit, veg = self.items.partition(lambda i: i['kind'] == 'fruit')
        assert fruit.pluck('id') == [1, 3]
        assert veg.pluck('id') == [2, 4]

    def test_grouping_and_keying(self):
        groups = self.items.group_by('kind')
        assert list(groups) == ['fruit', 'veg']
        assert groups['veg'].pluck('id') == [2, 4]
        assert self.items.key_by('name')['banana']['id'] == 3
        assert self.items.count_by('kind') == {'fruit': 2, 'veg': 2}

    def test_sorting(self):
        assert self.items.sort_by('price').pluck('id') == [4, 2, 3, 1]
        assert self.items.sort_by_desc('price').pluck('id') == [1, 3, 2, 4]
        assert self.items.sort_by(lambda i: i['name']).pluck('name') == [
            'apple', 'banana', 'carrot', 'pea'
        ]

    def test_aggregates_skip_none(self):
        assert self.items.sum('price') == 6
        assert self.items.avg('price') == 2
        assert self.items.min('price') == 1
        assert self.items.max('price') == 3
        assert Collection().avg('price') is None
        assert Collection([1, 2, 3]).sum() == 6

    def test_chunk_flatten_take_skip(self):
        chunks = self.items.chunk(3)
        assert [len(c) for c in chunks] == [3, 1]
        assert all([isinstance(c, Collection) for c in chunks])
        assert Collection([[1, [2]], [3]]).flatten() == [1, 2, 3]
        assert Collection([[1, [2]], [3]]).flatten(1) == [1, [2], 3]
        assert self.items.take(2).pluck('id') == [1, 2]
        assert self.items.take(-1).pluck('id') == [4]
        assert self.items.skip(3).pluck('id') == [4]

        with self.assertRaises(ValueError):
            self.items.chunk(0)

    def test_unique_keeps_first_occurrence(self):
        assert self.items.unique('kind').pluck('id') == [1, 2]
        assert Collection([1, 1, 2, 1]).unique() == [1, 2]

    def test_random_and_shuffle_preserve_members(self):
        assert self.items.random() in self.items
        sample = self.items.random(2)
        assert len(sample) == 2
        assert all([s in self.items for s in sample])
        assert sorted(self.items.shuffle().pluck('id')) == [1, 2, 3, 4]

        with self.assertRaises(ValueError):
            self.items.random(5)

    def test_conditional_helpers(self):
        seen = []
        assert self.items.tap(lambda c: seen.append(len(c))) is self.items
        assert seen == [4]
        assert self.items.when(True, lambda c: c.take(1)).pluck('id') == [1]
        assert self.items.when(False, lambda c: c.take(1)) is self.items
        assert self.items.unless(False, lambda c: c.take(2)).pluck('id') == [1, 2]
        assert Collection().when_empty(lambda c: Collection(['default'])) == ['default']
        assert self.items.when_not_empty(lambda c: 'full') == 'full'

    def test_each_stops_on_False(self):
        visited = []
        def visit(item):
            visited.append(item['id'])
            return item['id'] < 2
        self.items.each(visit)
        assert visited == [1, 2]

    def test_map_returns_Collection(self):
        mapped = self.items.map(lambda i: i['id'] * 10)
        assert isinstance(mapped, Collection)
        assert mapped == [10, 20, 30, 40]

    def test_serialization(self):
        assert self.items.to_list()[0] == self.items[0]
        assert json.loads(self.items.take(1).to_json()) == [
            {'id': 1, 'kind': 'fruit', 'name': 'apple', 'price': 3}
        ]


if __name__ == '__main__':
    unittest.main()
