from kpng.diffstore import KV, DiffStore, ItemState
from kpng.localnet import xxhash64


def _set(store, k, v):
    store.set(k.encode(), xxhash64(v.encode()), v)


def test_diffstore_example():
    s = DiffStore()

    _set(s, "a", "alice")
    _set(s, "b", "bob")
    assert s.updated() == [KV(b"a", "alice"), KV(b"b", "bob")]
    assert s.deleted() == []

    s.reset(ItemState.UNCHANGED)
    _set(s, "a", "alice2")
    assert s.updated() == [KV(b"a", "alice2")]
    assert s.deleted() == []

    s.reset(ItemState.DELETED)
    _set(s, "a", "alice3")
    assert s.updated() == [KV(b"a", "alice3")]
    assert s.deleted() == [KV(b"b", None)]

    s.reset(ItemState.DELETED)
    _set(s, "a", "alice3")
    _set(s, "b", "bob")
    assert s.updated() == [KV(b"b", "bob")]
    assert s.deleted() == []

    s.reset(ItemState.DELETED)
    s.reset(ItemState.DELETED)
    assert len(s) == 0


def test_delete_by_prefix():
    s = DiffStore()
    for key in ["ns/a", "ns/a/1", "ns/b", "other"]:
        s.set(key, 1, key)
    s.reset(ItemState.UNCHANGED)
    s.delete_by_prefix(b"ns/a")
    assert s.deleted() == [KV(b"ns/a/1", None), KV(b"ns/a", None)]


def test_deleted_is_descending():
    s = DiffStore()
    for key in ["a", "c", "b"]:
        s.set(key, 1, key)
    s.reset(ItemState.DELETED)
    assert [kv.key for kv in s.deleted()] == [b"c", b"b", b"a"]


def test_same_hash_is_not_an_update():
    s = DiffStore()
    s.set(b"k", 7, "v")
    s.reset(ItemState.UNCHANGED)
    s.set(b"k", 7, "v2")
    assert s.updated() == []


def test_str_keys_normalised():
    s = DiffStore()
    s.set("k", 1, "v")
    s.set(b"k", 2, "w")
    assert s.updated() == [KV(b"k", "w")]
    assert len(s) == 1