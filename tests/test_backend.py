import pytest

from fpdaemon.store.backend import KVBackend


@pytest.fixture
def db(tmp_path):
    backend = KVBackend(tmp_path / "data" / "kv.db")
    backend.create_bucket(b"things")
    yield backend
    backend.close()


def test_put_then_get_round_trip(db):
    db.put(b"things", b"k1", b"v1")
    assert db.get(b"things", b"k1") == b"v1"
    assert db.get(b"things", b"missing") is None


def test_put_overwrites(db):
    db.put(b"things", b"k", b"old")
    db.put(b"things", b"k", b"new")
    assert db.get(b"things", b"k") == b"new"


def test_create_bucket_is_idempotent(db):
    db.put(b"things", b"k", b"v")
    db.create_bucket(b"things")
    assert db.has_bucket("things")
    assert db.get(b"things", b"k") == b"v"


def test_missing_bucket_raises(db):
    assert not db.has_bucket(b"other")
    with pytest.raises(KeyError):
        db.get(b"other", b"k")
    with pytest.raises(KeyError):
        db.put(b"other", b"k", b"v")


def test_buckets_are_separate(db):
    db.create_bucket(b"other")
    db.put(b"things", b"k", b"a")
    db.put(b"other", b"k", b"b")
    assert db.get(b"things", b"k") == b"a"
    assert db.get(b"other", b"k") == b"b"


def test_delete(db):
    db.put(b"things", b"k", b"v")
    assert db.delete(b"things", b"k") is True
    assert db.get(b"things", b"k") is None
    assert db.delete(b"things", b"k") is False


def test_items_with_prefix_in_byte_order(db):
    for key in (b"ab\x02", b"b", b"ab\x01", b"a", b"ab\xff"):
        db.put(b"things", key, key + b"-value")
    found = db.items(b"things", b"ab")
    assert [k for k, _ in found] == [b"ab\x01", b"ab\x02", b"ab\xff"]
    assert all(v == k + b"-value" for k, v in found)


def test_items_without_prefix_returns_everything_sorted(db):
    keys = [b"c", b"a", b"b"]
    for key in keys:
        db.put(b"things", key, b"x")
    assert [k for k, _ in db.items(b"things")] == sorted(keys)


def test_transaction_commits(db):
    with db.transaction():
        db.put(b"things", b"a", b"1")
        db.put(b"things", b"b", b"2")
    assert db.get(b"things", b"a") == b"1"
    assert db.get(b"things", b"b") == b"2"


def test_transaction_rolls_back_on_error(db):
    db.put(b"things", b"a", b"before")
    with pytest.raises(RuntimeError):
        with db.transaction():
            db.put(b"things", b"a", b"during")
            db.put(b"things", b"b", b"during")
            raise RuntimeError("boom")
    assert db.get(b"things", b"a") == b"before"
    assert db.get(b"things", b"b") is None


def test_nested_transaction_rolls_back_inner_only(db):
    with db.transaction():
        db.put(b"things", b"outer", b"1")
        with pytest.raises(ValueError):
            with db.transaction():
                db.put(b"things", b"inner", b"2")
                raise ValueError("inner failure")
    assert db.get(b"things", b"outer") == b"1"
    assert db.get(b"things", b"inner") is None


def test_data_persists_across_reopen(tmp_path):
    path = tmp_path / "kv.db"
    with KVBackend(path) as first:
        first.create_bucket(b"things")
        first.put(b"things", b"k", b"v")
    with KVBackend(path) as second:
        assert second.has_bucket(b"things")
        assert second.get(b"things", b"k") == b"v"


def test_closed_backend_raises(tmp_path):
    backend = KVBackend(tmp_path / "kv.db")
    backend.create_bucket(b"things")
    backend.close()
    with pytest.raises(RuntimeError):
        backend.get(b"things", b"k")