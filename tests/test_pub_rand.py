import random

import pytest

from fpdaemon.store.backend import KVBackend
from fpdaemon.store.errors import PubRandProofNotFound
from fpdaemon.store.pub_rand import (
    PubRandProofStore,
    build_keys,
    get_key,
    get_prefix_key,
)

CHAIN_ID = b"test-chain"


@pytest.fixture
def backend():
    db = KVBackend(":memory:")
    yield db
    db.close()


@pytest.fixture
def store(backend):
    return PubRandProofStore(backend)


def _proofs(r, n):
    return [r.randbytes(40) for _ in range(n)]


@pytest.mark.parametrize("seed", range(10))
def test_remove_merkle_proof(backend, seed):
    r = random.Random(seed)
    store = PubRandProofStore(backend)
    num_pub_rand = r.randrange(1000)
    pk = r.randbytes(32)
    start_height = 1
    store.add_pub_rand_proof_list(CHAIN_ID, pk, start_height, num_pub_rand, _proofs(r, num_pub_rand))

    target_height = r.randrange(1, 1000)
    store.remove_pub_rand_proof_list(CHAIN_ID, pk, target_height)

    with pytest.raises(PubRandProofNotFound):
        store.get_pub_rand_proof_list(CHAIN_ID, pk, start_height, target_height)


def test_key_layout():
    pk = bytes(range(32))
    key = get_key(CHAIN_ID, pk, 5)
    assert key == CHAIN_ID + pk + b"\x00" * 7 + b"\x05"
    assert key.startswith(get_prefix_key(CHAIN_ID, pk))


def test_build_keys_consecutive_heights():
    pk = bytes(32)
    keys = build_keys(CHAIN_ID, pk, 10, 4)
    assert keys == [get_key(CHAIN_ID, pk, h) for h in (10, 11, 12, 13)]
    assert build_keys(CHAIN_ID, pk, 10, 0) == []


def test_round_trip(store):
    r = random.Random(1)
    pk = r.randbytes(32)
    proofs = _proofs(r, 5)
    store.add_pub_rand_proof_list(CHAIN_ID, pk, 100, 5, proofs)
    assert store.get_pub_rand_proof_list(CHAIN_ID, pk, 100, 5) == proofs
    assert store.get_pub_rand_proof(CHAIN_ID, pk, 102) == proofs[2]


def test_existing_proofs_are_not_overwritten(store):
    r = random.Random(2)
    pk = r.randbytes(32)
    first = _proofs(r, 3)
    store.add_pub_rand_proof_list(CHAIN_ID, pk, 1, 3, first)
    store.add_pub_rand_proof_list(CHAIN_ID, pk, 1, 3, _proofs(r, 3))
    assert store.get_pub_rand_proof_list(CHAIN_ID, pk, 1, 3) == first


def test_count_mismatch_is_rejected(store):
    with pytest.raises(ValueError):
        store.add_pub_rand_proof_list(CHAIN_ID, bytes(32), 1, 3, [b"a", b"b"])


def test_missing_proof(store):
    with pytest.raises(PubRandProofNotFound):
        store.get_pub_rand_proof(CHAIN_ID, bytes(32), 1)


def test_remove_keeps_heights_above_target(store):
    r = random.Random(3)
    pk = r.randbytes(32)
    proofs = _proofs(r, 10)
    store.add_pub_rand_proof_list(CHAIN_ID, pk, 1, 10, proofs)
    store.remove_pub_rand_proof_list(CHAIN_ID, pk, 4)
    assert store.get_pub_rand_proof_list(CHAIN_ID, pk, 5, 6) == proofs[4:]
    with pytest.raises(PubRandProofNotFound):
        store.get_pub_rand_proof(CHAIN_ID, pk, 4)


def test_remove_leaves_other_providers(store):
    r = random.Random(4)
    pk_a = b"\x01" * 32
    pk_b = b"\x02" * 32
    proofs_b = _proofs(r, 3)
    store.add_pub_rand_proof_list(CHAIN_ID, pk_a, 1, 3, _proofs(r, 3))
    store.add_pub_rand_proof_list(CHAIN_ID, pk_b, 1, 3, proofs_b)
    store.remove_pub_rand_proof_list(CHAIN_ID, pk_a, 100)
    assert store.get_pub_rand_proof_list(CHAIN_ID, pk_b, 1, 3) == proofs_b
    with pytest.raises(PubRandProofNotFound):
        store.get_pub_rand_proof(CHAIN_ID, pk_a, 1)