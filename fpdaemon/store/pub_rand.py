"""Persistent store of public randomness inclusion proofs."""

from __future__ import annotations

from collections.abc import Iterable

from fpdaemon.store.backend import KVBackend
from fpdaemon.store.errors import CorruptedPubRandProofDB, PubRandProofNotFound

PUB_RAND_PROOF_BUCKET = b"pub_rand_proof"
_HEIGHT_LEN = 8


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


def get_key(chain_id: bytes | str, pk: bytes, height: int) -> bytes:
    """Build the key chain_id || pk || big-endian height."""
    return _as_bytes(chain_id) + bytes(pk) + height.to_bytes(_HEIGHT_LEN, "big")


def get_prefix_key(chain_id: bytes | str, pk: bytes) -> bytes:
    """Build the key prefix shared by all heights of one provider on one chain."""
    return _as_bytes(chain_id) + bytes(pk)


def build_keys(chain_id: bytes | str, pk: bytes, height: int, num: int) -> list[bytes]:
    """Keys for num consecutive heights starting at height."""
    return [get_key(chain_id, pk, h) for h in range(height, height + num)]


class PubRandProofStore:
    """Inclusion proofs of committed public randomness, one per height."""

    def __init__(self, backend: KVBackend) -> None:
        self._db = backend
        backend.create_bucket(PUB_RAND_PROOF_BUCKET)

    def _require_bucket(self) -> None:
        if not self._db.has_bucket(PUB_RAND_PROOF_BUCKET):
            raise CorruptedPubRandProofDB()

    def add_pub_rand_proof_list(
        self,
        chain_id: bytes | str,
        pk: bytes,
        height: int,
        num_pub_rand: int,
        proof_list: Iterable[bytes],
    ) -> None:
        """Save proofs for consecutive heights; heights already stored are kept."""
        keys = build_keys(chain_id, pk, height, num_pub_rand)
        proofs = [bytes(proof) for proof in proof_list]
        if len(keys) != len(proofs):
            raise ValueError(
                "the number of public randomness is not same as the number of proofs"
            )
        with self._db.transaction():
            self._require_bucket()
            for key, proof in zip(keys, proofs):
                if self._db.get(PUB_RAND_PROOF_BUCKET, key) is not None:
                    continue
                self._db.put(PUB_RAND_PROOF_BUCKET, key, proof)

    def get_pub_rand_proof(self, chain_id: bytes | str, pk: bytes, height: int) -> bytes:
        self._require_bucket()
        proof = self._db.get(PUB_RAND_PROOF_BUCKET, get_key(chain_id, pk, height))
        if proof is None:
            raise PubRandProofNotFound()
        return proof

    def get_pub_rand_proof_list(
        self, chain_id: bytes | str, pk: bytes, height: int, num_pub_rand: int
    ) -> list[bytes]:
        """Return the proofs for num_pub_rand heights; all of them must exist."""
        self._require_bucket()
        proofs = []
        for key in build_keys(chain_id, pk, height, num_pub_rand):
            proof = self._db.get(PUB_RAND_PROOF_BUCKET, key)
            if proof is None:
                raise PubRandProofNotFound()
            proofs.append(proof)
        return proofs

    def remove_pub_rand_proof_list(
        self, chain_id: bytes | str, pk: bytes, target_height: int
    ) -> None:
        """Remove every proof at or below target_height."""
        prefix = get_prefix_key(chain_id, pk)
        with self._db.transaction():
            self._require_bucket()
            for key, _ in self._db.items(PUB_RAND_PROOF_BUCKET, prefix):
                height = int.from_bytes(key[-_HEIGHT_LEN:], "big")
                # keys are in byte order, so heights only grow from here
                if height > target_height:
                    break
                self._db.delete(PUB_RAND_PROOF_BUCKET, key)