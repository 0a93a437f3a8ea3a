"""Thread-safe views of a finality provider's stored state."""

from __future__ import annotations

import copy
import threading

from fpdaemon.store.fpstore import FinalityProviderStore
from fpdaemon.store.pub_rand import PubRandProofStore
from fpdaemon.store.storedfp import FinalityProviderStatus, StoredFinalityProvider


class FpState:
    """In-memory copy of a stored finality provider, written through to the store."""

    def __init__(self, stored_fp: StoredFinalityProvider, store: FinalityProviderStore) -> None:
        self._fp = stored_fp
        self.store = store
        self._lock = threading.Lock()

    def snapshot(self) -> StoredFinalityProvider:
        """An independent copy of the current record."""
        with self._lock:
            return copy.deepcopy(self._fp)

    def btc_pk(self) -> bytes:
        with self._lock:
            return self._fp.btc_pk

    def btc_pk_hex(self) -> str:
        with self._lock:
            return self._fp.btc_pk_hex()

    def status(self) -> FinalityProviderStatus:
        with self._lock:
            return self._fp.status

    def last_voted_height(self) -> int:
        with self._lock:
            return self._fp.last_voted_height

    def chain_id(self) -> bytes:
        with self._lock:
            return self._fp.chain_id.encode()

    def set_status(self, status: FinalityProviderStatus) -> None:
        status = FinalityProviderStatus(status)
        with self._lock:
            self._fp.status = status
            btc_pk = self._fp.btc_pk
        self.store.set_fp_status(btc_pk, status)

    def set_last_voted_height(self, height: int) -> None:
        with self._lock:
            self._fp.last_voted_height = height
            btc_pk = self._fp.btc_pk
        self.store.set_fp_last_voted_height(btc_pk, height)


class PubRandState:
    """Access to randomness proofs addressed by public key first."""

    def __init__(self, store: PubRandProofStore) -> None:
        self.store = store

    def add_pub_rand_proof_list(
        self,
        pk: bytes,
        chain_id: bytes | str,
        height: int,
        num_pub_rand: int,
        proof_list: list[bytes],
    ) -> None:
        self.store.add_pub_rand_proof_list(chain_id, pk, height, num_pub_rand, proof_list)

    def get_pub_rand_proof(self, pk: bytes, chain_id: bytes | str, height: int) -> bytes:
        return self.store.get_pub_rand_proof(chain_id, pk, height)

    def get_pub_rand_proof_list(
        self, pk: bytes, chain_id: bytes | str, height: int, num_pub_rand: int
    ) -> list[bytes]:
        return self.store.get_pub_rand_proof_list(chain_id, pk, height, num_pub_rand)