"""Persistent store of finality providers keyed by their BTC public key."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal

from fpdaemon.store.backend import KVBackend
from fpdaemon.store.errors import (
    CorruptedFinalityProviderDB,
    DuplicateFinalityProvider,
    FinalityProviderNotFound,
)
from fpdaemon.store.storedfp import (
    CommissionInfo,
    CommissionRates,
    Description,
    FinalityProviderStatus,
    StoredFinalityProvider,
)

FINALITY_PROVIDER_BUCKET = b"finalityProviders"


def _xonly(btc_pk: bytes) -> bytes:
    pk = bytes(btc_pk)
    if len(pk) == 33 and pk[0] in (2, 3):
        return pk[1:]
    return pk


class FinalityProviderStore:
    """Finality providers saved in a key-value backend."""

    def __init__(self, backend: KVBackend) -> None:
        self._db = backend
        backend.create_bucket(FINALITY_PROVIDER_BUCKET)

    def _require_bucket(self) -> None:
        if not self._db.has_bucket(FINALITY_PROVIDER_BUCKET):
            raise CorruptedFinalityProviderDB()

    @staticmethod
    def _decode(raw: bytes) -> StoredFinalityProvider:
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptedFinalityProviderDB() from exc
        if not isinstance(data, dict):
            raise CorruptedFinalityProviderDB()
        return StoredFinalityProvider.from_record(data)

    def _save(self, fp: StoredFinalityProvider) -> None:
        encoded = json.dumps(fp.to_record(), sort_keys=True).encode()
        self._db.put(FINALITY_PROVIDER_BUCKET, fp.btc_pk, encoded)

    def create_finality_provider(
        self,
        fp_addr: str,
        btc_pk: bytes,
        description: Description,
        commission: CommissionRates,
        chain_id: str,
    ) -> None:
        """Save a newly registered finality provider; duplicates are rejected."""
        if not isinstance(description, Description):
            raise ValueError("invalid description")
        fp = StoredFinalityProvider(
            fp_addr=str(fp_addr),
            btc_pk=_xonly(btc_pk),
            description=description,
            commission=commission.rate,
            chain_id=chain_id,
            commission_info=CommissionInfo(
                max_rate=commission.max_rate,
                max_change_rate=commission.max_change_rate,
                update_time=datetime.now(timezone.utc),
            ),
            status=FinalityProviderStatus.REGISTERED,
        )
        with self._db.transaction():
            self._require_bucket()
            if self._db.get(FINALITY_PROVIDER_BUCKET, fp.btc_pk) is not None:
                raise DuplicateFinalityProvider()
            self._save(fp)

    def _update(
        self, btc_pk: bytes, transition: Callable[[StoredFinalityProvider], None]
    ) -> None:
        key = _xonly(btc_pk)
        with self._db.transaction():
            self._require_bucket()
            raw = self._db.get(FINALITY_PROVIDER_BUCKET, key)
            if raw is None:
                raise FinalityProviderNotFound()
            fp = self._decode(raw)
            transition(fp)
            self._save(fp)

    def set_fp_status(self, btc_pk: bytes, status: FinalityProviderStatus) -> None:
        status = FinalityProviderStatus(status)

        def apply(fp: StoredFinalityProvider) -> None:
            fp.status = status

        self._update(btc_pk, apply)

    def update_fp_status_from_voting_power(
        self, has_power: bool, fp: StoredFinalityProvider
    ) -> FinalityProviderStatus:
        """Derive the status from voting power, persist it and return it."""
        if fp.status == FinalityProviderStatus.SLASHED:
            return FinalityProviderStatus.SLASHED
        if has_power:
            self.set_fp_status(fp.btc_pk, FinalityProviderStatus.ACTIVE)
            return FinalityProviderStatus.ACTIVE
        if fp.status == FinalityProviderStatus.ACTIVE:
            self.set_fp_status(fp.btc_pk, FinalityProviderStatus.INACTIVE)
            return FinalityProviderStatus.INACTIVE
        return fp.status

    def set_fp_last_voted_height(self, btc_pk: bytes, last_voted_height: int) -> None:
        """Raise the stored last voted height; it never decreases."""

        def apply(fp: StoredFinalityProvider) -> None:
            if fp.last_voted_height < last_voted_height:
                fp.last_voted_height = last_voted_height

        self._update(btc_pk, apply)

    def get_finality_provider(self, btc_pk: bytes) -> StoredFinalityProvider:
        key = _xonly(btc_pk)
        self._require_bucket()
        raw = self._db.get(FINALITY_PROVIDER_BUCKET, key)
        if raw is None:
            raise FinalityProviderNotFound()
        return self._decode(raw)

    def get_all_stored_finality_providers(self) -> list[StoredFinalityProvider]:
        self._require_bucket()
        return [self._decode(raw) for _, raw in self._db.items(FINALITY_PROVIDER_BUCKET)]

    def set_fp_description(
        self, btc_pk: bytes, description: Description, rate: Decimal | None
    ) -> None:
        """Replace the description and, when given, the commission rate."""
        if not isinstance(description, Description):
            raise ValueError("invalid description")

        def apply(fp: StoredFinalityProvider) -> None:
            fp.description = description
            if rate is not None:
                fp.commission = rate
                fp.commission_info.update_time = datetime.now(timezone.utc)

        self._update(btc_pk, apply)