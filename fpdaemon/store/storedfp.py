"""Finality provider records as kept in the local store."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, Union

_SECP256K1_P = 2**256 - 2**32 - 977
_DEC_PRECISION = 18
_DEC_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")

DecLike = Union[Decimal, str, int]


class FinalityProviderStatus(enum.IntEnum):
    REGISTERED = 0
    ACTIVE = 1
    INACTIVE = 2
    SLASHED = 3
    JAILED = 4


def _parse_dec(value: DecLike) -> Decimal:
    """Parse a fixed-point decimal with at most 18 fractional digits."""
    if isinstance(value, Decimal):
        dec = value
    elif isinstance(value, int) and not isinstance(value, bool):
        dec = Decimal(value)
    elif isinstance(value, str) and _DEC_PATTERN.fullmatch(value):
        try:
            dec = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"invalid decimal {value!r}") from exc
    else:
        raise ValueError(f"invalid decimal {value!r}")
    if not dec.is_finite():
        raise ValueError(f"invalid decimal {value!r}")
    exponent = dec.as_tuple().exponent
    if isinstance(exponent, int) and exponent < -_DEC_PRECISION:
        raise ValueError(f"decimal {value!r} has too much precision")
    return dec


def _format_dec(value: Decimal) -> str:
    with localcontext() as ctx:
        ctx.prec = 100
        return format(value.quantize(Decimal(1).scaleb(-_DEC_PRECISION)), "f")


def _is_valid_xonly_pubkey(pk: bytes) -> bool:
    if len(pk) != 32:
        return False
    x = int.from_bytes(pk, "big")
    if x >= _SECP256K1_P:
        return False
    y2 = (pow(x, 3, _SECP256K1_P) + 7) % _SECP256K1_P
    return y2 == 0 or pow(y2, (_SECP256K1_P - 1) // 2, _SECP256K1_P) == 1


@dataclass
class Description:
    moniker: str = ""
    identity: str = ""
    website: str = ""
    security_contact: str = ""
    details: str = ""

    def to_dict(self) -> dict[str, str]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Any) -> Description:
        if not isinstance(data, dict):
            raise ValueError("description must be a mapping")
        values = {}
        for f in fields(cls):
            value = data.get(f.name, "")
            if not isinstance(value, str):
                raise ValueError(f"description field {f.name} must be a string")
            values[f.name] = value
        return cls(**values)


@dataclass
class CommissionRates:
    rate: Decimal
    max_rate: Decimal
    max_change_rate: Decimal

    def __post_init__(self) -> None:
        self.rate = _parse_dec(self.rate)
        self.max_rate = _parse_dec(self.max_rate)
        self.max_change_rate = _parse_dec(self.max_change_rate)


@dataclass
class CommissionInfo:
    max_rate: Decimal
    max_change_rate: Decimal
    update_time: datetime

    def __post_init__(self) -> None:
        self.max_rate = _parse_dec(self.max_rate)
        self.max_change_rate = _parse_dec(self.max_change_rate)


@dataclass
class FinalityProviderInfo:
    fp_addr: str
    btc_pk_hex: str
    description: Description
    commission: str
    last_voted_height: int
    status: str
    commission_info: CommissionInfo
    is_running: bool = False


@dataclass
class StoredFinalityProvider:
    fp_addr: str
    btc_pk: bytes
    description: Description
    commission: Decimal
    chain_id: str
    commission_info: CommissionInfo
    last_voted_height: int = 0
    status: FinalityProviderStatus = field(default=FinalityProviderStatus.REGISTERED)

    def __post_init__(self) -> None:
        self.btc_pk = bytes(self.btc_pk)
        if not _is_valid_xonly_pubkey(self.btc_pk):
            raise ValueError("invalid BTC public key: not a valid x-only secp256k1 key")
        if not isinstance(self.description, Description):
            raise ValueError("invalid description")
        self.commission = _parse_dec(self.commission)
        self.status = FinalityProviderStatus(self.status)
        if self.last_voted_height < 0:
            raise ValueError("last voted height cannot be negative")

    def btc_pk_hex(self) -> str:
        return self.btc_pk.hex()

    def to_info(self) -> FinalityProviderInfo:
        return FinalityProviderInfo(
            fp_addr=self.fp_addr,
            btc_pk_hex=self.btc_pk_hex(),
            description=replace(self.description),
            commission=_format_dec(self.commission),
            last_voted_height=self.last_voted_height,
            status=self.status.name,
            commission_info=replace(self.commission_info),
        )

    def commission_rates(self) -> CommissionRates:
        return CommissionRates(
            rate=self.commission,
            max_rate=self.commission_info.max_rate,
            max_change_rate=self.commission_info.max_change_rate,
        )

    def to_record(self) -> dict[str, Any]:
        """Return a JSON-serialisable form of this record."""
        return {
            "fp_addr": self.fp_addr,
            "btc_pk": self.btc_pk.hex(),
            "description": self.description.to_dict(),
            "commission": _format_dec(self.commission),
            "chain_id": self.chain_id,
            "last_voted_height": self.last_voted_height,
            "status": int(self.status),
            "commission_info": {
                "max_rate": _format_dec(self.commission_info.max_rate),
                "max_change_rate": _format_dec(self.commission_info.max_change_rate),
                "update_time": self.commission_info.update_time.isoformat(),
            },
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> StoredFinalityProvider:
        try:
            btc_pk = bytes.fromhex(data["btc_pk"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid BTC public key: {exc}") from exc
        if not _is_valid_xonly_pubkey(btc_pk):
            raise ValueError("invalid BTC public key: not a valid x-only secp256k1 key")

        try:
            description = Description.from_dict(data.get("description", {}))
        except ValueError as exc:
            raise ValueError(f"invalid description: {exc}") from exc

        try:
            commission = _parse_dec(data.get("commission", ""))
        except ValueError as exc:
            raise ValueError(f"invalid commission: {exc}") from exc

        try:
            info = data["commission_info"]
            update_time = datetime.fromisoformat(info["update_time"])
            if update_time.tzinfo is None:
                update_time = update_time.replace(tzinfo=timezone.utc)
            commission_info = CommissionInfo(
                max_rate=_parse_dec(info["max_rate"]),
                max_change_rate=_parse_dec(info["max_change_rate"]),
                update_time=update_time,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid commission info: {exc}") from exc

        height = data.get("last_voted_height", 0)
        if not isinstance(height, int) or height < 0:
            raise ValueError(f"invalid last voted height {height!r}")

        return cls(
            fp_addr=str(data.get("fp_addr", "")),
            btc_pk=btc_pk,
            description=description,
            commission=commission,
            chain_id=str(data.get("chain_id", "")),
            commission_info=commission_info,
            last_voted_height=height,
            status=FinalityProviderStatus(data.get("status", 0)),
        )