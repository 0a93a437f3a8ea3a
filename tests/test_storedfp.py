import random
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fpdaemon.store.storedfp import (
    CommissionInfo,
    CommissionRates,
    Description,
    FinalityProviderStatus,
    StoredFinalityProvider,
)

_P = 2**256 - 2**32 - 977
GENERATOR_X = bytes.fromhex("79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798")


def _random_pk(rng):
    while True:
        x = rng.randrange(1, _P)
        y2 = (pow(x, 3, _P) + 7) % _P
        if pow(y2, (_P - 1) // 2, _P) == 1:
            return x.to_bytes(32, "big")


def _make_fp(btc_pk=GENERATOR_X, commission="0.1", **overrides):
    values = dict(
        fp_addr="bbn1example",
        btc_pk=btc_pk,
        description=Description(moniker="node", website="https://example.com"),
        commission=Decimal(commission),
        chain_id="chain-test",
        commission_info=CommissionInfo(
            max_rate=Decimal("0.5"),
            max_change_rate=Decimal("0.01"),
            update_time=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        ),
    )
    values.update(overrides)
    return StoredFinalityProvider(**values)


def test_record_round_trip():
    rng = random.Random(7)
    fp = _make_fp(btc_pk=_random_pk(rng), last_voted_height=42, status=FinalityProviderStatus.JAILED)
    restored = StoredFinalityProvider.from_record(fp.to_record())
    assert restored == fp


def test_commission_formatted_with_eighteen_decimals():
    fp = _make_fp(commission="0.1")
    assert fp.to_record()["commission"] == "0.100000000000000000"
    assert fp.to_info().commission == "0.100000000000000000"


def test_to_info_copies_fields():
    fp = _make_fp(last_voted_height=9, status=FinalityProviderStatus.ACTIVE)
    info = fp.to_info()
    assert info.fp_addr == fp.fp_addr
    assert info.btc_pk_hex == GENERATOR_X.hex()
    assert info.description == fp.description
    assert info.description is not fp.description
    assert info.last_voted_height == 9
    assert info.status == "ACTIVE"
    assert info.is_running is False
    assert info.commission_info == fp.commission_info


def test_btc_pk_hex_matches_key():
    assert _make_fp().btc_pk_hex() == GENERATOR_X.hex()


def test_commission_rates_from_stored_values():
    fp = _make_fp(commission="0.25")
    rates = fp.commission_rates()
    assert rates == CommissionRates(
        rate=Decimal("0.25"), max_rate=Decimal("0.5"), max_change_rate=Decimal("0.01")
    )


@pytest.mark.parametrize(
    "bad_pk",
    [GENERATOR_X[:31], GENERATOR_X + b"\x00", _P.to_bytes(32, "big"), b"\xff" * 32],
)
def test_invalid_pubkey_rejected(bad_pk):
    with pytest.raises(ValueError):
        _make_fp(btc_pk=bad_pk)


def test_commission_with_too_much_precision_rejected():
    with pytest.raises(ValueError):
        _make_fp(commission="0.0000000000000000001")


def test_from_record_invalid_commission():
    record = _make_fp().to_record()
    record["commission"] = "not-a-number"
    with pytest.raises(ValueError, match="invalid commission"):
        StoredFinalityProvider.from_record(record)


def test_from_record_invalid_pubkey():
    record = _make_fp().to_record()
    record["btc_pk"] = "zz"
    with pytest.raises(ValueError, match="invalid BTC public key"):
        StoredFinalityProvider.from_record(record)


def test_from_record_invalid_description():
    record = _make_fp().to_record()
    record["description"] = {"moniker": 5}
    with pytest.raises(ValueError, match="invalid description"):
        StoredFinalityProvider.from_record(record)


def test_status_round_trips_for_every_value():
    for status in FinalityProviderStatus:
        fp = _make_fp(status=status)
        assert StoredFinalityProvider.from_record(fp.to_record()).status is status


def test_description_dict_round_trip():
    desc = Description("m", "i", "w", "s", "d")
    assert Description.from_dict(desc.to_dict()) == desc


def test_description_from_dict_defaults_missing_fields():
    desc = Description.from_dict({"moniker": "only"})
    assert desc.moniker == "only"
    assert desc.details == ""


def test_commission_rates_parse_strings():
    rates = CommissionRates("0.1", "0.2", "0.01")
    assert rates.rate == Decimal("0.1")
    assert rates.max_change_rate == Decimal("0.01")