import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.identifiers import (
    InternalId,
    ProviderReference,
    new_internal_id,
    parse_internal_id,
    parse_payment_lookup,
    parse_provider_reference,
)


REF = "pi_" + "A1b2C3d4E5f6G7h8I9j0K1l2"


def test_provider_reference_is_routed_by_prefix():
    lookup = parse_payment_lookup(REF)
    assert isinstance(lookup, ProviderReference)
    assert lookup.value == REF


def test_uuid_is_internal_id():
    raw = new_internal_id().value
    lookup = parse_payment_lookup(f"  {raw} ")
    assert isinstance(lookup, InternalId)
    assert lookup.value == raw


def test_internal_id_is_normalized():
    assert parse_internal_id("0E8B6C1C-8F39-4C5B-9D3E-2B1F0A7C6D5E").value == "0e8b6c1c-8f39-4c5b-9d3e-2b1f0a7c6d5e"


@pytest.mark.parametrize("raw", ["", "not-a-uuid", "pi_short", "pi_with-dash-000000000000000000"])
def test_malformed_identifiers_are_rejected(raw):
    with pytest.raises(DomainValidationException):
        parse_payment_lookup(raw)


def test_provider_reference_requires_prefix():
    with pytest.raises(DomainValidationException):
        parse_provider_reference("ch_" + "a" * 24)
