"""
Typed payment identifiers.

Two disjoint id spaces address a payment: the internal id this service hands
out (a UUID) and the provider reference (``pi_...``). Raw strings are parsed
once at the API boundary; everything below works on the typed values.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Union

from domain.common.exceptions import DomainValidationException


PROVIDER_REFERENCE_RE = re.compile(r"^pi_[A-Za-z0-9]{24,}$")


@dataclass(frozen=True)
class InternalId:
    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ProviderReference:
    value: str

    def __str__(self) -> str:
        return self.value


PaymentLookup = Union[InternalId, ProviderReference]


def parse_provider_reference(raw: str, *, field: str = "payment_intent_id") -> ProviderReference:
    value = (raw or "").strip()
    if not PROVIDER_REFERENCE_RE.match(value):
        raise DomainValidationException("Invalid payment intent id", field=field)
    return ProviderReference(value)


def parse_internal_id(raw: str, *, field: str = "payment_id") -> InternalId:
    value = (raw or "").strip()
    try:
        parsed = uuid.UUID(value)
    except ValueError:
        raise DomainValidationException("Invalid payment id", field=field) from None
    return InternalId(str(parsed))


def parse_payment_lookup(raw: str, *, field: str = "payment_id") -> PaymentLookup:
    """Resolve a client-supplied identifier into one of the two id spaces."""
    value = (raw or "").strip()
    if value.startswith("pi_"):
        return parse_provider_reference(value, field=field)
    return parse_internal_id(value, field=field)


def new_internal_id() -> InternalId:
    return InternalId(str(uuid.uuid4()))
