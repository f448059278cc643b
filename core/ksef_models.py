"""
Data contracts shared by the KSeF client, the sync orchestrator and the stores.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional


class Environment(Enum):
    TEST = "test"
    DEMO = "demo"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value: str) -> "Environment":
        """Accept the enum value or the short aliases used in env files (PROD, TEST...)."""
        key = (value or "").strip().lower()
        aliases = {"prod": "production", "production": "production", "test": "test", "demo": "demo"}
        if key not in aliases:
            raise ValueError(f"Unknown KSeF environment: {value!r}")
        return cls(aliases[key])


class ProtocolVersion(Enum):
    V1 = "v1"
    V2 = "v2"

    @classmethod
    def parse(cls, value: str) -> "ProtocolVersion":
        key = (value or "").strip().lower()
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(f"Unknown KSeF protocol version: {value!r}")


@dataclass(frozen=True)
class Challenge:
    issued_at: str
    challenge_value: str


@dataclass(frozen=True)
class Credential:
    tax_id: str
    secret: str = field(repr=False)


@dataclass
class InvoiceHeader:
    """One invoice as listed by the query endpoint (metadata only, no document body)."""
    reference_number: str
    invoice_number: str = ""
    issuer_tax_id: str = ""
    gross_amount: Optional[Decimal] = None
    currency: str = ""
    invoice_date: str = ""
    acquisition_timestamp: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference_number": self.reference_number,
            "invoice_number": self.invoice_number,
            "issuer_tax_id": self.issuer_tax_id,
            "gross_amount": str(self.gross_amount) if self.gross_amount is not None else None,
            "currency": self.currency,
            "invoice_date": self.invoice_date,
            "acquisition_timestamp": self.acquisition_timestamp,
        }


@dataclass
class SyncResult:
    synced_at: dt.datetime
    new_invoice_count: int
    invoices: List[InvoiceHeader] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced_at": format_timestamp(self.synced_at),
            "new_invoice_count": self.new_invoice_count,
            "invoices": [inv.to_dict() for inv in self.invoices],
        }


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    s = str(value).strip().replace(",", ".")
    if not s:
        return None
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def format_timestamp(value: dt.datetime) -> str:
    """ISO 8601 in UTC with millisecond precision, as the query endpoints expect."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    value = value.astimezone(dt.timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> dt.datetime:
    s = (value or "").strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    parsed = dt.datetime.fromisoformat(s)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed
