"""
Pydantic Data Models and Validation Schemas

This module defines the data models for the edition bonding curve engine using Pydantic.
It provides type safety, range validation for the unsigned integer fields, and structured
serialization for curve records persisted to disk.

Key Components:
- CurveKind Enum: The four pricing strategies
- CurveConfig: Curve parameters and running totals for one collection
- LookupTable: Precomputed, write-once price sequence for lookup curves
- CreateCurveRequest: Payload of the curve creation entry point
- MintReceipt: Result of a successful mint
- PricePoint: One row of a generated price table
- CurveRecord: Envelope persisted per collection

Numeric Domain:
- Prices, increments and volume are unsigned 64-bit integers in lamports
- Supply counters are unsigned 32-bit integers

CurveConfig and LookupTable are frozen; every state change produces a new snapshot.
"""
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from solders.pubkey import Pubkey

U64_MAX = 2**64 - 1
U32_MAX = 2**32 - 1

U64 = Annotated[int, Field(ge=0, le=U64_MAX)]
U32 = Annotated[int, Field(ge=0, le=U32_MAX)]


def _validate_pubkey(value: str) -> str:
    try:
        Pubkey.from_string(value)
    except Exception as e:
        raise ValueError(f"'{value}' is not a valid public key: {e}")
    return value


PubkeyStr = Annotated[str, AfterValidator(_validate_pubkey)]


class CurveKind(str, Enum):
    linear = "linear"
    exponential = "exponential"
    logarithmic = "logarithmic"
    lookup_table = "lookup_table"


class CurveConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    authority: PubkeyStr
    collection_id: PubkeyStr
    curve_kind: CurveKind
    base_price: U64
    price_increment: U64
    max_supply: U32
    current_supply: U32 = 0
    total_volume: U64 = 0
    # Interpolation bounds, only used by lookup curves without a stored table
    price_floor: Optional[U64] = None
    price_ceiling: Optional[U64] = None
    bump: int = Field(0, ge=0, le=255)

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.current_supply > self.max_supply:
            raise ValueError(f"current_supply {self.current_supply} exceeds max_supply {self.max_supply}")
        if self.price_floor is not None and self.price_ceiling is not None:
            if self.price_ceiling < self.price_floor:
                raise ValueError(f"price_ceiling {self.price_ceiling} is below price_floor {self.price_floor}")
        return self


class LookupTable(BaseModel):
    model_config = ConfigDict(frozen=True)

    owning_curve: PubkeyStr
    address: str
    # prices[i] is the price of edition i + 1
    prices: List[U64]


class CreateCurveRequest(BaseModel):
    authority: PubkeyStr
    collection_id: PubkeyStr
    curve_kind: CurveKind
    base_price: U64
    price_increment: U64
    max_supply: U32
    price_floor: Optional[U64] = None
    price_ceiling: Optional[U64] = None

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.price_floor is not None and self.price_ceiling is not None:
            if self.price_ceiling < self.price_floor:
                raise ValueError(f"price_ceiling {self.price_ceiling} is below price_floor {self.price_floor}")
        return self


class MintReceipt(BaseModel):
    collection_id: str
    edition: int
    price: int
    recipient: str
    payment_reference: str
    issuance_reference: str


class PricePoint(BaseModel):
    edition: int
    price: int
    cumulative_volume: int


class CurveRecord(BaseModel):
    curve: CurveConfig
    lookup_table: Optional[LookupTable] = None
