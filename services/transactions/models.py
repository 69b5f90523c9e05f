"""Pydantic models for raw transactions delivered by the indexer."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class TxInput(BaseModel):
    """One spent input: the address funding it and its value in zatoshi."""

    address: str
    value: int = Field(alias="valueZat", ge=0)

    class Config:
        populate_by_name = True


class TxOutput(BaseModel):
    """One created output."""

    address: str
    value: int = Field(alias="valueZat", ge=0)

    class Config:
        populate_by_name = True


class RawTransaction(BaseModel):
    """Transaction as returned by the indexing subsystem."""

    txid: str = Field(min_length=1)
    block_height: int = Field(alias="height", ge=0)
    block_time: datetime = Field(alias="time")
    inputs: list[TxInput] = Field(default_factory=list, alias="vin")
    outputs: list[TxOutput] = Field(default_factory=list, alias="vout")
    fee: int = Field(0, ge=0)
    feature: Optional[str] = None

    class Config:
        populate_by_name = True

    @field_validator("block_time")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Naive timestamps from the indexer are UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("feature")
    @classmethod
    def normalize_feature(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None
