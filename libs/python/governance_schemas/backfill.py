"""Maintenance job contracts for the address backfill."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class AddressBackfillRequest(BaseModel):
    start_time: int = Field(..., ge=0)
    end_time: int = Field(..., gt=0)
    pool_size: int = Field(default=1, ge=1)
    account_ids: list[str] | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "AddressBackfillRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AddressBackfillSummary(BaseModel):
    accounts: int
    devices: int
    records_updated: int
    failures: int
    aborted: bool = False
