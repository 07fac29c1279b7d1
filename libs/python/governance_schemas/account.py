"""Account governance DTOs shared across services."""

from __future__ import annotations

from pydantic import BaseModel


class AccountStatusView(BaseModel):
    account_id: str
    status: str
    active: bool
