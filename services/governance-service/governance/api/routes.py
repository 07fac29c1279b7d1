"""HTTP route definitions for the governance service."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from governance_schemas import AccountStatusView, AddressBackfillRequest, AddressBackfillSummary

from ..config import get_settings
from ..domain.contracts import StoreError
from ..domain.service import AccountService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

settings = get_settings()


class PasswordRequest(BaseModel):
    """JSON body carrying a clear-text password."""

    password: str = Field(..., max_length=256)


class LoginResponse(BaseModel):
    account_id: str
    authenticated: bool
    status: str


class TemporaryPasswordResponse(BaseModel):
    account_id: str
    temporary_password: str


class PasswordExpiryResponse(BaseModel):
    account_id: str
    expired: bool


class PropertiesResponse(BaseModel):
    """Flattened view of a delegated configuration chain."""

    account_id: str
    kind: str
    properties: dict[str, str]


class BackfillAccepted(BaseModel):
    accepted: bool
    pool_size: int


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


@router.get("/accounts/{account_id}/status", response_model=AccountStatusView)
def get_account_status(
    account_id: str,
    user_id: str | None = Query(default=None, max_length=64),
    service: AccountService = Depends(get_service),
) -> AccountStatusView:
    """Report the derived status of an account; unknown accounts are ``undefined``."""
    account_status = service.get_status(account_id, user_id)
    return AccountStatusView(
        account_id=account_id.strip().lower(),
        status=account_status.value,
        active=account_status.is_active,
    )


@router.post("/accounts/{account_id}/login", response_model=LoginResponse)
def login(
    account_id: str,
    payload: PasswordRequest,
    service: AccountService = Depends(get_service),
) -> LoginResponse:
    """Check an account password, applying failed-login lockout."""
    try:
        outcome = service.login(account_id, payload.password)
    except StoreError as exc:
        raise _http_error_from_store_error(exc) from exc

    if outcome.authenticated:
        return LoginResponse(
            account_id=account_id.strip().lower(),
            authenticated=True,
            status=outcome.status.value,
        )
    if not outcome.status.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "account not usable", "status": outcome.status.value},
        )
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid credentials")


@router.post("/accounts/{account_id}/password", status_code=status.HTTP_204_NO_CONTENT)
def change_password(
    account_id: str,
    payload: PasswordRequest,
    service: AccountService = Depends(get_service),
) -> Response:
    """Validate and store a new account password."""
    try:
        result = service.change_password(account_id, payload.password)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    except StoreError as exc:
        raise _http_error_from_store_error(exc) from exc

    if result.storage_error:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.reason)
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.reason)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/accounts/{account_id}/password/reset", response_model=TemporaryPasswordResponse)
def reset_password(
    account_id: str,
    service: AccountService = Depends(get_service),
) -> TemporaryPasswordResponse:
    """Issue a temporary password for the account."""
    try:
        plaintext = service.reset_password(account_id)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    except RuntimeError as exc:
        raise _http_error_from_store_error(exc) from exc
    return TemporaryPasswordResponse(account_id=account_id.strip().lower(), temporary_password=plaintext)


@router.get("/accounts/{account_id}/password/expired", response_model=PasswordExpiryResponse)
def password_expired(
    account_id: str,
    service: AccountService = Depends(get_service),
) -> PasswordExpiryResponse:
    try:
        expired = service.password_expired(account_id)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return PasswordExpiryResponse(account_id=account_id.strip().lower(), expired=expired)


@router.get("/accounts/{account_id}/config/{kind}", response_model=PropertiesResponse)
def get_properties(
    account_id: str,
    kind: str,
    service: AccountService = Depends(get_service),
) -> PropertiesResponse:
    """Return SMS or SMTP properties resolved through the delegate chain."""
    try:
        chain = service.resolved_properties(account_id, kind)
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    except StoreError as exc:
        raise _http_error_from_store_error(exc) from exc
    return PropertiesResponse(account_id=account_id.strip().lower(), kind=kind, properties=dict(chain))


@router.post(
    "/maintenance/address-backfill",
    response_model=BackfillAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
def start_address_backfill(
    payload: AddressBackfillRequest,
    background: BackgroundTasks,
    service: AccountService = Depends(get_service),
) -> BackfillAccepted:
    """Queue an address backfill over the requested time range."""
    pool_size = min(payload.pool_size, settings.backfill_max_pool_size)
    background.add_task(_run_backfill, service, payload, pool_size)
    return BackfillAccepted(accepted=True, pool_size=pool_size)


def _run_backfill(service: AccountService, payload: AddressBackfillRequest, pool_size: int) -> None:
    try:
        summary = service.run_address_backfill(
            payload.start_time,
            payload.end_time,
            pool_size,
            payload.account_ids,
        )
    except (StoreError, ValueError) as exc:
        logger.error("address backfill failed to run: %s", exc)
        return
    logger.info(
        "address backfill summary: %s",
        AddressBackfillSummary(
            accounts=summary.accounts,
            devices=summary.devices,
            records_updated=summary.records_updated,
            failures=summary.failures,
            aborted=summary.aborted,
        ).model_dump(),
    )


def _http_error_from_value_error(exc: ValueError) -> HTTPException:
    message = str(exc).lower()
    status_code = status.HTTP_400_BAD_REQUEST
    if "not found" in message:
        status_code = status.HTTP_404_NOT_FOUND
    return HTTPException(status_code=status_code, detail=str(exc))


def _http_error_from_store_error(exc: Exception) -> HTTPException:
    logger.error("storage unavailable: %s", exc)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="storage unavailable")
