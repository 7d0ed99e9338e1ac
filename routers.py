import hmac
import json
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
import structlog

from auth import Identity
from config import Settings, get_settings
from errors import InvalidPayloadError, UnauthenticatedError
from idempotency import CurrentLedger, IdempotencyGateway, get_active_ledger, get_idempotency_gateway
from models import (
    AccountCreateRequest,
    AccountTransferRequest,
    AccountUpdateRequest,
    CategoryCreateRequest,
    CategoryUpdateRequest,
    ErrorDetail,
    ErrorResponse,
    HandlerResult,
    HealthResponse,
    TransactionFilters,
)
from repositories import get_account_repository, get_category_repository, get_transaction_repository
from services import (
    AccountService,
    CategoryService,
    TransactionService,
    get_account_service,
    get_category_service,
    get_transaction_service,
)
from validators import validate_agent_transaction, validate_transaction, validate_transaction_update

logger = structlog.get_logger()

router = APIRouter()


# Dependency injection
def current_identity(request: Request) -> Identity:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise UnauthenticatedError()
    return Identity(user_id=user_id, token=request.state.access_token)


def require_agent_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings)
) -> None:
    expected = settings.agent_api_key
    if not expected or x_api_key is None:
        raise UnauthenticatedError()
    if not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        logger.warning("Agent request with wrong shared secret")
        raise UnauthenticatedError()


def transaction_service(transaction_repo=Depends(get_transaction_repository)) -> TransactionService:
    return get_transaction_service(transaction_repo)


def account_service(account_repo=Depends(get_account_repository)) -> AccountService:
    return get_account_service(account_repo)


def category_service(category_repo=Depends(get_category_repository)) -> CategoryService:
    return get_category_service(category_repo)


def _send(result: HandlerResult) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=result.body)


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        raise InvalidPayloadError(details=[ErrorDetail(field="body", message="JSON decode error")]) from e


# Health check endpoint
@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    tags=["health"]
)
async def health_check() -> HealthResponse:
    ledger = get_active_ledger()
    return HealthResponse(status="healthy", ledger=ledger.name if ledger else CurrentLedger.name)


@router.get("/v1/transactions", tags=["transactions"])
async def list_transactions(
    dateFrom: Optional[str] = Query(None),
    dateTo: Optional[str] = Query(None),
    transaction_type: Optional[str] = Query(None, alias="type"),
    originCurrency: Optional[str] = Query(None),
    limit: int = Query(100),
    offset: int = Query(0),
    identity: Identity = Depends(current_identity),
    service: TransactionService = Depends(transaction_service)
):
    filters = TransactionFilters(
        dateFrom=dateFrom,
        dateTo=dateTo,
        type=transaction_type,
        originCurrency=originCurrency,
        limit=limit,
        offset=offset
    )
    return await service.list_transactions(identity.user_id, filters, identity.token)


# Main transaction endpoint
@router.post(
    "/v1/transactions",
    status_code=status.HTTP_201_CREATED,
    summary="Create Transaction",
    description="Create a transaction through the remote procedure, deduplicated by Idempotency-Key",
    tags=["transactions"],
    responses={
        201: {"description": "Transaction created, or replay of the first attempt"},
        400: {"model": ErrorResponse, "description": "Invalid payload, missing key or rejected upstream"},
        401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
        403: {"model": ErrorResponse, "description": "Payload names another user"},
        409: {"model": ErrorResponse, "description": "Same key in progress or previously failed"},
        500: {"model": ErrorResponse, "description": "Idempotency ledger unavailable"}
    }
)
async def create_transaction(
    payload: Any = Body(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    identity: Identity = Depends(current_identity),
    gateway: IdempotencyGateway = Depends(get_idempotency_gateway),
    service: TransactionService = Depends(transaction_service)
):
    # Validation runs before the ledger is touched.
    transaction = validate_transaction(payload, identity.user_id)

    async def handler() -> HandlerResult:
        return await service.create_transaction(identity.user_id, transaction, identity.token)

    result = await gateway.execute(key=idempotency_key, owner=identity.user_id, handler=handler)
    return _send(result)


@router.post(
    "/v1/transactions/agent",
    status_code=status.HTTP_201_CREATED,
    summary="Create Transaction (trusted agent)",
    tags=["transactions"],
    dependencies=[Depends(require_agent_key)]
)
async def create_agent_transaction(
    request: Request,
    service: TransactionService = Depends(transaction_service)
):
    # Read here, not as a Body parameter, so the shared secret is checked first.
    payload = await _json_body(request)
    user_id, transaction = validate_agent_transaction(payload)
    logger.info("Agent transaction received", user_id=user_id)
    return _send(await service.create_transaction(user_id, transaction))


@router.put("/v1/transactions/{transaction_id}", tags=["transactions"])
async def update_transaction(
    transaction_id: str,
    payload: Any = Body(None),
    identity: Identity = Depends(current_identity),
    service: TransactionService = Depends(transaction_service)
):
    transaction = validate_transaction_update(payload, identity.user_id)
    return await service.update_transaction(identity.user_id, transaction_id, transaction, identity.token)


@router.delete("/v1/transactions/{transaction_id}", tags=["transactions"])
async def delete_transaction(
    transaction_id: str,
    identity: Identity = Depends(current_identity),
    service: TransactionService = Depends(transaction_service)
):
    return await service.delete_transaction(identity.user_id, transaction_id, identity.token)


@router.get("/v1/accounts", tags=["accounts"])
async def list_accounts(
    activeOnly: bool = Query(False),
    identity: Identity = Depends(current_identity),
    service: AccountService = Depends(account_service)
):
    return await service.list_accounts(identity.user_id, activeOnly, identity.token)


@router.post("/v1/accounts", status_code=status.HTTP_201_CREATED, tags=["accounts"])
async def create_account(
    account: AccountCreateRequest,
    identity: Identity = Depends(current_identity),
    service: AccountService = Depends(account_service)
):
    return await service.create_account(identity.user_id, account, identity.token)


@router.put("/v1/accounts/{account_id}", tags=["accounts"])
async def update_account(
    account_id: str,
    changes: AccountUpdateRequest,
    identity: Identity = Depends(current_identity),
    service: AccountService = Depends(account_service)
):
    return await service.update_account(identity.user_id, account_id, changes, identity.token)


@router.delete("/v1/accounts/{account_id}", tags=["accounts"])
async def delete_account(
    account_id: str,
    identity: Identity = Depends(current_identity),
    service: AccountService = Depends(account_service)
):
    return await service.delete_account(identity.user_id, account_id, token=identity.token)


@router.post("/v1/accounts/{account_id}/delete-with-transfer", tags=["accounts"])
async def delete_account_with_transfer(
    account_id: str,
    transfer: Optional[AccountTransferRequest] = Body(None),
    identity: Identity = Depends(current_identity),
    service: AccountService = Depends(account_service)
):
    return await service.delete_with_transfer(
        identity.user_id, account_id, transfer or AccountTransferRequest(), identity.token
    )


@router.get("/v1/categories", tags=["categories"])
async def list_categories(
    category_type: Optional[str] = Query(None, alias="type"),
    includeInactive: bool = Query(False),
    identity: Identity = Depends(current_identity),
    service: CategoryService = Depends(category_service)
):
    return await service.list_categories(identity.user_id, category_type, includeInactive, identity.token)


@router.post("/v1/categories", status_code=status.HTTP_201_CREATED, tags=["categories"])
async def create_category(
    category: CategoryCreateRequest,
    identity: Identity = Depends(current_identity),
    service: CategoryService = Depends(category_service)
):
    return await service.create_category(identity.user_id, category, identity.token)


@router.put("/v1/categories/{category_id}", tags=["categories"])
async def update_category(
    category_id: str,
    changes: CategoryUpdateRequest,
    identity: Identity = Depends(current_identity),
    service: CategoryService = Depends(category_service)
):
    return await service.update_category(identity.user_id, category_id, changes, identity.token)


@router.delete("/v1/categories/{category_id}", tags=["categories"])
async def delete_category(
    category_id: str,
    identity: Identity = Depends(current_identity),
    service: CategoryService = Depends(category_service)
):
    return await service.delete_category(identity.user_id, category_id, identity.token)
