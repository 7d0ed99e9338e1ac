from typing import Any, Awaitable, Dict, Optional, TypeVar

from fastapi.encoders import jsonable_encoder
import structlog

from backend import BackendError
from errors import InvalidPayloadError, NothingToUpdateError, UpstreamRejectedError
from models import (
    AccountCreateRequest,
    AccountTransferRequest,
    AccountUpdateRequest,
    CategoryCreateRequest,
    CategoryUpdateRequest,
    ErrorDetail,
    HandlerResult,
    TransactionFilters,
    TransactionRequest,
)
from repositories import AccountRepository, CategoryRepository, TransactionRepository

# Configure structured logging
logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 500


async def _relay(action: str, call: Awaitable[T], **context: Any) -> T:
    """Await a remote call, relaying its domain error verbatim as a 400."""
    try:
        return await call
    except BackendError as e:
        logger.warning(
            "Backend rejected request",
            action=action,
            error=e.message,
            code=e.code,
            **context
        )
        raise UpstreamRejectedError(e.message) from e


class TransactionService:
    def __init__(self, transaction_repo: TransactionRepository):
        self.transaction_repo = transaction_repo

    async def create_transaction(
        self,
        user_id: str,
        request: TransactionRequest,
        token: Optional[str] = None
    ) -> HandlerResult:
        """Forward a validated transaction to the remote procedure."""

        logger.info(
            "Creating transaction",
            user_id=user_id,
            type=request.transaction_type.value,
            origin_account_id=str(request.origin_account_id),
            amount=str(request.amount)
        )

        transaction = await _relay(
            "create_transaction",
            self.transaction_repo.create_transaction(user_id, request, token),
            user_id=user_id
        )

        logger.info(
            "Transaction created",
            user_id=user_id,
            transaction_id=transaction.get("id") if isinstance(transaction, dict) else None
        )
        return HandlerResult(status_code=201, body=jsonable_encoder({"transaction": transaction}))

    async def list_transactions(
        self,
        user_id: str,
        filters: TransactionFilters,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        page_size = filters.limit if filters.limit > 0 else DEFAULT_PAGE_SIZE
        page = filters.model_copy(update={
            "limit": min(page_size, MAX_PAGE_SIZE),
            "offset": max(filters.offset, 0),
        })

        rows, filtered_count, total_count = await _relay(
            "list_transactions",
            self.transaction_repo.list_transactions(user_id, page, token),
            user_id=user_id
        )
        return {
            "transactions": rows,
            "filteredCount": filtered_count,
            "totalCount": total_count,
            "limit": page.limit,
            "offset": page.offset,
        }

    async def update_transaction(
        self,
        user_id: str,
        transaction_id: str,
        request: TransactionRequest,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        logger.info("Updating transaction", user_id=user_id, transaction_id=transaction_id)
        transaction = await _relay(
            "update_transaction",
            self.transaction_repo.update_transaction(user_id, transaction_id, request, token),
            transaction_id=transaction_id
        )
        return {"transaction": transaction}

    async def delete_transaction(
        self,
        user_id: str,
        transaction_id: str,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        logger.info("Deleting transaction", user_id=user_id, transaction_id=transaction_id)
        transaction = await _relay(
            "delete_transaction",
            self.transaction_repo.delete_transaction(user_id, transaction_id, token),
            transaction_id=transaction_id
        )
        return {"transaction": transaction}


class AccountService:
    def __init__(self, account_repo: AccountRepository):
        self.account_repo = account_repo

    async def list_accounts(self, user_id: str, active_only: bool, token: Optional[str] = None) -> Dict[str, Any]:
        accounts = await _relay("list_accounts", self.account_repo.list_accounts(user_id, active_only, token))
        return {"accounts": accounts}

    async def create_account(
        self,
        user_id: str,
        request: AccountCreateRequest,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        logger.info("Creating account", user_id=user_id, account_type=request.account_type)
        account = await _relay(
            "create_account",
            self.account_repo.create_account(user_id, request, token),
            user_id=user_id
        )
        return {"account": account}

    async def update_account(
        self,
        user_id: str,
        account_id: str,
        request: AccountUpdateRequest,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        changes = request.changes()
        if not changes:
            raise NothingToUpdateError()
        account = await _relay(
            "update_account",
            self.account_repo.update_account(user_id, account_id, changes, token),
            account_id=account_id
        )
        return {"account": account}

    async def delete_account(
        self,
        user_id: str,
        account_id: str,
        target_account_id: Optional[str] = None,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        """Delete an account; the remote procedure decides whether a transfer is needed."""
        logger.info(
            "Deleting account",
            user_id=user_id,
            account_id=account_id,
            target_account_id=target_account_id
        )
        data = await _relay(
            "delete_account",
            self.account_repo.delete_account(user_id, account_id, target_account_id, token),
            account_id=account_id
        )
        return {"data": data}

    async def delete_with_transfer(
        self,
        user_id: str,
        account_id: str,
        request: AccountTransferRequest,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        if not request.targetAccountId:
            raise InvalidPayloadError(
                "TARGET_REQUIRED",
                details=[ErrorDetail(field="targetAccountId", message="Target account is required")]
            )
        return await self.delete_account(user_id, account_id, request.targetAccountId, token)


class CategoryService:
    def __init__(self, category_repo: CategoryRepository):
        self.category_repo = category_repo

    async def list_categories(
        self,
        user_id: str,
        category_type: Optional[str] = None,
        include_inactive: bool = False,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        categories = await _relay(
            "list_categories",
            self.category_repo.list_categories(user_id, category_type, include_inactive, token)
        )
        return {"categories": categories}

    async def create_category(
        self,
        user_id: str,
        request: CategoryCreateRequest,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        category = await _relay(
            "create_category",
            self.category_repo.create_category(user_id, request, token),
            user_id=user_id
        )
        return {"category": category}

    async def update_category(
        self,
        user_id: str,
        category_id: str,
        request: CategoryUpdateRequest,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        changes = request.changes()
        if not changes:
            raise NothingToUpdateError()
        category = await _relay(
            "update_category",
            self.category_repo.update_category(user_id, category_id, changes, token),
            category_id=category_id
        )
        return {"category": category}

    async def delete_category(self, user_id: str, category_id: str, token: Optional[str] = None) -> Dict[str, Any]:
        category = await _relay(
            "delete_category",
            self.category_repo.delete_category(user_id, category_id, token),
            category_id=category_id
        )
        return {"category": category}


# Factory functions for dependency injection
def get_transaction_service(transaction_repo: TransactionRepository) -> TransactionService:
    return TransactionService(transaction_repo)


def get_account_service(account_repo: AccountRepository) -> AccountService:
    return AccountService(account_repo)


def get_category_service(category_repo: CategoryRepository) -> CategoryService:
    return CategoryService(category_repo)
