from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timezone
import uuid

import structlog

from backend import (
    SCHEMA_CACHE_MISS,
    UNDEFINED_COLUMN,
    UNIQUE_VIOLATION,
    BackendClient,
    BackendError,
)
from config import Settings
from models import (
    AccountCreateRequest,
    CategoryCreateRequest,
    IdempotencyRecord,
    IdempotencyStatus,
    LegacyIdempotencyRecord,
    TransactionFilters,
    TransactionRequest,
)

logger = structlog.get_logger()

MISSING_COLUMN_CODES = {SCHEMA_CACHE_MISS, UNDEFINED_COLUMN}


class LedgerError(Exception):
    """Idempotency ledger could not complete an operation."""


class DuplicateKeyError(LedgerError):
    """A record already exists for the unique key."""


class SchemaMismatchError(LedgerError):
    """The ledger storage does not know the current record shape."""


class IdempotencyStore(ABC):
    """Insert/read/update-by-unique-key primitives over the idempotency ledger.

    Current-schema rows are unique on (owner, key, route); legacy rows are
    keyed on (key, path) and carry no status.
    """

    @abstractmethod
    async def supports_current_schema(self) -> bool:
        """Probe whether the storage has the owner/route/status columns."""
        pass

    @abstractmethod
    async def insert(self, record: IdempotencyRecord) -> IdempotencyRecord:
        """Insert a record. Raises DuplicateKeyError or SchemaMismatchError."""
        pass

    @abstractmethod
    async def read(self, owner: str, key: str, route: str) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    async def update(
        self,
        owner: str,
        key: str,
        route: str,
        *,
        status: IdempotencyStatus,
        response_body: Any,
        response_status_code: int,
    ) -> None:
        pass

    @abstractmethod
    async def insert_legacy(self, record: LegacyIdempotencyRecord) -> LegacyIdempotencyRecord:
        pass

    @abstractmethod
    async def read_legacy(self, key: str, path: str) -> Optional[LegacyIdempotencyRecord]:
        pass


class InMemoryIdempotencyStore(IdempotencyStore):
    def __init__(self, schema: str = "current"):
        self.schema = schema
        self.records: Dict[Tuple[str, str, str], IdempotencyRecord] = {}
        self.legacy_records: Dict[Tuple[str, str], LegacyIdempotencyRecord] = {}

    def _require_current_schema(self) -> None:
        if self.schema != "current":
            raise SchemaMismatchError("Could not find the 'route' column of 'idempotency_keys'")

    async def supports_current_schema(self) -> bool:
        return self.schema == "current"

    async def insert(self, record: IdempotencyRecord) -> IdempotencyRecord:
        self._require_current_schema()
        unique_key = (record.owner, record.key, record.route)
        # No await between the check and the write: this is the unique index.
        if unique_key in self.records:
            raise DuplicateKeyError(f"duplicate key {unique_key!r}")
        self.records[unique_key] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def read(self, owner: str, key: str, route: str) -> Optional[IdempotencyRecord]:
        self._require_current_schema()
        record = self.records.get((owner, key, route))
        return record.model_copy(deep=True) if record else None

    async def update(
        self,
        owner: str,
        key: str,
        route: str,
        *,
        status: IdempotencyStatus,
        response_body: Any,
        response_status_code: int,
    ) -> None:
        self._require_current_schema()
        record = self.records.get((owner, key, route))
        if record is None:
            return
        record.status = status
        record.response_body = response_body
        record.response_status_code = response_status_code

    async def insert_legacy(self, record: LegacyIdempotencyRecord) -> LegacyIdempotencyRecord:
        unique_key = (record.key, record.path)
        if unique_key in self.legacy_records:
            raise DuplicateKeyError(f"duplicate key {unique_key!r}")
        self.legacy_records[unique_key] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def read_legacy(self, key: str, path: str) -> Optional[LegacyIdempotencyRecord]:
        record = self.legacy_records.get((key, path))
        return record.model_copy(deep=True) if record else None

    def clear(self) -> None:
        """Clear all stored records (for testing)."""
        self.records.clear()
        self.legacy_records.clear()


class PostgrestIdempotencyStore(IdempotencyStore):
    COLUMNS = "user_id,key,route,status,response_body,status_code"
    LEGACY_COLUMNS = "key,path,response_body,status_code"

    def __init__(self, client: BackendClient, table: str = "idempotency_keys"):
        self.client = client
        self.table = table

    @staticmethod
    def _classify(exc: BackendError) -> LedgerError:
        if exc.code == UNIQUE_VIOLATION:
            return DuplicateKeyError(exc.message)
        if exc.code in MISSING_COLUMN_CODES:
            return SchemaMismatchError(exc.message)
        return LedgerError(f"{exc.code}: {exc.message}")

    @staticmethod
    def _to_record(row: Dict[str, Any]) -> IdempotencyRecord:
        return IdempotencyRecord(
            owner=row["user_id"],
            key=row["key"],
            route=row["route"],
            status=row["status"],
            response_body=row.get("response_body"),
            response_status_code=row.get("status_code"),
        )

    @staticmethod
    def _scope(owner: str, key: str, route: str) -> List[Tuple[str, str, Any]]:
        return [("user_id", "eq", owner), ("key", "eq", key), ("route", "eq", route)]

    async def supports_current_schema(self) -> bool:
        try:
            await self.client.select(self.table, "user_id,route,status", limit=0)
        except BackendError as exc:
            if exc.code in MISSING_COLUMN_CODES:
                return False
            raise LedgerError(f"{exc.code}: {exc.message}") from exc
        return True

    async def insert(self, record: IdempotencyRecord) -> IdempotencyRecord:
        row = {
            "user_id": record.owner,
            "key": record.key,
            "route": record.route,
            "status": record.status.value,
        }
        try:
            rows = await self.client.insert(self.table, row, returning=self.COLUMNS)
        except BackendError as exc:
            raise self._classify(exc) from exc
        return self._to_record(rows[0]) if rows else record

    async def read(self, owner: str, key: str, route: str) -> Optional[IdempotencyRecord]:
        try:
            rows, _ = await self.client.select(
                self.table, self.COLUMNS, filters=self._scope(owner, key, route), limit=1
            )
        except BackendError as exc:
            raise self._classify(exc) from exc
        return self._to_record(rows[0]) if rows else None

    async def update(
        self,
        owner: str,
        key: str,
        route: str,
        *,
        status: IdempotencyStatus,
        response_body: Any,
        response_status_code: int,
    ) -> None:
        values = {
            "status": status.value,
            "response_body": response_body,
            "status_code": response_status_code,
        }
        try:
            await self.client.update(
                self.table, values, filters=self._scope(owner, key, route), returning="key"
            )
        except BackendError as exc:
            raise self._classify(exc) from exc

    async def insert_legacy(self, record: LegacyIdempotencyRecord) -> LegacyIdempotencyRecord:
        row = {
            "key": record.key,
            "path": record.path,
            "status_code": record.response_status_code,
            "response_body": record.response_body,
        }
        try:
            await self.client.insert(self.table, row, returning="key")
        except BackendError as exc:
            raise self._classify(exc) from exc
        return record

    async def read_legacy(self, key: str, path: str) -> Optional[LegacyIdempotencyRecord]:
        try:
            rows, _ = await self.client.select(
                self.table,
                self.LEGACY_COLUMNS,
                filters=[("key", "eq", key), ("path", "eq", path)],
                limit=1,
            )
        except BackendError as exc:
            raise self._classify(exc) from exc
        if not rows:
            return None
        row = rows[0]
        return LegacyIdempotencyRecord(
            key=row["key"],
            path=row["path"],
            response_body=row.get("response_body"),
            response_status_code=row.get("status_code"),
        )


class TransactionRepository(ABC):
    @abstractmethod
    async def create_transaction(
        self, user_id: str, request: TransactionRequest, token: Optional[str] = None
    ) -> Dict[str, Any]:
        """Run the create-with-conversion remote procedure. Returns the created row."""
        pass

    @abstractmethod
    async def list_transactions(
        self, user_id: str, filters: TransactionFilters, token: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], int, int]:
        """Returns (page, filtered_count, total_count)."""
        pass

    @abstractmethod
    async def update_transaction(
        self,
        user_id: str,
        transaction_id: str,
        request: TransactionRequest,
        token: Optional[str] = None,
    ) -> Any:
        pass

    @abstractmethod
    async def delete_transaction(
        self, user_id: str, transaction_id: str, token: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        pass


class AccountRepository(ABC):
    @abstractmethod
    async def list_accounts(
        self, user_id: str, active_only: bool = False, token: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_account(
        self, user_id: str, request: AccountCreateRequest, token: Optional[str] = None
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_account(
        self, user_id: str, account_id: str, changes: Dict[str, Any], token: Optional[str] = None
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def delete_account(
        self,
        user_id: str,
        account_id: str,
        target_account_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Any:
        """Run the delete-with-transfer remote procedure."""
        pass


class CategoryRepository(ABC):
    @abstractmethod
    async def list_categories(
        self,
        user_id: str,
        category_type: Optional[str] = None,
        include_inactive: bool = False,
        token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_category(
        self, user_id: str, request: CategoryCreateRequest, token: Optional[str] = None
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_category(
        self, user_id: str, category_id: str, changes: Dict[str, Any], token: Optional[str] = None
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def delete_category(
        self, user_id: str, category_id: str, token: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _not_found(what: str) -> BackendError:
    # Mirrors PostgREST's object response when zero rows match.
    return BackendError(f"{what} not found", code="PGRST116", status_code=406)


def _single(rows: List[Dict[str, Any]], what: str) -> Dict[str, Any]:
    if not rows:
        raise _not_found(what)
    return rows[0]


class InMemoryAccountRepository(AccountRepository):
    def __init__(self):
        self.accounts: Dict[str, Dict[str, Any]] = {}

    def add_account(self, user_id: str, name: str = "Wallet", **fields: Any) -> Dict[str, Any]:
        """Seed an account synchronously (for testing)."""
        account_id = str(uuid.uuid4())
        balance = float(fields.pop("initial_balance", 0))
        account = {
            "id": account_id,
            "user_id": user_id,
            "name": name,
            "account_type": fields.pop("account_type", "uso diario"),
            "currency": fields.pop("currency", "USD"),
            "initial_balance": balance,
            "current_balance": balance,
            "is_active": fields.pop("is_active", True),
            "created_at": _now(),
            "updated_at": _now(),
        }
        account.update(fields)
        self.accounts[account_id] = account
        return dict(account)

    def find(self, user_id: str, account_id: Optional[str]) -> Optional[Dict[str, Any]]:
        account = self.accounts.get(str(account_id)) if account_id else None
        if account is None or account["user_id"] != user_id:
            return None
        return account

    async def list_accounts(
        self, user_id: str, active_only: bool = False, token: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        rows = [
            dict(a) for a in self.accounts.values()
            if a["user_id"] == user_id and (a["is_active"] or not active_only)
        ]
        return sorted(rows, key=lambda a: a["created_at"])

    async def create_account(
        self, user_id: str, request: AccountCreateRequest, token: Optional[str] = None
    ) -> Dict[str, Any]:
        return self.add_account(
            user_id,
            name=request.name,
            account_type=request.account_type,
            currency=request.currency,
            initial_balance=request.initial_balance,
            is_active=request.is_active,
        )

    async def update_account(
        self, user_id: str, account_id: str, changes: Dict[str, Any], token: Optional[str] = None
    ) -> Dict[str, Any]:
        account = self.find(user_id, account_id)
        if account is None:
            raise _not_found("account")
        account.update(changes, updated_at=_now())
        return dict(account)

    async def delete_account(
        self,
        user_id: str,
        account_id: str,
        target_account_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Any:
        account = self.find(user_id, account_id)
        if account is None:
            raise BackendError("Account not found", code="P0001")
        if target_account_id is not None:
            target = self.find(user_id, target_account_id)
            if target is None or not target["is_active"] or target is account:
                raise BackendError("Target account not found or inactive", code="P0001")
            account["is_active"] = False
            account["updated_at"] = _now()
            return {"account_id": account_id, "transferred_to": target_account_id, "deleted": False}

        del self.accounts[account_id]
        return {"account_id": account_id, "transferred_to": None, "deleted": True}


class InMemoryTransactionRepository(TransactionRepository):
    def __init__(self, accounts: InMemoryAccountRepository):
        self.accounts = accounts
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.mutation_count = 0

    def _check_account(self, user_id: str, account_id: Any, role: str) -> None:
        account = self.accounts.find(user_id, account_id)
        if account is None or not account["is_active"]:
            raise BackendError(f"{role} account not found or inactive", code="P0001")

    async def create_transaction(
        self, user_id: str, request: TransactionRequest, token: Optional[str] = None
    ) -> Dict[str, Any]:
        self._check_account(user_id, request.origin_account_id, "Origin")
        if request.destination_account_id is not None:
            self._check_account(user_id, request.destination_account_id, "Destination")

        self.mutation_count += 1
        transaction = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "transaction_type": request.transaction_type.value,
            "origin_account_id": str(request.origin_account_id),
            "destination_account_id": (
                str(request.destination_account_id) if request.destination_account_id else None
            ),
            "category_id": str(request.category_id) if request.category_id else None,
            "amount_origin": float(request.amount),
            "description": request.description,
            "transaction_date": request.transaction_date,
            "created_at": _now(),
        }
        self.transactions[transaction["id"]] = transaction
        return dict(transaction)

    async def list_transactions(
        self, user_id: str, filters: TransactionFilters, token: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], int, int]:
        owned = [t for t in self.transactions.values() if t["user_id"] == user_id]
        matching = [
            t for t in owned
            if (not filters.dateFrom or t["transaction_date"] >= filters.dateFrom)
            and (not filters.dateTo or t["transaction_date"] <= filters.dateTo)
            and (not filters.type or t["transaction_type"] == filters.type)
            and (not filters.originCurrency or t.get("origin_currency_local") == filters.originCurrency)
        ]
        matching.sort(key=lambda t: t["transaction_date"], reverse=True)
        page = matching[filters.offset:filters.offset + filters.limit]
        return [dict(t) for t in page], len(matching), len(owned)

    async def update_transaction(
        self,
        user_id: str,
        transaction_id: str,
        request: TransactionRequest,
        token: Optional[str] = None,
    ) -> Any:
        transaction = self.transactions.get(transaction_id)
        if transaction is None or transaction["user_id"] != user_id:
            raise BackendError("Transaction not found", code="P0001")
        self._check_account(user_id, request.origin_account_id, "Origin")

        self.mutation_count += 1
        transaction.update(
            transaction_type=request.transaction_type.value,
            origin_account_id=str(request.origin_account_id),
            destination_account_id=(
                str(request.destination_account_id) if request.destination_account_id else None
            ),
            category_id=str(request.category_id) if request.category_id else None,
            amount_origin=float(request.amount),
            description=request.description,
            transaction_date=request.transaction_date,
        )
        return dict(transaction)

    async def delete_transaction(
        self, user_id: str, transaction_id: str, token: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        transaction = self.transactions.get(transaction_id)
        if transaction is None or transaction["user_id"] != user_id:
            return None
        self.mutation_count += 1
        return self.transactions.pop(transaction_id)


class InMemoryCategoryRepository(CategoryRepository):
    def __init__(self):
        self.categories: Dict[str, Dict[str, Any]] = {}

    def _owned(self, user_id: str, category_id: str) -> Optional[Dict[str, Any]]:
        category = self.categories.get(category_id)
        if category is None or category["user_id"] != user_id:
            return None
        return category

    async def list_categories(
        self,
        user_id: str,
        category_type: Optional[str] = None,
        include_inactive: bool = False,
        token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return [
            dict(c) for c in self.categories.values()
            if c["user_id"] == user_id
            and (not category_type or c["category_type"] == category_type)
            and (include_inactive or c["is_active"])
        ]

    async def create_category(
        self, user_id: str, request: CategoryCreateRequest, token: Optional[str] = None
    ) -> Dict[str, Any]:
        category = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            **request.model_dump(),
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.categories[category["id"]] = category
        return dict(category)

    async def update_category(
        self, user_id: str, category_id: str, changes: Dict[str, Any], token: Optional[str] = None
    ) -> Dict[str, Any]:
        category = self._owned(user_id, category_id)
        if category is None:
            raise _not_found("category")
        category.update(changes, updated_at=_now())
        return dict(category)

    async def delete_category(
        self, user_id: str, category_id: str, token: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        if self._owned(user_id, category_id) is None:
            return None
        return self.categories.pop(category_id)


class SupabaseTransactionRepository(TransactionRepository):
    def __init__(self, client: BackendClient):
        self.client = client

    async def create_transaction(
        self, user_id: str, request: TransactionRequest, token: Optional[str] = None
    ) -> Dict[str, Any]:
        fields = request.model_dump(mode="json")
        return await self.client.rpc(
            "create_transaction_with_conversion",
            {
                "p_user_id": user_id,
                "p_transaction_type": fields["transaction_type"],
                "p_origin_account_id": fields["origin_account_id"],
                "p_destination_account_id": fields["destination_account_id"],
                "p_category_id": fields["category_id"],
                "p_amount": float(request.amount),
                "p_description": fields["description"],
                "p_transaction_date": fields["transaction_date"],
            },
            token=token,
            single=True,
        )

    async def list_transactions(
        self, user_id: str, filters: TransactionFilters, token: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], int, int]:
        conditions = [("user_id", "eq", user_id)]
        if filters.dateFrom:
            conditions.append(("transaction_date", "gte", filters.dateFrom))
        if filters.dateTo:
            conditions.append(("transaction_date", "lte", filters.dateTo))
        if filters.type:
            conditions.append(("transaction_type", "eq", filters.type))
        if filters.originCurrency:
            conditions.append(("origin_currency_local", "eq", filters.originCurrency))

        rows, filtered = await self.client.select(
            "transactions",
            filters=conditions,
            token=token,
            order="transaction_date",
            descending=True,
            limit=filters.limit,
            offset=filters.offset,
            count=True,
        )
        _, total = await self.client.select(
            "transactions",
            "id",
            filters=[("user_id", "eq", user_id)],
            token=token,
            count=True,
            head=True,
        )
        return rows, filtered or 0, total or 0

    async def update_transaction(
        self,
        user_id: str,
        transaction_id: str,
        request: TransactionRequest,
        token: Optional[str] = None,
    ) -> Any:
        fields = request.model_dump(mode="json")
        return await self.client.invoke(
            "update-transaction-with-conversion",
            {
                "user_id": user_id,
                "transaction_id": transaction_id,
                "transaction_type": fields["transaction_type"],
                "origin_account_id": fields["origin_account_id"],
                "destination_account_id": fields["destination_account_id"],
                "category_id": fields["category_id"],
                "amount_origin": float(request.amount),
                "description": fields["description"],
                "transaction_date": fields["transaction_date"],
            },
            token=token,
        )

    async def delete_transaction(
        self, user_id: str, transaction_id: str, token: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        rows = await self.client.delete(
            "transactions",
            filters=[("id", "eq", transaction_id), ("user_id", "eq", user_id)],
            token=token,
        )
        return rows[0] if rows else None


class SupabaseAccountRepository(AccountRepository):
    COLUMNS = (
        "id,user_id,name,account_type,currency,initial_balance,"
        "current_balance,is_active,created_at,updated_at"
    )

    def __init__(self, client: BackendClient):
        self.client = client

    async def list_accounts(
        self, user_id: str, active_only: bool = False, token: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        # Row-level security scopes the rows to the token's owner.
        filters = [("is_active", "eq", True)] if active_only else []
        rows, _ = await self.client.select(
            "accounts", self.COLUMNS, filters=filters, token=token, order="created_at"
        )
        return rows

    async def create_account(
        self, user_id: str, request: AccountCreateRequest, token: Optional[str] = None
    ) -> Dict[str, Any]:
        result = await self.client.rpc(
            "create_account_with_initial_balance",
            {
                "p_user_id": user_id,
                "p_name": request.name,
                "p_account_type": request.account_type,
                "p_currency": request.currency,
                "p_initial_balance": float(request.initial_balance),
                "p_is_active": request.is_active,
            },
            token=token,
        )
        account_id = result.get("account_id") if isinstance(result, dict) else None
        rows, _ = await self.client.select(
            "accounts", filters=[("id", "eq", account_id)], token=token, limit=1
        )
        return _single(rows, "account")

    async def update_account(
        self, user_id: str, account_id: str, changes: Dict[str, Any], token: Optional[str] = None
    ) -> Dict[str, Any]:
        rows = await self.client.update(
            "accounts",
            changes,
            filters=[("id", "eq", account_id), ("user_id", "eq", user_id)],
            token=token,
        )
        return _single(rows, "account")

    async def delete_account(
        self,
        user_id: str,
        account_id: str,
        target_account_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Any:
        return await self.client.rpc(
            "delete_account_with_transfer",
            {
                "p_user_id": user_id,
                "p_account_id": account_id,
                "p_target_account_id": target_account_id,
            },
            token=token,
        )


class SupabaseCategoryRepository(CategoryRepository):
    COLUMNS = "id,user_id,name,category_type,color,icon,is_active,created_at,updated_at"

    def __init__(self, client: BackendClient):
        self.client = client

    async def list_categories(
        self,
        user_id: str,
        category_type: Optional[str] = None,
        include_inactive: bool = False,
        token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        filters = []
        if category_type:
            filters.append(("category_type", "eq", category_type))
        if not include_inactive:
            filters.append(("is_active", "eq", True))
        rows, _ = await self.client.select("categories", self.COLUMNS, filters=filters, token=token)
        return rows

    async def create_category(
        self, user_id: str, request: CategoryCreateRequest, token: Optional[str] = None
    ) -> Dict[str, Any]:
        rows = await self.client.insert(
            "categories", [{"user_id": user_id, **request.model_dump()}], token=token
        )
        return _single(rows, "category")

    async def update_category(
        self, user_id: str, category_id: str, changes: Dict[str, Any], token: Optional[str] = None
    ) -> Dict[str, Any]:
        rows = await self.client.update(
            "categories",
            changes,
            filters=[("id", "eq", category_id), ("user_id", "eq", user_id)],
            token=token,
        )
        return _single(rows, "category")

    async def delete_category(
        self, user_id: str, category_id: str, token: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        rows = await self.client.delete(
            "categories",
            filters=[("id", "eq", category_id), ("user_id", "eq", user_id)],
            token=token,
        )
        return rows[0] if rows else None


# Process-wide instances; configure_repositories() swaps in the remote backend
_backend_client: Optional[BackendClient] = None
_idempotency_store: IdempotencyStore = InMemoryIdempotencyStore()
_account_repo: AccountRepository = InMemoryAccountRepository()
_transaction_repo: TransactionRepository = InMemoryTransactionRepository(_account_repo)
_category_repo: CategoryRepository = InMemoryCategoryRepository()


def configure_repositories(settings: Settings) -> None:
    """Build the repositories for the configured storage backend."""
    global _backend_client, _idempotency_store, _account_repo, _transaction_repo, _category_repo

    if settings.storage_backend != "supabase":
        reset_repositories()
        return

    if not (settings.supabase_url and settings.supabase_anon_key and settings.supabase_service_role_key):
        raise ValueError(
            "SUPABASE_URL, SUPABASE_ANON_KEY and SUPABASE_SERVICE_ROLE_KEY are required "
            "when STORAGE_BACKEND=supabase"
        )

    _backend_client = BackendClient(
        settings.supabase_url,
        settings.supabase_anon_key,
        settings.supabase_service_role_key,
        timeout=settings.backend_timeout_seconds,
    )
    _idempotency_store = PostgrestIdempotencyStore(_backend_client, settings.idempotency_table)
    _account_repo = SupabaseAccountRepository(_backend_client)
    _transaction_repo = SupabaseTransactionRepository(_backend_client)
    _category_repo = SupabaseCategoryRepository(_backend_client)
    logger.info("Repositories configured", backend="supabase", url=settings.supabase_url)


async def close_repositories() -> None:
    global _backend_client
    if _backend_client is not None:
        await _backend_client.aclose()
        _backend_client = None


def get_backend_client() -> Optional[BackendClient]:
    return _backend_client


def get_idempotency_store() -> IdempotencyStore:
    return _idempotency_store


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_transaction_repository() -> TransactionRepository:
    return _transaction_repo


def get_category_repository() -> CategoryRepository:
    return _category_repo


def reset_repositories(ledger_schema: str = "current") -> None:
    """Reset all repositories to an empty in-memory state."""
    global _backend_client, _idempotency_store, _account_repo, _transaction_repo, _category_repo
    _backend_client = None
    _idempotency_store = InMemoryIdempotencyStore(schema=ledger_schema)
    _account_repo = InMemoryAccountRepository()
    _transaction_repo = InMemoryTransactionRepository(_account_repo)
    _category_repo = InMemoryCategoryRepository()
