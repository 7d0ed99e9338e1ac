from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal
from uuid import UUID


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class TransactionRequest(BaseModel):
    """Financial mutation payload shared by the user and agent entry points."""

    model_config = ConfigDict(extra="ignore")

    userId: Optional[str] = Field(
        None,
        min_length=1,
        description="Owner asserted by the caller; must match the resolved identity"
    )
    transaction_type: TransactionType = Field(..., description="Transaction type")
    origin_account_id: UUID = Field(..., description="Account the amount is taken from")
    destination_account_id: Optional[UUID] = Field(
        None,
        description="Receiving account, required for transfers"
    )
    category_id: Optional[UUID] = Field(
        None,
        description="Category, required for income and expense"
    )
    amount: Decimal = Field(..., description="Amount in the origin account currency")
    description: Optional[str] = Field(None, max_length=200)
    transaction_date: str = Field(..., description="Calendar date as YYYY-MM-DD")

    @field_validator("amount", mode="before")
    @classmethod
    def amount_must_be_numeric(cls, v):
        # JSON numbers only; "10" and true are not amounts.
        if isinstance(v, (str, bool)):
            raise ValueError("Amount must be a number")
        return v


class TransactionFilters(BaseModel):
    dateFrom: Optional[str] = None
    dateTo: Optional[str] = None
    type: Optional[str] = None
    originCurrency: Optional[str] = None
    limit: int = 100
    offset: int = 0


class IdempotencyStatus(str, Enum):
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


class IdempotencyRecord(BaseModel):
    """Ledger row scoped to (owner, key, route)."""

    owner: str
    key: str
    route: str
    status: IdempotencyStatus = IdempotencyStatus.in_progress
    response_body: Any = None
    response_status_code: Optional[int] = None


class LegacyIdempotencyRecord(BaseModel):
    """Pre-migration ledger row keyed on (key, path); its presence means completed."""

    key: str
    path: str
    response_body: Any = None
    response_status_code: Optional[int] = None


class HandlerResult(BaseModel):
    """What a route handler declares it sends: the unit persisted and replayed."""

    status_code: int
    body: Any = None


class ErrorDetail(BaseModel):
    field: str
    message: str


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Machine-readable error code")
    details: Optional[List[ErrorDetail]] = Field(None, description="Field-level violations")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    ok: bool = True
    timestamp: datetime = Field(default_factory=datetime.now)
    ledger: str = Field(..., description="Active idempotency ledger schema")


class AccountCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    account_type: str = Field(..., min_length=1)
    currency: str = Field(..., min_length=1)
    initial_balance: Decimal = Decimal("0")
    is_active: bool = True


class AccountUpdateRequest(BaseModel):
    name: Optional[str] = None
    account_type: Optional[str] = None
    is_active: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AccountTransferRequest(BaseModel):
    targetAccountId: Optional[str] = None


class CategoryCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    category_type: str = Field(..., min_length=1)
    color: Optional[str] = None
    icon: Optional[str] = None
    is_active: bool = True


class CategoryUpdateRequest(BaseModel):
    name: Optional[str] = None
    category_type: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    is_active: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
