import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from errors import ForbiddenError, InvalidPayloadError
from models import ErrorDetail, TransactionRequest, TransactionType

# Shape only; calendar validity (e.g. Feb 30) is left to the remote procedure.
DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")

CATEGORIZED_TYPES = (TransactionType.income, TransactionType.expense)


def details_from_errors(errors: Sequence[Dict[str, Any]]) -> List[ErrorDetail]:
    details = []
    for item in errors:
        field = ".".join(str(part) for part in item["loc"]) or "body"
        details.append(ErrorDetail(field=field, message=item["msg"]))
    return details


def parse_transaction(raw: Any) -> TransactionRequest:
    """Structural validation of a raw JSON payload."""
    if not isinstance(raw, dict):
        raise InvalidPayloadError(details=[ErrorDetail(field="body", message="Expected a JSON object")])
    try:
        return TransactionRequest.model_validate(raw)
    except ValidationError as e:
        raise InvalidPayloadError(details=details_from_errors(e.errors())) from e


def domain_violations(request: TransactionRequest) -> List[Tuple[str, ErrorDetail]]:
    """Return (error_code, detail) for every domain rule the payload breaks."""
    violations = []
    if request.amount <= 0:
        violations.append(
            ("INVALID_AMOUNT", ErrorDetail(field="amount", message="Amount must be greater than 0"))
        )
    if request.transaction_type == TransactionType.transfer and request.destination_account_id is None:
        violations.append(
            (
                "DESTINATION_REQUIRED",
                ErrorDetail(field="destination_account_id", message="Transfers require a destination account"),
            )
        )
    if request.transaction_type in CATEGORIZED_TYPES and request.category_id is None:
        violations.append(
            (
                "CATEGORY_REQUIRED",
                ErrorDetail(field="category_id", message="Income and expense require a category"),
            )
        )
    if not DATE_PATTERN.fullmatch(request.transaction_date):
        violations.append(
            ("INVALID_DATE", ErrorDetail(field="transaction_date", message="Expected YYYY-MM-DD"))
        )
    return violations


def check_owner(request: TransactionRequest, resolved_user_id: Optional[str]) -> None:
    # A payload may never claim a mutation on behalf of another principal.
    if request.userId is not None and request.userId != resolved_user_id:
        raise ForbiddenError()


def enforce_domain_rules(request: TransactionRequest) -> None:
    violations = domain_violations(request)
    if violations:
        code = violations[0][0]
        raise InvalidPayloadError(code, details=[detail for _, detail in violations])


def validate_transaction(raw: Any, resolved_user_id: str) -> TransactionRequest:
    """Validate a user-submitted transaction against the resolved identity."""
    request = parse_transaction(raw)
    check_owner(request, resolved_user_id)
    enforce_domain_rules(request)
    return request


def validate_transaction_update(raw: Any, resolved_user_id: str) -> TransactionRequest:
    request = parse_transaction(raw)
    check_owner(request, resolved_user_id)
    return request


def validate_agent_transaction(raw: Any) -> Tuple[str, TransactionRequest]:
    """Validate a trusted-agent transaction; the owner comes from the payload."""
    request = parse_transaction(raw)
    if not request.userId:
        raise InvalidPayloadError(
            "MISSING_USER",
            details=[ErrorDetail(field="userId", message="Agent submissions must name the owner")],
        )
    enforce_domain_rules(request)
    return request.userId, request
