"""Idempotent execution of the designated mutation route.

A request carrying an ``Idempotency-Key`` first claims the key in the ledger.
The claim is an insert against the unique (owner, key, route) constraint, so
exactly one of several concurrent requests wins, across processes as well as
within one. The winner runs the handler; whatever result the handler
declares is written back to the ledger and returned. Losers replay a
completed result or get a 409.

Two ledger variants exist while storage migrates from the legacy shape:

* ``CurrentLedger``: rows scoped to (owner, key, route) with a status.
* ``LegacyLedger``: rows keyed on (key, path), written only on completion.

``select_ledger`` picks one at startup. A current-schema claim that hits a
schema mismatch still degrades that single request to the legacy ledger.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from config import get_settings
from errors import (
    ApiError,
    IdempotencyConflictError,
    IdempotencyKeyRequiredError,
    InternalError,
    UnauthenticatedError,
)
from models import HandlerResult, IdempotencyRecord, IdempotencyStatus, LegacyIdempotencyRecord
from repositories import (
    DuplicateKeyError,
    IdempotencyStore,
    LedgerError,
    SchemaMismatchError,
    get_idempotency_store,
)

logger = structlog.get_logger()

IDEMPOTENT_ROUTE = "/v1/transactions"

Handler = Callable[[], Awaitable[HandlerResult]]


class ClaimOutcome(str, Enum):
    fresh = "fresh"
    replay = "replay"
    in_progress = "in_progress"
    failed = "failed"


@dataclass(frozen=True)
class Claim:
    outcome: ClaimOutcome
    replay: Optional[HandlerResult] = None


class Ledger(ABC):
    name: str

    def __init__(self, store: IdempotencyStore):
        self.store = store

    @abstractmethod
    async def claim(self, owner: str, key: str, route: str) -> Claim:
        """Reserve the key for this request or report who already holds it."""
        pass

    @abstractmethod
    async def finalize(self, owner: str, key: str, route: str, result: HandlerResult) -> None:
        """Persist the handler's result. Best effort: never raises."""
        pass


class CurrentLedger(Ledger):
    name = "current"
    DEFAULT_REPLAY_STATUS = 201

    async def claim(self, owner: str, key: str, route: str) -> Claim:
        try:
            await self.store.insert(IdempotencyRecord(owner=owner, key=key, route=route))
            return Claim(ClaimOutcome.fresh)
        except DuplicateKeyError:
            pass
        except SchemaMismatchError:
            raise
        except LedgerError as e:
            logger.error("Idempotency insert failed", idempotency_key=key, route=route, error=str(e))
            raise InternalError() from e

        try:
            existing = await self.store.read(owner, key, route)
        except LedgerError as e:
            logger.error("Idempotency read after conflict failed", idempotency_key=key, error=str(e))
            raise InternalError() from e

        if existing is None:
            logger.error("Idempotency record vanished after conflict", idempotency_key=key, route=route)
            raise InternalError()

        if existing.status == IdempotencyStatus.completed:
            return Claim(
                ClaimOutcome.replay,
                HandlerResult(
                    status_code=existing.response_status_code or self.DEFAULT_REPLAY_STATUS,
                    body=existing.response_body,
                ),
            )
        if existing.status == IdempotencyStatus.in_progress:
            return Claim(ClaimOutcome.in_progress)
        return Claim(ClaimOutcome.failed)

    async def finalize(self, owner: str, key: str, route: str, result: HandlerResult) -> None:
        status = IdempotencyStatus.failed if result.status_code >= 400 else IdempotencyStatus.completed
        try:
            await self.store.update(
                owner,
                key,
                route,
                status=status,
                response_body=result.body,
                response_status_code=result.status_code,
            )
        except LedgerError as e:
            logger.error(
                "Idempotency finalize failed",
                idempotency_key=key,
                route=route,
                status=status.value,
                error=str(e),
            )


class LegacyLedger(Ledger):
    """Transitional: delete once every ledger table carries owner/route/status."""

    name = "legacy"
    DEFAULT_REPLAY_STATUS = 200

    async def claim(self, owner: str, key: str, route: str) -> Claim:
        try:
            existing = await self.store.read_legacy(key, route)
        except LedgerError as e:
            logger.warning("Legacy idempotency read failed", idempotency_key=key, error=str(e))
            existing = None

        if existing is None:
            return Claim(ClaimOutcome.fresh)
        return Claim(
            ClaimOutcome.replay,
            HandlerResult(
                status_code=existing.response_status_code or self.DEFAULT_REPLAY_STATUS,
                body=existing.response_body,
            ),
        )

    async def finalize(self, owner: str, key: str, route: str, result: HandlerResult) -> None:
        record = LegacyIdempotencyRecord(
            key=key,
            path=route,
            response_body=result.body,
            response_status_code=result.status_code,
        )
        try:
            await self.store.insert_legacy(record)
        except LedgerError as e:
            logger.error("Idempotency legacy persist failed", idempotency_key=key, error=str(e))


async def select_ledger(store: IdempotencyStore) -> Ledger:
    """Probe the storage once and return the matching ledger variant."""
    try:
        current = await store.supports_current_schema()
    except LedgerError as e:
        logger.warning("Idempotency schema probe failed, assuming current schema", error=str(e))
        current = True

    ledger = CurrentLedger(store) if current else LegacyLedger(store)
    logger.info("Idempotency ledger selected", schema=ledger.name)
    return ledger


class IdempotencyGateway:
    def __init__(
        self,
        store: IdempotencyStore,
        ledger: Optional[Ledger] = None,
        route: str = IDEMPOTENT_ROUTE,
        enabled: bool = True,
    ):
        self.store = store
        self.ledger = ledger or CurrentLedger(store)
        self.route = route
        self.enabled = enabled

    async def execute(self, *, key: Optional[str], owner: Optional[str], handler: Handler) -> HandlerResult:
        """Run ``handler`` at most once per (owner, key, route).

        Raises IdempotencyKeyRequiredError, UnauthenticatedError,
        IdempotencyConflictError or InternalError; otherwise returns either
        the handler's own result or the replay of an earlier one.
        """
        if not self.enabled:
            return await handler()

        if not key or not key.strip():
            raise IdempotencyKeyRequiredError()
        if not owner:
            raise UnauthenticatedError()

        ledger = self.ledger
        try:
            claim = await ledger.claim(owner, key, self.route)
        except SchemaMismatchError as e:
            logger.warning(
                "Ledger rejected current schema, falling back to legacy",
                idempotency_key=key,
                error=str(e),
            )
            ledger = LegacyLedger(self.store)
            claim = await ledger.claim(owner, key, self.route)

        if claim.outcome == ClaimOutcome.replay:
            logger.info(
                "Replaying stored response",
                idempotency_key=key,
                owner=owner,
                status_code=claim.replay.status_code,
                ledger=ledger.name,
            )
            return claim.replay
        if claim.outcome == ClaimOutcome.in_progress:
            logger.info("Duplicate request still in progress", idempotency_key=key, owner=owner)
            raise IdempotencyConflictError(IdempotencyConflictError.IN_PROGRESS)
        if claim.outcome == ClaimOutcome.failed:
            logger.info("Duplicate of a failed request", idempotency_key=key, owner=owner)
            raise IdempotencyConflictError(IdempotencyConflictError.RETRY_LATER)

        result = await self._run(handler, key)
        await ledger.finalize(owner, key, self.route, result)
        return result

    async def _run(self, handler: Handler, key: str) -> HandlerResult:
        try:
            return await handler()
        except ApiError as e:
            return e.to_result()
        except Exception:
            logger.error("Idempotent handler crashed", idempotency_key=key, exc_info=True)
            return InternalError().to_result()


_ledger: Optional[Ledger] = None


async def configure_ledger(store: IdempotencyStore) -> Ledger:
    global _ledger
    _ledger = await select_ledger(store)
    return _ledger


def reset_ledger() -> None:
    global _ledger
    _ledger = None


def get_active_ledger() -> Optional[Ledger]:
    return _ledger


def get_idempotency_gateway() -> IdempotencyGateway:
    store = get_idempotency_store()
    # A ledger probed against a store that has since been replaced is stale.
    ledger = _ledger if _ledger is not None and _ledger.store is store else None
    return IdempotencyGateway(store, ledger, enabled=not get_settings().idempotency_disabled)
