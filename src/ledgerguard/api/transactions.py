"""
Transaction endpoints.

Reference wiring for financial data: rate limit, CSRF and validation run
before anything is encrypted; the repository encrypts on write and decrypts
on read, so handlers only see plaintext.
"""

from typing import List

import structlog
from fastapi import APIRouter, Depends, Request

from ledgerguard.api.deps import get_audit_logger, get_current_user, get_security_context, rate_limit, require_csrf
from ledgerguard.core.exceptions import LedgerGuardException
from ledgerguard.core.sessions import SecurityContext
from ledgerguard.core.storage import TransactionRepository, get_store
from ledgerguard.models.audit import AuditAction
from ledgerguard.models.auth import ErrorResponse
from ledgerguard.models.finance import Transaction, TransactionCreate, TransactionResponse
from ledgerguard.models.user import User, utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/transactions")


def get_transactions() -> TransactionRepository:
    return TransactionRepository(get_store())


def to_response(transaction: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        description=transaction.description,
        amount=transaction.amount,
        category=transaction.category,
        type=transaction.type,
        date=transaction.date,
    )


@router.post(
    "",
    response_model=TransactionResponse,
    status_code=201,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid amount"},
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "CSRF token missing or invalid"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
    },
    summary="Create a transaction",
    dependencies=[Depends(rate_limit("modification")), Depends(require_csrf)],
)
async def create_transaction(
    body: TransactionCreate,
    request: Request,
    user: User = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
    transactions: TransactionRepository = Depends(get_transactions),
) -> TransactionResponse:
    audit = get_audit_logger(request)

    try:
        transaction = await transactions.insert(Transaction(
            user_id=user.id,
            description=body.description,
            amount=body.amount,
            category=body.category,
            type=body.type,
            date=body.date or utcnow(),
        ))
    except LedgerGuardException as e:
        audit.log_event(
            user.id, AuditAction.TRANSACTION_CREATE, "transaction",
            error_message=str(e), ctx=ctx, success=False,
        )
        raise

    audit.log_event(
        user.id, AuditAction.TRANSACTION_CREATE, "transaction",
        resource_id=transaction.id,
        details={"category": transaction.category, "type": transaction.type},
        ctx=ctx,
    )
    logger.info("Transaction created", user_id=user.id, transaction_id=transaction.id)
    return to_response(transaction)


@router.get(
    "",
    response_model=List[TransactionResponse],
    responses={401: {"model": ErrorResponse, "description": "Unauthorized"}},
    summary="List own transactions, newest first",
    dependencies=[Depends(rate_limit("api"))],
)
async def list_transactions(
    request: Request,
    user: User = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
    transactions: TransactionRepository = Depends(get_transactions),
) -> List[TransactionResponse]:
    result = await transactions.list_by_user(user.id)
    get_audit_logger(request).log_event(
        user.id, AuditAction.TRANSACTION_VIEW, "transaction", details={"count": len(result)}, ctx=ctx,
    )
    return [to_response(t) for t in result]
