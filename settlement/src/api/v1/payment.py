from typing import Annotated
from uuid import UUID
from datetime import datetime
from fastapi import APIRouter, Body, Depends, Path
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette import status

from chain.gateway import ChainReadError, ChainSubmissionError, ChainOutcomeUnknown, TransactionReverted
from services.fx import FxRateUnavailable
from services.ledger import PaymentLedger, get_ledger
from services.settlement import (
    SettlementExecutor,
    get_settlement_executor,
    PaymentNotFound,
    CardNotFound,
    UserNotFound,
    PaymentNotSettleable,
    DuplicateExecution,
    InsufficientFunds,
)


router = APIRouter()

_DUPLICATE_ERRORS = {
    'pending_execution': 'Payment is being executed',
    'executed': 'Payment already executed',
    'failed': 'Payment execution reverted',
    'unknown': 'Payment execution outcome is unknown',
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecutePaymentBody(CamelModel):
    payment_id: UUID


class ProgramAmount(CamelModel):
    currency: str
    amount_minor: str


class MerchantAmount(CamelModel):
    name: str
    currency: str
    amount_minor: str


class TokenAmount(CamelModel):
    address: str
    amount_minor: str


class ExecutePaymentResponse(CamelModel):
    ok: bool
    tx_hash: str
    user_address: str
    program: ProgramAmount
    merchant: MerchantAmount
    usdc: TokenAmount


def _error(status_code: int, error: str, **details) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content={'error': error, **details})


@router.post(
    path='/execute-payment',
    description=
    'Pulls the payment\'s final amount in the settlement token from the card owner\'s wallet into the treasury<br>'
    'Executes at most once per payment, repeated calls get `409` with the existing transaction hash<br>'
    'Internal only',
    response_model=ExecutePaymentResponse,
    responses={
        402: {'description': 'Allowance or balance doesn\'t cover the amount'},
        404: {'description': 'Payment, card or user doesn\'t exist'},
        409: {'description': 'Payment is already executed or being executed, or isn\'t completed'},
    }
)
async def execute_payment(
    body: Annotated[ExecutePaymentBody, Body()],
    executor: Annotated[SettlementExecutor, Depends(get_settlement_executor)]
):
    try:
        result = await executor.execute(body.payment_id)
    except PaymentNotFound:
        return _error(status.HTTP_404_NOT_FOUND, 'Payment not found')
    except CardNotFound:
        return _error(status.HTTP_404_NOT_FOUND, 'Card not found')
    except UserNotFound:
        return _error(status.HTTP_404_NOT_FOUND, 'User not found')
    except DuplicateExecution as e:
        return _error(status.HTTP_409_CONFLICT, _DUPLICATE_ERRORS[e.status], txHash=e.tx_hash, status=e.status)
    except PaymentNotSettleable as e:
        return _error(status.HTTP_409_CONFLICT, 'No completed payment', status=e.status)
    except InsufficientFunds as e:
        return _error(
            status.HTTP_402_PAYMENT_REQUIRED,
            f'Insufficient {executor.token_symbol} {e.kind}',
            needed=str(e.needed),
            **{e.kind: str(e.available)}
        )
    except (FxRateUnavailable, ChainReadError, ChainSubmissionError) as e:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(e), retryable=True)
    except TransactionReverted as e:
        return _error(status.HTTP_502_BAD_GATEWAY, str(e), txHash=e.tx_hash, retryable=False)
    except ChainOutcomeUnknown as e:
        return _error(status.HTTP_504_GATEWAY_TIMEOUT, str(e), txHash=e.tx_hash, retryable=False)

    payment = result.payment
    return ExecutePaymentResponse(
        ok=True,
        tx_hash=result.tx_hash,
        user_address=result.owner_address,
        program=ProgramAmount(currency=payment.currency, amount_minor=str(payment.amount)),
        merchant=MerchantAmount(
            name=payment.merchant_name,
            currency=payment.merchant_currency,
            amount_minor=str(payment.merchant_amount)
        ),
        usdc=TokenAmount(address=result.token_address, amount_minor=str(result.quote.settlement_minor))
    )


class ExecutionInfo(CamelModel):
    symbol: str
    amount_minor: str
    decimals: int
    tx_hash: str
    created_at: datetime


class PaymentInfo(CamelModel):
    id: UUID
    external_id: str
    status: str
    program: ProgramAmount
    merchant: MerchantAmount
    execution: ExecutionInfo | None
    created_at: datetime
    updated_at: datetime


@router.get(
    path='/payments/{payment_id}',
    description='Payment with its on-chain execution, if any',
    response_model=PaymentInfo,
    responses={404: {'description': 'Payment doesn\'t exist'}}
)
async def get_payment(
    payment_id: Annotated[UUID, Path()],
    ledger: Annotated[PaymentLedger, Depends(get_ledger)]
):
    payment = await ledger.get_payment(payment_id)
    if payment is None:
        return _error(status.HTTP_404_NOT_FOUND, 'Payment not found')

    execution = await ledger.get_execution(payment.id)

    return PaymentInfo(
        id=payment.id,
        external_id=payment.external_id,
        status=payment.status,
        program=ProgramAmount(currency=payment.currency, amount_minor=str(payment.amount)),
        merchant=MerchantAmount(
            name=payment.merchant_name,
            currency=payment.merchant_currency,
            amount_minor=str(payment.merchant_amount)
        ),
        execution=ExecutionInfo(
            symbol=execution.symbol,
            amount_minor=str(execution.amount),
            decimals=execution.decimals,
            tx_hash=execution.tx_hash,
            created_at=execution.created_at
        ) if execution else None,
        created_at=payment.created_at,
        updated_at=payment.updated_at
    )
