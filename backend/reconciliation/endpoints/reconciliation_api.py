"""
Reconciliation API Endpoints

REST API for the onramp/offramp lifecycle:
- POST /onramp/initiate - Issue an onramp id and virtual account
- GET /onramp/{onramp_id} - Lifecycle status of an onramp
- POST /webhook/deposit - Banking provider deposit notification
- POST /register/offramp - Register a payout bank account
- GET /deposits/{deposit_id}/settlement - Settlement progress of a deposit
- POST /deposits/{deposit_id}/retry - Resubmit a failed or timed out settlement
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import get_settings
from core.context import get_reconciliation_service
from core.errors import (
    DuplicateDepositError,
    NotFoundError,
    SettlementFailedError,
    SettlementTimeoutError,
)
from database.ledger_models import SettlementStatus
from reconciliation.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Reconciliation"])

WEBHOOK_SIGNATURE_HEADER = "X-Webhook-Signature"


# ==================== Request Models ====================

class InitiateOnrampRequest(BaseModel):
    """Request to start an onramp."""
    userAddress: str = Field(..., min_length=1, description="Address that receives the minted tokens")


class DepositWebhookRequest(BaseModel):
    """Deposit notification from the banking provider."""
    bankReference: str = Field(..., min_length=1, description="Provider reference of the transfer")
    userAddress: str = Field(..., min_length=1, description="Address the onramp was initiated for")
    amount: int = Field(..., gt=0, description="Amount in display units")
    onrampId: str = Field(..., min_length=1, description="Onramp id returned by /onramp/initiate")


class RegisterOfframpRequest(BaseModel):
    """Request to register an offramp bank account."""
    userAddress: str = Field(..., min_length=1)
    bankAccount: str = Field(..., min_length=1)


# ==================== Webhook Authentication ====================

async def verify_webhook_signature(
    request: Request,
    signature: Optional[str] = Header(None, alias=WEBHOOK_SIGNATURE_HEADER)
):
    """
    Check the HMAC-SHA256 of the raw body when BANKING_WEBHOOK_SECRET is set.
    """
    settings = getattr(request.app.state, "settings", None) or get_settings()
    secret = settings.BANKING_WEBHOOK_SECRET
    if not secret:
        return

    if not signature:
        logger.warning("Deposit webhook rejected: missing signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")

    body = await request.body()
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        logger.warning("Deposit webhook rejected: bad signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")


def _failure(status_code: int, error: Exception, **fields) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, **fields, **error.to_dict()}
    return JSONResponse(status_code=status_code, content=content)


# ==================== Endpoints ====================

@router.post("/onramp/initiate")
async def initiate_onramp(
    body: InitiateOnrampRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Issue a fresh onramp id bound to a virtual account."""
    result = await service.initiate(body.userAddress)
    return {"success": True, **result}


@router.get("/onramp/{onramp_id}")
async def get_onramp(
    onramp_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    return await service.get_onramp_status(onramp_id)


@router.post("/webhook/deposit", dependencies=[Depends(verify_webhook_signature)])
async def deposit_webhook(
    body: DepositWebhookRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Record a fiat deposit and settle it on-chain.

    Status codes:
    - 200: settled, or a replay of an already recorded deposit (success is
      false when that deposit has not settled)
    - 400: invalid payload or unknown onrampId
    - 500: settlement failed (deposit kept for retry)
    - 504: settlement broadcast but not confirmed in time
    """
    try:
        result = await service.record_deposit(
            body.bankReference, body.userAddress, body.amount, body.onrampId
        )
    except DuplicateDepositError as e:
        settlement = e.settlement or {}
        # Replays stay 200; success mirrors whether the original deposit settled
        return {
            "success": settlement.get("status") == SettlementStatus.SETTLED.value,
            "depositId": e.deposit["id"],
            "replayed": True,
            "settlementStatus": settlement.get("status"),
            "txHash": settlement.get("txHash"),
        }
    except NotFoundError as e:
        return _failure(status.HTTP_400_BAD_REQUEST, e)
    except SettlementTimeoutError as e:
        return _failure(status.HTTP_504_GATEWAY_TIMEOUT, e, depositId=e.deposit_id, txHash=e.tx_hash)
    except SettlementFailedError as e:
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, e, depositId=e.deposit_id, txHash=e.tx_hash)

    return {"success": True, "depositId": result["depositId"], "txHash": result["txHash"]}


@router.post("/register/offramp")
async def register_offramp(
    body: RegisterOfframpRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    result = await service.register_offramp(body.userAddress, body.bankAccount)
    return {"success": True, **result}


@router.get("/deposits/{deposit_id}/settlement")
async def get_deposit_settlement(
    deposit_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    return await service.get_settlement(deposit_id)


@router.post("/deposits/{deposit_id}/retry")
async def retry_deposit_settlement(
    deposit_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Resubmit or re-confirm a FAILED or TIMEOUT settlement."""
    try:
        result = await service.retry_settlement(deposit_id)
    except SettlementTimeoutError as e:
        return _failure(status.HTTP_504_GATEWAY_TIMEOUT, e, depositId=deposit_id, txHash=e.tx_hash)
    except SettlementFailedError as e:
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, e, depositId=deposit_id, txHash=e.tx_hash)

    return {"success": True, **result}
