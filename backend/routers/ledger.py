"""
Ledger Router

Read access to the ledger tables and the processed-flag updates used by the
external payout and relay workers.

Endpoints:
- GET /deposits, /onramp_requests, /offramps, /withdrawals, /bridges
    Full row set of the table, oldest first
- POST /withdrawals/{record_id}/processed - Payout worker marks a withdrawal done
- POST /bridges/{record_id}/processed - Relay worker marks a bridge done

The processed endpoints require the internal API key when one is configured.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from core.context import get_reconciliation_service
from database.ledger_store import RecordKind
from middleware.internal_auth import InternalService, get_internal_service
from reconciliation.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Ledger"])


# ==================== LISTINGS ====================

@router.get("/deposits")
async def list_deposits(
    service: ReconciliationService = Depends(get_reconciliation_service)
) -> List[Dict[str, Any]]:
    return await service.list_records(RecordKind.DEPOSIT)


@router.get("/onramp_requests")
async def list_onramp_requests(
    service: ReconciliationService = Depends(get_reconciliation_service)
) -> List[Dict[str, Any]]:
    return await service.list_records(RecordKind.ONRAMP_REQUEST)


@router.get("/offramps")
async def list_offramps(
    service: ReconciliationService = Depends(get_reconciliation_service)
) -> List[Dict[str, Any]]:
    return await service.list_records(RecordKind.OFFRAMP)


@router.get("/withdrawals")
async def list_withdrawals(
    service: ReconciliationService = Depends(get_reconciliation_service)
) -> List[Dict[str, Any]]:
    """Withdrawals observed on-chain; ``processed`` is false until paid out."""
    return await service.list_records(RecordKind.WITHDRAWAL)


@router.get("/bridges")
async def list_bridges(
    service: ReconciliationService = Depends(get_reconciliation_service)
) -> List[Dict[str, Any]]:
    return await service.list_records(RecordKind.BRIDGE)


# ==================== PROCESSED FLAG ====================

@router.post("/withdrawals/{record_id}/processed")
async def mark_withdrawal_processed(
    record_id: str,
    internal: InternalService = Depends(get_internal_service),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    result = await service.mark_processed(RecordKind.WITHDRAWAL, record_id)
    logger.info(f"Withdrawal {record_id} processed by {internal.name} (changed={result['changed']})")
    return {"success": True, **result}


@router.post("/bridges/{record_id}/processed")
async def mark_bridge_processed(
    record_id: str,
    internal: InternalService = Depends(get_internal_service),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    result = await service.mark_processed(RecordKind.BRIDGE, record_id)
    logger.info(f"Bridge {record_id} processed by {internal.name} (changed={result['changed']})")
    return {"success": True, **result}
