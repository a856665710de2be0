"""Wallet and withdrawal routes"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends

from routes.dependencies import ServiceContainer, get_services
from routes.schemas import RejectWithdrawalIn, WithdrawalIn

logger = logging.getLogger(__name__)

router = APIRouter(tags=["wallets"])


@router.get("/wallets/{actor_type}/{actor_id}")
def wallet_summary(
    actor_type: str,
    actor_id: str,
    since: Optional[datetime] = None,
    page: int = 1,
    limit: Optional[int] = None,
    services: ServiceContainer = Depends(get_services),
):
    summary = services.ledger.wallet_summary(actor_type, actor_id, since=since, page=page, limit=limit)
    return {"success": True, **summary}


@router.get("/wallets/{actor_type}/{actor_id}/transactions")
def wallet_transactions(
    actor_type: str,
    actor_id: str,
    page: int = 1,
    limit: Optional[int] = None,
    services: ServiceContainer = Depends(get_services),
):
    wallet = services.ledger.get_or_create_wallet(actor_type, actor_id)
    return {"success": True, **services.ledger.transaction_history(wallet.id, page=page, limit=limit)}


@router.get("/wallets/{actor_type}/{actor_id}/withdrawals")
def list_withdrawals(
    actor_type: str,
    actor_id: str,
    status: Optional[str] = None,
    services: ServiceContainer = Depends(get_services),
):
    wallet = services.ledger.get_or_create_wallet(actor_type, actor_id)
    requests = services.ledger.list_withdrawal_requests(wallet.id, status=status)
    return {"success": True, "withdrawals": [r.snapshot() for r in requests]}


@router.post("/wallets/{actor_type}/{actor_id}/withdrawals", status_code=201)
def request_withdrawal(
    actor_type: str,
    actor_id: str,
    body: WithdrawalIn,
    services: ServiceContainer = Depends(get_services),
):
    wallet = services.ledger.get_or_create_wallet(actor_type, actor_id)
    outcome = services.ledger.request_withdrawal(wallet.id, body.amount)
    return {"success": True, **outcome.to_dict()}


@router.post("/withdrawals/{request_id}/approve")
def approve_withdrawal(request_id: int, services: ServiceContainer = Depends(get_services)):
    return {"success": True, **services.ledger.approve_withdrawal(request_id).to_dict()}


@router.post("/withdrawals/{request_id}/reject")
def reject_withdrawal(request_id: int, body: RejectWithdrawalIn, services: ServiceContainer = Depends(get_services)):
    return {"success": True, **services.ledger.reject_withdrawal(request_id, body.reason).to_dict()}


@router.post("/withdrawals/{request_id}/processed")
def mark_withdrawal_processed(request_id: int, services: ServiceContainer = Depends(get_services)):
    return {"success": True, **services.ledger.mark_withdrawal_processed(request_id).to_dict()}
