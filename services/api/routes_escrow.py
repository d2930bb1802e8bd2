from __future__ import annotations

from fastapi import APIRouter, Query, Request

from services.api.schemas_api import EscrowBalanceRes, WithdrawReq, WithdrawRes
from services.crypto_core.commitments import NATIVE_RAIL

router = APIRouter()


@router.get("/escrow/{account}", response_model=EscrowBalanceRes)
def escrow_balance(
    request: Request,
    account: str,
    payment_rail: str = Query(NATIVE_RAIL, description="Rail (native sentinel or token address)"),
):
    """
    Escrow position of `account` on one rail: `pending` is withdrawable now,
    `held` backs a live highest bid.
    """
    market = request.app.state.market
    return EscrowBalanceRes(
        account=account,
        payment_rail=payment_rail,
        pending=market.pending_withdrawal(payment_rail, account),
        held=market.held_balance(payment_rail, account),
    )


@router.post("/escrow/withdraw", response_model=WithdrawRes)
def escrow_withdraw(request: Request, req: WithdrawReq):
    market = request.app.state.market
    amount = market.withdraw(req.caller, req.payment_rail)
    request.app.state.persist()
    return WithdrawRes(account=req.caller, payment_rail=req.payment_rail, amount=amount)
