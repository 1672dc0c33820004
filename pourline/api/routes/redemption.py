"""Terminal-facing routes: token verification and pour control."""

from fastapi import APIRouter, Depends

from pourline.api.deps import get_pour_service, get_token_service
from pourline.api.schemas.orders import CompletePourRequest, StartPourRequest, VerifyTokenRequest
from pourline.core.auth import Terminal, require_terminal
from pourline.orders.pouring import PourService
from pourline.orders.schemas import PourCommand, PourResult, Redemption
from pourline.orders.tokens import RedemptionTokenService

router = APIRouter()


@router.post("/redemptions/verify", response_model=Redemption)
async def verify_token(
    body: VerifyTokenRequest,
    terminal: Terminal = Depends(require_terminal),
    tokens: RedemptionTokenService = Depends(get_token_service),
):
    """Verify a scanned redemption code and mark the order redeemed."""
    return await tokens.verify(body.token, verified_by=terminal.terminal_id)


@router.post("/pours/start", response_model=PourCommand)
async def start_pour(
    body: StartPourRequest,
    terminal: Terminal = Depends(require_terminal),
    pours: PourService = Depends(get_pour_service),
):
    """Redeem at the tap and return the pour command for the controller."""
    return await pours.start_pour(body.order_id, body.tap_id, body.token)


@router.post("/pours/complete", response_model=PourResult)
async def complete_pour(
    body: CompletePourRequest,
    terminal: Terminal = Depends(require_terminal),
    pours: PourService = Depends(get_pour_service),
):
    return await pours.complete_pour(body.order_id, body.tap_id, body.actual_oz)
