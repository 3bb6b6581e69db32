from fastapi import APIRouter, Depends, Request, status

from ledger.api import http_error
from ledger.service import InsufficientFundsError, LedgerServiceError

from .engine import EngineServices, IdempotencyConflictError
from .models import (
    CardProbabilityResponse,
    DrawRequest,
    DrawResponse,
    HoldingResponse,
    PackProbabilitiesResponse,
    SellbackRequest,
    SellbackResponse,
    ShipRequest,
)
from .policy import IntegrityViolationError, PackNotFoundError
from .recorder import AlreadyShippedError, AlreadySoldError, HoldingNotFoundError
from .selector import DrawError

router = APIRouter()


def get_services(request: Request) -> EngineServices:
    return request.app.state.services


def _holding_response(holding) -> HoldingResponse:
    return HoldingResponse(
        id=holding.id,
        item_id=holding.item_id,
        card_name=holding.card_name,
        market_value_cents=holding.market_value,
        is_sold=holding.is_sold,
        is_shipped=holding.is_shipped,
        shipment_id=holding.shipment_id,
    )


@router.post("/draws", response_model=DrawResponse, status_code=status.HTTP_201_CREATED, tags=["Draws"])
def open_pack(request: DrawRequest, services: EngineServices = Depends(get_services)) -> DrawResponse:
    try:
        result = services.openings.open_pack(request.user_id, request.pack_id, request.idempotency_key)
    except PackNotFoundError as e:
        raise http_error(status.HTTP_404_NOT_FOUND, e)
    except (InsufficientFundsError, IdempotencyConflictError) as e:
        raise http_error(status.HTTP_409_CONFLICT, e)
    except IntegrityViolationError as e:
        raise http_error(status.HTTP_500_INTERNAL_SERVER_ERROR, e)
    except (DrawError, LedgerServiceError) as e:
        raise http_error(status.HTTP_400_BAD_REQUEST, e)

    outcome = result.outcome
    return DrawResponse(
        holding_id=result.holding_id,
        pack_opening_id=result.pack_opening_id,
        card_id=outcome.item_id,
        card_name=outcome.card_name,
        card_image_url=outcome.image_url,
        set_name=outcome.set_name,
        rarity=outcome.rarity,
        tier_name=outcome.tier_name,
        market_value_cents=outcome.market_value,
        rips_spent=result.cost,
        new_balance=result.new_balance,
        replayed=result.replayed,
    )


@router.post("/holdings/{holding_id}/sellback", response_model=SellbackResponse, tags=["Holdings"])
def sellback(holding_id: str, request: SellbackRequest,
             services: EngineServices = Depends(get_services)) -> SellbackResponse:
    try:
        return services.recorder.record_sellback(request.user_id, holding_id)
    except HoldingNotFoundError as e:
        raise http_error(status.HTTP_404_NOT_FOUND, e)
    except (AlreadySoldError, AlreadyShippedError) as e:
        raise http_error(status.HTTP_409_CONFLICT, e)
    except LedgerServiceError as e:
        raise http_error(status.HTTP_400_BAD_REQUEST, e)


@router.post("/holdings/{holding_id}/ship", response_model=HoldingResponse, tags=["Holdings"])
def ship(holding_id: str, request: ShipRequest,
         services: EngineServices = Depends(get_services)) -> HoldingResponse:
    try:
        holding = services.recorder.mark_shipped(request.user_id, holding_id, request.shipment_id)
    except HoldingNotFoundError as e:
        raise http_error(status.HTTP_404_NOT_FOUND, e)
    except (AlreadySoldError, AlreadyShippedError) as e:
        raise http_error(status.HTTP_409_CONFLICT, e)
    return _holding_response(holding)


@router.get("/users/{user_id}/holdings", response_model=list[HoldingResponse], tags=["Holdings"])
def list_holdings(user_id: str, include_terminal: bool = False,
                  services: EngineServices = Depends(get_services)) -> list[HoldingResponse]:
    return [_holding_response(h) for h in services.recorder.list_holdings(user_id, include_terminal)]


@router.get("/packs/{pack_id}/probabilities", response_model=PackProbabilitiesResponse, tags=["Packs"])
def pack_probabilities(pack_id: str, services: EngineServices = Depends(get_services)) -> PackProbabilitiesResponse:
    try:
        strategy, rows = services.policy.pack_probabilities(pack_id)
    except PackNotFoundError as e:
        raise http_error(status.HTTP_404_NOT_FOUND, e)
    except DrawError as e:
        raise http_error(status.HTTP_400_BAD_REQUEST, e)

    return PackProbabilitiesResponse(
        pack_id=pack_id,
        strategy=strategy,
        probabilities=[
            CardProbabilityResponse(
                card_uuid=r.candidate.item_id,
                market_value=r.candidate.market_value,
                tier_id=r.candidate.tier_id,
                rarity=r.candidate.rarity,
                weight=r.weight,
                probability=r.probability,
            )
            for r in rows
        ],
    )
