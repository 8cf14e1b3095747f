from typing import Annotated
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import ORJSONResponse, PlainTextResponse
from starlette import status

from services.settlement import SettlementExecutor, get_settlement_executor
from services.webhook import (
    WebhookService,
    get_webhook_service,
    settle_in_background,
    InvalidSignature,
    MalformedEvent,
    AuthorizationRequestEvent,
    AuthorizationCreatedEvent,
)
from settings import stripe_settings


router = APIRouter()


@router.post(
    path='/webhook',
    description=
    'Card issuing events, signed with the shared webhook secret<br>'
    '`authorization.request` is answered with the approve/decline decision<br>'
    '`authorization.created` finalizes the payment and, if approved, settles it after the response<br>'
    'Other events are acknowledged and ignored'
)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    service: Annotated[WebhookService, Depends(get_webhook_service)],
    executor: Annotated[SettlementExecutor, Depends(get_settlement_executor)]
):
    payload = await request.body()
    signature = request.headers.get('stripe-signature') or request.headers.get('signature')

    try:
        event = service.parse(payload, signature)
    except InvalidSignature:
        return PlainTextResponse('Invalid signature', status_code=status.HTTP_400_BAD_REQUEST)
    except MalformedEvent:
        return PlainTextResponse('Malformed event', status_code=status.HTTP_400_BAD_REQUEST)

    match event:
        case AuthorizationRequestEvent():
            decision = await service.handle_authorization_request(event)
            content = {'approved': decision.approved}
            if not decision.approved:
                content['metadata'] = {'reason': decision.reason}

            return ORJSONResponse(content=content, headers={'Stripe-Version': stripe_settings.api_version})

        case AuthorizationCreatedEvent():
            payment = await service.handle_authorization_created(event)
            if payment is not None:
                # Settlement outcome never changes the acknowledgement
                background_tasks.add_task(settle_in_background, executor, payment.id)
            return PlainTextResponse('ok')

        case _:
            return PlainTextResponse('ok')
