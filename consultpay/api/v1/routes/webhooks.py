from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from consultpay.api.deps import get_db, get_providers
from consultpay.providers.base import ProviderName
from consultpay.services.webhook_service import WebhookDispatcher

router = APIRouter(tags=["webhooks"])


async def _receive(provider: ProviderName, signature_header: str, req: Request, db: Session, providers: dict):
    # the signature covers the exact bytes, so never re-serialize the body
    body = await req.body()
    result = WebhookDispatcher(db, providers).receive(provider, body, req.headers.get(signature_header))
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post("/webhooks/stripe")
async def stripe_webhook(req: Request, db: Session = Depends(get_db), providers: dict = Depends(get_providers)):
    return await _receive(ProviderName.STRIPE, "stripe-signature", req, db, providers)


@router.post("/webhooks/paystack")
async def paystack_webhook(req: Request, db: Session = Depends(get_db), providers: dict = Depends(get_providers)):
    return await _receive(ProviderName.PAYSTACK, "x-paystack-signature", req, db, providers)
