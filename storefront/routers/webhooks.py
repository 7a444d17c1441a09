from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storefront.database import get_db
from storefront.dependencies import get_provider_factory
from storefront.providers import PaymentProviderFactory
import storefront.webhooks as webhooks

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/{provider_name}", summary="Receive a payment provider callback")
async def receive_webhook(
    provider_name: str,
    request: Request,
    db: Session = Depends(get_db),
    factory: PaymentProviderFactory = Depends(get_provider_factory),
):
    # Signatures cover the exact bytes sent, so the body is passed on unparsed
    body = await request.body()
    headers = dict(request.headers)

    accepted = await run_in_threadpool(
        webhooks.handle_webhook, db, factory, provider_name, headers, body
    )
    if not accepted:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"status": "error", "code": "WEBHOOK_REJECTED", "message": "Webhook rejected"},
        )
    return {"status": "ok"}


@router.get("/{provider_name}", summary="Webhook reachability check")
def ping(
    provider_name: str,
    factory: PaymentProviderFactory = Depends(get_provider_factory),
):
    provider = factory.get_provider(provider_name)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PROVIDER_NOT_FOUND", "message": f"Unknown provider: {provider_name}"},
        )
    return {"status": "ok", "provider": provider.name}
