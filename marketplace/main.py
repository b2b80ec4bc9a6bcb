import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from marketplace.config import get_settings
from marketplace.database import Base, engine, SessionLocal
from marketplace.errors import InvalidSignature, MarketplaceError, ValidationError
from marketplace.gateway import configure_stripe
from marketplace.log import configure_logging
from marketplace.routes import router
from marketplace.webhooks import WebhookGateway

configure_logging(get_settings().environment)
configure_stripe(get_settings())
logger = structlog.get_logger(__name__)

app = FastAPI(title="Book Marketplace Fulfillment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message,
                     error_type=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code,
                        content={"success": False, "error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400,
                        content={"success": False, "error": "Invalid request",
                                 "details": jsonable_encoder(exc.errors())})


@app.get("/health")
def health():
    return {"ok": True}


async def raw_body(request: Request) -> bytes:
    return await request.body()


# sync handler: FastAPI runs it in the threadpool, off the event loop
@app.post("/webhooks/payment")
def payment_webhook(payload: bytes = Depends(raw_body), x_signature: str = Header(None),
                    settings=Depends(get_settings)):
    with SessionLocal() as db:
        try:
            result = WebhookGateway(db, settings).handle(payload, x_signature)
        except InvalidSignature:
            logger.warning("webhook_signature_invalid")
            raise HTTPException(status_code=401, detail="Invalid signature")
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.message)

    return {"ok": True, **result}
