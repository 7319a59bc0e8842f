"""Quest Payments verification service.

Main FastAPI application integrating:
- Incentive verification submissions
- Live and frozen price quotes
- Payment-rail webhooks driving the purchase lifecycle
- Manual-review resolution callbacks
"""

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.config import config, validate_config_for_service
from src.database import db
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.models import PaymentWebhook, ReviewResolution, VerifyIncentiveRequest
from src.quest.catalog import build_registry, load_incentive_definitions
from src.quest.engine import QuestEngine
from src.quest.errors import (
    IncentiveNotFoundError,
    PurchaseNotFoundError,
    QuestError,
    ReviewNotFoundError,
)
from src.quest.webhooks import PaymentWebhookHandler

# Validate configuration
validate_config_for_service("quest")

# Setup logging
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Quest Payments",
    description="Incentive verification and discount engine",
)

NOT_FOUND_ERRORS = (PurchaseNotFoundError, IncentiveNotFoundError, ReviewNotFoundError)


@app.on_event("startup")
async def startup():
    """Initialize database, load campaigns and wire verifiers."""
    logger.info("Initializing Quest service...")
    await db.initialize()

    definitions = load_incentive_definitions(config.campaign_data_path)
    await db.save_incentive_definitions(definitions)

    registry = build_registry(db, definitions)
    app.state.engine = QuestEngine(db, registry)
    app.state.webhook_handler = PaymentWebhookHandler(app.state.engine)
    logger.info("Quest service initialized")


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    with CorrelationIdContext(request.headers.get("X-Correlation-Id")) as correlation_id:
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


@app.exception_handler(QuestError)
async def quest_error_handler(request: Request, exc: QuestError) -> JSONResponse:
    status_code = 404 if isinstance(exc, NOT_FOUND_ERRORS) else 409
    logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "quest"}


@app.post("/purchases/{purchase_id}/incentives/{incentive_id}/verify")
async def verify_incentive(purchase_id: str, incentive_id: str, request: VerifyIncentiveRequest):
    """Submit evidence for one incentive on a purchase.

    Malformed evidence is answered with a ``rejected`` decision, not an HTTP
    error; only an unknown purchase or incentive, or a purchase outside its
    quest window, fails the request.
    """
    submission = await app.state.engine.submit(
        purchase_id, incentive_id, request.evidence
    )
    return submission.model_dump(mode="json")


@app.get("/purchases/{purchase_id}")
async def get_purchase(purchase_id: str):
    purchase = await app.state.engine.get_purchase(purchase_id)
    return purchase.model_dump(mode="json")


@app.get("/purchases/{purchase_id}/quote")
async def get_quote(purchase_id: str):
    quote = await app.state.engine.quote(purchase_id)
    return quote.model_dump(mode="json")


@app.post("/purchases/{purchase_id}/settle")
async def settle_purchase(purchase_id: str):
    """Close the quest window and return the frozen settlement number."""
    quote = await app.state.engine.begin_settlement(purchase_id)
    return quote.model_dump(mode="json")


@app.get("/reviews")
async def list_pending_reviews():
    """Review items still waiting on a human decision, oldest first."""
    return {"pending": await db.list_pending_reviews()}


@app.post("/reviews/{review_id}/resolve")
async def resolve_review(review_id: str, resolution: ReviewResolution):
    """Callback from the manual-review workflow."""
    result = await app.state.engine.resolve_review(review_id, resolution.approved, resolution.reason)
    return {
        "review_id": review_id,
        "incentive": result.model_dump(mode="json") if result else None,
    }


@app.post("/webhooks/payment")
async def receive_payment_webhook(
    request: Request,
    x_webhook_signature: str = Header(None, alias="X-Webhook-Signature"),
):
    """Receive a payment-rail event and apply it to the purchase.

    Args:
        request: FastAPI request object.
        x_webhook_signature: HMAC signature for authenticity.

    Returns:
        Webhook processing result.
    """
    logger.info("Received payment-rail webhook")

    if not x_webhook_signature:
        logger.error("Missing X-Webhook-Signature header")
        raise HTTPException(
            status_code=401,
            detail="Missing X-Webhook-Signature header",
        )

    raw_payload = await request.body()

    try:
        webhook = PaymentWebhook.model_validate_json(raw_payload)
    except ValidationError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    result = await app.state.webhook_handler.process_webhook(
        webhook=webhook,
        signature=x_webhook_signature,
        raw_payload=raw_payload,
    )

    if result["status"] == "error":
        logger.error(f"Webhook processing error: {result.get('error')}")
        status_code = 401 if result.get("error") == "Invalid signature" else 400
        raise HTTPException(status_code=status_code, detail=result.get("error"))
    return result


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting Quest service on {config.quest_host}:{config.quest_port}")
    uvicorn.run(
        app,
        host=config.quest_host,
        port=config.quest_port,
        log_level=config.log_level.lower(),
    )
