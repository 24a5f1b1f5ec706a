"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /rules                 - Create a coupon, promotion or combo
  GET    /rules                 - List rules (optionally ?kind=COUPON|PROMOTION|COMBO)
  GET    /rules/{id}            - Get rule by ID
  PUT    /rules/{id}            - Replace a rule
  DELETE /rules/{id}            - Soft delete a rule
  GET    /rules/{id}/usage      - Redemption audit trail of a rule
  POST   /pricing/preview       - Price a cart (advisory, reserves nothing)
  POST   /pricing/finalize      - Price a cart and redeem the applied rules for an order
  POST   /coupons/validate      - Check a coupon code against a cart
"""

import logging
from typing import Annotated, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import models
import schemas
from config import settings
from database import engine, get_db
from errors import CheckoutConflictError, InvalidRuleError, RuleNotFoundError, StorageError
from ledger import UsageLedger
from resolution import ResolutionEngine
from rules import AnyRule, RuleBody
from storage import SqlRuleRepository, SqlUsageStore

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title=settings.APP_NAME,
    description="Resolves coupons, automatic promotions and product combos into a single, reproducible cart discount.",
    version=settings.APP_VERSION,
)

RulePayload = Annotated[AnyRule, Body(discriminator="kind")]


def get_repository(db: Session = Depends(get_db)) -> SqlRuleRepository:
    return SqlRuleRepository(db)


def get_engine(db: Session = Depends(get_db)) -> ResolutionEngine:
    return ResolutionEngine(UsageLedger(SqlUsageStore(db)))


# ═══════════════════════════════════════════════════
#  ERROR MAPPING
# ═══════════════════════════════════════════════════

@app.exception_handler(InvalidRuleError)
async def invalid_rule_handler(request: Request, exc: InvalidRuleError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(RuleNotFoundError)
async def unknown_code_handler(request: Request, exc: RuleNotFoundError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "Invalid coupon code"})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    if isinstance(exc, CheckoutConflictError):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Pricing storage unavailable"})


# ═══════════════════════════════════════════════════
#  RULE CRUD
# ═══════════════════════════════════════════════════

@app.post(
    "/rules",
    response_model=RuleBody,
    status_code=status.HTTP_201_CREATED,
    tags=["Rules"],
    summary="Create a new rule",
)
def create_rule(rule: RulePayload, repo: SqlRuleRepository = Depends(get_repository)):
    """
    Create a rule. The ``kind`` field selects its shape:
    - **COUPON**: applied when the customer enters its code.
    - **PROMOTION**: applied automatically, optionally stackable.
    - **COMBO**: BUNDLE, BOGO or MULTI_BUY item bundling.
    """
    return repo.create_rule(rule)


@app.get(
    "/rules",
    response_model=List[RuleBody],
    tags=["Rules"],
    summary="Get all rules",
)
def list_rules(kind: Optional[schemas.RuleKind] = None, repo: SqlRuleRepository = Depends(get_repository)):
    """Retrieve all rules that have not been deleted, whatever their status."""
    return repo.list_rules(kind)


@app.get(
    "/rules/{rule_id}",
    response_model=RuleBody,
    tags=["Rules"],
    summary="Get a rule by ID",
)
def get_rule(rule_id: str, repo: SqlRuleRepository = Depends(get_repository)):
    rule = repo.get_rule(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail=f"Rule with id={rule_id} not found")
    return rule


@app.put(
    "/rules/{rule_id}",
    response_model=RuleBody,
    tags=["Rules"],
    summary="Update a rule",
)
def update_rule(rule_id: str, rule: RulePayload, repo: SqlRuleRepository = Depends(get_repository)):
    """Replace the rule body. The kind of a rule cannot change; the usage count is kept."""
    updated = repo.update_rule(rule_id, rule)
    if not updated:
        raise HTTPException(status_code=404, detail=f"Rule with id={rule_id} not found")
    return updated


@app.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Rules"],
    summary="Delete a rule",
)
def delete_rule(rule_id: str, repo: SqlRuleRepository = Depends(get_repository)):
    if not repo.delete_rule(rule_id):
        raise HTTPException(status_code=404, detail=f"Rule with id={rule_id} not found")
    return None


@app.get(
    "/rules/{rule_id}/usage",
    response_model=List[schemas.UsageRecord],
    tags=["Rules"],
    summary="Redemption history of a rule",
)
def get_rule_usage(
    rule_id: str,
    repo: SqlRuleRepository = Depends(get_repository),
    pricing: ResolutionEngine = Depends(get_engine),
):
    if not repo.get_rule(rule_id):
        raise HTTPException(status_code=404, detail=f"Rule with id={rule_id} not found")
    return pricing.ledger.records(rule_id)


# ═══════════════════════════════════════════════════
#  PRICING
# ═══════════════════════════════════════════════════

@app.post(
    "/pricing/preview",
    response_model=schemas.PricingResult,
    tags=["Pricing"],
    summary="Price a cart",
)
def preview(
    request: schemas.PricingRequest,
    repo: SqlRuleRepository = Depends(get_repository),
    pricing: ResolutionEngine = Depends(get_engine),
):
    """
    Returns the applied rules with their adjustments, the total discount,
    the final total and, for every rule that did not apply, the reason.

    Nothing is reserved: a later finalize may differ if usage limits run out
    in the meantime.
    """
    context = schemas.EvaluationContext.for_cart(request.cart, now=request.now)
    rules = repo.load_active_rules(context.now)
    return pricing.preview(request.cart, rules, request.coupon_code, context)


@app.post(
    "/pricing/finalize",
    response_model=schemas.PricingResult,
    tags=["Pricing"],
    summary="Price a cart and redeem its discounts for an order",
)
def finalize(
    request: schemas.FinalizeRequest,
    repo: SqlRuleRepository = Depends(get_repository),
    pricing: ResolutionEngine = Depends(get_engine),
):
    """
    Like preview, but every applied rule consumes one usage slot and gets a
    usage record tied to ``orderId``. Rules whose limit ran out since the
    preview are dropped and the cart is re-priced without them.
    """
    context = schemas.EvaluationContext.for_cart(request.cart, now=request.now)
    rules = repo.load_active_rules(context.now)
    return pricing.finalize(request.cart, rules, request.order_id, request.coupon_code, context)


@app.post(
    "/coupons/validate",
    response_model=schemas.CouponValidateResponse,
    tags=["Pricing"],
    summary="Validate a coupon code against a cart",
)
def validate_coupon(
    request: schemas.CouponValidateRequest,
    repo: SqlRuleRepository = Depends(get_repository),
    pricing: ResolutionEngine = Depends(get_engine),
):
    context = schemas.EvaluationContext.for_cart(request.cart, now=request.now)
    rules = repo.load_active_rules(context.now)
    coupon = rules.find_coupon(request.code)
    result = pricing.preview(request.cart, rules, coupon.code, context)

    for applied in result.applied_rules:
        if applied.rule_id == coupon.id:
            return schemas.CouponValidateResponse(
                valid=True,
                discount=applied.adjustment,
                shipping_waived=applied.shipping_waived,
                message=f"Coupon {coupon.code} applied",
            )

    reason = next((r.reason for r in result.rejected_rules if r.rule_id == coupon.id), "Coupon not applicable")
    body = schemas.CouponValidateResponse(valid=False, message=reason)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump(mode="json", by_alias=True))


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": f"{settings.APP_NAME} is running"}
