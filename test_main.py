"""
test_main.py
============
API tests for the Pricing Rules API.

Covers:
- CRUD operations for coupons, promotions and combos
- Preview pricing: caps, combos, stacking, rejection reasons
- Finalize: usage counters, audit trail, usage and per-user limits
- Coupon validation endpoint
- Error cases: unknown code, malformed rule, rule not found
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from main import app, get_db

# ── Throw-away SQLite file for tests ──
TEST_DATABASE_URL = "sqlite:///./test_pricing.db"

test_engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_db():
    """Create fresh tables before each test and drop them after."""
    Base.metadata.create_all(bind=test_engine)
    app.dependency_overrides[get_db] = override_get_db
    yield
    Base.metadata.drop_all(bind=test_engine)
    app.dependency_overrides.clear()


client = TestClient(app)


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

def create_coupon(code="SAVE20", discount_type="PERCENTAGE", discount_value=20, **extra):
    body = {
        "kind": "COUPON",
        "name": f"{code} coupon",
        "code": code,
        "discountType": discount_type,
        "discountValue": discount_value,
    }
    body.update(extra)
    return client.post("/rules", json=body)


def create_promotion(name="Sitewide sale", discount_type="PERCENTAGE", discount_value=10, **extra):
    body = {
        "kind": "PROMOTION",
        "name": name,
        "discountType": discount_type,
        "discountValue": discount_value,
    }
    body.update(extra)
    return client.post("/rules", json=body)


def create_bogo_combo(product_id="P", buy=2, get=1, get_discount=50):
    return client.post("/rules", json={
        "kind": "COMBO",
        "name": f"Buy {buy} get {get}",
        "comboType": "BOGO",
        "items": [{"productId": product_id}],
        "buyQuantity": buy,
        "getQuantity": get,
        "getDiscount": get_discount,
    })


def line(product_id="P", quantity=1, unit_price=100, categories=()):
    return {"productId": product_id, "quantity": quantity, "unitPrice": unit_price, "categoryIds": list(categories)}


def cart(*lines, customer_id=None, first_order=False):
    return {"lines": list(lines), "customerId": customer_id, "isFirstOrder": first_order}


def preview(cart_body, coupon_code=None):
    return client.post("/pricing/preview", json={"cart": cart_body, "couponCode": coupon_code})


def finalize(cart_body, order_id, coupon_code=None):
    return client.post("/pricing/finalize", json={"cart": cart_body, "couponCode": coupon_code, "orderId": order_id})


def rejection(result, rule_id):
    return next(r["reason"] for r in result["rejectedRules"] if r["ruleId"] == rule_id)


# ══════════════════════════════════════════════
#  Rule CRUD
# ══════════════════════════════════════════════

class TestRuleCRUD:

    def test_create_coupon(self):
        res = create_coupon(code="  save20 ")
        assert res.status_code == 201
        data = res.json()
        assert data["id"].startswith("cpn-")
        assert data["kind"] == "COUPON"
        assert data["code"] == "SAVE20"
        assert data["usageCount"] == 0
        assert data["status"] == "ACTIVE"

    def test_create_promotion_and_combo_ids(self):
        assert create_promotion().json()["id"].startswith("promo-")
        assert create_bogo_combo().json()["id"].startswith("combo-")

    def test_duplicate_code_rejected(self):
        create_coupon(code="SAVE20")
        res = create_coupon(code="save20")
        assert res.status_code == 422
        assert res.json()["detail"] == "Coupon code already exists"

    def test_percentage_over_100_rejected(self):
        res = create_coupon(discount_value=120)
        assert res.status_code == 422
        assert "between 0 and 100" in res.json()["detail"]

    def test_end_before_start_rejected(self):
        res = create_coupon(startDate="2030-02-01T00:00:00Z", endDate="2030-01-01T00:00:00Z")
        assert res.status_code == 422

    def test_missing_kind_rejected(self):
        res = client.post("/rules", json={"name": "Sale", "discountType": "PERCENTAGE", "discountValue": 10})
        assert res.status_code == 422
        assert res.json()["detail"][0]["type"] == "union_tag_not_found"
        assert client.get("/rules").json() == []

    def test_unknown_kind_rejected(self):
        res = client.post("/rules", json={
            "kind": "VOUCHER", "name": "Sale", "discountType": "PERCENTAGE", "discountValue": 10,
        })
        assert res.status_code == 422
        assert res.json()["detail"][0]["type"] == "union_tag_invalid"

    def test_list_rules_by_kind(self):
        create_coupon()
        create_promotion()
        create_bogo_combo()
        assert len(client.get("/rules").json()) == 3
        promotions = client.get("/rules", params={"kind": "PROMOTION"}).json()
        assert [p["kind"] for p in promotions] == ["PROMOTION"]

    def test_get_rule_not_found(self):
        res = client.get("/rules/cpn-missing")
        assert res.status_code == 404

    def test_update_rule(self):
        rule_id = create_coupon().json()["id"]
        res = client.put(f"/rules/{rule_id}", json={
            "kind": "COUPON", "name": "Bigger", "code": "SAVE20",
            "discountType": "PERCENTAGE", "discountValue": 30,
        })
        assert res.status_code == 200
        assert res.json()["discountValue"] == 30
        assert res.json()["id"] == rule_id

    def test_update_cannot_change_kind(self):
        rule_id = create_coupon().json()["id"]
        res = client.put(f"/rules/{rule_id}", json={
            "kind": "PROMOTION", "name": "Nope", "discountType": "FIXED", "discountValue": 5,
        })
        assert res.status_code == 422

    def test_delete_is_soft_and_frees_code(self):
        rule_id = create_coupon().json()["id"]
        assert client.delete(f"/rules/{rule_id}").status_code == 204
        assert client.get(f"/rules/{rule_id}").status_code == 404
        assert client.get("/rules").json() == []
        assert create_coupon().status_code == 201

    def test_delete_not_found(self):
        assert client.delete("/rules/cpn-missing").status_code == 404


# ══════════════════════════════════════════════
#  Preview
# ══════════════════════════════════════════════

class TestPreview:

    def test_percentage_capped(self):
        create_coupon(code="CAP", discount_value=20, maxDiscount=150)
        res = preview(cart(line(quantity=10, unit_price=100)), "cap")
        assert res.status_code == 200
        data = res.json()
        assert data["totalDiscount"] == 150
        assert data["finalTotal"] == 850
        assert data["appliedRules"][0]["adjustment"] == 150
        assert data["appliedRules"][0]["ruleKind"] == "COUPON"

    def test_unknown_code(self):
        res = preview(cart(line()), "NOPE")
        assert res.status_code == 400
        assert res.json()["detail"] == "Invalid coupon code"

    def test_expired_coupon_rejected(self):
        rule_id = create_coupon(code="OLD", endDate="2020-01-01T00:00:00Z").json()["id"]
        data = preview(cart(line()), "OLD").json()
        assert data["totalDiscount"] == 0
        assert data["appliedRules"] == []
        assert rejection(data, rule_id) == "expired"

    def test_promotion_applies_without_code(self):
        create_promotion(discount_type="FIXED", discount_value=15)
        data = preview(cart(line(unit_price=100))).json()
        assert data["totalDiscount"] == 15
        assert data["finalTotal"] == 85

    def test_bogo_combo(self):
        create_bogo_combo(product_id="P", buy=2, get=1, get_discount=50)
        data = preview(cart(line("P", quantity=5, unit_price=100))).json()
        assert data["totalDiscount"] == 100
        assert data["appliedRules"][0]["ruleKind"] == "COMBO"

    def test_stackable_promotion_with_coupon(self):
        promo_id = create_promotion(discount_type="FIXED", discount_value=10, stackable=True).json()["id"]
        coupon_id = create_coupon(code="TEN", discount_type="FIXED", discount_value=10).json()["id"]
        data = preview(cart(line(unit_price=100)), "TEN").json()
        assert [a["ruleId"] for a in data["appliedRules"]] == [promo_id, coupon_id]
        assert data["totalDiscount"] == 20

    def test_free_shipping(self):
        create_coupon(code="SHIP", discount_type="FREE_SHIPPING", discount_value=0)
        data = preview(cart(line()), "SHIP").json()
        assert data["shippingWaived"] is True
        assert data["totalDiscount"] == 0

    def test_sub_cent_price_rejected(self):
        create_promotion(discount_value=100)
        res = preview(cart(line("a", unit_price="0.005"), line("b", unit_price="0.005")))
        assert res.status_code == 422

    def test_preview_does_not_consume_usage(self):
        rule_id = create_coupon(usageLimit=1).json()["id"]
        preview(cart(line()), "SAVE20")
        preview(cart(line()), "SAVE20")
        assert client.get(f"/rules/{rule_id}").json()["usageCount"] == 0


# ══════════════════════════════════════════════
#  Finalize
# ══════════════════════════════════════════════

class TestFinalize:

    def test_finalize_records_usage(self):
        rule_id = create_coupon().json()["id"]
        res = finalize(cart(line(unit_price=100), customer_id="u1"), "order-1", "SAVE20")
        assert res.status_code == 200
        data = res.json()
        assert data["totalDiscount"] == 20
        assert data["usageRecords"][0]["orderId"] == "order-1"
        assert data["usageRecords"][0]["userId"] == "u1"

        assert client.get(f"/rules/{rule_id}").json()["usageCount"] == 1
        usage = client.get(f"/rules/{rule_id}/usage").json()
        assert [u["orderId"] for u in usage] == ["order-1"]
        assert usage[0]["discountApplied"] == 20

    def test_usage_limit_enforced(self):
        rule_id = create_coupon(usageLimit=1).json()["id"]
        assert finalize(cart(line()), "order-1", "SAVE20").json()["totalDiscount"] == 20

        data = finalize(cart(line()), "order-2", "SAVE20").json()
        assert data["totalDiscount"] == 0
        assert rejection(data, rule_id) == "usage limit reached"
        assert client.get(f"/rules/{rule_id}").json()["usageCount"] == 1

    def test_per_user_limit(self):
        rule_id = create_coupon(usageLimit=10, perUserLimit=1).json()["id"]
        assert finalize(cart(line(), customer_id="u1"), "order-1", "SAVE20").json()["totalDiscount"] == 20

        again = finalize(cart(line(), customer_id="u1"), "order-2", "SAVE20").json()
        assert again["totalDiscount"] == 0
        assert rejection(again, rule_id) == "per-user limit reached"

        other = finalize(cart(line(), customer_id="u2"), "order-3", "SAVE20").json()
        assert other["totalDiscount"] == 20

    def test_per_user_limit_needs_customer(self):
        rule_id = create_coupon(perUserLimit=1).json()["id"]
        data = finalize(cart(line()), "order-1", "SAVE20").json()
        assert rejection(data, rule_id) == "sign-in required"

    def test_usage_endpoint_not_found(self):
        assert client.get("/rules/cpn-missing/usage").status_code == 404


# ══════════════════════════════════════════════
#  Coupon validation
# ══════════════════════════════════════════════

class TestValidateCoupon:

    def test_valid_coupon(self):
        create_coupon(code="CAP", discount_value=20, maxDiscount=150)
        res = client.post("/coupons/validate", json={"code": "cap", "cart": cart(line(quantity=10, unit_price=100))})
        assert res.status_code == 200
        data = res.json()
        assert data["valid"] is True
        assert data["discount"] == 150

    def test_conditions_not_met(self):
        create_coupon(code="BIG", minOrderAmount=500)
        res = client.post("/coupons/validate", json={"code": "BIG", "cart": cart(line(unit_price=100))})
        assert res.status_code == 400
        data = res.json()
        assert data["valid"] is False
        assert data["message"] == "minimum order amount not met"

    def test_unknown_code(self):
        res = client.post("/coupons/validate", json={"code": "NOPE", "cart": cart(line())})
        assert res.status_code == 400
        assert res.json()["detail"] == "Invalid coupon code"


def test_health():
    res = client.get("/")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
