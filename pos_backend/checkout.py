"""Cart arithmetic for the checkout screen and sale creation.

Everything here is pure: no session, no settings lookup. Amounts are Decimal
and every money figure is rounded half-up to the cent as soon as it is
produced, so the sum of the printed lines always equals the printed total.
"""

from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable, Optional

from pos_backend.common import ZERO, money
from pos_backend.exceptions import InsufficientPointsError, ValidationError

HUNDRED = Decimal("100")
PAYMENT_METHODS = {"cash", "card", "wallet", "gcash", "maya", "credit"}


@dataclass(frozen=True)
class CartLine:
    product_id: int
    unit_price: Decimal
    quantity: int
    discount_percent: Decimal = ZERO
    tax_percent: Decimal = ZERO


@dataclass(frozen=True)
class LineTotals:
    product_id: int
    unit_price: Decimal
    quantity: int
    gross: Decimal
    discount: Decimal
    tax: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class CartTotals:
    lines: list[LineTotals] = field(default_factory=list)
    subtotal: Decimal = ZERO
    global_discount: Decimal = ZERO
    global_tax: Decimal = ZERO
    total_before_loyalty: Decimal = ZERO
    max_redeemable: int = 0
    loyalty_points_used: int = 0
    loyalty_deduction: Decimal = ZERO
    grand_total: Decimal = ZERO

    @property
    def discount_total(self) -> Decimal:
        return sum((line.discount for line in self.lines), ZERO) + self.global_discount

    @property
    def tax_total(self) -> Decimal:
        return sum((line.tax for line in self.lines), ZERO) + self.global_tax


def _percent(value, name: str) -> Decimal:
    value = Decimal(str(value)) if value is not None else ZERO
    if value < 0 or value > HUNDRED:
        raise ValidationError(f"{name} must be between 0 and 100")
    return value


def compute_line(line: CartLine) -> LineTotals:
    if line.quantity is None or line.quantity < 1:
        raise ValidationError("quantity must be at least 1")
    unit_price = Decimal(str(line.unit_price))
    if unit_price < 0:
        raise ValidationError("unit price cannot be negative")
    discount_percent = _percent(line.discount_percent, "discount percent")
    tax_percent = _percent(line.tax_percent, "tax percent")

    gross = money(unit_price * line.quantity)
    discount = money(gross * discount_percent / HUNDRED)
    tax = money((gross - discount) * tax_percent / HUNDRED)
    return LineTotals(
        product_id=line.product_id,
        unit_price=money(unit_price),
        quantity=line.quantity,
        gross=gross,
        discount=discount,
        tax=tax,
        line_total=gross - discount + tax,
    )


def max_redeemable_points(points_available: int, total_before_loyalty: Decimal) -> int:
    """One point pays for one currency unit; only whole units can be paid."""
    whole_units = int(money(total_before_loyalty).to_integral_value(rounding=ROUND_FLOOR))
    return max(0, min(points_available or 0, whole_units))


def compute_cart(
    lines: Iterable[CartLine],
    discount_percent=ZERO,
    tax_percent=ZERO,
    points_available: int = 0,
    points_to_redeem: int = 0,
) -> CartTotals:
    line_totals = [compute_line(line) for line in lines]
    global_discount_percent = _percent(discount_percent, "discount percent")
    global_tax_percent = _percent(tax_percent, "tax percent")

    subtotal = sum((line.line_total for line in line_totals), ZERO)
    global_discount = money(subtotal * global_discount_percent / HUNDRED)
    global_tax = money((subtotal - global_discount) * global_tax_percent / HUNDRED)
    total_before_loyalty = subtotal - global_discount + global_tax

    points_to_redeem = points_to_redeem or 0
    if points_to_redeem < 0:
        raise ValidationError("points to redeem cannot be negative")
    max_redeemable = max_redeemable_points(points_available, total_before_loyalty)
    if points_to_redeem > max_redeemable:
        raise InsufficientPointsError(
            f"cannot redeem {points_to_redeem} points, at most {max_redeemable} allowed"
        )
    loyalty_deduction = money(points_to_redeem)
    grand_total = max(ZERO, total_before_loyalty - loyalty_deduction)

    return CartTotals(
        lines=line_totals,
        subtotal=subtotal,
        global_discount=global_discount,
        global_tax=global_tax,
        total_before_loyalty=total_before_loyalty,
        max_redeemable=max_redeemable,
        loyalty_points_used=points_to_redeem,
        loyalty_deduction=loyalty_deduction,
        grand_total=money(grand_total),
    )


def compute_change(
    grand_total: Decimal, payment_method: str, amount_tendered: Optional[Decimal] = None
) -> tuple[Decimal, Decimal]:
    """Return (amount_paid, change_due) for a tender."""
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"unsupported payment method {payment_method}")
    grand_total = money(grand_total)
    if payment_method != "cash":
        return grand_total, ZERO
    if amount_tendered is None:
        raise ValidationError("cash tender requires the amount tendered")
    tendered = money(amount_tendered)
    if tendered < grand_total:
        raise ValidationError(
            f"amount tendered {tendered} is less than the total due {grand_total}"
        )
    return tendered, tendered - grand_total


def build_receipt(sale, company: str) -> dict:
    lines = []
    for item in sale.items:
        lines.append(
            {
                "product_id": item.product_id,
                "sku": item.product.sku if item.product else None,
                "name": item.product.name if item.product else None,
                "quantity": item.quantity,
                "unit_price": float(money(item.unit_price)),
                "discount": float(money(item.discount)),
                "tax": float(money(item.tax)),
                "line_total": float(money(item.line_total)),
            }
        )
    return {
        "company_name": company,
        "reference_no": sale.reference_no,
        "status": sale.status,
        "created_at": sale.created_at.isoformat() if sale.created_at else None,
        "paid_at": sale.paid_at.isoformat() if sale.paid_at else None,
        "customer": (
            {"customer_id": sale.customer.id, "name": sale.customer.name}
            if sale.customer
            else None
        ),
        "lines": lines,
        "subtotal": float(money(sale.subtotal)),
        "discount_amount": float(money(sale.discount_amount)),
        "tax_amount": float(money(sale.tax_amount)),
        "loyalty_redeemed": sale.loyalty_redeemed,
        "points_earned": sale.points_earned,
        "total_amount": float(money(sale.total_amount)),
        "payment_method": sale.payment_method,
        "amount_paid": float(money(sale.amount_paid)) if sale.amount_paid is not None else None,
        "change_due": float(money(sale.change_due)) if sale.change_due is not None else None,
    }
