# models.py
import logging
from datetime import datetime

from pricing import (DiscountSpec, compute_totals, cash_settlement, round_currency,
                     safe_amount, PERCENTAGE)
from printer import PrinterError
from receipt import ShopInfo, format_receipt_text, render_receipt_html

logger = logging.getLogger("kopi_pos.Checkout")

CASH = "cash"
QRIS = "qris"
TRANSFER = "transfer"
GOJEK = "gojek"
GRAB = "grab"
SHOPEE = "shopee"

MARKETPLACE_CHANNELS = (GOJEK, GRAB, SHOPEE)
PAYMENT_METHODS = (CASH, QRIS, TRANSFER) + MARKETPLACE_CHANNELS

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

ROLES = ("cashier", "owner", "captain")


class CheckoutValidationError(ValueError):
    """Recoverable input problem; the caller re-prompts and keeps the cart."""


class CheckoutError(Exception):
    """The order could not be persisted. Nothing was committed."""


class Session:
    """Who is operating the till. Role comes from an explicit claim."""
    def __init__(self, user_name: str, role: str = "cashier"):
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        self.user_name = user_name
        self.role = role

    @classmethod
    def from_claims(cls, claims: dict):
        """Build a session from auth claims ({'name': ..., 'role': ...})."""
        role = claims.get('role')
        if not role:
            raise ValueError("Claims carry no role")
        return cls(claims.get('name') or claims.get('email') or "-", role)

    @property
    def is_owner(self):
        return self.role == "owner"


class Product:
    """Represents a product fetched from the store."""
    def __init__(self, row):
        row = dict(row)
        self.id = row['id']
        self.name = row['name']
        self.price = int(row['price'])
        self.category_id = row.get('category_id')
        self.channel_prices = {}
        for channel in MARKETPLACE_CHANNELS:
            value = row.get(f"price_{channel}")
            if value is not None:
                self.channel_prices[channel] = int(value)

    def price_for(self, method=None) -> int:
        """Outlet price, or the marketplace price list entry when one exists."""
        if method in MARKETPLACE_CHANNELS:
            return self.channel_prices.get(method, self.price)
        return self.price


class LineItem:
    """One product line of a cart or an order."""
    def __init__(self, product_id, name: str, unit_price: int, quantity: int,
                 note: str = None, channel_prices: dict = None):
        if quantity <= 0:
            raise ValueError("Quantity must be a positive integer.")
        self.product_id = product_id
        self.name = name
        self.unit_price = unit_price
        self.quantity = quantity
        self.note = note or None
        self.channel_prices = dict(channel_prices or {})

    @classmethod
    def from_product(cls, product: Product, quantity: int = 1, note: str = None):
        return cls(product.id, product.name, product.price, quantity, note,
                   product.channel_prices)

    @property
    def subtotal(self) -> int:
        return self.unit_price * self.quantity

    def priced_for(self, method=None):
        """Copy of this line priced for the given payment method."""
        unit_price = self.unit_price
        if method in MARKETPLACE_CHANNELS:
            unit_price = self.channel_prices.get(method, self.unit_price)
        return LineItem(self.product_id, self.name, unit_price, self.quantity, self.note)

    def to_record(self, order_id=None):
        return {
            'order_id': order_id,
            'product_id': self.product_id,
            'quantity': self.quantity,
            'price': self.unit_price,
            'subtotal': self.subtotal,
            'note': self.note,
        }


class Cart:
    """Holds current sale items, one line per product."""
    def __init__(self):
        self.items = []

    def __len__(self):
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    @property
    def is_empty(self):
        return not self.items

    def find(self, product_id):
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def add_item(self, product: Product, qty: int = 1):
        # merge if same product
        existing = self.find(product.id)
        if existing:
            return self.set_quantity(product.id, existing.quantity + qty)
        if qty <= 0:
            raise CheckoutValidationError("Quantity must be a positive integer.")
        item = LineItem.from_product(product, qty)
        self.items.append(item)
        return item

    def update_quantity(self, product_id, delta: int):
        """Change quantity by delta; a line reaching zero leaves the cart."""
        item = self.find(product_id)
        if item is None:
            return None
        return self.set_quantity(product_id, item.quantity + delta)

    def set_quantity(self, product_id, qty: int):
        item = self.find(product_id)
        if item is None:
            return None
        if qty <= 0:
            self.remove_item(product_id)
            return None
        item.quantity = qty
        return item

    def set_note(self, product_id, note: str):
        item = self.find(product_id)
        if item is not None:
            item.note = (note or "").strip() or None
        return item

    def remove_item(self, product_id):
        self.items = [item for item in self.items if item.product_id != product_id]

    def clear(self):
        self.items = []

    @property
    def subtotal(self):
        return sum(item.subtotal for item in self.items)


class PaymentSpec:
    def __init__(self, method: str, cash_tendered=None):
        if method not in PAYMENT_METHODS:
            raise CheckoutValidationError(f"Unknown payment method: {method}")
        self.method = method
        self.cash_tendered = cash_tendered if method == CASH else None

    @classmethod
    def cash(cls, tendered):
        return cls(CASH, tendered)

    @property
    def is_marketplace(self):
        return self.method in MARKETPLACE_CHANNELS


class AssembledOrder:
    """
    An order ready for hand-off to the store.
    Discount fields are always present; a pending order has no payment method.
    """
    def __init__(self, customer_name, line_items, subtotal, discount, discount_amount,
                 final_total, payment_method=None, cash_tendered=None, change=0,
                 note=None, created_at=None, cashier=None, status=STATUS_COMPLETED,
                 external_order_id=None):
        self.customer_name = customer_name
        self.line_items = line_items
        self.subtotal = subtotal
        self.discount = discount
        self.discount_amount = discount_amount
        self.final_total = final_total
        self.payment_method = payment_method
        self.cash_tendered = cash_tendered
        self.change = change
        self.note = note
        self.created_at = created_at or datetime.now()
        self.cashier = cashier
        self.status = status
        self.external_order_id = external_order_id

    @property
    def is_cash(self):
        return self.payment_method == CASH

    @property
    def is_paid(self):
        return self.status == STATUS_COMPLETED

    def to_record(self):
        """Flat order row as the store persists it."""
        return {
            'customer_name': self.customer_name,
            'note': self.note,
            'subtotal': self.subtotal,
            'total_amount': self.final_total,
            'status': self.status,
            'payment_method': self.payment_method,
            'discount': self.discount_amount,
            'discount_type': 'percent' if self.discount.type == PERCENTAGE else 'nominal',
            'discount_rate': self.discount.rate,
            'cash_tendered': self.cash_tendered,
            'change': self.change,
            'cashier': self.cashier,
            'created_at': self.created_at.isoformat(timespec='seconds'),
        }


def assemble_order(cart, discount: DiscountSpec = None, payment: PaymentSpec = None,
                   customer_name: str = "", note: str = None, session: Session = None,
                   created_at: datetime = None):
    """
    Turn a cart into an AssembledOrder plus its flat line items.
    Raises CheckoutValidationError for an empty cart, a blank customer
    name or insufficient cash. Passing no payment builds a pending order.
    """
    items = list(cart)
    if not items:
        raise CheckoutValidationError("Cart is empty.")
    customer_name = (customer_name or "").strip()
    if not customer_name:
        raise CheckoutValidationError("Customer name is required.")

    discount = discount or DiscountSpec.none()
    method = payment.method if payment else None
    line_items = [item.priced_for(method) for item in items]
    totals = compute_totals(line_items, discount)

    cash_tendered = None
    change = 0
    if method == CASH:
        is_sufficient, change = cash_settlement(totals.final_total, payment.cash_tendered)
        if not is_sufficient:
            raise CheckoutValidationError("Cash tendered is less than the total.")
        cash_tendered = round_currency(safe_amount(payment.cash_tendered))

    order = AssembledOrder(
        customer_name=customer_name,
        line_items=line_items,
        subtotal=totals.subtotal,
        discount=discount,
        discount_amount=totals.discount_amount,
        final_total=totals.final_total,
        payment_method=method,
        cash_tendered=cash_tendered,
        change=change,
        note=(note or "").strip() or None,
        created_at=created_at,
        cashier=session.user_name if session else None,
        status=STATUS_COMPLETED if payment else STATUS_PENDING,
    )
    return order, line_items


def order_from_details(details: dict):
    """Rebuild an AssembledOrder from a stored order, e.g. for a reprint."""
    row = details['order']
    items = [
        LineItem(it['product_id'], it.get('name') or "Unknown", int(it['price']),
                 int(it['quantity']), it.get('note'))
        for it in details['items']
    ]
    if row.get('discount_type') == 'percent':
        discount = DiscountSpec.percentage(row.get('discount_rate') or 0)
    else:
        discount = DiscountSpec.fixed(row.get('discount') or 0)
    order = AssembledOrder(
        customer_name=row['customer_name'],
        line_items=items,
        subtotal=sum(item.subtotal for item in items),
        discount=discount,
        discount_amount=int(row.get('discount') or 0),
        final_total=int(row['total_amount']),
        payment_method=row.get('payment_method'),
        cash_tendered=row.get('cash_tendered'),
        change=int(row.get('change') or 0),
        note=row.get('note'),
        created_at=datetime.fromisoformat(row['created_at']),
        cashier=row.get('cashier'),
        status=row.get('status', STATUS_COMPLETED),
        external_order_id=row['id'],
    )
    return order, items


class CheckoutResult:
    def __init__(self, order, line_items):
        self.order = order
        self.line_items = line_items
        self.notices = []
        self.printed = False


class CashierSystem:
    """
    Coordinates cart management, checkout, persistence and printing.
    The store, printer and fallback printer are injected collaborators.
    """
    def __init__(self, db, printer=None, config=None, session: Session = None,
                 fallback=None):
        self.db = db
        self.printer = printer
        self.fallback = fallback
        self.config = config or {}
        self.session = session
        self.shop = ShopInfo.from_config(self.config)
        self.cart = Cart()
        receipt_cfg = self.config.get('receipt', {})
        labels = receipt_cfg.get('copy_labels', ["PELANGGAN", "ARSIP"])
        self.customer_label = labels[0] if labels else ""
        self.archive_label = labels[1] if len(labels) > 1 else "ARSIP"

    def add_product(self, product_id, qty: int = 1):
        """
        Fetch product by id and add it to the cart.
        Raises CheckoutValidationError if not found.
        """
        row = self.db.get_product_by_id(product_id)
        if not row:
            raise CheckoutValidationError("Product not found.")
        prod = Product(row)
        self.cart.add_item(prod, qty)
        return prod, qty

    def quote(self, discount: DiscountSpec = None, payment: PaymentSpec = None):
        """Totals for the current cart without validating or persisting."""
        method = payment.method if payment else None
        totals = compute_totals([item.priced_for(method) for item in self.cart], discount)
        quote = totals.as_dict()
        if payment and payment.method == CASH:
            quote['is_sufficient'], quote['change'] = cash_settlement(
                totals.final_total, payment.cash_tendered)
        return quote

    def checkout(self, customer_name: str, discount: DiscountSpec = None,
                 payment: PaymentSpec = None, note: str = None):
        """
        Assemble, persist, deduct stock and print the customer copy.
        Validation and persistence failures raise and keep the cart;
        stock and print failures only add notices to the result.
        """
        order, line_items = assemble_order(
            self.cart, discount, payment, customer_name, note, self.session)

        try:
            persisted = self.db.create_order(order.to_record(),
                                             [item.to_record() for item in line_items])
        except Exception as e:
            logger.error(f"Failed to persist order for {order.customer_name}: {e}")
            raise CheckoutError(f"Order could not be saved: {e}") from e
        order.external_order_id = persisted['id']
        logger.info(f"Order {order.external_order_id} saved, total {order.final_total}")

        result = CheckoutResult(order, line_items)
        self.cart.clear()

        if order.is_paid:
            self._deduct_stock(result)
        result.printed = self._print(result, self.customer_label)
        return result

    def pay_order(self, order_id, discount: DiscountSpec = None, payment: PaymentSpec = None):
        """Settle a pending order, re-pricing it for the chosen method."""
        if payment is None:
            raise CheckoutValidationError("Payment method is required.")
        details = self.db.get_order_details(order_id)
        if not details:
            raise CheckoutValidationError("Order not found.")
        if details['order']['status'] != STATUS_PENDING:
            raise CheckoutValidationError("Order is not awaiting payment.")

        pending, items = order_from_details(details)
        cart = Cart()
        for item in items:
            row = self.db.get_product_by_id(item.product_id)
            channel_prices = Product(row).channel_prices if row else {}
            cart.items.append(LineItem(item.product_id, item.name, item.unit_price,
                                       item.quantity, item.note, channel_prices))
        order, line_items = assemble_order(
            cart, discount, payment, pending.customer_name, pending.note,
            self.session, created_at=pending.created_at)
        order.external_order_id = order_id

        try:
            self.db.pay_order(order_id, order.to_record(),
                              [item.to_record(order_id) for item in line_items])
        except Exception as e:
            logger.error(f"Failed to record payment for order {order_id}: {e}")
            raise CheckoutError(f"Payment could not be saved: {e}") from e
        logger.info(f"Order {order_id} paid by {order.payment_method}")

        result = CheckoutResult(order, line_items)
        self._deduct_stock(result)
        result.printed = self._print(result, self.customer_label)
        return result

    def cancel_order(self, order_id):
        """Cancel an order and put its ingredients back in stock."""
        self.db.cancel_order(order_id)
        logger.info(f"Order {order_id} cancelled")

    def print_archive_copy(self, result: CheckoutResult):
        """Second copy for the shop. Best effort: failures are only logged."""
        try:
            return self._send(result, self.archive_label)
        except Exception as e:
            logger.warning(f"Archive copy for order {result.order.external_order_id} failed: {e}")
            return False

    def reprint(self, order_id, label: str = "REPRINT"):
        details = self.db.get_order_details(order_id)
        if not details:
            raise CheckoutValidationError("Order not found.")
        order, items = order_from_details(details)
        return self._send(CheckoutResult(order, items), label)

    def _deduct_stock(self, result):
        order_id = result.order.external_order_id
        try:
            self.db.deduct_stock(order_id)
        except Exception as e:
            logger.error(f"Stock deduction failed for order {order_id}: {e}")
            result.notices.append("Stock could not be updated for this order.")

    def _print(self, result, label):
        try:
            return self._send(result, label)
        except Exception as e:
            logger.error(f"Printing order {result.order.external_order_id} failed: {e}")
            result.notices.append("Receipt could not be printed.")
            return False

    def _send(self, result, label):
        """Thermal printer first, the HTML fallback when none is reachable."""
        order, items = result.order, result.line_items
        if self.printer is not None and (self.printer.is_connected() or self.printer.auto_connect()):
            self.printer.print_text(format_receipt_text(order, items, self.shop, label))
            return True
        if self.fallback is not None:
            self.fallback.print_html(render_receipt_html(order, items, self.shop, label),
                                     name=f"{order.external_order_id}{'_' + label if label else ''}")
            return True
        raise PrinterError("No printer connected and no fallback configured.")
