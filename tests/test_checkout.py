import pytest

from database import Database
from models import (CashierSystem, PaymentSpec, Session, CheckoutError,
                    CheckoutValidationError, STATUS_PENDING)
from pricing import DiscountSpec
from printer import PrinterError


class _FakeStore:
    def __init__(self, fail_create=False, fail_stock=False):
        self.products = {
            1: {'id': 1, 'name': "Kopi Susu", 'price': 15000, 'price_gojek': 18000},
            2: {'id': 2, 'name': "Teh Tarik", 'price': 8000},
        }
        self.fail_create = fail_create
        self.fail_stock = fail_stock
        self.created = []
        self.deducted = []

    def get_product_by_id(self, product_id):
        return self.products.get(product_id)

    def create_order(self, order, items):
        if self.fail_create:
            raise ConnectionError("network down")
        self.created.append((order, items))
        return {'id': f"order-{len(self.created):04d}-xyz", **order}

    def deduct_stock(self, order_id):
        if self.fail_stock:
            raise RuntimeError("rpc failed")
        self.deducted.append(order_id)


class _FakePrinter:
    def __init__(self, connected=True, can_connect=False, fail=False):
        self.connected = connected
        self.can_connect = can_connect
        self.fail = fail
        self.printed = []

    def is_connected(self):
        return self.connected

    def auto_connect(self):
        self.connected = self.can_connect
        return self.can_connect

    def print_text(self, text):
        if self.fail:
            raise PrinterError("paper jam")
        self.printed.append(text)


class _FakeFallback:
    def __init__(self):
        self.pages = []

    def print_html(self, html, name=None):
        self.pages.append((name, html))
        return name


def _system(store=None, printer=None, fallback=None):
    return CashierSystem(store or _FakeStore(), printer, {}, Session("Sari"), fallback)


def test_checkout_persists_deducts_prints_and_clears_cart():
    store, printer = _FakeStore(), _FakePrinter()
    system = _system(store, printer)
    system.add_product(1, 2)

    result = system.checkout("Budi", DiscountSpec.fixed(5000), PaymentSpec.cash(30000))

    order_record, item_records = store.created[0]
    assert order_record['total_amount'] == 25000
    assert order_record['discount'] == 5000
    assert order_record['change'] == 5000
    assert item_records == [{'order_id': None, 'product_id': 1, 'quantity': 2,
                             'price': 15000, 'subtotal': 30000, 'note': None}]
    assert result.order.external_order_id == "order-0001-xyz"
    assert store.deducted == ["order-0001-xyz"]
    assert result.printed
    assert result.notices == []
    assert "Pelanggan: Budi" in printer.printed[0]
    assert "Kasir: Sari" in printer.printed[0]
    assert "No: order-00" in printer.printed[0]
    assert system.cart.is_empty


def test_validation_error_keeps_cart_and_skips_store():
    store = _FakeStore()
    system = _system(store, _FakePrinter())
    system.add_product(1, 2)
    with pytest.raises(CheckoutValidationError):
        system.checkout("Budi", None, PaymentSpec.cash(10000))
    assert store.created == []
    assert len(system.cart) == 1


def test_unknown_product_is_a_validation_error():
    system = _system()
    with pytest.raises(CheckoutValidationError):
        system.add_product(99)


def test_persistence_failure_keeps_cart_for_retry():
    store, printer = _FakeStore(fail_create=True), _FakePrinter()
    system = _system(store, printer)
    system.add_product(1)

    with pytest.raises(CheckoutError) as ex:
        system.checkout("Budi", None, PaymentSpec("qris"))

    assert isinstance(ex.value.__cause__, ConnectionError)
    assert len(system.cart) == 1
    assert printer.printed == []
    assert store.deducted == []


def test_stock_failure_is_only_a_notice():
    store, printer = _FakeStore(fail_stock=True), _FakePrinter()
    system = _system(store, printer)
    system.add_product(1)

    result = system.checkout("Budi", None, PaymentSpec("qris"))

    assert result.order.external_order_id
    assert result.printed
    assert result.notices == ["Stock could not be updated for this order."]
    assert system.cart.is_empty


def test_print_failure_does_not_undo_sale():
    store = _FakeStore()
    system = _system(store, _FakePrinter(fail=True))
    system.add_product(1)

    result = system.checkout("Budi", None, PaymentSpec("qris"))

    assert len(store.created) == 1
    assert not result.printed
    assert result.notices == ["Receipt could not be printed."]
    assert system.cart.is_empty


def test_auto_connects_before_printing():
    printer = _FakePrinter(connected=False, can_connect=True)
    system = _system(printer=printer)
    system.add_product(1)
    system.checkout("Budi", None, PaymentSpec("qris"))
    assert len(printer.printed) == 1


def test_html_fallback_when_no_printer_reachable():
    fallback = _FakeFallback()
    system = _system(printer=_FakePrinter(connected=False), fallback=fallback)
    system.add_product(1)

    result = system.checkout("Budi", None, PaymentSpec("qris"))

    assert result.printed
    name, html = fallback.pages[0]
    assert name == "order-0001-xyz_PELANGGAN"
    assert "Budi" in html


def test_no_printer_and_no_fallback_is_reported():
    system = _system(printer=None)
    system.add_product(1)
    result = system.checkout("Budi", None, PaymentSpec("qris"))
    assert not result.printed
    assert result.notices == ["Receipt could not be printed."]


def test_archive_copy_carries_label_and_swallows_failure():
    printer = _FakePrinter()
    system = _system(printer=printer)
    system.add_product(1)
    result = system.checkout("Budi", None, PaymentSpec("qris"))

    assert system.print_archive_copy(result)
    assert "ARSIP" in printer.printed[1]
    assert "ARSIP" not in printer.printed[0]

    printer.fail = True
    assert system.print_archive_copy(result) is False


def test_pending_order_skips_stock_deduction():
    store = _FakeStore()
    system = _system(store, _FakePrinter())
    system.add_product(2)

    result = system.checkout("Budi", None, None)

    assert result.order.status == STATUS_PENDING
    assert store.created[0][0]['payment_method'] is None
    assert store.deducted == []
    assert "BELUM BAYAR" in system.printer.printed[0]


def test_quote_reports_cash_sufficiency():
    system = _system()
    system.add_product(1, 2)
    quote = system.quote(DiscountSpec.percentage(10), PaymentSpec.cash(20000))
    assert quote == {'subtotal': 30000, 'discount_amount': 3000, 'final_total': 27000,
                     'is_sufficient': False, 'change': 0}


def test_pay_later_order_is_repriced_for_marketplace():
    db = Database(":memory:")
    coffee = db.add_ingredient("Kopi", "gram", 1000)
    kopi = db.add_product("Kopi Susu", 15000, price_gojek=18000)
    db.set_recipe(kopi, [(coffee, 18)])
    printer = _FakePrinter()
    system = CashierSystem(db, printer, {}, Session("Sari"))
    system.add_product(kopi, 2)

    pending = system.checkout("Budi", None, None)
    order_id = pending.order.external_order_id
    assert db.get_ingredient(coffee)['stock'] == 1000

    paid = system.pay_order(order_id, DiscountSpec.fixed(6000), PaymentSpec("gojek"))

    stored = db.get_order_details(order_id)
    assert stored['order']['status'] == "completed"
    assert stored['order']['payment_method'] == "gojek"
    assert stored['order']['total_amount'] == 30000
    assert [it['price'] for it in stored['items']] == [18000]
    assert paid.order.final_total == 30000
    assert db.get_ingredient(coffee)['stock'] == 964
    assert "GOJEK" in printer.printed[-1]

    with pytest.raises(CheckoutValidationError):
        system.pay_order(order_id, None, PaymentSpec("qris"))
    db.close()


def test_cancel_restores_stock():
    db = Database(":memory:")
    milk = db.add_ingredient("Susu", "ml", 500)
    kopi = db.add_product("Kopi Susu", 15000)
    db.set_recipe(kopi, [(milk, 100)])
    system = CashierSystem(db, _FakePrinter(), {})
    system.add_product(kopi, 3)
    result = system.checkout("Budi", None, PaymentSpec("qris"))
    assert db.get_ingredient(milk)['stock'] == 200

    system.cancel_order(result.order.external_order_id)

    assert db.get_ingredient(milk)['stock'] == 500
    assert db.get_order(result.order.external_order_id)['status'] == "cancelled"
    db.close()


def test_reprint_uses_stored_order():
    db = Database(":memory:")
    kopi = db.add_product("Kopi Susu", 15000)
    printer = _FakePrinter()
    system = CashierSystem(db, printer, {})
    system.add_product(kopi, 1)
    result = system.checkout("Budi", None, PaymentSpec.cash(20000))

    assert system.reprint(result.order.external_order_id)

    reprinted = printer.printed[-1]
    assert "REPRINT" in reprinted
    assert "Kopi Susu" in reprinted
    assert "Kembalian" in reprinted
    db.close()


def test_default_copies_differ_only_in_label_line():
    printer = _FakePrinter()
    system = _system(printer=printer)
    system.add_product(1)
    result = system.checkout("Budi", None, PaymentSpec("qris"))
    system.print_archive_copy(result)

    customer, archive = (text.split("\n") for text in printer.printed)
    assert len(customer) == len(archive)
    diff = [i for i, (a, b) in enumerate(zip(customer, archive)) if a != b]
    assert len(diff) == 1
    assert customer[diff[0]].strip() == "PELANGGAN"
    assert archive[diff[0]].strip() == "ARSIP"
