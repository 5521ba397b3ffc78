import sqlite3

import pytest

from database import Database


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


def _order(created_at, total=15000, status="completed", method="cash"):
    return {
        'customer_name': "Budi", 'total_amount': total, 'subtotal': total,
        'status': status, 'payment_method': method, 'created_at': created_at,
    }


def _item(product_id, qty=1, price=15000):
    return {'product_id': product_id, 'quantity': qty, 'price': price,
            'subtotal': price * qty, 'note': None}


def test_create_order_stores_order_and_items(db):
    kopi = db.add_product("Kopi Susu", 15000)
    stored = db.create_order(_order("2026-01-02T09:30:00", 30000), [_item(kopi, 2)])

    assert len(stored['id']) == 32
    assert stored['discount'] == 0
    assert stored['discount_type'] == "nominal"
    details = db.get_order_details(stored['id'])
    assert details['items'][0]['name'] == "Kopi Susu"
    assert details['items'][0]['subtotal'] == 30000


def test_create_order_rolls_back_when_items_fail(db):
    with pytest.raises(sqlite3.IntegrityError):
        db.create_order(_order("2026-01-02T09:30:00"), [_item(999)])
    rows, count = db.list_orders()
    assert count == 0
    assert rows == []


def test_deduct_stock_once_per_order(db):
    coffee = db.add_ingredient("Kopi", "gram", 1000)
    milk = db.add_ingredient("Susu", "ml", 1000)
    kopi = db.add_product("Kopi Susu", 15000)
    latte = db.add_product("Latte", 20000)
    db.set_recipe(kopi, [(coffee, 18), (milk, 100)])
    db.set_recipe(latte, [(coffee, 18), (milk, 150)])
    order = db.create_order(_order("2026-01-02T09:30:00"), [_item(kopi, 2), _item(latte, 1, 20000)])

    db.deduct_stock(order['id'])
    db.deduct_stock(order['id'])

    assert db.get_ingredient(coffee)['stock'] == 1000 - 54
    assert db.get_ingredient(milk)['stock'] == 1000 - 350

    db.restore_order_stock(order['id'])
    db.restore_order_stock(order['id'])
    assert db.get_ingredient(coffee)['stock'] == 1000
    assert db.get_ingredient(milk)['stock'] == 1000


def test_deduct_stock_for_unknown_order_raises(db):
    with pytest.raises(LookupError):
        db.deduct_stock("missing")


def test_list_orders_filters_and_paginates(db):
    db.create_order(_order("2026-01-01T08:00:00"), [])
    db.create_order(_order("2026-01-02T08:00:00", method="qris"), [])
    db.create_order(_order("2026-01-03T08:00:00", status="pending", method=None), [])

    rows, count = db.list_orders(page=1, limit=2)
    assert count == 3
    assert [r['created_at'] for r in rows] == ["2026-01-03T08:00:00", "2026-01-02T08:00:00"]

    rows, _ = db.list_orders(page=2, limit=2)
    assert [r['created_at'] for r in rows] == ["2026-01-01T08:00:00"]

    rows, count = db.list_orders(date_from="2026-01-02", payment_method="qris")
    assert count == 1

    rows, count = db.list_orders(status="pending")
    assert rows[0]['payment_method'] is None


def test_pay_order_only_settles_pending_orders(db):
    kopi = db.add_product("Kopi Susu", 15000)
    order = db.create_order(_order("2026-01-02T09:30:00", status="completed"), [_item(kopi)])
    update = {'status': "completed", 'payment_method': "qris", 'subtotal': 15000,
              'total_amount': 15000, 'discount': 0, 'discount_type': "nominal",
              'discount_rate': 0}
    with pytest.raises(LookupError):
        db.pay_order(order['id'], update, [_item(kopi)])


def test_categories_and_products(db):
    drinks = db.add_category("Minuman")
    db.add_product("Teh", 8000, drinks, price_grab=9000)
    db.add_product("Americano", 18000)

    products = db.get_products()
    assert [p['name'] for p in products] == ["Americano", "Teh"]
    assert products[1]['category'] == "Minuman"
    assert products[1]['price_grab'] == 9000
    assert db.get_categories() == [{'id': drinks, 'name': "Minuman"}]
    assert [p['name'] for p in db.search_products("me")] == ["Americano"]


def test_bare_end_date_includes_that_whole_day(db):
    kopi = db.add_product("Kopi Susu", 15000)
    db.create_order(_order("2026-01-31T10:00:00"), [_item(kopi)])
    db.create_order(_order("2026-02-01T00:00:00"), [_item(kopi)])

    rows, count = db.list_orders(date_from="2026-01-01", date_to="2026-01-31")
    assert count == 1
    assert rows[0]['created_at'] == "2026-01-31T10:00:00"
    assert len(db.list_sold_items("2026-01-01", "2026-01-31")) == 1

    _, count = db.list_orders(date_to="2026-01-31T09:00:00")
    assert count == 0
