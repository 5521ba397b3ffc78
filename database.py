# database.py
import uuid
import logging
import sqlite3
from datetime import datetime

logger = logging.getLogger("kopi_pos.Database")

ORDER_COLUMNS = (
    'customer_name', 'note', 'subtotal', 'total_amount', 'status', 'payment_method',
    'discount', 'discount_type', 'discount_rate', 'cash_tendered', 'change', 'cashier',
    'created_at',
)


def _upper_bound(column, date_to):
    """Inclusive upper bound; a bare YYYY-MM-DD covers that whole day."""
    if len(str(date_to)) == 10:
        return f"date({column}) <= ?"
    return f"{column} <= ?"


class Database:
    """
    SQLite store for the menu, recipes, ingredients and orders.
    Implements the persistence calls the checkout flow depends on.
    """
    def __init__(self, db_name: str = "pos.db"):
        self.conn = sqlite3.connect(db_name)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()

    def _create_tables(self):
        cur = self.conn.cursor()
        cur.execute("""
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL
        )
        """)
        # Marketplace price columns fall back to price when NULL
        cur.execute("""
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            price INTEGER NOT NULL,
            price_gojek INTEGER,
            price_grab INTEGER,
            price_shopee INTEGER,
            category_id INTEGER REFERENCES categories(id),
            description TEXT
        )
        """)
        cur.execute("""
        CREATE TABLE IF NOT EXISTS ingredients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            unit TEXT,
            stock REAL NOT NULL DEFAULT 0
        )
        """)
        # Recipe: how much of each ingredient one unit of a product uses
        cur.execute("""
        CREATE TABLE IF NOT EXISTS product_ingredients (
            product_id INTEGER REFERENCES products(id) ON DELETE CASCADE,
            ingredient_id INTEGER REFERENCES ingredients(id),
            quantity REAL NOT NULL,
            PRIMARY KEY (product_id, ingredient_id)
        )
        """)
        cur.execute("""
        CREATE TABLE IF NOT EXISTS orders (
            id TEXT PRIMARY KEY,
            customer_name TEXT NOT NULL,
            note TEXT,
            subtotal INTEGER NOT NULL DEFAULT 0,
            total_amount INTEGER NOT NULL,
            status TEXT NOT NULL,
            payment_method TEXT,
            discount INTEGER NOT NULL DEFAULT 0,
            discount_type TEXT NOT NULL DEFAULT 'nominal',
            discount_rate REAL NOT NULL DEFAULT 0,
            cash_tendered INTEGER,
            change INTEGER NOT NULL DEFAULT 0,
            cashier TEXT,
            created_at TEXT NOT NULL,
            stock_deducted INTEGER NOT NULL DEFAULT 0
        )
        """)
        cur.execute("""
        CREATE TABLE IF NOT EXISTS order_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT REFERENCES orders(id) ON DELETE CASCADE,
            product_id INTEGER REFERENCES products(id),
            quantity INTEGER NOT NULL,
            price INTEGER NOT NULL,
            subtotal INTEGER NOT NULL,
            note TEXT
        )
        """)
        cur.execute("""
        CREATE TABLE IF NOT EXISTS stock_movements (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ingredient_id INTEGER REFERENCES ingredients(id),
            order_id TEXT,
            change REAL NOT NULL,
            reason TEXT NOT NULL,
            timestamp TEXT NOT NULL
        )
        """)
        self.conn.commit()

    # Category operations
    def add_category(self, name: str):
        cur = self.conn.cursor()
        cur.execute("INSERT INTO categories (name) VALUES (?)", (name,))
        self.conn.commit()
        return cur.lastrowid

    def get_categories(self):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM categories ORDER BY name")
        return [dict(row) for row in cur.fetchall()]

    # Product operations
    def add_product(self, name: str, price: int, category_id: int = None,
                    price_gojek: int = None, price_grab: int = None,
                    price_shopee: int = None, description: str = None):
        """Insert a new product and return its id."""
        cur = self.conn.cursor()
        cur.execute("""
        INSERT INTO products (name, price, price_gojek, price_grab, price_shopee,
                              category_id, description)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (name, price, price_gojek, price_grab, price_shopee, category_id, description))
        self.conn.commit()
        return cur.lastrowid

    def get_product_by_id(self, product_id):
        """Fetch a product row by ID."""
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM products WHERE id = ?", (product_id,))
        row = cur.fetchone()
        return dict(row) if row else None

    def get_product_by_name(self, name: str):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM products WHERE name = ?", (name,))
        row = cur.fetchone()
        return dict(row) if row else None

    def get_products(self):
        """All products with their category name, alphabetical."""
        cur = self.conn.cursor()
        cur.execute("""
        SELECT p.*, c.name AS category
        FROM products p
        LEFT JOIN categories c ON p.category_id = c.id
        ORDER BY p.name
        """)
        return [dict(row) for row in cur.fetchall()]

    def search_products(self, keyword: str):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM products WHERE name LIKE ?", (f"%{keyword}%",))
        return [dict(row) for row in cur.fetchall()]

    def update_product(self, product_id, name: str, price: int, price_gojek: int = None,
                       price_grab: int = None, price_shopee: int = None):
        cur = self.conn.cursor()
        cur.execute("""
        UPDATE products
        SET name = ?, price = ?, price_gojek = ?, price_grab = ?, price_shopee = ?
        WHERE id = ?
        """, (name, price, price_gojek, price_grab, price_shopee, product_id))
        self.conn.commit()

    # Ingredient and recipe operations
    def add_ingredient(self, name: str, unit: str, stock: float = 0):
        cur = self.conn.cursor()
        cur.execute("INSERT INTO ingredients (name, unit, stock) VALUES (?, ?, ?)",
                    (name, unit, stock))
        self.conn.commit()
        return cur.lastrowid

    def get_ingredients(self):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM ingredients ORDER BY name")
        return [dict(row) for row in cur.fetchall()]

    def get_ingredient(self, ingredient_id):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM ingredients WHERE id = ?", (ingredient_id,))
        row = cur.fetchone()
        return dict(row) if row else None

    def adjust_ingredient_stock(self, ingredient_id, delta: float, reason: str = "adjustment"):
        """Change stock by delta (negative to reduce) and log the movement."""
        cur = self.conn.cursor()
        self._move_stock(cur, ingredient_id, delta, reason)
        self.conn.commit()

    def set_recipe(self, product_id, components):
        """Replace a product's recipe with (ingredient_id, quantity) pairs."""
        cur = self.conn.cursor()
        cur.execute("DELETE FROM product_ingredients WHERE product_id = ?", (product_id,))
        cur.executemany("""
        INSERT INTO product_ingredients (product_id, ingredient_id, quantity)
        VALUES (?, ?, ?)
        """, [(product_id, ingredient_id, qty) for ingredient_id, qty in components])
        self.conn.commit()

    def get_recipe(self, product_id):
        cur = self.conn.cursor()
        cur.execute("""
        SELECT pi.ingredient_id, pi.quantity, i.name, i.unit
        FROM product_ingredients pi
        JOIN ingredients i ON pi.ingredient_id = i.id
        WHERE pi.product_id = ?
        """, (product_id,))
        return [dict(row) for row in cur.fetchall()]

    def get_low_stock_ingredients(self, threshold: float = 10):
        cur = self.conn.cursor()
        cur.execute("""
        SELECT * FROM ingredients
        WHERE stock <= ?
        ORDER BY stock ASC
        """, (threshold,))
        return [dict(row) for row in cur.fetchall()]

    def _move_stock(self, cur, ingredient_id, delta, reason, order_id=None):
        cur.execute("UPDATE ingredients SET stock = stock + ? WHERE id = ?",
                    (delta, ingredient_id))
        cur.execute("""
        INSERT INTO stock_movements (ingredient_id, order_id, change, reason, timestamp)
        VALUES (?, ?, ?, ?, ?)
        """, (ingredient_id, order_id, delta, reason,
              datetime.now().isoformat(timespec='seconds')))

    # Order operations
    def create_order(self, order: dict, items: list):
        """
        Record an order and its line items in one transaction.
        Returns the stored order row including its generated id.
        """
        order_id = uuid.uuid4().hex
        record = {col: order.get(col) for col in ORDER_COLUMNS}
        record['created_at'] = record['created_at'] or datetime.now().isoformat(timespec='seconds')
        record['discount'] = record['discount'] or 0
        record['discount_type'] = record['discount_type'] or 'nominal'
        record['discount_rate'] = record['discount_rate'] or 0
        record['change'] = record['change'] or 0
        cur = self.conn.cursor()
        try:
            cur.execute(
                f"INSERT INTO orders (id, {', '.join(ORDER_COLUMNS)}) "
                f"VALUES (?, {', '.join('?' for _ in ORDER_COLUMNS)})",
                (order_id, *[record[col] for col in ORDER_COLUMNS]))
            self._insert_items(cur, order_id, items)
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise
        return self.get_order(order_id)

    def _insert_items(self, cur, order_id, items):
        cur.executemany("""
        INSERT INTO order_items (order_id, product_id, quantity, price, subtotal, note)
        VALUES (?, ?, ?, ?, ?, ?)
        """, [(order_id, it['product_id'], it['quantity'], it['price'],
               it['price'] * it['quantity'], it.get('note')) for it in items])

    def get_order(self, order_id):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM orders WHERE id = ?", (order_id,))
        row = cur.fetchone()
        return dict(row) if row else None

    def get_order_details(self, order_id):
        """Order header plus its items with product names."""
        order = self.get_order(order_id)
        if not order:
            return None
        cur = self.conn.cursor()
        cur.execute("""
        SELECT oi.*, p.name
        FROM order_items oi
        LEFT JOIN products p ON oi.product_id = p.id
        WHERE oi.order_id = ?
        ORDER BY oi.id
        """, (order_id,))
        return {
            'order': order,
            'items': [dict(row) for row in cur.fetchall()]
        }

    def list_orders(self, date_from: str = None, date_to: str = None, status: str = None,
                    payment_method: str = None, page: int = 1, limit: int = 10):
        """Newest first, filtered and paginated. Returns (rows, total_count)."""
        clauses, params = [], []
        if date_from:
            clauses.append("created_at >= ?")
            params.append(date_from)
        if date_to:
            clauses.append(_upper_bound("created_at", date_to))
            params.append(date_to)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if payment_method:
            clauses.append("payment_method = ?")
            params.append(payment_method)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        cur = self.conn.cursor()
        cur.execute(f"SELECT COUNT(*) FROM orders{where}", params)
        count = cur.fetchone()[0]
        cur.execute(f"SELECT * FROM orders{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                    params + [limit, (page - 1) * limit])
        return [dict(r) for r in cur.fetchall()], count

    def list_sold_items(self, date_from: str = None, date_to: str = None):
        """Completed order lines in a date range, one row per line."""
        q = """
        SELECT o.id AS order_id, o.created_at, o.total_amount, o.payment_method,
               oi.quantity, oi.price, oi.subtotal,
               COALESCE(p.name, 'Unknown') AS product_name, c.name AS category
        FROM orders o
        LEFT JOIN order_items oi ON oi.order_id = o.id
        LEFT JOIN products p ON oi.product_id = p.id
        LEFT JOIN categories c ON p.category_id = c.id
        WHERE o.status = 'completed'
        """
        params = []
        if date_from:
            q += " AND o.created_at >= ?"
            params.append(date_from)
        if date_to:
            q += " AND " + _upper_bound("o.created_at", date_to)
            params.append(date_to)
        cur = self.conn.cursor()
        cur.execute(q + " ORDER BY o.created_at", params)
        return [dict(r) for r in cur.fetchall()]

    def pay_order(self, order_id, order: dict, items: list):
        """Settle a pending order, replacing its lines with the re-priced ones."""
        cur = self.conn.cursor()
        try:
            cur.execute("""
            UPDATE orders
            SET status = ?, payment_method = ?, subtotal = ?, total_amount = ?,
                discount = ?, discount_type = ?, discount_rate = ?,
                cash_tendered = ?, change = ?, cashier = ?
            WHERE id = ? AND status = 'pending'
            """, (order['status'], order['payment_method'], order['subtotal'],
                  order['total_amount'], order['discount'], order['discount_type'],
                  order['discount_rate'], order.get('cash_tendered'), order.get('change') or 0,
                  order.get('cashier'), order_id))
            if cur.rowcount == 0:
                raise LookupError(f"No pending order {order_id}")
            cur.execute("DELETE FROM order_items WHERE order_id = ?", (order_id,))
            self._insert_items(cur, order_id, items)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return self.get_order(order_id)

    def deduct_stock(self, order_id):
        """
        Take each line's recipe out of ingredient stock.
        Applied once per order; a second call is a no-op.
        """
        order = self.get_order(order_id)
        if order is None:
            raise LookupError(f"Order {order_id} not found")
        if order['stock_deducted']:
            return
        cur = self.conn.cursor()
        try:
            for ingredient_id, used in self._ingredient_usage(cur, order_id):
                self._move_stock(cur, ingredient_id, -used, "transaction", order_id)
            cur.execute("UPDATE orders SET stock_deducted = 1 WHERE id = ?", (order_id,))
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise
        for row in self.get_low_stock_ingredients(0):
            logger.warning(f"Ingredient {row['name']} is out of stock ({row['stock']})")

    def restore_order_stock(self, order_id):
        """Undo deduct_stock for an order; a no-op if nothing was deducted."""
        order = self.get_order(order_id)
        if order is None or not order['stock_deducted']:
            return
        cur = self.conn.cursor()
        try:
            for ingredient_id, used in self._ingredient_usage(cur, order_id):
                self._move_stock(cur, ingredient_id, used, "restore", order_id)
            cur.execute("UPDATE orders SET stock_deducted = 0 WHERE id = ?", (order_id,))
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise

    def _ingredient_usage(self, cur, order_id):
        cur.execute("""
        SELECT pi.ingredient_id, SUM(pi.quantity * oi.quantity) AS used
        FROM order_items oi
        JOIN product_ingredients pi ON pi.product_id = oi.product_id
        WHERE oi.order_id = ?
        GROUP BY pi.ingredient_id
        """, (order_id,))
        return [(row['ingredient_id'], row['used']) for row in cur.fetchall()]

    def cancel_order(self, order_id):
        if self.get_order(order_id) is None:
            raise LookupError(f"Order {order_id} not found")
        self.restore_order_stock(order_id)
        cur = self.conn.cursor()
        cur.execute("UPDATE orders SET status = 'cancelled' WHERE id = ?", (order_id,))
        self.conn.commit()

    def close(self):
        self.conn.close()
