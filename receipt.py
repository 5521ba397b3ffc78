# receipt.py
import re
from html import escape

from pricing import PERCENTAGE, round_currency

DEFAULT_LINE_WIDTH = 32  # 58mm thermal paper
PAPER_FEED = "\n\n\n"


class ShopInfo:
    """Receipt header/footer details and the printer profile."""
    def __init__(self, name="KenapaKopi", address="", phone="", footer=None,
                 line_width=DEFAULT_LINE_WIDTH, currency_prefix="Rp"):
        self.name = name
        self.address = address
        self.phone = phone
        self.footer = list(footer) if footer is not None else ["Terima Kasih!", "Selamat Menikmati"]
        self.line_width = int(line_width)
        self.currency_prefix = currency_prefix

    @classmethod
    def from_config(cls, config):
        receipt = (config or {}).get('receipt', {})
        return cls(
            name=receipt.get('shop_name', "KenapaKopi"),
            address=receipt.get('address', ""),
            phone=receipt.get('phone', ""),
            footer=receipt.get('footer'),
            line_width=receipt.get('line_width', DEFAULT_LINE_WIDTH),
            currency_prefix=receipt.get('currency_prefix', "Rp"),
        )

    def money(self, value):
        return format_rupiah(value, self.currency_prefix + " ")


def format_rupiah(value, prefix="Rp "):
    """30000 -> 'Rp 30.000'. Amounts are whole units, grouped with dots."""
    amount = round_currency(value)
    grouped = f"{abs(amount):,}".replace(",", ".")
    sign = "-" if amount < 0 else ""
    return f"{sign}{prefix}{grouped}"


def parse_rupiah(text) -> int:
    """'Rp 25.000' -> 25000. Anything unparsable is 0."""
    if not text:
        return 0
    cleaned = str(text).replace(".", "").replace(",", ".")
    cleaned = re.sub(r"[^0-9.\-]", "", cleaned)
    try:
        return round_currency(float(cleaned))
    except ValueError:
        return 0


def left_right(left: str, right: str, width: int = DEFAULT_LINE_WIDTH) -> str:
    """
    Pad between left and right so the row is exactly width wide.
    Rows that do not fit keep a single space; nothing is truncated.
    """
    spaces = max(1, width - len(left) - len(right))
    return left + " " * spaces + right


def center(text: str, width: int = DEFAULT_LINE_WIDTH) -> str:
    padding = max(0, (width - len(text)) // 2)
    return " " * padding + text


def short_id(order_id) -> str:
    return str(order_id)[:8] if order_id else "-"


def format_timestamp(value) -> str:
    return value.strftime("%d/%m/%Y %H:%M")


def _bold(text, markup):
    return f"<B>{text}</B>" if markup else text


def _discount_label(order):
    if order.discount.type == PERCENTAGE:
        return f"Diskon {order.discount.rate:g}%"
    return "Diskon"


def format_receipt_text(order, line_items, shop: ShopInfo = None, copy_label: str = "",
                        markup: bool = True) -> str:
    """
    Render an order for a narrow thermal printer.
    With markup, bold rows are wrapped in <B></B> for the printer driver.
    """
    shop = shop or ShopInfo()
    width = shop.line_width
    money = shop.money
    rule = "-" * width
    lines = [_bold(center(shop.name, width), markup)]
    if shop.address:
        lines.append(center(shop.address, width))
    if shop.phone:
        lines.append(center(f"Telp: {shop.phone}", width))
    if copy_label:
        lines.append(center(copy_label, width))
    lines.append(rule)

    lines.append(f"No: {short_id(order.external_order_id)}")
    lines.append(f"Tgl: {format_timestamp(order.created_at)}")
    if order.cashier:
        lines.append(f"Kasir: {order.cashier}")
    lines.append(f"Pelanggan: {order.customer_name}")
    if order.note:
        lines.append(f"Catatan: {order.note}")
    lines.append(rule)

    for item in line_items:
        lines.append(item.name)
        if item.note:
            lines.append(f"  ({item.note})")
        lines.append(left_right(f"  {item.quantity} x {money(item.unit_price)}",
                                money(item.subtotal), width))
    lines.append(rule)

    if order.discount_amount:
        lines.append(left_right("Subtotal", money(order.subtotal), width))
        lines.append(left_right(_discount_label(order), "-" + money(order.discount_amount), width))
    lines.append(_bold(left_right("TOTAL", money(order.final_total), width), markup))

    if order.is_cash:
        lines.append(left_right("Tunai", money(order.cash_tendered or 0), width))
        lines.append(left_right("Kembalian", money(order.change), width))
    elif order.payment_method:
        lines.append(left_right("Metode", order.payment_method.upper(), width))
    else:
        lines.append(left_right("Status", "BELUM BAYAR", width))
    lines.append(rule)

    for footer in shop.footer:
        lines.append(center(footer, width))
    return "\n".join(lines) + "\n" + PAPER_FEED


def _html_row(left, right, style="font-size: 12px;"):
    return (
        '<div style="display: flex; justify-content: space-between; margin-bottom: 5px;">'
        f'<span style="{style}">{escape(left)}</span>'
        f'<span style="{style} text-align: right;">{escape(right)}</span>'
        '</div>'
    )


def render_receipt_html(order, line_items, shop: ShopInfo = None, copy_label: str = "") -> str:
    """Same receipt as an HTML document for a generic print dialog."""
    shop = shop or ShopInfo()
    money = shop.money
    header = [f'<h2 style="margin: 0;">{escape(shop.name)}</h2>']
    if shop.address:
        header.append(f'<p style="margin: 5px 0; font-size: 12px;">{escape(shop.address)}</p>')
    if shop.phone:
        header.append(f'<p style="margin: 5px 0; font-size: 12px;">Telp: {escape(shop.phone)}</p>')
    if copy_label:
        header.append(f'<p style="margin: 5px 0; font-size: 12px;">{escape(copy_label)}</p>')

    meta = [
        f"No. Order: {short_id(order.external_order_id)}",
        f"Tgl: {format_timestamp(order.created_at)}",
    ]
    if order.cashier:
        meta.append(f"Kasir: {order.cashier}")
    meta.append(f"Pelanggan: {order.customer_name}")
    if order.note:
        meta.append(f"Catatan: {order.note}")

    items = []
    for item in line_items:
        items.append(_html_row(f"{item.name} x{item.quantity}", money(item.subtotal)))
        if item.note:
            items.append(f'<p style="margin: 0 0 5px 10px; font-size: 11px;">({escape(item.note)})</p>')

    totals = []
    if order.discount_amount:
        totals.append(_html_row("Subtotal", money(order.subtotal)))
        totals.append(_html_row(_discount_label(order), "-" + money(order.discount_amount)))
    totals.append(_html_row("Total", money(order.final_total), "font-weight: bold; font-size: 14px;"))
    if order.is_cash:
        totals.append(_html_row("Tunai", money(order.cash_tendered or 0)))
        totals.append(_html_row("Kembalian", money(order.change)))
    elif order.payment_method:
        totals.append(_html_row("Metode", order.payment_method.upper()))
    else:
        totals.append(_html_row("Status", "BELUM BAYAR"))

    footer = "".join(f"<p>{escape(text)}</p>" for text in shop.footer)
    section = 'style="margin-bottom: 10px; border-bottom: 1px dashed #000; padding-bottom: 10px;"'
    return (
        "<html>"
        '<head><meta charset="utf-8" />'
        '<meta name="viewport" content="width=device-width, initial-scale=1.0" /></head>'
        '<body style="font-family: \'Courier New\', Courier, monospace; width: 100%; '
        'max-width: 300px; margin: 0 auto; padding: 10px;">'
        f'<div style="text-align: center; margin-bottom: 20px;">{"".join(header)}</div>'
        f'<div {section}>'
        + "".join(f'<p style="margin: 2px 0; font-size: 12px;">{escape(m)}</p>' for m in meta)
        + "</div>"
        f'<div {section}>{"".join(items)}</div>'
        f'{"".join(totals)}'
        f'<div style="text-align: center; margin-top: 20px; font-size: 12px;">{footer}</div>'
        "</body></html>"
    )
