# utils.py
import datetime
from html import escape

import pandas as pd
from reportlab.lib.pagesizes import A4
from reportlab.lib import colors
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch, mm

from database import Database
from receipt import ShopInfo, format_rupiah, format_timestamp, short_id

REVENUE_CHANNELS = ("cash", "qris", "gojek", "grab", "shopee", "transfer")


def payment_channel(method) -> str:
    """Bucket a stored payment method into a revenue channel."""
    method = (method or "").strip().lower()
    if method in ("cash", "tunai"):
        return "cash"
    if method == "qris":
        return "qris"
    for channel in ("gojek", "grab", "shopee", "transfer"):
        if channel in method:
            return channel
    return "other"


def _optional_price(value):
    return None if pd.isna(value) else int(value)


def _upsert_products(db: Database, df: pd.DataFrame):
    categories = {c['name']: c['id'] for c in db.get_categories()}
    for _, row in df.iterrows():
        category_id = None
        category = row.get('category')
        if isinstance(category, str) and category.strip():
            category = category.strip()
            if category not in categories:
                categories[category] = db.add_category(category)
            category_id = categories[category]
        prices = {
            channel: _optional_price(row.get(f"price_{channel}"))
            for channel in ("gojek", "grab", "shopee")
        }
        existing = db.get_product_by_name(row['name'])
        if existing:
            db.update_product(existing['id'], row['name'], int(row['price']),
                              prices['gojek'], prices['grab'], prices['shopee'])
        else:
            db.add_product(row['name'], int(row['price']), category_id,
                           prices['gojek'], prices['grab'], prices['shopee'])
    return len(df)


def import_products_csv(db: Database, file_path: str):
    """
    Read CSV with columns name,price[,price_gojek,price_grab,price_shopee,category]
    and upsert into the products table by name.
    """
    return _upsert_products(db, pd.read_csv(file_path))


def import_products_excel(db: Database, file_path: str):
    """Same as import_products_csv for an Excel sheet."""
    return _upsert_products(db, pd.read_excel(file_path))


def export_orders(db: Database, file_path: str, format='csv', start_date=None, end_date=None):
    """Dump orders in a date range to CSV or Excel."""
    rows, _ = db.list_orders(start_date, end_date, limit=-1)
    df = pd.DataFrame(rows)
    if format.lower() == 'excel':
        df.to_excel(file_path, index=False, sheet_name='Orders')
    else:
        df.to_csv(file_path, index=False)
    return file_path


def generate_sales_report(db: Database, start_date=None, end_date=None, file_path=None, format='csv'):
    """
    Revenue per payment channel and menu sales for completed orders.
    Returns (menu_sales DataFrame, summary) or (None, message) if nothing sold.
    """
    lines = pd.DataFrame(db.list_sold_items(start_date, end_date))
    if lines.empty:
        return None, "No sales data found for the specified period."

    orders = lines.drop_duplicates('order_id')[['order_id', 'created_at', 'total_amount', 'payment_method']]
    orders = orders.assign(channel=orders['payment_method'].map(payment_channel))
    by_channel = orders.groupby('channel')['total_amount'].sum()

    sold = lines.dropna(subset=['quantity'])
    menu = (
        sold.groupby('product_name')
        .agg(quantity_sold=('quantity', 'sum'), total_revenue=('subtotal', 'sum'))
        .reset_index()
        .sort_values(['total_revenue', 'product_name'], ascending=[False, True])
        .reset_index(drop=True)
    )
    menu['quantity_sold'] = menu['quantity_sold'].astype(int)
    menu['total_revenue'] = menu['total_revenue'].astype(int)

    created = pd.to_datetime(orders['created_at'])
    summary = {
        'total_revenue': int(orders['total_amount'].sum()),
        'total_transactions': len(orders),
        'start_date': start_date or created.min().date(),
        'end_date': end_date or created.max().date(),
    }
    for channel in REVENUE_CHANNELS:
        summary[f"{channel}_revenue"] = int(by_channel.get(channel, 0))
    summary['menu_sales'] = menu.to_dict('records')

    if file_path:
        if format.lower() == 'excel':
            menu.to_excel(file_path, index=False, sheet_name='Sales')
        else:  # Default to CSV
            menu.to_csv(file_path, index=False)

    return menu, summary


def generate_inventory_report(db: Database, file_path=None, format='csv', low_stock_threshold=10):
    """Ingredient stock levels, highlighting the ones running low."""
    inventory = db.get_ingredients()
    if not inventory:
        return None, "No inventory data found."

    df = pd.DataFrame(inventory)
    low_stock_items = df[df['stock'] <= low_stock_threshold]
    summary = {
        'total_items': len(df),
        'low_stock_count': len(low_stock_items),
        'low_stock_items': low_stock_items.to_dict('records') if not low_stock_items.empty else []
    }

    if file_path:
        if format.lower() == 'excel':
            df.to_excel(file_path, index=False, sheet_name='Inventory')
        else:
            df.to_csv(file_path, index=False)

    return df, summary


def generate_pdf_receipt(order, line_items, file_path: str, shop: ShopInfo = None, copy_label=""):
    """Archive copy of a receipt as a narrow PDF page."""
    shop = shop or ShopInfo()
    money = shop.money
    doc = SimpleDocTemplate(file_path, pagesize=(80 * mm, 200 * mm),
                            leftMargin=4 * mm, rightMargin=4 * mm,
                            topMargin=4 * mm, bottomMargin=4 * mm)
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name='Center', parent=styles['Normal'], alignment=1, fontSize=8))
    small = ParagraphStyle(name='Small', parent=styles['Normal'], fontSize=8)

    elements = [Paragraph(f"<b>{escape(shop.name)}</b>", styles['Center'])]
    if shop.phone:
        elements.append(Paragraph(f"Telp: {escape(shop.phone)}", styles['Center']))
    if copy_label:
        elements.append(Paragraph(escape(copy_label), styles['Center']))
    elements.append(Spacer(1, 3 * mm))
    elements.append(Paragraph(f"No: {short_id(order.external_order_id)}", small))
    elements.append(Paragraph(f"Tgl: {format_timestamp(order.created_at)}", small))
    elements.append(Paragraph(f"Pelanggan: {escape(order.customer_name)}", small))
    elements.append(Spacer(1, 3 * mm))

    data = [[item.name, str(item.quantity), money(item.subtotal)] for item in line_items]
    if order.discount_amount:
        data.append(["Subtotal", "", money(order.subtotal)])
        data.append(["Diskon", "", "-" + money(order.discount_amount)])
    data.append(["TOTAL", "", money(order.final_total)])
    if order.is_cash:
        data.append(["Tunai", "", money(order.cash_tendered or 0)])
        data.append(["Kembalian", "", money(order.change)])
    elif order.payment_method:
        data.append(["Metode", "", order.payment_method.upper()])

    table = Table(data, colWidths=[38 * mm, 8 * mm, 26 * mm])
    table.setStyle(TableStyle([
        ('FONTSIZE', (0, 0), (-1, -1), 8),
        ('ALIGN', (1, 0), (-1, -1), 'RIGHT'),
        ('LINEABOVE', (0, len(line_items)), (-1, len(line_items)), 0.5, colors.black),
    ]))
    elements.append(table)
    elements.append(Spacer(1, 4 * mm))
    for footer in shop.footer:
        elements.append(Paragraph(escape(footer), styles['Center']))

    doc.build(elements)
    return file_path


def generate_pdf_report(title, data, summary, file_path):
    """Generate a PDF report with data and summary statistics."""
    doc = SimpleDocTemplate(file_path, pagesize=A4)
    elements = []

    styles = getSampleStyleSheet()
    title_style = styles['Heading1']
    subtitle_style = styles['Heading2']
    normal_style = styles['Normal']

    elements.append(Paragraph(title, title_style))
    elements.append(Spacer(1, 0.2 * inch))

    current_date = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    elements.append(Paragraph(f"Generated: {current_date}", normal_style))
    elements.append(Spacer(1, 0.2 * inch))

    elements.append(Paragraph("Summary", subtitle_style))

    summary_data = [["Metric", "Value"]]
    for key, value in summary.items():
        if key in ('menu_sales', 'low_stock_items'):  # Skip complex nested data
            continue
        if isinstance(value, (int, float)) and 'revenue' in key:
            formatted_value = format_rupiah(value)
        elif isinstance(value, (int, float)):
            formatted_value = f"{value:,}"
        else:
            formatted_value = str(value)
        display_key = key.replace('_', ' ').title()
        summary_data.append([display_key, formatted_value])

    summary_table = Table(summary_data, colWidths=[2.5 * inch, 3 * inch])
    summary_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (1, 0), colors.grey),
        ('TEXTCOLOR', (0, 0), (1, 0), colors.whitesmoke),
        ('ALIGN', (0, 0), (1, 0), 'CENTER'),
        ('FONTNAME', (0, 0), (1, 0), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (1, 0), 12),
        ('BOTTOMPADDING', (0, 0), (1, 0), 12),
        ('BACKGROUND', (0, 1), (1, -1), colors.white),
        ('GRID', (0, 0), (1, -1), 1, colors.black),
    ]))

    elements.append(summary_table)
    elements.append(Spacer(1, 0.3 * inch))

    if isinstance(data, pd.DataFrame) and not data.empty:
        elements.append(Paragraph("Detailed Data", subtitle_style))

        table_data = [data.columns.tolist()]
        for _, row in data.iterrows():
            table_data.append([str(x) for x in row.tolist()])

        # limit to the first 50 rows
        max_rows = min(50, len(table_data))
        data_table = Table(table_data[:max_rows], colWidths=None)
        data_table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.grey),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
            ('ALIGN', (0, 0), (-1, 0), 'CENTER'),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, 0), 10),
            ('BOTTOMPADDING', (0, 0), (-1, 0), 12),
            ('BACKGROUND', (0, 1), (-1, -1), colors.white),
            ('GRID', (0, 0), (-1, -1), 1, colors.black),
            ('FONTSIZE', (0, 1), (-1, -1), 8),
        ]))
        elements.append(data_table)

        if len(table_data) > max_rows:
            elements.append(Spacer(1, 0.2 * inch))
            elements.append(Paragraph(f"Note: Showing {max_rows - 1} of {len(table_data) - 1} rows",
                                      styles['Italic']))

    doc.build(elements)
    return file_path
