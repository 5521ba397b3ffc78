# main.py
import os
import sys
import copy
import json
import logging
import argparse
from pathlib import Path

from database import Database
from logger import configure_logger
from models import (CashierSystem, Session, PaymentSpec, CheckoutValidationError,
                    CheckoutError, order_from_details)
from pricing import DiscountSpec, DISCOUNT_TYPES, FIXED_AMOUNT
from printer import PrinterService, HtmlFilePrinter, PrinterError
from receipt import format_rupiah
from utils import (generate_sales_report, generate_pdf_report, generate_pdf_receipt,
                   import_products_csv, import_products_excel)

logger = logging.getLogger("kopi_pos")

# Default configuration
DEFAULT_CONFIG = {
    "database": {
        "name": "pos.db",
        "backup_dir": "backups"
    },
    "receipt": {
        "receipt_dir": "receipts",
        "shop_name": "KenapaKopi",
        "address": "",
        "phone": "0878-3628-5577",
        "footer": ["Terima Kasih!", "Selamat Menikmati"],
        "line_width": 32,
        "currency_prefix": "Rp",
        "copy_labels": ["PELANGGAN", "ARSIP"],
        "print_archive_copy": True,
        "open_browser": False
    },
    "printer": {
        "device": None,
        "settings_file": "printer.json",
        "retries": 3
    },
    "export": {
        "default_dir": "exports"
    },
    "logging": {
        "level": "INFO",
        "file": "logs/pos.log",
        "max_size": 1048576,
        "backup_count": 3
    }
}


def merge_config(base, override):
    """Recursively lay override on top of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path="config.json"):
    """Load configuration from JSON file or create default if not exists"""
    if os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                config = json.load(f)
            logger.info(f"Configuration loaded from {config_path}")
            return merge_config(DEFAULT_CONFIG, config)
        except (OSError, ValueError) as e:
            logger.error(f"Error loading config: {e}")
            return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_path, 'w') as f:
        json.dump(DEFAULT_CONFIG, f, indent=4)
    logger.info(f"Created default configuration at {config_path}")
    return copy.deepcopy(DEFAULT_CONFIG)


def setup_directories(config):
    """Create required directories if they don't exist."""
    dir_mappings = {
        'receipt_dir': config.get('receipt', {}).get('receipt_dir', 'receipts'),
        'export_dir': config.get('export', {}).get('default_dir', 'exports'),
        'backup_dir': config.get('database', {}).get('backup_dir', 'backups'),
        'log_dir': os.path.dirname(config.get('logging', {}).get('file') or '')
    }

    for dir_key, dir_path in dir_mappings.items():
        if not dir_path:
            continue
        path = Path(dir_path)
        if not path.exists():
            path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created directory: {path}")
        else:
            logger.debug(f"Directory already exists: {path}")


def build_system(config, db, session=None):
    receipt_cfg = config.get('receipt', {})
    fallback = HtmlFilePrinter(receipt_cfg.get('receipt_dir', 'receipts'),
                               receipt_cfg.get('open_browser', False))
    return CashierSystem(db, PrinterService(config), config, session, fallback)


def discount_from_args(discount_type, value):
    if value is None:
        return DiscountSpec.none()
    return DiscountSpec(discount_type or FIXED_AMOUNT, value)


def payment_from_dict(data):
    if not data:
        return None
    return PaymentSpec(data['method'], data.get('cash_tendered'))


def report_result(result):
    order = result.order
    print(f"Order {order.external_order_id} saved. Total {format_rupiah(order.final_total)}")
    if order.is_cash:
        print(f"Change: {format_rupiah(order.change)}")
    for notice in result.notices:
        print(f"Notice: {notice}")


def cmd_checkout(system, config, args):
    with open(args.order_file, 'r') as f:
        request = json.load(f)
    for line in request.get('items', []):
        system.add_product(line['product_id'], int(line.get('quantity', 1)))
        if line.get('note'):
            system.cart.set_note(line['product_id'], line['note'])
    discount = request.get('discount') or {}
    result = system.checkout(
        request.get('customer_name', ""),
        discount_from_args(discount.get('type'), discount.get('value')),
        payment_from_dict(request.get('payment')),
        request.get('note'),
    )
    report_result(result)
    if config['receipt'].get('print_archive_copy') and not args.no_archive:
        system.print_archive_copy(result)


def cmd_pay(system, config, args):
    payment = PaymentSpec(args.method, args.cash)
    result = system.pay_order(args.order_id, discount_from_args(args.discount_type, args.discount),
                              payment)
    report_result(result)
    if config['receipt'].get('print_archive_copy') and not args.no_archive:
        system.print_archive_copy(result)


def cmd_reprint(system, db, args):
    if not args.pdf:
        system.reprint(args.order_id, args.label)
        return
    details = db.get_order_details(args.order_id)
    if not details:
        raise CheckoutValidationError("Order not found.")
    order, items = order_from_details(details)
    generate_pdf_receipt(order, items, args.pdf, system.shop, args.label)
    print(f"Receipt written to {args.pdf}")


def cmd_import_products(db, args):
    if args.csv_file.lower().endswith(('.xlsx', '.xls')):
        count = import_products_excel(db, args.csv_file)
    else:
        count = import_products_csv(db, args.csv_file)
    print(f"Imported {count} products")


def cmd_report(db, config, args):
    output = args.output
    file_format = args.format
    menu, summary = generate_sales_report(
        db, args.start, args.end,
        file_path=output if output and file_format != 'pdf' else None,
        format=file_format)
    if menu is None:
        print(summary)
        return
    if output and file_format == 'pdf':
        generate_pdf_report("Sales Report", menu, summary, output)
    print(f"Revenue: {format_rupiah(summary['total_revenue'])} "
          f"from {summary['total_transactions']} transactions")
    for key, value in summary.items():
        if key.endswith('_revenue') and key != 'total_revenue':
            print(f"  {key[:-len('_revenue')]:<10} {format_rupiah(value)}")
    if output:
        print(f"Report written to {output}")


def cmd_print_test(config, args):
    printer = PrinterService(config)
    if args.device:
        device = printer.connect_printer(args.device, args.name)
        if args.save:
            printer.save_default_printer(device)
    elif not printer.auto_connect():
        raise PrinterError("No printer configured")
    printer.print_test_page()


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description="KenapaKopi point of sale")
    parser.add_argument("--config", help="Path to configuration file", default="config.json")
    parser.add_argument("--debug", help="Enable debug mode", action="store_true")
    parser.add_argument("--cashier", help="Name printed on receipts", default="Admin")
    parser.add_argument("--role", help="Operator role", default="cashier")
    sub = parser.add_subparsers(dest="command", required=True)

    checkout = sub.add_parser("checkout", help="Check out an order described in a JSON file")
    checkout.add_argument("order_file")
    checkout.add_argument("--no-archive", action="store_true", help="Skip the archive copy")

    pay = sub.add_parser("pay", help="Settle a pending order")
    pay.add_argument("order_id")
    pay.add_argument("--method", required=True)
    pay.add_argument("--cash", type=int, help="Cash tendered")
    pay.add_argument("--discount", type=float)
    pay.add_argument("--discount-type", choices=DISCOUNT_TYPES, default=FIXED_AMOUNT)
    pay.add_argument("--no-archive", action="store_true", help="Skip the archive copy")

    reprint = sub.add_parser("reprint", help="Print a stored order again")
    reprint.add_argument("order_id")
    reprint.add_argument("--label", default="REPRINT")
    reprint.add_argument("--pdf", help="Write the receipt to this PDF file instead of printing")

    cancel = sub.add_parser("cancel", help="Cancel an order and restore its stock")
    cancel.add_argument("order_id")

    report = sub.add_parser("report", help="Sales report for a date range")
    report.add_argument("--start", help="From date (YYYY-MM-DD)")
    report.add_argument("--end", help="To date (YYYY-MM-DD)")
    report.add_argument("--output", help="Write the report to this file")
    report.add_argument("--format", choices=("csv", "excel", "pdf"), default="csv")

    imp = sub.add_parser("import-products", help="Import the menu from CSV or Excel")
    imp.add_argument("csv_file")

    test = sub.add_parser("print-test", help="Print a test page")
    test.add_argument("--device", help="Printer device node, e.g. /dev/rfcomm0")
    test.add_argument("--name", help="Printer name")
    test.add_argument("--save", action="store_true", help="Remember as default printer")

    return parser.parse_args(argv)


def run(args, config):
    if args.command == "print-test":
        cmd_print_test(config, args)
        return

    db = Database(config["database"].get("name", "pos.db"))
    logger.info(f"Database initialized: {config['database'].get('name', 'pos.db')}")
    try:
        system = build_system(config, db, Session(args.cashier, args.role))
        if args.command == "checkout":
            cmd_checkout(system, config, args)
        elif args.command == "pay":
            cmd_pay(system, config, args)
        elif args.command == "reprint":
            cmd_reprint(system, db, args)
        elif args.command == "cancel":
            system.cancel_order(args.order_id)
        elif args.command == "report":
            cmd_report(db, config, args)
        elif args.command == "import-products":
            cmd_import_products(db, args)
    finally:
        db.close()


def main(argv=None):
    try:
        args = parse_arguments(argv)
        config = load_config(args.config)
        if args.debug:
            config['logging']['level'] = "DEBUG"
        configure_logger(config)
        logger.debug("Debug mode enabled")
        setup_directories(config)
        run(args, config)
        return 0
    except (CheckoutValidationError, CheckoutError, PrinterError) as e:
        logger.error(str(e))
        return 2
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
