# printer.py
import os
import re
import json
import time
import logging
import threading
import webbrowser
from datetime import datetime
from pathlib import Path

logger = logging.getLogger("kopi_pos.Printer")

# ESC/POS commands
ESC_INIT = b'\x1b\x40'
ESC_BOLD_ON = b'\x1b\x45\x01'
ESC_BOLD_OFF = b'\x1b\x45\x00'
GS_CUT = b'\x1d\x56\x41\x03'

MARKUP_RE = re.compile(r"(</?B>)")


class PrinterError(Exception):
    pass


class PrinterDevice:
    def __init__(self, device_name: str, address: str):
        self.device_name = device_name
        self.address = address

    def to_dict(self):
        return {'device_name': self.device_name, 'address': self.address}


def encode_escpos(text: str) -> bytes:
    """Translate the receipt's <B> markup to ESC/POS and encode for the printer."""
    out = bytearray()
    for part in MARKUP_RE.split(text):
        if part == "<B>":
            out += ESC_BOLD_ON
        elif part == "</B>":
            out += ESC_BOLD_OFF
        elif part:
            out += part.encode("ascii", errors="replace")
    return bytes(out)


def strip_markup(text: str) -> str:
    return MARKUP_RE.sub("", text)


class PrinterService:
    """
    Thermal receipt printer reached through a device node
    (/dev/usb/lp0, /dev/rfcomm0 for a paired Bluetooth printer).
    """
    def __init__(self, config=None):
        config = (config or {}).get('printer', {})
        self.settings_file = config.get('settings_file', "printer.json")
        self.retries = int(config.get('retries', 3))
        self.retry_delay = float(config.get('retry_delay', 1))
        self.default_device = config.get('device')
        self.connected_printer = None
        # Add thread lock for printer access
        self.printer_lock = threading.Lock()

    def check_device(self, address: str) -> bool:
        is_available = os.path.exists(address)
        logger.debug(f"Printer check: {address} - {'Available' if is_available else 'Not available'}")
        return is_available

    def connect_printer(self, address: str, device_name: str = None):
        if not self.check_device(address):
            self.connected_printer = None
            raise PrinterError(f"Printer device not available: {address}")
        self.connected_printer = PrinterDevice(device_name or "Unknown Printer", address)
        logger.info(f"Connected to printer {self.connected_printer.device_name} at {address}")
        return self.connected_printer

    def disconnect_printer(self):
        self.connected_printer = None

    def get_connected_printer(self):
        return self.connected_printer

    def is_connected(self) -> bool:
        return self.connected_printer is not None

    def save_default_printer(self, device: PrinterDevice):
        with open(self.settings_file, 'w') as f:
            json.dump(device.to_dict(), f, indent=4)
        logger.info(f"Default printer saved to {self.settings_file}")

    def load_default_printer(self):
        if not os.path.exists(self.settings_file):
            return None
        try:
            with open(self.settings_file, 'r') as f:
                data = json.load(f)
            return PrinterDevice(data['device_name'], data['address'])
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable printer settings {self.settings_file}: {e}")
            return None

    def clear_default_printer(self):
        if os.path.exists(self.settings_file):
            os.remove(self.settings_file)

    def auto_connect(self) -> bool:
        """Connect to the saved default printer, or the configured device."""
        device = self.load_default_printer()
        if device is None and self.default_device:
            device = PrinterDevice("Configured Printer", self.default_device)
        if device is None:
            return False
        try:
            self.connect_printer(device.address, device.device_name)
            return True
        except PrinterError as e:
            logger.warning(f"Auto-connect failed: {e}")
            return False

    def print_text(self, text: str):
        """Send a formatted receipt to the printer, retrying on I/O errors."""
        if not self.connected_printer:
            raise PrinterError("No printer connected")

        payload = ESC_INIT + encode_escpos(text) + GS_CUT
        with self.printer_lock:
            for attempt in range(self.retries):
                try:
                    with open(self.connected_printer.address, 'wb') as p:
                        p.write(payload)
                        p.flush()
                    logger.info("Receipt printed successfully")
                    return
                except OSError as e:
                    logger.warning(f"Print attempt {attempt + 1} failed: {e}")
                    if attempt == self.retries - 1:
                        raise PrinterError(f"Print failed after {self.retries} attempts: {e}") from e
                    time.sleep(self.retry_delay)

    def print_test_page(self):
        if not self.connected_printer:
            raise PrinterError("No printer connected")
        now = datetime.now().strftime("%d/%m/%Y %H:%M")
        self.print_text(
            "<B>TEST PRINT</B>\n"
            + "-" * 32 + "\n"
            + f"Printer: {self.connected_printer.device_name}\n"
            + f"Device: {self.connected_printer.address}\n"
            + f"Time: {now}\n"
            + "-" * 32 + "\n"
            + "Printer connected!\n\n\n"
        )


class HtmlFilePrinter:
    """
    Fallback when no thermal printer is reachable: writes the HTML receipt
    to the receipt directory and optionally opens it for the print dialog.
    """
    def __init__(self, receipt_dir="receipts", open_browser=False):
        self.receipt_dir = Path(receipt_dir)
        self.open_browser = open_browser

    def print_html(self, html: str, name: str = None):
        self.receipt_dir.mkdir(parents=True, exist_ok=True)
        name = name or datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", str(name))
        path = self.receipt_dir / f"receipt_{safe_name}.html"
        path.write_text(html, encoding="utf-8")
        logger.info(f"Receipt written to {path}")
        if self.open_browser:
            webbrowser.open(path.resolve().as_uri())
        return str(path)
