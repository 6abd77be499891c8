"""Operator-facing display of pairing codes."""

import io
import logging
import sys
from typing import Optional, TextIO

import qrcode

logger = logging.getLogger(__name__)


def render_qr(code: str) -> str:
    """Render the code as a terminal-printable QR block."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    qr.make(fit=True)
    buffer = io.StringIO()
    qr.print_ascii(out=buffer, invert=True)
    return buffer.getvalue()


def display_pairing_code(code: str, out: Optional[TextIO] = None):
    """Print a scannable QR code plus the raw code for the operator."""
    out = out or sys.stdout
    logger.info(f"Pairing code received: {code}")
    out.write(render_qr(code))
    out.write(f"\nScan the code above or open: {code}\n")
    out.flush()
