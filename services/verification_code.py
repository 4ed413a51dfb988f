"""
Verification code (QR) for transmitted invoices.

The code encodes the public myDATA lookup URL built from the acknowledgment
triple. Rendering is local; a rendering failure means "no code available" and
never aborts the transmission that produced the triple.
"""

import base64
import logging
from io import BytesIO
from typing import Optional
from urllib.parse import quote

import qrcode
from qrcode.image.pil import PilImage

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:image/png;base64,"


def build_verification_url(mark: str, uid: str, authentication_code: str, template: str) -> str:
    return template.format(
        mark=quote(str(mark), safe=""),
        uid=quote(str(uid), safe=""),
        authentication_code=quote(str(authentication_code), safe=""),
    )


def render_png(data: str, box_size: int = 6, border: int = 2) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
        image_factory=PilImage,
    )
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def render_verification_code(mark: str, uid: str, authentication_code: str,
                             template: str) -> Optional[str]:
    """PNG data URL for the acknowledgment triple, or None if it cannot be rendered"""
    if not (mark and uid and authentication_code):
        return None
    try:
        url = build_verification_url(mark, uid, authentication_code, template)
        png = render_png(url)
    except Exception as e:
        logger.warning(f"[MYDATA] Verification code unavailable for mark {mark}: {e}")
        return None
    return DATA_URL_PREFIX + base64.b64encode(png).decode("ascii")
