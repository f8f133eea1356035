from __future__ import annotations

import qrcode
from qrcode.image.svg import SvgImage


def pairing_code_svg(code: str) -> bytes:
    """Render a pairing code as an SVG QR image for Linked devices -> Link a device."""

    img = qrcode.make(code, image_factory=SvgImage)
    return img.to_string()
