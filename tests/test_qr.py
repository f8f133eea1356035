from __future__ import annotations

from wadash.qr import pairing_code_svg


def test_pairing_code_svg() -> None:
    svg = pairing_code_svg("2@abc,def,ghi")
    assert svg.lstrip().startswith(b"<")
    assert b"<svg" in svg
