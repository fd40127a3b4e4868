"""
core/text.py -- Text helpers shared by the catalog and content layers.
"""

import re
import unicodedata


def slugify(text: str) -> str:
    """URL slug with Vietnamese diacritics folded.

    đ/Đ has no Unicode decomposition, so it is mapped by hand before NFKD:
    "Hướng dẫn kích hoạt" -> "huong-dan-kich-hoat".
    """
    text = (text or "").replace("đ", "d").replace("Đ", "D")
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    text = re.sub(r"[^a-z0-9]+", "-", text.lower())
    return text.strip("-")
