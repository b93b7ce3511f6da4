# carbot/utils/phone.py

from __future__ import annotations

import re


def digits_only(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def mask_phone(phone: str) -> str:
    """
    Enmascara el número para respuestas de API y logs.
    5511999998888 / 11999998888 / (11) 99999-8888 -> "11 *****-8888"
    """
    if not phone:
        return ""

    d = digits_only(phone)
    if len(d) < 10:
        if len(d) <= 4:
            return "****"
        return f"{d[:2]} ****-{d[-2:]}"

    # con código de país (55) el DDD viene después
    area = d[2:4] if len(d) >= 12 else d[:2]
    return f"{area} *****-{d[-4:]}"


def mask_for_log(phone: str) -> str:
    p = (phone or "").strip()
    if len(p) <= 8:
        return "****"
    return p[:8] + "****"


def wa_me_link(phone: str) -> str:
    return f"https://wa.me/{digits_only(phone)}"
