"""
auth/captcha.py -- Login captcha issuance and single-use verification.

The image is decorative entropy against casual scripted logins, not a
security-grade CAPTCHA: a distorted SVG with coloured, rotated digits plus
noise lines and dots, returned as a data URI so the SPA can drop it straight
into an <img src>.

Single-use rule: verify() takes the stored code with GETDEL before comparing,
so a captcha id can be attempted exactly once whatever the outcome. Of two
concurrent verifiers only one receives the code; the other sees "not found"
and fails closed.
"""

from __future__ import annotations

import base64
import random
import secrets
import uuid

from cache.store import SessionCache, captcha_key

_WIDTH = 120
_HEIGHT = 40
_FONT_SIZE = 20
_COLORS = ("#FF6B6B", "#4ECDC4", "#45B7D1", "#96CEB4", "#FECA57", "#FF9FF3")
_BACKGROUND = "#F8F9FA"


def render_captcha_svg(code: str, rng: random.Random | None = None) -> str:
    """Render code as a noisy SVG and return it as a base64 data URI."""
    rng = rng or random.Random()
    parts = [
        f'<svg width="{_WIDTH}" height="{_HEIGHT}" xmlns="http://www.w3.org/2000/svg">',
        f'<rect width="100%" height="100%" fill="{_BACKGROUND}"/>',
    ]
    for _ in range(3):
        parts.append(
            f'<line x1="{rng.uniform(0, _WIDTH):.1f}" y1="{rng.uniform(0, _HEIGHT):.1f}" '
            f'x2="{rng.uniform(0, _WIDTH):.1f}" y2="{rng.uniform(0, _HEIGHT):.1f}" '
            f'stroke="{rng.choice(_COLORS)}" stroke-width="1"/>'
        )
    for i, ch in enumerate(code):
        x = 20 + i * 20
        y = 25 + rng.uniform(-3, 3)
        rotation = rng.uniform(-15, 15)
        parts.append(
            f'<text x="{x}" y="{y:.1f}" font-family="Arial, sans-serif" font-size="{_FONT_SIZE}" '
            f'font-weight="bold" fill="{rng.choice(_COLORS)}" '
            f'transform="rotate({rotation:.1f} {x} {y:.1f})">{ch}</text>'
        )
    for _ in range(20):
        parts.append(
            f'<circle cx="{rng.uniform(0, _WIDTH):.1f}" cy="{rng.uniform(0, _HEIGHT):.1f}" '
            f'r="1" fill="{rng.choice(_COLORS)}"/>'
        )
    parts.append("</svg>")
    encoded = base64.b64encode("".join(parts).encode("utf-8")).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


class CaptchaService:
    def __init__(self, cache: SessionCache, ttl: int = 300) -> None:
        self._cache = cache
        self._ttl = ttl

    def generate(self) -> dict:
        """Issue a 4-digit code under a fresh opaque id. Returns {captchaId, captchaImage}."""
        code = f"{secrets.randbelow(10000):04d}"
        captcha_id = str(uuid.uuid4())
        self._cache.set_json(captcha_key(captcha_id), code, self._ttl)
        return {"captchaId": captcha_id, "captchaImage": render_captcha_svg(code)}

    def verify(self, captcha_id: str | None, code: str | None) -> bool:
        if not captcha_id or not code:
            return False
        stored = self._cache.pop_json(captcha_key(captcha_id))
        if stored is None:
            return False
        return str(stored).lower() == code.strip().lower()
