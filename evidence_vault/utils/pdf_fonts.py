"""Fonts for the evidence PDF.

Buyer names, addresses and user agents need a Unicode face; hashes,
license keys and token prefixes read better in a monospaced one so a
reviewer can compare them character by character. Both fall back to the
reportlab base-14 fonts when no TTF is available.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TEXT_FONT_NAME = "EvidenceText"
DIGEST_FONT_NAME = "EvidenceDigest"
TEXT_FALLBACK = "Helvetica"
DIGEST_FALLBACK = "Courier"

TEXT_FONT_CANDIDATES: tuple[str, ...] = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/noto/NotoSans-Regular.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
    "/System/Library/Fonts/Supplemental/Arial Unicode.ttf",
)
DIGEST_FONT_CANDIDATES: tuple[str, ...] = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationMono-Regular.ttf",
    "/usr/share/fonts/truetype/noto/NotoSansMono-Regular.ttf",
)

_warned: set[str] = set()


@dataclass(frozen=True)
class EvidenceFonts:
    text: str
    digest: str

    @property
    def unicode_text(self) -> bool:
        return self.text != TEXT_FALLBACK


def first_existing(candidates: tuple[str, ...] | list[str]) -> str | None:
    for candidate in candidates:
        if candidate and Path(candidate).is_file():
            return candidate
    return None


def _register(font_name: str, font_path: str) -> None:
    from reportlab.pdfbase import pdfmetrics
    from reportlab.pdfbase.ttfonts import TTFont

    if font_name not in set(pdfmetrics.getRegisteredFontNames()):
        pdfmetrics.registerFont(TTFont(font_name, font_path))
        logger.info("[PDF] Registered %s from %s", font_name, font_path)


def _warn_once(key: str, message: str, *args: object) -> None:
    if key not in _warned:
        logger.warning(message, *args)
        _warned.add(key)


def register_evidence_fonts(configured_path: str | None = None) -> EvidenceFonts:
    """Register the text and digest faces; a configured TTF takes precedence."""
    candidates = list(TEXT_FONT_CANDIDATES)
    if configured_path:
        if Path(configured_path).is_file():
            candidates.insert(0, configured_path)
        else:
            _warn_once(f"missing:{configured_path}", "[PDF] Configured font %s not found; using system fonts", configured_path)

    text_path = first_existing(candidates)
    if text_path:
        _register(TEXT_FONT_NAME, text_path)
        text = TEXT_FONT_NAME
    else:
        _warn_once("text", "[PDF] No Unicode TTF found; buyer names outside Latin-1 will not render")
        text = TEXT_FALLBACK

    digest_path = first_existing(DIGEST_FONT_CANDIDATES)
    if digest_path:
        _register(DIGEST_FONT_NAME, digest_path)
        digest = DIGEST_FONT_NAME
    else:
        digest = DIGEST_FALLBACK
    return EvidenceFonts(text=text, digest=digest)
