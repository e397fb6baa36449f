import logging
from pathlib import Path

import pytest

from evidence_vault.utils import pdf_fonts
from evidence_vault.utils.pdf_fonts import EvidenceFonts, first_existing, register_evidence_fonts


@pytest.fixture(autouse=True)
def _reset_warnings(monkeypatch) -> None:
    monkeypatch.setattr(pdf_fonts, "_warned", set())


def _bundled_vera() -> Path:
    reportlab = pytest.importorskip("reportlab")
    path = Path(reportlab.__file__).parent / "fonts" / "Vera.ttf"
    if not path.is_file():
        pytest.skip("reportlab distribution without bundled Vera.ttf")
    return path


def test_base_fonts_are_used_when_no_ttf_exists(monkeypatch, caplog) -> None:
    monkeypatch.setattr(pdf_fonts, "TEXT_FONT_CANDIDATES", ())
    monkeypatch.setattr(pdf_fonts, "DIGEST_FONT_CANDIDATES", ())

    with caplog.at_level(logging.WARNING, logger="evidence_vault.utils.pdf_fonts"):
        first = register_evidence_fonts()
        second = register_evidence_fonts()

    assert first == second == EvidenceFonts(text="Helvetica", digest="Courier")
    assert first.unicode_text is False
    warnings = [record for record in caplog.records if "No Unicode TTF" in record.getMessage()]
    assert len(warnings) == 1


def test_missing_configured_font_is_reported_and_skipped(monkeypatch, caplog, tmp_path: Path) -> None:
    monkeypatch.setattr(pdf_fonts, "TEXT_FONT_CANDIDATES", ())
    monkeypatch.setattr(pdf_fonts, "DIGEST_FONT_CANDIDATES", ())
    missing = tmp_path / "absent.ttf"

    with caplog.at_level(logging.WARNING, logger="evidence_vault.utils.pdf_fonts"):
        fonts = register_evidence_fonts(str(missing))

    assert fonts.text == "Helvetica"
    assert any(str(missing) in record.getMessage() for record in caplog.records)


def test_configured_font_is_registered_for_text_and_digests(monkeypatch) -> None:
    vera = _bundled_vera()
    monkeypatch.setattr(pdf_fonts, "TEXT_FONT_CANDIDATES", ())
    monkeypatch.setattr(pdf_fonts, "DIGEST_FONT_CANDIDATES", (str(vera),))
    from reportlab.pdfbase import pdfmetrics

    fonts = register_evidence_fonts(str(vera))

    assert fonts == EvidenceFonts(text="EvidenceText", digest="EvidenceDigest")
    assert fonts.unicode_text is True
    registered = set(pdfmetrics.getRegisteredFontNames())
    assert {"EvidenceText", "EvidenceDigest"} <= registered


def test_first_existing_ignores_directories_and_blanks(tmp_path: Path) -> None:
    font = tmp_path / "face.ttf"
    font.write_bytes(b"\x00")

    assert first_existing(["", str(tmp_path), str(font)]) == str(font)
    assert first_existing([str(tmp_path / "nope.ttf")]) is None


def test_digest_cells_are_recognised() -> None:
    from evidence_vault.services.evidence_report import HEX_DIGEST

    assert HEX_DIGEST.match("a" * 64)
    assert not HEX_DIGEST.match("ORD-LEDGR1")
    assert not HEX_DIGEST.match("abc123")
