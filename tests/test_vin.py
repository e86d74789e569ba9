"""
VIN handling tests: cleaning, OCR correction, check digit, field scoring.

Pure functions only. No engine, no clock.

Run: pytest tests/ -v
"""

from __future__ import annotations

from fleet_reconciler.models import FieldKind, FieldStatus
from fleet_reconciler.vin import (
    clean_vin,
    compute_check_digit,
    correct_ocr_errors,
    decode_engine,
    extract_vin_token,
    has_valid_check_digit,
    is_well_formed,
    manufacturer_for,
    select_vin_candidate,
    validate_vin,
)


# ─── Test Data ───────────────────────────────────────────────────────

VALID_VIN = "1HGBH41JXMN109186"
VALID_VIN_2 = "1M8GDM9AXKP042788"
OCR_DAMAGED_VIN = "1HGBH41JXMNIO9186"
BAD_CHECK_DIGIT_VIN = "1HGBH41J5MN109186"


# ═══════════════════════════════════════════════════════════════════════
# CLEANING & OCR CORRECTION
# ═══════════════════════════════════════════════════════════════════════


class TestCleaning:
    def test_uppercases_and_strips_punctuation(self):
        assert clean_vin(" 1hgbh41-jxmn109186 ") == VALID_VIN

    def test_none_is_empty(self):
        assert clean_vin(None) == ""

    def test_non_string_values_are_stringified(self):
        assert clean_vin(12345) == "12345"


class TestOcrCorrection:
    """Only I, O and Q are ever replaced: they are illegal in a VIN."""

    def test_corrects_i_and_o(self):
        corrected, corrections = correct_ocr_errors(OCR_DAMAGED_VIN)
        assert corrected == VALID_VIN
        assert corrections == ["Position 12: 'I' -> '1'", "Position 13: 'O' -> '0'"]

    def test_q_becomes_zero(self):
        corrected, _ = correct_ocr_errors("Q1")
        assert corrected == "01"

    def test_legal_characters_untouched(self):
        corrected, corrections = correct_ocr_errors(VALID_VIN)
        assert corrected == VALID_VIN
        assert corrections == []


# ═══════════════════════════════════════════════════════════════════════
# CHECK DIGIT
# ═══════════════════════════════════════════════════════════════════════


class TestCheckDigit:
    def test_remainder_ten_is_x(self):
        assert compute_check_digit(VALID_VIN) == "X"
        assert compute_check_digit(VALID_VIN_2) == "X"

    def test_valid_vins_pass(self):
        assert has_valid_check_digit(VALID_VIN)
        assert has_valid_check_digit(VALID_VIN_2)

    def test_corrupted_check_digit_fails(self):
        assert not has_valid_check_digit(BAD_CHECK_DIGIT_VIN)

    def test_wrong_length_cannot_be_computed(self):
        assert compute_check_digit("1HGBH41JXMN10918") is None
        assert not has_valid_check_digit("1HGBH41JXMN10918")

    def test_illegal_letter_cannot_be_computed(self):
        assert compute_check_digit(OCR_DAMAGED_VIN) is None


# ═══════════════════════════════════════════════════════════════════════
# FIELD VALIDATION
# ═══════════════════════════════════════════════════════════════════════


class TestValidateVin:
    def test_valid_vin_scores_full_marks(self):
        result = validate_vin("vin", VALID_VIN)
        assert result.kind == FieldKind.VIN
        assert result.final_value == VALID_VIN
        assert result.confidence == 100
        assert result.status == FieldStatus.EXCELLENT
        assert result.corrections == []
        assert result.warnings == []

    def test_corrupted_check_digit_is_questionable_not_raised(self):
        result = validate_vin("vin", BAD_CHECK_DIGIT_VIN)
        assert result.status == FieldStatus.QUESTIONABLE
        assert result.confidence >= 75
        assert any("expected 'X'" in w for w in result.warnings)

    def test_ocr_damage_is_corrected_and_reversible(self):
        result = validate_vin("vin", OCR_DAMAGED_VIN)
        assert result.final_value == VALID_VIN
        assert result.original_value == OCR_DAMAGED_VIN
        assert len(result.corrections) == 2
        assert result.confidence == 85
        assert result.status == FieldStatus.EXCELLENT

    def test_sixteen_characters_is_likely_vin(self):
        result = validate_vin("vin", "1HGBH41JXMN10918")
        assert result.confidence == 85
        assert any("length mismatch" in n for n in result.notes)
        assert result.warnings

    def test_nineteen_characters_truncated_to_seventeen(self):
        result = validate_vin("vin", VALID_VIN + "00")
        assert result.final_value == VALID_VIN
        assert result.confidence == 85

    def test_short_value_scores_low_length(self):
        result = validate_vin("vin", "ABC123")
        assert result.confidence == 50
        assert not is_well_formed(result.final_value)

    def test_empty_value_is_questionable(self):
        result = validate_vin("vin", "  --  ")
        assert result.confidence == 0
        assert result.status == FieldStatus.QUESTIONABLE
        assert result.warnings

    def test_known_manufacturer_noted_without_changing_score(self):
        result = validate_vin("vin", VALID_VIN)
        assert "WMI 1HG: Honda (USA)" in result.notes
        assert result.confidence == 100

    def test_unknown_manufacturer_noted(self):
        result = validate_vin("vin", VALID_VIN_2)
        assert "Unrecognized WMI code 1M8" in result.notes


# ═══════════════════════════════════════════════════════════════════════
# MANUFACTURER & ENGINE
# ═══════════════════════════════════════════════════════════════════════


class TestManufacturer:
    def test_freightliner_is_not_ford(self):
        assert manufacturer_for("1FVACWDT0XHA12345") == "Freightliner (USA)"
        assert manufacturer_for("1FTFW1E50JFA12345") == "Ford (USA)"

    def test_unknown_prefix(self):
        assert manufacturer_for("ZZZ00000000000000") is None

    def test_freightliner_engine_decoded(self):
        assert decode_engine("1FVACWDT0XHA12345") == "Cummins ISX 15L Diesel"

    def test_unlisted_engine_code(self):
        assert decode_engine("5VCACWDZ0XHA12345") == "unlisted engine code Z"

    def test_no_engine_table_for_other_makers(self):
        assert decode_engine(VALID_VIN) is None
        assert decode_engine("1FVACW") is None


class TestCandidateSelection:
    def test_prefers_seventeen_characters(self):
        short = validate_vin("a", "1HGBH41JXMN10918")
        full = validate_vin("b", VALID_VIN)
        assert select_vin_candidate([short, full]) is full

    def test_falls_back_to_fifteen_or_sixteen(self):
        short = validate_vin("a", "1HGBH41JXMN10918")
        assert select_vin_candidate([short]) is short

    def test_none_when_nothing_well_formed(self):
        assert select_vin_candidate([validate_vin("a", "ABC123")]) is None
        assert select_vin_candidate([]) is None


class TestTokenExtraction:
    def test_finds_vin_in_free_text(self):
        assert extract_vin_token(f"VIN: {VALID_VIN} exp 2025") == VALID_VIN

    def test_corrects_ocr_damage_in_token(self):
        assert extract_vin_token(f"id {OCR_DAMAGED_VIN}") == VALID_VIN

    def test_skips_long_words_without_digits(self):
        assert extract_vin_token("REGISTRATIONCERTIFICATE COMMERCIALVEHICLES") is None

    def test_non_string_is_none(self):
        assert extract_vin_token(None) is None
