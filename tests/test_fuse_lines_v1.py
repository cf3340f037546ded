import pytest

from ocr_fusion.common.text_quality import line_score
from ocr_fusion.consensus.fuse_lines_v1.main import (
    fuse_characters,
    fuse_high_agreement,
    fuse_line_pair,
    fuse_tokens,
)
from schemas import BoundingBox, Line, LinePair, WinningEngine


def _line(text, confidence=None):
    return Line(text=text, bounding_box=BoundingBox(x0=0.1, y0=0.2, x1=0.9, y1=0.22), confidence=confidence)


def test_identical_lines_round_trip():
    text = "Glucose 95 mg/dL"
    fused = fuse_line_pair(LinePair(engine_a=_line(text), engine_b=_line(text)))
    assert fused.line_agreement == 1.0
    assert fused.whole_line_chosen is False
    assert fused.winning_engine == WinningEngine.FUSED
    assert fused.text == text
    assert fused.contributions.engine_a == pytest.approx(50.0)
    assert fused.contributions.engine_b == pytest.approx(50.0)
    assert fused.confidence == pytest.approx(0.7 + 0.3 * line_score(text))


@pytest.mark.parametrize("a,b", [
    ("Hemogl0bin 14.2 g/dL", "Hemoglobin 14.2 g/dL"),
    ("Hemoglobin 14.2 g/dL", "Hemogl0bin 14.2 g/dL"),
])
def test_confusable_digit_loses_character_vote(a, b):
    fused = fuse_line_pair(LinePair(engine_a=_line(a), engine_b=_line(b)))
    assert fused.line_agreement > 0.55
    assert fused.text == "Hemoglobin 14.2 g/dL"
    assert fused.winning_engine == WinningEngine.FUSED
    assert fused.is_paired


def test_low_agreement_picks_whole_line():
    good = "Patient Name: John Doe"
    bad = "#### %%%% @@"
    fused = fuse_line_pair(LinePair(engine_a=_line(bad), engine_b=_line(good)))
    assert fused.line_agreement < 0.55
    assert fused.whole_line_chosen is True
    assert fused.winning_engine == WinningEngine.ENGINE_B
    assert fused.text == good
    assert fused.confidence == pytest.approx(line_score(good))
    assert fused.contributions.engine_b == 100.0
    assert fused.contributions.engine_a == 0.0


def test_low_agreement_tie_goes_to_engine_a():
    assert line_score("happy") == line_score("gamma")
    fused = fuse_line_pair(LinePair(engine_a=_line("happy"), engine_b=_line("gamma")))
    assert fused.whole_line_chosen is True
    assert fused.winning_engine == WinningEngine.ENGINE_A
    assert fused.text == "happy"


def test_threshold_is_configurable():
    pair = LinePair(engine_a=_line("Hemogl0bin 14.2 g/dL"), engine_b=_line("Hemoglobin 14.2 g/dL"))
    fused = fuse_line_pair(pair, line_mix_threshold=0.99)
    assert fused.whole_line_chosen is True
    assert fused.text == "Hemoglobin 14.2 g/dL"


def test_one_sided_lines_pass_through():
    only_a = fuse_line_pair(LinePair(engine_a=_line("Signed by lab director", confidence=0.93)))
    assert only_a.text == "Signed by lab director"
    assert only_a.confidence == pytest.approx(0.93)
    assert only_a.line_agreement == 1.0
    assert only_a.whole_line_chosen is True
    assert only_a.winning_engine == WinningEngine.ENGINE_A
    assert only_a.contributions.engine_a == 100.0
    assert not only_a.is_paired

    only_b = fuse_line_pair(LinePair(engine_b=_line("Page 1 of 2")))
    assert only_b.confidence == pytest.approx(0.8)
    assert only_b.winning_engine == WinningEngine.ENGINE_B
    assert only_b.contributions.engine_b == 100.0


def test_empty_pair_is_a_defect():
    with pytest.raises(ValueError):
        fuse_line_pair(LinePair.model_construct(engine_a=None, engine_b=None))


def test_extra_tokens_are_kept():
    text, shares = fuse_high_agreement("Glucose 95 mg/dL", "Glucose 95 mg/dL H")
    assert text == "Glucose 95 mg/dL H"
    assert shares["engine_a"] + shares["engine_b"] == pytest.approx(100.0)
    assert shares["engine_b"] > shares["engine_a"]


def test_spacing_is_normalized():
    text, _ = fuse_high_agreement("Glucose   95  mg/dL", "Glucose 95 mg/dL")
    assert text == "Glucose 95 mg/dL"


def test_no_tokens_splits_evenly():
    text, shares = fuse_high_agreement("", "   ")
    assert text == ""
    assert shares == {"engine_a": 50.0, "engine_b": 50.0}


def test_token_and_character_votes():
    assert fuse_characters("Hemogl0bin", "Hemoglobin") == "Hemoglobin"
    assert fuse_characters("abc", "abcde") == "abcde"
    assert fuse_characters("rnm", "rnm") == "rnm"
    # Too different to vote per character: the better token wins whole.
    assert fuse_tokens("14.2", "g/dL") in {"14.2", "g/dL"}
    assert fuse_tokens("mg/dL", "#####") == "mg/dL"
