import pytest

from ocr_fusion.common.geometry import box_from_vertices, polygon_vertices, vertical_overlap_ratio
from ocr_fusion.common.text_quality import char_score, has_known_format, line_score, ocr_noise_score, text_similarity


@pytest.mark.parametrize("a,b", [
    ("Hemogl0bin 14.2 g/dL", "Hemoglobin 14.2 g/dL"),
    ("Patient Name", "Patlent Narne"),
    ("", "abc"),
    ("short", "a much longer line of text"),
])
def test_similarity_is_symmetric(a, b):
    assert text_similarity(a, b) == text_similarity(b, a)


def test_similarity_identity_and_bounds():
    assert text_similarity("Glucose 95 mg/dL", "Glucose 95 mg/dL") == 1.0
    assert text_similarity("", "") == 1.0
    assert text_similarity("abc", "") == 0.0
    assert text_similarity("Hemogl0bin 14.2 g/dL", "Hemoglobin 14.2 g/dL") == pytest.approx(0.95)


def test_known_formats():
    assert has_known_format("DOB 01/15/1980")
    assert has_known_format("Collected 2024-03-01")
    assert has_known_format("Call 555-123-4567")
    assert has_known_format("Call (555) 123-4567")
    assert not has_known_format("Hemoglobin 14.2 g/dL")


def test_noise_score_penalizes_confusables():
    assert ocr_noise_score("") == 1.0
    assert ocr_noise_score("abc") == 1.0
    assert ocr_noise_score("I1l0O") == 0.0
    assert ocr_noise_score("Hemoglobin") > ocr_noise_score("Hemogl0bin")


def test_line_score_prefers_clean_text():
    clean = "Patient Name: John Doe"
    garbage = "#### %%%% @@"
    assert line_score(clean) > line_score(garbage)
    assert line_score("DOB 01/15/1980 recorded") <= 1.0
    assert line_score("") == pytest.approx(0.7)


def test_char_score_penalizes_digit_lookalikes():
    assert char_score("o") > char_score("0")
    assert char_score("l") < char_score("k")
    assert char_score("a") == pytest.approx(0.9)
    assert char_score("#") == pytest.approx(0.5)


def test_vertical_overlap_ratio():
    assert vertical_overlap_ratio(0.1, 0.2, 0.1, 0.2) == pytest.approx(1.0)
    assert vertical_overlap_ratio(0.1, 0.2, 0.15, 0.25) == pytest.approx(0.5)
    assert vertical_overlap_ratio(0.1, 0.2, 0.3, 0.4) == 0.0
    assert vertical_overlap_ratio(0.5, 0.5, 0.5, 0.5) == 0.0


def test_box_from_vertices_pixel_and_normalized():
    pixel = [{"x": 100, "y": 200}, {"x": 900, "y": 200}, {"x": 900, "y": 260}, {"x": 100, "y": 260}]
    box = box_from_vertices(pixel, 1000, 2000)
    assert (box.x0, box.y0, box.x1, box.y1) == pytest.approx((0.1, 0.1, 0.9, 0.13))

    normalized = [{"x": 0.1, "y": 0.2}, {"x": 0.5, "y": 0.2}, {"x": 0.5, "y": 0.25}, {"x": 0.1, "y": 0.25}]
    box = box_from_vertices(normalized, 1000, 2000)
    assert (box.x0, box.y0, box.x1, box.y1) == pytest.approx((0.1, 0.2, 0.5, 0.25))


def test_unusable_polygons():
    assert polygon_vertices(None) is None
    assert polygon_vertices({"vertices": [{"x": 1, "y": 1}]}) is None
    assert polygon_vertices({"vertices": [], "normalizedVertices": [{}, {}, {}, {}]}) == [{}, {}, {}, {}]
    assert box_from_vertices(None) is None
