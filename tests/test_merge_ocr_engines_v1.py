import pytest

from ocr_fusion.common.utils import sha256_text
from ocr_fusion.consensus.merge_ocr_engines_v1.main import (
    document_agreement,
    merge_entities,
    merge_ocr_results,
    run_fusion_pipeline,
)
from schemas import Entity, FusionSettings, OcrMergeSettings, OcrResult, WinningEngine


def _vision_words(text, top):
    words = []
    x = 50
    for token in text.split():
        x1 = x + 12 * len(token)
        words.append({
            "boundingBox": {"vertices": [
                {"x": x, "y": top}, {"x": x1, "y": top}, {"x": x1, "y": top + 20}, {"x": x, "y": top + 20},
            ]},
            "symbols": [{"text": ch} for ch in token],
        })
        x = x1 + 10
    return words


def vision_result(*pages, confidence=0.85):
    """Word/polygon engine output; each page is a list of (text, top pixel) on a 1000x1000 page."""
    vision_pages = []
    texts = []
    for lines in pages:
        words = []
        for text, top in lines:
            words.extend(_vision_words(text, top))
            texts.append(text)
        vision_pages.append({"width": 1000, "height": 1000, "blocks": [{"paragraphs": [{"words": words}]}]})
    full_text = "\n".join(texts)
    return OcrResult(
        text=full_text,
        confidence=confidence,
        page_count=len(pages),
        raw_engine_output={"fullTextAnnotation": {"text": full_text, "pages": vision_pages}},
    )


def document_ai_result(*pages, confidence=0.8):
    """Line/anchor engine output; each page is a list of (text, normalized top)."""
    full_text = ""
    doc_pages = []
    for lines in pages:
        doc_lines = []
        for text, top in lines:
            start = len(full_text)
            full_text += text + "\n"
            doc_lines.append({"layout": {
                "textAnchor": {"textSegments": [{"startIndex": str(start), "endIndex": str(start + len(text))}]},
                "boundingPoly": {"normalizedVertices": [
                    {"x": 0.05, "y": top}, {"x": 0.9, "y": top}, {"x": 0.9, "y": top + 0.02}, {"x": 0.05, "y": top + 0.02},
                ]},
                "confidence": 0.95,
            }})
        doc_pages.append({"dimension": {"width": 1000, "height": 1000}, "paragraphs": [{"lines": doc_lines}]})
    document = {"text": full_text, "pages": doc_pages}
    return OcrResult(text=full_text, confidence=confidence, page_count=len(pages), raw_engine_output=document)


REPORT_A = [("Patient Name: John Doe", 100), ("Hemogl0bin 14.2 g/dL", 200), ("Glucose 95 mg/dL", 300)]
REPORT_B = [("Patient Name: John Doe", 0.1), ("Hemoglobin 14.2 g/dL", 0.2), ("Glucose 95 mg/dL", 0.3)]


def test_merge_fuses_agreeing_engines():
    result_a = vision_result(REPORT_A)
    result_b = document_ai_result(REPORT_B)
    outcome = merge_ocr_results(result_a, result_b, OcrMergeSettings())

    meta = outcome.metadata
    assert meta.fallback_used is False
    assert meta.low_agreement_flag is False
    assert meta.doc_agreement == pytest.approx((1.0 + 0.95 + 1.0) / 3)
    assert meta.paired_lines == 3
    assert meta.total_lines == 3
    assert meta.unique_a_lines == 0 and meta.unique_b_lines == 0
    assert meta.engine_a_coverage == pytest.approx(100.0)
    assert meta.engine_b_coverage == pytest.approx(100.0)
    assert meta.line_pairing_success_rate == pytest.approx(100.0)
    assert meta.line_agreement_threshold == 0.55
    assert [ln.line_index for ln in meta.per_line] == [0, 1, 2]

    result = outcome.result
    assert result.text == "Patient Name: John Doe\nHemoglobin 14.2 g/dL\nGlucose 95 mg/dL"
    assert result.page_count == 1
    assert result.confidence == pytest.approx(meta.average_line_confidence)
    raw = result.raw_engine_output
    assert raw["engine"] == "merged"
    assert raw["merge_metadata"]["paired_lines"] == 3
    source_a = raw["sources"]["engine_a"]
    assert source_a["text_hash"] == sha256_text(result_a.text)
    assert source_a["text_excerpt"] == result_a.text[:100]
    assert "text" not in source_a


def test_store_sources_keeps_full_text():
    result_a = vision_result(REPORT_A)
    result_b = document_ai_result(REPORT_B)
    outcome = merge_ocr_results(result_a, result_b, OcrMergeSettings(store_sources=True))
    source_b = outcome.result.raw_engine_output["sources"]["engine_b"]
    assert source_b["text"] == result_b.text
    assert "text_hash" not in source_b


def test_low_agreement_returns_better_single_engine():
    result_a = vision_result([("Patient Name: John Doe", 100)], confidence=0.85)
    result_b = document_ai_result([("Totally different words here", 0.1)], confidence=0.9)
    outcome = merge_ocr_results(result_a, result_b, OcrMergeSettings(min_agreement=0.7))

    assert outcome.metadata.doc_agreement < 0.7
    assert outcome.metadata.low_agreement_flag is True
    assert outcome.metadata.fallback_used is True
    assert outcome.result == result_b
    assert outcome.result.text == result_b.text


def test_low_agreement_tie_prefers_engine_a():
    result_a = vision_result([("Patient Name: John Doe", 100)], confidence=0.8)
    result_b = document_ai_result([("Totally different words here", 0.1)], confidence=0.8)
    outcome = merge_ocr_results(result_a, result_b)
    assert outcome.result == result_a


def test_forced_merge_on_low_agreement():
    result_a = vision_result([("Patient Name: John Doe", 100)])
    result_b = document_ai_result([("Totally different words here", 0.1)])
    outcome = merge_ocr_results(result_a, result_b, OcrMergeSettings(force_merge_on_low_agreement=True))
    assert outcome.metadata.low_agreement_flag is True
    assert outcome.metadata.fallback_used is False
    line = outcome.metadata.per_line[0]
    assert line.whole_line_chosen is True
    assert outcome.result.text in {"Patient Name: John Doe", "Totally different words here"}


def test_unique_line_survives_merge():
    result_a = vision_result([("Glucose 95 mg/dL", 100), ("Signed by lab director", 800)])
    result_b = document_ai_result([("Glucose 95 mg/dL", 0.1)])
    outcome = merge_ocr_results(result_a, result_b)

    assert outcome.result.text == "Glucose 95 mg/dL\nSigned by lab director"
    unique = outcome.metadata.per_line[1]
    assert unique.winning_engine == WinningEngine.ENGINE_A
    assert unique.contributions.engine_a == 100.0
    meta = outcome.metadata
    assert meta.doc_agreement == 1.0
    assert meta.unique_a_lines == 1
    assert meta.engine_a_coverage == pytest.approx(50.0)
    assert meta.engine_b_coverage == pytest.approx(100.0)
    assert meta.line_pairing_success_rate == pytest.approx(50.0)


def test_agreement_ignores_unique_lines():
    base = merge_ocr_results(vision_result(REPORT_A), document_ai_result(REPORT_B),
                             OcrMergeSettings(force_merge_on_low_agreement=True))
    extra_b = REPORT_B + [("Page 1 of 1", 0.95), ("Fax cover sheet", 0.6)]
    extended = merge_ocr_results(vision_result(REPORT_A), document_ai_result(extra_b),
                                 OcrMergeSettings(force_merge_on_low_agreement=True))
    assert extended.metadata.doc_agreement == pytest.approx(base.metadata.doc_agreement)
    assert extended.metadata.unique_b_lines == 2
    assert document_agreement(extended.metadata.per_line) == pytest.approx(base.metadata.doc_agreement)


def test_no_lines_at_all():
    empty_a = OcrResult(text="", confidence=0.3, raw_engine_output={"unexpected": True})
    empty_b = OcrResult(text="", confidence=0.2)
    outcome = merge_ocr_results(empty_a, empty_b)
    assert outcome.metadata.doc_agreement == 0.0
    assert outcome.metadata.total_lines == 0
    assert outcome.metadata.fallback_used is True
    assert outcome.result == empty_a


def test_plain_text_results_merge_in_reading_order():
    text = "Zinc panel\nAlbumin 4.1 g/dL\nMagnesium 2.0 mg/dL"
    result_a = OcrResult(text=text, confidence=0.85, raw_engine_output={"unexpected": True})
    result_b = OcrResult(text=text, confidence=0.8)
    outcome = merge_ocr_results(result_a, result_b)
    assert outcome.metadata.fallback_used is False
    assert outcome.result.text == text


def test_page_workers_do_not_change_outcome():
    pages_a = [REPORT_A, [("Cholesterol 180 mg/dL", 150), ("Triglycerides 120 mg/dL", 250)]]
    pages_b = [REPORT_B, [("Cholesterol 180 mg/dL", 0.15), ("Triglycerides 12O mg/dL", 0.25)]]
    sequential = merge_ocr_results(vision_result(*pages_a), document_ai_result(*pages_b))
    threaded = merge_ocr_results(vision_result(*pages_a), document_ai_result(*pages_b),
                                 OcrMergeSettings(page_workers=4))
    assert threaded.result.text == sequential.result.text
    assert threaded.metadata.per_line == sequential.metadata.per_line
    assert sequential.result.page_count == 2
    assert [ln.page_index for ln in sequential.metadata.per_line] == [0, 0, 0, 1, 1]


def test_merge_entities_keeps_highest_confidence():
    a = [Entity(type="lab_test_name", mention_text="Glucose", confidence=0.6),
         Entity(type="physician", mention_text="Dr. Smith", confidence=0.85)]
    b = [Entity(type="lab_test_name", mention_text="Glucose", confidence=0.9),
         Entity(type="lab_test_name", mention_text="Iron", confidence=0.7)]
    merged = merge_entities(a, b)
    by_key = {e.dedup_key: e for e in merged}
    assert len(merged) == 3
    assert by_key[("lab_test_name", "Glucose")].confidence == 0.9
    assert merge_entities(None, []) == []


def test_merged_result_unions_engine_entities():
    result_a = vision_result(REPORT_A).model_copy(update={
        "entities": [Entity(type="patient_name", mention_text="John Doe", confidence=0.9)],
    })
    result_b = document_ai_result(REPORT_B).model_copy(update={
        "entities": [Entity(type="patient_name", mention_text="John Doe", confidence=0.95)],
    })
    outcome = merge_ocr_results(result_a, result_b)
    assert [e.confidence for e in outcome.result.entities] == [0.95]
    assert outcome.entities == outcome.result.entities


def test_pipeline_post_processes_and_extracts_entities():
    report_a = [("Patient Name: John Doe", 100), ("Glucose 95 mg/dL Normal", 200), ("See teh note", 300)]
    report_b = [("Patient Name: John Doe", 0.1), ("Glucose 95 mg/dL Normal", 0.2), ("See teh note", 0.3)]
    settings = FusionSettings(post_processing={"enabled": True})
    outcome = run_fusion_pipeline(vision_result(report_a), document_ai_result(report_b), settings)

    assert outcome.post_processed.text.endswith("See the note")
    assert outcome.result.text.endswith("See teh note")
    corrections = outcome.metadata.post_processing_corrections
    assert [(c.original, c.corrected, c.applied) for c in corrections] == [("teh", "the", True)]
    assert outcome.metadata.quality_improvement_score == pytest.approx(outcome.post_processed.quality_score)
    assert outcome.metadata.quality_improvement_score > 0

    found = {(e.type, e.mention_text) for e in outcome.entities}
    assert ("patient_name", "John Doe") in found
    assert ("lab_test_name", "Glucose") in found
    assert ("result_status", "Normal") in found
    assert not any(t == "medical_test" for t, _ in found)


def test_pipeline_keeps_engine_entities():
    entity = Entity(type="patient_name", mention_text="John Doe", confidence=0.9)
    result_a = vision_result(REPORT_A).model_copy(update={"entities": [entity]})
    outcome = run_fusion_pipeline(result_a, document_ai_result(REPORT_B))
    assert outcome.entities == [entity]
    assert outcome.post_processed is None


def test_pipeline_with_merge_disabled_passes_engine_a_through():
    result_a = vision_result(REPORT_A)
    settings = FusionSettings(ocr_merge={"enabled": False})
    outcome = run_fusion_pipeline(result_a, document_ai_result(REPORT_B), settings)
    assert outcome.result == result_a
    assert outcome.metadata.fallback_used is True
    assert outcome.entities  # extracted from text since the engine had none
