import argparse
import logging
from typing import Any, Dict, List, Optional

from ocr_fusion.common.utils import ProgressLogger, read_json, save_json
from ocr_fusion.extract.extract_entities_text_v1.main import extract_entities_from_text
from schemas import Entity, OcrResult

logger = logging.getLogger(__name__)

# The word/polygon engine reports no document confidence.
VISION_DEFAULT_CONFIDENCE = 0.85
DOCUMENT_AI_DEFAULT_CONFIDENCE = 0.8
MIN_ENTITY_CONFIDENCE = 0.5


def _offset(value: Any) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _confidence(value: Any) -> float:
    """Unparseable (or NaN) confidences read as 0 so the entity floor drops them."""
    try:
        parsed = float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0
    return parsed if parsed == parsed else 0.0


def ocr_result_from_vision_response(response: Dict[str, Any], output_ref: Optional[str] = None) -> OcrResult:
    """
    Build an OcrResult from a DOCUMENT_TEXT_DETECTION response.

    Accepts a single response (`{"fullTextAnnotation": ...}`) or a batch output
    file (`{"responses": [...]}`), in which case the first response is used.
    Entities always come from pattern extraction over the untruncated text.
    """
    if isinstance(response.get("responses"), list):
        responses = response["responses"]
        if not responses:
            raise ValueError("No responses in batch result")
        response = responses[0] or {}
    annotation = response.get("fullTextAnnotation")
    if not isinstance(annotation, dict):
        raise ValueError("No fullTextAnnotation in response")

    full_text = annotation.get("text") or ""
    page_count = len(annotation.get("pages") or []) or 1
    entities = extract_entities_from_text(full_text)
    logger.info("vision intake: %d pages, %d chars, %d entities", page_count, len(full_text), len(entities))
    return OcrResult(
        text=full_text,
        confidence=VISION_DEFAULT_CONFIDENCE,
        page_count=page_count,
        entities=entities,
        raw_engine_output={"fullTextAnnotation": annotation},
        output_ref=output_ref,
    )


def document_ai_entities(document: Dict[str, Any]) -> List[Entity]:
    """Structured entities at or above MIN_ENTITY_CONFIDENCE; offsets from the first text segment."""
    entities = []
    for raw in document.get("entities") or []:
        if not isinstance(raw, dict):
            continue
        confidence = _confidence(raw.get("confidence"))
        if confidence < MIN_ENTITY_CONFIDENCE:
            continue
        anchor = raw.get("textAnchor")
        segments = anchor.get("textSegments") if isinstance(anchor, dict) else None
        first = segments[0] if isinstance(segments, list) and segments and isinstance(segments[0], dict) else {}
        entities.append(Entity(
            type=raw.get("type") or "unknown",
            mention_text=raw.get("mentionText") or "",
            confidence=min(1.0, confidence),
            start_offset=_offset(first.get("startIndex")),
            end_offset=_offset(first.get("endIndex")),
        ))
    return entities


def ocr_result_from_document_ai(document: Dict[str, Any], output_ref: Optional[str] = None) -> OcrResult:
    """
    Build an OcrResult from a processed Document (or `{"document": ...}` wrapper).

    When the processor returned no entities at all, entities are extracted from
    the text instead. Confidence is the mean entity confidence, or 0.8 without any.
    """
    if isinstance(document.get("document"), dict):
        document = document["document"]
    full_text = document.get("text") or ""
    if document.get("entities"):
        entities = document_ai_entities(document)
    else:
        logger.warning("no structured entities in document; falling back to pattern extraction")
        entities = extract_entities_from_text(full_text)
    if entities:
        confidence = sum(e.confidence for e in entities) / len(entities)
    else:
        confidence = DOCUMENT_AI_DEFAULT_CONFIDENCE
    page_count = len(document.get("pages") or []) or 1
    logger.info("document ai intake: %d pages, %d entities, confidence %.2f", page_count, len(entities), confidence)
    return OcrResult(
        text=full_text,
        confidence=confidence,
        page_count=page_count,
        entities=entities,
        raw_engine_output=document,
        output_ref=output_ref,
    )


LOADERS = {
    "vision": ocr_result_from_vision_response,
    "document_ai": ocr_result_from_document_ai,
}


def main():
    parser = argparse.ArgumentParser(description="Convert a raw engine response into an OcrResult JSON.")
    parser.add_argument("--engine", required=True, choices=sorted(LOADERS), help="Which engine produced the response")
    parser.add_argument("--response", required=True, help="Raw engine response JSON")
    parser.add_argument("--out", required=True, help="OcrResult JSON")
    parser.add_argument("--output-ref", help="Where the engine wrote its output, recorded as output_ref")
    parser.add_argument("--progress-file", help="Path to pipeline_events.jsonl")
    parser.add_argument("--state-file", help="Path to pipeline_state.json")
    parser.add_argument("--run-id", help="Run identifier for logging")
    args = parser.parse_args()

    progress = ProgressLogger(state_path=args.state_file, progress_path=args.progress_file, run_id=args.run_id)
    progress.log("intake", "running", message=f"Loading {args.engine} response", artifact=args.out,
                 module_id="load_engine_result_v1")
    try:
        result = LOADERS[args.engine](read_json(args.response), output_ref=args.output_ref)
    except (OSError, ValueError):
        progress.log("intake", "failed", message=f"Unusable {args.engine} response", artifact=args.out,
                     module_id="load_engine_result_v1")
        raise
    save_json(args.out, result.model_dump(mode="json"))
    progress.log("intake", "done", current=1, total=1,
                 message=f"{result.page_count} pages, {len(result.entities)} entities", artifact=args.out,
                 module_id="load_engine_result_v1")
    print(f"Loaded {args.engine} response → {args.out}")


if __name__ == "__main__":
    main()
