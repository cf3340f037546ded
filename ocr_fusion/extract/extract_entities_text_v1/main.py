import argparse
import logging
import re
from typing import List

from ocr_fusion.common.utils import ProgressLogger, read_json, save_jsonl
from schemas import Entity

logger = logging.getLogger(__name__)

# Labels match in any case; the captured names themselves must be capitalized and stay on one line.
PATIENT_NAME_RE = re.compile(r"(?i:Patient\s+Name):?[ \t]*([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)+)")
DOB_RE = re.compile(
    r"(?:Date\s+of\s+Birth|DOB|Birth\s*Date):?\s*"
    r"(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4}|\d{1,2}-\d{1,2}-\d{2,4})",
    re.IGNORECASE,
)
TEST_DATE_RE = re.compile(
    r"(?:Test\s+Date|Date\s+of\s+Test|Collection\s+Date):?\s*(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4})",
    re.IGNORECASE,
)
PHYSICIAN_RE = re.compile(r"(?i:Physician|Doctor|Provider):?[ \t]*(Dr\.?[ \t]+[A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)?)")
# Hemoglobin 14.2 g/dL
LAB_RESULT_RE = re.compile(r"([A-Z][a-zA-Z \t()]+?)[ \t]+(\d+\.?\d*)[ \t]+([a-zA-Z0-9/^]+)")
REFERENCE_RANGE_RE = re.compile(
    r"(?:REFERENCE RANGE|Reference|Range):?[ \t]*([<>]?[ \t]*\d+\.?\d*[ \t]*-?[ \t]*\d*\.?\d*)",
    re.IGNORECASE,
)
SECTION_RE = re.compile(
    r"(?:TEST NAME|LABORATORY RESULTS|VITAL SIGNS|BLOOD WORK|IMAGING REPORT|PRESCRIPTION|DIAGNOSIS)",
    re.IGNORECASE,
)
NOTES_RE = re.compile(r"(?i:Notes?|Remarks?|Comments?):?[ \t]*([A-Z][^.\n]{10,200}\.)")
COMMON_TESTS_RE = re.compile(
    r"\b(Hemoglobin|White Blood Cells|Platelet Count|Glucose|Cholesterol|Triglycerides|HDL|LDL|Creatinine|"
    r"Blood Urea Nitrogen|BUN|A1C|HbA1c|TSH|T3|T4|Vitamin D|Iron|Ferritin|Calcium|Sodium|Potassium)\b",
    re.IGNORECASE,
)
STATUS_RE = re.compile(r"\b(Normal|Abnormal|High|Low|Critical|Within Range)\b", re.IGNORECASE)

# (entity type, pattern, confidence); group 1 is the mention, offsets cover the whole match.
LABELED_FIELDS = [
    ("patient_name", PATIENT_NAME_RE, 0.9),
    ("date_of_birth", DOB_RE, 0.95),
    ("test_date", TEST_DATE_RE, 0.95),
    ("physician", PHYSICIAN_RE, 0.85),
]


def _labeled(entity_type: str, pattern: re.Pattern, confidence: float, text: str) -> List[Entity]:
    return [
        Entity(
            type=entity_type,
            mention_text=m.group(1).strip(),
            confidence=confidence,
            start_offset=m.start(),
            end_offset=m.end(),
        )
        for m in pattern.finditer(text)
    ]


def _lab_results(text: str) -> List[Entity]:
    found = []
    for m in LAB_RESULT_RE.finditer(text):
        name = m.group(1).strip()
        if not (3 < len(name) < 50 and re.search(r"[A-Za-z]{3,}", name)):
            continue
        name_end = m.start() + len(name)
        found.append(Entity(type="lab_test_name", mention_text=name, confidence=0.85,
                            start_offset=m.start(), end_offset=name_end))
        found.append(Entity(type="lab_test_value", mention_text=f"{m.group(2)} {m.group(3)}", confidence=0.85,
                            start_offset=name_end, end_offset=m.end()))
    return found


def extract_entities_from_text(text: str) -> List[Entity]:
    """
    Pattern-based medical entities for when an engine returned none.

    Entities are listed by pattern family, then by position. A common test name
    already covered by a lab_test_name match is not repeated as medical_test.
    Only entity types are logged, never the mentions.
    """
    if not text or not text.strip():
        return []

    entities: List[Entity] = []
    for entity_type, pattern, confidence in LABELED_FIELDS:
        entities.extend(_labeled(entity_type, pattern, confidence, text))
    entities.extend(_lab_results(text))
    entities.extend(_labeled("reference_range", REFERENCE_RANGE_RE, 0.8, text))
    entities.extend(
        Entity(type="document_section", mention_text=m.group(0).strip(), confidence=0.95,
               start_offset=m.start(), end_offset=m.end())
        for m in SECTION_RE.finditer(text)
    )
    entities.extend(_labeled("notes", NOTES_RE, 0.7, text))

    lab_spans = [(e.start_offset, e.end_offset) for e in entities if e.type == "lab_test_name"]
    for m in COMMON_TESTS_RE.finditer(text):
        if any(start <= m.start() <= end for start, end in lab_spans):
            continue
        entities.append(Entity(type="medical_test", mention_text=m.group(1), confidence=0.9,
                               start_offset=m.start(), end_offset=m.end()))
    entities.extend(_labeled("result_status", STATUS_RE, 0.75, text))

    counts = {}
    for e in entities:
        counts[e.type] = counts.get(e.type, 0) + 1
    logger.debug("extracted entity types: %s", counts)
    return entities


def main():
    parser = argparse.ArgumentParser(description="Extract medical entities from OCR text by pattern.")
    parser.add_argument("--input", required=True, help="OcrResult or MergeOutcome JSON")
    parser.add_argument("--out", required=True, help="entities.jsonl")
    parser.add_argument("--progress-file", help="Path to pipeline_events.jsonl")
    parser.add_argument("--state-file", help="Path to pipeline_state.json")
    parser.add_argument("--run-id", help="Run identifier for logging")
    args = parser.parse_args()

    progress = ProgressLogger(state_path=args.state_file, progress_path=args.progress_file, run_id=args.run_id)
    data = read_json(args.input)
    if "result" in data:
        post = data.get("post_processed") or {}
        text = post.get("text") or (data.get("result") or {}).get("text")
    else:
        text = data.get("text")
    progress.log("extract_entities", "running", message="Extracting entities", artifact=args.out,
                 module_id="extract_entities_text_v1")
    entities = extract_entities_from_text(text or "")
    save_jsonl(args.out, [e.model_dump() for e in entities])
    progress.log("extract_entities", "done", current=len(entities), total=len(entities),
                 message=f"Extracted {len(entities)} entities", artifact=args.out,
                 module_id="extract_entities_text_v1")
    print(f"Extracted {len(entities)} entities → {args.out}")


if __name__ == "__main__":
    main()
