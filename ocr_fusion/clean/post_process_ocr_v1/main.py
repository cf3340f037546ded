import argparse
import logging
import re
from typing import Callable, List, Optional, Tuple

from ocr_fusion.common.utils import ProgressLogger, load_fusion_settings, read_json, save_json
from schemas import Correction, CorrectionKind, PostProcessedResult, PostProcessingSettings, TextSpan

logger = logging.getLogger(__name__)

LanguageModel = Callable[[str], List[Correction]]

# (pattern, replacement template, confidence, kind)
CONFUSION_PATTERNS: List[Tuple[re.Pattern, str, float, CorrectionKind]] = [
    (re.compile(r"\b([a-z]+)l([a-z]+)\b"), r"\1I\2", 0.6, CorrectionKind.REGEX),
    (re.compile(r"\b([A-Z]+)0([A-Z]+)\b"), r"\1O\2", 0.7, CorrectionKind.REGEX),
    (re.compile(r"\b([a-z]+)rn([a-z]+)\b"), r"\1m\2", 0.8, CorrectionKind.REGEX),
    (re.compile(r"\bteh\b", re.IGNORECASE), "the", 0.9, CorrectionKind.CONTEXT),
    (re.compile(r"\badn\b", re.IGNORECASE), "and", 0.9, CorrectionKind.CONTEXT),
    (re.compile(r"\btaht\b", re.IGNORECASE), "that", 0.9, CorrectionKind.CONTEXT),
]

SLASH_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
PHONE_RE = re.compile(r"\b(\d{3})[.\s-]?(\d{3})[.\s-]?(\d{4})\b")
DATE_CONFIDENCE = 0.9
PHONE_CONFIDENCE = 0.95


def _candidate(match: re.Match, corrected: str, confidence: float, kind: CorrectionKind) -> Optional[Correction]:
    original = match.group(0)
    if original == corrected:
        return None
    return Correction(
        original=original,
        corrected=corrected,
        confidence=confidence,
        kind=kind,
        position=TextSpan(start=match.start(), end=match.end()),
    )


def find_regex_corrections(text: str) -> List[Correction]:
    """Common OCR confusions (l/I, 0/O, rn/m) and transposed short words."""
    found = []
    for pattern, template, confidence, kind in CONFUSION_PATTERNS:
        for m in pattern.finditer(text):
            c = _candidate(m, m.expand(template), confidence, kind)
            if c:
                found.append(c)
    return found


def find_format_corrections(text: str) -> List[Correction]:
    """Zero-pad month/day in dates and normalize 10-digit phones to NNN-NNN-NNNN."""
    found = []
    for m in SLASH_DATE_RE.finditer(text):
        corrected = f"{m.group(1).zfill(2)}/{m.group(2).zfill(2)}/{m.group(3)}"
        c = _candidate(m, corrected, DATE_CONFIDENCE, CorrectionKind.FORMAT)
        if c:
            found.append(c)
    for m in ISO_DATE_RE.finditer(text):
        corrected = f"{m.group(1)}-{m.group(2).zfill(2)}-{m.group(3).zfill(2)}"
        c = _candidate(m, corrected, DATE_CONFIDENCE, CorrectionKind.FORMAT)
        if c:
            found.append(c)
    for m in PHONE_RE.finditer(text):
        c = _candidate(m, f"{m.group(1)}-{m.group(2)}-{m.group(3)}", PHONE_CONFIDENCE, CorrectionKind.FORMAT)
        if c:
            found.append(c)
    return found


def no_language_model(text: str) -> List[Correction]:
    """Default language-model hook: proposes nothing."""
    return []


def apply_corrections(text: str, candidates: List[Correction], threshold: float) -> Tuple[str, List[Correction]]:
    """
    Apply qualifying candidates found on `text`.

    Candidates at or above `threshold` are spliced in right to left so earlier
    offsets stay valid; one overlapping an already applied span is skipped.
    Returns the new text and every candidate with its `applied` flag set.
    """
    applied_idx = set()
    taken: List[Tuple[int, int]] = []
    order = sorted(range(len(candidates)), key=lambda i: candidates[i].position.start, reverse=True)
    for i in order:
        c = candidates[i]
        if c.confidence < threshold:
            continue
        start, end = c.position.start, c.position.end
        if start < 0 or end > len(text) or text[start:end] != c.original:
            continue
        if any(start < t_end and t_start < end for t_start, t_end in taken):
            continue
        text = text[:start] + c.corrected + text[end:]
        taken.append((start, end))
        applied_idx.add(i)
    return text, [c.model_copy(update={"applied": i in applied_idx}) for i, c in enumerate(candidates)]


def quality_score(original_text: str, corrections: List[Correction]) -> float:
    applied = [c for c in corrections if c.applied]
    if not applied or not original_text:
        return 0.0
    avg_conf = sum(c.confidence for c in applied) / len(applied)
    ratio = sum(len(c.original) for c in applied) / len(original_text)
    return avg_conf * min(1.0, ratio * 2)


def post_process_text(text: str, settings: Optional[PostProcessingSettings] = None,
                      language_model: Optional[LanguageModel] = None) -> PostProcessedResult:
    """
    Run the regex, format and language-model stages over `text`.

    Every candidate is reported; only those meeting `confidence_threshold` change
    the text. Each stage sees the previous stage's output.
    """
    settings = settings or PostProcessingSettings()
    if not settings.enabled:
        return PostProcessedResult(text=text, corrections=[], quality_score=0.0)

    stages = []
    if settings.use_regex:
        stages.append(("regex", find_regex_corrections))
        stages.append(("format", find_format_corrections))
    if settings.use_language_model:
        stages.append(("language_model", language_model or no_language_model))

    processed = text
    corrections: List[Correction] = []
    for name, finder in stages:
        candidates = finder(processed)
        processed, marked = apply_corrections(processed, candidates, settings.confidence_threshold)
        corrections.extend(marked)
        logger.debug("%s stage: %d candidates, %d applied", name, len(marked), sum(c.applied for c in marked))

    score = quality_score(text, corrections)
    logger.info("post-processing complete: %d corrections, quality score %.2f", len(corrections), score)
    return PostProcessedResult(text=processed, corrections=corrections, quality_score=score)


def main():
    parser = argparse.ArgumentParser(description="Apply deterministic OCR corrections to fused text.")
    parser.add_argument("--input", required=True, help="OcrResult or MergeOutcome JSON")
    parser.add_argument("--out", required=True, help="PostProcessedResult JSON")
    parser.add_argument("--settings", help="Fusion settings YAML")
    parser.add_argument("--threshold", type=float, help="Override confidence_threshold")
    parser.add_argument("--progress-file", help="Path to pipeline_events.jsonl")
    parser.add_argument("--state-file", help="Path to pipeline_state.json")
    parser.add_argument("--run-id", help="Run identifier for logging")
    args = parser.parse_args()

    progress = ProgressLogger(state_path=args.state_file, progress_path=args.progress_file, run_id=args.run_id)
    settings = load_fusion_settings(args.settings).post_processing
    # Running this stage directly implies it is wanted.
    update = {"enabled": True}
    if args.threshold is not None:
        update["confidence_threshold"] = args.threshold
    settings = PostProcessingSettings(**{**settings.model_dump(), **update})

    data = read_json(args.input)
    text = (data.get("result") or {}).get("text") if "result" in data else data.get("text")
    progress.log("post_process", "running", message="Post-processing text", artifact=args.out,
                 module_id="post_process_ocr_v1")
    result = post_process_text(text or "", settings)
    save_json(args.out, result.model_dump(mode="json"))
    applied = sum(1 for c in result.corrections if c.applied)
    progress.log("post_process", "done", current=applied, total=len(result.corrections),
                 message=f"Applied {applied}/{len(result.corrections)} corrections", artifact=args.out,
                 module_id="post_process_ocr_v1", extra={"quality_score": result.quality_score})
    print(f"Applied {applied}/{len(result.corrections)} corrections → {args.out}")


if __name__ == "__main__":
    main()
