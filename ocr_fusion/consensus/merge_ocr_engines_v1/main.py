import argparse
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ocr_fusion.align.align_lines_v1.main import pair_lines
from ocr_fusion.clean.post_process_ocr_v1.main import post_process_text
from ocr_fusion.common.utils import ProgressLogger, load_fusion_settings, read_json, save_json, sha256_text
from ocr_fusion.consensus.fuse_lines_v1.main import fuse_line_pair
from ocr_fusion.extract.extract_entities_text_v1.main import extract_entities_from_text
from ocr_fusion.normalize.ocr_lines_v1.main import extract_lines, group_lines_by_page
from schemas import (
    Correction,
    Entity,
    FusedLine,
    FusionSettings,
    Line,
    MergeMetadata,
    MergeOutcome,
    OcrMergeSettings,
    OcrResult,
    SourceSummary,
    WinningEngine,
)

logger = logging.getLogger(__name__)

SOURCE_EXCERPT_CHARS = 100


def fuse_page(lines_a: List[Line], lines_b: List[Line], line_mix_threshold: float) -> List[FusedLine]:
    """Align and fuse one page; output is top-to-bottom."""
    return [fuse_line_pair(pair, line_mix_threshold) for pair in pair_lines(lines_a, lines_b)]


def fuse_pages(by_page_a: Dict[int, List[Line]], by_page_b: Dict[int, List[Line]],
               line_mix_threshold: float, page_workers: int = 1) -> List[FusedLine]:
    """
    Fuse every page and number the lines in page order.

    Pages are independent, so a thread pool changes nothing but wall time;
    `pool.map` keeps page order.
    """
    pages = sorted(set(by_page_a) | set(by_page_b))

    def _one(page: int) -> List[FusedLine]:
        return fuse_page(by_page_a.get(page, []), by_page_b.get(page, []), line_mix_threshold)

    if page_workers > 1 and len(pages) > 1:
        with ThreadPoolExecutor(max_workers=min(page_workers, len(pages))) as pool:
            per_page = list(pool.map(_one, pages))
    else:
        per_page = [_one(page) for page in pages]

    fused: List[FusedLine] = []
    for page_lines in per_page:
        for line in page_lines:
            fused.append(line.model_copy(update={"line_index": len(fused)}))
    return fused


# --- aggregation ------------------------------------------------------------

def document_agreement(fused: Iterable[FusedLine]) -> float:
    """Mean line agreement over cross-validated lines only; unique lines never count."""
    scores = [ln.line_agreement for ln in fused if ln.is_paired]
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


def overall_confidence(fused: Iterable[FusedLine]) -> float:
    total_len = 0
    weighted = 0.0
    for ln in fused:
        total_len += len(ln.text)
        weighted += ln.confidence * len(ln.text)
    return weighted / total_len if total_len else 0.0


def _is_unique(line: FusedLine, engine: WinningEngine) -> bool:
    return line.winning_engine == engine and getattr(line.contributions, engine.value) == 100.0


def build_merge_metadata(fused: List[FusedLine], line_count_a: int, line_count_b: int,
                         settings: OcrMergeSettings) -> MergeMetadata:
    agreement = document_agreement(fused)
    paired = sum(1 for ln in fused if ln.is_paired)
    most_lines = max(line_count_a, line_count_b)
    return MergeMetadata(
        doc_agreement=agreement,
        line_agreement_threshold=settings.line_mix_threshold,
        line_pairing_success_rate=(paired / most_lines * 100) if most_lines else 0.0,
        average_line_confidence=overall_confidence(fused),
        low_agreement_flag=agreement < settings.min_agreement,
        per_line=fused,
        engine_a_coverage=(paired / line_count_a * 100) if line_count_a else 0.0,
        engine_b_coverage=(paired / line_count_b * 100) if line_count_b else 0.0,
        total_lines=len(fused),
        paired_lines=paired,
        unique_a_lines=sum(1 for ln in fused if _is_unique(ln, WinningEngine.ENGINE_A)),
        unique_b_lines=sum(1 for ln in fused if _is_unique(ln, WinningEngine.ENGINE_B)),
    )


def choose_single_engine(result_a: OcrResult, result_b: OcrResult) -> Tuple[OcrResult, WinningEngine]:
    if result_a.confidence >= result_b.confidence:
        return result_a, WinningEngine.ENGINE_A
    return result_b, WinningEngine.ENGINE_B


def merge_entities(*entity_lists: Optional[List[Entity]]) -> List[Entity]:
    """Union on (type, mention_text); the higher confidence wins, first seen on ties."""
    merged: Dict[Tuple[str, str], Entity] = {}
    for entities in entity_lists:
        for entity in entities or []:
            current = merged.get(entity.dedup_key)
            if current is None or current.confidence < entity.confidence:
                merged[entity.dedup_key] = entity
    return list(merged.values())


def _source_summary(result: OcrResult, agreement: float, store_sources: bool) -> SourceSummary:
    if store_sources:
        return SourceSummary(text=result.text, confidence=result.confidence, agreement_score=agreement)
    return SourceSummary(
        text_hash=sha256_text(result.text),
        text_excerpt=result.text[:SOURCE_EXCERPT_CHARS],
        confidence=result.confidence,
        agreement_score=agreement,
    )


def build_sources_metadata(result_a: OcrResult, result_b: OcrResult, agreement: float,
                           store_sources: bool = False) -> Dict[str, SourceSummary]:
    return {
        "engine_a": _source_summary(result_a, agreement, store_sources),
        "engine_b": _source_summary(result_b, agreement, store_sources),
    }


def merged_text(fused: List[FusedLine]) -> str:
    return "\n".join(ln.text for ln in fused)


# --- entry points -----------------------------------------------------------

def merge_ocr_results(result_a: OcrResult, result_b: OcrResult,
                      settings: Optional[OcrMergeSettings] = None) -> MergeOutcome:
    """
    Fuse two engines' results for the same document.

    Returns the fused OcrResult, or, when document agreement is under
    `min_agreement` and merging is not forced, the single engine result with
    the higher own confidence (A on ties), untouched. Metadata is computed
    either way so callers can see why.
    """
    settings = settings or OcrMergeSettings()
    lines_a = extract_lines(result_a)
    lines_b = extract_lines(result_b)
    logger.info("extracted %d engine A lines, %d engine B lines", len(lines_a), len(lines_b))

    fused = fuse_pages(
        group_lines_by_page(lines_a),
        group_lines_by_page(lines_b),
        settings.line_mix_threshold,
        settings.page_workers,
    )
    metadata = build_merge_metadata(fused, len(lines_a), len(lines_b), settings)
    logger.info(
        "coverage A=%.1f%% B=%.1f%% (%d paired, %d unique A, %d unique B)",
        metadata.engine_a_coverage, metadata.engine_b_coverage,
        metadata.paired_lines, metadata.unique_a_lines, metadata.unique_b_lines,
    )

    if metadata.low_agreement_flag and not settings.force_merge_on_low_agreement:
        chosen, engine = choose_single_engine(result_a, result_b)
        logger.warning(
            "document agreement %.2f below %.2f; returning %s result",
            metadata.doc_agreement, settings.min_agreement, engine.value,
        )
        metadata = metadata.model_copy(update={"fallback_used": True})
        return MergeOutcome(result=chosen, metadata=metadata, entities=list(chosen.entities))

    sources = build_sources_metadata(result_a, result_b, metadata.doc_agreement, settings.store_sources)
    entities = merge_entities(result_a.entities, result_b.entities)
    result = OcrResult(
        text=merged_text(fused),
        confidence=max(0.0, min(1.0, metadata.average_line_confidence)),
        page_count=max(result_a.page_count, result_b.page_count),
        entities=entities,
        raw_engine_output={
            "engine": "merged",
            "sources": {k: v.model_dump(exclude_none=True) for k, v in sources.items()},
            "merge_metadata": metadata.model_dump(mode="json"),
        },
    )
    logger.info(
        "merge complete: agreement=%.2f confidence=%.2f lines=%d",
        metadata.doc_agreement, result.confidence, metadata.total_lines,
    )
    return MergeOutcome(result=result, metadata=metadata, entities=entities)


def run_fusion_pipeline(result_a: OcrResult, result_b: OcrResult,
                        settings: Optional[FusionSettings] = None,
                        language_model: Optional[Callable[[str], List[Correction]]] = None) -> MergeOutcome:
    """
    Merge, then post-process the chosen text and fill in entities by pattern
    extraction when neither engine supplied any.

    With merging disabled the engine A result passes through as-is.
    """
    settings = settings or FusionSettings()
    if settings.ocr_merge.enabled:
        outcome = merge_ocr_results(result_a, result_b, settings.ocr_merge)
    else:
        logger.info("ocr merge disabled; using engine A result")
        metadata = MergeMetadata(
            doc_agreement=0.0,
            line_agreement_threshold=settings.ocr_merge.line_mix_threshold,
            line_pairing_success_rate=0.0,
            average_line_confidence=result_a.confidence,
            low_agreement_flag=False,
            fallback_used=True,
        )
        outcome = MergeOutcome(result=result_a, metadata=metadata, entities=list(result_a.entities))

    updates = {}
    if settings.post_processing.enabled:
        post = post_process_text(outcome.result.text, settings.post_processing, language_model=language_model)
        updates["post_processed"] = post
        updates["metadata"] = outcome.metadata.model_copy(update={
            "post_processing_corrections": post.corrections,
            "quality_improvement_score": post.quality_score,
        })
        applied = sum(1 for c in post.corrections if c.applied)
        logger.info("post-processing: %d candidates, %d applied", len(post.corrections), applied)

    if not outcome.entities:
        text = updates["post_processed"].text if "post_processed" in updates else outcome.result.text
        updates["entities"] = extract_entities_from_text(text)
        logger.info("no engine entities; extracted %d from text", len(updates["entities"]))

    return outcome.model_copy(update=updates) if updates else outcome


def main():
    parser = argparse.ArgumentParser(description="Fuse two OCR engine results into one document result.")
    parser.add_argument("--engine-a", required=True, help="Engine A OcrResult JSON (word/polygon engine)")
    parser.add_argument("--engine-b", required=True, help="Engine B OcrResult JSON (line/anchor engine)")
    parser.add_argument("--out", required=True, help="Output MergeOutcome JSON")
    parser.add_argument("--settings", help="Fusion settings YAML")
    parser.add_argument("--force-merge", action="store_true", help="Merge even when agreement is low")
    parser.add_argument("--progress-file", help="Path to pipeline_events.jsonl")
    parser.add_argument("--state-file", help="Path to pipeline_state.json")
    parser.add_argument("--run-id", help="Run identifier for logging")
    args = parser.parse_args()

    progress = ProgressLogger(state_path=args.state_file, progress_path=args.progress_file, run_id=args.run_id)
    settings = load_fusion_settings(args.settings)
    if args.force_merge:
        settings = settings.model_copy(update={
            "ocr_merge": settings.ocr_merge.model_copy(update={"force_merge_on_low_agreement": True}),
        })

    progress.log("merge", "running", current=0, total=2, message="Loading engine results",
                 artifact=args.out, module_id="merge_ocr_engines_v1")
    try:
        result_a = OcrResult(**read_json(args.engine_a))
        result_b = OcrResult(**read_json(args.engine_b))
    except Exception:
        progress.log("merge", "failed", message="Unreadable engine result", artifact=args.out,
                     module_id="merge_ocr_engines_v1")
        raise

    outcome = run_fusion_pipeline(result_a, result_b, settings)
    meta = outcome.metadata
    summary = {
        "doc_agreement": round(meta.doc_agreement, 4),
        "paired_lines": meta.paired_lines,
        "total_lines": meta.total_lines,
        "fallback_used": meta.fallback_used,
    }
    if meta.fallback_used and settings.ocr_merge.enabled:
        progress.log("merge", "warning", current=1, total=2,
                     message=f"Low agreement {meta.doc_agreement:.2f}; single-engine result used",
                     artifact=args.out, module_id="merge_ocr_engines_v1", extra=summary)

    save_json(args.out, outcome.model_dump(mode="json"))
    progress.log("merge", "done", current=2, total=2,
                 message=f"Merged {meta.total_lines} lines (agreement {meta.doc_agreement:.2f})",
                 artifact=args.out, module_id="merge_ocr_engines_v1", extra=summary)
    print(f"Merged → {args.out} (agreement {meta.doc_agreement:.2f}, fallback={meta.fallback_used})")


if __name__ == "__main__":
    main()
