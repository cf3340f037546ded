import argparse
import logging
from typing import Dict, List, Set

from ocr_fusion.common.geometry import box_overlap_ratio
from ocr_fusion.common.text_quality import text_similarity
from ocr_fusion.common.utils import ProgressLogger, read_jsonl, save_jsonl
from ocr_fusion.normalize.ocr_lines_v1.main import group_lines_by_page
from schemas import Line, LinePair

logger = logging.getLogger(__name__)

LINE_VERTICAL_OVERLAP_MIN = 0.5  # geometry pairing
SIMILARITY_WINDOW = 5  # +/- line indices searched by text
SIMILARITY_MIN = 0.7


def _line_sort_key(line: Line):
    b = line.bounding_box
    conf = -1.0 if line.confidence is None else line.confidence
    return (b.y0, b.y1, b.x0, b.x1, line.line_index, line.text, conf)


def pair_lines(lines_a: List[Line], lines_b: List[Line]) -> List[LinePair]:
    """
    Pair one page's lines from two engines.

    1. Geometry: first unused B line whose vertical overlap with the A line is
       >= LINE_VERTICAL_OVERLAP_MIN (greedy, top-down).
    2. Text: for A lines still unpaired, the most similar unused B line within
       SIMILARITY_WINDOW indices, if similarity >= SIMILARITY_MIN.
    3. Everything left over becomes a one-sided pair, so unique content from
       either engine survives.

    Inputs are sorted first, so the resulting pairs do not depend on input order.
    Output is ordered top-to-bottom.
    """
    a_sorted = sorted(lines_a, key=_line_sort_key)
    b_sorted = sorted(lines_b, key=_line_sort_key)
    used_a: Set[int] = set()
    used_b: Set[int] = set()
    pairs: List[LinePair] = []

    for i, line_a in enumerate(a_sorted):
        for j, line_b in enumerate(b_sorted):
            if j in used_b:
                continue
            if box_overlap_ratio(line_a.bounding_box, line_b.bounding_box) >= LINE_VERTICAL_OVERLAP_MIN:
                pairs.append(LinePair(engine_a=line_a, engine_b=line_b))
                used_a.add(i)
                used_b.add(j)
                break
    by_geometry = len(pairs)

    for i, line_a in enumerate(a_sorted):
        if i in used_a:
            continue
        best_j = None
        best_sim = 0.0
        for j in range(max(0, i - SIMILARITY_WINDOW), min(len(b_sorted), i + SIMILARITY_WINDOW + 1)):
            if j in used_b:
                continue
            sim = text_similarity(line_a.text, b_sorted[j].text)
            if sim >= SIMILARITY_MIN and (best_j is None or sim > best_sim):
                best_j, best_sim = j, sim
        if best_j is not None:
            pairs.append(LinePair(engine_a=line_a, engine_b=b_sorted[best_j]))
            used_a.add(i)
            used_b.add(best_j)
    by_text = len(pairs) - by_geometry

    unmatched_a = sorted((ln for i, ln in enumerate(a_sorted) if i not in used_a),
                         key=lambda ln: ln.bounding_box.y0)
    unmatched_b = sorted((ln for j, ln in enumerate(b_sorted) if j not in used_b),
                         key=lambda ln: ln.bounding_box.y0)
    pairs.extend(LinePair(engine_a=ln) for ln in unmatched_a)
    pairs.extend(LinePair(engine_b=ln) for ln in unmatched_b)

    logger.debug(
        "paired %d by geometry, %d by text; unmatched A=%d B=%d",
        by_geometry, by_text, len(unmatched_a), len(unmatched_b),
    )
    # Stable: ties keep paired-before-unique order.
    return sorted(pairs, key=lambda p: p.top)


def align_pages(lines_by_page_a: Dict[int, List[Line]],
                lines_by_page_b: Dict[int, List[Line]]) -> Dict[int, List[LinePair]]:
    pages = sorted(set(lines_by_page_a) | set(lines_by_page_b))
    return {
        page: pair_lines(lines_by_page_a.get(page, []), lines_by_page_b.get(page, []))
        for page in pages
    }


def main():
    parser = argparse.ArgumentParser(description="Pair lines from two engines page by page.")
    parser.add_argument("--lines-a", required=True, help="Engine A lines.jsonl")
    parser.add_argument("--lines-b", required=True, help="Engine B lines.jsonl")
    parser.add_argument("--out", required=True, help="line_pairs.jsonl")
    parser.add_argument("--progress-file", help="Path to pipeline_events.jsonl")
    parser.add_argument("--state-file", help="Path to pipeline_state.json")
    parser.add_argument("--run-id", help="Run identifier for logging")
    args = parser.parse_args()

    progress = ProgressLogger(state_path=args.state_file, progress_path=args.progress_file, run_id=args.run_id)
    lines_a = [Line(**row) for row in read_jsonl(args.lines_a)]
    lines_b = [Line(**row) for row in read_jsonl(args.lines_b)]

    by_page = align_pages(group_lines_by_page(lines_a), group_lines_by_page(lines_b))
    progress.log("align", "running", current=0, total=len(by_page), message="Pairing lines",
                 artifact=args.out, module_id="align_lines_v1")
    rows = []
    for page, pairs in by_page.items():
        for pair in pairs:
            rows.append({"page": page, **pair.model_dump()})
    save_jsonl(args.out, rows)
    paired = sum(1 for page_pairs in by_page.values() for p in page_pairs if p.is_paired)
    progress.log("align", "done", current=len(by_page), total=len(by_page),
                 message=f"{paired} paired of {len(rows)} rows", artifact=args.out, module_id="align_lines_v1")
    print(f"Wrote {len(rows)} line pairs → {args.out}")


if __name__ == "__main__":
    main()
