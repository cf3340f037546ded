import argparse
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from ocr_fusion.common.geometry import box_from_vertices, polygon_vertices, union_box, box_overlap_ratio
from ocr_fusion.common.utils import ProgressLogger, read_json, save_jsonl
from schemas import BoundingBox, Line, OcrResult

logger = logging.getLogger(__name__)

# Words join a line when their vertical overlap covers this share of the taller box.
WORD_LINE_OVERLAP_MIN = 0.3


@dataclass(frozen=True)
class WordPolygonShape:
    """pages -> blocks -> paragraphs -> words, each word with a 4-vertex polygon."""
    annotation: Dict[str, Any]


@dataclass(frozen=True)
class LineAnchorShape:
    """pages -> paragraphs -> lines, text addressed by offsets into `text`."""
    document: Dict[str, Any]


@dataclass(frozen=True)
class UnrecognizedShape:
    top_level_keys: tuple


EngineShape = Union[WordPolygonShape, LineAnchorShape, UnrecognizedShape]


def detect_engine_shape(raw: Optional[Dict[str, Any]]) -> EngineShape:
    if isinstance(raw, dict):
        annotation = raw.get("fullTextAnnotation")
        if isinstance(annotation, dict):
            return WordPolygonShape(annotation=annotation)
        if raw.get("pages"):
            return LineAnchorShape(document=raw)
        return UnrecognizedShape(top_level_keys=tuple(sorted(raw.keys())))
    return UnrecognizedShape(top_level_keys=())


def extract_lines(result: OcrResult) -> List[Line]:
    """
    Normalize one engine's output into page-ordered lines with [0, 1] boxes.

    Never raises on malformed payloads: unknown shapes degrade to splitting the
    flat text with full-page boxes.
    """
    shape = detect_engine_shape(result.raw_engine_output)
    if isinstance(shape, WordPolygonShape):
        lines = extract_lines_from_word_polygons(shape.annotation)
        logger.info("word/polygon shape: %d lines", len(lines))
    elif isinstance(shape, LineAnchorShape):
        lines = extract_lines_from_line_anchors(shape.document, fallback_text=result.text)
        logger.info("line/anchor shape: %d lines", len(lines))
    else:
        logger.warning("unrecognized engine shape (keys=%s); falling back to plain text", list(shape.top_level_keys))
        lines = extract_lines_from_plain_text(result.text, result.page_count)
        logger.info("plain text fallback: %d lines", len(lines))
    return lines


def group_lines_by_page(lines: List[Line]) -> Dict[int, List[Line]]:
    grouped: Dict[int, List[Line]] = {}
    for line in lines:
        grouped.setdefault(line.page_index, []).append(line)
    return grouped


# --- word/polygon engines ---------------------------------------------------

def _word_text(word: Dict[str, Any]) -> str:
    parts = []
    for symbol in word.get("symbols") or []:
        if not isinstance(symbol, dict):
            continue
        if symbol.get("text"):
            parts.append(symbol["text"])
            continue
        brk = ((symbol.get("property") or {}).get("detectedBreak") or {}).get("type")
        if brk in ("SPACE", "SURE_SPACE"):
            parts.append(" ")
    return "".join(parts).strip()


def _iter_page_words(page: Dict[str, Any]):
    for block in page.get("blocks") or []:
        for paragraph in (block or {}).get("paragraphs") or []:
            for word in (paragraph or {}).get("words") or []:
                if isinstance(word, dict):
                    yield word


def group_words_into_lines(words: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Cluster words (`{"text", "box"}`) into lines by vertical interval overlap.

    Words are visited top-down; each joins the first line it overlaps by at
    least WORD_LINE_OVERLAP_MIN, otherwise it starts a new line. Line text is
    read left to right.
    """
    rows: List[Dict[str, Any]] = []
    for word in sorted(words, key=lambda w: w["box"].y0):
        target = None
        for row in rows:
            if box_overlap_ratio(row["box"], word["box"]) >= WORD_LINE_OVERLAP_MIN:
                target = row
                break
        if target is None:
            rows.append({"parts": [word], "box": word["box"]})
        else:
            target["parts"].append(word)
            target["box"] = union_box(target["box"], word["box"])
    return [
        {"text": " ".join(w["text"] for w in sorted(r["parts"], key=lambda w: w["box"].x0)), "box": r["box"]}
        for r in rows
    ]


def extract_lines_from_word_polygons(annotation: Dict[str, Any]) -> List[Line]:
    lines: List[Line] = []
    pages = annotation.get("pages") or []
    for page_index, page in enumerate(pages):
        page = page or {}
        width = page.get("width") or 1
        height = page.get("height") or 1
        words = []
        skipped = 0
        for word in _iter_page_words(page):
            text = _word_text(word)
            if not text:
                continue
            box = box_from_vertices(polygon_vertices(word.get("boundingBox")), width, height)
            if box is None:
                skipped += 1
                continue
            words.append({"text": text, "box": box})
        if skipped:
            logger.debug("page %d: skipped %d words without a usable polygon", page_index, skipped)

        rows = sorted(group_words_into_lines(words), key=lambda r: r["box"].y0)
        for line_index, row in enumerate(rows):
            lines.append(Line(
                text=row["text"],
                bounding_box=row["box"],
                page_index=page_index,
                line_index=line_index,
            ))
    return lines


# --- line/anchor engines ----------------------------------------------------

def _to_int(v: Any) -> int:
    try:
        return int(v or 0)
    except (TypeError, ValueError):
        return 0


def anchored_text(layout: Dict[str, Any], full_text: str) -> str:
    """Slice the document text by the layout's text segments, else use `layout.text`."""
    segments = ((layout or {}).get("textAnchor") or {}).get("textSegments")
    if segments:
        parts = []
        for seg in segments:
            seg = seg or {}
            start = _to_int(seg.get("startIndex"))
            end = _to_int(seg.get("endIndex"))
            if full_text and start < len(full_text) and end <= len(full_text):
                parts.append(full_text[start:end])
        return "".join(parts).strip()
    return ((layout or {}).get("text") or "").strip()


def _layout_line(layout: Dict[str, Any], full_text: str, dimension: Dict[str, Any],
                 page_index: int, line_index: int) -> Optional[Line]:
    text = anchored_text(layout, full_text)
    if not text:
        return None
    box = box_from_vertices(
        polygon_vertices(layout.get("boundingPoly")),
        dimension.get("width"),
        dimension.get("height"),
    )
    try:
        confidence = float(layout["confidence"])
    except (KeyError, TypeError, ValueError):
        confidence = None
    return Line(
        text=text,
        bounding_box=box or BoundingBox.full_page(),
        page_index=page_index,
        line_index=line_index,
        confidence=None if confidence is None else max(0.0, min(1.0, confidence)),
    )


def extract_lines_from_line_anchors(document: Dict[str, Any], fallback_text: str = "") -> List[Line]:
    lines: List[Line] = []
    full_text = document.get("text") or fallback_text or ""
    for page_index, page in enumerate(document.get("pages") or []):
        page = page or {}
        dimension = page.get("dimension") or {}
        line_index = 0
        for paragraph in page.get("paragraphs") or []:
            paragraph = paragraph or {}
            if paragraph.get("lines"):
                layouts = [(ln or {}).get("layout") or {} for ln in paragraph["lines"]]
            elif paragraph.get("layout"):
                # Sparse output: the paragraph itself stands in for its lines.
                layouts = [paragraph["layout"]]
            else:
                continue
            for layout in layouts:
                line = _layout_line(layout, full_text, dimension, page_index, line_index)
                if line is None:
                    continue
                lines.append(line)
                line_index += 1
    return lines


# --- plain text fallback ----------------------------------------------------

def extract_lines_from_plain_text(text: str, page_count: int) -> List[Line]:
    """Spread newline-split text evenly across pages with full-page boxes."""
    page_count = max(1, int(page_count or 1))
    text_lines = (text or "").split("\n")
    per_page = max(1, len(text_lines) // page_count)
    lines: List[Line] = []
    for page_index in range(page_count):
        start = page_index * per_page
        end = len(text_lines) if page_index == page_count - 1 else (page_index + 1) * per_page
        for i in range(start, min(end, len(text_lines))):
            stripped = text_lines[i].strip()
            if not stripped:
                continue
            lines.append(Line(
                text=stripped,
                bounding_box=BoundingBox.full_page(),
                page_index=page_index,
                line_index=i - start,
            ))
    return lines


def main():
    parser = argparse.ArgumentParser(description="Normalize one engine's OCR result into lines with [0,1] boxes.")
    parser.add_argument("--ocr", required=True, help="OcrResult JSON")
    parser.add_argument("--out", required=True, help="lines.jsonl")
    parser.add_argument("--progress-file", help="Path to pipeline_events.jsonl")
    parser.add_argument("--state-file", help="Path to pipeline_state.json")
    parser.add_argument("--run-id", help="Run identifier for logging")
    args = parser.parse_args()

    progress = ProgressLogger(state_path=args.state_file, progress_path=args.progress_file, run_id=args.run_id)
    progress.log("normalize", "running", message="Extracting lines", artifact=args.out, module_id="ocr_lines_v1")
    try:
        result = OcrResult(**read_json(args.ocr))
    except Exception:
        progress.log("normalize", "failed", message="Unreadable OCR result", artifact=args.out,
                     module_id="ocr_lines_v1")
        raise
    lines = extract_lines(result)
    save_jsonl(args.out, [ln.model_dump() for ln in lines])
    progress.log("normalize", "done", current=len(lines), total=len(lines),
                 message=f"Extracted {len(lines)} lines", artifact=args.out, module_id="ocr_lines_v1")
    print(f"Extracted {len(lines)} lines → {args.out}")


if __name__ == "__main__":
    main()
