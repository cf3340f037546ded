import argparse
import logging
from typing import Dict, List, Tuple

from ocr_fusion.common.text_quality import char_score, line_score, text_similarity
from ocr_fusion.common.utils import ProgressLogger, read_jsonl, save_jsonl
from schemas import EngineContributions, FusedLine, Line, LinePair, WinningEngine

logger = logging.getLogger(__name__)

LINE_MIX_THRESHOLD = 0.55
# Tokens this similar are voted character by character; otherwise the better token wins whole.
TOKEN_CHAR_MERGE_MIN = 0.7
# Used for one-sided lines when the engine reported no line confidence.
DEFAULT_UNPAIRED_CONFIDENCE = 0.8


def fuse_characters(token_a: str, token_b: str) -> str:
    """
    Positional character vote between two readings of the same token.

    Runs to the longer token's length; where only one side has a character it
    is kept, and on disagreement the higher `char_score` wins (ties to A).
    """
    out = []
    for i in range(max(len(token_a), len(token_b))):
        ca = token_a[i] if i < len(token_a) else ""
        cb = token_b[i] if i < len(token_b) else ""
        if ca == cb:
            out.append(ca)
        elif not ca:
            out.append(cb)
        elif not cb:
            out.append(ca)
        else:
            out.append(ca if char_score(ca) >= char_score(cb) else cb)
    return "".join(out)


def fuse_tokens(token_a: str, token_b: str) -> str:
    if text_similarity(token_a, token_b) > TOKEN_CHAR_MERGE_MIN:
        return fuse_characters(token_a, token_b)
    return token_a if line_score(token_a) >= line_score(token_b) else token_b


def fuse_high_agreement(text_a: str, text_b: str) -> Tuple[str, Dict[str, float]]:
    """
    Token-aligned fusion for lines that mostly agree.

    Returns the fused text (tokens re-joined with single spaces) and each
    engine's percentage of consumed characters.
    """
    tokens_a = text_a.split()
    tokens_b = text_b.split()
    merged: List[str] = []
    chars_a = 0
    chars_b = 0
    for i in range(max(len(tokens_a), len(tokens_b))):
        ta = tokens_a[i] if i < len(tokens_a) else None
        tb = tokens_b[i] if i < len(tokens_b) else None
        if ta is None:
            merged.append(tb)
            chars_b += len(tb)
        elif tb is None:
            merged.append(ta)
            chars_a += len(ta)
        elif ta == tb:
            merged.append(ta)
            chars_a += len(ta)
            chars_b += len(tb)
        else:
            merged.append(fuse_tokens(ta, tb))
            chars_a += len(ta)
            chars_b += len(tb)

    total = chars_a + chars_b
    if total:
        shares = {"engine_a": chars_a / total * 100, "engine_b": chars_b / total * 100}
    else:
        shares = {"engine_a": 50.0, "engine_b": 50.0}
    return " ".join(merged), shares


def _single_side(line: Line, engine: WinningEngine) -> FusedLine:
    contributions = EngineContributions(**{engine.value: 100.0})
    return FusedLine(
        text=line.text,
        confidence=line.confidence if line.confidence is not None else DEFAULT_UNPAIRED_CONFIDENCE,
        line_agreement=1.0,
        winning_engine=engine,
        whole_line_chosen=True,
        contributions=contributions,
        page_index=line.page_index,
    )


def fuse_line_pair(pair: LinePair, line_mix_threshold: float = LINE_MIX_THRESHOLD) -> FusedLine:
    """
    Produce one output line from a (possibly one-sided) pair.

    - One side only: passed through verbatim, never blended.
    - Agreement below `line_mix_threshold`: the whole line with the better
      `line_score` wins, so a correct line is never mixed with an unrelated one.
    - Otherwise: token/character voting; confidence = 0.7*agreement + 0.3*score.
    """
    a, b = pair.engine_a, pair.engine_b
    if a is None and b is None:
        raise ValueError("cannot fuse an empty line pair")
    if b is None:
        return _single_side(a, WinningEngine.ENGINE_A)
    if a is None:
        return _single_side(b, WinningEngine.ENGINE_B)

    agreement = text_similarity(a.text, b.text)
    if agreement < line_mix_threshold:
        score_a = line_score(a.text)
        score_b = line_score(b.text)
        if agreement < 0.3:
            logger.debug("very low line agreement (%.2f) on page %d", agreement, a.page_index)
        if score_a >= score_b:
            winner, engine, score = a, WinningEngine.ENGINE_A, score_a
        else:
            winner, engine, score = b, WinningEngine.ENGINE_B, score_b
        return FusedLine(
            text=winner.text,
            confidence=score,
            line_agreement=agreement,
            winning_engine=engine,
            whole_line_chosen=True,
            contributions=EngineContributions(**{engine.value: 100.0}),
            page_index=winner.page_index,
        )

    text, shares = fuse_high_agreement(a.text, b.text)
    return FusedLine(
        text=text,
        confidence=min(1.0, agreement * 0.7 + line_score(text) * 0.3),
        line_agreement=agreement,
        winning_engine=WinningEngine.FUSED,
        whole_line_chosen=False,
        contributions=EngineContributions(**shares),
        page_index=a.page_index,
    )


def main():
    parser = argparse.ArgumentParser(description="Fuse aligned line pairs into single lines.")
    parser.add_argument("--pairs", required=True, help="line_pairs.jsonl")
    parser.add_argument("--out", required=True, help="fused_lines.jsonl")
    parser.add_argument("--line-mix-threshold", type=float, default=LINE_MIX_THRESHOLD)
    parser.add_argument("--progress-file", help="Path to pipeline_events.jsonl")
    parser.add_argument("--state-file", help="Path to pipeline_state.json")
    parser.add_argument("--run-id", help="Run identifier for logging")
    args = parser.parse_args()

    if not 0.0 <= args.line_mix_threshold <= 1.0:
        parser.error("--line-mix-threshold must be within [0, 1]")

    progress = ProgressLogger(state_path=args.state_file, progress_path=args.progress_file, run_id=args.run_id)
    rows = list(read_jsonl(args.pairs))
    progress.log("fuse", "running", current=0, total=len(rows), message="Fusing line pairs",
                 artifact=args.out, module_id="fuse_lines_v1")
    fused = []
    for idx, row in enumerate(rows):
        pair = LinePair(engine_a=row.get("engine_a"), engine_b=row.get("engine_b"))
        line = fuse_line_pair(pair, args.line_mix_threshold)
        fused.append(line.model_copy(update={"line_index": idx}).model_dump(mode="json"))
    save_jsonl(args.out, fused)
    progress.log("fuse", "done", current=len(rows), total=len(rows),
                 message=f"Fused {len(fused)} lines", artifact=args.out, module_id="fuse_lines_v1")
    print(f"Fused {len(fused)} lines → {args.out}")


if __name__ == "__main__":
    main()
