from .utils import (
    load_settings,
    load_fusion_settings,
    save_json,
    read_json,
    save_jsonl,
    append_jsonl,
    read_jsonl,
    sha256_text,
    ProgressLogger,
    PROGRESS_EVENT_SCHEMA,
    PROGRESS_STATUS_VALUES,
    validate_progress_event,
)
from .text_quality import text_similarity, line_score, char_score, ocr_noise_score, has_known_format

__all__ = [
    "load_settings",
    "load_fusion_settings",
    "save_json",
    "read_json",
    "save_jsonl",
    "append_jsonl",
    "read_jsonl",
    "sha256_text",
    "ProgressLogger",
    "PROGRESS_EVENT_SCHEMA",
    "PROGRESS_STATUS_VALUES",
    "validate_progress_event",
    "text_similarity",
    "line_score",
    "char_score",
    "ocr_noise_score",
    "has_known_format",
]
