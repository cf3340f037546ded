import hashlib
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from schemas import FusionSettings

# Progress event schema constants for lightweight validation/testing
PROGRESS_EVENT_SCHEMA: Dict[str, Tuple[type, ...]] = {
    "timestamp": (str,),
    "run_id": (str, type(None)),
    "stage": (str,),
    "status": (str,),
    "current": (int, type(None)),
    "total": (int, type(None)),
    "percent": (float, int, type(None)),
    "message": (str, type(None)),
    "artifact": (str, type(None)),
    "module_id": (str, type(None)),
    "extra": (dict,),
}
# `warning` surfaces non-fatal conditions (e.g. a low-agreement fallback) without
# changing the stage lifecycle recorded in the state file.
PROGRESS_STATUS_VALUES = {"running", "done", "failed", "skipped", "queued", "warning"}

# Environment overrides: VAR -> (settings section, field, parser)
ENV_OVERRIDES = {
    "DOC_PROCESSING_OCR_MERGE_ENABLED": ("ocr_merge", "enabled", "bool"),
    "DOC_PROCESSING_OCR_MERGE_MIN_AGREEMENT": ("ocr_merge", "min_agreement", "float"),
    "DOC_PROCESSING_OCR_MERGE_FORCE_MERGE_ON_LOW_AGREEMENT": ("ocr_merge", "force_merge_on_low_agreement", "bool"),
    "DOC_PROCESSING_OCR_MERGE_LINE_MIX_THRESHOLD": ("ocr_merge", "line_mix_threshold", "float"),
    "DOC_PROCESSING_OCR_MERGE_PAGE_WORKERS": ("ocr_merge", "page_workers", "int"),
    "DEBUG_OCR_STORE_SOURCES": ("ocr_merge", "store_sources", "bool"),
    "DOC_PROCESSING_OCR_POST_PROCESSING_ENABLED": ("post_processing", "enabled", "bool"),
    "DOC_PROCESSING_OCR_POST_PROCESSING_USE_LM": ("post_processing", "use_language_model", "bool"),
    "DOC_PROCESSING_OCR_POST_PROCESSING_USE_REGEX": ("post_processing", "use_regex", "bool"),
    "DOC_PROCESSING_OCR_POST_PROCESSING_CONFIDENCE_THRESHOLD": ("post_processing", "confidence_threshold", "float"),
}


def load_settings(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data or {}


def _parse_env_value(raw: str, kind: str):
    if kind == "bool":
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if kind == "int":
        return int(raw)
    return float(raw)


def load_fusion_settings(path: Optional[str] = None,
                         environ: Optional[Mapping[str, str]] = None) -> FusionSettings:
    """
    Build validated fusion settings.

    Precedence: defaults < YAML file (if given) < DOC_PROCESSING_OCR_* env vars.
    Out-of-range thresholds raise pydantic.ValidationError here, never mid-merge.
    """
    data: Dict[str, Any] = load_settings(path) if path else {}
    env = os.environ if environ is None else environ
    for var, (section, field, kind) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        if not isinstance(data.get(section), dict):
            data[section] = {}
        data[section][field] = _parse_env_value(raw, kind)
    return FusionSettings(**data)


def save_json(path: str, data: Any):
    """Save JSON file, ensuring parent directory exists."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def save_jsonl(path: str, rows):
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for row in rows:
            f.write(json.dumps(row, ensure_ascii=False) + "\n")


def append_jsonl(path: str, row):
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(row, ensure_ascii=False) + "\n")


def read_jsonl(path: str):
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if line.strip():
                yield json.loads(line)


def sha256_text(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def _utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _type_ok(val: Any, allowed: Tuple[type, ...]) -> bool:
    if val is None:
        return type(None) in allowed
    for typ in allowed:
        if typ is float and isinstance(val, (int, float)) and not isinstance(val, bool):
            return True
        if typ is int and isinstance(val, int) and not isinstance(val, bool):
            return True
        if isinstance(val, typ):
            return True
    return False


def validate_progress_event(event: Dict[str, Any]):
    """Lightweight runtime guard to keep progress events well-shaped."""
    missing = [k for k in PROGRESS_EVENT_SCHEMA if k not in event]
    if missing:
        raise ValueError(f"Missing progress event fields: {missing}")
    if event.get("status") not in PROGRESS_STATUS_VALUES:
        raise ValueError(f"Invalid progress status: {event.get('status')}")
    for key, allowed in PROGRESS_EVENT_SCHEMA.items():
        if not _type_ok(event.get(key), allowed):
            expected = ", ".join([t.__name__ if t is not type(None) else "None" for t in allowed])
            raise ValueError(f"Field '{key}' expected types [{expected}], got {type(event.get(key)).__name__}")


class ProgressLogger:
    """
    Stage event emitter for the fusion CLIs.
    - Appends JSONL events to progress_path (append-only).
    - Updates pipeline_state.json with stage status + progress counters.
    Events carry counts and scores only; document text never goes in a message.
    """

    def __init__(self, state_path: Optional[str] = None, progress_path: Optional[str] = None,
                 run_id: Optional[str] = None):
        self.state_path = state_path
        self.progress_path = progress_path
        self.run_id = run_id
        if progress_path:
            Path(progress_path).parent.mkdir(parents=True, exist_ok=True)
        if state_path:
            Path(state_path).parent.mkdir(parents=True, exist_ok=True)

    def log(self, stage: str, status: str, current: Optional[int] = None, total: Optional[int] = None,
            message: Optional[str] = None, artifact: Optional[str] = None, module_id: Optional[str] = None,
            extra: Optional[Dict[str, Any]] = None):
        percent = None
        if current is not None and total:
            percent = round((current / total) * 100, 1)

        event = {
            "timestamp": _utc(),
            "run_id": self.run_id,
            "stage": stage,
            "status": status,
            "current": current,
            "total": total,
            "percent": percent,
            "message": message,
            "artifact": artifact,
            "module_id": module_id,
            "extra": extra or {},
        }
        validate_progress_event(event)

        if self.progress_path:
            append_jsonl(self.progress_path, event)
        if self.state_path:
            self._update_state(event)
        return event

    def _update_state(self, event: Dict[str, Any]):
        state: Dict[str, Any] = {}
        if os.path.exists(self.state_path):
            try:
                state = read_json(self.state_path)
            except (OSError, ValueError):
                state = {}
        if self.run_id:
            state["run_id"] = self.run_id
        stages = state.get("stages", {})
        stage_state = stages.get(event["stage"], {})
        status = event["status"]
        if status == "warning":
            prev = stage_state.get("status")
            status = prev if prev in {"done", "failed", "skipped"} else "running"
        stage_state.update({
            "status": status,
            "artifact": event["artifact"] or stage_state.get("artifact"),
            "updated_at": event["timestamp"],
            "module_id": event["module_id"] or stage_state.get("module_id"),
            "progress": {
                "current": event["current"],
                "total": event["total"],
                "percent": event["percent"],
                "message": event["message"],
            },
        })
        stages[event["stage"]] = stage_state
        state["stages"] = stages
        save_json(self.state_path, state)
