from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Stored OCR text is capped for database storage.
MAX_TEXT_CHARS = 5000


def _clamp_unit(v: float) -> float:
    return max(0.0, min(1.0, float(v)))


class Entity(BaseModel):
    type: str
    mention_text: str
    confidence: float = Field(ge=0.0, le=1.0)
    start_offset: Optional[int] = None
    end_offset: Optional[int] = None

    @property
    def dedup_key(self):
        return (self.type, self.mention_text)


class OcrResult(BaseModel):
    """
    One engine's OCR output (or the fused output).

    `raw_engine_output` is the engine's structural response tree; it is opaque to
    everything except the line normalizer.
    """
    model_config = ConfigDict(frozen=True)

    text: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    page_count: int = Field(default=1, ge=1)
    entities: List[Entity] = Field(default_factory=list)
    raw_engine_output: Optional[Dict[str, Any]] = None
    output_ref: Optional[str] = None

    @field_validator("text", mode="before")
    def truncate_text(cls, v):
        if v is None:
            return ""
        return str(v)[:MAX_TEXT_CHARS]

    @field_validator("entities", mode="before")
    def entities_default(cls, v):
        if v is None:
            return []
        return v


class BoundingBox(BaseModel):
    """Normalized [0, 1] page coordinates; values are clamped, never rejected."""
    model_config = ConfigDict(frozen=True)

    x0: float = 0.0
    y0: float = 0.0
    x1: float = 1.0
    y1: float = 1.0

    @model_validator(mode="before")
    @classmethod
    def clamp_and_order(cls, data):
        if not isinstance(data, dict):
            return data
        vals = {k: _clamp_unit(data.get(k, default)) for k, default in
                (("x0", 0.0), ("y0", 0.0), ("x1", 1.0), ("y1", 1.0))}
        if vals["x0"] > vals["x1"]:
            vals["x0"], vals["x1"] = vals["x1"], vals["x0"]
        if vals["y0"] > vals["y1"]:
            vals["y0"], vals["y1"] = vals["y1"], vals["y0"]
        return vals

    @classmethod
    def full_page(cls) -> "BoundingBox":
        return cls(x0=0.0, y0=0.0, x1=1.0, y1=1.0)


class Line(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    bounding_box: BoundingBox = Field(default_factory=BoundingBox.full_page)
    page_index: int = Field(default=0, ge=0)
    line_index: int = Field(default=0, ge=0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class LinePair(BaseModel):
    engine_a: Optional[Line] = None
    engine_b: Optional[Line] = None

    @model_validator(mode="after")
    def at_least_one_side(self):
        if self.engine_a is None and self.engine_b is None:
            raise ValueError("LinePair requires at least one line")
        return self

    @property
    def is_paired(self) -> bool:
        return self.engine_a is not None and self.engine_b is not None

    @property
    def top(self) -> float:
        line = self.engine_a if self.engine_a is not None else self.engine_b
        return line.bounding_box.y0


class WinningEngine(str, Enum):
    ENGINE_A = "engine_a"
    ENGINE_B = "engine_b"
    FUSED = "fused"


class EngineContributions(BaseModel):
    engine_a: float = 0.0
    engine_b: float = 0.0


class FusedLine(BaseModel):
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    line_agreement: float = Field(ge=0.0, le=1.0)
    winning_engine: WinningEngine
    whole_line_chosen: bool
    contributions: EngineContributions
    page_index: int = 0
    line_index: Optional[int] = None

    @property
    def is_paired(self) -> bool:
        # One-sided lines were never cross-validated.
        if self.winning_engine == WinningEngine.FUSED:
            return True
        return self.contributions.engine_a > 0 and self.contributions.engine_b > 0


class CorrectionKind(str, Enum):
    LEXICAL = "lexical"
    REGEX = "regex"
    FORMAT = "format"
    CONTEXT = "context"


class TextSpan(BaseModel):
    start: int
    end: int


class Correction(BaseModel):
    original: str
    corrected: str
    confidence: float = Field(ge=0.0, le=1.0)
    kind: CorrectionKind
    position: TextSpan
    applied: bool = False


class PostProcessedResult(BaseModel):
    text: str
    corrections: List[Correction] = Field(default_factory=list)
    quality_score: float = 0.0


class SourceSummary(BaseModel):
    """PHI-safe provenance for one engine: a hash and excerpt unless sources are stored."""
    text: Optional[str] = None
    text_hash: Optional[str] = None
    text_excerpt: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    agreement_score: float


class MergeMetadata(BaseModel):
    doc_agreement: float
    line_agreement_threshold: float
    line_pairing_success_rate: float
    average_line_confidence: float
    low_agreement_flag: bool
    per_line: List[FusedLine] = Field(default_factory=list)
    engine_a_coverage: float = 0.0
    engine_b_coverage: float = 0.0
    total_lines: int = 0
    paired_lines: int = 0
    unique_a_lines: int = 0
    unique_b_lines: int = 0
    fallback_used: bool = False
    post_processing_corrections: Optional[List[Correction]] = None
    quality_improvement_score: Optional[float] = None


class MergeOutcome(BaseModel):
    result: OcrResult
    metadata: MergeMetadata
    post_processed: Optional[PostProcessedResult] = None
    entities: List[Entity] = Field(default_factory=list)


class OcrMergeSettings(BaseModel):
    enabled: bool = True
    min_agreement: float = Field(default=0.7, ge=0.0, le=1.0)
    force_merge_on_low_agreement: bool = False
    line_mix_threshold: float = Field(default=0.55, ge=0.0, le=1.0)
    store_sources: bool = False
    page_workers: int = Field(default=1, ge=1)


class PostProcessingSettings(BaseModel):
    enabled: bool = False
    use_regex: bool = True
    use_language_model: bool = False
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)


class FusionSettings(BaseModel):
    ocr_merge: OcrMergeSettings = Field(default_factory=OcrMergeSettings)
    post_processing: PostProcessingSettings = Field(default_factory=PostProcessingSettings)

    @field_validator("ocr_merge", "post_processing", mode="before")
    def section_default(cls, v):
        if v is None:
            return {}
        return v
