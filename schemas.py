from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from utils_logger import get_logger
from utils_risk import RiskTier, classify_score

log = get_logger(__name__)

SIDES = ('left', 'right')


class AnalysisStatus(str, Enum):
    IDLE = 'idle'
    UPLOADING = 'uploading'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    ERROR = 'error'


class FileStatus(str, Enum):
    READY = 'ready'
    ERROR = 'error'
    PENDING = 'pending'


class AnalysisSource(str, Enum):
    MODEL = 'model'
    FALLBACK = 'fallback'


class ErrorKind(str, Enum):
    UNCONFIGURED = 'unconfigured'
    TIMEOUT = 'timeout'
    CANCELLED = 'cancelled'
    NETWORK = 'network'
    API_ERROR = 'api_error'
    MALFORMED_REPLY = 'malformed_reply'
    ENCODING = 'encoding'


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra='ignore',
        coerce_numbers_to_str=True,
    )

    def to_dict(self) -> dict:
        return self.model_dump(mode='json', by_alias=True)


def normalize_recommendation(value) -> str:
    """
    Folds the recommendation into "paragraph one\\nparagraph two".
    Lists are joined, blank lines dropped, extra paragraphs merged into the second.
    """
    if isinstance(value, (list, tuple)):
        value = "\n".join(str(v) for v in value)
    if not isinstance(value, str):
        raise ValueError("recommendation must be a string or a list of strings")

    paragraphs = [line.strip() for line in value.replace('\\n', '\n').splitlines() if line.strip()]
    if not paragraphs:
        raise ValueError("recommendation is empty")
    if len(paragraphs) == 1:
        log.warning("Recommendation has a single paragraph; keeping it as-is.")
        return paragraphs[0]
    if len(paragraphs) > 2:
        log.warning(f"Recommendation has {len(paragraphs)} paragraphs; folding into two.")
        paragraphs = [paragraphs[0], " ".join(paragraphs[1:])]
    return "\n".join(paragraphs)


class AnalysisResult(_CamelModel):
    tooth_position: str
    fdi_code: str
    min_distance: str
    contact_relationship: str
    relative_position: str
    risk_score: str
    injury_probability: str
    high_risk_signs: Tuple[str, ...] = ()
    recommendation: str

    @field_validator('recommendation', mode='before')
    @classmethod
    def _two_paragraphs(cls, v):
        return normalize_recommendation(v)

    @field_validator('high_risk_signs', mode='before')
    @classmethod
    def _signs(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            return (v,) if v.strip() else ()
        return tuple(str(s).strip() for s in v if str(s).strip())

    @property
    def tier(self) -> RiskTier:
        return classify_score(self.risk_score)

    @property
    def paragraphs(self) -> List[str]:
        return self.recommendation.split("\n")


class PairedResult(_CamelModel):
    """Both sides of one analysis. Neither side may be missing."""
    left: AnalysisResult
    right: AnalysisResult

    def side(self, name: str) -> AnalysisResult:
        if name not in SIDES:
            raise ValueError(f"Unknown side '{name}' (expected 'left' or 'right')")
        return getattr(self, name)


class FileEntry(_CamelModel):
    id: str
    name: str
    size: str
    status: FileStatus = FileStatus.PENDING
    error_message: Optional[str] = None
    upload_id: Optional[str] = None


class HistoryRecord(_CamelModel):
    id: str
    case_name: str
    preview_url: str
    date: str
    left_risk: RiskTier
    right_risk: RiskTier
    results: Optional[PairedResult] = None
    source: AnalysisSource = AnalysisSource.MODEL
    error_kind: Optional[ErrorKind] = None
    preview_upload_id: Optional[str] = None
