from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator
from typing import List, Optional, Any, Dict
from datetime import datetime
from enum import Enum

# === Model input schema ===

class InputProperty(BaseModel):
    """One declared input of a model. Wire keys ``default`` and ``enum`` are aliased."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Optional[str] = None  # string | integer | number | boolean, anything else renders as text
    title: Optional[str] = None
    description: Optional[str] = None
    defaultValue: Optional[Any] = Field(default=None, alias="default")
    enumValues: Optional[List[str]] = Field(default=None, alias="enum")
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    format: Optional[str] = None

    @field_validator("enumValues", mode="before")
    @classmethod
    def _enum_as_strings(cls, value):
        if value is None:
            return None
        return [str(v) for v in value]

    @property
    def normalized_type(self) -> str:
        return (self.type or "").lower()

    @property
    def has_default(self) -> bool:
        return self.defaultValue is not None

    def label(self, key: str) -> str:
        return self.title or key.replace("_", " ").capitalize()

class InputSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Optional[str] = "object"
    properties: Dict[str, InputProperty] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)

    @field_validator("required", mode="before")
    @classmethod
    def _required_list(cls, value):
        return list(value or [])

# === Form fields ===

class ControlKind(str, Enum):
    CHOICE = "choice"
    TOGGLE = "toggle"
    SLIDER = "slider"
    NUMBER = "number"
    IMAGE = "image"
    TEXT = "text"

class FormField(BaseModel):
    key: str
    label: str
    description: Optional[str] = None
    required: bool = False
    control: ControlKind
    initial: Optional[Any] = None
    options: Optional[List[str]] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    step: Optional[float] = None
    multiline: bool = False
    integer: bool = False

# === Generations ===

class GenerationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_finished(self) -> bool:
        return self in (GenerationStatus.COMPLETED, GenerationStatus.FAILED, GenerationStatus.CANCELLED)

    @property
    def is_running(self) -> bool:
        return self in (GenerationStatus.PENDING, GenerationStatus.PROCESSING)

_IMAGE_MARKERS = (".jpg", ".jpeg", ".png", ".webp", ".gif", "image")
_VIDEO_MARKERS = (".mp4", ".webm", ".mov", "video")
_AUDIO_MARKERS = (".mp3", ".wav", ".flac", "audio")

class Generation(BaseModel):
    id: str
    modelId: str
    status: GenerationStatus = GenerationStatus.PENDING
    input: Dict[str, Any] = Field(default_factory=dict)  # Normalized payload that was submitted
    output: Optional[Any] = None
    outputUrl: Optional[str] = None
    outputUrls: Optional[List[str]] = None
    errorMessage: Optional[str] = None
    creditsUsed: Optional[int] = None
    executionTimeMs: Optional[int] = None
    title: Optional[str] = None
    tags: Optional[List[str]] = None
    isFavorite: bool = False
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    userId: Optional[str] = None
    organizationId: Optional[str] = None
    categorySlug: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, value):
        # Unknown backend states are still in flight as far as we can tell
        if isinstance(value, GenerationStatus):
            return value
        try:
            return GenerationStatus(str(value).lower())
        except ValueError:
            return GenerationStatus.PENDING

    @field_validator("isFavorite", mode="before")
    @classmethod
    def _favorite_flag(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes")
        return bool(value)

    @property
    def is_finished(self) -> bool:
        return self.status.is_finished

    @property
    def is_running(self) -> bool:
        return self.status.is_running

    def all_output_urls(self) -> List[str]:
        urls = []
        if self.outputUrl:
            urls.append(self.outputUrl)
        urls.extend(self.outputUrls or [])
        return list(dict.fromkeys(urls))

    @computed_field(alias="executionTimeDisplay")
    @property
    def execution_time_display(self) -> Optional[str]:
        if self.executionTimeMs is None:
            return None
        seconds = self.executionTimeMs / 1000.0
        if seconds < 1:
            return "<1s"
        if seconds < 60:
            return f"{seconds:.1f}s"
        return f"{int(seconds // 60)}m {int(seconds) % 60}s"

    @computed_field(alias="outputKind")
    @property
    def output_kind(self) -> str:
        urls = self.all_output_urls()
        if not urls:
            return "unknown"
        primary = urls[0].lower()
        for kind, markers in (("image", _IMAGE_MARKERS), ("video", _VIDEO_MARKERS), ("audio", _AUDIO_MARKERS)):
            if any(m in primary for m in markers):
                return kind
        return "unknown"

# === Credits ===

class CreditBalance(BaseModel):
    """Credit balance breakdown. Read from snake_case wire keys, served back in camelCase."""

    totalCredits: int = Field(default=0, validation_alias=AliasChoices("total_credits", "totalCredits"))
    subscriptionCredits: int = Field(default=0, validation_alias=AliasChoices("subscription_credits", "subscriptionCredits"))
    purchasedCredits: int = Field(default=0, validation_alias=AliasChoices("purchased_credits", "purchasedCredits"))
    promotionalCredits: int = Field(default=0, validation_alias=AliasChoices("promotional_credits", "promotionalCredits"))
    plan: Optional[str] = None
    periodStart: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("period_start", "periodStart"))
    periodEnd: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("period_end", "periodEnd"))
    nextReset: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("next_reset", "nextReset"))

    def debited(self, amount: int) -> "CreditBalance":
        """Copy with ``amount`` taken from the total and purchased credits, floored at zero."""
        return self.model_copy(update={
            "totalCredits": max(0, self.totalCredits - amount),
            "purchasedCredits": max(0, self.purchasedCredits - amount),
        })

# === Models ===

class CategoryInfo(BaseModel):
    slug: Optional[str] = None
    name: Optional[str] = None
    creditCostDefault: Optional[int] = None

class ModelInfo(BaseModel):
    id: str
    modelId: str
    name: str
    description: Optional[str] = None
    provider: Optional[str] = None
    creditCost: Optional[int] = None
    estimatedTimeSeconds: Optional[int] = None
    isActive: bool = True
    outputType: Optional[str] = None
    category: Optional[CategoryInfo] = None

    def effective_credit_cost(self, fallback: int = 2) -> int:
        if self.creditCost is not None:
            return self.creditCost
        if self.category and self.category.creditCostDefault is not None:
            return self.category.creditCostDefault
        return fallback

# === API requests / responses ===

class SessionCreateRequest(BaseModel):
    modelId: str
    apiKey: Optional[str] = None

class FieldUpdateRequest(BaseModel):
    value: Optional[Any] = None

class RunRequest(BaseModel):
    title: Optional[str] = None
    tags: Optional[List[str]] = None

class MetadataUpdateRequest(BaseModel):
    title: Optional[str] = None
    tags: Optional[List[str]] = None

class ExecutionSnapshot(BaseModel):
    state: str
    error: Optional[str] = None
    failureKind: Optional[str] = None
    result: Optional[Generation] = None
    recent: List[Generation] = Field(default_factory=list)

class SessionResponse(BaseModel):
    id: str
    model: ModelInfo
    creditCost: int
    fields: List[FormField]
    values: Dict[str, Any] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)
    execution: ExecutionSnapshot

class CreditsResponse(BaseModel):
    balance: Optional[CreditBalance] = None
    pendingDebit: int = 0
    isLowBalance: bool = False
    warning: Optional[str] = None
