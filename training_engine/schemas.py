"""
Pydantic Schemas for Training Job Submission.

============================================================
PURPOSE
============================================================
Validates a submission payload once, at the boundary.

- camelCase aliases on the wire, snake_case attributes
- Architecture is typed per model type
- Environment configuration is typed
- Every offending field is reported, not just the first

============================================================
"""

import re
from typing import Any, Dict, List, Literal, Optional, Type
from urllib.parse import urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from core.exceptions import ValidationError

from .types import CurriculumLevel, ModelType, RiskProfile


LOOKBACK_MIN_DAYS = 1
LOOKBACK_MAX_DAYS = 365

_INTERVAL_PATTERN = re.compile(r"^[1-9]\d*[mhdw]$")


class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


# =============================================================
# ARCHITECTURE SCHEMAS (one per model type)
# =============================================================

class ForecastArchitecture(_Schema):
    """Sequence forecaster."""
    cell: Literal["lstm", "gru", "transformer"] = "lstm"
    layers: List[int] = Field(default_factory=lambda: [64, 32, 16], min_length=1)
    dropout: float = Field(default=0.2, ge=0.0, lt=1.0)
    sequence_length: int = Field(default=60, gt=0)

    @field_validator("layers")
    @classmethod
    def _positive_layers(cls, v: List[int]) -> List[int]:
        if any(width <= 0 for width in v):
            raise ValueError("layer widths must be positive")
        return v


class RLAgentArchitecture(_Schema):
    """Reinforcement-learning trading agent."""
    policy_layers: List[int] = Field(default_factory=lambda: [256, 256], min_length=1)
    learning_rate: float = Field(default=3e-4, gt=0.0, le=1.0)
    gamma: float = Field(default=0.99, gt=0.0, le=1.0)
    batch_size: int = Field(default=64, gt=0)

    @field_validator("policy_layers")
    @classmethod
    def _positive_layers(cls, v: List[int]) -> List[int]:
        if any(width <= 0 for width in v):
            raise ValueError("layer widths must be positive")
        return v


class SentimentArchitecture(_Schema):
    """Text classifier fine-tuned on market news."""
    base_model: str = Field(default="finbert", min_length=1)
    max_tokens: int = Field(default=512, gt=0)
    fine_tune_layers: int = Field(default=2, ge=0)


class EnsembleArchitecture(_Schema):
    """Weighted combination of other model types."""
    members: List[ModelType] = Field(
        default_factory=lambda: [ModelType.FORECAST, ModelType.RL_AGENT],
        min_length=2,
    )
    weighting: Literal["equal", "performance"] = "performance"

    @field_validator("members")
    @classmethod
    def _no_nested_ensembles(cls, v: List[ModelType]) -> List[ModelType]:
        if ModelType.ENSEMBLE in v:
            raise ValueError("an ensemble cannot contain another ensemble")
        return v


ARCHITECTURE_SCHEMAS: Dict[ModelType, Type[_Schema]] = {
    ModelType.FORECAST: ForecastArchitecture,
    ModelType.RL_AGENT: RLAgentArchitecture,
    ModelType.SENTIMENT: SentimentArchitecture,
    ModelType.ENSEMBLE: EnsembleArchitecture,
}


# =============================================================
# ENVIRONMENT SCHEMA
# =============================================================

class EnvironmentConfig(_Schema):
    """Trading environment used for RL training and backtests."""
    initial_balance: float = Field(default=10_000.0, gt=0.0)
    fee_rate: float = Field(default=0.001, ge=0.0, le=0.1)
    slippage_bps: float = Field(default=5.0, ge=0.0)
    max_position_fraction: float = Field(default=1.0, gt=0.0, le=1.0)
    reward: Literal["pnl", "sharpe", "sortino"] = "sharpe"


# =============================================================
# SUBMISSION SCHEMA
# =============================================================

class TrainingJobRequest(_Schema):
    """Training job submission payload."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    model_type: ModelType
    coins: List[str] = Field(min_length=1)
    lookback_days: int
    interval: str = "1h"
    algorithm: str = Field(min_length=1)
    architecture: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("architecture", "architectureJson"),
    )
    environment_config: Dict[str, Any] = Field(default_factory=dict)
    tune_flag: bool = False
    risk_profile: RiskProfile = RiskProfile.MODERATE
    dataset_version: str = Field(default="latest", min_length=1)
    curriculum_level: CurriculumLevel = CurriculumLevel.SIMPLE
    callback_url: Optional[str] = None

    @field_validator("model_type", "risk_profile", "curriculum_level", mode="before")
    @classmethod
    def _normalize_enum(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("coins")
    @classmethod
    def _normalize_coins(cls, v: List[str]) -> List[str]:
        coins = [coin.strip().upper() for coin in v]
        if any(not coin for coin in coins):
            raise ValueError("coin symbols must be non-empty")
        # Keep first occurrence order
        return list(dict.fromkeys(coins))

    @field_validator("lookback_days")
    @classmethod
    def _lookback_range(cls, v: int) -> int:
        if not LOOKBACK_MIN_DAYS <= v <= LOOKBACK_MAX_DAYS:
            raise ValueError(
                f"must be between {LOOKBACK_MIN_DAYS} and {LOOKBACK_MAX_DAYS} days, got {v}"
            )
        return v

    @field_validator("interval")
    @classmethod
    def _interval_format(cls, v: str) -> str:
        v = v.strip()
        if not _INTERVAL_PATTERN.match(v):
            raise ValueError("must look like 15m, 1h, 4h or 1d")
        return v

    @field_validator("algorithm")
    @classmethod
    def _algorithm_present(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("algorithm is required")
        return v

    @field_validator("callback_url")
    @classmethod
    def _callback_scheme(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("must be an http or https URL")
        return v


# =============================================================
# VALIDATION ENTRY POINT
# =============================================================

def _format_loc(loc, prefix: Optional[str] = None) -> str:
    parts = [str(part) for part in loc]
    if prefix:
        parts.insert(0, prefix)
    return ".".join(parts) if parts else (prefix or "payload")


def _format_msg(msg: str) -> str:
    return msg[len("Value error, "):] if msg.startswith("Value error, ") else msg


def _collect(
    exc: PydanticValidationError,
    field_errors: Dict[str, List[str]],
    prefix: Optional[str] = None,
) -> None:
    for error in exc.errors():
        key = _format_loc(error["loc"], prefix)
        field_errors.setdefault(key, []).append(_format_msg(error["msg"]))


def _nested(
    schema: Type[_Schema],
    value: Any,
    prefix: str,
    field_errors: Dict[str, List[str]],
) -> Optional[_Schema]:
    try:
        return schema.model_validate(value if value is not None else {})
    except PydanticValidationError as e:
        _collect(e, field_errors, prefix)
        return None


def parse_submission(payload: Any) -> TrainingJobRequest:
    """
    Validate a submission payload.

    The top-level fields, the architecture and the environment
    configuration are all checked before anything is raised,
    so the caller sees every problem at once.

    Returns:
        Validated request with architecture and environment
        configuration normalised to plain dicts with defaults.

    Raises:
        ValidationError: field_errors names every offending field
    """
    if not isinstance(payload, dict):
        raise ValidationError(
            "Submission payload must be an object",
            field_errors={"payload": ["expected an object"]},
        )

    field_errors: Dict[str, List[str]] = {}

    request: Optional[TrainingJobRequest] = None
    try:
        request = TrainingJobRequest.model_validate(payload)
    except PydanticValidationError as e:
        _collect(e, field_errors)

    # Architecture schema depends on modelType, validate it separately
    model_type: Optional[ModelType] = request.model_type if request else None
    if model_type is None:
        raw_type = payload.get("modelType", payload.get("model_type"))
        try:
            model_type = ModelType(str(raw_type).strip().lower())
        except ValueError:
            model_type = None

    architecture = None
    if model_type is not None:
        raw_architecture = payload.get("architecture", payload.get("architectureJson"))
        if isinstance(raw_architecture, dict) and "kind" in raw_architecture:
            # Normalised architectures carry their model type as "kind"
            raw_architecture = dict(raw_architecture)
            kind = str(raw_architecture.pop("kind")).strip().lower()
            if kind != model_type.value:
                field_errors.setdefault("architecture.kind", []).append(
                    f"must match modelType ({model_type.value})"
                )
        if raw_architecture is None or isinstance(raw_architecture, dict):
            architecture = _nested(
                ARCHITECTURE_SCHEMAS[model_type], raw_architecture, "architecture", field_errors
            )

    environment = None
    raw_environment = payload.get("environmentConfig", payload.get("environment_config"))
    if raw_environment is None or isinstance(raw_environment, dict):
        environment = _nested(EnvironmentConfig, raw_environment, "environmentConfig", field_errors)

    if field_errors or request is None:
        fields = sorted(field_errors)
        raise ValidationError(
            f"Invalid training submission: {', '.join(fields)}",
            field_errors=field_errors,
        )

    request.architecture = {"kind": request.model_type.value, **architecture.model_dump(mode="json")}
    request.environment_config = environment.model_dump(mode="json")
    return request


__all__ = [
    "LOOKBACK_MIN_DAYS",
    "LOOKBACK_MAX_DAYS",
    "ForecastArchitecture",
    "RLAgentArchitecture",
    "SentimentArchitecture",
    "EnsembleArchitecture",
    "ARCHITECTURE_SCHEMAS",
    "EnvironmentConfig",
    "TrainingJobRequest",
    "parse_submission",
]
