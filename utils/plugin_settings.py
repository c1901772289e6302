"""
Typed Plugin Settings
Pydantic models for per-strategy instance settings and the webhook envelope
"""
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator

from models import DataStrategy
from utils.errors import ConfigurationError, DataFormatError

MERGE_STRATEGIES = ('default', 'deep_merge', 'stream')


class WebhookSettings(BaseModel):
    """Settings of webhook-fed instances"""
    merge_strategy: str = Field('default', description="Strategy used when a payload names none")

    @field_validator('merge_strategy')
    @classmethod
    def known_strategy(cls, value):
        if value not in MERGE_STRATEGIES:
            raise ValueError(f"unsupported merge strategy: {value}")
        return value


class PollingURL(BaseModel):
    url: str = Field(..., min_length=1)
    method: Literal['GET', 'POST'] = 'GET'
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    key: Optional[str] = Field(None, description="Key the response is stored under (default: the URL)")


class PollingConfig(BaseModel):
    """Remote sources fetched for polling instances"""
    urls: List[PollingURL] = Field(..., min_length=1)
    timeout: int = Field(10, ge=1, le=120, description="Per-request timeout in seconds")
    max_size: int = Field(1024 * 1024, ge=1, description="Maximum response size in bytes")
    retry_count: int = Field(2, ge=0, le=5)
    user_agent: str = 'Inkwell/1.0'


class PollingSettings(BaseModel):
    """Settings of polling instances; a config here overrides the definition's"""
    polling_config: Optional[PollingConfig] = None


class StaticSettings(BaseModel):
    """Settings of static instances; the data is rendered as-is"""
    data: Dict[str, Any] = Field(default_factory=dict)


class WebhookEnvelope(BaseModel):
    """Inbound webhook body"""
    merge_variables: Dict[str, Any]
    merge_strategy: Optional[str] = None
    stream_limit: Optional[int] = Field(None, ge=1)


SETTINGS_MODELS = {
    DataStrategy.WEBHOOK: WebhookSettings,
    DataStrategy.POLLING: PollingSettings,
    DataStrategy.STATIC: StaticSettings,
}


def format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = '.'.join(str(part) for part in err['loc']) or 'value'
        parts.append(f"{location}: {err['msg']}")
    return '; '.join(parts)


def decode_instance_settings(definition, settings):
    """
    Decode raw instance settings into the typed model for the definition

    Raises:
        ConfigurationError: settings do not fit the definition's data strategy
    """
    model = SETTINGS_MODELS[definition.data_strategy]
    try:
        return model.model_validate(settings or {})
    except ValidationError as e:
        raise ConfigurationError(f"invalid settings for {definition.identifier}: {format_validation_error(e)}")


def decode_polling_config(definition, settings=None) -> PollingConfig:
    """Effective polling config: the instance override, else the definition's"""
    if settings is not None and settings.polling_config is not None:
        return settings.polling_config

    try:
        return PollingConfig.model_validate(definition.polling_config or {})
    except ValidationError as e:
        raise ConfigurationError(f"invalid polling config for {definition.identifier}: {format_validation_error(e)}")


def decode_webhook_envelope(body) -> WebhookEnvelope:
    """
    Validate an inbound webhook body

    Raises:
        DataFormatError: body is not an object or lacks a merge_variables object
    """
    if not isinstance(body, dict):
        raise DataFormatError("webhook payload must be a JSON object holding merge_variables")
    if not isinstance(body.get('merge_variables'), dict):
        raise DataFormatError("webhook payload missing merge_variables object")
    try:
        return WebhookEnvelope.model_validate(body)
    except ValidationError as e:
        raise DataFormatError(f"invalid webhook payload: {format_validation_error(e)}")
