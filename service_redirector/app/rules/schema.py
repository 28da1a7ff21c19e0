"""
Persisted snapshot schema.

These pydantic documents define the on-disk / on-wire shape of a rule
snapshot (camelCase keys, as stored by existing installations and served by
rule feeds). Unknown keys are ignored; absent keys take their defaults.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

DEFAULT_UPDATE_INTERVAL = 900

DocumentT = TypeVar("DocumentT", bound="SalvageableDocument")


def _none_as_list(value: Any) -> Any:
    return [] if value is None else value


def _lenient_datetime(value: Any) -> Any:
    # Older snapshots stored Date objects that serialized to {} or garbage
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _error_summary(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'entry'}: {err['msg']}"
        for err in error.errors()
    )


class SalvageableDocument(BaseModel):
    """A list entry that is validated on its own.

    A malformed entry keeps the fields that do validate and records what was
    wrong in ``schema_error`` instead of failing the document it belongs to.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    schema_error: Optional[str] = Field(default=None, exclude=True)

    @classmethod
    def lenient(cls: Type[DocumentT], value: Any) -> DocumentT:
        if isinstance(value, cls):
            return value
        try:
            return cls.model_validate(value)
        except PydanticValidationError as e:
            return cls.salvage(value, e)

    @classmethod
    def salvage(cls: Type[DocumentT], value: Any, error: PydanticValidationError) -> DocumentT:
        data: Dict[str, Any] = value if isinstance(value, dict) else {}
        invalid = {str(err["loc"][0]) for err in error.errors() if err["loc"]}
        kept = {key: item for key, item in data.items() if key not in invalid}
        try:
            document = cls.model_validate(kept)
        except PydanticValidationError:
            document = cls()
        return document.model_copy(update={"schema_error": _error_summary(error)})


def _lenient_entries(document_cls: Type[SalvageableDocument], value: Any) -> Any:
    value = _none_as_list(value)
    if not isinstance(value, list):
        return value
    return [document_cls.lenient(item) for item in value]


class RuleDocument(SalvageableDocument):
    """A single rule as persisted."""

    description: Optional[str] = None
    origin: Optional[str] = None
    exclude: Optional[str] = None
    methods: List[str] = Field(default_factory=list)
    types: List[str] = Field(default_factory=list)
    target: Optional[str] = None
    example: Optional[str] = None
    enable: bool = False
    process: Optional[str] = None

    @field_validator("methods", "types", mode="before")
    @classmethod
    def coerce_lists(cls, value: Any) -> Any:
        return _none_as_list(value)

    @field_validator("enable", mode="before")
    @classmethod
    def default_enable(cls, value: Any) -> Any:
        return False if value is None else value


class OnlineRuleGroupDocument(SalvageableDocument):
    """An online rule set as persisted or served by a feed (current format)."""

    description: Optional[str] = None
    url: Optional[str] = None
    enable: bool = False
    auto: bool = True
    version: Optional[str] = None
    rules: List[RuleDocument] = Field(default_factory=list)
    download_at: Optional[datetime] = Field(default=None, alias="downloadAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @field_validator("rules", mode="before")
    @classmethod
    def coerce_rules(cls, value: Any) -> Any:
        return _lenient_entries(RuleDocument, value)

    @field_validator("download_at", "updated_at", mode="before")
    @classmethod
    def parse_dates(cls, value: Any) -> Any:
        return _lenient_datetime(value)

    @field_validator("version", mode="before")
    @classmethod
    def version_as_text(cls, value: Any) -> Any:
        return None if value is None else str(value)


class RuleStoreDocument(BaseModel):
    """The whole persisted snapshot."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    enable: bool = False
    sync: bool = False
    update_interval: int = Field(default=DEFAULT_UPDATE_INTERVAL, alias="updateInterval")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    online_urls: List[OnlineRuleGroupDocument] = Field(default_factory=list, alias="onlineURLs")
    custom_rules: List[RuleDocument] = Field(default_factory=list, alias="customRules")

    @field_validator("online_urls", mode="before")
    @classmethod
    def coerce_groups(cls, value: Any) -> Any:
        return _lenient_entries(OnlineRuleGroupDocument, value)

    @field_validator("custom_rules", mode="before")
    @classmethod
    def coerce_rules(cls, value: Any) -> Any:
        return _lenient_entries(RuleDocument, value)

    @field_validator("updated_at", mode="before")
    @classmethod
    def parse_dates(cls, value: Any) -> Any:
        return _lenient_datetime(value)

    @field_validator("update_interval", mode="before")
    @classmethod
    def coerce_interval(cls, value: Any) -> Any:
        try:
            interval = int(value)
        except (TypeError, ValueError):
            return DEFAULT_UPDATE_INTERVAL
        return interval if interval > 0 else DEFAULT_UPDATE_INTERVAL
