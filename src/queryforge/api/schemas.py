"""Request bodies accepted by the query endpoints.

POST /v1/query takes one of three shapes, told apart once on ingress:
  - a single query: has `type`
  - a batch: has `parameters`
  - a list of batches
everything past parse_payload() works with typed models only.
"""

from typing import Annotated, Any, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
)

from queryforge.models.definition import TimeUnit
from queryforge.models.query import Filter


def _parse_unit(value: Any) -> TimeUnit | None:
    try:
        return TimeUnit.parse(value)
    except ValueError:
        raise ValueError(
            f"Unknown time unit '{value}', use one of: {', '.join(u.value for u in TimeUnit)}"
        ) from None


class SingleQueryBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    website_id: str | None = Field(
        default=None, validation_alias=AliasChoices("website_id", "websiteId", "projectId")
    )
    start_date: str = Field(validation_alias=AliasChoices("from", "start_date", "startDate"))
    end_date: str = Field(validation_alias=AliasChoices("to", "end_date", "endDate"))
    timezone: str | None = None
    time_unit: TimeUnit | None = Field(
        default=None, validation_alias=AliasChoices("timeUnit", "time_unit", "granularity")
    )
    filters: list[Filter] = Field(default_factory=list)
    group_by: list[str] | None = Field(
        default=None, validation_alias=AliasChoices("groupBy", "group_by")
    )
    order_by: str | None = Field(default=None, validation_alias=AliasChoices("orderBy", "order_by"))
    # range checks happen in the compiler so they report INVALID_PAGINATION
    limit: int | None = None
    offset: int | None = None

    @field_validator("time_unit", mode="before")
    @classmethod
    def parse_time_unit(cls, value: Any) -> TimeUnit | None:
        return _parse_unit(value)


class BatchQueryBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    parameters: list[str]
    website_id: str | None = Field(
        default=None, validation_alias=AliasChoices("website_id", "websiteId", "projectId")
    )
    start_date: str = Field(validation_alias=AliasChoices("start_date", "startDate", "from"))
    end_date: str = Field(validation_alias=AliasChoices("end_date", "endDate", "to"))
    timezone: str | None = None
    granularity: TimeUnit | None = Field(
        default=None, validation_alias=AliasChoices("granularity", "timeUnit", "time_unit")
    )
    filters: list[Filter] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=1)
    page: int = Field(default=1, ge=1)

    @field_validator("granularity", mode="before")
    @classmethod
    def parse_granularity(cls, value: Any) -> TimeUnit | None:
        return _parse_unit(value)


def _body_kind(value: Any) -> str | None:
    if isinstance(value, dict):
        if "parameters" in value:
            return "batch"
        if "type" in value:
            return "single"
        return None
    if isinstance(value, BatchQueryBody):
        return "batch"
    if isinstance(value, SingleQueryBody):
        return "single"
    return None


QueryBody = Annotated[
    Union[Annotated[SingleQueryBody, Tag("single")], Annotated[BatchQueryBody, Tag("batch")]],
    Discriminator(
        _body_kind,
        custom_error_type="invalid_query_body",
        custom_error_message="Body needs either 'type' (single query) or 'parameters' (batch)",
    ),
]

QueryPayload = TypeAdapter(Union[QueryBody, list[BatchQueryBody]])


def parse_payload(payload: Any) -> SingleQueryBody | BatchQueryBody | list[BatchQueryBody]:
    """Validate a raw json body into one of the three request shapes."""
    return QueryPayload.validate_python(payload)
