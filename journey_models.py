# journey_models.py

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from engine_logging import get_logger

logger = get_logger("models")

__all__ = [
    "Journey", "Step", "RequestTemplate", "Branch", "Condition", "Extraction",
    "ExtractionType", "ThinkTime", "ThinkTimeRange", "JourneyDefaults",
    "ProfileConfig", "Profile", "Generator", "UuidGenerator", "TimestampGenerator",
    "RandomGenerator", "SequenceGenerator", "FakerGenerator", "StepResponse",
    "FlowState", "TransitionSource", "TransitionResult", "ValidationIssue",
    "JourneyPath", "ExtractionResult", "ExtractAllResult", "StepOutcome",
    "UserContext", "ProfileDistributionStats", "OPERATOR_ORDER",
]

ALLOWED_METHODS = ['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS']

# Applied in this order when a condition carries more than one operator key
OPERATOR_ORDER = ("eq", "ne", "gt", "gte", "lt", "lte", "contains", "matches", "exists", "in")


class DocumentModel(BaseModel):
    """Base for JSON documents: camelCase keys in, unknown keys ignored."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RuntimeModel(BaseModel):
    """Base for records produced at run time; serialized with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------
# Journey Document Models
# ---------------------------

class ThinkTimeRange(DocumentModel):
    min: float = Field(..., ge=0, description="Minimum think time in seconds")
    max: float = Field(..., ge=0, description="Maximum think time in seconds")

    @model_validator(mode='after')
    def check_bounds(self) -> 'ThinkTimeRange':
        if self.min > self.max:
            raise ValueError(f"thinkTime min ({self.min}) cannot be greater than max ({self.max})")
        return self


ThinkTime = Union[Annotated[float, Field(ge=0)], ThinkTimeRange]


class Expectations(DocumentModel):
    status_code: Optional[Union[int, List[int]]] = Field(None, alias="statusCode")
    content_type: Optional[str] = Field(None, alias="contentType")
    has_fields: Optional[List[str]] = Field(None, alias="hasFields")
    max_response_time: Optional[float] = Field(None, alias="maxResponseTime")


class RequestTemplate(DocumentModel):
    method: str = Field(..., description="HTTP method (GET, POST, PUT, etc.)")
    url: str = Field(..., description="URL path (relative to baseUrl) or full URL. Can contain {{variables}}.")
    headers: Dict[str, str] = Field(default_factory=dict, description="Headers specific to this request. Can contain {{variables}}.")
    json_body: Optional[Any] = Field(None, alias="json", description="JSON request body. String values can contain {{variables}} or ##VAR:unquoted:name## tokens.")
    body: Optional[str] = Field(None, description="Raw string body. Can contain {{variables}}.")
    query_params: Dict[str, str] = Field(default_factory=dict, alias="queryParams")
    timeout: Optional[float] = Field(None, gt=0, description="Request timeout in seconds")
    expect: Optional[Expectations] = None

    @field_validator('method')
    def validate_method(cls, v):
        method_upper = v.upper()
        if method_upper not in ALLOWED_METHODS:
            raise ValueError(f"method must be one of {ALLOWED_METHODS}, got '{v}'")
        return method_upper


class Condition(DocumentModel):
    """
    One comparison against a response value.

    The value comes from `field` (JSONPath into the body), `status` or `header`,
    in that order of precedence. Operators are tracked by presence, so
    `{"eq": null}` compares against null rather than meaning "no operator".
    """
    field: Optional[str] = Field(None, description="JSONPath evaluated against the response body")
    status: Optional[int] = Field(None, description="Exact status code match")
    header: Optional[str] = Field(None, description="Response header name (case-insensitive)")

    eq: Any = None
    ne: Any = None
    gt: Optional[Union[StrictInt, StrictFloat]] = None
    gte: Optional[Union[StrictInt, StrictFloat]] = None
    lt: Optional[Union[StrictInt, StrictFloat]] = None
    lte: Optional[Union[StrictInt, StrictFloat]] = None
    contains: Optional[str] = None
    matches: Optional[str] = None
    exists: Optional[bool] = None
    in_: Optional[List[Any]] = Field(None, alias="in")

    def operator(self) -> Optional[Tuple[str, Any]]:
        """Returns (operator name, operand) for the first operator supplied, or None."""
        supplied = self.model_fields_set
        for name in OPERATOR_ORDER:
            attr = "in_" if name == "in" else name
            if attr in supplied:
                return name, getattr(self, attr)
        return None

    def describe(self) -> str:
        if self.field is not None:
            source = f"field {self.field}"
        elif self.status is not None:
            return f"status == {self.status}"
        elif self.header is not None:
            source = f"header {self.header}"
        else:
            source = "<no source>"
        op = self.operator()
        if op is None:
            return f"{source} <no operator>"
        return f"{source} {op[0]} {op[1]!r}"


class Branch(DocumentModel):
    condition: Condition
    goto: str = Field(..., min_length=1, description="Target step id")


class ExtractionType(str, Enum):
    JSONPATH = "jsonpath"
    HEADER = "header"
    REGEX = "regex"
    STATUS = "status"


class Extraction(DocumentModel):
    type: ExtractionType = Field(ExtractionType.JSONPATH, description="Extraction strategy")
    path: str = Field("", description="JSONPath, header name, or 'pattern|group' regex")
    as_: str = Field(..., alias="as", min_length=1, description="Variable name that receives the value")
    default: Any = Field(None, description="Value used when the extraction fails")
    transform: Optional[str] = Field(None, description="Sandboxed expression applied to `value`")

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set

    @model_validator(mode='after')
    def check_path(self) -> 'Extraction':
        if self.type != ExtractionType.STATUS and not self.path:
            raise ValueError(f"Extraction '{self.as_}' of type '{self.type.value}' requires a 'path'")
        return self


class Step(DocumentModel):
    id: str = Field(..., min_length=1, description="Unique identifier for the step")
    name: Optional[str] = Field(None, description="Human-readable name for the step")
    request: RequestTemplate
    extract: List[Extraction] = Field(default_factory=list)
    think_time: Optional[ThinkTime] = Field(None, alias="thinkTime")
    branches: List[Branch] = Field(default_factory=list)
    on_success: Optional[str] = Field(None, alias="onSuccess", description="Step id to run after a 2xx response")
    on_failure: Optional[str] = Field(None, alias="onFailure", description="Step id to run after a non-2xx response")

    def label(self) -> str:
        return f"'{self.name}' ({self.id})" if self.name else f"({self.id})"


class JourneyDefaults(DocumentModel):
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(None, gt=0)
    think_time: Optional[ThinkTime] = Field(None, alias="thinkTime")


class Journey(DocumentModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., description="Name of the journey")
    description: Optional[str] = None
    version: Optional[str] = None
    base_url: Optional[str] = Field(None, alias="baseUrl")
    defaults: JourneyDefaults = Field(default_factory=JourneyDefaults)
    variables: Dict[str, Any] = Field(default_factory=dict, description="Static variables accessible as {{name}}")
    steps: List[Step] = Field(..., min_length=1, description="Ordered steps of the journey")

    @field_validator('steps')
    def check_unique_step_ids(cls, v):
        seen = set()
        duplicates = []
        for step in v:
            if step.id in seen:
                duplicates.append(step.id)
            seen.add(step.id)
        if duplicates:
            raise ValueError(f"Duplicate step ids: {sorted(set(duplicates))}")
        return v


# ---------------------------
# Profile Document Models
# ---------------------------

class UuidOptions(DocumentModel):
    version: Literal[1, 4] = 4


class UuidGenerator(DocumentModel):
    type: Literal['uuid']
    options: UuidOptions = Field(default_factory=UuidOptions)


class TimestampOptions(DocumentModel):
    format: Literal['epoch_ms', 'epoch_s', 'iso'] = 'epoch_ms'


class TimestampGenerator(DocumentModel):
    type: Literal['timestamp']
    options: TimestampOptions = Field(default_factory=TimestampOptions)


class RandomOptions(DocumentModel):
    min: Optional[StrictInt] = None
    max: Optional[StrictInt] = None
    length: Optional[StrictInt] = Field(None, ge=1)
    charset: Optional[str] = Field(None, min_length=1)

    @model_validator(mode='after')
    def check_range(self) -> 'RandomOptions':
        low = 0 if self.min is None else self.min
        high = 100 if self.max is None else self.max
        if self.charset is None and low > high:
            raise ValueError(f"random generator min ({low}) cannot be greater than max ({high})")
        return self


class RandomGenerator(DocumentModel):
    type: Literal['random']
    options: RandomOptions = Field(default_factory=RandomOptions)


class SequenceOptions(DocumentModel):
    start: Union[StrictInt, StrictFloat] = 1
    step: Union[StrictInt, StrictFloat] = 1


class SequenceGenerator(DocumentModel):
    type: Literal['sequence']
    options: SequenceOptions = Field(default_factory=SequenceOptions)


class FakerOptions(DocumentModel):
    method: str = Field(..., min_length=1, description="Dotted provider path, e.g. 'person.firstName' or 'email'")
    args: List[Any] = Field(default_factory=list)
    kwargs: Dict[str, Any] = Field(default_factory=dict)
    locale: Optional[str] = None


class FakerGenerator(DocumentModel):
    type: Literal['faker']
    options: FakerOptions


Generator = Annotated[
    Union[UuidGenerator, TimestampGenerator, RandomGenerator, SequenceGenerator, FakerGenerator],
    Field(discriminator='type')
]


class Profile(DocumentModel):
    name: str = Field(..., min_length=1)
    weight: float = Field(..., ge=0, description="Relative weight; normalized against the total of all profiles")
    data_source: Optional[str] = Field(None, alias="dataSource", description="CSV or JSON file with user rows")
    data: Optional[List[Dict[str, Any]]] = Field(None, description="Inline user rows")
    variables: Dict[str, Any] = Field(default_factory=dict)
    generators: Dict[str, Generator] = Field(default_factory=dict)

    @model_validator(mode='after')
    def check_row_source(self) -> 'Profile':
        if self.data_source and self.data is not None:
            logger.warning(f"Profile '{self.name}' defines both 'dataSource' and inline 'data'; 'dataSource' takes precedence.")
        return self


class ProfileConfig(DocumentModel):
    id: Optional[str] = None
    name: Optional[str] = None
    profiles: List[Profile] = Field(..., min_length=1)

    @field_validator('profiles')
    def check_unique_names(cls, v):
        names = [p.name for p in v]
        if len(names) != len(set(names)):
            raise ValueError(f"Profile names must be unique, got {names}")
        return v


# ---------------------------
# Runtime Records
# ---------------------------

class StepResponse(RuntimeModel):
    status_code: int = Field(..., validation_alias=AliasChoices("statusCode", "status_code"))
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    response_time: float = Field(0.0, validation_alias=AliasChoices("responseTime", "responseTimeMs", "response_time"))

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class FlowState(RuntimeModel):
    """Execution progress of one virtual user. Never share an instance between users."""
    current_step_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    executed_steps: List[str] = Field(default_factory=list)
    next_step_id: Optional[str] = None


class TransitionSource(str, Enum):
    BRANCH = "branch"
    ON_SUCCESS = "onSuccess"
    ON_FAILURE = "onFailure"
    SEQUENTIAL = "sequential"
    END = "end"


class TransitionResult(RuntimeModel):
    matched: bool
    next_step_id: Optional[str] = None
    matched_condition: Optional[Condition] = None
    source: TransitionSource


class ValidationIssue(RuntimeModel):
    type: Literal['error', 'warning']
    step_id: Optional[str] = None
    message: str


class JourneyPath(RuntimeModel):
    steps: List[str]
    is_complete: bool
    has_cycle: bool


class ExtractionResult(RuntimeModel):
    success: bool
    value: Any = None
    error: Optional[str] = None


class ExtractAllResult(RuntimeModel):
    variables: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)


class StepOutcome(RuntimeModel):
    step_id: str
    next_step_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    transition: TransitionResult


class UserContext(RuntimeModel):
    profile_name: str
    user_data: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    generated_values: Dict[str, Any] = Field(default_factory=dict)


class ProfileDistributionStats(RuntimeModel):
    total_users: int = 0
    profile_counts: Dict[str, int] = Field(default_factory=dict)
    profile_percentages: Dict[str, float] = Field(default_factory=dict)
