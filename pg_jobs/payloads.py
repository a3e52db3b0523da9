"""
Typed job payloads.

Every job type has its own input model, discriminated on ``type``. Inputs are
validated when a job is enqueued and again whenever a row is read back from
storage, so processors always receive a well-formed model instead of a raw
JSON blob.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class JobType(str, Enum):
    """Closed set of work-function discriminants"""
    WEBSITE_CRAWL = "website_crawl"
    PERFORMANCE_ANALYSIS = "performance_analysis"
    COMPETITOR_MONITORING = "competitor_monitoring"
    CONTENT_PERFORMANCE_TRACKING = "content_performance_tracking"
    SERP_TRACKING = "serp_tracking"

    def __str__(self) -> str:
        return self.value

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    JobType.WEBSITE_CRAWL: "Website Crawl",
    JobType.PERFORMANCE_ANALYSIS: "Performance Analysis",
    JobType.COMPETITOR_MONITORING: "Competitor Monitoring",
    JobType.CONTENT_PERFORMANCE_TRACKING: "Content Performance Tracking",
    JobType.SERP_TRACKING: "SERP Tracking",
}


class BaseJobInput(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def job_type(self) -> JobType:
        return JobType(self.type)


class WebsiteCrawlInput(BaseJobInput):
    type: Literal["website_crawl"] = "website_crawl"
    url: str = Field(min_length=1)
    max_pages: int = Field(default=10, ge=1, le=500)
    include_external_links: bool = False
    crawl_delay: Optional[float] = Field(default=None, ge=0)
    competitor_url: Optional[str] = None


class PerformanceAnalysisInput(BaseJobInput):
    type: Literal["performance_analysis"] = "performance_analysis"
    domain: str = Field(min_length=1)
    include_recommendations: bool = True
    include_factors: bool = False


class CompetitorMonitoringInput(BaseJobInput):
    type: Literal["competitor_monitoring"] = "competitor_monitoring"
    competitor_url: str = Field(min_length=1)
    competitor_domain: str = Field(min_length=1)
    primary_website_url: Optional[str] = None
    analysis_type: Literal["content_gap", "keyword_analysis", "full"] = "full"


class ContentPerformanceTrackingInput(BaseJobInput):
    type: Literal["content_performance_tracking"] = "content_performance_tracking"
    domain: str = Field(min_length=1)
    urls: List[str] = Field(default_factory=list)
    time_range: Literal["7d", "30d", "90d"] = "30d"


class SerpTrackingInput(BaseJobInput):
    type: Literal["serp_tracking"] = "serp_tracking"
    keywords: List[str] = Field(min_length=1)
    domain: str = Field(min_length=1)
    search_engines: List[str] = Field(default_factory=lambda: ["google"])
    device: Literal["desktop", "mobile", "tablet"] = "desktop"
    location: Optional[str] = None


JobInput = Annotated[
    Union[
        WebsiteCrawlInput,
        PerformanceAnalysisInput,
        CompetitorMonitoringInput,
        ContentPerformanceTrackingInput,
        SerpTrackingInput,
    ],
    Field(discriminator="type"),
]

_job_input_adapter = TypeAdapter(JobInput)


class JobResultPayload(BaseModel):
    """
    Envelope stored in the ``result`` column of a completed job.

    Processors may return this model, any other pydantic model, or a plain
    mapping; everything beyond the envelope fields is kept as-is.
    """
    model_config = ConfigDict(extra="allow")

    type: JobType
    success: bool = True
    completed_at: Optional[datetime] = None


def _normalise_type(data: Mapping[str, Any]) -> Dict[str, Any]:
    payload = dict(data)
    job_type = payload.get("type")
    if isinstance(job_type, JobType):
        payload["type"] = job_type.value
    return payload


def parse_job_input(data: Union[BaseJobInput, Mapping[str, Any], str, bytes]) -> BaseJobInput:
    """
    Validate raw job input into its typed model.

    Accepts an already-built model, a mapping, or a JSON document (as read
    back from storage).

    Raises:
        ValidationError: If the payload is not a valid input for any job type
    """
    if isinstance(data, BaseJobInput):
        return data
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise ValidationError(f"Job input is not valid JSON: {e}") from e
    if not isinstance(data, Mapping):
        raise ValidationError(f"Job input must be an object, got {type(data).__name__}")
    try:
        return _job_input_adapter.validate_python(_normalise_type(data))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid job input: {e}") from e


def dump_job_input(job_input: BaseJobInput) -> str:
    """Serialise a job input for storage"""
    return job_input.model_dump_json()


def serialize_job_result(job_type: JobType, result: Any) -> Dict[str, Any]:
    """
    Normalise whatever a processor returned into the stored result object.

    Raises:
        ValidationError: If the result is not an object or declares a
            different job type
    """
    if result is None:
        result = {}
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json")
    if not isinstance(result, Mapping):
        raise ValidationError(
            f"Processor for {job_type.value} must return an object, got {type(result).__name__}"
        )
    payload = _normalise_type(result)
    payload.setdefault("type", job_type.value)
    if payload["type"] != job_type.value:
        raise ValidationError(
            f"Result type '{payload['type']}' does not match job type '{job_type.value}'"
        )
    try:
        envelope = JobResultPayload.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid job result: {e}") from e
    return envelope.model_dump(mode="json")
