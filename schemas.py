from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import JobStatus, OperationKind
from utils import is_http_url, is_upload_id, parse_timestamp, validate_video_url


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Operation options, one payload type per operation kind ---

class DownloadOptions(CamelModel):
    format: Literal["mp4", "mp3"] = "mp4"
    quality: Literal["highest", "high", "medium", "low"] = "high"
    resolution: Optional[Literal["1080p", "720p", "480p", "360p"]] = None


class CompressOptions(CamelModel):
    quality: Literal["high", "medium", "low"] = "medium"


class ConvertOptions(CamelModel):
    format: Literal["mp4", "avi", "mov", "gif"]


class TrimOptions(CamelModel):
    start_time: str
    end_time: str

    @field_validator("start_time", "end_time")
    @classmethod
    def check_format(cls, value: str) -> str:
        parse_timestamp(value)
        return value

    @model_validator(mode="after")
    def check_range(self):
        if parse_timestamp(self.start_time) >= parse_timestamp(self.end_time):
            raise ValueError("End time must be after start time")
        return self


class ExtractOptions(CamelModel):
    format: Literal["mp3", "wav"] = "mp3"


class WatermarkOptions(CamelModel):
    text: str = Field(min_length=1, max_length=200)
    position: Literal["top-left", "top-right", "bottom-left", "bottom-right"] = "bottom-right"


# --- Job requests, tagged on operationKind ---

class _JobRequest(CamelModel):
    input_ref: str = Field(min_length=1)


class _ProcessingJobRequest(_JobRequest):
    @field_validator("input_ref")
    @classmethod
    def check_input_ref(cls, value: str) -> str:
        if not (is_upload_id(value) or is_http_url(value)):
            raise ValueError("inputRef must be an upload id or an http(s) URL")
        return value


class DownloadJobRequest(_JobRequest):
    operation_kind: Literal["download"]
    operation_options: DownloadOptions = Field(default_factory=DownloadOptions)

    @field_validator("input_ref")
    @classmethod
    def check_url(cls, value: str) -> str:
        validate_video_url(value)
        return value


class CompressJobRequest(_ProcessingJobRequest):
    operation_kind: Literal["compress"]
    operation_options: CompressOptions = Field(default_factory=CompressOptions)


class ConvertJobRequest(_ProcessingJobRequest):
    operation_kind: Literal["convert"]
    operation_options: ConvertOptions


class TrimJobRequest(_ProcessingJobRequest):
    operation_kind: Literal["trim"]
    operation_options: TrimOptions


class ExtractJobRequest(_ProcessingJobRequest):
    operation_kind: Literal["extract"]
    operation_options: ExtractOptions = Field(default_factory=ExtractOptions)


class WatermarkJobRequest(_ProcessingJobRequest):
    operation_kind: Literal["watermark"]
    operation_options: WatermarkOptions


JobRequest = Annotated[
    Union[
        DownloadJobRequest,
        CompressJobRequest,
        ConvertJobRequest,
        TrimJobRequest,
        ExtractJobRequest,
        WatermarkJobRequest,
    ],
    Field(discriminator="operation_kind"),
]


job_request_adapter = TypeAdapter(JobRequest)


def parse_job_request(data):
    """Validate a raw submission body into the request type for its operation kind."""
    return job_request_adapter.validate_python(data)


def request_kind(request: _JobRequest) -> OperationKind:
    return OperationKind(request.operation_kind)


# --- Responses ---

class JobAccepted(CamelModel):
    job_id: str
    status: JobStatus


class JobStatusResponse(CamelModel):
    job_id: str
    status: JobStatus
    progress: int = 0
    title: Optional[str] = None
    download_url: Optional[str] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class JobResponse(JobStatusResponse):
    input_ref: str
    platform: Optional[str] = None
    operation_kind: OperationKind
    operation_options: dict
    created_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: datetime


class JobListResponse(CamelModel):
    items: list[JobResponse]
    total: int
    page: int
    size: int
    pages: int


class UploadResponse(CamelModel):
    file_id: str
    filename: str
    size: int
    content_type: str


class HealthResponse(BaseModel):
    status: str
    message: str
    queues: Optional[dict] = None
