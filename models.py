import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, Enum, Integer, String, Text

from database import Base
from utils import utcnow


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class OperationKind(str, enum.Enum):
    DOWNLOAD = "download"
    COMPRESS = "compress"
    CONVERT = "convert"
    TRIM = "trim"
    EXTRACT = "extract"
    WATERMARK = "watermark"


class Job(Base):
    __tablename__ = "jobs"

    job_id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    input_ref = Column(Text, nullable=False)
    platform = Column(String, nullable=True)
    title = Column(Text, nullable=True)
    operation_kind = Column(Enum(OperationKind), nullable=False)
    operation_options = Column(JSON, nullable=False, default=dict)
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, index=True)
    progress = Column(Integer, default=0)
    output_path = Column(Text, nullable=True)
    download_url = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<Job {self.job_id} {self.status}>"
