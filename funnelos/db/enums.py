from enum import Enum


class SectionStatusEnum(str, Enum):
    generated = "generated"
    approved = "approved"
    locked = "locked"


class GenerationJobStatusEnum(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
