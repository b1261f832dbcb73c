"""
Cross-project records and query options.
Validated models for provenance, cross references and contradiction tracking.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

RelationshipType = Literal["related", "contradicts", "extends", "supports"]
Resolution = Literal["dismissed", "superseded", "merged"]

VALID_INTERFACES = ['web', 'cli', 'api', 'plugin', 'import']


def to_naive_local(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class SourceContext(BaseModel):
    """Where a memory came from. Never holds the memory's content."""
    project_id: Optional[str] = None
    conversation_id: Optional[str] = None
    document_id: Optional[str] = None
    interface: str = 'web'
    timestamp: datetime = Field(default_factory=datetime.now)

    @field_validator('interface')
    @classmethod
    def interface_must_be_valid(cls, v):
        if v not in VALID_INTERFACES:
            raise ValueError(f'interface must be one of: {VALID_INTERFACES}')
        return v


class CrossReference(BaseModel):
    target_memory_id: str
    target_project_id: Optional[str] = None
    relationship_type: RelationshipType = 'related'
    strength: float
    discovered_at: datetime = Field(default_factory=datetime.now)
    discovered_by: Literal['user', 'system'] = 'system'

    @field_validator('strength')
    @classmethod
    def strength_in_range(cls, v):
        if not -1.0 <= v <= 1.0:
            raise ValueError('strength must be between -1 and 1')
        return v


class ContradictionDetection(BaseModel):
    """A detected conflict between two of one user's memories. Only the resolution fields change."""
    model_config = ConfigDict(validate_assignment=True)

    user_id: str
    memory_id: str
    contradicting_memory_id: str
    topic: str
    claim_a: str
    claim_b: str
    confidence: float
    detected_at: datetime = Field(default_factory=datetime.now)
    resolved_at: Optional[datetime] = None
    resolution: Optional[Resolution] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def involves(self, memory_a: str, memory_b: str) -> bool:
        return {self.memory_id, self.contradicting_memory_id} == {memory_a, memory_b}


class TimeRange(BaseModel):
    """Inclusive bounds compared as naive local time, the clock memories are stamped with."""
    start: datetime
    end: datetime

    @field_validator('start', 'end')
    @classmethod
    def to_local_time(cls, v):
        return to_naive_local(v)

    @model_validator(mode='after')
    def start_before_end(self):
        if self.start > self.end:
            raise ValueError('time range start must not be after end')
        return self

    def contains(self, value: datetime) -> bool:
        return self.start <= to_naive_local(value) <= self.end


class CrossProjectQueryOptions(BaseModel):
    user_id: str
    query: str
    project_ids: Optional[List[str]] = None
    time_range: Optional[TimeRange] = None
    limit: int = 20
    detect_contradictions: bool = True

    @field_validator('query')
    @classmethod
    def query_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('query cannot be empty')
        return v

    @field_validator('limit')
    @classmethod
    def limit_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('limit must be at least 1')
        return v


class CrossProjectStats(BaseModel):
    memories_with_context: int
    total_cross_references: int
    unresolved_contradictions: int
