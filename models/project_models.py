"""Persisted project snapshot shape."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .workflow_models import utc_now


class ProjectSnapshot(BaseModel):
    """``{projectId?, name, description?, state}`` as stored by a repository.

    ``state`` is the fully serialized workflow state. Saving a snapshot without
    a ``project_id`` creates a new record.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project_id: str | None = None
    name: str
    description: str | None = None
    state: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utc_now)


class ProjectListing(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project_id: str
    name: str
    description: str | None = None
    updated_at: datetime
    current_stage: int = 1
