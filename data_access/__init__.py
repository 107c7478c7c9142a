# data_access/__init__.py
# Persistence collaborators for projects, chapter summaries and author styles.

from .author_style_repository import (
    AuthorStyleRepository,
    InMemoryAuthorStyleRepository,
    JsonFileAuthorStyleRepository,
)
from .project_repository import (
    InMemoryProjectRepository,
    JsonFileProjectRepository,
    ProjectRepository,
    new_project_id,
)
from .summary_repository import (
    InMemorySummaryRepository,
    JsonFileSummaryRepository,
    SummaryRepository,
)

__all__ = [
    "AuthorStyleRepository",
    "InMemoryAuthorStyleRepository",
    "JsonFileAuthorStyleRepository",
    "InMemoryProjectRepository",
    "JsonFileProjectRepository",
    "ProjectRepository",
    "new_project_id",
    "InMemorySummaryRepository",
    "JsonFileSummaryRepository",
    "SummaryRepository",
]
