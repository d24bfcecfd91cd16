"""Pydantic models shared by the inspector and the run store.

Field names are snake_case in Python and camelCase on disk; every model
accepts both spellings on input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

MAX_QUESTION_DEPTH = 2


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with ``Z`` suffix."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Intent(str, Enum):
    """What kind of answer a research question is after."""

    definition = "definition"
    analysis = "analysis"
    comparison = "comparison"
    impact = "impact"
    risk = "risk"
    implementation = "implementation"
    trend = "trend"
    limitation = "limitation"


class Priority(str, Enum):
    core = "core"
    secondary = "secondary"


class Cost(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class RunStatus(str, Enum):
    """Lifecycle of a research run. ``running`` is the only non-terminal state."""

    running = "running"
    completed = "completed"
    interrupted = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.running


class QuestionNode(BaseModel):
    """Node of the research question tree produced upstream."""

    id: str
    question: str
    depth: int = Field(default=0, ge=0, le=MAX_QUESTION_DEPTH)
    intent: Intent = Intent.definition
    priority: Priority = Priority.core
    cost: Cost = Cost.medium
    search_hints: list[str] = Field(default_factory=list, alias="searchHints")
    parent_id: str | None = Field(default=None, alias="parentId")
    source: str = "generated"
    sub_questions: list[QuestionNode] = Field(default_factory=list, alias="subQuestions")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PageRecord(BaseModel):
    """One successfully inspected page, as appended to ``pages.jsonl``."""

    url: str
    title: str = ""
    extracted_text: str = Field(alias="extractedText")
    links: list[str] = Field(default_factory=list)
    timestamp: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(populate_by_name=True)


class RunMeta(BaseModel):
    """Contents of ``meta.json``."""

    topic: str
    started_at: str = Field(default_factory=utc_now_iso, alias="startedAt")
    status: RunStatus = RunStatus.running
    page_count: int = Field(default=0, ge=0, alias="pageCount")
    run_id: str | None = Field(default=None, alias="runId")
    max_pages: int = Field(default=200, alias="maxPages")

    model_config = ConfigDict(populate_by_name=True)

    def with_status(self, status: RunStatus) -> "RunMeta":
        """Return a copy moved to ``status``.

        Terminal states are final: moving out of one raises ``ValueError``.
        Re-applying the current status is a no-op.
        """

        if status is self.status:
            return self.model_copy()
        if self.status.is_terminal:
            raise ValueError(f"run already {self.status.value}; cannot become {status.value}")
        return self.model_copy(update={"status": status})


QuestionNode.model_rebuild()


def dump(model: BaseModel) -> dict:
    """Serialize ``model`` with on-disk (camelCase) field names."""

    return model.model_dump(by_alias=True, mode="json")
