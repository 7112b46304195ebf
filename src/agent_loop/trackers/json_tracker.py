"""Tracker backed by a local ``prd.json`` user-story file."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_loop.engine.common import load_json, write_json_atomic
from agent_loop.engine.errors import TrackerError
from agent_loop.engine.models import Task, TaskDetail, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_PRD_FILE = "prd.json"
_DEFAULT_PRIORITY = 1_000


@dataclass(slots=True)
class UserStory:
    """One entry of ``userStories`` in the PRD file."""

    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: int | None = None
    passes: bool = False
    labels: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    notes: str = ""

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> UserStory:
        story_id = payload.get("id")
        if not isinstance(story_id, str) or not story_id.strip():
            raise ValueError("userStories[].id must be a non-empty string")
        priority = payload.get("priority")
        if priority is not None and not isinstance(priority, int):
            raise TypeError(f"userStories[{story_id}].priority must be an integer")
        return cls(
            id=story_id,
            title=str(payload.get("title", story_id)),
            description=str(payload.get("description", "")),
            acceptance_criteria=[str(item) for item in payload.get("acceptanceCriteria") or []],
            priority=priority,
            passes=bool(payload.get("passes", False)),
            labels=[str(item) for item in payload.get("labels") or []],
            depends_on=[str(item) for item in payload.get("dependsOn") or []],
            notes=str(payload.get("notes", "")),
        )


class JsonPrdTracker:
    """Selects the highest-priority unfinished story whose dependencies passed."""

    tracker_id = "json"

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or Path(DEFAULT_PRD_FILE)
        self._active_id: str | None = None

    def detect(self) -> bool:
        return self.path.is_file()

    def initialize(self, options: dict[str, Any]) -> None:
        path = options.get("path")
        if path is not None:
            self.path = Path(path)
        if not self.path.is_file():
            raise TrackerError(f"PRD file not found: {self.path}", recoverable=False)
        self._load()

    def get_tasks(self) -> list[Task]:
        _, stories = self._load()
        passed = {story.id for story in stories if story.passes}
        return [self._to_task(story, passed) for story in stories]

    def get_next_task(self) -> Task | None:
        _, stories = self._load()
        passed = {story.id for story in stories if story.passes}
        ready = [
            (position, story)
            for position, story in enumerate(stories)
            if not story.passes and _dependencies_met(story, passed)
        ]
        if not ready:
            return None
        _, story = min(ready, key=lambda item: (_priority(item[1]), item[0]))
        self._active_id = story.id
        return self._to_task(story, passed)

    def get_task_detail(self, task_id: str) -> TaskDetail:
        _, stories = self._load()
        passed = {story.id for story in stories if story.passes}
        story = _find(stories, task_id)
        dependents = [other.id for other in stories if task_id in other.depends_on]
        return TaskDetail(
            task=self._to_task(story, passed),
            description=story.description,
            acceptance_criteria=list(story.acceptance_criteria),
            blocked_by=[dep for dep in story.depends_on if dep not in passed],
            blocks=dependents,
            metadata={"notes": story.notes} if story.notes else {},
        )

    def complete_task(self, task_id: str, reason: str | None = None) -> None:
        document, stories = self._load()
        _find(stories, task_id)
        for raw in document["userStories"]:
            if raw.get("id") == task_id:
                raw["passes"] = True
                if reason:
                    raw["completionNote"] = reason
        self._write(document)
        if self._active_id == task_id:
            self._active_id = None
        logger.info("Marked story %s as passing in %s", task_id, self.path)

    def is_complete(self) -> bool:
        _, stories = self._load()
        return all(story.passes for story in stories)

    def sync(self) -> None:
        self._load()

    def get_task_reasoning(self, task_id: str) -> str | None:
        _, stories = self._load()
        story = _find(stories, task_id)
        remaining = sum(1 for item in stories if not item.passes)
        priority = "unset" if story.priority is None else str(story.priority)
        return (
            f"Highest-priority ready story (priority {priority}); "
            f"{remaining} of {len(stories)} stories remaining."
        )

    def is_task_blocked(self, task_id: str) -> bool:
        return bool(self.get_blockers(task_id))

    def get_blockers(self, task_id: str) -> list[Task]:
        _, stories = self._load()
        passed = {story.id for story in stories if story.passes}
        story = _find(stories, task_id)
        by_id = {item.id: item for item in stories}
        return [
            self._to_task(by_id[dep], passed)
            for dep in story.depends_on
            if dep in by_id and dep not in passed
        ]

    def _to_task(self, story: UserStory, passed: set[str]) -> Task:
        if story.passes:
            status = TaskStatus.COMPLETED
        elif not _dependencies_met(story, passed):
            status = TaskStatus.BLOCKED
        elif story.id == self._active_id:
            status = TaskStatus.ACTIVE
        else:
            status = TaskStatus.PENDING
        return Task(
            id=story.id,
            title=story.title,
            status=status,
            priority=story.priority,
            labels=list(story.labels),
        )

    def _load(self) -> tuple[dict[str, Any], list[UserStory]]:
        try:
            document = load_json(self.path)
        except FileNotFoundError as error:
            raise TrackerError(f"PRD file not found: {self.path}", recoverable=True) from error
        except (OSError, json.JSONDecodeError, TypeError) as error:
            raise TrackerError(f"Unreadable PRD file {self.path}: {error}", recoverable=True) from error
        raw_stories = document.get("userStories")
        if not isinstance(raw_stories, list):
            raise TrackerError(f"{self.path}: userStories must be an array", recoverable=True)
        try:
            stories = [UserStory.from_dict(item) for item in raw_stories]
        except (TypeError, ValueError, AttributeError) as error:
            raise TrackerError(f"{self.path}: {error}", recoverable=True) from error
        return document, stories

    def _write(self, document: dict[str, Any]) -> None:
        try:
            write_json_atomic(self.path, document)
        except OSError as error:
            raise TrackerError(f"Cannot write PRD file {self.path}: {error}", recoverable=True) from error


def _dependencies_met(story: UserStory, passed: set[str]) -> bool:
    return all(dep in passed for dep in story.depends_on)


def _priority(story: UserStory) -> int:
    return _DEFAULT_PRIORITY if story.priority is None else story.priority


def _find(stories: list[UserStory], task_id: str) -> UserStory:
    for story in stories:
        if story.id == task_id:
            return story
    raise TrackerError(f"Unknown story id: {task_id}", recoverable=False)
