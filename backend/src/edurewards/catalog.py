"""
Task Catalog - read-only task definitions.
Loaded once (JSON document or DynamoDB table) and never mutated by the engine.
"""
import json
from typing import Dict, Iterable, List

from .errors import NotFound, ValidationError
from .logging import logger
from .models import TaskCategory, TaskDefinition


class TaskCatalog:
    """Lookup of TaskDefinitions by id, validated at load time."""

    def __init__(self, definitions: Iterable[TaskDefinition]):
        self._tasks: Dict[str, TaskDefinition] = {}
        for definition in definitions:
            if definition.id in self._tasks:
                raise ValidationError(f"Duplicate task id in catalog: {definition.id}")
            self._tasks[definition.id] = definition
        self._check_prerequisites()

    @classmethod
    def from_dicts(cls, documents: Iterable[dict]) -> 'TaskCatalog':
        return cls(TaskDefinition.from_dict(doc) for doc in documents)

    @classmethod
    def from_json(cls, path: str) -> 'TaskCatalog':
        """
        Load a catalog file: either a list of task documents or {"tasks": [...]}.

        Args:
            path: Path to the JSON document

        Returns:
            TaskCatalog with every definition validated
        """
        with open(path, encoding='utf-8') as f:
            document = json.load(f)
        if isinstance(document, dict):
            document = document.get('tasks', [])
        catalog = cls.from_dicts(document)
        logger.info(f"Loaded {len(catalog)} task definitions from {path}")
        return catalog

    @classmethod
    def from_table(cls, store, table: str) -> 'TaskCatalog':
        catalog = cls.from_dicts(store.scan(table))
        logger.info(f"Loaded {len(catalog)} task definitions from {table}")
        return catalog

    def _check_prerequisites(self) -> None:
        """Every prerequisite must exist and the prerequisite graph must be acyclic."""
        for task in self._tasks.values():
            for prerequisite in task.prerequisites:
                if prerequisite not in self._tasks:
                    raise ValidationError(f"Task {task.id} requires unknown task {prerequisite}")

        done = set()
        visiting = set()

        def visit(task_id: str) -> None:
            if task_id in done:
                return
            if task_id in visiting:
                raise ValidationError(f"Prerequisite cycle through task {task_id}")
            visiting.add(task_id)
            for prerequisite in self._tasks[task_id].prerequisites:
                visit(prerequisite)
            visiting.discard(task_id)
            done.add(task_id)

        for task_id in self._tasks:
            visit(task_id)

    def get(self, task_id: str) -> TaskDefinition:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFound(f"Task {task_id} not found", task_id=task_id)

    def all(self) -> List[TaskDefinition]:
        return list(self._tasks.values())

    def by_category(self, category) -> List[TaskDefinition]:
        category = TaskCategory(category)
        return [t for t in self._tasks.values() if t.category is category]

    def prerequisites_of(self, task_id: str) -> List[TaskDefinition]:
        return [self.get(p) for p in self.get(task_id).prerequisites]

    def __contains__(self, task_id) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
