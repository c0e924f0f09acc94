"""
任务存储接口 - 看板任务由外部存储持有，Orchestrator 只通过这三个方法访问
"""
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml

from .errors import ConfigError
from .types import Comment, Task

logger = logging.getLogger(__name__)


class TaskStore(ABC):
    """任务存储"""

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    def add_comment(self, task_id: str, comment: Comment) -> None:
        pass

    @abstractmethod
    def set_status(self, task_id: str, status: str) -> None:
        pass


class InMemoryTaskStore(TaskStore):
    """内存任务存储，CLI 从任务文件加载"""

    def __init__(self, tasks: Optional[Iterable[Task]] = None):
        self._tasks: Dict[str, Task] = {}
        for task in tasks or []:
            self.add_task(task)

    def add_task(self, task: Task) -> None:
        self._tasks[task.id] = task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def add_comment(self, task_id: str, comment: Comment) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Comment for unknown task %s dropped", task_id)
            return
        task.comments.append(comment)

    def set_status(self, task_id: str, status: str) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("Status update for unknown task %s dropped", task_id)
            return
        task.status = status

    def list_tasks(self) -> List[Task]:
        return list(self._tasks.values())

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "InMemoryTaskStore":
        """
        从 YAML 或 JSON 文件加载任务

        文件可以是任务列表，也可以是 {"tasks": [...]}。
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError(f"Tasks file not found: {path}")

        text = path.read_text(encoding="utf-8")
        try:
            if path.suffix == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Invalid tasks file {path}: {e}") from e

        if isinstance(data, dict):
            data = data.get("tasks", [])
        if not isinstance(data, list):
            raise ConfigError(f"Tasks file {path} must contain a list of tasks")

        try:
            tasks = [Task.from_dict(item) for item in data]
        except (KeyError, TypeError) as e:
            raise ConfigError(f"Invalid task entry in {path}: {e}") from e

        logger.info("Loaded %d tasks from %s", len(tasks), path)
        return cls(tasks)
