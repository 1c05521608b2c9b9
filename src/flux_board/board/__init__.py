"""Board entities, persistence and the mutation engine."""

from .engine import BoardEngine
from .model import Delivery, DeliveryOutcome, Epic, Project, Task, TaskStatus, Webhook
from .store import BoardStore

__all__ = [
    "BoardEngine",
    "BoardStore",
    "Delivery",
    "DeliveryOutcome",
    "Epic",
    "Project",
    "Task",
    "TaskStatus",
    "Webhook",
]
