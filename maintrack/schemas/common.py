from enum import Enum

from pydantic import BaseModel


class TaskStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    CLOSED = "Closed"


class TaskPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Unit(BaseModel):
    id: str
    name: str
