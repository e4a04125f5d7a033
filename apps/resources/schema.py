import enum
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class ResourceKind(str, enum.Enum):
    PROBLEM = 'problem'
    ALGO = 'algo'
    DATA = 'data'
    MODEL = 'model'


class ResourceOut(BaseModel):
    id: UUID
    owner: UUID
    size: int
    created_at: datetime


class ProblemOut(ResourceOut):
    name: str


class AlgoOut(ResourceOut):
    name: str


class DataOut(ResourceOut):
    pass


class ModelOut(ResourceOut):
    algo: UUID


class ResourceCreated(BaseModel):
    id: UUID
