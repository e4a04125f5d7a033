"""Task envelopes published on the compute queue."""
from typing import List
from uuid import UUID

from pydantic import BaseModel, Field

LEARN_TOPIC = 'learn'
TEST_TOPIC = 'test'
PREDICTION_TOPIC = 'pred'
TOPICS = (LEARN_TOPIC, TEST_TOPIC, PREDICTION_TOPIC)


class LearnTask(BaseModel):
    model: UUID
    data: List[UUID] = Field(min_length=1)


class TestTask(BaseModel):
    __test__ = False

    model: UUID
    data: List[UUID] = Field(min_length=1)


class PredictionTask(BaseModel):
    model: UUID
    data: UUID
