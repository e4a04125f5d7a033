import logging
from typing import Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

from apps.consumer.backends import ExecutionBackend, ExecutionError
from apps.consumer.errors import HandlerError
from apps.consumer.tasks import LEARN_TOPIC, PREDICTION_TOPIC, TEST_TOPIC, LearnTask, PredictionTask, TestTask

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)


class Notifier(Protocol):
    """Receives the result of every task that completed."""

    def notify(self, topic: str, task: BaseModel, result: float) -> None:
        ...


class LogNotifier:
    # TODO: forward results to the orchestrator once it exposes an endpoint for them
    def notify(self, topic: str, task: BaseModel, result: float) -> None:
        if topic == PREDICTION_TOPIC:
            logger.info('Prediction completed with success for model %s. Prediction %f', task.model, result)
        elif topic == TEST_TOPIC:
            logger.info('Test finished with success for model %s. Score %f', task.model, result)
        else:
            logger.info('Train finished with success for model %s. Score %f', task.model, result)


class Worker:
    """Message handlers for the compute topics.

    Undecodable or invalid messages are always fatal. Execution failures are
    fatal unless `retry_execution_errors` is set.
    """

    def __init__(self, backend: ExecutionBackend, notifier: Notifier = None, retry_execution_errors: bool = False):
        self.backend = backend
        self.notifier = notifier or LogNotifier()
        self.retry_execution_errors = retry_execution_errors

    @staticmethod
    def _decode(task_cls: Type[T], topic: str, message: bytes) -> T:
        try:
            return task_cls.model_validate_json(message)
        except ValidationError as e:
            raise HandlerError.fatal(f'Error un-marshaling {topic} task: {e} -- Body: {message!r}')

    def _execution_error(self, topic: str, error: Exception, message: bytes) -> HandlerError:
        # the docker SDK can leak transport errors that are not DockerException
        if not isinstance(error, ExecutionError):
            logger.warning('Unexpected %s from the execution backend on %s', type(error).__name__, topic)
        text = f'Error in {topic} task: {error} -- Body: {message!r}'
        if self.retry_execution_errors:
            return HandlerError.retryable(text)
        return HandlerError.fatal(text)

    def handle_learn(self, message: bytes) -> None:
        task = self._decode(LearnTask, LEARN_TOPIC, message)
        try:
            score = self.backend.train(task.model, task.data)
        except Exception as e:
            raise self._execution_error(LEARN_TOPIC, e, message)
        self.notifier.notify(LEARN_TOPIC, task, score)

    def handle_test(self, message: bytes) -> None:
        task = self._decode(TestTask, TEST_TOPIC, message)
        try:
            score = self.backend.test(task.model, task.data)
        except Exception as e:
            raise self._execution_error(TEST_TOPIC, e, message)
        self.notifier.notify(TEST_TOPIC, task, score)

    def handle_prediction(self, message: bytes) -> None:
        task = self._decode(PredictionTask, PREDICTION_TOPIC, message)
        try:
            prediction = self.backend.predict(task.model, task.data)
        except Exception as e:
            raise self._execution_error(PREDICTION_TOPIC, e, message)
        self.notifier.notify(PREDICTION_TOPIC, task, prediction)

    def handler_for(self, topic: str):
        return {
            LEARN_TOPIC: self.handle_learn,
            TEST_TOPIC: self.handle_test,
            PREDICTION_TOPIC: self.handle_prediction,
        }[topic]
