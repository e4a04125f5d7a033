"""
Execution backends the consumer hands compute tasks to
"""
import logging
from typing import List, Optional, Protocol, Sequence
from uuid import UUID

import docker
from docker.errors import DockerException

logger = logging.getLogger(__name__)

CONTAINER_DATA_DIR = '/data'


class ExecutionError(Exception):
    """Raised when a task could not be run or produced no usable result."""


class ExecutionBackend(Protocol):
    def train(self, model: UUID, data: Sequence[UUID]) -> float:
        ...

    def test(self, model: UUID, data: Sequence[UUID]) -> float:
        ...

    def predict(self, model: UUID, data: UUID) -> float:
        ...


class DockerBackend:
    """Runs each task in a throwaway container of the compute image.

    The container gets the data directory mounted on /data and is invoked as
    `<command> --model <uuid> --data <uuid>[,<uuid>...]`; the last line it
    prints on stdout is the task result.
    """

    def __init__(self, data_dir: str, image: str, client: Optional[docker.DockerClient] = None):
        self.data_dir = data_dir
        self.image = image
        try:
            self.client = client or docker.from_env()
        except DockerException as e:
            raise ExecutionError(f'Impossible to connect to Docker container backend: {e}') from e

    def _run(self, command: str, model: UUID, data: List[UUID]) -> float:
        args = [command, '--model', str(model), '--data', ','.join(str(d) for d in data)]
        logger.debug(f"Running {self.image} {' '.join(args)}")
        try:
            output = self.client.containers.run(
                self.image,
                command=args,
                volumes={self.data_dir: {'bind': CONTAINER_DATA_DIR, 'mode': 'rw'}},
                network_disabled=True,
                remove=True,
                stdout=True,
                stderr=False,
            )
        except DockerException as e:
            raise ExecutionError(f'{command} container failed: {e}') from e
        return self._parse_result(command, output)

    @staticmethod
    def _parse_result(command: str, output: bytes) -> float:
        lines = output.decode('utf-8', 'replace').strip().splitlines()
        if not lines:
            raise ExecutionError(f'{command} container printed no result')
        try:
            return float(lines[-1])
        except ValueError as e:
            raise ExecutionError(f'{command} container printed an invalid result: {lines[-1]!r}') from e

    def train(self, model: UUID, data: Sequence[UUID]) -> float:
        return self._run('train', model, list(data))

    def test(self, model: UUID, data: Sequence[UUID]) -> float:
        return self._run('test', model, list(data))

    def predict(self, model: UUID, data: UUID) -> float:
        return self._run('predict', model, [data])
