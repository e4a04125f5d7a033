"""Redis list based task queue consumer.

Each topic is a Redis list producers LPUSH onto. A consumer atomically moves
a message into a per-channel processing list, runs the handler, then drops
it from the processing list. Messages left there by a crashed consumer are
put back on the topic at startup, so delivery is at-least-once.
"""
import logging
import signal
import threading
from typing import Callable, List, Tuple

import redis

from apps.consumer.errors import ErrorKind, HandlerError

logger = logging.getLogger(__name__)

Handler = Callable[[bytes], None]


class RedisConsumer:
    def __init__(self, client: redis.Redis, channel: str, poll_interval: float = 1.0):
        self.client = client
        self.channel = channel
        self.poll_interval = poll_interval
        self._handlers: List[Tuple[str, Handler, int]] = []
        self._stop = threading.Event()

    def processing_key(self, topic: str) -> str:
        return f'{topic}:{self.channel}:processing'

    def add_handler(self, topic: str, handler: Handler, concurrency: int = 1) -> None:
        self._handlers.append((topic, handler, concurrency))

    def requeue_stranded(self, topic: str) -> int:
        """Put messages a previous consumer left unacknowledged back on the topic."""
        moved = 0
        while self.client.lmove(self.processing_key(topic), topic, 'RIGHT', 'LEFT') is not None:
            moved += 1
        if moved:
            logger.warning('Requeued %d unacknowledged message(s) on %s', moved, topic)
        return moved

    def process_one(self, topic: str, handler: Handler) -> bool:
        """Handle at most one message; return False when none arrived in time."""
        processing = self.processing_key(topic)
        message = self.client.blmove(topic, processing, self.poll_interval, 'RIGHT', 'LEFT')
        if message is None:
            return False

        redeliver = False
        try:
            handler(message)
        except HandlerError as e:
            if e.kind is ErrorKind.RETRYABLE:
                logger.warning('Retryable error on %s, message will be redelivered: %s', topic, e.message)
                redeliver = True
            else:
                logger.error('Fatal error on %s, dropping message: %s', topic, e.message)
        except Exception:
            # unclassified failures are fatal
            logger.exception('Unexpected error handling %s message, dropping message', topic)

        with self.client.pipeline() as pipe:
            pipe.lrem(processing, 1, message)
            if redeliver:
                pipe.lpush(topic, message)
            pipe.execute()
        return True

    def _loop(self, topic: str, handler: Handler) -> None:
        while not self._stop.is_set():
            try:
                self.process_one(topic, handler)
            except redis.RedisError as e:
                logger.error('Queue error on %s: %s', topic, e)
                self._stop.wait(self.poll_interval)

    def stop(self) -> None:
        self._stop.set()

    def consume_until_killed(self) -> None:
        """Run every handler until SIGINT/SIGTERM; in-flight messages are finished first."""
        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        threads = []
        for topic, handler, concurrency in self._handlers:
            self.requeue_stranded(topic)
            for i in range(concurrency):
                thread = threading.Thread(target=self._loop, args=(topic, handler),
                                          name=f'{topic}-{self.channel}-{i}', daemon=True)
                thread.start()
                threads.append(thread)
        logger.info('Consuming %s on channel %s', ', '.join(t for t, _, _ in self._handlers), self.channel)

        while not self._stop.is_set():
            self._stop.wait(self.poll_interval)
        for thread in threads:
            thread.join()
