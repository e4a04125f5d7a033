"""Command-line entry point of the compute task consumer."""
import argparse
import dataclasses
import logging
import sys

import redis

from apps.consumer.backends import DockerBackend, ExecutionError
from apps.consumer.queue import RedisConsumer
from apps.consumer.tasks import TOPICS
from apps.consumer.worker import Worker
from config.log import configure_logging
from config.settings import ConsumerConfig

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Compute task consumer')
    parser.add_argument('--redis-url', help='URL of the Redis instance holding the task queues')
    parser.add_argument('--topic', help=f"The topic to listen to, one of {', '.join(TOPICS)}")
    parser.add_argument('--channel', help='The channel to use (default: compute)')
    parser.add_argument('--lookup-interval', type=float, help='Seconds to block waiting for a message')
    parser.add_argument('--concurrency', type=int, help='Number of messages handled in parallel')
    parser.add_argument('--data-dir', help='Host directory mounted into compute containers')
    parser.add_argument('--image', help='Docker image running the compute tasks')
    parser.add_argument('--retry-execution-errors', action='store_true', default=None,
                        help='Redeliver messages whose execution failed instead of dropping them')
    return parser


def load_config(argv=None) -> ConsumerConfig:
    args = create_parser().parse_args(argv)
    overrides = {
        'redis_url': args.redis_url,
        'topic': args.topic,
        'channel': args.channel,
        'poll_interval': args.lookup_interval,
        'concurrency': args.concurrency,
        'data_dir': args.data_dir,
        'image': args.image,
        'retry_execution_errors': args.retry_execution_errors,
    }
    return dataclasses.replace(ConsumerConfig.from_env(), **{k: v for k, v in overrides.items() if v is not None})


def main(argv=None) -> int:
    config = load_config(argv)
    configure_logging(config.log_level)

    if config.topic not in TOPICS:
        logger.error('Unknown topic: %s, valid values are %s', config.topic, ', '.join(TOPICS))
        return 2

    try:
        backend = DockerBackend(config.data_dir, config.image)
    except ExecutionError as e:
        logger.error('%s', e)
        return 1

    worker = Worker(backend, retry_execution_errors=config.retry_execution_errors)
    consumer = RedisConsumer(redis.from_url(config.redis_url), config.channel, config.poll_interval)
    consumer.add_handler(config.topic, worker.handler_for(config.topic), config.concurrency)
    consumer.consume_until_killed()

    logger.info('Consumer has been gracefully stopped')
    return 0


if __name__ == '__main__':
    sys.exit(main())
