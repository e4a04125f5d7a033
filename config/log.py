import logging

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


def configure_logging(level: str = 'INFO') -> None:
    """Configure the root logger once for the whole process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # uvicorn's own access log duplicates the middleware one
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
