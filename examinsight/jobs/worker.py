from rq import Worker

from ..core.config import get_settings
from ..core.logging import configure_logging
from .queue import get_queue

if __name__ == "__main__":
    settings = get_settings()
    configure_logging(settings)
    queue = get_queue(settings)
    w = Worker([queue], connection=queue.connection)
    w.work(with_scheduler=True)
