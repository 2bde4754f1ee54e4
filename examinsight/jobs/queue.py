from redis import Redis
from rq import Queue


def get_queue(settings) -> Queue:
    # rq pickles job payloads, so the connection must not decode responses
    redis = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.RQ_QUEUE, connection=redis)
