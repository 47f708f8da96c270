import logging
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
import redis as _redis
from rq import Queue

logger = logging.getLogger(__name__)

db = SQLAlchemy()
migrate = Migrate()

# Initialized lazily in create_app
redis_client: _redis.Redis = None  # type: ignore
task_queue: Queue = None  # type: ignore


class InlineQueue:
    """Runs jobs immediately when Redis is not available."""

    def enqueue(self, func, *args, **kwargs):
        kwargs.pop("retry", None)
        kwargs.pop("job_timeout", None)
        logger.info("Redis not available, running %s inline", getattr(func, "__name__", func))
        try:
            func(*args, **kwargs)
        except Exception:
            # A failed job never fails the caller, as with a worker
            logger.exception("Inline job %s failed", getattr(func, "__name__", func))
        return None


def init_redis(app):
    global redis_client, task_queue
    redis_url = app.config.get("REDIS_URL", "")
    if not redis_url:
        logger.warning("REDIS_URL not set, jobs run inline (dev mode)")
        task_queue = InlineQueue()
        return

    try:
        redis_client = _redis.from_url(redis_url, decode_responses=False)
        redis_client.ping()
        task_queue = Queue("image-cleanup", connection=redis_client)
    except Exception as e:
        logger.warning("Redis connection failed (%s), jobs run inline", e)
        task_queue = InlineQueue()
