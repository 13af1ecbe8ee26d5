from rq import Queue
from redis import Redis
from admissions.core.config import settings

# rq stores pickled payloads, so this connection must not decode responses
redis = Redis.from_url(settings.REDIS_URL)
# grading and the session sweep share one queue; grade_all passes its own longer timeout
queue = Queue(settings.RQ_QUEUE, connection=redis, default_timeout=settings.SESSION_SWEEP_INTERVAL_SECONDS * 5)
