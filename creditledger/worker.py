"""
ARQ Background Worker for CreditLedger.

Sends receipt emails and regenerates receipts that could not be produced
inline during fulfillment. Both jobs are idempotent and safe to retry.
"""
import asyncio

from arq import Retry, create_pool
from arq.connections import RedisSettings

from creditledger.config import settings
from creditledger.database import AsyncSessionLocal
from creditledger.errors import NotFoundError
from creditledger.logging_config import get_logger
from creditledger.sentry_config import capture_exception
from creditledger.services.email_service import email_sender
from creditledger.services.payment_gateway import payment_gateway
from creditledger.services.receipt_service import ReceiptService


logger = get_logger(component="worker")

# Backoff between attempts: 30s, 2m, 10m
RETRY_DELAYS = [30, 120, 600]
MAX_TRIES = 4


def retry_delay(job_try: int) -> int:
    return RETRY_DELAYS[min(job_try, len(RETRY_DELAYS)) - 1]


async def send_receipt_email_job(ctx: dict, receipt_id: str) -> dict:
    """Send the receipt email, retrying with backoff while the provider refuses it."""
    job_try = ctx.get("job_try", 1)
    max_tries = ctx.get("max_tries", MAX_TRIES)
    log = logger.bind(receipt_id=receipt_id, job_try=job_try)

    async with AsyncSessionLocal() as db:
        service = ReceiptService(db, payment_gateway, email_sender)
        try:
            sent = await service.send_receipt_email(receipt_id)
        except NotFoundError:
            log.error("receipt_email_job_missing_receipt")
            return {"status": "missing"}

    if sent:
        return {"status": "sent"}
    if job_try < max_tries:
        log.warning("receipt_email_job_retry", defer=retry_delay(job_try))
        raise Retry(defer=retry_delay(job_try))

    log.error("receipt_email_job_gave_up")
    return {"status": "failed"}


async def generate_receipt_job(ctx: dict, transaction_id: str) -> dict:
    """Create the receipt for a fulfilled purchase that has none yet."""
    job_try = ctx.get("job_try", 1)
    max_tries = ctx.get("max_tries", MAX_TRIES)
    log = logger.bind(transaction_id=transaction_id, job_try=job_try)

    async with AsyncSessionLocal() as db:
        service = ReceiptService(db, payment_gateway, email_sender, jobs=receipt_jobs)
        try:
            receipt = await service.create_receipt_for_transaction(transaction_id)
        except NotFoundError as e:
            log.error("receipt_job_missing_transaction", error=e.detail)
            return {"status": "missing"}
        except Exception as e:
            log.error("receipt_job_failed", error=str(e))
            capture_exception(e, transaction_id=transaction_id)
            if job_try < max_tries:
                raise Retry(defer=retry_delay(job_try)) from e
            raise

    log.info("receipt_job_completed", receipt_id=receipt.id)
    return {"status": "created", "receipt_id": receipt.id}


# Register functions for ARQ
ARQ_FUNCTIONS = [
    send_receipt_email_job,
    generate_receipt_job,
]


def enqueue_redis_settings() -> RedisSettings:
    """Connection settings for producers: one attempt, short timeout."""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    redis_settings.conn_timeout = settings.REDIS_ENQUEUE_TIMEOUT_SECONDS
    redis_settings.conn_retries = 0
    return redis_settings


async def enqueue_job(function_name: str, *args) -> bool:
    """Enqueue a job for background processing using ARQ."""
    try:
        redis = await create_pool(enqueue_redis_settings())
        try:
            await redis.enqueue_job(function_name, *args)
        finally:
            await redis.close()
    except Exception as e:
        logger.warning("enqueue_failed", function=function_name, error=str(e))
        return False

    logger.info("job_enqueued", function=function_name)
    return True


async def _send_receipt_email_inline(receipt_id: str) -> None:
    async with AsyncSessionLocal() as db:
        service = ReceiptService(db, payment_gateway, email_sender)
        try:
            await service.send_receipt_email(receipt_id)
        except Exception as e:
            logger.error("receipt_email_inline_failed", receipt_id=receipt_id, error=str(e))
            capture_exception(e, receipt_id=receipt_id)


class ReceiptJobs:
    """
    Detached receipt work.

    Email dispatch runs in a fire-and-forget task, so the caller waits on
    neither Redis nor the email provider. The queue is preferred; when Redis is
    unreachable the task sends the email itself.
    """

    def __init__(self, enqueue=enqueue_job):
        self._enqueue = enqueue
        self._tasks: set[asyncio.Task] = set()

    async def dispatch_receipt_email(self, receipt_id: str) -> None:
        task = asyncio.create_task(self._deliver_receipt_email(receipt_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver_receipt_email(self, receipt_id: str) -> None:
        if await self._enqueue("send_receipt_email_job", receipt_id):
            return
        await _send_receipt_email_inline(receipt_id)

    async def wait_idle(self) -> None:
        """Wait for in-flight dispatch tasks. Used on shutdown."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def schedule_receipt_generation(self, transaction_id: str) -> bool:
        return await self._enqueue("generate_receipt_job", transaction_id)


receipt_jobs = ReceiptJobs()


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq creditledger.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 60
    max_tries = MAX_TRIES
    functions = ARQ_FUNCTIONS
