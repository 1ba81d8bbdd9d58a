import functools
import time

from loguru import logger


def logged_job(func):
    """
    A decorator for scheduled coroutine jobs.

    Features:
    - Logs job name on entry
    - Logs elapsed time on success
    - Logs the exception with traceback and re-raises
    - Preserves function metadata and return values
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        job_name = func.__qualname__
        logger.debug(f"Job {job_name} started")
        started = time.perf_counter()

        try:
            result = await func(*args, **kwargs)
        except Exception:
            logger.exception(f"Job {job_name} failed")
            raise

        elapsed = time.perf_counter() - started
        logger.debug(f"Job {job_name} finished in {elapsed:.3f}s")
        return result

    return wrapper
