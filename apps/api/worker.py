"""RQ worker process entrypoint for transcription jobs."""

import logging

from rq import Worker

import models  # noqa: F401
from services.job_queue import TRANSCRIPTION_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = get_redis_connection()
    worker = Worker([TRANSCRIPTION_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
