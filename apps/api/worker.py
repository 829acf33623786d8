"""RQ worker process entrypoint for pipeline stage jobs."""

from rq import Worker

from services.stage_queue import STAGE_QUEUE_NAME, get_redis_connection


def main():
    redis_conn = get_redis_connection()
    worker = Worker([STAGE_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
