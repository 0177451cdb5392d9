"""Run ARQ worker. Usage: python -m creditmeter.worker.run_worker"""

import asyncio

from arq import run_worker
from arq.cron import cron

from creditmeter.worker.tasks import get_redis_settings, recover_pending_consumption, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [recover_pending_consumption]
    cron_jobs = [
        cron(recover_pending_consumption, minute={0, 15, 30, 45}, second=0),  # every 15 minutes
    ]
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    asyncio.set_event_loop(asyncio.new_event_loop())
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
