import asyncio
import signal
from typing import Generic
from typing import TypeVar

from loguru import logger

from fedbox.database import AsyncSession
from fedbox.database import Database

T = TypeVar("T")


class Worker(Generic[T]):
    def __init__(self, database: Database) -> None:
        self.database = database
        self._stop_event = asyncio.Event()

    async def process_message(self, db_session: AsyncSession, message: T) -> None:
        raise NotImplementedError

    async def get_next_message(self, db_session: AsyncSession) -> T | None:
        raise NotImplementedError

    async def startup(self, db_session: AsyncSession) -> None:
        return None

    async def _main_loop(self, db_session: AsyncSession) -> None:
        while not self._stop_event.is_set():
            next_message = await self.get_next_message(db_session)
            if next_message:
                await self.process_message(db_session, next_message)
                await asyncio.sleep(0.5)
            else:
                await asyncio.sleep(2)

    async def _until_stopped(self) -> None:
        await self._stop_event.wait()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        async with self.database.async_session() as db_session:
            await self.startup(db_session)
            task = loop.create_task(self._main_loop(db_session))
            stop_task = loop.create_task(self._until_stopped())

            done, pending = await asyncio.wait(
                {task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            logger.info(f"Waiting for tasks to finish {done=}/{pending=}")
            for t in pending:
                t.cancel()

            try:
                await asyncio.wait_for(
                    asyncio.gather(*pending, return_exceptions=True),
                    timeout=15,
                )
            except asyncio.TimeoutError:
                logger.info("Tasks failed to cancel")

            # Surface a crash of the main loop
            if task in done:
                task.result()

        logger.info(f"{type(self).__name__} stopped")

    async def run_forever(self) -> None:
        await run_workers(self)

    async def _shutdown(self, sig: signal.Signals) -> None:
        logger.info(f"Caught {sig=}")
        self._stop_event.set()


async def run_workers(*workers: Worker) -> None:
    """Runs the workers concurrently until a stop signal is received."""
    loop = asyncio.get_running_loop()

    def _on_signal(s: signal.Signals) -> None:
        for worker in workers:
            asyncio.create_task(worker._shutdown(s))

    for s in (signal.SIGHUP, signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(s, _on_signal, s)

    await asyncio.gather(*[worker.run() for worker in workers])
    logger.info("stopping loop")
