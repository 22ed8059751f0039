"""FastAPI application exposing the moderation admin surface."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dancefeedback import obs
from dancefeedback.api import ops
from dancefeedback.infra import postgres
from dancefeedback.moderation import configure_postgres as configure_moderation
from dancefeedback.moderation import router as moderation_router
from dancefeedback.moderation import spawn_worker as spawn_moderation_worker
from dancefeedback.moderation.domain import container as moderation_container
from dancefeedback.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = await postgres.init_pool()
	configure_moderation(pool)
	worker_tasks: list[asyncio.Task] = []
	if settings.moderation_workers_enabled:
		worker_tasks.append(spawn_moderation_worker())
	try:
		yield
	finally:
		for task in worker_tasks:
			task.cancel()
		await asyncio.gather(*worker_tasks, return_exceptions=True)
		await moderation_container.get_queue().close()
		await postgres.close_pool()


obs.init()
app = FastAPI(title="Dance Feedback Moderation", lifespan=lifespan)
app.include_router(ops.router)
app.include_router(moderation_router, tags=["moderation"])
