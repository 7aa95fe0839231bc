"""Single-item execution against the external media generator."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from sessionflow.cancel import CancelToken
from sessionflow.config import BatchConfig

from .models import GenerationParams, ItemStatus, MediaJobItem

if TYPE_CHECKING:
    from sessionflow.store import JobStore

logger = logging.getLogger("sessionflow.jobs")


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    media_generation_id: str
    images: list[str] = Field(default_factory=list)
    elapsed_ms: float = 0.0


class MediaGenerator(Protocol):
    async def generate(self, params: GenerationParams, *, cancel_token: CancelToken) -> GenerationResult: ...


@dataclass(frozen=True, slots=True)
class ItemSuccess:
    result_ref: str
    elapsed_ms: float = 0.0


@dataclass(frozen=True, slots=True)
class ItemFailure:
    error: str


ItemOutcome = ItemSuccess | ItemFailure


class JobItemExecutor:
    """Runs one generation call for one item and persists what it learned.

    The executor never retries. Results are written to the store before
    :meth:`execute` returns; when the job was cancelled while the call was in
    flight the result is still stored, with the item marked ``cancelled``.
    """

    def __init__(self, generator: MediaGenerator, store: JobStore) -> None:
        self._generator = generator
        self._store = store

    async def execute(
        self,
        item: MediaJobItem,
        config: BatchConfig,
        on_result: Callable[[MediaJobItem, ItemOutcome], Any] | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ItemOutcome:
        token = cancel_token or CancelToken()
        started = time.monotonic()
        try:
            result = await self._generator.generate(item.params, cancel_token=token)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning(
                "item_generation_failed",
                extra={"job_id": item.job_id, "item_id": item.id, "idx": item.idx, "error": message},
            )
            outcome: ItemOutcome = ItemFailure(message)
            await self._record_error(item, message)
        else:
            outcome = await self._commit_success(item, result, token)
            if isinstance(outcome, ItemSuccess) and not outcome.elapsed_ms:
                outcome = ItemSuccess(outcome.result_ref, (time.monotonic() - started) * 1000)
        if on_result is not None:
            try:
                on_result(item, outcome)
            except Exception:
                logger.exception("item_result_hook_failed", extra={"job_id": item.job_id, "item_id": item.id})
        return outcome

    async def _commit_success(
        self,
        item: MediaJobItem,
        result: GenerationResult,
        token: CancelToken,
    ) -> ItemOutcome:
        updated = replace(item)
        updated.result_media_generation_id = result.media_generation_id
        updated.error = None
        updated.update_status(ItemStatus.CANCELLED if token.cancelled else ItemStatus.COMPLETED)
        try:
            await self._store.update_job_item(updated)
        except Exception as exc:
            logger.exception(
                "item_persist_failed",
                extra={
                    "job_id": item.job_id,
                    "item_id": item.id,
                    "media_generation_id": result.media_generation_id,
                },
            )
            return ItemFailure(f"store_write_failed: {exc}")
        item.status = updated.status
        item.result_media_generation_id = updated.result_media_generation_id
        item.error = None
        item.updated_at = updated.updated_at
        return ItemSuccess(result.media_generation_id, result.elapsed_ms)

    async def _record_error(self, item: MediaJobItem, message: str) -> None:
        item.error = message
        try:
            await self._store.update_job_item(item)
        except Exception:
            logger.exception("item_persist_failed", extra={"job_id": item.job_id, "item_id": item.id})


__all__ = [
    "GenerationResult",
    "ItemFailure",
    "ItemOutcome",
    "ItemSuccess",
    "JobItemExecutor",
    "MediaGenerator",
]
