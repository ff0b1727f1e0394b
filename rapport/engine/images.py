"""Detached image regeneration.

The orchestrator decides once per AI turn whether a new image is needed and
hands an ImageJob to the coordinator. A single worker task drains the queue:
build the prompt, call the Image Service, and patch the job's record through
the ``on_patch`` callback. Failures fall back to the job's carried-forward
image and are never raised to the turn that triggered them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from rapport.models import ImageJob, Visuals
from rapport.services import ImageService

logger = logging.getLogger(__name__)


PromptBuilder = Callable[[Visuals], str]
PatchCallback = Callable[[str, str | None, str | None], None]

NO_TEXT_INSTRUCTION = (
    "Ensure no text, letters, words, logos, or watermarks appear in the generated image."
)


def default_image_prompt(visuals: Visuals) -> str:
    """Join the visual fragments into a single prompt string."""
    parts = [
        visuals.character_description,
        visuals.clothing_description,
        visuals.facial_accessories,
        visuals.held_objects,
        visuals.current_pose_and_action,
    ]
    prompt = "Photorealistic portrait of " + ", ".join(p for p in parts if p)
    if visuals.environment_description:
        prompt += f", inside {visuals.environment_description}"
    return f"{prompt}. {NO_TEXT_INSTRUCTION}"


class ImageSyncCoordinator:
    """Queue of image jobs consumed by one background worker.

    Args:
        image_service:  Async callable turning a prompt into an image payload.
        on_patch:       Called as on_patch(record_id, image, prompt) when a job
                        resolves. ``prompt`` is None when the fallback was used.
        prompt_builder: Turns a Visuals value into the Image Service prompt.
    """

    def __init__(
        self,
        image_service: ImageService,
        on_patch: PatchCallback,
        prompt_builder: PromptBuilder = default_image_prompt,
    ) -> None:
        self._image_service = image_service
        self._on_patch = on_patch
        self._prompt_builder = prompt_builder
        self._queue: asyncio.Queue[ImageJob] = asyncio.Queue()
        self._dispatched: set[str] = set()
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def dispatch(self, job: ImageJob) -> bool:
        """Queue a job. Returns False if this record already has one outstanding."""
        if job.record_id in self._dispatched:
            logger.warning("Image job for record %s already dispatched, dropped", job.record_id)
            return False
        self._dispatched.add(job.record_id)
        self._queue.put_nowait(job)
        self._ensure_worker()
        logger.debug("image job queued record=%s", job.record_id)
        return True

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            except Exception:
                logger.exception("Image patch failed for record %s", job.record_id)
            finally:
                self._dispatched.discard(job.record_id)
                self._queue.task_done()

    async def _process(self, job: ImageJob) -> None:
        try:
            prompt = self._prompt_builder(job.visuals)
            image = await self._image_service(prompt)
        except Exception as e:
            logger.warning(
                "Image generation failed for record %s, keeping previous image: %s",
                job.record_id, e,
            )
            self._on_patch(job.record_id, job.fallback_image, None)
            return
        self._on_patch(job.record_id, image, prompt)

    async def drain(self) -> None:
        """Wait until every queued job has been patched."""
        await self._queue.join()

    async def aclose(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
