"""
Clip-generation job engine.

  create_job(...)   — probe the source, plan the clips, fan out one render task
                      per clip and return the job id before any clip finishes
  wait(job_id)      — await everything dispatched for a job
  active_sources()  — input files still being read by running renders

Concurrency model:
  * every render waits for a slot on a process-wide semaphore
    (MAX_CONCURRENT_CLIPS), so a long source cannot start hundreds of FFmpeg
    processes at once;
  * every render task puts exactly one ClipEvent on its job's queue, and a
    single aggregator task per job applies the events to the Job, so counters
    and the terminal transition are written by one coroutine only.

When one clip fails the job fails immediately. Renders already running are
left to finish and their output is not reported; renders still waiting for a
slot are skipped.
"""

import asyncio
import functools
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

import video
from jobs import Job, JobRegistry
from planner import SOURCE_KINDS, ClipSpec, plan_clips

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
PUBLIC_DIR: str = os.getenv("PUBLIC_DIR", "./public")
CLIPS_DIR: str = os.path.join(PUBLIC_DIR, "clips")
CLIPS_URL_PREFIX: str = "/public/clips"
MAX_CONCURRENT_CLIPS: int = max(1, int(os.getenv("MAX_CONCURRENT_CLIPS", "4")))

Prober = Callable[[str], Awaitable[float]]
Executor = Callable[[str, ClipSpec, str, Sequence[str], str], Awaitable[Path]]


class InputMissing(ValueError):
    """No source file was supplied; no job is created."""


@dataclass(frozen=True)
class ClipEvent:
    """Outcome of one clip task. Neither output nor error means it was skipped."""

    index: int
    output: Optional[str] = None
    error: Optional[str] = None


class ClipJobOrchestrator:
    def __init__(
        self,
        registry: JobRegistry,
        prober: Optional[Prober] = None,
        executor: Optional[Executor] = None,
        output_dir: str = CLIPS_DIR,
        url_prefix: str = CLIPS_URL_PREFIX,
        max_concurrency: int = MAX_CONCURRENT_CLIPS,
    ) -> None:
        self.registry = registry
        self.output_dir = output_dir
        self.url_prefix = url_prefix.rstrip("/")
        self._probe = prober or video.probe_duration
        self._execute = executor or video.render_clip
        self._slots = asyncio.Semaphore(max(1, max_concurrency))
        self._tasks: Dict[str, Set[asyncio.Task]] = {}
        self._sources: Dict[str, List[str]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_job(
        self,
        source_kind: str,
        source_path: Optional[str],
        image_paths: Sequence[str] = (),
        clip_length: float = 60,
    ) -> str:
        """
        Create a job and start rendering its clips in the background.

        Returns once the source is probed and every clip is dispatched.
        Probe failures are recorded on the job rather than raised; only a
        missing source (InputMissing), a non-positive clip length or an
        unknown source kind (ValueError) is reported to the caller.
        """
        if not source_path:
            raise InputMissing(f"No {source_kind} file received")
        if clip_length <= 0:
            raise ValueError(f"clip_length must be positive, got {clip_length}")
        if source_kind not in SOURCE_KINDS:
            raise ValueError(f"Unknown source kind: {source_kind!r}")

        images = list(image_paths)
        job = self.registry.create(source_kind)
        logger.info(
            "[Job %s] Created: %s source %s, %d image(s), %ss clips",
            job.id, source_kind, source_path, len(images), clip_length,
        )

        try:
            duration = await self._probe(source_path)
        except video.ProbeFailed as exc:
            logger.warning("[Job %s] Probe failed: %s", job.id, exc)
            job.fail(str(exc) or "Could not read source file")
            return job.id
        except Exception as exc:
            logger.exception("[Job %s] Probe crashed", job.id)
            job.fail(str(exc) or repr(exc))
            return job.id

        specs = plan_clips(duration, clip_length, len(images), source_kind)
        job.start_processing(len(specs))

        if not specs:
            logger.info(
                "[Job %s] Source is %.1fs, shorter than one %ss clip, nothing to render",
                job.id, duration, clip_length,
            )
            return job.id

        logger.info("[Job %s] Dispatching %d clip(s) from %.1fs source", job.id, len(specs), duration)
        self._dispatch(job, specs, source_path, images)
        return job.id

    async def wait(self, job_id: str) -> None:
        """Wait until every task dispatched for *job_id* has finished."""
        tasks = list(self._tasks.get(job_id, ()))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def active_sources(self) -> Set[str]:
        """Input files of jobs that still have render tasks running or queued."""
        return {path for paths in self._sources.values() for path in paths}

    def public_url(self, output_path: Path) -> str:
        return f"{self.url_prefix}/{Path(output_path).name}"

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        job: Job,
        specs: List[ClipSpec],
        source_path: str,
        images: List[str],
    ) -> None:
        Path(self.output_dir).mkdir(parents=True, exist_ok=True)

        events: asyncio.Queue[ClipEvent] = asyncio.Queue()
        tasks = {
            asyncio.create_task(self._run_clip(job, spec, source_path, images, events))
            for spec in specs
        }
        tasks.add(asyncio.create_task(self._aggregate(job, len(specs), events)))

        self._tasks[job.id] = tasks
        self._sources[job.id] = [source_path, *images]
        for task in tasks:
            task.add_done_callback(functools.partial(self._forget, job.id))

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(job_id)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            del self._tasks[job_id]
            self._sources.pop(job_id, None)

    async def _run_clip(
        self,
        job: Job,
        spec: ClipSpec,
        source_path: str,
        images: List[str],
        events: "asyncio.Queue[ClipEvent]",
    ) -> None:
        async with self._slots:
            if job.is_terminal:
                event = ClipEvent(spec.index)
            else:
                try:
                    output = await self._execute(job.id, spec, source_path, images, self.output_dir)
                    event = ClipEvent(spec.index, output=self.public_url(output))
                except video.TranscodeFailed as exc:
                    event = ClipEvent(spec.index, error=str(exc) or "Transcode failed")
                except Exception as exc:
                    logger.exception("[Job %s] Clip %d crashed", job.id, spec.index + 1)
                    event = ClipEvent(spec.index, error=str(exc) or repr(exc))
            # Queue the outcome before the slot goes to the next waiting clip
            events.put_nowait(event)

    async def _aggregate(self, job: Job, expected: int, events: "asyncio.Queue[ClipEvent]") -> None:
        """Sole writer of *job* once its clips are dispatched."""
        for _ in range(expected):
            event = await events.get()
            if event.error is not None:
                if job.fail(event.error):
                    logger.error("[Job %s] Clip %d failed: %s", job.id, event.index + 1, event.error)
            elif event.output is not None:
                if job.record_clip(event.output):
                    logger.info("[Job %s] Completed: %d clip(s)", job.id, job.total_clips)
            else:
                logger.debug("[Job %s] Clip %d skipped after failure", job.id, event.index + 1)
