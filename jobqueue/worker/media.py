"""
Media processing handler.

Renders the requested renditions of an uploaded asset with an external
transcoding tool, one bounded subprocess per rendition, and tracks the
asset's state through the result sink.
"""

import asyncio
import contextlib
import logging
import os
import resource
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from jobqueue.config import Settings
from jobqueue.constants import (
    JOB_TYPE_MEDIA_PROCESS,
    TABLE_MEDIA_ASSETS,
    ErrorKind,
    MediaAssetState,
)
from jobqueue.types.job import JobContext, JobOutcome
from jobqueue.types.payloads import MediaProcessPayload, RenditionKind, RenditionSpec
from jobqueue.worker.handlers import register_handler

logger = logging.getLogger(__name__)

# (tool_path, rendition, source_path, output_path) -> argv
CommandBuilder = Callable[[str, RenditionSpec, str, str], list[str]]

_STDERR_TAIL_BYTES = 2000


def ffmpeg_command(tool_path: str, spec: RenditionSpec, source: str, output: str) -> list[str]:
    """Build the ffmpeg invocation for one rendition."""
    scale = f"scale={spec.width}:{spec.height or -2}"
    if spec.kind == RenditionKind.THUMBNAIL:
        return [
            tool_path, "-nostdin", "-y", "-loglevel", "error",
            "-ss", str(spec.offset_seconds), "-i", source,
            "-frames:v", "1", "-vf", scale,
            output,
        ]
    return [
        tool_path, "-nostdin", "-y", "-loglevel", "error",
        "-i", source,
        "-vf", scale,
        "-c:v", "libx264", "-preset", "veryfast",
        "-c:a", "aac",
        "-movflags", "+faststart",
        output,
    ]


@dataclass
class RenditionResult:
    """Outcome of rendering one rendition."""

    name: str
    path: str
    ok: bool
    error: str | None = None
    returncode: int | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "path": self.path,
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.ok:
            data["size_bytes"] = os.path.getsize(self.path)
        else:
            data["error"] = self.error
        return data


class Transcoder:
    """
    Runs the transcoding tool as a bounded subprocess.

    Each run gets explicit input and output paths, CPU and address-space
    rlimits and a wall-clock timeout. A non-zero exit, a timeout or a missing
    or empty output file is a failure.
    """

    def __init__(
        self,
        tool_path: str,
        *,
        timeout_seconds: float,
        cpu_seconds_limit: int | None = None,
        memory_limit_mb: int | None = None,
        command_builder: CommandBuilder = ffmpeg_command,
    ):
        self.tool_path = tool_path
        self.timeout_seconds = timeout_seconds
        self.cpu_seconds_limit = cpu_seconds_limit
        self.memory_limit_mb = memory_limit_mb
        self._command_builder = command_builder

    @classmethod
    def from_settings(cls, settings: Settings) -> "Transcoder":
        return cls(
            settings.media_tool_path,
            timeout_seconds=settings.media_rendition_timeout_seconds,
            cpu_seconds_limit=settings.media_cpu_seconds_limit,
            memory_limit_mb=settings.media_memory_limit_mb,
        )

    def _limit_resources(self) -> Callable[[], None] | None:
        cpu = self.cpu_seconds_limit
        memory = self.memory_limit_mb * 1024 * 1024 if self.memory_limit_mb else None
        if not cpu and not memory:
            return None

        def apply_limits() -> None:
            # Runs in the child between fork and exec
            if cpu:
                resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu))
            if memory:
                resource.setrlimit(resource.RLIMIT_AS, (memory, memory))

        return apply_limits

    async def render(self, source: str, spec: RenditionSpec, output_dir: str) -> RenditionResult:
        """
        Render one rendition of source into output_dir.

        Returns:
            RenditionResult; failures are reported, not raised.
        """
        os.makedirs(output_dir, exist_ok=True)
        output = os.path.join(output_dir, spec.filename)
        # A leftover from an earlier attempt must not count as output
        with contextlib.suppress(FileNotFoundError):
            os.remove(output)

        argv = self._command_builder(self.tool_path, spec, source, output)
        started = time.monotonic()

        def failed(error: str, returncode: int | None = None) -> RenditionResult:
            return RenditionResult(
                name=spec.name,
                path=output,
                ok=False,
                error=error,
                returncode=returncode,
                duration_seconds=time.monotonic() - started,
            )

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                preexec_fn=self._limit_resources(),
            )
        except OSError as e:
            return failed(f"Could not start {argv[0]}: {e}")

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            await self._kill(process)
            return failed(f"Timed out after {self.timeout_seconds}s")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            tail = stderr[-_STDERR_TAIL_BYTES:].decode("utf-8", errors="replace").strip()
            return failed(f"Exited with status {process.returncode}: {tail}", process.returncode)

        if not os.path.isfile(output) or os.path.getsize(output) == 0:
            return failed("Produced no output", process.returncode)

        return RenditionResult(
            name=spec.name,
            path=output,
            ok=True,
            returncode=0,
            duration_seconds=time.monotonic() - started,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


class MediaProcessor:
    """Per-job media dependency: the transcoder plus output layout and policy."""

    def __init__(self, transcoder: Transcoder, output_root: str, min_viable_renditions: int = 1):
        self.transcoder = transcoder
        self.output_root = output_root
        self.min_viable_renditions = min_viable_renditions

    @classmethod
    def from_settings(cls, settings: Settings) -> "MediaProcessor":
        return cls(
            Transcoder.from_settings(settings),
            settings.media_output_root,
            settings.media_min_viable_renditions,
        )

    def output_dir(self, asset_key: str) -> str:
        return os.path.join(self.output_root, asset_key.replace("/", "_"))

    def required_renditions(self, payload: MediaProcessPayload) -> int:
        required = payload.min_viable_renditions or self.min_viable_renditions
        return min(required, len(payload.renditions))

    async def render_all(self, payload: MediaProcessPayload) -> list[RenditionResult]:
        output_dir = self.output_dir(payload.asset_key)
        results = []
        for spec in payload.renditions:
            result = await self.transcoder.render(payload.source_path, spec, output_dir)
            if not result.ok:
                logger.warning(
                    "Rendition failed",
                    extra={"asset_key": payload.asset_key, "rendition": spec.name, "error": result.error},
                )
            results.append(result)
        return results


@register_handler(
    JOB_TYPE_MEDIA_PROCESS,
    payload_model=MediaProcessPayload,
    resources=("media",),
)
async def process_media(context: JobContext) -> JobOutcome:
    """
    Produce the renditions of an uploaded asset.

    Succeeds when at least the minimum viable number of renditions was
    produced, listing the missing ones. Otherwise the attempt is retryable;
    the asset is marked failed once no attempts remain.
    """
    payload: MediaProcessPayload = context.payload
    processor: MediaProcessor = context.resource("media")
    asset_key = payload.asset_key

    if not os.path.isfile(payload.source_path):
        message = f"Source file not found: {payload.source_path}"
        await context.sink.write(
            TABLE_MEDIA_ASSETS,
            asset_key,
            {"state": MediaAssetState.FAILED.value, "error": message},
        )
        return JobOutcome.permanent(ErrorKind.VALIDATION, message)

    await context.sink.write(
        TABLE_MEDIA_ASSETS,
        asset_key,
        {
            "state": MediaAssetState.PROCESSING.value,
            "job_id": str(context.job_id),
            "attempt": context.attempt,
        },
    )

    results = await processor.render_all(payload)
    produced = [r for r in results if r.ok]
    missing = [r.name for r in results if not r.ok]
    required = processor.required_renditions(payload)

    logger.info(
        "Media processing finished",
        extra={
            "job_id": str(context.job_id),
            "asset_key": asset_key,
            "produced": len(produced),
            "missing": len(missing),
            "required": required,
        },
    )

    if len(produced) >= required:
        renditions = [r.to_dict() for r in produced]
        await context.sink.write(
            TABLE_MEDIA_ASSETS,
            asset_key,
            {
                "state": MediaAssetState.RENDITIONS_READY.value,
                "renditions": renditions,
                "missing": missing,
            },
        )
        return JobOutcome.succeeded(
            {"asset_key": asset_key, "renditions": renditions, "missing": missing}
        )

    message = f"Produced {len(produced)} of {len(results)} renditions, {required} required"
    failures = {r.name: r.error for r in results if not r.ok}
    if context.is_last_attempt:
        await context.sink.write(
            TABLE_MEDIA_ASSETS,
            asset_key,
            {"state": MediaAssetState.FAILED.value, "error": message, "failures": failures},
        )
    return JobOutcome.retryable(ErrorKind.HANDLER_ERROR, message, {"failures": failures})
