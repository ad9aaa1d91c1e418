"""
On-demand page rasterization.

Lookup order for (resource_id, unit):
1. raster cache (canonical page-0001.jpg first, then legacy names)
2. converter chain: pdftoppm, then ImageMagick; the first success wins
3. placeholder JPEG with the title and page number (never cached)

Concurrent misses for the same unit share one conversion ("flight"). The
caller gets the bytes as soon as the converter finishes; the cache file is
written afterwards in a worker thread via temp-file + rename, and the flight
stays registered until that write is done so no second conversion starts.
"""
from __future__ import annotations

import asyncio
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from contentgate.config import get_settings
from contentgate.exceptions import ConversionFailed, UpstreamToolUnavailable
from contentgate.services import storage
from contentgate.utils.placeholder import render_placeholder

logger = logging.getLogger(__name__)

JPEG_MEDIA_TYPE = "image/jpeg"


class PageConverter(Protocol):
    name: str

    async def convert(self, source: Path, page: int | None, dpi: int) -> bytes:
        """Return JPEG bytes for page (1-based; None = the only page). Raise UpstreamToolUnavailable."""
        ...


async def run_tool(tool: str, args: list[str], timeout: float) -> None:
    """Run a native binary. Any failure becomes UpstreamToolUnavailable; the process never outlives the call."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise UpstreamToolUnavailable(tool, "binary not found")
    except OSError as e:
        raise UpstreamToolUnavailable(tool, str(e))
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        raise UpstreamToolUnavailable(tool, f"timed out after {timeout}s")
    except asyncio.CancelledError:
        await _kill(proc)
        raise
    if proc.returncode != 0:
        message = (stderr or b"").decode(errors="replace").strip()[:300]
        raise UpstreamToolUnavailable(tool, message or f"exit code {proc.returncode}")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


def _read_output(tool: str, path: Path) -> bytes:
    if not path.is_file() or path.stat().st_size == 0:
        raise UpstreamToolUnavailable(tool, "no output produced")
    return path.read_bytes()


class PdftoppmConverter:
    name = "pdftoppm"

    def __init__(self, binary: str | None = None, timeout: float | None = None):
        settings = get_settings()
        self.binary = binary or settings.pdftoppm_path
        self.timeout = timeout or settings.raster_timeout_seconds

    async def convert(self, source: Path, page: int | None, dpi: int) -> bytes:
        with tempfile.TemporaryDirectory(prefix="raster-") as tmp:
            prefix = Path(tmp) / "page"
            args = [self.binary, "-jpeg", "-r", str(dpi), "-singlefile"]
            if page is not None:
                args += ["-f", str(page), "-l", str(page)]
            args += [str(source), str(prefix)]
            await run_tool(self.name, args, self.timeout)
            return _read_output(self.name, prefix.with_suffix(".jpg"))


class ImageMagickConverter:
    name = "imagemagick"

    def __init__(self, binary: str | None = None, timeout: float | None = None):
        settings = get_settings()
        self.binary = binary or settings.imagemagick_path
        self.timeout = timeout or settings.raster_timeout_seconds

    async def convert(self, source: Path, page: int | None, dpi: int) -> bytes:
        index = (page or 1) - 1
        with tempfile.TemporaryDirectory(prefix="raster-") as tmp:
            output = Path(tmp) / "page.jpg"
            args = [
                self.binary,
                "-density", str(dpi),
                f"{source}[{index}]",
                "-background", "white", "-flatten",
                "-quality", "90",
                str(output),
            ]
            await run_tool(self.name, args, self.timeout)
            return _read_output(self.name, output)


def default_converters() -> list[PageConverter]:
    return [PdftoppmConverter(), ImageMagickConverter()]


@dataclass
class RasterResult:
    data: bytes
    method: str  # "cache" | converter name | "placeholder"
    media_type: str = JPEG_MEDIA_TYPE
    from_cache: bool = False
    placeholder: bool = False
    warning: str | None = None


@dataclass
class ConversionReport:
    converted: int = 0
    skipped: int = 0
    placeholders: int = 0
    methods: set[str] = field(default_factory=set)

    def as_dict(self) -> dict:
        return {
            "converted": self.converted,
            "skipped": self.skipped,
            "placeholders": self.placeholders,
            "method": ",".join(sorted(self.methods)) or None,
        }


@dataclass
class _Flight:
    result: asyncio.Future
    task: asyncio.Task


class Rasterizer:
    def __init__(
        self,
        converters: list[PageConverter] | None = None,
        dpi: int | None = None,
        placeholder: Callable[[str, int, int], bytes] = render_placeholder,
    ):
        self.converters = default_converters() if converters is None else converters
        self.dpi = dpi or get_settings().raster_dpi
        self.placeholder = placeholder
        self._flights: dict[tuple[str, int], _Flight] = {}

    # ---------- public ----------

    async def get_page_image(self, resource, unit: int) -> RasterResult:
        cached = storage.first_existing(storage.raster_candidates(resource.id, unit))
        if cached is not None:
            data = await asyncio.to_thread(cached.read_bytes)
            return RasterResult(data=data, method="cache", from_cache=True)

        flight = self._flight_for(resource.id, unit)
        try:
            data, method = await asyncio.shield(flight.result)
        except ConversionFailed as e:
            logger.warning("Serving placeholder for resource %s page %d: %s", resource.id, unit, e.message)
            data = await asyncio.to_thread(self.placeholder, resource.title, unit, resource.unit_count)
            return RasterResult(data=data, method="placeholder", placeholder=True, warning=e.message)
        return RasterResult(data=data, method=method)

    async def convert_all(self, resource) -> ConversionReport:
        """Fill the cache for every unit. Units already cached are skipped without any write."""
        report = ConversionReport()
        for unit in range(1, resource.unit_count + 1):
            if storage.first_existing(storage.raster_candidates(resource.id, unit)) is not None:
                report.skipped += 1
                continue
            flight = self._flight_for(resource.id, unit)
            try:
                _, method = await asyncio.shield(flight.result)
            except ConversionFailed:
                report.placeholders += 1
                continue
            await asyncio.shield(flight.task)
            report.converted += 1
            report.methods.add(method)
        logger.info("Bulk conversion for resource %s: %s", resource.id, report.as_dict())
        return report

    async def aclose(self) -> None:
        """Cancel in-flight conversions; their subprocesses are killed."""
        tasks = [f.task for f in self._flights.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._flights.clear()

    # ---------- internals ----------

    def _flight_for(self, resource_id: str, unit: int) -> _Flight:
        key = (resource_id, unit)
        flight = self._flights.get(key)
        if flight is not None:
            return flight
        loop = asyncio.get_running_loop()
        result = loop.create_future()
        task = loop.create_task(self._run_flight(resource_id, unit, result))
        flight = _Flight(result=result, task=task)
        self._flights[key] = flight
        task.add_done_callback(lambda _t: self._flights.pop(key, None))
        return flight

    async def _run_flight(self, resource_id: str, unit: int, result: asyncio.Future) -> None:
        try:
            data, method = await self._convert(resource_id, unit)
        except asyncio.CancelledError:
            result.cancel()
            raise
        except Exception as e:
            if not isinstance(e, ConversionFailed):
                logger.exception("Unexpected error rendering page %d of resource %s", unit, resource_id)
                e = ConversionFailed(f"Rendering error: {e}")
            result.set_exception(e)
            # mark retrieved; the awaiting callers re-raise it
            result.exception()
            return
        result.set_result((data, method))
        path = storage.raster_cache_path(resource_id, unit)
        try:
            await asyncio.to_thread(storage.atomic_write_bytes, path, data)
            logger.info("Cached page %d of resource %s at %s", unit, resource_id, path)
        except OSError as e:
            logger.warning("Could not cache page %d of resource %s: %s", unit, resource_id, e)

    def _source_for(self, resource_id: str, unit: int) -> tuple[Path, int | None] | None:
        single = storage.first_existing(storage.unit_source_candidates(resource_id, unit))
        if single is not None:
            return single, None
        original = storage.original_pdf_path(resource_id)
        if original.is_file():
            return original, unit
        return None

    async def _convert(self, resource_id: str, unit: int) -> tuple[bytes, str]:
        source = self._source_for(resource_id, unit)
        if source is None:
            raise ConversionFailed(f"No source PDF for page {unit}")
        path, page = source
        failures = []
        for converter in self.converters:
            try:
                data = await converter.convert(path, page, self.dpi)
            except UpstreamToolUnavailable as e:
                logger.warning("%s failed for resource %s page %d, trying next method: %s",
                               converter.name, resource_id, unit, e.reason)
                failures.append(e.message)
                continue
            logger.info("Converted page %d of resource %s with %s (%.1fKB)",
                        unit, resource_id, converter.name, len(data) / 1024)
            return data, converter.name
        raise ConversionFailed("; ".join(failures) or "No converters configured")
