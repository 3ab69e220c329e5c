"""Bounded-concurrency document conversion via LibreOffice (soffice)."""
import asyncio
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from docgen import settings
from docgen.errors import ConversionFailedError, ConversionTimeoutError
from docgen.logging_conf import logger, new_correlation_id

# Bytes of converter stderr kept on the error
STDERR_TAIL = 2000


@dataclass
class ConversionOptions:
    target_format: str = "pdf"
    timeout: Optional[float] = None
    workdir: Optional[str] = None
    correlation_id: Optional[str] = None


class ConversionPool:
    """Runs at most ``max_concurrent`` converter processes at once.

    Each job gets a private working directory that is removed before its
    slot is released, whatever the outcome. Callers beyond the limit wait
    for a slot instead of failing.
    """

    def __init__(
        self,
        max_concurrent: Optional[int] = None,
        timeout: Optional[float] = None,
        workdir: Optional[str] = None,
        converter: Optional[Sequence[str]] = None,
    ):
        self.max_concurrent = max_concurrent or settings.CONVERSION_MAX_CONCURRENT
        self.timeout = timeout or settings.CONVERSION_TIMEOUT
        self.workdir = workdir or settings.CONVERSION_WORKDIR
        self.converter: List[str] = list(converter or [settings.SOFFICE_PATH])
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._active = 0
        self._queued = 0
        self._completed = 0
        self._failed = 0
        self._total = 0
        logger.info(f"Conversion pool ready (max_concurrent: {self.max_concurrent}, timeout: {self.timeout:g}s)")

    async def convert(self, content: bytes, options: Optional[ConversionOptions] = None) -> bytes:
        """Convert a document and return the output bytes.

        Raises:
            ConversionTimeoutError: the converter ran past the timeout and was killed
            ConversionFailedError: non-zero exit, or no readable output
        """
        options = options or ConversionOptions()
        correlation_id = options.correlation_id or new_correlation_id("conv")
        log_extra = {"correlation_id": correlation_id}

        await self._acquire(correlation_id)
        started = time.monotonic()
        try:
            self._total += 1
            result = await self._run_job(content, options, correlation_id)
        except Exception as e:
            self._failed += 1
            logger.error(f"Conversion failed after {time.monotonic() - started:.2f}s: {e}", extra=log_extra)
            raise
        finally:
            self._release()

        self._completed += 1
        logger.info(
            f"Conversion completed in {time.monotonic() - started:.2f}s ({len(result)} bytes)", extra=log_extra
        )
        return result

    async def _acquire(self, correlation_id: str):
        if self._slots.locked():
            logger.debug("Pool full, waiting for a slot", extra={"correlation_id": correlation_id})
        self._queued += 1
        try:
            await self._slots.acquire()
        finally:
            self._queued -= 1
        self._active += 1

    def _release(self):
        self._active -= 1
        self._slots.release()

    async def _run_job(self, content: bytes, options: ConversionOptions, correlation_id: str) -> bytes:
        target = options.target_format.lower()
        timeout = options.timeout or self.timeout
        parent = options.workdir or self.workdir
        job_dir = Path(tempfile.mkdtemp(prefix=f"docgen-{correlation_id}-", dir=parent))
        try:
            input_path = job_dir / "input.docx"
            input_path.write_bytes(content)

            await self._execute(input_path, job_dir, target, timeout, correlation_id)

            output_path = job_dir / f"input.{target}"
            try:
                return output_path.read_bytes()
            except OSError as e:
                raise ConversionFailedError(f"could not read converter output: {e}",
                                            {"correlation_id": correlation_id}) from e
        finally:
            self._cleanup(job_dir, correlation_id)

    async def _execute(self, input_path: Path, out_dir: Path, target: str, timeout: float, correlation_id: str):
        args = self.converter + [
            "--headless",
            f"-env:UserInstallation={(out_dir / 'profile').as_uri()}",
            "--convert-to", target,
            "--outdir", str(out_dir),
            str(input_path),
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ConversionFailedError(f"could not start converter: {e}", {"correlation_id": correlation_id}) from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Converter exceeded {timeout:g}s, killing pid {proc.pid}",
                           extra={"correlation_id": correlation_id})
            raise ConversionTimeoutError(timeout, {"correlation_id": correlation_id})
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-STDERR_TAIL:]
            raise ConversionFailedError(
                f"converter exited with code {proc.returncode}",
                {"correlation_id": correlation_id, "exit_code": proc.returncode, "stderr": tail},
            )

    def _cleanup(self, job_dir: Path, correlation_id: str):
        try:
            shutil.rmtree(job_dir)
        except OSError as e:
            logger.warning(f"Failed to remove {job_dir}: {e}", extra={"correlation_id": correlation_id})

    def stats(self) -> Dict[str, int]:
        return {
            "active_jobs": self._active,
            "queued_jobs": self._queued,
            "completed_jobs": self._completed,
            "failed_jobs": self._failed,
            "total_conversions": self._total,
            "max_concurrent": self.max_concurrent,
        }
