"""
OCR Engine — Ghostscript rasterisation followed by Tesseract recognition.

Pipeline per job (all files live in a private scratch directory that is
removed whether the job succeeds or fails):

    input.pdf
      │  gs -q -dNOPAUSE -dBATCH -dSAFER -sDEVICE=tiffgray -r<dpi>
      │     -sOutputFile=page-%03d.tiff input.pdf
      ▼
    page-001.tiff, page-002.tiff, …
      │  tesseract page-NNN.tiff stdout -l <langs> --dpi <dpi>   (in page order)
      ▼
    page texts joined with "\n", trimmed

Each tool runs as an async subprocess under asyncio.wait_for. A child that
overruns the ceiling is killed and reaped before OcrTimeoutError is raised,
so a wedged Ghostscript cannot pin a worker forever.

The engine does not retry; the queue decides what happens to a failed job.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from dms.core.config import Settings, settings

logger = logging.getLogger(__name__)

PAGE_PATTERN = "page-%03d.tiff"
_PAGE_FILE = re.compile(r"^page-(\d+)\.tiff$")

# Bytes of stderr kept on errors; Ghostscript can be very verbose
_STDERR_LIMIT = 4000


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OcrError(Exception):
    """Base class for OCR pipeline failures."""


class OcrToolError(OcrError):
    """An external tool exited non-zero or could not be started."""

    def __init__(self, tool: str, returncode: int | None, stderr: str) -> None:
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{tool} failed (exit={returncode}): {stderr.strip()[:500]}")


class OcrTimeoutError(OcrError):
    def __init__(self, tool: str, timeout: float) -> None:
        self.tool = tool
        self.timeout = timeout
        super().__init__(f"{tool} timed out after {timeout:.0f}s")


@dataclass(frozen=True)
class ToolResult:
    stdout: str
    stderr: str


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class OcrEngine:
    def __init__(
        self,
        languages: str = "deu+eng",
        dpi: int = 300,
        timeout_seconds: float = 120.0,
        rasterizer: str = "gs",
        recognizer: str = "tesseract",
        tessdata_prefix: str = "",
    ) -> None:
        self.languages = languages
        self.dpi = dpi
        self.timeout_seconds = timeout_seconds
        self.rasterizer = rasterizer
        self.recognizer = recognizer
        self.tessdata_prefix = tessdata_prefix

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "OcrEngine":
        return cls(
            languages=cfg.ocr_languages,
            dpi=cfg.ocr_dpi,
            timeout_seconds=cfg.ocr_timeout_seconds,
            rasterizer=cfg.ocr_rasterizer,
            recognizer=cfg.ocr_recognizer,
            tessdata_prefix=cfg.tessdata_prefix,
        )

    async def extract_text(self, pdf_bytes: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="ocr-") as workdir:
            work = Path(workdir)
            pdf_path = work / "input.pdf"
            pdf_path.write_bytes(pdf_bytes)

            await self._rasterize(pdf_path, work)
            pages = self._page_images(work)
            logger.info("Rasterised | pages=%d dpi=%d", len(pages), self.dpi)

            texts: list[str] = []
            for page in pages:
                texts.append(await self._recognize(page))

        text = "\n".join(texts).strip()
        logger.info("OCR done | pages=%d chars=%d", len(texts), len(text))
        return text

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _rasterize(self, pdf_path: Path, out_dir: Path) -> None:
        await self._run(
            [
                self.rasterizer,
                "-q",
                "-dNOPAUSE",
                "-dBATCH",
                "-dSAFER",
                "-sDEVICE=tiffgray",
                f"-r{self.dpi}",
                f"-sOutputFile={out_dir / PAGE_PATTERN}",
                str(pdf_path),
            ],
            cwd=out_dir,
        )

    async def _recognize(self, image: Path) -> str:
        result = await self._run(
            [
                self.recognizer,
                str(image),
                "stdout",
                "-l", self.languages,
                "--dpi", str(self.dpi),
            ],
            cwd=image.parent,
            env=self._tesseract_env(),
        )
        return result.stdout.strip()

    @staticmethod
    def _page_images(work: Path) -> list[Path]:
        """Page images ordered by page number, not by lexical file name."""
        numbered = []
        for entry in work.iterdir():
            match = _PAGE_FILE.match(entry.name)
            if match:
                numbered.append((int(match.group(1)), entry))
        return [path for _, path in sorted(numbered)]

    def _tesseract_env(self) -> dict[str, str] | None:
        if not self.tessdata_prefix:
            return None
        env = dict(os.environ)
        env["TESSDATA_PREFIX"] = self.tessdata_prefix
        return env

    # ------------------------------------------------------------------
    # Subprocess runner
    # ------------------------------------------------------------------

    async def _run(
        self,
        argv: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> ToolResult:
        tool = argv[0]
        logger.debug("Running | argv=%s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=env,
            )
        except FileNotFoundError as exc:
            raise OcrToolError(tool, None, f"executable not found: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass   # exited between the timeout and the kill
            await proc.wait()
            logger.error("Subprocess timed out, killed | tool=%s timeout=%.0fs", tool, self.timeout_seconds)
            raise OcrTimeoutError(tool, self.timeout_seconds)

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")[-_STDERR_LIMIT:]
        if proc.returncode != 0:
            raise OcrToolError(tool, proc.returncode, err)
        return ToolResult(stdout=out, stderr=err)
