"""
Generic file parsers, keyed by file extension.

The last tier of the extraction chain: no network, no credentials, so it is
always available. Blocking parsers run in the default thread executor.

  pdf        PyMuPDF text layer, pypdf when PyMuPDF yields nothing
  docx       python-docx paragraphs + table cells
  txt / md   utf-8, latin-1 fallback
  csv        rows re-joined with ", "
  json       pretty-printed
  html / htm tags stripped
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
import re
from html import unescape
from pathlib import Path

from knowledge_ingest.core.errors import ContentError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(
    {"pdf", "docx", "txt", "md", "markdown", "csv", "json", "html", "htm"}
)

_TAG_RE = re.compile(r"<[^>]+>")
_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def file_extension(filename: str) -> str:
    """Lower-case extension without the dot; '' when there is none."""
    suffix = Path(filename).suffix
    return suffix[1:].lower() if suffix else ""


def decode_text(data: bytes) -> str:
    """Decode with UTF-8, fallback to latin-1."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def parse_bytes(content: bytes, extension: str) -> str:
    """Parse raw file bytes according to `extension`."""
    extension = extension.lower().lstrip(".")
    if extension not in SUPPORTED_EXTENSIONS:
        raise ContentError(f"Unsupported file type: {extension or 'unknown'}")

    loop = asyncio.get_running_loop()
    text = await loop.run_in_executor(None, _parse_sync, content, extension)
    logger.debug("Parsed | ext=%s bytes=%d chars=%d", extension, len(content), len(text))
    return text


async def parse_file(path: str | Path) -> str:
    """Parse a file on local disk; the extension is taken from its name."""
    path = Path(path)
    if not path.is_file():
        raise ContentError(f"File not found: {path}")
    loop = asyncio.get_running_loop()
    content = await loop.run_in_executor(None, path.read_bytes)
    return await parse_bytes(content, file_extension(path.name))


# ---------------------------------------------------------------------------
# Format handlers (blocking)
# ---------------------------------------------------------------------------

def _parse_sync(content: bytes, extension: str) -> str:
    try:
        if extension == "pdf":
            return _parse_pdf(content)
        if extension == "docx":
            return _parse_docx(content)
        if extension == "csv":
            return _parse_csv(content)
        if extension == "json":
            return _parse_json(content)
        if extension in ("html", "htm"):
            return _parse_html(content)
        return decode_text(content)
    except ContentError:
        raise
    except Exception as exc:
        raise ContentError(f"Failed to parse {extension} file: {exc}") from exc


def _parse_pdf(data: bytes) -> str:
    import fitz  # PyMuPDF; imported here to avoid module-level import cost

    with fitz.open(stream=data, filetype="pdf") as doc:
        pages = [(page.get_text("text") or "").strip() for page in doc]
    text = "\n\n".join(p for p in pages if p)
    if text.strip():
        return text

    # Some generators write text PyMuPDF cannot map; pypdf reads them differently
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    return "\n\n".join((page.extract_text() or "").strip() for page in reader.pages)


def _parse_docx(data: bytes) -> str:
    import docx

    document = docx.Document(io.BytesIO(data))
    parts = [para.text for para in document.paragraphs if para.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts)


def _parse_csv(data: bytes) -> str:
    reader = csv.reader(io.StringIO(decode_text(data)))
    return "\n".join(", ".join(row) for row in reader if any(cell.strip() for cell in row))


def _parse_json(data: bytes) -> str:
    try:
        parsed = json.loads(decode_text(data))
    except json.JSONDecodeError as exc:
        raise ContentError(f"Invalid JSON: {exc}") from exc
    return json.dumps(parsed, indent=2, ensure_ascii=False)


def _parse_html(data: bytes) -> str:
    html = _SCRIPT_RE.sub(" ", decode_text(data))
    text = unescape(_TAG_RE.sub("\n", html))
    lines = (line.strip() for line in text.splitlines())
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()
