"""
modules/ingestion/document_parser.py

Converts files into ParsedDocument(text, metadata, images).

The ingestion pipeline only depends on the DocumentParser protocol;
FileDocumentParser is the default implementation:

  1. Detect file type via python-magic (extension only as a fallback)
  2. PDF:   PyMuPDF text per page + embedded images written to MEDIA_DIR
  3. DOCX:  docx2txt body text + python-docx tables
  4. HTML:  BeautifulSoup body text (no script/style), <title>, <meta>
            name/content pairs, <img> src/alt as images
  5. text/* (txt, md, csv): read as UTF-8
  6. image/*: no text, the file itself becomes the single image
"""

from pathlib import Path
from typing import List, Protocol, Tuple

import docx2txt
import fitz                          # PyMuPDF
import magic
from bs4 import BeautifulSoup
from docx import Document as DocxDocument
from loguru import logger

from config.settings import MEDIA_DIR
from core.errors import IngestionError
from models.schemas import ParsedDocument, ParsedImage

MIN_IMAGE_DIMENSION = 50   # px; smaller embedded images are icons/bullets

PDF_MIME = "application/pdf"
HTML_MIMES = {"text/html", "application/xhtml+xml"}
DOCX_MIMES = {
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
}

_EXTENSION_MIMES = {
    ".pdf":  PDF_MIME,
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".html": "text/html",
    ".htm":  "text/html",
    ".txt":  "text/plain",
    ".md":   "text/markdown",
    ".csv":  "text/csv",
    ".png":  "image/png",
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


class DocumentParser(Protocol):
    def parse(self, file_path: Path) -> ParsedDocument:
        ...


# ── File Type Detection ────────────────────────────────────────────────────
def detect_mime_type(file_path: Path) -> str:
    """
    Detect file MIME type using libmagic.
    Generic answers (octet-stream, text/plain for a known extension) defer
    to the extension table.
    """
    suffix = file_path.suffix.lower()
    try:
        mime = magic.from_file(str(file_path), mime=True)
    except (OSError, magic.MagicException) as e:
        logger.warning(f"python-magic failed ({e}), falling back to extension detection")
        return _EXTENSION_MIMES.get(suffix, "application/octet-stream")

    if mime in ("application/octet-stream", "application/zip", "text/plain") and suffix in _EXTENSION_MIMES:
        return _EXTENSION_MIMES[suffix]
    return mime


# ── PDF ────────────────────────────────────────────────────────────────────
def _parse_pdf(pdf_path: Path, media_dir: Path) -> ParsedDocument:
    try:
        doc = fitz.open(str(pdf_path))
    except (RuntimeError, ValueError) as e:
        raise IngestionError(f"PyMuPDF failed to open {pdf_path.name}: {e}") from e

    pages: List[str] = []
    images: List[ParsedImage] = []
    seen_xrefs = set()
    safe_stem = pdf_path.stem.replace(" ", "_")

    try:
        for page_idx in range(len(doc)):
            page = doc[page_idx]
            page_num = page_idx + 1
            text = page.get_text("text").strip()
            if text:
                pages.append(text)

            for img_idx, img_info in enumerate(page.get_images(full=True)):
                xref = img_info[0]
                if xref in seen_xrefs:
                    continue
                seen_xrefs.add(xref)

                extracted = doc.extract_image(xref)
                if not extracted:
                    continue
                if extracted.get("width", 0) < MIN_IMAGE_DIMENSION or \
                        extracted.get("height", 0) < MIN_IMAGE_DIMENSION:
                    continue

                ext = extracted.get("ext", "png")
                out_path = media_dir / f"{safe_stem}_p{page_num}_img{img_idx + 1}_{xref}.{ext}"
                out_path.write_bytes(extracted["image"])
                images.append(ParsedImage(uri=str(out_path), caption=f"{pdf_path.name} page {page_num}"))
        page_count = len(doc)
    finally:
        doc.close()

    logger.info(f"PDF parsed: {pdf_path.name} → {len(pages)} text pages, {len(images)} images")
    return ParsedDocument(
        text="\n\n".join(pages),
        metadata={"format": "pdf", "pages": page_count},
        images=images,
    )


# ── DOCX ───────────────────────────────────────────────────────────────────
def _extract_docx_tables(doc_path: Path) -> str:
    """
    Extract text from DOCX tables using python-docx.
    Tables are often missed by docx2txt.
    Returns table content as pipe-delimited plain text.
    """
    doc = DocxDocument(str(doc_path))
    table_texts = []
    for table in doc.tables:
        for row in table.rows:
            row_text = " | ".join(
                cell.text.strip() for cell in row.cells if cell.text.strip()
            )
            if row_text:
                table_texts.append(row_text)
    return "\n".join(table_texts)


def _parse_docx(doc_path: Path) -> ParsedDocument:
    body_text = docx2txt.process(str(doc_path)) or ""
    table_text = _extract_docx_tables(doc_path)
    if table_text.strip():
        body_text += "\n\n" + table_text
    logger.info(f"DOCX parsed: {doc_path.name} → {len(body_text)} chars")
    return ParsedDocument(text=body_text, metadata={"format": "docx"})


# ── HTML ───────────────────────────────────────────────────────────────────
def _resolve_image_src(src: str, html_path: Path) -> str:
    """Relative src pointing at an existing file next to the page → absolute path."""
    if "://" in src or src.startswith("data:"):
        return src
    candidate = (html_path.parent / src).resolve()
    return str(candidate) if candidate.is_file() else src


def _parse_html(html_path: Path) -> ParsedDocument:
    html = html_path.read_text(encoding="utf-8", errors="replace")
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()

    metadata = {"format": "html"}
    if soup.title and soup.title.string:
        metadata["title"] = soup.title.string.strip()
    for meta in soup.find_all("meta"):
        name = meta.get("name") or meta.get("property")
        content = meta.get("content")
        if name and content:
            metadata[name] = content

    images = [
        ParsedImage(uri=_resolve_image_src(img["src"], html_path), caption=img.get("alt") or None)
        for img in soup.find_all("img")
        if img.get("src")
    ]

    root = soup.body or soup
    lines = [line.strip() for line in root.get_text(separator="\n").split("\n")]
    text = "\n".join(line for line in lines if line)

    logger.info(f"HTML parsed: {html_path.name} → {len(text)} chars, {len(images)} images")
    return ParsedDocument(text=text, metadata=metadata, images=images)


# ── Public API ─────────────────────────────────────────────────────────────
class FileDocumentParser:
    """
    Usage:
        parser = FileDocumentParser()
        parsed = parser.parse(Path("report.pdf"))
        parsed.text, parsed.images
    """

    def __init__(self, media_dir: Path = MEDIA_DIR):
        self.media_dir = Path(media_dir)
        self.media_dir.mkdir(parents=True, exist_ok=True)

    def parse(self, file_path: Path) -> ParsedDocument:
        file_path = Path(file_path)
        if not file_path.exists():
            raise IngestionError(f"File not found: {file_path}")

        mime = detect_mime_type(file_path)
        parsed, kind = self._dispatch(file_path, mime)
        parsed.metadata.setdefault("mime_type", mime)
        parsed.metadata.setdefault("filename", file_path.name)
        logger.debug(f"Parsed {file_path.name} as {kind} ({mime})")
        return parsed

    def _dispatch(self, file_path: Path, mime: str) -> Tuple[ParsedDocument, str]:
        if mime == PDF_MIME:
            return _parse_pdf(file_path, self.media_dir), "pdf"
        if mime in DOCX_MIMES:
            return _parse_docx(file_path), "docx"
        if mime in HTML_MIMES:
            return _parse_html(file_path), "html"
        if mime.startswith("text/"):
            text = file_path.read_text(encoding="utf-8", errors="replace")
            return ParsedDocument(text=text, metadata={"format": "text"}), "text"
        if mime.startswith("image/"):
            image = ParsedImage(uri=str(file_path.resolve()))
            return ParsedDocument(text="", metadata={"format": "image"}, images=[image]), "image"
        raise IngestionError(f"Unsupported file type: {mime} ({file_path.name})")
