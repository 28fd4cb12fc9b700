"""
PDF watermarking for delivered pattern files.

Every page gets the buyer's email stamped twice in small, low-opacity gray
Helvetica: once near the top-left corner and once near the bottom-left
corner, where the platform's brand mark (when available) sits immediately
to the left of the text. The stamp is rendered with reportlab as a separate
overlay page and merged on top of the original page with pypdf, so its
placement never depends on the page's own content.

Before serializing, interactive elements are flattened: form widgets and
annotations with an appearance stream are painted into the page content and
then removed, and the document-level AcroForm is dropped.

Watermarking is a deterrent, never a gate on delivery: ``watermark_pdf``
wraps the whole pipeline in a single fallback that logs the failure and
returns the original bytes unchanged.

Public API:
  watermark_pdf(pdf_bytes, license_identity) -> bytes
  load_brand_mark(path) -> Optional[BrandMark]
  is_pdf(file_path, content_type=None) -> bool
  get_file_extension(file_path) -> str
  guess_content_type(file_path) -> str
"""

import io
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from PIL import Image
from pypdf import PageObject, PdfReader, PdfWriter
from pypdf.generic import ArrayObject, ContentStream, DictionaryObject, IndirectObject, NameObject
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from app.config import get_brand_mark_path, get_platform_name

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Layout constants (PDF points unless noted)
# ---------------------------------------------------------------------------

WATERMARK_PREFIX = "Licensed for personal use only: "

FONT_NAME = "Helvetica"
FONT_SIZE = 15
TEXT_GRAY = (0.3, 0.3, 0.3)

TOP_OPACITY = 0.2
BOTTOM_OPACITY = 0.3
LOGO_OPACITY = 0.2

MARGIN_X = 10
TOP_OFFSET = 25
BOTTOM_Y = 40

BRAND_MARK_WIDTH_PX = 150
LOGO_DRAW_HEIGHT = FONT_SIZE * 1.6
LOGO_GAP = 6

_MAX_IDENTITY_LENGTH = 254
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

_PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}

_CONTENT_TYPES = {
    "pdf": "application/pdf",
    "zip": "application/zip",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "txt": "text/plain",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

# Annotation subtypes left in place after flattening
_KEPT_ANNOTATION_SUBTYPES = {"/Link"}

_ANNOTATION_HIDDEN_FLAG = 2


class WatermarkError(Exception):
    """Internal failure inside the watermark pipeline. Never escapes watermark_pdf."""


# ---------------------------------------------------------------------------
# File-type helpers
# ---------------------------------------------------------------------------

def get_file_extension(file_path: str) -> str:
    """Return the lower-case extension of a path or URL, without the dot."""
    path = file_path.split("?", 1)[0].split("#", 1)[0]
    name = path.rsplit("/", 1)[-1]
    parts = name.split(".")
    return parts[-1].lower() if len(parts) > 1 else ""


def guess_content_type(file_path: str) -> str:
    """Map a file extension to the MIME type used for the email attachment."""
    return _CONTENT_TYPES.get(get_file_extension(file_path), "application/octet-stream")


def is_pdf(file_path: str, content_type: Optional[str] = None) -> bool:
    """Determine if a file is a PDF based on its path or declared content type."""
    if get_file_extension(file_path) == "pdf":
        return True
    if content_type:
        return content_type.split(";", 1)[0].strip().lower() in _PDF_CONTENT_TYPES
    return False


# ---------------------------------------------------------------------------
# Brand mark
# ---------------------------------------------------------------------------

@dataclass
class BrandMark:
    """The platform logo, already downscaled for embedding."""

    image: Image.Image

    @property
    def aspect_ratio(self) -> float:
        return self.image.width / self.image.height

    def draw_size(self, height: float) -> tuple[float, float]:
        return height * self.aspect_ratio, height


def load_brand_mark(path: Optional[Union[str, Path]]) -> Optional[BrandMark]:
    """
    Load the brand-mark image and downscale it to BRAND_MARK_WIDTH_PX wide.

    Best-effort: a missing or unreadable asset returns None and the
    watermark is drawn without a logo.
    """
    if path is None:
        return None
    path = Path(path)
    if not path.is_file():
        logger.info(f"Brand mark not found at {path}; watermarking without logo")
        return None

    try:
        with Image.open(path) as source:
            source.load()
            image = source.convert("RGBA") if source.mode not in ("RGB", "RGBA") else source.copy()
    except (OSError, ValueError) as exc:
        logger.warning(f"Could not read brand mark {path}: {exc}; watermarking without logo")
        return None

    if image.width == 0 or image.height == 0:
        logger.warning(f"Brand mark {path} has no pixels; watermarking without logo")
        return None

    if image.width > BRAND_MARK_WIDTH_PX:
        height = max(1, round(image.height * BRAND_MARK_WIDTH_PX / image.width))
        image = image.resize((BRAND_MARK_WIDTH_PX, height), Image.Resampling.LANCZOS)

    return BrandMark(image=image)


# ---------------------------------------------------------------------------
# Overlay rendering (reportlab)
# ---------------------------------------------------------------------------

def _watermark_text(license_identity: str) -> str:
    identity = _CONTROL_CHARS.sub("", license_identity or "").strip()[:_MAX_IDENTITY_LENGTH]
    if not identity:
        raise WatermarkError("License identity is empty")
    return WATERMARK_PREFIX + identity


def _draw_overlay(
    pdf_canvas: canvas.Canvas,
    origin: tuple[float, float],
    size: tuple[float, float],
    text: str,
    brand_mark: Optional[BrandMark],
) -> None:
    origin_x, origin_y = origin
    _, height = size

    pdf_canvas.setFont(FONT_NAME, FONT_SIZE)
    pdf_canvas.setFillColorRGB(*TEXT_GRAY)

    pdf_canvas.saveState()
    pdf_canvas.setFillAlpha(TOP_OPACITY)
    pdf_canvas.drawString(origin_x + MARGIN_X, origin_y + height - TOP_OFFSET, text)
    pdf_canvas.restoreState()

    text_x = origin_x + MARGIN_X
    baseline_y = origin_y + BOTTOM_Y

    if brand_mark is not None:
        logo_width, logo_height = brand_mark.draw_size(LOGO_DRAW_HEIGHT)
        # Helvetica's x-height midline sits about 0.35em above the baseline
        text_middle = baseline_y + FONT_SIZE * 0.35
        pdf_canvas.saveState()
        pdf_canvas.setFillAlpha(LOGO_OPACITY)
        pdf_canvas.drawImage(
            ImageReader(brand_mark.image),
            text_x,
            text_middle - logo_height / 2,
            width=logo_width,
            height=logo_height,
            mask="auto",
        )
        pdf_canvas.restoreState()
        text_x += logo_width + LOGO_GAP

    pdf_canvas.saveState()
    pdf_canvas.setFillAlpha(BOTTOM_OPACITY)
    pdf_canvas.drawString(text_x, baseline_y, text)
    pdf_canvas.restoreState()


def _render_overlay_page(
    origin: tuple[float, float],
    size: tuple[float, float],
    text: str,
    brand_mark: Optional[BrandMark],
) -> PageObject:
    buffer = io.BytesIO()
    page_size = (origin[0] + size[0], origin[1] + size[1])
    pdf_canvas = canvas.Canvas(buffer, pagesize=page_size)
    _draw_overlay(pdf_canvas, origin, size, text, brand_mark)
    pdf_canvas.showPage()
    pdf_canvas.save()
    return PdfReader(io.BytesIO(buffer.getvalue())).pages[0]


class _OverlayFactory:
    """
    Renders one overlay per distinct page geometry within a single call.

    If embedding the brand mark fails the logo is dropped for the rest of
    the document and the text-only overlay is used.
    """

    def __init__(self, text: str, brand_mark: Optional[BrandMark]):
        self.text = text
        self.brand_mark = brand_mark
        self._pages: dict[tuple[float, float, float, float], PageObject] = {}

    def for_geometry(self, origin: tuple[float, float], size: tuple[float, float]) -> PageObject:
        key = (*origin, *size)
        if key not in self._pages:
            self._pages[key] = self._render(origin, size)
        return self._pages[key]

    def _render(self, origin: tuple[float, float], size: tuple[float, float]) -> PageObject:
        if self.brand_mark is not None:
            try:
                return _render_overlay_page(origin, size, self.text, self.brand_mark)
            except Exception as exc:
                logger.warning(f"Embedding brand mark failed ({exc}); continuing without logo")
                self.brand_mark = None
                self._pages.clear()
        return _render_overlay_page(origin, size, self.text, None)


# ---------------------------------------------------------------------------
# Flattening (pypdf)
# ---------------------------------------------------------------------------

def _normal_appearance(annotation: DictionaryObject) -> Optional[tuple[IndirectObject, DictionaryObject]]:
    """Return (reference, stream) of the annotation's visible appearance, if any."""
    if "/AP" not in annotation:
        return None
    appearances = annotation["/AP"]
    if "/N" not in appearances:
        return None

    reference = appearances.raw_get("/N")
    appearance = reference.get_object()
    if "/BBox" not in appearance:
        # Appearance sub-dictionary keyed by state (checkboxes, radio buttons)
        state = annotation.get("/AS")
        if state is None or state not in appearance:
            return None
        reference = appearance.raw_get(state)
        appearance = reference.get_object()

    if not isinstance(reference, IndirectObject) or "/BBox" not in appearance:
        return None
    return reference, appearance


def _placement_operator(annotation: DictionaryObject, appearance: DictionaryObject, name: str) -> str:
    """Content-stream snippet painting an appearance XObject into its /Rect."""
    rect = [float(v) for v in annotation["/Rect"]]
    x1, x2 = sorted((rect[0], rect[2]))
    y1, y2 = sorted((rect[1], rect[3]))

    bbox = [float(v) for v in appearance["/BBox"]]
    bx1, bx2 = sorted((bbox[0], bbox[2]))
    by1, by2 = sorted((bbox[1], bbox[3]))

    scale_x = (x2 - x1) / (bx2 - bx1) if bx2 > bx1 else 1.0
    scale_y = (y2 - y1) / (by2 - by1) if by2 > by1 else 1.0
    translate_x = x1 - bx1 * scale_x
    translate_y = y1 - by1 * scale_y
    return (
        f"q {scale_x:.6f} 0 0 {scale_y:.6f} {translate_x:.6f} {translate_y:.6f} cm "
        f"{name} Do Q"
    )


def _flatten_page(writer: PdfWriter, page: PageObject) -> int:
    if "/Annots" not in page:
        return 0

    kept = ArrayObject()
    operators: list[str] = []

    for reference in page["/Annots"]:
        annotation = reference.get_object()
        if annotation.get("/Subtype") in _KEPT_ANNOTATION_SUBTYPES:
            kept.append(reference)
            continue

        flags = int(annotation["/F"]) if "/F" in annotation else 0
        if flags & _ANNOTATION_HIDDEN_FLAG or "/Rect" not in annotation:
            continue

        found = _normal_appearance(annotation)
        if found is None:
            continue
        appearance_ref, appearance = found

        if "/Resources" not in page:
            page[NameObject("/Resources")] = DictionaryObject()
        resources = page["/Resources"]
        if "/XObject" not in resources:
            resources[NameObject("/XObject")] = DictionaryObject()
        xobjects = resources["/XObject"]
        index = len(xobjects)
        while f"/Flat{index}" in xobjects:
            index += 1
        name = f"/Flat{index}"
        xobjects[NameObject(name)] = appearance_ref
        operators.append(_placement_operator(annotation, appearance, name))

    if operators:
        existing = page.get_contents()
        original = existing.get_data() if existing is not None else b""
        flattened = ContentStream(None, writer)
        flattened.set_data(
            b"q\n" + original + b"\nQ\n" + "\n".join(operators).encode("latin-1") + b"\n"
        )
        page.replace_contents(flattened)

    if kept:
        page[NameObject("/Annots")] = kept
    else:
        del page["/Annots"]
    return len(operators)


def _flatten_interactive_elements(writer: PdfWriter) -> int:
    painted = sum(_flatten_page(writer, page) for page in writer.pages)
    root = writer.root_object
    if "/AcroForm" in root:
        del root["/AcroForm"]
    return painted


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def _open_document(pdf_bytes: bytes) -> PdfReader:
    reader = PdfReader(io.BytesIO(pdf_bytes))
    if reader.is_encrypted and not reader.decrypt(""):
        raise WatermarkError("PDF is encrypted with a user password")
    if len(reader.pages) == 0:
        raise WatermarkError("PDF has no pages")
    return reader


def _stamp_pages(writer: PdfWriter, overlays: _OverlayFactory) -> None:
    for page in writer.pages:
        if page.rotation:
            page.transfer_rotation_to_content()
        box = page.mediabox
        origin = (float(box.left), float(box.bottom))
        size = (float(box.width), float(box.height))
        page.merge_page(overlays.for_geometry(origin, size))


def _apply_watermark(
    pdf_bytes: bytes,
    license_identity: str,
    brand_mark_path: Optional[Union[str, Path]],
    platform_name: str,
) -> bytes:
    text = _watermark_text(license_identity)
    reader = _open_document(pdf_bytes)
    writer = PdfWriter(clone_from=reader)

    painted = _flatten_interactive_elements(writer)

    overlays = _OverlayFactory(text, load_brand_mark(brand_mark_path))
    _stamp_pages(writer, overlays)

    writer.add_metadata({"/Producer": platform_name, "/Creator": platform_name})

    output = io.BytesIO()
    writer.write(output)
    logger.debug(
        f"Watermarked {len(writer.pages)} page(s), flattened {painted} annotation(s), "
        f"logo={'yes' if overlays.brand_mark is not None else 'no'}"
    )
    return output.getvalue()


def watermark_pdf(
    pdf_bytes: bytes,
    license_identity: str,
    *,
    brand_mark_path: Optional[Union[str, Path]] = None,
    platform_name: Optional[str] = None,
) -> bytes:
    """
    Watermark every page of a PDF with the licensee's identity.

    Args:
        pdf_bytes: The original PDF. Never modified.
        license_identity: The buyer's email address (untrusted text).
        brand_mark_path: Logo to embed; defaults to BRAND_MARK_PATH.
        platform_name: Producer/Creator metadata; defaults to PLATFORM_NAME.

    Returns:
        The watermarked, flattened PDF, or ``pdf_bytes`` itself if any
        step fails. This function never raises.
    """
    try:
        return _apply_watermark(
            bytes(pdf_bytes),
            license_identity,
            brand_mark_path if brand_mark_path is not None else get_brand_mark_path(),
            platform_name or get_platform_name(),
        )
    except Exception:
        logger.warning(
            f"Watermarking failed; delivering original PDF unchanged "
            f"({len(pdf_bytes) if pdf_bytes is not None else 0} bytes)",
            exc_info=True,
        )
        return pdf_bytes
