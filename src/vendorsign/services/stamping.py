"""Document stamping engine.

Mutates PDF bytes before they are signed:
- A visual signature stamp on one page, at a rectangle given in the
  caller's top-left-origin coordinates (signature image, or a text stamp
  with signer, reason and time inside a 1pt outline)
- A provenance QR code with a short caption in the bottom-right corner of
  every page

Overlays are drawn with reportlab and merged onto the existing pages with
pypdf, so content from earlier signing passes is preserved.

Two conditions degrade instead of failing: a placement page outside the
document skips the visual stamp, and a signature image that decodes
neither as PNG nor as JPEG falls back to the text stamp. Both are
reported in ``StampResult.warnings``.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from PIL import Image, ImageDraw, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.graphics.barcode import qrencoder
from reportlab.lib.colors import black
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

if TYPE_CHECKING:
    from pypdf import PageObject

logger = logging.getLogger(__name__)

# Provenance marker geometry, in PDF points
QR_SIZE = 50
QR_MARGIN = 20
QR_CAPTION_Y = 10
QR_CAPTION_FONT_SIZE = 8
# Raster QR: pixels per module and quiet-zone width in modules
QR_MODULE_PIXELS = 8
QR_QUIET_ZONE = 4

TEXT_STAMP_FONT = "Helvetica"
TEXT_STAMP_FONT_SIZE = 10
TEXT_STAMP_LEADING = 1.2
TEXT_STAMP_PADDING = 4

# Raster formats tried, in order, for signature images
SIGNATURE_IMAGE_FORMATS = ("PNG", "JPEG")


class StampingError(Exception):
    """Raised when the document cannot be stamped at all (unreadable PDF)."""

    pass


class StampDegradation(Exception):
    """Base for non-fatal stamping problems; recorded, never raised to callers."""

    pass


class DocumentPageOutOfRange(StampDegradation):
    """The placement page does not exist; the visual stamp is skipped."""

    def __init__(self, page: int, page_count: int) -> None:
        self.page = page
        self.page_count = page_count
        super().__init__(
            f"Page {page} is out of range for a {page_count}-page document; "
            "visual stamp skipped"
        )


class ImageDecodeFailure(StampDegradation):
    """The signature image is neither PNG nor JPEG; the text stamp is used."""

    pass


class StampKind(str, Enum):
    IMAGE = "image"
    TEXT = "text"


@dataclass(frozen=True, slots=True)
class Placement:
    """Stamp rectangle in top-left-origin page coordinates. ``page`` is 1-based."""

    page: int
    x: float
    y: float
    width: float
    height: float

    def to_dict(self) -> dict[str, float]:
        return {
            "page": self.page,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Placement:
        return cls(
            page=int(data["page"]),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
        )


@dataclass(frozen=True, slots=True)
class VisualStamp:
    """Where the visual stamp landed, in native (bottom-left origin) coordinates."""

    kind: StampKind
    page: int
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True, slots=True)
class ProvenanceMark:
    page: int
    x: float
    y: float
    size: float


@dataclass(frozen=True, slots=True)
class StampResult:
    """Output of one stamping pass."""

    content: bytes
    page_count: int
    visual_stamp: VisualStamp | None
    provenance_marks: tuple[ProvenanceMark, ...] = ()
    warnings: tuple[StampDegradation, ...] = field(default_factory=tuple)

    @property
    def warning_messages(self) -> list[str]:
        return [str(w) for w in self.warnings]


@dataclass(frozen=True, slots=True)
class TextStampLayout:
    """Font size and per-line baselines, measured up from the bottom of the stamp box."""

    font_size: float
    baselines: tuple[float, ...]


def text_stamp_lines(signer_name: str, reason: str, signed_at: datetime) -> list[str]:
    return [
        "Digitally signed by:",
        signer_name,
        f"Reason: {reason}",
        f"Time: {signed_at.isoformat(timespec='seconds')}",
    ]


def fit_text_stamp(lines: list[str], width: float, height: float) -> TextStampLayout:
    """Shrink the text stamp font until every line fits inside the padded box.

    The font never grows past ``TEXT_STAMP_FONT_SIZE``. Line width is measured
    with the font's metrics and each line takes ``TEXT_STAMP_LEADING`` times
    the font size vertically, descenders included.
    """
    inner_width = max(width - 2 * TEXT_STAMP_PADDING, 0.0)
    inner_height = max(height - 2 * TEXT_STAMP_PADDING, 0.0)
    widest = max(stringWidth(line, TEXT_STAMP_FONT, 1) for line in lines)

    font_size = min(
        float(TEXT_STAMP_FONT_SIZE),
        inner_height / (len(lines) * TEXT_STAMP_LEADING),
        inner_width / widest if widest else float(TEXT_STAMP_FONT_SIZE),
    )
    leading = font_size * TEXT_STAMP_LEADING
    top = height - TEXT_STAMP_PADDING
    # Baseline sits one font size below the top of its line slot
    baselines = tuple(top - index * leading - font_size for index in range(len(lines)))
    return TextStampLayout(font_size=font_size, baselines=baselines)


def to_native_y(y: float, height: float, page_height: float) -> float:
    """Flip a top-left-origin y to PDF's bottom-left origin.

    ``native_y + height + y == page_height`` for any rectangle on the page.
    """
    return page_height - y - height


def decode_signature_image(data: bytes) -> Image.Image:
    """Decode a signature image, trying PNG first and then JPEG.

    Raises:
        ImageDecodeFailure: If neither format decodes.
    """
    errors = []
    for image_format in SIGNATURE_IMAGE_FORMATS:
        try:
            image = Image.open(io.BytesIO(data), formats=[image_format])
            image.load()
            return image
        except (UnidentifiedImageError, OSError) as e:
            errors.append(f"{image_format}: {e}")
    raise ImageDecodeFailure("Signature image could not be decoded (" + "; ".join(errors) + ")")


def _page_box(page: PageObject) -> tuple[float, float, float, float]:
    box = page.mediabox
    return float(box.left), float(box.bottom), float(box.width), float(box.height)


class DocumentStampingEngine:
    """Applies the visual stamp and the provenance marker to a PDF.

    Example:
        engine = DocumentStampingEngine(qr_caption="VendorSign")
        result = engine.stamp(
            pdf_bytes,
            Placement(page=1, x=50, y=50, width=150, height=40),
            signer_name="Jane Doe",
            reason="Approval",
            provenance_text="https://sign.example.com/verify/...",
        )
    """

    def __init__(self, *, qr_caption: str = "VendorSign", qr_enabled: bool = True) -> None:
        self._qr_caption = qr_caption
        self._qr_enabled = qr_enabled

    def stamp(
        self,
        content: bytes,
        placement: Placement,
        *,
        signer_name: str,
        reason: str,
        signature_image: bytes | None = None,
        provenance_text: str | None = None,
        signed_at: datetime | None = None,
    ) -> StampResult:
        """Stamp a PDF.

        Args:
            content: Source PDF bytes.
            placement: Visual stamp rectangle (top-left origin, 1-based page).
            signer_name: Name shown in the text stamp.
            reason: Signing reason shown in the text stamp.
            signature_image: Optional PNG/JPEG signature drawing.
            provenance_text: Text encoded in the per-page QR code; no QR when None.
            signed_at: Time shown in the text stamp (defaults to now, UTC).

        Returns:
            StampResult with the new PDF bytes and what was drawn where.

        Raises:
            StampingError: If the input is not a readable PDF.
        """
        signed_at = signed_at or datetime.now(UTC)
        warnings: list[StampDegradation] = []

        try:
            reader = PdfReader(io.BytesIO(content))
            if reader.is_encrypted:
                msg = "Encrypted PDFs cannot be stamped"
                raise StampingError(msg)
            writer = PdfWriter(clone_from=reader)
            page_count = len(writer.pages)
        except (PyPdfError, ValueError) as e:
            msg = f"Unreadable PDF: {e}"
            raise StampingError(msg) from e
        if page_count == 0:
            msg = "PDF has no pages"
            raise StampingError(msg)

        target_index: int | None = placement.page - 1
        if not 1 <= placement.page <= page_count:
            degradation = DocumentPageOutOfRange(placement.page, page_count)
            logger.warning("%s", degradation)
            warnings.append(degradation)
            target_index = None

        image = None
        if signature_image is not None and target_index is not None:
            try:
                image = decode_signature_image(signature_image)
            except ImageDecodeFailure as degradation:
                logger.warning("Falling back to text stamp: %s", degradation)
                warnings.append(degradation)

        qr_image = None
        if provenance_text and self._qr_enabled:
            qr_image = ImageReader(render_qr_image(provenance_text))

        visual_stamp: VisualStamp | None = None
        marks: list[ProvenanceMark] = []

        for index, page in enumerate(writer.pages):
            draws_visual = index == target_index
            if not draws_visual and qr_image is None:
                continue

            left, bottom, width, height = _page_box(page)
            buffer = io.BytesIO()
            # Overlay page spans the absolute box so coordinates line up on merge
            c = canvas.Canvas(buffer, pagesize=(left + width, bottom + height))

            if draws_visual:
                x = left + placement.x
                y = bottom + to_native_y(placement.y, placement.height, height)
                if image is not None:
                    c.drawImage(
                        ImageReader(image),
                        x,
                        y,
                        width=placement.width,
                        height=placement.height,
                        mask="auto",
                    )
                    kind = StampKind.IMAGE
                else:
                    self._draw_text_stamp(c, x, y, placement, signer_name, reason, signed_at)
                    kind = StampKind.TEXT
                visual_stamp = VisualStamp(
                    kind=kind,
                    page=index + 1,
                    x=x,
                    y=y,
                    width=placement.width,
                    height=placement.height,
                )

            if qr_image is not None:
                qr_x = left + width - QR_SIZE - QR_MARGIN
                qr_y = bottom + QR_MARGIN
                c.drawImage(qr_image, qr_x, qr_y, width=QR_SIZE, height=QR_SIZE)
                c.setFillColor(black)
                c.setFont(TEXT_STAMP_FONT, QR_CAPTION_FONT_SIZE)
                c.drawString(qr_x, bottom + QR_CAPTION_Y, self._qr_caption)
                marks.append(ProvenanceMark(page=index + 1, x=qr_x, y=qr_y, size=QR_SIZE))

            c.showPage()
            c.save()
            buffer.seek(0)
            page.merge_page(PdfReader(buffer).pages[0])

        output = io.BytesIO()
        writer.write(output)

        logger.debug(
            "Stamped document: pages=%d, visual=%s, provenance_pages=%d, warnings=%d",
            page_count,
            visual_stamp.kind.value if visual_stamp else None,
            len(marks),
            len(warnings),
        )
        return StampResult(
            content=output.getvalue(),
            page_count=page_count,
            visual_stamp=visual_stamp,
            provenance_marks=tuple(marks),
            warnings=tuple(warnings),
        )

    def _draw_text_stamp(
        self,
        c: canvas.Canvas,
        x: float,
        y: float,
        placement: Placement,
        signer_name: str,
        reason: str,
        signed_at: datetime,
    ) -> None:
        c.setStrokeColor(black)
        c.setLineWidth(1)
        c.rect(x, y, placement.width, placement.height, stroke=1, fill=0)

        lines = text_stamp_lines(signer_name, reason, signed_at)
        layout = fit_text_stamp(lines, placement.width, placement.height)
        if layout.font_size <= 0:
            return
        c.setFillColor(black)
        c.setFont(TEXT_STAMP_FONT, layout.font_size)
        for line, baseline in zip(lines, layout.baselines, strict=True):
            c.drawString(x + TEXT_STAMP_PADDING, y + baseline, line)


def render_qr_image(data: str) -> Image.Image:
    """Render ``data`` as a grayscale QR code raster with a quiet zone.

    Uses reportlab's QR encoder for the module matrix and Pillow for the pixels.
    """
    qr = qrencoder.QRCode(None, qrencoder.QRErrorCorrectLevel.M)
    qr.addData(data)
    qr.make()

    count = qr.getModuleCount()
    side = (count + 2 * QR_QUIET_ZONE) * QR_MODULE_PIXELS
    image = Image.new("L", (side, side), 255)
    draw = ImageDraw.Draw(image)
    for row in range(count):
        for col in range(count):
            if qr.isDark(row, col):
                left = (col + QR_QUIET_ZONE) * QR_MODULE_PIXELS
                top = (row + QR_QUIET_ZONE) * QR_MODULE_PIXELS
                draw.rectangle(
                    [left, top, left + QR_MODULE_PIXELS - 1, top + QR_MODULE_PIXELS - 1],
                    fill=0,
                )
    return image
