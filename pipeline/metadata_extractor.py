"""
Metadata extraction module for images.

Extracts, from bytes already read for hashing:
- Basic image info (dimensions, resolution, megapixels, colorspace)
- File size in KB/MB
- EXIF data (camera make/model, date taken)

Nothing here is fatal: a file Pillow cannot parse simply gets no
dimensions.
"""

import io
import logging
from datetime import datetime

from PIL import Image
import piexif

from db.records import ImageMetadata

logger = logging.getLogger(__name__)

# Pillow modes grouped into the colorspace names stored on records
COLORSPACES = {
    "1": "Grayscale",
    "L": "Grayscale",
    "LA": "Grayscale",
    "I": "Grayscale",
    "I;16": "Grayscale",
    "CMYK": "CMYK",
    "YCbCr": "YCbCr",
    "LAB": "LAB",
    "HSV": "HSV",
}


class MetadataExtractor:
    """
    Extracts lightweight metadata from image bytes.

    Combines basic image info with EXIF data extraction.
    """

    def extract(self, data: bytes, filename: str = "") -> ImageMetadata:
        """
        Extract all metadata from image contents.

        Args:
            data: Full file contents.
            filename: Name used in log messages.

        Returns:
            ImageMetadata with whatever could be extracted.
        """
        size = len(data)
        metadata = ImageMetadata(
            filesize_kb=round(size / 1024, 2),
            filesize_mb=round(size / (1024 * 1024), 3),
        )

        try:
            with Image.open(io.BytesIO(data)) as img:
                self._extract_image_info(img, metadata)
                self._extract_exif_data(img, metadata, filename)
        except Exception as e:
            logger.debug(f"Could not open image {filename}: {e}")

        return metadata

    def _extract_image_info(self, img: Image.Image, metadata: ImageMetadata) -> None:
        """Extract basic image properties using Pillow."""
        width, height = img.width, img.height
        if not width or not height:
            return

        metadata.width = width
        metadata.height = height
        metadata.resolution = f"{width}x{height}"
        metadata.megapixels = round(width * height / 1_000_000, 2)
        metadata.colorspace = COLORSPACES.get(img.mode, "RGB")

    def _extract_exif_data(
        self,
        img: Image.Image,
        metadata: ImageMetadata,
        filename: str
    ) -> None:
        """Extract camera and date EXIF tags, best effort."""
        try:
            exif_bytes = img.info.get("exif")
            if not exif_bytes:
                return

            exif_dict = piexif.load(exif_bytes)

            # Camera info from 0th IFD
            ifd_0 = exif_dict.get("0th", {})
            metadata.camera_make = self._decode_exif_string(
                ifd_0.get(piexif.ImageIFD.Make)
            )
            metadata.camera_model = self._decode_exif_string(
                ifd_0.get(piexif.ImageIFD.Model)
            )

            # Date taken from Exif IFD
            exif_ifd = exif_dict.get("Exif", {})
            date_str = self._decode_exif_string(
                exif_ifd.get(piexif.ExifIFD.DateTimeOriginal)
            )
            if date_str:
                taken = self._parse_exif_date(date_str)
                metadata.date_taken = taken.isoformat() if taken else None

        except Exception as e:
            logger.debug(f"Could not extract EXIF from {filename}: {e}")

    def _decode_exif_string(self, value: bytes | str | None) -> str | None:
        """Decode EXIF string value."""
        if value is None:
            return None
        if isinstance(value, bytes):
            try:
                decoded = value.decode("utf-8")
            except UnicodeDecodeError:
                decoded = value.decode("latin-1")
            return decoded.rstrip("\x00").strip() or None
        return str(value).strip() or None

    def _parse_exif_date(self, date_str: str) -> datetime | None:
        """Parse EXIF date string to datetime."""
        # EXIF format: "YYYY:MM:DD HH:MM:SS"
        for fmt in ("%Y:%m:%d %H:%M:%S", "%Y-%m-%d %H:%M:%S"):
            try:
                return datetime.strptime(date_str, fmt)
            except ValueError:
                continue
        logger.debug(f"Could not parse date: {date_str}")
        return None

