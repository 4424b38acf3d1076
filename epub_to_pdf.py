import io
import logging
import os
import posixpath
import re
import sys
import zipfile
import xml.etree.ElementTree as ET
import zlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import unquote

import fitz  # PyMuPDF

# Set up logging
logging.basicConfig(
    level=os.environ.get("EPUB2PDF_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger('epub2pdf')

CONTAINER_PATH = "META-INF/container.xml"

DEFAULT_PAGE_WIDTH = 80
DEFAULT_PAGE_HEIGHT = 60

# Courier glyphs are 0.6 em wide
FONT_NAME = "cour"
FONT_SIZE = 10
CHAR_WIDTH = FONT_SIZE * 0.6
LINE_HEIGHT = FONT_SIZE * 1.2
MARGIN = 50

TAG_PATTERN = re.compile(r"<[^>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")


class EPUBConversionError(Exception):
    """Base class for errors caused by the uploaded EPUB itself."""


class CorruptArchiveError(EPUBConversionError):
    pass


class MissingContainerError(EPUBConversionError):
    pass


class MalformedContainerError(EPUBConversionError):
    pass


class MissingPackageDocumentError(EPUBConversionError):
    pass


class MalformedPackageError(EPUBConversionError):
    pass


class EmptyExtractionError(EPUBConversionError):
    pass


class Archive:
    """Read-only index of the entries of an EPUB zip, keyed by exact entry path."""

    def __init__(self, entries: Dict[str, bytes]):
        self._entries = dict(entries)

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def read(self, path: str) -> Optional[str]:
        """Return the entry at *path* decoded as UTF-8, or None if it is absent."""
        data = self._entries.get(path)
        if data is None:
            return None
        return data.decode("utf-8-sig", errors="replace")


@dataclass(frozen=True)
class ManifestItem:
    id: str
    href: str
    media_type: str
    path: str


@dataclass
class PackageDocument:
    root_path: str
    manifest: Dict[str, ManifestItem]
    spine: List[str]
    title: Optional[str] = None
    author: Optional[str] = None


@dataclass
class ExtractedText:
    chapters: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(f"{chapter}\n\n" for chapter in self.chapters)


@dataclass(frozen=True)
class PageConfig:
    page_width: int = DEFAULT_PAGE_WIDTH
    page_height: int = DEFAULT_PAGE_HEIGHT
    marginable: bool = True

    def __post_init__(self):
        if self.page_width < 1:
            raise ValueError(f"page_width must be positive, got {self.page_width}")
        if self.page_height < 1:
            raise ValueError(f"page_height must be positive, got {self.page_height}")


@dataclass
class PageLayout:
    pages: List[List[str]] = field(default_factory=list)

    @property
    def page_count(self) -> int:
        return len(self.pages)


def load_archive(data: bytes) -> Archive:
    """Load an EPUB archive from raw bytes.

    Args:
        data: The uploaded file contents

    Returns:
        Archive: In-memory index of every file entry

    Raises:
        CorruptArchiveError: If the bytes are not a readable zip archive
    """
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as epub_zip:
            entries = {
                info.filename: epub_zip.read(info)
                for info in epub_zip.infolist()
                if not info.is_dir()
            }
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError,
            RuntimeError, NotImplementedError) as e:
        # encrypted entries raise RuntimeError, unknown compression NotImplementedError
        raise CorruptArchiveError(f"Not a valid EPUB archive: {e}") from e

    logger.debug(f"Loaded archive with {len(entries)} entries")
    return Archive(entries)


def _local_name(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def _find_first(root: ET.Element, name: str) -> Optional[ET.Element]:
    for element in root.iter():
        if _local_name(element.tag) == name:
            return element
    return None


def _collect(section: ET.Element, name: str) -> List[ET.Element]:
    """Return the direct children of *section* called *name*, in document order.

    A section holding one element and a section holding many both come back as
    a list.
    """
    return [child for child in section if _local_name(child.tag) == name]


def _element_text(root: ET.Element, name: str) -> Optional[str]:
    element = _find_first(root, name)
    if element is None or not element.text:
        return None
    return WHITESPACE_PATTERN.sub(" ", element.text).strip() or None


def resolve_href(root_path: str, href: str) -> str:
    """Resolve a manifest href against the directory of the package document.

    Args:
        root_path: Archive path of the package document
        href: The (possibly percent-encoded) href of a manifest item

    Returns:
        str: Archive path of the referenced entry
    """
    href = unquote(href.split('#', 1)[0])
    joined = posixpath.join(posixpath.dirname(root_path), href)
    return posixpath.normpath(joined)


def _read_root_path(archive: Archive) -> str:
    container_xml = archive.read(CONTAINER_PATH)
    if container_xml is None:
        raise MissingContainerError(f"{CONTAINER_PATH} not found in EPUB")

    try:
        container = ET.fromstring(container_xml)
    except ET.ParseError as e:
        raise MalformedContainerError(f"Could not parse {CONTAINER_PATH}: {e}") from e

    rootfile = _find_first(container, "rootfile")
    root_path = rootfile.get("full-path") if rootfile is not None else None
    if not root_path:
        raise MalformedContainerError(f"{CONTAINER_PATH} has no rootfile full-path")
    return root_path


def resolve_package(archive: Archive) -> PackageDocument:
    """Locate and parse the package document of an EPUB.

    Args:
        archive: The loaded EPUB archive

    Returns:
        PackageDocument: Manifest, spine and metadata of the publication
    """
    root_path = _read_root_path(archive)

    package_xml = archive.read(root_path)
    if package_xml is None:
        raise MissingPackageDocumentError(f"Package document {root_path} not found in EPUB")

    try:
        package = ET.fromstring(package_xml)
    except ET.ParseError as e:
        raise MalformedPackageError(f"Could not parse {root_path}: {e}") from e

    manifest_section = _find_first(package, "manifest")
    spine_section = _find_first(package, "spine")
    if manifest_section is None or spine_section is None:
        raise MalformedPackageError(f"{root_path} has no manifest or spine")

    manifest: Dict[str, ManifestItem] = {}
    for item in _collect(manifest_section, "item"):
        item_id = item.get("id")
        href = item.get("href")
        if not item_id or not href:
            logger.warning(f"Ignoring manifest item without id or href in {root_path}")
            continue
        manifest[item_id] = ManifestItem(
            id=item_id,
            href=href,
            media_type=item.get("media-type", ""),
            path=resolve_href(root_path, href),
        )

    spine = [
        itemref.get("idref")
        for itemref in _collect(spine_section, "itemref")
        if itemref.get("idref")
    ]

    if not manifest or not spine:
        raise MalformedPackageError(f"{root_path} has an empty manifest or spine")

    logger.info(f"Package {root_path}: {len(manifest)} manifest items, {len(spine)} spine entries")
    return PackageDocument(
        root_path=root_path,
        manifest=manifest,
        spine=spine,
        title=_element_text(package, "title"),
        author=_element_text(package, "creator"),
    )


def strip_markup(markup: str) -> str:
    """Remove tags from markup and collapse whitespace.

    Entities are left as they are.
    """
    text = TAG_PATTERN.sub(" ", markup)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def extract_text(archive: Archive, package: PackageDocument) -> ExtractedText:
    """Extract chapter text in spine order.

    Args:
        archive: The loaded EPUB archive
        package: The resolved package document

    Returns:
        ExtractedText: One block per non-empty chapter

    Raises:
        EmptyExtractionError: If no spine entry produced any text
    """
    extracted = ExtractedText()

    for idref in package.spine:
        item = package.manifest.get(idref)
        if item is None:
            logger.warning(f"Spine entry {idref} has no manifest item, skipping")
            continue

        markup = archive.read(item.path)
        if markup is None:
            logger.warning(f"Spine entry {idref} points to missing file {item.path}, skipping")
            continue

        chapter_text = strip_markup(markup)
        if not chapter_text:
            logger.debug(f"Spine entry {idref} has no text")
            continue

        extracted.chapters.append(chapter_text)

    if not extracted.chapters:
        raise EmptyExtractionError("No text could be extracted from the EPUB")

    logger.info(f"Extracted {len(extracted.chapters)} chapters")
    return extracted


def _wrap(line: str, width: int) -> List[str]:
    if not line:
        return [""]
    return [line[start:start + width] for start in range(0, len(line), width)]


def paginate(text: str, config: PageConfig) -> PageLayout:
    """Lay out text into pages of at most ``page_height`` lines.

    Lines wider than ``page_width`` characters are broken into
    ``page_width``-sized pieces; blank lines are kept.

    Args:
        text: Plain text with ``\\n`` line boundaries
        config: Page dimensions

    Returns:
        PageLayout: The pages in order
    """
    layout = PageLayout()
    current: List[str] = []

    for line in text.split("\n"):
        for segment in _wrap(line, config.page_width):
            if len(current) >= config.page_height:
                layout.pages.append(current)
                current = []
            current.append(segment)

    if current:
        layout.pages.append(current)

    return layout


def render_pdf(layout: PageLayout, config: PageConfig, title: str = None, author: str = None) -> bytes:
    """Draw a page layout into a PDF with a fixed-width font.

    Args:
        layout: Pages of lines to draw
        config: Page dimensions used to size the PDF pages
        title: Title stored in the PDF metadata
        author: Author stored in the PDF metadata

    Returns:
        bytes: The PDF file
    """
    margin = MARGIN if config.marginable else 0
    page_width = config.page_width * CHAR_WIDTH + 2 * margin
    page_height = config.page_height * LINE_HEIGHT + 2 * margin

    with fitz.open() as pdf_document:
        for lines in layout.pages:
            page = pdf_document.new_page(width=page_width, height=page_height)
            for line_num, line in enumerate(lines):
                if not line:
                    continue
                # insert_text positions the baseline
                baseline = margin + line_num * LINE_HEIGHT + FONT_SIZE
                page.insert_text((margin, baseline), line, fontname=FONT_NAME, fontsize=FONT_SIZE)

        pdf_document.set_metadata({"title": title or "", "author": author or ""})
        return pdf_document.tobytes(garbage=3, deflate=True)


class EPUBToPDFConverter:
    """A class to convert EPUB files to paginated PDF documents."""

    def __init__(self, epub_bytes: bytes, title: str = None, author: str = None,
                 config: Optional[PageConfig] = None):
        """Initialize the converter with the EPUB contents and output settings.

        Args:
            epub_bytes: Raw bytes of the EPUB file
            title: Title for the PDF (defaults to the EPUB title)
            author: Author for the PDF (defaults to the EPUB author)
            config: Page dimensions (defaults to ``PageConfig()``)
        """
        self.epub_bytes = epub_bytes
        self.title = title
        self.author = author
        self.config = config or PageConfig()

    def convert(self) -> bytes:
        """Run the full EPUB to PDF pipeline.

        Returns:
            bytes: The rendered PDF

        Raises:
            EPUBConversionError: If the EPUB cannot be read or has no text
        """
        archive = load_archive(self.epub_bytes)
        package = resolve_package(archive)
        extracted = extract_text(archive, package)

        layout = paginate(extracted.text, self.config)
        logger.info(f"Laid out {layout.page_count} pages")

        return render_pdf(
            layout,
            self.config,
            title=self.title or package.title,
            author=self.author or package.author or "Unknown",
        )


def convert_epub_to_pdf(epub_bytes: bytes, title: str = None, author: str = None,
                        config: Optional[PageConfig] = None) -> bytes:
    """Convenience function to convert an EPUB to PDF.

    Args:
        epub_bytes: Raw bytes of the EPUB file
        title: Title for the PDF (defaults to the EPUB title)
        author: Author for the PDF (defaults to the EPUB author)
        config: Page dimensions

    Returns:
        bytes: The rendered PDF
    """
    converter = EPUBToPDFConverter(epub_bytes, title, author, config)
    return converter.convert()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Convert EPUB files to PDF format")
    parser.add_argument("epub_path", help="Path to the input EPUB file")
    parser.add_argument("pdf_path", help="Path to save the output PDF file")
    parser.add_argument("--title", help="Document title (defaults to the EPUB title)")
    parser.add_argument("--author", help="Document author (defaults to the EPUB author)")
    parser.add_argument("--page-width", type=int, default=DEFAULT_PAGE_WIDTH,
                        help="Characters per line")
    parser.add_argument("--page-height", type=int, default=DEFAULT_PAGE_HEIGHT,
                        help="Lines per page")
    parser.add_argument("--no-margins", action="store_true", help="Render without page margins")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    if args.debug:
        logger.setLevel(logging.DEBUG)

    try:
        page_config = PageConfig(args.page_width, args.page_height, not args.no_margins)
        with open(args.epub_path, "rb") as epub_file:
            pdf_bytes = convert_epub_to_pdf(epub_file.read(), args.title, args.author, page_config)
        with open(args.pdf_path, "wb") as pdf_file:
            pdf_file.write(pdf_bytes)
    except (EPUBConversionError, ValueError, OSError) as e:
        logger.error(f"Failed to convert {args.epub_path}: {e}")
        sys.exit(1)

    print(f"Successfully converted {args.epub_path} to {args.pdf_path}")
