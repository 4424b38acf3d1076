from __future__ import annotations

import io
import zipfile
from typing import Dict, List, Optional, Sequence, Tuple

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{opf_path}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def build_opf(
    manifest: Sequence[Tuple[str, str]],
    spine: Sequence[str],
    title: str = "Test Book",
    author: str = "Jane Doe",
) -> str:
    items = "\n".join(
        f'    <item id="{item_id}" href="{href}" media-type="application/xhtml+xml"/>'
        for item_id, href in manifest
    )
    itemrefs = "\n".join(f'    <itemref idref="{idref}"/>' for idref in spine)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="uid">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:identifier id="uid">test-book</dc:identifier>
    <dc:title>{title}</dc:title>
    <dc:creator>{author}</dc:creator>
  </metadata>
  <manifest>
{items}
  </manifest>
  <spine>
{itemrefs}
  </spine>
</package>
"""


def xhtml(body: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<html xmlns="http://www.w3.org/1999/xhtml"><head></head>'
        f"<body>{body}</body></html>"
    )


def build_epub(entries: List[Tuple[str, str]]) -> bytes:
    """Zip the given (path, content) pairs in the order given."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as epub_zip:
        epub_zip.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        for path, content in entries:
            epub_zip.writestr(path, content, compress_type=zipfile.ZIP_DEFLATED)
    return buffer.getvalue()


def simple_epub(
    chapters: Dict[str, str],
    spine: Optional[Sequence[str]] = None,
    opf_path: str = "OEBPS/content.opf",
) -> bytes:
    """EPUB with one xhtml file per chapter id, stored next to the package document."""
    manifest = [(chapter_id, f"{chapter_id}.xhtml") for chapter_id in chapters]
    content_dir = opf_path.rsplit("/", 1)[0] + "/" if "/" in opf_path else ""
    entries = [
        ("META-INF/container.xml", CONTAINER_XML.format(opf_path=opf_path)),
        (opf_path, build_opf(manifest, spine if spine is not None else list(chapters))),
    ]
    entries.extend(
        (f"{content_dir}{chapter_id}.xhtml", xhtml(body)) for chapter_id, body in chapters.items()
    )
    return build_epub(entries)


def mark_encrypted(epub_bytes: bytes) -> bytes:
    """Set the encryption bit in every central directory header."""
    data = bytearray(epub_bytes)
    offset = data.find(b"PK\x01\x02")
    while offset != -1:
        # general purpose flags sit 8 bytes into the header
        data[offset + 8] |= 0x01
        offset = data.find(b"PK\x01\x02", offset + 4)
    return bytes(data)
