"""Packaging of acquired units into TXT, HTML and EPUB documents.

``render_txt`` and ``render_html`` are pure functions of a ``Work`` and
its ordered units. The HTML output is rendered from the Jinja2
template ``templates/book.html``.

``build_epub`` assembles an EPUB 3 container with an EPUB 2 NCX for
older readers. It writes a ``mimetype`` entry first and uncompressed, a
``META-INF/container.xml``, a stylesheet, an introduction page, one
XHTML document per unit, the package document ``content.opf``, the
navigation document ``toc.xhtml`` and ``toc.ncx``. The manifest, the
spine and both tables of contents are generated from one
``reading_order`` list so they cannot disagree.

Images referenced from unit markup are downloaded through an
``ImageRegistry`` owned by a single packaging run: each distinct URL is
fetched once, stored as ``Images/image<n>.<ext>`` and every reference
to it is rewritten to that name. An image that cannot be downloaded is
dropped from the text and packaging goes on.

Compressing the archive is synchronous work; ``package_epub`` runs it
in a worker thread so a large book does not stall the event loop.
"""

from __future__ import annotations

import asyncio
import html
import io
import logging
import re
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, BinaryIO, Callable, Dict, List, Optional, Sequence, Tuple, Union

from bs4 import BeautifulSoup
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .errors import PackagingAssetError
from .models import AcquiredUnit, Artifact, OutputFormat, Work

logger = logging.getLogger(__name__)

MIMETYPE_NAME = "mimetype"
MIMETYPE_CONTENT = b"application/epub+zip"

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

MAIN_CSS = """@charset "utf-8";

body {
  margin: 0;
  padding: 0;
  text-align: justify;
  font-family: "Songti TC", "Songti SC", "SimSun", serif;
  color: #333333;
}

p {
  margin: 0;
  line-height: 1.3em;
  text-indent: 2em;
  duokan-text-indent: 2em;
}

div.image-container {
  text-align: center;
  margin: 1em 0;
}

div.image-container img {
  max-width: 100%;
  height: auto;
}

h2.chapter-title,
h2.introduction-title,
h2.toc-title {
  margin: 0 12% 2em 12%;
  line-height: 1.3em;
  text-align: center;
  font-size: 1em;
  color: #a80000;
}

span.chapter-sequence-number {
  font-size: x-small;
  color: #676767;
}

p.kt {
  text-indent: 0;
}

span.tag {
  display: inline-block;
  padding: 0.2em 1em;
  margin: 0.2em;
  background: #ffb3d9;
  color: #ffffff;
  border-radius: 15px;
  font-size: 0.85em;
}

nav ol {
  list-style: none;
  padding-left: 0;
}
"""

XHTML_HEAD = """<?xml version="1.0" encoding="utf-8"?>
<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<head>
  <title>{title}</title>
  <link href="Styles/main.css" type="text/css" rel="stylesheet"/>
</head>
<body>
"""

XHTML_TAIL = """</body>
</html>
"""

INTRO_TITLE = "Introduction"
TOC_TITLE = "Contents"

IMAGE_MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}

_IMG_SRC_RE = re.compile(r"""<img\b[^>]*?\ssrc=["']([^"']+)["'][^>]*>""", re.IGNORECASE)
_IMG_EXT_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp)(\?.*)?$", re.IGNORECASE)
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_BLOCK_TAG_RE = re.compile(r"</?(?:p|div)(?:\s[^>]*)?>", re.IGNORECASE)
_BLANK_LINE_RE = re.compile(r"\n\s*\n")
_SEQUENCE_RE = re.compile(r"^(第[一-龥\d]+章)\s*(.*)$")
_UNSAFE_FILENAME_RE = re.compile(r'[\\/:*?"<>|\s]+')

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)

ImageFetcher = Callable[[str], Awaitable[bytes]]
Entry = Tuple[str, bytes, int]


def unit_heading(number: int, title: str) -> str:
    return f"Chapter {number} {title}".strip()


def _escape(value: Any) -> str:
    return html.escape(str(value or ""), quote=True)


# -- plain text and HTML -------------------------------------------------

def render_txt(work: Work, units: Sequence[AcquiredUnit]) -> str:
    """Concatenate the units under a metadata header with chapter banners."""
    separator = "=" * 50
    parts = [
        f"{work.title}\n",
        f"Author: {work.author}\n",
        f"Tags: {' · '.join(work.tags)}\n",
        f"\n{separator}\n\n",
        f"{work.description}\n",
        f"\n{separator}\n",
    ]
    for number, unit in enumerate(units, start=1):
        parts.append(f"\n\n{unit_heading(number, unit.title)}\n\n")
        parts.append((unit.text or "").strip())
    parts.append("\n")
    return "".join(parts)


def render_html(work: Work, units: Sequence[AcquiredUnit]) -> str:
    """Render a single self-contained HTML page with a table of contents."""
    chapters = []
    for number, unit in enumerate(units, start=1):
        paragraphs = [line.strip() for line in (unit.text or "").splitlines() if line.strip()]
        chapters.append(
            {
                "anchor": f"chapter-{number - 1}",
                "heading": unit_heading(number, unit.title),
                "markup": unit.markup,
                "paragraphs": paragraphs,
            }
        )
    template = _templates.get_template("book.html")
    return template.render(work=work, chapters=chapters)


# -- images --------------------------------------------------------------

def image_extension(url: str) -> str:
    match = _IMG_EXT_RE.search(url)
    return match.group(1).lower() if match else "jpg"


def find_image_urls(markup: str) -> List[str]:
    """Return the distinct image sources in ``markup`` in document order."""
    seen: Dict[str, None] = {}
    for url in _IMG_SRC_RE.findall(markup or ""):
        seen.setdefault(html.unescape(url), None)
    return list(seen)


class ImageRegistry:
    """Maps image URLs to local file names for one packaging run.

    Resolving the same URL again returns the name assigned the first
    time without another download, including while that first download
    is still in flight. Failed downloads resolve to ``None``.
    """

    def __init__(self, fetch_image: ImageFetcher) -> None:
        self._fetch_image = fetch_image
        self._pending: Dict[str, "asyncio.Future[Optional[str]]"] = {}
        self._images: Dict[str, bytes] = {}
        self._names: Dict[str, str] = {}

    async def resolve(self, url: str) -> Optional[str]:
        if url not in self._pending:
            self._pending[url] = asyncio.ensure_future(self._download(url))
        return await self._pending[url]

    async def _download(self, url: str) -> Optional[str]:
        try:
            data = await self._fetch_image(url)
        except PackagingAssetError as exc:
            logger.warning("Skipping image %s: %s", url, exc)
            return None
        name = f"image{len(self._images)}.{image_extension(url)}"
        self._images[name] = data
        self._names[url] = name
        logger.debug("Stored image %s as %s", url, name)
        return name

    def name_for(self, url: str) -> Optional[str]:
        return self._names.get(url)

    @property
    def images(self) -> List[Tuple[str, bytes]]:
        return list(self._images.items())


# -- XHTML bodies --------------------------------------------------------

def _plain(fragment: str) -> str:
    return BeautifulSoup(fragment, "html.parser").get_text().strip()


def markup_blocks(markup: str, image_names: Dict[str, Optional[str]]) -> List[str]:
    """Turn site markup into well-formed XHTML blocks.

    Line breaks and paragraph boundaries become block boundaries; the
    text of each block is re-escaped into a ``<p>``. Images become
    centred containers pointing at their local name, or are dropped
    when they could not be stored.
    """
    normalized = _BLOCK_TAG_RE.sub("\n", _BR_RE.sub("\n", markup))
    blocks: List[str] = []
    for line in normalized.split("\n"):
        if not line.strip():
            continue
        # With one capturing group, re.split alternates text and src.
        pieces = _IMG_SRC_RE.split(line)
        for position, piece in enumerate(pieces):
            if position % 2:
                name = image_names.get(html.unescape(piece))
                if name:
                    blocks.append(f'<div class="image-container"><img src="Images/{name}" alt=""/></div>')
                continue
            text = _plain(piece)
            if text:
                blocks.append(f"<p>{_escape(text)}</p>")
    return blocks


def text_blocks(text: str) -> List[str]:
    """Rebuild paragraphs from plain text split on blank lines."""
    blocks: List[str] = []
    for chunk in _BLANK_LINE_RE.split(text or ""):
        for line in chunk.splitlines():
            if line.strip():
                blocks.append(f"<p>{_escape(line.strip())}</p>")
    return blocks


def _chapter_heading(title: str) -> str:
    match = _SEQUENCE_RE.match(title)
    if match and match.group(2):
        return (
            f'<span class="chapter-sequence-number">{_escape(match.group(1))}</span><br/>'
            f"{_escape(match.group(2))}"
        )
    return _escape(title)


def chapter_xhtml(title: str, blocks: Sequence[str]) -> str:
    body = "\n".join(f"  {block}" for block in blocks)
    return (
        XHTML_HEAD.format(title=_escape(title))
        + f'  <h2 class="chapter-title" title="{_escape(title)}">{_chapter_heading(title)}</h2>\n'
        + (body + "\n" if body else "")
        + XHTML_TAIL
    )


def intro_xhtml(work: Work) -> str:
    tags = "".join(f'<span class="tag">{_escape(tag)}</span>' for tag in work.tags)
    description = "\n".join(
        f'  <p class="kt">{_escape(line.strip())}</p>'
        for line in (work.description or "").splitlines()
        if line.strip()
    )
    return (
        XHTML_HEAD.format(title=INTRO_TITLE)
        + f'  <h2 class="introduction-title">{INTRO_TITLE}</h2>\n'
        + f'  <div class="book-tags">{tags}</div>\n'
        + f'  <p class="kt">Title: {_escape(work.title)}</p>\n'
        + f'  <p class="kt">Author: {_escape(work.author)}</p>\n'
        + (description + "\n" if description else "")
        + XHTML_TAIL
    )


# -- navigation and package documents ------------------------------------

@dataclass(frozen=True)
class NavItem:
    id: str
    href: str
    title: str


def reading_order(units: Sequence[AcquiredUnit]) -> List[NavItem]:
    """The single ordering shared by the spine and both tables of contents."""
    items = [NavItem("cover", "cover.xhtml", INTRO_TITLE)]
    for position, unit in enumerate(units):
        items.append(
            NavItem(f"chapter{position}", f"chapter{position}.xhtml",
                    unit.title or unit_heading(position + 1, ""))
        )
    return items


def book_identifier(work: Work) -> str:
    return f"urn:novelpack:{work.platform.value}-{work.work_id}"


def content_opf(work: Work, order: Sequence[NavItem], images: Sequence[str], modified: datetime) -> str:
    manifest = [
        f'    <item id="{item.id}" href="{item.href}" media-type="application/xhtml+xml"/>'
        for item in order
    ]
    for name in images:
        media_type = IMAGE_MEDIA_TYPES.get(name.rsplit(".", 1)[-1], "image/jpeg")
        manifest.append(
            f'    <item id="{name.replace(".", "_")}" href="Images/{name}" media-type="{media_type}"/>'
        )
    manifest.append('    <item id="toc" href="toc.xhtml" media-type="application/xhtml+xml" properties="nav"/>')
    manifest.append('    <item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>')
    manifest.append('    <item id="css" href="Styles/main.css" media-type="text/css"/>')
    spine = [f'    <itemref idref="{item.id}"/>' for item in order]
    subjects = "".join(f"\n    <dc:subject>{_escape(tag)}</dc:subject>" for tag in work.tags)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="bookid">\n'
        '  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">\n'
        f'    <dc:identifier id="bookid">{_escape(book_identifier(work))}</dc:identifier>\n'
        f"    <dc:title>{_escape(work.title)}</dc:title>\n"
        f"    <dc:creator>{_escape(work.author)}</dc:creator>\n"
        "    <dc:language>zh-TW</dc:language>"
        f"{subjects}\n"
        f"    <dc:description>{_escape(work.description)}</dc:description>\n"
        f'    <meta property="dcterms:modified">{modified.strftime("%Y-%m-%dT%H:%M:%SZ")}</meta>\n'
        "  </metadata>\n"
        "  <manifest>\n"
        + "\n".join(manifest)
        + "\n  </manifest>\n"
        '  <spine toc="ncx">\n'
        + "\n".join(spine)
        + "\n  </spine>\n"
        "</package>\n"
    )


def nav_xhtml(order: Sequence[NavItem]) -> str:
    items = "\n".join(
        f'      <li><a href="{item.href}">{_escape(item.title)}</a></li>' for item in order
    )
    return (
        XHTML_HEAD.format(title=TOC_TITLE)
        + '  <nav epub:type="toc" id="toc">\n'
        + f'    <h2 class="toc-title">{TOC_TITLE}</h2>\n'
        + "    <ol>\n"
        + items
        + "\n    </ol>\n"
        + "  </nav>\n"
        + XHTML_TAIL
    )


def toc_ncx(work: Work, order: Sequence[NavItem]) -> str:
    nav_points = "\n".join(
        f'    <navPoint id="{item.id}" playOrder="{play_order}">\n'
        f"      <navLabel><text>{_escape(item.title)}</text></navLabel>\n"
        f'      <content src="{item.href}"/>\n'
        "    </navPoint>"
        for play_order, item in enumerate(order, start=1)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">\n'
        "  <head>\n"
        f'    <meta name="dtb:uid" content="{_escape(book_identifier(work))}"/>\n'
        '    <meta name="dtb:depth" content="1"/>\n'
        '    <meta name="dtb:totalPageCount" content="0"/>\n'
        '    <meta name="dtb:maxPageNumber" content="0"/>\n'
        "  </head>\n"
        f"  <docTitle><text>{_escape(work.title)}</text></docTitle>\n"
        "  <navMap>\n"
        + nav_points
        + "\n  </navMap>\n"
        "</ncx>\n"
    )


# -- EPUB assembly -------------------------------------------------------

async def build_epub(work: Work, units: Sequence[AcquiredUnit], fetch_image: ImageFetcher,
                     registry: Optional[ImageRegistry] = None,
                     modified: Optional[datetime] = None) -> List[Entry]:
    """Return the ordered archive entries of an EPUB for ``work``.

    Each entry is ``(name, data, compress_type)``. Unit images are
    resolved through ``registry`` before the unit's document is built,
    so every reference in every unit uses the shared local name.
    """
    if not units:
        raise ValueError("Cannot package a work without units into an EPUB.")
    registry = registry or ImageRegistry(fetch_image)
    modified = modified or datetime.now(timezone.utc)
    order = reading_order(units)

    entries: List[Entry] = [
        (MIMETYPE_NAME, MIMETYPE_CONTENT, zipfile.ZIP_STORED),
        ("META-INF/container.xml", CONTAINER_XML.encode("utf-8"), zipfile.ZIP_DEFLATED),
        ("OEBPS/Styles/main.css", MAIN_CSS.encode("utf-8"), zipfile.ZIP_DEFLATED),
        ("OEBPS/cover.xhtml", intro_xhtml(work).encode("utf-8"), zipfile.ZIP_DEFLATED),
    ]

    for item, unit in zip(order[1:], units):
        if unit.markup and unit.markup.strip():
            urls = find_image_urls(unit.markup)
            names = await asyncio.gather(*(registry.resolve(url) for url in urls))
            blocks = markup_blocks(unit.markup, dict(zip(urls, names)))
        else:
            blocks = text_blocks(unit.text)
        document = chapter_xhtml(item.title, blocks)
        entries.append((f"OEBPS/{item.href}", document.encode("utf-8"), zipfile.ZIP_DEFLATED))

    images = registry.images
    for name, data in images:
        entries.append((f"OEBPS/Images/{name}", data, zipfile.ZIP_DEFLATED))
    logger.info("EPUB for work %s: %d units, %d images", work.work_id, len(units), len(images))

    image_names = [name for name, _ in images]
    entries.append(("OEBPS/content.opf", content_opf(work, order, image_names, modified).encode("utf-8"),
                    zipfile.ZIP_DEFLATED))
    entries.append(("OEBPS/toc.xhtml", nav_xhtml(order).encode("utf-8"), zipfile.ZIP_DEFLATED))
    entries.append(("OEBPS/toc.ncx", toc_ncx(work, order).encode("utf-8"), zipfile.ZIP_DEFLATED))
    return entries


def write_epub(target: Union[str, Path, BinaryIO], entries: Sequence[Entry]) -> None:
    """Write ``entries`` to a zip archive in the given order.

    According to the EPUB specification the ``mimetype`` entry must be
    the first entry and must not be compressed.
    """
    if not entries or entries[0][0] != MIMETYPE_NAME or entries[0][2] != zipfile.ZIP_STORED:
        raise ValueError("The first EPUB entry must be the stored mimetype.")
    with zipfile.ZipFile(target, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data, compress_type in entries:
            zf.writestr(name, data, compress_type=compress_type)


def epub_bytes(entries: Sequence[Entry]) -> bytes:
    buffer = io.BytesIO()
    write_epub(buffer, entries)
    return buffer.getvalue()


async def package_epub(work: Work, units: Sequence[AcquiredUnit], path: Union[str, Path],
                       fetch_image: ImageFetcher, registry: Optional[ImageRegistry] = None) -> str:
    entries = await build_epub(work, units, fetch_image, registry)
    await asyncio.to_thread(write_epub, path, entries)
    return str(path)


def artifact_filename(work: Work, fmt: OutputFormat) -> str:
    safe_title = _UNSAFE_FILENAME_RE.sub("_", work.title).strip("_") or "work"
    return f"{safe_title}_{work.work_id}.{fmt.value}"


async def package(work: Work, units: Sequence[AcquiredUnit], fmt: OutputFormat,
                  dest_dir: Union[str, Path], fetch_image: ImageFetcher) -> Artifact:
    """Write ``work`` in ``fmt`` into ``dest_dir`` and describe the file."""
    dest = Path(dest_dir)
    dest.mkdir(parents=True, exist_ok=True)
    path = dest / artifact_filename(work, fmt)
    if fmt is OutputFormat.EPUB:
        await package_epub(work, units, path, fetch_image)
    elif fmt is OutputFormat.HTML:
        path.write_text(render_html(work, units), encoding="utf-8")
    else:
        path.write_text(render_txt(work, units), encoding="utf-8")
    return Artifact(path=str(path), size_bytes=path.stat().st_size)
