import asyncio
import io
import re
import zipfile
from datetime import datetime, timezone
from xml.etree import ElementTree

import httpx
import pytest

from novelpack.fetcher import RemoteFetcher
from novelpack.models import AcquiredUnit, OutputFormat, Platform, UnitOutcome, Work
from novelpack.packager import (
    ImageRegistry,
    build_epub,
    chapter_xhtml,
    epub_bytes,
    find_image_urls,
    markup_blocks,
    package,
    render_html,
    render_txt,
    write_epub,
)

from fakes import FakeFetcher

SHARED_IMAGE = "https://img.example/shared.png"
MISSING_IMAGE = "https://img.example/missing.jpg"


def make_work() -> Work:
    return Work(platform=Platform.PO18, work_id="123", title="雨夜", author="林小雨",
                description="第一行\n第二行", tags=["現代", "甜文"])


def make_unit(index: int, title: str, markup: str = "", text: str = "") -> AcquiredUnit:
    return AcquiredUnit(index=index, unit_id=str(1000 + index), title=title, markup=markup,
                        text=text, outcome=UnitOutcome.FETCHED)


def illustrated_units():
    return [
        make_unit(0, "第一章 雨", markup=f'<p>開頭</p><p><img src="{SHARED_IMAGE}"></p><p>結尾</p>',
                  text="開頭\n結尾"),
        make_unit(1, "第二章 晴", markup=f'<p>再看一次<img src="{SHARED_IMAGE}">'
                                         f'<img src="{MISSING_IMAGE}"></p>', text="再看一次"),
        make_unit(2, "第三章", text="第一行\n\n第二行"),
    ]


async def build(units, fetcher=None):
    fetcher = fetcher or FakeFetcher(images={SHARED_IMAGE: b"\x89PNG"})
    entries = await build_epub(make_work(), units, fetcher.fetch_image,
                               modified=datetime(2026, 1, 1, tzinfo=timezone.utc))
    return zipfile.ZipFile(io.BytesIO(epub_bytes(entries))), fetcher


# ------------------------------------------------------------------
# EPUB
# ------------------------------------------------------------------

class TestEpub:

    @pytest.mark.asyncio
    async def test_mimetype_is_first_and_stored(self):
        archive, _ = await build(illustrated_units())
        first = archive.infolist()[0]
        assert first.filename == "mimetype"
        assert first.compress_type == zipfile.ZIP_STORED
        assert archive.read("mimetype") == b"application/epub+zip"
        assert "META-INF/container.xml" in archive.namelist()

    @pytest.mark.asyncio
    async def test_shared_image_is_stored_once_and_referenced_twice(self):
        archive, fetcher = await build(illustrated_units())
        images = [name for name in archive.namelist() if name.startswith("OEBPS/Images/")]
        assert images == ["OEBPS/Images/image0.png"]
        assert fetcher.image_calls.count(SHARED_IMAGE) == 1
        for chapter in ("OEBPS/chapter0.xhtml", "OEBPS/chapter1.xhtml"):
            assert 'src="Images/image0.png"' in archive.read(chapter).decode("utf-8")
        assert 'href="Images/image0.png" media-type="image/png"' in archive.read("OEBPS/content.opf").decode("utf-8")

    @pytest.mark.asyncio
    async def test_failed_image_is_dropped(self):
        archive, _ = await build(illustrated_units())
        chapter = archive.read("OEBPS/chapter1.xhtml").decode("utf-8")
        assert MISSING_IMAGE not in chapter
        assert "<p>再看一次</p>" in chapter

    @pytest.mark.asyncio
    async def test_spine_and_both_tables_of_contents_agree(self):
        archive, _ = await build(illustrated_units())
        opf = archive.read("OEBPS/content.opf").decode("utf-8")
        nav = archive.read("OEBPS/toc.xhtml").decode("utf-8")
        ncx = archive.read("OEBPS/toc.ncx").decode("utf-8")
        spine = [f"{idref}.xhtml" for idref in re.findall(r'<itemref idref="([^"]+)"', opf)]
        assert spine == ["cover.xhtml", "chapter0.xhtml", "chapter1.xhtml", "chapter2.xhtml"]
        assert re.findall(r'<a href="([^"]+)"', nav) == spine
        assert re.findall(r'<content src="([^"]+)"', ncx) == spine
        assert "2026-01-01T00:00:00Z" in opf

    @pytest.mark.asyncio
    async def test_text_fallback_and_well_formed_documents(self):
        archive, _ = await build(illustrated_units())
        assert "<p>第一行</p>" in archive.read("OEBPS/chapter2.xhtml").decode("utf-8")
        for name in archive.namelist():
            if name.endswith((".xhtml", ".opf", ".ncx", ".xml")):
                ElementTree.fromstring(archive.read(name))

    @pytest.mark.asyncio
    async def test_chapter_heading_splits_sequence_number(self):
        archive, _ = await build(illustrated_units())
        chapter = archive.read("OEBPS/chapter0.xhtml").decode("utf-8")
        assert '<span class="chapter-sequence-number">第一章</span><br/>雨' in chapter

    @pytest.mark.asyncio
    async def test_empty_work_is_rejected(self):
        with pytest.raises(ValueError):
            await build_epub(make_work(), [], FakeFetcher().fetch_image)

    @pytest.mark.asyncio
    async def test_malformed_image_url_is_dropped(self):
        fetcher = RemoteFetcher(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, content=b"\x89PNG")))
        units = [make_unit(0, "第一章 雨", markup=f'<p>前</p><img src="http://[::1/a.png">'
                                                 f'<img src="{SHARED_IMAGE}"><p>後</p>')]
        entries = await build_epub(make_work(), units, fetcher.fetch_image)
        archive = zipfile.ZipFile(io.BytesIO(epub_bytes(entries)))
        chapter = archive.read("OEBPS/chapter0.xhtml").decode("utf-8")
        assert "[::1" not in chapter
        assert chapter.count("<img ") == 1
        assert "<p>後</p>" in chapter
        assert [n for n in archive.namelist() if n.startswith("OEBPS/Images/")] == ["OEBPS/Images/image0.png"]

    def test_write_epub_requires_stored_mimetype_first(self):
        with pytest.raises(ValueError):
            write_epub(io.BytesIO(), [("OEBPS/content.opf", b"", zipfile.ZIP_DEFLATED)])
        with pytest.raises(ValueError):
            write_epub(io.BytesIO(), [("mimetype", b"application/epub+zip", zipfile.ZIP_DEFLATED)])


class TestImages:

    def test_find_image_urls_is_distinct_and_ordered(self):
        markup = '<img src="b.png"><p>x</p><img src="a.gif"><img src=\'b.png\'>'
        assert find_image_urls(markup) == ["b.png", "a.gif"]

    def test_lazy_load_attribute_is_not_the_source(self):
        assert find_image_urls('<img src="a.png" data-src="b.png">') == ["a.png"]
        assert find_image_urls('<img data-src="b.png" class="x" src="a.png">') == ["a.png"]

    @pytest.mark.asyncio
    async def test_concurrent_resolution_downloads_once(self):
        fetcher = FakeFetcher(images={SHARED_IMAGE: b"img"})
        registry = ImageRegistry(fetcher.fetch_image)
        names = await asyncio.gather(*(registry.resolve(SHARED_IMAGE) for _ in range(5)))
        assert set(names) == {"image0.png"}
        assert fetcher.image_calls == [SHARED_IMAGE]
        assert registry.images == [("image0.png", b"img")]
        assert registry.name_for(SHARED_IMAGE) == "image0.png"

    @pytest.mark.asyncio
    async def test_failed_download_resolves_to_none(self):
        registry = ImageRegistry(FakeFetcher().fetch_image)
        assert await registry.resolve(MISSING_IMAGE) is None
        assert registry.images == []

    def test_markup_blocks_escape_text(self):
        blocks = markup_blocks("他說 a &lt; b<br/>下一行", {})
        assert blocks == ["<p>他說 a &lt; b</p>", "<p>下一行</p>"]

    def test_chapter_xhtml_plain_title(self):
        document = chapter_xhtml("番外", ["<p>內容</p>"])
        assert '<h2 class="chapter-title" title="番外">番外</h2>' in document


# ------------------------------------------------------------------
# TXT and HTML
# ------------------------------------------------------------------

class TestTextFormats:

    def test_render_txt(self):
        units = [make_unit(0, "雨", text="第一段"), make_unit(1, "晴", text="第二段")]
        output = render_txt(make_work(), units)
        assert output.startswith("雨夜\nAuthor: 林小雨\nTags: 現代 · 甜文\n")
        assert output.index("Chapter 1 雨") < output.index("第一段") < output.index("Chapter 2 晴")
        assert output.rstrip().endswith("第二段")

    def test_render_html_has_anchored_toc(self):
        units = [make_unit(0, "雨", markup="<p>第一段</p>"), make_unit(1, "<晴>", text="第二段")]
        output = render_html(make_work(), units)
        assert '<a href="#chapter-0">Chapter 1 雨</a>' in output
        assert 'id="chapter-1"' in output
        assert "<p>第一段</p>" in output
        assert "<p>第二段</p>" in output
        assert "Chapter 2 &lt;晴&gt;" in output

    @pytest.mark.asyncio
    async def test_package_writes_artifact(self, tmp_path):
        units = [make_unit(0, "雨", text="第一段")]
        artifact = await package(make_work(), units, OutputFormat.TXT, tmp_path,
                                 FakeFetcher().fetch_image)
        assert artifact.path.endswith("雨夜_123.txt")
        data = (tmp_path / "雨夜_123.txt").read_bytes()
        assert artifact.size_bytes == len(data)
        assert "第一段" in data.decode("utf-8")

    @pytest.mark.asyncio
    async def test_package_epub_artifact(self, tmp_path):
        artifact = await package(make_work(), illustrated_units(), OutputFormat.EPUB, tmp_path,
                                 FakeFetcher(images={SHARED_IMAGE: b"\x89PNG"}).fetch_image)
        assert artifact.path.endswith(".epub")
        with zipfile.ZipFile(artifact.path) as archive:
            assert archive.namelist()[0] == "mimetype"
