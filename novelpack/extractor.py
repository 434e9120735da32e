"""HTML field extraction for the supported fiction platforms.

Every function in this module is pure: it receives the raw HTML of a
page and returns model objects, never touching the network. Parsing is
done with ``BeautifulSoup`` on top of ``lxml``.

The work detail page differs between platforms, so detail extraction
is selected through ``DETAIL_PARSERS``, a table keyed by ``Platform``.
Supporting a new platform means adding a ``DetailSelectors`` instance
and one entry in that table. The unit listing and the unit content
endpoints share their markup across platforms and have a single parser
each.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from bs4 import BeautifulSoup

from .models import Platform, Unit, UnitContent, Work, WorkStatus

LOGIN_TITLE_MARKERS = ("登入", "登录")
LOGIN_BODY_MARKER = "請先登入"
UNPURCHASED_MARKER = "訂購"

# Labels of the statistics table on the detail page, in both scripts.
STAT_FIELDS = {
    "總字數": "word_count",
    "总字数": "word_count",
    "免費章回": "free_units",
    "免费章回": "free_units",
    "付費章回": "paid_units",
    "付费章回": "paid_units",
    "收藏數": "favorites_count",
    "收藏数": "favorites_count",
    "留言數": "comments_count",
    "留言数": "comments_count",
    "本月人氣": "monthly_popularity",
    "本月人气": "monthly_popularity",
    "累积人氣": "total_popularity",
    "累积人气": "total_popularity",
    "累積人氣": "total_popularity",
}

_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2})")
_TITLE_SUFFIX_RE = re.compile(r"（|【|\(")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class DetailSelectors:
    title: str
    author: str
    cover: str
    tags: str
    status: str
    description: str
    latest_unit: str


PO18_SELECTORS = DetailSelectors(
    title="h1.book_name",
    author="a.book_author",
    cover=".book_cover img",
    tags=".book_intro_tags a",
    status="dd.statu",
    description=".B_I_content",
    latest_unit=".new_chapter",
)

POPO_SELECTORS = DetailSelectors(
    title="h3.title",
    author=".b_author a",
    cover=".BC img",
    tags=".tags a",
    status=".b_statu",
    description=".book_intro",
    latest_unit=".newe_chapter",
)


def _to_int(text: str) -> int:
    match = re.search(r"\d[\d,]*", text or "")
    if not match:
        return 0
    return int(match.group(0).replace(",", ""))


def _first_text(soup: BeautifulSoup, *selectors: str) -> str:
    for selector in selectors:
        node = soup.select_one(selector)
        if node is not None:
            text = node.get_text(strip=True)
            if text:
                return text
    return ""


def _first_attr(soup: BeautifulSoup, attr: str, *selectors: str) -> str:
    for selector in selectors:
        node = soup.select_one(selector)
        if node is not None and node.get(attr):
            return str(node[attr])
    return ""


def _parse_status(text: str) -> WorkStatus:
    # "未完結" contains "完結", so the negative form is checked first.
    if "未完結" in text or "未完结" in text:
        return WorkStatus.ONGOING
    if "完結" in text or "完结" in text:
        return WorkStatus.COMPLETED
    if "連載" in text or "连载" in text:
        return WorkStatus.ONGOING
    return WorkStatus.UNKNOWN


def is_login_wall(html_doc: str) -> bool:
    """Return True when the site answered with its login page."""
    if LOGIN_BODY_MARKER in html_doc:
        return True
    soup = BeautifulSoup(html_doc, "lxml")
    page_title = soup.title.get_text(strip=True) if soup.title else ""
    return any(marker in page_title for marker in LOGIN_TITLE_MARKERS)


def parse_detail(html_doc: str, work_id: str, platform: Platform,
                 selectors: DetailSelectors) -> Work:
    """Extract a ``Work`` from a detail page using ``selectors``.

    Missing fields are left at their defaults; callers decide whether
    the result is usable (see ``Work.title`` and ``Work.author``).
    """
    soup = BeautifulSoup(html_doc, "lxml")

    full_title = _first_text(soup, selectors.title, "h1")
    title = _TITLE_SUFFIX_RE.split(full_title)[0].strip() if full_title else ""

    tags = [node.get_text(strip=True) for node in soup.select(selectors.tags)]
    status_text = _first_text(soup, selectors.status, ".statu")

    stats: Dict[str, int] = {}
    for row in soup.select("table.book_data tr"):
        header = row.find("th")
        cell = row.find("td")
        if header is None or cell is None:
            continue
        name = STAT_FIELDS.get(header.get_text(strip=True))
        if name:
            stats[name] = _to_int(cell.get_text(strip=True))

    latest_name = ""
    latest_date = ""
    latest = soup.select_one(selectors.latest_unit)
    if latest is not None:
        heading = latest.find("h4")
        if heading is not None:
            latest_name = heading.get_text(strip=True)
        date_node = latest.select_one(".date")
        if date_node is not None:
            match = _DATE_RE.search(date_node.get_text(" ", strip=True))
            if match:
                latest_date = match.group(1)

    return Work(
        platform=platform,
        work_id=work_id,
        title=title,
        full_title=full_title or title,
        author=_first_text(soup, selectors.author, ".book_author"),
        cover=_first_attr(soup, "src", selectors.cover, "img.book_cover"),
        description=_first_text(soup, selectors.description, ".book_intro_content"),
        tags=[tag for tag in tags if tag],
        unit_count=_to_int(status_text),
        status=_parse_status(status_text),
        latest_unit_name=latest_name,
        latest_unit_date=latest_date,
        **stats,
    )


def parse_po18_detail(html_doc: str, work_id: str) -> Work:
    return parse_detail(html_doc, work_id, Platform.PO18, PO18_SELECTORS)


def parse_popo_detail(html_doc: str, work_id: str) -> Work:
    return parse_detail(html_doc, work_id, Platform.POPO, POPO_SELECTORS)


DETAIL_PARSERS: Dict[Platform, Callable[[str, str], Work]] = {
    Platform.PO18: parse_po18_detail,
    Platform.POPO: parse_popo_detail,
}


def _unit_id_from_href(href: Optional[str]) -> str:
    # /books/<work>/articles/<unit>
    if not href:
        return ""
    parts = href.split("/")
    return parts[4] if len(parts) >= 5 else ""


def parse_unit_listing(html_doc: str, work_id: str, page: int) -> List[Unit]:
    """Return every unit listed on one page of a work's unit index.

    Unpurchased units are included and flagged. A row whose read link
    is missing cannot be fetched at all; it receives a placeholder id
    and is marked locked. The ``index`` of the returned units is the
    position on this page only.
    """
    soup = BeautifulSoup(html_doc, "lxml")
    units: List[Unit] = []
    for position, row in enumerate(soup.select("#w0 > div")):
        name = row.select_one(".l_chaptname")
        if name is None:
            continue
        purchased = UNPURCHASED_MARKER not in row.get_text()
        link = row.select_one(".l_btn a")
        unit_id = _unit_id_from_href(link.get("href") if link is not None else None)
        units.append(
            Unit(
                work_id=work_id,
                unit_id=unit_id or f"unknown_{page}_{position}",
                title=name.get_text(strip=True),
                index=len(units),
                is_paid=not purchased,
                is_purchased=purchased,
                is_locked=not unit_id,
            )
        )
    return units


def parse_unit_content(html_doc: str) -> UnitContent:
    """Extract the title, markup and plain text of one unit.

    The heading and any quoted author notes are removed from the body
    before the markup and text representations are taken.
    """
    soup = BeautifulSoup(html_doc, "lxml")
    heading = soup.find("h1")
    title = heading.get_text(strip=True) if heading is not None else ""
    for node in soup.find_all(["blockquote", "h1"]):
        node.decompose()
    body = soup.body
    if body is None:
        return UnitContent(title=title, markup="", text="")
    markup = body.decode_contents().replace("\xa0", "").replace("&nbsp;", "")
    text = _WHITESPACE_RE.sub("\n", body.get_text("\n").replace("\xa0", " ")).strip()
    return UnitContent(title=title, markup=markup.strip(), text=text)
