"""
page_range.py

Turns an operator's page selection into the list of pages to scan.

Accepted inputs (1-based, inclusive):
    start_page / end_page   explicit bounds; a missing start means 1,
                            a missing end means the last page.
    page_range              free text, comma separated: "1", "1-5", "1,2-6,20-22".
                            Empty or "all" means every page.

Explicit bounds win when they are valid. Invalid bounds fall through to the
range string; with no range string to fall back on they are rejected.

Return value:
    list[int]  sorted, deduplicated pages
    None       "all pages", no selection was given
"""

from typing import Optional

from errors import InvalidRangeError


def _parse_int(token: str, part: str) -> int:
    token = token.strip()
    # isdigit() alone also accepts superscripts and other non-ASCII digits.
    if not (token.isascii() and token.isdigit()):
        raise InvalidRangeError(f'Invalid page number: "{part}"')
    return int(token)


def parse_page_range(page_range: str, total_pages: int) -> Optional[list[int]]:
    """
    Parse a range string such as "1,3,5-8" against a document of total_pages.

    Raises InvalidRangeError for a non-numeric token, a page < 1, a page
    beyond total_pages, or a "lo-hi" token with lo > hi.
    """
    text = (page_range or "").strip()
    if not text or text.lower() == "all":
        return None

    pages: set[int] = set()
    parts = [p.strip() for p in text.split(",") if p.strip()]

    for part in parts:
        if "-" in part:
            lo_text, _, hi_text = part.partition("-")
            lo = _parse_int(lo_text, part)
            hi = _parse_int(hi_text, part)
            if lo < 1 or hi < lo:
                raise InvalidRangeError(f'Invalid page range: "{part}"')
            if hi > total_pages:
                raise InvalidRangeError(
                    f"Page {hi} exceeds total pages ({total_pages})"
                )
            pages.update(range(lo, hi + 1))
        else:
            page = _parse_int(part, part)
            if page < 1:
                raise InvalidRangeError(f'Invalid page number: "{part}"')
            if page > total_pages:
                raise InvalidRangeError(
                    f"Page {page} exceeds total pages ({total_pages})"
                )
            pages.add(page)

    return sorted(pages) if pages else None


def resolve_pages(
    total_pages: int,
    start_page: Optional[int] = None,
    end_page: Optional[int] = None,
    page_range: Optional[str] = None,
) -> Optional[list[int]]:
    """Resolve a selection to an ordered page list, or None for all pages."""
    if total_pages < 1:
        raise InvalidRangeError(f"Document has no pages (total_pages={total_pages})")

    if start_page is not None or end_page is not None:
        start = start_page if start_page is not None else 1
        end = end_page if end_page is not None else total_pages
        if 1 <= start <= end <= total_pages:
            return list(range(start, end + 1))
        if not (page_range and page_range.strip()):
            raise InvalidRangeError(
                f"Invalid page bounds {start}-{end} for a {total_pages}-page document"
            )

    if page_range and page_range.strip():
        return parse_page_range(page_range, total_pages)

    return None


def expand_pages(pages_to_scan: Optional[list[int]], total_pages: int) -> list[int]:
    """Concrete page list: None expands to 1..total_pages."""
    if pages_to_scan is None:
        return list(range(1, total_pages + 1))
    return list(pages_to_scan)
