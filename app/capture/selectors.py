from __future__ import annotations

"""Selectors and attribute hints for the listing and message views."""

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class ListingSelectors:
    """Selector hints for the paginated prospect/message listing.

    The pager is not a stable component: some views render a MUI pagination
    nav, others a bare "Page N of M" label next to arrow buttons. Scoped
    probes inside known pager containers are tried before the page-wide ones.
    """

    link_selector: str = "a[href]"
    pager_containers: Tuple[str, ...] = (
        'nav[aria-label*="pagination" i]',
        '[class*="pagination" i]',
        '[data-testid*="pagination" i]',
    )
    page_label_containers: Tuple[str, ...] = (
        'nav[aria-label*="pagination" i]',
        '[class*="pagination" i]',
        '[data-testid*="pagination" i]',
        '[aria-label*="page" i]',
    )
    next_controls: Tuple[str, ...] = (
        'button[aria-label*="next" i]',
        'a[aria-label*="next" i]',
        'button[title*="next" i]',
        '[data-testid*="next" i]',
        '[class*="next" i][role="button"]',
    )
    generic_controls: str = "button, a, [role='button']"
    next_texts: Tuple[str, ...] = ("next", ">", "›", "→", "»")
    signature_link_limit: int = 20


@dataclass(frozen=True)
class MessageViewSelectors:
    """Hints for the single-message view."""

    max_frames: int = 6
    frame_label_prefix: str = "iframe"


LISTING_SELECTORS = ListingSelectors()
MESSAGE_VIEW_SELECTORS = MessageViewSelectors()

__all__ = [
    "ListingSelectors",
    "MessageViewSelectors",
    "LISTING_SELECTORS",
    "MESSAGE_VIEW_SELECTORS",
]
