"""
Retrieval depth modes and focus modes.

A depth mode scales how many candidates are fetched from the vector index
(top_k) and how many documents reach the answer prompt (max_docs). A focus
mode restricts retrieval to one article category.
"""

from dataclasses import dataclass
from typing import Dict, Optional

FAST = 'fast'
BALANCED = 'balanced'
QUALITY = 'quality'


@dataclass(frozen=True)
class SearchParams:
    top_k: int
    max_docs: int
    rerank: bool
    multi_query: bool


SEARCH_MODES: Dict[str, SearchParams] = {
    FAST: SearchParams(top_k=5, max_docs=5, rerank=False, multi_query=False),
    BALANCED: SearchParams(top_k=10, max_docs=10, rerank=True, multi_query=False),
    QUALITY: SearchParams(top_k=15, max_docs=15, rerank=True, multi_query=True),
}

# 'speed' is accepted as an alias of 'fast'
MODE_ALIASES = {'speed': FAST}


def normalize_mode(mode: Optional[str]) -> str:
    """Resolve aliases; unknown or empty modes fall back to balanced."""
    if not mode:
        return BALANCED
    mode = MODE_ALIASES.get(mode.lower(), mode.lower())
    return mode if mode in SEARCH_MODES else BALANCED


def get_search_params(mode: Optional[str]) -> SearchParams:
    return SEARCH_MODES[normalize_mode(mode)]


@dataclass(frozen=True)
class FocusMode:
    key: str
    title: str
    description: str
    category: Optional[str]


FOCUS_MODES: Dict[str, FocusMode] = {
    'all': FocusMode('all', 'All News', 'Search across every category', None),
    'finance': FocusMode('finance', 'Finance & Investment', 'Banking, funds and investment news', 'finance'),
    'market': FocusMode('market', 'Markets & Earnings', 'Market trends and earnings releases', 'market'),
    'capital': FocusMode('capital', 'Capital Transactions', 'M&A, IPOs and financing rounds', 'capital'),
    'real_estate': FocusMode('real_estate', 'Real Estate', 'Property and REIT news', 'real_estate'),
    'special': FocusMode('special', 'Special Sectors', 'Crypto, ESG and other specialist topics', 'special'),
    'prnewswire': FocusMode('prnewswire', 'PR Newswire', 'General PR Newswire releases', 'prnewswire'),
}


def category_for_focus(focus: Optional[str]) -> Optional[str]:
    """
    Map a focus key to a category filter.

    'all', empty and unknown keys mean no filter.
    """
    if not focus:
        return None
    mode = FOCUS_MODES.get(focus)
    return mode.category if mode else None
