"""
Text Preprocessing for Vector Ingestion

Turns stored article records into vector documents:
- HTML stripping (script/style removal, tag removal, entity decoding)
- Embedding text construction (title first, hard character cut)
- Lightweight filterable metadata that never carries full content

The stream ingestor and the backfill reconciler share prepare_vector_document
and build_vector_item so both paths produce identical vectors for a record.
"""

import re
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from bs4 import BeautifulSoup

from ..errors import EmbeddingValidationError

logger = logging.getLogger(__name__)

EMBEDDING_TEXT_MAX_CHARS = 8000
METADATA_MAX_BYTES = 512

_WHITESPACE_RE = re.compile(r'\s+')


@dataclass
class VectorDocument:
    """A record prepared for embedding, before the embedding call."""
    vector_key: str
    embedding_text: str
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.embedding_text or not self.embedding_text.strip()


@dataclass
class VectorItem:
    """An embedded document ready to upsert into the vector index."""
    key: str
    embedding: List[float]
    metadata: Dict[str, str]


def strip_html(html: Optional[str]) -> str:
    """
    Strip HTML to plain text.

    Removes <script> and <style> blocks entirely, drops every tag,
    decodes entities and collapses whitespace.

    Args:
        html: HTML fragment (plain text passes through)

    Returns:
        Clean single-line text
    """
    if not html:
        return ''

    soup = BeautifulSoup(html, 'html.parser')

    # Remove script and style elements
    for element in soup(['script', 'style']):
        element.decompose()

    text = soup.get_text(separator=' ')
    return _WHITESPACE_RE.sub(' ', text).strip()


def build_embedding_text(
    title: str,
    content: str,
    max_chars: int = EMBEDDING_TEXT_MAX_CHARS
) -> str:
    """
    Build the text that gets embedded for an article.

    The title is placed first; the result is cut at max_chars without
    snapping to word or sentence boundaries.
    """
    clean_title = strip_html(title)
    clean_content = strip_html(content)
    return f"{clean_title}\n\n{clean_content}"[:max_chars]


def _pub_date(value: Optional[str]) -> str:
    if value:
        return value.split('T')[0]
    return datetime.now(timezone.utc).strftime('%Y-%m-%d')


def _fit_metadata(metadata: Dict[str, str], max_bytes: int) -> Dict[str, str]:
    """Shorten the title until the serialized metadata fits in max_bytes."""
    def size(md: Dict[str, str]) -> int:
        return len(json.dumps(md, ensure_ascii=False).encode('utf-8'))

    overflow = size(metadata) - max_bytes
    if overflow <= 0:
        return metadata

    title = metadata.get('title', '')
    encoded = title.encode('utf-8')
    keep = max(len(encoded) - overflow, 0)
    trimmed = dict(metadata)
    trimmed['title'] = encoded[:keep].decode('utf-8', errors='ignore')

    # JSON escapes can still push it over
    while size(trimmed) > max_bytes and trimmed['title']:
        trimmed['title'] = trimmed['title'][:-1]
    return trimmed


def prepare_vector_document(
    record: Dict[str, Any],
    max_chars: int = EMBEDDING_TEXT_MAX_CHARS
) -> VectorDocument:
    """
    Transform a stored article record into a vector document.

    The vector key is the record's url_hash, which doubles as article_id in
    the metadata so search hits can be hydrated from the article store.

    Args:
        record: Article record as stored by the dedup writer
        max_chars: Embedding text character limit

    Returns:
        VectorDocument (check is_empty before embedding)
    """
    url_hash = record.get('url_hash', '')
    title = record.get('title') or ''
    content = record.get('content') or ''

    metadata = {
        'category': record.get('category') or 'unknown',
        'pub_date': _pub_date(record.get('pub_date')),
        'article_id': url_hash,
        'title': strip_html(title),
        'url': record.get('url') or '',
    }

    return VectorDocument(
        vector_key=url_hash,
        embedding_text=build_embedding_text(title, content, max_chars),
        metadata=_fit_metadata(metadata, METADATA_MAX_BYTES),
    )


def build_vector_item(document: VectorDocument, embedder) -> VectorItem:
    """
    Embed a prepared document.

    Args:
        document: Output of prepare_vector_document
        embedder: Any EmbeddingProvider

    Returns:
        VectorItem ready for VectorStore.put / put_batch

    Raises:
        EmbeddingValidationError: If the document has no text
    """
    if document.is_empty:
        raise EmbeddingValidationError(f"Empty embedding text for {document.vector_key}")

    embedding = embedder.embed(document.embedding_text)
    return VectorItem(
        key=document.vector_key,
        embedding=list(embedding),
        metadata=document.metadata,
    )
