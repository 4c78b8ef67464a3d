"""Throwaway full-text search over parsed documents.

Builds a Whoosh index in RAM, ranks with BM25F and discards the index when
the call returns. Used by ``localfs/search_files`` and ``web/search_site``.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Tuple

from whoosh import scoring
from whoosh.analysis import StemmingAnalyzer
from whoosh.fields import ID, NUMERIC, TEXT, Schema
from whoosh.filedb.filestore import RamStorage
from whoosh.qparser import MultifieldParser, OrGroup

from datasourcer.parsers.base_parser import ParsedDocument

SNIPPET_CHARS = 300


def _make_schema() -> Schema:
    analyzer = StemmingAnalyzer()
    return Schema(
        docnum=NUMERIC(stored=True, unique=True),
        title=TEXT(stored=True, analyzer=analyzer, field_boost=1.8),
        content=TEXT(stored=True, analyzer=analyzer),
        location=ID(stored=True),
    )


def _rows(docs: List[ParsedDocument]) -> Iterable[Tuple[int, str, str, str]]:
    for i, d in enumerate(docs):
        meta = d.metadata or {}
        title = d.title or (d.text or "").strip()[:120]
        location = str(meta.get("url") or meta.get("path") or meta.get("source_path") or "")
        yield i, title, d.text or "", location


def search_documents(docs: List[ParsedDocument], query: str, *, k: int = 5) -> List[Dict[str, Any]]:
    """Rank ``docs`` against ``query``.

    Returns up to ``k`` dicts ``{score, title, location, snippet}`` in
    descending score order. Blank queries and empty corpora return ``[]``.
    """
    if not docs or not query or not query.strip():
        return []

    idx = RamStorage().create_index(_make_schema())
    writer = idx.writer(limitmb=32)
    for docnum, title, content, location in _rows(docs):
        writer.add_document(docnum=docnum, title=title, content=content, location=location)
    writer.commit()

    out: List[Dict[str, Any]] = []
    with idx.searcher(weighting=scoring.BM25F()) as searcher:
        parser = MultifieldParser(["title", "content"], schema=idx.schema, group=OrGroup)
        try:
            q = parser.parse(query)
        except Exception:
            # Fall back to a phrase query when the syntax is unparseable
            q = parser.parse('"' + query.replace('"', " ") + '"')
        results = searcher.search(q, limit=max(1, int(k)))
        results.fragmenter.charlimit = SNIPPET_CHARS
        for hit in results:
            snippet = hit.highlights("content", top=2) or hit.get("content", "")[:SNIPPET_CHARS]
            out.append(
                {
                    "score": round(float(hit.score or 0.0), 4),
                    "title": hit.get("title", ""),
                    "location": hit.get("location", ""),
                    "snippet": snippet,
                }
            )
    return out
