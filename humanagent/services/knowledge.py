"""Knowledge-graph slice for prompt context.

Loading is three phases, all read-only:

1. relevance search over the owner's nodes (pluggable :class:`KnowledgeRanker`)
2. one-hop expansion along ``linked_node_ids`` of the matches
3. maps-of-content (``moc`` nodes) linking into the result set

The slice is capped so prompt size stays bounded.  Only the top three matches
carry full content; everything else contributes its description.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List
from typing import Optional
from typing import Protocol
from typing import Sequence

from sqlalchemy.orm import Session

from humanagent.crud import crud
from humanagent.models.enums import NodeType
from humanagent.models.models import KnowledgeNode

logger = logging.getLogger(__name__)

MAX_NODES_LOADED = 10
FULL_CONTENT_MATCHES = 3
_CANDIDATE_POOL = 500

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9_-]{2,}")
_STOPWORDS = frozenset(
    "the and for with that this from into your you are was were have has had not but all any can will "
    "what when where which who how about please task tasks agent".split()
)


def tokenize(text: Optional[str]) -> set[str]:
    return {t for t in _TOKEN_RE.findall((text or "").lower()) if t not in _STOPWORDS}


@dataclass(frozen=True)
class KnowledgeItem:
    node_id: int
    title: str
    description: str
    node_type: str
    tags: tuple
    content: Optional[str]
    relevance: str  # text_match | graph_traversal | moc


class KnowledgeRanker(Protocol):
    def rank(self, query: str, nodes: Sequence[KnowledgeNode]) -> List[KnowledgeNode]:
        """Return matching nodes, best first.  Non-matches are omitted."""


class TermOverlapRanker:
    """Weighted term overlap: title > tags > description > content."""

    weights = {"title": 3.0, "tags": 2.5, "description": 1.5, "content": 1.0}

    def rank(self, query: str, nodes: Sequence[KnowledgeNode]) -> List[KnowledgeNode]:
        terms = tokenize(query)
        if not terms:
            return []
        scored = []
        for node in nodes:
            score = (
                self.weights["title"] * len(terms & tokenize(node.title))
                + self.weights["tags"] * len(terms & {t.lower() for t in (node.tags or [])})
                + self.weights["description"] * len(terms & tokenize(node.description))
                + self.weights["content"] * len(terms & tokenize(node.content))
            )
            if score > 0:
                scored.append((score, node.id, node))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [node for _score, _id, node in scored]


def _item(node: KnowledgeNode, relevance: str, *, with_content: bool) -> KnowledgeItem:
    return KnowledgeItem(
        node_id=node.id,
        title=node.title,
        description=node.description or "",
        node_type=NodeType(node.node_type).value,
        tags=tuple(node.tags or ()),
        content=node.content if with_content else None,
        relevance=relevance,
    )


def load_relevant_knowledge(
    db: Session,
    *,
    owner_id: int,
    query: str,
    max_nodes: int = 5,
    ranker: Optional[KnowledgeRanker] = None,
    agent_id: Optional[int] = None,
) -> List[KnowledgeItem]:
    """Return at most ``min(max_nodes * 2, MAX_NODES_LOADED)`` knowledge items for *query*."""

    ranker = ranker or TermOverlapRanker()
    cap = min(max(max_nodes, 1) * 2, MAX_NODES_LOADED)

    pool = crud.list_knowledge_nodes(db, owner_id=owner_id, limit=_CANDIDATE_POOL)
    if agent_id is not None:
        # Nodes private to another agent of the same owner stay hidden.
        pool = [n for n in pool if n.agent_id is None or n.agent_id == agent_id]
    by_id = {n.id: n for n in pool}

    results: dict[int, KnowledgeItem] = {}
    for idx, node in enumerate(ranker.rank(query, pool)[: min(max_nodes, cap)]):
        results[node.id] = _item(node, "text_match", with_content=idx < FULL_CONTENT_MATCHES)

    # One hop, no further.
    for node_id in list(results):
        for linked_id in by_id[node_id].linked_node_ids or []:
            if len(results) >= cap:
                break
            neighbour = by_id.get(linked_id)
            if neighbour is not None and linked_id not in results:
                results[linked_id] = _item(neighbour, "graph_traversal", with_content=False)

    if len(results) < cap:
        matched = set(results)
        for node in pool:
            if len(results) >= cap:
                break
            if NodeType(node.node_type) != NodeType.MOC or node.id in results:
                continue
            if matched & set(node.linked_node_ids or []):
                results[node.id] = _item(node, "moc", with_content=False)

    return list(results.values())


def render_knowledge(items: Sequence[KnowledgeItem]) -> str:
    if not items:
        return ""
    lines = ["## Relevant Knowledge"]
    for item in items:
        tags = f" [{', '.join(item.tags)}]" if item.tags else ""
        lines.append(f"### {item.title} ({item.node_type}){tags}")
        if item.description:
            lines.append(item.description)
        if item.content:
            lines.append(item.content)
    return "\n".join(lines)


__all__ = [
    "KnowledgeItem",
    "KnowledgeRanker",
    "TermOverlapRanker",
    "MAX_NODES_LOADED",
    "load_relevant_knowledge",
    "render_knowledge",
    "tokenize",
]
