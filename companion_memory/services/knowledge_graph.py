"""
Knowledge Graph Builder - per-user entity/relationship graph

Extracts entities and relationships from free text and writes them as graph
nodes and edges. Every write is an atomic upsert keyed on the natural key,
so re-extracting the same entity bumps last_updated instead of inserting a
duplicate, and re-observing a relationship overwrites its strength.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from companion_memory.clock import Clock, get_clock
from companion_memory.db.repository import Repository
from companion_memory.errors import InferenceError, StorageConflictError, ValidationError
from companion_memory.schemas import GraphEdge, GraphNode, Memory
from companion_memory.services.extraction_schemas import EntityCandidate, GraphExtraction, RelationshipCandidate
from companion_memory.services.reasoning_service import ReasoningService

logger = logging.getLogger("companion.knowledge_graph")

T = TypeVar("T")
C = TypeVar("C", bound=BaseModel)

GRAPH_SYSTEM_PROMPT = (
    "You build a personal knowledge graph for an AI companion. You output only valid JSON."
)

GRAPH_PROMPT = """Extract the entities and relationships mentioned in the user's message.

Entity types: person, place, organization, event, object, concept, emotion.
Use the user's own wording for names. Only include relationships where both
ends appear in "entities".

Return JSON:
{
  "entities": [{"name": "Priya", "type": "person"}],
  "relationships": [{"source": "Priya", "target": "Google", "relation": "works_at", "strength": 7}]
}

"strength" is 1-10: how central the relationship is to the user.
If nothing is worth storing return {"entities": [], "relationships": []}.

User message:
"""

_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    """Collapse whitespace; case is preserved."""
    return _WHITESPACE.sub(" ", name).strip()


def normalize_type(node_type: Optional[str]) -> str:
    cleaned = (node_type or "").strip().lower().replace(" ", "_")
    return cleaned or "concept"


def normalize_strength(strength: Optional[float]) -> int:
    if strength is None:
        return 1
    return max(1, min(10, int(round(strength))))


def parse_candidate(raw: Any, model: Type[C]) -> C:
    """Validate one raw graph item. Raises ValidationError when it is malformed."""
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e.error_count()} error(s)") from e


@dataclass
class GraphUpdate:
    """Result of one extraction pass."""
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    dropped_entities: int = 0
    dropped_relationships: int = 0


class KnowledgeGraphBuilder:

    def __init__(self, repository: Repository, reasoning: ReasoningService, clock: Optional[Clock] = None):
        self.repository = repository
        self.reasoning = reasoning
        self.clock = clock or get_clock()

    async def _with_conflict_retry(self, description: str, operation: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Run a write; retry once on a storage conflict, then log and give up."""
        for attempt in range(2):
            try:
                return await operation()
            except StorageConflictError as e:
                if attempt == 0:
                    logger.warning(f"Storage conflict on {description}, retrying: {e}")
                    continue
                logger.error(f"Storage conflict on {description} persisted after retry: {e}")
        return None

    async def upsert_node(self, user_id: str, name: str, node_type: str) -> Optional[GraphNode]:
        name = normalize_name(name)
        node_type = normalize_type(node_type)
        if not name:
            return None
        return await self._with_conflict_retry(
            f"node {user_id}/{name}/{node_type}",
            lambda: self.repository.upsert_node(user_id, name, node_type, self.clock.now()),
        )

    async def update_from_text(self, user_id: str, text: str) -> GraphUpdate:
        """
        Extract entities/relationships from `text` and upsert them.

        Relationship endpoints resolve only against entities from this same
        extraction; anything else is dropped rather than guessed.
        """
        update = GraphUpdate()
        if not text or not text.strip():
            return update

        try:
            extraction = await self.reasoning.infer(GRAPH_SYSTEM_PROMPT, GRAPH_PROMPT + text, GraphExtraction)
        except InferenceError as e:
            logger.warning(f"Graph extraction skipped for user {user_id} ({len(text)} chars): {e}")
            return update

        batch: Dict[str, GraphNode] = {}
        for raw in extraction.entities:
            try:
                entity = parse_candidate(raw, EntityCandidate)
            except ValidationError as e:
                logger.warning(f"Dropping entity for user {user_id}: {e}")
                update.dropped_entities += 1
                continue
            node = await self.upsert_node(user_id, entity.name, entity.type)
            if node is None:
                continue
            batch[node.name.lower()] = node
            update.nodes.append(node)

        for raw in extraction.relationships:
            try:
                rel = parse_candidate(raw, RelationshipCandidate)
            except ValidationError as e:
                logger.warning(f"Dropping relationship for user {user_id}: {e}")
                update.dropped_relationships += 1
                continue
            source = batch.get(normalize_name(rel.source).lower())
            target = batch.get(normalize_name(rel.target).lower())
            if source is None or target is None:
                logger.debug(f"Dropping relationship {rel.source} -[{rel.relation}]-> {rel.target}: endpoint not in batch")
                update.dropped_relationships += 1
                continue

            relation = normalize_type(rel.relation)
            strength = normalize_strength(rel.strength)
            try:
                edge = await self._with_conflict_retry(
                    f"edge {source.name}-[{relation}]->{target.name}",
                    lambda: self.repository.upsert_edge(
                        user_id, source.id, target.id, relation, strength, self.clock.now()
                    ),
                )
            except ValidationError as e:
                logger.warning(f"Dropping relationship for user {user_id}: {e}")
                update.dropped_relationships += 1
                continue
            if edge is not None:
                update.edges.append(edge)

        logger.info(
            f"Graph updated for user {user_id}: {len(update.nodes)} nodes, "
            f"{len(update.edges)} edges, {update.dropped_entities + update.dropped_relationships} dropped"
        )
        return update

    async def link_memory_mentions(self, memory: Memory) -> List[GraphNode]:
        """Upsert people and location from a memory's surface layer and link them to it."""
        mentions: List[Tuple[str, str]] = [(p, "person") for p in memory.surface.people_involved]
        if memory.surface.location:
            mentions.append((memory.surface.location, "place"))

        linked = []
        for name, node_type in mentions:
            node = await self.upsert_node(memory.user_id, name, node_type)
            if node is None:
                continue
            await self.repository.link_mention(node.id, memory.id, self.clock.now())
            linked.append(node)
        return linked

    async def get_graph(self, user_id: str) -> Tuple[List[GraphNode], List[GraphEdge]]:
        nodes = await self.repository.list_nodes(user_id)
        edges = await self.repository.list_edges(user_id)
        return nodes, edges
