# src/lorekeeper/evidence_assembler.py
import logging
from typing import List

from .chunk_store import ChunkStore
from .models import Evidence, RankedCandidate
from .text_utils import truncate

logger = logging.getLogger(__name__)

SNIPPET_MAX_CHARS = 360


class EvidenceAssembler:
    """Turns ranked candidates into explainable evidence records."""

    def __init__(
        self, chunk_store: ChunkStore, snippet_max_chars: int = SNIPPET_MAX_CHARS
    ):
        self.chunk_store = chunk_store
        self.snippet_max_chars = snippet_max_chars

    def assemble(self, ranked: List[RankedCandidate]) -> List[Evidence]:
        """
        Build evidence for ranked candidates, keeping their order.

        Confidence is the final score relative to the best score of the list,
        clamped to [0, 1]; it is 0 when no score is positive.

        Args:
            ranked: Ranked candidates

        Returns:
            Evidence records; candidates whose chunk is gone are skipped
        """
        max_score = max((c.final_score for c in ranked), default=0.0)

        evidence = []
        for candidate in ranked:
            chunk = self.chunk_store.get(candidate.chunk_id)
            if chunk is None:
                continue
            if max_score > 0:
                confidence = min(1.0, max(0.0, candidate.final_score / max_score))
            else:
                confidence = 0.0
            evidence.append(
                Evidence(
                    chunk_id=chunk.id,
                    node_id=chunk.node_id,
                    type=chunk.type,
                    title=chunk.title,
                    snippet=truncate(chunk.text, self.snippet_max_chars),
                    anchors=dict(chunk.anchors),
                    confidence=confidence,
                    why_this="; ".join(candidate.why_this),
                    visibility=chunk.visibility,
                )
            )
        return evidence

    def format_context(self, evidence: List[Evidence]) -> str:
        """
        Render evidence as a numbered text block for a prompt.

        Args:
            evidence: Evidence records

        Returns:
            Formatted context, empty if there is no evidence
        """
        blocks = []
        for i, item in enumerate(evidence, 1):
            header = f"[{i}] {item.title} ({item.type})"
            blocks.append(
                f"{header} confidence={item.confidence:.2f}\n"
                f"{item.snippet}\nWhy: {item.why_this}"
            )
        return "\n\n".join(blocks)
