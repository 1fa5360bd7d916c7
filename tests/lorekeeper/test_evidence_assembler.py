# tests/lorekeeper/test_evidence_assembler.py

import sys
import pytest
from pathlib import Path

# Add src directory to Python path
sys.path.append(str(Path(__file__).parent.parent.parent))

from src.lorekeeper.chunk_store import InMemoryChunkStore
from src.lorekeeper.evidence_assembler import EvidenceAssembler
from src.lorekeeper.models import KnowledgeChunk, RankedCandidate


class TestEvidenceAssembler:
    """Test cases for the EvidenceAssembler class."""

    @pytest.fixture
    def chunk_store(self):
        """Create a chunk store with a short and a long chunk."""
        store = InMemoryChunkStore()
        store.set_many(
            [
                KnowledgeChunk(
                    id="chunk:npc:n1:public",
                    type="npc",
                    node_id="npc:n1",
                    visibility="player",
                    title="Henry Armitage",
                    text="Henry Armitage | librarian",
                    anchors={"npc_id": "n1"},
                ),
                KnowledgeChunk(
                    id="chunk:scenario:s1:overview",
                    type="scenario",
                    node_id="scenario:s1",
                    visibility="player",
                    title="Old Library",
                    text="x" * 400,
                ),
            ]
        )
        return store

    @pytest.fixture
    def assembler(self, chunk_store):
        return EvidenceAssembler(chunk_store)

    def test_confidence_relative_to_best(self, assembler):
        """Test that confidence is the score relative to the best result."""
        ranked = [
            RankedCandidate(
                chunk_id="chunk:npc:n1:public",
                final_score=0.8,
                why_this=["keyword match", "graph neighborhood"],
            ),
            RankedCandidate(chunk_id="chunk:scenario:s1:overview", final_score=0.4),
        ]

        evidence = assembler.assemble(ranked)

        assert [e.chunk_id for e in evidence] == [
            "chunk:npc:n1:public",
            "chunk:scenario:s1:overview",
        ]
        assert evidence[0].confidence == pytest.approx(1.0)
        assert evidence[1].confidence == pytest.approx(0.5)
        assert evidence[0].why_this == "keyword match; graph neighborhood"
        assert evidence[0].node_id == "npc:n1"
        assert evidence[0].anchors == {"npc_id": "n1"}
        assert evidence[0].visibility == "player"

    def test_zero_scores(self, assembler):
        ranked = [RankedCandidate(chunk_id="chunk:npc:n1:public", final_score=0.0)]

        assert assembler.assemble(ranked)[0].confidence == 0.0

    def test_snippet_truncated(self, assembler):
        ranked = [
            RankedCandidate(chunk_id="chunk:scenario:s1:overview", final_score=1.0)
        ]

        snippet = assembler.assemble(ranked)[0].snippet

        assert len(snippet) == 363
        assert snippet.endswith("...")

    def test_missing_chunk_skipped(self, assembler):
        ranked = [
            RankedCandidate(chunk_id="chunk:gone", final_score=2.0),
            RankedCandidate(chunk_id="chunk:npc:n1:public", final_score=1.0),
        ]

        evidence = assembler.assemble(ranked)

        assert [e.chunk_id for e in evidence] == ["chunk:npc:n1:public"]
        assert evidence[0].confidence == pytest.approx(0.5)

    def test_format_context(self, assembler):
        """Test the numbered text rendering of evidence."""
        evidence = assembler.assemble(
            [
                RankedCandidate(
                    chunk_id="chunk:npc:n1:public",
                    final_score=1.0,
                    why_this=["keyword match"],
                )
            ]
        )

        context = assembler.format_context(evidence)

        assert context == (
            "[1] Henry Armitage (npc) confidence=1.00\n"
            "Henry Armitage | librarian\n"
            "Why: keyword match"
        )
        assert assembler.format_context([]) == ""
