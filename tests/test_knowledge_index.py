"""Tests for gurulo.knowledge_index."""

import json

from gurulo.knowledge_index import JsonKnowledgeIndex, KnowledgeChunk, NullKnowledgeIndex


def _write(path, data):
    path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
    return path


class TestJsonKnowledgeIndex:
    def test_list_format(self, tmp_path):
        path = _write(tmp_path / "kb.json", [
            {"text": "Deploys run every Friday afternoon", "source": "runbook"},
            {"text": "The router picks a model tier", "title": "routing"},
        ])
        index = JsonKnowledgeIndex(path)
        assert len(index) == 2
        results = index.similar_chunks("when do deploys run")
        assert results[0] == KnowledgeChunk(
            text="Deploys run every Friday afternoon", score=round(2 / 3, 4), source="runbook"
        )

    def test_entries_format_and_content_key(self, tmp_path):
        path = _write(tmp_path / "kb.json", {"entries": [{"content": "გურულო პასუხობს ქართულად"}]})
        results = JsonKnowledgeIndex(path).similar_chunks("ქართულად")
        assert results[0].score == 1.0
        assert results[0].source == ""

    def test_skips_invalid_entries(self, tmp_path):
        path = _write(tmp_path / "kb.json", [{"text": ""}, "loose string", {"title": "no text"}])
        assert len(JsonKnowledgeIndex(path)) == 0

    def test_top_k_and_ordering(self, tmp_path):
        path = _write(tmp_path / "kb.json", [
            {"text": "alpha"},
            {"text": "alpha beta"},
            {"text": "alpha beta gamma"},
        ])
        results = JsonKnowledgeIndex(path).similar_chunks("alpha beta gamma", k=2)
        assert [r.text for r in results] == ["alpha beta gamma", "alpha beta"]

    def test_no_overlap(self, tmp_path):
        path = _write(tmp_path / "kb.json", [{"text": "alpha"}])
        assert JsonKnowledgeIndex(path).similar_chunks("zeta") == []


class TestNullKnowledgeIndex:
    def test_always_empty(self):
        index = NullKnowledgeIndex()
        assert index.similar_chunks("anything") == []
        assert len(index) == 0
