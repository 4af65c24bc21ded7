"""Tests for gurulo.file_search: project file search and reads."""

import pytest

from gurulo.file_search import LocalFileSearch, SearchHit


@pytest.fixture
def search(project_path):
    return LocalFileSearch(project_path)


class TestSearch:
    def test_finds_matching_line(self, search):
        hits = search.search("helper")
        assert hits[0] == SearchHit(path="src/utils.py", line=1, content="def helper():", relevance=4)

    def test_case_insensitive(self, search):
        assert [h.path for h in search.search("TYPEERROR")] == ["src/App.tsx"]

    def test_exact_case_ranks_higher(self, search):
        hit = search.search("TypeError")[0]
        assert hit.relevance == 1 + 2 + 1

    def test_filename_match_boosts(self, search):
        hits = search.search("app")
        assert all(h.path == "src/App.tsx" for h in hits)
        assert hits[0].relevance >= 1 + 3

    def test_skips_dependency_dirs_and_dotfiles(self, search):
        assert search.search("SECRET_TOKEN") == []
        assert all(not h.path.startswith("node_modules") for h in search.search("function"))

    def test_extension_filter(self, search):
        assert search.search("helper", extensions=(".md",)) == []

    def test_empty_term(self, search):
        assert search.search("  ") == []

    def test_results_are_cached(self, search, project_path):
        search.search("helper")
        (project_path / "src" / "more.py").write_text("helper = 1\n")
        assert len(search.search("helper")) == 1
        assert search.get_stats()["cache_hits"] == 1

    def test_clear_cache(self, search, project_path):
        search.search("helper")
        (project_path / "src" / "more.py").write_text("helper = 1\n")
        search.clear_cache()
        assert len(search.search("helper")) == 2


class TestReadAndResolve:
    def test_read_file(self, search):
        assert search.read_file("src/utils.py") == "def helper():\n    return 42\n"

    def test_read_file_bounded(self, search):
        assert search.read_file("src/utils.py", max_bytes=3) == "def"

    def test_read_outside_root(self, search, tmp_path):
        (tmp_path / "outside.txt").write_text("nope")
        assert search.read_file("../outside.txt") is None

    def test_read_missing(self, search):
        assert search.read_file("src/missing.py") is None

    def test_resolve_bare_name(self, search):
        assert search.resolve("app.tsx") == ["src/App.tsx"]

    def test_resolve_relative_path(self, search):
        assert search.resolve("./src/utils.py") == ["src/utils.py"]

    def test_resolve_unknown(self, search):
        assert search.resolve("nothing.ts") == []
