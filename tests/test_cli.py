"""Tests for CLI commands."""

from unittest.mock import patch

import pytest

from clawmem.cli import create_parser, run_cli
from clawmem.errors import StorageError
from clawmem.models import RetentionRules

from conftest import unit


def extracted(memory: str, category: str = "technical", memory_type: str = "fact") -> dict:
    return {"memory": memory, "category": category, "memoryType": memory_type}


@pytest.fixture
def cli(make_memory):
    """Route every CLI invocation to a fresh Memory over the same data dir."""

    def run(*argv: str, **config) -> int:
        with patch("clawmem.cli._get_memory", side_effect=lambda: make_memory(**config)):
            return run_cli(list(argv))

    return run


class TestParser:
    """Tests for argument parsing."""

    def test_no_command_prints_help(self, capsys):
        assert run_cli([]) == 0
        assert "usage: clawmem" in capsys.readouterr().out

    def test_user_defaults_to_env(self, monkeypatch):
        monkeypatch.setenv("CLAWMEM_USER", "alex")
        args = create_parser().parse_args(["list"])
        assert args.user == "alex"

    def test_search_options(self):
        args = create_parser().parse_args(
            ["search", "code", "editor", "-n", "3", "-k", "--from", "2025-01-01", "-u", "u1"]
        )
        assert args.query == ["code", "editor"]
        assert args.limit == 3
        assert args.keyword is True
        assert args.from_date == "2025-01-01"
        assert args.user == "u1"


class TestAddAndSearch:
    """Tests for 'clawmem add' and 'clawmem search'."""

    def test_add_prints_summary(self, cli, llm, capsys):
        llm.queue_extraction(extracted("Alex uses Neovim"))

        assert cli("add", "I", "use", "Neovim", "-u", "u1") == 0

        out = capsys.readouterr().out
        assert "+ [technical/fact] Alex uses Neovim" in out
        assert "Added: 1, updated: 0, skipped: 0" in out
        prompt = llm.calls_of("extraction")[0][-1]["content"]
        assert prompt.endswith("User: I use Neovim")

    def test_add_no_graph(self, cli, llm):
        llm.queue_extraction(extracted("Alex uses Neovim"))

        cli("add", "Neovim", "-u", "u1", "--no-graph")

        assert llm.calls_of("entities") == []

    def test_search_shows_scores(self, cli, llm, embedder, capsys):
        embedder.vectors["Alex uses Neovim"] = unit(0)
        embedder.vectors["editor"] = unit(0)
        llm.queue_extraction(extracted("Alex uses Neovim"))
        cli("add", "Neovim", "-u", "u1")
        capsys.readouterr()

        assert cli("search", "editor", "-u", "u1") == 0

        out = capsys.readouterr().out
        assert "1.000  [technical/fact] Alex uses Neovim" in out

    def test_search_other_user_empty(self, cli, llm, embedder, capsys):
        embedder.vectors["Alex uses Neovim"] = unit(0)
        embedder.vectors["editor"] = unit(0)
        llm.queue_extraction(extracted("Alex uses Neovim"))
        cli("add", "Neovim", "-u", "u1")
        capsys.readouterr()

        cli("search", "editor", "-u", "u2")

        assert "No memories found." in capsys.readouterr().out

    def test_invalid_type_is_error(self, cli, capsys):
        assert cli("search", "editor", "-u", "u1", "--type", "mood") == 1
        assert "Error:" in capsys.readouterr().err


class TestInspectAndForget:
    """Tests for list, get, history and forget."""

    @pytest.fixture
    def stored_id(self, cli, llm, memory) -> str:
        llm.queue_extraction(extracted("Alex prefers dark mode", "preferences", "preference"))
        cli("add", "dark mode please", "-u", "u1")
        return memory.vector_store.list({"user_id": "u1"})[0][0].id

    def test_list(self, cli, stored_id, capsys):
        capsys.readouterr()

        assert cli("list", "-u", "u1") == 0

        out = capsys.readouterr().out
        assert f"[preferences/preference] Alex prefers dark mode  ({stored_id}, v1)" in out
        assert "Total: 1 memory(ies)" in out

    def test_get(self, cli, stored_id, capsys):
        capsys.readouterr()

        assert cli("get", stored_id) == 0

        out = capsys.readouterr().out
        assert "Memory:     Alex prefers dark mode" in out
        assert "Latest:     yes" in out

    def test_get_missing(self, cli, capsys):
        assert cli("get", "nope") == 1
        assert "not found" in capsys.readouterr().err

    def test_history_and_forget(self, cli, stored_id, capsys):
        assert cli("forget", stored_id, "-u", "u1") == 0
        capsys.readouterr()

        cli("history", stored_id)

        lines = capsys.readouterr().out.strip().splitlines()
        assert "add" in lines[0] and "Alex prefers dark mode" in lines[0]
        assert "delete" in lines[1]

    def test_forget_requires_target(self, cli, capsys):
        assert cli("forget", "-u", "u1") == 1
        assert "give a memory id or --all" in capsys.readouterr().err

    def test_forget_all(self, cli, stored_id, capsys):
        assert cli("forget", "--all", "-u", "u1") == 0
        assert "Deleted 1 memory(ies) for u1." in capsys.readouterr().out

    def test_storage_error_maps_to_exit_code(self, cli, capsys):
        with patch("clawmem.memory.Memory.get", side_effect=StorageError("locked")):
            assert cli("get", "m1") == 1
        assert "Error: locked" in capsys.readouterr().err


class TestRetentionGraphProfile:
    """Tests for retention, graph and profile."""

    def test_retention_without_rules(self, cli, capsys):
        assert cli("retention", "-u", "u1") == 0
        assert "No forgetting rules configured." in capsys.readouterr().out

    def test_retention_dry_run(self, cli, llm, clock, capsys):
        llm.queue_extraction(extracted("Alex went to a concert", "life_events", "episode"))
        cli("add", "concert", "-u", "u1")
        clock.advance(days=31)
        capsys.readouterr()

        rules = RetentionRules(episode=30)
        assert cli("retention", "-u", "u1", forgetting_rules=rules) == 0

        out = capsys.readouterr().out
        assert "Alex went to a concert" in out
        assert "dry run" in out

    def test_graph_disabled(self, cli, capsys):
        assert cli("graph", "-u", "u1", enable_graph=False) == 0
        assert "Graph is disabled." in capsys.readouterr().out

    def test_graph_relations(self, cli, llm, capsys):
        llm.queue_extraction(extracted("Alex uses Neovim"))
        llm.queue_entities(
            [{"name": "Alex", "type": "person"}, {"name": "Neovim", "type": "technology"}],
            [{"source": "Alex", "relationship": "uses", "target": "Neovim", "confidence": 0.9}],
        )
        cli("add", "Neovim", "-u", "u1")
        capsys.readouterr()

        assert cli("graph", "-u", "u1") == 0
        assert "Alex --uses--> Neovim  (0.90)" in capsys.readouterr().out

        cli("graph", "-u", "u1", "--entities")
        assert "Total: 2 entity(ies)" in capsys.readouterr().out

    def test_profile(self, cli, llm, embedder, capsys):
        embedder.vectors["Alex lives in Lisbon"] = unit(0)
        embedder.vectors["Alex wants to learn Go"] = unit(1)
        llm.queue_extraction(
            extracted("Alex lives in Lisbon", "identity"),
            extracted("Alex wants to learn Go", "goals"),
        )
        cli("add", "Lisbon and Go", "-u", "u1")
        capsys.readouterr()

        assert cli("profile", "-u", "u1") == 0

        out = capsys.readouterr().out
        assert "### Identity\n- Alex lives in Lisbon" in out
        assert "### Goals\n- Alex wants to learn Go" in out

    def test_profile_empty(self, cli, capsys):
        cli("profile", "-u", "nobody")
        assert "No memories for nobody." in capsys.readouterr().out
