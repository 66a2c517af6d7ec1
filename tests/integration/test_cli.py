"""End-to-end tests for the CLI against a real repository on disk."""

import json

import pytest
from typer.testing import CliRunner

from plaintrack.interface.cli import app

runner = CliRunner()


@pytest.fixture
def repo(temp_root, make_record_file, make_plan_file):
    make_record_file("pt-x1", priority=1, title="Set up database")
    make_record_file("pt-y2", priority=0, deps=["pt-x1"], title="Add migrations")
    make_record_file("pt-z3", status="complete", title="Pick a name")
    make_plan_file("plan-launch", phases=[("Setup", ["pt-z3", "pt-x1"]), ("Build", ["pt-y2"])])
    return temp_root


def invoke(root, *args):
    return runner.invoke(app, ["--root", str(root), *args])


class TestRecordCommands:
    """Tests for listing and showing records."""
    
    def test_ls(self, repo):
        """Test listing every record."""
        result = invoke(repo, "ls")
        
        assert result.exit_code == 0
        for record_id in ["pt-x1", "pt-y2", "pt-z3"]:
            assert record_id in result.output
    
    def test_ls_filtered(self, repo):
        """Test filtering by status."""
        result = invoke(repo, "ls", "--status", "complete")
        
        assert result.exit_code == 0
        assert "pt-z3" in result.output
        assert "pt-x1" not in result.output
    
    def test_show_by_prefix(self, repo):
        """Test showing a record by a unique prefix."""
        result = invoke(repo, "show", "pt-y")
        
        assert result.exit_code == 0
        assert "Add migrations" in result.output
        assert "pt-x1" in result.output
    
    def test_show_ambiguous(self, repo):
        """Test an ambiguous prefix lists candidates and fails."""
        result = invoke(repo, "show", "pt-")
        
        assert result.exit_code == 1
        assert "ambiguous" in result.output
        assert "pt-x1" in result.output
    
    def test_show_not_found(self, repo):
        """Test an unknown ID fails."""
        result = invoke(repo, "show", "nope")
        assert result.exit_code == 1


class TestGraphCommands:
    """Tests for readiness, next work, trees and cycles."""
    
    def test_ready_and_blocked(self, repo):
        """Test readiness classification."""
        ready = invoke(repo, "ready")
        assert "pt-x1" in ready.output
        assert "pt-y2" not in ready.output
        
        blocked = invoke(repo, "blocked")
        assert "pt-y2" in blocked.output
    
    def test_next(self, repo):
        """Test the blocker is listed before what it blocks."""
        result = invoke(repo, "next")
        
        assert result.exit_code == 0
        assert "blocking" in result.output
        assert result.output.index("pt-x1") < result.output.index("pt-y2")
    
    def test_dep_tree(self, repo):
        """Test the text tree."""
        result = invoke(repo, "dep-tree", "pt-y2")
        
        assert result.exit_code == 0
        assert "└── pt-x1" in result.output
    
    def test_dep_tree_json(self, repo):
        """Test the JSON tree."""
        result = invoke(repo, "dep-tree", "pt-y2", "--json")
        
        tree = json.loads(result.output)
        assert tree["id"] == "pt-y2"
        assert tree["deps"][0]["id"] == "pt-x1"
    
    def test_cycles(self, repo, make_record_file):
        """Test cycles are reported with a failing exit code."""
        assert invoke(repo, "cycles").exit_code == 0
        
        make_record_file("pt-x1", deps=["pt-y2"])
        result = invoke(repo, "cycles")
        
        assert result.exit_code == 1
        assert "pt-x1 -> pt-y2 -> pt-x1" in result.output
    
    def test_doctor(self, repo):
        """Test broken files are reported."""
        assert invoke(repo, "doctor").exit_code == 0
        
        (repo / "items" / "pt-bad.md").write_text("no frontmatter here\n")
        result = invoke(repo, "doctor")
        
        assert result.exit_code == 1
        assert "pt-bad.md" in result.output


class TestPlanCommands:
    """Tests for plan progress."""
    
    def test_plan_ls(self, repo):
        """Test plans are listed with computed status."""
        result = invoke(repo, "plan", "ls")
        
        assert result.exit_code == 0
        assert "plan-launch" in result.output
        assert "in_progress" in result.output
    
    def test_plan_status(self, repo):
        """Test per-phase status."""
        result = invoke(repo, "plan", "status", "plan-l")
        
        assert result.exit_code == 0
        assert "Setup" in result.output
        assert "1/3" in result.output
    
    def test_plan_next(self, repo):
        """Test the next item per phase."""
        result = invoke(repo, "plan", "next", "plan-launch")
        
        assert result.exit_code == 0
        assert "pt-x1" in result.output
        assert "pt-z3" not in result.output


class TestSearchCommands:
    """Tests for semantic search when the model is unavailable."""
    
    def test_search_unavailable(self, repo):
        """Test search degrades to an explicit message."""
        result = invoke(repo, "search", "database")
        
        assert result.exit_code == 1
        assert "unavailable" in result.output
    
    def test_cache_status_and_prune(self, repo):
        """Test maintenance commands work without the model."""
        status = invoke(repo, "cache", "status")
        assert status.exit_code == 0
        assert "Coverage: 0/3" in status.output
        
        prune = invoke(repo, "cache", "prune")
        assert prune.exit_code == 0
        assert "Pruned 0" in prune.output
