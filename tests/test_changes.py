"""Tests for working-copy change detection."""

from agentboard.core import changes as changes_mod
from conftest import git


class TestParseStatus:
    def test_modified_and_renamed(self):
        output = " M src/app.go\nR  old.txt -> new.txt\n"
        assert changes_mod.parse_status(output) == ["src/app.go", "new.txt"]

    def test_path_with_spaces(self):
        assert changes_mod.parse_status("?? my notes.txt\n") == ["my notes.txt"]

    def test_leading_and_trailing_spaces_kept(self):
        output = "??  leading.txt\n?? trailing.txt \n"
        assert changes_mod.parse_status(output) == [" leading.txt", "trailing.txt "]

    def test_skips_blank_lines(self):
        assert changes_mod.parse_status("\n M a.py\n\n\n") == ["a.py"]

    def test_quoted_path(self):
        assert changes_mod.parse_status('?? "with \\"quote\\".txt"\n') == ['with "quote".txt']

    def test_quoted_utf8_path(self):
        assert changes_mod.parse_status('?? "caf\\303\\251.txt"\n') == ["café.txt"]

    def test_quoted_rename_target(self):
        output = 'R  plain.txt -> "tab\\there.txt"\n'
        assert changes_mod.parse_status(output) == ["tab\there.txt"]

    def test_empty(self):
        assert changes_mod.parse_status("") == []


class TestDetectChanges:
    def test_clean_repo(self, repo):
        assert changes_mod.detect_changes(repo) == (False, [])

    def test_untracked_and_modified(self, repo):
        (repo / "README.md").write_text("# Changed")
        (repo / "new.txt").write_text("hello")
        has_changes, files = changes_mod.detect_changes(repo)
        assert has_changes
        assert sorted(files) == ["README.md", "new.txt"]

    def test_file_name_ending_in_space(self, repo):
        (repo / "notes ").write_text("hello")
        assert changes_mod.detect_changes(repo) == (True, ["notes "])

    def test_staged_rename(self, repo):
        git("mv", "README.md", "INTRO.md", cwd=repo)
        assert changes_mod.detect_changes(repo) == (True, ["INTRO.md"])
