"""Tests for git state capture."""

import subprocess
from unittest.mock import MagicMock, patch

from git_state import capture_git_state, count_commits_between


def completed(stdout):
    return MagicMock(stdout=stdout + "\n")


@patch("git_state.subprocess.run")
def test_captures_all_fields(mock_run):
    mock_run.side_effect = [
        completed("main"),
        completed("0123456789abcdef"),
        completed("0123456"),
        completed("Update homepage"),
        completed("Site Bot"),
        completed("2024-06-01 12:00:00 +0000"),
        completed(" M index.html"),
    ]

    state = capture_git_state()

    assert state.branch == "main"
    assert state.short_commit == "0123456"
    assert state.message == "Update homepage"
    assert state.is_dirty
    assert state.error is None
    assert mock_run.call_args_list[0].args[0] == ["git", "rev-parse", "--abbrev-ref", "HEAD"]


@patch("git_state.subprocess.run")
def test_not_a_repository(mock_run):
    mock_run.side_effect = subprocess.CalledProcessError(
        128, ["git", "rev-parse"], stderr="fatal: not a git repository"
    )

    state = capture_git_state()

    assert state.error == "fatal: not a git repository"
    assert state.commit is None


@patch("git_state.subprocess.run")
def test_git_not_installed(mock_run):
    mock_run.side_effect = FileNotFoundError("git")

    assert capture_git_state().error == "git"


@patch("git_state.subprocess.run")
def test_count_commits_between(mock_run):
    mock_run.return_value = completed("7")

    assert count_commits_between("aaa", "bbb") == 7
    assert mock_run.call_args.args[0] == ["git", "rev-list", "--count", "aaa..bbb"]


@patch("git_state.subprocess.run")
def test_count_commits_unknown(mock_run):
    mock_run.side_effect = subprocess.CalledProcessError(128, ["git"])

    assert count_commits_between("aaa", "bbb") == 0
    assert count_commits_between(None, "bbb") == 0
