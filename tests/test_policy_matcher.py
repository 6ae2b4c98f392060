"""Policy matcher tests."""

from __future__ import annotations

from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from fluxwarden.policy.matcher import (
    match_workloads,
    policy_targets,
    primary_workload_name,
    strip_name,
)


def test_strip_name_removes_leading_slash_only() -> None:
    assert strip_name("/foo_MyApp") == "foo_MyApp"
    assert strip_name("foo/bar") == "foo/bar"


def test_primary_name_is_text_after_last_underscore() -> None:
    assert primary_workload_name("/foo_MyApp") == "MyApp"
    assert primary_workload_name("/a_b_MyApp") == "MyApp"
    assert primary_workload_name("/standalone") == "standalone"


def test_substring_match_anywhere_in_name() -> None:
    matches = match_workloads(["/xxfoo_App", "/bar_App2", "/plain"], ["foo"])

    assert [m.is_target for m in matches] == [True, False, False]
    assert matches[0].matched_prefix == "foo"
    assert matches[0].primary_name == "App"
    assert matches[1].matched_prefix is None


def test_empty_prefixes_never_match() -> None:
    assert policy_targets(["/foo_MyApp"], []) == []
    assert policy_targets(["/foo_MyApp"], [""]) == []


def test_policy_targets_preserve_input_order() -> None:
    targets = policy_targets(["/foo_B", "/ok", "/bar_A"], ["bar", "foo"])
    assert [t.name for t in targets] == ["foo_B", "bar_A"]
    assert [t.matched_prefix for t in targets] == ["foo", "bar"]
