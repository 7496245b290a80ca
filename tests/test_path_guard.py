"""Tests for PathGuard canonicalization and confinement."""

import os

import pytest

from agent_mediation.actions import FileMode
from agent_mediation.guards import PathGuard, canonicalize, is_within
from agent_mediation.policy import SecurityPolicy
from agent_mediation.results import Reason, Rejected, Valid


@pytest.fixture
def guard(policy) -> PathGuard:
    return PathGuard(policy)


# ============================================================================
# ACCEPTED PATHS
# ============================================================================


def test_relative_path_resolves_against_cwd(guard, project_root):
    result = guard.validate("src/main.py", cwd=project_root)

    assert isinstance(result, Valid)
    assert result.value == project_root / "src" / "main.py"
    assert result.value.is_absolute()


def test_dotdot_inside_root_is_canonicalized(guard, project_root):
    result = guard.validate("src/../README.md", cwd=project_root)

    assert result.ok
    assert result.value == project_root / "README.md"
    assert ".." not in result.value.parts


def test_accepted_path_is_idempotent(guard, project_root):
    first = guard.validate("./src/./main.py", cwd=project_root)
    second = guard.validate(first.value, cwd=project_root / "src")

    assert first.ok and second.ok
    assert first.value == second.value


def test_nonexistent_file_inside_root_is_accepted(guard, project_root):
    result = guard.validate("src/new_module.py", mode=FileMode.WRITE, cwd=project_root)

    assert result.ok
    assert result.value == project_root / "src" / "new_module.py"


def test_extensionless_file_allowed_by_empty_entry(guard, project_root):
    assert guard.validate("Makefile", cwd=project_root).ok


def test_list_mode_skips_extension_check(guard, project_root):
    (project_root / "assets.d").mkdir()

    result = guard.validate("assets.d", mode=FileMode.LIST, cwd=project_root)

    assert result.ok


# ============================================================================
# REJECTIONS
# ============================================================================


def test_parent_traversal_leaves_root(guard, project_root):
    result = guard.validate("../../etc/passwd", cwd=project_root / "src")

    assert isinstance(result, Rejected)
    assert result.reason == Reason.OUTSIDE_ALLOWED_ROOT


def test_absolute_path_outside_root(guard, project_root):
    result = guard.validate("/etc/passwd", cwd=project_root)

    assert result.reason == Reason.OUTSIDE_ALLOWED_ROOT


def test_sibling_with_shared_prefix_is_outside(guard, project_root):
    sibling = project_root.parent / (project_root.name + "-secrets")
    sibling.mkdir()

    result = guard.validate(str(sibling / "key.txt"), cwd=project_root)

    assert result.reason == Reason.OUTSIDE_ALLOWED_ROOT


def test_symlink_escape_is_rejected(guard, project_root, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("secret")
    (project_root / "link").symlink_to(outside, target_is_directory=True)

    result = guard.validate("link/secret.txt", cwd=project_root)

    assert result.reason == Reason.OUTSIDE_ALLOWED_ROOT


def test_symlink_inside_root_is_followed(guard, project_root):
    (project_root / "alias.py").symlink_to(project_root / "src" / "main.py")

    result = guard.validate("alias.py", cwd=project_root)

    assert result.ok
    assert result.value == project_root / "src" / "main.py"


@pytest.mark.parametrize(
    "raw",
    [
        "%2e%2e/%2e%2e/etc/passwd",
        "..%2fetc%2fpasswd",
        "%252e%252e/secret",
        "src%5c..%5c..%5cwin.ini",
        "src/main.py%00.md",
    ],
)
def test_encoded_traversal_is_rejected(guard, project_root, raw):
    result = guard.validate(raw, cwd=project_root)

    assert result.reason == Reason.PATH_TRAVERSAL


def test_null_byte_is_rejected(guard, project_root):
    result = guard.validate("src/main.py\x00.md", cwd=project_root)

    assert result.reason == Reason.PATH_TRAVERSAL


def test_empty_path_is_rejected(guard, project_root):
    assert guard.validate("   ", cwd=project_root).reason == Reason.PATH_TRAVERSAL


def test_path_too_long(guard, project_root):
    result = guard.validate("a" * 600 + ".py", cwd=project_root)

    assert result.reason == Reason.PATH_TOO_LONG


def test_disallowed_extension(guard, project_root):
    (project_root / "id_rsa.pem").write_text("key")

    result = guard.validate("id_rsa.pem", cwd=project_root)

    assert result.reason == Reason.DISALLOWED_EXTENSION


def test_extension_check_is_case_insensitive(guard, project_root):
    assert guard.validate("NOTES.MD", cwd=project_root).ok


def test_existing_file_over_size_limit(guard, project_root):
    (project_root / "big.txt").write_text("x" * 2048)

    result = guard.validate("big.txt", cwd=project_root)

    assert result.reason == Reason.SIZE_LIMIT_EXCEEDED


def test_write_content_over_size_limit(guard, project_root):
    result = guard.validate("new.txt", mode=FileMode.WRITE, cwd=project_root, content_size=4096)

    assert result.reason == Reason.SIZE_LIMIT_EXCEEDED


@pytest.mark.parametrize("raw", ["a;rm -rf x.txt", "$(whoami).txt", "out.txt|tee", "`id`.txt"])
def test_interpolation_rejects_shell_fragments(guard, project_root, raw):
    result = guard.validate(raw, cwd=project_root, for_interpolation=True)

    assert result.reason == Reason.UNSAFE_CHARACTERS


def test_shell_fragments_allowed_without_interpolation(guard, project_root):
    assert guard.validate("notes;old.txt", cwd=project_root).ok


def test_intended_roots_narrow_the_boundary(guard, project_root):
    result = guard.validate("README.md", [project_root / "src"], cwd=project_root)

    assert result.reason == Reason.OUTSIDE_ALLOWED_ROOT


def test_nested_roots_form_a_union(project_root, tmp_path):
    other = tmp_path / "shared"
    other.mkdir()
    guard = PathGuard(SecurityPolicy(allowed_roots=(project_root, project_root / "src", other)))

    assert guard.validate(str(other / "notes.txt")).ok
    assert guard.validate(str(project_root / "src" / "main.py")).ok


# ============================================================================
# HELPERS
# ============================================================================


def test_canonicalize_is_absolute_without_existing_target(tmp_path):
    path = canonicalize("missing/../also-missing", tmp_path)

    assert path == tmp_path.resolve() / "also-missing"


def test_is_within_uses_path_ancestry(tmp_path):
    root = tmp_path.resolve()

    assert is_within(root, [root])
    assert is_within(root / "a" / "b", [root])
    assert not is_within(root.parent, [root])
    assert not is_within(root.parent / (root.name + "x"), [root])


def test_pathlike_input_is_accepted(guard, project_root):
    result = guard.validate(project_root / "src" / "main.py")

    assert result.value == project_root / "src" / "main.py"
    assert os.fspath(result.value) == str(project_root / "src" / "main.py")
