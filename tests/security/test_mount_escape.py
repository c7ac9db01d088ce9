"""Mount validation must judge every request by its canonical target.

Covers traversal (`shared/../secrets`), symlinks pointing out of a root,
credential directories, exposure of the allowlist file itself, and
read-only tightening for non-main groups.
"""

from pathlib import Path

import pytest

from nestor.config.schema import AllowedRoot, MountAllowlist
from nestor.core.errors import MountSecurityError
from nestor.core.mount_security import (
    MountDecisionReason,
    validate_mount,
    validate_mounts,
)
from nestor.core.types import AdditionalMount


@pytest.fixture
def layout(tmp_path: Path) -> dict[str, Path]:
    """data/shared is the allowed root; data/secrets sits beside it."""
    shared = tmp_path / "data" / "shared"
    secrets = tmp_path / "data" / "secrets"
    outside = tmp_path / "outside"
    for d in (shared / "docs", shared / "private", shared / ".ssh", secrets, outside):
        d.mkdir(parents=True)
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return {
        "root": tmp_path,
        "shared": shared,
        "secrets": secrets,
        "outside": outside,
        "allowlist_path": config_dir / "mount-allowlist.json",
    }


def _allowlist(shared: Path, *, read_write: bool = True, **kwargs) -> MountAllowlist:
    return MountAllowlist(
        allowed_roots=[
            AllowedRoot(path=str(shared), allow_read_write=read_write, blocked_patterns=["private"])
        ],
        **kwargs,
    )


class TestPathEscapes:
    """Requests that try to leave an allowed root are denied."""

    def test_parent_traversal_denied(self, layout: dict[str, Path]) -> None:
        """shared/../secrets resolves outside the root."""
        mount = AdditionalMount(host_path=f"{layout['shared']}/../secrets")
        decision = validate_mount(
            mount,
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert not decision.allowed
        assert decision.reason is MountDecisionReason.OUTSIDE_ROOTS

    def test_symlink_out_of_root_denied(self, layout: dict[str, Path]) -> None:
        """A link inside the root that points elsewhere is judged by its target."""
        link = layout["shared"] / "escape"
        link.symlink_to(layout["outside"], target_is_directory=True)

        decision = validate_mount(
            AdditionalMount(host_path=str(link)),
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert not decision.allowed
        assert decision.reason is MountDecisionReason.OUTSIDE_ROOTS

    def test_symlink_within_root_allowed(self, layout: dict[str, Path]) -> None:
        link = layout["shared"] / "docs-link"
        link.symlink_to(layout["shared"] / "docs", target_is_directory=True)

        decision = validate_mount(
            AdditionalMount(host_path=str(link)),
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert decision.allowed
        assert decision.host_path == (layout["shared"] / "docs").resolve()

    def test_missing_path_denied(self, layout: dict[str, Path]) -> None:
        decision = validate_mount(
            AdditionalMount(host_path=str(layout["shared"] / "nope")),
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert not decision.allowed
        assert decision.reason is MountDecisionReason.RESOLUTION_FAILED

    def test_no_allowlist_denies_everything(self, layout: dict[str, Path]) -> None:
        decision = validate_mount(
            AdditionalMount(host_path=str(layout["shared"] / "docs")),
            None,
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert not decision.allowed
        assert decision.reason is MountDecisionReason.NO_ALLOWLIST


class TestBlockedPatterns:
    def test_default_credential_dir_blocked(self, layout: dict[str, Path]) -> None:
        decision = validate_mount(
            AdditionalMount(host_path=str(layout["shared"] / ".ssh")),
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert not decision.allowed
        assert decision.reason is MountDecisionReason.BLOCKED_PATTERN

    def test_root_pattern_blocked(self, layout: dict[str, Path]) -> None:
        decision = validate_mount(
            AdditionalMount(host_path=str(layout["shared"] / "private")),
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert not decision.allowed
        assert "private" in decision.detail

    def test_global_pattern_blocked(self, layout: dict[str, Path]) -> None:
        decision = validate_mount(
            AdditionalMount(host_path=str(layout["shared"] / "docs")),
            _allowlist(layout["shared"], blocked_patterns=["docs"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert not decision.allowed
        assert decision.reason is MountDecisionReason.BLOCKED_PATTERN


class TestAllowlistExposure:
    def test_directory_containing_allowlist_denied(self, layout: dict[str, Path]) -> None:
        """A root that contains the allowlist never grants that directory."""
        allowlist_path = layout["shared"] / "docs" / "mount-allowlist.json"
        allowlist_path.write_text("{}")

        decision = validate_mount(
            AdditionalMount(host_path=str(layout["shared"] / "docs")),
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=allowlist_path,
        )
        assert not decision.allowed
        assert decision.reason is MountDecisionReason.ALLOWLIST_EXPOSED


class TestAccessMode:
    def test_non_main_forced_read_only(self, layout: dict[str, Path]) -> None:
        mount = AdditionalMount(host_path=str(layout["shared"] / "docs"), readonly=False)
        decision = validate_mount(
            mount,
            _allowlist(layout["shared"]),
            is_main=False,
            allowlist_path=layout["allowlist_path"],
        )
        assert decision.allowed
        assert decision.readonly is True

    def test_main_may_write_when_root_allows(self, layout: dict[str, Path]) -> None:
        mount = AdditionalMount(host_path=str(layout["shared"] / "docs"), readonly=False)
        decision = validate_mount(
            mount,
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert decision.allowed
        assert decision.readonly is False

    def test_read_only_root_wins_over_request(self, layout: dict[str, Path]) -> None:
        mount = AdditionalMount(host_path=str(layout["shared"] / "docs"), readonly=False)
        decision = validate_mount(
            mount,
            _allowlist(layout["shared"], read_write=False),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert decision.allowed
        assert decision.readonly is True


class TestContainerPath:
    def test_defaults_to_basename_under_extra_root(self, layout: dict[str, Path]) -> None:
        decision = validate_mount(
            AdditionalMount(host_path=str(layout["shared"] / "docs")),
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert decision.container_path == "/workspace/extra/docs"

    @pytest.mark.parametrize("container_path", ["../etc", "/etc", "  "])
    def test_invalid_container_path_denied(
        self, layout: dict[str, Path], container_path: str
    ) -> None:
        mount = AdditionalMount(
            host_path=str(layout["shared"] / "docs"), container_path=container_path
        )
        decision = validate_mount(
            mount,
            _allowlist(layout["shared"]),
            is_main=True,
            allowlist_path=layout["allowlist_path"],
        )
        assert not decision.allowed
        assert decision.reason is MountDecisionReason.INVALID_CONTAINER_PATH


class TestValidateMounts:
    def test_one_denial_rejects_the_whole_set(self, layout: dict[str, Path]) -> None:
        mounts = [
            AdditionalMount(host_path=str(layout["shared"] / "docs")),
            AdditionalMount(host_path=str(layout["secrets"])),
        ]
        with pytest.raises(MountSecurityError) as exc_info:
            validate_mounts(
                mounts,
                _allowlist(layout["shared"]),
                is_main=True,
                allowlist_path=layout["allowlist_path"],
            )
        assert exc_info.value.path == str(layout["secrets"])

    def test_all_allowed_returns_approved_mounts(self, layout: dict[str, Path]) -> None:
        approved = validate_mounts(
            [AdditionalMount(host_path=str(layout["shared"] / "docs"))],
            _allowlist(layout["shared"]),
            is_main=False,
            allowlist_path=layout["allowlist_path"],
        )
        assert len(approved) == 1
        assert approved[0].container_path == "/workspace/extra/docs"
        assert approved[0].readonly is True
