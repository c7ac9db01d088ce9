"""Mount security validator.

Decides which host directories a session may see. Every decision resolves
the requested path through all symlinks first, so a link whose literal path
sits inside an allowed root but points elsewhere is judged by its target.

Usage:
    allowlist = load_mount_allowlist(allowlist_path)
    decision = validate_mount(mount, allowlist, is_main=False,
                              allowlist_path=allowlist_path)
    if not decision.allowed:
        logger.warning("%s", decision)

SECURITY: This is the only place additional mounts are approved. It is pure
and synchronous and is re-run on every spawn; nothing is cached.
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path, PurePosixPath

from nestor.config.schema import AllowedRoot, MountAllowlist
from nestor.core.constants import EXTRA_MOUNT_ROOT
from nestor.core.errors import MountSecurityError
from nestor.core.types import AdditionalMount

logger = logging.getLogger(__name__)

# Credential stores that are never mountable, whatever the allowlist says
DEFAULT_BLOCKED_PATTERNS: tuple[str, ...] = (
    ".ssh",
    ".gnupg",
    ".gpg",
    ".aws",
    ".azure",
    ".gcloud",
    ".kube",
    ".docker",
    "credentials",
    ".env",
    ".netrc",
    ".npmrc",
    ".pypirc",
    "id_rsa",
    "id_ed25519",
    "private_key",
    ".secret",
)


class MountDecisionReason(Enum):
    """Reasons for mount decisions."""

    # Allowed
    WITHIN_ROOT = auto()

    # Denied
    NO_ALLOWLIST = auto()
    RESOLUTION_FAILED = auto()
    OUTSIDE_ROOTS = auto()
    BLOCKED_PATTERN = auto()
    ALLOWLIST_EXPOSED = auto()
    INVALID_CONTAINER_PATH = auto()


@dataclass(frozen=True)
class MountDecision:
    """Result of validating one requested mount.

    Attributes:
        allowed: Whether the mount is approved.
        requested_path: The host path as configured.
        reason: Why the decision was made.
        detail: Human-readable explanation.
        host_path: Canonical host path (if allowed).
        container_path: Absolute path inside the session (if allowed).
        readonly: Effective access mode (if allowed).
        matched_root: The allowlist root that admitted the path.
    """

    allowed: bool
    requested_path: str
    reason: MountDecisionReason
    detail: str
    host_path: Path | None = None
    container_path: str | None = None
    readonly: bool = True
    matched_root: Path | None = None

    def __str__(self) -> str:
        status = "ALLOWED" if self.allowed else "DENIED"
        return f"{status}: {self.requested_path} - {self.detail}"

    def raise_if_denied(self) -> ApprovedMount:
        """Return the approved mount, or raise MountSecurityError."""
        if not self.allowed:
            raise MountSecurityError(self.requested_path, self.detail)
        assert self.host_path is not None and self.container_path is not None
        return ApprovedMount(self.host_path, self.container_path, self.readonly)


@dataclass(frozen=True)
class ApprovedMount:
    """A mount that passed validation and may be handed to the runtime."""

    host_path: Path
    container_path: str
    readonly: bool


def _deny(mount: AdditionalMount, reason: MountDecisionReason, detail: str) -> MountDecision:
    return MountDecision(
        allowed=False,
        requested_path=mount.host_path,
        reason=reason,
        detail=detail,
    )


def _resolve(path: str) -> Path:
    # strict=True: a dangling link or missing directory is not mountable
    return Path(path).expanduser().resolve(strict=True)


def _container_target(mount: AdditionalMount, host_path: Path) -> str | None:
    """Validate the requested container path and place it under the extra root."""
    name = mount.container_path if mount.container_path is not None else host_path.name
    if not name or name.strip() == "":
        return None
    candidate = PurePosixPath(name)
    if candidate.is_absolute() or ".." in candidate.parts:
        return None
    return str(PurePosixPath(EXTRA_MOUNT_ROOT) / candidate)


def _matches_blocked(relative: PurePosixPath, patterns: Iterable[str]) -> str | None:
    """Return the first blocked pattern that matches a path below a root."""
    rel_str = relative.as_posix()
    for pattern in patterns:
        if "/" in pattern:
            stripped = pattern.strip("/")
            if rel_str == stripped or rel_str.startswith(stripped + "/"):
                return pattern
            continue
        for part in relative.parts:
            if part == pattern or fnmatch.fnmatchcase(part, pattern):
                return pattern
    return None


def validate_mount(
    mount: AdditionalMount,
    allowlist: MountAllowlist | None,
    *,
    is_main: bool,
    allowlist_path: Path,
) -> MountDecision:
    """Decide whether a single requested mount may be granted.

    Rules, in order: canonicalize (following symlinks); require the path to
    be inside an allowlist root; reject blocked patterns below that root;
    tighten to read-only where the root or the non-main policy requires it.
    The allowlist file, and any directory containing it, is never granted.

    Args:
        mount: The requested mount.
        allowlist: Loaded allowlist, or None if none is configured.
        is_main: Whether the requesting group is the main group.
        allowlist_path: Location of the allowlist file itself.

    Returns:
        MountDecision describing the outcome.
    """
    if allowlist is None:
        return _deny(mount, MountDecisionReason.NO_ALLOWLIST, "No mount allowlist configured")

    try:
        resolved = _resolve(mount.host_path)
    except (OSError, RuntimeError, ValueError) as e:
        return _deny(mount, MountDecisionReason.RESOLUTION_FAILED, f"Cannot resolve path: {e}")

    try:
        allowlist_resolved = allowlist_path.expanduser().resolve()
    except (OSError, RuntimeError):
        allowlist_resolved = allowlist_path.expanduser().absolute()
    if allowlist_resolved == resolved or allowlist_resolved.is_relative_to(resolved):
        return _deny(
            mount,
            MountDecisionReason.ALLOWLIST_EXPOSED,
            "Path would expose the mount allowlist",
        )

    matched: tuple[Path, AllowedRoot] | None = None
    for root in allowlist.allowed_roots:
        try:
            root_resolved = _resolve(root.path)
        except (OSError, RuntimeError, ValueError):
            logger.debug("Allowlist root %s does not resolve, skipping", root.path)
            continue
        if resolved.is_relative_to(root_resolved):
            # Prefer the most specific root when roots nest
            if matched is None or root_resolved.is_relative_to(matched[0]):
                matched = (root_resolved, root)

    if matched is None:
        roots = ", ".join(r.path for r in allowlist.allowed_roots) or "none"
        return _deny(
            mount,
            MountDecisionReason.OUTSIDE_ROOTS,
            f"Path {resolved} is outside allowed roots. Allowed: [{roots}]",
        )

    root_path, root = matched
    relative = PurePosixPath(resolved.relative_to(root_path).as_posix())
    patterns = (*DEFAULT_BLOCKED_PATTERNS, *allowlist.blocked_patterns, *root.blocked_patterns)
    hit = _matches_blocked(relative, patterns)
    if hit is not None:
        return _deny(
            mount,
            MountDecisionReason.BLOCKED_PATTERN,
            f"Path matches blocked pattern {hit!r}",
        )

    container_path = _container_target(mount, resolved)
    if container_path is None:
        return _deny(
            mount,
            MountDecisionReason.INVALID_CONTAINER_PATH,
            f"Invalid container path: {mount.container_path!r}",
        )

    readonly = (
        mount.readonly
        or not root.allow_read_write
        or (allowlist.non_main_read_only and not is_main)
    )

    return MountDecision(
        allowed=True,
        requested_path=mount.host_path,
        reason=MountDecisionReason.WITHIN_ROOT,
        detail=f"Within allowed root {root_path}",
        host_path=resolved,
        container_path=container_path,
        readonly=readonly,
        matched_root=root_path,
    )


def validate_mounts(
    mounts: Iterable[AdditionalMount],
    allowlist: MountAllowlist | None,
    *,
    is_main: bool,
    allowlist_path: Path,
) -> list[ApprovedMount]:
    """Validate a group's full mount set. Fails closed on the first denial.

    Raises:
        MountSecurityError: If any mount is denied. No partial set is returned.
    """
    approved: list[ApprovedMount] = []
    for mount in mounts:
        decision = validate_mount(
            mount, allowlist, is_main=is_main, allowlist_path=allowlist_path
        )
        if not decision.allowed:
            logger.warning("Mount rejected: %s", decision)
        approved.append(decision.raise_if_denied())
    return approved
