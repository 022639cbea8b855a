"""Environment id derivation and normalization."""

import hashlib
import logging
import re
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Leaves room for provider prefixes/suffixes within a 63 char DNS label.
MAX_ENV_ID_LENGTH = 40
_HASH_LENGTH = 6


@dataclass(frozen=True)
class ProjectContext:
    """What the environment id can be derived from."""

    project_name: str | None = None
    branch: str | None = None


def normalize_env_id(value: str, max_length: int = MAX_ENV_ID_LENGTH) -> str:
    """Lowercase, restrict to [a-z0-9-], collapse dashes, bound the length.

    Values that have to be truncated get a short hash of the full value
    appended so that distinct long inputs stay distinct.
    """
    normalized = re.sub(r"[^a-z0-9-]+", "-", value.lower())
    normalized = re.sub(r"-{2,}", "-", normalized).strip("-")
    if not normalized:
        raise ValueError(f"Cannot derive an environment id from {value!r}")
    if not normalized[0].isalpha():
        normalized = f"e-{normalized}"
    if len(normalized) <= max_length:
        return normalized
    digest = hashlib.sha1(value.encode()).hexdigest()[:_HASH_LENGTH]
    head = normalized[: max_length - _HASH_LENGTH - 1].rstrip("-")
    return f"{head}-{digest}"


def derive_env_id(context: ProjectContext) -> str | None:
    """Default detector: ``<project>[-<branch>]``. None without a project name."""
    if not context.project_name:
        return None
    raw = context.project_name
    if context.branch:
        raw = f"{raw}-{context.branch}"
    return normalize_env_id(raw)


def detect_git_branch(cwd=None) -> str | None:
    """Current git branch, or None outside a repository / on detached HEAD."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=10,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    branch = result.stdout.strip()
    if result.returncode != 0 or not branch or branch == "HEAD":
        return None
    return branch
