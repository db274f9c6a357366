"""GitHub API access for the orchestration core.

This module provides:
- GitHubClient: issue search and creation, workflow dispatch, run reads
- Repository access policies (allowlist with owner wildcards)
- GitHubMirrorPublisher: creation of marker-carrying mirror issues

The client does not retry; see src.fabrication.retry.
"""

from src.fabrication.github.client import GitHubClient
from src.fabrication.github.mirror import GitHubMirrorPublisher
from src.fabrication.github.policy import (
    AllowAllRepoAccessPolicy,
    AllowlistRepoAccessPolicy,
    RepoAccessPolicy,
)

__all__ = [
    "AllowAllRepoAccessPolicy",
    "AllowlistRepoAccessPolicy",
    "GitHubClient",
    "GitHubMirrorPublisher",
    "RepoAccessPolicy",
]
