"""Issue fabrication orchestration core.

This package drives internal issues through the canonical lifecycle while
mirroring them to GitHub issues and GitHub Actions workflow runs:

- Canonical issue state machine with optimistic-concurrency persistence
- Canonical-ID resolver for at-most-one mirror issue per canonical ID
- Run adapter for idempotent workflow dispatch, polling and ingestion
- Orchestrator composing the three and folding run status back into state
"""
