"""Test suite for formpublisher.

This package contains tests for:
- Composition model (core fields, pairing, reorder)
- Version store and activation state
- Publish/withdraw orchestration, single-flight and progress snapshots
- Script registry HTTP client and artifact generation
- Signup intake deduplication and review
- Integration scenarios through FormRuntime
"""
