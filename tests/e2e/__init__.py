"""End-to-end tests running pipelines in real containers.

These tests are:
- Skipped by default (require MATRIXCI_E2E environment variable)
- Dependent on a working docker CLI and daemon
- Slower than unit tests
"""
