"""
Tests package - test suite for kube-forwarder.

Contains:
- unit/: Unit tests for individual components, with the Kubernetes API mocked
"""
