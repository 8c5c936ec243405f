"""End-to-end pipeline scenarios.

Every collaborator that would touch git, GitHub or a model is replaced by an
in-memory fake, so these run without external services:

    pytest tests/integration/ -v -m integration
"""
