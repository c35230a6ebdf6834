"""Batch pipeline: phases, orchestrator and collaborators."""
