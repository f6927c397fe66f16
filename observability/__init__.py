"""Structured events shared by the orchestrator, knowledge engine and API."""
