"""
NodeFlow - execution engine for node-graph agent/job workflows.

Runs graphs of scripted nodes with fan-in aggregation, concurrent
branches, an event log and deterministic step-by-step playback.
"""

__version__ = "1.0.0"
