"""
Strata - lifecycle orchestrator for two-tier CloudFormation topologies.

This package applies, observes and tears down one shared (foundation)
stack plus any number of per-service project stacks that depend on it.
"""

__version__ = "0.1.0"
