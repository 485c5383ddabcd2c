"""Operator engine for declarative resource orchestration.

Builds a dependency graph from resource declarations, diffs it against
persisted state, and drives provider adapters to converge real resources
to the declared state.

Package name uses 'resource_opr' (short for operator) to avoid collision
with Python's stdlib 'resource' module.
"""
