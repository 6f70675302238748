"""Operator engine for manifest-based infrastructure orchestration.

Walks a manifest graph to plan and execute create/update/replace/destroy
operations through a provider, persisting realized state after every node.

Package name uses 'manifest_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
