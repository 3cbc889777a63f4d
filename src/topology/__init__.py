"""Dependency-ordered lifecycle engine for the three-tier topology.

Walks a fixed resource graph to provision, discover and deprovision a
topology through a Cloud Gateway. The project tag is the only durable
key; nothing is persisted locally between runs.
"""
