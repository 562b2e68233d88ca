"""Backend package for the operations orchestration agent.

This package contains the ingress sources, event bus, decision engine,
action handlers, per-org agents, HTTP routes, and persistence models.
"""
