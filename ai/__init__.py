"""
Recommendation Module

Turns a portfolio snapshot and delegation constraints into an allocation
recommendation from an upstream language model, with retry, provider
failover and a deterministic local fallback.

The recommendation is advisory only: core.guardrails decides what executes.
"""
