"""Test helpers for the execution engine test suite"""

from tests.helpers.engine_stubs import (
    NOW,
    fixed_clock,
    make_delegation,
    make_recommendation,
    make_request,
    InMemoryDelegationStore,
    StaticPortfolioSource,
    StubRecommender,
    InMemoryHistory,
    FakeResponse,
    chat_completion,
)

__all__ = [
    "NOW",
    "fixed_clock",
    "make_delegation",
    "make_recommendation",
    "make_request",
    "InMemoryDelegationStore",
    "StaticPortfolioSource",
    "StubRecommender",
    "InMemoryHistory",
    "FakeResponse",
    "chat_completion",
]
