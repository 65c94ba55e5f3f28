"""Shared fixtures: a controllable clock, record factories and stores."""
from __future__ import annotations
from datetime import datetime, timedelta, timezone

import pytest

from lifecycle_engine.config import Settings, reset_settings
from lifecycle_engine.infrastructure.clock import Clock
from lifecycle_engine.models.domain import Account, LifecycleState, UserSnapshot
from lifecycle_engine.models.flows import parse_flow
from lifecycle_engine.store.memory import InMemoryStore

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
ORG = "org_1"


class FakeClock(Clock):
    """Clock whose ``sleep`` advances time instead of blocking."""

    def __init__(self, start: datetime = NOW):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current = self.current + timedelta(seconds=seconds, **kwargs)
        return self.current


def make_user(**overrides) -> UserSnapshot:
    """An engaged, activated user on the Growth plan unless overridden."""
    fields = dict(
        id="u_1",
        name="Ada Lovelace",
        email="ada@example.com",
        lifecycle_state=LifecycleState.ACTIVATED,
        plan="Growth",
        mrr=99,
        last_login_days_ago=1,
        login_frequency_7d=4,
        login_frequency_30d=14,
        feature_usage_30d=["Dashboard", "Reports", "Flows"],
        session_depth_minutes=18,
        activated_date="2025-01-05",
        signup_date="2025-01-01",
        nps_score=8,
        seat_count=3,
        seat_limit=10,
        api_calls_30d=100,
        api_limit=10000,
        days_until_renewal=200,
        account_id="acc_1",
    )
    fields.update(overrides)
    return UserSnapshot(**fields)


def make_account(**overrides) -> Account:
    fields = dict(
        id="acc_1",
        name="Analytical Engines Ltd",
        plan="Growth",
        mrr=99,
        arr=1188,
        seat_limit=10,
        user_count=3,
    )
    fields.update(overrides)
    return Account(**fields)


def flow_json(nodes: list[dict], edges: list[tuple], **extra) -> dict:
    """Builder-style flow JSON; ``edges`` are ``(source, target)`` or ``(source, target, handle)``."""
    data = {
        "id": extra.pop("id", "flow_1"),
        "name": extra.pop("name", "Welcome"),
        "status": extra.pop("status", "active"),
        "nodes": nodes,
        "edges": [
            {
                "id": f"e{i}",
                "source": e[0],
                "target": e[1],
                **({"sourceHandle": e[2]} if len(e) > 2 else {}),
            }
            for i, e in enumerate(edges)
        ],
    }
    data.update(extra)
    return data


def node(node_id: str, node_type: str, **data) -> dict:
    return {"id": node_id, "type": node_type, "data": {"label": node_id, "nodeType": node_type, **data}}


def make_flow(nodes: list[dict], edges: list[tuple], **extra):
    return parse_flow(flow_json(nodes, edges, **extra))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    monkeypatch.setenv("EMAIL_PROVIDER", "log")
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def user() -> UserSnapshot:
    return make_user()


@pytest.fixture
def account() -> Account:
    return make_account()
