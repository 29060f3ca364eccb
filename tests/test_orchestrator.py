import json

import pytest

from arena.api import ModelTimeoutError, OpenRouterClient
from arena.data.sqlite_store import SQLiteStore
from arena.execution.trade_engine import TradeEngine
from arena.models.schemas import Market, ModelResponse
from arena.orchestrator import DecisionOrchestrator

MARKETS = [
    Market(id="btc100", question="Will Bitcoin hit $100k?", current_price=0.5),
    Market(id="btc120", question="Will Bitcoin hit $120k?", current_price=0.5),
    Market(id="rain", question="Will it rain in London tomorrow?", current_price=0.5),
]


class FakeClient:
    """Replays scripted replies; an exception instance is raised instead of returned."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def chat(self, model_id, messages):
        self.calls.append((model_id, messages))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return ModelResponse(content=reply, model=model_id, prompt_tokens=100, completion_tokens=10)


def bet_reply(*bets, reasoning="r"):
    return json.dumps(
        {
            "action": "BET",
            "reasoning": reasoning,
            "bets": [{"market_id": m, "side": "YES", "amount": a} for m, a in bets],
        }
    )


HOLD = json.dumps({"action": "HOLD", "reasoning": "wait"})


def setup(tmp_path, client, cash=10000.0):
    store = SQLiteStore(str(tmp_path / "arena.db"))
    agent = store.create_agent("a1", "openai/gpt-test", cash)
    for market in MARKETS:
        store.upsert_market(market)
    engine = TradeEngine(store, min_bet=50, max_bet_percent=0.10)
    return store, agent, DecisionOrchestrator(store, client, engine, max_retries=2)


def test_hold(tmp_path):
    client = FakeClient(HOLD)
    store, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "hold"
    assert record.retry_count == 0
    assert record.prompt_tokens == 100
    assert len(client.calls) == 1
    assert store.fetch_decisions("a1") == [(record.decision_id, "HOLD", "wait", 0, None)]


def test_valid_bet_is_executed(tmp_path):
    client = FakeClient(bet_reply(("rain", 500)))
    store, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "executed"
    assert record.trades_executed == 1
    assert record.salvage is None
    assert store.get_cash_balance("a1") == pytest.approx(9500)

    (trade,) = store.fetch_trades("a1")
    assert trade.decision_id == record.decision_id


def test_retry_prompt_lists_errors_and_truncated_response(tmp_path):
    first = bet_reply(("nope", 100), reasoning="x" * 600)
    client = FakeClient(first, bet_reply(("rain", 100)))
    store, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "executed"
    assert record.retry_count == 1
    assert record.prompt_tokens == 200

    retry_prompt = client.calls[1][1][-1]["content"]
    assert "PREVIOUS RESPONSE WAS INVALID" in retry_prompt
    assert "- Invalid market_id: nope" in retry_prompt
    assert first[:500] + "..." in retry_prompt
    assert first not in retry_prompt

    system_prompt, stored_prompt = store.fetch_decision_prompts(record.decision_id)
    assert stored_prompt == retry_prompt
    assert system_prompt == client.calls[1][1][0]["content"]


def test_exhausted_retries_fall_back_to_salvage(tmp_path):
    client = FakeClient(bet_reply(("btc100", 100), ("btc120", 100)))
    store, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert len(client.calls) == 3
    assert record.retry_count == 2
    assert not record.validation.valid
    assert record.salvage.removed_count == 1
    assert [b.market_id for b in record.salvage.valid_bets] == ["btc100"]
    assert record.status == "executed"
    assert [t.market_id for t in store.fetch_trades("a1")] == ["btc100"]
    assert store.fetch_decisions("a1")[0][4] is not None


def test_nothing_survives_salvage(tmp_path):
    client = FakeClient(bet_reply(("nope", 100)))
    store, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "no_trades"
    assert "Invalid market_id: nope" in record.error
    assert store.fetch_trades() == []
    assert store.get_cash_balance("a1") == pytest.approx(10000)


def test_invalid_sell_is_not_executed(tmp_path):
    reply = json.dumps({"action": "SELL", "sells": [{"position_id": "p9"}], "reasoning": "exit"})
    client = FakeClient(reply)
    store, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "no_trades"
    assert record.error == "Invalid position_id: p9"
    assert store.fetch_trades() == []


def test_valid_sell_is_executed(tmp_path):
    client = FakeClient(bet_reply(("rain", 100)))
    store, agent, orchestrator = setup(tmp_path, client)
    orchestrator.run_cycle(agent, MARKETS)
    (position,) = store.list_open_positions(agent_id="a1")

    orchestrator.client = FakeClient(
        json.dumps({"action": "SELL", "sells": [{"position_id": position.id, "percentage": 50}], "reasoning": "trim"})
    )
    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "executed"
    assert record.sell_results[0].shares_sold == pytest.approx(100)
    assert store.get_cash_balance("a1") == pytest.approx(9950)


def test_model_timeout_counts_as_attempt(tmp_path):
    client = FakeClient(ModelTimeoutError("slow"), HOLD)
    _, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "hold"
    assert record.retry_count == 1
    assert len(client.calls) == 2


def test_model_failing_every_attempt(tmp_path):
    client = FakeClient(ModelTimeoutError("slow"))
    store, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "error"
    assert record.error.startswith("Model call failed")
    assert len(client.calls) == 3
    assert store.fetch_decisions("a1")[0][1] == "ERROR"


def test_bankrupt_agent_is_skipped(tmp_path):
    client = FakeClient(HOLD)
    store, agent, orchestrator = setup(tmp_path, client, cash=20)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "bankrupt"
    assert client.calls == []
    assert store.get_agent("a1").status == "bankrupt"


def test_unexpected_failure_becomes_error_record(tmp_path):
    client = FakeClient(RuntimeError("boom"))
    _, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "error"
    assert record.error == "boom"


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def test_malformed_model_reply_is_retried(tmp_path):
    bodies = [
        {"choices": ["oops"]},
        {"choices": [{"message": {"content": HOLD}}], "usage": {"prompt_tokens": None}},
    ]
    client = OpenRouterClient(api_key="sk-test", url="https://example.com", retries=0)
    client.session = type("S", (), {})()
    client.session.post = lambda *_args, **_kwargs: FakeResponse(200, bodies.pop(0))
    store, agent, orchestrator = setup(tmp_path, client)

    record = orchestrator.run_cycle(agent, MARKETS)
    assert record.status == "hold"
    assert record.retry_count == 1
    assert record.decision.action == "HOLD"
    assert record.validation.valid
    assert store.fetch_decisions("a1") == [(record.decision_id, "HOLD", "wait", 1, None)]
