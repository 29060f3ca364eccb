import pytest

from arena.decision.topics import DEFAULT_CLASSIFIER, TopicClassifier, TopicRule
from arena.decision.validator import money, validate
from arena.models.schemas import BetInstruction, Decision, SellInstruction

MARKETS = {"btc100", "btc120", "eth5k", "fed", "rain"}
QUESTIONS = {
    "btc100": "Will Bitcoin hit $100k by March?",
    "btc120": "Will Bitcoin hit $120k by June?",
    "eth5k": "Will Ethereum reach $5k?",
    "fed": "Will the Fed cut interest rates in June?",
    "rain": "Will it rain in London tomorrow?",
}


def bet_decision(*bets):
    return Decision(
        action="BET",
        bets=[BetInstruction(market_id=m, side="YES", amount=a) for m, a in bets],
        reasoning="test",
    )


def check(decision, cash=10000.0, questions=QUESTIONS, positions=frozenset({"p1"})):
    return validate(decision, cash, 0.10, 50, MARKETS, positions, questions)


def correlation_errors(result):
    return [e for e in result.errors if "correlated" in e]


def test_hold_is_always_valid():
    result = check(Decision(action="HOLD", reasoning="wait"))
    assert result.valid
    assert result.errors == []


def test_error_decision_is_invalid_with_its_message():
    result = check(Decision.failure("Unknown action: SHORT"))
    assert not result.valid
    assert result.errors == ["Unknown action: SHORT"]


def test_valid_bet_passes():
    assert check(bet_decision(("btc100", 500), ("rain", 500))).valid


def test_minimum_bet_message():
    result = check(bet_decision(("rain", 30)))
    assert not result.valid
    assert any("Minimum bet is $50" in e for e in result.errors)


def test_cap_is_per_bet_not_cumulative():
    # each bet sits at the 10% cap; together they are 30% of cash
    assert check(bet_decision(("rain", 1000), ("btc100", 1000), ("fed", 1000))).valid

    result = check(bet_decision(("rain", 2000)))
    assert not result.valid
    assert "per-market maximum $1000.00" in result.errors[0]


def test_total_over_cash():
    result = check(bet_decision(("rain", 100), ("fed", 100)), cash=150)
    assert any(e.startswith("Total bets $200.00 exceed cash balance $150.00") for e in result.errors)


def test_unknown_market_skips_other_checks():
    result = check(bet_decision(("nope", 10)))
    assert result.errors == ["Invalid market_id: nope"]


def test_two_bitcoin_bets_give_exactly_one_correlation_error():
    result = check(bet_decision(("btc100", 100), ("btc120", 100)))
    assert not result.valid
    errors = correlation_errors(result)
    assert len(errors) == 1
    assert 'topic "bitcoin"' in errors[0]


def test_bitcoin_and_ethereum_are_independent():
    result = check(bet_decision(("btc100", 100), ("eth5k", 100)))
    assert correlation_errors(result) == []
    assert result.valid


def test_correlation_only_checked_when_questions_given():
    result = check(bet_decision(("btc100", 100), ("btc120", 100)), questions=None)
    assert result.valid


def test_all_violations_collected():
    result = check(bet_decision(("nope", 100), ("rain", 20), ("btc100", 5000), ("btc120", 100)), cash=5000)
    assert len(result.errors) == 5


def test_sell_position_ids_checked():
    decision = Decision(
        action="SELL",
        sells=[SellInstruction(position_id="p1"), SellInstruction(position_id="p9", percentage=50)],
        reasoning="exit",
    )
    result = check(decision)
    assert result.errors == ["Invalid position_id: p9"]


def test_validation_is_idempotent():
    decision = bet_decision(("btc100", 30), ("btc120", 3000), ("nope", 100))
    assert check(decision) == check(decision)


def test_money_formatting():
    assert money(50) == "$50"
    assert money(50.0) == "$50"
    assert money(12.5) == "$12.50"


@pytest.mark.parametrize(
    "question, expected",
    [
        ("Will BTC close above 90k?", {"bitcoin"}),
        ("Will ETH flip BTC?", {"bitcoin", "ethereum"}),
        ("Will the Super Bowl be decided in overtime?", {"superbowl"}),
        ("Will Portugal's election be won by the PS?", {"portugal-election"}),
        ("Will Portugal win the World Cup?", set()),
        ("Will Russia and Ukraine sign a ceasefire?", {"russia-ukraine"}),
        ("Will crude oil trade above $90?", {"oil"}),
        ("Will the FOMC hold rates?", {"fed"}),
    ],
)
def test_topic_classifier(question, expected):
    assert DEFAULT_CLASSIFIER.classify(question) == expected


@pytest.mark.parametrize(
    "question",
    [
        "Will it rain, whether or not forecasts agree?",
        "Will the golden retriever win best in show?",
        "Will the solution be found?",
        "Will a federal judge block the order?",
        "Will the boil-water notice be lifted?",
    ],
)
def test_topic_classifier_matches_whole_words_only(question):
    assert DEFAULT_CLASSIFIER.classify(question) == set()


def test_classifier_is_extensible():
    classifier = DEFAULT_CLASSIFIER.extend(TopicRule("weather", ["rain", "snow"]))
    questions = {"rain": "Will it rain today?", "fed": "Will it snow at the Fed?"}
    result = validate(bet_decision(("rain", 100), ("fed", 100)), 10000, 0.1, 50, MARKETS, set(), questions, classifier)
    assert len(correlation_errors(result)) == 1
    assert isinstance(classifier, TopicClassifier)
    assert "weather" not in {r.tag for r in DEFAULT_CLASSIFIER.rules}
