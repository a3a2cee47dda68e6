from signalgate.execution.factory import create_broker, create_fallback_broker
from signalgate.execution.live import LiveBroker
from signalgate.execution.paper import PaperBroker


def test_default_is_paper(make_settings) -> None:
    assert isinstance(create_broker(make_settings()), PaperBroker)


def test_live_and_oanda_alias(make_settings) -> None:
    for broker_type in ("live", "OANDA"):
        settings = make_settings(broker={"type": broker_type})
        assert isinstance(create_broker(settings), LiveBroker)


def test_unknown_type_falls_back_to_paper(make_settings) -> None:
    settings = make_settings(broker={"type": "ibkr"})
    assert isinstance(create_broker(settings), PaperBroker)


def test_fallback_only_for_live_with_flag(make_settings) -> None:
    assert create_fallback_broker(make_settings(broker={"paper_fallback": True})) is None
    assert create_fallback_broker(make_settings(broker={"type": "live"})) is None
    fallback = create_fallback_broker(make_settings(broker={"type": "live", "paper_fallback": True}))
    assert isinstance(fallback, PaperBroker)
