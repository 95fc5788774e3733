from bitredict.services import markets
from bitredict.services import outcomes as oc


def test_parse_market_id_with_family_suffix():
    b = markets.parse_market_id("19134512:ou25")
    assert b is not None
    assert b.fixture_id == "19134512"
    assert b.family == oc.MARKET_OU25
    assert b.market_id == "19134512:OU25"
    assert not b.is_half_time


def test_parse_market_id_bare_fixture_uses_market_type():
    b = markets.parse_market_id("19134512", market_type=6)
    assert b.family == oc.MARKET_HT_1X2
    assert b.is_half_time


def test_parse_market_id_aliases():
    assert markets.parse_market_id("1:moneyline").family == oc.MARKET_1X2
    assert markets.parse_market_id("1:HT-OU05").family == oc.MARKET_HT_OU05


def test_parse_market_id_unbindable():
    assert markets.parse_market_id("") is None
    assert markets.parse_market_id(None) is None
    assert markets.parse_market_id("abc:1X2") is None
    assert markets.parse_market_id("123:CORNERS") is None
    assert markets.parse_market_id("123") is None
    assert markets.parse_market_id("123", market_type=99) is None
