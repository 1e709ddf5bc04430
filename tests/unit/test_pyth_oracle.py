"""Unit tests for Pyth oracle — price response parsing and error handling."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from yield_optimizer.config import PriceOracleConfig, PythConfig
from yield_optimizer.oracles.pyth import PythOracle, parse_price_update


@pytest.fixture()
def oracle() -> PythOracle:
    return PythOracle(
        PriceOracleConfig(
            pyth=PythConfig(
                hermes_url="https://hermes.example.com/v2/updates/price/latest",
                feeds={"ETH": "0xAAA111", "POL": "bbb222", "USDC": "ccc333"},
            ),
            static_prices={"USDC": 1.0, "DAI": 1.0},
        )
    )


def _make_pyth_response(items: list[dict]) -> dict:
    return {"parsed": items}


def _mock_session(status: int = 200, data: dict | None = None) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=data or {})
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.get = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


class TestParsePriceUpdate:
    def test_matches_ids_without_prefix_or_case(self) -> None:
        data = _make_pyth_response(
            [{"id": "aaa111", "price": {"price": "200000000000", "expo": "-8"}}]
        )
        prices = parse_price_update(data, {"ETH": "0xAAA111"})
        assert prices == {"ETH": pytest.approx(2000.0)}

    def test_unknown_feed_ignored(self) -> None:
        data = _make_pyth_response(
            [{"id": "zzz", "price": {"price": "1", "expo": "0"}}]
        )
        assert parse_price_update(data, {"ETH": "aaa"}) == {}


class TestPythOracleFetchPrices:
    @pytest.mark.asyncio
    async def test_parses_response_correctly(self, oracle: PythOracle) -> None:
        mock_session = _mock_session(
            data=_make_pyth_response(
                [
                    {"id": "aaa111", "price": {"price": "200000000000", "expo": "-8"}},
                    {"id": "bbb222", "price": {"price": "50000000", "expo": "-8"}},
                    {"id": "ccc333", "price": {"price": "99990000", "expo": "-8"}},
                ]
            )
        )

        with patch("yield_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("yield_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices()

        assert prices["ETH"] == pytest.approx(2000.0)
        assert prices["POL"] == pytest.approx(0.5)
        # Live price wins over the static fallback
        assert prices["USDC"] == pytest.approx(0.9999)
        assert prices["DAI"] == 1.0

    @pytest.mark.asyncio
    async def test_http_error_falls_back_to_static(self, oracle: PythOracle) -> None:
        mock_session = _mock_session(status=500)

        with patch("yield_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("yield_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices()

        assert prices == {"USDC": 1.0, "DAI": 1.0}

    @pytest.mark.asyncio
    async def test_handles_network_error(self, oracle: PythOracle) -> None:
        mock_session = AsyncMock()
        mock_session.get = MagicMock(side_effect=ConnectionError("timeout"))
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch("yield_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("yield_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices(symbols=["ETH"])

        assert prices == {}

    @pytest.mark.asyncio
    async def test_symbol_filter(self, oracle: PythOracle) -> None:
        mock_session = _mock_session(
            data=_make_pyth_response(
                [{"id": "aaa111", "price": {"price": "200000000000", "expo": "-8"}}]
            )
        )

        with patch("yield_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("yield_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices(symbols=["eth"])

        assert set(prices) == {"ETH"}
        url = mock_session.get.call_args[0][0]
        assert "ids[]=0xAAA111" in url
        assert "bbb222" not in url

    @pytest.mark.asyncio
    async def test_static_only_symbols_skip_network(self, oracle: PythOracle) -> None:
        with patch("yield_optimizer.oracles.pyth.aiohttp.ClientSession") as session_cls:
            prices = await oracle.fetch_prices(symbols=["DAI"])

        session_cls.assert_not_called()
        assert prices == {"DAI": 1.0}
