"""Static indexers — opportunities and positions listed directly in config.yaml."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from ..cache import Clock, utc_now
from ..models import Asset, RiskLevel, StrategyType, YieldOpportunity

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any, default: datetime) -> datetime:
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_entry(entry: dict[str, Any], now: datetime, source: str) -> YieldOpportunity:
    """Build an opportunity from one config entry. Raises on missing fields."""
    chain = entry["chain"]
    protocol = entry["protocol"]
    asset = str(entry["asset"]).upper()
    strategy = StrategyType(str(entry.get("strategy_type", "lending")).lower())
    updated_at = _parse_timestamp(entry.get("updated_at"), now)

    max_deposit = entry.get("max_deposit")
    return YieldOpportunity(
        id=entry.get("id") or f"{chain}-{protocol}-{asset}-{strategy.value}".lower(),
        name=entry.get("name") or f"{protocol} {asset} {strategy.value.capitalize()}",
        chain=chain,
        protocol=protocol,
        asset_symbol=asset,
        apy=float(entry["apy"]),
        tvl_usd=float(entry.get("tvl_usd", 0.0)),
        risk_level=RiskLevel.parse(entry.get("risk_level", "Medium")),
        strategy_type=strategy,
        verified=bool(entry.get("verified", False)),
        created_at=_parse_timestamp(entry.get("created_at"), updated_at),
        updated_at=updated_at,
        min_deposit=float(entry.get("min_deposit", 0.0)),
        max_deposit=float(max_deposit) if max_deposit is not None else None,
        source=source,
    )


class StaticIndexer:
    """Serve a fixed opportunity list, re-stamped on each fetch."""

    def __init__(
        self,
        name: str,
        entries: tuple[dict[str, Any], ...],
        clock: Clock = utc_now,
    ) -> None:
        self._name = name
        self._entries = entries
        self._clock = clock

    @property
    def name(self) -> str:
        return self._name

    async def fetch_opportunities(self, chains: list[str]) -> list[YieldOpportunity]:
        now = self._clock()
        wanted = set(chains)
        opportunities: list[YieldOpportunity] = []
        for entry in self._entries:
            if entry.get("chain") not in wanted:
                continue
            try:
                opportunities.append(parse_entry(entry, now, self._name))
            except (KeyError, ValueError) as e:
                logger.warning("%s: skipping invalid entry %s: %s", self._name, entry, e)
        return opportunities


def parse_position(entry: dict[str, Any]) -> Asset:
    """Build a deployed position from one config entry. Raises on missing fields."""
    apy = entry.get("apy")
    risk_score = entry.get("risk_score")
    return Asset(
        symbol=str(entry["asset"]).upper(),
        chain=entry["chain"],
        quantity=float(entry["quantity"]),
        value_usd=float(entry.get("value_usd", 0.0)),
        protocol=entry["protocol"],
        apy=float(apy) if apy is not None else None,
        risk_score=float(risk_score) if risk_score is not None else None,
    )


class StaticPositionIndexer:
    """Serve positions recorded per holder in config."""

    def __init__(self, name: str, holdings: dict[str, tuple[dict[str, Any], ...]]) -> None:
        self._name = name
        self._holdings = holdings

    @property
    def name(self) -> str:
        return self._name

    async def fetch_positions(self, address: str, chains: list[str]) -> list[Asset]:
        wanted = set(chains)
        positions: list[Asset] = []
        for entry in self._holdings.get(address.lower(), ()):
            if entry.get("chain") not in wanted:
                continue
            try:
                positions.append(parse_position(entry))
            except (KeyError, ValueError) as e:
                logger.warning("%s: skipping invalid position %s: %s", self._name, entry, e)
        return positions
