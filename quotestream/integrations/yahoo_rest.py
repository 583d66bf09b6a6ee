from __future__ import annotations

import os
from typing import Any, Dict, Iterable, Optional

import requests

from quotestream.errors import ConfigError
from quotestream.schemas.quote import Currency, QuoteMeta


class YahooRestClient:
    """Quote metadata lookup (display name, native currency) used once at startup."""

    _BASE_URL = "https://query1.finance.yahoo.com"
    _HEADERS = {"user-agent": "Mozilla/5.0 (quotestream)", "accept": "application/json"}

    def __init__(
        self,
        session: Optional[Any] = None,
        base_url: Optional[str] = None,
        timeout_sec: float = 5.0,
    ) -> None:
        self.session = session or requests
        self.base_url = base_url or os.getenv("YAHOO_REST_URL", self._BASE_URL)
        self.timeout_sec = timeout_sec

    @staticmethod
    def _parse_row(row: Dict[str, Any]) -> QuoteMeta:
        symbol = str(row.get("symbol") or "")
        if not symbol:
            raise ConfigError("META_MISSING_SYMBOL")
        code = row.get("currency")
        # exact match only: "GBp" and "GBX" are pence, not GBP
        try:
            currency = Currency(str(code))
        except ValueError as exc:
            raise ConfigError(f"UNSUPPORTED_CURRENCY: {symbol}={code!r}") from exc
        name = row.get("shortName") or row.get("longName") or symbol
        return QuoteMeta(symbol=symbol, name=str(name), currency=currency)

    def get_quote_meta(self, symbols: Iterable[str]) -> Dict[str, QuoteMeta]:
        wanted = [s for s in dict.fromkeys(symbols) if s]
        if not wanted:
            return {}

        try:
            response = self.session.get(
                f"{self.base_url}/v7/finance/quote",
                headers=self._HEADERS,
                params={"symbols": ",".join(wanted)},
                timeout=self.timeout_sec,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ConfigError(f"META_LOOKUP_FAILED: {exc}") from exc

        rows = (payload.get("quoteResponse") or {}).get("result") or []
        out: Dict[str, QuoteMeta] = {}
        for row in rows:
            meta = self._parse_row(row)
            out[meta.symbol] = meta
        print(f"[META][lookup] requested={len(wanted)} resolved={len(out)}", flush=True)
        return out
