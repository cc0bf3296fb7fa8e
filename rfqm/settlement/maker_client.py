from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp
from eth_utils import is_address

from rfqm.common import log_event

from .otc_order import OtcOrder
from .signatures import Signature
from .types import Fee, IndicativeQuote

PRICE_PATH = "/rfqm/v2/price"
SIGN_PATH = "/rfqm/v2/sign"
BODY_PREVIEW_LIMIT = 300


@dataclass(slots=True, frozen=True)
class SignRequest:
    order: OtcOrder
    order_hash: str
    expiry: int
    fee: Fee
    taker_signature: Signature
    trader: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "order": self.order.to_wire(),
            "orderHash": self.order_hash,
            "expiry": str(self.expiry),
            "fee": {"amount": str(self.fee.amount), "type": self.fee.type, "token": self.fee.token},
            "takerSignature": self.taker_signature.to_dict(),
            "trader": self.trader,
            "kind": "otc",
        }


def make_query_parameters(
    *,
    chain_id: int,
    tx_origin: str,
    taker_address: str,
    is_selling: bool,
    buy_token: str,
    sell_token: str,
    asset_fill_amount: int,
    fee: Fee,
) -> dict[str, str]:
    amount_key = "sellAmountBaseUnits" if is_selling else "buyAmountBaseUnits"
    return {
        "chainId": str(chain_id),
        "txOrigin": tx_origin,
        "takerAddress": taker_address,
        "buyTokenAddress": buy_token,
        "sellTokenAddress": sell_token,
        amount_key: str(asset_fill_amount),
        "protocolVersion": "4",
        "isLastLook": "true",
        "feeAmount": str(fee.amount),
        "feeToken": fee.token,
        "feeType": fee.type,
    }


def _body_preview(body: str) -> str:
    return body[:BODY_PREVIEW_LIMIT]


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_indicative_quote(maker_uri: str, payload: dict[str, Any]) -> IndicativeQuote | None:
    required = ("maker", "makerToken", "takerToken", "makerAmount", "takerAmount", "expiry")
    if not payload or any(payload.get(key) in (None, "") for key in required):
        return None
    if not all(is_address(payload[key]) for key in ("maker", "makerToken", "takerToken")):
        return None
    maker_amount, taker_amount, expiry = (_to_int(payload[key]) for key in ("makerAmount", "takerAmount", "expiry"))
    if maker_amount is None or taker_amount is None or expiry is None:
        return None
    return IndicativeQuote(
        maker=str(payload["maker"]),
        maker_uri=maker_uri,
        maker_token=str(payload["makerToken"]),
        taker_token=str(payload["takerToken"]),
        maker_amount=maker_amount,
        taker_amount=taker_amount,
        expiry=expiry,
    )


class QuoteServerClient:
    """HTTP client for maker price and last-look sign endpoints."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        price_timeout_seconds: float,
        sign_timeout_seconds: float,
        api_key: str = "",
    ) -> None:
        self._logger = logger
        self._price_timeout_seconds = price_timeout_seconds
        self._sign_timeout_seconds = sign_timeout_seconds
        self._api_key = api_key
        self._session: aiohttp.ClientSession | None = None

    def _build_headers(self, integrator_id: str) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "rfqm-worker/1.0",
            "0x-integrator-id": integrator_id,
        }
        if self._api_key:
            headers["0x-api-key"] = self._api_key
        return headers

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Maker HTTP session is not initialized.")
        return self._session

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self.connect()

    async def _read_json(self, response: aiohttp.ClientResponse, *, maker_uri: str) -> Any:
        body = await response.text()
        if response.status >= 400:
            raise RuntimeError(
                f"Maker request failed: maker_uri={maker_uri} status={response.status} "
                f"body={_body_preview(body)!r}"
            )
        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as error:
            raise RuntimeError(f"Maker returned malformed JSON: maker_uri={maker_uri}") from error

    async def get_price(
        self,
        maker_uri: str,
        integrator_id: str,
        params: dict[str, str],
    ) -> IndicativeQuote | None:
        session = self._require_session()
        async with session.get(
            f"{maker_uri}{PRICE_PATH}",
            params=params,
            headers=self._build_headers(integrator_id),
            timeout=aiohttp.ClientTimeout(total=self._price_timeout_seconds),
        ) as response:
            payload = await self._read_json(response, maker_uri=maker_uri)

        if not isinstance(payload, dict):
            return None
        return parse_indicative_quote(maker_uri, payload)

    async def batch_get_price(
        self,
        maker_uris: list[str],
        integrator_id: str,
        params: dict[str, str],
    ) -> list[IndicativeQuote]:
        results = await asyncio.gather(
            *(self.get_price(maker_uri, integrator_id, params) for maker_uri in maker_uris),
            return_exceptions=True,
        )

        quotes: list[IndicativeQuote] = []
        for maker_uri, result in zip(maker_uris, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                log_event(
                    self._logger,
                    level="warning",
                    event="maker_price_failed",
                    message="Maker price request failed",
                    maker_uri=maker_uri,
                    error=str(result),
                )
                continue
            if result is not None:
                quotes.append(result)
        return quotes

    async def sign(
        self,
        maker_uri: str,
        integrator_id: str,
        request: SignRequest,
    ) -> Signature | None:
        """Ask the maker for a last-look signature. ``None`` means the maker declined."""
        session = self._require_session()
        async with session.post(
            f"{maker_uri}{SIGN_PATH}",
            json=request.to_payload(),
            headers=self._build_headers(integrator_id),
            timeout=aiohttp.ClientTimeout(total=self._sign_timeout_seconds),
        ) as response:
            payload = await self._read_json(response, maker_uri=maker_uri)

        if not isinstance(payload, dict) or not payload.get("proceedWithFill"):
            return None

        fee = payload.get("fee") or {}
        fee_amount = fee.get("amount")
        fee_token = str(fee.get("token") or "")
        if (
            fee_amount is None
            or int(fee_amount) != request.fee.amount
            or fee_token.lower() != request.fee.token.lower()
        ):
            log_event(
                self._logger,
                level="warning",
                event="maker_fee_mismatch",
                message="Maker acknowledged a different fee than requested",
                maker_uri=maker_uri,
                order_hash=request.order_hash,
                requested_fee=request.fee.to_dict(),
                acknowledged_fee=fee,
            )
            return None

        raw_signature = payload.get("makerSignature")
        if not isinstance(raw_signature, dict):
            raise RuntimeError(f"Maker accepted without a signature: maker_uri={maker_uri}")
        return Signature.from_dict(raw_signature)
