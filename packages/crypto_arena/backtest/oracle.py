# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Decision oracles for model-agent contestants.

An oracle turns a DecisionContext (rendered prompts plus structured
market data) into an OracleDecision. Implementations:
- ChatCompletionOracle: HTTP chat-completion endpoint via httpx
- HeuristicOracle: offline rule on the 24h change, used without credentials
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Protocol

import httpx
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from crypto_arena.errors import DecisionOracleTimeout, DecisionOracleUnavailable
from crypto_arena.settings import ArenaSettings

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class DecisionContext(BaseModel):
    """Payload handed to a decision oracle for one contestant tick."""

    contestant_id: str
    symbol: str
    timestamp: datetime
    intelligence_level: str
    system_prompt: str
    prompt: str
    market: Dict[str, Any] = Field(default_factory=dict)


class OracleDecision(BaseModel):
    """
    Parsed oracle reply.

    `percentage` is a 0-1 fraction of balance (BUY) or position
    (SELL/REDUCE). Replies given in percent (e.g. 50) are scaled down.
    """

    action: Literal["BUY", "SELL", "REDUCE", "WAIT", "HOLD"]
    percentage: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    reasoning: str = ""

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("percentage", mode="before")
    @classmethod
    def _normalize_percentage(cls, value: Any) -> Any:
        if value is None:
            return 0.0
        value = float(value)
        if 1.0 < value <= 100.0:
            value = value / 100.0
        return value


def parse_decision(text: str) -> OracleDecision:
    """
    Parse the first JSON object in a model reply.

    Accepts `decision` or `action` as the verb key.

    Raises:
        DecisionOracleUnavailable: no JSON object or invalid fields
    """
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        raise DecisionOracleUnavailable(f"No JSON object in oracle reply: {text!r:.200}")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise DecisionOracleUnavailable(f"Unparseable oracle reply: {e}") from e

    if not isinstance(data, dict):
        raise DecisionOracleUnavailable("Oracle reply is not a JSON object")

    if "action" not in data and "decision" in data:
        data["action"] = data["decision"]

    try:
        return OracleDecision.model_validate(data)
    except ValidationError as e:
        raise DecisionOracleUnavailable(f"Invalid oracle decision: {e}") from e


class DecisionOracle(Protocol):
    """External decision maker for model agents."""

    async def infer(
        self, context: DecisionContext, intelligence_level: str
    ) -> OracleDecision:
        ...


class ChatCompletionOracle:
    """
    Chat-completion client (MiniMax-compatible response shape).

    Sends [system, user] messages and parses choices[0].message.content.

    Usage:
        oracle = ChatCompletionOracle.from_settings(get_settings())
        decision = await oracle.infer(context, "indicator")
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        group_id: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.group_id = group_id
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: ArenaSettings) -> "ChatCompletionOracle":
        if not settings.minimax_api_key:
            raise DecisionOracleUnavailable("No oracle API key configured")
        return cls(
            api_key=settings.minimax_api_key,
            base_url=settings.oracle_base_url,
            model=settings.oracle_model,
            group_id=settings.minimax_group_id,
            timeout=settings.decision_timeout_seconds,
        )

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def chat(self, prompt: str, system_prompt: str) -> str:
        """Single chat completion; returns the message content."""
        params = {"GroupId": self.group_id} if self.group_id else None
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
        }

        client = self._get_client()
        try:
            response = await client.post(
                self.base_url,
                params=params,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise DecisionOracleTimeout(f"Oracle request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise DecisionOracleUnavailable(
                f"Oracle HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise DecisionOracleUnavailable(f"Oracle request failed: {e}") from e

        if not isinstance(data, dict):
            raise DecisionOracleUnavailable(
                f"Oracle returned a non-object body: {type(data).__name__}"
            )

        choices = data.get("choices") or []
        if not choices:
            base_resp = data.get("base_resp") or {}
            status_msg = base_resp.get("status_msg")
            if status_msg:
                raise DecisionOracleUnavailable(
                    f"Oracle error ({base_resp.get('status_code')}): {status_msg}"
                )
            raise DecisionOracleUnavailable("Oracle returned no completion choices")

        try:
            return choices[0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise DecisionOracleUnavailable(f"Malformed oracle choice: {e}") from e

    async def infer(
        self, context: DecisionContext, intelligence_level: str
    ) -> OracleDecision:
        logger.debug(
            f"[{context.contestant_id}] oracle call ({intelligence_level}), "
            f"prompt {len(context.prompt)} chars"
        )
        content = await self.chat(context.prompt, context.system_prompt)
        decision = parse_decision(content)
        logger.debug(
            f"[{context.contestant_id}] oracle -> {decision.action} "
            f"{decision.percentage:.0%}"
        )
        return decision

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class HeuristicOracle:
    """
    Offline stand-in for a language model.

    24h change below -threshold buys, above +threshold sells, else waits.
    """

    def __init__(
        self,
        threshold_pct: float = 5.0,
        buy_fraction: float = 0.5,
        sell_fraction: float = 0.3,
    ):
        self.threshold_pct = threshold_pct
        self.buy_fraction = buy_fraction
        self.sell_fraction = sell_fraction

    async def infer(
        self, context: DecisionContext, intelligence_level: str
    ) -> OracleDecision:
        change = context.market.get("change_24h_pct")
        if change is not None and change < -self.threshold_pct:
            return OracleDecision(
                action="BUY",
                percentage=self.buy_fraction,
                confidence=70,
                reasoning=f"24h drop of {change:.1f}% (simulated)",
            )
        if change is not None and change > self.threshold_pct:
            return OracleDecision(
                action="SELL",
                percentage=self.sell_fraction,
                confidence=65,
                reasoning=f"24h gain of {change:.1f}% (simulated)",
            )
        return OracleDecision(
            action="WAIT", percentage=0.0, confidence=50, reasoning="Simulated: wait"
        )
