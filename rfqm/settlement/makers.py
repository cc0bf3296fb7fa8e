from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

MAKER_OFFERINGS_CONFIG_KEY = "rfqm_maker_offerings"
MAINTENANCE_MODE_CONFIG_KEY = "maintenance_mode"


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True, frozen=True)
class MakerOffering:
    maker_uri: str
    pairs: tuple[tuple[str, str], ...]

    def supports(self, token_a: str, token_b: str) -> bool:
        wanted = {token_a.lower(), token_b.lower()}
        return any({first.lower(), second.lower()} == wanted for first, second in self.pairs)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MakerOffering":
        maker_uri = str(payload.get("maker_uri") or payload.get("makerUri") or "").rstrip("/")
        if not maker_uri:
            raise ValueError(f"Maker offering is missing maker_uri: {payload}")
        pairs: list[tuple[str, str]] = []
        for pair in payload.get("pairs") or []:
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise ValueError(f"Maker pair must have two tokens: {pair}")
            pairs.append((str(pair[0]), str(pair[1])))
        return cls(maker_uri=maker_uri, pairs=tuple(pairs))


def parse_maker_offerings(raw: Any) -> list[MakerOffering]:
    if raw is None or raw == "":
        return []
    parsed = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(parsed, list):
        raise ValueError("Maker offerings must be a JSON list")
    return [MakerOffering.from_dict(item) for item in parsed]


@dataclass(slots=True)
class RfqMakerManager:
    offerings: list[MakerOffering] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.offerings)

    def maker_uris_for_pair(self, maker_token: str, taker_token: str) -> list[str]:
        return [offering.maker_uri for offering in self.offerings if offering.supports(maker_token, taker_token)]

    @classmethod
    def from_env(cls) -> "RfqMakerManager":
        return cls(offerings=parse_maker_offerings(os.getenv("RFQM_MAKER_OFFERINGS")))

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "RfqMakerManager") -> "RfqMakerManager":
        raw = redis_config.get(MAKER_OFFERINGS_CONFIG_KEY)
        if not raw:
            return cls(offerings=list(defaults.offerings))
        return cls(offerings=parse_maker_offerings(raw))


@dataclass(slots=True)
class RuntimeConfig:
    makers: RfqMakerManager
    maintenance_mode: bool = False

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "RuntimeConfig") -> "RuntimeConfig":
        return cls(
            makers=RfqMakerManager.from_redis(redis_config, defaults.makers),
            maintenance_mode=to_bool(
                redis_config.get(MAINTENANCE_MODE_CONFIG_KEY),
                defaults.maintenance_mode,
            ),
        )
