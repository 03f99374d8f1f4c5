"""
Per-provider callback adapters.

Each provider names the same values differently and signs its callbacks with
its own canonical string. An adapter bundles both contracts for one provider;
the pipeline selects one by ``GameProvider`` and never branches on provider
names itself.
"""
import json
import math
from typing import Any

from game_rewards.config import GameProvider, ProviderConfig, ValueType
from game_rewards.contracts.callbacks import ParsedCallback
from game_rewards.errors import MalformedCallback


SESSION_TOKEN_FIELDS = ("sessionToken", "session_token", "token")


def render_value(value: Any) -> str:
    """
    Render a scalar the way the providers' JavaScript signers interpolate it.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(render_value(v) for v in value)
    return str(value)


def _normalize_numbers(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _normalize_numbers(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize_numbers(v) for v in value]
    return value


def _first_present(payload: dict, fields: tuple) -> Any:
    # Alias lookup follows the providers' "first truthy value wins" rule.
    for field in fields:
        value = payload.get(field)
        if value:
            return value
    return None


def _as_number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return float(bool(value))
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


class ProviderAdapter:
    provider: GameProvider
    value_type: ValueType
    transaction_id_fields: tuple = ("transactionId",)
    user_id_fields: tuple = ("userId",)
    value_fields: tuple = ()
    game_id_fields: tuple = ("gameId",)
    signature_fields: tuple = ("signature", "sig")
    default_launch_url: str = ""

    def parse(self, payload: dict) -> ParsedCallback:
        transaction_id = _first_present(payload, self.transaction_id_fields)
        if transaction_id is None:
            raise MalformedCallback("Missing transaction ID")
        user_id = _first_present(payload, self.user_id_fields)
        if user_id is None:
            raise MalformedCallback("Missing user ID")
        game_id = _first_present(payload, self.game_id_fields)
        session_token = _first_present(payload, SESSION_TOKEN_FIELDS)
        return ParsedCallback(
            providerTransactionId=render_value(transaction_id),
            userId=render_value(user_id),
            rewardValue=_as_number(_first_present(payload, self.value_fields)),
            gameId=render_value(game_id) if game_id is not None else None,
            signature=render_value(_first_present(payload, self.signature_fields) or ""),
            sessionToken=render_value(session_token) if session_token is not None else None,
            rawPayload=dict(payload),
        )

    def canonicalize(self, payload: dict) -> str:
        raise NotImplementedError

    def sdk_config(self, config: ProviderConfig, user_id: str, game_id: str) -> dict:
        raise NotImplementedError


class GamezopAdapter(ProviderAdapter):
    provider = GameProvider.GAMEZOP
    value_type = ValueType.OPAQUE_POINTS
    transaction_id_fields = ("transactionId", "txnId")
    user_id_fields = ("userId", "userExternalId")
    value_fields = ("reward", "points")
    default_launch_url = "https://games.gamezop.com/play/{gameId}?userId={userId}&sessionToken={sessionToken}"

    def canonicalize(self, payload: dict) -> str:
        unsigned = {k: v for k, v in payload.items() if k not in self.signature_fields}
        return json.dumps(_normalize_numbers(unsigned), separators=(",", ":"), ensure_ascii=False)

    def sdk_config(self, config: ProviderConfig, user_id: str, game_id: str) -> dict:
        return {"partnerId": config.app_id, "userId": user_id, "gameId": game_id}


class AdjoeAdapter(ProviderAdapter):
    provider = GameProvider.ADJOE
    value_type = ValueType.TIME_SECONDS
    transaction_id_fields = ("transactionId", "trans_id")
    user_id_fields = ("userId", "user_id")
    value_fields = ("playtimeSeconds", "playtime")
    game_id_fields = ("appId", "gameId")
    default_launch_url = "https://adj.st/playtime?userId={userId}&appId={appId}&sessionToken={sessionToken}"

    def canonicalize(self, payload: dict) -> str:
        # Same alias lookup as parse(), so every credited field is covered.
        fields = (self.user_id_fields, self.transaction_id_fields, self.value_fields)
        values = [_first_present(payload, aliases) for aliases in fields]
        if any(value is None for value in values):
            raise ValueError("positional signature field missing")
        return "|".join(render_value(value) for value in values)

    def sdk_config(self, config: ProviderConfig, user_id: str, game_id: str) -> dict:
        return {"appId": config.app_id, "userId": user_id, "sdkKey": config.api_key}


class QurekaAdapter(ProviderAdapter):
    provider = GameProvider.QUREKA
    value_type = ValueType.CURRENCY_UNITS
    transaction_id_fields = ("transactionId", "txn_id")
    user_id_fields = ("userId", "user_id")
    value_fields = ("coins", "reward")
    game_id_fields = ("quizId", "gameId")
    signature_fields = ("signature", "hash")
    default_launch_url = "https://qurekagames.com/play?userId={userId}&quizId={gameId}&token={sessionToken}"

    def canonicalize(self, payload: dict) -> str:
        keys = sorted(k for k in payload if k not in self.signature_fields)
        return "&".join(f"{k}={render_value(payload[k])}" for k in keys)

    def sdk_config(self, config: ProviderConfig, user_id: str, game_id: str) -> dict:
        return {"apiKey": config.api_key, "userId": user_id, "quizId": game_id}


ADAPTERS: dict[GameProvider, ProviderAdapter] = {
    adapter.provider: adapter for adapter in (GamezopAdapter(), AdjoeAdapter(), QurekaAdapter())
}


def get_adapter(provider: GameProvider) -> ProviderAdapter:
    return ADAPTERS[provider]


def parse_callback(provider: GameProvider, payload: dict) -> ParsedCallback:
    return get_adapter(provider).parse(payload)
