import logging
import os
import uuid
from typing import List, Optional

import httpx
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from game_rewards.adapters import get_adapter
from game_rewards.config import GameProvider, parse_provider
from game_rewards.security import sign_payload

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-provider")

HUB_CALLBACK_BASE_URL = os.getenv("HUB_CALLBACK_BASE_URL", "http://localhost:8000/games/callback")

app = FastAPI(title="Mock Game Provider")

# Callbacks sent since startup, newest last.
SENT: List[dict] = []


class SimulatedReward(BaseModel):
    userId: str
    value: float
    gameId: str = "demo-game"
    transactionId: Optional[str] = None
    sessionToken: Optional[str] = None
    tamper: bool = False
    repeat: int = Field(1, ge=1, le=10)


def _secret_for(provider: GameProvider) -> str:
    secret = os.getenv(f"{provider.value.upper()}_WEBHOOK_SECRET")
    if not secret:
        raise HTTPException(status_code=400, detail=f"{provider.value} webhook secret not configured")
    return secret


def build_payload(provider: GameProvider, body: SimulatedReward, transaction_id: str) -> dict:
    if provider == GameProvider.GAMEZOP:
        payload = {"transactionId": transaction_id, "userId": body.userId, "reward": body.value, "gameId": body.gameId}
    elif provider == GameProvider.ADJOE:
        payload = {"transactionId": transaction_id, "userId": body.userId, "playtimeSeconds": body.value, "appId": body.gameId}
    else:
        payload = {"transactionId": transaction_id, "userId": body.userId, "coins": body.value, "quizId": body.gameId}
    if body.sessionToken:
        payload["sessionToken"] = body.sessionToken
    return payload


def _value_field(provider: GameProvider) -> str:
    return get_adapter(provider).value_fields[0]


@app.post("/simulate/{provider_name}")
async def simulate(provider_name: str, body: SimulatedReward):
    provider = parse_provider(provider_name)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"unknown provider: {provider_name}")

    transaction_id = body.transactionId or f"mock_{uuid.uuid4().hex[:12]}"
    payload = build_payload(provider, body, transaction_id)
    payload["signature"] = sign_payload(get_adapter(provider), payload, _secret_for(provider))
    if body.tamper:
        payload[_value_field(provider)] = body.value * 10

    url = f"{HUB_CALLBACK_BASE_URL}/{provider.value}"
    results = []
    async with httpx.AsyncClient(timeout=5.0) as client:
        for attempt in range(body.repeat):
            logger.info(
                "Sending callback provider=%s transactionId=%s attempt=%s tamper=%s",
                provider.value,
                transaction_id,
                attempt + 1,
                body.tamper,
            )
            try:
                resp = await client.post(url, json=payload)
            except httpx.HTTPError as exc:
                logger.warning("Callback delivery failed transactionId=%s error=%s", transaction_id, exc)
                raise HTTPException(status_code=502, detail="hub unreachable") from exc
            record = {
                "provider": provider.value,
                "transactionId": transaction_id,
                "statusCode": resp.status_code,
                "response": resp.json(),
            }
            SENT.append(record)
            results.append(record)
    return {"transactionId": transaction_id, "payload": payload, "results": results}


@app.get("/sent")
async def sent():
    return SENT


@app.post("/admin/clear")
async def clear():
    SENT.clear()
    logger.warning("Cleared mock provider history via admin endpoint")
    return {"status": "cleared"}
